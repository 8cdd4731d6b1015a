"""Run scheduler.

Fans (task x variant x repetition) out over a bounded pool of asyncio
workers. Each worker runs one pipeline to completion before taking the
next request, so ``concurrency_limit`` is also the maximum number of
live cells. The scheduler is the only component that throttles.

Early exit: once a repetition of a variant passes, that variant's
not-yet-started repetitions are dropped without ever acquiring a cell.
Repetitions already running either finish normally (``FINISH``) or stop
at their next stage boundary (``CANCEL``). Without early exit every
repetition runs, which is what an unbiased pass rate needs.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from .aggregate import RunCollector
from .config import InFlightPolicy
from .models import RunGroupSummary, RunOutcome, RunRequest, TaskDefinition, VariantConfig
from .pipeline import CancelToken, PipelineExecutor
from .sinks import ResultSink

logger = logging.getLogger(__name__)

GroupKey = tuple[str, str]  # (task name, variant name)


class RunScheduler:
    """Schedules run requests onto a bounded worker pool."""

    def __init__(
        self,
        executor: PipelineExecutor,
        max_cells: int | None = None,
        sink: ResultSink | None = None,
    ) -> None:
        self._executor = executor
        self._max_cells = max_cells
        self._sink = sink
        self._abort = CancelToken()

    def abort(self, reason: str = "aborted") -> None:
        """Global cancellation: drop pending work, stop running pipelines
        at their next stage boundary. Cells are still released."""
        logger.warning("Scheduler abort requested: %s", reason)
        self._abort.cancel(reason)

    @property
    def aborted(self) -> bool:
        return self._abort.cancelled

    async def run(
        self,
        task: TaskDefinition,
        variants: Sequence[VariantConfig],
        repetitions: int,
        concurrency_limit: int,
        early_exit: bool,
        in_flight: InFlightPolicy = InFlightPolicy.FINISH,
    ) -> dict[str, RunGroupSummary]:
        """Run every variant of one task; summaries keyed by variant name."""
        summaries = await self.run_all(
            [task], variants, repetitions, concurrency_limit, early_exit, in_flight
        )
        return {variant: summary for (_, variant), summary in summaries.items()}

    async def run_all(
        self,
        tasks: Sequence[TaskDefinition],
        variants: Sequence[VariantConfig],
        repetitions: int,
        concurrency_limit: int,
        early_exit: bool,
        in_flight: InFlightPolicy = InFlightPolicy.FINISH,
    ) -> dict[GroupKey, RunGroupSummary]:
        """Run every (task, variant) group through one shared worker pool."""
        self._validate(tasks, variants, repetitions, concurrency_limit)

        requests = [
            RunRequest(task=task, variant=variant, repetition=rep)
            for task in tasks
            for variant in variants
            for rep in range(1, repetitions + 1)
        ]
        groups: dict[GroupKey, CancelToken] = {
            (t.name, v.name): self._abort.child() for t in tasks for v in variants
        }
        collector = RunCollector()
        queue: asyncio.Queue[RunRequest] = asyncio.Queue()
        for request in requests:
            queue.put_nowait(request)

        logger.info(
            "Scheduling %d runs (%d tasks x %d variants x %d reps), "
            "concurrency=%d early_exit=%s",
            len(requests), len(tasks), len(variants), repetitions,
            concurrency_limit, early_exit,
        )

        async def worker() -> None:
            while True:
                try:
                    request = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                key = (request.task.name, request.variant.name)
                group_token = groups[key]
                if group_token.cancelled:
                    logger.info("Skipping %s (%s)", request.label, group_token.reason)
                    continue

                token = group_token if in_flight == InFlightPolicy.CANCEL else self._abort
                outcome = await self._executor.execute(request, cancel=token)

                # No await between the verdict and the cancel, or idle
                # workers would start this group's pending repetitions.
                if early_exit and outcome.passed and not group_token.cancelled:
                    logger.info(
                        "Early exit for %s/%s after passing repetition %d",
                        key[0], key[1], request.repetition,
                    )
                    group_token.cancel("early exit")

                await collector.add(outcome)
                await self._write_outcome(outcome)

        pool_size = min(concurrency_limit, len(requests))
        await asyncio.gather(*(worker() for _ in range(pool_size)))

        summaries: dict[GroupKey, RunGroupSummary] = {}
        for task_name, variant_name in groups:
            summary = collector.summary(
                task_name,
                variant_name,
                early_exit=early_exit,
                configured_repetitions=repetitions,
            )
            summaries[(task_name, variant_name)] = summary
            await self._write_summary(summary)
            logger.info(
                "%s/%s: %d/%d passed (%.0f%%)%s",
                task_name, variant_name, summary.passed_count,
                summary.total_attempts, summary.pass_rate * 100,
                " [stopped early]" if summary.stopped_early else "",
            )
        return summaries

    def _validate(
        self,
        tasks: Sequence[TaskDefinition],
        variants: Sequence[VariantConfig],
        repetitions: int,
        concurrency_limit: int,
    ) -> None:
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        if self._max_cells is not None and concurrency_limit > self._max_cells:
            raise ValueError(
                f"concurrency_limit {concurrency_limit} exceeds the backend's "
                f"ceiling of {self._max_cells} cells"
            )
        if repetitions < 1:
            raise ValueError("repetitions must be at least 1")
        for kind, names in (
            ("task", [t.name for t in tasks]),
            ("variant", [v.name for v in variants]),
        ):
            duplicates = sorted({n for n in names if names.count(n) > 1})
            if duplicates:
                raise ValueError(f"Duplicate {kind} names: {duplicates}")

    async def _write_outcome(self, outcome: RunOutcome) -> None:
        if self._sink is None:
            return
        try:
            await self._sink.write_outcome(outcome)
        except Exception:
            logger.exception("Failed to persist outcome for %s", outcome.request.label)

    async def _write_summary(self, summary: RunGroupSummary) -> None:
        if self._sink is None:
            return
        try:
            await self._sink.write_summary(summary)
        except Exception:
            logger.exception(
                "Failed to persist summary for %s/%s",
                summary.task_name, summary.variant_name,
            )
