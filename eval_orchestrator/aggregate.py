"""Outcome aggregation.

Summaries are always recomputed from the full, immutable list of run
outcomes; nothing keeps running counters. ``RunCollector`` is the only
shared structure between concurrent pipelines, and it only appends.
"""

from __future__ import annotations

import asyncio
import math
import statistics
from collections import Counter
from collections.abc import Iterable, Sequence

from .models import DurationStats, FailureStage, RunGroupSummary, RunOutcome


def duration_stats(values: Sequence[float]) -> DurationStats:
    """Mean, median, sample std-dev and a 95% CI for a list of durations."""
    if not values:
        return DurationStats()
    n = len(values)
    mean = statistics.mean(values)
    median = statistics.median(values)
    std_dev = statistics.stdev(values) if n > 1 else 0.0

    # 95% CI using t-distribution approximation
    if n > 1:
        se = std_dev / math.sqrt(n)
        t_val = 2.0 if n < 30 else 1.96
        ci_lower = mean - t_val * se
        ci_upper = mean + t_val * se
    else:
        ci_lower = ci_upper = mean

    return DurationStats(
        count=n,
        mean=mean,
        median=median,
        std_dev=std_dev,
        ci_lower=ci_lower,
        ci_upper=ci_upper,
    )


def summarize(
    outcomes: Iterable[RunOutcome],
    early_exit: bool,
    configured_repetitions: int | None = None,
    task_name: str | None = None,
    variant_name: str | None = None,
) -> RunGroupSummary:
    """Reduce the outcomes of one (task, variant) group into a summary.

    Outcomes are ordered by repetition index, never completion time. With
    early exit, attempts after the first pass are not counted. Cancelled
    runs never reached a verdict: they are reported in ``cancelled_count``
    and are not attempts.

    Raises:
        ValueError: outcomes from more than one (task, variant) group.
    """
    ordered = sorted(outcomes, key=lambda o: o.repetition)

    groups = {(o.task_name, o.variant_name) for o in ordered}
    if len(groups) > 1:
        raise ValueError(f"Outcomes span several groups: {sorted(groups)}")
    if ordered:
        task_name, variant_name = ordered[0].task_name, ordered[0].variant_name

    cancelled = sum(1 for o in ordered if o.failure_stage == FailureStage.CANCELLED)
    ordered = [o for o in ordered if o.failure_stage != FailureStage.CANCELLED]

    first_pass = next((i for i, o in enumerate(ordered) if o.passed), None)
    if early_exit and first_pass is not None:
        ordered = ordered[: first_pass + 1]

    total = len(ordered)
    passed = sum(1 for o in ordered if o.passed)
    durations = duration_stats([o.duration_seconds for o in ordered])
    breakdown = Counter(
        o.failure_stage.value for o in ordered if o.failure_stage is not None
    )

    return RunGroupSummary(
        task_name=task_name or "",
        variant_name=variant_name or "",
        total_attempts=total,
        passed_count=passed,
        pass_rate=passed / total if total else 0.0,
        duration_mean=durations.mean,
        duration_stddev=durations.std_dev,
        first_pass_index=first_pass + 1 if first_pass is not None else None,
        stopped_early=(
            early_exit
            and configured_repetitions is not None
            and total < configured_repetitions
        ),
        early_exit=early_exit,
        configured_repetitions=configured_repetitions,
        failure_breakdown=dict(sorted(breakdown.items())),
        cancelled_count=cancelled,
        duration=durations,
    )


class RunCollector:
    """Append-only, group-keyed collection of run outcomes."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._outcomes: list[RunOutcome] = []

    async def add(self, outcome: RunOutcome) -> None:
        async with self._lock:
            self._outcomes.append(outcome)

    def outcomes(
        self, task_name: str | None = None, variant_name: str | None = None
    ) -> list[RunOutcome]:
        """Snapshot of collected outcomes, optionally for one group."""
        return [
            o for o in self._outcomes
            if (task_name is None or o.task_name == task_name)
            and (variant_name is None or o.variant_name == variant_name)
        ]

    def summary(
        self,
        task_name: str,
        variant_name: str,
        early_exit: bool,
        configured_repetitions: int | None = None,
    ) -> RunGroupSummary:
        return summarize(
            self.outcomes(task_name, variant_name),
            early_exit=early_exit,
            configured_repetitions=configured_repetitions,
            task_name=task_name,
            variant_name=variant_name,
        )

    def __len__(self) -> int:
        return len(self._outcomes)
