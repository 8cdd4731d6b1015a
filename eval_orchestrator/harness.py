"""Evaluation harness.

Flow: load tasks -> build variants and agents -> schedule runs ->
persist records -> generate reports.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .agents import AgentAdapter, create_agent
from .backends import ExecutionBackend, create_backend
from .cells import CellManager
from .config import EngineConfig, VariantSpec
from .errors import SetupError
from .models import (
    Cell,
    RunGroupSummary,
    RunOutcome,
    SetupHook,
    TaskDefinition,
    VariantConfig,
)
from .pipeline import PipelineExecutor
from .reports.generator import ReportGenerator
from .scheduler import RunScheduler
from .sinks import FanoutSink, MemoryResultSink, ResultSink, create_sink
from .tasks.registry import TaskRegistry

logger = logging.getLogger(__name__)


def commands_setup_hook(
    commands: list[str],
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
) -> SetupHook:
    """Setup hook that runs shell commands in the cell, failing on non-zero exit."""

    async def hook(cell: Cell) -> None:
        for command in commands:
            result = await cell.handle.exec(command, env=env, timeout=timeout)
            if not result.ok:
                raise SetupError(
                    f"Setup command {command!r} exited {result.exit_code}: "
                    f"{result.stderr.strip()[-500:]}"
                )

    return hook


def build_variant(spec: VariantSpec, setup_timeout: float | None = None) -> VariantConfig:
    """Turn a declarative variant into a runnable VariantConfig."""
    env = dict(spec.env)
    setup = (
        commands_setup_hook(spec.setup_commands, setup_timeout, env=env)
        if spec.setup_commands
        else None
    )
    return VariantConfig(
        name=spec.name,
        agent=spec.agent,
        model=spec.model,
        setup=setup,
        env=env,
        agent_timeout_seconds=spec.agent_timeout_seconds,
    )


class EvalHarness:
    """Orchestrates an evaluation run end to end."""

    def __init__(
        self,
        config: EngineConfig,
        registry: TaskRegistry | None = None,
        backend: ExecutionBackend | None = None,
        agents: dict[str, AgentAdapter] | None = None,
        sink: ResultSink | None = None,
    ) -> None:
        self._config = config
        self._registry = registry or TaskRegistry(config.tasks_dir)
        self._backend = backend or create_backend(config.backend)
        self._agents = dict(agents or {})
        self._sink = sink
        self._run_id = config.run_id or f"eval-{uuid.uuid4().hex[:8]}"
        self._scheduler: RunScheduler | None = None

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def output_dir(self) -> Path:
        return self._config.output_dir / self._run_id

    def abort(self, reason: str = "aborted by user") -> None:
        """Stop scheduling new runs; running pipelines release their cells."""
        if self._scheduler is not None:
            self._scheduler.abort(reason)

    def _resolve_agents(self, variants: list[VariantConfig]) -> dict[str, AgentAdapter]:
        agents = dict(self._agents)
        for variant in variants:
            if variant.agent not in agents:
                agents[variant.agent] = create_agent(
                    self._config.agent_config(variant.agent)
                )
        return agents

    async def run(self) -> EvalResult:
        """Execute the full evaluation.

        Returns:
            EvalResult with outcomes, summaries and report paths.
        """
        config = self._config
        logger.info("Starting evaluation run: %s", self._run_id)

        tasks = self._registry.list_tasks(config.task_names)
        logger.info("Selected %d tasks", len(tasks))
        if not tasks:
            logger.warning("No tasks matched the configuration")
            return EvalResult(run_id=self._run_id)

        variants = [build_variant(v, config.timeouts.setup) for v in config.variants]
        if not variants:
            logger.warning("No variants configured")
            return EvalResult(run_id=self._run_id)

        executor = PipelineExecutor(
            cells=CellManager(self._backend, provision_timeout=config.timeouts.provision),
            agents=self._resolve_agents(variants),
            timeouts=config.timeouts,
            script_command=config.script_command,
            assertion_command=config.assertion_command,
        )
        memory = MemoryResultSink()
        sink = FanoutSink([memory, self._sink or create_sink(config.sink, self.output_dir)])
        self._scheduler = RunScheduler(
            executor, max_cells=self._backend.max_cells, sink=sink
        )

        try:
            summaries = await self._scheduler.run_all(
                tasks,
                variants,
                repetitions=config.repetitions,
                concurrency_limit=config.concurrency_limit,
                early_exit=config.early_exit,
                in_flight=config.in_flight_policy,
            )
        finally:
            await sink.close()

        reporter = ReportGenerator(self.output_dir)
        md_path, json_path = reporter.generate(
            outcomes=memory.outcomes,
            summaries=list(summaries.values()),
            run_id=self._run_id,
            config_summary=self._build_config_summary(tasks, variants),
        )
        logger.info("Reports generated: %s, %s", md_path, json_path)

        return EvalResult(
            run_id=self._run_id,
            outcomes=memory.outcomes,
            summaries=list(summaries.values()),
            markdown_report=md_path,
            json_report=json_path,
        )

    def _build_config_summary(
        self, tasks: list[TaskDefinition], variants: list[VariantConfig]
    ) -> dict[str, Any]:
        """Build a summary dict of the run configuration."""
        return {
            "run_id": self._run_id,
            "backend": self._backend.name,
            "num_tasks": len(tasks),
            "variants": [v.name for v in variants],
            "repetitions": self._config.repetitions,
            "concurrency_limit": self._config.concurrency_limit,
            "early_exit": self._config.early_exit,
            "in_flight_policy": self._config.in_flight_policy.value,
        }


class EvalResult:
    """Result of a complete evaluation run."""

    def __init__(
        self,
        run_id: str,
        outcomes: list[RunOutcome] | None = None,
        summaries: list[RunGroupSummary] | None = None,
        markdown_report: Path | None = None,
        json_report: Path | None = None,
    ) -> None:
        self.run_id = run_id
        self.outcomes = outcomes or []
        self.summaries = summaries or []
        self.markdown_report = markdown_report
        self.json_report = json_report

    @property
    def total_tasks(self) -> int:
        return len({s.task_name for s in self.summaries})

    @property
    def overall_pass_rate(self) -> float:
        attempts = sum(s.total_attempts for s in self.summaries)
        if not attempts:
            return 0.0
        return sum(s.passed_count for s in self.summaries) / attempts

    def summary(self, task_name: str, variant_name: str) -> RunGroupSummary | None:
        for s in self.summaries:
            if s.task_name == task_name and s.variant_name == variant_name:
                return s
        return None
