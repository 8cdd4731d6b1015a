"""Core data model for evaluation runs.

Tasks and variants are loaded once and never mutated. A Cell lives only
for the duration of one pipeline invocation. RunOutcome and
RunGroupSummary are immutable records that serialize to plain dicts.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

DEFAULT_ASSERTION_PATH = "EVAL.ts"


class PipelineState(str, Enum):
    """States of the per-run pipeline state machine."""

    INIT = "init"
    CELL_READY = "cell_ready"
    SETUP = "setup"
    AGENT = "agent"
    SCRIPTS = "scripts"
    ASSERTIONS = "assertions"
    PASSED = "passed"
    FAILED = "failed"


class FailureStage(str, Enum):
    """Where a failed run stopped."""

    PROVISION = "provision"
    SETUP = "setup"
    AGENT = "agent"
    AGENT_TIMEOUT = "agent-timeout"
    SCRIPTS = "scripts"
    ASSERTIONS = "assertions"
    CANCELLED = "cancelled"

    @property
    def before_agent(self) -> bool:
        """True when the agent never got a chance to run."""
        return self in (FailureStage.PROVISION, FailureStage.SETUP)


class CellState(str, Enum):
    LIVE = "live"
    DESTROYED = "destroyed"


@dataclass(frozen=True)
class TaskDefinition:
    """A reusable coding challenge."""

    name: str
    prompt: str
    files: Mapping[str, str] = field(default_factory=dict, hash=False)
    scripts: tuple[str, ...] = ()
    assertions: str = ""
    assertion_path: str = DEFAULT_ASSERTION_PATH
    install_command: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "prompt": self.prompt,
            "files": sorted(self.files),
            "scripts": list(self.scripts),
            "assertion_path": self.assertion_path,
            "install_command": self.install_command,
        }


@dataclass
class Cell:
    """One ephemeral isolated environment, owned by a single pipeline."""

    id: str
    handle: Any
    task_name: str = ""
    state: CellState = CellState.LIVE

    @property
    def live(self) -> bool:
        return self.state == CellState.LIVE


SetupHook = Callable[[Cell], Awaitable[None] | None]


@dataclass(frozen=True)
class VariantConfig:
    """A named agent/model/setup configuration applied to a task."""

    name: str
    agent: str
    model: str | None = None
    setup: SetupHook | None = field(default=None, compare=False)
    env: Mapping[str, str] = field(default_factory=dict, hash=False)
    agent_timeout_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "agent": self.agent,
            "model": self.model,
            "has_setup": self.setup is not None,
            "env": sorted(self.env),
        }


@dataclass(frozen=True)
class RunRequest:
    """Fully determines one execution attempt. Repetition is 1-based."""

    task: TaskDefinition
    variant: VariantConfig
    repetition: int

    @property
    def label(self) -> str:
        return f"{self.task.name}/{self.variant.name}#{self.repetition}"


@dataclass(frozen=True)
class StageResult:
    """Result of one pipeline stage."""

    stage: PipelineState
    passed: bool
    duration_seconds: float = 0.0
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    name: str | None = None  # script name for SCRIPTS stages
    failed_assertions: tuple[str, ...] = ()
    error: str | None = None

    @property
    def label(self) -> str:
        if self.name:
            return f"{self.stage.value}:{self.name}"
        return self.stage.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "name": self.name,
            "passed": self.passed,
            "duration_seconds": round(self.duration_seconds, 4),
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "failed_assertions": list(self.failed_assertions),
            "error": self.error,
        }


@dataclass(frozen=True)
class RunOutcome:
    """Terminal value of one pipeline invocation."""

    request: RunRequest
    passed: bool
    stages: tuple[StageResult, ...] = ()
    duration_seconds: float = 0.0
    failure_stage: FailureStage | None = None
    failure_detail: str | None = None
    transcript: str | None = None
    agent_completed: bool | None = None
    cell_id: str | None = None

    def __post_init__(self) -> None:
        if self.passed and self.failure_stage is not None:
            raise ValueError("A passing outcome cannot carry a failure stage")
        if not self.passed and self.failure_stage is None:
            raise ValueError("A failing outcome requires a failure stage")

    @property
    def state(self) -> PipelineState:
        return PipelineState.PASSED if self.passed else PipelineState.FAILED

    @property
    def task_name(self) -> str:
        return self.request.task.name

    @property
    def variant_name(self) -> str:
        return self.request.variant.name

    @property
    def repetition(self) -> int:
        return self.request.repetition

    def stage(self, stage: PipelineState, name: str | None = None) -> StageResult | None:
        """Find the first recorded result for a stage (and script name)."""
        for result in self.stages:
            if result.stage == stage and (name is None or result.name == name):
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task_name,
            "variant": self.variant_name,
            "agent": self.request.variant.agent,
            "model": self.request.variant.model,
            "repetition": self.repetition,
            "passed": self.passed,
            "state": self.state.value,
            "failure_stage": self.failure_stage.value if self.failure_stage else None,
            "failure_detail": self.failure_detail,
            "duration_seconds": round(self.duration_seconds, 4),
            "agent_completed": self.agent_completed,
            "cell_id": self.cell_id,
            "stages": [s.to_dict() for s in self.stages],
            "transcript": self.transcript,
        }


@dataclass(frozen=True)
class DurationStats:
    """Distribution of run durations across a group."""

    count: int = 0
    mean: float = 0.0
    median: float = 0.0
    std_dev: float = 0.0
    ci_lower: float = 0.0  # 95% confidence interval lower bound
    ci_upper: float = 0.0  # 95% confidence interval upper bound

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "mean": round(self.mean, 4),
            "median": round(self.median, 4),
            "std_dev": round(self.std_dev, 4),
            "ci_95_lower": round(self.ci_lower, 4),
            "ci_95_upper": round(self.ci_upper, 4),
        }


@dataclass(frozen=True)
class RunGroupSummary:
    """Summary of all recorded runs for one (task, variant) pair."""

    task_name: str
    variant_name: str
    total_attempts: int = 0
    passed_count: int = 0
    pass_rate: float = 0.0
    duration_mean: float = 0.0
    duration_stddev: float = 0.0
    first_pass_index: int | None = None
    stopped_early: bool = False
    early_exit: bool = False
    configured_repetitions: int | None = None
    failure_breakdown: Mapping[str, int] = field(default_factory=dict)
    cancelled_count: int = 0
    duration: DurationStats = field(default_factory=DurationStats)

    @property
    def failed_count(self) -> int:
        return self.total_attempts - self.passed_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task_name,
            "variant": self.variant_name,
            "total_attempts": self.total_attempts,
            "passed_count": self.passed_count,
            "pass_rate": round(self.pass_rate, 4),
            "duration_mean": round(self.duration_mean, 4),
            "duration_stddev": round(self.duration_stddev, 4),
            "first_pass_index": self.first_pass_index,
            "stopped_early": self.stopped_early,
            "early_exit": self.early_exit,
            "configured_repetitions": self.configured_repetitions,
            "failure_breakdown": dict(self.failure_breakdown),
            "cancelled_count": self.cancelled_count,
            "duration": self.duration.to_dict(),
        }
