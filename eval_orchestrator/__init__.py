"""Eval orchestration engine.

Runs AI coding agents against reproducible task fixtures inside isolated
cells, validates the result through a staged pipeline (dependency
install, setup hook, agent, verification scripts, assertion suite) and
aggregates pass/fail outcomes across repeated and variant runs.
"""

from .aggregate import RunCollector, summarize
from .cells import CellManager
from .config import EngineConfig, InFlightPolicy, StageTimeouts
from .errors import (
    AgentTimeout,
    AssertionFailure,
    ConfigError,
    EvalError,
    ProvisionError,
    ScriptFailure,
    SetupError,
)
from .harness import EvalHarness, EvalResult
from .models import (
    Cell,
    FailureStage,
    PipelineState,
    RunGroupSummary,
    RunOutcome,
    RunRequest,
    StageResult,
    TaskDefinition,
    VariantConfig,
)
from .pipeline import CancelToken, PipelineExecutor
from .scheduler import RunScheduler

__all__ = [
    "AgentTimeout",
    "AssertionFailure",
    "CancelToken",
    "Cell",
    "CellManager",
    "ConfigError",
    "EngineConfig",
    "EvalError",
    "EvalHarness",
    "EvalResult",
    "FailureStage",
    "InFlightPolicy",
    "PipelineExecutor",
    "PipelineState",
    "ProvisionError",
    "RunCollector",
    "RunGroupSummary",
    "RunOutcome",
    "RunRequest",
    "RunScheduler",
    "ScriptFailure",
    "SetupError",
    "StageResult",
    "StageTimeouts",
    "TaskDefinition",
    "VariantConfig",
    "summarize",
]
