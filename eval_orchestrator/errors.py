"""Error taxonomy for the orchestration engine.

Stage helpers raise these; the pipeline executor converts them into
StageResult / RunOutcome data so they never cross its boundary.
"""

from __future__ import annotations


class EvalError(Exception):
    """Base class for all engine errors."""


class ConfigError(EvalError):
    """Invalid engine configuration or task directory."""


class ProvisionError(EvalError):
    """The backend could not allocate or prepare a cell."""


class SetupError(EvalError):
    """A variant's pre-agent setup hook failed."""


class AgentTimeout(EvalError):
    """The agent phase exceeded its time bound."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Agent timed out after {timeout_seconds}s")
        self.timeout_seconds = timeout_seconds


class ScriptFailure(EvalError):
    """A verification script exited non-zero (or timed out)."""

    def __init__(self, script: str, exit_code: int | None) -> None:
        super().__init__(f"Script '{script}' failed with exit code {exit_code}")
        self.script = script
        self.exit_code = exit_code


class AssertionFailure(EvalError):
    """One or more assertions in the suite did not hold."""

    def __init__(self, failed: list[str]) -> None:
        names = ", ".join(failed) if failed else "<unnamed>"
        super().__init__(f"Assertions failed: {names}")
        self.failed = list(failed)
