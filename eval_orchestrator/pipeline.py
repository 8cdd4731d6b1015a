"""Pipeline executor: one run of one agent against one task.

Stages run strictly in order against a single cell:

    INIT -> CELL_READY -> SETUP -> AGENT -> SCRIPTS -> ASSERTIONS -> PASSED | FAILED

The first hard failure ends the run. Every failure is captured as data in
the returned RunOutcome; ``execute`` does not raise. The only exception
that escapes is ``asyncio.CancelledError`` on a forced abort, and the cell
has been released by then.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import shlex
import time
from collections.abc import Mapping
from dataclasses import dataclass, field

from .agents.base import AgentAdapter
from .assertions import parse_assertion_output
from .backends.base import CommandResult
from .cells import CellManager
from .config import StageTimeouts
from .errors import (
    AgentTimeout,
    AssertionFailure,
    ProvisionError,
    ScriptFailure,
    SetupError,
)
from .models import (
    Cell,
    FailureStage,
    PipelineState,
    RunOutcome,
    RunRequest,
    StageResult,
)

logger = logging.getLogger(__name__)

# Extra time a backend gets to honour its own command timeout
_EXEC_GRACE_SECONDS = 10.0

_FAILURE_FOR_STATE = {
    PipelineState.INIT: FailureStage.PROVISION,
    PipelineState.CELL_READY: FailureStage.PROVISION,
    PipelineState.SETUP: FailureStage.SETUP,
    PipelineState.AGENT: FailureStage.AGENT,
    PipelineState.SCRIPTS: FailureStage.SCRIPTS,
    PipelineState.ASSERTIONS: FailureStage.ASSERTIONS,
}


class CancelToken:
    """Cooperative cancellation, checked only between stages.

    A child token reports cancelled when it or any ancestor was cancelled,
    so a scheduler can hold one token per variant under a global one.
    """

    def __init__(self, parent: CancelToken | None = None) -> None:
        self._parent = parent
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if self._reason is None:
            self._reason = reason

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    @property
    def reason(self) -> str | None:
        if self._reason is not None:
            return self._reason
        return self._parent.reason if self._parent is not None else None

    def child(self) -> CancelToken:
        return CancelToken(parent=self)


@dataclass
class _RunRecord:
    """Mutable accumulator for one run; frozen into a RunOutcome at the end."""

    request: RunRequest
    started: float = field(default_factory=time.monotonic)
    state: PipelineState = PipelineState.INIT
    stages: list[StageResult] = field(default_factory=list)
    failure_stage: FailureStage | None = None
    failure_detail: str | None = None
    transcript: str | None = None
    agent_completed: bool | None = None
    cell_id: str | None = None

    @property
    def failed(self) -> bool:
        return self.failure_stage is not None

    def record(self, result: StageResult) -> None:
        self.stages.append(result)
        logger.info(
            "%s: %s %s (%.1fs)",
            self.request.label, result.label,
            "passed" if result.passed else "FAILED", result.duration_seconds,
        )

    def fail(self, stage: FailureStage, detail: str) -> None:
        if self.failure_stage is None:
            self.failure_stage = stage
            self.failure_detail = detail
        self.state = PipelineState.FAILED

    def outcome(self) -> RunOutcome:
        passed = self.failure_stage is None
        self.state = PipelineState.PASSED if passed else PipelineState.FAILED
        return RunOutcome(
            request=self.request,
            passed=passed,
            stages=tuple(self.stages),
            duration_seconds=time.monotonic() - self.started,
            failure_stage=self.failure_stage,
            failure_detail=self.failure_detail,
            transcript=self.transcript,
            agent_completed=self.agent_completed,
            cell_id=self.cell_id,
        )


class PipelineExecutor:
    """Runs the staged validation pipeline for individual run requests."""

    def __init__(
        self,
        cells: CellManager,
        agents: Mapping[str, AgentAdapter],
        timeouts: StageTimeouts | None = None,
        script_command: str = "npm run {script}",
        assertion_command: str = "npx vitest run {path} --reporter=json",
    ) -> None:
        self._cells = cells
        self._agents = dict(agents)
        self._timeouts = timeouts or StageTimeouts()
        self._script_command = script_command
        self._assertion_command = assertion_command

    async def execute(
        self, request: RunRequest, cancel: CancelToken | None = None
    ) -> RunOutcome:
        """Run every stage for *request* and return its terminal outcome."""
        run = _RunRecord(request)
        logger.info("Starting run %s", request.label)

        agent = self._agents.get(request.variant.agent)
        if agent is None:
            run.fail(
                FailureStage.SETUP,
                f"No agent adapter named '{request.variant.agent}'",
            )
            return self._finish(run)

        if self._cancelled(run, cancel, "provisioning"):
            return self._finish(run)

        provision_start = time.monotonic()
        try:
            async with self._cells.cell(request.task) as cell:
                run.cell_id = cell.id
                run.state = PipelineState.CELL_READY
                run.record(StageResult(
                    stage=PipelineState.CELL_READY,
                    passed=True,
                    duration_seconds=time.monotonic() - provision_start,
                ))
                await self._run_stages(run, cell, agent, cancel)
        except ProvisionError as e:
            run.record(StageResult(
                stage=PipelineState.CELL_READY,
                passed=False,
                duration_seconds=time.monotonic() - provision_start,
                error=str(e),
            ))
            run.fail(FailureStage.PROVISION, str(e))
        except Exception as e:
            logger.exception("Unexpected error in run %s", request.label)
            run.fail(
                _FAILURE_FOR_STATE.get(run.state, FailureStage.PROVISION),
                f"Unexpected error: {e}",
            )

        return self._finish(run)

    def _finish(self, run: _RunRecord) -> RunOutcome:
        outcome = run.outcome()
        if outcome.passed:
            logger.info("Run %s PASSED in %.1fs", outcome.request.label, outcome.duration_seconds)
        else:
            logger.info(
                "Run %s FAILED at %s: %s",
                outcome.request.label, outcome.failure_stage.value, outcome.failure_detail,
            )
        return outcome

    async def _run_stages(
        self,
        run: _RunRecord,
        cell: Cell,
        agent: AgentAdapter,
        cancel: CancelToken | None,
    ) -> None:
        if not await self._setup(run, cell, cancel):
            return
        if not await self._agent(run, cell, agent, cancel):
            return
        if not await self._scripts(run, cell, cancel):
            return
        await self._assertions(run, cell, cancel)

    def _cancelled(
        self, run: _RunRecord, cancel: CancelToken | None, before: str
    ) -> bool:
        if cancel is None or not cancel.cancelled:
            return False
        run.fail(FailureStage.CANCELLED, f"{cancel.reason} before {before}")
        return True

    async def _setup(
        self, run: _RunRecord, cell: Cell, cancel: CancelToken | None
    ) -> bool:
        hook = run.request.variant.setup
        if hook is None:
            return True
        if self._cancelled(run, cancel, "setup"):
            return False

        run.state = PipelineState.SETUP
        start = time.monotonic()
        try:
            result = hook(cell)
            if inspect.isawaitable(result):
                await asyncio.wait_for(result, timeout=self._timeouts.setup)
        except TimeoutError:
            error = SetupError(f"Setup hook timed out after {self._timeouts.setup}s")
        except Exception as e:
            error = e if isinstance(e, SetupError) else SetupError(f"Setup hook raised: {e!r}")
        else:
            run.record(StageResult(
                stage=PipelineState.SETUP,
                passed=True,
                duration_seconds=time.monotonic() - start,
            ))
            return True

        run.record(StageResult(
            stage=PipelineState.SETUP,
            passed=False,
            duration_seconds=time.monotonic() - start,
            error=str(error),
        ))
        run.fail(FailureStage.SETUP, str(error))
        return False

    async def _agent(
        self,
        run: _RunRecord,
        cell: Cell,
        agent: AgentAdapter,
        cancel: CancelToken | None,
    ) -> bool:
        if self._cancelled(run, cancel, "agent"):
            return False

        run.state = PipelineState.AGENT
        variant = run.request.variant
        timeout = variant.agent_timeout_seconds or self._timeouts.agent
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(
                agent.run(
                    run.request.task.prompt,
                    cell.handle,
                    model=variant.model,
                    env=variant.env,
                ),
                timeout=timeout,
            )
        except TimeoutError:
            error = AgentTimeout(timeout)
            run.record(StageResult(
                stage=PipelineState.AGENT,
                passed=False,
                duration_seconds=time.monotonic() - start,
                error=str(error),
            ))
            run.fail(FailureStage.AGENT_TIMEOUT, str(error))
            return False
        except Exception as e:
            logger.exception("Agent %s raised in run %s", agent.name, run.request.label)
            run.record(StageResult(
                stage=PipelineState.AGENT,
                passed=False,
                duration_seconds=time.monotonic() - start,
                error=f"{type(e).__name__}: {e}",
            ))
            run.fail(FailureStage.AGENT, f"Agent raised {type(e).__name__}: {e}")
            return False

        run.transcript = result.transcript
        run.agent_completed = result.completed
        run.record(StageResult(
            stage=PipelineState.AGENT,
            passed=True,
            duration_seconds=time.monotonic() - start,
        ))
        return True

    async def _scripts(
        self, run: _RunRecord, cell: Cell, cancel: CancelToken | None
    ) -> bool:
        run.state = PipelineState.SCRIPTS
        for script in run.request.task.scripts:
            if self._cancelled(run, cancel, f"script '{script}'"):
                return False

            start = time.monotonic()
            result = await self._exec(
                cell,
                self._script_command.format(script=script),
                run.request.variant.env,
                self._timeouts.script,
            )
            run.record(StageResult(
                stage=PipelineState.SCRIPTS,
                name=script,
                passed=result.ok,
                duration_seconds=time.monotonic() - start,
                stdout=result.stdout,
                stderr=result.stderr,
                exit_code=result.exit_code,
                error="timed out" if result.timed_out else None,
            ))
            if not result.ok:
                run.fail(FailureStage.SCRIPTS, str(ScriptFailure(script, result.exit_code)))
                return False
        return True

    async def _assertions(
        self, run: _RunRecord, cell: Cell, cancel: CancelToken | None
    ) -> bool:
        task = run.request.task
        if not task.assertions:
            return True
        if self._cancelled(run, cancel, "assertions"):
            return False

        run.state = PipelineState.ASSERTIONS
        start = time.monotonic()
        try:
            await cell.handle.write_file(task.assertion_path, task.assertions)
        except Exception as e:
            detail = f"Could not inject {task.assertion_path}: {e}"
            run.record(StageResult(
                stage=PipelineState.ASSERTIONS,
                passed=False,
                duration_seconds=time.monotonic() - start,
                error=detail,
            ))
            run.fail(FailureStage.ASSERTIONS, detail)
            return False

        command = self._assertion_command.format(path=shlex.quote(task.assertion_path))
        result = await self._exec(
            cell, command, run.request.variant.env, self._timeouts.assertions
        )
        report = parse_assertion_output(result.stdout, result.exit_code)
        passed = report.passed and not result.timed_out
        run.record(StageResult(
            stage=PipelineState.ASSERTIONS,
            passed=passed,
            duration_seconds=time.monotonic() - start,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            failed_assertions=report.failed,
            error="timed out" if result.timed_out else None,
        ))
        if not passed:
            run.fail(FailureStage.ASSERTIONS, str(AssertionFailure(list(report.failed))))
        return passed

    async def _exec(
        self,
        cell: Cell,
        command: str,
        env: Mapping[str, str],
        timeout: float,
    ) -> CommandResult:
        """Run a command with a hard upper bound, whatever the backend does."""
        try:
            return await asyncio.wait_for(
                cell.handle.exec(command, env=env, timeout=timeout),
                timeout=timeout + _EXEC_GRACE_SECONDS,
            )
        except TimeoutError:
            return CommandResult(
                stderr=f"Timed out after {timeout}s",
                exit_code=None,
                timed_out=True,
            )
        except Exception as e:
            logger.warning("Command %r failed in cell %s: %s", command, cell.id, e)
            return CommandResult(stderr=str(e), exit_code=None)
