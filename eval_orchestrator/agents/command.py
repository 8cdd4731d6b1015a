"""CLI agent adapter.

Runs an agent's command-line tool inside the cell (``claude --print``,
``codex exec``, ...) and captures its output as the transcript.
"""

from __future__ import annotations

import logging
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field

from ..backends.base import CellHandle
from ..config import AgentConfig
from .base import AgentResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentPreset:
    """Default invocation for a known agent CLI."""

    command: str
    args: tuple[str, ...] = ()
    model_flag: str | None = "--model"
    env: dict[str, str] = field(default_factory=dict)


PRESETS: dict[str, AgentPreset] = {
    "claude_code": AgentPreset(
        command="claude",
        args=("--print", "--dangerously-skip-permissions"),
    ),
    "codex": AgentPreset(
        command="codex",
        args=("exec", "--full-auto", "--skip-git-repo-check"),
    ),
    "gemini": AgentPreset(
        command="gemini",
        args=("--yolo", "--prompt"),
    ),
}


class CommandAgent:
    """Agent that is a CLI tool invoked once with the prompt."""

    def __init__(
        self,
        name: str,
        command: str,
        args: list[str] | None = None,
        model_flag: str | None = "--model",
        env: dict[str, str] | None = None,
    ) -> None:
        self._name = name
        self._command = command
        self._args = args or []
        self._model_flag = model_flag
        self._env = env or {}

    @property
    def name(self) -> str:
        return self._name

    def build_command(self, prompt: str, model: str | None = None) -> str:
        """Shell command line for one invocation; the prompt is last."""
        parts = [self._command]
        if model and self._model_flag:
            parts.extend([self._model_flag, model])
        parts.extend(self._args)
        parts.append(prompt)
        return shlex.join(parts)

    async def run(
        self,
        prompt: str,
        cell: CellHandle,
        model: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> AgentResult:
        command = self.build_command(prompt, model)
        logger.debug("Running agent %s in cell %s", self._name, cell.id)
        result = await cell.exec(command, env={**self._env, **(env or {})})

        transcript = result.stdout
        if result.stderr:
            transcript = f"{transcript}\n--- stderr ---\n{result.stderr}"
        if not result.ok:
            logger.info(
                "Agent %s exited with %s in cell %s",
                self._name, result.exit_code, cell.id,
            )
        return AgentResult(
            transcript=transcript,
            completed=result.ok,
            metadata={"exit_code": result.exit_code},
        )

    @classmethod
    def from_config(cls, config: AgentConfig) -> CommandAgent:
        preset = PRESETS.get(config.name)
        if config.command is None and preset is None:
            raise ValueError(f"Agent '{config.name}' has no preset; set 'command'")

        if preset is None:
            return cls(
                name=config.name,
                command=config.command,
                args=config.args,
                model_flag=config.model_flag,
                env=config.env,
            )
        return cls(
            name=config.name,
            command=config.command or preset.command,
            args=config.args or list(preset.args),
            model_flag=config.model_flag or preset.model_flag,
            env={**preset.env, **config.env},
        )
