"""Agent adapter protocol.

An agent adapter drives code changes into a live cell given a task
prompt. Only its effects on the cell are authoritative; the returned
``completed`` flag is recorded for diagnostics.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from ..backends.base import CellHandle


@dataclass(frozen=True)
class AgentResult:
    """What an agent reports after working on a cell."""

    transcript: str = ""
    completed: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class AgentAdapter(Protocol):
    """Protocol for agents evaluated by the engine."""

    @property
    def name(self) -> str:
        """Agent identifier (e.g. 'claude_code', 'codex')."""
        ...

    async def run(
        self,
        prompt: str,
        cell: CellHandle,
        model: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> AgentResult:
        """Work on the task in *cell* and return a transcript.

        Args:
            prompt: Task prompt text.
            cell: Live cell holding the task's starting files.
            model: Model identifier selected by the variant.
            env: Variant environment overrides.
        """
        ...
