"""Execution backend protocol.

A backend allocates and destroys cells. Each cell handle exposes four
operations: run a shell command, read a file, write a file, and list
files. Nothing else about the backend (container, VM, local process) is
assumed by the engine.
"""

from __future__ import annotations

import fnmatch
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class CommandResult:
    """Captured result of one command run inside a cell."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = 0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


@runtime_checkable
class CellHandle(Protocol):
    """Backend handle for one live cell."""

    @property
    def id(self) -> str:
        """Backend-assigned cell identifier."""
        ...

    async def exec(
        self,
        command: str,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a shell command in the cell's working directory.

        A command exceeding *timeout* is killed and reported with
        ``timed_out=True`` and ``exit_code=None``.
        """
        ...

    async def read_file(self, path: str) -> str:
        """Read a file relative to the cell's working directory."""
        ...

    async def write_file(self, path: str, content: str) -> None:
        """Write a file, creating parent directories as needed."""
        ...

    async def list_files(self, pattern: str = "**/*") -> list[str]:
        """List file paths (relative, sorted) matching a glob pattern."""
        ...


@runtime_checkable
class ExecutionBackend(Protocol):
    """Allocates and destroys isolated cells."""

    @property
    def name(self) -> str:
        """Backend identifier (e.g. 'local', 'docker')."""
        ...

    @property
    def max_cells(self) -> int | None:
        """Maximum simultaneous cells, or None when unbounded."""
        ...

    async def create(self) -> CellHandle:
        """Allocate a fresh, empty cell."""
        ...

    async def destroy(self, handle: CellHandle) -> None:
        """Tear a cell down. May raise; callers handle cleanup errors."""
        ...


def match_path(path: str, pattern: str) -> bool:
    """Glob-match a relative POSIX path; ``**/`` also matches top-level files."""
    if pattern in ("*", "**", "**/*"):
        return True
    if fnmatch.fnmatchcase(path, pattern):
        return True
    return pattern.startswith("**/") and fnmatch.fnmatchcase(path, pattern[3:])
