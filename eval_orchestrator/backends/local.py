"""Local execution backend.

Each cell is a fresh temporary directory; commands run as shell
subprocesses in their own process group so a timeout can kill the
whole tree.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import tempfile
import uuid
from collections.abc import Mapping
from pathlib import Path

from ..config import BackendConfig
from .base import CellHandle, CommandResult, match_path

logger = logging.getLogger(__name__)


class LocalCell:
    """A cell rooted at a private temporary directory."""

    def __init__(self, cell_id: str, root: Path) -> None:
        self._id = cell_id
        self.root = root

    @property
    def id(self) -> str:
        return self._id

    def _resolve(self, path: str) -> Path:
        resolved = (self.root / path).resolve()
        if not resolved.is_relative_to(self.root.resolve()):
            raise ValueError(f"Path escapes cell root: {path}")
        return resolved

    async def exec(
        self,
        command: str,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.root,
            env={**os.environ, **(env or {})},
            start_new_session=True,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=timeout
            )
        except TimeoutError:
            _kill_group(process)
            stdout, stderr = await process.communicate()
            return CommandResult(
                stdout=stdout.decode("utf-8", errors="replace"),
                stderr=stderr.decode("utf-8", errors="replace")
                + f"\nTimed out after {timeout}s",
                exit_code=None,
                timed_out=True,
            )
        except asyncio.CancelledError:
            _kill_group(process)
            raise

        return CommandResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=process.returncode,
        )

    async def read_file(self, path: str) -> str:
        return await asyncio.to_thread(self._resolve(path).read_text)

    async def write_file(self, path: str, content: str) -> None:
        target = self._resolve(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)

        await asyncio.to_thread(_write)

    async def list_files(self, pattern: str = "**/*") -> list[str]:
        def _list() -> list[str]:
            paths = []
            for p in self.root.rglob("*"):
                if not p.is_file():
                    continue
                rel = p.relative_to(self.root).as_posix()
                if match_path(rel, pattern):
                    paths.append(rel)
            return sorted(paths)

        return await asyncio.to_thread(_list)


def _kill_group(process: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


class LocalBackend:
    """Backend that runs cells as temporary directories on this machine."""

    def __init__(
        self,
        base_dir: str | Path | None = None,
        max_cells: int | None = None,
    ) -> None:
        self._base_dir = Path(base_dir) if base_dir else None
        self._max_cells = max_cells

    @property
    def name(self) -> str:
        return "local"

    @property
    def max_cells(self) -> int | None:
        return self._max_cells

    async def create(self) -> LocalCell:
        cell_id = f"cell-{uuid.uuid4().hex[:8]}"
        if self._base_dir is not None:
            self._base_dir.mkdir(parents=True, exist_ok=True)
        root = await asyncio.to_thread(
            tempfile.mkdtemp, prefix=f"{cell_id}-", dir=self._base_dir
        )
        logger.debug("Created local cell %s at %s", cell_id, root)
        return LocalCell(cell_id, Path(root))

    async def destroy(self, handle: CellHandle) -> None:
        if not isinstance(handle, LocalCell):
            raise TypeError(f"Not a local cell: {handle!r}")
        await asyncio.to_thread(shutil.rmtree, handle.root)

    @classmethod
    def from_config(cls, config: BackendConfig) -> LocalBackend:
        return cls(base_dir=config.base_dir, max_cells=config.max_cells)
