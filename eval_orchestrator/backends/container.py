"""Docker / Podman execution backend.

Detects an available container runtime and runs each cell as a
long-lived container (``sleep infinity``) that commands are exec'd into.
The container is force-removed on destroy.
"""

from __future__ import annotations

import asyncio
import logging
import math
import shlex
import shutil
import subprocess
import uuid
from collections.abc import Mapping, Sequence
from posixpath import dirname

from ..config import BackendConfig
from ..errors import ProvisionError
from .base import CellHandle, CommandResult, match_path

logger = logging.getLogger(__name__)

SUPPORTED_RUNTIMES = ("docker", "podman")


def detect_runtime(preferred: str = "auto") -> str | None:
    """Detect an available container runtime.

    Args:
        preferred: ``"auto"`` (try docker then podman), ``"docker"``, or
            ``"podman"``.

    Returns:
        The runtime name, or ``None`` when no usable runtime is found.
    """
    candidates = list(SUPPORTED_RUNTIMES) if preferred == "auto" else [preferred]
    for candidate in candidates:
        if candidate not in SUPPORTED_RUNTIMES:
            continue
        if shutil.which(candidate) is None:
            continue
        try:
            subprocess.run(
                [candidate, "info"],
                capture_output=True,
                timeout=15,
                check=True,
            )
            return candidate
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired):
            continue
    return None


async def _run(
    args: Sequence[str],
    stdin: str | None = None,
    timeout: float | None = None,
) -> CommandResult:
    process = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.PIPE if stdin is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    payload = stdin.encode("utf-8") if stdin is not None else None
    try:
        stdout, stderr = await asyncio.wait_for(
            process.communicate(payload), timeout=timeout
        )
    except TimeoutError:
        process.kill()
        stdout, stderr = await process.communicate()
        return CommandResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace")
            + f"\nTimed out after {timeout}s",
            exit_code=None,
            timed_out=True,
        )
    except asyncio.CancelledError:
        process.kill()
        raise
    return CommandResult(
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        exit_code=process.returncode,
    )


class ContainerCell:
    """A cell backed by one running container."""

    def __init__(self, runtime: str, container_id: str, workdir: str) -> None:
        self.runtime = runtime
        self.container_id = container_id
        self.workdir = workdir

    @property
    def id(self) -> str:
        return self.container_id[:12]

    def _exec_args(
        self,
        command: str,
        env: Mapping[str, str] | None = None,
        interactive: bool = False,
        timeout: float | None = None,
    ) -> list[str]:
        args = [self.runtime, "exec", "-w", self.workdir]
        if interactive:
            args.append("-i")
        for key, value in (env or {}).items():
            args.extend(["-e", f"{key}={value}"])
        args.append(self.container_id)
        # Killing the local exec client leaves the command running in the
        # container, so the deadline is also enforced inside it.
        if timeout is not None:
            args.extend(["timeout", "-s", "KILL", str(math.ceil(timeout))])
        return [*args, "sh", "-c", command]

    async def exec(
        self,
        command: str,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        return await _run(self._exec_args(command, env, timeout=timeout), timeout=timeout)

    async def read_file(self, path: str) -> str:
        result = await _run(self._exec_args(f"cat {shlex.quote(path)}"))
        if not result.ok:
            raise FileNotFoundError(f"{path}: {result.stderr.strip()}")
        return result.stdout

    async def write_file(self, path: str, content: str) -> None:
        parent = dirname(path) or "."
        command = f"mkdir -p {shlex.quote(parent)} && cat > {shlex.quote(path)}"
        result = await _run(
            self._exec_args(command, interactive=True), stdin=content
        )
        if not result.ok:
            raise OSError(f"Failed to write {path}: {result.stderr.strip()}")

    async def list_files(self, pattern: str = "**/*") -> list[str]:
        result = await _run(self._exec_args("find . -type f"))
        if not result.ok:
            raise OSError(f"Failed to list files: {result.stderr.strip()}")
        paths = []
        for line in result.stdout.splitlines():
            rel = line.strip().removeprefix("./")
            if rel and match_path(rel, pattern):
                paths.append(rel)
        return sorted(paths)


class ContainerBackend:
    """Backend that runs each cell in its own container."""

    def __init__(
        self,
        image: str = "node:20",
        runtime: str = "auto",
        workdir: str = "/workspace",
        max_cells: int | None = None,
        run_args: Sequence[str] = (),
    ) -> None:
        self._image = image
        self._preferred_runtime = runtime
        self._runtime: str | None = None
        self._workdir = workdir
        self._max_cells = max_cells
        self._run_args = list(run_args)

    @property
    def name(self) -> str:
        return "docker"

    @property
    def max_cells(self) -> int | None:
        return self._max_cells

    async def _ensure_runtime(self) -> str:
        if self._runtime is None:
            self._runtime = await asyncio.to_thread(
                detect_runtime, self._preferred_runtime
            )
        if self._runtime is None:
            raise ProvisionError("no container runtime available")
        return self._runtime

    async def create(self) -> ContainerCell:
        runtime = await self._ensure_runtime()
        name = f"eval-cell-{uuid.uuid4().hex[:8]}"
        result = await _run([
            runtime, "run", "-d", "--name", name, "-w", self._workdir,
            *self._run_args, self._image, "sleep", "infinity",
        ])
        if not result.ok:
            raise ProvisionError(
                f"{runtime} run failed for {self._image}: {result.stderr.strip()}"
            )
        container_id = result.stdout.strip()
        logger.debug("Started container %s (%s)", name, container_id[:12])
        return ContainerCell(runtime, container_id, self._workdir)

    async def destroy(self, handle: CellHandle) -> None:
        if not isinstance(handle, ContainerCell):
            raise TypeError(f"Not a container cell: {handle!r}")
        result = await _run([handle.runtime, "rm", "-f", handle.container_id])
        if not result.ok:
            raise OSError(
                f"{handle.runtime} rm failed for {handle.id}: {result.stderr.strip()}"
            )

    @classmethod
    def from_config(cls, config: BackendConfig) -> ContainerBackend:
        return cls(
            image=config.image,
            runtime=config.runtime,
            workdir=config.workdir,
            max_cells=config.max_cells,
            run_args=config.options.get("run_args", ()),
        )
