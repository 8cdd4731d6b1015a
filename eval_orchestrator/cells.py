"""Cell lifecycle management.

Provisions cells for a task (allocate, copy the starting file tree,
install dependencies) and tears them down. ``release`` never raises, so
it is safe on every cleanup path including cancellation. Use the
``cell()`` context manager to pair each acquire with exactly one release.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from .backends.base import ExecutionBackend
from .errors import ProvisionError
from .models import Cell, CellState, TaskDefinition

logger = logging.getLogger(__name__)


class CellManager:
    """Creates, provisions and destroys cells on one execution backend."""

    def __init__(
        self,
        backend: ExecutionBackend,
        provision_timeout: float | None = 600.0,
    ) -> None:
        self._backend = backend
        self._provision_timeout = provision_timeout

    @property
    def backend(self) -> ExecutionBackend:
        return self._backend

    async def acquire(self, task: TaskDefinition) -> Cell:
        """Provision a fresh cell holding *task*'s starting files.

        Raises:
            ProvisionError: allocation, file copy or dependency install
                failed, or provisioning exceeded its time bound. A cell
                allocated before the failure is destroyed first.
        """
        try:
            handle = await asyncio.wait_for(
                self._backend.create(), timeout=self._provision_timeout
            )
        except ProvisionError:
            raise
        except TimeoutError as e:
            raise ProvisionError(
                f"Cell allocation timed out after {self._provision_timeout}s"
            ) from e
        except Exception as e:
            raise ProvisionError(f"Backend could not allocate a cell: {e}") from e

        cell = Cell(id=handle.id, handle=handle, task_name=task.name)
        try:
            await asyncio.wait_for(
                self._provision(cell, task), timeout=self._provision_timeout
            )
        except ProvisionError:
            await self.release(cell)
            raise
        except TimeoutError as e:
            await self.release(cell)
            raise ProvisionError(
                f"Provisioning timed out after {self._provision_timeout}s"
            ) from e
        except Exception as e:
            await self.release(cell)
            raise ProvisionError(f"Fixture copy failed: {e}") from e
        except asyncio.CancelledError:
            await self.release(cell)
            raise

        logger.info("Cell %s ready for task %s", cell.id, task.name)
        return cell

    async def _provision(self, cell: Cell, task: TaskDefinition) -> None:
        for path, content in task.files.items():
            await cell.handle.write_file(path, content)

        if task.install_command:
            result = await cell.handle.exec(task.install_command)
            if not result.ok:
                raise ProvisionError(
                    f"Dependency install '{task.install_command}' exited "
                    f"{result.exit_code}: {result.stderr.strip()[-2000:]}"
                )

    async def release(self, cell: Cell) -> None:
        """Destroy *cell*. Backend errors are logged, never raised."""
        if cell.state == CellState.DESTROYED:
            logger.warning("Cell %s already released", cell.id)
            return
        cell.state = CellState.DESTROYED
        try:
            await self._backend.destroy(cell.handle)
        except Exception:
            logger.exception("Failed to destroy cell %s", cell.id)
        else:
            logger.info("Cell %s released", cell.id)

    @asynccontextmanager
    async def cell(self, task: TaskDefinition) -> AsyncIterator[Cell]:
        """Scoped cell: released on every exit path, including cancellation."""
        cell = await self.acquire(task)
        try:
            yield cell
        finally:
            await self.release(cell)
