"""Execution backend adapters.

Backends are selected by name; adding one means adding an entry to
``BACKENDS``.
"""

from __future__ import annotations

from collections.abc import Callable

from ..config import BackendConfig
from ..errors import ConfigError
from .base import CellHandle, CommandResult, ExecutionBackend
from .container import ContainerBackend, ContainerCell, detect_runtime
from .local import LocalBackend, LocalCell

BACKENDS: dict[str, Callable[[BackendConfig], ExecutionBackend]] = {
    "local": LocalBackend.from_config,
    "docker": ContainerBackend.from_config,
}


def create_backend(config: BackendConfig) -> ExecutionBackend:
    """Factory: build the backend named in *config*."""
    try:
        factory = BACKENDS[config.name]
    except KeyError:
        raise ConfigError(
            f"Unknown execution backend: {config.name} "
            f"(available: {', '.join(sorted(BACKENDS))})"
        ) from None
    return factory(config)


__all__ = [
    "BACKENDS",
    "CellHandle",
    "CommandResult",
    "ContainerBackend",
    "ContainerCell",
    "ExecutionBackend",
    "LocalBackend",
    "LocalCell",
    "create_backend",
    "detect_runtime",
]
