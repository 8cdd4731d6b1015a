"""Agent adapters.

Agents are looked up by name: known CLI presets plus any agent that
declares its own ``command`` in configuration.
"""

from __future__ import annotations

from ..config import AgentConfig
from ..errors import ConfigError
from .base import AgentAdapter, AgentResult
from .command import PRESETS, AgentPreset, CommandAgent


def create_agent(config: AgentConfig) -> AgentAdapter:
    """Factory: build the agent adapter described by *config*."""
    try:
        return CommandAgent.from_config(config)
    except ValueError as e:
        raise ConfigError(str(e)) from e


__all__ = [
    "PRESETS",
    "AgentAdapter",
    "AgentPreset",
    "AgentResult",
    "CommandAgent",
    "create_agent",
]
