"""Engine configuration for evaluation runs.

Defines everything needed to run an evaluation: task selection, agent
presets, variants, execution backend, concurrency, repetition policy,
stage timeouts and result sinks.

Environment variables (applied by ``EngineConfig.apply_env``):
    EVAL_BACKEND: Execution backend name (default: "local")
    EVAL_CONCURRENCY: Maximum simultaneous cells (default: 4)
    EVAL_REPETITIONS: Repetitions per (task, variant) (default: 1)
    EVAL_EARLY_EXIT: Stop a variant after its first pass (default: false)
    EVAL_AGENT_TIMEOUT: Agent phase bound in seconds (default: 1800)
    EVAL_OUTPUT_DIR: Where reports and run records are written
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)


class InFlightPolicy(str, Enum):
    """What early exit does to repetitions that already started."""

    FINISH = "finish"  # let them reach a terminal state normally
    CANCEL = "cancel"  # stop them at their next stage boundary


@dataclass
class StageTimeouts:
    """Upper bounds (seconds) for each suspension point of a pipeline."""

    provision: float = 600.0
    setup: float = 300.0
    agent: float = 1800.0
    script: float = 600.0
    assertions: float = 600.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StageTimeouts:
        defaults = cls()
        return cls(
            provision=float(data.get("provision", defaults.provision)),
            setup=float(data.get("setup", defaults.setup)),
            agent=float(data.get("agent", defaults.agent)),
            script=float(data.get("script", defaults.script)),
            assertions=float(data.get("assertions", defaults.assertions)),
        )

    def as_dict(self) -> dict[str, float]:
        return {
            "provision": self.provision,
            "setup": self.setup,
            "agent": self.agent,
            "script": self.script,
            "assertions": self.assertions,
        }


@dataclass
class BackendConfig:
    """Execution backend selection and options."""

    name: str = "local"  # "local" or "docker"
    max_cells: int | None = None  # backend-wide allocation ceiling
    image: str = "node:20"
    runtime: str = "auto"  # container runtime: "auto", "docker", "podman"
    workdir: str = "/workspace"
    base_dir: Path | None = None  # parent directory for local cells
    options: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BackendConfig:
        base_dir = data.get("base_dir")
        return cls(
            name=data.get("name", "local"),
            max_cells=data.get("max_cells"),
            image=data.get("image", "node:20"),
            runtime=data.get("runtime", "auto"),
            workdir=data.get("workdir", "/workspace"),
            base_dir=Path(base_dir) if base_dir else None,
            options=dict(data.get("options", {})),
        )


@dataclass
class AgentConfig:
    """Configuration for an agent adapter preset."""

    name: str  # e.g. "claude_code", "codex", "gemini"
    command: str | None = None  # CLI command; preset default when None
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    model_flag: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AgentConfig:
        if "name" not in data:
            raise ConfigError(f"Agent entry is missing 'name': {dict(data)}")
        return cls(
            name=data["name"],
            command=data.get("command"),
            args=list(data.get("args", [])),
            env=dict(data.get("env", {})),
            model_flag=data.get("model_flag"),
        )


@dataclass
class VariantSpec:
    """Declarative variant as written in configuration files.

    Turned into a ``VariantConfig`` by the harness, which converts
    ``setup_commands`` into a setup hook.
    """

    name: str
    agent: str
    model: str | None = None
    setup_commands: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    agent_timeout_seconds: float | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VariantSpec:
        if "agent" not in data:
            raise ConfigError(f"Variant entry is missing 'agent': {dict(data)}")
        name = data.get("name") or (
            f"{data['agent']}:{data['model']}" if data.get("model") else data["agent"]
        )
        timeout = data.get("agent_timeout_seconds")
        return cls(
            name=name,
            agent=data["agent"],
            model=data.get("model"),
            setup_commands=list(data.get("setup_commands", [])),
            env={k: str(v) for k, v in data.get("env", {}).items()},
            agent_timeout_seconds=float(timeout) if timeout is not None else None,
        )


@dataclass
class SinkConfig:
    """Where run records and group summaries are written."""

    kind: str = "jsonl"  # "jsonl", "http" or "memory"
    url: str | None = None  # for "http"
    headers: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 30.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SinkConfig:
        return cls(
            kind=data.get("kind", "jsonl"),
            url=data.get("url"),
            headers=dict(data.get("headers", {})),
            timeout_seconds=float(data.get("timeout_seconds", 30.0)),
        )


@dataclass
class EngineConfig:
    """Complete configuration for an evaluation run."""

    # Task selection
    tasks_dir: Path = field(default_factory=lambda: Path("evals"))
    task_names: list[str] | None = None  # specific tasks (default: all)

    # What to run
    variants: list[VariantSpec] = field(default_factory=list)
    agents: list[AgentConfig] = field(default_factory=list)
    backend: BackendConfig = field(default_factory=BackendConfig)

    # Scheduling
    concurrency_limit: int = 4
    repetitions: int = 1
    early_exit: bool = False
    in_flight_policy: InFlightPolicy = InFlightPolicy.FINISH
    timeouts: StageTimeouts = field(default_factory=StageTimeouts)

    # Commands run inside the cell
    script_command: str = "npm run {script}"
    assertion_command: str = "npx vitest run {path} --reporter=json"

    # Output
    output_dir: Path = field(default_factory=lambda: Path("eval-results"))
    run_id: str | None = None  # auto-generated if not provided
    sink: SinkConfig = field(default_factory=SinkConfig)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.concurrency_limit < 1:
            raise ConfigError("concurrency_limit must be at least 1")
        if self.repetitions < 1:
            raise ConfigError("repetitions must be at least 1")
        if "{script}" not in self.script_command:
            raise ConfigError("script_command must contain '{script}'")
        names = [v.name for v in self.variants]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigError(f"Duplicate variant names: {duplicates}")

    @classmethod
    def from_yaml(cls, path: str | Path) -> EngineConfig:
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: top-level YAML must be a mapping")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> EngineConfig:
        try:
            policy = InFlightPolicy(data.get("in_flight_policy", "finish"))
        except ValueError as e:
            raise ConfigError(str(e)) from e

        return cls(
            tasks_dir=Path(data.get("tasks_dir", "evals")),
            task_names=data.get("task_names"),
            variants=[VariantSpec.from_dict(v) for v in data.get("variants", [])],
            agents=[AgentConfig.from_dict(a) for a in data.get("agents", [])],
            backend=BackendConfig.from_dict(data.get("backend", {})),
            concurrency_limit=int(data.get("concurrency_limit", 4)),
            repetitions=int(data.get("repetitions", 1)),
            early_exit=bool(data.get("early_exit", False)),
            in_flight_policy=policy,
            timeouts=StageTimeouts.from_dict(data.get("timeouts", {})),
            script_command=data.get("script_command", "npm run {script}"),
            assertion_command=data.get(
                "assertion_command", "npx vitest run {path} --reporter=json"
            ),
            output_dir=Path(data.get("output_dir", "eval-results")),
            run_id=data.get("run_id"),
            sink=SinkConfig.from_dict(data.get("sink", {})),
        )

    def apply_env(self, environ: Mapping[str, str] | None = None) -> EngineConfig:
        """Override fields from ``EVAL_*`` environment variables in place."""
        env = os.environ if environ is None else environ

        if "EVAL_BACKEND" in env:
            self.backend.name = env["EVAL_BACKEND"]
        if "EVAL_CONCURRENCY" in env:
            self.concurrency_limit = int(env["EVAL_CONCURRENCY"])
        if "EVAL_REPETITIONS" in env:
            self.repetitions = int(env["EVAL_REPETITIONS"])
        if "EVAL_EARLY_EXIT" in env:
            self.early_exit = env["EVAL_EARLY_EXIT"].lower() in ("1", "true", "yes")
        if "EVAL_AGENT_TIMEOUT" in env:
            self.timeouts.agent = float(env["EVAL_AGENT_TIMEOUT"])
        if "EVAL_OUTPUT_DIR" in env:
            self.output_dir = Path(env["EVAL_OUTPUT_DIR"])

        self.validate()
        logger.debug(
            "Engine config: backend=%s concurrency=%d repetitions=%d early_exit=%s",
            self.backend.name, self.concurrency_limit,
            self.repetitions, self.early_exit,
        )
        return self

    def agent_config(self, name: str) -> AgentConfig:
        """Configured agent preset by name, or a bare preset."""
        for agent in self.agents:
            if agent.name == name:
                return agent
        return AgentConfig(name=name)
