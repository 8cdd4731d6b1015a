"""Task registry for discovering and loading evaluation tasks.

Each task is a directory under the tasks root:

    <tasks_dir>/<task-name>/
        PROMPT.md       prompt given to the agent
        EVAL.ts         assertion suite (any EVAL.* file)
        task.yaml       optional: scripts, install_command, assertion_path
        ...             everything else is the starting file tree
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from ..errors import ConfigError
from ..models import TaskDefinition

logger = logging.getLogger(__name__)

PROMPT_FILE = "PROMPT.md"
MANIFEST_FILE = "task.yaml"
ASSERTION_GLOB = "EVAL.*"
SKIP_DIRS = frozenset({".git", "node_modules", "__pycache__", ".venv", "dist"})


def _load_manifest(task_dir: Path) -> dict[str, Any]:
    path = task_dir / MANIFEST_FILE
    if not path.is_file():
        return {}
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping")
    return data


def _find_assertion_file(task_dir: Path, manifest: dict[str, Any]) -> Path:
    declared = manifest.get("assertion_path")
    if declared:
        path = task_dir / declared
        if not path.is_file():
            raise ConfigError(f"{task_dir.name}: assertion file {declared} not found")
        return path
    candidates = sorted(p for p in task_dir.glob(ASSERTION_GLOB) if p.is_file())
    if not candidates:
        raise ConfigError(f"{task_dir.name}: no {ASSERTION_GLOB} assertion file")
    if len(candidates) > 1:
        raise ConfigError(
            f"{task_dir.name}: several assertion files "
            f"({', '.join(p.name for p in candidates)}); set assertion_path"
        )
    return candidates[0]


def _collect_files(task_dir: Path, exclude: set[str]) -> dict[str, str]:
    files: dict[str, str] = {}
    for path in sorted(task_dir.rglob("*")):
        rel = path.relative_to(task_dir)
        if any(part in SKIP_DIRS for part in rel.parts):
            continue
        if not path.is_file() or rel.as_posix() in exclude:
            continue
        try:
            files[rel.as_posix()] = path.read_text()
        except UnicodeDecodeError:
            logger.warning("Skipping non-text fixture file %s", path)
    return files


def load_task(task_dir: str | Path) -> TaskDefinition:
    """Build a TaskDefinition from a task directory.

    Raises:
        ConfigError: missing prompt or assertion file, or a bad manifest.
    """
    task_dir = Path(task_dir)
    prompt_path = task_dir / PROMPT_FILE
    if not prompt_path.is_file():
        raise ConfigError(f"{task_dir.name}: missing {PROMPT_FILE}")

    manifest = _load_manifest(task_dir)
    assertion_file = _find_assertion_file(task_dir, manifest)
    assertion_rel = assertion_file.relative_to(task_dir).as_posix()

    files = _collect_files(
        task_dir, exclude={PROMPT_FILE, MANIFEST_FILE, assertion_rel}
    )

    scripts = manifest.get("scripts", [])
    if not isinstance(scripts, list) or not all(isinstance(s, str) for s in scripts):
        raise ConfigError(f"{task_dir.name}: 'scripts' must be a list of names")

    if "install_command" in manifest:
        install_command = manifest["install_command"]
    else:
        install_command = "npm install" if "package.json" in files else None

    return TaskDefinition(
        name=manifest.get("name", task_dir.name),
        prompt=prompt_path.read_text(),
        files=files,
        scripts=tuple(scripts),
        assertions=assertion_file.read_text(),
        assertion_path=assertion_rel,
        install_command=install_command,
    )


class TaskRegistry:
    """Registry for discovering and loading evaluation tasks.

    Scans the tasks directory lazily; every subdirectory holding a
    PROMPT.md is a task.
    """

    def __init__(self, tasks_dir: str | Path) -> None:
        self._tasks_dir = Path(tasks_dir)
        self._tasks: dict[str, TaskDefinition] = {}
        self._loaded = False

    def _ensure_loaded(self) -> None:
        """Lazy-load tasks from disk."""
        if self._loaded:
            return
        self._loaded = True
        if not self._tasks_dir.is_dir():
            logger.warning("Tasks directory %s does not exist", self._tasks_dir)
            return
        for task_dir in sorted(p for p in self._tasks_dir.iterdir() if p.is_dir()):
            if not (task_dir / PROMPT_FILE).is_file():
                continue
            task = load_task(task_dir)
            if task.name in self._tasks:
                raise ConfigError(f"Duplicate task name: {task.name}")
            self._tasks[task.name] = task
        logger.info("Discovered %d tasks in %s", len(self._tasks), self._tasks_dir)

    def register(self, task: TaskDefinition) -> None:
        """Register a task programmatically."""
        self._tasks[task.name] = task

    def get(self, name: str) -> TaskDefinition | None:
        self._ensure_loaded()
        return self._tasks.get(name)

    def list_tasks(self, names: list[str] | None = None) -> list[TaskDefinition]:
        """Tasks sorted by name, optionally restricted to *names*.

        Raises:
            ConfigError: a requested name does not exist.
        """
        self._ensure_loaded()
        if names is None:
            return [self._tasks[n] for n in sorted(self._tasks)]
        missing = [n for n in names if n not in self._tasks]
        if missing:
            raise ConfigError(f"Unknown tasks: {missing}")
        return [self._tasks[n] for n in names]

    def count(self) -> int:
        self._ensure_loaded()
        return len(self._tasks)

    def clear(self) -> None:
        self._tasks.clear()
        self._loaded = False
