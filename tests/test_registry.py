"""Tests for task discovery and loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from eval_orchestrator.errors import ConfigError
from eval_orchestrator.models import TaskDefinition
from eval_orchestrator.tasks.registry import TaskRegistry, load_task


def make_task_dir(root: Path, name: str, manifest: str | None = None, **files: str) -> Path:
    task_dir = root / name
    (task_dir / "src").mkdir(parents=True)
    (task_dir / "PROMPT.md").write_text(f"Fix {name}.\n")
    (task_dir / "EVAL.ts").write_text("test('works', () => {});\n")
    (task_dir / "src" / "index.ts").write_text("export const x = 1;\n")
    if manifest is not None:
        (task_dir / "task.yaml").write_text(manifest)
    for rel, content in files.items():
        path = task_dir / rel.replace("__", "/")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return task_dir


class TestLoadTask:
    def test_minimal_task(self, tmp_path):
        task = load_task(make_task_dir(tmp_path, "greet"))

        assert task.name == "greet"
        assert task.prompt == "Fix greet.\n"
        assert task.assertion_path == "EVAL.ts"
        assert "works" in task.assertions
        assert task.files == {"src/index.ts": "export const x = 1;\n"}
        assert task.scripts == ()
        assert task.install_command is None

    def test_prompt_manifest_and_assertions_are_not_fixture_files(self, tmp_path):
        task = load_task(make_task_dir(tmp_path, "greet", manifest="scripts: [build]\n"))
        assert set(task.files) == {"src/index.ts"}

    def test_manifest_fields(self, tmp_path):
        manifest = (
            "name: greeting\n"
            "scripts: [build, lint]\n"
            "install_command: pnpm install\n"
        )
        task = load_task(make_task_dir(tmp_path, "greet", manifest=manifest))

        assert task.name == "greeting"
        assert task.scripts == ("build", "lint")
        assert task.install_command == "pnpm install"

    def test_package_json_implies_npm_install(self, tmp_path):
        task = load_task(make_task_dir(tmp_path, "greet", **{"package.json": "{}"}))
        assert task.install_command == "npm install"
        assert task.files["package.json"] == "{}"

    def test_install_can_be_disabled(self, tmp_path):
        task_dir = make_task_dir(
            tmp_path, "greet", manifest="install_command: null\n", **{"package.json": "{}"}
        )
        assert load_task(task_dir).install_command is None

    def test_skips_dependency_directories(self, tmp_path):
        task_dir = make_task_dir(
            tmp_path, "greet", **{"node_modules__left-pad__index.js": "module.exports = 1"}
        )
        assert "node_modules/left-pad/index.js" not in load_task(task_dir).files

    def test_skips_binary_files(self, tmp_path):
        task_dir = make_task_dir(tmp_path, "greet")
        (task_dir / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n\xff\xfe")
        assert "logo.png" not in load_task(task_dir).files

    def test_missing_prompt(self, tmp_path):
        task_dir = make_task_dir(tmp_path, "greet")
        (task_dir / "PROMPT.md").unlink()
        with pytest.raises(ConfigError, match="PROMPT.md"):
            load_task(task_dir)

    def test_missing_assertions(self, tmp_path):
        task_dir = make_task_dir(tmp_path, "greet")
        (task_dir / "EVAL.ts").unlink()
        with pytest.raises(ConfigError, match="assertion"):
            load_task(task_dir)

    def test_ambiguous_assertions(self, tmp_path):
        task_dir = make_task_dir(tmp_path, "greet", **{"EVAL.tsx": "test()"})
        with pytest.raises(ConfigError, match="several assertion files"):
            load_task(task_dir)

    def test_declared_assertion_path(self, tmp_path):
        task_dir = make_task_dir(
            tmp_path, "greet",
            manifest="assertion_path: tests/eval.test.ts\n",
            **{"tests__eval.test.ts": "test('declared', () => {});"},
        )
        task = load_task(task_dir)
        assert task.assertion_path == "tests/eval.test.ts"
        assert "declared" in task.assertions
        assert "tests/eval.test.ts" not in task.files

    def test_bad_scripts(self, tmp_path):
        task_dir = make_task_dir(tmp_path, "greet", manifest="scripts: build\n")
        with pytest.raises(ConfigError, match="scripts"):
            load_task(task_dir)


class TestTaskRegistry:
    def test_discovers_task_directories(self, tmp_path):
        make_task_dir(tmp_path, "b-task")
        make_task_dir(tmp_path, "a-task")
        (tmp_path / "notes").mkdir()

        registry = TaskRegistry(tmp_path)

        assert registry.count() == 2
        assert [t.name for t in registry.list_tasks()] == ["a-task", "b-task"]
        assert registry.get("a-task").prompt == "Fix a-task.\n"
        assert registry.get("notes") is None

    def test_select_by_name(self, tmp_path):
        make_task_dir(tmp_path, "a-task")
        make_task_dir(tmp_path, "b-task")
        registry = TaskRegistry(tmp_path)

        assert [t.name for t in registry.list_tasks(["b-task"])] == ["b-task"]
        with pytest.raises(ConfigError, match="Unknown tasks"):
            registry.list_tasks(["missing"])

    def test_duplicate_names(self, tmp_path):
        make_task_dir(tmp_path, "one", manifest="name: same\n")
        make_task_dir(tmp_path, "two", manifest="name: same\n")
        with pytest.raises(ConfigError, match="Duplicate task name"):
            TaskRegistry(tmp_path).count()

    def test_missing_directory_is_empty(self, tmp_path):
        assert TaskRegistry(tmp_path / "nope").list_tasks() == []

    def test_register_and_clear(self, tmp_path):
        registry = TaskRegistry(tmp_path)
        registry.register(TaskDefinition(name="inline", prompt="p"))

        assert registry.get("inline") is not None
        registry.clear()
        assert registry.get("inline") is None
