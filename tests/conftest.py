"""Pytest fixtures for eval orchestrator tests."""

import pytest
import respx

from eval_orchestrator.cells import CellManager
from eval_orchestrator.config import StageTimeouts
from eval_orchestrator.models import RunRequest, TaskDefinition, VariantConfig
from eval_orchestrator.pipeline import PipelineExecutor
from fakes import ASSERT, BUILD, STUB_SOURCE, FakeBackend, assert_handler, build_handler

# =============================================================================
# Tasks and variants
# =============================================================================


@pytest.fixture
def greet_task():
    """A task whose build and assertion suite check src/index.ts."""
    return TaskDefinition(
        name="greet",
        prompt="Implement greet(name) so it returns `Hello, <name>`.",
        files={
            "package.json": '{"name": "greet", "scripts": {"build": "tsc"}}',
            "src/index.ts": STUB_SOURCE,
        },
        scripts=("build",),
        assertions="import { greet } from './src/index';\n",
    )


@pytest.fixture
def variant():
    return VariantConfig(name="stub", agent="stub")


@pytest.fixture
def request_for(greet_task, variant):
    def make(repetition: int = 1, task=None, variant_config=None) -> RunRequest:
        return RunRequest(
            task=task or greet_task,
            variant=variant_config or variant,
            repetition=repetition,
        )

    return make


# =============================================================================
# Backend and executor
# =============================================================================


@pytest.fixture
def backend():
    """Fake backend that builds and asserts on the greet task."""
    return FakeBackend(handlers={BUILD: build_handler, ASSERT: assert_handler})


@pytest.fixture
def mock_results_api():
    """Mock HTTP results API responses."""
    with respx.mock(assert_all_called=False) as respx_mock:
        yield respx_mock


@pytest.fixture
def make_executor(backend):
    def make(agents, timeouts=None, target=None) -> PipelineExecutor:
        return PipelineExecutor(
            cells=CellManager(target or backend, provision_timeout=5.0),
            agents={a.name: a for a in agents},
            timeouts=timeouts or StageTimeouts(),
        )

    return make
