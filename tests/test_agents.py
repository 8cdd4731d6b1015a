"""Tests for CLI agent adapters."""

import pytest

from eval_orchestrator.agents import PRESETS, AgentAdapter, CommandAgent, create_agent
from eval_orchestrator.backends.base import CommandResult
from eval_orchestrator.config import AgentConfig
from eval_orchestrator.errors import ConfigError
from fakes import FakeBackend


class TestCommandAgent:
    def test_build_command_puts_prompt_last(self):
        agent = CommandAgent("claude_code", "claude", args=["--print"])
        command = agent.build_command("Fix the bug's cause", model="opus")
        assert command == "claude --model opus --print 'Fix the bug'\"'\"'s cause'"

    def test_build_command_without_model(self):
        agent = CommandAgent("custom", "./agent.sh", model_flag=None)
        assert agent.build_command("go", model="ignored") == "./agent.sh go"

    @pytest.mark.asyncio
    async def test_run_in_cell(self):
        agent = CommandAgent("codex", "codex", args=["exec"], env={"A": "1"})
        backend = FakeBackend(handlers={
            agent.build_command("do it", "o4"): lambda cell: CommandResult(
                stdout="edited 2 files", stderr="warning: slow"
            ),
        })
        cell = await backend.create()

        result = await agent.run("do it", cell, model="o4", env={"B": "2"})

        assert result.completed
        assert result.transcript == "edited 2 files\n--- stderr ---\nwarning: slow"
        assert result.metadata == {"exit_code": 0}
        assert cell.envs == [{"A": "1", "B": "2"}]

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_not_completed(self):
        agent = CommandAgent("codex", "codex")
        backend = FakeBackend(handlers={
            agent.build_command("x"): lambda cell: CommandResult(exit_code=1),
        })
        result = await agent.run("x", await backend.create())
        assert not result.completed


class TestCreateAgent:
    @pytest.mark.parametrize("name", sorted(PRESETS))
    def test_presets(self, name):
        agent = create_agent(AgentConfig(name=name))
        assert isinstance(agent, AgentAdapter)
        assert agent.name == name
        assert agent.build_command("p").startswith(PRESETS[name].command)

    def test_override_preset(self):
        agent = create_agent(AgentConfig(name="claude_code", command="/opt/claude", args=["-p"]))
        assert agent.build_command("p") == "/opt/claude -p p"

    def test_custom_agent(self):
        agent = create_agent(AgentConfig(name="mine", command="./run-agent", model_flag="-m"))
        assert agent.build_command("p", "big") == "./run-agent -m big p"

    def test_unknown_agent_without_command(self):
        with pytest.raises(ConfigError, match="no preset"):
            create_agent(AgentConfig(name="mystery"))
