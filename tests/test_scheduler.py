"""Tests for the run scheduler: concurrency, early exit, cancellation."""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from eval_orchestrator.config import InFlightPolicy
from eval_orchestrator.models import FailureStage, VariantConfig
from eval_orchestrator.scheduler import RunScheduler
from eval_orchestrator.sinks import MemoryResultSink
from fakes import GOOD_SOURCE, ScriptedAgent

GOOD = {"src/index.ts": GOOD_SOURCE}


def passes_on(*calls):
    return lambda n: GOOD if n in calls else {}


class BrokenSink(MemoryResultSink):
    async def write_outcome(self, outcome):
        raise OSError("disk full")


class TestEarlyExit:
    @pytest.mark.asyncio
    async def test_stops_after_first_pass(self, make_executor, greet_task, variant):
        agent = ScriptedAgent(writes=passes_on(2))
        scheduler = RunScheduler(make_executor([agent]))

        summaries = await scheduler.run(
            greet_task, [variant], repetitions=5, concurrency_limit=1, early_exit=True
        )
        summary = summaries["stub"]

        assert summary.total_attempts == 2
        assert summary.passed_count == 1
        assert summary.pass_rate == 0.5
        assert summary.first_pass_index == 2
        assert summary.stopped_early
        assert summary.configured_repetitions == 5
        assert agent.calls == 2

    @pytest.mark.asyncio
    async def test_without_early_exit_every_repetition_runs(self, make_executor, greet_task, variant):
        agent = ScriptedAgent(writes=passes_on(2))
        summaries = await RunScheduler(make_executor([agent])).run(
            greet_task, [variant], repetitions=5, concurrency_limit=1, early_exit=False
        )
        summary = summaries["stub"]

        assert summary.total_attempts == 5
        assert summary.passed_count == 1
        assert summary.first_pass_index == 2
        assert not summary.stopped_early
        assert summary.failure_breakdown == {"assertions": 4}
        assert agent.calls == 5

    @pytest.mark.asyncio
    async def test_no_pass_runs_everything(self, make_executor, greet_task, variant):
        agent = ScriptedAgent()
        summaries = await RunScheduler(make_executor([agent])).run(
            greet_task, [variant], repetitions=3, concurrency_limit=1, early_exit=True
        )
        summary = summaries["stub"]

        assert summary.total_attempts == 3
        assert summary.first_pass_index is None
        assert not summary.stopped_early

    @pytest.mark.asyncio
    async def test_summary_follows_repetition_order_not_completion(self, backend, make_executor, greet_task, variant):
        # all three are dequeued before any of them passes
        agent = ScriptedAgent(writes=GOOD)
        sink = MemoryResultSink()
        scheduler = RunScheduler(make_executor([agent]), sink=sink)

        summaries = await scheduler.run(
            greet_task, [variant], repetitions=3, concurrency_limit=3,
            early_exit=True, in_flight=InFlightPolicy.FINISH,
        )
        summary = summaries["stub"]

        assert len(sink.outcomes) == 3
        assert all(o.passed for o in sink.outcomes)
        assert summary.first_pass_index == 1
        assert summary.total_attempts == 1
        assert backend.balanced

    @pytest.mark.asyncio
    async def test_cancel_policy_stops_in_flight_repetitions(self, backend, make_executor, greet_task, variant):
        class LastFast(ScriptedAgent):
            started = 0

            async def run(self, prompt, cell, model=None, env=None):
                self.started += 1
                if self.started < 3:
                    await asyncio.sleep(0.1)
                return await super().run(prompt, cell, model=model, env=env)

        sink = MemoryResultSink()
        scheduler = RunScheduler(make_executor([LastFast(writes=GOOD)]), sink=sink)

        summaries = await scheduler.run(
            greet_task, [variant], repetitions=3, concurrency_limit=3,
            early_exit=True, in_flight=InFlightPolicy.CANCEL,
        )

        stages = sorted(o.failure_stage.value if o.failure_stage else "passed" for o in sink.outcomes)
        assert stages == ["cancelled", "cancelled", "passed"]
        summary = summaries["stub"]
        # cancelled repetitions are not attempts
        assert summary.total_attempts == 1
        assert summary.passed_count == 1
        assert summary.pass_rate == 1.0
        assert summary.first_pass_index == 1
        assert summary.cancelled_count == 2
        assert summary.failure_breakdown == {}
        assert backend.balanced

    @pytest.mark.asyncio
    async def test_pending_repetitions_skipped_while_pass_is_persisted(self, backend, make_executor, greet_task, variant):
        class SlowFirstFailure(ScriptedAgent):
            async def run(self, prompt, cell, model=None, env=None):
                result = await super().run(prompt, cell, model=model, env=env)
                if result.transcript == "agent call 1":
                    await asyncio.sleep(0.05)
                return result

        class SlowPassSink(MemoryResultSink):
            async def write_outcome(self, outcome):
                if outcome.passed:
                    await asyncio.sleep(0.3)
                await super().write_outcome(outcome)

        agent = SlowFirstFailure(writes=passes_on(2))
        sink = SlowPassSink()
        summaries = await RunScheduler(make_executor([agent]), sink=sink).run(
            greet_task, [variant], repetitions=5, concurrency_limit=2, early_exit=True
        )

        assert agent.calls == 2
        assert sorted(o.repetition for o in sink.outcomes) == [1, 2]
        assert summaries["stub"].passed_count == 1
        assert summaries["stub"].stopped_early
        assert len(backend.created) == 2
        assert backend.balanced


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_live_cells_never_exceed_limit(self, backend, make_executor, greet_task, variant):
        agent = ScriptedAgent(writes=GOOD, delay=0.02)
        await RunScheduler(make_executor([agent])).run(
            greet_task, [variant], repetitions=6, concurrency_limit=2, early_exit=False
        )

        assert backend.peak_live == 2
        assert len(backend.created) == 6
        assert backend.balanced

    @pytest.mark.asyncio
    async def test_limit_above_backend_ceiling_is_rejected(self, make_executor, greet_task, variant):
        scheduler = RunScheduler(make_executor([ScriptedAgent()]), max_cells=1)
        with pytest.raises(ValueError, match="ceiling"):
            await scheduler.run(
                greet_task, [variant], repetitions=1, concurrency_limit=2, early_exit=False
            )

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, make_executor, greet_task, variant):
        scheduler = RunScheduler(make_executor([ScriptedAgent()]))
        with pytest.raises(ValueError, match="concurrency_limit"):
            await scheduler.run(greet_task, [variant], 1, 0, False)
        with pytest.raises(ValueError, match="repetitions"):
            await scheduler.run(greet_task, [variant], 0, 1, False)
        with pytest.raises(ValueError, match="Duplicate variant"):
            await scheduler.run(greet_task, [variant, variant], 1, 1, False)


class TestGroups:
    @pytest.mark.asyncio
    async def test_variants_are_summarized_separately(self, make_executor, greet_task):
        good = ScriptedAgent(name="good", writes=GOOD)
        idle = ScriptedAgent(name="idle")
        variants = [
            VariantConfig(name="good", agent="good"),
            VariantConfig(name="idle", agent="idle"),
        ]

        summaries = await RunScheduler(make_executor([good, idle])).run(
            greet_task, variants, repetitions=2, concurrency_limit=2, early_exit=False
        )

        assert set(summaries) == {"good", "idle"}
        assert summaries["good"].pass_rate == 1.0
        assert summaries["idle"].pass_rate == 0.0
        assert summaries["idle"].failure_breakdown == {"assertions": 2}

    @pytest.mark.asyncio
    async def test_early_exit_is_per_variant(self, make_executor, greet_task):
        good = ScriptedAgent(name="good", writes=GOOD)
        idle = ScriptedAgent(name="idle")
        variants = [
            VariantConfig(name="good", agent="good"),
            VariantConfig(name="idle", agent="idle"),
        ]

        summaries = await RunScheduler(make_executor([good, idle])).run(
            greet_task, variants, repetitions=3, concurrency_limit=1, early_exit=True
        )

        assert summaries["good"].total_attempts == 1
        assert summaries["idle"].total_attempts == 3
        assert good.calls == 1
        assert idle.calls == 3

    @pytest.mark.asyncio
    async def test_run_all_keys_by_task_and_variant(self, make_executor, greet_task, variant):
        other = replace(greet_task, name="greet-again")
        summaries = await RunScheduler(make_executor([ScriptedAgent(writes=GOOD)])).run_all(
            [greet_task, other], [variant], repetitions=1, concurrency_limit=2, early_exit=False
        )

        assert set(summaries) == {("greet", "stub"), ("greet-again", "stub")}
        assert all(s.passed_count == 1 for s in summaries.values())

    @pytest.mark.asyncio
    async def test_sink_receives_outcomes_and_summaries(self, make_executor, greet_task, variant):
        sink = MemoryResultSink()
        await RunScheduler(make_executor([ScriptedAgent()]), sink=sink).run(
            greet_task, [variant], repetitions=3, concurrency_limit=2, early_exit=False
        )

        assert sorted(o.repetition for o in sink.outcomes) == [1, 2, 3]
        assert len(sink.summaries) == 1

    @pytest.mark.asyncio
    async def test_sink_errors_do_not_stop_the_run(self, make_executor, greet_task, variant):
        sink = BrokenSink()
        summaries = await RunScheduler(make_executor([ScriptedAgent()]), sink=sink).run(
            greet_task, [variant], repetitions=2, concurrency_limit=1, early_exit=False
        )

        assert summaries["stub"].total_attempts == 2
        assert len(sink.summaries) == 1


class TestAbort:
    @pytest.mark.asyncio
    async def test_abort_before_run_schedules_nothing(self, backend, make_executor, greet_task, variant):
        scheduler = RunScheduler(make_executor([ScriptedAgent()]))
        scheduler.abort("shutdown")

        summaries = await scheduler.run(
            greet_task, [variant], repetitions=3, concurrency_limit=2, early_exit=False
        )

        assert scheduler.aborted
        assert summaries["stub"].total_attempts == 0
        assert backend.created == []

    @pytest.mark.asyncio
    async def test_abort_mid_run_releases_cells(self, backend, make_executor, greet_task, variant):
        sink = MemoryResultSink()
        scheduler = RunScheduler(
            make_executor([ScriptedAgent(writes=GOOD, delay=0.1)]), sink=sink
        )
        run = asyncio.create_task(scheduler.run(
            greet_task, [variant], repetitions=3, concurrency_limit=1, early_exit=False
        ))
        while backend.live == 0:
            await asyncio.sleep(0.01)
        scheduler.abort("operator stop")
        await run

        assert [o.failure_stage for o in sink.outcomes] == [FailureStage.CANCELLED]
        assert "operator stop" in sink.outcomes[0].failure_detail
        assert backend.balanced
