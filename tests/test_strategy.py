"""Tests for the federation strategy controller."""

import asyncio
from datetime import timedelta

import pytest

from docfed.models import FederationStrategy
from docfed.strategy import PipelineOutcome, StrategyController, make_query_id


class CountingRunner:
    """Pipeline runner returning one row numbered by call count."""

    def __init__(self):
        self.calls = 0
        self.fail = False
        self.gate = None

    async def __call__(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("pipeline failed")
        return PipelineOutcome(rows=[{"run": self.calls}], sources_used=[1])


@pytest.fixture
def runner():
    return CountingRunner()


@pytest.fixture
def controller(clock):
    return StrategyController(refresh_interval=timedelta(minutes=15), clock=clock)


class TestMakeQueryId:
    """Tests for cache keys."""

    def test_stable(self):
        assert make_query_id("SELECT * FROM t", [2, 1]) == make_query_id(" SELECT * FROM t ", [1, 2])

    def test_params_change_key(self):
        assert make_query_id("q", [1], {"id": 1}) != make_query_id("q", [1], {"id": 2})
        assert make_query_id("q", [1]).startswith("q_")


class TestVirtual:
    """Virtual queries always run."""

    async def test_never_cached(self, controller, runner, clock):
        first = await controller.run("q", FederationStrategy.VIRTUAL, runner)
        second = await controller.run("q", FederationStrategy.VIRTUAL, runner)
        assert runner.calls == 2
        assert not first.cache_hit and not second.cache_hit
        assert first.next_update is None
        assert first.last_updated == clock()
        assert controller.get_slot("q") is None


class TestMaterialized:
    """Materialized queries serve the cache until the window expires."""

    async def test_lifecycle(self, controller, runner, clock):
        first = await controller.run("q", FederationStrategy.MATERIALIZED, runner)
        assert not first.cache_hit
        assert first.next_update == clock() + timedelta(minutes=15)

        clock.advance(minutes=5)
        second = await controller.run("q", FederationStrategy.MATERIALIZED, runner)
        assert second.cache_hit
        assert second.rows == first.rows
        assert second.last_updated == first.last_updated
        assert runner.calls == 1

        clock.advance(minutes=11)
        third = await controller.run("q", FederationStrategy.MATERIALIZED, runner)
        assert not third.cache_hit
        assert third.rows == [{"run": 2}]
        assert third.last_updated == clock()

    async def test_refreshes_exactly_at_next_update(self, controller, runner, clock):
        first = await controller.run("q", FederationStrategy.MATERIALIZED, runner)

        clock.advance(minutes=15)
        assert clock() == first.next_update
        second = await controller.run("q", FederationStrategy.MATERIALIZED, runner)
        assert not second.cache_hit
        assert second.rows == [{"run": 2}]
        assert runner.calls == 2

    async def test_hit_just_before_next_update(self, controller, runner, clock):
        await controller.run("q", FederationStrategy.MATERIALIZED, runner)
        clock.advance(minutes=14, seconds=59)
        assert (await controller.run("q", FederationStrategy.MATERIALIZED, runner)).cache_hit

    async def test_hit_rows_are_copies(self, controller, runner):
        await controller.run("q", FederationStrategy.MATERIALIZED, runner)
        hit = await controller.run("q", FederationStrategy.MATERIALIZED, runner)
        hit.rows[0]["run"] = 99
        again = await controller.run("q", FederationStrategy.MATERIALIZED, runner)
        assert again.rows == [{"run": 1}]

    async def test_failure_keeps_no_slot(self, controller, runner):
        runner.fail = True
        with pytest.raises(RuntimeError):
            await controller.run("q", FederationStrategy.MATERIALIZED, runner)
        assert controller.get_slot("q") is None

    async def test_invalidate(self, controller, runner):
        await controller.run("a", FederationStrategy.MATERIALIZED, runner)
        await controller.run("b", FederationStrategy.MATERIALIZED, runner)
        assert controller.invalidate("a") == 1
        assert controller.invalidate("a") == 0
        assert controller.invalidate() == 1


class TestHybrid:
    """Hybrid queries serve the cache and refresh in the background."""

    async def test_first_call_runs(self, controller, runner):
        result = await controller.run("q", FederationStrategy.HYBRID, runner)
        assert not result.cache_hit
        assert runner.calls == 1
        assert not controller.is_refreshing("q")

    async def test_cached_then_refreshed(self, controller, runner, clock):
        await controller.run("q", FederationStrategy.HYBRID, runner)
        clock.advance(hours=1)

        second = await controller.run("q", FederationStrategy.HYBRID, runner)
        assert second.cache_hit
        assert second.rows == [{"run": 1}]

        await controller.wait_for_refreshes()
        assert runner.calls == 2
        assert controller.get_slot("q").result.rows == [{"run": 2}]
        assert controller.get_slot("q").last_updated == clock()

        third = await controller.run("q", FederationStrategy.HYBRID, runner)
        assert third.rows == [{"run": 2}]
        await controller.wait_for_refreshes()

    async def test_one_refresh_in_flight(self, controller, runner):
        await controller.run("q", FederationStrategy.HYBRID, runner)
        runner.gate = asyncio.Event()

        await controller.run("q", FederationStrategy.HYBRID, runner)
        await controller.run("q", FederationStrategy.HYBRID, runner)
        await asyncio.sleep(0)
        assert controller.is_refreshing("q")

        runner.gate.set()
        await controller.wait_for_refreshes()
        assert runner.calls == 2
        assert not controller.is_refreshing("q")

    async def test_refresh_failure_keeps_previous(self, controller, runner, caplog):
        await controller.run("q", FederationStrategy.HYBRID, runner)
        runner.fail = True

        hit = await controller.run("q", FederationStrategy.HYBRID, runner)
        await controller.wait_for_refreshes()

        assert hit.rows == [{"run": 1}]
        assert controller.get_slot("q").result.rows == [{"run": 1}]
        assert "Background refresh of q failed" in caplog.text

    async def test_close_cancels_refresh(self, controller, runner):
        await controller.run("q", FederationStrategy.HYBRID, runner)
        runner.gate = asyncio.Event()
        await controller.run("q", FederationStrategy.HYBRID, runner)
        await controller.close()
        assert not controller.is_refreshing("q")


class TestResultSink:
    """Tests for persisting materialized results."""

    async def test_sink_called_for_cached_strategies(self, clock, runner):
        saved = []

        async def sink(query_id, result):
            saved.append((query_id, result.rows))

        controller = StrategyController(clock=clock, result_sink=sink)
        await controller.run("v", FederationStrategy.VIRTUAL, runner)
        await controller.run("m", FederationStrategy.MATERIALIZED, runner)
        await controller.run("m", FederationStrategy.MATERIALIZED, runner)
        assert saved == [("m", [{"run": 2}])]

    async def test_sink_failure_does_not_fail_query(self, clock, runner, caplog):
        async def sink(query_id, result):
            raise OSError("disk full")

        controller = StrategyController(clock=clock, result_sink=sink)
        result = await controller.run("m", FederationStrategy.MATERIALIZED, runner)
        assert result.rows == [{"run": 1}]
        assert "disk full" in caplog.text
