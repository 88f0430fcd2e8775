"""
Tests for the polling round, the failure counter and the health gates.
"""
import asyncio

import pytest

from expiring_cache import ALL_POOLS_KEY
from models import ConfigError, HealthState, UnknownPoolError
from pool_reader import ChainStateReader
from pool_watchdog import DOWN_MESSAGE, UNSTABLE_MESSAGE, PoolWatchdog
from tests.conftest import install_pool


async def run_rounds(watchdog, count):
    for _ in range(count):
        await watchdog.run_round()


class TestRound:

    @pytest.mark.asyncio
    async def test_successful_round_fills_cache(self, watchdog, cache, scripted_reader):
        summary = await watchdog.run_round()

        assert summary.success_count == 3
        assert sorted(scripted_reader.calls) == sorted(["NTD-USD", "USD-YEN", "NTD-YEN"])
        assert set(cache.get_all_pools_state()) == {"NTD-USD", "USD-YEN", "NTD-YEN"}
        assert cache.get_pool_state("NTD-YEN") is not None
        assert watchdog.failure_count == 0

    @pytest.mark.asyncio
    async def test_partial_success_clears_counter(self, watchdog, scripted_reader, cache):
        scripted_reader.set_all("transient")
        await run_rounds(watchdog, 2)
        assert watchdog.failure_count == 2

        scripted_reader.modes["USD-YEN"] = "ok"
        summary = await watchdog.run_round()

        assert summary.success_count == 1
        assert summary.transient == ["NTD-USD", "NTD-YEN"]
        assert watchdog.failure_count == 0
        assert list(cache.get_all_pools_state()) == ["USD-YEN"]

    @pytest.mark.asyncio
    async def test_all_not_found_leaves_counter_unchanged(self, watchdog, scripted_reader):
        scripted_reader.set_all("transient")
        await watchdog.run_round()
        assert watchdog.failure_count == 1

        scripted_reader.set_all("not_found")
        await run_rounds(watchdog, 5)

        assert watchdog.failure_count == 1
        assert not watchdog.is_transactions_locked

    @pytest.mark.asyncio
    async def test_not_found_with_transient_counts_as_failure(self, watchdog, scripted_reader):
        scripted_reader.set_all("not_found")
        scripted_reader.modes["NTD-USD"] = "transient"
        await watchdog.run_round()
        assert watchdog.failure_count == 1

    @pytest.mark.asyncio
    async def test_reader_exception_counts_as_transient(self, watchdog, scripted_reader):
        scripted_reader.set_all("raise")
        summary = await watchdog.run_round()
        assert sorted(summary.transient) == sorted(["NTD-USD", "USD-YEN", "NTD-YEN"])
        assert watchdog.failure_count == 1

    @pytest.mark.asyncio
    async def test_failed_round_keeps_previous_entries(self, watchdog, scripted_reader, cache, clock):
        await watchdog.run_round()
        before = cache.get_pool_state("NTD-USD")

        scripted_reader.set_all("transient")
        clock.advance(1.0)
        await watchdog.run_round()

        assert cache.get_pool_state("NTD-USD") is before

    @pytest.mark.asyncio
    async def test_overlapping_round_is_skipped(self, watchdog, scripted_reader):
        gate = asyncio.Event()
        real_fetch = scripted_reader.fetch_pool

        async def slow_fetch(name):
            await gate.wait()
            return await real_fetch(name)

        scripted_reader.fetch_pool = slow_fetch
        first = asyncio.create_task(watchdog.run_round())
        await asyncio.sleep(0)
        assert watchdog.round_in_progress

        assert await watchdog.run_round() is None
        assert await watchdog.trigger_round() is False

        gate.set()
        summary = await first
        assert summary.success_count == 3
        assert not watchdog.round_in_progress
        assert await watchdog.trigger_round() is True

    def test_down_threshold_must_exceed_lock_threshold(self, scripted_reader, cache, registry):
        with pytest.raises(ConfigError):
            PoolWatchdog(scripted_reader, cache, registry, lock_threshold=5, down_threshold=5)


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_locks_at_lock_threshold(self, watchdog, scripted_reader, audit):
        """Scenario: three consecutive failed rounds lock writes but the system stays up."""
        scripted_reader.set_all("transient")

        await run_rounds(watchdog, 2)
        assert not watchdog.is_transactions_locked

        await watchdog.run_round()
        assert watchdog.failure_count == 3
        assert watchdog.is_transactions_locked
        assert not watchdog.is_down
        assert watchdog.devnet_status() == {
            "status": "unstable", "message": UNSTABLE_MESSAGE, "failureCount": 3,
        }
        assert audit.events == [("locked", 3, True, False)]

    @pytest.mark.asyncio
    async def test_recovery_clears_everything(self, watchdog, scripted_reader, audit):
        scripted_reader.set_all("transient")
        await run_rounds(watchdog, 3)

        scripted_reader.modes["NTD-USD"] = "ok"
        await watchdog.run_round()

        assert watchdog.failure_count == 0
        assert not watchdog.is_transactions_locked
        assert not watchdog.is_down
        assert watchdog.devnet_status()["status"] == "up"
        assert audit.events[-1] == ("recovered", 0, False, False)

    @pytest.mark.asyncio
    async def test_goes_down_at_down_threshold(self, watchdog, scripted_reader, audit):
        """Scenario: twenty failed rounds mark upstream down; one success restores it."""
        scripted_reader.set_all("transient")

        await run_rounds(watchdog, 19)
        assert watchdog.is_transactions_locked
        assert not watchdog.is_down

        await watchdog.run_round()
        assert watchdog.failure_count == 20
        assert watchdog.is_down
        assert watchdog.devnet_status()["message"] == DOWN_MESSAGE
        assert [e[0] for e in audit.events] == ["locked", "down"]

        await run_rounds(watchdog, 3)
        assert watchdog.failure_count == 23
        assert [e[0] for e in audit.events] == ["locked", "down"]

        scripted_reader.set_all("ok")
        await watchdog.run_round()
        assert not watchdog.is_down
        assert not watchdog.is_transactions_locked
        assert watchdog.failure_count == 0

    @pytest.mark.asyncio
    async def test_down_implies_locked_throughout(self, watchdog, scripted_reader):
        scripted_reader.set_all("transient")
        for _ in range(25):
            await watchdog.run_round()
            if watchdog.is_down:
                assert watchdog.is_transactions_locked

    @pytest.mark.asyncio
    async def test_manual_reset(self, watchdog, scripted_reader, audit):
        scripted_reader.set_all("transient")
        await run_rounds(watchdog, 20)

        watchdog.reset(actor="ops")

        assert watchdog.failure_count == 0
        assert not watchdog.is_down
        assert not watchdog.is_transactions_locked
        assert audit.events[-1] == ("manual_reset", 0, False, False)

        await watchdog.run_round()
        assert watchdog.failure_count == 1

    @pytest.mark.asyncio
    async def test_status_reports_last_round(self, watchdog, scripted_reader):
        assert "lastRoundAt" not in watchdog.status()

        scripted_reader.modes["NTD-YEN"] = "not_found"
        scripted_reader.modes["USD-YEN"] = "transient"
        await watchdog.run_round()

        status = watchdog.status()
        assert status["isDown"] is False
        assert status["isTransactionsLocked"] is False
        assert status["failureCount"] == 0
        assert status["maxFailures"] == 3
        assert status["maxDowntime"] == 20
        assert status["lastRoundAt"] == int(watchdog.last_round.started_at * 1000)
        assert status["lastSuccessCount"] == 1
        assert status["lastNotFoundCount"] == 1
        assert status["lastTransientCount"] == 1


class TestForceRefresh:

    @pytest.mark.asyncio
    async def test_refresh_touches_only_that_pool(self, watchdog, scripted_reader, cache):
        await watchdog.run_round()
        aggregate_before = cache.get_all_pools_state()
        other_before = cache.get_pool_state("USD-YEN")

        scripted_reader.reserve = 999
        snapshot = await watchdog.force_refresh("NTD-USD")

        assert snapshot.reserve_a == 999
        assert cache.get_pool_state("NTD-USD") is snapshot
        assert cache.get_pool_state("USD-YEN") is other_before
        assert cache.get_all_pools_state() == aggregate_before
        assert cache.get_all_pools_state()["NTD-USD"].reserve_a == 100

    @pytest.mark.asyncio
    async def test_refresh_failure_does_not_count(self, watchdog, scripted_reader, cache):
        scripted_reader.set_all("transient")
        for _ in range(5):
            assert await watchdog.force_refresh("NTD-USD") is None
        assert watchdog.failure_count == 0
        assert ALL_POOLS_KEY not in cache.stats()["keys"]

    @pytest.mark.asyncio
    async def test_refresh_of_unknown_pool_raises(self, watchdog, scripted_reader):
        with pytest.raises(UnknownPoolError):
            await watchdog.force_refresh("BTC-ETH")
        assert scripted_reader.calls == []

    @pytest.mark.asyncio
    async def test_refresh_reader_exception_returns_none(self, watchdog, scripted_reader):
        scripted_reader.modes["NTD-USD"] = "raise"
        assert await watchdog.force_refresh("NTD-USD") is None


class TestReadSide:

    @pytest.mark.asyncio
    async def test_pools_view_falls_back_to_pool_entries(self, watchdog, cache):
        await watchdog.run_round()
        cache.delete(ALL_POOLS_KEY)
        assert set(watchdog.get_pools_view()) == {"NTD-USD", "USD-YEN", "NTD-YEN"}

    @pytest.mark.asyncio
    async def test_pools_view_prefers_refreshed_pool_entry(self, watchdog, scripted_reader, cache):
        await watchdog.run_round()
        scripted_reader.reserve = 777
        await watchdog.force_refresh("NTD-USD")

        view = watchdog.get_pools_view()

        assert view["NTD-USD"].reserve_a == 777
        assert view["USD-YEN"].reserve_a == 100
        assert cache.get_all_pools_state()["NTD-USD"].reserve_a == 100

    @pytest.mark.asyncio
    async def test_pools_view_keeps_aggregate_entries_whose_pool_key_expired(self, watchdog, cache):
        await watchdog.run_round()
        cache.delete("pool:NTD-YEN")
        assert set(watchdog.get_pools_view()) == {"NTD-USD", "USD-YEN", "NTD-YEN"}

    @pytest.mark.asyncio
    async def test_pool_read_validates_name(self, watchdog):
        await watchdog.run_round()
        assert watchdog.get_pool_from_cache("NTD-USD").pool_name == "NTD-USD"
        with pytest.raises(UnknownPoolError):
            watchdog.get_pool_from_cache("nope")

    @pytest.mark.asyncio
    async def test_cache_expires_when_rounds_stop(self, watchdog, cache, clock):
        await watchdog.run_round()
        clock.advance(5.0)
        assert watchdog.get_all_pools_from_cache() is None
        assert watchdog.get_pools_view() == {}


class TestWithChainReader:

    @pytest.mark.asyncio
    async def test_hanging_node_trips_the_breaker(self, rpc, registry, cache, audit):
        for name in registry.names:
            install_pool(rpc, registry, name)
        reader = ChainStateReader(rpc, registry, timeout=0.01)
        watchdog = PoolWatchdog(reader, cache, registry, health=HealthState(),
                                lock_threshold=3, down_threshold=20, audit=audit)

        summary = await watchdog.run_round()
        assert summary.success_count == 3

        rpc.hang = True
        await run_rounds(watchdog, 3)
        assert watchdog.is_transactions_locked
        assert watchdog.last_round.transient == registry.names

        rpc.hang = False
        await watchdog.run_round()
        assert watchdog.failure_count == 0
        assert not watchdog.is_transactions_locked

    @pytest.mark.asyncio
    async def test_uninitialized_pools_never_trip_the_breaker(self, rpc, registry, cache):
        watchdog = PoolWatchdog(ChainStateReader(rpc, registry, timeout=0.5), cache, registry)
        await run_rounds(watchdog, 25)
        assert watchdog.failure_count == 0
        assert watchdog.devnet_status()["status"] == "up"
        assert watchdog.last_round.not_found == registry.names

    @pytest.mark.asyncio
    async def test_start_and_stop(self, watchdog, scripted_reader):
        watchdog.poll_interval = 0.01
        task = watchdog.start()
        assert watchdog.start() is task
        await asyncio.sleep(0.05)
        await watchdog.stop()
        assert task.cancelled()
        assert len(scripted_reader.calls) >= 3
