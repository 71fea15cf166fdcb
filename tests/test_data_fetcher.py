"""Tests for the background DataFetcher."""

import asyncio

import pytest
from unittest.mock import AsyncMock

from db_hasura.services.data_fetcher import (
    DataFetcher,
    FetcherNotInitializedError,
    FetcherState,
    FetcherStateError,
    NotReadyError,
    next_tick,
)


class SlowProducer:
    """Producer that blocks until released and tracks concurrent invocations."""

    def __init__(self, results=None, delay=None):
        self.results = list(results or [])
        self.delay = delay
        self.release = asyncio.Event()
        self.calls = 0
        self.active = 0
        self.max_active = 0

    async def __call__(self):
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay is not None:
                await asyncio.sleep(self.delay)
            else:
                await self.release.wait()
            return self.results.pop(0) if self.results else self.calls
        finally:
            self.active -= 1


async def wait_until(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


class TestDataFetcherLifecycle:
    """Test suite for fetcher lifecycle transitions."""

    def test_created_state(self):
        fetcher = DataFetcher("AdaCirculatingSupply", AsyncMock(return_value="1"), 1000)

        assert fetcher.state is FetcherState.CREATED
        assert fetcher.running is False
        assert fetcher.has_value is False

    def test_invalid_interval(self):
        with pytest.raises(ValueError, match="interval_ms"):
            DataFetcher("ProtocolParams", AsyncMock(), 0)

    def test_value_before_initialize_raises(self):
        fetcher = DataFetcher("ProtocolParams", AsyncMock(return_value=1), 1000)

        with pytest.raises(FetcherNotInitializedError, match="ProtocolParams"):
            fetcher.value

    @pytest.mark.asyncio
    async def test_initialize_fetches_and_starts_running(self):
        producer = AsyncMock(return_value="45000000000000000")
        fetcher = DataFetcher("AdaCirculatingSupply", producer, 60000)

        await fetcher.initialize()
        try:
            assert fetcher.state is FetcherState.RUNNING
            assert fetcher.value == "45000000000000000"
            producer.assert_awaited_once()
        finally:
            await fetcher.shutdown()

        assert fetcher.state is FetcherState.STOPPED

    @pytest.mark.asyncio
    async def test_initialize_failure_propagates_and_not_running(self):
        producer = AsyncMock(side_effect=ConnectionError("hasura unavailable"))
        fetcher = DataFetcher("AdaCirculatingSupply", producer, 60000)

        with pytest.raises(ConnectionError, match="hasura unavailable"):
            await fetcher.initialize()

        assert fetcher.state is FetcherState.CREATED
        assert fetcher.running is False
        with pytest.raises(FetcherNotInitializedError):
            fetcher.value

    @pytest.mark.asyncio
    async def test_initialize_twice_rejected(self):
        fetcher = DataFetcher("ProtocolParams", AsyncMock(return_value=1), 60000)
        await fetcher.initialize()
        try:
            with pytest.raises(FetcherStateError):
                await fetcher.initialize()
        finally:
            await fetcher.shutdown()

        with pytest.raises(FetcherStateError):
            await fetcher.initialize()

    @pytest.mark.asyncio
    async def test_initialize_not_ready_runs_without_value(self):
        producer = AsyncMock(side_effect=NotReadyError("not near chain tip"))
        fetcher = DataFetcher("AdaCirculatingSupply", producer, 60000)

        await fetcher.initialize()
        try:
            assert fetcher.state is FetcherState.RUNNING
            assert fetcher.has_value is False
            with pytest.raises(FetcherNotInitializedError):
                fetcher.value
        finally:
            await fetcher.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self):
        fetcher = DataFetcher("ProtocolParams", AsyncMock(return_value=1), 60000)

        # Never started
        await fetcher.shutdown()
        assert fetcher.state is FetcherState.CREATED

        await fetcher.initialize()
        await fetcher.shutdown()
        await fetcher.shutdown()
        assert fetcher.state is FetcherState.STOPPED


class TestDataFetcherRefresh:
    """Test suite for refresh behaviour."""

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_value(self):
        producer = AsyncMock(side_effect=["100", ConnectionError("timeout")])
        fetcher = DataFetcher("AdaCirculatingSupply", producer, 60000)
        await fetcher.initialize()

        try:
            refreshed = await fetcher.refresh()

            assert refreshed is False
            assert fetcher.value == "100"
            assert fetcher.running is True
        finally:
            await fetcher.shutdown()

    @pytest.mark.asyncio
    async def test_not_ready_refresh_keeps_previous_value(self):
        producer = AsyncMock(side_effect=["100", NotReadyError("bulk sync")])
        fetcher = DataFetcher("AdaCirculatingSupply", producer, 60000)
        await fetcher.initialize()

        try:
            assert await fetcher.refresh() is False
            assert fetcher.value == "100"
        finally:
            await fetcher.shutdown()

    @pytest.mark.asyncio
    async def test_successful_refresh_replaces_value(self):
        producer = AsyncMock(side_effect=["100", "250"])
        fetcher = DataFetcher("AdaCirculatingSupply", producer, 60000)
        await fetcher.initialize()

        try:
            assert await fetcher.refresh() is True
            assert fetcher.value == "250"
        finally:
            await fetcher.shutdown()

    @pytest.mark.asyncio
    async def test_concurrent_refresh_is_skipped(self):
        producer = SlowProducer(results=["first"])
        fetcher = DataFetcher("ProtocolParams", producer, 60000)

        pending = asyncio.create_task(fetcher.refresh())
        await wait_until(lambda: producer.calls == 1)

        assert fetcher.busy is True
        assert await fetcher.refresh() is False
        assert producer.calls == 1

        producer.release.set()
        assert await pending is True
        assert fetcher.value == "first"
        assert producer.max_active == 1

    @pytest.mark.asyncio
    async def test_periodic_ticks_update_value(self):
        calls = []

        async def producer():
            calls.append(None)
            return len(calls)

        fetcher = DataFetcher("ProtocolParams", producer, 5)
        await fetcher.initialize()
        try:
            await wait_until(lambda: len(calls) >= 3)
            assert fetcher.value >= 2
        finally:
            await fetcher.shutdown()

    @pytest.mark.asyncio
    async def test_periodic_failure_does_not_stop_polling(self):
        results = iter(["1", ConnectionError("down"), "3"])

        async def producer():
            result = next(results, "3")
            if isinstance(result, Exception):
                raise result
            return result

        fetcher = DataFetcher("AdaCirculatingSupply", producer, 5)
        await fetcher.initialize()
        try:
            await wait_until(lambda: fetcher.value == "3")
            assert fetcher.running is True
        finally:
            await fetcher.shutdown()

    @pytest.mark.asyncio
    async def test_slow_producer_never_overlaps(self):
        producer = SlowProducer(delay=0.03)
        fetcher = DataFetcher("AdaCirculatingSupply", producer, 1)
        await fetcher.initialize()

        try:
            # Direct calls racing the timer
            for _ in range(5):
                await asyncio.gather(fetcher.refresh(), fetcher.refresh())
            await wait_until(lambda: producer.calls >= 4)
        finally:
            await fetcher.shutdown()

        assert producer.max_active == 1

    @pytest.mark.asyncio
    async def test_shutdown_discards_in_flight_result(self):
        producer = SlowProducer(results=["initial", "late"])
        producer.release.set()
        fetcher = DataFetcher("ProtocolParams", producer, 60000)
        await fetcher.initialize()
        producer.release.clear()

        pending = asyncio.create_task(fetcher.refresh())
        await wait_until(lambda: producer.calls == 2)

        await fetcher.shutdown()
        assert producer.active == 1

        producer.release.set()
        assert await pending is False
        assert fetcher.value == "initial"

    @pytest.mark.asyncio
    async def test_slow_refresh_keeps_fixed_period(self):
        starts = []

        async def producer():
            starts.append(asyncio.get_running_loop().time())
            if len(starts) > 1:
                await asyncio.sleep(0.05)
            return len(starts)

        fetcher = DataFetcher("AdaCirculatingSupply", producer, 100)
        await fetcher.initialize()
        try:
            await wait_until(lambda: len(starts) >= 4, timeout=2.0)
        finally:
            await fetcher.shutdown()

        # Periodic calls stay on the 100 ms schedule instead of 100 ms + latency
        gaps = [b - a for a, b in zip(starts[1:], starts[2:])]
        assert all(gap < 0.14 for gap in gaps)


class TestNextTick:
    """Test suite for the fixed-rate tick schedule."""

    def test_next_tick_on_schedule(self):
        assert next_tick(1.0, 1.2, 0.5) == (1.5, 0)

    def test_ticks_during_refresh_are_dropped(self):
        # Refresh started at 1.0 and finished at 2.3; ticks at 1.5 and 2.0 were due
        assert next_tick(1.0, 2.3, 0.5) == (2.5, 2)

    def test_tick_due_exactly_now_is_dropped(self):
        assert next_tick(1.0, 1.5, 0.5) == (2.0, 1)
