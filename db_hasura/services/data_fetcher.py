"""Background polling of a single derived value.

A ``DataFetcher`` owns one cached value, computes it once on ``initialize()``
and then refreshes it on a fixed interval so readers never wait on the
network. Refresh failures after startup leave the previous value in place.
"""

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Generic, Optional, Tuple, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")

_UNSET = object()


class NotReadyError(Exception):
    """Raised by a producer when its value cannot be computed yet.

    Typical cause is cardano-db-sync still being far from the chain tip.
    Fetchers treat it as "no update this cycle" instead of a failure.
    """
    pass


class FetcherNotInitializedError(Exception):
    """Raised when reading a value before the first successful fetch."""
    pass


class FetcherStateError(Exception):
    """Raised on an illegal lifecycle transition."""
    pass


def next_tick(deadline: float, now: float, interval: float) -> Tuple[float, int]:
    """Next tick on the fixed schedule ``deadline + k * interval`` after ``now``.

    Ticks that fell due while a refresh was outstanding are dropped.

    Returns:
        The next deadline and the number of ticks dropped
    """
    deadline += interval
    skipped = 0
    while deadline <= now:
        deadline += interval
        skipped += 1
    return deadline, skipped


class FetcherState(Enum):
    """Lifecycle of a DataFetcher."""

    CREATED = "created"
    INITIALIZING = "initializing"
    RUNNING = "running"
    STOPPED = "stopped"


class DataFetcher(Generic[T]):
    """Periodically recomputes a value and exposes the last good result."""

    def __init__(
        self,
        name: str,
        producer: Callable[[], Awaitable[T]],
        interval_ms: int,
        log=None,
    ):
        """Initialize fetcher. No background work starts until ``initialize()``.

        Args:
            name: Name used in log events
            producer: Coroutine function computing the value
            interval_ms: Refresh period in milliseconds
            log: Optional structlog logger to bind from
        """
        if interval_ms <= 0:
            raise ValueError(f"interval_ms must be positive, got {interval_ms}")

        self.name = name
        self.interval_ms = interval_ms
        self._producer = producer
        self._value = _UNSET
        self._state = FetcherState.CREATED
        self._timer: Optional[asyncio.Task] = None
        self._in_flight: Optional[asyncio.Future] = None

        self.logger = (log or logger).bind(component="data_fetcher", fetcher=name)

    @property
    def state(self) -> FetcherState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is FetcherState.RUNNING

    @property
    def has_value(self) -> bool:
        return self._value is not _UNSET

    @property
    def busy(self) -> bool:
        """True while a producer invocation is outstanding."""
        return self._in_flight is not None and not self._in_flight.done()

    @property
    def value(self) -> T:
        if self._value is _UNSET:
            raise FetcherNotInitializedError(f"{self.name} has not fetched a value yet")
        return self._value

    async def initialize(self) -> None:
        """Fetch the value once, then start the periodic refresh.

        Raises:
            FetcherStateError: If the fetcher was already started
            Exception: Whatever the producer raised on the first call
        """
        if self._state is not FetcherState.CREATED:
            raise FetcherStateError(
                f"{self.name} cannot be initialized from state {self._state.value}"
            )

        self._state = FetcherState.INITIALIZING
        self.logger.info("fetcher_initializing")

        try:
            self._value = await self._invoke_producer()
        except NotReadyError as e:
            self.logger.debug("fetcher_not_ready", reason=str(e))
        except BaseException:
            self._state = FetcherState.CREATED
            raise

        self._state = FetcherState.RUNNING
        self._timer = asyncio.create_task(self._poll(), name=f"{self.name}-poller")
        self.logger.info("fetcher_initialized", interval_ms=self.interval_ms)

    async def refresh(self) -> bool:
        """Run the producer once unless a call is already outstanding.

        Failures are logged and the previous value is kept.

        Returns:
            True if a new value was stored, False otherwise
        """
        if self.busy:
            self.logger.debug("fetcher_refresh_skipped")
            return False

        try:
            value = await self._invoke_producer()
        except NotReadyError as e:
            self.logger.debug("fetcher_not_ready", reason=str(e))
            return False
        except Exception as e:
            self.logger.error("fetcher_refresh_failed", error=str(e))
            return False

        if self._state is FetcherState.STOPPED:
            self.logger.debug("fetcher_result_discarded")
            return False

        self._value = value
        return True

    async def shutdown(self) -> None:
        """Stop the periodic refresh. No-op unless running."""
        if self._state is not FetcherState.RUNNING:
            return

        self._state = FetcherState.STOPPED

        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass

        # Let an outstanding producer call finish on its own
        if self.busy:
            self._in_flight.add_done_callback(self._discard_result)

        self.logger.info("fetcher_stopped")

    async def _invoke_producer(self) -> T:
        task = asyncio.ensure_future(self._producer())
        self._in_flight = task
        # Shielded so cancelling the poller does not cancel the producer
        return await asyncio.shield(task)

    async def _poll(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self.interval_ms / 1000
        deadline = loop.time() + interval
        while self._state is FetcherState.RUNNING:
            await asyncio.sleep(max(0.0, deadline - loop.time()))
            await self.refresh()
            deadline, skipped = next_tick(deadline, loop.time(), interval)
            if skipped:
                self.logger.debug("fetcher_ticks_skipped", count=skipped)

    def _discard_result(self, task: asyncio.Future) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.debug("fetcher_discarded_failure", error=str(error))
