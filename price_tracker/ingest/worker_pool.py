"""Bounded worker pool shared by both scrape stages.

A unit of work holds one permit from the moment it starts until it has
completely finished (rendering, fetching and persisting included), so at
most ``size`` units are ever in flight no matter how long the queue is.
An optional dispatch interval spaces out the *start* of consecutive units.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, Iterable, Optional, TypeVar

from price_tracker import metrics
from price_tracker.errors import PageTimeoutError
from price_tracker.ingest.rate_limiter import DispatchPacer

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class UnitOutcome(Generic[T, R]):
    """Result of one unit of work."""

    item: T
    result: Optional[R] = None
    error: Optional[BaseException] = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PoolRun(Generic[T, R]):
    """All outcomes of one ``BoundedPool.run`` call, in submission order."""

    outcomes: list[UnitOutcome[T, R]] = field(default_factory=list)

    @property
    def succeeded(self) -> list[UnitOutcome[T, R]]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> list[UnitOutcome[T, R]]:
        return [o for o in self.outcomes if not o.ok]


class BoundedPool:
    """
    Semaphore-bounded pool of concurrent units.

    Pools are owned values: the runner builds one per stage and passes it in,
    so the limit is never ambient state. A pool can be reused across cycles.
    """

    def __init__(
        self,
        size: int,
        name: str = "pool",
        dispatch_interval: float = 0.0,
        unit_timeout: Optional[float] = None,
    ):
        """
        Args:
            size: Number of permits (max units in flight)
            name: Label used in logs and metrics
            dispatch_interval: Minimum seconds between the start of two units
            unit_timeout: Seconds after which a unit is cancelled and counted as failed
        """
        if size < 1:
            raise ValueError(f"pool size must be >= 1 (got {size})")

        self.size = size
        self.name = name
        self.unit_timeout = unit_timeout
        self._semaphore = asyncio.Semaphore(size)
        self._pacer = DispatchPacer(dispatch_interval) if dispatch_interval > 0 else None

        self.in_flight = 0
        self.peak_in_flight = 0

    async def run(
        self,
        items: Iterable[T],
        worker: Callable[[T], Awaitable[R]],
        describe: Callable[[T], str] = repr,
    ) -> PoolRun[T, R]:
        """
        Run worker over every item and wait for all of them (barrier).

        A failing or timed-out unit is logged and recorded; it never cancels
        or affects its siblings.

        Args:
            items: Work items
            worker: Coroutine function processing one item
            describe: Renders an item for log messages

        Returns:
            PoolRun with one outcome per item
        """
        tasks = [
            asyncio.create_task(self._run_unit(item, worker, describe))
            for item in items
        ]
        if not tasks:
            return PoolRun()

        outcomes = await asyncio.gather(*tasks)
        return PoolRun(outcomes=list(outcomes))

    async def _run_unit(
        self,
        item: T,
        worker: Callable[[T], Awaitable[R]],
        describe: Callable[[T], str],
    ) -> UnitOutcome[T, R]:
        async with self._semaphore:
            if self._pacer is not None:
                await self._pacer.acquire()

            self._enter()
            start = time.monotonic()
            try:
                if self.unit_timeout:
                    result = await asyncio.wait_for(worker(item), timeout=self.unit_timeout)
                else:
                    result = await worker(item)
                return UnitOutcome(item=item, result=result, duration_seconds=time.monotonic() - start)

            except PageTimeoutError as e:
                # raised by the work itself, not by the unit deadline
                logger.error(f"[{self.name}] {describe(item)} failed: {e}")
                return UnitOutcome(item=item, error=e, duration_seconds=time.monotonic() - start)

            except asyncio.TimeoutError:
                error = TimeoutError(
                    f"{self.name} unit exceeded {self.unit_timeout:.1f}s and was cancelled"
                )
                logger.error(f"[{self.name}] {describe(item)} timed out: {error}")
                return UnitOutcome(item=item, error=error, duration_seconds=time.monotonic() - start)

            except Exception as e:
                logger.error(f"[{self.name}] {describe(item)} failed: {type(e).__name__}: {e}")
                return UnitOutcome(item=item, error=e, duration_seconds=time.monotonic() - start)

            finally:
                self._leave()

    def _enter(self) -> None:
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        metrics.pool_in_flight.labels(pool=self.name).set(self.in_flight)

    def _leave(self) -> None:
        self.in_flight -= 1
        metrics.pool_in_flight.labels(pool=self.name).set(self.in_flight)

    def reset_stats(self) -> None:
        """Reset the peak counter (called at the start of each cycle)."""
        self.peak_in_flight = self.in_flight
