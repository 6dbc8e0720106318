"""
Single-flight coordination of cache-miss computations.

Concurrent callers asking for the same missing key share one computation:
the first caller registers a task for the key, later callers attach to it,
and the registration is dropped as soon as the task finishes so the next
miss starts a fresh episode.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from shared.logging import get_logger
from shared.metrics import MetricsCollector

from .models import NOT_FOUND

Compute = Union[Callable[[], Any], Awaitable[Any]]


async def run_compute(compute: Compute) -> Any:
    """Run a computation given as an awaitable, a coroutine function or a plain callable."""
    if inspect.isawaitable(compute):
        return await compute

    result = compute()
    if inspect.isawaitable(result):
        return await result
    return result


def discard_compute(compute: Compute) -> None:
    """Close a coroutine computation that will never be awaited.

    Futures and tasks belong to the caller and keep running untouched.
    """
    if inspect.iscoroutine(compute):
        compute.close()


class SingleFlight:
    """Registry of in-flight computations keyed by cache key."""

    def __init__(self, name: str = "default", metrics: Optional[MetricsCollector] = None):
        self.name = name
        self.metrics = metrics
        self.logger = get_logger(f"cache.single_flight.{name}")
        self._in_flight: Dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._in_flight)

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    async def do(
        self,
        key: str,
        compute: Compute,
        *,
        lookup: Optional[Callable[[], Awaitable[Any]]] = None,
        store: Optional[Callable[[Any], Awaitable[Any]]] = None,
    ) -> Any:
        """Return the result of ``compute`` for ``key``, sharing it with concurrent callers.

        ``lookup`` is consulted by the leader right after registering and may
        return a value (anything but NOT_FOUND) that short-circuits the
        computation. ``store`` receives a successful result before any
        waiter is released.
        """
        # Lookup and registration happen without yielding to the event loop
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._execute(key, compute, lookup, store))
            self._in_flight[key] = task
            task.add_done_callback(lambda finished: self._release(key, finished))
            self.logger.debug("Computation registered", key=key)
        else:
            discard_compute(compute)
            self.logger.debug("Joined in-flight computation", key=key)

        return await asyncio.shield(task)

    def forget(self):
        """Drop every registration; running computations still finish for their waiters."""
        count = len(self._in_flight)
        self._in_flight.clear()
        if count:
            self.logger.info("In-flight registry cleared", count=count)

    async def _execute(self, key, compute, lookup, store) -> Any:
        if lookup is not None:
            cached = await lookup()
            if cached is not NOT_FOUND:
                discard_compute(compute)
                self.logger.debug("Value stored by previous episode", key=key)
                return cached

        if self.metrics:
            self.metrics.set_in_flight(len(self._in_flight))

        try:
            result = await run_compute(compute)
        except Exception:
            if self.metrics:
                self.metrics.record_computation("failure")
            raise

        if self.metrics:
            self.metrics.record_computation("success")
        if store is not None:
            await store(result)
        return result

    def _release(self, key: str, task: asyncio.Task):
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if self.metrics:
            self.metrics.set_in_flight(len(self._in_flight))

        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.debug("Computation failed", key=key, error=str(error))
