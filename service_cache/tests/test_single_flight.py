"""
Unit tests for the single-flight coordinator.
"""

import asyncio

import pytest

from service_cache.app.cache.models import NOT_FOUND
from service_cache.app.cache.single_flight import SingleFlight, run_compute
from shared.metrics import get_metrics_collector
from shared.test_helpers import CallCounter, failing, or_else, settle


class TestSingleFlight:
    """Test cases for SingleFlight."""

    @pytest.fixture
    def flight(self):
        return SingleFlight("test", metrics=get_metrics_collector("single_flight_test"))

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_computation(self, flight):
        counter = CallCounter()

        results = await settle(asyncio.gather(*[
            flight.do("k", or_else(counter, delay=0.05)) for _ in range(10)
        ]))

        assert results == ["value"] * 10
        assert counter.value == 1
        assert flight.metrics.sample("cache_computations_total", outcome="success") == 1

    @pytest.mark.asyncio
    async def test_registration_released_after_completion(self, flight):
        counter = CallCounter()

        await flight.do("k", or_else(counter))
        await asyncio.sleep(0)

        assert not flight.is_in_flight("k")
        assert len(flight) == 0

        # a new episode runs the computation again
        await flight.do("k", or_else(counter))
        assert counter.value == 2

    @pytest.mark.asyncio
    async def test_distinct_keys_do_not_share(self, flight):
        counter = CallCounter()

        await settle(asyncio.gather(
            flight.do("a", or_else(counter, delay=0.05)),
            flight.do("b", or_else(counter, delay=0.05)),
        ))

        assert counter.value == 2

    @pytest.mark.asyncio
    async def test_failure_propagates_to_all_waiters(self, flight):
        error = RuntimeError("Exception in test.")

        results = await settle(asyncio.gather(
            *[flight.do("k", failing(error, delay=0.05)) for _ in range(4)],
            return_exceptions=True
        ))

        assert all(result is error for result in results)
        assert flight.metrics.sample("cache_computations_total", outcome="failure") == 1
        await asyncio.sleep(0)
        assert not flight.is_in_flight("k")

    @pytest.mark.asyncio
    async def test_store_runs_before_waiters_resume(self, flight):
        stored = []

        async def store(value):
            stored.append(value)

        result = await flight.do("k", lambda: "value", store=store)

        assert result == "value"
        assert stored == ["value"]

    @pytest.mark.asyncio
    async def test_store_skipped_on_failure(self, flight):
        stored = []

        async def store(value):
            stored.append(value)

        with pytest.raises(ValueError):
            await flight.do("k", failing(ValueError("boom")), store=store)

        assert stored == []

    @pytest.mark.asyncio
    async def test_lookup_short_circuits_computation(self, flight):
        counter = CallCounter()

        async def lookup():
            return "cached"

        assert await flight.do("k", or_else(counter), lookup=lookup) == "cached"
        assert counter.value == 0

    @pytest.mark.asyncio
    async def test_lookup_miss_runs_computation(self, flight):
        counter = CallCounter()

        async def lookup():
            return NOT_FOUND

        assert await flight.do("k", or_else(counter), lookup=lookup) == "value"
        assert counter.value == 1

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_computation(self, flight):
        counter = CallCounter()
        first = asyncio.ensure_future(flight.do("k", or_else(counter, delay=0.1)))
        second = asyncio.ensure_future(flight.do("k", or_else(counter, delay=0.1)))
        await asyncio.sleep(0.01)

        first.cancel()

        assert await settle(second) == "value"
        assert counter.value == 1

    @pytest.mark.asyncio
    async def test_forget_starts_new_episode(self, flight):
        counter = CallCounter()
        first = asyncio.ensure_future(flight.do("k", or_else(counter, "old", delay=0.1)))
        await asyncio.sleep(0.01)

        flight.forget()
        second = await settle(flight.do("k", or_else(counter, "new")))

        assert second == "new"
        assert await settle(first) == "old"
        assert counter.value == 2

    @pytest.mark.asyncio
    async def test_unused_awaitable_is_closed(self, flight):
        counter = CallCounter()
        leader = asyncio.ensure_future(flight.do("k", or_else(counter, delay=0.05)))
        await asyncio.sleep(0.01)

        follower_compute = or_else(counter)()
        assert await settle(flight.do("k", follower_compute)) == "value"
        await leader

        assert follower_compute.cr_frame is None
        assert counter.value == 1


class TestRunCompute:
    """Computations in their accepted shapes."""

    @pytest.mark.asyncio
    async def test_plain_callable(self):
        assert await run_compute(lambda: 1) == 1

    @pytest.mark.asyncio
    async def test_coroutine_function(self):
        assert await run_compute(or_else(CallCounter())) == "value"

    @pytest.mark.asyncio
    async def test_awaitable(self):
        future = asyncio.get_running_loop().create_future()
        future.set_result("done")

        assert await run_compute(future) == "done"
