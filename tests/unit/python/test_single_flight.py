"""
Unit tests for SingleFlight

Concurrent callers for one key must share a single execution, failures
must reach every caller, and a failed key must be retryable.
"""

import asyncio

import pytest

from single_flight import SingleFlight


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_execution(self):
        flights = SingleFlight("test")
        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            return object()

        results = await asyncio.gather(*(flights.do("k", work) for _ in range(10)))

        assert calls == 1
        assert all(r is results[0] for r in results)
        assert len(flights) == 0

    @pytest.mark.asyncio
    async def test_different_keys_run_independently(self):
        flights = SingleFlight("test")
        started = []

        async def work(key):
            started.append(key)
            await asyncio.sleep(0.01)
            return key

        results = await asyncio.gather(flights.do("a", lambda: work("a")), flights.do("b", lambda: work("b")))

        assert results == ["a", "b"]
        assert sorted(started) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_failure_reaches_every_caller(self):
        flights = SingleFlight("test")
        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.02)
            raise ConnectionError("offline")

        outcomes = await asyncio.gather(*(flights.do("k", work) for _ in range(5)), return_exceptions=True)

        assert calls == 1
        assert all(isinstance(o, ConnectionError) for o in outcomes)
        assert not flights.in_flight("k")

    @pytest.mark.asyncio
    async def test_retry_after_failure_runs_again(self):
        flights = SingleFlight("test")
        attempts = []

        async def work():
            attempts.append(len(attempts))
            if len(attempts) == 1:
                raise RuntimeError("first attempt fails")
            return "ok"

        with pytest.raises(RuntimeError):
            await flights.do("k", work)
        assert await flights.do("k", work) == "ok"
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_cancelled_follower_does_not_cancel_leader(self):
        flights = SingleFlight("test")
        release = asyncio.Event()

        async def work():
            await release.wait()
            return 42

        leader = asyncio.create_task(flights.do("k", work))
        await asyncio.sleep(0)
        follower = asyncio.create_task(flights.do("k", work))
        await asyncio.sleep(0.01)
        assert flights.in_flight("k")

        follower.cancel()
        with pytest.raises(asyncio.CancelledError):
            await follower

        release.set()
        assert await leader == 42

    @pytest.mark.asyncio
    async def test_cancelled_leader_does_not_fail_followers(self):
        flights = SingleFlight("test")
        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.1)
            return "done"

        leader = asyncio.create_task(flights.do("k", work))
        await asyncio.sleep(0)
        follower = asyncio.create_task(flights.do("k", work))
        await asyncio.sleep(0.02)

        leader.cancel()
        with pytest.raises(asyncio.CancelledError):
            await leader

        assert flights.in_flight("k")
        assert await follower == "done"
        assert calls == 1

    @pytest.mark.asyncio
    async def test_key_held_until_work_finishes(self):
        flights = SingleFlight("test")
        release = asyncio.Event()
        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            await release.wait()
            return calls

        first = asyncio.create_task(flights.do("k", work))
        await asyncio.sleep(0.01)
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        second = asyncio.create_task(flights.do("k", work))
        await asyncio.sleep(0.01)
        release.set()

        assert await second == 1
        assert calls == 1
        await asyncio.sleep(0)
        assert not flights.in_flight("k")
