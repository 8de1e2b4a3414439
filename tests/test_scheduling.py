# tests/test_scheduling.py
import asyncio
import gc
import pytest
from unittest.mock import Mock

from adaptive_chat.scheduling import Debouncer, KeyedTimer


class TestKeyedTimer:
    @pytest.mark.asyncio
    async def test_rescheduling_replaces_pending_callback(self):
        timer = KeyedTimer()
        first, second = Mock(), Mock()

        timer.schedule("k", 0.01, first)
        timer.schedule("k", 0.01, second)
        await asyncio.sleep(0.05)

        first.assert_not_called()
        second.assert_called_once()
        assert not timer.pending("k")

    @pytest.mark.asyncio
    async def test_cancel(self):
        timer = KeyedTimer()
        callback = Mock()

        timer.schedule("k", 0.01, callback)
        assert timer.cancel("k") is True
        await asyncio.sleep(0.03)

        callback.assert_not_called()
        assert timer.cancel("k") is False
        assert len(timer) == 0


class TestDebouncer:
    @pytest.mark.asyncio
    async def test_burst_resolves_to_last_result(self):
        debouncer = Debouncer(0.01)
        ran = []

        def factory(value):
            async def run():
                ran.append(value)
                return value
            return run

        futures = [debouncer.schedule("k", factory(i)) for i in range(3)]
        results = await asyncio.gather(*futures)

        assert ran == [2]
        assert results == [2, 2, 2]
        assert debouncer.superseded == 2

    @pytest.mark.asyncio
    async def test_exception_propagates_to_waiters(self):
        debouncer = Debouncer(0.01)

        async def failing():
            raise ValueError("bad update")

        with pytest.raises(ValueError):
            await debouncer.schedule("k", failing)

    @pytest.mark.asyncio
    async def test_cancel_cancels_waiters(self):
        debouncer = Debouncer(0.05)

        async def never():
            return "unused"

        future = debouncer.schedule("k", never)
        debouncer.cancel("k")

        assert future.cancelled()
        assert not debouncer.pending("k")

    @pytest.mark.asyncio
    async def test_failure_without_waiters_is_not_reported_unretrieved(self):
        loop = asyncio.get_running_loop()
        handler = Mock()
        loop.set_exception_handler(handler)
        debouncer = Debouncer(0.01)

        async def failing():
            raise ValueError("bad update")

        try:
            waiter = debouncer.schedule("k", failing)
            waiter.cancel()
            await asyncio.sleep(0.05)
            gc.collect()

            handler.assert_not_called()
        finally:
            loop.set_exception_handler(None)
