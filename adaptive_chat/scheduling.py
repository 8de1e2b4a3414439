"""
Keyed timers and debouncing

A ``KeyedTimer`` holds at most one pending timer per key; scheduling a key
again cancels the pending timer and replaces it. ``Debouncer`` builds on it
so that only the last call in a burst for a key executes, and every caller
in that burst receives the result of the call that ran.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class KeyedTimer:
    """One cancellable pending callback per key on the running event loop"""

    def __init__(self):
        self._handles: Dict[str, asyncio.TimerHandle] = {}

    def schedule(self, key: str, delay: float, callback: Callable[[], Any]) -> None:
        self.cancel(key)
        loop = asyncio.get_running_loop()

        def _fire():
            self._handles.pop(key, None)
            callback()

        self._handles[key] = loop.call_later(delay, _fire)

    def cancel(self, key: str) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for key in list(self._handles):
            self.cancel(key)

    def pending(self, key: str) -> bool:
        return key in self._handles

    def __len__(self) -> int:
        return len(self._handles)


@dataclass
class _PendingCall:
    factory: Callable[[], Awaitable[Any]]
    waiters: List[asyncio.Future] = field(default_factory=list)


class Debouncer:
    """Coalesces bursts of calls per key into a single trailing execution"""

    def __init__(self, delay: float, timer: Optional[KeyedTimer] = None):
        self.delay = delay
        self._timer = timer or KeyedTimer()
        self._pending: Dict[str, _PendingCall] = {}
        self._running_tasks: Dict[str, asyncio.Task] = {}
        self.superseded = 0

    def schedule(self, key: str, factory: Callable[[], Awaitable[Any]]) -> asyncio.Future:
        """Replace the pending call for ``key`` and return a future for the burst's result"""
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()

        pending = self._pending.get(key)
        if pending is None:
            pending = _PendingCall(factory=factory)
            self._pending[key] = pending
        else:
            self.superseded += 1
            pending.factory = factory
        pending.waiters.append(waiter)

        self._timer.schedule(key, self.delay, lambda: self._fire(key))
        return waiter

    def pending(self, key: str) -> bool:
        return key in self._pending

    def cancel(self, key: str) -> None:
        self._timer.cancel(key)
        pending = self._pending.pop(key, None)
        if pending:
            for waiter in pending.waiters:
                if not waiter.done():
                    waiter.cancel()

    def cancel_all(self) -> None:
        for key in list(self._pending):
            self.cancel(key)

    def _fire(self, key: str) -> None:
        pending = self._pending.pop(key, None)
        if pending is None:
            return
        task = asyncio.ensure_future(pending.factory())
        self._running_tasks[key] = task
        task.add_done_callback(lambda t: self._resolve(key, t, pending.waiters))

    def _resolve(self, key: str, task: asyncio.Task, waiters: List[asyncio.Future]) -> None:
        if self._running_tasks.get(key) is task:
            del self._running_tasks[key]
        # read even when no waiter is left
        error = None if task.cancelled() else task.exception()
        for waiter in waiters:
            if waiter.done():
                continue
            if task.cancelled():
                waiter.cancel()
            elif error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(task.result())
