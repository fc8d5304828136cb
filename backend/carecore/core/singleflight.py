import asyncio
import threading
from typing import Any, Awaitable, Callable, Hashable


class SingleFlight:
    """
    Deduplicates concurrent calls that share a key.

    The first caller for a key starts the work as a task; every caller that
    arrives while it is running awaits that same task instead of starting a
    new one. The entry is forgotten as soon as the task finishes, so the next
    miss starts a fresh call.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: dict[Hashable, asyncio.Task] = {}

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[Any]]) -> Any:
        with self._lock:
            task = self._calls.get(key)
            if task is None:
                task = asyncio.ensure_future(fn())
                self._calls[key] = task
                task.add_done_callback(lambda t, k=key: self._forget(k, t))
        # shield: a cancelled waiter must not cancel the shared call
        return await asyncio.shield(task)

    def in_flight(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._calls

    def _forget(self, key: Hashable, task: asyncio.Task) -> None:
        with self._lock:
            if self._calls.get(key) is task:
                del self._calls[key]
        if not task.cancelled():
            # Waiters re-raise it; this only marks it retrieved if all waiters left
            task.exception()
