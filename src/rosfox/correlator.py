"""Correlation of asynchronous responses with the requests that caused them."""

import asyncio
import logging
from typing import Any, Hashable

logger = logging.getLogger("rosfox.correlator")


class Correlator:
    """Table of pending requests keyed by correlation key.

    An entry is registered before its request goes out, completed by the
    first matching response and detached in the same step, so it can fire
    at most once. Registering a key that is already pending joins the
    existing entry.
    """

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout
        self._pending: dict[Hashable, asyncio.Future[Any]] = {}
        self._waiters: dict[asyncio.Future[Any], int] = {}

    def register(self, key: Hashable) -> asyncio.Future[Any]:
        future = self._pending.get(key)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._pending[key] = future
        return future

    def resolve(self, key: Hashable, result: Any) -> bool:
        """Complete the entry for `key`. Returns False if nothing was waiting."""
        future = self._pending.pop(key, None)
        if future is None:
            logger.debug("No pending request for %r", key)
            return False
        if not future.done():
            future.set_result(result)
        return True

    async def wait(self, key: Hashable, future: asyncio.Future[Any] | None = None) -> Any:
        """Wait for the entry registered under `key` to complete.

        Pass the future returned by register() when the response may
        already have arrived. Raises asyncio.TimeoutError if a timeout is
        configured and expires. Each waiter times out on its own; the entry
        is detached when the last waiter on it gives up.
        """
        if future is None:
            future = self._pending.get(key) or self.register(key)
        self._waiters[future] = self._waiters.get(future, 0) + 1
        try:
            if self.timeout is None:
                return await asyncio.shield(future)
            return await asyncio.wait_for(asyncio.shield(future), self.timeout)
        except asyncio.TimeoutError:
            if self._waiters[future] == 1 and self._pending.get(key) is future:
                del self._pending[key]
                future.cancel()
            raise
        finally:
            remaining = self._waiters.pop(future) - 1
            if remaining:
                self._waiters[future] = remaining

    def cancel_all(self) -> None:
        for future in self._pending.values():
            future.cancel()
        self._pending.clear()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)
