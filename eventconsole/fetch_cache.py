"""Single-flight guard for asynchronous reads."""

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class FetchDedupCache:
    """
    Shares one in-flight producer invocation between concurrent callers.

    The entry for a key is evicted as soon as its task settles, whether it
    succeeded or failed, so the next call after eviction runs the producer
    again.
    """

    def __init__(self):
        self._in_flight: dict[str, asyncio.Future] = {}

    def in_flight(self, key: str) -> bool:
        """True while a producer for `key` has not been evicted."""
        return key in self._in_flight

    def clear(self) -> None:
        """Forget every entry; running producers keep running."""
        self._in_flight.clear()

    async def run(
        self, key: str, producer: Callable[[], Awaitable[Any]], force: bool = False
    ) -> Any:
        """
        Await the shared outcome for `key`, starting `producer` if needed.

        Args:
            key: Logical identity of the read.
            producer: Zero-argument coroutine function performing the read.
            force: Start a fresh producer even if one is already in flight.

        Returns:
            Any: The producer's result. Its exception propagates to every caller;
            cancelling one caller leaves the producer running.
        """
        task = None if force else self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(producer())
            self._in_flight[key] = task
            task.add_done_callback(lambda done: self._evict(key, done))
            logger.debug(f"started fetch for {key!r}")
        else:
            logger.debug(f"joined in-flight fetch for {key!r}")
        return await asyncio.shield(task)

    def _evict(self, key: str, task: asyncio.Future) -> None:
        # a forced reload may already have replaced the entry
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
