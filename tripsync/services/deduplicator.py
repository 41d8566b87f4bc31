"""
RequestDeduplicator - at most one in-flight refetch per collection key.

A stale collection read by several screens at once must cause exactly
one background refetch, not one per reader.
"""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


class RequestDeduplicator:
    """
    Usage:
        dedup = RequestDeduplicator()

        # Await, sharing an in-flight call with the same key
        items = await dedup.dedupe("packing_items:trip:12", fetch)

        # Fire and forget: started only if nothing is in flight for the key
        dedup.spawn("packing_items:trip:12", fetch)
    """

    def __init__(self, debug: bool = False):
        self._in_flight: dict[str, asyncio.Task[Any]] = {}
        self._debug = debug
        self.started = 0
        self.deduplicated = 0

    async def dedupe(self, key: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        """Run request_fn, or wait for the call already running under key."""
        return await self._task_for(key, request_fn)

    def spawn(self, key: str, request_fn: Callable[[], Awaitable[Any]]) -> asyncio.Task[Any]:
        """Start request_fn in the background unless key is already in flight."""
        already_running = self.is_in_flight(key)
        task = self._task_for(key, request_fn)
        if not already_running:
            task.add_done_callback(self._report_background_failure)
        return task

    def _task_for(self, key: str, request_fn: Callable[[], Awaitable[T]]) -> asyncio.Task[T]:
        task = self._in_flight.get(key)
        if task is not None and not task.done():
            self.deduplicated += 1
            self._log(f"DEDUPE: {key}")
            return task

        self.started += 1
        self._log(f"NEW: {key}")
        task = asyncio.create_task(self._execute_and_cleanup(key, request_fn))
        self._in_flight[key] = task
        return task

    async def _execute_and_cleanup(self, key: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await request_fn()
        finally:
            self._in_flight.pop(key, None)
            self._log(f"DONE: {key}")

    @staticmethod
    def _report_background_failure(task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Background task failed: {type(error).__name__}: {error}")

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    async def wait_idle(self) -> None:
        """Wait for every in-flight call to finish (errors are not raised here)."""
        while self._in_flight:
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)

    async def cancel_all(self) -> int:
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        self._in_flight.clear()
        if tasks:
            self._log(f"CANCEL_ALL: {len(tasks)} calls cancelled")
        return len(tasks)

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")
