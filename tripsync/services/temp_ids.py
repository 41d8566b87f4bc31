"""
TempIdAllocator - strictly decreasing temporary ids for records created locally.

The counter lives in the persistent store so ids minted before a restart
are never handed out again.
"""

import asyncio
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from tripsync.datastore.store import PersistentStore

NEXT_TEMP_ID_KEY = "next_temp_id"


class TempIdAllocator:
    """
    Usage:
        temp_ids = TempIdAllocator(store)
        first = await temp_ids.next_id()   # -1
        second = await temp_ids.next_id()  # -2
    """

    def __init__(self, store: "PersistentStore"):
        self._store = store
        self._next: int | None = None
        self._lock = asyncio.Lock()

    async def next_id(self) -> int:
        async with self._lock:
            if self._next is None:
                stored = await self._store.get_json(NEXT_TEMP_ID_KEY)
                self._next = stored if isinstance(stored, int) and stored < 0 else -1

            temp_id = self._next
            self._next = temp_id - 1
            await self._store.set_json(NEXT_TEMP_ID_KEY, self._next)

        logger.debug(f"Allocated temporary id {temp_id}")
        return temp_id
