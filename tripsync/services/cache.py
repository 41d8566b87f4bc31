"""
TieredCache - per-collection RAM layer backed by the persistent store.

Features:
- RAM L1 per collection key, persistent store L2 with promotion on read
- TTL freshness measured from the last successful network fetch
- Optimistic (local) writes never advance the fetch timestamp
- Independent per-key locks: keys never block each other
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Generic, TypeVar

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from tripsync.models import SyncRecord

if TYPE_CHECKING:
    from tripsync.datastore.store import PersistentStore

T = TypeVar("T", bound=SyncRecord)


@dataclass
class CacheEntry(Generic[T]):
    """The cached state of one collection."""

    key: str
    items: list[T]
    fetched_at: datetime | None = None

    def is_fresh(self, ttl: timedelta, now: datetime) -> bool:
        """Fresh while now - fetched_at <= ttl; never fetched means stale."""
        if self.fetched_at is None:
            return False
        return now - self.fetched_at <= ttl

    def find(self, item_id: int) -> T | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None


class TieredCache(Generic[T]):
    """
    Cache for one record type, keyed by collection/owner identifier.

    Usage:
        cache = TieredCache(store, PackingItem, namespace="packing_items")

        entry = await cache.read("trip:12")
        if entry is None or not await cache.is_fresh("trip:12"):
            items = await fetch_items()
            await cache.write("trip:12", items, from_network=True)

        # Optimistic mutation: items change, freshness does not
        await cache.write("trip:12", entry.items + [new_item])
    """

    def __init__(
        self,
        store: "PersistentStore",
        model: type[T],
        namespace: str,
        default_ttl: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = datetime.now,
        debug: bool = False,
    ):
        self._store = store
        self._model = model
        self._namespace = namespace
        self._default_ttl = default_ttl
        self._clock = clock
        self._debug = debug
        self._memory: dict[str, CacheEntry[T]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._stats = CacheStats()

    @property
    def namespace(self) -> str:
        return self._namespace

    def store_key(self, key: str) -> str:
        return f"cache:{self._namespace}:{key}"

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def read(self, key: str) -> CacheEntry[T] | None:
        """RAM first; on a RAM miss consult the store and promote the hit."""
        async with self._lock_for(key):
            return await self._read_unlocked(key)

    async def _read_unlocked(self, key: str) -> CacheEntry[T] | None:
        entry = self._memory.get(key)
        if entry is not None:
            self._stats.memory_hits += 1
            self._log(f"HIT: {key}")
            return entry

        store_key = self.store_key(key)
        raw = await self._store.get_json(store_key)
        if raw is None:
            self._stats.misses += 1
            self._log(f"MISS: {key}")
            return None

        try:
            items = [self._model.model_validate(item) for item in raw]
        except PydanticValidationError as e:
            logger.warning(f"Discarding unreadable cache entry '{store_key}': {e}")
            self._stats.misses += 1
            return None

        fetched_at = await self._store.load_cache_timestamp(store_key)
        entry = CacheEntry(key=key, items=items, fetched_at=fetched_at)
        self._memory[key] = entry
        self._stats.store_hits += 1
        self._log(f"PROMOTE: {key} ({len(items)} items)")
        return entry

    async def write(self, key: str, items: list[T], from_network: bool = False) -> CacheEntry[T]:
        """
        Replace the items of a collection.

        Args:
            key: Collection key
            items: New ordered items, unique by id
            from_network: True only when items come from a successful fetch;
                that is the only write that advances fetched_at
        """
        unique = _unique_by_id(items)
        async with self._lock_for(key):
            previous = self._memory.get(key)
            if previous is None and not from_network:
                previous = await self._read_unlocked(key)

            if from_network:
                fetched_at = self._clock()
            else:
                fetched_at = previous.fetched_at if previous else None

            entry = CacheEntry(key=key, items=unique, fetched_at=fetched_at)
            self._memory[key] = entry

            store_key = self.store_key(key)
            await self._store.set_json(store_key, [item.local_dump() for item in unique])
            if from_network:
                await self._store.save_cache_timestamp(store_key, fetched_at)

        self._stats.writes += 1
        self._log(f"SET: {key} ({len(unique)} items, from_network={from_network})")
        return entry

    async def is_fresh(self, key: str, ttl: timedelta | None = None) -> bool:
        entry = await self.read(key)
        if entry is None:
            return False
        return entry.is_fresh(ttl or self._default_ttl, self._clock())

    async def invalidate(self, key: str) -> None:
        """Drop a collection from RAM and from the store."""
        async with self._lock_for(key):
            self._memory.pop(key, None)
            await self._store.delete(self.store_key(key))
        self._log(f"INVALIDATE: {key}")

    async def clear(self) -> int:
        """Drop every collection of this namespace. Returns store records removed."""
        count = len(self._memory)
        self._memory.clear()
        removed = await self._store.delete_prefix(f"cache:{self._namespace}:")
        self._log(f"CLEAR: {count} entries removed")
        return removed

    def get_stats(self) -> "CacheStats":
        self._stats.size = len(self._memory)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[TieredCache:{self._namespace}] {message}")


def _unique_by_id(items: list[T]) -> list[T]:
    """Keep the last occurrence of each id, in first-seen order."""
    by_id: dict[int, T] = {}
    for item in items:
        by_id[item.id] = item
    return list(by_id.values())


@dataclass
class CacheStats:
    """Cache statistics."""

    memory_hits: int = 0
    store_hits: int = 0
    misses: int = 0
    writes: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.memory_hits + self.store_hits + self.misses
        if total == 0:
            return 0.0
        return (self.memory_hits + self.store_hits) / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory_hits": self.memory_hits,
            "store_hits": self.store_hits,
            "misses": self.misses,
            "writes": self.writes,
            "size": self.size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
