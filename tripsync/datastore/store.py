"""
PersistentStore - durable key -> bytes storage plus a cache timestamp registry.

Every other component persists through this facade; it owns no domain
knowledge, it only stores JSON text under string keys.
"""

import json
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from tripsync.datastore.engine import Database
from tripsync.datastore.repositories import (
    CacheTimestampRepository,
    KeyValueRepository,
)
from tripsync.services.errors import StoreError


class PersistentStore:
    """
    Async key-value store backed by SQLite.

    Usage:
        store = PersistentStore(Database("sqlite+aiosqlite:///./tripsync.db"))
        await store.init()

        await store.set_json("trips", [{"id": 1}])
        await store.save_cache_timestamp("trips")
        trips = await store.get_json("trips")
    """

    def __init__(self, database: Database):
        self._db = database

    async def init(self) -> None:
        await self._db.init()

    async def close(self) -> None:
        await self._db.close()

    async def get(self, key: str) -> str | None:
        try:
            async with self._db.session() as session:
                return await KeyValueRepository(session).get(key)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read '{key}': {e}") from e

    async def set(self, key: str, value: str) -> None:
        try:
            async with self._db.session() as session:
                await KeyValueRepository(session).set(key, value)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to write '{key}': {e}") from e

    async def delete(self, key: str) -> bool:
        """Delete one record together with its cache timestamp."""
        try:
            async with self._db.session() as session:
                await CacheTimestampRepository(session).delete(key)
                return await KeyValueRepository(session).delete(key)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to delete '{key}': {e}") from e

    async def delete_prefix(self, prefix: str) -> int:
        """Delete every record and cache timestamp whose key starts with prefix."""
        try:
            async with self._db.session() as session:
                count = await KeyValueRepository(session).delete_prefix(prefix)
                await CacheTimestampRepository(session).delete_prefix(prefix)
                return count
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to delete prefix '{prefix}': {e}") from e

    async def keys(self, prefix: str = "") -> list[str]:
        try:
            async with self._db.session() as session:
                return await KeyValueRepository(session).keys_with_prefix(prefix)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list keys '{prefix}*': {e}") from e

    async def get_json(self, key: str) -> Any | None:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Discarding corrupt record '{key}': {e}")
            return None

    async def set_json(self, key: str, value: Any) -> None:
        await self.set(key, json.dumps(value, ensure_ascii=False))

    async def save_cache_timestamp(self, key: str, at: datetime | None = None) -> None:
        try:
            async with self._db.session() as session:
                await CacheTimestampRepository(session).save(key, at or datetime.now())
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to save timestamp '{key}': {e}") from e

    async def load_cache_timestamp(self, key: str) -> datetime | None:
        try:
            async with self._db.session() as session:
                return await CacheTimestampRepository(session).load(key)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load timestamp '{key}': {e}") from e

    async def clear(self) -> None:
        """Remove every record and timestamp."""
        try:
            async with self._db.session() as session:
                await KeyValueRepository(session).delete_all()
                await CacheTimestampRepository(session).delete_all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to clear store: {e}") from e
        logger.info("Persistent store cleared")
