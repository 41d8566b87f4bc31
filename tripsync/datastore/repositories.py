"""
Repository layer - wraps data access for the persistent store tables.
"""

from datetime import datetime

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from tripsync.datastore.models import CacheTimestampDB, KeyValueDB


class KeyValueRepository:
    """Key -> text records"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, key: str) -> str | None:
        result = await self.session.execute(
            select(KeyValueDB.value).where(KeyValueDB.key == key)
        )
        return result.scalar_one_or_none()

    async def set(self, key: str, value: str) -> None:
        existing = await self.session.get(KeyValueDB, key)
        if existing:
            existing.value = value
            existing.updated_at = datetime.now()
        else:
            self.session.add(KeyValueDB(key=key, value=value))

    async def delete(self, key: str) -> bool:
        existing = await self.session.get(KeyValueDB, key)
        if existing is None:
            return False
        await self.session.delete(existing)
        return True

    async def keys_with_prefix(self, prefix: str) -> list[str]:
        result = await self.session.execute(
            select(KeyValueDB.key).where(KeyValueDB.key.startswith(prefix, autoescape=True))
        )
        return list(result.scalars().all())

    async def delete_prefix(self, prefix: str) -> int:
        """Batch delete every record whose key starts with prefix."""
        keys = await self.keys_with_prefix(prefix)
        if keys:
            await self.session.execute(delete(KeyValueDB).where(KeyValueDB.key.in_(keys)))
            await self.session.flush()
            logger.debug(f"Deleted {len(keys)} records with prefix '{prefix}'")
        return len(keys)

    async def delete_all(self) -> None:
        await self.session.execute(delete(KeyValueDB))


class CacheTimestampRepository:
    """Cache fetch timestamps"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def save(self, key: str, at: datetime) -> None:
        existing = await self.session.get(CacheTimestampDB, key)
        if existing:
            existing.saved_at = at
        else:
            self.session.add(CacheTimestampDB(key=key, saved_at=at))

    async def load(self, key: str) -> datetime | None:
        result = await self.session.execute(
            select(CacheTimestampDB.saved_at).where(CacheTimestampDB.key == key)
        )
        return result.scalar_one_or_none()

    async def delete(self, key: str) -> None:
        await self.session.execute(
            delete(CacheTimestampDB).where(CacheTimestampDB.key == key)
        )

    async def delete_prefix(self, prefix: str) -> None:
        await self.session.execute(
            delete(CacheTimestampDB).where(
                CacheTimestampDB.key.startswith(prefix, autoescape=True)
            )
        )

    async def delete_all(self) -> None:
        await self.session.execute(delete(CacheTimestampDB))
