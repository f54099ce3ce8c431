from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from motor.motor_asyncio import AsyncIOMotorCollection
from pydantic import ValidationError
from pymongo.errors import PyMongoError

from linkpreview.core.collections import CollectionNames
from linkpreview.core.database import DatabaseManager
from linkpreview.models.cache.document import CacheEntry

logger = logging.getLogger(__name__)


class CacheStoreError(RuntimeError):
    """Raised when the backing key-value store cannot be read or written."""


class CacheStore(Protocol):
    """Key-value store with per-entry TTL and sidecar metadata."""

    async def get(self, key: str) -> CacheEntry | None: ...

    async def put(
        self,
        key: str,
        value: bytes,
        ttl: int,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...


class MongoCacheRepository:
    """MongoDB-backed cache store on the ``cache_entries`` collection.

    Expiry is enforced twice: a TTL index lets MongoDB reap old documents,
    and ``get`` compares ``expires_at`` itself because the TTL monitor only
    runs about once a minute.
    """

    COLLECTION_NAME = CollectionNames.CACHE_ENTRIES

    def __init__(self, collection: AsyncIOMotorCollection) -> None:
        self._col = collection

    @classmethod
    def from_db(cls, db: DatabaseManager) -> MongoCacheRepository:
        return cls(db.get_collection(cls.COLLECTION_NAME))

    async def ensure_indexes(self) -> None:
        """Create the unique key index and the TTL index.  Idempotent."""
        await self._col.create_index("key", unique=True)
        await self._col.create_index("expires_at", expireAfterSeconds=0)

    async def get(self, key: str) -> CacheEntry | None:
        """Return the live entry for *key*, or ``None`` if absent or expired."""
        try:
            result = await self._col.find_one({"key": key})
        except PyMongoError as exc:
            logger.exception("MongoDB read failed for key=%s", key)
            raise CacheStoreError("Cache read error") from exc

        if result is None:
            return None
        result.pop("_id", None)
        try:
            entry = CacheEntry(**result)
        except ValidationError as exc:
            logger.warning("Malformed cache document for key=%s: %s", key, exc)
            raise CacheStoreError("Malformed cache entry") from exc
        if entry.is_expired():
            return None
        return entry

    async def put(
        self,
        key: str,
        value: bytes,
        ttl: int,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Store *value* under *key* for *ttl* seconds, replacing any previous value.

        A single upsert keeps the write atomic; concurrent writers for the
        same key simply last-write-win.
        """
        now = datetime.now(timezone.utc)
        try:
            await self._col.update_one(
                {"key": key},
                {
                    "$set": {
                        "value": value,
                        "metadata": metadata or {},
                        "expires_at": now + timedelta(seconds=ttl),
                        "created_at": now,
                    }
                },
                upsert=True,
            )
        except PyMongoError as exc:
            logger.exception("MongoDB write failed for key=%s", key)
            raise CacheStoreError("Cache write error") from exc


class NullCacheRepository:
    """Cache store used without a persistent backend: every read misses."""

    async def get(self, key: str) -> CacheEntry | None:
        return None

    async def put(
        self,
        key: str,
        value: bytes,
        ttl: int,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        logger.debug("No persistent cache configured; dropping write for %s", key)
