from __future__ import annotations

import logging
from urllib.parse import urlsplit, urlunsplit

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection

from linkpreview.core.config import Settings, settings

logger = logging.getLogger(__name__)


def _redact(uri: str) -> str:
    """Drop credentials from a MongoDB URI before it is logged."""
    parts = urlsplit(uri)
    if "@" not in parts.netloc:
        return uri
    host = parts.netloc.rsplit("@", 1)[1]
    return urlunsplit((parts.scheme, f"***@{host}", parts.path, parts.query, ""))


class DatabaseManager:
    """Owns the Motor client behind the durable preview cache.

    Only production deployments connect.  Use the module-level ``db``::

        await db.connect()
        collection = db.get_collection(CollectionNames.CACHE_ENTRIES)
        ...
        await db.disconnect()
    """

    def __init__(self, config: Settings = settings) -> None:
        self._config = config
        self._client: AsyncIOMotorClient | None = None

    async def connect(self) -> None:
        """Open the client and fail fast if the server does not answer a ping."""
        if self._client is not None:
            return
        client = AsyncIOMotorClient(
            self._config.mongo_uri,
            maxPoolSize=self._config.mongo_max_pool_size,
        )
        await client.admin.command("ping")
        self._client = client
        logger.info("Cache store connected to %s", _redact(self._config.mongo_uri))

    async def disconnect(self) -> None:
        if self._client is None:
            return
        self._client.close()
        self._client = None
        logger.info("Cache store disconnected.")

    def get_collection(self, name: str) -> AsyncIOMotorCollection:
        if self._client is None:
            raise RuntimeError("Cache store is not connected; call connect() first.")
        return self._client[self._config.mongo_db][name]


db = DatabaseManager()
