from __future__ import annotations

import logging

from pydantic import ValidationError

from linkpreview.models.preview.schemas import ImageArtifact, MetadataRecord
from linkpreview.repositories.cache.repository import CacheStore, CacheStoreError
from linkpreview.services.preview.urls import CacheKeys, CacheKind

logger = logging.getLogger(__name__)

CachedValue = MetadataRecord | ImageArtifact


class PreviewCache:
    """Cache-aside access to metadata records and preview images.

    Store failures never reach the caller: a failed read is a miss and a
    failed write is logged and dropped.
    """

    def __init__(self, store: CacheStore, metadata_ttl: int, image_ttl: int) -> None:
        self._store = store
        self.metadata_ttl = metadata_ttl
        self.image_ttl = image_ttl

    async def get(self, kind: CacheKind, key: str) -> CachedValue | None:
        try:
            entry = await self._store.get(key)
        except CacheStoreError as exc:
            logger.warning("Cache read failed for %s, treating as miss: %s", key, exc)
            return None

        if entry is None:
            logger.debug("Cache miss for %s", key)
            return None

        logger.debug("Cache hit for %s", key)
        if kind is CacheKind.METADATA:
            try:
                return MetadataRecord.model_validate_json(entry.value)
            except ValidationError:
                logger.warning("Discarding undecodable cached metadata at %s", key)
                return None

        content_type = entry.metadata.get("contentType")
        if not content_type:
            logger.warning("Cached image at %s has no content type; ignoring", key)
            return None
        return ImageArtifact(content_type=content_type, data=entry.value)

    async def get_metadata(self, key: str) -> MetadataRecord | None:
        value = await self.get(CacheKind.METADATA, key)
        return value if isinstance(value, MetadataRecord) else None

    async def get_image(self, key: str, kind: CacheKind = CacheKind.IMAGE) -> ImageArtifact | None:
        value = await self.get(kind, key)
        return value if isinstance(value, ImageArtifact) else None

    async def put(self, key: str, value: CachedValue, ttl: int) -> None:
        if isinstance(value, MetadataRecord):
            payload, metadata = value.to_json().encode("utf-8"), None
        else:
            payload, metadata = value.data, {"contentType": value.content_type}

        try:
            await self._store.put(key, payload, ttl, metadata)
        except CacheStoreError as exc:
            logger.warning("Cache write dropped for %s: %s", key, exc)

    async def store_preview(
        self,
        keys: CacheKeys,
        record: MetadataRecord,
        image: ImageArtifact | None,
    ) -> None:
        """Persist both artifacts of one resolution.  Meant to run in the background."""
        try:
            await self.put(keys.metadata, record, self.metadata_ttl)
            if image is not None:
                await self.put(keys.image, image, self.image_ttl)
        except Exception as exc:
            logger.exception("Unexpected error storing preview %s: %s", keys.metadata, exc)

    async def store_image(self, key: str, image: ImageArtifact) -> None:
        try:
            await self.put(key, image, self.image_ttl)
        except Exception as exc:
            logger.exception("Unexpected error storing image %s: %s", key, exc)
