from __future__ import annotations

import logging
from contextlib import aclosing
from dataclasses import dataclass
from urllib.parse import urlencode, urljoin

from linkpreview.core.config import Settings
from linkpreview.models.preview.schemas import ImageArtifact, MetadataRecord
from linkpreview.services.preview.cache import PreviewCache
from linkpreview.services.preview.urls import (
    CacheKind,
    InvalidURL,
    cache_key,
    derive_cache_keys,
    normalize_url,
)
from linkpreview.services.tasks import TaskScheduler
from linkpreview.workers.extractor import extract_metadata
from linkpreview.workers.fetcher import HTML_ACCEPT, iter_body, open_stream
from linkpreview.workers.images import ImagePipeline

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    record: MetadataRecord | None
    image: ImageArtifact | None = None
    cached: bool = False


class PreviewService:
    """Resolves link previews: cache lookup, origin fetch, extraction, image.

    The cache, image pipeline and task scheduler are injected so that one
    service instance carries no state of its own between requests.
    """

    def __init__(
        self,
        cache: PreviewCache,
        images: ImagePipeline,
        scheduler: TaskScheduler,
        config: Settings,
    ) -> None:
        self._cache = cache
        self._images = images
        self._scheduler = scheduler
        self._config = config

    async def resolve(self, raw_url: str | None, want_image: bool = False) -> Resolution:
        """Return the preview for *raw_url*.

        In image mode a cached image is returned straight away; otherwise the
        full resolution runs and the image, if any, is included.

        Raises:
            InvalidURL: *raw_url* is missing or not an absolute http(s) URL.
            FetchError: the origin fetch failed or returned a non-success status.
            ImageTransformError: the preview image could not be re-encoded.
        """
        url = normalize_url(raw_url)
        keys = derive_cache_keys(url, self._config.cache_namespace)

        if want_image:
            image = await self._cache.get_image(keys.image)
            if image is not None:
                return Resolution(record=None, image=image, cached=True)
        else:
            record = await self._cache.get_metadata(keys.metadata)
            if record is not None:
                return Resolution(record=record, cached=True)

        record, final_url = await self._fetch_record(url)

        image = None
        if record.og_image:
            image = await self._fetch_image(record.og_image, final_url)
        if image is not None:
            record = record.model_copy(update={"og_image": self.proxy_link(url)})

        self._scheduler.submit(self._cache.store_preview, keys, record, image)
        return Resolution(record=record, image=image)

    async def proxy_image(self, raw_url: str | None) -> Resolution:
        """Return the (transformed) image at *raw_url*, cached under the proxy kind.

        Raises:
            InvalidURL: *raw_url* is missing or invalid.
            FetchError: the image is unavailable; ``status_code`` holds the
                origin status when there was one.
        """
        url = normalize_url(raw_url)
        key = cache_key(url, CacheKind.PROXY, self._config.cache_namespace)

        image = await self._cache.get_image(key, CacheKind.PROXY)
        if image is not None:
            return Resolution(record=None, image=image, cached=True)

        image = await self._images.fetch_passthrough(url)
        self._scheduler.submit(self._cache.store_image, key, image)
        return Resolution(record=None, image=image)

    def proxy_link(self, normalized_url: str) -> str:
        query = urlencode({"url": normalized_url, "image": "true"})
        return f"{self._config.public_base_url.rstrip('/')}/open-graph?{query}"

    async def _fetch_record(self, url: str) -> tuple[MetadataRecord, str]:
        async with open_stream(url, accept=HTML_ACCEPT) as response:
            final_url = str(response.url)
            async with aclosing(iter_body(response, self._config.max_html_bytes)) as body:
                record = await extract_metadata(
                    body,
                    parser=self._config.html_parser,
                    encoding=response.charset_encoding,
                )
        return record, final_url

    async def _fetch_image(self, og_image: str, page_url: str) -> ImageArtifact | None:
        try:
            image_url = normalize_url(urljoin(page_url, og_image))
        except InvalidURL:
            logger.info("Ignoring unusable og:image %r on %s", og_image, page_url)
            return None
        return await self._images.fetch(image_url)
