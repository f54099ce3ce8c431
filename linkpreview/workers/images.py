"""Preview image retrieval and transcoding.

Fetches a remote image, accepts it only when the declared content type is
allow-listed, and passes the bytes through an ``ImageTransformer`` before
anything is cached or streamed to a client.
"""

from __future__ import annotations

import asyncio
import logging
from io import BytesIO
from typing import Protocol

import httpx
from PIL import Image, UnidentifiedImageError

from linkpreview.core.config import Settings
from linkpreview.models.preview.schemas import ALLOWED_IMAGE_TYPES, ImageArtifact
from linkpreview.workers.fetcher import IMAGE_ACCEPT, FetchError, open_stream, read_body

logger = logging.getLogger(__name__)


class ImageTransformError(Exception):
    """Raised when transcoding fails for a reason other than bad input."""


class UndecodableImage(Exception):
    """The bytes are not an image Pillow can read."""


class ImageTransformer(Protocol):
    def transform(self, artifact: ImageArtifact) -> ImageArtifact: ...


class NoopTransformer:
    def transform(self, artifact: ImageArtifact) -> ImageArtifact:
        return artifact


class PillowTransformer:
    """Resize to a fixed height (never upscaling) and re-encode."""

    def __init__(self, height: int, image_format: str = "WEBP", quality: int = 80) -> None:
        self.height = height
        self.image_format = image_format.upper()
        self.quality = quality

    @property
    def content_type(self) -> str:
        return Image.MIME.get(self.image_format, f"image/{self.image_format.lower()}")

    def transform(self, artifact: ImageArtifact) -> ImageArtifact:
        try:
            img = Image.open(BytesIO(artifact.data))
            img.load()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
            raise UndecodableImage(str(exc)) from exc

        if img.mode not in ("RGB", "RGBA"):
            img = img.convert("RGBA" if "A" in img.getbands() or "transparency" in img.info else "RGB")
        if self.image_format == "JPEG" and img.mode == "RGBA":
            img = img.convert("RGB")
        if img.height > self.height:
            width = max(1, round(img.width * self.height / img.height))
            img = img.resize((width, self.height), Image.Resampling.LANCZOS)

        out = BytesIO()
        try:
            img.save(out, self.image_format, quality=self.quality)
        except (KeyError, OSError, ValueError) as exc:
            raise ImageTransformError(f"Cannot encode {self.image_format}: {exc}") from exc
        return ImageArtifact(content_type=self.content_type, data=out.getvalue())


def build_transformer(config: Settings) -> ImageTransformer:
    if not config.image_transform_enabled:
        return NoopTransformer()
    return PillowTransformer(config.image_height, config.image_format, config.image_quality)


def _media_type(content_type: str | None) -> str:
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


class ImagePipeline:
    """Fetch, validate and transcode preview images."""

    def __init__(self, transformer: ImageTransformer, max_bytes: int) -> None:
        self._transformer = transformer
        self._max_bytes = max_bytes

    async def fetch(self, url: str) -> ImageArtifact | None:
        """Return the processed image at *url*, or ``None`` if unavailable.

        A missing, oversized, non-image or undecodable resource is not an
        error here: the preview simply goes without an image.

        Raises:
            ImageTransformError: if re-encoding fails unexpectedly.
        """
        try:
            return await self.fetch_passthrough(url)
        except FetchError as exc:
            logger.warning("Preview image unavailable for %s: %s", url, exc)
            return None

    async def fetch_passthrough(self, url: str) -> ImageArtifact:
        """Like ``fetch`` but raises ``FetchError`` instead of returning ``None``.

        ``FetchError.status_code`` carries the origin status when the origin
        answered with one.
        """
        try:
            async with open_stream(url, accept=IMAGE_ACCEPT) as response:
                media_type = _media_type(response.headers.get("content-type"))
                if media_type not in ALLOWED_IMAGE_TYPES:
                    raise FetchError(f"Unsupported image content type {media_type!r}")
                data = await read_body(response, self._max_bytes)
        except httpx.HTTPError as exc:
            raise FetchError(f"Image download failed for '{url}': {exc}") from exc

        if data is None:
            raise FetchError(f"Image larger than {self._max_bytes} bytes")

        try:
            return await asyncio.to_thread(
                self._transformer.transform,
                ImageArtifact(content_type=media_type, data=data),
            )
        except UndecodableImage as exc:
            raise FetchError(f"Image at '{url}' could not be decoded: {exc}") from exc
