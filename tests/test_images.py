from __future__ import annotations

from io import BytesIO

import httpx
import pytest
import respx
from PIL import Image

from linkpreview.core.config import Settings
from linkpreview.models.preview.schemas import ImageArtifact
from linkpreview.workers.fetcher import FetchError
from linkpreview.workers.images import (
    ImagePipeline,
    ImageTransformError,
    NoopTransformer,
    PillowTransformer,
    UndecodableImage,
    build_transformer,
)

_IMAGE_URL = "https://cdn.example.com/a.png"


def _pipeline(transformer=None, max_bytes: int = 1024 * 1024) -> ImagePipeline:
    return ImagePipeline(transformer or NoopTransformer(), max_bytes)


class TestImagePipeline:
    @respx.mock
    async def test_allowed_image_is_returned(self, make_png):
        png = make_png()
        respx.get(_IMAGE_URL).mock(
            return_value=httpx.Response(200, headers={"content-type": "image/png"}, content=png)
        )
        artifact = await _pipeline().fetch(_IMAGE_URL)
        assert artifact == ImageArtifact(content_type="image/png", data=png)

    @respx.mock
    async def test_content_type_parameters_are_ignored(self, make_png):
        respx.get(_IMAGE_URL).mock(
            return_value=httpx.Response(
                200, headers={"content-type": "Image/JPEG; charset=binary"}, content=b"jpeg"
            )
        )
        artifact = await _pipeline().fetch(_IMAGE_URL)
        assert artifact.content_type == "image/jpeg"

    @pytest.mark.parametrize("content_type", ["text/html", "image/svg+xml", "application/octet-stream"])
    @respx.mock
    async def test_disallowed_type_is_rejected(self, content_type):
        respx.get(_IMAGE_URL).mock(
            return_value=httpx.Response(200, headers={"content-type": content_type}, content=b"<html>")
        )
        assert await _pipeline().fetch(_IMAGE_URL) is None

    @respx.mock
    async def test_missing_content_type_is_rejected(self):
        respx.get(_IMAGE_URL).mock(return_value=httpx.Response(200, content=b"\x89PNG"))
        assert await _pipeline().fetch(_IMAGE_URL) is None

    @respx.mock
    async def test_error_status_is_absent(self):
        respx.get(_IMAGE_URL).mock(return_value=httpx.Response(404))
        assert await _pipeline().fetch(_IMAGE_URL) is None

    @respx.mock
    async def test_connect_error_is_absent(self):
        respx.get(_IMAGE_URL).mock(side_effect=httpx.ConnectError("refused"))
        assert await _pipeline().fetch(_IMAGE_URL) is None

    @respx.mock
    async def test_oversized_image_is_rejected(self):
        respx.get(_IMAGE_URL).mock(
            return_value=httpx.Response(200, headers={"content-type": "image/png"}, content=b"x" * 100)
        )
        assert await _pipeline(max_bytes=50).fetch(_IMAGE_URL) is None

    @respx.mock
    async def test_passthrough_reports_origin_status(self):
        respx.get(_IMAGE_URL).mock(return_value=httpx.Response(403))
        with pytest.raises(FetchError) as exc_info:
            await _pipeline().fetch_passthrough(_IMAGE_URL)
        assert exc_info.value.status_code == 403

    @respx.mock
    async def test_passthrough_unsupported_type_has_no_status(self):
        respx.get(_IMAGE_URL).mock(
            return_value=httpx.Response(200, headers={"content-type": "text/html"}, content=b"<html>")
        )
        with pytest.raises(FetchError) as exc_info:
            await _pipeline().fetch_passthrough(_IMAGE_URL)
        assert exc_info.value.status_code is None

    @respx.mock
    async def test_transform_is_applied(self, make_png):
        respx.get(_IMAGE_URL).mock(
            return_value=httpx.Response(
                200, headers={"content-type": "image/png"}, content=make_png(100, 400)
            )
        )
        artifact = await _pipeline(PillowTransformer(height=64)).fetch(_IMAGE_URL)
        assert artifact.content_type == "image/webp"
        with Image.open(BytesIO(artifact.data)) as img:
            assert img.format == "WEBP"
            assert img.size == (16, 64)

    @respx.mock
    async def test_undecodable_image_is_absent(self):
        respx.get(_IMAGE_URL).mock(
            return_value=httpx.Response(200, headers={"content-type": "image/png"}, content=b"not a png")
        )
        assert await _pipeline(PillowTransformer(height=64)).fetch(_IMAGE_URL) is None


class TestPillowTransformer:
    def test_does_not_upscale(self, make_png):
        result = PillowTransformer(height=256).transform(
            ImageArtifact(content_type="image/png", data=make_png(40, 20))
        )
        with Image.open(BytesIO(result.data)) as img:
            assert img.size == (40, 20)

    def test_keeps_transparency(self):
        buffer = BytesIO()
        Image.new("RGBA", (10, 10), (0, 0, 0, 0)).save(buffer, "PNG")
        result = PillowTransformer(height=5).transform(
            ImageArtifact(content_type="image/png", data=buffer.getvalue())
        )
        with Image.open(BytesIO(result.data)) as img:
            assert img.mode == "RGBA"

    def test_jpeg_output(self, make_png):
        result = PillowTransformer(height=10, image_format="jpeg").transform(
            ImageArtifact(content_type="image/png", data=make_png(20, 20))
        )
        assert result.content_type == "image/jpeg"

    def test_garbage_raises_undecodable(self):
        with pytest.raises(UndecodableImage):
            PillowTransformer(height=10).transform(ImageArtifact(content_type="image/png", data=b"junk"))

    def test_unknown_output_format_raises_transform_error(self, make_png):
        with pytest.raises(ImageTransformError):
            PillowTransformer(height=10, image_format="NOPE").transform(
                ImageArtifact(content_type="image/png", data=make_png())
            )


class TestBuildTransformer:
    def test_disabled_is_noop(self):
        config = Settings(_env_file=None, image_transform_enabled=False)
        assert isinstance(build_transformer(config), NoopTransformer)

    def test_enabled_uses_pillow(self):
        config = Settings(_env_file=None, image_height=128, image_format="webp")
        transformer = build_transformer(config)
        assert isinstance(transformer, PillowTransformer)
        assert transformer.height == 128
        assert transformer.image_format == "WEBP"
