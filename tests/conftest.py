from __future__ import annotations

from io import BytesIO
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from PIL import Image

import linkpreview.workers.fetcher as fetcher_module
from linkpreview.core.config import settings
from linkpreview.main import app


@pytest.fixture(autouse=True)
def _fresh_http_client():
    """Never let a client bound to another test's event loop leak through."""
    fetcher_module._http_client = None
    yield
    fetcher_module._http_client = None


@pytest.fixture
def client():
    """TestClient with lifespan startup/shutdown hooks fully mocked."""
    with (
        patch(
            "linkpreview.core.database.DatabaseManager.connect",
            new_callable=AsyncMock,
        ),
        patch(
            "linkpreview.core.database.DatabaseManager.disconnect",
            new_callable=AsyncMock,
        ),
        patch(
            "linkpreview.core.database.DatabaseManager.get_collection",
            return_value=MagicMock(),
        ),
        patch(
            "linkpreview.repositories.cache.repository.MongoCacheRepository.ensure_indexes",
            new_callable=AsyncMock,
        ),
        patch(
            "linkpreview.main.close_http_client",
            new_callable=AsyncMock,
        ),
        patch.object(settings, "edge_cache_enabled", False),
    ):
        with TestClient(app) as c:
            yield c


@pytest.fixture
def make_png():
    """Factory for real PNG bytes of a given size."""

    def _make(width: int = 40, height: int = 20, color: str = "red") -> bytes:
        buffer = BytesIO()
        Image.new("RGB", (width, height), color).save(buffer, "PNG")
        return buffer.getvalue()

    return _make
