from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from linkpreview.api.open_graph.edge_cache import EdgeCache
from linkpreview.api.router import router
from linkpreview.core.config import settings
from linkpreview.core.database import db
from linkpreview.repositories.cache.repository import (
    CacheStore,
    MongoCacheRepository,
    NullCacheRepository,
)
from linkpreview.workers.fetcher import close_http_client

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    """Send ``linkpreview.*`` logs to stderr at ``settings.log_level``.

    The namespace gets its own handler and does not propagate, so the
    output is the same whether or not uvicorn has already configured
    the root logger.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")
    )
    app_log = logging.getLogger("linkpreview")
    app_log.setLevel(level)
    if not app_log.handlers:
        app_log.addHandler(handler)
    app_log.propagate = False


_configure_logging()


async def _open_cache_store() -> CacheStore:
    if not settings.is_production:
        logger.info("Running in %s: durable cache disabled.", settings.environment)
        return NullCacheRepository()
    await db.connect()
    repo = MongoCacheRepository.from_db(db)
    await repo.ensure_indexes()
    return repo


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    app.state.cache_store = await _open_cache_store()
    app.state.edge_cache = EdgeCache(
        ttl=settings.edge_cache_ttl,
        max_entries=settings.edge_cache_max_entries,
        max_body_bytes=settings.edge_cache_max_body_bytes,
        enabled=settings.is_production and settings.edge_cache_enabled,
    )
    yield
    await close_http_client()
    await db.disconnect()


app = FastAPI(
    title="Link Preview",
    description="Async service that resolves and caches link previews.",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(router)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("Rejected %s %s: %s", request.method, request.url.path, exc.errors())
    return JSONResponse(status_code=400, content={"detail": "Bad Request"})


@app.get("/health", tags=["health"])
async def health() -> dict[str, str]:
    return {"status": "ok"}
