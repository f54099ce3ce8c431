from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from linkpreview.api.open_graph.edge_cache import EdgeCache
from linkpreview.core.config import settings
from linkpreview.models.preview.schemas import ErrorResponse, ImageArtifact, MetadataRecord
from linkpreview.services.preview.cache import PreviewCache
from linkpreview.services.preview.service import PreviewService
from linkpreview.services.preview.urls import InvalidURL
from linkpreview.services.tasks import BackgroundTaskScheduler
from linkpreview.workers.fetcher import FetchError
from linkpreview.workers.images import ImagePipeline, build_transformer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/open-graph", tags=["open-graph"])

T = TypeVar("T")

#: Non-standard status recorded when the client went away mid-resolution.
CLIENT_CLOSED_REQUEST = 499


class ClientDisconnected(Exception):
    """The client closed the connection before the response was ready."""


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def _get_service(request: Request, background_tasks: BackgroundTasks) -> PreviewService:
    """FastAPI dependency that builds a ``PreviewService`` for each request.

    The cache store is created once in the lifespan hook and handed in
    here; nothing below this point reaches for global state.
    """
    cache = PreviewCache(
        request.app.state.cache_store,
        metadata_ttl=settings.metadata_cache_ttl,
        image_ttl=settings.image_cache_ttl,
    )
    images = ImagePipeline(build_transformer(settings), settings.max_image_bytes)
    return PreviewService(cache, images, BackgroundTaskScheduler(background_tasks), settings)


def _get_edge_cache(request: Request) -> EdgeCache:
    return request.app.state.edge_cache


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _cancel_on_disconnect(request: Request, work: Awaitable[T]) -> T:
    """Await *work*, cancelling it if the client disconnects first."""
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=settings.disconnect_poll_interval)
            if done:
                return task.result()
            if await request.is_disconnected():
                raise ClientDisconnected
    finally:
        if not task.done():
            task.cancel()


def _json_response(record: MetadataRecord) -> JSONResponse:
    return JSONResponse(
        content=record.to_payload(),
        headers={"Cache-Control": settings.cache_control},
    )


def _image_response(image: ImageArtifact) -> Response:
    return Response(
        content=image.data,
        media_type=image.content_type,
        headers={"Cache-Control": settings.cache_control},
    )


# ---------------------------------------------------------------------------
# GET /open-graph
# ---------------------------------------------------------------------------


@router.get(
    "",
    response_model=MetadataRecord,
    response_model_by_alias=True,
    response_model_exclude_none=True,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
    summary="Resolve the link preview for a URL",
)
async def get_open_graph(
    request: Request,
    url: str | None = None,
    image: bool = False,
    service: PreviewService = Depends(_get_service),
    edge_cache: EdgeCache = Depends(_get_edge_cache),
) -> Response:
    """Return the page metadata for *url*, or its preview image when ``image=true``.

    - **200** — metadata JSON, or image bytes in image mode when an image exists
    - **400** — ``url`` missing or not an absolute http(s) URL
    - **404** — the page could not be fetched
    - **500** — unexpected failure (e.g. image re-encoding)
    """
    edge_key = str(request.url)
    cached = edge_cache.get(edge_key)
    if cached is not None:
        return cached

    try:
        resolution = await _cancel_on_disconnect(
            request, service.resolve(url, want_image=image)
        )
    except InvalidURL:
        raise HTTPException(status_code=400, detail="Bad Request")
    except FetchError as exc:
        logger.warning("GET /open-graph fetch error for %s: %s", url, exc)
        raise HTTPException(status_code=404, detail="Not found")
    except ClientDisconnected:
        logger.info("GET /open-graph client disconnected for %s", url)
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    except Exception as exc:
        logger.exception("GET /open-graph failed for %s: %s", url, exc)
        raise HTTPException(status_code=500, detail="Internal Server Error")

    if image and resolution.image is not None:
        response: Response = _image_response(resolution.image)
    else:
        response = _json_response(resolution.record or MetadataRecord())
    edge_cache.put(edge_key, response)
    return response


# ---------------------------------------------------------------------------
# GET /open-graph/image
# ---------------------------------------------------------------------------


@router.get(
    "/image",
    response_class=Response,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Proxy a preview image",
)
async def get_open_graph_image(
    request: Request,
    url: str | None = None,
    service: PreviewService = Depends(_get_service),
    edge_cache: EdgeCache = Depends(_get_edge_cache),
) -> Response:
    """Stream the (optionally transcoded) image at *url*.

    - **200** — image bytes with the resulting ``Content-Type``
    - **400** — ``url`` missing or invalid
    - **404** — unreachable, not an allowed image type, or undecodable
    - other — the origin's own error status is passed through
    """
    edge_key = str(request.url)
    cached = edge_cache.get(edge_key)
    if cached is not None:
        return cached

    try:
        resolution = await _cancel_on_disconnect(request, service.proxy_image(url))
    except InvalidURL:
        raise HTTPException(status_code=400, detail="Bad Request")
    except FetchError as exc:
        logger.warning("GET /open-graph/image fetch error for %s: %s", url, exc)
        raise HTTPException(status_code=exc.status_code or 404, detail="Image unavailable")
    except ClientDisconnected:
        logger.info("GET /open-graph/image client disconnected for %s", url)
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    except Exception as exc:
        logger.exception("GET /open-graph/image failed for %s: %s", url, exc)
        raise HTTPException(status_code=500, detail="Internal Server Error")

    response = _image_response(resolution.image)
    edge_cache.put(edge_key, response)
    return response
