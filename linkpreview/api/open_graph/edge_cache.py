"""Transient response cache in front of the resolver.

Holds complete successful responses keyed by the full request URL and
replays them verbatim, skipping cache-store lookups entirely.  In-process
and bounded; only enabled in production.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass

from fastapi import Response

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedResponse:
    status_code: int
    headers: dict[str, str]
    body: bytes
    media_type: str | None
    expires_at: float

    def to_response(self) -> Response:
        return Response(
            content=self.body,
            status_code=self.status_code,
            headers=self.headers,
            media_type=self.media_type,
        )


class EdgeCache:
    def __init__(
        self,
        ttl: int,
        max_entries: int,
        max_body_bytes: int = 1024 * 1024,
        enabled: bool = True,
    ) -> None:
        self.ttl = ttl
        self.max_entries = max_entries
        self.max_body_bytes = max_body_bytes
        self.enabled = enabled
        self._entries: OrderedDict[str, CachedResponse] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Response | None:
        if not self.enabled:
            return None
        cached = self._entries.get(key)
        if cached is None:
            return None
        if cached.expires_at <= time.monotonic():
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        logger.debug("Edge cache hit for %s", key)
        return cached.to_response()

    def put(self, key: str, response: Response) -> None:
        """Remember *response* if it is a small enough success; older entries are evicted first."""
        if not self.enabled or not 200 <= response.status_code < 300:
            return
        if len(response.body) > self.max_body_bytes:
            logger.debug("Edge cache skipping %s: body of %d bytes", key, len(response.body))
            return
        headers = {
            name: value
            for name, value in response.headers.items()
            if name not in ("content-length", "content-type")
        }
        self._entries[key] = CachedResponse(
            status_code=response.status_code,
            headers=headers,
            body=bytes(response.body),
            media_type=response.media_type or response.headers.get("content-type"),
            expires_at=time.monotonic() + self.ttl,
        )
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
