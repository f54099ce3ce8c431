from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


class CacheEntry(BaseModel):
    """A single key-value entry as stored in the ``cache_entries`` collection.

    ``metadata`` is sidecar data kept next to the value (e.g. the content
    type of a cached image).
    """

    key: str
    value: bytes
    metadata: dict[str, Any] = Field(default_factory=dict)
    expires_at: datetime
    created_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        # Mongo hands back naive UTC datetimes unless the client is tz-aware
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now
