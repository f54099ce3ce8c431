from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

#: Image MIME types the service is willing to cache or forward.
ALLOWED_IMAGE_TYPES: frozenset[str] = frozenset(
    {"image/png", "image/jpeg", "image/gif", "image/webp", "image/avif"}
)


class MetadataRecord(BaseModel):
    """Page metadata extracted from ``<title>`` and ``<meta>`` tags.

    Attributes are snake_case; the JSON form (cache values and API
    responses) uses the camelCase aliases and omits unset fields.
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )

    title: str | None = None
    description: str | None = None
    og_title: str | None = None
    og_description: str | None = None
    og_image: str | None = None
    twitter_card: str | None = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    def to_payload(self) -> dict[str, str]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ImageArtifact(BaseModel):
    """A validated image body together with its content type."""

    model_config = ConfigDict(frozen=True)

    content_type: str
    data: bytes


class ErrorResponse(BaseModel):
    detail: str
