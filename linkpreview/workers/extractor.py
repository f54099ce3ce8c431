"""Streaming extraction of page metadata.

Consumes an HTML body as a stream of tag events and fills a
``MetadataRecord`` from ``<title>`` and a fixed set of ``<meta>`` tags.
Input stops being read as soon as the document body opens or every
field has been found.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable

from linkpreview.models.preview.schemas import MetadataRecord
from linkpreview.workers.html_stream import (
    StartTag,
    TagStream,
    TagStreamError,
    TextChunk,
    create_tag_stream,
)

logger = logging.getLogger(__name__)

#: Case-folded ``name``/``property`` values and the record field they fill.
#: ``og:image:url`` is the only secondary alias for ``og:image``.
META_FIELDS: dict[str, str] = {
    "description": "description",
    "og:title": "og_title",
    "og:description": "og_description",
    "og:image": "og_image",
    "og:image:url": "og_image",
    "twitter:card": "twitter_card",
}

_ALL_FIELDS = frozenset({"title", *META_FIELDS.values()})


class MetadataExtractor:
    """Collects metadata fields from tag events; first match wins per field."""

    def __init__(self) -> None:
        self._fields: dict[str, str] = {}
        self._title_parts: list[str] = []
        self._body_seen = False

    @property
    def done(self) -> bool:
        return self._body_seen or self._fields.keys() >= _ALL_FIELDS

    def attach(self, stream: TagStream) -> TagStream:
        return (
            stream.on_text("title", self._on_title_text)
            .on_element("meta", self._on_meta)
            .on_element("body", self._on_body)
        )

    def record(self) -> MetadataRecord:
        return MetadataRecord(**self._fields)

    def _set(self, field: str, value: str) -> None:
        self._fields.setdefault(field, value)

    def _on_title_text(self, chunk: TextChunk) -> None:
        if self._body_seen or "title" in self._fields:
            return
        self._title_parts.append(chunk.text)
        if chunk.last_in_text_node:
            title = "".join(self._title_parts).strip()
            self._title_parts.clear()
            if title:
                self._set("title", title)

    def _on_meta(self, element: StartTag) -> None:
        if self._body_seen:
            return
        content = element.get_attribute("content")
        if not content or not content.strip():
            return

        name = element.get_attribute("name")
        identifier = name if name is not None else element.get_attribute("property")
        if not identifier:
            return

        field = META_FIELDS.get(identifier.casefold())
        if field is not None:
            # Attribute values arrive entity-decoded from the tokenizer
            self._set(field, content.strip())

    def _on_body(self, element: StartTag) -> None:
        self._body_seen = True


async def extract_metadata(
    chunks: AsyncIterable[bytes],
    *,
    parser: str = "lxml",
    encoding: str | None = None,
) -> MetadataRecord:
    """Extract a ``MetadataRecord`` from an HTML byte stream.

    Parser errors are logged and swallowed: whatever was collected before
    the failure is returned.  The caller is responsible for bounding and
    closing *chunks*.
    """
    extractor = MetadataExtractor()
    stream = extractor.attach(create_tag_stream(parser, encoding=encoding))

    try:
        async for chunk in chunks:
            stream.feed(chunk)
            if extractor.done:
                break
        stream.close()
    except TagStreamError as exc:
        logger.warning("HTML parsing stopped early (%s); keeping partial metadata", exc)

    return extractor.record()
