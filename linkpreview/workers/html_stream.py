"""Incremental HTML tag-event streams.

A ``TagStream`` is fed raw body bytes chunk by chunk and calls back into
registered handlers as tags open and text arrives.  No document tree is
kept: the stdlib backend never builds one, and the lxml backend discards
each element as soon as it has been reported.

Handlers are registered against space-separated descendant selectors::

    stream = create_tag_stream("lxml")
    stream.on_text("head title", on_title).on_element("meta", on_meta)
    for chunk in body:
        stream.feed(chunk)
    stream.close()
"""

from __future__ import annotations

import codecs
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from html.parser import HTMLParser

from lxml import etree

logger = logging.getLogger(__name__)

# Elements that never have content or an end tag
VOID_ELEMENTS = frozenset(
    {
        "area", "base", "br", "col", "embed", "hr", "img", "input",
        "link", "meta", "param", "source", "track", "wbr",
    }
)


class TagStreamError(Exception):
    """Raised when the parsing backend fails on malformed input."""


@dataclass(frozen=True)
class StartTag:
    tag: str
    attrs: Mapping[str, str] = field(default_factory=dict)

    def get_attribute(self, name: str) -> str | None:
        return self.attrs.get(name)


@dataclass(frozen=True)
class TextChunk:
    text: str
    last_in_text_node: bool = False


TextHandler = Callable[[TextChunk], None]
ElementHandler = Callable[[StartTag], None]


def _matches(selector: tuple[str, ...], stack: list[str]) -> bool:
    """True if the innermost open element satisfies a descendant selector."""
    if not stack or stack[-1] != selector[-1]:
        return False
    ancestors = iter(stack[:-1])
    return all(part in ancestors for part in selector[:-1])


class TagStream(ABC):
    """Base class for the tag-event backends.

    Subclasses translate their engine's events into ``_start``, ``_text``
    and ``_end`` calls; selector bookkeeping and dispatch live here.
    """

    def __init__(self, encoding: str | None = None) -> None:
        self.encoding = encoding
        self._text_handlers: list[tuple[tuple[str, ...], TextHandler]] = []
        self._element_handlers: list[tuple[tuple[str, ...], ElementHandler]] = []
        self._stack: list[str] = []

    def on_text(self, selector: str, handler: TextHandler) -> TagStream:
        self._text_handlers.append((tuple(selector.lower().split()), handler))
        return self

    def on_element(self, selector: str, handler: ElementHandler) -> TagStream:
        self._element_handlers.append((tuple(selector.lower().split()), handler))
        return self

    @abstractmethod
    def feed(self, data: bytes) -> None:
        """Consume the next chunk of the body."""

    @abstractmethod
    def close(self) -> None:
        """Flush buffered input and close any elements left open."""

    # ------------------------------------------------------------------
    # Event dispatch (called by backends)
    # ------------------------------------------------------------------

    def _start(self, tag: str, attrs: Mapping[str, str]) -> None:
        self._stack.append(tag)
        element = StartTag(tag, attrs)
        for selector, handler in self._element_handlers:
            if _matches(selector, self._stack):
                handler(element)
        if tag in VOID_ELEMENTS:
            self._stack.pop()

    def _text(self, text: str, last: bool = False) -> None:
        if not text and not last:
            return
        for selector, handler in self._text_handlers:
            if _matches(selector, self._stack):
                handler(TextChunk(text, last))

    def _end(self, tag: str) -> None:
        if tag not in self._stack:
            return
        # Implicitly close anything still open inside *tag*
        while self._stack:
            self._text("", last=True)
            if self._stack.pop() == tag:
                break

    def _close_all(self) -> None:
        while self._stack:
            self._end(self._stack[-1])


class _EventParser(HTMLParser):
    def __init__(self, sink: StdlibTagStream) -> None:
        super().__init__(convert_charrefs=True)
        self._sink = sink

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        self._sink._start(tag, _attr_map(attrs))

    def handle_startendtag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        self._sink._start(tag, _attr_map(attrs))
        if tag not in VOID_ELEMENTS:
            self._sink._end(tag)

    def handle_endtag(self, tag: str) -> None:
        self._sink._end(tag)

    def handle_data(self, data: str) -> None:
        self._sink._text(data)


def _attr_map(attrs: list[tuple[str, str | None]]) -> dict[str, str]:
    result: dict[str, str] = {}
    for name, value in attrs:
        # First occurrence of a duplicated attribute wins, as in browsers
        result.setdefault(name.lower(), value if value is not None else "")
    return result


# How far into the document a <meta> charset declaration is looked for
SNIFF_BYTES = 1024

# Covers <meta charset=...> and <meta http-equiv content="...; charset=...">
_META_CHARSET = re.compile(
    rb"<meta[^>]+?charset\s*=\s*[\"']?\s*([A-Za-z0-9_.:-]+)(?=[\s\"'>;/])",
    re.IGNORECASE,
)


def _decoder_for(encoding: str | None) -> codecs.IncrementalDecoder:
    try:
        decoder_factory = codecs.getincrementaldecoder(encoding or "utf-8")
    except LookupError:
        logger.debug("Unknown charset %r, falling back to utf-8", encoding)
        decoder_factory = codecs.getincrementaldecoder("utf-8")
    return decoder_factory(errors="replace")


def sniff_meta_charset(prefix: bytes) -> str | None:
    """Return the charset declared by a ``<meta>`` tag in *prefix*, if any."""
    match = _META_CHARSET.search(prefix)
    return match.group(1).decode("ascii") if match else None


class StdlibTagStream(TagStream):
    """Backend on ``html.parser.HTMLParser``; bytes are decoded incrementally.

    Without a charset from the response headers, input is held back until a
    ``<meta>`` charset declaration, ``<body``, ``SNIFF_BYTES`` of input or
    the end of the stream is seen, then decoded with the declared charset or
    utf-8.  libxml2 makes the same choice for the lxml backend.
    """

    def __init__(self, encoding: str | None = None) -> None:
        super().__init__(encoding)
        self._decoder = _decoder_for(encoding) if encoding else None
        self._pending = bytearray()
        self._parser = _EventParser(self)

    def _decode(self, data: bytes, final: bool = False) -> str:
        if self._decoder is None:
            self._pending.extend(data)
            charset = sniff_meta_charset(bytes(self._pending[:SNIFF_BYTES]))
            undecided = (
                charset is None
                and len(self._pending) < SNIFF_BYTES
                and b"<body" not in self._pending.lower()
            )
            if undecided and not final:
                return ""
            data, self._pending = bytes(self._pending), bytearray()
            self._decoder = _decoder_for(charset)
        return self._decoder.decode(data, final=final)

    def feed(self, data: bytes) -> None:
        try:
            self._parser.feed(self._decode(data))
        except (AssertionError, ValueError) as exc:
            raise TagStreamError(str(exc)) from exc

    def close(self) -> None:
        try:
            self._parser.feed(self._decode(b"", final=True))
            self._parser.close()
        except (AssertionError, ValueError) as exc:
            raise TagStreamError(str(exc)) from exc
        finally:
            self._close_all()


class LxmlTagStream(TagStream):
    """Backend on ``lxml.etree.HTMLPullParser``.

    libxml2 sniffs the charset from the document when none is declared.
    Elements are cleared after their end event so memory stays flat.
    """

    def __init__(self, encoding: str | None = None) -> None:
        super().__init__(encoding)
        try:
            self._parser = self._build_parser(encoding)
        except LookupError:
            logger.debug("Unknown charset %r, letting libxml2 detect it", encoding)
            self._parser = self._build_parser(None)

    @staticmethod
    def _build_parser(encoding: str | None) -> etree.HTMLPullParser:
        return etree.HTMLPullParser(
            events=("start", "end"),
            encoding=encoding,
            remove_comments=True,
            remove_pis=True,
            no_network=True,
        )

    def feed(self, data: bytes) -> None:
        try:
            self._parser.feed(data)
        except etree.LxmlError as exc:
            raise TagStreamError(str(exc)) from exc
        self._drain()

    def close(self) -> None:
        try:
            self._parser.close()
        except etree.LxmlError as exc:
            raise TagStreamError(str(exc)) from exc
        finally:
            self._drain()
            self._close_all()

    def _drain(self) -> None:
        for event, element in self._parser.read_events():
            if not isinstance(element.tag, str):
                continue
            tag = element.tag.lower()
            if event == "start":
                self._start(tag, {k.lower(): v for k, v in element.attrib.items()})
                continue
            if tag not in VOID_ELEMENTS:
                if element.text:
                    self._text(element.text)
                self._end(tag)
            element.clear(keep_tail=True)
            parent = element.getparent()
            while parent is not None and element.getprevious() is not None:
                del parent[0]


_BACKENDS: dict[str, type[TagStream]] = {
    "stdlib": StdlibTagStream,
    "lxml": LxmlTagStream,
}


def create_tag_stream(backend: str, encoding: str | None = None) -> TagStream:
    """Build the tag stream for the configured *backend* name."""
    try:
        stream_cls = _BACKENDS[backend]
    except KeyError:
        raise ValueError(f"Unknown HTML parser backend: {backend!r}") from None
    return stream_cls(encoding)
