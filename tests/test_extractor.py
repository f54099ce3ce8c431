from __future__ import annotations

import pytest

from linkpreview.models.preview.schemas import MetadataRecord
from linkpreview.workers.extractor import extract_metadata
from linkpreview.workers.html_stream import (
    StdlibTagStream,
    TagStreamError,
    create_tag_stream,
    sniff_meta_charset,
)

_FULL_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>  Example Domain  </title>
  <meta name="description" content="An example page">
  <meta property="og:title" content="Example OG">
  <meta property="og:description" content="OG description">
  <meta property="og:image" content="https://example.com/a.png">
  <meta name="twitter:card" content="summary_large_image">
</head>
<body><p>Hello</p></body>
</html>
"""


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


async def _extract(html: str, parser: str, **kwargs) -> MetadataRecord:
    return await extract_metadata(_chunks(html.encode("utf-8")), parser=parser, **kwargs)


@pytest.fixture(params=["stdlib", "lxml"])
def parser(request) -> str:
    return request.param


class TestExtractMetadata:
    async def test_full_page(self, parser):
        record = await _extract(_FULL_PAGE, parser)
        assert record == MetadataRecord(
            title="Example Domain",
            description="An example page",
            og_title="Example OG",
            og_description="OG description",
            og_image="https://example.com/a.png",
            twitter_card="summary_large_image",
        )

    async def test_minimal_fragment(self, parser):
        html = '<title>Hello</title><meta property="og:image" content="https://example.com/a.png">'
        record = await _extract(html, parser)
        assert record.to_payload() == {"title": "Hello", "ogImage": "https://example.com/a.png"}

    async def test_first_og_title_wins(self, parser):
        html = (
            "<head>"
            '<meta property="og:title" content="First">'
            '<meta property="og:title" content="Second">'
            "</head>"
        )
        record = await _extract(html, parser)
        assert record.og_title == "First"

    async def test_first_non_empty_title_wins(self, parser):
        html = "<head><title>   </title><title>Real</title><title>Later</title></head>"
        record = await _extract(html, parser)
        assert record.title == "Real"

    async def test_name_takes_priority_over_property(self, parser):
        html = '<head><meta name="og:title" property="og:description" content="X"></head>'
        record = await _extract(html, parser)
        assert record.og_title == "X"
        assert record.og_description is None

    async def test_property_used_when_name_absent(self, parser):
        html = '<head><meta property="og:description" content="Y"></head>'
        record = await _extract(html, parser)
        assert record.og_description == "Y"

    async def test_identifier_is_case_insensitive(self, parser):
        html = '<head><meta PROPERTY="OG:Title" content="Shouty"></head>'
        record = await _extract(html, parser)
        assert record.og_title == "Shouty"

    async def test_empty_content_is_skipped(self, parser):
        html = (
            "<head>"
            '<meta name="description" content="">'
            '<meta name="description" content="   ">'
            '<meta name="description">'
            '<meta name="description" content="Filled">'
            "</head>"
        )
        record = await _extract(html, parser)
        assert record.description == "Filled"

    async def test_og_image_url_alias(self, parser):
        html = '<head><meta property="og:image:url" content="https://example.com/b.png"></head>'
        record = await _extract(html, parser)
        assert record.og_image == "https://example.com/b.png"

    async def test_og_image_src_is_not_an_alias(self, parser):
        html = '<head><meta property="og:image:src" content="https://example.com/c.png"></head>'
        record = await _extract(html, parser)
        assert record.og_image is None

    async def test_unknown_meta_ignored(self, parser):
        html = '<head><meta name="keywords" content="a,b"><meta name="viewport" content="x"></head>'
        record = await _extract(html, parser)
        assert record == MetadataRecord()

    async def test_entities_decoded_once(self, parser):
        html = (
            "<head><title>Tom &amp; Jerry</title>"
            '<meta name="description" content="  Fish &amp; Chips &lt;3  ">'
            '<meta property="og:title" content="Literal &amp;amp;">'
            "</head>"
        )
        record = await _extract(html, parser)
        assert record.title == "Tom & Jerry"
        assert record.description == "Fish & Chips <3"
        assert record.og_title == "Literal &amp;"

    async def test_meta_in_body_is_ignored(self, parser):
        html = (
            "<html><head><title>T</title></head>"
            '<body><meta property="og:title" content="Late"><title>Body title</title></body></html>'
        )
        record = await _extract(html, parser)
        assert record.title == "T"
        assert record.og_title is None

    async def test_malformed_markup_is_tolerated(self, parser):
        html = (
            "<html><head><title>Hi</title></span></div>"
            "<meta property=og:description content=Unquoted>"
            "<p></head>"
        )
        record = await _extract(html, parser)
        assert record.title == "Hi"
        assert record.og_description == "Unquoted"

    async def test_title_split_across_chunks(self, parser):
        chunks = _chunks(b"<head><ti", b"tle>Hel", b"lo Wor", b"ld</title></head>")
        record = await extract_metadata(chunks, parser=parser)
        assert record.title == "Hello World"

    async def test_declared_charset_is_used(self, parser):
        html = "<head><title>Café</title></head>".encode("iso-8859-1")
        record = await extract_metadata(_chunks(html), parser=parser, encoding="iso-8859-1")
        assert record.title == "Café"

    async def test_charset_declared_in_markup_is_used(self, parser):
        html = (
            '<html><head><meta charset="windows-1252"><title>Café</title>'
            '<meta name="description" content="Crème brûlée"></head></html>'
        ).encode("windows-1252")
        record = await extract_metadata(_chunks(html), parser=parser)
        assert record.title == "Café"
        assert record.description == "Crème brûlée"

    async def test_unterminated_title_is_flushed_at_end(self, parser):
        record = await _extract("<head><title>Dangling", parser)
        assert record.title == "Dangling"

    async def test_empty_document(self, parser):
        record = await extract_metadata(_chunks(), parser=parser)
        assert record == MetadataRecord()


class TestExtractorStreaming:
    async def test_stops_reading_once_body_opens(self):
        pulled: list[bytes] = []

        async def tracking():
            for part in (b"<head><title>T</title></head><body>", b"<p>more</p>", b"<p>rest</p>"):
                pulled.append(part)
                yield part

        record = await extract_metadata(tracking(), parser="stdlib")
        assert record.title == "T"
        assert len(pulled) == 1

    async def test_stops_reading_once_all_fields_found(self):
        pulled: list[bytes] = []
        head = _FULL_PAGE.split("</head>")[0].encode()

        async def tracking():
            for part in (head, b"<meta name='description' content='extra'>", b"x" * 10):
                pulled.append(part)
                yield part

        record = await extract_metadata(tracking(), parser="stdlib")
        assert record.description == "An example page"
        assert len(pulled) == 1

    async def test_parser_error_keeps_partial_fields(self, monkeypatch):
        original_feed = StdlibTagStream.feed
        calls = 0

        def flaky_feed(self, data):
            nonlocal calls
            calls += 1
            if calls > 1:
                raise TagStreamError("boom")
            original_feed(self, data)

        monkeypatch.setattr(StdlibTagStream, "feed", flaky_feed)
        chunks = _chunks(
            b"<head><title>Partial</title><meta property='og:title' content='A'>",
            b"<meta name='description' content='never seen'>",
        )
        record = await extract_metadata(chunks, parser="stdlib", encoding="utf-8")
        assert record.title == "Partial"
        assert record.og_title == "A"
        assert record.description is None

    async def test_backends_agree(self):
        stdlib_record = await _extract(_FULL_PAGE, "stdlib")
        lxml_record = await _extract(_FULL_PAGE, "lxml")
        assert stdlib_record == lxml_record

    async def test_charset_declaration_split_across_chunks(self):
        page = '<head><meta http-equiv="Content-Type" content="text/html; charset=windows-1252">'
        html = (page + "<title>Naïve</title></head>").encode("windows-1252")
        record = await extract_metadata(_chunks(html[:40], html[40:70], html[70:]), parser="stdlib")
        assert record.title == "Naïve"


class TestTagStream:
    @pytest.mark.parametrize(
        "prefix, expected",
        [
            (b'<meta charset="windows-1252">', "windows-1252"),
            (b"<META CHARSET=iso-8859-1>", "iso-8859-1"),
            (b'<meta http-equiv="Content-Type" content="text/html; charset=Shift_JIS">', "Shift_JIS"),
            (b'<meta name="description" content="no charset here">', None),
            (b'<meta charset="windo', None),
        ],
    )
    def test_sniff_meta_charset(self, prefix, expected):
        assert sniff_meta_charset(prefix) == expected

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValueError, match="Unknown HTML parser backend"):
            create_tag_stream("html5lib")

    def test_descendant_selector(self):
        seen: list[str] = []
        stream = create_tag_stream("stdlib")
        stream.on_text("head title", lambda chunk: seen.append(chunk.text))
        stream.feed(b"<html><head><title>In head</title></head><body><title>Out</title></body>")
        stream.close()
        assert "".join(seen) == "In head"

    def test_element_callback_receives_attributes(self):
        seen: list[dict] = []
        stream = create_tag_stream("lxml")
        stream.on_element("meta", lambda el: seen.append(dict(el.attrs)))
        stream.feed(b'<html><head><meta name="a" content="1"><meta property="b" content="2"></head></html>')
        stream.close()
        assert seen == [{"name": "a", "content": "1"}, {"property": "b", "content": "2"}]
