from datetime import datetime, timezone

import pytest

from rss_ingest.parser import (
    TITLE_FALLBACK_LENGTH,
    ParseError,
    ParseErrorKind,
    detect_dialect,
    parse_feed,
    sniff_root,
    strip_html,
)

BASE = "https://example.com/feed.xml"


def test_parses_rss_items(feed_xml):
    document = feed_xml.rss(
        feed_xml.item(
            guid="post-1",
            link="https://example.com/posts/1",
            title="First post",
            description="&lt;p&gt;Hello &lt;b&gt;world&lt;/b&gt;&lt;/p&gt;",
            pub_date="Mon, 06 Sep 2021 10:00:00 GMT",
        ),
        feed_xml.item(guid="post-2", link="https://example.com/posts/2", title="Second"),
    )

    parsed = parse_feed(document, "application/rss+xml", BASE)

    assert parsed.dialect == "rss"
    assert parsed.title == "Example Feed"
    assert parsed.description == "An example feed"
    assert [entry.url for entry in parsed.entries] == [
        "https://example.com/posts/1",
        "https://example.com/posts/2",
    ]
    first = parsed.entries[0]
    assert first.guid == "post-1"
    assert first.title == "First post"
    assert "<b>world</b>" in first.description
    assert first.published_at == datetime(2021, 9, 6, 10, 0, tzinfo=timezone.utc)


def test_parses_atom_entries(feed_xml):
    document = feed_xml.atom(
        "<entry>"
        "<title>Atom entry</title>"
        '<link rel="enclosure" href="https://cdn.example.com/a.mp3"/>'
        '<link rel="alternate" href="https://example.com/atom/1"/>'
        "<id>tag:example.com,2024:1</id>"
        "<updated>2024-01-02T03:04:05Z</updated>"
        "<author><name>Ada</name></author>"
        "<summary>Short summary</summary>"
        '<content type="html">&lt;p&gt;Body&lt;/p&gt;</content>'
        '<category term="python"/><category term="feeds"/><category term="python"/>'
        "</entry>"
    )

    parsed = parse_feed(document, "application/atom+xml", BASE)

    assert parsed.dialect == "atom"
    assert parsed.title == "Example Atom"
    assert parsed.description == "Atom subtitle"
    entry = parsed.entries[0]
    assert entry.url == "https://example.com/atom/1"
    assert entry.guid == "tag:example.com,2024:1"
    assert entry.author == "Ada"
    assert entry.description == "Short summary"
    assert "Body" in entry.content
    assert entry.tags == ["python", "feeds"]
    assert entry.updated_at == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def test_relative_links_resolve_against_feed_url(feed_xml):
    document = feed_xml.rss(feed_xml.item(guid="rel", link="/posts/relative", title="Rel"))

    parsed = parse_feed(document, base_url=BASE)

    assert parsed.entries[0].url == "https://example.com/posts/relative"


def test_permalink_guid_stands_in_for_missing_link():
    document = (
        b'<rss version="2.0"><channel><title>T</title>'
        b"<item><title>Only guid</title><guid>https://example.com/by-guid</guid></item>"
        b"</channel></rss>"
    )

    parsed = parse_feed(document, base_url=BASE)

    assert parsed.entries[0].url == "https://example.com/by-guid"


def test_entries_without_resolvable_url_are_dropped(feed_xml):
    document = feed_xml.rss(
        feed_xml.item(guid="opaque-id", title="No link at all"),
        feed_xml.item(title="Nothing either"),
        feed_xml.item(guid="ok", link="https://example.com/ok", title="Fine"),
    )

    parsed = parse_feed(document, base_url=BASE)

    assert [entry.url for entry in parsed.entries] == ["https://example.com/ok"]
    assert parsed.dropped == 2
    assert all(entry.url for entry in parsed.entries)


def test_missing_title_is_synthesized_from_description(feed_xml):
    long_text = "word " * 40
    document = feed_xml.rss(
        feed_xml.item(guid="a", link="https://example.com/a", description="Plain summary"),
        feed_xml.item(guid="b", link="https://example.com/b", description=long_text),
        feed_xml.item(guid="c", link="https://example.com/c"),
    )

    entries = parse_feed(document, base_url=BASE).entries

    assert entries[0].title == "Plain summary"
    assert len(entries[1].title) <= TITLE_FALLBACK_LENGTH
    assert entries[1].title.startswith("word word")
    assert entries[2].title == "https://example.com/c"


def test_unparseable_dates_become_none(feed_xml):
    document = feed_xml.rss(
        feed_xml.item(
            guid="a", link="https://example.com/a", title="A", pub_date="not a date"
        )
    )

    entry = parse_feed(document, base_url=BASE).entries[0]

    assert entry.published_at is None


def test_declared_charset_is_honoured():
    document = (
        '<?xml version="1.0" encoding="ISO-8859-1"?>'
        '<rss version="2.0"><channel><title>Caf\xe9</title>'
        "<item><title>Cr\xe8me br\xfbl\xe9e</title><link>https://example.com/c</link></item>"
        "</channel></rss>"
    ).encode("iso-8859-1")

    parsed = parse_feed(document, "text/xml; charset=ISO-8859-1", BASE)

    assert parsed.title == "Caf\xe9"
    assert parsed.entries[0].title == "Cr\xe8me br\xfbl\xe9e"


@pytest.mark.parametrize(
    "content_type", ["application/rss+xml; charset=utf-8", "application/rss+xml"]
)
def test_stray_bytes_in_utf8_document_are_replaced(content_type):
    document = (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0"><channel><title>T</title>'
        "<item><title>café naïve 日本</title>"
        "<link>https://example.com/u</link>"
        "<description>bad "
    ).encode("utf-8") + b"\xff" + b" byte</description></item></channel></rss>"

    entry = parse_feed(document, content_type, BASE).entries[0]

    assert entry.title == "café naïve 日本"
    assert entry.description == "bad \ufffd byte"


def test_non_feed_document_is_invalid_format():
    with pytest.raises(ParseError) as excinfo:
        parse_feed(b"<html><body><p>Not a feed</p></body></html>", "text/html")

    assert excinfo.value.kind == ParseErrorKind.INVALID_FORMAT


def test_malformed_xml_is_invalid_format():
    document = b'<rss version="2.0"><channel><title>Broken</title><item></channel></rss>'

    with pytest.raises(ParseError) as excinfo:
        parse_feed(document, base_url=BASE)

    assert excinfo.value.kind == ParseErrorKind.INVALID_FORMAT


@pytest.mark.parametrize(
    "content",
    [b"", b"   \n  ", bytes(range(1, 9)) * 20],
)
def test_unreadable_documents_are_undecodable(content):
    with pytest.raises(ParseError) as excinfo:
        parse_feed(content, "text/xml; charset=utf-8")

    assert excinfo.value.kind == ParseErrorKind.UNDECODABLE


def test_sniff_root_skips_prolog():
    text = (
        '<?xml version="1.0"?>\n<!-- generated -->\n'
        '<!DOCTYPE rss [<!ENTITY nbsp "&#160;">]>\n<rss version="2.0"/>'
    )

    assert sniff_root(text) == "rss"


@pytest.mark.parametrize(
    "root, dialect",
    [("rss", "rss"), ("rdf:RDF", "rss"), ("feed", "atom"), ("html", None), (None, None)],
)
def test_detect_dialect(root, dialect):
    assert detect_dialect(root) == dialect


def test_strip_html():
    assert strip_html("<p>Summary <strong>text</strong> with a <a href='#'>link</a>.</p>") == (
        "Summary text with a link."
    )
    assert strip_html(None) == ""
    assert strip_html("  plain   text ") == "plain text"
