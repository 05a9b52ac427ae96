"""Feed parsing and normalization into canonical entries."""

from __future__ import annotations

import calendar
import codecs
import io
import logging
import re
import time
import xml.sax
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import feedparser
from bs4 import BeautifulSoup, UnicodeDammit

from .models import ParsedFeed, RawEntry

logger = logging.getLogger(__name__)

TITLE_FALLBACK_LENGTH = 80

_CHARSET_RE = re.compile(r"charset\s*=\s*[\"']?([\w.:-]+)", re.IGNORECASE)
_XML_DECL_ENCODING_RE = re.compile(
    r"^(\s*<\?xml[^>]*?)\s+encoding\s*=\s*([\"'])[^\"']*\2", re.IGNORECASE
)
_XML_DECL_BYTES_RE = re.compile(
    rb"^\s*<\?xml[^>]*?\sencoding\s*=\s*[\"']([A-Za-z][\w.:-]*)[\"']"
)
_ELEMENT_RE = re.compile(r"<([A-Za-z_][\w.:-]*)")


class ParseErrorKind(str, Enum):
    INVALID_FORMAT = "invalid_format"
    UNDECODABLE = "undecodable"


class ParseError(Exception):
    """Raised when a whole document cannot be used."""

    def __init__(self, kind: ParseErrorKind, message: str):
        self.kind = kind
        super().__init__(f"{kind.value}: {message}")


def _declared_charset(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    match = _CHARSET_RE.search(content_type)
    return match.group(1) if match else None


def _xml_declared_encoding(content: bytes) -> Optional[str]:
    match = _XML_DECL_BYTES_RE.match(content)
    if not match:
        return None
    name = match.group(1).decode("ascii")
    # an ASCII-readable declaration cannot be in a 16 or 32 bit encoding
    if name.lower().startswith(("utf-16", "utf-32", "ucs")):
        return None
    return name


def _known_codec(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    try:
        return codecs.lookup(name).name
    except LookupError:
        logger.debug("Ignoring unknown charset %r", name)
        return None


def decode_document(content: bytes, content_type: Optional[str] = None) -> str:
    """Decode feed bytes using the declared charset or by sniffing.

    A charset from the HTTP header or the XML declaration is trusted and bad
    byte sequences are replaced. Without one the encoding is sniffed. Raises
    ParseError(UNDECODABLE) when no usable text is left.
    """
    if not content or not content.strip():
        raise ParseError(ParseErrorKind.UNDECODABLE, "document is empty")

    if content.startswith(codecs.BOM_UTF8):
        declared = "utf-8-sig"
    else:
        declared = _known_codec(_declared_charset(content_type)) or _known_codec(
            _xml_declared_encoding(content)
        )

    if declared:
        text = content.decode(declared, errors="replace")
        logger.debug("Decoded document as declared %s", declared)
    else:
        dammit = UnicodeDammit(content, is_html=False)
        text = dammit.unicode_markup
        if text is None:
            text = content.decode("utf-8", errors="replace")
        else:
            logger.debug("Decoded document as sniffed %s", dammit.original_encoding)

    visible = [char for char in text if not char.isspace()]
    readable = [char for char in visible if char != "\ufffd" and char.isprintable()]
    if not readable or len(readable) * 2 < len(visible):
        raise ParseError(ParseErrorKind.UNDECODABLE, "no readable text recovered")
    return text.lstrip("\ufeff")


def sniff_root(text: str) -> Optional[str]:
    """Return the name of the document element, skipping the prolog."""
    pos = 0
    length = len(text)
    while pos < length:
        while pos < length and text[pos].isspace():
            pos += 1
        if text.startswith("<?", pos):
            end = text.find("?>", pos)
            if end == -1:
                return None
            pos = end + 2
        elif text.startswith("<!--", pos):
            end = text.find("-->", pos)
            if end == -1:
                return None
            pos = end + 3
        elif text.startswith("<!", pos):
            bracket = text.find("[", pos)
            close = text.find(">", pos)
            if bracket != -1 and (close == -1 or bracket < close):
                close = text.find("]>", bracket)
                if close == -1:
                    return None
                close += 1
            if close == -1:
                return None
            pos = close + 1
        else:
            match = _ELEMENT_RE.match(text, pos)
            return match.group(1) if match else None
    return None


def detect_dialect(root: Optional[str]) -> Optional[str]:
    if not root:
        return None
    local = root.split(":")[-1].lower()
    if local in ("rss", "rdf"):
        return "rss"
    if local == "feed":
        return "atom"
    return None


def _resolve_url(
    candidate: Optional[str], base_url: Optional[str], relative: bool = True
) -> Optional[str]:
    if not candidate or not isinstance(candidate, str):
        return None
    url = candidate.strip()
    if relative:
        url = urljoin(base_url or "", url)
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return url


# Strategies yield (candidate, may_be_relative). Identifiers are only
# accepted when they are already absolute URLs.


def _entry_link(entry) -> Tuple[Optional[str], bool]:
    # feedparser copies <guid>/<id> into ``link`` when no link preceded it
    link = entry.get("link")
    return link, link != entry.get("id")


def _rss_links(entry) -> Iterable[Tuple[Optional[str], bool]]:
    yield _entry_link(entry)
    yield entry.get("id"), False


def _atom_links(entry) -> Iterable[Tuple[Optional[str], bool]]:
    links = entry.get("links") or []
    for link in links:
        if link.get("rel", "alternate") == "alternate":
            yield link.get("href"), True
    yield _entry_link(entry)
    for link in links:
        if link.get("rel") != "enclosure":
            yield link.get("href"), True
    yield entry.get("id"), False


_LINK_STRATEGIES: Dict[str, Callable[[object], Iterable[Tuple[Optional[str], bool]]]] = {
    "rss": _rss_links,
    "atom": _atom_links,
}


def strip_html(raw_value: Optional[str]) -> str:
    """Return text content extracted from HTML fragments."""
    if not raw_value:
        return ""
    if "<" not in raw_value and "&" not in raw_value:
        return re.sub(r"\s+", " ", raw_value).strip()
    soup = BeautifulSoup(raw_value, "html.parser")
    text = soup.get_text(separator=" ", strip=True)
    text = re.sub(r"\s+([.,;:!?])", r"\1", text)
    text = re.sub(r"\s{2,}", " ", text)
    return text.strip()


def to_datetime(value: Optional[time.struct_time]) -> Optional[datetime]:
    """Convert a feedparser UTC time tuple, returning None when unusable."""
    if not value:
        return None
    try:
        return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _first_content(entry) -> Optional[str]:
    content = entry.get("content")
    if not content:
        return None
    value = content[0].get("value")
    return value or None


def _tags(entry) -> List[str]:
    tags: List[str] = []
    for tag in entry.get("tags") or []:
        term = (tag.get("term") or tag.get("label") or "").strip()
        if term and term not in tags:
            tags.append(term)
    return tags


def _synthesize_title(description: Optional[str], content: Optional[str], url: str) -> str:
    for source in (description, content):
        if source:
            text = strip_html(source)
            if text:
                return text[:TITLE_FALLBACK_LENGTH].rstrip()
    return url


def _build_entry(entry, dialect: str, base_url: Optional[str]) -> Optional[RawEntry]:
    url = None
    for candidate, relative in _LINK_STRATEGIES[dialect](entry):
        url = _resolve_url(candidate, base_url, relative)
        if url:
            break
    if not url:
        return None

    guid = (entry.get("id") or "").strip() or None
    description = entry.get("summary") or None
    content = _first_content(entry)
    title = strip_html(entry.get("title") or "")
    if not title:
        title = _synthesize_title(description, content, url)

    return RawEntry(
        url=url,
        title=title,
        guid=guid,
        description=description,
        content=content,
        author=(entry.get("author") or "").strip() or None,
        published_at=to_datetime(entry.get("published_parsed")),
        updated_at=to_datetime(entry.get("updated_parsed")),
        tags=_tags(entry),
    )


def parse_feed(
    content: bytes,
    content_type: Optional[str] = None,
    base_url: Optional[str] = None,
) -> ParsedFeed:
    """Parse an RSS or Atom document into canonical entries.

    Raises:
        ParseError: UNDECODABLE when no text can be recovered, INVALID_FORMAT
            when the document is not well-formed or not a feed
    """
    text = decode_document(content, content_type)
    root = sniff_root(text)
    dialect = detect_dialect(root)
    if dialect is None:
        raise ParseError(
            ParseErrorKind.INVALID_FORMAT, f"unrecognized document root: {root!r}"
        )

    normalized = _XML_DECL_ENCODING_RE.sub(r"\1", text, count=1).encode("utf-8")
    headers = {"content-type": "application/xml; charset=utf-8"}
    if base_url:
        headers["content-location"] = base_url
    parsed = feedparser.parse(io.BytesIO(normalized), response_headers=headers)

    if parsed.get("bozo") and isinstance(parsed.get("bozo_exception"), xml.sax.SAXException):
        raise ParseError(
            ParseErrorKind.INVALID_FORMAT, f"not well-formed: {parsed.bozo_exception}"
        )

    entries: List[RawEntry] = []
    skipped = 0
    dropped = 0
    for index, entry in enumerate(parsed.entries):
        try:
            raw = _build_entry(entry, dialect, base_url)
        except (AttributeError, KeyError, IndexError, TypeError, ValueError) as exc:
            skipped += 1
            logger.warning("Skipping malformed entry #%d in %s: %s", index, base_url, exc)
            continue
        if raw is None:
            dropped += 1
            logger.debug("Dropping entry #%d without a usable link in %s", index, base_url)
            continue
        entries.append(raw)

    feed_info = parsed.get("feed") or {}
    title = strip_html(feed_info.get("title") or "") or None
    description = strip_html(feed_info.get("subtitle") or "") or None

    logger.info(
        "Parsed %s feed %s: %d entries, %d skipped, %d dropped",
        dialect,
        base_url or "<inline>",
        len(entries),
        skipped,
        dropped,
    )
    return ParsedFeed(
        dialect=dialect,
        entries=entries,
        title=title,
        description=description,
        skipped=skipped,
        dropped=dropped,
    )
