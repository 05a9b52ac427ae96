import threading
from types import SimpleNamespace

import pytest
from requests.structures import CaseInsensitiveDict

from rss_ingest import db
from rss_ingest.fetcher import FetchConfig
from rss_ingest.registry import FeedRegistry


class FakeResponse:
    """Minimal stand-in for a streamed ``requests.Response``."""

    def __init__(self, status_code=200, content=b"", headers=None, url=None, error=None):
        self.status_code = status_code
        self.content = content
        self.headers = CaseInsensitiveDict(headers or {})
        self.url = url
        self.error = error
        self.closed = False

    @property
    def text(self):
        return self.content.decode("utf-8", errors="replace")

    def iter_content(self, chunk_size=1):
        if self.error is not None:
            raise self.error
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start : start + chunk_size]

    def close(self):
        self.closed = True


class FakeSession:
    """Serves scripted responses per URL.

    Each URL holds a queue; the last item repeats once the queue is drained.
    Items may be responses, exceptions to raise, or callables taking
    ``(url, headers)``. Unknown URLs answer 404.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self._lock = threading.Lock()

    def add(self, url, *responses):
        self.routes.setdefault(url, []).extend(responses)
        return self

    def get(self, url, headers=None, timeout=None, stream=False, allow_redirects=True):
        with self._lock:
            self.calls.append(SimpleNamespace(url=url, headers=dict(headers or {})))
            queue = self.routes.get(url)
            if not queue:
                return FakeResponse(404, url=url)
            item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(url, headers or {})
        return item

    def calls_to(self, url):
        return [call for call in self.calls if call.url == url]


def rss_feed(*items, title="Example Feed", description="An example feed"):
    body = "".join(items)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0"><channel>'
        f"<title>{title}</title><link>https://example.com/</link>"
        f"<description>{description}</description>"
        f"{body}</channel></rss>"
    ).encode("utf-8")


def rss_item(guid=None, link=None, title=None, description=None, pub_date=None):
    parts = ["<item>"]
    if title is not None:
        parts.append(f"<title>{title}</title>")
    if link is not None:
        parts.append(f"<link>{link}</link>")
    if guid is not None:
        parts.append(f'<guid isPermaLink="false">{guid}</guid>')
    if description is not None:
        parts.append(f"<description>{description}</description>")
    if pub_date is not None:
        parts.append(f"<pubDate>{pub_date}</pubDate>")
    parts.append("</item>")
    return "".join(parts)


def atom_feed(*entries, title="Example Atom"):
    body = "".join(entries)
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<feed xmlns="http://www.w3.org/2005/Atom">'
        f"<title>{title}</title><subtitle>Atom subtitle</subtitle>"
        "<id>urn:uuid:60a76c80-d399-11d9-b93C-0003939e0af6</id>"
        "<updated>2024-01-02T00:00:00Z</updated>"
        f"{body}</feed>"
    ).encode("utf-8")


@pytest.fixture
def feed_xml():
    """Builders for RSS and Atom documents."""
    return SimpleNamespace(rss=rss_feed, item=rss_item, atom=atom_feed)


@pytest.fixture
def engine(tmp_path):
    engine = db.init_engine(f"sqlite:///{tmp_path / 'ingest.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return db.get_session_factory(engine)


@pytest.fixture
def registry(session_factory):
    return FeedRegistry(session_factory)


@pytest.fixture
def http():
    return FakeSession()


@pytest.fixture
def fetch_config():
    return FetchConfig(
        respect_robots_txt=False,
        min_host_interval_seconds=0,
        retry_delay_seconds=1,
        max_retry_delay_seconds=8,
    )


@pytest.fixture
def make_response():
    return FakeResponse
