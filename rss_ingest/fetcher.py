"""Conditional HTTP fetching of feed documents."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import urlparse
from urllib.robotparser import RobotFileParser

import requests
from urllib3.exceptions import ReadTimeoutError

from .models import FailureReason, Failed, Feed, Fetched, FetchOutcome, NotModified

logger = logging.getLogger(__name__)

ACCEPT_HEADER = (
    "application/rss+xml, application/atom+xml, application/xml;q=0.9, "
    "text/xml;q=0.8, */*;q=0.5"
)
CHUNK_SIZE = 64 * 1024


@dataclass
class FetchConfig:
    """HTTP behaviour for feed downloads."""

    user_agent: str = "rss-ingest/0.1"
    timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_delay_seconds: float = 5.0
    max_retry_delay_seconds: float = 160.0
    max_feed_size_mb: float = 10.0
    max_redirects: int = 5
    respect_robots_txt: bool = True
    min_host_interval_seconds: float = 1.0

    @property
    def max_feed_size_bytes(self) -> int:
        return int(self.max_feed_size_mb * 1024 * 1024)


class FetchCancelled(Exception):
    """Raised when a fetch is aborted because the cycle was cancelled."""


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before retry number ``attempt + 1``: ``base * 2**attempt`` capped at ``cap``."""
    if attempt < 0:
        raise ValueError("attempt must be non-negative")
    return min(cap, base * (2**attempt))


def build_session(config: FetchConfig) -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": config.user_agent, "Accept": ACCEPT_HEADER})
    session.max_redirects = config.max_redirects
    return session


class FeedFetcher:
    """Downloads feeds honouring cache validators, size limits and robots.txt.

    The fetcher never touches storage; callers persist whatever the returned
    outcome carries. One instance is shared by all worker threads of a cycle.
    """

    def __init__(
        self,
        config: Optional[FetchConfig] = None,
        session: Optional[requests.Session] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.config = config or FetchConfig()
        self._session = session or build_session(self.config)
        self._sleep = sleep
        self._clock = clock
        self._cancel_event = cancel_event
        self._robots: Dict[str, RobotFileParser] = {}
        self._robots_lock = threading.Lock()
        self._last_request: Dict[str, float] = {}
        self._host_lock = threading.Lock()

    def fetch(self, feed: Feed) -> FetchOutcome:
        """Fetch one feed, retrying transient failures with backoff."""
        self._check_cancelled()

        if self.config.respect_robots_txt and not self._robots_allowed(feed.url):
            logger.warning("robots.txt disallows fetching %s", feed.url)
            return Failed(FailureReason.ROBOTS_DISALLOWED, f"robots.txt disallows {feed.url}")

        host = urlparse(feed.url).netloc
        outcome: FetchOutcome = Failed(FailureReason.CONNECTION, "no attempt made")
        for attempt in range(self.config.max_retries + 1):
            self._wait_for_host(host)
            logger.debug("Fetching %s (attempt %d)", feed.url, attempt + 1)
            outcome, retryable = self._attempt(feed)
            if not retryable:
                break
            if attempt < self.config.max_retries:
                delay = backoff_delay(
                    attempt,
                    self.config.retry_delay_seconds,
                    self.config.max_retry_delay_seconds,
                )
                logger.warning(
                    "Attempt %d for %s failed (%s), retrying in %.1fs",
                    attempt + 1,
                    feed.url,
                    outcome,
                    delay,
                )
                self._pause(delay)

        if isinstance(outcome, Failed):
            logger.warning("Giving up on %s: %s", feed.url, outcome)
        elif isinstance(outcome, NotModified):
            logger.debug("Feed not modified: %s", feed.url)
        else:
            logger.info(
                "Fetched %s (HTTP %d, %d bytes)", feed.url, outcome.status, len(outcome.content)
            )
        return outcome

    def _attempt(self, feed: Feed) -> Tuple[FetchOutcome, bool]:
        headers = {}
        if feed.etag:
            headers["If-None-Match"] = feed.etag
        if feed.last_modified:
            headers["If-Modified-Since"] = feed.last_modified

        try:
            response = self._session.get(
                feed.url,
                headers=headers,
                timeout=self.config.timeout_seconds,
                stream=True,
                allow_redirects=True,
            )
        except requests.exceptions.TooManyRedirects as exc:
            return Failed(FailureReason.TOO_MANY_REDIRECTS, str(exc)), False
        except requests.exceptions.Timeout as exc:
            return Failed(FailureReason.TIMEOUT, str(exc)), True
        except requests.exceptions.ContentDecodingError as exc:
            return Failed(FailureReason.DECODE_ERROR, str(exc)), False
        except requests.exceptions.ConnectionError as exc:
            return Failed(FailureReason.CONNECTION, str(exc)), True
        except requests.RequestException as exc:
            return Failed(FailureReason.CONNECTION, str(exc)), False

        try:
            status = response.status_code
            if status == 304:
                return NotModified(), False
            if not 200 <= status < 300:
                retryable = status == 429 or status >= 500
                return Failed(FailureReason.HTTP_STATUS, f"HTTP {status}"), retryable

            limit = self.config.max_feed_size_bytes
            declared = response.headers.get("Content-Length")
            if declared and declared.isdigit() and int(declared) > limit:
                return (
                    Failed(
                        FailureReason.TOO_LARGE,
                        f"Content-Length {declared} exceeds {limit} bytes",
                    ),
                    False,
                )

            try:
                body = self._read_body(response, limit)
            except requests.exceptions.ContentDecodingError as exc:
                return Failed(FailureReason.DECODE_ERROR, str(exc)), False
            except requests.exceptions.Timeout as exc:
                return Failed(FailureReason.TIMEOUT, str(exc)), True
            except requests.exceptions.ConnectionError as exc:
                # requests reports a read timeout mid-body as a ConnectionError
                if exc.args and isinstance(exc.args[0], ReadTimeoutError):
                    return Failed(FailureReason.TIMEOUT, str(exc)), True
                return Failed(FailureReason.CONNECTION, str(exc)), True
            if body is None:
                return (
                    Failed(FailureReason.TOO_LARGE, f"Response exceeds {limit} bytes"),
                    False,
                )

            return (
                Fetched(
                    content=body,
                    etag=response.headers.get("ETag"),
                    last_modified=response.headers.get("Last-Modified"),
                    content_type=response.headers.get("Content-Type"),
                    url=getattr(response, "url", None) or feed.url,
                    status=status,
                ),
                False,
            )
        finally:
            response.close()

    def _read_body(self, response, limit: int) -> Optional[bytes]:
        """Read the decompressed body, or None once it passes ``limit``."""
        chunks = []
        total = 0
        for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
            self._check_cancelled()
            if not chunk:
                continue
            total += len(chunk)
            if total > limit:
                return None
            chunks.append(chunk)
        return b"".join(chunks)

    def _robots_allowed(self, url: str) -> bool:
        parsed = urlparse(url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        with self._robots_lock:
            parser = self._robots.get(origin)
        if parser is None:
            parser = self._load_robots(origin)
            with self._robots_lock:
                self._robots[origin] = parser
        return parser.can_fetch(self.config.user_agent, url)

    def _load_robots(self, origin: str) -> RobotFileParser:
        robots_url = f"{origin}/robots.txt"
        parser = RobotFileParser(robots_url)
        try:
            response = self._session.get(robots_url, timeout=self.config.timeout_seconds)
        except requests.RequestException as exc:
            logger.debug("Could not read %s (%s); assuming allowed", robots_url, exc)
            parser.allow_all = True
            return parser

        try:
            if response.status_code in (401, 403):
                parser.disallow_all = True
            elif response.status_code >= 400:
                parser.allow_all = True
            else:
                parser.parse(response.text.splitlines())
        finally:
            response.close()
        logger.debug("Loaded %s (status %d)", robots_url, response.status_code)
        return parser

    def _wait_for_host(self, host: str) -> None:
        """Space requests to the same host by ``min_host_interval_seconds``."""
        interval = self.config.min_host_interval_seconds
        if interval <= 0:
            return
        with self._host_lock:
            now = self._clock()
            last = self._last_request.get(host)
            wait = 0.0 if last is None else max(0.0, interval - (now - last))
            self._last_request[host] = now + wait
        if wait > 0:
            logger.debug("Rate limiting %s: waiting %.2fs", host, wait)
            self._pause(wait)

    def _pause(self, seconds: float) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        elif self._cancel_event is not None:
            self._cancel_event.wait(seconds)
        else:
            time.sleep(seconds)
        self._check_cancelled()

    def _check_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise FetchCancelled()
