"""Shared data models for rss_ingest."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Union


@dataclass
class FeedConfig:
    """A feed definition loaded from an OPML file."""

    category: str
    title: str
    url: str


@dataclass
class Feed:
    """A subscribed feed and its fetch bookkeeping."""

    id: int
    url: str
    title: Optional[str] = None
    description: Optional[str] = None
    last_fetch_time: Optional[datetime] = None
    last_successful_fetch: Optional[datetime] = None
    update_frequency_hours: Optional[int] = None
    error_count: int = 0
    last_error: Optional[str] = None
    is_active: bool = True
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class RawEntry:
    """Canonical entry produced by the parser for both RSS and Atom."""

    url: str
    title: str
    guid: Optional[str] = None
    description: Optional[str] = None
    content: Optional[str] = None
    author: Optional[str] = None
    published_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    tags: List[str] = field(default_factory=list)


@dataclass
class ParsedFeed:
    """Result of parsing one feed document."""

    dialect: str
    entries: List[RawEntry]
    title: Optional[str] = None
    description: Optional[str] = None
    skipped: int = 0
    dropped: int = 0


class FailureReason(str, Enum):
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    TOO_MANY_REDIRECTS = "too_many_redirects"
    TOO_LARGE = "too_large"
    ROBOTS_DISALLOWED = "robots_disallowed"
    DECODE_ERROR = "decode_error"
    HTTP_STATUS = "http_status"


@dataclass
class NotModified:
    """The server confirmed the cached copy is current (HTTP 304)."""


@dataclass
class Fetched:
    """A full response body was downloaded."""

    content: bytes
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    content_type: Optional[str] = None
    url: Optional[str] = None
    status: int = 200


@dataclass
class Failed:
    """The fetch did not produce a usable response."""

    reason: FailureReason
    message: str

    def __str__(self) -> str:
        return f"{self.reason.value}: {self.message}"


FetchOutcome = Union[NotModified, Fetched, Failed]


@dataclass
class UpsertReport:
    """Counts produced by persisting one batch of entries."""

    inserted: int = 0
    updated: int = 0
    skipped: int = 0


class FeedState(str, Enum):
    DUE = "due"
    FETCHING = "fetching"
    NOT_MODIFIED = "not_modified"
    PARSING = "parsing"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class FeedResult:
    """Outcome of one feed's pipeline within a cycle."""

    feed_id: int
    url: str
    state: FeedState
    report: UpsertReport = field(default_factory=UpsertReport)
    error: Optional[str] = None


@dataclass
class CycleReport:
    """Aggregate result of one pass over all due feeds."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    not_modified: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    cancelled: bool = False

    def add(self, result: FeedResult) -> None:
        """Fold a single feed result into the totals."""
        if result.state == FeedState.CANCELLED:
            return
        self.attempted += 1
        if result.state == FeedState.FAILED:
            self.failed += 1
            return
        self.succeeded += 1
        if result.state == FeedState.NOT_MODIFIED:
            self.not_modified += 1
        self.inserted += result.report.inserted
        self.updated += result.report.updated
        self.skipped += result.report.skipped
