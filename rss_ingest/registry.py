"""Durable registry of feeds and their fetch metadata."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from urllib.parse import urlparse

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .db import FeedEntryModel, FeedModel, as_utc
from .models import Feed

logger = logging.getLogger(__name__)


class DuplicateFeedError(Exception):
    """Raised when registering a URL that is already tracked."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Feed with URL '{url}' already exists")


class FeedNotFoundError(Exception):
    """Raised when a feed id does not exist."""

    def __init__(self, feed_id: int):
        self.feed_id = feed_id
        super().__init__(f"Feed {feed_id} not found")


class InvalidFeedUrlError(ValueError):
    """Raised when a feed URL is not an absolute http(s) URL."""


def validate_feed_url(url: str) -> str:
    """Return the stripped URL or raise InvalidFeedUrlError."""
    candidate = (url or "").strip()
    parsed = urlparse(candidate)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidFeedUrlError(f"Not an absolute http(s) URL: '{url}'")
    return candidate


def _to_feed(row: FeedModel) -> Feed:
    return Feed(
        id=row.id,
        url=row.url,
        title=row.title,
        description=row.description,
        last_fetch_time=as_utc(row.last_fetch_time),
        last_successful_fetch=as_utc(row.last_successful_fetch),
        update_frequency_hours=row.update_frequency_hours,
        error_count=row.error_count,
        last_error=row.last_error,
        is_active=row.is_active,
        etag=row.etag,
        last_modified=row.last_modified,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


class FeedRegistry:
    """Feed bookkeeping backed by an injected session factory.

    Every mutating method runs in its own transaction and commits before
    returning, so a later read of the same row sees the change.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def _load(self, session: Session, feed_id: int) -> FeedModel:
        row = session.get(FeedModel, feed_id)
        if row is None:
            raise FeedNotFoundError(feed_id)
        return row

    def register(
        self,
        url: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        update_frequency_hours: Optional[int] = None,
    ) -> int:
        """Start tracking a feed and return its id.

        Raises:
            InvalidFeedUrlError: If the URL is not absolute http(s)
            DuplicateFeedError: If the URL is already registered
        """
        url = validate_feed_url(url)
        if update_frequency_hours is not None and update_frequency_hours <= 0:
            raise ValueError("update_frequency_hours must be positive.")

        with self._session_factory() as session:
            existing = session.execute(
                select(FeedModel.id).where(FeedModel.url == url)
            ).scalar_one_or_none()
            if existing is not None:
                raise DuplicateFeedError(url)

            row = FeedModel(
                url=url,
                title=title,
                description=description,
                update_frequency_hours=update_frequency_hours,
                error_count=0,
                is_active=True,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateFeedError(url) from exc
            logger.info("Registered feed %s with id %d", url, row.id)
            return row.id

    def get(self, feed_id: int) -> Feed:
        with self._session_factory() as session:
            return _to_feed(self._load(session, feed_id))

    def get_by_url(self, url: str) -> Optional[Feed]:
        with self._session_factory() as session:
            row = session.execute(
                select(FeedModel).where(FeedModel.url == url.strip())
            ).scalar_one_or_none()
            return _to_feed(row) if row else None

    def list_feeds(self, active_only: bool = False) -> List[Feed]:
        with self._session_factory() as session:
            stmt = select(FeedModel)
            if active_only:
                stmt = stmt.where(FeedModel.is_active.is_(True))
            rows = session.execute(stmt.order_by(FeedModel.id)).scalars().all()
            return [_to_feed(row) for row in rows]

    def list_due(self, now: datetime, default_interval_hours: float) -> List[Feed]:
        """Return active feeds whose refresh interval has elapsed.

        The interval for a feed is the larger of its own
        ``update_frequency_hours`` and ``default_interval_hours``. Feeds
        never fetched come first, then the longest-waiting ones.
        """
        now = as_utc(now)
        with self._session_factory() as session:
            stmt = (
                select(FeedModel)
                .where(FeedModel.is_active.is_(True))
                .order_by(FeedModel.last_fetch_time.asc().nulls_first(), FeedModel.id)
            )
            rows = session.execute(stmt).scalars().all()

        due: List[Feed] = []
        for row in rows:
            feed = _to_feed(row)
            if feed.last_fetch_time is None:
                due.append(feed)
                continue
            interval = max(feed.update_frequency_hours or 0, default_interval_hours)
            if now - feed.last_fetch_time >= timedelta(hours=interval):
                due.append(feed)
        logger.debug("%d of %d active feeds are due", len(due), len(rows))
        return due

    def record_success(
        self,
        feed_id: int,
        etag: Optional[str],
        last_modified: Optional[str],
        fetched_at: datetime,
    ) -> None:
        """Mark a fetch as successful and store the new conditional headers."""
        with self._session_factory() as session:
            row = self._load(session, feed_id)
            row.last_fetch_time = fetched_at
            row.last_successful_fetch = fetched_at
            row.etag = etag
            row.last_modified = last_modified
            row.error_count = 0
            row.last_error = None
            session.commit()

    def record_failure(self, feed_id: int, error: str, fetched_at: datetime) -> None:
        """Count a failed attempt; cached headers are left for the next try."""
        with self._session_factory() as session:
            row = self._load(session, feed_id)
            row.last_fetch_time = fetched_at
            row.error_count = (row.error_count or 0) + 1
            row.last_error = error
            session.commit()
            logger.warning(
                "Feed %d (%s) failed, error count now %d: %s",
                feed_id,
                row.url,
                row.error_count,
                error,
            )

    def update_metadata(
        self, feed_id: int, title: Optional[str], description: Optional[str]
    ) -> None:
        """Fill in title/description discovered from the feed when unset."""
        with self._session_factory() as session:
            row = self._load(session, feed_id)
            changed = False
            if title and not row.title:
                row.title = title
                changed = True
            if description and not row.description:
                row.description = description
                changed = True
            if changed:
                session.commit()

    def set_update_frequency(self, feed_id: int, hours: Optional[int]) -> None:
        if hours is not None and hours <= 0:
            raise ValueError("update_frequency_hours must be positive.")
        with self._session_factory() as session:
            row = self._load(session, feed_id)
            row.update_frequency_hours = hours
            session.commit()
        logger.debug("Updated feed %d frequency to %s hours", feed_id, hours)

    def deactivate(self, feed_id: int) -> None:
        with self._session_factory() as session:
            row = self._load(session, feed_id)
            row.is_active = False
            session.commit()
        logger.info("Deactivated feed %d", feed_id)

    def activate(self, feed_id: int) -> None:
        with self._session_factory() as session:
            row = self._load(session, feed_id)
            row.is_active = True
            session.commit()
        logger.info("Activated feed %d", feed_id)

    def remove(self, feed_id: int) -> None:
        """Delete a feed together with its entries and input items."""
        with self._session_factory() as session:
            row = self._load(session, feed_id)
            session.delete(row)
            session.commit()
        logger.info("Removed feed %d", feed_id)

    def entry_count(self, feed_id: int) -> int:
        with self._session_factory() as session:
            return session.execute(
                select(func.count())
                .select_from(FeedEntryModel)
                .where(FeedEntryModel.feed_id == feed_id)
            ).scalar_one()

    def stats(self) -> Dict[str, int]:
        """Counts of total, active, failing and never-fetched feeds."""
        active = FeedModel.is_active.is_(True)
        with self._session_factory() as session:

            def count(*conditions) -> int:
                stmt = select(func.count()).select_from(FeedModel)
                for condition in conditions:
                    stmt = stmt.where(condition)
                return session.execute(stmt).scalar_one()

            return {
                "total_feeds": count(),
                "active_feeds": count(active),
                "failing_feeds": count(active, FeedModel.error_count > 0),
                "never_fetched": count(active, FeedModel.last_fetch_time.is_(None)),
            }
