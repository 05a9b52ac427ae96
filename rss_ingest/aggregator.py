"""Cycle orchestration: registry -> fetcher -> parser -> persistence."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .db import utcnow
from .fetcher import FeedFetcher, FetchCancelled
from .models import (
    CycleReport,
    Failed,
    Feed,
    FeedResult,
    FeedState,
    NotModified,
)
from .parser import ParseError, parse_feed
from .persistence import StorageError, upsert_entries
from .registry import FeedRegistry

logger = logging.getLogger(__name__)


@dataclass
class AggregatorConfig:
    concurrency: int = 10
    default_interval_hours: float = 1.0


class Aggregator:
    """Runs fetch-parse-persist pipelines for every due feed.

    Pipelines run on a bounded thread pool, one per feed, and never depend
    on each other. Feed state is written back through the registry. Deciding
    when a failing feed should be deactivated is left to the caller.
    """

    def __init__(
        self,
        registry: FeedRegistry,
        fetcher: FeedFetcher,
        session_factory: sessionmaker[Session],
        config: Optional[AggregatorConfig] = None,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or AggregatorConfig()
        if self.config.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._registry = registry
        self._fetcher = fetcher
        self._session_factory = session_factory
        self._cancel_event = cancel_event or threading.Event()
        self._clock = clock

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Abort the running cycle; unfinished feeds leave no trace."""
        logger.info("Cancelling ingestion cycle")
        self._cancel_event.set()

    def run_cycle(self, now: Optional[datetime] = None) -> CycleReport:
        """Process all due feeds once and return the aggregate counts."""
        self._cancel_event.clear()
        now = now or self._clock()
        feeds = self._registry.list_due(now, self.config.default_interval_hours)
        report = CycleReport()
        if not feeds:
            logger.info("No feeds due at %s", now.isoformat())
            return report

        logger.info(
            "Starting cycle over %d due feeds (concurrency %d)",
            len(feeds),
            self.config.concurrency,
        )
        workers = min(self.config.concurrency, len(feeds))
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_feed = {
                executor.submit(self.process_feed, feed): feed for feed in feeds
            }
            try:
                for future in concurrent.futures.as_completed(future_to_feed):
                    report.add(future.result())
            except KeyboardInterrupt:
                self.cancel()
                raise

        report.cancelled = self.cancelled
        logger.info(
            "Cycle finished: %d attempted, %d succeeded, %d failed, "
            "%d inserted, %d updated, %d skipped%s",
            report.attempted,
            report.succeeded,
            report.failed,
            report.inserted,
            report.updated,
            report.skipped,
            " (cancelled)" if report.cancelled else "",
        )
        return report

    def process_feed(self, feed: Feed) -> FeedResult:
        """Run one feed through the pipeline; never raises."""
        result = FeedResult(feed_id=feed.id, url=feed.url, state=FeedState.DUE)
        try:
            return self._pipeline(feed, result)
        except FetchCancelled:
            return self._transition(result, FeedState.CANCELLED)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error while processing feed %s", feed.url)
            return self._fail(result, f"unexpected error: {exc}", self._clock())

    def _pipeline(self, feed: Feed, result: FeedResult) -> FeedResult:
        if self.cancelled:
            return self._transition(result, FeedState.CANCELLED)

        fetched_at = self._clock()
        self._transition(result, FeedState.FETCHING)
        outcome = self._fetcher.fetch(feed)

        if isinstance(outcome, NotModified):
            self._registry.record_success(
                feed.id, feed.etag, feed.last_modified, fetched_at
            )
            return self._transition(result, FeedState.NOT_MODIFIED)
        if isinstance(outcome, Failed):
            return self._fail(result, str(outcome), fetched_at)

        self._transition(result, FeedState.PARSING)
        try:
            parsed = parse_feed(
                outcome.content,
                content_type=outcome.content_type,
                base_url=outcome.url or feed.url,
            )
        except ParseError as exc:
            return self._fail(result, str(exc), fetched_at)

        if self.cancelled:
            return self._transition(result, FeedState.CANCELLED)

        self._transition(result, FeedState.PERSISTING)
        try:
            result.report = upsert_entries(
                self._session_factory, feed.id, parsed.entries, now=self._clock()
            )
        except StorageError as exc:
            return self._fail(result, str(exc), fetched_at)

        self._registry.record_success(
            feed.id, outcome.etag, outcome.last_modified, fetched_at
        )
        self._registry.update_metadata(feed.id, parsed.title, parsed.description)
        return self._transition(result, FeedState.DONE)

    def _fail(self, result: FeedResult, error: str, fetched_at: datetime) -> FeedResult:
        result.error = error
        try:
            self._registry.record_failure(result.feed_id, error, fetched_at)
        except SQLAlchemyError:
            logger.exception("Could not record failure for feed %s", result.url)
        return self._transition(result, FeedState.FAILED)

    @staticmethod
    def _transition(result: FeedResult, state: FeedState) -> FeedResult:
        logger.debug("Feed %d: %s -> %s", result.feed_id, result.state.value, state.value)
        result.state = state
        return result
