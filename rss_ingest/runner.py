"""High-level orchestration for the ingestion service."""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

import requests
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from . import db
from .aggregator import Aggregator, AggregatorConfig
from .config import AppConfig, parse_feeds_config
from .fetcher import FeedFetcher, FetchConfig, build_session
from .models import CycleReport, FeedConfig
from .registry import DuplicateFeedError, FeedRegistry, InvalidFeedUrlError

logger = logging.getLogger(__name__)


@dataclass
class RunConfig:
    """Runtime options for executing the service."""

    connection_string: str
    feeds_file: Optional[str] = None
    fetch: FetchConfig = field(default_factory=FetchConfig)
    concurrency: int = 10
    default_interval_hours: float = 1.0
    poll_interval_minutes: float = 15.0
    deactivate_after_errors: Optional[int] = None

    @classmethod
    def from_app_config(cls, app_config: AppConfig) -> "RunConfig":
        return cls(
            connection_string=app_config.database.connection_string,
            feeds_file=app_config.feeds_file,
            fetch=app_config.fetch,
            concurrency=app_config.aggregator.concurrency,
            default_interval_hours=app_config.aggregator.default_interval_hours,
            poll_interval_minutes=app_config.schedule.poll_interval_minutes,
            deactivate_after_errors=app_config.schedule.deactivate_after_errors,
        )


@dataclass
class RunContext:
    """Wired components sharing one engine and one cancellation flag."""

    engine: Engine
    session_factory: sessionmaker[Session]
    registry: FeedRegistry
    fetcher: FeedFetcher
    aggregator: Aggregator
    cancel_event: threading.Event

    def close(self) -> None:
        self.engine.dispose()


@dataclass
class RunResult:
    """Returned data after running one cycle."""

    report: CycleReport
    output_text: str
    deactivated: List[int] = field(default_factory=list)


def build_context(
    config: RunConfig, http_session: Optional[requests.Session] = None
) -> RunContext:
    engine = db.init_engine(config.connection_string)
    session_factory = db.get_session_factory(engine)
    cancel_event = threading.Event()
    registry = FeedRegistry(session_factory)
    fetcher = FeedFetcher(
        config.fetch,
        session=http_session or build_session(config.fetch),
        cancel_event=cancel_event,
    )
    aggregator = Aggregator(
        registry,
        fetcher,
        session_factory,
        AggregatorConfig(
            concurrency=config.concurrency,
            default_interval_hours=config.default_interval_hours,
        ),
        cancel_event=cancel_event,
    )
    return RunContext(
        engine=engine,
        session_factory=session_factory,
        registry=registry,
        fetcher=fetcher,
        aggregator=aggregator,
        cancel_event=cancel_event,
    )


def import_feeds(registry: FeedRegistry, feeds: Iterable[FeedConfig]) -> int:
    """Register feeds that are not tracked yet; return how many were added."""
    added = 0
    for feed in feeds:
        try:
            registry.register(feed.url, title=feed.title)
        except DuplicateFeedError:
            logger.debug("Feed %s already registered", feed.url)
            continue
        except InvalidFeedUrlError as exc:
            logger.warning("Skipping feed '%s': %s", feed.title, exc)
            continue
        added += 1
    logger.info("Imported %d new feeds", added)
    return added


def apply_deactivation_policy(
    registry: FeedRegistry, threshold: Optional[int]
) -> List[int]:
    """Deactivate active feeds whose error count reached ``threshold``."""
    if threshold is None:
        return []
    if threshold <= 0:
        raise ValueError("Deactivation threshold must be positive.")

    deactivated = []
    for feed in registry.list_feeds(active_only=True):
        if feed.error_count >= threshold:
            logger.warning(
                "Deactivating feed %d (%s) after %d consecutive errors: %s",
                feed.id,
                feed.url,
                feed.error_count,
                feed.last_error,
            )
            registry.deactivate(feed.id)
            deactivated.append(feed.id)
    return deactivated


def format_report(report: CycleReport, deactivated: List[int]) -> str:
    payload = dataclasses.asdict(report)
    payload["deactivated"] = deactivated
    return json.dumps(payload, indent=2)


def _sync_configured_feeds(config: RunConfig, context: RunContext) -> None:
    if config.feeds_file:
        import_feeds(context.registry, parse_feeds_config(config.feeds_file))


def _run_once(config: RunConfig, context: RunContext) -> RunResult:
    report = context.aggregator.run_cycle()
    deactivated = []
    if not report.cancelled:
        deactivated = apply_deactivation_policy(
            context.registry, config.deactivate_after_errors
        )
    return RunResult(
        report=report,
        output_text=format_report(report, deactivated),
        deactivated=deactivated,
    )


def execute(config: RunConfig, context: Optional[RunContext] = None) -> RunResult:
    """Import configured feeds, then run a single ingestion cycle."""
    owned = context is None
    context = context or build_context(config)
    try:
        _sync_configured_feeds(config, context)
        return _run_once(config, context)
    finally:
        if owned:
            context.close()


def run_forever(
    config: RunConfig,
    cycles: Optional[int] = None,
    stop_event: Optional[threading.Event] = None,
    sleep: Optional[Callable[[float], None]] = None,
    context: Optional[RunContext] = None,
) -> List[RunResult]:
    """Run cycles every ``poll_interval_minutes`` until stopped.

    ``cycles`` bounds the number of cycles and every result is returned.
    None runs until ``stop_event`` is set or the process is interrupted, and
    only the latest result is kept.
    """
    if cycles is not None and cycles < 1:
        raise ValueError("cycles must be at least 1.")
    stop_event = stop_event or threading.Event()
    wait = sleep or stop_event.wait
    interval = config.poll_interval_minutes * 60

    owned = context is None
    context = context or build_context(config)
    results: List[RunResult] = []
    completed = 0
    try:
        _sync_configured_feeds(config, context)
        while not stop_event.is_set():
            result = _run_once(config, context)
            completed += 1
            if cycles is None:
                results = [result]
            else:
                results.append(result)
            if result.report.cancelled:
                break
            if cycles is not None and completed >= cycles:
                break
            logger.info("Next cycle in %.0f seconds", interval)
            wait(interval)
    finally:
        if owned:
            context.close()
    return results
