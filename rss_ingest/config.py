"""Configuration loading for the ingestion service."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, TypeVar
from xml.etree import ElementTree as ET

from .aggregator import AggregatorConfig
from .fetcher import FetchConfig
from .models import FeedConfig

logger = logging.getLogger(__name__)

DEFAULT_CONNECTION_STRING = "sqlite:///rss_ingest.db"

T = TypeVar("T")


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass
class DatabaseConfig:
    connection_string: str = DEFAULT_CONNECTION_STRING


@dataclass
class ScheduleConfig:
    poll_interval_minutes: float = 15.0
    deactivate_after_errors: Optional[int] = None


@dataclass
class AppConfig:
    feeds_file: Optional[str] = None
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def parse_feeds_config(path: str) -> List[FeedConfig]:
    """Parse an OPML subscription list and return feed definitions."""
    logger.info("Loading feed list from %s", path)
    tree = ET.parse(path)
    root = tree.getroot()
    body = root.find("body")
    feeds: List[FeedConfig] = []
    seen = set()

    def walk(outline: ET.Element, current_category: Optional[str]) -> None:
        title = outline.attrib.get("title") or outline.attrib.get("text")
        feed_url = (outline.attrib.get("xmlUrl") or "").strip()
        outline_type = (outline.attrib.get("type") or "").lower()

        if outline_type in ("rss", "atom") and feed_url:
            if feed_url in seen:
                logger.debug("Ignoring repeated outline for %s", feed_url)
                return
            seen.add(feed_url)
            feeds.append(
                FeedConfig(
                    category=current_category or title or "Uncategorized",
                    title=title or feed_url,
                    url=feed_url,
                )
            )
            return

        next_category = title if title else current_category
        for child in outline.findall("outline"):
            walk(child, next_category)

    if body is None:
        raise ValueError(f"{path} is missing the <body> section.")

    for outline in body.findall("outline"):
        walk(outline, outline.attrib.get("title") or outline.attrib.get("text"))

    logger.info("Loaded %d feed URLs from %s", len(feeds), path)
    return feeds


def _resolve_path(base_path: Path, target_path: str) -> str:
    """Resolve a path relative to the base config file if it's not absolute."""
    target = Path(target_path)
    if target.is_absolute():
        return str(target)
    return str((base_path.parent / target).resolve())


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("true", "yes", "1"):
        return True
    if lowered in ("false", "no", "0"):
        return False
    raise ValueError(f"Expected a boolean, got '{value}'")


def _read(node: Optional[ET.Element], tag: str, convert: Callable[[str], T], default: T) -> T:
    if node is None:
        return default
    raw = node.findtext(tag)
    if raw is None or not raw.strip():
        return default
    try:
        return convert(raw.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid value for <{tag}>: {exc}") from exc


def _positive(value: float, tag: str) -> float:
    if value <= 0:
        raise ValueError(f"<{tag}> must be positive, got {value}")
    return value


def parse_app_config(path: str) -> AppConfig:
    """Parse the main application configuration XML."""
    config_path = Path(path).resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    logger.info("Loading application configuration from %s", config_path)
    tree = ET.parse(config_path)
    root = tree.getroot()
    config = AppConfig()

    # Feeds
    feeds_text = root.findtext("feeds")
    if feeds_text and feeds_text.strip():
        config.feeds_file = _resolve_path(config_path, feeds_text.strip())

    # Database
    db_node = root.find("database")
    if db_node is not None:
        connection_string = (db_node.findtext("connection-string") or "").strip()
        if connection_string:
            config.database.connection_string = connection_string

    # Fetch
    fetch_node = root.find("fetch")
    defaults = FetchConfig()
    config.fetch = FetchConfig(
        user_agent=_read(fetch_node, "user-agent", str, defaults.user_agent),
        timeout_seconds=_read(fetch_node, "timeout-seconds", float, defaults.timeout_seconds),
        max_retries=_read(fetch_node, "max-retries", int, defaults.max_retries),
        retry_delay_seconds=_read(
            fetch_node, "retry-delay-seconds", float, defaults.retry_delay_seconds
        ),
        max_retry_delay_seconds=_read(
            fetch_node, "max-retry-delay-seconds", float, defaults.max_retry_delay_seconds
        ),
        max_feed_size_mb=_read(fetch_node, "max-feed-size-mb", float, defaults.max_feed_size_mb),
        max_redirects=_read(fetch_node, "max-redirects", int, defaults.max_redirects),
        respect_robots_txt=_read(
            fetch_node, "respect-robots-txt", _parse_bool, defaults.respect_robots_txt
        ),
        min_host_interval_seconds=_read(
            fetch_node, "min-host-interval-seconds", float, defaults.min_host_interval_seconds
        ),
    )
    if config.fetch.max_retries < 0:
        raise ValueError("<max-retries> must not be negative")
    _positive(config.fetch.timeout_seconds, "timeout-seconds")
    _positive(config.fetch.max_feed_size_mb, "max-feed-size-mb")

    # Aggregator and schedule
    agg_node = root.find("aggregator")
    config.aggregator = AggregatorConfig(
        concurrency=int(_positive(_read(agg_node, "concurrency", int, 10), "concurrency")),
        default_interval_hours=_positive(
            _read(agg_node, "default-interval-hours", float, 1.0), "default-interval-hours"
        ),
    )
    config.schedule = ScheduleConfig(
        poll_interval_minutes=_positive(
            _read(agg_node, "poll-interval-minutes", float, 15.0), "poll-interval-minutes"
        ),
        deactivate_after_errors=_read(agg_node, "deactivate-after-errors", int, None),
    )
    threshold = config.schedule.deactivate_after_errors
    if threshold is not None:
        _positive(threshold, "deactivate-after-errors")

    # Logging
    log_node = root.find("logging")
    if log_node is not None:
        config.logging.level = log_node.findtext("level", "INFO").strip().upper()
        log_file = log_node.findtext("file")
        if log_file and log_file.strip():
            config.logging.file = _resolve_path(config_path, log_file.strip())

    return config
