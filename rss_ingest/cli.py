"""Command-line interface for the rss_ingest service."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import pprint
import sys
from pathlib import Path
from typing import List, Optional

from . import db
from .config import AppConfig, parse_app_config, parse_feeds_config
from .registry import DuplicateFeedError, FeedNotFoundError
from .runner import RunConfig, RunContext, build_context, execute, import_feeds, run_forever

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Poll RSS/Atom feeds and store their entries."
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the main configuration XML file. Built-in defaults when omitted.",
    )
    parser.add_argument(
        "--database",
        default=None,
        help="Database connection string. Overrides config.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (e.g. DEBUG, INFO, WARNING). Overrides config.",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Optional path to a log file. Overrides config.",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    add = commands.add_parser("add", help="Register a feed URL.")
    add.add_argument("url")
    add.add_argument("--title", default=None)
    add.add_argument("--interval-hours", type=int, default=None)

    import_cmd = commands.add_parser("import", help="Register every feed in an OPML file.")
    import_cmd.add_argument("opml")

    list_cmd = commands.add_parser("list", help="Show registered feeds.")
    list_cmd.add_argument(
        "--all", action="store_true", help="Include deactivated feeds."
    )

    commands.add_parser("run", help="Run one ingestion cycle.")

    watch = commands.add_parser("watch", help="Run cycles on the poll interval.")
    watch.add_argument("--cycles", type=int, default=None)

    for name, help_text in (
        ("deactivate", "Stop polling a feed."),
        ("activate", "Resume polling a feed."),
        ("remove", "Delete a feed and everything stored for it."),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("feed_id", type=int)

    commands.add_parser("stats", help="Show feed health counts.")

    search = commands.add_parser("search", help="Full-text search stored items.")
    search.add_argument("query")
    search.add_argument("--limit", type=int, default=20)

    return parser


LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"
# Libraries whose per-request chatter drowns out per-feed progress.
QUIET_LOGGERS = ("urllib3", "charset_normalizer")


def _log_handlers(log_file: Optional[str]) -> List[logging.Handler]:
    # stdout carries command output, so the console handler writes to stderr
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    return handlers


def configure_logging(level_name: str, log_file: Optional[str] = None) -> None:
    """Route log records to stderr and, optionally, a log file."""
    level = getattr(logging, level_name.upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"Unsupported log level: {level_name}")

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in _log_handlers(log_file):
        handler.setFormatter(formatter)
        root.addHandler(handler)

    if level > logging.DEBUG:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
    logger.debug("Logging at %s to stderr and %s", level_name.upper(), log_file or "no file")


def _format_feed(feed) -> str:
    status = "active" if feed.is_active else "inactive"
    last_fetch = feed.last_fetch_time.isoformat() if feed.last_fetch_time else "never"
    return "\t".join(
        [
            str(feed.id),
            status,
            f"errors={feed.error_count}",
            f"last_fetch={last_fetch}",
            feed.url,
            feed.title or "",
        ]
    )


def _run_command(args, config: RunConfig, context: RunContext) -> str:
    registry = context.registry
    command = args.command

    if command == "add":
        feed_id = registry.register(
            args.url, title=args.title, update_frequency_hours=args.interval_hours
        )
        return f"Registered feed {feed_id}: {args.url}"
    if command == "import":
        added = import_feeds(registry, parse_feeds_config(args.opml))
        return f"Imported {added} new feeds"
    if command == "list":
        feeds = registry.list_feeds(active_only=not args.all)
        return "\n".join(_format_feed(feed) for feed in feeds)
    if command == "run":
        return execute(config, context).output_text
    if command == "watch":
        results = run_forever(config, cycles=args.cycles, context=context)
        return results[-1].output_text if results else ""
    if command == "deactivate":
        registry.deactivate(args.feed_id)
        return f"Deactivated feed {args.feed_id}"
    if command == "activate":
        registry.activate(args.feed_id)
        return f"Activated feed {args.feed_id}"
    if command == "remove":
        registry.remove(args.feed_id)
        return f"Removed feed {args.feed_id}"
    if command == "stats":
        return json.dumps(registry.stats(), indent=2)
    if command == "search":
        with context.session_factory() as session:
            items = db.search_items(session, args.query, limit=args.limit)
            return "\n".join(f"{item.uri}\t{item.title}" for item in items)
    raise ValueError(f"Unknown command: {command}")


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        app_config = parse_app_config(args.config) if args.config else AppConfig()
        if args.database:
            app_config.database.connection_string = args.database

        # CLI overrides config
        log_level = args.log_level or app_config.logging.level
        log_file = args.log_file or app_config.logging.file
        configure_logging(log_level, log_file)

        config = RunConfig.from_app_config(app_config)
        config_dict = dataclasses.asdict(config)
        config_dict["connection_string"] = "***MASKED***"
        logger.debug("Active Configuration:\n%s", pprint.pformat(config_dict))

        context = build_context(config)
        try:
            output = _run_command(args, config, context)
        finally:
            context.close()
    except ValueError as exc:
        parser.error(str(exc))
    except (DuplicateFeedError, FeedNotFoundError) as exc:
        logger.error("%s", exc)
        return 1
    except (RuntimeError, FileNotFoundError) as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130
    except Exception:  # noqa: BLE001
        logger.exception("Unexpected error during execution.")
        return 1

    if output:
        print(output)
    return 0
