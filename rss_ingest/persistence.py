"""Deduplication and persistence of parsed entries."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .db import FeedEntryModel, InputItemModel, as_utc, utcnow
from .models import RawEntry, UpsertReport
from .parser import strip_html

logger = logging.getLogger(__name__)

INSERTED = "inserted"
UPDATED = "updated"
SKIPPED = "skipped"


class StorageError(Exception):
    """Raised when a batch of entries could not be committed."""


def render_text_content(
    title: str, description: Optional[str], content: Optional[str]
) -> str:
    """Full-text rendering handed to downstream consumers."""
    return (
        f"Title: {title}\n\n"
        f"Description: {strip_html(description)}\n\n"
        f"Content: {strip_html(content)}"
    )


def _find_existing(
    session: Session, feed_id: int, entry: RawEntry
) -> Optional[FeedEntryModel]:
    if entry.guid:
        row = session.execute(
            select(FeedEntryModel).where(
                FeedEntryModel.feed_id == feed_id, FeedEntryModel.guid == entry.guid
            )
        ).scalar_one_or_none()
        if row is not None:
            return row
    # URL backstop: a changed or missing GUID must not duplicate the row.
    return session.execute(
        select(FeedEntryModel).where(
            FeedEntryModel.feed_id == feed_id, FeedEntryModel.url == entry.url
        )
    ).scalar_one_or_none()


def _url_taken(session: Session, feed_id: int, url: str, row_id: int) -> bool:
    return (
        session.execute(
            select(FeedEntryModel.id).where(
                FeedEntryModel.feed_id == feed_id,
                FeedEntryModel.url == url,
                FeedEntryModel.id != row_id,
            )
        ).first()
        is not None
    )


def _apply_changes(session: Session, row: FeedEntryModel, entry: RawEntry) -> bool:
    """Copy mutable fields onto ``row``; return True if anything changed."""
    changed = False
    fields = {
        "title": entry.title,
        "description": entry.description,
        "content": entry.content,
        "author": entry.author,
        "tags": list(entry.tags),
    }
    for name, value in fields.items():
        if getattr(row, name) != value:
            setattr(row, name, value)
            changed = True

    for name in ("published_at", "updated_at"):
        value = getattr(entry, name)
        if as_utc(getattr(row, name)) != value:
            setattr(row, name, value)
            changed = True

    if row.guid is None and entry.guid:
        row.guid = entry.guid
        changed = True

    if entry.url != row.url:
        if _url_taken(session, row.feed_id, entry.url, row.id):
            logger.warning(
                "Entry %d moved to %s which another entry already holds; keeping %s",
                row.id,
                entry.url,
                row.url,
            )
        else:
            row.url = entry.url
            changed = True
    return changed


def _url_in_use(session: Session, url: str) -> bool:
    return (
        session.execute(select(FeedEntryModel.id).where(FeedEntryModel.url == url)).first()
        is not None
    )


def _release_previous_item(
    session: Session, previous_url: str, row: FeedEntryModel
) -> Optional[InputItemModel]:
    """Handle the input item left behind when an entry moves to a new URL.

    Returns the old item re-keyed to the entry's new URL when it can take it
    over; deletes it when the new URL already has an item of its own.
    """
    old = session.execute(
        select(InputItemModel).where(InputItemModel.uri == previous_url)
    ).scalar_one_or_none()
    if old is None or _url_in_use(session, previous_url):
        return None

    current = session.execute(
        select(InputItemModel).where(InputItemModel.uri == row.url)
    ).scalar_one_or_none()
    if current is None:
        logger.debug("Input item %s re-keyed to %s", previous_url, row.url)
        old.uri = row.url
        return old

    logger.debug("Dropping input item %s superseded by %s", previous_url, row.url)
    session.delete(old)
    return None


def _sync_input_item(
    session: Session,
    feed_id: int,
    row: FeedEntryModel,
    now: datetime,
    previous_url: Optional[str] = None,
) -> None:
    text_content = render_text_content(row.title, row.description, row.content)
    item = None
    if previous_url and previous_url != row.url:
        item = _release_previous_item(session, previous_url, row)
    if item is None:
        item = session.execute(
            select(InputItemModel).where(InputItemModel.uri == row.url)
        ).scalar_one_or_none()

    if item is None:
        session.add(
            InputItemModel(
                feed_id=feed_id,
                uri=row.url,
                title=row.title,
                description=row.description,
                content=row.content,
                vision_data=b"",
                text_content=text_content,
                created_at=now,
                updated_at=now,
            )
        )
        return

    if item.feed_id != feed_id:
        logger.debug("Input item %s now owned by feed %d", row.url, feed_id)
    item.feed_id = feed_id
    item.title = row.title
    item.description = row.description
    item.content = row.content
    item.vision_data = b""
    item.text_content = text_content
    item.updated_at = now


def _upsert_one(
    session: Session, feed_id: int, entry: RawEntry, now: datetime
) -> str:
    if not entry.url:
        return SKIPPED

    row = _find_existing(session, feed_id, entry)
    previous_url = row.url if row is not None else None
    if row is None:
        row = FeedEntryModel(
            feed_id=feed_id,
            guid=entry.guid,
            url=entry.url,
            title=entry.title,
            description=entry.description,
            content=entry.content,
            author=entry.author,
            published_at=entry.published_at,
            updated_at=entry.updated_at,
            tags=list(entry.tags),
            created_at=now,
        )
        session.add(row)
        outcome = INSERTED
    elif _apply_changes(session, row, entry):
        outcome = UPDATED
    else:
        logger.debug("Entry %s unchanged", entry.url)
        return SKIPPED

    _sync_input_item(session, feed_id, row, now, previous_url)
    row.last_processed = now
    return outcome


def upsert_entries(
    session_factory: sessionmaker[Session],
    feed_id: int,
    entries: Iterable[RawEntry],
    now: Optional[datetime] = None,
) -> UpsertReport:
    """Insert or refresh a feed's entries and their input items atomically.

    Unchanged re-sightings are reported as skipped and cause no writes.

    Raises:
        StorageError: If the batch could not be committed; nothing from the
            batch is persisted in that case
    """
    now = now or utcnow()
    report = UpsertReport()
    try:
        with session_factory() as session, session.begin():
            for entry in entries:
                outcome = _upsert_one(session, feed_id, entry, now)
                setattr(report, outcome, getattr(report, outcome) + 1)
    except SQLAlchemyError as exc:
        raise StorageError(f"Failed to persist entries for feed {feed_id}: {exc}") from exc

    logger.info(
        "Feed %d: %d inserted, %d updated, %d skipped",
        feed_id,
        report.inserted,
        report.updated,
        report.skipped,
    )
    return report
