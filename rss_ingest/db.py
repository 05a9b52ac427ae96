"""Database schema and engine setup for feeds, entries and input items."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    DDL,
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    pass


class FeedModel(Base):
    """A subscribed RSS/Atom source."""

    __tablename__ = "feeds"

    id = Column(Integer, primary_key=True)
    url = Column(String, nullable=False, unique=True)
    title = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    last_fetch_time = Column(DateTime(timezone=True), nullable=True, index=True)
    last_successful_fetch = Column(DateTime(timezone=True), nullable=True)
    update_frequency_hours = Column(Integer, nullable=True)
    error_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    etag = Column(String, nullable=True)
    last_modified = Column(String, nullable=True)

    entries = relationship(
        "FeedEntryModel",
        back_populates="feed",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    items = relationship(
        "InputItemModel",
        back_populates="feed",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class FeedEntryModel(Base):
    """One raw item extracted from a feed."""

    __tablename__ = "feed_entries"

    id = Column(Integer, primary_key=True)
    feed_id = Column(
        Integer, ForeignKey("feeds.id", ondelete="CASCADE"), nullable=False, index=True
    )
    guid = Column(String, nullable=True)
    url = Column(String, nullable=False)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    content = Column(Text, nullable=True)
    author = Column(String, nullable=True)
    published_at = Column(DateTime(timezone=True), nullable=True, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    tags = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_processed = Column(DateTime(timezone=True), nullable=True, index=True)

    feed = relationship("FeedModel", back_populates="entries")

    __table_args__ = (
        Index(
            "idx_entries_unique_guid_feed",
            feed_id,
            guid,
            unique=True,
            sqlite_where=guid.isnot(None),
            postgresql_where=guid.isnot(None),
        ),
        UniqueConstraint("feed_id", "url", name="idx_entries_unique_url_feed"),
    )


class InputItemModel(Base):
    """Normalized projection of an entry, unique by URI across all feeds."""

    __tablename__ = "input_items"

    id = Column(Integer, primary_key=True)
    feed_id = Column(
        Integer, ForeignKey("feeds.id", ondelete="CASCADE"), nullable=False, index=True
    )
    uri = Column(String, nullable=False, unique=True)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    content = Column(Text, nullable=True)
    vision_data = Column(LargeBinary, nullable=False, default=b"")
    text_content = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    feed = relationship("FeedModel", back_populates="items")


# Full-text index over title/description/content. SQLite gets an
# external-content FTS5 table kept in step with input_items by triggers.
_SQLITE_FTS_DDL = [
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS input_items_fts USING fts5(
        title, description, content, content='input_items', content_rowid='id'
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS input_items_fts_ai AFTER INSERT ON input_items BEGIN
        INSERT INTO input_items_fts(rowid, title, description, content)
        VALUES (new.id, new.title, new.description, new.content);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS input_items_fts_ad AFTER DELETE ON input_items BEGIN
        INSERT INTO input_items_fts(input_items_fts, rowid, title, description, content)
        VALUES ('delete', old.id, old.title, old.description, old.content);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS input_items_fts_au AFTER UPDATE ON input_items BEGIN
        INSERT INTO input_items_fts(input_items_fts, rowid, title, description, content)
        VALUES ('delete', old.id, old.title, old.description, old.content);
        INSERT INTO input_items_fts(rowid, title, description, content)
        VALUES (new.id, new.title, new.description, new.content);
    END
    """,
]

_POSTGRES_FTS_DDL = """
    CREATE INDEX IF NOT EXISTS idx_input_items_fulltext ON input_items USING GIN (
        to_tsvector('english',
            coalesce(title, '') || ' ' || coalesce(description, '') || ' ' || coalesce(content, ''))
    )
"""

for _statement in _SQLITE_FTS_DDL:
    event.listen(
        InputItemModel.__table__,
        "after_create",
        DDL(_statement).execute_if(dialect="sqlite"),
    )
event.listen(
    InputItemModel.__table__,
    "after_create",
    DDL(_POSTGRES_FTS_DDL).execute_if(dialect="postgresql"),
)


def _configure_sqlite(engine: Engine) -> None:
    """Enable foreign keys and take the write lock at transaction start."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_engine(connection_string: str) -> Engine:
    """Create the engine and make sure the schema exists."""
    if not connection_string:
        raise ValueError("A database connection string is required.")

    logger.info("Initializing database connection: %s", connection_string)
    kwargs = {}
    is_sqlite = connection_string.startswith("sqlite")
    if is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if ":memory:" in connection_string or connection_string.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool

    engine = create_engine(connection_string, **kwargs)
    if is_sqlite:
        _configure_sqlite(engine)
    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a session factory for the given engine."""
    return sessionmaker(bind=engine, expire_on_commit=False)


def _fts_query(query: str) -> str:
    terms = [term.replace('"', '""') for term in query.split()]
    return " ".join(f'"{term}"' for term in terms)


def search_items(session: Session, query: str, limit: int = 20) -> List[InputItemModel]:
    """Full-text search over input item title, description and content."""
    if not query.strip():
        return []

    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        ids = (
            session.execute(
                text(
                    "SELECT rowid FROM input_items_fts WHERE input_items_fts MATCH :q "
                    "ORDER BY rank LIMIT :limit"
                ),
                {"q": _fts_query(query), "limit": limit},
            )
            .scalars()
            .all()
        )
        if not ids:
            return []
        rows = session.execute(
            select(InputItemModel).where(InputItemModel.id.in_(ids))
        ).scalars()
        by_id = {row.id: row for row in rows}
        return [by_id[item_id] for item_id in ids if item_id in by_id]

    if dialect == "postgresql":
        document = func.to_tsvector(
            "english",
            func.coalesce(InputItemModel.title, "")
            + " "
            + func.coalesce(InputItemModel.description, "")
            + " "
            + func.coalesce(InputItemModel.content, ""),
        )
        stmt = (
            select(InputItemModel)
            .where(document.op("@@")(func.plainto_tsquery("english", query)))
            .limit(limit)
        )
        return list(session.execute(stmt).scalars())

    pattern = f"%{query}%"
    stmt = (
        select(InputItemModel)
        .where(
            InputItemModel.title.ilike(pattern)
            | InputItemModel.description.ilike(pattern)
            | InputItemModel.content.ilike(pattern)
        )
        .limit(limit)
    )
    return list(session.execute(stmt).scalars())


def recent_items(
    session: Session, limit: int = 50, feed_id: Optional[int] = None
) -> List[InputItemModel]:
    """Return the most recently written input items."""
    stmt = select(InputItemModel)
    if feed_id is not None:
        stmt = stmt.where(InputItemModel.feed_id == feed_id)
    stmt = stmt.order_by(InputItemModel.updated_at.desc(), InputItemModel.id.desc())
    return list(session.execute(stmt.limit(limit)).scalars())
