from __future__ import annotations

import logging
import threading
from dataclasses import fields
from datetime import timedelta
from typing import Optional, Protocol

from sqlalchemy import create_engine, func, inspect, select, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from chatlens.config import Settings
from chatlens.domain import (
    Category,
    DailyCount,
    GroupRecord,
    GroupStats,
    Message,
    SenderCount,
    StoredMessage,
    empty_category_counts,
)
from chatlens.errors import StorageError
from chatlens.models import Base, GroupRow, MessageRow
from chatlens.utils import format_ts, utc_now

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT_MAX = 200
TOP_SENDERS = 10
AUTO_GROUP_DESCRIPTION = "Created automatically"

# Columns overwritten when an external_id is stored again (last write wins)
_UPSERT_COLUMNS = (
    "group_id",
    "sender",
    "text",
    "summary",
    "category",
    "received_at",
    "processed_at",
    "updated_at",
)


def clamp_limit(limit: int, max_limit: int) -> int:
    """Clamp a requested page size to [1, max_limit]."""
    return max(1, min(int(limit), max_limit))


def default_group_name(group_id: str) -> str:
    return f"Group {group_id}"


def trend_start(days: int) -> str:
    """receivedAt lower bound covering today (UTC) and the days - 1 before it."""
    first_day = utc_now() - timedelta(days=max(1, int(days)) - 1)
    return format_ts(first_day.replace(hour=0, minute=0, second=0, microsecond=0))


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class MessageStore(Protocol):
    """Storage operations required by the pipeline and the HTTP layer."""

    def init(self) -> None:
        ...

    def check_health(self) -> bool:
        ...

    def upsert(self, message: Message) -> StoredMessage:
        ...

    def get(self, external_id: str) -> Optional[StoredMessage]:
        ...

    def list_messages(
        self,
        group_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        category: Optional[Category] = None,
        order: str = "desc",
        *,
        sender: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        q: Optional[str] = None,
    ) -> list[StoredMessage]:
        ...

    def count_messages(
        self,
        group_id: Optional[str] = None,
        category: Optional[Category] = None,
        *,
        sender: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        q: Optional[str] = None,
    ) -> int:
        ...

    def stats(self, group_id: Optional[str] = None) -> GroupStats:
        ...

    def trends(self, group_id: Optional[str] = None, days: int = 7) -> list[DailyCount]:
        ...

    def save_group(self, group_id: str, name: Optional[str] = None, description: str = "") -> GroupRecord:
        ...

    def get_group(self, group_id: str) -> Optional[GroupRecord]:
        ...

    def list_groups(self) -> list[GroupRecord]:
        ...

    def close(self) -> None:
        ...


def create_store(settings: Settings) -> MessageStore:
    """Select the store backend from configuration."""
    if settings.STORE_BACKEND == "memory":
        logger.info("Using in-memory message store")
        return InMemoryMessageStore(max_limit=settings.LIST_LIMIT_MAX)

    engine = build_engine(
        settings.DATABASE_URL,
        pool_size=settings.DB_POOL_SIZE,
        pool_timeout=settings.DB_POOL_TIMEOUT,
    )
    logger.info(f"Using SQL message store ({engine.dialect.name})")
    return SqlMessageStore(engine, max_limit=settings.LIST_LIMIT_MAX)


# =============================================================================
# SQL backend
# =============================================================================

def build_engine(database_url: str, pool_size: int = 10, pool_timeout: float = 2.0) -> Engine:
    """
    Create a SQLAlchemy engine with a bounded connection pool.

    The pool never grows past pool_size (max_overflow=0); callers beyond it
    wait up to pool_timeout seconds for a connection.
    """
    if database_url.startswith("sqlite"):
        # check_same_thread=False is required for SQLite to work with FastAPI's threadpool
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in database_url:
            # In-memory databases live on a single connection
            kwargs["poolclass"] = StaticPool
        else:
            kwargs.update(pool_size=pool_size, max_overflow=0, pool_timeout=pool_timeout)
        return create_engine(database_url, echo=False, **kwargs)

    return create_engine(
        database_url,
        echo=False,
        pool_size=pool_size,
        max_overflow=0,
        pool_timeout=pool_timeout,
        pool_pre_ping=True,
    )


def _row_to_message(row: MessageRow) -> StoredMessage:
    return StoredMessage(
        external_id=row.external_id,
        group_id=row.group_id,
        sender=row.sender,
        text=row.text,
        received_at=row.received_at,
        summary=row.summary,
        category=Category.parse(row.category) or Category.OTHER,
        processed_at=row.processed_at,
        storage_id=str(row.id),
    )


def _row_to_group(row: GroupRow, message_count: int = 0) -> GroupRecord:
    return GroupRecord(
        id=row.id,
        name=row.name,
        description=row.description or "",
        created_at=row.created_at,
        message_count=int(message_count or 0),
    )


def _filtered(
    stmt,
    group_id: Optional[str] = None,
    category: Optional[Category] = None,
    sender: Optional[str] = None,
    since: Optional[str] = None,
    until: Optional[str] = None,
    q: Optional[str] = None,
):
    """
    Apply the message filters to a select.

    since and until are inclusive bounds on received_at, given in the
    stored ISO-8601 UTC format. q is a case-insensitive substring of text.
    """
    if group_id:
        stmt = stmt.where(MessageRow.group_id == group_id)
    if category is not None:
        stmt = stmt.where(MessageRow.category == category.value)
    if sender:
        stmt = stmt.where(MessageRow.sender == sender)
    if since:
        stmt = stmt.where(MessageRow.received_at >= since)
    if until:
        stmt = stmt.where(MessageRow.received_at <= until)
    if q:
        stmt = stmt.where(MessageRow.text.ilike(f"%{_escape_like(q)}%", escape="\\"))
    return stmt


class SqlMessageStore:
    """
    Relational message store (SQLite or PostgreSQL).

    Upserts are a single INSERT ... ON CONFLICT statement, so concurrent
    writers of the same external_id are serialized by the database and the
    stored row always reflects exactly one of them.
    """

    def __init__(self, engine: Engine, max_limit: int = DEFAULT_LIST_LIMIT_MAX):
        self._engine = engine
        self._max_limit = max_limit
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

        dialect = engine.dialect.name
        if dialect == "postgresql":
            self._insert = postgresql.insert
        elif dialect == "sqlite":
            self._insert = sqlite.insert
        else:
            raise StorageError(f"Unsupported database dialect: {dialect}")

    @property
    def engine(self) -> Engine:
        return self._engine

    def init(self) -> None:
        """
        Initialize the database by creating all tables.
        Called during application startup.
        """
        logger.debug(f"Initializing database: {self._engine.url.render_as_string(hide_password=True)}")
        try:
            Base.metadata.create_all(bind=self._engine)
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize database: {e}")
            raise StorageError(f"Failed to initialize database: {e}") from e
        logger.info("Database initialized successfully")

    def check_health(self) -> bool:
        """
        Check if the database is reachable and schema is applied.

        Returns:
            True if DB is healthy and schema exists, False otherwise.
        """
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            inspector = inspect(self._engine)
            for table in (MessageRow.__tablename__, GroupRow.__tablename__):
                if not inspector.has_table(table):
                    logger.error(f"Database schema not applied: '{table}' table not found")
                    return False
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False
        return True

    def upsert(self, message: Message) -> StoredMessage:
        """
        Insert a processed message, or overwrite the row with the same
        external_id. The message's group is created if it does not exist.

        Raises:
            StorageError: on any database failure
        """
        now = format_ts(utc_now())

        group_stmt = (
            self._insert(GroupRow)
            .values(
                id=message.group_id,
                name=default_group_name(message.group_id),
                description=AUTO_GROUP_DESCRIPTION,
                created_at=now,
            )
            .on_conflict_do_nothing(index_elements=[GroupRow.id])
        )

        stmt = self._insert(MessageRow).values(
            external_id=message.external_id,
            group_id=message.group_id,
            sender=message.sender,
            text=message.text,
            summary=message.summary,
            category=message.category.value,
            received_at=message.received_at,
            processed_at=message.processed_at,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[MessageRow.external_id],
            set_={column: stmt.excluded[column] for column in _UPSERT_COLUMNS},
        )

        try:
            with self._session_factory() as session, session.begin():
                session.execute(group_stmt)
                session.execute(stmt)
                row = session.execute(
                    select(MessageRow).where(MessageRow.external_id == message.external_id)
                ).scalar_one()
                stored = _row_to_message(row)
        except SQLAlchemyError as e:
            logger.error(f"Failed to upsert message {message.external_id}: {e}")
            raise StorageError(f"Failed to store message {message.external_id}") from e

        logger.info(f"Message stored: id={stored.external_id}, storage_id={stored.storage_id}")
        return stored

    def get(self, external_id: str) -> Optional[StoredMessage]:
        try:
            with self._session_factory() as session:
                row = session.execute(
                    select(MessageRow).where(MessageRow.external_id == external_id)
                ).scalar_one_or_none()
                return _row_to_message(row) if row is not None else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load message {external_id}") from e

    def list_messages(
        self,
        group_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        category: Optional[Category] = None,
        order: str = "desc",
        *,
        sender: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        q: Optional[str] = None,
    ) -> list[StoredMessage]:
        """
        Retrieve messages with pagination and filtering.

        Ordered by received_at (then storage id) descending unless
        order="asc". limit is clamped to the configured maximum.
        """
        limit = clamp_limit(limit, self._max_limit)
        offset = max(0, int(offset))
        logger.debug(
            f"Querying messages: group={group_id}, category={category}, sender={sender}, "
            f"since={since}, until={until}, q={q}, limit={limit}, offset={offset}"
        )

        stmt = _filtered(select(MessageRow), group_id, category, sender, since, until, q)
        if order == "asc":
            stmt = stmt.order_by(MessageRow.received_at.asc(), MessageRow.id.asc())
        else:
            stmt = stmt.order_by(MessageRow.received_at.desc(), MessageRow.id.desc())
        stmt = stmt.offset(offset).limit(limit)

        try:
            with self._session_factory() as session:
                return [_row_to_message(row) for row in session.scalars(stmt).all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list messages: {e}") from e

    def count_messages(
        self,
        group_id: Optional[str] = None,
        category: Optional[Category] = None,
        *,
        sender: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        q: Optional[str] = None,
    ) -> int:
        stmt = _filtered(select(func.count(MessageRow.id)), group_id, category, sender, since, until, q)
        try:
            with self._session_factory() as session:
                return session.scalar(stmt) or 0
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to count messages: {e}") from e

    def stats(self, group_id: Optional[str] = None) -> GroupStats:
        """
        Compute per-category counts, totals, distinct senders, top senders
        and first/last receivedAt over the current stored set.
        """
        logger.info(f"Computing message statistics for group={group_id or '*'}")
        count_expr = func.count(MessageRow.id)

        try:
            with self._session_factory() as session:
                total = session.scalar(_filtered(select(count_expr), group_id)) or 0
                senders_count = session.scalar(
                    _filtered(select(func.count(func.distinct(MessageRow.sender))), group_id)
                ) or 0
                category_rows = session.execute(
                    _filtered(select(MessageRow.category, count_expr), group_id).group_by(MessageRow.category)
                ).all()
                sender_rows = session.execute(
                    _filtered(select(MessageRow.sender, count_expr.label("count")), group_id)
                    .group_by(MessageRow.sender)
                    .order_by(count_expr.desc(), MessageRow.sender.asc())
                    .limit(TOP_SENDERS)
                ).all()
                first_ts, last_ts = session.execute(
                    _filtered(select(func.min(MessageRow.received_at), func.max(MessageRow.received_at)), group_id)
                ).one()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to compute stats: {e}") from e

        categories = empty_category_counts()
        for label, count in category_rows:
            categories[label] = count

        return GroupStats(
            group_id=group_id,
            total_messages=total,
            senders_count=senders_count,
            categories=categories,
            messages_per_sender=[SenderCount(sender=row[0], count=row[1]) for row in sender_rows],
            first_received_at=first_ts,
            last_received_at=last_ts,
        )

    def trends(self, group_id: Optional[str] = None, days: int = 7) -> list[DailyCount]:
        """
        Daily message and distinct-sender counts over the last `days` UTC
        days, oldest first. Days without messages are omitted.
        """
        day = func.substr(MessageRow.received_at, 1, 10)
        count_expr = func.count(MessageRow.id)
        stmt = (
            _filtered(
                select(day.label("day"), count_expr, func.count(func.distinct(MessageRow.sender))),
                group_id,
                since=trend_start(days),
            )
            .group_by(day)
            .order_by(day.asc())
        )
        try:
            with self._session_factory() as session:
                rows = session.execute(stmt).all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to compute trends: {e}") from e
        return [DailyCount(day=row[0], message_count=row[1], senders_count=row[2]) for row in rows]

    def save_group(self, group_id: str, name: Optional[str] = None, description: str = "") -> GroupRecord:
        """Create a group, or rename/redescribe an existing one."""
        stmt = self._insert(GroupRow).values(
            id=group_id,
            name=name or default_group_name(group_id),
            description=description,
            created_at=format_ts(utc_now()),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[GroupRow.id],
            set_={"name": stmt.excluded.name, "description": stmt.excluded.description},
        )
        try:
            with self._session_factory() as session, session.begin():
                session.execute(stmt)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to save group {group_id}") from e
        return self.get_group(group_id)

    def _groups_query(self):
        counts = (
            select(MessageRow.group_id, func.count(MessageRow.id).label("message_count"))
            .group_by(MessageRow.group_id)
            .subquery()
        )
        return select(GroupRow, func.coalesce(counts.c.message_count, 0)).outerjoin(
            counts, counts.c.group_id == GroupRow.id
        )

    def get_group(self, group_id: str) -> Optional[GroupRecord]:
        try:
            with self._session_factory() as session:
                result = session.execute(self._groups_query().where(GroupRow.id == group_id)).first()
                return _row_to_group(*result) if result is not None else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load group {group_id}") from e

    def list_groups(self) -> list[GroupRecord]:
        stmt = self._groups_query().order_by(GroupRow.created_at.desc(), GroupRow.id.asc())
        try:
            with self._session_factory() as session:
                return [_row_to_group(row, count) for row, count in session.execute(stmt).all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list groups: {e}") from e

    def close(self) -> None:
        self._engine.dispose()


# =============================================================================
# In-memory backend
# =============================================================================

class InMemoryMessageStore:
    """
    Dict-backed store for tests and local runs.

    One lock guards every write, so a same-external_id race still ends with
    exactly one complete message.
    """

    def __init__(self, max_limit: int = DEFAULT_LIST_LIMIT_MAX):
        self._max_limit = max_limit
        self._lock = threading.Lock()
        self._messages: dict[str, StoredMessage] = {}
        self._groups: dict[str, GroupRecord] = {}
        self._next_id = 1

    def init(self) -> None:
        pass

    def check_health(self) -> bool:
        return True

    def _ensure_group(self, group_id: str) -> None:
        if group_id not in self._groups:
            self._groups[group_id] = GroupRecord(
                id=group_id,
                name=default_group_name(group_id),
                description=AUTO_GROUP_DESCRIPTION,
                created_at=format_ts(utc_now()),
            )

    def upsert(self, message: Message) -> StoredMessage:
        values = {f.name: getattr(message, f.name) for f in fields(Message)}
        with self._lock:
            existing = self._messages.get(message.external_id)
            if existing is not None:
                storage_id = existing.storage_id
            else:
                storage_id = str(self._next_id)
                self._next_id += 1
            self._ensure_group(message.group_id)
            stored = StoredMessage(storage_id=storage_id, **values)
            self._messages[message.external_id] = stored
        return stored

    def get(self, external_id: str) -> Optional[StoredMessage]:
        return self._messages.get(external_id)

    def _select(
        self,
        group_id: Optional[str] = None,
        category: Optional[Category] = None,
        sender: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        q: Optional[str] = None,
    ) -> list[StoredMessage]:
        with self._lock:
            messages = list(self._messages.values())
        needle = q.lower() if q else None
        return [
            m for m in messages
            if (not group_id or m.group_id == group_id)
            and (category is None or m.category is category)
            and (not sender or m.sender == sender)
            and (not since or m.received_at >= since)
            and (not until or m.received_at <= until)
            and (not needle or needle in m.text.lower())
        ]

    def list_messages(
        self,
        group_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        category: Optional[Category] = None,
        order: str = "desc",
        *,
        sender: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        q: Optional[str] = None,
    ) -> list[StoredMessage]:
        limit = clamp_limit(limit, self._max_limit)
        offset = max(0, int(offset))
        messages = sorted(
            self._select(group_id, category, sender, since, until, q),
            key=lambda m: (m.received_at, int(m.storage_id)),
            reverse=order != "asc",
        )
        return messages[offset:offset + limit]

    def count_messages(
        self,
        group_id: Optional[str] = None,
        category: Optional[Category] = None,
        *,
        sender: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        q: Optional[str] = None,
    ) -> int:
        return len(self._select(group_id, category, sender, since, until, q))

    def stats(self, group_id: Optional[str] = None) -> GroupStats:
        messages = self._select(group_id, None)
        categories = empty_category_counts()
        per_sender: dict[str, int] = {}
        for m in messages:
            categories[m.category.value] += 1
            per_sender[m.sender] = per_sender.get(m.sender, 0) + 1

        top = sorted(per_sender.items(), key=lambda item: (-item[1], item[0]))[:TOP_SENDERS]
        received = [m.received_at for m in messages]
        return GroupStats(
            group_id=group_id,
            total_messages=len(messages),
            senders_count=len(per_sender),
            categories=categories,
            messages_per_sender=[SenderCount(sender=s, count=c) for s, c in top],
            first_received_at=min(received) if received else None,
            last_received_at=max(received) if received else None,
        )

    def trends(self, group_id: Optional[str] = None, days: int = 7) -> list[DailyCount]:
        per_day: dict[str, set[str]] = {}
        counts: dict[str, int] = {}
        for m in self._select(group_id, since=trend_start(days)):
            day = m.received_at[:10]
            per_day.setdefault(day, set()).add(m.sender)
            counts[day] = counts.get(day, 0) + 1
        return [
            DailyCount(day=day, message_count=counts[day], senders_count=len(per_day[day]))
            for day in sorted(counts)
        ]

    def save_group(self, group_id: str, name: Optional[str] = None, description: str = "") -> GroupRecord:
        with self._lock:
            existing = self._groups.get(group_id)
            self._groups[group_id] = GroupRecord(
                id=group_id,
                name=name or default_group_name(group_id),
                description=description,
                created_at=existing.created_at if existing else format_ts(utc_now()),
            )
        return self.get_group(group_id)

    def _with_count(self, group: GroupRecord) -> GroupRecord:
        return GroupRecord(
            id=group.id,
            name=group.name,
            description=group.description,
            created_at=group.created_at,
            message_count=self.count_messages(group_id=group.id),
        )

    def get_group(self, group_id: str) -> Optional[GroupRecord]:
        group = self._groups.get(group_id)
        return self._with_count(group) if group is not None else None

    def list_groups(self) -> list[GroupRecord]:
        with self._lock:
            groups = list(self._groups.values())
        groups.sort(key=lambda g: g.id)
        groups.sort(key=lambda g: g.created_at, reverse=True)
        return [self._with_count(g) for g in groups]

    def close(self) -> None:
        pass
