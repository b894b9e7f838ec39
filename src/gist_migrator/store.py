"""Target store: the destination tables and per-item create operations.

Each create call runs in its own short transaction. A run that fails half-way
keeps whatever it already created; callers see partial progress through the
result counts and skipped lists.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import uuid
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .exceptions import ItemPersistError

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

    from .models import MigrationSummary
    from .protocols import TargetStore

logger: logging.Logger = logging.getLogger(__name__)


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    display_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    avatar_url: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Gist(Base):
    __tablename__ = "gists"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(250), nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    visibility: Mapped[str] = mapped_column(String(16), nullable=False, default="public")
    # Source identity of an imported gist, informational only
    import_id: Mapped[str] = mapped_column(String(255), nullable=False, default="", index=True)
    import_url: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    star_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fork_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class GistFile(Base):
    __tablename__ = "gist_files"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    gist_id: Mapped[str] = mapped_column(ForeignKey("gists.id", ondelete="CASCADE"), nullable=False, index=True)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    language: Mapped[str] = mapped_column(String(50), nullable=False, default="text")
    size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class GistComment(Base):
    __tablename__ = "gist_comments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    gist_id: Mapped[str] = mapped_column(ForeignKey("gists.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class GistStar(Base):
    __tablename__ = "gist_stars"
    __table_args__ = (UniqueConstraint("user_id", "gist_id", name="uq_gist_stars_user_gist"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    gist_id: Mapped[str] = mapped_column(ForeignKey("gists.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class MigrationRecord(Base):
    """Durable summary of a finished migration job."""

    __tablename__ = "migrations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    source_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    # completed / failed / cancelled
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    source_url: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    source_username: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    items_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_details: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    settings: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    result: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    started_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class SqlAlchemyStore:
    """TargetStore backed by a SQLAlchemy engine.

    Sessions are opened per call, so one store can be shared by jobs running
    on different threads; concurrency is bounded by the engine's pool.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._sessions: sessionmaker[Session] = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, **engine_kwargs: Any) -> SqlAlchemyStore:
        """Create a store for a database URL.

        In-memory SQLite gets a single shared connection so that every thread
        sees the same database.
        """
        if url in ("sqlite://", "sqlite:///:memory:"):
            engine_kwargs.setdefault("poolclass", StaticPool)
            engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
        return cls(create_engine(url, **engine_kwargs))

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    def session(self) -> Session:
        """Open a read session, e.g. for reporting."""
        return self._sessions()

    def find_user_id(self, username: str) -> str | None:
        try:
            with self._sessions() as session:
                return session.scalar(select(User.id).where(User.username == username))
        except SQLAlchemyError as e:
            msg = f"Failed to look up user {username}: {e}"
            raise ItemPersistError(msg) from e

    def create_user(
        self,
        *,
        username: str,
        email: str,
        display_name: str,
        password_hash: str,
        is_admin: bool = False,
        avatar_url: str = "",
        created_at: dt.datetime | None = None,
        updated_at: dt.datetime | None = None,
    ) -> str:
        now = _utcnow()
        user = User(
            id=_new_id(),
            username=username,
            email=email,
            display_name=display_name or username,
            password_hash=password_hash,
            is_admin=is_admin,
            avatar_url=avatar_url,
            created_at=created_at or now,
            updated_at=updated_at or now,
        )
        return self._add(user, f"user {username}")

    def create_gist(
        self,
        *,
        user_id: str,
        title: str,
        description: str,
        visibility: str,
        import_id: str = "",
        import_url: str = "",
        star_count: int = 0,
        fork_count: int = 0,
        created_at: dt.datetime | None = None,
        updated_at: dt.datetime | None = None,
    ) -> str:
        now = _utcnow()
        gist = Gist(
            id=_new_id(),
            user_id=user_id,
            title=title,
            description=description,
            visibility=visibility,
            import_id=import_id,
            import_url=import_url,
            star_count=star_count,
            fork_count=fork_count,
            created_at=created_at or now,
            updated_at=updated_at or now,
        )
        return self._add(gist, f"gist {title!r}")

    def create_file(
        self,
        *,
        gist_id: str,
        filename: str,
        content: str,
        language: str,
        size: int,
        created_at: dt.datetime | None = None,
        updated_at: dt.datetime | None = None,
    ) -> str:
        now = _utcnow()
        gist_file = GistFile(
            id=_new_id(),
            gist_id=gist_id,
            filename=filename,
            content=content,
            language=language,
            size=size,
            created_at=created_at or now,
            updated_at=updated_at or now,
        )
        return self._add(gist_file, f"file {filename}")

    def create_comment(
        self,
        *,
        gist_id: str,
        user_id: str,
        body: str,
        created_at: dt.datetime | None = None,
        updated_at: dt.datetime | None = None,
    ) -> str:
        now = _utcnow()
        comment = GistComment(
            id=_new_id(),
            gist_id=gist_id,
            user_id=user_id,
            body=body,
            created_at=created_at or now,
            updated_at=updated_at or now,
        )
        return self._add(comment, f"comment on gist {gist_id}")

    def create_star(self, *, user_id: str, gist_id: str, created_at: dt.datetime | None = None) -> str:
        star = GistStar(id=_new_id(), user_id=user_id, gist_id=gist_id, created_at=created_at or _utcnow())
        return self._add(star, f"star on gist {gist_id}")

    def save_migration_summary(self, summary: MigrationSummary) -> str:
        record = MigrationRecord(
            id=summary.job_id,
            type=summary.kind.value,
            source_kind=summary.source_kind.value,
            status=summary.status.value,
            source_url=summary.source_url,
            source_username=summary.source_username,
            items_total=summary.items_total,
            items_processed=summary.items_imported,
            items_skipped=summary.items_skipped,
            error_count=summary.error_count,
            error_details=json.dumps(summary.errors),
            settings=json.dumps(summary.settings, default=str),
            result=json.dumps(summary.result, default=str),
            started_at=summary.started_at,
            completed_at=summary.completed_at,
        )
        return self._add(record, f"migration record {summary.job_id}")

    def get_migration_summary(self, job_id: str) -> dict[str, Any] | None:
        """Return a persisted job summary as a dict, or None if there is none."""
        with self._sessions() as session:
            record = session.get(MigrationRecord, job_id)
            if record is None:
                return None
            return {
                "id": record.id,
                "type": record.type,
                "source_kind": record.source_kind,
                "status": record.status,
                "source_url": record.source_url,
                "source_username": record.source_username,
                "items_total": record.items_total,
                "items_processed": record.items_processed,
                "items_skipped": record.items_skipped,
                "error_count": record.error_count,
                "errors": json.loads(record.error_details),
                "settings": json.loads(record.settings),
                "result": json.loads(record.result),
                "started_at": record.started_at,
                "completed_at": record.completed_at,
            }

    def _add(self, row: Base, what: str) -> str:
        try:
            with self._sessions.begin() as session:
                session.add(row)
        except SQLAlchemyError as e:
            msg = f"Failed to create {what}: {e}"
            raise ItemPersistError(msg) from e
        return row.id  # type: ignore[attr-defined]


class DryRunStore:
    """Read-through wrapper that never writes.

    Lookups go to the wrapped store; creates mint throwaway ids. Users
    "created" during the dry run are remembered so later lookups (comment
    authors, re-used handles) behave exactly as in a live run.
    """

    def __init__(self, store: TargetStore | None = None) -> None:
        self._store = store
        self._users: dict[str, str] = {}

    def find_user_id(self, username: str) -> str | None:
        if username in self._users:
            return self._users[username]
        if self._store is None:
            return None
        return self._store.find_user_id(username)

    def create_user(self, *, username: str, **_: Any) -> str:
        new_id = _new_id()
        self._users[username] = new_id
        return new_id

    def create_gist(self, **_: Any) -> str:
        return _new_id()

    def create_file(self, **_: Any) -> str:
        return _new_id()

    def create_comment(self, **_: Any) -> str:
        return _new_id()

    def create_star(self, **_: Any) -> str:
        return _new_id()

    def save_migration_summary(self, summary: MigrationSummary) -> str:
        return summary.job_id
