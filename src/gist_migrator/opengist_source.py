"""Direct-storage connector for an OpenGist instance.

Metadata comes from the OpenGist database; file contents are read from the
instance's repository directory, laid out as `<root>/<username>/<uuid>/`.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
    inspect,
    select,
)
from sqlalchemy.exc import SQLAlchemyError

from .exceptions import ItemFetchError, SchemaValidationError, SourceConnectionError
from .languages import detect_language
from .models import (
    EntityKind,
    Quota,
    SourceComment,
    SourceFile,
    SourceKey,
    SourceKind,
    SourcePost,
    SourceStar,
    SourceUser,
    Visibility,
)

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine, Row
    from sqlalchemy.sql import Select

logger: logging.Logger = logging.getLogger(__name__)

REQUIRED_TABLES: Final[tuple[str, ...]] = ("users", "gists", "ssh_keys", "likes")

# OpenGist stores visibility as a small integer
_VISIBILITY: Final[dict[int, Visibility]] = {
    0: Visibility.PUBLIC,
    1: Visibility.PRIVATE,
    2: Visibility.UNLISTED,
}

# Only the columns read by the migration are declared
opengist_metadata = MetaData()

users_table = Table(
    "users",
    opengist_metadata,
    Column("id", Integer, primary_key=True),
    Column("username", String(24)),
    Column("email", String(255)),
    Column("password", String(255)),
    Column("is_admin", Integer),
    Column("created_at", DateTime),
    Column("updated_at", DateTime),
)

gists_table = Table(
    "gists",
    opengist_metadata,
    Column("id", Integer, primary_key=True),
    Column("uuid", String(36)),
    Column("title", String(250)),
    Column("description", Text),
    Column("private", Integer),
    Column("user_id", Integer),
    Column("nb_files", Integer),
    Column("nb_likes", Integer),
    Column("nb_forks", Integer),
    Column("created_at", DateTime),
    Column("updated_at", DateTime),
)

ssh_keys_table = Table(
    "ssh_keys",
    opengist_metadata,
    Column("id", Integer, primary_key=True),
    Column("title", String(50)),
    Column("content", Text),
    Column("sha", String(44)),
    Column("user_id", Integer),
    Column("created_at", DateTime),
)

likes_table = Table(
    "likes",
    opengist_metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", Integer),
    Column("gist_id", Integer),
    Column("created_at", DateTime),
)

_COUNTED_TABLES: Final[dict[EntityKind, Table]] = {
    EntityKind.USER: users_table,
    EntityKind.POST: gists_table,
    EntityKind.KEY: ssh_keys_table,
    EntityKind.STAR: likes_table,
}


class OpenGistSource:
    """SourceConnector reading an OpenGist database and its repository directory."""

    kind = SourceKind.OPENGIST
    supports_comments = False

    def __init__(
        self,
        engine: Engine,
        repository_path: str | Path,
        *,
        web_url: str = "",
        owner: str = "",
    ) -> None:
        self._engine = engine
        self.repository_path = Path(repository_path)
        self.web_url = web_url.rstrip("/")
        self._owner = owner

    @classmethod
    def from_url(cls, database_url: str, repository_path: str | Path, **kwargs: Any) -> OpenGistSource:
        try:
            engine = create_engine(database_url)
        except (SQLAlchemyError, ValueError) as e:
            msg = f"Invalid OpenGist database URL: {e}"
            raise SourceConnectionError(msg) from e
        return cls(engine, repository_path, **kwargs)

    @property
    def owner(self) -> str:
        return self._owner

    def validate(self) -> None:
        try:
            existing = set(inspect(self._engine).get_table_names())
        except SQLAlchemyError as e:
            msg = f"Cannot connect to OpenGist database: {e}"
            raise SourceConnectionError(msg) from e
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        if missing:
            msg = f"Not an OpenGist database, missing tables: {', '.join(missing)}"
            raise SchemaValidationError(msg)
        logger.info("OpenGist database schema verified")

    def test_connection(self) -> dict[str, int]:
        """Validate the source and return user and gist counts without migrating anything."""
        self.validate()
        return {"users": self.count(EntityKind.USER), "gists": self.count(EntityKind.POST)}

    def get_user(self, identifier: str) -> SourceUser:
        rows = self._fetch(select(users_table).where(users_table.c.username == identifier))
        if not rows:
            msg = f"OpenGist user not found: {identifier}"
            raise ItemFetchError(msg)
        return _to_user(rows[0])

    def list_users(self, page: int, page_size: int) -> list[SourceUser]:
        stmt = select(users_table).order_by(users_table.c.id)
        if self._owner:
            stmt = stmt.where(users_table.c.username == self._owner)
        return [_to_user(row) for row in self._fetch(_paged(stmt, page, page_size))]

    def list_keys(self, page: int, page_size: int) -> list[SourceKey]:
        stmt = select(ssh_keys_table).order_by(ssh_keys_table.c.id)
        if self._owner:
            stmt = stmt.join(users_table, ssh_keys_table.c.user_id == users_table.c.id).where(
                users_table.c.username == self._owner
            )
        return [
            SourceKey(
                source_id=row.id,
                owner_id=row.user_id,
                title=row.title or "",
                content=row.content or "",
                fingerprint=row.sha or "",
                created_at=row.created_at,
            )
            for row in self._fetch(_paged(stmt, page, page_size))
        ]

    def list_posts(self, owner: str, page: int, page_size: int) -> list[SourcePost]:
        stmt = self._posts_query().order_by(gists_table.c.id)
        if owner:
            stmt = stmt.where(users_table.c.username == owner)
        return [self._to_post(row) for row in self._fetch(_paged(stmt, page, page_size))]

    def get_post_detail(self, post_id: int | str) -> SourcePost:
        try:
            gist_id = int(post_id)
        except ValueError as e:
            msg = f"Invalid OpenGist gist id: {post_id}"
            raise ItemFetchError(msg) from e
        rows = self._fetch(self._posts_query().where(gists_table.c.id == gist_id))
        if not rows:
            msg = f"OpenGist gist not found: {post_id}"
            raise ItemFetchError(msg)
        row = rows[0]
        post = self._to_post(row)
        files = self._read_files(row.username or "", row.uuid or "")
        return dataclasses.replace(post, files=files)

    def list_comments(self, post_id: int | str) -> list[SourceComment]:
        return []

    def list_stars(self, page: int, page_size: int) -> list[SourceStar]:
        stmt = select(likes_table).order_by(likes_table.c.id)
        if self._owner:
            # Both ends must belong to the owner, other users and their gists are not migrated
            stmt = (
                stmt.join(users_table, likes_table.c.user_id == users_table.c.id)
                .join(gists_table, likes_table.c.gist_id == gists_table.c.id)
                .where(users_table.c.username == self._owner, gists_table.c.user_id == users_table.c.id)
            )
        return [
            SourceStar(user_id=row.user_id, post_id=row.gist_id, created_at=row.created_at)
            for row in self._fetch(_paged(stmt, page, page_size))
        ]

    def count(self, entity: EntityKind) -> int:
        table = _COUNTED_TABLES.get(entity)
        if table is None:
            return 0
        rows = self._fetch(select(func.count()).select_from(table))
        return int(rows[0][0]) if rows else 0

    def get_quota(self) -> Quota:
        return Quota.unlimited()

    def close(self) -> None:
        self._engine.dispose()

    def _posts_query(self) -> Select[Any]:
        return select(gists_table, users_table.c.username).outerjoin(
            users_table, gists_table.c.user_id == users_table.c.id
        )

    def _fetch(self, stmt: Select[Any]) -> list[Row[Any]]:
        try:
            with self._engine.connect() as conn:
                return list(conn.execute(stmt))
        except SQLAlchemyError as e:
            msg = f"OpenGist database query failed: {e}"
            raise SourceConnectionError(msg) from e

    def _to_post(self, row: Row[Any]) -> SourcePost:
        username = row.username or ""
        html_url = f"{self.web_url}/{username}/{row.uuid}" if self.web_url and username else ""
        return SourcePost(
            source_id=row.id,
            owner_id=row.user_id,
            owner_username=username,
            title=row.title or "",
            description=row.description or "",
            visibility=_VISIBILITY.get(row.private or 0, Visibility.PRIVATE),
            html_url=html_url,
            star_count=row.nb_likes or 0,
            fork_count=row.nb_forks or 0,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _read_files(self, username: str, uuid: str) -> tuple[SourceFile, ...]:
        gist_path = self.repository_path / username / uuid
        if not username or not uuid or not gist_path.is_dir():
            msg = f"Gist repository not found: {gist_path}"
            raise ItemFetchError(msg)

        files: list[SourceFile] = []
        for path in sorted(gist_path.iterdir()):
            if path.is_dir() or path.name.startswith("."):
                continue
            try:
                data = path.read_bytes()
                modified_at = dt.datetime.fromtimestamp(path.stat().st_mtime, dt.UTC)
            except OSError as e:
                msg = f"Failed to read file {path.name} of gist {uuid}: {e}"
                raise ItemFetchError(msg) from e
            files.append(
                SourceFile(
                    filename=path.name,
                    content=data.decode("utf-8", errors="replace"),
                    size=len(data),
                    language=detect_language(path.name),
                    modified_at=modified_at,
                )
            )
        return tuple(files)


def _paged(stmt: Select[Any], page: int, page_size: int) -> Select[Any]:
    return stmt.limit(page_size).offset((page - 1) * page_size)


def _to_user(row: Row[Any]) -> SourceUser:
    return SourceUser(
        source_id=row.id,
        username=row.username,
        email=row.email or "",
        display_name=row.username,
        password_hash=row.password or "",
        is_admin=bool(row.is_admin),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
