"""
Pytest configuration and fixtures.

Provides an in-memory source connector and an in-memory SQLite target store so
that pipeline tests run without network access or external databases.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
from typing import TYPE_CHECKING, Any

import pytest

from gist_migrator.config import MigrationSettings
from gist_migrator.exceptions import ItemFetchError, RateLimitExceeded
from gist_migrator.models import (
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
from gist_migrator.rate_limit import RateLimiter
from gist_migrator.store import SqlAlchemyStore

if TYPE_CHECKING:
    from collections.abc import Generator, Iterable

BASE_URL = "https://gists.example.com"


def make_user(source_id: int | str, username: str, **kwargs: Any) -> SourceUser:
    return SourceUser(source_id=source_id, username=username, email=f"{username}@example.com", **kwargs)


def make_post(
    source_id: int | str,
    owner: SourceUser,
    *,
    visibility: Visibility = Visibility.PUBLIC,
    files: Iterable[tuple[str, str]] = (("main.py", "print('hi')\n"),),
    **kwargs: Any,
) -> SourcePost:
    return SourcePost(
        source_id=source_id,
        owner_id=owner.source_id,
        owner_username=owner.username,
        title=kwargs.pop("title", f"Gist {source_id}"),
        visibility=visibility,
        files=tuple(SourceFile(filename=name, content=content, size=len(content)) for name, content in files),
        **kwargs,
    )


class FakeSource:
    """In-memory SourceConnector."""

    def __init__(
        self,
        kind: SourceKind = SourceKind.OPENGIST,
        *,
        users: Iterable[SourceUser] = (),
        keys: Iterable[SourceKey] = (),
        posts: Iterable[SourcePost] = (),
        comments: dict[str, list[SourceComment]] | None = None,
        stars: Iterable[SourceStar] = (),
        owner: str = "",
        supports_comments: bool | None = None,
        quota: Quota | None = None,
    ) -> None:
        self.kind = kind
        self.users = list(users)
        self.keys = list(keys)
        self.posts = list(posts)
        self.comments = comments or {}
        self.stars = list(stars)
        self._owner = owner
        self.supports_comments = kind.is_remote if supports_comments is None else supports_comments
        self.quota = quota or Quota.unlimited()
        self.validate_error: Exception | None = None
        self.failing_posts: set[str] = set()
        self.rate_limited_calls = 0  # Number of upcoming list_posts calls that hit the rate limit
        self.validated = False
        self.closed = False
        self.calls: list[tuple[str, Any]] = []

    @property
    def owner(self) -> str:
        return self._owner

    def validate(self) -> None:
        self.calls.append(("validate", None))
        if self.validate_error is not None:
            raise self.validate_error
        self.validated = True

    def get_user(self, identifier: str) -> SourceUser:
        for user in self.users:
            if user.username == identifier:
                return user
        msg = f"User not found: {identifier}"
        raise ItemFetchError(msg)

    def list_users(self, page: int, page_size: int) -> list[SourceUser]:
        self.calls.append(("list_users", page))
        return _page(self.users, page, page_size)

    def list_keys(self, page: int, page_size: int) -> list[SourceKey]:
        self.calls.append(("list_keys", page))
        return _page(self.keys, page, page_size)

    def list_posts(self, owner: str, page: int, page_size: int) -> list[SourcePost]:
        self.calls.append(("list_posts", page))
        if self.rate_limited_calls > 0:
            self.rate_limited_calls -= 1
            msg = "quota exhausted"
            raise RateLimitExceeded(msg, reset_at=None)
        posts = [p for p in self.posts if not owner or p.owner_username == owner]
        return [dataclasses.replace(p, files=()) for p in _page(posts, page, page_size)]

    def get_post_detail(self, post_id: int | str) -> SourcePost:
        self.calls.append(("get_post_detail", post_id))
        if str(post_id) in self.failing_posts:
            msg = f"Failed to fetch gist {post_id}"
            raise ItemFetchError(msg)
        for post in self.posts:
            if str(post.source_id) == str(post_id):
                return post
        msg = f"Gist not found: {post_id}"
        raise ItemFetchError(msg)

    def list_comments(self, post_id: int | str) -> list[SourceComment]:
        self.calls.append(("list_comments", post_id))
        return list(self.comments.get(str(post_id), []))

    def list_stars(self, page: int, page_size: int) -> list[SourceStar]:
        self.calls.append(("list_stars", page))
        return _page(self.stars, page, page_size)

    def count(self, entity: EntityKind) -> int:
        return {
            EntityKind.USER: len(self.users),
            EntityKind.KEY: len(self.keys),
            EntityKind.POST: len(self.posts),
            EntityKind.STAR: len(self.stars),
        }.get(entity, 0)

    def get_quota(self) -> Quota:
        return self.quota

    def close(self) -> None:
        self.closed = True


def _page(items: list[Any], page: int, page_size: int) -> list[Any]:
    start = (page - 1) * page_size
    return items[start : start + page_size]


class RecordingProgress:
    def __init__(self) -> None:
        self.reports: list[tuple[str, int, int]] = []

    def report(self, message: str, current: int, total: int) -> None:
        self.reports.append((message, current, total))


class FakeClock:
    def __init__(self, start: dt.datetime | None = None) -> None:
        self.now = start or dt.datetime(2024, 1, 1, 12, 0, tzinfo=dt.UTC)
        self.sleeps: list[float] = []

    def __call__(self) -> dt.datetime:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += dt.timedelta(seconds=seconds)


@pytest.fixture
def store() -> Generator[SqlAlchemyStore]:
    target = SqlAlchemyStore.from_url("sqlite://")
    target.create_schema()
    yield target
    target.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> MigrationSettings:
    return MigrationSettings(
        source_kind=SourceKind.OPENGIST,
        source_url="sqlite://",
        repository_path="/srv/opengist/repos",
        batch_size=2,
        rate_limit_delay_ms=0,
    )


def quiet_limiter(source: Any, clock: FakeClock | None = None) -> RateLimiter:
    clock = clock or FakeClock()
    return RateLimiter(source, delay_ms=0, clock=clock, sleep=clock.sleep)
