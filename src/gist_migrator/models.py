"""Data models exchanged between source connectors, the orchestrator and the target store.

Source* classes are read-only projections of a source system (an OpenGist
database, the GitHub Gists API, GitLab snippets). Connectors build them; the
orchestrator only reads and translates them into target store rows.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import StrEnum


class SourceKind(StrEnum):
    """Source system a migration reads from."""

    OPENGIST = "opengist"
    GITHUB = "github"
    GITLAB = "gitlab"

    @property
    def is_remote(self) -> bool:
        return self is not SourceKind.OPENGIST


class JobKind(StrEnum):
    LEGACY_MIGRATION = "legacy-migration"
    REMOTE_IMPORT = "remote-import"

    @classmethod
    def for_source(cls, source_kind: SourceKind) -> JobKind:
        return cls.REMOTE_IMPORT if source_kind.is_remote else cls.LEGACY_MIGRATION


class JobStatus(StrEnum):
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class Visibility(StrEnum):
    PUBLIC = "public"
    UNLISTED = "unlisted"
    PRIVATE = "private"


class EntityKind(StrEnum):
    """Entity kinds tracked by the id mapper and the result aggregator."""

    USER = "user"
    KEY = "key"
    POST = "post"
    FILE = "file"
    COMMENT = "comment"
    STAR = "star"


@dataclass(frozen=True)
class Quota:
    """Remaining request quota of a source and the time the window resets.

    `remaining is None` means the source does not limit requests.
    """

    remaining: int | None
    reset_at: dt.datetime | None = None

    @classmethod
    def unlimited(cls) -> Quota:
        return cls(remaining=None, reset_at=None)

    @property
    def is_unlimited(self) -> bool:
        return self.remaining is None


@dataclass(frozen=True)
class SourceUser:
    """An account in the source system."""

    source_id: int | str
    username: str
    email: str = ""
    display_name: str = ""
    password_hash: str = ""  # Only direct-storage sources expose one
    is_admin: bool = False
    avatar_url: str = ""
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None


@dataclass(frozen=True)
class SourceKey:
    """An SSH key or similar credential owned by a source user."""

    source_id: int | str
    owner_id: int | str
    title: str
    content: str = ""
    fingerprint: str = ""
    created_at: dt.datetime | None = None


@dataclass(frozen=True)
class SourceFile:
    filename: str
    content: str
    size: int = 0
    language: str = ""  # Language reported by the source, if any
    modified_at: dt.datetime | None = None


@dataclass(frozen=True)
class SourcePost:
    """A gist/snippet. `files` is only populated by `get_post_detail()`."""

    source_id: int | str
    owner_id: int | str
    owner_username: str
    title: str
    description: str = ""
    visibility: Visibility = Visibility.PUBLIC
    html_url: str = ""
    files: tuple[SourceFile, ...] = ()
    comment_count: int = 0
    star_count: int = 0
    fork_count: int = 0
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None

    @property
    def is_public(self) -> bool:
        return self.visibility is Visibility.PUBLIC


@dataclass(frozen=True)
class SourceComment:
    source_id: int | str
    post_id: int | str
    author: SourceUser
    body: str
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None


@dataclass(frozen=True)
class SourceStar:
    """A social edge: `user_id` starred (liked) `post_id`."""

    user_id: int | str
    post_id: int | str
    created_at: dt.datetime | None = None


@dataclass
class MigrationSummary:
    """Durable record of a finished job, written to the target store.

    `items_total` counts the items the run acted on: imported plus skipped
    (users and gists imported, entities skipped after an error). Gists left
    out by the visibility filter are not part of it; they are reported as
    `posts_filtered` in `result`.
    """

    job_id: str
    kind: JobKind
    source_kind: SourceKind
    status: JobStatus
    source_url: str
    source_username: str
    items_total: int
    items_imported: int
    items_skipped: int
    error_count: int
    started_at: dt.datetime
    completed_at: dt.datetime | None
    settings: dict[str, object] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    result: dict[str, object] = field(default_factory=dict)
