"""Protocols defining the contracts between the migration pipeline and its collaborators.

The engine separates concerns into three parts:

1. SourceConnector: reads users, gists, comments and stars from a source
   (an OpenGist database, the GitHub Gists API, GitLab snippets)
2. TargetStore: creates rows in the destination store, one item per call
3. MigrationOrchestrator: drives the staged pipeline, owns id mapping and
   content transformation

Progress flows out of the orchestrator through a ProgressSink, which the job
registry binds to a single job.

This separation allows:
- Adding a source without touching the pipeline or the store
- Testing the pipeline with in-memory fakes
- Keeping source-specific pagination and quota handling inside connectors
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    import datetime as dt

    from .models import (
        EntityKind,
        MigrationSummary,
        Quota,
        SourceComment,
        SourceKey,
        SourceKind,
        SourcePost,
        SourceStar,
        SourceUser,
    )


class ProgressSink(Protocol):
    """Receives progress reports from a running pipeline."""

    def report(self, message: str, current: int, total: int) -> None:
        """Report progress.

        Args:
            message: Human-readable description of the current operation
            current: Items processed so far in the current stage
            total: Items expected in the current stage, 0 when unknown
        """
        ...


class SourceConnector(Protocol):
    """Protocol for reading from a source system.

    Pagination:
        All list_* methods take a 1-based page number and a page size and
        return an empty list once the source is exhausted. The orchestrator
        keeps requesting pages until it sees an empty one.

    Errors:
        - SourceConnectionError when the source is unreachable or rejects the
          credentials (fatal for the job)
        - SchemaValidationError when a direct-storage source lacks a required
          table (fatal, raised by validate())
        - ItemFetchError when a single item cannot be read (recoverable)
        - RateLimitExceeded when the quota ran out mid-fetch (the orchestrator
          waits and retries the page)

    Example implementations:
        - OpenGistSource: SQLAlchemy Core over the OpenGist schema plus the
          on-disk gist repositories
        - GitHubSource: PyGithub over the Gists API
        - GitLabSource: python-gitlab over personal snippets
    """

    kind: SourceKind
    supports_comments: bool

    @property
    def owner(self) -> str:
        """Username whose content is imported, empty for whole-instance migrations."""
        ...

    def validate(self) -> None:
        """Fail fast before any read.

        Raises:
            SourceConnectionError: Source unreachable or token rejected
            SchemaValidationError: Required tables are missing
        """
        ...

    def get_user(self, identifier: str) -> SourceUser:
        """Fetch a single user by username."""
        ...

    def list_users(self, page: int, page_size: int) -> list[SourceUser]:
        """List the users to migrate. Remote sources yield only the owner."""
        ...

    def list_keys(self, page: int, page_size: int) -> list[SourceKey]:
        ...

    def list_posts(self, owner: str, page: int, page_size: int) -> list[SourcePost]:
        """List gists without file contents.

        Args:
            owner: Username to list gists for, empty for all gists in the source
        """
        ...

    def get_post_detail(self, post_id: int | str) -> SourcePost:
        """Fetch a gist including all of its files."""
        ...

    def list_comments(self, post_id: int | str) -> list[SourceComment]:
        ...

    def list_stars(self, page: int, page_size: int) -> list[SourceStar]:
        ...

    def count(self, entity: EntityKind) -> int:
        """Return how many entities of a kind the source holds, 0 when unknown."""
        ...

    def get_quota(self) -> Quota:
        """Return the remaining request quota. Direct-storage sources are unlimited."""
        ...

    def close(self) -> None:
        """Release connections held by the connector."""
        ...


class TargetStore(Protocol):
    """Protocol for writing into the destination store.

    Every create call is its own unit of work; a failing call raises
    ItemPersistError and leaves earlier rows in place. All create calls return
    the newly minted id of the row.
    """

    def find_user_id(self, username: str) -> str | None:
        """Return the id of an existing user with this username, if any."""
        ...

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
        ...

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
        ...

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
        ...

    def create_comment(
        self,
        *,
        gist_id: str,
        user_id: str,
        body: str,
        created_at: dt.datetime | None = None,
        updated_at: dt.datetime | None = None,
    ) -> str:
        ...

    def create_star(self, *, user_id: str, gist_id: str, created_at: dt.datetime | None = None) -> str:
        ...

    def save_migration_summary(self, summary: MigrationSummary) -> str:
        """Persist the summary of a finished job."""
        ...
