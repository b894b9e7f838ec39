"""Migration orchestrator that drives one run from a source connector into the target store.

The MigrationOrchestrator is the central coordinator of a run. It:
1. Walks the source stage by stage through paginated reads
2. Builds the source id -> target id mapping as entities are created
3. Rewrites references to the old system in descriptions and comments
4. Collects counts, skipped ids and errors into a MigrationResult

Migration Flow
--------------
Stages run in dependency order, each one finishing before the next starts:

Stage 1: Users
    - Users whose handle already exists in the target are mapped, not recreated
    - With reset_passwords a random password is generated; only its hash is
      stored, the plaintext goes to result.generated_passwords

Stage 2: SSH keys (migrate_keys)
    - Owner must be mapped, otherwise the key is skipped and recorded
    - Keys are counted only; no key material is written

Stage 3: Gists and files
    - Non-public gists are dropped unless migrate_private_items is set
    - Owner must be mapped, otherwise the gist is skipped and recorded
    - One file row per source file, language detected from the extension
    - The old gist URL is mapped to the new one for later rewrites

Stage 4: Comments (import_comments, sources with comments only)
    - For each imported gist; comment authors go through the same user
      creation as stage 1

Stage 5: Stars
    - Created only when both the user and the gist are mapped; anything
      else is dropped silently

Pagination and Pacing
---------------------
Every list call is paginated with settings.batch_size until an empty page.
The rate limiter is consulted before each page; a RateLimitExceeded raised
mid-fetch makes the orchestrator wait for the reset and retry the same call.

Cancellation
------------
The cancellation event is checked between stages and before every read from
the source (page fetch, gist detail, comment list). Once it is set the run
stops at the next checkpoint, keeps everything already created and returns a
result with cancelled=True.

Error Handling
--------------
- SourceConnectionError, SchemaValidationError: fatal, propagate out of run()
  after being recorded on `self.result`
- ItemFetchError, ItemPersistError: recorded, item skipped, stage continues
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Final, TypeVar

from .content import ContentTransformer, rules_for
from .exceptions import (
    FATAL_ERRORS,
    RECOVERABLE_ERRORS,
    ItemPersistError,
    MigrationCancelled,
    RateLimitExceeded,
    SourceConnectionError,
)
from .id_mapping import EntityMapper
from .languages import detect_language
from .models import EntityKind
from .passwords import generate_password, hash_password
from .rate_limit import RateLimiter
from .result import MigrationResult
from .store import DryRunStore

if TYPE_CHECKING:
    import datetime as dt
    from collections.abc import Callable, Iterator

    from .config import MigrationSettings
    from .models import SourceComment, SourcePost, SourceUser
    from .protocols import ProgressSink, SourceConnector, TargetStore

logger: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_RATE_LIMIT_RETRIES: Final[int] = 5


class _LogProgress:
    """Default sink when the caller does not track progress."""

    def report(self, message: str, current: int, total: int) -> None:
        logger.debug(f"{message} ({current}/{total or '?'})")


class MigrationOrchestrator:
    """Runs the staged pipeline for one source.

    Usage:
        source = create_source(settings)
        orchestrator = MigrationOrchestrator(source, store, settings, base_url="https://gists.example.com")
        result = orchestrator.run()

    An orchestrator instance is meant for a single run; `result` holds the
    partial result when run() raises.
    """

    def __init__(
        self,
        source: SourceConnector,
        store: TargetStore,
        settings: MigrationSettings,
        *,
        base_url: str = "",
        progress: ProgressSink | None = None,
        rate_limiter: RateLimiter | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._source = source
        self._store = store
        self._settings = settings
        self._base_url = base_url.rstrip("/")
        self._progress: ProgressSink = progress or _LogProgress()
        self._rate_limiter = rate_limiter or RateLimiter(
            source, delay_ms=settings.rate_limit_delay_ms, progress=self._progress
        )
        self._cancel_event = cancel_event or threading.Event()
        self._mapper = EntityMapper()
        self._transformer = ContentTransformer(rules_for(source.kind, self._base_url))
        self._dry_run = False
        self.result = MigrationResult(source_kind=source.kind)

    @property
    def mapper(self) -> EntityMapper:
        return self._mapper

    @property
    def transformer(self) -> ContentTransformer:
        return self._transformer

    def run(self, *, dry_run: bool = False) -> MigrationResult:
        """Execute all stages.

        With dry_run, the same reads, filters and counts happen but nothing
        is written to the target store.

        Raises:
            SourceConnectionError: If the source is unreachable or rejects the token
            SchemaValidationError: If a direct-storage source lacks required tables
        """
        self._dry_run = dry_run
        store: TargetStore = DryRunStore(self._store) if dry_run else self._store
        result = self.result = MigrationResult(
            source_kind=self._source.kind,
            dry_run=dry_run,
            passwords_reset=self._settings.reset_passwords and not dry_run,
        )
        started = time.monotonic()
        mode = "dry run" if dry_run else "migration"
        logger.info(f"Starting {self._source.kind.value} {mode}")

        try:
            self._source.validate()
            self._migrate_users(store, result)
            if self._settings.migrate_keys:
                self._migrate_keys(result)
            self._migrate_posts(store, result)
            if self._settings.import_comments and self._source.supports_comments:
                self._migrate_comments(store, result)
            self._migrate_stars(store, result)
        except MigrationCancelled:
            result.cancelled = True
            logger.warning(f"{mode.capitalize()} cancelled, keeping {result.items_imported} imported items")
        except FATAL_ERRORS as e:
            result.record_error(e)
            logger.error(f"{mode.capitalize()} failed: {e}")
            raise
        finally:
            result.duration_seconds = time.monotonic() - started
            result.id_mapping = self._mapper.snapshot()

        logger.info(
            f"{mode.capitalize()} finished: {result.users_imported} users, {result.posts_imported} gists, "
            f"{result.files_imported} files, {result.comments_imported} comments, "
            f"{result.stars_imported} stars, {result.error_count} errors"
        )
        return result

    # Stages

    def _migrate_users(self, store: TargetStore, result: MigrationResult) -> None:
        self._checkpoint()
        total = self._source.count(EntityKind.USER)
        logger.info(f"Migrating users ({total or 'unknown number'})")
        for current, user in enumerate(self._paginate(self._source.list_users), start=1):
            try:
                self._ensure_user(user, store, result)
            except RECOVERABLE_ERRORS as e:
                result.record_error(e, entity=EntityKind.USER, source_id=user.source_id)
                result.skip(EntityKind.USER, user.source_id)
            self._progress.report(f"Migrating user {user.username}", current, total)

    def _migrate_keys(self, result: MigrationResult) -> None:
        self._checkpoint()
        total = self._source.count(EntityKind.KEY)
        logger.info(f"Processing SSH keys ({total or 'unknown number'})")
        for current, key in enumerate(self._paginate(self._source.list_keys), start=1):
            if not self._mapper.is_mapped(EntityKind.USER, key.owner_id):
                result.record_error(
                    f"SSH key {key.source_id} skipped: owner {key.owner_id} was not migrated",
                    entity=EntityKind.KEY,
                    source_id=key.source_id,
                    kind="UnmappedOwner",
                )
                result.skip(EntityKind.KEY, key.source_id)
            else:
                # Key material is not imported; users re-register their keys
                result.keys_imported += 1
            self._progress.report(f"Processing SSH key {key.title}", current, total)

    def _migrate_posts(self, store: TargetStore, result: MigrationResult) -> None:
        self._checkpoint()
        total = self._source.count(EntityKind.POST)
        max_items = self._settings.max_items
        logger.info(f"Migrating gists ({total or 'unknown number'})")

        owner = self._source.owner
        seen: set[str] = set()
        for current, post in enumerate(
            self._paginate(lambda page, size: self._source.list_posts(owner, page, size)), start=1
        ):
            if max_items is not None and result.posts_imported >= max_items:
                logger.info(f"Reached max_items={max_items}, not migrating further gists")
                break
            # Offset pagination can repeat an item when the source changes between pages
            if str(post.source_id) in seen:
                logger.debug(f"Gist {post.source_id} listed again, already handled")
                continue
            seen.add(str(post.source_id))
            self._progress.report(f"Migrating gist {post.title or post.source_id}", current, total)

            if not post.is_public and not self._settings.migrate_private_items:
                result.posts_filtered += 1
                continue

            owner_id = self._mapper.resolve(EntityKind.USER, post.owner_id)
            if owner_id is None:
                result.record_error(
                    f"Gist {post.source_id} skipped: owner {post.owner_username or post.owner_id} was not migrated",
                    entity=EntityKind.POST,
                    source_id=post.source_id,
                    kind="UnmappedOwner",
                )
                result.skip(EntityKind.POST, post.source_id)
                continue

            try:
                self._checkpoint()
                detail = self._with_rate_limit_retry(lambda: self._source.get_post_detail(post.source_id))
                self._create_post(detail, owner_id, store, result)
            except RECOVERABLE_ERRORS as e:
                result.record_error(e, entity=EntityKind.POST, source_id=post.source_id)
                result.skip(EntityKind.POST, post.source_id)
            self._rate_limiter.throttle()

    def _migrate_comments(self, store: TargetStore, result: MigrationResult) -> None:
        post_ids = self._mapper.source_ids(EntityKind.POST)
        logger.info(f"Migrating comments of {len(post_ids)} gists")
        for current, post_id in enumerate(post_ids, start=1):
            self._checkpoint()
            self._rate_limiter.wait_if_needed()
            try:
                comments = self._with_rate_limit_retry(lambda: self._source.list_comments(post_id))
            except RECOVERABLE_ERRORS as e:
                result.record_error(e, entity=EntityKind.COMMENT, source_id=post_id)
                result.skip(EntityKind.COMMENT, f"post:{post_id}")
                continue

            gist_id = self._mapper.resolve(EntityKind.POST, post_id)
            if gist_id is None:
                continue
            for comment in comments:
                self._create_comment(comment, gist_id, store, result)
            self._progress.report(f"Migrated comments of gist {post_id}", current, len(post_ids))
            self._rate_limiter.throttle()

    def _migrate_stars(self, store: TargetStore, result: MigrationResult) -> None:
        self._checkpoint()
        total = self._source.count(EntityKind.STAR)
        logger.info(f"Migrating stars ({total or 'unknown number'})")
        for current, star in enumerate(self._paginate(self._source.list_stars), start=1):
            user_id = self._mapper.resolve(EntityKind.USER, star.user_id)
            gist_id = self._mapper.resolve(EntityKind.POST, star.post_id)
            star_key = f"{star.user_id}:{star.post_id}"
            if user_id is None or gist_id is None or self._mapper.is_mapped(EntityKind.STAR, star_key):
                continue
            created_at = star.created_at if self._settings.preserve_timestamps else None
            try:
                star_id = store.create_star(user_id=user_id, gist_id=gist_id, created_at=created_at)
            except ItemPersistError as e:
                result.record_error(e, entity=EntityKind.STAR, source_id=star_key)
                result.skip(EntityKind.STAR, star_key)
                continue
            self._mapper.record(EntityKind.STAR, star_key, star_id)
            result.stars_imported += 1
            self._progress.report("Migrating stars", current, total)

    # Entity helpers

    def _ensure_user(self, user: SourceUser, store: TargetStore, result: MigrationResult) -> str:
        """Return the target id for a source user, creating the user when needed."""
        existing = self._mapper.resolve(EntityKind.USER, user.source_id)
        if existing is not None:
            return existing

        target_id = store.find_user_id(user.username)
        if target_id is not None:
            logger.info(f"User {user.username} already exists in the target, mapping it")
            self._mapper.record(EntityKind.USER, user.source_id, target_id)
            result.users_matched += 1
            return target_id

        password_hash = user.password_hash
        if not self._dry_run and (self._settings.reset_passwords or not password_hash):
            password = generate_password()
            password_hash = hash_password(password)
            if self._settings.reset_passwords:
                result.generated_passwords[user.username] = password

        created_at, updated_at = self._timestamps(user.created_at, user.updated_at)
        target_id = store.create_user(
            username=user.username,
            email=user.email,
            display_name=user.display_name or user.username,
            password_hash=password_hash,
            is_admin=user.is_admin,
            avatar_url=user.avatar_url,
            created_at=created_at,
            updated_at=updated_at,
        )
        self._mapper.record(EntityKind.USER, user.source_id, target_id)
        result.users_imported += 1
        return target_id

    def _create_post(self, post: SourcePost, owner_id: str, store: TargetStore, result: MigrationResult) -> None:
        created_at, updated_at = self._timestamps(post.created_at, post.updated_at)
        gist_id = store.create_gist(
            user_id=owner_id,
            title=post.title,
            description=self._transformer.transform(post.description),
            visibility=post.visibility.value,
            import_id=str(post.source_id),
            import_url=post.html_url,
            star_count=post.star_count,
            fork_count=post.fork_count,
            created_at=created_at,
            updated_at=updated_at,
        )
        self._mapper.record(EntityKind.POST, post.source_id, gist_id)
        result.posts_imported += 1
        if post.html_url and self._base_url and post.owner_username:
            self._transformer.record_url(post.html_url, f"{self._base_url}/u/{post.owner_username}/{gist_id}")

        for source_file in post.files:
            file_created = source_file.modified_at if self._settings.preserve_timestamps else None
            try:
                file_id = store.create_file(
                    gist_id=gist_id,
                    filename=source_file.filename,
                    content=source_file.content,
                    language=detect_language(source_file.filename),
                    size=source_file.size or len(source_file.content.encode()),
                    created_at=file_created or created_at,
                    updated_at=file_created or updated_at,
                )
            except ItemPersistError as e:
                file_key = f"{post.source_id}/{source_file.filename}"
                result.record_error(e, entity=EntityKind.FILE, source_id=file_key)
                result.skip(EntityKind.FILE, file_key)
                continue
            self._mapper.record(EntityKind.FILE, f"{post.source_id}/{source_file.filename}", file_id)
            result.files_imported += 1

    def _create_comment(
        self, comment: SourceComment, gist_id: str, store: TargetStore, result: MigrationResult
    ) -> None:
        try:
            author_id = self._ensure_user(comment.author, store, result)
            created_at, updated_at = self._timestamps(comment.created_at, comment.updated_at)
            comment_id = store.create_comment(
                gist_id=gist_id,
                user_id=author_id,
                body=self._transformer.transform(comment.body),
                created_at=created_at,
                updated_at=updated_at,
            )
        except RECOVERABLE_ERRORS as e:
            result.record_error(e, entity=EntityKind.COMMENT, source_id=comment.source_id)
            result.skip(EntityKind.COMMENT, comment.source_id)
            return
        self._mapper.record(EntityKind.COMMENT, comment.source_id, comment_id)
        result.comments_imported += 1

    # Plumbing

    def _timestamps(
        self, created_at: dt.datetime | None, updated_at: dt.datetime | None
    ) -> tuple[dt.datetime | None, dt.datetime | None]:
        if not self._settings.preserve_timestamps:
            return None, None
        return created_at, updated_at or created_at

    def _checkpoint(self) -> None:
        if self._cancel_event.is_set():
            msg = "Migration cancelled"
            raise MigrationCancelled(msg)

    def _paginate(self, fetch: Callable[[int, int], list[T]]) -> Iterator[T]:
        """Yield items page by page until the source returns an empty page."""
        page = 1
        page_size = self._settings.batch_size
        while True:
            self._checkpoint()
            self._rate_limiter.wait_if_needed()
            items = self._with_rate_limit_retry(lambda: fetch(page, page_size))
            if not items:
                return
            yield from items
            page += 1

    def _with_rate_limit_retry(self, call: Callable[[], T]) -> T:
        for _attempt in range(_MAX_RATE_LIMIT_RETRIES):
            try:
                return call()
            except RateLimitExceeded as e:
                self._rate_limiter.wait_until(e.reset_at, reason=str(e))
                self._checkpoint()
        msg = f"Rate limit still exhausted after {_MAX_RATE_LIMIT_RETRIES} waits"
        raise SourceConnectionError(msg)
