"""
Tests for the staged migration pipeline, run against an in-memory store.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import threading
from typing import Any

import pytest
from conftest import BASE_URL, FakeClock, FakeSource, RecordingProgress, make_post, make_user, quiet_limiter
from sqlalchemy import func, select

from gist_migrator.config import MigrationSettings
from gist_migrator.exceptions import ItemFetchError, SchemaValidationError, SourceConnectionError
from gist_migrator.models import EntityKind, SourceComment, SourceKey, SourceKind, SourcePost, SourceStar, Visibility
from gist_migrator.orchestrator import MigrationOrchestrator
from gist_migrator.passwords import verify_password
from gist_migrator.store import Gist, GistComment, GistFile, GistStar, SqlAlchemyStore, User


def _orchestrator(
    source: FakeSource, store: SqlAlchemyStore, settings: MigrationSettings, **kwargs: Any
) -> MigrationOrchestrator:
    kwargs.setdefault("rate_limiter", quiet_limiter(source))
    return MigrationOrchestrator(source, store, settings, base_url=BASE_URL, **kwargs)


def _count(store: SqlAlchemyStore, model: Any) -> int:
    with store.session() as session:
        return session.scalar(select(func.count()).select_from(model)) or 0


def _github_settings(settings: MigrationSettings, **changes: Any) -> MigrationSettings:
    return dataclasses.replace(settings, source_kind=SourceKind.GITHUB, auth_token="t", **changes)


@pytest.mark.unit
class TestUsersStage:
    def test_users_created_and_mapped(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        source = FakeSource(users=[make_user(1, "alice"), make_user(2, "bob"), make_user(3, "carol")])

        result = _orchestrator(source, store, settings).run()

        assert result.users_imported == 3
        assert _count(store, User) == 3
        assert set(result.id_mapping["user"]) == {"1", "2", "3"}
        assert source.validated

    def test_existing_user_is_mapped_not_recreated(
        self, store: SqlAlchemyStore, settings: MigrationSettings
    ) -> None:
        existing_id = store.create_user(username="alice", email="a@x", display_name="A", password_hash="h")
        alice = make_user(1, "alice")
        source = FakeSource(users=[alice], posts=[make_post(10, alice)])

        result = _orchestrator(source, store, settings).run()

        assert result.users_imported == 0
        assert result.users_matched == 1
        assert result.id_mapping["user"]["1"] == existing_id
        with store.session() as session:
            gist = session.scalars(select(Gist)).one()
        assert gist.user_id == existing_id

    def test_source_password_hash_is_kept(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        source = FakeSource(users=[make_user(1, "alice", password_hash="$argon2id$original")])

        _orchestrator(source, store, settings).run()

        with store.session() as session:
            assert session.scalars(select(User.password_hash)).one() == "$argon2id$original"

    def test_reset_passwords_never_persists_plaintext(
        self, store: SqlAlchemyStore, settings: MigrationSettings
    ) -> None:
        settings = dataclasses.replace(settings, reset_passwords=True)
        source = FakeSource(users=[make_user(1, "alice", password_hash="old"), make_user(2, "bob")])

        result = _orchestrator(source, store, settings).run()

        assert result.passwords_reset
        assert set(result.generated_passwords) == {"alice", "bob"}
        with store.session() as session:
            users = {user.username: user for user in session.scalars(select(User))}
        for username, password in result.generated_passwords.items():
            row = users[username]
            assert verify_password(row.password_hash, password)
            stored_values = [str(getattr(row, column.key)) for column in User.__table__.columns]
            assert all(password not in value for value in stored_values)
        assert "generated_passwords" not in result.to_dict()
        assert all(password not in repr(result) for password in result.generated_passwords.values())

    def test_progress_reported_per_user(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        progress = RecordingProgress()
        source = FakeSource(users=[make_user(1, "alice"), make_user(2, "bob")])

        _orchestrator(source, store, settings, progress=progress).run()

        assert ("Migrating user alice", 1, 2) in progress.reports
        assert ("Migrating user bob", 2, 2) in progress.reports


@pytest.mark.unit
class TestPostsStage:
    def test_post_with_unmapped_owner_is_skipped(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        alice, bob = make_user(1, "alice"), make_user(2, "bob")
        stranger = make_user(99, "stranger")
        source = FakeSource(users=[alice, bob], posts=[make_post(5, stranger)])

        result = _orchestrator(source, store, settings).run()

        assert result.users_imported == 2
        assert result.posts_imported == 0
        assert result.error_count == 1
        assert result.errors[0].kind == "UnmappedOwner"
        assert result.skipped_ids(EntityKind.POST) == ["5"]
        assert _count(store, Gist) == 0

    def test_posts_and_files_created(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        alice = make_user(1, "alice")
        post = make_post(
            10, alice, files=[("main.py", "print(1)\n"), ("README.md", "# hi\n"), ("notes", "x")], fork_count=2
        )
        source = FakeSource(users=[alice], posts=[post])

        result = _orchestrator(source, store, settings).run()

        assert result.posts_imported == 1
        assert result.files_imported == 3
        with store.session() as session:
            gist = session.scalars(select(Gist)).one()
            languages = {f.filename: f.language for f in session.scalars(select(GistFile))}
        assert gist.title == "Gist 10"
        assert gist.import_id == "10"
        assert gist.fork_count == 2
        assert gist.visibility == "public"
        assert languages == {"main.py": "python", "README.md": "markdown", "notes": "text"}

    def test_private_items_filtered_by_default(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        alice = make_user(1, "alice")
        posts = [
            make_post(1, alice),
            make_post(2, alice, visibility=Visibility.PRIVATE),
            make_post(3, alice, visibility=Visibility.UNLISTED),
        ]
        source = FakeSource(users=[alice], posts=posts)

        result = _orchestrator(source, store, settings).run()

        assert result.posts_imported == 1
        assert result.posts_filtered == 2
        assert result.error_count == 0

    def test_private_items_migrated_when_enabled(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        settings = dataclasses.replace(settings, migrate_private_items=True)
        alice = make_user(1, "alice")
        posts = [make_post(1, alice, visibility=Visibility.PRIVATE), make_post(2, alice, visibility=Visibility.UNLISTED)]
        source = FakeSource(users=[alice], posts=posts)

        result = _orchestrator(source, store, settings).run()

        assert result.posts_imported == 2
        with store.session() as session:
            assert sorted(session.scalars(select(Gist.visibility))) == ["private", "unlisted"]

    def test_fetch_error_skips_post_and_continues(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        alice = make_user(1, "alice")
        source = FakeSource(users=[alice], posts=[make_post(1, alice), make_post(2, alice), make_post(3, alice)])
        source.failing_posts = {"2"}

        result = _orchestrator(source, store, settings).run()

        assert result.posts_imported == 2
        assert result.skipped_ids(EntityKind.POST) == ["2"]
        assert [error.kind for error in result.errors] == ["ItemFetchError"]

    def test_max_items_caps_imported_posts(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        settings = dataclasses.replace(settings, max_items=2)
        alice = make_user(1, "alice")
        source = FakeSource(users=[alice], posts=[make_post(i, alice) for i in range(1, 6)])

        result = _orchestrator(source, store, settings).run()

        assert result.posts_imported == 2
        assert _count(store, Gist) == 2

    def test_pagination_reads_until_empty_page(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        alice = make_user(1, "alice")
        source = FakeSource(users=[alice], posts=[make_post(i, alice) for i in range(1, 6)])

        result = _orchestrator(source, store, settings).run()

        assert result.posts_imported == 5
        assert [page for call, page in source.calls if call == "list_posts"] == [1, 2, 3, 4]

    def test_timestamps_preserved_when_requested(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        settings = dataclasses.replace(settings, preserve_timestamps=True)
        created = dt.datetime(2020, 1, 2, 3, 4, 5)
        alice = make_user(1, "alice", created_at=created)
        source = FakeSource(users=[alice], posts=[make_post(1, alice, created_at=created)])

        _orchestrator(source, store, settings).run()

        with store.session() as session:
            user = session.scalars(select(User)).one()
            gist = session.scalars(select(Gist)).one()
        assert user.created_at.replace(tzinfo=None) == created
        assert gist.created_at.replace(tzinfo=None) == created
        assert gist.updated_at.replace(tzinfo=None) == created

    def test_timestamps_reset_by_default(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        created = dt.datetime(2020, 1, 2, 3, 4, 5)
        alice = make_user(1, "alice", created_at=created)
        source = FakeSource(users=[alice])

        _orchestrator(source, store, settings).run()

        with store.session() as session:
            user = session.scalars(select(User)).one()
        assert user.created_at.replace(tzinfo=None) != created

    def test_links_to_earlier_gists_rewritten(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        alice = make_user(1, "alice")
        first = make_post(1, alice, html_url="https://og.example.com/alice/aaaa")
        second = make_post(2, alice, description="Follow-up to https://og.example.com/alice/aaaa")
        source = FakeSource(users=[alice], posts=[first, second])

        result = _orchestrator(source, store, settings).run()

        new_id = result.id_mapping["post"]["1"]
        with store.session() as session:
            description = session.scalars(select(Gist.description).where(Gist.import_id == "2")).one()
        assert description == f"Follow-up to {BASE_URL}/u/alice/{new_id}"

    def test_rate_limited_page_is_retried(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        clock = FakeClock()
        alice = make_user("alice", "alice")
        source = FakeSource(SourceKind.GITHUB, users=[alice], posts=[make_post("ab12", alice)])
        source.rate_limited_calls = 1

        result = _orchestrator(source, store, _github_settings(settings), rate_limiter=quiet_limiter(source, clock)).run()

        assert result.posts_imported == 1
        assert result.error_count == 0
        assert clock.sleeps == [60.0]

    def test_persistent_rate_limit_is_fatal(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        alice = make_user("alice", "alice")
        source = FakeSource(SourceKind.GITHUB, users=[alice], posts=[make_post("ab12", alice)])
        source.rate_limited_calls = 100

        with pytest.raises(SourceConnectionError, match="Rate limit still exhausted"):
            _orchestrator(source, store, _github_settings(settings)).run()


@pytest.mark.unit
class TestKeysStage:
    def test_keys_counted_and_unmapped_owner_skipped(
        self, store: SqlAlchemyStore, settings: MigrationSettings
    ) -> None:
        settings = dataclasses.replace(settings, migrate_keys=True)
        keys = [
            SourceKey(source_id="k1", owner_id=1, title="laptop"),
            SourceKey(source_id="k2", owner_id=42, title="orphan"),
        ]
        source = FakeSource(users=[make_user(1, "alice")], keys=keys)

        result = _orchestrator(source, store, settings).run()

        assert result.keys_imported == 1
        assert result.skipped_ids(EntityKind.KEY) == ["k2"]
        assert result.errors[0].entity is EntityKind.KEY

    def test_keys_ignored_unless_enabled(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        source = FakeSource(users=[make_user(1, "alice")], keys=[SourceKey(source_id="k1", owner_id=1, title="x")])

        result = _orchestrator(source, store, settings).run()

        assert result.keys_imported == 0
        assert not any(call == "list_keys" for call, _ in source.calls)


@pytest.mark.unit
class TestCommentsStage:
    def _source(self) -> FakeSource:
        alice, bob = make_user("alice", "alice"), make_user("bob", "bob")
        post = make_post("abc1", alice, html_url="https://gist.github.com/alice/abc1")
        comments = {
            "abc1": [
                SourceComment(
                    source_id=501,
                    post_id="abc1",
                    author=bob,
                    body="Nice, see https://gist.github.com/alice/abc1",
                ),
                SourceComment(source_id=502, post_id="abc1", author=alice, body="thanks"),
            ]
        }
        return FakeSource(SourceKind.GITHUB, users=[alice], posts=[post], comments=comments)

    def test_comments_import_creates_authors_and_rewrites_links(
        self, store: SqlAlchemyStore, settings: MigrationSettings
    ) -> None:
        source = self._source()

        result = _orchestrator(source, store, _github_settings(settings, import_comments=True)).run()

        assert result.comments_imported == 2
        assert result.users_imported == 2
        new_id = result.id_mapping["post"]["abc1"]
        with store.session() as session:
            bodies = sorted(session.scalars(select(GistComment.body)))
            usernames = sorted(session.scalars(select(User.username)))
        assert bodies == [f"Nice, see {BASE_URL}/u/alice/{new_id}", "thanks"]
        assert usernames == ["alice", "bob"]

    def test_comments_skipped_unless_enabled(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        source = self._source()

        result = _orchestrator(source, store, _github_settings(settings)).run()

        assert result.comments_imported == 0
        assert not any(call == "list_comments" for call, _ in source.calls)

    def test_failed_comment_listing_is_reported_as_skipped(
        self, store: SqlAlchemyStore, settings: MigrationSettings
    ) -> None:
        class BrokenCommentsSource(FakeSource):
            def list_comments(self, post_id: int | str) -> list[SourceComment]:
                if str(post_id) == "def2":
                    msg = f"Failed to list comments of gist {post_id}"
                    raise ItemFetchError(msg)
                return super().list_comments(post_id)

        alice = make_user("alice", "alice")
        posts = [make_post("abc1", alice), make_post("def2", alice)]
        comments = {"abc1": [SourceComment(source_id=501, post_id="abc1", author=alice, body="first")]}
        source = BrokenCommentsSource(SourceKind.GITHUB, users=[alice], posts=posts, comments=comments)

        result = _orchestrator(source, store, _github_settings(settings, import_comments=True)).run()

        assert result.comments_imported == 1
        assert result.skipped_ids(EntityKind.COMMENT) == ["post:def2"]
        assert [(e.entity, e.source_id) for e in result.errors] == [(EntityKind.COMMENT, "def2")]
        assert result.skipped_count == 1


@pytest.mark.unit
class TestStarsStage:
    def test_stars_need_both_endpoints(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        alice, bob = make_user(1, "alice"), make_user(2, "bob")
        stars = [
            SourceStar(user_id=2, post_id=10),
            SourceStar(user_id=77, post_id=10),
            SourceStar(user_id=1, post_id=404),
        ]
        source = FakeSource(users=[alice, bob], posts=[make_post(10, alice)], stars=stars)

        result = _orchestrator(source, store, settings).run()

        assert result.stars_imported == 1
        assert result.error_count == 0
        assert result.skipped_ids(EntityKind.STAR) == []
        assert _count(store, GistStar) == 1


@pytest.mark.unit
class TestDryRun:
    def test_dry_run_writes_nothing_and_filters_private(
        self, store: SqlAlchemyStore, settings: MigrationSettings
    ) -> None:
        alice = make_user(1, "alice")
        posts = [
            make_post(i, alice, visibility=Visibility.PRIVATE if i in (2, 5, 8) else Visibility.PUBLIC)
            for i in range(1, 11)
        ]
        source = FakeSource(users=[alice], posts=posts)

        result = _orchestrator(source, store, settings).run(dry_run=True)

        assert result.dry_run
        assert result.dry_run_summary()["posts_to_migrate"] == 7
        assert result.posts_filtered == 3
        assert _count(store, User) == 0
        assert _count(store, Gist) == 0

    def test_dry_run_counts_match_live_run(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        def build_source() -> FakeSource:
            alice, bob = make_user("alice", "alice"), make_user("bob", "bob")
            posts = [
                make_post("aa01", alice, files=[("a.py", "1"), ("b.sh", "2")]),
                make_post("aa02", alice, visibility=Visibility.PRIVATE),
                make_post("aa03", make_user("zed", "zed")),
            ]
            comments = {"aa01": [SourceComment(source_id=1, post_id="aa01", author=bob, body="hi")]}
            return FakeSource(
                SourceKind.GITHUB,
                users=[alice],
                posts=posts,
                comments=comments,
                stars=[SourceStar(user_id="alice", post_id="aa01")],
                keys=[SourceKey(source_id=1, owner_id="alice", title="k")],
            )

        run_settings = _github_settings(settings, import_comments=True, migrate_keys=True, reset_passwords=True)

        dry = _orchestrator(build_source(), store, run_settings).run(dry_run=True)
        live = _orchestrator(build_source(), store, run_settings).run()

        assert dry.counts() == live.counts()
        assert dry.skipped == live.skipped
        assert dry.generated_passwords == {}
        assert live.comments_imported == 1
        assert live.stars_imported == 1


@pytest.mark.unit
class TestCancellationAndFailures:
    def test_cancel_before_run_creates_nothing(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        event = threading.Event()
        event.set()
        source = FakeSource(users=[make_user(1, "alice")])

        result = _orchestrator(source, store, settings, cancel_event=event).run()

        assert result.cancelled
        assert _count(store, User) == 0

    def test_cancel_mid_run_keeps_created_entities(
        self, store: SqlAlchemyStore, settings: MigrationSettings
    ) -> None:
        event = threading.Event()

        class CancelAfterFirstUser(RecordingProgress):
            def report(self, message: str, current: int, total: int) -> None:
                super().report(message, current, total)
                event.set()

        alice = make_user(1, "alice")
        users = [alice, make_user(2, "bob"), make_user(3, "carol")]
        source = FakeSource(users=users, posts=[make_post(1, alice)])

        result = _orchestrator(source, store, settings, cancel_event=event, progress=CancelAfterFirstUser()).run()

        assert result.cancelled
        # The first page (batch_size=2) completes, the next page fetch observes the flag
        assert result.users_imported == 2
        assert result.posts_imported == 0
        assert _count(store, User) == 2

    def test_schema_error_is_fatal_and_recorded(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        source = FakeSource(users=[make_user(1, "alice")])
        source.validate_error = SchemaValidationError("Not an OpenGist database, missing tables: likes")
        orchestrator = _orchestrator(source, store, settings)

        with pytest.raises(SchemaValidationError):
            orchestrator.run()

        assert orchestrator.result.errors[0].kind == "SchemaValidationError"
        assert _count(store, User) == 0

    def test_persist_error_on_user_is_recoverable(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        # The same handle twice under different source ids violates the unique constraint
        source = FakeSource(users=[make_user(1, "alice"), make_user(2, "alice"), make_user(3, "bob")])
        store_find = store.find_user_id

        def find_user_id(username: str) -> str | None:
            return None if username == "alice" else store_find(username)

        store.find_user_id = find_user_id  # type: ignore[method-assign]

        result = _orchestrator(source, store, settings).run()

        assert result.users_imported == 2
        assert result.skipped_ids(EntityKind.USER) == ["2"]
        assert result.errors[0].kind == "ItemPersistError"


class OverlappingPagesSource(FakeSource):
    """Pages overlap by one post, as offset pagination does when a row is inserted mid-run."""

    def list_posts(self, owner: str, page: int, page_size: int) -> list[SourcePost]:
        self.calls.append(("list_posts", page))
        start = (page - 1) * (page_size - 1)
        window = self.posts[start : start + page_size] if start < len(self.posts) - 1 else []
        return [dataclasses.replace(p, files=()) for p in window]


@pytest.mark.unit
class TestRepeatedItems:
    def test_post_listed_twice_is_created_once(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        alice = make_user(1, "alice")
        source = OverlappingPagesSource(users=[alice], posts=[make_post(i, alice) for i in (10, 11, 12)])

        result = _orchestrator(source, store, settings).run()

        assert [page for call, page in source.calls if call == "list_posts"] == [1, 2, 3]
        assert result.posts_imported == 3
        assert result.error_count == 0
        assert not result.cancelled
        assert _count(store, Gist) == 3
        with store.session() as session:
            assert sorted(session.scalars(select(Gist.import_id))) == ["10", "11", "12"]

    def test_star_listed_twice_is_created_once(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        alice = make_user(1, "alice")
        stars = [SourceStar(user_id=1, post_id=10), SourceStar(user_id=1, post_id=10)]
        source = FakeSource(users=[alice], posts=[make_post(10, alice)], stars=stars)

        result = _orchestrator(source, store, settings).run()

        assert result.stars_imported == 1
        assert result.error_count == 0
        assert _count(store, GistStar) == 1

    def test_mapping_conflict_is_recoverable(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        alice = make_user(1, "alice")
        source = FakeSource(users=[alice], posts=[make_post(10, alice), make_post(11, alice)])
        orchestrator = _orchestrator(source, store, settings)
        orchestrator.mapper.record(EntityKind.FILE, "10/main.py", "already-taken")

        result = orchestrator.run()

        assert result.skipped_ids(EntityKind.POST) == ["10"]
        assert [error.kind for error in result.errors] == ["MappingConflictError"]
        assert "11" in result.id_mapping["post"]
