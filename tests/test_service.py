"""
Tests for the background job service.
"""

import pytest
from conftest import FakeSource, make_post, make_user

from gist_migrator.config import AppConfig, MigrationSettings
from gist_migrator.exceptions import JobNotFoundError, SchemaValidationError, SourceConnectionError
from gist_migrator.models import JobStatus, SourceKind, Visibility
from gist_migrator.service import MigrationService, dry_run_warnings
from gist_migrator.store import SqlAlchemyStore

CONFIG = AppConfig(database_url="sqlite://", base_url="https://gists.example.com", max_jobs=2)


def _source() -> FakeSource:
    alice = make_user(1, "alice")
    return FakeSource(
        users=[alice],
        posts=[make_post(10, alice), make_post(11, alice, visibility=Visibility.PRIVATE)],
    )


def _service(store: SqlAlchemyStore, source: FakeSource) -> MigrationService:
    return MigrationService(store, config=CONFIG, source_factory=lambda _settings: source)


@pytest.mark.unit
class TestStart:
    def test_job_completes_and_summary_is_persisted(
        self, store: SqlAlchemyStore, settings: MigrationSettings
    ) -> None:
        source = _source()
        service = _service(store, source)

        handle = service.start(settings)
        result = handle.wait(timeout=30)
        service.shutdown()

        assert result is not None
        assert result.posts_imported == 1
        assert result.posts_filtered == 1
        job = service.status(handle.job_id)
        assert job.status is JobStatus.COMPLETED
        assert job.imported == 2
        assert source.closed

        summary = service.summary(handle.job_id)
        assert summary is not None
        assert summary["status"] == "completed"
        assert summary["type"] == "legacy-migration"
        assert summary["items_processed"] == 2
        assert summary["result"]["posts_imported"] == 1
        assert summary["result"]["posts_filtered"] == 1

    def test_fatal_source_error_fails_job(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        source = _source()
        source.validate_error = SchemaValidationError("Not an OpenGist database, missing tables: likes")
        service = _service(store, source)

        handle = service.start(settings)
        handle.wait(timeout=30)
        service.shutdown()

        job = service.status(handle.job_id)
        assert job.status is JobStatus.FAILED
        assert "missing tables: likes" in job.errors[-1]
        assert source.closed
        summary = service.summary(handle.job_id)
        assert summary is not None
        assert summary["status"] == "failed"

    def test_failing_source_factory_fails_job(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        def factory(_settings: MigrationSettings) -> FakeSource:
            msg = "GitHub API token is required"
            raise SourceConnectionError(msg)

        service = MigrationService(store, config=CONFIG, source_factory=factory)

        handle = service.start(settings)
        assert handle.wait(timeout=30) is None
        service.shutdown()

        job = service.status(handle.job_id)
        assert job.status is JobStatus.FAILED
        assert job.errors == ["GitHub API token is required"]

    def test_jobs_lists_all_jobs(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        service = _service(store, _source())

        first = service.start(settings)
        first.wait(timeout=30)
        second = service.start(settings)
        second.wait(timeout=30)
        service.shutdown()

        assert {job.id for job in service.jobs()} == {first.job_id, second.job_id}


@pytest.mark.unit
class TestStatusAndCancel:
    def test_unknown_job(self, store: SqlAlchemyStore) -> None:
        service = _service(store, _source())

        with pytest.raises(JobNotFoundError):
            service.status("missing")
        with pytest.raises(JobNotFoundError):
            service.cancel("missing")
        service.shutdown()

    def test_cancel_finished_job_keeps_status(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        service = _service(store, _source())
        handle = service.start(settings)
        handle.wait(timeout=30)

        job = service.cancel(handle.job_id)
        service.shutdown()

        assert job.status is JobStatus.COMPLETED


@pytest.mark.unit
class TestDryRun:
    def test_preview_writes_nothing(self, store: SqlAlchemyStore, settings: MigrationSettings) -> None:
        source = _source()
        service = _service(store, source)

        preview = service.dry_run(settings)
        service.shutdown()

        assert preview["dry_run"] is True
        assert preview["source_kind"] == "opengist"
        assert preview["summary"]["users_to_migrate"] == 1
        assert preview["summary"]["posts_to_migrate"] == 1
        assert preview["posts_filtered"] == 1
        assert "Private gists will be skipped" in preview["warnings"]
        assert store.find_user_id("alice") is None
        assert source.closed

    def test_warnings_follow_settings(self) -> None:
        settings = MigrationSettings(
            source_kind=SourceKind.GITHUB,
            reset_passwords=True,
            migrate_private_items=True,
            migrate_keys=True,
        )

        warnings = dry_run_warnings(settings)

        assert len(warnings) == 2
        assert warnings[0].startswith("All user passwords will be reset")
        assert "SSH keys" in warnings[1]
