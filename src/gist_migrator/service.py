"""Control-plane operations: start, poll, cancel and preview migrations.

A routing layer (HTTP, CLI) calls into MigrationService; the service never
renders responses itself.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

from .config import AppConfig
from .exceptions import ItemPersistError, MigrationError
from .jobs import JobHandle, JobRegistry
from .models import MigrationSummary
from .orchestrator import MigrationOrchestrator
from .sources import create_source

if TYPE_CHECKING:
    from collections.abc import Callable

    from .config import MigrationSettings
    from .jobs import MigrationJob
    from .protocols import SourceConnector, TargetStore
    from .result import MigrationResult

logger: logging.Logger = logging.getLogger(__name__)


def dry_run_warnings(settings: MigrationSettings) -> list[str]:
    warnings = []
    if settings.reset_passwords:
        warnings.append("All user passwords will be reset and new passwords will be generated")
    if not settings.migrate_private_items:
        warnings.append("Private gists will be skipped")
    if settings.migrate_keys:
        warnings.append("SSH keys are only counted; users have to register their keys again")
    return warnings


class MigrationService:
    """Runs migrations as background jobs.

    Usage:
        store = SqlAlchemyStore.from_url(config.database_url)
        service = MigrationService(store, config=config)
        handle = service.start(settings)
        service.status(handle.job_id)
    """

    def __init__(
        self,
        store: TargetStore,
        *,
        config: AppConfig | None = None,
        registry: JobRegistry | None = None,
        source_factory: Callable[[MigrationSettings], SourceConnector] = create_source,
        orchestrator_factory: Callable[..., MigrationOrchestrator] = MigrationOrchestrator,
    ) -> None:
        self._store = store
        self._config = config or AppConfig()
        self.registry = registry or JobRegistry()
        self._source_factory = source_factory
        self._orchestrator_factory = orchestrator_factory
        self._executor = ThreadPoolExecutor(max_workers=self._config.max_jobs, thread_name_prefix="gist-migration")

    def start(self, settings: MigrationSettings) -> JobHandle:
        """Register a job and run it in the background. Returns immediately."""
        job_id = self.registry.create_job(settings)
        future = self._executor.submit(self._run_job, job_id, settings)
        self.registry.attach_future(job_id, future)
        return JobHandle(job_id=job_id, future=future)

    def status(self, job_id: str) -> MigrationJob:
        """Raises JobNotFoundError for unknown ids."""
        return self.registry.get_job(job_id)

    def jobs(self) -> list[MigrationJob]:
        return self.registry.list_jobs()

    def cancel(self, job_id: str) -> MigrationJob:
        """Request cancellation and return the job's state afterwards.

        Raises:
            JobNotFoundError: If the job id is unknown
        """
        if not self.registry.cancel(job_id):
            logger.info(f"Job {job_id} already finished, nothing to cancel")
        return self.registry.get_job(job_id)

    def dry_run(self, settings: MigrationSettings) -> dict[str, Any]:
        """Preview a migration: projected counts and warnings, nothing written.

        Raises:
            SourceConnectionError: If the source is unreachable or rejects the token
            SchemaValidationError: If a direct-storage source lacks required tables
        """
        source = self._source_factory(settings)
        try:
            orchestrator = self._orchestrator_factory(source, self._store, settings, base_url=self._config.base_url)
            result = orchestrator.run(dry_run=True)
        finally:
            source.close()
        return {
            "dry_run": True,
            "source_kind": settings.source_kind.value,
            "summary": result.dry_run_summary(),
            "posts_filtered": result.posts_filtered,
            "skipped": {entity.value: ids for entity, ids in result.skipped.items()},
            "errors": [error.to_dict() for error in result.errors],
            "warnings": dry_run_warnings(settings),
            "settings": settings.snapshot(),
        }

    def summary(self, job_id: str) -> dict[str, Any] | None:
        """Persisted summary record of a finished job, None when the store has none."""
        get_summary = getattr(self._store, "get_migration_summary", None)
        if get_summary is None:
            return None
        return get_summary(job_id)

    def shutdown(self, *, wait: bool = True, cancel_running: bool = False) -> None:
        if cancel_running:
            for job in self.registry.list_jobs():
                self.registry.cancel(job.id)
        self._executor.shutdown(wait=wait)

    def _run_job(self, job_id: str, settings: MigrationSettings) -> MigrationResult | None:
        result: MigrationResult | None = None
        error: str | None = None
        source: SourceConnector | None = None
        orchestrator: MigrationOrchestrator | None = None
        try:
            if self.registry.mark_running(job_id):
                source = self._source_factory(settings)
                orchestrator = self._orchestrator_factory(
                    source,
                    self._store,
                    settings,
                    base_url=self._config.base_url,
                    progress=self.registry.progress_sink(job_id),
                    cancel_event=self.registry.cancel_event(job_id),
                )
                result = orchestrator.run()
            else:
                logger.info(f"Job {job_id} was cancelled before it started")
        except MigrationError as e:
            error = str(e)
            result = orchestrator.result if orchestrator is not None else None
            logger.error(f"Job {job_id} failed: {e}")
        except Exception as e:
            # Keep the worker thread alive and the job out of the running state
            logger.exception(f"Job {job_id} crashed")
            error = f"Unexpected error: {e}"
            result = orchestrator.result if orchestrator is not None else None
        finally:
            if source is not None:
                source.close()

        job = self.registry.finish(job_id, result, error=error)
        self._save_summary(job, result)
        return result

    def _save_summary(self, job: MigrationJob, result: MigrationResult | None) -> None:
        summary = MigrationSummary(
            job_id=job.id,
            kind=job.kind,
            source_kind=job.source_kind,
            status=job.status,
            source_url=job.source_url,
            source_username=job.source_username,
            items_total=job.imported + job.skipped,
            items_imported=job.imported,
            items_skipped=job.skipped,
            error_count=job.error_count,
            started_at=job.started_at,
            completed_at=job.completed_at,
            settings=job.settings,
            errors=list(job.errors),
            result=result.to_dict() if result is not None else {},
        )
        try:
            self._store.save_migration_summary(summary)
        except ItemPersistError as e:
            msg = f"Failed to save migration summary: {e}"
            logger.error(msg)
            self.registry.append_error(job.id, msg)
