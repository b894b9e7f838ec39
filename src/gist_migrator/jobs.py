"""In-process registry of migration jobs.

The registry lock is held only to look up or insert entries; every entry has
its own lock, so progress updates of one job never block reads of another.
Callers always receive copies of the job descriptor.
"""

from __future__ import annotations

import copy
import datetime as dt
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .exceptions import JobNotFoundError
from .models import JobKind, JobStatus, SourceKind

if TYPE_CHECKING:
    from collections.abc import Callable
    from concurrent.futures import Future

    from .config import MigrationSettings
    from .result import MigrationResult

logger: logging.Logger = logging.getLogger(__name__)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


@dataclass
class MigrationJob:
    """Descriptor of a migration job as seen by callers polling its status."""

    id: str
    kind: JobKind
    source_kind: SourceKind
    status: JobStatus
    source_url: str
    source_username: str
    started_at: dt.datetime
    settings: dict[str, Any] = field(default_factory=dict)
    total: int = 0  # Items expected in the current stage, 0 when unknown
    processed: int = 0  # Items processed in the current stage
    imported: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    current_operation: str = ""
    completed_at: dt.datetime | None = None
    elapsed_seconds: float = 0.0
    result: dict[str, Any] | None = None

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "source_kind": self.source_kind.value,
            "status": self.status.value,
            "source_url": self.source_url,
            "source_username": self.source_username,
            "total": self.total,
            "processed": self.processed,
            "imported": self.imported,
            "skipped": self.skipped,
            "error_count": self.error_count,
            "errors": list(self.errors),
            "current_operation": self.current_operation,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "elapsed_seconds": self.elapsed_seconds,
            "settings": dict(self.settings),
            "result": self.result,
        }


class _JobEntry:
    def __init__(self, job: MigrationJob) -> None:
        self.job = job
        self.lock = threading.Lock()
        self.cancel_event = threading.Event()
        self.future: Future[Any] | None = None


class JobProgressSink:
    """ProgressSink writing into one registry entry."""

    def __init__(self, registry: JobRegistry, job_id: str) -> None:
        self._registry = registry
        self.job_id = job_id

    def report(self, message: str, current: int, total: int) -> None:
        self._registry.update_progress(self.job_id, message, current, total)


@dataclass(frozen=True)
class JobHandle:
    """Returned by MigrationService.start(); the task itself runs in the background."""

    job_id: str
    future: Future[Any]

    def done(self) -> bool:
        return self.future.done()

    def wait(self, timeout: float | None = None) -> MigrationResult | None:
        """Block until the task finished and return its result, None when it failed early."""
        return self.future.result(timeout=timeout)


class JobRegistry:
    """Concurrency-safe table of job descriptors.

    Status transitions: starting -> running -> completed | failed | cancelled,
    with cancelled also reachable from starting. Terminal states never change.
    """

    def __init__(self, clock: Callable[[], dt.datetime] = _utcnow) -> None:
        self._clock = clock
        self._entries: dict[str, _JobEntry] = {}
        self._lock = threading.Lock()

    def create_job(self, settings: MigrationSettings) -> str:
        job_id = str(uuid.uuid4())
        job = MigrationJob(
            id=job_id,
            kind=JobKind.for_source(settings.source_kind),
            source_kind=settings.source_kind,
            status=JobStatus.STARTING,
            source_url=settings.effective_source_url,
            source_username=settings.username,
            started_at=self._clock(),
            settings=settings.snapshot(),
            current_operation="Initializing migration...",
        )
        with self._lock:
            self._entries[job_id] = _JobEntry(job)
        logger.info(f"Created {job.kind.value} job {job_id} for {job.source_kind.value}")
        return job_id

    def get_job(self, job_id: str) -> MigrationJob:
        entry = self._entry(job_id)
        with entry.lock:
            return copy.deepcopy(entry.job)

    def list_jobs(self) -> list[MigrationJob]:
        """All jobs, newest first."""
        with self._lock:
            entries = list(self._entries.values())
        snapshots = []
        for entry in entries:
            with entry.lock:
                snapshots.append(copy.deepcopy(entry.job))
        # Insertion order breaks ties between jobs started within the same clock tick
        ordered = list(reversed(snapshots))
        ordered.sort(key=lambda job: job.started_at, reverse=True)
        return ordered

    def mark_running(self, job_id: str) -> bool:
        """Move a job from starting to running. Returns False if it left starting already."""
        entry = self._entry(job_id)
        with entry.lock:
            if entry.job.status is not JobStatus.STARTING:
                return False
            entry.job.status = JobStatus.RUNNING
            entry.job.current_operation = "Setting up migration..."
            return True

    def update_progress(self, job_id: str, message: str, current: int, total: int) -> bool:
        """Record progress. Ignored once the job reached a terminal state."""
        entry = self._entry(job_id)
        with entry.lock:
            job = entry.job
            if job.status.is_terminal:
                return False
            job.current_operation = message
            job.processed = current
            job.total = total
            job.elapsed_seconds = (self._clock() - job.started_at).total_seconds()
            return True

    def cancel(self, job_id: str) -> bool:
        """Request cancellation.

        Only starting and running jobs can be cancelled; the task stops at its
        next checkpoint. Returns False for jobs already in a terminal state.
        """
        entry = self._entry(job_id)
        with entry.lock:
            job = entry.job
            if job.status.is_terminal:
                return False
            job.status = JobStatus.CANCELLED
            job.completed_at = self._clock()
            job.elapsed_seconds = (job.completed_at - job.started_at).total_seconds()
            job.current_operation = "Migration cancelled by user"
            entry.cancel_event.set()
        logger.info(f"Cancellation requested for job {job_id}")
        return True

    def finish(self, job_id: str, result: MigrationResult | None, *, error: str | None = None) -> MigrationJob:
        """Record the outcome of the task and move the job to its terminal state.

        A job cancelled while running keeps the cancelled status and its
        original end time; only the counters of what was done are added.
        """
        entry = self._entry(job_id)
        with entry.lock:
            job = entry.job
            if job.status in (JobStatus.COMPLETED, JobStatus.FAILED):
                return copy.deepcopy(job)

            if result is not None:
                job.imported = result.items_imported
                job.skipped = result.skipped_count
                job.errors.extend(f"[{e.kind}] {e.message}" for e in result.errors)
                job.result = result.to_dict()
            if error is not None and (result is None or error not in {e.message for e in result.errors}):
                job.errors.append(error)

            if job.status is not JobStatus.CANCELLED:
                now = self._clock()
                job.completed_at = now
                job.elapsed_seconds = (now - job.started_at).total_seconds()
                if error is not None:
                    job.status = JobStatus.FAILED
                    job.current_operation = f"Migration failed: {error}"
                elif result is not None and result.cancelled:
                    job.status = JobStatus.CANCELLED
                    job.current_operation = "Migration cancelled"
                else:
                    job.status = JobStatus.COMPLETED
                    job.current_operation = "Migration completed successfully"
            return copy.deepcopy(job)

    def append_error(self, job_id: str, message: str) -> None:
        """Add an error message; allowed on terminal jobs since it does not change state."""
        entry = self._entry(job_id)
        with entry.lock:
            entry.job.errors.append(message)

    def cancel_event(self, job_id: str) -> threading.Event:
        return self._entry(job_id).cancel_event

    def attach_future(self, job_id: str, future: Future[Any]) -> None:
        entry = self._entry(job_id)
        with entry.lock:
            entry.future = future

    def future(self, job_id: str) -> Future[Any] | None:
        entry = self._entry(job_id)
        with entry.lock:
            return entry.future

    def progress_sink(self, job_id: str) -> JobProgressSink:
        self._entry(job_id)
        return JobProgressSink(self, job_id)

    def _entry(self, job_id: str) -> _JobEntry:
        with self._lock:
            entry = self._entries.get(job_id)
        if entry is None:
            raise JobNotFoundError(job_id)
        return entry
