"""
Custom exception classes for the gist migration engine.
"""

from __future__ import annotations

import datetime as dt


class MigrationError(Exception):
    """Base exception for migration errors."""


class SettingsError(MigrationError):
    """Raised when migration settings are missing or invalid."""


class SourceConnectionError(MigrationError):
    """Raised when the source is unreachable or rejects the credentials. Fatal."""


class SchemaValidationError(MigrationError):
    """Raised when a direct-storage source does not have the expected tables. Fatal."""


class ItemFetchError(MigrationError):
    """Raised when a single source item cannot be fetched. Recoverable."""


class ItemPersistError(MigrationError):
    """Raised when the target store rejects a single create. Recoverable."""


class RateLimitExceeded(MigrationError):  # noqa: N818
    """Raised by a remote source when its quota runs out in the middle of a fetch.

    Never recorded as an error: the orchestrator waits until `reset_at` and retries.
    """

    def __init__(self, message: str, reset_at: dt.datetime | None = None) -> None:
        super().__init__(message)
        self.reset_at = reset_at


class MappingConflictError(MigrationError):
    """Raised when a source id is mapped twice to different target ids."""


class JobNotFoundError(MigrationError):
    """Raised when a job id is not known to the registry."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Migration job not found: {job_id}")
        self.job_id = job_id


class MigrationCancelled(MigrationError):  # noqa: N818
    """Raised inside a running pipeline once its cancellation flag is observed."""


FATAL_ERRORS: tuple[type[MigrationError], ...] = (SourceConnectionError, SchemaValidationError)
RECOVERABLE_ERRORS: tuple[type[MigrationError], ...] = (ItemFetchError, ItemPersistError, MappingConflictError)
