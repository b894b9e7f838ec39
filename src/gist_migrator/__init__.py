"""
Gist Migration Engine

Migrates gists, files, comments and stars from an OpenGist instance, GitHub
Gists or GitLab snippets into a gist store, preserving ownership and
rewriting links to the old system.
"""

from __future__ import annotations

from .cli import main
from .config import AppConfig, MigrationSettings
from .exceptions import (
    ItemFetchError,
    ItemPersistError,
    JobNotFoundError,
    MigrationError,
    SchemaValidationError,
    SettingsError,
    SourceConnectionError,
)
from .jobs import JobRegistry, MigrationJob
from .models import JobStatus, SourceKind
from .orchestrator import MigrationOrchestrator
from .result import MigrationResult
from .service import MigrationService
from .sources import create_source
from .store import DryRunStore, SqlAlchemyStore
from .utils import setup_logging

# Package version
__version__ = "0.1.0"

__all__ = [
    "AppConfig",
    "DryRunStore",
    "ItemFetchError",
    "ItemPersistError",
    "JobNotFoundError",
    "JobRegistry",
    "JobStatus",
    "MigrationError",
    "MigrationJob",
    "MigrationOrchestrator",
    "MigrationResult",
    "MigrationService",
    "MigrationSettings",
    "SchemaValidationError",
    "SettingsError",
    "SourceConnectionError",
    "SourceKind",
    "SqlAlchemyStore",
    "create_source",
    "main",
    "setup_logging",
]
