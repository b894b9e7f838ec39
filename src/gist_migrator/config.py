"""
Configuration for migration runs and for the hosting process.
"""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Final

from .exceptions import SettingsError
from .models import SourceKind


DEFAULT_BATCH_SIZE: Final[int] = 100
DEFAULT_RATE_LIMIT_DELAY_MS: Final[int] = 100
DEFAULT_GITLAB_URL: Final[str] = "https://gitlab.com"

_DATABASE_URL_ENV_VAR: Final[str] = "GIST_MIGRATOR_DATABASE_URL"
_BASE_URL_ENV_VAR: Final[str] = "GIST_MIGRATOR_BASE_URL"
_MAX_JOBS_ENV_VAR: Final[str] = "GIST_MIGRATOR_MAX_JOBS"

_BOOL_FIELDS: Final[tuple[str, ...]] = (
    "reset_passwords",
    "preserve_timestamps",
    "migrate_keys",
    "migrate_private_items",
    "import_comments",
)

# Never copied into job descriptors or persisted summaries
_SECRET_FIELDS: Final[frozenset[str]] = frozenset({"auth_token"})


@dataclass
class MigrationSettings:
    """Options for one migration run.

    source_url is the SQLAlchemy database URL for OpenGist and the API base URL
    for GitLab; it is ignored for GitHub.
    """

    source_kind: SourceKind
    source_url: str = ""
    auth_token: str | None = None
    token_pass_path: str | None = None
    username: str = ""
    repository_path: str = ""
    source_web_url: str = ""
    reset_passwords: bool = False
    preserve_timestamps: bool = False
    migrate_keys: bool = False
    migrate_private_items: bool = False
    import_comments: bool = False
    batch_size: int = DEFAULT_BATCH_SIZE
    max_items: int | None = None
    rate_limit_delay_ms: int = DEFAULT_RATE_LIMIT_DELAY_MS

    def __post_init__(self) -> None:
        if not isinstance(self.source_kind, SourceKind):
            try:
                self.source_kind = SourceKind(self.source_kind)
            except ValueError as e:
                msg = f"Unsupported source kind: {self.source_kind}"
                raise SettingsError(msg) from e
        self.validate()

    def validate(self) -> None:
        """Check option values and the options required by the source kind."""
        if self.batch_size <= 0:
            msg = f"batch_size must be positive, got {self.batch_size}"
            raise SettingsError(msg)
        if self.max_items is not None and self.max_items <= 0:
            msg = f"max_items must be positive when set, got {self.max_items}"
            raise SettingsError(msg)
        if self.rate_limit_delay_ms < 0:
            msg = f"rate_limit_delay_ms must not be negative, got {self.rate_limit_delay_ms}"
            raise SettingsError(msg)
        if self.source_kind is SourceKind.OPENGIST and not self.source_url:
            msg = "OpenGist migrations require a database URL (source_url)"
            raise SettingsError(msg)

    @property
    def effective_source_url(self) -> str:
        if self.source_kind is SourceKind.GITLAB:
            return self.source_url or DEFAULT_GITLAB_URL
        if self.source_kind is SourceKind.GITHUB:
            return self.source_url or "https://api.github.com"
        return self.source_url

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> MigrationSettings:
        """Build settings from a decoded request body or CLI namespace.

        Unknown keys are rejected so that typos do not silently fall back to defaults.
        """
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            msg = f"Unknown settings: {', '.join(unknown)}"
            raise SettingsError(msg)
        if "source_kind" not in data:
            msg = "source_kind is required"
            raise SettingsError(msg)

        values: dict[str, Any] = dict(data)
        for name in _BOOL_FIELDS:
            if name in values:
                values[name] = _as_bool(name, values[name])
        for name in ("batch_size", "rate_limit_delay_ms", "max_items"):
            if values.get(name) is not None:
                values[name] = _as_int(name, values[name])
        return cls(**values)

    def snapshot(self) -> dict[str, Any]:
        """Settings as a JSON-friendly dict, without secrets."""
        data = dataclasses.asdict(self)
        for name in _SECRET_FIELDS:
            data.pop(name, None)
        data["source_kind"] = self.source_kind.value
        return data


@dataclass(frozen=True)
class AppConfig:
    """Process-level configuration shared by all jobs."""

    database_url: str = "sqlite:///gist_migrator.db"
    base_url: str = "http://localhost:8080"
    max_jobs: int = 4

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> AppConfig:
        env = os.environ if environ is None else environ
        defaults = cls()
        max_jobs_raw = env.get(_MAX_JOBS_ENV_VAR)
        max_jobs = _as_int(_MAX_JOBS_ENV_VAR, max_jobs_raw) if max_jobs_raw else defaults.max_jobs
        if max_jobs <= 0:
            msg = f"{_MAX_JOBS_ENV_VAR} must be positive, got {max_jobs}"
            raise SettingsError(msg)
        return cls(
            database_url=env.get(_DATABASE_URL_ENV_VAR) or defaults.database_url,
            base_url=(env.get(_BASE_URL_ENV_VAR) or defaults.base_url).rstrip("/"),
            max_jobs=max_jobs,
        )


def _as_bool(name: str, value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off", ""):
            return False
    if isinstance(value, int):
        return bool(value)
    msg = f"{name} must be a boolean, got {value!r}"
    raise SettingsError(msg)


def _as_int(name: str, value: object) -> int:
    if isinstance(value, bool):
        msg = f"{name} must be an integer, got {value!r}"
        raise SettingsError(msg)
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as e:
        msg = f"{name} must be an integer, got {value!r}"
        raise SettingsError(msg) from e
