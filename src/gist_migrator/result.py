"""Per-run result aggregation and reporting."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .models import EntityKind, SourceKind


@dataclass(frozen=True)
class RecordedError:
    """An error collected during a run. `kind` is the error class name."""

    kind: str
    message: str
    entity: EntityKind | None = None
    source_id: str | None = None

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "entity": self.entity.value if self.entity else None,
            "source_id": self.source_id,
        }


@dataclass
class MigrationResult:
    """Statistics, errors and mappings collected by one pipeline run.

    `generated_passwords` only exists in memory for the caller of a
    password-reset run. It is excluded from repr() and from to_dict() unless
    explicitly requested, and is never written to the target store.
    """

    source_kind: SourceKind
    dry_run: bool = False
    users_imported: int = 0
    users_matched: int = 0  # Already present in the target, mapped instead of created
    keys_imported: int = 0
    posts_imported: int = 0
    posts_filtered: int = 0  # Excluded by the visibility filter
    files_imported: int = 0
    comments_imported: int = 0
    stars_imported: int = 0
    errors: list[RecordedError] = field(default_factory=list)
    skipped: dict[EntityKind, list[str]] = field(default_factory=dict)
    id_mapping: dict[str, dict[str, str]] = field(default_factory=dict)
    duration_seconds: float = 0.0
    passwords_reset: bool = False
    cancelled: bool = False
    generated_passwords: dict[str, str] = field(default_factory=dict, repr=False)

    def record_error(
        self,
        error: Exception | str,
        *,
        entity: EntityKind | None = None,
        source_id: int | str | None = None,
        kind: str | None = None,
    ) -> RecordedError:
        if isinstance(error, Exception):
            recorded = RecordedError(
                kind=kind or type(error).__name__,
                message=str(error),
                entity=entity,
                source_id=None if source_id is None else str(source_id),
            )
        else:
            recorded = RecordedError(
                kind=kind or "MigrationError",
                message=error,
                entity=entity,
                source_id=None if source_id is None else str(source_id),
            )
        self.errors.append(recorded)
        return recorded

    def skip(self, entity: EntityKind, source_id: int | str) -> None:
        self.skipped.setdefault(entity, []).append(str(source_id))

    def skipped_ids(self, entity: EntityKind) -> list[str]:
        return list(self.skipped.get(entity, []))

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def skipped_count(self) -> int:
        return sum(len(ids) for ids in self.skipped.values())

    @property
    def items_imported(self) -> int:
        return self.users_imported + self.posts_imported

    def counts(self) -> dict[str, int]:
        return {
            "users_imported": self.users_imported,
            "users_matched": self.users_matched,
            "keys_imported": self.keys_imported,
            "posts_imported": self.posts_imported,
            "posts_filtered": self.posts_filtered,
            "files_imported": self.files_imported,
            "comments_imported": self.comments_imported,
            "stars_imported": self.stars_imported,
        }

    def to_dict(self, *, include_credentials: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "source_kind": self.source_kind.value,
            "dry_run": self.dry_run,
            **self.counts(),
            "error_count": self.error_count,
            "errors": [error.to_dict() for error in self.errors],
            "skipped": {entity.value: list(ids) for entity, ids in self.skipped.items()},
            "id_mapping": {kind: dict(table) for kind, table in self.id_mapping.items()},
            "duration_seconds": self.duration_seconds,
            "passwords_reset": self.passwords_reset,
            "cancelled": self.cancelled,
        }
        if include_credentials:
            data["generated_passwords"] = dict(self.generated_passwords)
        return data

    def dry_run_summary(self) -> dict[str, int]:
        """Projected counts, named the way the dry-run response reports them."""
        return {
            "users_to_migrate": self.users_imported,
            "users_already_present": self.users_matched,
            "keys_to_migrate": self.keys_imported,
            "posts_to_migrate": self.posts_imported,
            "files_to_migrate": self.files_imported,
            "comments_to_migrate": self.comments_imported,
            "stars_to_migrate": self.stars_imported,
        }

    def format_report(self, *, include_credentials: bool = True) -> str:
        """Render the plain-text migration report."""
        lines = [
            f"{self.source_kind.value} migration report",
            "=" * 40,
            f"Migration {'cancelled' if self.cancelled else 'finished'} in {self.duration_seconds:.0f} seconds",
            "",
            "Summary:",
            "--------",
            f"Users imported:    {self.users_imported}",
            f"Users matched:     {self.users_matched}",
            f"Gists imported:    {self.posts_imported}",
            f"Files imported:    {self.files_imported}",
            f"Comments imported: {self.comments_imported}",
            f"SSH keys counted:  {self.keys_imported}",
            f"Stars imported:    {self.stars_imported}",
            "",
            "Skipped items:",
            "--------------",
        ]
        lines.extend(f"Skipped {entity.value}s: {len(ids)}" for entity, ids in self.skipped.items())
        if not self.skipped:
            lines.append("None")
        lines.extend(["", f"Errors encountered: {self.error_count}"])

        if include_credentials and self.passwords_reset and self.generated_passwords:
            lines.extend(
                [
                    "",
                    "Generated passwords:",
                    "--------------------",
                    "IMPORTANT: Save these passwords securely and distribute them to their users.",
                    "",
                ]
            )
            lines.extend(f"{username:<20} : {password}" for username, password in self.generated_passwords.items())

        if self.errors:
            lines.extend(["", "Errors:", "-------"])
            lines.extend(f"{i}. [{error.kind}] {error.message}" for i, error in enumerate(self.errors, start=1))

        return "\n".join(lines) + "\n"
