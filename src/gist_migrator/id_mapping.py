"""
Source id -> target id tables, built up while entities are created.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict

from .exceptions import MappingConflictError
from .models import EntityKind

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)


class EntityMapper:
    """Holds one mapping table per entity kind.

    Source ids are normalized to strings so that an OpenGist integer id and
    the same id read back from a JSON payload resolve to the same entry.
    A dependent entity may only be created once its owner resolves here.
    """

    def __init__(self) -> None:
        self._tables: defaultdict[EntityKind, dict[str, str]] = defaultdict(dict)
        self._lock = threading.Lock()

    def record(self, kind: EntityKind, source_id: int | str, new_id: str) -> None:
        """Store a mapping entry.

        Recording the same pair twice is a no-op.

        Raises:
            MappingConflictError: If the source id is already mapped to another id
        """
        key = str(source_id)
        with self._lock:
            table = self._tables[kind]
            existing = table.get(key)
            if existing is not None and existing != new_id:
                msg = f"{kind.value} {key} is already mapped to {existing}, refusing to remap to {new_id}"
                raise MappingConflictError(msg)
            table[key] = new_id
        logger.debug(f"Mapped {kind.value} {key} -> {new_id}")

    def resolve(self, kind: EntityKind, source_id: int | str) -> str | None:
        """Return the target id for a source id, or None when it is not mapped."""
        with self._lock:
            return self._tables[kind].get(str(source_id))

    def is_mapped(self, kind: EntityKind, source_id: int | str) -> bool:
        return self.resolve(kind, source_id) is not None

    def count(self, kind: EntityKind) -> int:
        with self._lock:
            return len(self._tables[kind])

    def source_ids(self, kind: EntityKind) -> list[str]:
        """Mapped source ids of a kind, in the order they were recorded."""
        with self._lock:
            return list(self._tables[kind])

    def snapshot(self) -> dict[str, dict[str, str]]:
        """Copy of all tables keyed by entity kind value."""
        with self._lock:
            return {kind.value: dict(table) for kind, table in self._tables.items() if table}
