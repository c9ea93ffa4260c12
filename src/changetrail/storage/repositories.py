"""Abstract repository interfaces for ChangeTrail storage.

Triggers are the writers; these interfaces cover reading history back and
the few maintenance writes an in-process caller needs. No SQLAlchemy
imports here -- pure abstract contracts.

Concrete implementations are in sqlite.py.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from changetrail.storage.schema import ChangeLogRow, ChangeRow


class ChangeRepository(ABC):
    """Abstract interface for change record storage."""

    @abstractmethod
    def list_changes(
        self,
        entity: str | None = None,
        entity_key: str | None = None,
        *,
        attribute: str | None = None,
        modification: str | None = None,
        root_entity: str | None = None,
        root_entity_key: str | None = None,
        limit: int | None = None,
    ) -> Sequence[ChangeRow]:
        """Change records matching every given filter, oldest first.

        Records of one write share a timestamp, so ties are broken by
        insertion order.
        """
        ...

    @abstractmethod
    def count(self, entity: str | None = None, entity_key: str | None = None) -> int:
        """Number of change records, optionally for one entity (and key)."""
        ...

    @abstractmethod
    def save(self, change: ChangeRow) -> None:
        """Append a change record written in-process rather than by a trigger."""
        ...

    @abstractmethod
    def delete_for(self, entity: str, entity_key: str) -> int:
        """Remove every change record of one row. Returns the number removed."""
        ...


class ChangeLogRepository(ABC):
    """Abstract interface for change-log header storage."""

    @abstractmethod
    def get(self, change_log_id: str) -> ChangeLogRow | None:
        """Get a header by id. Returns None if not found."""
        ...

    @abstractmethod
    def list_change_logs(
        self, entity: str | None = None, entity_key: str | None = None
    ) -> Sequence[ChangeLogRow]:
        """Headers, optionally for one entity (and key), oldest first."""
        ...
