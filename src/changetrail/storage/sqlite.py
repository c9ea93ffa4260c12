"""SQLite implementations of repository interfaces.

All repositories use SQLAlchemy 2.0-style queries (select() + session.execute()).
Each repository takes a Session in its constructor.
"""

from __future__ import annotations

from typing import Sequence

from sqlalchemy import delete, func, literal_column, select
from sqlalchemy.orm import Session

from changetrail.storage.repositories import ChangeLogRepository, ChangeRepository
from changetrail.storage.schema import ChangeLogRow, ChangeRow


class SqliteChangeRepository(ChangeRepository):
    """SQLite implementation of change record repository."""

    def __init__(self, session: Session) -> None:
        self._session = session

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
        stmt = select(ChangeRow)
        filters = {
            ChangeRow.entity: entity,
            ChangeRow.entity_key: entity_key,
            ChangeRow.attribute: attribute,
            ChangeRow.modification: modification,
            ChangeRow.root_entity: root_entity,
            ChangeRow.root_entity_key: root_entity_key,
        }
        for column, value in filters.items():
            if value is not None:
                stmt = stmt.where(column == value)
        # rowid keeps trigger insertion order within one timestamp
        stmt = stmt.order_by(ChangeRow.created_at, literal_column("rowid"))
        if limit is not None:
            stmt = stmt.limit(limit)
        return self._session.execute(stmt).scalars().all()

    def count(self, entity: str | None = None, entity_key: str | None = None) -> int:
        stmt = select(func.count()).select_from(ChangeRow)
        if entity is not None:
            stmt = stmt.where(ChangeRow.entity == entity)
        if entity_key is not None:
            stmt = stmt.where(ChangeRow.entity_key == entity_key)
        return self._session.execute(stmt).scalar_one()

    def save(self, change: ChangeRow) -> None:
        self._session.add(change)
        self._session.flush()

    def delete_for(self, entity: str, entity_key: str) -> int:
        result = self._session.execute(
            delete(ChangeRow).where(
                ChangeRow.entity == entity, ChangeRow.entity_key == entity_key
            )
        )
        self._session.flush()
        return result.rowcount


class SqliteChangeLogRepository(ChangeLogRepository):
    """SQLite implementation of change-log header repository."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, change_log_id: str) -> ChangeLogRow | None:
        stmt = select(ChangeLogRow).where(ChangeLogRow.id == change_log_id)
        return self._session.execute(stmt).scalar_one_or_none()

    def list_change_logs(
        self, entity: str | None = None, entity_key: str | None = None
    ) -> Sequence[ChangeLogRow]:
        stmt = select(ChangeLogRow)
        if entity is not None:
            stmt = stmt.where(ChangeLogRow.entity == entity)
        if entity_key is not None:
            stmt = stmt.where(ChangeLogRow.entity_key == entity_key)
        stmt = stmt.order_by(ChangeLogRow.created_at, literal_column("rowid"))
        return self._session.execute(stmt).scalars().all()
