"""SQLAlchemy ORM schema for the change-tracking storage tables.

Generated triggers write into two fixed tables: the change fact table and
the change-log header table. Their column names are part of the trigger
contract; renaming one means regenerating every trigger.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

CHANGES_TABLE = "changetrail_changes"
CHANGE_LOG_TABLE = "changetrail_change_log"
META_TABLE = "changetrail_meta"

SCHEMA_VERSION = "1"


class Base(DeclarativeBase):
    """Base class for all ChangeTrail ORM models."""

    pass


class ChangeRow(Base):
    """One attribute-level change record."""

    __tablename__ = CHANGES_TABLE

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    attribute: Mapped[str] = mapped_column(String(127), nullable=False)
    value_changed_from: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    value_changed_to: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    value_changed_from_label: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    value_changed_to_label: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    entity: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_key: Mapped[str] = mapped_column(String(5000), nullable=False)
    root_entity: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    root_entity_key: Mapped[Optional[str]] = mapped_column(String(5000), nullable=True)
    object_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    root_object_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    value_data_type: Mapped[Optional[str]] = mapped_column(String(127), nullable=True)
    # create, update or delete
    modification: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    change_log_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    __table_args__ = (
        Index("ix_changetrail_changes_entity_key", "entity", "entity_key"),
        Index("ix_changetrail_changes_root", "root_entity", "root_entity_key"),
    )

    @property
    def display_from(self) -> Optional[str]:
        """The label when one was resolved, else the raw value."""
        return self.value_changed_from_label or self.value_changed_from

    @property
    def display_to(self) -> Optional[str]:
        return self.value_changed_to_label or self.value_changed_to


class ChangeLogRow(Base):
    """Header grouping the change records of one row write."""

    __tablename__ = CHANGE_LOG_TABLE

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    entity: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_key: Mapped[str] = mapped_column(String(5000), nullable=False)
    service_entity: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_changetrail_change_log_entity_key", "entity", "entity_key"),
    )


class ChangeTrailMetaRow(Base):
    """Key-value metadata table. Stores schema_version."""

    __tablename__ = META_TABLE

    key: Mapped[str] = mapped_column(String(50), primary_key=True)
    value: Mapped[str] = mapped_column(String(255), nullable=False)
