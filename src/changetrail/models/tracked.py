"""Tracked-entity snapshots produced by the schema analyzer.

Everything here is an immutable dataclass computed once per schema load or
regeneration. Generators never see the raw schema model, only these.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional


class RelationshipKind(str, enum.Enum):
    """How a tracked attribute relates to another entity."""

    NONE = "none"
    REFERENCE = "reference"
    OWNED_SUBRECORD = "owned_subrecord"


class ChangeOperation(str, enum.Enum):
    """Row operation a change record describes."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ArtifactKind(str, enum.Enum):
    """Install mechanism for a generated artifact; the value is its file suffix."""

    SQL = ".sql"
    HDBTRIGGER = ".hdbtrigger"
    HDBPROCEDURE = ".hdbprocedure"


class RootBindingKind(str, enum.Enum):
    DIRECT = "direct"
    BACK_REFERENCE = "back_reference"


@dataclass(frozen=True)
class PathHop:
    """One relationship traversal in a resolved path.

    ``pairs`` holds ``(target_column, source_column)`` equalities joining the
    reached entity to the entity the hop started from.
    """

    relationship: str
    target: str
    pairs: tuple[tuple[str, str], ...]


@dataclass(frozen=True)
class ResolvedPath:
    """An annotation path resolved against the schema.

    ``column`` is the physical column read on the last entity of the chain,
    or on the tracked row itself when ``hops`` is empty.
    """

    path: str
    hops: tuple[PathHop, ...]
    column: str
    computed: bool = False
    texts_entity: Optional[str] = None

    @property
    def is_local(self) -> bool:
        return not self.hops

    @property
    def target(self) -> Optional[str]:
        return self.hops[-1].target if self.hops else None


@dataclass(frozen=True)
class ObjectIdentifierField:
    """One fragment of a human-readable object identifier."""

    field_path: str
    is_locally_stored: bool
    resolved: ResolvedPath


@dataclass(frozen=True)
class ObjectIdentifierSpec:
    """Ordered identifier fragments, in declared annotation order."""

    fields: tuple[ObjectIdentifierField, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.fields)

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(f.field_path for f in self.fields)


@dataclass(frozen=True)
class RootBinding:
    """How a composition child finds its owning root row.

    ``pairs`` holds ``(root_column, child_column)`` equalities. For a direct
    binding the root columns are the root's primary keys and the child
    columns hold the foreign key. For a back-reference binding the root
    holds the link and the child columns are the child's own primary key.
    """

    kind: RootBindingKind
    pairs: tuple[tuple[str, str], ...]

    @property
    def child_columns(self) -> tuple[str, ...]:
        return tuple(child for _, child in self.pairs)


@dataclass(frozen=True)
class RootReference:
    """The owning root of a tracked entity, with everything needed to describe it."""

    entity: str
    primary_keys: tuple[str, ...]
    object_identifier: ObjectIdentifierSpec
    binding: RootBinding


@dataclass(frozen=True)
class TrackedAttribute:
    """A single tracked element of an entity.

    A reference-kind attribute has exactly one of ``foreign_key_fields``
    (managed) or ``on_condition_fields`` (unmanaged) non-empty.
    """

    name: str
    declared_type: str
    relationship_kind: RelationshipKind = RelationshipKind.NONE
    target: Optional[str] = None
    foreign_key_fields: tuple[str, ...] = ()
    on_condition_fields: tuple[str, ...] = ()
    label_paths: tuple[ResolvedPath, ...] = ()

    @property
    def is_relationship(self) -> bool:
        return self.relationship_kind is not RelationshipKind.NONE

    @property
    def source_columns(self) -> tuple[str, ...]:
        """Physical columns of the tracked row this attribute reads."""
        if self.foreign_key_fields:
            return tuple(f"{self.name}_{fk}" for fk in self.foreign_key_fields)
        if self.on_condition_fields:
            return self.on_condition_fields
        return (self.name,)

    @property
    def label_path_segments(self) -> tuple[tuple[str, ...], ...]:
        return tuple(tuple(p.path.split(".")) for p in self.label_paths)


@dataclass(frozen=True)
class CompositionOfMany:
    """A to-many composition, tracked through its own trigger set on the target table."""

    name: str
    target: str
    target_primary_keys: tuple[str, ...]
    object_identifier: ObjectIdentifierSpec
    binding: RootBinding

    @property
    def foreign_key_columns(self) -> tuple[str, ...]:
        return self.binding.child_columns


@dataclass(frozen=True)
class TrackedEntity:
    """Immutable snapshot of everything the generators need for one entity."""

    name: str
    primary_keys: tuple[str, ...]
    attributes: tuple[TrackedAttribute, ...] = ()
    compositions_of_many: tuple[CompositionOfMany, ...] = ()
    object_identifier: ObjectIdentifierSpec = field(default_factory=ObjectIdentifierSpec)
    root: Optional[RootReference] = None
    service_entity: Optional[str] = None

    @property
    def root_binding(self) -> Optional[RootBinding]:
        return self.root.binding if self.root else None

    @property
    def tracked_columns(self) -> tuple[str, ...]:
        columns: list[str] = []
        for attribute in self.attributes:
            for column in attribute.source_columns:
                if column not in columns:
                    columns.append(column)
        return tuple(columns)

    @property
    def needs_triggers(self) -> bool:
        return bool(self.primary_keys) and bool(self.attributes or self.compositions_of_many)


@dataclass(frozen=True)
class GeneratedTrigger:
    """One generated source artifact, ready for the deployment collaborator."""

    name: str
    source_text: str
    artifact_kind: ArtifactKind = ArtifactKind.SQL
    entity: Optional[str] = None
    operations: tuple[ChangeOperation, ...] = ()

    @property
    def file_name(self) -> str:
        return f"{self.name}{self.artifact_kind.value}"
