"""Dialect-neutral expression plans.

The planner describes every value a trigger computes as a small tree of
these nodes. Expressions are row-relative: a Column reads from whichever
row (old or new) the renderer is currently rendering for. Conditions decide
whether one change record is emitted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union

from changetrail.models.tracked import ChangeOperation, TrackedAttribute
from changetrail.planning.encoding import IDENTIFIER_SEPARATOR, TypeClass

# ---------------------------------------------------------------------------
# Expressions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Column:
    """A column of the firing row."""

    name: str


@dataclass(frozen=True)
class Const:
    """A text literal, or NULL when value is None."""

    value: Optional[str]


@dataclass(frozen=True)
class Concat:
    """Plain text concatenation of every part with a fixed separator.

    Used for keys, where every part is present.
    """

    parts: tuple[Expr, ...]
    separator: str


@dataclass(frozen=True)
class JoinNonEmpty:
    """Join the non-empty parts with a separator; NULL when all are empty."""

    parts: tuple[Expr, ...]
    separator: str = IDENTIFIER_SEPARATOR


@dataclass(frozen=True)
class Coalesce:
    """First non-NULL part."""

    parts: tuple[Expr, ...]


@dataclass(frozen=True)
class Join:
    """A join step in a lookup. ``on`` pairs are (column here, column on previous table)."""

    entity: str
    on: tuple[tuple[str, str], ...]


@dataclass(frozen=True)
class Lookup:
    """A correlated single-row sub-select.

    Reads ``select`` from the last table of ``entity`` joined through
    ``joins``, where ``entity`` is filtered by ``where`` equalities against
    expressions of the firing row. Several select columns are joined like
    JoinNonEmpty. When ``locale_column`` is set, the last table is also
    filtered to the session locale.
    """

    entity: str
    where: tuple[tuple[str, Expr], ...]
    select: tuple[str, ...]
    joins: tuple[Join, ...] = ()
    separator: str = IDENTIFIER_SEPARATOR
    locale_column: Optional[str] = None


Expr = Union[Column, Const, Concat, JoinNonEmpty, Coalesce, Lookup]


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NotNull:
    expr: Expr


@dataclass(frozen=True)
class Changed:
    """The null-safe change predicate applied to expr on the old and the new row."""

    expr: Expr


@dataclass(frozen=True)
class AnyOf:
    conditions: tuple[Condition, ...]


Condition = Union[NotNull, Changed, AnyOf]


def columns_of(expr: Expr) -> list[str]:
    """Every firing-row column an expression reads, in render order."""
    if isinstance(expr, Column):
        return [expr.name]
    if isinstance(expr, Const):
        return []
    if isinstance(expr, Lookup):
        found: list[str] = []
        for _, value in expr.where:
            found.extend(columns_of(value))
        return found
    found = []
    for part in expr.parts:
        found.extend(columns_of(part))
    return found


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RecordContext:
    """The per-row metadata every change record of one trigger carries."""

    entity: str
    table: str
    entity_key: Expr
    object_id: Expr
    service_entity: str
    root_entity: Optional[str] = None
    root_key: Optional[Expr] = None
    root_object_id: Optional[Expr] = None


@dataclass(frozen=True)
class AttributePlan:
    """How one tracked attribute is read, encoded and labelled."""

    attribute: TrackedAttribute
    columns: tuple[str, ...]
    value: Expr
    type_class: TypeClass
    label: Optional[Expr] = None

    @property
    def name(self) -> str:
        return self.attribute.name

    @property
    def value_data_type(self) -> str:
        return self.attribute.declared_type


@dataclass(frozen=True)
class ChangeRecord:
    """One conditional append into the change table.

    ``old``/``new`` are rendered against the old and new row respectively;
    None stands for SQL NULL. ``skip_element`` names the element whose skip
    flag suppresses this record.
    """

    attribute: str
    value_data_type: str
    operation: ChangeOperation
    condition: Condition
    type_class: TypeClass = TypeClass.OTHER
    old: Optional[Expr] = None
    new: Optional[Expr] = None
    old_label: Optional[Expr] = None
    new_label: Optional[Expr] = None
    skip_element: Optional[tuple[str, str]] = None


@dataclass(frozen=True)
class CompositionPlan:
    """Trigger plan for one composition-of-many target table."""

    name: str
    context: RecordContext
    object_id: Expr
    key_columns: tuple[str, ...]


@dataclass(frozen=True)
class EntityPlan:
    """Everything a generator renders for one tracked entity."""

    context: RecordContext
    primary_keys: tuple[str, ...]
    attributes: tuple[AttributePlan, ...] = ()
    compositions: tuple[CompositionPlan, ...] = field(default_factory=tuple)

    @property
    def entity(self) -> str:
        return self.context.entity

    @property
    def tracked_columns(self) -> tuple[str, ...]:
        columns: list[str] = []
        for attribute in self.attributes:
            for column in attribute.columns:
                if column not in columns:
                    columns.append(column)
        return tuple(columns)
