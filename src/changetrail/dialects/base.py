"""Shared trigger generator and the dialect renderer strategy.

Every backend runs the same algorithm: analyze, plan, then render each
change record into the dialect's trigger syntax. What differs is captured
by a DialectRenderer (quoting, casts, session variables, row references)
and by the per-dialect TriggerGenerator subclass that assembles bodies.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import ClassVar, Optional

from changetrail.models.config import TrackingConfig
from changetrail.models.tracked import ChangeOperation, GeneratedTrigger, TrackedEntity
from changetrail.planning.encoding import (
    ELLIPSIS,
    MAX_VALUE_LENGTH,
    TRUNCATED_LENGTH,
    TypeClass,
)
from changetrail.planning.plan import (
    AnyOf,
    ChangeRecord,
    Changed,
    Coalesce,
    Column,
    Concat,
    Condition,
    Const,
    EntityPlan,
    Expr,
    JoinNonEmpty,
    Lookup,
    NotNull,
    RecordContext,
)
from changetrail.planning.planner import ResolutionPlanner
from changetrail.skip import (
    LOCALE_VARIABLES,
    SKIP_ALL,
    TRANSACTION_VARIABLE,
    USER_VARIABLES,
    element_skip_var,
    entity_skip_var,
)
from changetrail.storage.schema import CHANGE_LOG_TABLE, CHANGES_TABLE

logger = logging.getLogger(__name__)

OLD = "old"
NEW = "new"

# Column order of every change row insert
CHANGE_COLUMNS = (
    "id",
    "attribute",
    "value_changed_from",
    "value_changed_to",
    "value_changed_from_label",
    "value_changed_to_label",
    "entity",
    "entity_key",
    "root_entity",
    "root_entity_key",
    "object_id",
    "root_object_id",
    "value_data_type",
    "modification",
    "created_at",
    "created_by",
    "transaction_id",
    "change_log_id",
)
CHANGE_LOG_COLUMNS = ("id", "entity", "entity_key", "service_entity", "created_at", "created_by")

DEFAULT_LOCALE = "en"


@dataclass
class RenderScope:
    """Which row Column nodes read from, plus any positional bindings collected."""

    row: str
    bindings: list[tuple[str, str]] = field(default_factory=list)

    def at(self, row: str) -> RenderScope:
        """Same binding list, other row."""
        return RenderScope(row, self.bindings)


class DialectRenderer:
    """Renders plan expressions as SQL text for one dialect.

    The defaults are ANSI-flavoured; subclasses override the hooks where
    their database differs.
    """

    kind: ClassVar[str] = "ansi"
    # Limit clause appended to single-row sub-selects
    limit_clause: ClassVar[str] = " LIMIT 1"

    def __init__(self, quoted_names: bool = False) -> None:
        self.quoted_names = quoted_names

    # ------------------------------------------------------------------
    # Identifiers and literals
    # ------------------------------------------------------------------

    def table(self, entity: str) -> str:
        """Table name of an entity: dots become underscores, upper-cased.

        In quoted-identifier mode the entity name is used verbatim, quoted.
        """
        if self.quoted_names:
            return self.quote(entity)
        return entity.replace(".", "_").upper()

    def storage_table(self, name: str) -> str:
        return name

    def trigger_base(self, entity: str) -> str:
        """Stem used for trigger and function names."""
        return entity.replace(".", "_").upper()

    def quote(self, identifier: str) -> str:
        return '"' + identifier.replace('"', '""') + '"'

    def column(self, name: str) -> str:
        return name

    def row_column(self, row: str, name: str, scope: RenderScope) -> str:
        return f"{row}.{self.column(name)}"

    def literal(self, value: Optional[str]) -> str:
        if value is None:
            return "NULL"
        return "'" + value.replace("'", "''") + "'"

    # ------------------------------------------------------------------
    # Functions
    # ------------------------------------------------------------------

    def cast_text(self, sql: str) -> str:
        return f"CAST({sql} AS VARCHAR(5000))"

    def length(self, sql: str) -> str:
        return f"LENGTH({sql})"

    def substr(self, sql: str, length: int) -> str:
        return f"SUBSTR({sql}, 1, {length})"

    def session_value(self, name: str) -> str:
        raise NotImplementedError

    def flag_raised(self, name: str) -> str:
        return f"COALESCE({self.session_value(name)}, 'false') = 'true'"

    def skip_condition(self, entity: str) -> str:
        """True when neither the global flag nor the entity's flag is raised."""
        return (
            f"NOT ({self.flag_raised(SKIP_ALL)} OR "
            f"{self.flag_raised(entity_skip_var(entity))})"
        )

    def element_skip_condition(self, entity: str, element: str) -> str:
        return f"NOT {self.flag_raised(element_skip_var(entity, element))}"

    def user(self) -> str:
        return self.session_value(USER_VARIABLES[self.kind])

    def locale(self) -> str:
        return f"COALESCE({self.session_value(LOCALE_VARIABLES[self.kind])}, '{DEFAULT_LOCALE}')"

    def now(self) -> str:
        return "CURRENT_TIMESTAMP"

    def uuid(self) -> str:
        raise NotImplementedError

    def transaction_id(self) -> str:
        return self.session_value(TRANSACTION_VARIABLE)

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def bind_once(self, sql: str, build) -> str:  # type: ignore[no-untyped-def]
        """Apply *build* to an expression that it may reference several times."""
        return build(sql)

    def encode_boolean(self, sql: str) -> str:
        return self.bind_once(
            sql,
            lambda v: (
                f"CASE WHEN {v} IS NULL THEN NULL "
                f"WHEN {v} IN (1, '1', 'true', 'TRUE') THEN 'true' ELSE 'false' END"
            ),
        )

    def truncate(self, sql: str) -> str:
        return self.bind_once(
            sql,
            lambda v: (
                f"CASE WHEN {self.length(v)} > {MAX_VALUE_LENGTH} "
                f"THEN {self.substr(v, TRUNCATED_LENGTH)} || '{ELLIPSIS}' ELSE {v} END"
            ),
        )

    def encode(self, sql: str, type_class: TypeClass) -> str:
        """Text encoding of a raw value by type class."""
        if type_class is TypeClass.BOOLEAN:
            return self.encode_boolean(sql)
        if type_class is TypeClass.TEXT:
            return self.truncate(self.cast_text(sql))
        return self.cast_text(sql)

    # ------------------------------------------------------------------
    # Expressions
    # ------------------------------------------------------------------

    def render(self, expr: Expr, scope: RenderScope) -> str:
        if isinstance(expr, Column):
            return self.row_column(scope.row, expr.name, scope)
        if isinstance(expr, Const):
            return self.literal(expr.value)
        if isinstance(expr, Concat):
            return self.concat([self.render(p, scope) for p in expr.parts], expr.separator)
        if isinstance(expr, JoinNonEmpty):
            return self.join_non_empty([self.render(p, scope) for p in expr.parts], expr.separator)
        if isinstance(expr, Coalesce):
            return self.coalesce(expr, scope)
        if isinstance(expr, Lookup):
            return self.lookup(expr, scope)
        raise TypeError(f"Cannot render {type(expr).__name__}")

    def text(self, expr: Expr, scope: RenderScope) -> str:
        """Render an expression cast to text."""
        if isinstance(expr, Const):
            return self.literal(expr.value)
        if isinstance(expr, Column) or (isinstance(expr, Lookup) and len(expr.select) == 1):
            return self.cast_text(self.render(expr, scope))
        return self.render(expr, scope)

    def concat(self, parts: list[str], separator: str) -> str:
        if len(parts) == 1:
            return self.cast_text(parts[0])
        sep = f" || {self.literal(separator)} || "
        return sep.join(f"COALESCE({self.cast_text(p)}, '')" for p in parts)

    def join_non_empty(self, parts: list[str], separator: str) -> str:
        """Join the non-empty parts; NULL when every part is empty."""
        if len(parts) == 1:
            return f"NULLIF({self.cast_text(parts[0])}, '')"
        sep = self.literal(separator)
        pieces = " || ".join(
            f"COALESCE({sep} || NULLIF({self.cast_text(p)}, ''), '')" for p in parts
        )
        return f"NULLIF({self.substr_from(pieces, len(separator) + 1)}, '')"

    def substr_from(self, sql: str, start: int) -> str:
        return f"SUBSTR({sql}, {start})"

    def coalesce(self, expr: Coalesce, scope: RenderScope) -> str:
        parts = [self.text(p, scope) for p in expr.parts]
        if len(parts) == 1:
            return parts[0]
        return f"COALESCE({', '.join(parts)})"

    def lookup(self, expr: Lookup, scope: RenderScope) -> str:
        """A correlated single-row sub-select."""
        tables = [expr.entity] + [j.entity for j in expr.joins]
        last = len(tables) - 1
        alias = [f"ct{i}" for i in range(len(tables))]
        select = [f"{alias[last]}.{self.column(c)}" for c in expr.select]
        if len(select) == 1:
            selected = select[0]
        else:
            selected = self.join_non_empty(select, expr.separator)
        sql = f"SELECT {selected} FROM {self.table(expr.entity)} {alias[0]}"
        for i, join in enumerate(expr.joins, start=1):
            on = " AND ".join(
                f"{alias[i]}.{self.column(here)} = {alias[i - 1]}.{self.column(prev)}"
                for here, prev in join.on
            )
            sql += f" JOIN {self.table(join.entity)} {alias[i]} ON {on}"
        where = [
            f"{alias[0]}.{self.column(col)} = {self.render(value, scope)}"
            for col, value in expr.where
        ]
        if expr.locale_column:
            where.append(f"{alias[last]}.{self.column(expr.locale_column)} = {self.locale()}")
        sql += " WHERE " + " AND ".join(where)
        return f"({self.limit_one(sql)})"

    def limit_one(self, sql: str) -> str:
        return sql + self.limit_clause

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------

    def changed(self, old: str, new: str) -> str:
        """The null-safe change predicate."""
        return (
            f"(({old} <> {new} OR {old} IS NULL OR {new} IS NULL) "
            f"AND NOT ({old} IS NULL AND {new} IS NULL))"
        )

    def condition(self, condition: Condition, scope: RenderScope) -> str:
        """Render a record condition. NotNull reads from the scope's row."""
        if isinstance(condition, NotNull):
            return f"{self.render(condition.expr, scope)} IS NOT NULL"
        if isinstance(condition, Changed):
            if isinstance(condition.expr, Column):
                old = self.render(condition.expr, scope.at(OLD))
                new = self.render(condition.expr, scope.at(NEW))
            else:
                old = self.text(condition.expr, scope.at(OLD))
                new = self.text(condition.expr, scope.at(NEW))
            return self.changed(old, new)
        if isinstance(condition, AnyOf):
            parts = [self.condition(c, scope) for c in condition.conditions]
            if len(parts) == 1:
                return parts[0]
            return "(" + " OR ".join(parts) + ")"
        raise TypeError(f"Cannot render {type(condition).__name__}")


def key_row(operation: ChangeOperation) -> str:
    """Row whose keys identify the record: the old row only for deletes."""
    return OLD if operation is ChangeOperation.DELETE else NEW


class TriggerGenerator(ABC):
    """Generates the change-tracking triggers of one database dialect.

    Subclasses provide the renderer class and the body assembly. The
    ``generate_<operation>`` methods return the dialect's unit of generated
    text for that operation: a complete trigger for dialects with one
    trigger per operation, or the operation's branch for dialects with one
    combined trigger. None means the operation is disabled or has nothing
    to record.
    """

    kind: ClassVar[str]
    renderer_class: ClassVar[type[DialectRenderer]] = DialectRenderer

    def __init__(self, config: TrackingConfig | None = None) -> None:
        self.config = config or TrackingConfig()
        self.renderer = self.renderer_class(quoted_names=self.config.quoted_names)
        self.planner = ResolutionPlanner()

    # ------------------------------------------------------------------
    # Planning helpers
    # ------------------------------------------------------------------

    def plan(self, entity: TrackedEntity) -> EntityPlan:
        return self.planner.plan(entity)

    def records(self, plan: EntityPlan, operation: ChangeOperation) -> list[ChangeRecord]:
        return self.planner.records(plan, operation)

    def enabled(self, operation: ChangeOperation) -> bool:
        """Whether the configuration generates triggers for *operation*."""
        if operation is ChangeOperation.CREATE:
            return not self.config.disable_create_tracking
        if operation is ChangeOperation.UPDATE:
            return not self.config.disable_update_tracking
        return not self.config.disable_delete_tracking

    def key_row(self, operation: ChangeOperation) -> str:
        """Row that keys, identifiers and not-null guards read from."""
        return key_row(operation)

    @property
    def operations(self) -> list[ChangeOperation]:
        return [op for op in ChangeOperation if self.enabled(op)]

    def record_values(
        self,
        context: RecordContext,
        record: ChangeRecord,
        scope: RenderScope,
        change_log_id: str,
    ) -> dict[str, str]:
        """SQL for every change column of one record, keyed by column name."""
        r = self.renderer
        at = scope.at(self.key_row(record.operation))

        def value(expr: Expr | None, side: str) -> str:
            if expr is None:
                return "NULL"
            return r.encode(r.render(expr, scope.at(side)), record.type_class)

        def label(expr: Expr | None, side: str) -> str:
            if expr is None:
                return "NULL"
            return r.truncate(r.text(expr, scope.at(side)))

        values = {
            "id": r.uuid(),
            "attribute": r.literal(record.attribute),
            "value_changed_from": value(record.old, OLD),
            "value_changed_to": value(record.new, NEW),
            "value_changed_from_label": label(record.old_label, OLD),
            "value_changed_to_label": label(record.new_label, NEW),
            "entity": r.literal(context.entity),
            "entity_key": r.text(context.entity_key, at),
            "root_entity": r.literal(context.root_entity),
            "root_entity_key": "NULL",
            "object_id": r.text(context.object_id, at),
            "root_object_id": "NULL",
            "value_data_type": r.literal(record.value_data_type),
            "modification": r.literal(record.operation.value),
            "created_at": r.now(),
            "created_by": r.user(),
            "transaction_id": r.transaction_id(),
            "change_log_id": change_log_id,
        }
        if context.root_key is not None:
            values["root_entity_key"] = r.text(context.root_key, at)
        if context.root_object_id is not None:
            values["root_object_id"] = r.text(context.root_object_id, at)
        return values

    def change_log_values(self, context: RecordContext, scope: RenderScope, row: str) -> dict[str, str]:
        r = self.renderer
        return {
            "id": r.uuid(),
            "entity": r.literal(context.entity),
            "entity_key": r.text(context.entity_key, scope.at(row)),
            "service_entity": r.literal(context.service_entity),
            "created_at": r.now(),
            "created_by": r.user(),
        }

    def guarded(self, record: ChangeRecord, scope: RenderScope) -> str:
        """The record's condition combined with its element skip flag."""
        r = self.renderer
        condition = r.condition(record.condition, scope.at(self.key_row(record.operation)))
        if record.skip_element is None:
            return condition
        entity, element = record.skip_element
        return f"({condition} AND {r.element_skip_condition(entity, element)})"

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def trigger_name(self, entity: str, operation: ChangeOperation | None = None) -> str:
        base = self.renderer.trigger_base(entity)
        return f"{base}_ct_{operation.value}" if operation else f"{base}_ct"

    def composition_trigger_name(
        self, target: str, composition: str, operation: ChangeOperation | None = None
    ) -> str:
        base = f"{self.renderer.trigger_base(target)}_ct_comp_{composition}"
        return f"{base}_{operation.value}" if operation else base

    @abstractmethod
    def generate_create(self, entity: TrackedEntity) -> str | None:
        ...

    @abstractmethod
    def generate_update(self, entity: TrackedEntity) -> str | None:
        ...

    @abstractmethod
    def generate_delete(self, entity: TrackedEntity) -> str | None:
        ...

    @abstractmethod
    def generate_composition_triggers(self, entity: TrackedEntity) -> list[GeneratedTrigger]:
        """The trigger set each composition-of-many target gets on its own table."""
        ...

    def generate_support_artifacts(self) -> list[GeneratedTrigger]:
        """Artifacts installed once per database rather than per entity."""
        return []

    def _generate_operation(self, entity: TrackedEntity, operation: ChangeOperation) -> str | None:
        return {
            ChangeOperation.CREATE: self.generate_create,
            ChangeOperation.UPDATE: self.generate_update,
            ChangeOperation.DELETE: self.generate_delete,
        }[operation](entity)

    def generate_entity_triggers(self, entity: TrackedEntity) -> list[GeneratedTrigger]:
        """One trigger per enabled operation on the entity's own table."""
        triggers = []
        for operation in self.operations:
            text = self._generate_operation(entity, operation)
            if text is None:
                continue
            triggers.append(
                GeneratedTrigger(
                    name=self.trigger_name(entity.name, operation),
                    source_text=text,
                    entity=entity.name,
                    operations=(operation,),
                )
            )
        return triggers

    def generate(self, entity: TrackedEntity) -> list[GeneratedTrigger]:
        """All triggers for *entity*: its own set plus its composition sets."""
        if not entity.primary_keys:
            logger.warning("Entity %s has no primary key, no triggers generated", entity.name)
            return []
        triggers: list[GeneratedTrigger] = []
        if entity.attributes:
            triggers.extend(self.generate_entity_triggers(entity))
        triggers.extend(self.generate_composition_triggers(entity))
        logger.debug("Generated %d %s triggers for %s", len(triggers), self.kind, entity.name)
        return triggers


def indent(text: str, prefix: str = "  ") -> str:
    """Indent every non-empty line of *text*."""
    return re.sub(r"(?m)^(?=.)", prefix, text)
