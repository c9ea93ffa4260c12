"""Embedded-SQL trigger dialect (SQLite).

Pure SQL triggers with ``old.``/``new.`` row references, one trigger per
operation. Session flags, the acting user and the locale are read through
the ``session_context()`` function the storage engine installs on each
connection.
"""

from __future__ import annotations

import logging

from changetrail.dialects.base import (
    CHANGE_COLUMNS,
    CHANGE_LOG_COLUMNS,
    NEW,
    OLD,
    DialectRenderer,
    RenderScope,
    TriggerGenerator,
    indent,
)
from changetrail.models.tracked import ChangeOperation, GeneratedTrigger, TrackedEntity
from changetrail.planning.plan import ChangeRecord, Coalesce, Lookup, RecordContext
from changetrail.skip import NOW_VARIABLE
from changetrail.storage.schema import CHANGE_LOG_TABLE, CHANGES_TABLE

logger = logging.getLogger(__name__)


class SqliteRenderer(DialectRenderer):
    kind = "sqlite"

    def cast_text(self, sql: str) -> str:
        return f"CAST({sql} AS TEXT)"

    def session_value(self, name: str) -> str:
        return f"session_context({self.literal(name)})"

    def now(self) -> str:
        return f"COALESCE({self.session_value(NOW_VARIABLE)}, datetime('now'))"

    def uuid(self) -> str:
        return "lower(hex(randomblob(16)))"

    def coalesce(self, expr: Coalesce, scope: RenderScope) -> str:
        """Label alternatives become a UNION sub-select; first non-NULL in order wins."""
        if len(expr.parts) < 2 or not all(isinstance(p, Lookup) for p in expr.parts):
            return super().coalesce(expr, scope)
        branches = [
            f"SELECT {i} AS ord, {self.text(part, scope)} AS value"
            for i, part in enumerate(expr.parts)
        ]
        union = " UNION ALL ".join(branches)
        return (
            f"(SELECT value FROM ({union}) WHERE value IS NOT NULL "
            "ORDER BY ord LIMIT 1)"
        )


class SqliteTriggerGenerator(TriggerGenerator):
    """One ``CREATE TRIGGER`` per enabled operation, plus composition sets."""

    kind = "sqlite"
    renderer_class = SqliteRenderer

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def _insert(self, table: str, columns: tuple[str, ...], values: dict[str, str], where: str) -> str:
        selected = ",\n  ".join(values[c] for c in columns)
        return (
            f"INSERT INTO {table} ({', '.join(columns)})\n"
            f"SELECT\n  {selected}\n"
            f"WHERE {where};"
        )

    def _change_log_ref(self, context: RecordContext, scope: RenderScope) -> str:
        r = self.renderer
        return (
            f"(SELECT id FROM {CHANGE_LOG_TABLE} "
            f"WHERE entity = {r.literal(context.entity)} "
            f"AND entity_key = {r.text(context.entity_key, scope)} "
            "ORDER BY rowid DESC LIMIT 1)"
        )

    def append_statements(
        self, context: RecordContext, records: list[ChangeRecord], row: str
    ) -> list[str]:
        """A change-log header plus one guarded insert per record."""
        if not records:
            return []
        scope = RenderScope(row)
        guards = [self.guarded(record, scope) for record in records]
        statements = [
            self._insert(
                CHANGE_LOG_TABLE,
                CHANGE_LOG_COLUMNS,
                self.change_log_values(context, scope, row),
                " OR ".join(guards),
            )
        ]
        change_log_id = self._change_log_ref(context, scope)
        for record, guard in zip(records, guards):
            values = self.record_values(context, record, scope, change_log_id)
            statements.append(self._insert(CHANGES_TABLE, CHANGE_COLUMNS, values, guard))
        return statements

    def cascade_statements(self, context: RecordContext) -> list[str]:
        """Remove every prior record of the deleted row."""
        r = self.renderer
        key = r.text(context.entity_key, RenderScope(OLD))
        entity = r.literal(context.entity)
        return [
            f"DELETE FROM {CHANGES_TABLE} WHERE entity = {entity} AND entity_key = {key};",
            f"DELETE FROM {CHANGE_LOG_TABLE} WHERE entity = {entity} AND entity_key = {key};",
        ]

    def _trigger(self, name: str, event: str, table: str, when: str, statements: list[str]) -> str:
        body = "\n".join(indent(s) for s in statements)
        return f"CREATE TRIGGER {name} AFTER {event} ON {table}\nWHEN {when}\nBEGIN\n{body}\nEND;"

    # ------------------------------------------------------------------
    # Entity triggers
    # ------------------------------------------------------------------

    def generate_create(self, entity: TrackedEntity) -> str | None:
        if not self.enabled(ChangeOperation.CREATE):
            return None
        plan = self.plan(entity)
        statements = self.append_statements(
            plan.context, self.records(plan, ChangeOperation.CREATE), NEW
        )
        if not statements:
            return None
        return self._trigger(
            self.trigger_name(entity.name, ChangeOperation.CREATE),
            "INSERT",
            self.renderer.table(entity.name),
            self.renderer.skip_condition(entity.name),
            statements,
        )

    def generate_update(self, entity: TrackedEntity) -> str | None:
        if not self.enabled(ChangeOperation.UPDATE):
            return None
        plan = self.plan(entity)
        statements = self.append_statements(
            plan.context, self.records(plan, ChangeOperation.UPDATE), NEW
        )
        if not statements:
            return None
        columns = ", ".join(self.renderer.column(c) for c in plan.tracked_columns)
        return self._trigger(
            self.trigger_name(entity.name, ChangeOperation.UPDATE),
            f"UPDATE OF {columns}",
            self.renderer.table(entity.name),
            self.renderer.skip_condition(entity.name),
            statements,
        )

    def generate_delete(self, entity: TrackedEntity) -> str | None:
        if not self.enabled(ChangeOperation.DELETE):
            return None
        plan = self.plan(entity)
        if self.config.preserve_deletes:
            statements = self.append_statements(
                plan.context, self.records(plan, ChangeOperation.DELETE), OLD
            )
        else:
            statements = self.cascade_statements(plan.context)
        if not statements:
            return None
        return self._trigger(
            self.trigger_name(entity.name, ChangeOperation.DELETE),
            "DELETE",
            self.renderer.table(entity.name),
            self.renderer.skip_condition(entity.name),
            statements,
        )

    # ------------------------------------------------------------------
    # Composition-of-many triggers
    # ------------------------------------------------------------------

    def generate_composition_triggers(self, entity: TrackedEntity) -> list[GeneratedTrigger]:
        plan = self.plan(entity)
        r = self.renderer
        triggers = []
        for composition in plan.compositions:
            context = composition.context
            when = r.skip_condition(context.entity)
            for operation in self.operations:
                if operation is ChangeOperation.DELETE and not self.config.preserve_deletes:
                    statements = self.cascade_statements(context)
                else:
                    record = self.planner.composition_record(composition, operation)
                    row = OLD if operation is ChangeOperation.DELETE else NEW
                    statements = self.append_statements(context, [record], row)
                event = {
                    ChangeOperation.CREATE: "INSERT",
                    ChangeOperation.UPDATE: "UPDATE",
                    ChangeOperation.DELETE: "DELETE",
                }[operation]
                name = self.composition_trigger_name(context.entity, composition.name, operation)
                triggers.append(
                    GeneratedTrigger(
                        name=name,
                        source_text=self._trigger(
                            name, event, r.table(context.table), when, statements
                        ),
                        entity=context.entity,
                        operations=(operation,),
                    )
                )
            logger.debug(
                "Composition %s.%s tracked on %s", entity.name, composition.name, context.entity
            )
        return triggers
