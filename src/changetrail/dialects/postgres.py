"""Function+trigger-pair dialect (PostgreSQL).

One PL/pgSQL function per table handles all three operations through a
``TG_OP`` branch, installed by a single row-level trigger. Unquoted
identifiers fold to lower case in PostgreSQL, so table and column names are
lower-cased and requoted. Keys and identifiers are read through the local
record variable ``rec`` (``NEW``, or ``OLD`` on delete); old and new values
through ``OLD``/``NEW``.
"""

from __future__ import annotations

import logging

from changetrail.dialects.base import (
    CHANGE_COLUMNS,
    CHANGE_LOG_COLUMNS,
    DialectRenderer,
    RenderScope,
    TriggerGenerator,
    indent,
)
from changetrail.models.tracked import ChangeOperation, GeneratedTrigger, TrackedEntity
from changetrail.planning.plan import ChangeRecord, CompositionPlan, RecordContext
from changetrail.skip import SKIP_ALL, USER_VARIABLES, entity_skip_var
from changetrail.storage.schema import CHANGE_LOG_TABLE, CHANGES_TABLE

logger = logging.getLogger(__name__)

REC = "rec"
CHANGE_LOG_VARIABLE = "v_change_log_id"

_TG_OPS = {
    ChangeOperation.CREATE: "INSERT",
    ChangeOperation.UPDATE: "UPDATE",
    ChangeOperation.DELETE: "DELETE",
}


class PostgresRenderer(DialectRenderer):
    kind = "postgres"

    def table(self, entity: str) -> str:
        if self.quoted_names:
            return self.quote(entity)
        return self.quote(entity.replace(".", "_").lower())

    def trigger_base(self, entity: str) -> str:
        return entity.replace(".", "_").lower()

    def column(self, name: str) -> str:
        return self.quote(name if self.quoted_names else name.lower())

    def row_column(self, row: str, name: str, scope: RenderScope) -> str:
        record = REC if row == REC else row.upper()
        return f"{record}.{self.column(name)}"

    def cast_text(self, sql: str) -> str:
        return f"({sql})::TEXT"

    def substr(self, sql: str, length: int) -> str:
        return f"LEFT({sql}, {length})"

    def session_value(self, name: str) -> str:
        return f"NULLIF(current_setting({self.literal(name)}, true), '')"

    def user(self) -> str:
        return f"COALESCE({self.session_value(USER_VARIABLES[self.kind])}, session_user)"

    def uuid(self) -> str:
        return "gen_random_uuid()::TEXT"

    def transaction_id(self) -> str:
        return "txid_current()::TEXT"

    def encode_boolean(self, sql: str) -> str:
        return f"CASE WHEN {sql} IS NULL THEN NULL WHEN {sql} THEN 'true' ELSE 'false' END"

    def join_non_empty(self, parts: list[str], separator: str) -> str:
        if len(parts) == 1:
            return f"NULLIF({self.cast_text(parts[0])}, '')"
        args = ", ".join(f"NULLIF({self.cast_text(p)}, '')" for p in parts)
        return f"NULLIF(CONCAT_WS({self.literal(separator)}, {args}), '')"


class PostgresTriggerGenerator(TriggerGenerator):
    """``<table>_func_change()`` plus ``<table>_tr_change`` per tracked table."""

    kind = "postgres"
    renderer_class = PostgresRenderer

    def key_row(self, operation: ChangeOperation) -> str:
        return REC

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def _insert(self, table: str, columns: tuple[str, ...], values: dict[str, str]) -> str:
        selected = ",\n  ".join(values[c] for c in columns)
        return f"INSERT INTO {table} ({', '.join(columns)}) VALUES (\n  {selected}\n)"

    def append_statements(self, context: RecordContext, records: list[ChangeRecord]) -> str | None:
        """Header insert returning its id, then one ``IF`` block per record."""
        if not records:
            return None
        scope = RenderScope(REC)
        guards = [self.guarded(record, scope) for record in records]
        header = self._insert(
            CHANGE_LOG_TABLE, CHANGE_LOG_COLUMNS, self.change_log_values(context, scope, REC)
        )
        blocks = [
            f"IF {' OR '.join(guards)} THEN\n"
            f"{indent(header)} RETURNING id INTO {CHANGE_LOG_VARIABLE};\n"
            "END IF;"
        ]
        for record, guard in zip(records, guards):
            values = self.record_values(context, record, scope, CHANGE_LOG_VARIABLE)
            insert = self._insert(CHANGES_TABLE, CHANGE_COLUMNS, values)
            blocks.append(f"IF {guard} THEN\n{indent(insert)};\nEND IF;")
        return "\n".join(blocks)

    def cascade_statements(self, context: RecordContext) -> str:
        r = self.renderer
        key = r.text(context.entity_key, RenderScope(REC))
        entity = r.literal(context.entity)
        return (
            f"DELETE FROM {CHANGES_TABLE} WHERE entity = {entity} AND entity_key = {key};\n"
            f"DELETE FROM {CHANGE_LOG_TABLE} WHERE entity = {entity} AND entity_key = {key};"
        )

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def generate_create(self, entity: TrackedEntity) -> str | None:
        if not self.enabled(ChangeOperation.CREATE):
            return None
        plan = self.plan(entity)
        return self.append_statements(plan.context, self.records(plan, ChangeOperation.CREATE))

    def generate_update(self, entity: TrackedEntity) -> str | None:
        if not self.enabled(ChangeOperation.UPDATE):
            return None
        plan = self.plan(entity)
        return self.append_statements(plan.context, self.records(plan, ChangeOperation.UPDATE))

    def generate_delete(self, entity: TrackedEntity) -> str | None:
        if not self.enabled(ChangeOperation.DELETE):
            return None
        plan = self.plan(entity)
        if self.config.preserve_deletes:
            return self.append_statements(plan.context, self.records(plan, ChangeOperation.DELETE))
        return self.cascade_statements(plan.context)

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    def function_name(self, base: str) -> str:
        return f"{base}_func_change"

    def trigger_name(self, entity: str, operation: ChangeOperation | None = None) -> str:
        return f"{self.renderer.trigger_base(entity)}_tr_change"

    def _skip_guard(self, skip_entity: str) -> str:
        r = self.renderer
        return (
            f"IF {r.flag_raised(SKIP_ALL)} OR {r.flag_raised(entity_skip_var(skip_entity))} THEN\n"
            "  RETURN NULL;\n"
            "END IF;"
        )

    def _function(self, name: str, skip_entity: str, branches: dict[ChangeOperation, str]) -> str:
        dispatch = []
        for i, (operation, body) in enumerate(branches.items()):
            keyword = "IF" if i == 0 else "ELSIF"
            dispatch.append(f"{keyword} (TG_OP = '{_TG_OPS[operation]}') THEN\n{indent(body)}")
        body = "\n".join(
            [
                self._skip_guard(skip_entity),
                "IF (TG_OP = 'DELETE') THEN\n  rec := OLD;\nELSE\n  rec := NEW;\nEND IF;",
                "\n".join(dispatch) + "\nEND IF;",
                "RETURN NULL;",
            ]
        )
        return (
            f"CREATE OR REPLACE FUNCTION {name}() RETURNS TRIGGER AS $$\n"
            "DECLARE\n"
            "  rec RECORD;\n"
            f"  {CHANGE_LOG_VARIABLE} TEXT;\n"
            "BEGIN\n"
            f"{indent(body)}\n"
            "END;\n"
            "$$ LANGUAGE plpgsql;"
        )

    def _create_trigger(
        self, name: str, function: str, table: str, operations: list[ChangeOperation], columns: tuple[str, ...]
    ) -> str:
        events = []
        for operation in operations:
            if operation is ChangeOperation.UPDATE and columns:
                events.append("UPDATE OF " + ", ".join(self.renderer.column(c) for c in columns))
            else:
                events.append(_TG_OPS[operation])
        return (
            f"CREATE TRIGGER {name} AFTER {' OR '.join(events)} ON {table}\n"
            f"FOR EACH ROW EXECUTE FUNCTION {function}();"
        )

    def generate_entity_triggers(self, entity: TrackedEntity) -> list[GeneratedTrigger]:
        branches = {}
        for operation in self.operations:
            body = self._generate_operation(entity, operation)
            if body is not None:
                branches[operation] = body
        if not branches:
            return []
        logger.debug("Postgres branches for %s: %s", entity.name, [op.value for op in branches])
        plan = self.plan(entity)
        base = self.renderer.trigger_base(entity.name)
        function = self.function_name(base)
        name = self.trigger_name(entity.name)
        text = "\n\n".join(
            [
                self._function(function, entity.name, branches),
                self._create_trigger(
                    name, function, self.renderer.table(entity.name), list(branches), plan.tracked_columns
                ),
            ]
        )
        return [
            GeneratedTrigger(
                name=name, source_text=text, entity=entity.name, operations=tuple(branches)
            )
        ]

    def _composition_branch(self, composition: CompositionPlan, operation: ChangeOperation) -> str | None:
        if operation is ChangeOperation.DELETE and not self.config.preserve_deletes:
            return self.cascade_statements(composition.context)
        record = self.planner.composition_record(composition, operation)
        return self.append_statements(composition.context, [record])

    def generate_composition_triggers(self, entity: TrackedEntity) -> list[GeneratedTrigger]:
        plan = self.plan(entity)
        triggers = []
        for composition in plan.compositions:
            branches = {}
            for operation in self.operations:
                body = self._composition_branch(composition, operation)
                if body is not None:
                    branches[operation] = body
            if not branches:
                continue
            context = composition.context
            base = self.composition_trigger_name(context.entity, composition.name)
            function = f"{base}_func"
            name = f"{base}_tr"
            text = "\n\n".join(
                [
                    self._function(function, context.entity, branches),
                    self._create_trigger(
                        name, function, self.renderer.table(context.table), list(branches), ()
                    ),
                ]
            )
            triggers.append(
                GeneratedTrigger(
                    name=name, source_text=text, entity=context.entity, operations=tuple(branches)
                )
            )
        return triggers

    def drop_statements(self, entity: TrackedEntity) -> list[str]:
        """Statements removing every trigger and function generated for *entity*."""
        r = self.renderer
        base = r.trigger_base(entity.name)
        statements = [
            f"DROP TRIGGER IF EXISTS {self.trigger_name(entity.name)} ON {r.table(entity.name)};",
            f"DROP FUNCTION IF EXISTS {self.function_name(base)}();",
        ]
        for composition in entity.compositions_of_many:
            comp_base = self.composition_trigger_name(composition.target, composition.name)
            statements.append(
                f"DROP TRIGGER IF EXISTS {comp_base}_tr ON {r.table(composition.target)};"
            )
            statements.append(f"DROP FUNCTION IF EXISTS {comp_base}_func();")
        return statements
