"""Declarative stored-procedure dialect (SAP HANA).

Triggers are emitted as ``.hdbtrigger`` design-time artifacts. Their bodies
compute every value into local variables with ``SELECT ... INTO ... FROM
DUMMY`` (SQLScript conditions cannot contain sub-selects) and then call two
procedures shipped as ``.hdbprocedure`` artifacts: one opening a change-log
header, one appending a change row. Identity comes from ``SYSUUID`` and the
acting user from ``SESSION_CONTEXT('APPLICATIONUSER')`` inside the
procedures; neither is ever passed in.
"""

from __future__ import annotations

from changetrail.dialects.base import (
    NEW,
    OLD,
    DialectRenderer,
    RenderScope,
    TriggerGenerator,
    indent,
)
from changetrail.models.tracked import (
    ArtifactKind,
    ChangeOperation,
    GeneratedTrigger,
    TrackedEntity,
)
from changetrail.planning.plan import ChangeRecord, Changed, Column, RecordContext
from changetrail.skip import SKIP_ALL, USER_VARIABLES, entity_skip_var
from changetrail.storage.schema import CHANGE_LOG_TABLE, CHANGES_TABLE

CREATE_CHANGE_LOG_PROCEDURE = "CHANGETRAIL_CREATE_CHANGE_LOG"
CREATE_CHANGE_PROCEDURE = "CHANGETRAIL_CREATE_CHANGE"

_EVENTS = {
    ChangeOperation.CREATE: ("INSERT", "REFERENCING NEW ROW new"),
    ChangeOperation.UPDATE: ("UPDATE", "REFERENCING NEW ROW new OLD ROW old"),
    ChangeOperation.DELETE: ("DELETE", "REFERENCING OLD ROW old"),
}

_VARIABLES = (
    ("v_entity_key", "NVARCHAR(5000)"),
    ("v_object_id", "NVARCHAR(5000)"),
    ("v_root_entity_key", "NVARCHAR(5000)"),
    ("v_root_object_id", "NVARCHAR(5000)"),
    ("v_change_log_id", "NVARCHAR(36)"),
    ("v_old", "NCLOB"),
    ("v_new", "NCLOB"),
    ("v_old_label", "NCLOB"),
    ("v_new_label", "NCLOB"),
    ("v_cmp_old", "NVARCHAR(5000)"),
    ("v_cmp_new", "NVARCHAR(5000)"),
)


class HanaRenderer(DialectRenderer):
    kind = "hana"

    def row_column(self, row: str, name: str, scope: RenderScope) -> str:
        return f":{row}.{self.column(name)}"

    def column(self, name: str) -> str:
        return self.quote(name) if self.quoted_names else name.upper()

    def cast_text(self, sql: str) -> str:
        return f"TO_NVARCHAR({sql})"

    def substr(self, sql: str, length: int) -> str:
        return f"LEFT({sql}, {length})"

    def substr_from(self, sql: str, start: int) -> str:
        return f"SUBSTRING({sql}, {start})"

    def session_value(self, name: str) -> str:
        return f"SESSION_CONTEXT({self.literal(name)})"

    def uuid(self) -> str:
        return "SYSUUID"

    def now(self) -> str:
        return "CURRENT_UTCTIMESTAMP"

    def transaction_id(self) -> str:
        return "TO_NVARCHAR(CURRENT_UPDATE_TRANSACTION())"

    def encode_boolean(self, sql: str) -> str:
        return f"CASE WHEN {sql} IS NULL THEN NULL WHEN {sql} = TRUE THEN 'true' ELSE 'false' END"

    def limit_one(self, sql: str) -> str:
        return sql.replace("SELECT ", "SELECT TOP 1 ", 1)


class HanaTriggerGenerator(TriggerGenerator):
    """``.hdbtrigger`` per operation plus the two shared ``.hdbprocedure`` artifacts."""

    kind = "hana"
    renderer_class = HanaRenderer

    def trigger_name(self, entity: str, operation: ChangeOperation | None = None) -> str:
        return super().trigger_name(entity, operation).upper()

    def composition_trigger_name(
        self, target: str, composition: str, operation: ChangeOperation | None = None
    ) -> str:
        return super().composition_trigger_name(target, composition, operation).upper()

    # ------------------------------------------------------------------
    # Bodies
    # ------------------------------------------------------------------

    def _select_into(self, expressions: list[str], variables: list[str]) -> str:
        return f"SELECT {', '.join(expressions)} INTO {', '.join(variables)} FROM DUMMY;"

    def _guard(self, record: ChangeRecord, scope: RenderScope, lines: list[str]) -> str:
        """Record guard usable in a SQLScript ``IF``.

        A change predicate over anything but a plain column is evaluated
        into variables first.
        """
        r = self.renderer
        condition = record.condition
        if isinstance(condition, Changed) and not isinstance(condition.expr, Column):
            lines.append(
                self._select_into(
                    [r.text(condition.expr, scope.at(OLD)), r.text(condition.expr, scope.at(NEW))],
                    ["v_cmp_old", "v_cmp_new"],
                )
            )
            guard = r.changed(":v_cmp_old", ":v_cmp_new")
            if record.skip_element is not None:
                guard = f"({guard} AND {r.element_skip_condition(*record.skip_element)})"
            return guard
        return self.guarded(record, scope)

    def append_statements(
        self, context: RecordContext, records: list[ChangeRecord], row: str
    ) -> list[str]:
        if not records:
            return []
        r = self.renderer
        scope = RenderScope(row)
        lines = [
            self._select_into(
                [r.text(context.entity_key, scope), r.text(context.object_id, scope)],
                ["v_entity_key", "v_object_id"],
            )
        ]
        root_key = root_object_id = "NULL"
        if context.root_key is not None:
            lines.append(self._select_into([r.text(context.root_key, scope)], ["v_root_entity_key"]))
            root_key = ":v_root_entity_key"
        if context.root_object_id is not None:
            lines.append(
                self._select_into([r.text(context.root_object_id, scope)], ["v_root_object_id"])
            )
            root_object_id = ":v_root_object_id"

        guards = [self._guard(record, scope, lines) for record in records]
        lines.append(
            f"IF {' OR '.join(guards)} THEN\n"
            f"  CALL {CREATE_CHANGE_LOG_PROCEDURE}("
            f"{r.literal(context.entity)}, :v_entity_key, "
            f"{r.literal(context.service_entity)}, v_change_log_id);\n"
            "END IF;"
        )
        for record, guard in zip(records, guards):
            values = self.record_values(context, record, scope, ":v_change_log_id")
            fetch = self._select_into(
                [
                    values["value_changed_from"],
                    values["value_changed_to"],
                    values["value_changed_from_label"],
                    values["value_changed_to_label"],
                ],
                ["v_old", "v_new", "v_old_label", "v_new_label"],
            )
            args = ", ".join(
                [
                    r.literal(record.attribute),
                    ":v_old",
                    ":v_new",
                    ":v_old_label",
                    ":v_new_label",
                    r.literal(context.entity),
                    ":v_entity_key",
                    r.literal(context.root_entity),
                    root_key,
                    ":v_object_id",
                    root_object_id,
                    r.literal(record.value_data_type),
                    r.literal(record.operation.value),
                    ":v_change_log_id",
                ]
            )
            call = f"CALL {CREATE_CHANGE_PROCEDURE}({args});"
            lines.append(f"IF {guard} THEN\n{indent(fetch)}\n{indent(call)}\nEND IF;")
        return lines

    def cascade_statements(self, context: RecordContext) -> list[str]:
        r = self.renderer
        entity = r.literal(context.entity)
        return [
            self._select_into([r.text(context.entity_key, RenderScope(OLD))], ["v_entity_key"]),
            f"DELETE FROM {CHANGES_TABLE} WHERE entity = {entity} AND entity_key = :v_entity_key;",
            f"DELETE FROM {CHANGE_LOG_TABLE} WHERE entity = {entity} AND entity_key = :v_entity_key;",
        ]

    def _trigger(
        self,
        name: str,
        operation: ChangeOperation,
        table: str,
        skip_entity: str,
        statements: list[str],
    ) -> str:
        r = self.renderer
        event, referencing = _EVENTS[operation]
        declarations = "\n".join(f"DECLARE {var} {type_};" for var, type_ in _VARIABLES)
        skip = f"{r.flag_raised(SKIP_ALL)} OR {r.flag_raised(entity_skip_var(skip_entity))}"
        body = "\n".join(statements)
        return (
            f"TRIGGER {name} AFTER {event}\n"
            f"ON {table}\n"
            f"{referencing}\n"
            "FOR EACH ROW\n"
            "BEGIN\n"
            f"{indent(declarations)}\n"
            f"  IF NOT ({skip}) THEN\n"
            f"{indent(body, '    ')}\n"
            "  END IF;\n"
            "END"
        )

    def _operation_trigger(self, entity: TrackedEntity, operation: ChangeOperation) -> str | None:
        if not self.enabled(operation):
            return None
        plan = self.plan(entity)
        if operation is ChangeOperation.DELETE and not self.config.preserve_deletes:
            statements = self.cascade_statements(plan.context)
        else:
            row = OLD if operation is ChangeOperation.DELETE else NEW
            statements = self.append_statements(plan.context, self.records(plan, operation), row)
        if not statements:
            return None
        return self._trigger(
            self.trigger_name(entity.name, operation),
            operation,
            self.renderer.table(entity.name),
            entity.name,
            statements,
        )

    def generate_create(self, entity: TrackedEntity) -> str | None:
        return self._operation_trigger(entity, ChangeOperation.CREATE)

    def generate_update(self, entity: TrackedEntity) -> str | None:
        return self._operation_trigger(entity, ChangeOperation.UPDATE)

    def generate_delete(self, entity: TrackedEntity) -> str | None:
        return self._operation_trigger(entity, ChangeOperation.DELETE)

    def generate_entity_triggers(self, entity: TrackedEntity) -> list[GeneratedTrigger]:
        return [
            GeneratedTrigger(
                name=t.name,
                source_text=t.source_text,
                artifact_kind=ArtifactKind.HDBTRIGGER,
                entity=t.entity,
                operations=t.operations,
            )
            for t in super().generate_entity_triggers(entity)
        ]

    def generate_composition_triggers(self, entity: TrackedEntity) -> list[GeneratedTrigger]:
        plan = self.plan(entity)
        triggers = []
        for composition in plan.compositions:
            context = composition.context
            for operation in self.operations:
                if operation is ChangeOperation.DELETE and not self.config.preserve_deletes:
                    statements = self.cascade_statements(context)
                else:
                    record = self.planner.composition_record(composition, operation)
                    row = OLD if operation is ChangeOperation.DELETE else NEW
                    statements = self.append_statements(context, [record], row)
                name = self.composition_trigger_name(context.entity, composition.name, operation)
                triggers.append(
                    GeneratedTrigger(
                        name=name,
                        source_text=self._trigger(
                            name, operation, self.renderer.table(context.table), context.entity, statements
                        ),
                        artifact_kind=ArtifactKind.HDBTRIGGER,
                        entity=context.entity,
                        operations=(operation,),
                    )
                )
        return triggers

    # ------------------------------------------------------------------
    # Procedures
    # ------------------------------------------------------------------

    def generate_support_artifacts(self) -> list[GeneratedTrigger]:
        """The two procedures every generated trigger calls."""
        user = self.renderer.session_value(USER_VARIABLES[self.kind])
        change_log = (
            f"PROCEDURE {CREATE_CHANGE_LOG_PROCEDURE} (\n"
            "  IN entity NVARCHAR(255),\n"
            "  IN entity_key NVARCHAR(5000),\n"
            "  IN service_entity NVARCHAR(255),\n"
            "  OUT change_log_id NVARCHAR(36)\n"
            ")\n"
            "LANGUAGE SQLSCRIPT SQL SECURITY INVOKER AS\n"
            "BEGIN\n"
            "  change_log_id := SYSUUID;\n"
            f"  INSERT INTO {CHANGE_LOG_TABLE} "
            "(id, entity, entity_key, service_entity, created_at, created_by)\n"
            "  VALUES (:change_log_id, :entity, :entity_key, :service_entity, "
            f"CURRENT_UTCTIMESTAMP, {user});\n"
            "END"
        )
        change = (
            f"PROCEDURE {CREATE_CHANGE_PROCEDURE} (\n"
            "  IN attribute NVARCHAR(127),\n"
            "  IN value_changed_from NCLOB,\n"
            "  IN value_changed_to NCLOB,\n"
            "  IN value_changed_from_label NCLOB,\n"
            "  IN value_changed_to_label NCLOB,\n"
            "  IN entity NVARCHAR(255),\n"
            "  IN entity_key NVARCHAR(5000),\n"
            "  IN root_entity NVARCHAR(255),\n"
            "  IN root_entity_key NVARCHAR(5000),\n"
            "  IN object_id NVARCHAR(5000),\n"
            "  IN root_object_id NVARCHAR(5000),\n"
            "  IN value_data_type NVARCHAR(127),\n"
            "  IN modification NVARCHAR(16),\n"
            "  IN change_log_id NVARCHAR(36)\n"
            ")\n"
            "LANGUAGE SQLSCRIPT SQL SECURITY INVOKER AS\n"
            "BEGIN\n"
            f"  INSERT INTO {CHANGES_TABLE} (id, attribute, value_changed_from, value_changed_to, "
            "value_changed_from_label, value_changed_to_label, entity, entity_key, root_entity, "
            "root_entity_key, object_id, root_object_id, value_data_type, modification, "
            "created_at, created_by, transaction_id, change_log_id)\n"
            "  VALUES (SYSUUID, :attribute, :value_changed_from, :value_changed_to, "
            ":value_changed_from_label, :value_changed_to_label, :entity, :entity_key, "
            ":root_entity, :root_entity_key, :object_id, :root_object_id, :value_data_type, "
            f":modification, CURRENT_UTCTIMESTAMP, {user}, "
            f"{self.renderer.transaction_id()}, :change_log_id);\n"
            "END"
        )
        return [
            GeneratedTrigger(
                name=CREATE_CHANGE_LOG_PROCEDURE,
                source_text=change_log,
                artifact_kind=ArtifactKind.HDBPROCEDURE,
            ),
            GeneratedTrigger(
                name=CREATE_CHANGE_PROCEDURE,
                source_text=change,
                artifact_kind=ArtifactKind.HDBPROCEDURE,
            ),
        ]
