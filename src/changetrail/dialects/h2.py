"""Host-language-in-trigger dialect (H2).

H2 cannot express correlated boolean filters in its trigger syntax, so each
table gets one trigger whose body is Java source: an anonymous
``TriggerAdapter`` that checks skip flags and null guards as Java
conditionals and issues one prepared statement per change record.

Row values reach the SQL as positional string parameters. While rendering,
row references become ``?{n}`` markers; :func:`bind` turns the markers into
``?`` placeholders and the ordered list of Java argument expressions, so
repeated references always line up with their parameters.
"""

from __future__ import annotations

import logging
import re

from changetrail.dialects.base import (
    CHANGE_COLUMNS,
    CHANGE_LOG_COLUMNS,
    DEFAULT_LOCALE,
    NEW,
    OLD,
    DialectRenderer,
    RenderScope,
    TriggerGenerator,
    indent,
)
from changetrail.models.tracked import ChangeOperation, GeneratedTrigger, TrackedEntity
from changetrail.planning.plan import (
    AnyOf,
    ChangeRecord,
    Changed,
    Column,
    CompositionPlan,
    Condition,
    Expr,
    NotNull,
    RecordContext,
)
from changetrail.skip import (
    LOCALE_VARIABLES,
    SKIP_ALL,
    USER_VARIABLES,
    element_skip_var,
    entity_skip_var,
    h2_variable,
)
from changetrail.storage.schema import CHANGE_LOG_TABLE, CHANGES_TABLE

logger = logging.getLogger(__name__)

JAVA = "java"
CHANGE_LOG_ID = "changeLogId"

_MARKER = re.compile(r"\?\{(\d+)\}")

_HELPERS = """\
private boolean sessionFlag(java.sql.Connection conn, String variable) throws java.sql.SQLException {
    try (java.sql.Statement stmt = conn.createStatement();
         java.sql.ResultSet rs = stmt.executeQuery("SELECT " + variable)) {
        return rs.next() && "true".equals(rs.getString(1));
    }
}

private String lookup(java.sql.Connection conn, String sql, String... params) throws java.sql.SQLException {
    try (java.sql.PreparedStatement stmt = conn.prepareStatement(sql)) {
        for (int i = 0; i < params.length; i++) {
            stmt.setString(i + 1, params[i]);
        }
        try (java.sql.ResultSet rs = stmt.executeQuery()) {
            return rs.next() ? rs.getString(1) : null;
        }
    }
}

private void execute(java.sql.Connection conn, String sql, String... params) throws java.sql.SQLException {
    try (java.sql.PreparedStatement stmt = conn.prepareStatement(sql)) {
        for (int i = 0; i < params.length; i++) {
            stmt.setString(i + 1, params[i]);
        }
        stmt.executeUpdate();
    }
}"""


def java_string(text: str) -> str:
    """A Java string literal."""
    escaped = text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{escaped}"'


def java_row_value(row: str, column: str) -> str:
    return f"{row}Row.getString({java_string(column)})"


def bind(sql: str, bindings: list[tuple[str, str]]) -> tuple[str, list[str]]:
    """Replace ``?{n}`` markers with ``?`` and return the Java arguments in order."""
    params: list[str] = []

    def replace(match: re.Match) -> str:
        row, value = bindings[int(match.group(1))]
        params.append(value if row == JAVA else java_row_value(row, value))
        return "?"

    return _MARKER.sub(replace, sql), params


class H2Renderer(DialectRenderer):
    kind = "h2"

    def column(self, name: str) -> str:
        return self.quote(name) if self.quoted_names else name.upper()

    def row_column(self, row: str, name: str, scope: RenderScope) -> str:
        scope.bindings.append((row, self.column(name).strip('"')))
        return f"CAST(?{{{len(scope.bindings) - 1}}} AS VARCHAR)"

    def java_param(self, code: str, scope: RenderScope) -> str:
        scope.bindings.append((JAVA, code))
        return f"?{{{len(scope.bindings) - 1}}}"

    def cast_text(self, sql: str) -> str:
        return f"CAST({sql} AS VARCHAR)"

    def substr(self, sql: str, length: int) -> str:
        return f"LEFT({sql}, {length})"

    def session_value(self, name: str) -> str:
        return f"CAST({h2_variable(name)} AS VARCHAR)"

    def user(self) -> str:
        return f"COALESCE(CAST({USER_VARIABLES[self.kind]} AS VARCHAR), CURRENT_USER)"

    def locale(self) -> str:
        return f"COALESCE(CAST({LOCALE_VARIABLES[self.kind]} AS VARCHAR), '{DEFAULT_LOCALE}')"

    def uuid(self) -> str:
        return "CAST(RANDOM_UUID() AS VARCHAR)"

    def transaction_id(self) -> str:
        return "CAST(TRANSACTION_ID() AS VARCHAR)"

    def encode_boolean(self, sql: str) -> str:
        # Row values arrive as strings: 'TRUE'/'FALSE' from BOOLEAN, '1'/'0' from numbers
        return (
            f"CASE WHEN {sql} IS NULL THEN NULL "
            f"WHEN UPPER({sql}) IN ('1', 'TRUE') THEN 'true' ELSE 'false' END"
        )

    def join_non_empty(self, parts: list[str], separator: str) -> str:
        if len(parts) == 1:
            return f"NULLIF({self.cast_text(parts[0])}, '')"
        args = ", ".join(f"NULLIF({self.cast_text(p)}, '')" for p in parts)
        return f"NULLIF(CONCAT_WS({self.literal(separator)}, {args}), '')"


class H2TriggerGenerator(TriggerGenerator):
    """One Java-bodied trigger per table covering all enabled operations."""

    kind = "h2"
    renderer_class = H2Renderer

    def trigger_name(self, entity: str, operation: ChangeOperation | None = None) -> str:
        return super().trigger_name(entity).upper()

    def composition_trigger_name(
        self, target: str, composition: str, operation: ChangeOperation | None = None
    ) -> str:
        return super().composition_trigger_name(target, composition).upper()

    # ------------------------------------------------------------------
    # Java fragments
    # ------------------------------------------------------------------

    def _call(self, function: str, sql: str, scope: RenderScope) -> str:
        sql, params = bind(sql, scope.bindings)
        args = "".join(f", {p}" for p in params)
        return f"{function}(conn, {java_string(sql)}{args})"

    def lookup_call(self, expr: Expr, row: str) -> str:
        scope = RenderScope(row)
        sql = "SELECT " + self.renderer.text(expr, scope)
        return self._call("lookup", sql, scope)

    def java_condition(self, condition: Condition, row: str) -> str:
        """A record condition as a Java boolean expression."""
        if isinstance(condition, NotNull):
            if isinstance(condition.expr, Column):
                column = self.renderer.column(condition.expr.name).strip('"')
                return f"{row}Row.getObject({java_string(column)}) != null"
            return f"{self.lookup_call(condition.expr, row)} != null"
        if isinstance(condition, Changed):
            if isinstance(condition.expr, Column):
                column = java_string(self.renderer.column(condition.expr.name).strip('"'))
                old, new = f"oldRow.getObject({column})", f"newRow.getObject({column})"
            else:
                old, new = self.lookup_call(condition.expr, OLD), self.lookup_call(condition.expr, NEW)
            return f"!java.util.Objects.equals({old}, {new})"
        if isinstance(condition, AnyOf):
            parts = [self.java_condition(c, row) for c in condition.conditions]
            return parts[0] if len(parts) == 1 else "(" + " || ".join(parts) + ")"
        raise TypeError(f"Cannot render {type(condition).__name__}")

    def java_guard(self, record: ChangeRecord, row: str) -> str:
        guard = self.java_condition(record.condition, row)
        if record.skip_element is None:
            return guard
        variable = h2_variable(element_skip_var(*record.skip_element))
        return f"{guard} && !sessionFlag(conn, {java_string(variable)})"

    def _insert_call(self, table: str, columns: tuple[str, ...], values: dict[str, str], scope: RenderScope) -> str:
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join(values[c] for c in columns)})"
        return self._call("execute", sql, scope) + ";"

    def append_statements(
        self, context: RecordContext, records: list[ChangeRecord], row: str
    ) -> str | None:
        if not records:
            return None
        r = self.renderer
        lines = [f"String {CHANGE_LOG_ID} = java.util.UUID.randomUUID().toString();"]
        for i, record in enumerate(records):
            lines.append(f"boolean r{i} = {self.java_guard(record, row)};")

        scope = RenderScope(row)
        header = self.change_log_values(context, scope, row)
        header["id"] = r.java_param(CHANGE_LOG_ID, scope)
        any_guard = " || ".join(f"r{i}" for i in range(len(records)))
        lines.append(
            f"if ({any_guard}) {{\n"
            f"{indent(self._insert_call(CHANGE_LOG_TABLE, CHANGE_LOG_COLUMNS, header, scope), '    ')}\n"
            "}"
        )
        for i, record in enumerate(records):
            scope = RenderScope(row)
            values = self.record_values(context, record, scope, r.java_param(CHANGE_LOG_ID, scope))
            insert = self._insert_call(CHANGES_TABLE, CHANGE_COLUMNS, values, scope)
            lines.append(f"if (r{i}) {{\n{indent(insert, '    ')}\n}}")
        return "\n".join(lines)

    def cascade_statements(self, context: RecordContext) -> str:
        r = self.renderer
        lines = []
        for table in (CHANGES_TABLE, CHANGE_LOG_TABLE):
            scope = RenderScope(OLD)
            sql = (
                f"DELETE FROM {table} WHERE entity = {r.literal(context.entity)} "
                f"AND entity_key = {r.text(context.entity_key, scope)}"
            )
            lines.append(self._call("execute", sql, scope) + ";")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def generate_create(self, entity: TrackedEntity) -> str | None:
        if not self.enabled(ChangeOperation.CREATE):
            return None
        plan = self.plan(entity)
        return self.append_statements(plan.context, self.records(plan, ChangeOperation.CREATE), NEW)

    def generate_update(self, entity: TrackedEntity) -> str | None:
        if not self.enabled(ChangeOperation.UPDATE):
            return None
        plan = self.plan(entity)
        return self.append_statements(plan.context, self.records(plan, ChangeOperation.UPDATE), NEW)

    def generate_delete(self, entity: TrackedEntity) -> str | None:
        if not self.enabled(ChangeOperation.DELETE):
            return None
        plan = self.plan(entity)
        if self.config.preserve_deletes:
            return self.append_statements(
                plan.context, self.records(plan, ChangeOperation.DELETE), OLD
            )
        return self.cascade_statements(plan.context)

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    def _trigger(
        self, name: str, table: str, skip_entity: str, branches: dict[ChangeOperation, str]
    ) -> str:
        skip = " || ".join(
            f"sessionFlag(conn, {java_string(h2_variable(flag))})"
            for flag in (SKIP_ALL, entity_skip_var(skip_entity))
        )
        tests = {
            ChangeOperation.CREATE: "oldRow == null",
            ChangeOperation.DELETE: "newRow == null",
            ChangeOperation.UPDATE: "oldRow != null && newRow != null",
        }
        dispatch = []
        for i, (operation, body) in enumerate(branches.items()):
            keyword = "if" if i == 0 else "} else if"
            dispatch.append(f"{keyword} ({tests[operation]}) {{\n{indent(body, '    ')}")
        fire = (
            f"if ({skip}) {{\n    return;\n}}\n"
            + "\n".join(dispatch)
            + "\n}"
        )
        events = ", ".join(
            {
                ChangeOperation.CREATE: "INSERT",
                ChangeOperation.UPDATE: "UPDATE",
                ChangeOperation.DELETE: "DELETE",
            }[op]
            for op in branches
        )
        adapter = (
            "@Override\n"
            "public void fire(java.sql.Connection conn, java.sql.ResultSet oldRow, "
            "java.sql.ResultSet newRow) throws java.sql.SQLException {\n"
            f"{indent(fire, '    ')}\n"
            "}\n\n"
            f"{_HELPERS}"
        )
        return (
            f"CREATE TRIGGER {name} AFTER {events} ON {table} FOR EACH ROW AS $$\n"
            "org.h2.api.Trigger create() {\n"
            "    return new org.h2.tools.TriggerAdapter() {\n"
            f"{indent(adapter, '        ')}\n"
            "    };\n"
            "}\n"
            "$$;"
        )

    def generate_entity_triggers(self, entity: TrackedEntity) -> list[GeneratedTrigger]:
        branches = {}
        for operation in self.operations:
            body = self._generate_operation(entity, operation)
            if body is not None:
                branches[operation] = body
        if not branches:
            return []
        name = self.trigger_name(entity.name)
        text = self._trigger(name, self.renderer.table(entity.name), entity.name, branches)
        return [
            GeneratedTrigger(
                name=name, source_text=text, entity=entity.name, operations=tuple(branches)
            )
        ]

    def _composition_branch(self, composition: CompositionPlan, operation: ChangeOperation) -> str | None:
        if operation is ChangeOperation.DELETE and not self.config.preserve_deletes:
            return self.cascade_statements(composition.context)
        record = self.planner.composition_record(composition, operation)
        row = OLD if operation is ChangeOperation.DELETE else NEW
        return self.append_statements(composition.context, [record], row)

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
            name = self.composition_trigger_name(context.entity, composition.name)
            text = self._trigger(name, self.renderer.table(context.table), context.entity, branches)
            triggers.append(
                GeneratedTrigger(
                    name=name, source_text=text, entity=context.entity, operations=tuple(branches)
                )
            )
            logger.debug("H2 composition trigger %s on %s", name, context.entity)
        return triggers
