"""Skip-control protocol.

Generated triggers read a transaction-scoped flag namespace before they
append anything:

- ``ct.skip`` suppresses every trigger;
- ``ct.skip_entity.<entity>`` suppresses the triggers of one entity;
- ``ct.skip_element.<entity>.<element>`` suppresses one attribute's records.

Entity and element names have their dots replaced by underscores. An
in-process writer that already records a change itself raises the relevant
flags on its connection before the write and resets them afterwards, since
session state otherwise leaks into later transactions on a pooled connection.

``TransactionContext`` is the explicit handle for this: it collects flags
plus the acting user and locale, renders the dialect's set/reset statements,
and applies them around a block of work.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from typing import Any, Iterator

from changetrail.exceptions import UnsupportedBackendError
from changetrail.models.config import normalize_db_kind
from changetrail.models.schema import EntityDefinition, SchemaModel, is_opted_out

logger = logging.getLogger(__name__)

SKIP_ALL = "ct.skip"
SKIP_ENTITY_PREFIX = "ct.skip_entity."
SKIP_ELEMENT_PREFIX = "ct.skip_element."

TRUE = "true"
FALSE = "false"

# Session variables holding the acting user and locale, per dialect
USER_VARIABLES = {
    "sqlite": "$user.id",
    "postgres": "cap.applicationuser",
    "hana": "APPLICATIONUSER",
    "h2": "@ct_user",
}
LOCALE_VARIABLES = {
    "sqlite": "$user.locale",
    "postgres": "cap.locale",
    "hana": "LOCALE",
    "h2": "@ct_locale",
}
# SQLite only: an explicit timestamp overriding datetime('now')
NOW_VARIABLE = "$now"
TRANSACTION_VARIABLE = "$transaction.id"


def _flat(name: str) -> str:
    return name.replace(".", "_")


def entity_skip_var(entity: str) -> str:
    """Flag name suppressing every trigger of *entity*."""
    return f"{SKIP_ENTITY_PREFIX}{_flat(entity)}"


def element_skip_var(entity: str, element: str) -> str:
    """Flag name suppressing the records of one element of *entity*."""
    return f"{SKIP_ELEMENT_PREFIX}{_flat(entity)}.{_flat(element)}"


def h2_variable(name: str) -> str:
    """H2 user variables are plain identifiers: ``ct.skip`` -> ``@ct_skip``."""
    return "@" + re.sub(r"[^A-Za-z0-9_]", "_", name)


def session_variable(name: str, dialect: str) -> str:
    """Dialect-native spelling of a flag name."""
    return h2_variable(name) if normalize_db_kind(dialect) == "h2" else name


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _rows(data: Any) -> list[Any]:
    """A written payload as a list of rows."""
    if data is None:
        return []
    return list(data) if isinstance(data, (list, tuple)) else [data]


class TransactionContext:
    """Skip flags and session identity for one unit of work.

    Flags are recorded in the order they were raised. Methods that raise a
    flag return the context so calls can be chained::

        ctx = TransactionContext(user="alice").skip("shop.OrderItems")
        with ctx.applied(connection, "sqlite"):
            connection.execute(...)
    """

    def __init__(self, user: str | None = None, locale: str | None = None) -> None:
        self.user = user
        self.locale = locale
        self._flags: list[str] = []

    @classmethod
    def for_write(
        cls,
        schema: SchemaModel,
        target: str,
        data: Any = None,
        user: str | None = None,
        locale: str | None = None,
    ) -> TransactionContext:
        """Derive the flags for one write from the schema's opt-outs.

        *target* is the entity the write addresses, usually a service
        projection. An explicit ``changelog: false`` (or ``null``) raises:

        - ``ct.skip`` when set on the target's service;
        - the table's entity flag when set on the target itself, or on the
          service entity of a composition target present in *data*;
        - element flags for opted-out elements of the target and of those
          composition targets, mapped back through projection renames.

        *data* is the written row or list of rows; nested composition rows
        are followed to any depth.
        """
        ctx = cls(user=user, locale=locale)
        definition = schema.entity(target)
        table = schema.table_entity(definition)
        if table is None:
            logger.warning("No table entity behind %s, no skip flags derived", target)
            return ctx
        service = schema.service_of(definition)
        if service is not None and is_opted_out(service):
            logger.debug("Service %s opts out of change tracking", service.name)
            ctx.skip_all()
        if is_opted_out(definition):
            ctx.skip(table.name)
        ctx._skip_elements(definition, table)
        for row in _rows(data):
            ctx._collect_deep(schema, service, table, row)
        return ctx

    def _skip_elements(self, definition: EntityDefinition, table: EntityDefinition) -> None:
        for element in definition.elements:
            if is_opted_out(element):
                db_name = definition.base_element_name(element.name)
                logger.debug("Skipping element %s.%s (as %s)", table.name, db_name, element.name)
                self.skip_element(table.name, db_name)

    def _collect_deep(
        self,
        schema: SchemaModel,
        service: EntityDefinition | None,
        table: EntityDefinition,
        row: Any,
    ) -> None:
        if not isinstance(row, dict):
            return
        for element in table.elements:
            if not element.is_composition or element.name not in row:
                continue
            child = schema.get(element.target)
            if child is None:
                continue
            service_entity = schema.find_service_entity(service, child)
            if service_entity is not None:
                if is_opted_out(service_entity):
                    self.skip(child.name)
                self._skip_elements(service_entity, child)
            for child_row in _rows(row[element.name]):
                self._collect_deep(schema, service, child, child_row)

    def _raise(self, flag: str) -> TransactionContext:
        if flag not in self._flags:
            self._flags.append(flag)
        return self

    def skip_all(self) -> TransactionContext:
        return self._raise(SKIP_ALL)

    def skip(self, entity: str) -> TransactionContext:
        return self._raise(entity_skip_var(entity))

    def skip_element(self, entity: str, element: str) -> TransactionContext:
        return self._raise(element_skip_var(entity, element))

    @property
    def flags(self) -> tuple[str, ...]:
        return tuple(self._flags)

    def is_skipped(self, entity: str, element: str | None = None) -> bool:
        """Whether a trigger reading these flags would skip *entity* (or one element)."""
        if SKIP_ALL in self._flags or entity_skip_var(entity) in self._flags:
            return True
        return element is not None and element_skip_var(entity, element) in self._flags

    def variables(self, dialect: str) -> dict[str, str]:
        """Every session variable this context sets, in dialect spelling."""
        dialect = normalize_db_kind(dialect)
        if dialect not in USER_VARIABLES:
            raise UnsupportedBackendError(dialect, sorted(USER_VARIABLES))
        values = {session_variable(flag, dialect): TRUE for flag in self._flags}
        if self.user is not None:
            values[USER_VARIABLES[dialect]] = self.user
        if self.locale is not None:
            values[LOCALE_VARIABLES[dialect]] = self.locale
        return values

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def set_statements(self, dialect: str) -> list[str]:
        """Statements raising the flags on a connection.

        SQLite has no session variables; its flags live in the connection's
        session context (see :meth:`apply`), so the list is empty.
        """
        dialect = normalize_db_kind(dialect)
        values = self.variables(dialect)
        if dialect == "sqlite":
            return []
        return [self._assign(name, value, dialect) for name, value in values.items()]

    def reset_statements(self, dialect: str) -> list[str]:
        """Statements lowering every flag this context raised.

        The user and locale are cleared too.
        """
        dialect = normalize_db_kind(dialect)
        names = self.variables(dialect)
        statements = []
        for name in names:
            if name in (USER_VARIABLES[dialect], LOCALE_VARIABLES[dialect]):
                statements.append(self._clear(name, dialect))
            else:
                statements.append(self._assign(name, FALSE, dialect))
        return [s for s in statements if s]

    @staticmethod
    def _assign(name: str, value: str, dialect: str) -> str:
        if dialect == "postgres":
            return f"SELECT set_config({_quote(name)}, {_quote(value)}, true)"
        if dialect == "hana":
            return f"SET {_quote(name)} = {_quote(value)}"
        if dialect == "h2":
            return f"SET {name} = {_quote(value)}"
        return ""

    @staticmethod
    def _clear(name: str, dialect: str) -> str:
        if dialect == "postgres":
            return f"SELECT set_config({_quote(name)}, '', true)"
        if dialect == "hana":
            return f"UNSET {_quote(name)}"
        if dialect == "h2":
            return f"SET {name} = NULL"
        return ""

    # ------------------------------------------------------------------
    # Applying
    # ------------------------------------------------------------------

    def apply(self, connection: Any, dialect: str = "sqlite") -> None:
        """Raise the flags on a SQLAlchemy connection."""
        dialect = normalize_db_kind(dialect)
        if dialect == "sqlite":
            from changetrail.storage.engine import session_context

            session_context(connection).update(self.variables(dialect))
        else:
            for statement in self.set_statements(dialect):
                connection.exec_driver_sql(statement)
        logger.debug("Applied skip flags %s for %s", self._flags, dialect)

    def reset(self, connection: Any, dialect: str = "sqlite") -> None:
        """Lower every flag raised by :meth:`apply` and clear the user and locale."""
        dialect = normalize_db_kind(dialect)
        if dialect == "sqlite":
            from changetrail.storage.engine import session_context

            context = session_context(connection)
            for name in self.variables(dialect):
                context.pop(name, None)
        else:
            for statement in self.reset_statements(dialect):
                connection.exec_driver_sql(statement)
        logger.debug("Reset skip flags %s for %s", self._flags, dialect)

    @contextmanager
    def applied(self, connection: Any, dialect: str = "sqlite") -> Iterator[TransactionContext]:
        """Apply for the duration of a block; always resets, even when the block fails."""
        self.apply(connection, dialect)
        try:
            yield self
        finally:
            self.reset(connection, dialect)
