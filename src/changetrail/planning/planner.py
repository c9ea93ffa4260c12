"""Identity and label resolution planner.

Turns the analyzer's resolved annotation paths into expression plans:

- a locally stored identifier fragment reads the firing row directly;
- a computed fragment is read back through a lookup on the entity's own
  table keyed by its primary key;
- a relationship path becomes a correlated lookup that starts from the
  row's foreign-key columns and joins hop by hop;
- reference labels may name several target fields, and prefer a localized
  texts row for the session locale when one exists.

The root of a composition child is described by "rebasing" the root's own
identifier plan onto a lookup of the root row through the root binding.
"""

from __future__ import annotations

import logging

from changetrail.models.tracked import (
    ChangeOperation,
    CompositionOfMany,
    ObjectIdentifierSpec,
    ResolvedPath,
    RootBindingKind,
    RootReference,
    TrackedAttribute,
    TrackedEntity,
)
from changetrail.planning.encoding import (
    COMPOSITE_KEY_SEPARATOR,
    KEY_SEPARATOR,
    TypeClass,
    classify,
)
from changetrail.planning.plan import (
    AnyOf,
    AttributePlan,
    ChangeRecord,
    Changed,
    Coalesce,
    Column,
    CompositionPlan,
    Concat,
    Const,
    EntityPlan,
    Expr,
    Join,
    JoinNonEmpty,
    Lookup,
    NotNull,
    RecordContext,
)

logger = logging.getLogger(__name__)

# Locale key column of localized texts entities
LOCALE_COLUMN = "locale"
COMPOSITION_TYPE = "cds.Composition"


def key_expression(columns: tuple[str, ...], separator: str = KEY_SEPARATOR) -> Expr:
    """Entity key: the key columns cast to text and joined with ``'||'``."""
    if len(columns) == 1:
        return Column(columns[0])
    return Concat(tuple(Column(c) for c in columns), separator)


def path_lookup(path: ResolvedPath) -> Lookup:
    """Correlated lookup for a path with at least one hop."""
    first, rest = path.hops[0], path.hops[1:]
    return Lookup(
        entity=first.target,
        where=tuple((target_col, Column(source_col)) for target_col, source_col in first.pairs),
        joins=tuple(Join(hop.target, hop.pairs) for hop in rest),
        select=(path.column,),
    )


def localized(lookup: Lookup, texts_entity: str) -> Expr:
    """Prefer the texts row for the session locale, falling back to *lookup*."""
    if lookup.joins:
        last = lookup.joins[-1]
        joins = lookup.joins[:-1] + (Join(texts_entity, last.on),)
        texts_lookup = Lookup(
            entity=lookup.entity,
            where=lookup.where,
            joins=joins,
            select=lookup.select,
            separator=lookup.separator,
            locale_column=LOCALE_COLUMN,
        )
    else:
        texts_lookup = Lookup(
            entity=texts_entity,
            where=lookup.where,
            select=lookup.select,
            separator=lookup.separator,
            locale_column=LOCALE_COLUMN,
        )
    return Coalesce((texts_lookup, lookup))


def rebase(expr: Expr, entity: str, pairs: tuple[tuple[str, str], ...]) -> Expr:
    """Re-express a row-relative plan of *entity* from a related row.

    *pairs* holds ``(column on entity, column on the firing row)`` equalities
    locating the *entity* row. Columns become lookups on that row and
    existing lookups gain a leading join.
    """
    where = tuple((col, Column(row_col)) for col, row_col in pairs)
    if isinstance(expr, Column):
        return Lookup(entity=entity, where=where, select=(expr.name,))
    if isinstance(expr, Const):
        return expr
    if isinstance(expr, Lookup):
        on = []
        for col, value in expr.where:
            if not isinstance(value, Column):
                raise ValueError(f"Cannot rebase lookup on {expr.entity}: nested where value")
            on.append((col, value.name))
        joins = (Join(expr.entity, tuple(on)),) + expr.joins
        return Lookup(
            entity=entity,
            where=where,
            joins=joins,
            select=expr.select,
            separator=expr.separator,
            locale_column=expr.locale_column,
        )
    parts = tuple(rebase(p, entity, pairs) for p in expr.parts)
    if isinstance(expr, Concat):
        return Concat(parts, expr.separator)
    if isinstance(expr, JoinNonEmpty):
        return JoinNonEmpty(parts, expr.separator)
    return Coalesce(parts)


class ResolutionPlanner:
    """Builds EntityPlan objects from TrackedEntity snapshots. Stateless."""

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def fragment(self, entity: str, keys: tuple[str, ...], path: ResolvedPath) -> Expr:
        """Expression for one identifier fragment of *entity*."""
        if path.hops:
            lookup = path_lookup(path)
            if path.texts_entity:
                return localized(lookup, path.texts_entity)
            return lookup
        if path.computed:
            # Computed values are only trustworthy once stored; read them back
            return Lookup(
                entity=entity,
                where=tuple((k, Column(k)) for k in keys),
                select=(path.column,),
            )
        return Column(path.column)

    def identifier_parts(
        self, entity: str, keys: tuple[str, ...], spec: ObjectIdentifierSpec
    ) -> tuple[Expr, ...]:
        return tuple(self.fragment(entity, keys, f.resolved) for f in spec.fields)

    def object_identifier(
        self,
        entity: str,
        keys: tuple[str, ...],
        spec: ObjectIdentifierSpec,
        fallback: Expr,
    ) -> Expr:
        """Comma-joined identifier fragments in declared order, else *fallback*."""
        parts = self.identifier_parts(entity, keys, spec)
        if not parts:
            return fallback
        return Coalesce((JoinNonEmpty(parts), fallback))

    # ------------------------------------------------------------------
    # Root
    # ------------------------------------------------------------------

    def root_key(self, root: RootReference) -> Expr:
        binding = root.binding
        if binding.kind is RootBindingKind.DIRECT:
            return key_expression(binding.child_columns)
        return Lookup(
            entity=root.entity,
            where=tuple((root_col, Column(child_col)) for root_col, child_col in binding.pairs),
            select=root.primary_keys,
            separator=KEY_SEPARATOR,
        )

    def root_object_identifier(self, root: RootReference, root_key: Expr) -> Expr:
        parts = self.identifier_parts(
            root.entity, root.primary_keys, root.object_identifier
        )
        if not parts:
            return root_key
        pairs = root.binding.pairs
        return Coalesce((rebase(JoinNonEmpty(parts), root.entity, pairs), root_key))

    # ------------------------------------------------------------------
    # Attributes
    # ------------------------------------------------------------------

    def attribute_value(self, attribute: TrackedAttribute) -> Expr:
        columns = attribute.source_columns
        if len(columns) == 1:
            return Column(columns[0])
        return Concat(tuple(Column(c) for c in columns), COMPOSITE_KEY_SEPARATOR)

    def label(self, attribute: TrackedAttribute) -> Expr | None:
        """Label plan for a reference attribute, None when it has no label paths."""
        if not attribute.label_paths:
            return None
        parts: list[Expr] = []
        for path in attribute.label_paths:
            if path.hops:
                lookup = path_lookup(path)
                parts.append(localized(lookup, path.texts_entity) if path.texts_entity else lookup)
            else:
                parts.append(Column(path.column))
        if len(parts) == 1:
            return parts[0]
        return JoinNonEmpty(tuple(parts))

    def plan_attribute(self, attribute: TrackedAttribute) -> AttributePlan:
        type_class = classify(attribute.declared_type)
        if attribute.is_relationship:
            type_class = TypeClass.RELATIONSHIP
        return AttributePlan(
            attribute=attribute,
            columns=attribute.source_columns,
            value=self.attribute_value(attribute),
            type_class=type_class,
            label=self.label(attribute),
        )

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def plan_composition(
        self, entity: TrackedEntity, composition: CompositionOfMany
    ) -> CompositionPlan:
        child_key = key_expression(composition.target_primary_keys)
        object_id = self.object_identifier(
            composition.target,
            composition.target_primary_keys,
            composition.object_identifier,
            child_key,
        )
        root_key = key_expression(composition.binding.child_columns)
        root_parts = self.identifier_parts(
            entity.name, entity.primary_keys, entity.object_identifier
        )
        if root_parts:
            rooted: Expr = Coalesce(
                (rebase(JoinNonEmpty(root_parts), entity.name, composition.binding.pairs), root_key)
            )
        else:
            rooted = root_key
        context = RecordContext(
            entity=composition.target,
            table=composition.target,
            entity_key=child_key,
            object_id=object_id,
            service_entity=entity.service_entity or entity.name,
            root_entity=entity.name,
            root_key=root_key,
            root_object_id=rooted,
        )
        return CompositionPlan(
            name=composition.name,
            context=context,
            object_id=object_id,
            key_columns=composition.target_primary_keys,
        )

    def plan(self, entity: TrackedEntity) -> EntityPlan:
        entity_key = key_expression(entity.primary_keys)
        object_id = self.object_identifier(
            entity.name, entity.primary_keys, entity.object_identifier, entity_key
        )
        root_entity = root_key = root_object_id = None
        if entity.root is not None:
            root_entity = entity.root.entity
            root_key = self.root_key(entity.root)
            root_object_id = self.root_object_identifier(entity.root, root_key)
        context = RecordContext(
            entity=entity.name,
            table=entity.name,
            entity_key=entity_key,
            object_id=object_id,
            service_entity=entity.service_entity or entity.name,
            root_entity=root_entity,
            root_key=root_key,
            root_object_id=root_object_id,
        )
        compositions = tuple(
            self.plan_composition(entity, c) for c in entity.compositions_of_many
        )
        logger.debug(
            "Planned %s: %d attributes, %d compositions",
            entity.name,
            len(entity.attributes),
            len(compositions),
        )
        return EntityPlan(
            context=context,
            primary_keys=entity.primary_keys,
            attributes=tuple(self.plan_attribute(a) for a in entity.attributes),
            compositions=compositions,
        )

    # ------------------------------------------------------------------
    # Change records
    # ------------------------------------------------------------------

    def records(self, plan: EntityPlan, operation: ChangeOperation) -> list[ChangeRecord]:
        """One conditional change record per tracked attribute.

        Create and delete are guarded by a not-null check on the attribute's
        columns; update by the null-safe change predicate.
        """
        records = []
        for attribute in plan.attributes:
            columns = tuple(Column(c) for c in attribute.columns)
            if operation is ChangeOperation.UPDATE:
                condition = AnyOf(tuple(Changed(c) for c in columns))
            else:
                condition = AnyOf(tuple(NotNull(c) for c in columns))
            old = attribute.value if operation is not ChangeOperation.CREATE else None
            new = attribute.value if operation is not ChangeOperation.DELETE else None
            records.append(
                ChangeRecord(
                    attribute=attribute.name,
                    value_data_type=attribute.value_data_type,
                    operation=operation,
                    condition=condition,
                    type_class=attribute.type_class,
                    old=old,
                    new=new,
                    old_label=attribute.label if old is not None else None,
                    new_label=attribute.label if new is not None else None,
                    skip_element=(plan.entity, attribute.name),
                )
            )
        return records

    def composition_record(
        self, composition: CompositionPlan, operation: ChangeOperation
    ) -> ChangeRecord:
        """The single record a composition-of-many trigger appends.

        The value is the child's object identifier; an update only records
        when that identifier changed.
        """
        if operation is ChangeOperation.UPDATE:
            condition: AnyOf | Changed | NotNull = Changed(composition.object_id)
        else:
            condition = NotNull(composition.context.entity_key)
        return ChangeRecord(
            attribute=composition.name,
            value_data_type=COMPOSITION_TYPE,
            operation=operation,
            condition=condition,
            type_class=TypeClass.RELATIONSHIP,
            old=composition.object_id if operation is not ChangeOperation.CREATE else None,
            new=composition.object_id if operation is not ChangeOperation.DELETE else None,
            skip_element=(composition.context.root_entity or "", composition.name),
        )
