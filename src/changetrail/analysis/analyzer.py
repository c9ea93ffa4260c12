"""Schema analyzer.

Walks one entity definition plus the relationship graph around it and
produces an immutable TrackedEntity snapshot: primary keys, tracked
attributes, composition-of-many descriptors, the object identifier spec and
the root binding. Pure and dialect-agnostic.

Unresolvable annotation paths are never fatal. They are dropped, logged,
and recorded as ModelResolutionWarning instances on ``warnings``.
"""

from __future__ import annotations

import logging

from changetrail.analysis.collector import CollectedEntity, analyze_compositions
from changetrail.exceptions import ModelResolutionWarning
from changetrail.models.schema import (
    ElementDefinition,
    EntityDefinition,
    SchemaModel,
    is_annotated,
)
from changetrail.models.tracked import (
    CompositionOfMany,
    ObjectIdentifierField,
    ObjectIdentifierSpec,
    PathHop,
    RelationshipKind,
    ResolvedPath,
    RootBinding,
    RootBindingKind,
    RootReference,
    TrackedAttribute,
    TrackedEntity,
)

logger = logging.getLogger(__name__)

# Conventional name of the back-link element on composition children
BACK_LINK_ELEMENT = "up_"


class SchemaAnalyzer:
    """Derives TrackedEntity snapshots from a schema model.

    The analyzer is deterministic: analyzing the same model twice yields
    equal snapshots with identical ordering.
    """

    def __init__(self, model: SchemaModel) -> None:
        self.model = model
        self.warnings: list[ModelResolutionWarning] = []
        self._hierarchy: dict[str, str] | None = None

    @property
    def hierarchy(self) -> dict[str, str]:
        if self._hierarchy is None:
            self._hierarchy = analyze_compositions(self.model)
        return self._hierarchy

    def _warn(self, entity: EntityDefinition, message: str, path: str | None = None) -> None:
        warning = ModelResolutionWarning(entity.name, message, path)
        self.warnings.append(warning)
        logger.warning("%s", message)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def join_pairs(self, element: ElementDefinition) -> tuple[tuple[str, str], ...]:
        """Equalities joining a relationship's target to its declaring entity.

        Managed relationships join on their foreign keys; unmanaged ones on
        their on-condition pairs. Empty when neither is declared.
        """
        if element.foreign_keys:
            return tuple((fk, f"{element.name}_{fk}") for fk in element.foreign_keys)
        return tuple((c.target, c.source) for c in element.on)

    def resolve_path(self, entity: EntityDefinition, path: str) -> ResolvedPath | None:
        """Resolve an annotation path by walking relationships hop by hop.

        When a segment is not an element of the current entity, the
        flattened tail (remaining segments joined by ``_``) is tried as a
        physical column, which covers pre-flattened foreign-key columns.
        A path ending in a foreign-key field of the last relationship
        resolves to that local foreign-key column without a lookup.

        Returns None (and records a warning) when the path cannot be resolved.
        """
        segments = path.split(".")
        current = entity
        hops: list[PathHop] = []
        for i, segment in enumerate(segments):
            element = current.element(segment)
            if element is None:
                flattened = "_".join(segments[i:])
                if current.has_column(flattened):
                    return self._resolved(path, hops, flattened, current)
                self._warn(
                    entity,
                    f"Invalid @changelog path '{path}' on entity '{entity.name}': "
                    f"'{segment}' not found. @changelog skipped.",
                    path,
                )
                return None

            last = i == len(segments) - 1
            if not element.is_relationship:
                if last:
                    return self._resolved(path, hops, segment, current, element)
                self._warn(
                    entity,
                    f"Invalid @changelog path '{path}' on entity '{entity.name}': "
                    f"'{segment}' is not a relationship. @changelog skipped.",
                    path,
                )
                return None

            target = self.model.get(element.target)
            if target is None or target.kind != "entity":
                self._warn(
                    entity,
                    f"Invalid @changelog path '{path}' on entity '{entity.name}': "
                    f"target '{element.target}' of '{segment}' is not an entity. "
                    "@changelog skipped.",
                    path,
                )
                return None
            if last:
                self._warn(
                    entity,
                    f"Invalid @changelog path '{path}' on entity '{entity.name}': "
                    f"path ends on relationship '{segment}'. @changelog skipped.",
                    path,
                )
                return None
            if i == len(segments) - 2 and segments[-1] in element.foreign_keys:
                return self._resolved(path, hops, f"{segment}_{segments[-1]}", current)

            pairs = self.join_pairs(element)
            if not pairs:
                self._warn(
                    entity,
                    f"Invalid @changelog path '{path}' on entity '{entity.name}': "
                    f"relationship '{segment}' has no foreign keys or on-condition. "
                    "@changelog skipped.",
                    path,
                )
                return None
            hops.append(PathHop(segment, target.name, pairs))
            current = target
        return None

    def _resolved(
        self,
        path: str,
        hops: list[PathHop],
        column: str,
        owner: EntityDefinition,
        element: ElementDefinition | None = None,
    ) -> ResolvedPath:
        computed = element is not None and element.computed
        texts = owner.texts if element is not None and element.localized else None
        return ResolvedPath(
            path=path,
            hops=tuple(hops),
            column=column,
            computed=computed,
            texts_entity=texts,
        )

    # ------------------------------------------------------------------
    # Keys and identifiers
    # ------------------------------------------------------------------

    def extract_keys(self, entity: EntityDefinition) -> tuple[str, ...]:
        """Primary-key columns, with relationship keys flattened to ``<name>_<fk>``.

        A relationship key without explicit foreign keys is skipped.
        """
        keys: list[str] = []
        for element in entity.keys:
            if element.is_relationship:
                columns = element.foreign_key_columns
            else:
                columns = [element.name]
            for column in columns:
                if column not in keys:
                    keys.append(column)
        return tuple(keys)

    def object_identifier(
        self, entity: EntityDefinition, paths: list[str] | None = None
    ) -> ObjectIdentifierSpec:
        """Resolve identifier fragments in declared order.

        *paths* defaults to the entity-level annotation. A fragment is
        locally stored when it is a column of the row itself and not
        computed; anything else must be read back through a lookup.
        """
        if paths is None:
            annotation = entity.changelog
            paths = annotation if isinstance(annotation, list) else []
        fields: list[ObjectIdentifierField] = []
        for path in paths:
            if not path:
                continue
            resolved = self.resolve_path(entity, path)
            if resolved is None:
                continue
            fields.append(
                ObjectIdentifierField(
                    field_path=path,
                    is_locally_stored=resolved.is_local and not resolved.computed,
                    resolved=resolved,
                )
            )
        return ObjectIdentifierSpec(tuple(fields))

    # ------------------------------------------------------------------
    # Attributes
    # ------------------------------------------------------------------

    def tracked_attributes(
        self, entity: EntityDefinition
    ) -> tuple[tuple[TrackedAttribute, ...], tuple[CompositionOfMany, ...]]:
        """Extract tracked attributes and composition-of-many descriptors."""
        attributes: list[TrackedAttribute] = []
        compositions: list[CompositionOfMany] = []
        for element in entity.elements:
            if not is_annotated(element.changelog) or element.foreign_key_for:
                continue
            if element.sensitive:
                logger.warning(
                    "Skipping @changelog for '%s' on entity '%s': "
                    "personal data tracking is not supported.",
                    element.name,
                    entity.name,
                )
                continue
            if element.is_composition and element.is_many:
                composition = self._composition_of_many(entity, element)
                if composition is not None:
                    compositions.append(composition)
                continue
            if not element.is_relationship:
                attributes.append(TrackedAttribute(element.name, element.type))
                continue
            attribute = self._relationship_attribute(entity, element)
            if attribute is not None:
                attributes.append(attribute)
        return tuple(attributes), tuple(compositions)

    def _relationship_attribute(
        self, entity: EntityDefinition, element: ElementDefinition
    ) -> TrackedAttribute | None:
        kind = (
            RelationshipKind.OWNED_SUBRECORD
            if element.is_composition
            else RelationshipKind.REFERENCE
        )
        if not element.foreign_keys and not element.on:
            self._warn(
                entity,
                f"Skipping @changelog for '{element.name}' on entity '{entity.name}': "
                "relationship has neither foreign keys nor an on-condition.",
            )
            return None
        labels: list[ResolvedPath] = []
        if isinstance(element.changelog, list):
            for path in element.changelog:
                resolved = self.resolve_path(entity, path)
                if resolved is not None:
                    labels.append(resolved)
        return TrackedAttribute(
            name=element.name,
            declared_type=element.type,
            relationship_kind=kind,
            target=element.target,
            foreign_key_fields=tuple(element.foreign_keys),
            on_condition_fields=()
            if element.foreign_keys
            else tuple(c.source for c in element.on),
            label_paths=tuple(labels),
        )

    def _composition_of_many(
        self, entity: EntityDefinition, element: ElementDefinition
    ) -> CompositionOfMany | None:
        target = self.model.get(element.target)
        if target is None:
            self._warn(
                entity,
                f"Composition '{element.name}' on entity '{entity.name}' targets "
                f"unknown entity '{element.target}'.",
            )
            return None
        if element.on:
            binding: RootBinding | None = RootBinding(
                RootBindingKind.DIRECT, tuple((c.source, c.target) for c in element.on)
            )
        else:
            binding = self.root_binding(target, entity)
        if binding is None or binding.kind is not RootBindingKind.DIRECT:
            self._warn(
                entity,
                f"Composition '{element.name}' on entity '{entity.name}': "
                f"'{target.name}' has no foreign key to its root. Not tracked.",
            )
            return None
        if isinstance(element.changelog, list) and element.changelog:
            identifier = self.object_identifier(target, element.changelog)
        else:
            identifier = self.object_identifier(target)
        return CompositionOfMany(
            name=element.name,
            target=target.name,
            target_primary_keys=self.extract_keys(target),
            object_identifier=identifier,
            binding=binding,
        )

    # ------------------------------------------------------------------
    # Root binding
    # ------------------------------------------------------------------

    def root_binding(
        self, child: EntityDefinition, root: EntityDefinition
    ) -> RootBinding | None:
        """Determine how *child* rows resolve their owning *root* row.

        Tried in order: an association on the child targeting the root with
        foreign keys; the on-condition of the root's to-many composition;
        the conventional ``up_`` back-link; a back-reference through the
        root's to-one composition. Returns None when nothing matches.
        """
        for element in child.elements:
            if element.is_association and element.target == root.name and element.foreign_keys:
                return RootBinding(RootBindingKind.DIRECT, self.join_pairs(element))

        for element in root.elements:
            if (
                element.is_composition
                and element.is_many
                and element.target == child.name
                and element.on
            ):
                pairs = tuple((c.source, c.target) for c in element.on)
                return RootBinding(RootBindingKind.DIRECT, pairs)

        back_link = child.element(BACK_LINK_ELEMENT)
        if back_link is not None and back_link.is_relationship and back_link.foreign_keys:
            return RootBinding(RootBindingKind.DIRECT, self.join_pairs(back_link))

        child_keys = self.extract_keys(child)
        for element in root.elements:
            if (
                element.is_composition
                and not element.is_many
                and element.target == child.name
                and element.foreign_keys
                and all(fk in child_keys for fk in element.foreign_keys)
            ):
                pairs = tuple((f"{element.name}_{fk}", fk) for fk in element.foreign_keys)
                return RootBinding(RootBindingKind.BACK_REFERENCE, pairs)
        return None

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def analyze(
        self,
        entity: EntityDefinition | str,
        *,
        service_entity: str | None = None,
    ) -> TrackedEntity:
        """Produce the TrackedEntity snapshot for one entity."""
        if isinstance(entity, str):
            entity = self.model.entity(entity)
        attributes, compositions = self.tracked_attributes(entity)
        keys = self.extract_keys(entity)
        if not keys:
            self._warn(
                entity,
                f"Entity '{entity.name}' has no primary key. No triggers generated.",
            )
        return TrackedEntity(
            name=entity.name,
            primary_keys=keys,
            attributes=attributes,
            compositions_of_many=compositions,
            object_identifier=self.object_identifier(entity),
            root=self._root_reference(entity),
            service_entity=service_entity or entity.name,
        )

    def _root_reference(self, entity: EntityDefinition) -> RootReference | None:
        root_name = self.hierarchy.get(entity.name)
        root = self.model.get(root_name)
        if root is None:
            return None
        binding = self.root_binding(entity, root)
        if binding is None:
            self._warn(
                entity,
                f"Cannot determine root binding from '{entity.name}' to '{root.name}'. "
                "Root entity columns are omitted.",
            )
            return None
        return RootReference(
            entity=root.name,
            primary_keys=self.extract_keys(root),
            object_identifier=self.object_identifier(root),
            binding=binding,
        )

    def analyze_collected(self, collected: list[CollectedEntity]) -> list[TrackedEntity]:
        """Analyze every collected entity in order."""
        return [
            self.analyze(c.name, service_entity=c.service_entity) for c in collected
        ]
