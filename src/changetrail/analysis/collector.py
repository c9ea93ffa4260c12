"""Entity collection and annotation merging.

Service entities project database entities and may add or override
tracking annotations. Before analysis, the annotations of every projection
are merged onto the underlying table entity; two sources that disagree on
the same field abort generation for that entity with a
ConflictingAnnotationError.

Also builds the composition hierarchy (child entity -> owning entity).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from changetrail.exceptions import ConflictingAnnotationError
from changetrail.models.schema import (
    ChangelogAnnotation,
    EntityDefinition,
    SchemaModel,
    is_annotated,
)

logger = logging.getLogger(__name__)


@dataclass
class MergedAnnotations:
    """Tracking annotations of one table entity after merging its projections."""

    entity_annotation: ChangelogAnnotation = None
    element_annotations: dict[str, ChangelogAnnotation] = field(default_factory=dict)


@dataclass(frozen=True)
class CollectedEntity:
    """A table entity selected for trigger generation."""

    name: str
    service_entities: tuple[str, ...] = ()

    @property
    def service_entity(self) -> str:
        """Logical name recorded in change-log headers."""
        return self.service_entities[0] if self.service_entities else self.name


def is_change_tracked(entity: EntityDefinition) -> bool:
    """True when an entity or any of its elements carries a tracking annotation.

    Union views are never tracked, and ``changelog: false`` on the entity
    switches tracking off regardless of element annotations.
    """
    if entity.union:
        return False
    if entity.changelog is False:
        return False
    if is_annotated(entity.changelog):
        return True
    return any(is_annotated(e.changelog) for e in entity.elements)


def merge_annotations(
    db_entity: EntityDefinition,
    service_entities: list[EntityDefinition],
) -> MergedAnnotations:
    """Merge the tracking annotations of *service_entities* onto *db_entity*.

    Element names of the projections are mapped back through column renames.
    An explicit ``false``/``null`` on a projection element is an opt-out for
    that projection only and never takes part in merging.

    Raises:
        ConflictingAnnotationError: If two sources declare different,
            non-empty annotations for the entity or one of its elements.
    """
    merged = MergedAnnotations(entity_annotation=db_entity.changelog)
    entity_source = db_entity.name
    element_sources: dict[str, str] = {}

    for element in db_entity.elements:
        if element.changelog is not None:
            merged.element_annotations[element.name] = element.changelog
            element_sources[element.name] = db_entity.name

    for srv in service_entities:
        if srv.changelog is not None:
            current = merged.entity_annotation
            if current is not None and current != srv.changelog:
                raise ConflictingAnnotationError(
                    db_entity.name, None, entity_source, current, srv.name, srv.changelog
                )
            if current is None:
                merged.entity_annotation = srv.changelog
                entity_source = srv.name

        for element in srv.elements:
            annotation = element.changelog
            if annotation is None or annotation is False:
                continue
            db_name = srv.base_element_name(element.name)
            existing = merged.element_annotations.get(db_name)
            if db_name in merged.element_annotations and existing != annotation:
                raise ConflictingAnnotationError(
                    db_entity.name,
                    db_name,
                    element_sources[db_name],
                    existing,
                    srv.name,
                    annotation,
                )
            if db_name not in merged.element_annotations:
                merged.element_annotations[db_name] = annotation
                element_sources[db_name] = srv.name

    return merged


def apply_annotations(entity: EntityDefinition, merged: MergedAnnotations) -> EntityDefinition:
    """Return a copy of *entity* carrying the merged annotations."""
    elements = [
        e.model_copy(update={"changelog": merged.element_annotations.get(e.name, e.changelog)})
        for e in entity.elements
    ]
    return entity.model_copy(
        update={"changelog": merged.entity_annotation, "elements": elements}
    )


def collect_entities(model: SchemaModel) -> tuple[SchemaModel, list[CollectedEntity]]:
    """Select the table entities that need triggers.

    Every tracked projection contributes its annotations to the table entity
    it projects. Table entities tracked on their own are included as well.

    Returns:
        A copy of *model* with merged annotations applied to the table
        entities, and the collected entities in schema order.

    Raises:
        ConflictingAnnotationError: If projections of one table disagree.
    """
    projections: dict[str, list[EntityDefinition]] = {}
    for definition in model.entities():
        if definition.projection_of is None or not is_change_tracked(definition):
            continue
        base = model.base_entity(definition)
        if base is None:
            logger.debug("Projection %s has no resolvable base entity, skipping", definition.name)
            continue
        projections.setdefault(base.name, []).append(definition)

    definitions = dict(model.definitions)
    collected: list[CollectedEntity] = []
    for definition in model.entities():
        if not definition.is_table:
            continue
        services = projections.get(definition.name, [])
        if services:
            try:
                merged = merge_annotations(definition, services)
            except ConflictingAnnotationError as exc:
                logger.error("%s", exc)
                raise
            effective = apply_annotations(definition, merged)
            definitions[definition.name] = effective
            if not is_change_tracked(effective):
                continue
            collected.append(
                CollectedEntity(definition.name, tuple(s.name for s in services))
            )
            logger.debug(
                "Merged annotations for %s from %d service entities",
                definition.name,
                len(services),
            )
        elif is_change_tracked(definition):
            collected.append(CollectedEntity(definition.name))

    return SchemaModel(definitions=definitions), collected


def analyze_compositions(model: SchemaModel) -> dict[str, str]:
    """Map each composition target to the table entity that composes it.

    Only the immediate parent is recorded; deeper hierarchies are resolved
    one level at a time by the generators.
    """
    hierarchy: dict[str, str] = {}
    for definition in model.entities():
        if not definition.is_table:
            continue
        for element in definition.elements:
            if element.is_composition and element.target:
                hierarchy[element.target] = definition.name
    return hierarchy
