"""Input contract for the annotated schema model.

The host modeling framework hands over a graph of entity definitions.
These pydantic models are the shape that graph must take: entities with
ordered elements, relationship metadata (managed foreign keys or unmanaged
on-conditions), tracking annotations, and the sensitive-data flag.

Annotations follow the host convention: ``changelog`` is absent (None),
a boolean, or an ordered list of field paths such as ``"customer.name"``.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterator, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from changetrail.exceptions import EntityNotFoundError, SchemaLoadError

ChangelogAnnotation = Union[bool, list[str], None]

_RELATIONSHIP_TYPES = frozenset({"Association", "Composition"})


def normalize_type(type_name: str) -> str:
    """Strip the ``cds.`` namespace prefix from a declared type name."""
    return type_name[4:] if type_name.startswith("cds.") else type_name


def is_annotated(annotation: ChangelogAnnotation) -> bool:
    """True when a changelog annotation switches tracking on.

    An empty path list counts as annotated; only None and False do not.
    """
    return annotation is not None and annotation is not False


class OnCondition(BaseModel):
    """One equality pair of an unmanaged relationship's on-condition.

    ``target`` is the column on the target entity, ``source`` the column on
    the declaring entity.
    """

    model_config = {"frozen": True}

    target: str
    source: str


class ElementDefinition(BaseModel):
    """A single element (column or relationship) of an entity."""

    model_config = {"populate_by_name": True}

    name: str = ""
    type: str = "cds.String"
    key: bool = False
    target: Optional[str] = None
    cardinality: Literal["one", "many"] = "one"
    foreign_keys: list[str] = Field(default_factory=list)
    on: list[OnCondition] = Field(default_factory=list)
    changelog: ChangelogAnnotation = Field(default=None, alias="@changelog")
    computed: bool = Field(default=False, alias="@Core.Computed")
    sensitive: bool = Field(default=False, alias="@PersonalData")
    foreign_key_for: Optional[str] = None
    localized: bool = False

    @property
    def type_name(self) -> str:
        return normalize_type(self.type)

    @property
    def is_relationship(self) -> bool:
        return self.type_name in _RELATIONSHIP_TYPES and self.target is not None

    @property
    def is_association(self) -> bool:
        return self.is_relationship and self.type_name == "Association"

    @property
    def is_composition(self) -> bool:
        return self.is_relationship and self.type_name == "Composition"

    @property
    def is_many(self) -> bool:
        return self.cardinality == "many"

    @property
    def foreign_key_columns(self) -> list[str]:
        """Physical columns a managed relationship occupies on its entity."""
        return [f"{self.name}_{fk}" for fk in self.foreign_keys]


class EntityDefinition(BaseModel):
    """An entity (table or service projection) in the schema model."""

    model_config = {"populate_by_name": True}

    name: str = ""
    kind: str = "entity"
    elements: list[ElementDefinition] = Field(default_factory=list)
    changelog: ChangelogAnnotation = Field(default=None, alias="@changelog")
    projection_of: Optional[str] = None
    columns: dict[str, str] = Field(default_factory=dict)
    union: bool = False
    texts: Optional[str] = None

    @field_validator("elements", mode="before")
    @classmethod
    def _elements_from_mapping(cls, value: Any) -> Any:
        # CSN-style {"name": {...}} mappings keep their insertion order
        if isinstance(value, dict):
            return [{**spec, "name": name} for name, spec in value.items()]
        return value

    def element(self, name: str) -> ElementDefinition | None:
        for element in self.elements:
            if element.name == name:
                return element
        return None

    @property
    def keys(self) -> list[ElementDefinition]:
        return [e for e in self.elements if e.key]

    @property
    def is_table(self) -> bool:
        """True for persisted entities, i.e. neither projections nor union views."""
        return self.kind == "entity" and self.projection_of is None and not self.union

    def has_column(self, name: str) -> bool:
        """True when *name* is a physical column of this entity.

        Physical columns are plain elements plus the flattened foreign-key
        columns of managed relationships.
        """
        element = self.element(name)
        if element is not None and not element.is_relationship:
            return True
        return any(name in e.foreign_key_columns for e in self.elements if e.is_relationship)

    def base_element_name(self, name: str) -> str:
        """Map a projection element name back to the base entity's element name."""
        return self.columns.get(name, name)


def is_opted_out(node: EntityDefinition | ElementDefinition) -> bool:
    """True when ``changelog`` is explicitly set to false or null.

    An absent annotation is not an opt-out.
    """
    return "changelog" in node.model_fields_set and (
        node.changelog is False or node.changelog is None
    )


class SchemaModel(BaseModel):
    """The complete annotated schema: every definition keyed by qualified name."""

    definitions: dict[str, EntityDefinition] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _fill_names(self) -> SchemaModel:
        for name, definition in self.definitions.items():
            if not definition.name:
                definition.name = name
        return self

    def get(self, name: str | None) -> EntityDefinition | None:
        if name is None:
            return None
        return self.definitions.get(name)

    def entity(self, name: str) -> EntityDefinition:
        """Get a definition by name. Raises EntityNotFoundError if missing."""
        definition = self.definitions.get(name)
        if definition is None:
            raise EntityNotFoundError(name)
        return definition

    def entities(self) -> Iterator[EntityDefinition]:
        for definition in self.definitions.values():
            if definition.kind == "entity":
                yield definition

    def base_entity(self, entity: EntityDefinition) -> EntityDefinition | None:
        """Follow ``projection_of`` until a table entity is reached.

        Returns None when *entity* is not a projection or the chain is broken.
        """
        seen = {entity.name}
        current = entity
        while current.projection_of is not None:
            base = self.definitions.get(current.projection_of)
            if base is None or base.name in seen:
                return None
            seen.add(base.name)
            current = base
        return current if current is not entity else None

    def table_entity(self, entity: EntityDefinition) -> EntityDefinition | None:
        """The table entity behind *entity*: itself for tables, else its projection base."""
        if entity.is_table:
            return entity
        return self.base_entity(entity)

    def service_of(self, entity: EntityDefinition) -> EntityDefinition | None:
        """The service definition whose namespace contains *entity*, if any.

        The longest dotted prefix of the entity name that names a
        ``service`` definition wins.
        """
        parts = entity.name.split(".")
        for end in range(len(parts) - 1, 0, -1):
            candidate = self.definitions.get(".".join(parts[:end]))
            if candidate is not None and candidate.kind == "service":
                return candidate
        return None

    def service_entities(self, service: EntityDefinition) -> Iterator[EntityDefinition]:
        prefix = service.name + "."
        for definition in self.entities():
            if definition.name.startswith(prefix):
                yield definition

    def find_service_entity(
        self, service: EntityDefinition | None, table: EntityDefinition
    ) -> EntityDefinition | None:
        """The entity of *service* that projects *table*, or None."""
        if service is None:
            return None
        for definition in self.service_entities(service):
            base = self.base_entity(definition)
            if base is not None and base.name == table.name:
                return definition
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SchemaModel:
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise SchemaLoadError(f"Invalid schema model: {exc}") from exc

    @classmethod
    def from_file(cls, path: str | Path) -> SchemaModel:
        """Load a schema model from a JSON file."""
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise SchemaLoadError(f"Cannot read schema file {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise SchemaLoadError(f"Schema file {path} must contain a JSON object")
        if "definitions" not in raw:
            raw = {"definitions": raw}
        return cls.from_dict(raw)
