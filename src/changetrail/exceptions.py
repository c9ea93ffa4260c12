"""ChangeTrail exception hierarchy.

All ChangeTrail-specific exceptions inherit from ChangeTrailError.
"""

from __future__ import annotations


class ChangeTrailError(Exception):
    """Base exception for all ChangeTrail errors."""


class ModelResolutionWarning(ChangeTrailError, UserWarning):
    """An annotation path or relationship could not be resolved.

    Never raised by the analyzer. Instances are logged and collected on
    ``SchemaAnalyzer.warnings`` so callers can inspect what was dropped.
    """

    def __init__(self, entity: str, message: str, path: str | None = None) -> None:
        self.entity = entity
        self.path = path
        super().__init__(message)


class ConflictingAnnotationError(ChangeTrailError):
    """Raised when two sources declare different tracking annotations for one field.

    ``element`` is None when the conflict is on the entity-level annotation
    (the object identifier definition).
    """

    def __init__(
        self,
        entity: str,
        element: str | None,
        first_source: str,
        first_value: object,
        second_source: str,
        second_value: object,
    ) -> None:
        self.entity = entity
        self.element = element
        self.first_source = first_source
        self.second_source = second_source
        target = f"element '{element}' of entity '{entity}'" if element else f"entity '{entity}'"
        super().__init__(
            f"Conflicting @changelog annotations on {target}: "
            f"'{first_source}' has {first_value!r} but "
            f"'{second_source}' has {second_value!r}"
        )


class UnsupportedBackendError(ChangeTrailError):
    """Raised when no trigger generator is registered for a database kind."""

    def __init__(self, kind: str, supported: list[str] | None = None) -> None:
        self.kind = kind
        self.supported = supported or []
        msg = f"No trigger generator registered for database kind '{kind}'"
        if self.supported:
            msg += f" (supported: {', '.join(self.supported)})"
        super().__init__(msg)


class EntityNotFoundError(ChangeTrailError):
    """Raised when an entity lookup fails."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Entity not found: {name}")


class SchemaLoadError(ChangeTrailError):
    """Raised when a schema or configuration file cannot be read or validated."""
