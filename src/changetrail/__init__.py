"""ChangeTrail: database-trigger change tracking for annotated schema models.

Entities and elements annotated with ``@changelog`` get triggers that append
one change record per changed attribute, so every write is tracked no matter
which code path issued it.
"""

from changetrail._version import __version__

# Core entry point
from changetrail.synthesis import TriggerSynthesizer

# Schema and configuration
from changetrail.models.schema import ElementDefinition, EntityDefinition, OnCondition, SchemaModel
from changetrail.models.config import TrackingConfig

# Analysis output
from changetrail.models.tracked import (
    ArtifactKind,
    ChangeOperation,
    CompositionOfMany,
    GeneratedTrigger,
    ObjectIdentifierSpec,
    RelationshipKind,
    RootBinding,
    RootBindingKind,
    RootReference,
    TrackedAttribute,
    TrackedEntity,
)
from changetrail.analysis.analyzer import SchemaAnalyzer
from changetrail.analysis.collector import collect_entities

# Generators
from changetrail.dialects import TriggerGenerator, get_generator, register_generator, supported_kinds

# Runtime
from changetrail.skip import TransactionContext
from changetrail.deploy.sqlite import regenerate_triggers
from changetrail.storage.engine import create_changetrail_engine, init_db

# Exceptions
from changetrail.exceptions import (
    ChangeTrailError,
    ConflictingAnnotationError,
    EntityNotFoundError,
    ModelResolutionWarning,
    SchemaLoadError,
    UnsupportedBackendError,
)

__all__ = [
    "__version__",
    "TriggerSynthesizer",
    "ElementDefinition",
    "EntityDefinition",
    "OnCondition",
    "SchemaModel",
    "TrackingConfig",
    "ArtifactKind",
    "ChangeOperation",
    "CompositionOfMany",
    "GeneratedTrigger",
    "ObjectIdentifierSpec",
    "RelationshipKind",
    "RootBinding",
    "RootBindingKind",
    "RootReference",
    "TrackedAttribute",
    "TrackedEntity",
    "SchemaAnalyzer",
    "collect_entities",
    "TriggerGenerator",
    "get_generator",
    "register_generator",
    "supported_kinds",
    "TransactionContext",
    "regenerate_triggers",
    "create_changetrail_engine",
    "init_db",
    "ChangeTrailError",
    "ConflictingAnnotationError",
    "EntityNotFoundError",
    "ModelResolutionWarning",
    "SchemaLoadError",
    "UnsupportedBackendError",
]
