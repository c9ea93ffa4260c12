"""SQLite deployment harness.

Regeneration is drop-then-recreate: existing change-tracking triggers are
found by name pattern in ``sqlite_master`` and dropped, then the freshly
generated text is executed, all in one transaction. Not safe against
concurrent writers; run it as a maintenance step.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, text

from changetrail.exceptions import UnsupportedBackendError
from changetrail.models.config import TrackingConfig
from changetrail.models.schema import SchemaModel
from changetrail.models.tracked import ChangeOperation, GeneratedTrigger, TrackedEntity
from changetrail.synthesis import TriggerSynthesizer

logger = logging.getLogger(__name__)

# LIKE patterns; '\' escapes the '_' wildcard. Anchored on the generated name suffixes.
ALL_TRIGGER_PATTERNS = [f"%\\_ct\\_{op.value}" for op in ChangeOperation] + [
    f"%\\_ct\\_comp\\_%\\_{op.value}" for op in ChangeOperation
]


def _like_literal(value: str) -> str:
    return value.replace("\\", "\\\\").replace("_", "\\_").replace("%", "\\%")


def trigger_patterns(entity: TrackedEntity | str) -> list[str]:
    """LIKE patterns matching the triggers generated for one entity.

    Covers its own per-operation triggers and the composition triggers it
    owns on its children's tables, but not the children's own triggers.
    """
    name = entity if isinstance(entity, str) else entity.name
    base = _like_literal(name.replace(".", "_"))
    patterns = [f"{base}\\_ct\\_{op.value}" for op in ChangeOperation]
    if isinstance(entity, TrackedEntity):
        for composition in entity.compositions_of_many:
            child = _like_literal(composition.target.replace(".", "_"))
            comp = _like_literal(composition.name)
            patterns.extend(f"{child}\\_ct\\_comp\\_{comp}\\_{op.value}" for op in ChangeOperation)
    return patterns


def existing_triggers(engine: Engine, patterns: list[str]) -> list[str]:
    """Names of installed triggers matching any of *patterns*."""
    names: list[str] = []
    with engine.connect() as conn:
        for pattern in patterns:
            rows = conn.execute(
                text(
                    "SELECT name FROM sqlite_master "
                    "WHERE type = 'trigger' AND name LIKE :pattern ESCAPE '\\'"
                ),
                {"pattern": pattern},
            )
            for (name,) in rows:
                if name not in names:
                    names.append(name)
    return names


def regenerate_triggers(
    engine: Engine,
    schema: SchemaModel,
    config: TrackingConfig | None = None,
    entity_name: str | None = None,
) -> list[GeneratedTrigger]:
    """Drop and recreate the change-tracking triggers on a SQLite database.

    Args:
        engine: Engine whose database holds the tracked tables and the
            storage tables.
        schema: The annotated schema model.
        config: Tracking configuration. Its ``db_kind`` must be ``sqlite``.
        entity_name: Regenerate only this entity's triggers (including the
            composition triggers it owns). All tracked entities when None.

    Returns:
        The triggers that were installed.

    Raises:
        UnsupportedBackendError: If *engine* or the configured kind is not SQLite.
    """
    config = config or TrackingConfig()
    for kind in (engine.dialect.name, config.db_kind):
        if kind != "sqlite":
            raise UnsupportedBackendError(kind, ["sqlite"])

    synthesizer = TriggerSynthesizer(schema, config)

    if entity_name is None:
        generated = synthesizer.generate("sqlite")
        triggers = [t for group in generated.values() for t in group]
        patterns = ALL_TRIGGER_PATTERNS
    else:
        triggers = synthesizer.generate_entity(entity_name, "sqlite")
        patterns = trigger_patterns(synthesizer.tracked_entity(entity_name) or entity_name)

    stale = existing_triggers(engine, patterns)
    with engine.begin() as conn:
        for name in stale:
            conn.exec_driver_sql(f'DROP TRIGGER IF EXISTS "{name}"')
        for trigger in triggers:
            conn.exec_driver_sql(trigger.source_text)
    logger.info("Dropped %d and installed %d triggers", len(stale), len(triggers))
    return triggers
