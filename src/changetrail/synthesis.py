"""Top-level trigger synthesis.

TriggerSynthesizer ties the pipeline together: collect tracked entities
(merging service-level annotations), analyze them into snapshots, and hand
each snapshot to the generator for the configured database kind.
"""

from __future__ import annotations

import logging
from pathlib import Path

from changetrail.analysis.analyzer import SchemaAnalyzer
from changetrail.analysis.collector import collect_entities
from changetrail.dialects.registry import get_generator
from changetrail.exceptions import ModelResolutionWarning
from changetrail.models.config import TrackingConfig
from changetrail.models.schema import SchemaModel
from changetrail.models.tracked import GeneratedTrigger, TrackedEntity

logger = logging.getLogger(__name__)


class TriggerSynthesizer:
    """Generates every change-tracking artifact for one schema.

    Example::

        synth = TriggerSynthesizer(SchemaModel.from_file("csn.json"))
        for entity, triggers in synth.generate("sqlite").items():
            ...
    """

    def __init__(self, schema: SchemaModel, config: TrackingConfig | None = None) -> None:
        self.schema = schema
        self.config = config or TrackingConfig()
        self._tracked: list[TrackedEntity] | None = None
        self.warnings: list[ModelResolutionWarning] = []

    def tracked_entities(self) -> list[TrackedEntity]:
        """Analyzed snapshots of every entity that needs triggers, in schema order.

        Raises:
            ConflictingAnnotationError: If projections of one table disagree.
        """
        if self._tracked is None:
            effective, collected = collect_entities(self.schema)
            analyzer = SchemaAnalyzer(effective)
            snapshots = analyzer.analyze_collected(collected)
            self.warnings = analyzer.warnings
            self._tracked = [s for s in snapshots if s.needs_triggers]
            logger.info(
                "Collected %d tracked entities (%d need triggers)",
                len(collected),
                len(self._tracked),
            )
        return self._tracked

    def tracked_entity(self, name: str) -> TrackedEntity | None:
        for entity in self.tracked_entities():
            if entity.name == name:
                return entity
        return None

    def generate_entity(self, entity: TrackedEntity | str, kind: str | None = None) -> list[GeneratedTrigger]:
        """Triggers for one entity. An untracked entity name yields an empty list."""
        if isinstance(entity, str):
            found = self.tracked_entity(entity)
            if found is None:
                logger.info("Entity %s is not change-tracked", entity)
                return []
            entity = found
        return get_generator(kind, self.config).generate(entity)

    def generate(self, kind: str | None = None) -> dict[str, list[GeneratedTrigger]]:
        """Triggers for every tracked entity, keyed by entity name.

        Artifacts shared by all entities (the HANA procedures) are listed
        under the empty key.

        Raises:
            UnsupportedBackendError: If *kind* has no registered generator.
        """
        generator = get_generator(kind, self.config)
        result: dict[str, list[GeneratedTrigger]] = {}
        support = generator.generate_support_artifacts()
        if support:
            result[""] = support
        for entity in self.tracked_entities():
            triggers = generator.generate(entity)
            if triggers:
                result[entity.name] = triggers
        return result

    def artifacts(self, kind: str | None = None, entity_name: str | None = None) -> list[GeneratedTrigger]:
        """Flat list of every artifact to install, support artifacts first.

        With *entity_name* only that entity's triggers are listed, still
        preceded by the support artifacts they call. An untracked entity
        yields an empty list.

        Raises:
            EntityNotFoundError: If *entity_name* is not in the schema.
            UnsupportedBackendError: If *kind* has no registered generator.
        """
        if entity_name is None:
            return [t for group in self.generate(kind).values() for t in group]
        self.schema.entity(entity_name)
        triggers = self.generate_entity(entity_name, kind)
        if not triggers:
            return []
        return get_generator(kind, self.config).generate_support_artifacts() + triggers

    def write(
        self, output_dir: str | Path, kind: str | None = None, entity_name: str | None = None
    ) -> list[Path]:
        """Write the artifacts to *output_dir*, one file each."""
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        written = []
        for trigger in self.artifacts(kind, entity_name):
            path = out / trigger.file_name
            path.write_text(trigger.source_text + "\n", encoding="utf-8")
            written.append(path)
        logger.info("Wrote %d artifacts to %s", len(written), out)
        return written
