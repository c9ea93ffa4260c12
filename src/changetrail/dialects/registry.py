"""Database kind -> trigger generator registry."""

from __future__ import annotations

import logging

from changetrail.dialects.base import TriggerGenerator
from changetrail.dialects.h2 import H2TriggerGenerator
from changetrail.dialects.hana import HanaTriggerGenerator
from changetrail.dialects.postgres import PostgresTriggerGenerator
from changetrail.dialects.sqlite import SqliteTriggerGenerator
from changetrail.exceptions import UnsupportedBackendError
from changetrail.models.config import TrackingConfig, normalize_db_kind

logger = logging.getLogger(__name__)

_GENERATORS: dict[str, type[TriggerGenerator]] = {
    "sqlite": SqliteTriggerGenerator,
    "postgres": PostgresTriggerGenerator,
    "hana": HanaTriggerGenerator,
    "h2": H2TriggerGenerator,
}


def register_generator(kind: str, generator: type[TriggerGenerator]) -> None:
    """Register (or replace) the generator for a database kind."""
    _GENERATORS[normalize_db_kind(kind)] = generator


def supported_kinds() -> list[str]:
    return sorted(_GENERATORS)


def get_generator(kind: str | None = None, config: TrackingConfig | None = None) -> TriggerGenerator:
    """Instantiate the generator for *kind* (default: ``config.db_kind``).

    Raises:
        UnsupportedBackendError: If no generator is registered for the kind.
    """
    config = config or TrackingConfig()
    kind = normalize_db_kind(kind or config.db_kind)
    try:
        generator_class = _GENERATORS[kind]
    except KeyError:
        logger.error("No trigger generator for database kind %s", kind)
        raise UnsupportedBackendError(kind, supported_kinds()) from None
    return generator_class(config)
