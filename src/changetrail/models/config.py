"""Configuration models for ChangeTrail.

TrackingConfig holds the deployment-wide switches that gate which triggers
and trigger branches are generated. It is loaded once, externally, and is
read-only for the generators.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from changetrail.exceptions import SchemaLoadError

# Alternative spellings accepted for a database kind
DB_KIND_ALIASES = {
    "postgresql": "postgres",
    "pg": "postgres",
    "sqlite3": "sqlite",
    "hdb": "hana",
}


def normalize_db_kind(kind: str) -> str:
    """Lower-case a database kind and resolve its aliases."""
    kind = kind.strip().lower()
    return DB_KIND_ALIASES.get(kind, kind)


class TrackingConfig(BaseModel):
    """Per-deployment change tracking configuration.

    Field names are snake_case; the camelCase spellings used by the host
    framework's configuration files are accepted as aliases.
    """

    model_config = {"populate_by_name": True, "frozen": True}

    disable_create_tracking: bool = Field(default=False, alias="disableCreateTracking")
    disable_update_tracking: bool = Field(default=False, alias="disableUpdateTracking")
    disable_delete_tracking: bool = Field(default=False, alias="disableDeleteTracking")
    preserve_deletes: bool = Field(default=False, alias="preserveDeletes")
    # Quoted-identifier mode: table names keep their dots and case
    quoted_names: bool = Field(default=False, alias="quotedNames")
    db_kind: str = Field(default="sqlite", alias="kind")

    @field_validator("db_kind")
    @classmethod
    def _normalize_kind(cls, value: str) -> str:
        return normalize_db_kind(value)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrackingConfig:
        """Build a config from a dict, ignoring unknown keys."""
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise SchemaLoadError(f"Invalid tracking configuration: {exc}") from exc

    @classmethod
    def from_file(cls, path: str | Path) -> TrackingConfig:
        """Load a config from a JSON file.

        Accepts either the bare settings object or one nested under a
        ``"change-tracking"`` key, as host framework config files do.
        """
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise SchemaLoadError(f"Cannot read config file {path}: {exc}") from exc
        if isinstance(raw, dict) and isinstance(raw.get("change-tracking"), dict):
            raw = raw["change-tracking"]
        if not isinstance(raw, dict):
            raise SchemaLoadError(f"Config file {path} must contain a JSON object")
        return cls.from_dict(raw)
