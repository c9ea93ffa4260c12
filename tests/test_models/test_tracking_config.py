"""Tests for TrackingConfig.

Covers:
- Defaults
- camelCase aliases and snake_case names
- Database kind normalization
- Loading from file, with and without the change-tracking wrapper
"""

import json

import pytest

from changetrail.exceptions import SchemaLoadError
from changetrail.models.config import TrackingConfig, normalize_db_kind


class TestDefaults:
    def test_defaults(self):
        config = TrackingConfig()
        assert config.disable_create_tracking is False
        assert config.disable_update_tracking is False
        assert config.disable_delete_tracking is False
        assert config.preserve_deletes is False
        assert config.quoted_names is False
        assert config.db_kind == "sqlite"

    def test_frozen(self):
        config = TrackingConfig()
        with pytest.raises(Exception):
            config.preserve_deletes = True  # type: ignore[misc]


class TestAliases:
    def test_camel_case(self):
        config = TrackingConfig.from_dict(
            {"preserveDeletes": True, "disableUpdateTracking": True, "kind": "postgres"}
        )
        assert config.preserve_deletes is True
        assert config.disable_update_tracking is True
        assert config.db_kind == "postgres"

    def test_snake_case(self):
        config = TrackingConfig(preserve_deletes=True, db_kind="hana")
        assert config.preserve_deletes is True
        assert config.db_kind == "hana"

    def test_unknown_keys_ignored(self):
        assert TrackingConfig.from_dict({"somethingElse": 1}) == TrackingConfig()

    def test_invalid_value(self):
        with pytest.raises(SchemaLoadError):
            TrackingConfig.from_dict({"preserveDeletes": "not-a-bool"})


class TestDbKind:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("sqlite", "sqlite"),
            ("SQLite3", "sqlite"),
            ("PostgreSQL", "postgres"),
            ("pg", "postgres"),
            (" hdb ", "hana"),
            ("h2", "h2"),
            ("oracle", "oracle"),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_db_kind(raw) == expected

    def test_validator_normalizes(self):
        assert TrackingConfig(db_kind="PostgreSQL").db_kind == "postgres"


class TestFromFile:
    def test_bare_object(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"preserveDeletes": True}))
        assert TrackingConfig.from_file(path).preserve_deletes is True

    def test_nested_under_change_tracking(self, tmp_path):
        path = tmp_path / "package.json"
        path.write_text(json.dumps({"change-tracking": {"disableCreateTracking": True}, "name": "app"}))
        assert TrackingConfig.from_file(path).disable_create_tracking is True

    def test_missing_file(self, tmp_path):
        with pytest.raises(SchemaLoadError):
            TrackingConfig.from_file(tmp_path / "missing.json")

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("true")
        with pytest.raises(SchemaLoadError):
            TrackingConfig.from_file(path)
