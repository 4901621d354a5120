"""Tests for Settings loading (defaults, JSON file, environment)."""

import json

import pytest

from brokerledger.core.config import DEFAULT_SETTINGS, Settings
from brokerledger.core.exceptions import ValidationError


class TestSettingsLoad:

    def test_defaults(self, tmp_path):
        settings = Settings.load(tmp_path / "missing.json", environ={})

        assert settings.database.path == "data/brokerledger.db"
        assert settings.statements.max_batch_size == 5000
        assert settings.statements.processing_deadline_seconds == 30
        assert settings.statements.file_types == ["csv", "xml"]
        assert settings.commission_strategy == "bracket"

    def test_file_deep_merges_over_defaults(self, tmp_path):
        config = tmp_path / "brokerledger.json"
        config.write_text(json.dumps({
            "statements": {"max_batch_size": 100},
            "commission": {"strategy": "progressive"},
        }))

        settings = Settings.load(config, environ={})

        assert settings.statements.max_batch_size == 100
        # Untouched keys of the same section survive the merge
        assert settings.statements.processing_deadline_seconds == 30
        assert settings.commission_strategy == "progressive"

    def test_environment_overrides_file(self, tmp_path):
        config = tmp_path / "brokerledger.json"
        config.write_text(json.dumps({"database": {"path": "from_file.db"}}))

        settings = Settings.load(config, environ={
            "BROKERLEDGER_DB": "from_env.db",
            "BROKERLEDGER_MAX_BATCH": "10",
            "BROKERLEDGER_DEADLINE": "2.5",
        })

        assert settings.database.path == "from_env.db"
        assert settings.statements.max_batch_size == 10
        assert settings.statements.processing_deadline_seconds == 2.5

    def test_malformed_file_falls_back_to_defaults(self, tmp_path):
        config = tmp_path / "broken.json"
        config.write_text("{not json")

        settings = Settings.load(config, environ={})
        assert settings.statements.max_batch_size == 5000

    def test_bad_environment_value_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            Settings.load(tmp_path / "missing.json", environ={"BROKERLEDGER_MAX_BATCH": "lots"})

    def test_unknown_strategy_rejected(self, tmp_path):
        with pytest.raises(ValidationError) as exc_info:
            Settings.load(tmp_path / "missing.json", environ={"BROKERLEDGER_COMMISSION_STRATEGY": "flat"})
        assert exc_info.value.field == "strategy"

    def test_non_positive_bounds_rejected(self):
        data = json.loads(json.dumps(DEFAULT_SETTINGS))
        data["statements"]["max_batch_size"] = 0
        with pytest.raises(ValidationError):
            Settings(data)

    def test_save_round_trip(self, tmp_path):
        settings = Settings.load(tmp_path / "missing.json", environ={"BROKERLEDGER_MAX_BATCH": "42"})
        target = tmp_path / "out" / "settings.json"
        settings.save(target)

        reloaded = Settings.load(target, environ={})
        assert reloaded.statements.max_batch_size == 42


class TestDisplayConfig:

    def test_negative_in_brackets(self, tmp_path):
        display = Settings.load(tmp_path / "missing.json", environ={}).display
        assert display.format_currency(1234.5) == "₹1,234.50"
        assert display.format_currency(-50) == "(₹50.00)"
