"""
tests/test_config.py -- Tests for core/config.py Settings validation and the
ISO time helpers.

Settings are built with _env_file=None so a developer's local .env never
leaks into the assertions.
"""

from datetime import timezone

import pydantic
import pytest

from core.config import Settings, get_settings, parse_iso


class TestSettingsDefaults:
    def test_defaults_are_a_valid_policy(self):
        s = Settings(_env_file=None)
        assert s.level_critical > s.level_high > s.level_medium > s.level_low
        assert s.economic_reference_value == 100_000.0
        assert s.default_exploit_factor == 0.5
        assert s.top_risks_default == 10

    def test_env_vars_override_defaults(self, monkeypatch):
        monkeypatch.setenv("LEVEL_CRITICAL", "90")
        monkeypatch.setenv("CACHE_ENABLED", "false")
        s = Settings(_env_file=None)
        assert s.level_critical == 90.0
        assert s.cache_enabled is False

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()


class TestSettingsValidation:
    def test_zero_reference_value_rejected(self):
        with pytest.raises(pydantic.ValidationError, match="ECONOMIC_REFERENCE_VALUE"):
            Settings(_env_file=None, economic_reference_value=0)

    @pytest.mark.parametrize("factor", [-0.1, 1.5])
    def test_exploit_factor_out_of_range(self, factor):
        with pytest.raises(pydantic.ValidationError, match="DEFAULT_EXPLOIT_FACTOR"):
            Settings(_env_file=None, default_exploit_factor=factor)

    def test_thresholds_out_of_order(self):
        with pytest.raises(pydantic.ValidationError, match="strictly descending"):
            Settings(_env_file=None, level_high=85)

    def test_duplicate_thresholds(self):
        with pytest.raises(pydantic.ValidationError, match="strictly descending"):
            Settings(_env_file=None, level_medium=20)

    def test_top_risks_default_must_be_positive(self):
        with pytest.raises(pydantic.ValidationError, match="TOP_RISKS_DEFAULT"):
            Settings(_env_file=None, top_risks_default=0)


class TestParseIso:
    def test_empty(self):
        assert parse_iso(None) is None
        assert parse_iso("") is None

    def test_naive_taken_as_utc(self):
        assert parse_iso("2025-06-01T12:00:00").tzinfo == timezone.utc

    def test_offset_preserved(self):
        dt = parse_iso("2025-06-01T12:00:00+02:00")
        assert dt.utcoffset().total_seconds() == 7200

    def test_malformed_raises(self):
        with pytest.raises(ValueError):
            parse_iso("yesterday")
