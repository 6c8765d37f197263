"""Tests for configuration loading and validation."""

from datetime import date
from pathlib import Path

import pytest
from pydantic import ValidationError

from leadminer.config import ClassifierConfig, Config, SearchConfig, load_config, parse_date_range
from leadminer.config.config import CacheConfig, LazyConfig, MonitoringConfig
from leadminer.exceptions import ConfigurationError


class TestParseDateRange:
    """Event window parsing."""

    def test_valid_range(self):
        assert parse_date_range("2025-03-01 to 2025-12-31") == (date(2025, 3, 1), date(2025, 12, 31))

    @pytest.mark.parametrize(
        "value",
        ["2025-03-01", "2025-03-01 - 2025-12-31", "soon to later", "2025-12-31 to 2025-03-01"],
    )
    def test_invalid_ranges_raise(self, value):
        with pytest.raises(ValueError):
            parse_date_range(value)


class TestConfigValidation:
    """Invalid values are rejected before anything runs."""

    def test_defaults(self):
        config = Config()
        assert config.classifier.confidence_threshold == 0.85
        assert (config.classifier.review_band_low, config.classifier.review_band_high) == (0.6, 0.8)
        assert config.classifier.consistency_passes == 2
        assert config.dedup.semantic_threshold == 0.85
        assert config.monitor.max_b2b_rate == 0.3
        assert config.cache.evict_fraction == 0.2
        assert config.budget.budget_limit == 50.0
        assert config.search.max_leads_per_day == 10

    @pytest.mark.parametrize("field", ["confidence_threshold", "consistency_threshold", "exclusion_ratio"])
    def test_threshold_out_of_range(self, field):
        with pytest.raises(ValidationError):
            ClassifierConfig(**{field: 1.5})

    def test_inverted_review_band(self):
        with pytest.raises(ValidationError):
            ClassifierConfig(review_band_low=0.9, review_band_high=0.6)

    def test_consistency_passes_minimum(self):
        with pytest.raises(ValidationError):
            ClassifierConfig(consistency_passes=1)
        assert ClassifierConfig(consistency_passes=3).consistency_passes == 3

    def test_evict_fraction_bounds(self):
        with pytest.raises(ValidationError):
            CacheConfig(evict_fraction=0.0)
        assert CacheConfig(evict_fraction=1.0).evict_fraction == 1.0

    def test_malformed_date_range(self):
        with pytest.raises(ValidationError):
            SearchConfig(event_date_range="next spring")

    def test_date_window_property(self):
        search = SearchConfig(event_date_range="2025-06-01 to 2025-08-31")
        assert search.date_window == (date(2025, 6, 1), date(2025, 8, 31))

    def test_log_level_normalized(self):
        assert MonitoringConfig(log_level="debug").log_level == "DEBUG"
        with pytest.raises(ValidationError):
            MonitoringConfig(log_level="chatty")


class TestLoadConfig:
    """YAML loading and error wrapping."""

    def test_load_from_yaml(self, tmp_path: Path):
        path = tmp_path / "leadminer.yaml"
        path.write_text(
            "classifier:\n  confidence_threshold: 0.9\nsearch:\n  max_leads_per_day: 3\n",
            encoding="utf-8",
        )
        config = load_config(path)
        assert config.classifier.confidence_threshold == 0.9
        assert config.search.max_leads_per_day == 3

    def test_empty_yaml_uses_defaults(self, tmp_path: Path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(path).classifier.confidence_threshold == 0.85

    def test_invalid_value_is_configuration_error(self, tmp_path: Path):
        path = tmp_path / "bad.yaml"
        path.write_text("dedup:\n  semantic_threshold: 2.0\n", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_missing_file_is_configuration_error(self, tmp_path: Path):
        with pytest.raises(ConfigurationError):
            load_config(tmp_path / "missing.yaml")

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("LEADMINER_SEARCH__MAX_LEADS_PER_DAY", "25")
        assert Config().search.max_leads_per_day == 25


class TestLazyConfig:
    def test_loads_on_first_access(self, monkeypatch, tmp_path: Path):
        monkeypatch.chdir(tmp_path)
        LazyConfig.reset()
        try:
            proxy = LazyConfig()
            assert proxy.project_name == "LeadMiner"
        finally:
            LazyConfig.reset()
