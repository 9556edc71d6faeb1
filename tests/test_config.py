"""
Unit tests for configuration loading and validation.

Tests defaults, overrides and strict validation of the YAML config.
"""

import os
import tempfile
from decimal import Decimal

import pytest
import yaml

from balance_guard.config.loader import AppConfig, ScanConfig, load_config, validate_log_level
from balance_guard.core.scanner import RECONCILE_THRESHOLDS, REVIEW_THRESHOLDS, Thresholds


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_no_path_returns_defaults(self):
        """Test that no config file means built-in defaults."""
        config = load_config(None)

        assert config == AppConfig()
        assert config.database == "balance_guard.db"
        assert config.scan.page_size == 1000
        assert config.scan.reversion_ratio == Decimal("0.4")
        assert config.reconcile_thresholds == RECONCILE_THRESHOLDS
        assert config.review_thresholds == REVIEW_THRESHOLDS
        assert config.max_iterations == 100
        assert config.log_level == "INFO"

    def test_valid_config_loads_correctly(self):
        """Test that a full configuration loads correctly."""
        config_data = {
            "database": "/var/lib/balances.db",
            "scan": {
                "page_size": 250,
                "reversion_ratio": 0.5
            },
            "thresholds": {
                "reconcile": {"a": 150, "b": 800.5},
                "review": {"a": 400, "b": 4000}
            },
            "reconcile": {
                "max_iterations": 20
            },
            "logging": {
                "level": "debug"
            }
        }

        config = load_config(self._write_config(config_data))

        assert config.database == "/var/lib/balances.db"
        assert config.scan == ScanConfig(page_size=250, reversion_ratio=Decimal("0.5"))
        assert config.reconcile_thresholds == Thresholds(a=Decimal("150"), b=Decimal("800.5"))
        assert config.review_thresholds == Thresholds(a=Decimal("400"), b=Decimal("4000"))
        assert config.max_iterations == 20
        assert config.log_level == "DEBUG"

    def test_partial_thresholds_keep_defaults(self):
        """Test that a missing threshold key falls back to the default."""
        config_path = self._write_config({"thresholds": {"reconcile": {"a": 100}}})
        config = load_config(config_path)

        assert config.reconcile_thresholds == Thresholds(a=Decimal("100"), b=Decimal("999"))
        assert config.review_thresholds == REVIEW_THRESHOLDS

    def test_empty_file_returns_defaults(self):
        """Test that an empty file is treated as no overrides."""
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("")

        assert load_config(config_path) == AppConfig()

    def test_missing_file_raises_error(self):
        """Test that a missing config file raises an error."""
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_invalid_yaml_raises_error(self):
        """Test that invalid YAML raises an error."""
        config_path = os.path.join(self.temp_dir, "invalid.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("scan: [unclosed")

        with pytest.raises(yaml.YAMLError):
            load_config(config_path)

    def test_non_dict_root_raises_error(self):
        """Test that a list at the root is rejected."""
        config_path = self._write_config([1, 2, 3])
        with pytest.raises(ValueError, match="root must be a dictionary"):
            load_config(config_path)

    def test_unknown_keys_raise_error(self):
        """Test that unknown keys fail loudly instead of being ignored."""
        config_path = self._write_config({"scan": {"page_sise": 10}})
        with pytest.raises(ValueError, match="Unknown keys in scan"):
            load_config(config_path)

        config_path = self._write_config({"alerts": {}})
        with pytest.raises(ValueError, match="Unknown keys in configuration"):
            load_config(config_path)

    def test_negative_threshold_raises_error(self):
        """Test that negative thresholds are rejected."""
        config_path = self._write_config({"thresholds": {"review": {"b": -1}}})
        with pytest.raises(ValueError, match="cannot be negative"):
            load_config(config_path)

    def test_non_numeric_threshold_raises_error(self):
        """Test that thresholds must be numbers."""
        config_path = self._write_config({"thresholds": {"reconcile": {"a": "lots"}}})
        with pytest.raises(ValueError, match="must be a number"):
            load_config(config_path)

        config_path = self._write_config({"thresholds": {"reconcile": {"a": True}}})
        with pytest.raises(ValueError, match="must be a number"):
            load_config(config_path)

    def test_invalid_max_iterations_raises_error(self):
        """Test that max_iterations must be a positive integer."""
        for value in (0, -5, 2.5, "ten", True):
            config_path = self._write_config({"reconcile": {"max_iterations": value}})
            with pytest.raises(ValueError, match="max_iterations"):
                load_config(config_path)

    def test_invalid_scan_values_raise_error(self):
        """Test page size and reversion ratio ranges."""
        config_path = self._write_config({"scan": {"page_size": 0}})
        with pytest.raises(ValueError, match="page_size"):
            load_config(config_path)

        config_path = self._write_config({"scan": {"reversion_ratio": 1.5}})
        with pytest.raises(ValueError, match="reversion_ratio"):
            load_config(config_path)

    def test_invalid_log_level_raises_error(self):
        """Test that unknown log levels are rejected."""
        config_path = self._write_config({"logging": {"level": "chatty"}})
        with pytest.raises(ValueError, match="log level"):
            load_config(config_path)

    def test_section_must_be_dictionary(self):
        """Test that a scalar section is rejected."""
        config_path = self._write_config({"thresholds": {"reconcile": 300}})
        with pytest.raises(ValueError, match="'thresholds.reconcile' must be a dictionary"):
            load_config(config_path)

    def test_validate_log_level(self):
        """Test the level check shared with the --log-level option."""
        assert validate_log_level(" warning ") == "WARNING"
        with pytest.raises(ValueError, match="log level must be one of"):
            validate_log_level("bogus")
