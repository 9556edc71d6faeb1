"""
Configuration management and loading.

Reads the engine settings from a YAML file. Every section is optional;
anything left out falls back to the defaults the engine ships with.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from balance_guard.core.classifier import DEFAULT_REVERSION_RATIO
from balance_guard.core.reconciler import DEFAULT_MAX_ITERATIONS
from balance_guard.core.scanner import (
    DEFAULT_PAGE_SIZE,
    RECONCILE_THRESHOLDS,
    REVIEW_THRESHOLDS,
    Thresholds,
)
from balance_guard.storage.db import DEFAULT_DB_PATH

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def validate_log_level(level: str) -> str:
    """Return the upper-cased level name, or raise ValueError if unknown."""
    normalized = level.strip().upper()
    if normalized not in LOG_LEVELS:
        raise ValueError(f"log level must be one of: {sorted(LOG_LEVELS)}")
    return normalized


@dataclass(frozen=True)
class ScanConfig:
    """Paging and classification settings."""
    page_size: int = DEFAULT_PAGE_SIZE
    reversion_ratio: Decimal = DEFAULT_REVERSION_RATIO

    def __post_init__(self):
        """Validate scan values."""
        if self.page_size <= 0:
            raise ValueError("page_size must be > 0")
        if not (0 < self.reversion_ratio <= 1):
            raise ValueError("reversion_ratio must be in (0, 1]")


@dataclass(frozen=True)
class AppConfig:
    """Complete balance_guard configuration."""
    database: str = DEFAULT_DB_PATH
    scan: ScanConfig = field(default_factory=ScanConfig)
    reconcile_thresholds: Thresholds = RECONCILE_THRESHOLDS
    review_thresholds: Thresholds = REVIEW_THRESHOLDS
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    log_level: str = "INFO"

    def __post_init__(self):
        """Validate top-level values."""
        if self.max_iterations <= 0:
            raise ValueError("max_iterations must be > 0")
        validate_log_level(self.log_level)


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Strict validation: unknown keys, wrong types and out-of-range values
    fail loudly instead of being ignored.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return AppConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return AppConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    _reject_unknown(raw_config, {'database', 'scan', 'thresholds', 'reconcile', 'logging'}, "configuration")

    database = raw_config.get('database', DEFAULT_DB_PATH)
    if not isinstance(database, str) or not database.strip():
        raise ValueError("'database' must be a non-empty string")

    scan = _parse_scan(_section(raw_config, 'scan'))

    thresholds_data = _section(raw_config, 'thresholds')
    _reject_unknown(thresholds_data, {'reconcile', 'review'}, "thresholds")
    reconcile_thresholds = _parse_thresholds(
        _section(thresholds_data, 'reconcile', "thresholds.reconcile"),
        RECONCILE_THRESHOLDS,
        "thresholds.reconcile",
    )
    review_thresholds = _parse_thresholds(
        _section(thresholds_data, 'review', "thresholds.review"),
        REVIEW_THRESHOLDS,
        "thresholds.review",
    )

    reconcile_data = _section(raw_config, 'reconcile')
    _reject_unknown(reconcile_data, {'max_iterations'}, "reconcile")
    max_iterations = reconcile_data.get('max_iterations', DEFAULT_MAX_ITERATIONS)
    if isinstance(max_iterations, bool) or not isinstance(max_iterations, int) or max_iterations <= 0:
        raise ValueError("'reconcile.max_iterations' must be a positive integer")

    logging_data = _section(raw_config, 'logging')
    _reject_unknown(logging_data, {'level'}, "logging")
    level = logging_data.get('level', "INFO")
    if not isinstance(level, str):
        raise ValueError("'logging.level' must be a string")

    return AppConfig(
        database=database,
        scan=scan,
        reconcile_thresholds=reconcile_thresholds,
        review_thresholds=review_thresholds,
        max_iterations=max_iterations,
        log_level=level.upper(),
    )


def _section(data: Dict, key: str, path: Optional[str] = None) -> Dict:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"'{path or key}' must be a dictionary")
    return value


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _to_decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if not parsed.is_finite():
        raise ValueError(f"'{path}' must be finite")
    return parsed


def _parse_scan(data: Dict) -> ScanConfig:
    """Parse and validate the scan section."""
    _reject_unknown(data, {'page_size', 'reversion_ratio'}, "scan")

    page_size = data.get('page_size', DEFAULT_PAGE_SIZE)
    if isinstance(page_size, bool) or not isinstance(page_size, int):
        raise ValueError("'scan.page_size' must be an integer")

    ratio = DEFAULT_REVERSION_RATIO
    if 'reversion_ratio' in data:
        ratio = _to_decimal(data['reversion_ratio'], "scan.reversion_ratio")

    return ScanConfig(page_size=page_size, reversion_ratio=ratio)


def _parse_thresholds(data: Dict, defaults: Thresholds, path: str) -> Thresholds:
    """Parse and validate one thresholds block.

    Args:
        data: Threshold data with optional 'a' and 'b' keys
        defaults: Values used for missing keys
        path: Path for error messages

    Returns:
        Validated Thresholds

    Raises:
        ValueError: If a threshold is not a non-negative number
    """
    _reject_unknown(data, {'a', 'b'}, path)
    a = _to_decimal(data['a'], f"{path}.a") if 'a' in data else defaults.a
    b = _to_decimal(data['b'], f"{path}.b") if 'b' in data else defaults.b
    if a < 0 or b < 0:
        raise ValueError(f"Thresholds in {path} cannot be negative")
    return Thresholds(a=a, b=b)
