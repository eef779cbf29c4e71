"""
Configuration management and loading.

Handles engine settings and the feature/plan catalog, both read from
YAML with strict validation.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from ..core.catalog import AggregationMethod, Feature, FeatureType, InMemoryCatalog, Plan
from ..core.periods import MONDAY, Period
from ..core.quotas import to_decimal

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

DEFAULT_TTL = {
    "default": 3600,
    "plans": 86400,
    "features": 86400,
    "quotas": 300,
}


@dataclass(frozen=True)
class CacheConfig:
    """Advisory cache settings; disabled by default."""
    enabled: bool = False
    maxsize: int = 1024
    ttl: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_TTL))

    def __post_init__(self):
        """Validate cache sizes and TTLs."""
        if self.maxsize <= 0:
            raise ValueError("cache maxsize must be > 0")
        if "default" not in self.ttl:
            raise ValueError("cache ttl must define 'default'")
        for kind, seconds in self.ttl.items():
            if seconds <= 0:
                raise ValueError(f"cache ttl for '{kind}' must be > 0")


@dataclass(frozen=True)
class EngineConfig:
    """Every tunable of the accounting engine, passed in at construction."""
    grace_percentage: Decimal = Decimal("10")
    soft_limit_enabled: bool = False
    warning_thresholds: Tuple[int, ...] = (80, 100)
    strict_enforcement: bool = False
    aggregate_same_period: bool = True
    merge_metadata: bool = False
    week_start: int = MONDAY
    cache: CacheConfig = field(default_factory=CacheConfig)

    def __post_init__(self):
        """Validate policy values."""
        if self.grace_percentage < 0:
            raise ValueError("grace_percentage cannot be negative")
        for threshold in self.warning_thresholds:
            if threshold <= 0:
                raise ValueError("warning thresholds must be > 0")
        if not 0 <= self.week_start <= 6:
            raise ValueError("week_start must be between 0 (Monday) and 6 (Sunday)")


def _read_yaml(path: str, kind: str) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"{kind} file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in {kind.lower()} file {path}: {e}")

    if not raw:
        raise ValueError(f"{kind} file is empty")
    if not isinstance(raw, dict):
        raise ValueError(f"{kind} file must contain a mapping")
    return raw


def _section(raw: Dict, name: str, allowed: set) -> Dict[str, Any]:
    data = raw.get(name, {})
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown = set(data.keys()) - allowed
    if unknown:
        raise ValueError(f"Unknown {name} keys: {unknown}")
    return data


def _bool(data: Dict, key: str, path: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be true or false")
    return value


def load_engine_config(path: str) -> EngineConfig:
    """Load and validate engine configuration from a YAML file.

    Expected layout (every key optional)::

        quota:
          soft_limit: false
          grace_percentage: 10
          warning_thresholds: [80, 100]
          strict: false
        usage:
          aggregate_same_period: true
          merge_metadata: false
        periods:
          week_start: monday
        cache:
          enabled: false
          maxsize: 1024
          ttl: {default: 3600, plans: 86400, features: 86400, quotas: 300}

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EngineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    raw = _read_yaml(path, "Configuration")

    allowed_top_keys = {'quota', 'usage', 'periods', 'cache'}
    unknown_keys = set(raw.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    quota = _section(raw, 'quota', {'soft_limit', 'grace_percentage', 'warning_thresholds', 'strict'})
    usage = _section(raw, 'usage', {'aggregate_same_period', 'merge_metadata'})
    periods = _section(raw, 'periods', {'week_start'})
    cache = _section(raw, 'cache', {'enabled', 'maxsize', 'ttl'})

    grace = quota.get('grace_percentage', 10)
    if not isinstance(grace, (int, float)) or isinstance(grace, bool) or grace < 0:
        raise ValueError("'grace_percentage' in quota must be a number >= 0")

    thresholds = quota.get('warning_thresholds', [80, 100])
    if not isinstance(thresholds, list) or not all(
        isinstance(t, int) and not isinstance(t, bool) and t > 0 for t in thresholds
    ):
        raise ValueError("'warning_thresholds' in quota must be a list of positive integers")

    week_start = periods.get('week_start', 'monday')
    if not isinstance(week_start, str) or week_start.lower() not in WEEKDAYS:
        raise ValueError(f"'week_start' in periods must be one of: {WEEKDAYS}")

    return EngineConfig(
        grace_percentage=to_decimal(grace),
        soft_limit_enabled=_bool(quota, 'soft_limit', 'quota', False),
        warning_thresholds=tuple(sorted(thresholds)),
        strict_enforcement=_bool(quota, 'strict', 'quota', False),
        aggregate_same_period=_bool(usage, 'aggregate_same_period', 'usage', True),
        merge_metadata=_bool(usage, 'merge_metadata', 'usage', False),
        week_start=WEEKDAYS.index(week_start.lower()),
        cache=_parse_cache_config(cache)
    )


def _parse_cache_config(data: Dict) -> CacheConfig:
    maxsize = data.get('maxsize', 1024)
    if not isinstance(maxsize, int) or isinstance(maxsize, bool) or maxsize <= 0:
        raise ValueError("'maxsize' in cache must be a positive integer")

    ttl = dict(DEFAULT_TTL)
    ttl_data = data.get('ttl', {}) or {}
    if not isinstance(ttl_data, dict):
        raise ValueError("'ttl' in cache must be a dictionary")
    for kind, seconds in ttl_data.items():
        if not isinstance(seconds, int) or isinstance(seconds, bool) or seconds <= 0:
            raise ValueError(f"'ttl.{kind}' in cache must be a positive integer")
        ttl[kind] = seconds

    return CacheConfig(
        enabled=_bool(data, 'enabled', 'cache', False),
        maxsize=maxsize,
        ttl=ttl
    )


def load_catalog(path: str) -> InMemoryCatalog:
    """Load features and plans from a YAML file.

    Expected layout::

        features:
          api-calls:
            name: API Calls
            type: quota
            reset_period: monthly
            aggregation: sum
            unit: calls
        plans:
          pro:
            name: Pro
            features:
              api-calls: 1000      # null grants it without limit
              sso: true

    Raises:
        FileNotFoundError: If catalog file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If the catalog is invalid
    """
    raw = _read_yaml(path, "Catalog")

    unknown_keys = set(raw.keys()) - {'features', 'plans'}
    if unknown_keys:
        raise ValueError(f"Unknown catalog keys: {unknown_keys}")
    if 'features' not in raw:
        raise ValueError("Missing required 'features' section")

    features_data = raw['features']
    if not isinstance(features_data, dict) or not features_data:
        raise ValueError("'features' must be a non-empty dictionary")

    features = []
    for slug, feature_data in features_data.items():
        if not isinstance(feature_data, dict):
            raise ValueError(f"Feature '{slug}' must be a dictionary")
        features.append(_parse_feature(str(slug), feature_data))

    plans_data = raw.get('plans', {}) or {}
    if not isinstance(plans_data, dict):
        raise ValueError("'plans' must be a dictionary")

    plans = []
    for slug, plan_data in plans_data.items():
        if not isinstance(plan_data, dict):
            raise ValueError(f"Plan '{slug}' must be a dictionary")
        plans.append(_parse_plan(str(slug), plan_data))

    return InMemoryCatalog(features=features, plans=plans)


def _parse_enum(enum_type, value: Any, key: str, path: str):
    try:
        return enum_type(str(value).lower())
    except ValueError:
        valid = [member.value for member in enum_type]
        raise ValueError(f"'{key}' in {path} must be one of: {valid}")


def _parse_feature(slug: str, data: Dict) -> Feature:
    path = f"features.{slug}"
    allowed_keys = {'name', 'type', 'reset_period', 'aggregation', 'unit', 'meter_ref', 'description'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    if 'type' not in data:
        raise ValueError(f"Missing required 'type' in {path}")

    try:
        reset_period = Period.parse(data.get('reset_period'))
    except ValueError as e:
        raise ValueError(f"Invalid 'reset_period' in {path}: {e}")

    return Feature(
        slug=slug,
        name=str(data.get('name', slug)),
        type=_parse_enum(FeatureType, data['type'], 'type', path),
        reset_period=reset_period,
        aggregation=_parse_enum(AggregationMethod, data.get('aggregation', 'sum'), 'aggregation', path),
        unit=data.get('unit'),
        meter_ref=data.get('meter_ref'),
        description=data.get('description')
    )


def _parse_plan(slug: str, data: Dict) -> Plan:
    path = f"plans.{slug}"
    unknown_keys = set(data.keys()) - {'name', 'features'}
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    values = data.get('features', {}) or {}
    if not isinstance(values, dict):
        raise ValueError(f"'features' in {path} must be a dictionary")

    parsed: Dict[str, Optional[Any]] = {}
    for feature_slug, value in values.items():
        if value is None or isinstance(value, bool):
            parsed[feature_slug] = value
        elif isinstance(value, (int, float)):
            if value < 0:
                raise ValueError(f"'{feature_slug}' in {path} cannot be negative")
            parsed[feature_slug] = to_decimal(value)
        else:
            raise ValueError(f"'{feature_slug}' in {path} must be a number, boolean or null")

    return Plan(slug=slug, name=str(data.get('name', slug)), features=parsed)
