"""
Unit tests for configuration loading and validation.

Tests strict validation of the engine config and the catalog YAML.
"""

import os
import shutil
import tempfile
from decimal import Decimal

import pytest
import yaml

from plan_usage.config.loader import (
    CacheConfig,
    EngineConfig,
    load_catalog,
    load_engine_config,
)
from plan_usage.core.catalog import AggregationMethod, FeatureType
from plan_usage.core.periods import SUNDAY, Period

CATALOG = {
    "features": {
        "api-calls": {
            "name": "API Calls",
            "type": "quota",
            "reset_period": "monthly",
            "unit": "calls",
        },
        "storage": {"name": "Storage", "type": "limit", "aggregation": "max"},
        "sso": {"name": "SSO", "type": "boolean"},
    },
    "plans": {
        "basic": {"name": "Basic", "features": {"api-calls": 1000, "storage": 2.5}},
        "pro": {"name": "Pro", "features": {"api-calls": None, "sso": True}},
    },
}


class TestEngineConfigLoading:
    """Test engine configuration loading and validation."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write(self, data, filename: str = "config.yaml") -> str:
        path = os.path.join(self.temp_dir, filename)
        with open(path, 'w', encoding='utf-8') as f:
            yaml.dump(data, f)
        return path

    def test_valid_config_loads_correctly(self):
        path = self._write({
            "quota": {
                "soft_limit": True,
                "grace_percentage": 5,
                "warning_thresholds": [100, 50, 80],
                "strict": True,
            },
            "usage": {"aggregate_same_period": False, "merge_metadata": True},
            "periods": {"week_start": "Sunday"},
            "cache": {"enabled": True, "maxsize": 10, "ttl": {"quotas": 30}},
        })
        config = load_engine_config(path)

        assert config.soft_limit_enabled is True
        assert config.grace_percentage == Decimal("5")
        assert config.warning_thresholds == (50, 80, 100)
        assert config.strict_enforcement is True
        assert config.aggregate_same_period is False
        assert config.merge_metadata is True
        assert config.week_start == SUNDAY
        assert config.cache.enabled is True
        assert config.cache.ttl["quotas"] == 30
        assert config.cache.ttl["plans"] == 86400

    def test_defaults(self):
        config = load_engine_config(self._write({"quota": {}}))
        assert config == EngineConfig()
        assert config.grace_percentage == Decimal("10")
        assert config.warning_thresholds == (80, 100)
        assert config.cache.enabled is False

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError, match="Configuration file not found"):
            load_engine_config(os.path.join(self.temp_dir, "nope.yaml"))

    def test_empty_file(self):
        path = os.path.join(self.temp_dir, "empty.yaml")
        open(path, 'w').close()
        with pytest.raises(ValueError, match="empty"):
            load_engine_config(path)

    def test_invalid_yaml(self):
        path = os.path.join(self.temp_dir, "bad.yaml")
        with open(path, 'w', encoding='utf-8') as f:
            f.write("quota: [unclosed")
        with pytest.raises(yaml.YAMLError):
            load_engine_config(path)

    @pytest.mark.parametrize("data,message", [
        ({"billing": {}}, "Unknown configuration keys"),
        ({"quota": {"hard_limit": True}}, "Unknown quota keys"),
        ({"quota": {"grace_percentage": -1}}, "grace_percentage"),
        ({"quota": {"warning_thresholds": [0]}}, "warning_thresholds"),
        ({"quota": {"soft_limit": "yes"}}, "soft_limit"),
        ({"periods": {"week_start": "someday"}}, "week_start"),
        ({"cache": {"maxsize": 0}}, "maxsize"),
        ({"cache": {"ttl": {"plans": -5}}}, "ttl.plans"),
    ])
    def test_invalid_values_rejected(self, data, message):
        with pytest.raises(ValueError, match=message):
            load_engine_config(self._write(data))


class TestConfigValidation:
    """Test dataclass validation."""

    def test_negative_grace(self):
        with pytest.raises(ValueError, match="grace_percentage"):
            EngineConfig(grace_percentage=Decimal("-1"))

    def test_week_start_range(self):
        with pytest.raises(ValueError, match="week_start"):
            EngineConfig(week_start=7)

    def test_cache_ttl_requires_default(self):
        with pytest.raises(ValueError, match="default"):
            CacheConfig(ttl={"plans": 60})


class TestCatalogLoading:
    """Test catalog YAML loading."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write(self, data) -> str:
        path = os.path.join(self.temp_dir, "catalog.yaml")
        with open(path, 'w', encoding='utf-8') as f:
            yaml.dump(data, f)
        return path

    def test_valid_catalog(self):
        catalog = load_catalog(self._write(CATALOG))

        api = catalog.resolve_feature("api-calls")
        assert api.type is FeatureType.QUOTA
        assert api.reset_period is Period.MONTHLY
        assert api.unit == "calls"
        storage = catalog.resolve_feature("storage")
        assert storage.aggregation is AggregationMethod.MAX
        assert storage.reset_period is Period.NONE

        basic = catalog.find_plan("basic")
        assert catalog.get_plan_feature_value(basic, "storage") == Decimal("2.5")
        pro = catalog.find_plan("pro")
        assert catalog.get_plan_feature_value(pro, "api-calls") is None
        assert catalog.get_plan_feature_value(pro, "sso") is True

    def test_features_required(self):
        with pytest.raises(ValueError, match="features"):
            load_catalog(self._write({"plans": {}}))

    def test_feature_type_required(self):
        with pytest.raises(ValueError, match="Missing required 'type'"):
            load_catalog(self._write({"features": {"x": {"name": "X"}}}))

    @pytest.mark.parametrize("feature,message", [
        ({"type": "meter"}, "'type'"),
        ({"type": "quota", "reset_period": "fortnightly"}, "reset_period"),
        ({"type": "quota", "aggregation": "median"}, "aggregation"),
        ({"type": "quota", "colour": "red"}, "Unknown keys"),
    ])
    def test_invalid_feature(self, feature, message):
        with pytest.raises(ValueError, match=message):
            load_catalog(self._write({"features": {"x": feature}}))

    def test_negative_plan_value(self):
        data = {"features": {"x": {"type": "quota"}}, "plans": {"p": {"features": {"x": -1}}}}
        with pytest.raises(ValueError, match="cannot be negative"):
            load_catalog(self._write(data))

    def test_plan_referencing_unknown_feature(self):
        data = {"features": {"x": {"type": "quota"}}, "plans": {"p": {"features": {"y": 1}}}}
        with pytest.raises(ValueError, match="unknown features"):
            load_catalog(self._write(data))
