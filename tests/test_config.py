"""Tests for deploykit.config."""

from __future__ import annotations

import pytest

from deploykit.config import (
    DeploymentConfig,
    HealthCheck,
    StrategyName,
    development_config,
    load_config,
    production_config,
)
from deploykit.errors import ConfigurationError


class TestStrategyName:
    def test_parse_accepts_underscores_and_case(self):
        assert StrategyName.parse("Blue_Green") is StrategyName.BLUE_GREEN

    def test_parse_passes_enum_through(self):
        assert StrategyName.parse(StrategyName.CANARY) is StrategyName.CANARY

    def test_parse_unknown_raises(self):
        with pytest.raises(ConfigurationError, match="Unknown deployment strategy"):
            StrategyName.parse("big-bang")

    def test_only_recreate_runs_without_cluster(self):
        assert not StrategyName.RECREATE.requires_cluster
        assert all(s.requires_cluster for s in StrategyName if s is not StrategyName.RECREATE)


class TestFromDict:
    def test_nested_sections(self):
        config = DeploymentConfig.from_dict(
            {
                "environment": "staging",
                "deployment": {"strategy": "canary", "readiness_timeout": 90},
                "kubernetes": {"cluster": "c1", "namespace": "apps", "config_maps": ["a", "b"]},
                "health": {"checks": [{"service": "api", "endpoint": "/health"}]},
            }
        )
        assert config.strategy is StrategyName.CANARY
        assert config.deployment.readiness_timeout == 90
        assert config.kubernetes.config_maps == ("a", "b")
        assert config.health.checks == (HealthCheck("api", "/health"),)

    def test_unknown_top_level_key(self):
        with pytest.raises(ConfigurationError, match="Unknown configuration keys: colour"):
            DeploymentConfig.from_dict({"colour": "blue"})

    def test_unknown_section_key(self):
        with pytest.raises(ConfigurationError, match="replicas"):
            DeploymentConfig.from_dict({"kubernetes": {"cluster": "c", "namespace": "n", "replicas": 3}})

    def test_missing_required_field(self):
        with pytest.raises(ConfigurationError, match="kubernetes"):
            DeploymentConfig.from_dict({"kubernetes": {"namespace": "n"}})

    def test_section_must_be_mapping(self):
        with pytest.raises(ConfigurationError, match="must be a mapping"):
            DeploymentConfig.from_dict({"docker": ["registry"]})


class TestValidate:
    @pytest.mark.parametrize(
        "data, message",
        [
            ({"deployment": {"readiness_timeout": 0}}, "readiness_timeout"),
            ({"kubernetes": {"cluster": "c", "namespace": "n", "min_replicas": 5, "max_replicas": 2}}, "replica"),
            ({"rollback": {"keep_previous_versions": 0}}, "keep_previous_versions"),
            ({"rollback": {"max_error_rate": 150}}, "percentage"),
            ({"canary": {"weights": [0.5, 0.25]}}, "increase"),
            ({"canary": {"weights": [0.5, 1.5]}}, "increase"),
            ({"canary": {"initial_weight": 0}}, "initial_weight"),
        ],
    )
    def test_invalid_settings(self, data, message):
        with pytest.raises(ConfigurationError, match=message):
            DeploymentConfig.from_dict(data)


class TestHealthChecks:
    def test_defaults_include_monitoring_when_prometheus_set(self):
        checks = development_config().health_checks()
        assert [c.service for c in checks] == ["api", "database", "redis", "monitoring"]
        assert checks[-1].endpoint == "http://localhost:9090/-/ready"

    def test_defaults_without_prometheus(self):
        checks = DeploymentConfig().health_checks()
        assert [c.service for c in checks] == ["api", "database", "redis"]
        assert checks[1].timeout == 10.0

    def test_configured_checks_replace_defaults(self):
        config = DeploymentConfig.from_dict({"health": {"checks": [{"service": "web", "endpoint": "/up"}]}})
        assert [c.service for c in config.health_checks()] == ["web"]


class TestCanaryObservation:
    def test_defaults_to_monitoring_duration(self):
        config = DeploymentConfig.from_dict({"rollback": {"monitoring_duration": 45}})
        assert config.canary_initial_observation == 45

    def test_explicit_initial_observation_wins(self):
        config = DeploymentConfig.from_dict(
            {"rollback": {"monitoring_duration": 45}, "canary": {"initial_observation": 5}}
        )
        assert config.canary_initial_observation == 5

    def test_production_watches_canary_for_ten_minutes(self):
        assert production_config().canary_initial_observation == 600.0


class TestPresets:
    def test_development(self):
        config = development_config()
        config.validate()
        assert config.strategy is StrategyName.RECREATE
        assert config.kubernetes is None
        assert config.database.run_migrations and not config.database.backup_before_migration
        assert not config.rollback.enable_auto_rollback

    def test_production(self):
        config = production_config()
        config.validate()
        assert config.strategy is StrategyName.BLUE_GREEN
        assert config.kubernetes.min_replicas == 3
        assert config.docker.platforms == ("linux/amd64", "linux/arm64")
        assert config.rollback.enable_auto_rollback
        assert config.rollback.max_error_rate == 5.0
        assert config.rollback.keep_previous_versions == 5


class TestLoadConfig:
    def test_load_yaml(self, tmp_path):
        path = tmp_path / "deploy.yaml"
        path.write_text(
            "environment: production\n"
            "deployment:\n"
            "  strategy: rolling\n"
            "docker:\n"
            "  registry: registry.local\n"
            "  platforms: [linux/amd64]\n"
        )
        config = load_config(path)
        assert config.environment == "production"
        assert config.image == "registry.local/credential-management"
        assert config.docker.platforms == ("linux/amd64",)

    def test_load_json(self, tmp_path):
        path = tmp_path / "deploy.json"
        path.write_text('{"environment": "qa", "rollback": {"max_error_rate": 2.5}}')
        assert load_config(path).rollback.max_error_rate == 2.5

    def test_env_var_path_and_environment_override(self, tmp_path, monkeypatch):
        path = tmp_path / "c.yaml"
        path.write_text("environment: staging\n")
        monkeypatch.setenv("DEPLOYKIT_CONFIG", str(path))
        monkeypatch.setenv("DEPLOYKIT_ENVIRONMENT", "production")
        assert load_config().environment == "production"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("deployment: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Could not parse"):
            load_config(path)
