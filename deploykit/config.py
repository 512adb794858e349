"""Deployment configuration.

A :class:`DeploymentConfig` is immutable and supplied once, when the
orchestrator is constructed.  It can be built in code, from a nested dict
(:meth:`DeploymentConfig.from_dict`) or from a YAML/JSON file::

    from deploykit.config import load_config

    config = load_config("deploy/production.yaml")

All durations are seconds; error rates are percentages (0-100).
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG_PATH = "~/.deploykit/config.yaml"


class StrategyName(str, Enum):
    BLUE_GREEN = "blue-green"
    ROLLING = "rolling"
    CANARY = "canary"
    RECREATE = "recreate"

    @classmethod
    def parse(cls, value: Union[str, "StrategyName"]) -> "StrategyName":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("_", "-")
        try:
            return cls(normalized)
        except ValueError:
            choices = ", ".join(s.value for s in cls)
            raise ConfigurationError(
                f"Unknown deployment strategy {value!r}. Choose one of: {choices}"
            ) from None

    @property
    def requires_cluster(self) -> bool:
        return self is not StrategyName.RECREATE


@dataclass(frozen=True)
class HealthCheck:
    """A named HTTP probe.

    ``endpoint`` is either a path (resolved against the service being
    checked) or an absolute URL used verbatim.
    """

    service: str
    endpoint: str
    expected_status: int = 200
    timeout: float = 5.0
    retries: int = 3


@dataclass(frozen=True)
class DeploymentSettings:
    strategy: StrategyName = StrategyName.ROLLING
    health_check_timeout: float = 30.0
    readiness_timeout: float = 60.0
    graceful_shutdown_timeout: float = 30.0
    readiness_poll_interval: float = 5.0
    max_surge: str = "25%"
    max_unavailable: str = "25%"
    container_port: int = 8080
    service_port: int = 80


@dataclass(frozen=True)
class DockerSettings:
    registry: str = "localhost:5000"
    image_name: str = "credential-management"
    build_args: dict[str, str] = field(default_factory=dict)
    platforms: tuple[str, ...] = ("linux/amd64",)
    build_context: str = "."


@dataclass(frozen=True)
class KubernetesSettings:
    cluster: str
    namespace: str
    config_maps: tuple[str, ...] = ()
    secrets: tuple[str, ...] = ("database-credentials", "redis-credentials", "encryption-keys")
    min_replicas: int = 1
    max_replicas: int = 3
    target_cpu_utilization: int = 70


@dataclass(frozen=True)
class DatabaseSettings:
    run_migrations: bool = False
    backup_before_migration: bool = False
    migration_timeout: float = 60.0
    migrate_command: str = "npm run migrate:latest"
    backup_command: str = 'pg_dump "$DATABASE_URL" > {backup_file}'
    backup_dir: str = "/backups"


@dataclass(frozen=True)
class MonitoringSettings:
    prometheus_endpoint: Optional[str] = None
    grafana_url: Optional[str] = None
    alert_manager_url: Optional[str] = None
    query_timeout: float = 10.0


@dataclass(frozen=True)
class RollbackSettings:
    enable_auto_rollback: bool = False
    max_error_rate: float = 10.0
    monitoring_duration: float = 300.0
    keep_previous_versions: int = 3


@dataclass(frozen=True)
class CanarySettings:
    initial_weight: float = 0.1
    weights: tuple[float, ...] = (0.25, 0.5, 0.75, 1.0)
    initial_observation: Optional[float] = None
    step_observation: float = 120.0
    sample_interval: float = 10.0
    error_rate_window: str = "1m"


@dataclass(frozen=True)
class HealthSettings:
    checks: tuple[HealthCheck, ...] = ()
    retry_delay: float = 2.0
    base_url: str = "http://localhost:8080"


@dataclass(frozen=True)
class PreflightSettings:
    required_env: tuple[str, ...] = ("DATABASE_URL", "REDIS_URL", "ENCRYPTION_KEY")
    required_tools: tuple[str, ...] = ("docker", "git")
    cluster_tools: tuple[str, ...] = ("kubectl", "helm")
    disk_path: str = "/"
    disk_usage_warning: float = 80.0
    disk_usage_limit: float = 90.0
    memory_warning_mb: float = 1024.0
    memory_limit_mb: Optional[float] = None


@dataclass(frozen=True)
class DeploymentConfig:
    """Everything the orchestrator needs to know about one environment."""

    environment: str = "development"
    app_name: str = "credential-management"
    deployment: DeploymentSettings = field(default_factory=DeploymentSettings)
    docker: DockerSettings = field(default_factory=DockerSettings)
    kubernetes: Optional[KubernetesSettings] = None
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    monitoring: MonitoringSettings = field(default_factory=MonitoringSettings)
    rollback: RollbackSettings = field(default_factory=RollbackSettings)
    canary: CanarySettings = field(default_factory=CanarySettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    preflight: PreflightSettings = field(default_factory=PreflightSettings)
    test_commands: tuple[str, ...] = (
        "npm test",
        "npm run test:integration",
        "npm audit --production",
    )

    @property
    def strategy(self) -> StrategyName:
        return self.deployment.strategy

    @property
    def image(self) -> str:
        return f"{self.docker.registry}/{self.docker.image_name}"

    @property
    def canary_initial_observation(self) -> float:
        """First canary window; ``rollback.monitoring_duration`` unless set."""
        if self.canary.initial_observation is not None:
            return self.canary.initial_observation
        return self.rollback.monitoring_duration

    def health_checks(self) -> list[HealthCheck]:
        """Configured checks, or the default api/database/redis/monitoring set."""
        if self.health.checks:
            return list(self.health.checks)
        checks = [
            HealthCheck("api", "/health", timeout=5.0),
            HealthCheck("database", "/health/db", timeout=10.0),
            HealthCheck("redis", "/health/redis", timeout=5.0),
        ]
        if self.monitoring.prometheus_endpoint:
            checks.append(
                HealthCheck(
                    "monitoring",
                    self.monitoring.prometheus_endpoint.rstrip("/") + "/-/ready",
                    timeout=5.0,
                )
            )
        return checks

    def replace(self, **changes: Any) -> DeploymentConfig:
        return dataclasses.replace(self, **changes)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """Raise :class:`ConfigurationError` for inconsistent settings."""
        d = self.deployment
        for name in ("health_check_timeout", "readiness_timeout", "graceful_shutdown_timeout"):
            if getattr(d, name) <= 0:
                raise ConfigurationError(f"deployment.{name} must be positive")
        if d.readiness_poll_interval < 0:
            raise ConfigurationError("deployment.readiness_poll_interval must be >= 0")

        if self.kubernetes is not None:
            k = self.kubernetes
            if not k.namespace:
                raise ConfigurationError("kubernetes.namespace is required")
            if k.min_replicas < 1 or k.min_replicas > k.max_replicas:
                raise ConfigurationError(
                    f"Invalid replica bounds: min={k.min_replicas} max={k.max_replicas}"
                )

        r = self.rollback
        if r.keep_previous_versions < 1:
            raise ConfigurationError("rollback.keep_previous_versions must be >= 1")
        if not 0 <= r.max_error_rate <= 100:
            raise ConfigurationError("rollback.max_error_rate must be a percentage (0-100)")

        c = self.canary
        if not 0 < c.initial_weight <= 1:
            raise ConfigurationError("canary.initial_weight must be in (0, 1]")
        if not c.weights:
            raise ConfigurationError("canary.weights must not be empty")
        previous = 0.0
        for weight in c.weights:
            if not previous < weight <= 1:
                raise ConfigurationError(
                    f"canary.weights must increase strictly within (0, 1]: {list(c.weights)}"
                )
            previous = weight

        p = self.preflight
        if p.disk_usage_warning > p.disk_usage_limit:
            raise ConfigurationError(
                "preflight.disk_usage_warning must not exceed preflight.disk_usage_limit"
            )

    # ------------------------------------------------------------------
    # Construction from plain data
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeploymentConfig:
        """Build and validate a config from nested dicts (snake_case keys)."""
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a mapping")
        data = dict(data)
        sections = {
            "deployment": DeploymentSettings,
            "docker": DockerSettings,
            "kubernetes": KubernetesSettings,
            "database": DatabaseSettings,
            "monitoring": MonitoringSettings,
            "rollback": RollbackSettings,
            "canary": CanarySettings,
            "health": HealthSettings,
            "preflight": PreflightSettings,
        }
        kwargs: dict[str, Any] = {}
        for key, section_cls in sections.items():
            raw = data.pop(key, None)
            if raw is None:
                continue
            kwargs[key] = _build_section(section_cls, raw, key)
        if "test_commands" in data:
            kwargs["test_commands"] = tuple(data.pop("test_commands") or ())
        for key in ("environment", "app_name"):
            if key in data:
                kwargs[key] = str(data.pop(key))
        if data:
            raise ConfigurationError(
                f"Unknown configuration keys: {', '.join(sorted(data))}"
            )
        config = cls(**kwargs)
        config.validate()
        return config


def _build_section(section_cls: type, raw: Any, name: str) -> Any:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Configuration section {name!r} must be a mapping")
    known = {f.name for f in dataclasses.fields(section_cls)}
    unknown = set(raw) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in {name!r}: {', '.join(sorted(unknown))}"
        )
    values: dict[str, Any] = {}
    for key, value in raw.items():
        if key == "strategy":
            value = StrategyName.parse(value)
        elif key == "checks":
            value = tuple(
                c if isinstance(c, HealthCheck) else HealthCheck(**c) for c in value or ()
            )
        elif isinstance(value, list):
            value = tuple(value)
        values[key] = value
    try:
        return section_cls(**values)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid {name!r} section: {exc}") from exc


def load_config(path: Optional[Union[str, Path]] = None) -> DeploymentConfig:
    """Load a config file (YAML or JSON).

    Resolution order: *path*, ``$DEPLOYKIT_CONFIG``, ``~/.deploykit/config.yaml``.
    ``$DEPLOYKIT_ENVIRONMENT`` overrides the ``environment`` key.
    """
    resolved = Path(
        os.path.expanduser(
            str(path or os.environ.get("DEPLOYKIT_CONFIG") or _DEFAULT_CONFIG_PATH)
        )
    )
    if not resolved.exists():
        raise ConfigurationError(f"Config file not found: {resolved}")
    try:
        data = yaml.safe_load(resolved.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Could not parse {resolved}: {exc}") from exc

    env_override = os.environ.get("DEPLOYKIT_ENVIRONMENT")
    if env_override:
        data["environment"] = env_override

    logger.debug("Loaded deployment config from %s", resolved)
    return DeploymentConfig.from_dict(data)


# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------


def development_config() -> DeploymentConfig:
    """Single-host recreate deploys with migrations and no auto-rollback."""
    return DeploymentConfig(
        environment="development",
        deployment=DeploymentSettings(
            strategy=StrategyName.RECREATE,
            health_check_timeout=30.0,
            readiness_timeout=60.0,
            graceful_shutdown_timeout=30.0,
        ),
        docker=DockerSettings(registry="localhost:5000", platforms=("linux/amd64",)),
        database=DatabaseSettings(
            run_migrations=True,
            backup_before_migration=False,
            migration_timeout=60.0,
        ),
        monitoring=MonitoringSettings(
            prometheus_endpoint="http://localhost:9090",
            grafana_url="http://localhost:3000",
        ),
        rollback=RollbackSettings(
            enable_auto_rollback=False,
            max_error_rate=10.0,
            monitoring_duration=300.0,
            keep_previous_versions=3,
        ),
    )


def production_config() -> DeploymentConfig:
    """Blue-green on Kubernetes with backups and auto-rollback at 5% errors."""
    return DeploymentConfig(
        environment="production",
        deployment=DeploymentSettings(
            strategy=StrategyName.BLUE_GREEN,
            health_check_timeout=60.0,
            readiness_timeout=300.0,
            graceful_shutdown_timeout=60.0,
        ),
        docker=DockerSettings(
            registry="registry.example.com",
            platforms=("linux/amd64", "linux/arm64"),
        ),
        kubernetes=KubernetesSettings(
            cluster="production-cluster",
            namespace="credential-management",
            config_maps=("app-config", "feature-flags"),
            secrets=("database-credentials", "redis-credentials", "encryption-keys"),
            min_replicas=3,
            max_replicas=10,
            target_cpu_utilization=70,
        ),
        database=DatabaseSettings(
            run_migrations=True,
            backup_before_migration=True,
            migration_timeout=300.0,
        ),
        monitoring=MonitoringSettings(
            prometheus_endpoint="http://prometheus.monitoring.svc.cluster.local:9090",
            grafana_url="http://grafana.monitoring.svc.cluster.local:3000",
            alert_manager_url="http://alertmanager.monitoring.svc.cluster.local:9093",
        ),
        rollback=RollbackSettings(
            enable_auto_rollback=True,
            max_error_rate=5.0,
            monitoring_duration=600.0,
            keep_previous_versions=5,
        ),
    )
