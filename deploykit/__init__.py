"""
deploykit: release orchestration for containerized services.

Drives a release through pre-checks, image build, tests, database
migrations, a blue-green, rolling, canary or recreate rollout,
verification and cleanup, rolling back automatically on failure.
"""

from __future__ import annotations

__version__ = "1.0.0"

from .cancellation import CancelToken, cancel_on_signals
from .config import (
    DeploymentConfig,
    HealthCheck,
    StrategyName,
    development_config,
    load_config,
    production_config,
)
from .errors import (
    CanaryViolationError,
    CommandError,
    ConfigurationError,
    DeployKitError,
    DeploymentCancelled,
    DeploymentError,
    DeploymentInProgressError,
    HealthCheckError,
    MetricsError,
    ReadinessTimeoutError,
    ResourceError,
    RollbackError,
    VerificationError,
)
from .events import DeploymentEvent, EventBus
from .models import (
    DeploymentMetrics,
    DeploymentState,
    DeploymentStatus,
    DeploymentStep,
    RollbackInfo,
    StepState,
)
from .orchestrator import STEPS, DeploymentOrchestrator

__all__ = [
    "CanaryViolationError",
    "CancelToken",
    "CommandError",
    "ConfigurationError",
    "DeployKitError",
    "DeploymentCancelled",
    "DeploymentConfig",
    "DeploymentError",
    "DeploymentEvent",
    "DeploymentInProgressError",
    "DeploymentMetrics",
    "DeploymentOrchestrator",
    "DeploymentState",
    "DeploymentStatus",
    "DeploymentStep",
    "EventBus",
    "HealthCheck",
    "HealthCheckError",
    "MetricsError",
    "ReadinessTimeoutError",
    "ResourceError",
    "RollbackError",
    "RollbackInfo",
    "STEPS",
    "StepState",
    "StrategyName",
    "VerificationError",
    "cancel_on_signals",
    "development_config",
    "load_config",
    "production_config",
]
