"""Abstract deployment strategy interface.

Each rollout strategy (recreate, rolling, blue-green, canary) implements
the hooks of :meth:`DeploymentStrategy.execute`, which always runs them in
the same order::

    plan -> (dry run: log and stop)
         -> prepare -> apply -> await_ready -> verify -> cutover

Strategies never trigger rollback; they raise and leave that decision to
the orchestrator.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..cancellation import CancelToken, ensure_token
from ..canary import CanaryMonitor
from ..config import DeploymentConfig, StrategyName
from ..errors import ConfigurationError
from ..health import HealthChecker
from ..manifests import ManifestBuilder
from ..runtime import ComposeRuntime, KubernetesRuntime

logger = logging.getLogger(__name__)


@dataclass
class StrategyContext:
    """Collaborators a strategy needs, built once by the orchestrator."""

    config: DeploymentConfig
    manifests: ManifestBuilder
    health: HealthChecker
    kubernetes: Optional[KubernetesRuntime] = None
    compose: Optional[ComposeRuntime] = None
    monitor: Optional[CanaryMonitor] = None
    on_traffic_shift: Optional[Callable[[float], None]] = None


@dataclass
class StrategyResult:
    """What a strategy run did, folded into the deployment's metrics."""

    strategy: str
    version: str
    dry_run: bool = False
    plan: list[str] = field(default_factory=list)
    downtime: Optional[float] = None
    traffic_weights: list[float] = field(default_factory=list)
    affected_services: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    def summary(self) -> str:
        lines = [f"{self.strategy} deployment of {self.version}"]
        lines.extend(self.notes)
        return "\n".join(lines)


class DeploymentStrategy(abc.ABC):
    """Base class for rollout strategies."""

    #: Whether the strategy can only run against a Kubernetes cluster.
    requires_cluster: bool = True

    def __init__(self, context: StrategyContext) -> None:
        self.context = context
        self.config = context.config
        if self.requires_cluster and self.config.kubernetes is None:
            raise ConfigurationError(
                f"The {self.name.value} strategy requires kubernetes settings"
            )

    @property
    @abc.abstractmethod
    def name(self) -> StrategyName:
        """Strategy identifier."""

    @property
    def kubernetes(self) -> KubernetesRuntime:
        if self.context.kubernetes is None:
            raise ConfigurationError(f"The {self.name.value} strategy requires a Kubernetes runtime")
        return self.context.kubernetes

    @property
    def manifests(self) -> ManifestBuilder:
        return self.context.manifests

    @property
    def readiness_timeout(self) -> float:
        return self.config.deployment.readiness_timeout

    # ------------------------------------------------------------------
    # Template
    # ------------------------------------------------------------------

    def execute(
        self,
        version: str,
        dry_run: bool = False,
        cancel: Optional[CancelToken] = None,
    ) -> StrategyResult:
        token = ensure_token(cancel)
        result = StrategyResult(strategy=self.name.value, version=version, dry_run=dry_run)
        result.plan = self.plan(version)

        if dry_run:
            for entry in result.plan:
                logger.info("[dry-run] %s: would run\n%s", self.name.value, entry)
            result.notes.append(f"dry run, {len(result.plan)} planned actions")
            return result

        logger.info("Starting %s deployment of %s", self.name.value, version)
        self.prepare(version, result, token)
        self.apply(version, result, token)
        self.await_ready(version, result, token)
        self.verify(version, result, token)
        self.cutover(version, result, token)
        logger.info("%s deployment of %s finished", self.name.value, version)
        return result

    @abc.abstractmethod
    def plan(self, version: str) -> list[str]:
        """Describe the commands/manifests a run would apply, without side effects."""

    def prepare(self, version: str, result: StrategyResult, cancel: CancelToken) -> None:
        """Work done before the new release is applied."""

    @abc.abstractmethod
    def apply(self, version: str, result: StrategyResult, cancel: CancelToken) -> None:
        """Create or update the resources running *version*."""

    @abc.abstractmethod
    def await_ready(self, version: str, result: StrategyResult, cancel: CancelToken) -> None:
        """Block until the new release is ready or raise ReadinessTimeoutError."""

    def verify(self, version: str, result: StrategyResult, cancel: CancelToken) -> None:
        """Strategy-specific checks before traffic moves."""

    def cutover(self, version: str, result: StrategyResult, cancel: CancelToken) -> None:
        """Move traffic to the new release."""
