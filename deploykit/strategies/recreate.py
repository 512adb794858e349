"""Recreate: stop the running release, then start the new one.

Runs against the cluster when kubernetes settings are present, otherwise
against docker-compose on this host.  Accepts downtime and records it.
"""

from __future__ import annotations

import logging
import time

from ..cancellation import CancelToken
from ..config import StrategyName
from ..errors import ConfigurationError
from ..runtime import ComposeRuntime
from .base import DeploymentStrategy, StrategyResult

logger = logging.getLogger(__name__)


class RecreateStrategy(DeploymentStrategy):
    requires_cluster = False
    _stopped_at: float = 0.0

    @property
    def name(self) -> StrategyName:
        return StrategyName.RECREATE

    @property
    def on_cluster(self) -> bool:
        return self.config.kubernetes is not None

    @property
    def compose(self) -> ComposeRuntime:
        if self.context.compose is None:
            raise ConfigurationError("The recreate strategy needs a docker-compose runtime without kubernetes")
        return self.context.compose

    def plan(self, version: str) -> list[str]:
        grace = int(self.config.deployment.graceful_shutdown_timeout)
        if self.on_cluster:
            name = self.manifests.resource_name()
            return [
                f"kubectl delete deployment {name} -n {self.manifests.namespace}"
                f" --ignore-not-found --grace-period={grace}",
                self.manifests.build(version).to_yaml(),
            ]
        compose_file = f"docker-compose.{self.config.environment}.yml"
        return [
            f"docker-compose -f {compose_file} down --timeout {grace}",
            f"docker-compose -f {compose_file} up -d",
        ]

    def prepare(self, version: str, result: StrategyResult, cancel: CancelToken) -> None:
        self._stopped_at = time.monotonic()
        grace = self.config.deployment.graceful_shutdown_timeout
        logger.info("Stopping current release")
        if self.on_cluster:
            self.kubernetes.delete_deployment(
                self.manifests.resource_name(), grace_period=grace, cancel=cancel
            )
        else:
            self.compose.down(grace, cancel=cancel)

    def apply(self, version: str, result: StrategyResult, cancel: CancelToken) -> None:
        if self.on_cluster:
            manifests = self.manifests.build(version)
            self.kubernetes.apply(manifests.documents(), cancel=cancel)
            result.affected_services.append(manifests.name)
        else:
            self.compose.up(cancel=cancel)
            result.affected_services.append(self.config.app_name)

    def await_ready(self, version: str, result: StrategyResult, cancel: CancelToken) -> None:
        if self.on_cluster:
            self.kubernetes.wait_ready(self.manifests.resource_name(), self.readiness_timeout, cancel=cancel)
        result.downtime = time.monotonic() - self._stopped_at
        result.notes.append(f"downtime {result.downtime:.1f}s")
