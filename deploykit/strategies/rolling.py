"""Rolling update: replace pods incrementally within surge/unavailable bounds."""

from __future__ import annotations

from ..cancellation import CancelToken
from ..config import StrategyName
from .base import DeploymentStrategy, StrategyResult


class RollingStrategy(DeploymentStrategy):
    @property
    def name(self) -> StrategyName:
        return StrategyName.ROLLING

    def plan(self, version: str) -> list[str]:
        return [self.manifests.build(version).to_yaml()]

    def apply(self, version: str, result: StrategyResult, cancel: CancelToken) -> None:
        manifests = self.manifests.build(version)
        self.kubernetes.apply(manifests.documents(), cancel=cancel)
        result.affected_services.append(manifests.name)

    def await_ready(self, version: str, result: StrategyResult, cancel: CancelToken) -> None:
        waited = self.kubernetes.wait_rollout(
            self.manifests.resource_name(), self.readiness_timeout, cancel=cancel
        )
        result.notes.append(f"rolled out in {waited:.1f}s")
