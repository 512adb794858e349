"""Blue-green: bring up the idle color, verify it, then switch the router.

The live color is read from the selector of the bare-named Service
(``<app>``), which fronts whichever color is live.  The new release goes to
the other color; the previous color keeps running so a rollback is a
selector switch away.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..cancellation import CancelToken
from ..config import StrategyName
from ..manifests import render_yaml
from .base import DeploymentStrategy, StrategyResult

logger = logging.getLogger(__name__)

BLUE = "blue"
GREEN = "green"


def other_color(color: Optional[str]) -> str:
    return BLUE if color == GREEN else GREEN


class BlueGreenStrategy(DeploymentStrategy):
    live_color: Optional[str] = None
    target_color: Optional[str] = None

    @property
    def name(self) -> StrategyName:
        return StrategyName.BLUE_GREEN

    def plan(self, version: str) -> list[str]:
        return [
            "deploy to the idle color (blue or green, whichever is not live):\n"
            + self.manifests.build(version, GREEN).to_yaml(),
            "switch router service to the idle color:\n"
            + render_yaml([self.manifests.service(GREEN, name=self.manifests.resource_name())]),
        ]

    def current_color(self, cancel: Optional[CancelToken] = None) -> str:
        selector = self.kubernetes.get_service_selector(self.manifests.resource_name(), cancel=cancel)
        color = (selector or {}).get("variant")
        return color if color in (BLUE, GREEN) else BLUE

    def prepare(self, version: str, result: StrategyResult, cancel: CancelToken) -> None:
        self.live_color = self.current_color(cancel)
        self.target_color = other_color(self.live_color)
        logger.info("Live color is %s, deploying %s to %s", self.live_color, version, self.target_color)
        result.notes.append(f"{self.live_color} -> {self.target_color}")

    def apply(self, version: str, result: StrategyResult, cancel: CancelToken) -> None:
        manifests = self.manifests.build(version, self.target_color)
        self.kubernetes.apply(manifests.documents(), cancel=cancel)
        result.affected_services.append(manifests.name)

    def await_ready(self, version: str, result: StrategyResult, cancel: CancelToken) -> None:
        self.kubernetes.wait_ready(
            self.manifests.resource_name(self.target_color), self.readiness_timeout, cancel=cancel
        )

    def verify(self, version: str, result: StrategyResult, cancel: CancelToken) -> None:
        self.context.health.check_all(target=self.target_color, cancel=cancel)

    def cutover(self, version: str, result: StrategyResult, cancel: CancelToken) -> None:
        router = self.manifests.service(self.target_color, name=self.manifests.resource_name())
        self.kubernetes.apply([router], cancel=cancel)
        result.affected_services.append(router["metadata"]["name"])
        logger.info(
            "Switched traffic from %s to %s; %s left running",
            self.live_color,
            self.target_color,
            self.live_color,
        )
