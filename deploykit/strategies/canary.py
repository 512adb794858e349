"""Canary: run the new release beside stable and shift traffic in steps.

Every traffic step is followed by an observation window of the
:class:`~deploykit.canary.CanaryMonitor`.  A failed window routes all
traffic back to stable, deletes the canary and raises
:class:`~deploykit.errors.CanaryViolationError`; any other failure (a
readiness timeout, a kubectl error) is cleaned up the same way and then
re-raised.  Cancellation only resets the split and leaves the canary
running.  After the last step the stable deployment is updated to the new
version and the canary removed.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..canary import CanaryMonitor
from ..cancellation import CancelToken
from ..config import StrategyName
from ..errors import (
    CanaryViolationError,
    ConfigurationError,
    DeployKitError,
    DeploymentCancelled,
)
from ..manifests import render_yaml
from .base import DeploymentStrategy, StrategyResult

logger = logging.getLogger(__name__)

CANARY = "canary"


class CanaryStrategy(DeploymentStrategy):
    @property
    def name(self) -> StrategyName:
        return StrategyName.CANARY

    @property
    def monitor(self) -> CanaryMonitor:
        if self.context.monitor is None:
            raise ConfigurationError("The canary strategy requires a canary monitor")
        return self.context.monitor

    @property
    def canary_name(self) -> str:
        return self.manifests.resource_name(CANARY)

    def plan(self, version: str) -> list[str]:
        c = self.config.canary
        steps = ", ".join(f"{w:.0%}" for w in c.weights)
        return [
            self.manifests.build(version, CANARY, traffic_weight=c.initial_weight).to_yaml(),
            f"observe {self.config.canary_initial_observation:.0f}s, then shift traffic {steps} "
            f"observing {c.step_observation:.0f}s each",
            "promote:\n" + self.manifests.build(version).to_yaml(),
        ]

    def execute(
        self,
        version: str,
        dry_run: bool = False,
        cancel: Optional[CancelToken] = None,
    ) -> StrategyResult:
        try:
            return super().execute(version, dry_run=dry_run, cancel=cancel)
        except DeploymentCancelled:
            # Leave the canary up for inspection, but take it out of the traffic path
            logger.warning("Canary %s cancelled, routing all traffic to stable", version)
            self._cleanup(remove=False)
            raise
        except CanaryViolationError:
            raise
        except DeployKitError as exc:
            if dry_run:
                raise
            logger.error("Canary %s failed: %s; routing all traffic to stable", version, exc)
            self._cleanup()
            raise

    def apply(self, version: str, result: StrategyResult, cancel: CancelToken) -> None:
        weight = self.config.canary.initial_weight
        manifests = self.manifests.build(version, CANARY, traffic_weight=weight)
        self.kubernetes.apply(manifests.documents(), cancel=cancel)
        result.affected_services.append(manifests.name)
        self._record_weight(weight, result)

    def await_ready(self, version: str, result: StrategyResult, cancel: CancelToken) -> None:
        self.kubernetes.wait_ready(self.canary_name, self.readiness_timeout, cancel=cancel)

    def verify(self, version: str, result: StrategyResult, cancel: CancelToken) -> None:
        self._observe(version, self.config.canary_initial_observation, cancel)

    def cutover(self, version: str, result: StrategyResult, cancel: CancelToken) -> None:
        for weight in self.config.canary.weights:
            self.kubernetes.apply([self.manifests.traffic_split(CANARY, weight)], cancel=cancel)
            self._record_weight(weight, result)
            self._observe(version, self.config.canary.step_observation, cancel)
        self.promote(version, result, cancel)

    def promote(self, version: str, result: StrategyResult, cancel: CancelToken) -> None:
        """Move stable to *version*, route everything to it, drop the canary."""
        logger.info("Promoting canary %s to stable", version)
        stable = self.manifests.build(version)
        self.kubernetes.apply(stable.documents(), cancel=cancel)
        self.kubernetes.wait_ready(stable.name, self.readiness_timeout, cancel=cancel)
        self.kubernetes.apply([self.manifests.traffic_split(CANARY, 0.0)], cancel=cancel)
        self._remove_canary()
        result.affected_services.append(stable.name)
        result.notes.append(f"canary promoted through {len(result.traffic_weights)} traffic steps")

    def _observe(self, version: str, duration: float, cancel: CancelToken) -> None:
        if self.monitor.observe(version, duration, cancel=cancel):
            return
        reason = self.monitor.last_violation or "canary observation failed"
        logger.error("Aborting canary %s: %s", version, reason)
        cleanup_error = self._cleanup()
        raise CanaryViolationError(f"Canary {version} failed: {reason}") from cleanup_error

    def _cleanup(self, remove: bool = True) -> Optional[DeployKitError]:
        """Route everything to stable, then delete the canary when *remove*.

        A failure here is logged and returned so the error that caused the
        abort is the one that propagates.
        """
        try:
            self._route_to_stable()
            if remove:
                self._remove_canary()
        except DeployKitError as exc:
            logger.exception("Cleanup of canary %s failed", self.canary_name)
            return exc
        return None

    def _record_weight(self, weight: float, result: StrategyResult) -> None:
        result.traffic_weights.append(weight)
        logger.info("Routing %.0f%% of traffic to canary", weight * 100)
        if self.context.on_traffic_shift is not None:
            self.context.on_traffic_shift(weight)

    def _route_to_stable(self) -> None:
        split = self.manifests.traffic_split(CANARY, 0.0)
        logger.debug("Resetting traffic split:\n%s", render_yaml([split]))
        self.kubernetes.apply([split])

    def _remove_canary(self) -> None:
        self.kubernetes.delete_deployment(self.canary_name)
        self.kubernetes.delete_hpa(f"{self.canary_name}-hpa")
        self.kubernetes.delete_service(self.canary_name)
