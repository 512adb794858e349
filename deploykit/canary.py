"""Observation windows for canary releases."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional

from .cancellation import CancelToken, ensure_token
from .errors import HealthCheckError, MetricsError
from .health import HealthChecker
from .metrics import MetricsBackend

logger = logging.getLogger(__name__)


@dataclass
class CanarySample:
    elapsed: float
    healthy: bool
    error_rate: Optional[float] = None
    violation: Optional[str] = None


class CanaryMonitor:
    """Samples canary health and error rate for a fixed duration.

    Fail-fast: the first unhealthy sample (a failed health check, an error
    rate above ``max_error_rate``, or an unreachable metrics backend) ends
    the window with ``False``.  At least one sample is taken per window.
    """

    def __init__(
        self,
        health: HealthChecker,
        metrics: Optional[MetricsBackend],
        max_error_rate: float,
        sample_interval: float = 10.0,
        error_rate_window: str = "1m",
        target: str = "canary",
    ) -> None:
        self.health = health
        self.metrics = metrics
        self.max_error_rate = max_error_rate
        self.sample_interval = sample_interval
        self.error_rate_window = error_rate_window
        self.target = target
        self.samples: list[CanarySample] = []
        self.last_violation: Optional[str] = None
        if metrics is None:
            logger.warning("No metrics backend configured; canary windows check health only")

    def observe(self, version: str, duration: float, cancel: Optional[CancelToken] = None) -> bool:
        token = ensure_token(cancel)
        self.samples = []
        self.last_violation = None
        logger.info("Observing canary %s for %.0fs", version, duration)

        start = time.monotonic()
        while True:
            token.raise_if_cancelled()
            sample = self._sample(version, time.monotonic() - start, token)
            self.samples.append(sample)
            if sample.violation:
                self.last_violation = sample.violation
                logger.error("Canary %s violation: %s", version, sample.violation)
                return False

            elapsed = time.monotonic() - start
            if elapsed >= duration:
                logger.info("Canary %s healthy for %.0fs (%d samples)", version, elapsed, len(self.samples))
                return True
            token.wait(min(self.sample_interval, duration - elapsed))

    def _sample(self, version: str, elapsed: float, token: CancelToken) -> CanarySample:
        try:
            self.health.check_all(target=self.target, cancel=token)
        except HealthCheckError as exc:
            return CanarySample(elapsed, healthy=False, violation=str(exc))

        if self.metrics is None:
            return CanarySample(elapsed, healthy=True)
        try:
            rate = self.metrics.error_rate(version, self.error_rate_window)
        except MetricsError as exc:
            return CanarySample(elapsed, healthy=False, violation=f"Error rate unavailable: {exc}")

        if rate > self.max_error_rate:
            return CanarySample(
                elapsed,
                healthy=False,
                error_rate=rate,
                violation=f"Error rate {rate:.2f}% exceeds threshold {self.max_error_rate:.2f}%",
            )
        return CanarySample(elapsed, healthy=True, error_rate=rate)
