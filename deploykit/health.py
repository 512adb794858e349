"""HTTP health checks against a deployed release.

Every configured :class:`~deploykit.config.HealthCheck` is probed up to
``retries`` times; any outcome other than the expected status code (a
connection error, a timeout, a different status) uses up an attempt.  A
whole :meth:`HealthChecker.check_all` pass is additionally bounded by the
deployment's ``health_check_timeout``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Optional

import httpx

from .cancellation import CancelToken, ensure_token
from .config import DeploymentConfig, HealthCheck
from .errors import HealthCheckError

logger = logging.getLogger(__name__)


@dataclass
class HealthResult:
    service: str
    url: str
    healthy: bool
    status_code: Optional[int] = None
    attempts: int = 0
    latency: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class HealthChecker:
    """Probes the configured checks, optionally for one deployment variant.

    Pass ``transport`` (for example ``httpx.MockTransport``) or a ready
    ``client`` to control how requests are sent.
    """

    def __init__(
        self,
        config: DeploymentConfig,
        client: Optional[httpx.Client] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.Client(transport=transport, follow_redirects=False)

    def close(self) -> None:
        if self._owns_client and not self._client.is_closed:
            self._client.close()

    def __enter__(self) -> HealthChecker:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def checks(self) -> list[HealthCheck]:
        return self.config.health_checks()

    def resolve_url(self, check: HealthCheck, target: Optional[str] = None) -> str:
        """Absolute endpoints verbatim; paths against the target service or base URL."""
        if check.endpoint.startswith(("http://", "https://")):
            return check.endpoint
        k8s = self.config.kubernetes
        if target and k8s is not None:
            base = f"http://{self.config.app_name}-{target}.{k8s.namespace}.svc.cluster.local"
        else:
            base = self.config.health.base_url.rstrip("/")
        return base + "/" + check.endpoint.lstrip("/")

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------

    def probe(
        self,
        check: HealthCheck,
        target: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
        deadline: Optional[float] = None,
    ) -> HealthResult:
        """Run *check* with retries; never raises for an unhealthy endpoint."""
        token = ensure_token(cancel)
        url = self.resolve_url(check, target)
        result = HealthResult(service=check.service, url=url, healthy=False)

        for attempt in range(1, max(check.retries, 1) + 1):
            token.raise_if_cancelled()
            timeout = check.timeout
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    result.error = result.error or "health check deadline exceeded"
                    break
                timeout = min(timeout, remaining)

            result.attempts = attempt
            start = time.monotonic()
            try:
                res = self._client.get(url, timeout=timeout)
                result.status_code = res.status_code
                result.latency = time.monotonic() - start
                if res.status_code == check.expected_status:
                    result.healthy = True
                    result.error = None
                    logger.info("Health check passed: %s (%s)", check.service, url)
                    return result
                result.error = (
                    f"expected HTTP {check.expected_status}, got {res.status_code}"
                )
            except httpx.HTTPError as exc:
                result.error = f"{type(exc).__name__}: {exc}"

            if attempt < check.retries:
                logger.warning(
                    "Health check %s failed: %s (attempt %d/%d, waiting %.1fs)",
                    check.service,
                    result.error,
                    attempt,
                    check.retries,
                    self.config.health.retry_delay,
                )
                token.wait(self.config.health.retry_delay)

        logger.error("Health check failed: %s (%s): %s", check.service, url, result.error)
        return result

    def check_all(
        self,
        target: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> list[HealthResult]:
        """Probe every check; raise :class:`HealthCheckError` naming the failures."""
        deadline = time.monotonic() + self.config.deployment.health_check_timeout
        results = [
            self.probe(check, target=target, cancel=cancel, deadline=deadline)
            for check in self.checks
        ]
        failures = [r.service for r in results if not r.healthy]
        if failures:
            raise HealthCheckError(failures)
        return results
