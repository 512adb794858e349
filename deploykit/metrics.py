"""Metrics backend and dashboard integrations.

The error-rate signal gating verification and canary promotion comes from
a :class:`MetricsBackend`.  :class:`PrometheusMetrics` implements it over
the Prometheus HTTP query API; :class:`GrafanaAnnotator` marks deployments
on dashboards.
"""

from __future__ import annotations

import abc
import logging
import math
import os
from typing import Any, Optional

import httpx

from .errors import MetricsError

logger = logging.getLogger(__name__)


class MetricsBackend(abc.ABC):
    """Source of the per-version error rate (percent of 5xx responses)."""

    @abc.abstractmethod
    def error_rate(self, version: str, window: str = "1m") -> float:
        """Return the error rate of *version* over *window*, 0-100.

        Raises :class:`MetricsError` when the backend cannot answer.
        """

    def key_metrics(self, version: str, window: str = "5m") -> dict[str, float]:
        return {"error_rate": self.error_rate(version, window)}

    def close(self) -> None:
        pass


class PrometheusMetrics(MetricsBackend):
    """Instant queries against ``<endpoint>/api/v1/query``."""

    def __init__(
        self,
        endpoint: str,
        app_name: str,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.app_name = app_name
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.Client(transport=transport, timeout=timeout)

    def close(self) -> None:
        if self._owns_client and not self._client.is_closed:
            self._client.close()

    def _selector(self, version: str, extra: str = "") -> str:
        labels = f'app="{self.app_name}",version="{version}"'
        if extra:
            labels += "," + extra
        return "{" + labels + "}"

    def error_rate(self, version: str, window: str = "1m") -> float:
        server_errors = self._selector(version, 'status=~"5.."')
        errors = f"sum(rate(http_requests_total{server_errors}[{window}]))"
        total = f"sum(rate(http_requests_total{self._selector(version)}[{window}]))"
        return self.query(f"100 * {errors} / {total}")

    def p95_latency(self, version: str, window: str = "5m") -> float:
        return self.query(
            "histogram_quantile(0.95, sum(rate(http_request_duration_seconds_bucket"
            f"{self._selector(version)}[{window}])) by (le))"
        )

    def availability(self, version: str, window: str = "5m") -> float:
        return 100.0 - self.error_rate(version, window)

    def key_metrics(self, version: str, window: str = "5m") -> dict[str, float]:
        return {
            "error_rate": self.error_rate(version, window),
            "p95_latency": self.p95_latency(version, window),
            "availability": self.availability(version, window),
        }

    def query(self, expr: str) -> float:
        """Evaluate *expr* and return the first sample, 0.0 when there is none."""
        try:
            res = self._client.get(
                f"{self.endpoint}/api/v1/query",
                params={"query": expr},
                timeout=self.timeout,
            )
            res.raise_for_status()
            body = res.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise MetricsError(f"Prometheus query failed: {exc}") from exc

        if body.get("status") != "success":
            raise MetricsError(f"Prometheus query error: {body.get('error', 'unknown error')}")
        result = body.get("data", {}).get("result", [])
        if not result:
            logger.debug("No samples for %s", expr)
            return 0.0
        try:
            value = float(result[0]["value"][1])
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise MetricsError(f"Malformed Prometheus sample: {result[0]!r}") from exc
        # 0/0 when the version has no traffic yet
        return 0.0 if math.isnan(value) else value


class GrafanaAnnotator:
    """Posts deployment annotations to ``<url>/api/annotations``.

    Authenticates with ``api_key`` or ``$GRAFANA_API_KEY``; without a key
    annotations are logged and skipped.
    """

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.api_key = api_key if api_key is not None else os.environ.get("GRAFANA_API_KEY")
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.Client(transport=transport, timeout=timeout)

    def close(self) -> None:
        if self._owns_client and not self._client.is_closed:
            self._client.close()

    def annotate(self, text: str, tags: list[str]) -> bool:
        """Create an annotation; return False when skipped for lack of a key."""
        if not self.api_key:
            logger.info("No Grafana API key, skipping annotation: %s", text)
            return False
        payload: dict[str, Any] = {"text": text, "tags": tags}
        try:
            res = self._client.post(
                f"{self.url}/api/annotations",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            res.raise_for_status()
        except httpx.HTTPError as exc:
            raise MetricsError(f"Grafana annotation failed: {exc}") from exc
        logger.info("Created Grafana annotation: %s", text)
        return True
