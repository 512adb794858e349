"""Kubernetes manifest generation.

Translates ``(version, variant, traffic weight)`` into the resource set the
cluster must apply: a Deployment, its HorizontalPodAutoscaler and Service,
and optionally an Istio VirtualService splitting traffic between the
stable service and a variant.

Naming: the stable variant uses the bare app name (``<app>``); every other
variant is ``<app>-<variant>``.  Pods carry a ``variant`` label so a
Service can select exactly one variant.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import yaml

from .config import DeploymentConfig, KubernetesSettings, StrategyName
from .errors import ConfigurationError

STABLE = "stable"

# Secrets with a well-known single key, exposed as one env var each.
# Any other configured secret is exported whole through envFrom.
_SECRET_ENV = {
    "database-credentials": ("DATABASE_URL", "url"),
    "redis-credentials": ("REDIS_URL", "url"),
    "encryption-keys": ("ENCRYPTION_KEY", "master"),
}


@dataclass
class ManifestSet:
    """Resources applied together for one variant."""

    deployment: dict[str, Any]
    hpa: dict[str, Any]
    service: dict[str, Any]
    virtual_service: Optional[dict[str, Any]] = None

    @property
    def name(self) -> str:
        return self.deployment["metadata"]["name"]

    def documents(self) -> list[dict[str, Any]]:
        docs = [self.deployment, self.hpa, self.service]
        if self.virtual_service is not None:
            docs.append(self.virtual_service)
        return docs

    def to_yaml(self) -> str:
        return render_yaml(self.documents())


def render_yaml(documents: list[dict[str, Any]]) -> str:
    """Serialize *documents* as a multi-document YAML stream."""
    return yaml.safe_dump_all(documents, sort_keys=False, default_flow_style=False)


class ManifestBuilder:
    """Builds manifests from a :class:`DeploymentConfig`."""

    def __init__(self, config: DeploymentConfig) -> None:
        self.config = config

    @property
    def kubernetes(self) -> KubernetesSettings:
        if self.config.kubernetes is None:
            raise ConfigurationError(
                "Kubernetes settings are required to generate manifests"
            )
        return self.config.kubernetes

    @property
    def namespace(self) -> str:
        return self.kubernetes.namespace

    def resource_name(self, variant: Optional[str] = None) -> str:
        app = self.config.app_name
        if variant in (None, STABLE, "main"):
            return app
        return f"{app}-{variant}"

    def selector(self, variant: Optional[str] = None) -> dict[str, str]:
        return {
            "app": self.config.app_name,
            "environment": self.config.environment,
            "variant": variant or STABLE,
        }

    def labels(self, version: str, variant: Optional[str] = None) -> dict[str, str]:
        return {**self.selector(variant), "version": version}

    def service_host(self, variant: Optional[str] = None) -> str:
        return f"{self.resource_name(variant)}.{self.namespace}.svc.cluster.local"

    # ------------------------------------------------------------------
    # Resource set
    # ------------------------------------------------------------------

    def build(
        self,
        version: str,
        variant: Optional[str] = None,
        traffic_weight: Optional[float] = None,
    ) -> ManifestSet:
        """Build the Deployment/HPA/Service for *variant* at *version*.

        When *traffic_weight* is given a VirtualService sending that share
        of traffic to the variant (rest to stable) is included.
        """
        k8s = self.kubernetes
        name = self.resource_name(variant)
        labels = self.labels(version, variant)

        deployment = {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": name, "namespace": k8s.namespace, "labels": labels},
            "spec": {
                "replicas": k8s.min_replicas,
                "selector": {"matchLabels": self.selector(variant)},
                "template": {
                    "metadata": {"labels": labels},
                    "spec": self._pod_spec(version),
                },
                "strategy": self._update_strategy(),
            },
        }

        hpa = {
            "apiVersion": "autoscaling/v2",
            "kind": "HorizontalPodAutoscaler",
            "metadata": {"name": f"{name}-hpa", "namespace": k8s.namespace},
            "spec": {
                "scaleTargetRef": {
                    "apiVersion": "apps/v1",
                    "kind": "Deployment",
                    "name": name,
                },
                "minReplicas": k8s.min_replicas,
                "maxReplicas": k8s.max_replicas,
                "metrics": [
                    {
                        "type": "Resource",
                        "resource": {
                            "name": "cpu",
                            "target": {
                                "type": "Utilization",
                                "averageUtilization": k8s.target_cpu_utilization,
                            },
                        },
                    }
                ],
            },
        }

        service = self.service(variant, name=name)
        virtual_service = (
            self.traffic_split(variant or STABLE, traffic_weight)
            if traffic_weight is not None
            else None
        )
        return ManifestSet(deployment, hpa, service, virtual_service)

    def service(self, variant: Optional[str] = None, name: Optional[str] = None) -> dict[str, Any]:
        """ClusterIP Service *name* selecting the pods of *variant*.

        Blue-green cutover re-applies the bare-named Service with the new
        color's selector, which swaps traffic in one API write.
        """
        d = self.config.deployment
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {
                "name": name or self.resource_name(variant),
                "namespace": self.namespace,
                "labels": self.selector(variant),
            },
            "spec": {
                "selector": self.selector(variant),
                "ports": [
                    {"port": d.service_port, "targetPort": d.container_port, "protocol": "TCP"}
                ],
                "type": "ClusterIP",
            },
        }

    def traffic_split(self, variant: str, weight: float) -> dict[str, Any]:
        """VirtualService routing *weight* (0-1) of traffic to *variant*."""
        if not 0 <= weight <= 1:
            raise ValueError(f"traffic weight must be within [0, 1], got {weight}")
        variant_share = int(round(weight * 100))
        app = self.config.app_name
        return {
            "apiVersion": "networking.istio.io/v1beta1",
            "kind": "VirtualService",
            "metadata": {"name": app, "namespace": self.namespace},
            "spec": {
                "hosts": [app],
                "http": [
                    {
                        "match": [{"uri": {"prefix": "/"}}],
                        "route": [
                            {
                                "destination": {"host": self.resource_name(STABLE)},
                                "weight": 100 - variant_share,
                            },
                            {
                                "destination": {"host": self.resource_name(variant)},
                                "weight": variant_share,
                            },
                        ],
                    }
                ],
            },
        }

    # ------------------------------------------------------------------
    # Pod template pieces
    # ------------------------------------------------------------------

    def _pod_spec(self, version: str) -> dict[str, Any]:
        d = self.config.deployment
        container: dict[str, Any] = {
            "name": "app",
            "image": f"{self.config.image}:{version}",
            "ports": [{"containerPort": d.container_port}],
            "env": self.env_vars(),
            "resources": {
                "requests": {"cpu": "100m", "memory": "256Mi"},
                "limits": {"cpu": "1000m", "memory": "1Gi"},
            },
            "livenessProbe": {
                "httpGet": {"path": "/health", "port": d.container_port},
                "initialDelaySeconds": 30,
                "periodSeconds": 10,
            },
            "readinessProbe": {
                "httpGet": {"path": "/ready", "port": d.container_port},
                "initialDelaySeconds": 5,
                "periodSeconds": 5,
            },
            "volumeMounts": [
                {"name": cm, "mountPath": f"/etc/config/{cm}", "readOnly": True}
                for cm in self.kubernetes.config_maps
            ],
        }
        env_from = self.env_from()
        if env_from:
            container["envFrom"] = env_from
        return {
            "terminationGracePeriodSeconds": int(d.graceful_shutdown_timeout),
            "containers": [container],
            "volumes": self.volumes(),
        }

    def _update_strategy(self) -> dict[str, Any]:
        d = self.config.deployment
        if d.strategy is StrategyName.ROLLING:
            return {
                "type": "RollingUpdate",
                "rollingUpdate": {
                    "maxSurge": d.max_surge,
                    "maxUnavailable": d.max_unavailable,
                },
            }
        return {"type": "Recreate"}

    def env_vars(self) -> list[dict[str, Any]]:
        env: list[dict[str, Any]] = [
            {"name": "APP_ENV", "value": self.config.environment},
            {"name": "PORT", "value": str(self.config.deployment.container_port)},
        ]
        for secret in self.kubernetes.secrets:
            if secret in _SECRET_ENV:
                var, key = _SECRET_ENV[secret]
                env.append(
                    {"name": var, "valueFrom": {"secretKeyRef": {"name": secret, "key": key}}}
                )
        return env

    def env_from(self) -> list[dict[str, Any]]:
        return [
            {"secretRef": {"name": secret}}
            for secret in self.kubernetes.secrets
            if secret not in _SECRET_ENV
        ]

    def volumes(self) -> list[dict[str, Any]]:
        return [{"name": cm, "configMap": {"name": cm}} for cm in self.kubernetes.config_maps]
