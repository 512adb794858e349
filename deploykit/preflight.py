"""Pre-deployment checks.

Run in a fixed order, cheapest and most local first, so nothing touches
the cluster until this host is known to be fit to deploy:

1. no other deployment of this orchestrator is building or deploying
2. disk and memory headroom (psutil)
3. required environment variables and strategy/cluster compatibility
4. required CLI tools on ``PATH``
5. cluster context and namespace, when a cluster is configured
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, Sequence

import psutil

from .cancellation import CancelToken
from .config import DeploymentConfig
from .errors import ConfigurationError, DeploymentInProgressError, ResourceError
from .models import DeploymentStatus
from .runtime import KubernetesRuntime

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


@dataclass
class PreflightReport:
    passed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def summary(self) -> str:
        return "; ".join(self.passed)


class PreflightChecker:
    def __init__(
        self,
        config: DeploymentConfig,
        kubernetes: Optional[KubernetesRuntime] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.config = config
        self.kubernetes = kubernetes
        self._which = which
        self._environ = environ

    @property
    def environ(self) -> Mapping[str, str]:
        return self._environ if self._environ is not None else os.environ

    def run(
        self,
        active: Sequence[DeploymentStatus] = (),
        force: bool = False,
        cancel: Optional[CancelToken] = None,
        dry_run: bool = False,
    ) -> PreflightReport:
        report = PreflightReport()
        self.check_not_in_progress(active, force, report)
        self.check_resources(report)
        self.check_configuration(report)
        self.check_dependencies(report)
        self.check_cluster(report, cancel, dry_run=dry_run)
        return report

    def check_not_in_progress(
        self,
        active: Sequence[DeploymentStatus],
        force: bool,
        report: PreflightReport,
    ) -> None:
        busy = [d for d in active if d.in_progress]
        if not busy:
            report.passed.append("no deployment in progress")
            return
        if force:
            report.warnings.append(
                f"Forcing deployment while {busy[0].id} is {busy[0].status.value}"
            )
            return
        raise DeploymentInProgressError(busy[0].id)

    def check_resources(self, report: PreflightReport) -> None:
        p = self.config.preflight
        disk = psutil.disk_usage(p.disk_path).percent
        if disk > p.disk_usage_limit:
            raise ResourceError(
                f"Disk usage on {p.disk_path} is {disk:.1f}% (limit {p.disk_usage_limit:.0f}%)"
            )
        if disk > p.disk_usage_warning:
            report.warnings.append(f"Disk usage on {p.disk_path} is {disk:.1f}%")

        available_mb = psutil.virtual_memory().available / _MB
        if p.memory_limit_mb is not None and available_mb < p.memory_limit_mb:
            raise ResourceError(
                f"Available memory {available_mb:.0f}MB is below {p.memory_limit_mb:.0f}MB"
            )
        if available_mb < p.memory_warning_mb:
            report.warnings.append(f"Low available memory: {available_mb:.0f}MB")
        report.passed.append(f"disk {disk:.1f}% used, {available_mb:.0f}MB memory available")

    def check_configuration(self, report: PreflightReport) -> None:
        missing = [name for name in self.config.preflight.required_env if not self.environ.get(name)]
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}"
            )
        strategy = self.config.strategy
        if strategy.requires_cluster and self.config.kubernetes is None:
            raise ConfigurationError(
                f"The {strategy.value} strategy requires kubernetes settings"
            )
        report.passed.append("configuration valid")

    def required_tools(self) -> list[str]:
        p = self.config.preflight
        tools = list(p.required_tools)
        if self.config.kubernetes is not None:
            tools.extend(t for t in p.cluster_tools if t not in tools)
        return tools

    def check_dependencies(self, report: PreflightReport) -> None:
        missing = [tool for tool in self.required_tools() if self._which(tool) is None]
        if missing:
            raise ConfigurationError(f"Required tools not found on PATH: {', '.join(missing)}")
        report.passed.append("tools available")

    def check_cluster(
        self,
        report: PreflightReport,
        cancel: Optional[CancelToken] = None,
        dry_run: bool = False,
    ) -> None:
        """Switch to the cluster context and look up the namespace.

        A dry run leaves the current kubeconfig context alone and only
        checks that the configured one exists.
        """
        if self.config.kubernetes is None or self.kubernetes is None:
            return
        if dry_run:
            self.kubernetes.check_context(cancel=cancel)
            self.kubernetes.ensure_namespace(cancel=cancel, context=self.config.kubernetes.cluster)
        else:
            self.kubernetes.use_context(cancel=cancel)
            self.kubernetes.ensure_namespace(cancel=cancel)
        report.passed.append(
            f"cluster {self.config.kubernetes.cluster}/{self.config.kubernetes.namespace} reachable"
        )
