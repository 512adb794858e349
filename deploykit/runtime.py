"""Container runtime adapters.

:class:`KubernetesRuntime` drives a cluster through ``kubectl`` and
:class:`ComposeRuntime` a single host through ``docker-compose``.  Both only
build command strings and hand them to a :class:`~deploykit.runner.CommandRunner`,
so they are tested with a scripted runner instead of a live cluster.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import tempfile
import time
from typing import Any, Optional

from .cancellation import CancelToken, ensure_token
from .config import KubernetesSettings
from .errors import CommandError, ConfigurationError, ReadinessTimeoutError
from .manifests import render_yaml
from .runner import CommandResult, CommandRunner

logger = logging.getLogger(__name__)


def _not_found(result: CommandResult) -> bool:
    text = result.output
    return "NotFound" in text or "not found" in text


class KubernetesRuntime:
    """kubectl operations scoped to one cluster context and namespace."""

    def __init__(
        self,
        runner: CommandRunner,
        settings: KubernetesSettings,
        poll_interval: float = 5.0,
        command_timeout: Optional[float] = 120.0,
    ) -> None:
        self.runner = runner
        self.settings = settings
        self.poll_interval = poll_interval
        self.command_timeout = command_timeout

    @property
    def namespace(self) -> str:
        return self.settings.namespace

    def _kubectl(
        self,
        args: str,
        cancel: Optional[CancelToken] = None,
        check: bool = True,
        namespaced: bool = True,
    ) -> CommandResult:
        command = f"kubectl {args}"
        if namespaced:
            command += f" -n {shlex.quote(self.namespace)}"
        return self.runner.run(
            command,
            context="kubectl",
            timeout=self.command_timeout,
            cancel=cancel,
            check=check,
        )

    # ------------------------------------------------------------------
    # Cluster context
    # ------------------------------------------------------------------

    def use_context(self, cancel: Optional[CancelToken] = None) -> None:
        try:
            self._kubectl(
                f"config use-context {shlex.quote(self.settings.cluster)}",
                cancel=cancel,
                namespaced=False,
            )
        except CommandError as exc:
            raise ConfigurationError(
                f"Cannot switch to cluster context {self.settings.cluster!r}: {exc.output.strip()}"
            ) from exc

    def check_context(self, cancel: Optional[CancelToken] = None) -> None:
        """Verify the cluster context exists without making it current."""
        result = self._kubectl(
            f"config get-contexts {shlex.quote(self.settings.cluster)}",
            cancel=cancel,
            check=False,
            namespaced=False,
        )
        if not result.ok:
            raise ConfigurationError(
                f"Cluster context {self.settings.cluster!r} not found: {result.output.strip()}"
            )

    def ensure_namespace(self, cancel: Optional[CancelToken] = None, context: Optional[str] = None) -> None:
        """Raise :class:`ConfigurationError` unless the namespace exists.

        *context* queries that cluster context instead of the current one.
        """
        args = f"get namespace {shlex.quote(self.namespace)}"
        if context is not None:
            args += f" --context {shlex.quote(context)}"
        result = self._kubectl(args, cancel=cancel, check=False, namespaced=False)
        if not result.ok:
            raise ConfigurationError(f"Namespace {self.namespace!r} not found")

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def apply(self, documents: list[dict[str, Any]], cancel: Optional[CancelToken] = None) -> CommandResult:
        """``kubectl apply`` *documents* via a temporary manifest file."""
        fd, path = tempfile.mkstemp(prefix="deploykit-", suffix=".yaml")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(render_yaml(documents))
            return self._kubectl(f"apply -f {shlex.quote(path)}", cancel=cancel)
        finally:
            os.unlink(path)

    def get_deployment(self, name: str, cancel: Optional[CancelToken] = None) -> Optional[dict[str, Any]]:
        result = self._kubectl(
            f"get deployment {shlex.quote(name)} -o json", cancel=cancel, check=False
        )
        if not result.ok:
            if _not_found(result):
                return None
            raise CommandError(result.command, returncode=result.returncode, output=result.output)
        return json.loads(result.stdout)

    def is_ready(self, name: str, cancel: Optional[CancelToken] = None) -> bool:
        """True when the controller has seen the current spec and every
        desired replica runs the current pod template and reports ready.

        Ready pods of a previous template do not count, so a freshly
        applied Deployment is not ready until its own rollout finishes.
        """
        deployment = self.get_deployment(name, cancel=cancel)
        if deployment is None:
            return False
        status = deployment.get("status", {})
        generation = deployment.get("metadata", {}).get("generation", 0)
        if status.get("observedGeneration", 0) < generation:
            return False
        desired = deployment.get("spec", {}).get("replicas", 1)
        updated = status.get("updatedReplicas", 0)
        ready = status.get("readyReplicas", 0)
        return updated == desired and ready == desired

    def wait_ready(self, name: str, timeout: float, cancel: Optional[CancelToken] = None) -> float:
        """Poll until *name* is ready; return the seconds waited.

        Raises :class:`ReadinessTimeoutError` once *timeout* has elapsed.
        """
        return self._poll(lambda: self.is_ready(name, cancel=cancel), name, timeout, cancel)

    def rollout_complete(self, name: str, cancel: Optional[CancelToken] = None) -> bool:
        result = self._kubectl(
            f"rollout status deployment/{shlex.quote(name)} --watch=false",
            cancel=cancel,
            check=False,
        )
        return result.ok and "successfully rolled out" in result.stdout

    def wait_rollout(self, name: str, timeout: float, cancel: Optional[CancelToken] = None) -> float:
        return self._poll(lambda: self.rollout_complete(name, cancel=cancel), name, timeout, cancel)

    def _poll(self, check, name: str, timeout: float, cancel: Optional[CancelToken]) -> float:
        token = ensure_token(cancel)
        start = time.monotonic()
        deadline = start + timeout
        while True:
            token.raise_if_cancelled()
            if check():
                waited = time.monotonic() - start
                logger.info("Deployment %s ready after %.1fs", name, waited)
                return waited
            if time.monotonic() >= deadline:
                raise ReadinessTimeoutError(name, timeout)
            token.wait(self.poll_interval)

    def delete_deployment(
        self,
        name: str,
        grace_period: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        args = f"delete deployment {shlex.quote(name)} --ignore-not-found"
        if grace_period is not None:
            args += f" --grace-period={int(grace_period)}"
        self._kubectl(args, cancel=cancel)

    def delete_service(self, name: str, cancel: Optional[CancelToken] = None) -> None:
        self._kubectl(f"delete service {shlex.quote(name)} --ignore-not-found", cancel=cancel)

    def delete_hpa(self, name: str, cancel: Optional[CancelToken] = None) -> None:
        self._kubectl(f"delete hpa {shlex.quote(name)} --ignore-not-found", cancel=cancel)

    def get_service_selector(self, name: str, cancel: Optional[CancelToken] = None) -> Optional[dict[str, str]]:
        result = self._kubectl(
            f"get service {shlex.quote(name)} -o json", cancel=cancel, check=False
        )
        if not result.ok:
            if _not_found(result):
                return None
            raise CommandError(result.command, returncode=result.returncode, output=result.output)
        return json.loads(result.stdout).get("spec", {}).get("selector") or {}


class ComposeRuntime:
    """docker-compose operations on ``docker-compose.<environment>.yml``."""

    def __init__(self, runner: CommandRunner, environment: str, command_timeout: Optional[float] = 600.0) -> None:
        self.runner = runner
        self.compose_file = f"docker-compose.{environment}.yml"
        self.command_timeout = command_timeout

    def down(self, timeout: float, cancel: Optional[CancelToken] = None) -> CommandResult:
        return self.runner.run(
            f"docker-compose -f {shlex.quote(self.compose_file)} down --timeout {int(timeout)}",
            context="compose",
            timeout=self.command_timeout,
            cancel=cancel,
        )

    def up(self, cancel: Optional[CancelToken] = None) -> CommandResult:
        return self.runner.run(
            f"docker-compose -f {shlex.quote(self.compose_file)} up -d",
            context="compose",
            timeout=self.command_timeout,
            cancel=cancel,
        )
