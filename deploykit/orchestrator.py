"""Deployment orchestrator: the pipeline, its state machine and rollback.

Usage::

    from deploykit import DeploymentOrchestrator, production_config

    orchestrator = DeploymentOrchestrator(production_config())
    status = orchestrator.deploy("v1.4.0")

``deploy()`` runs the fixed step sequence below, records every step on a
:class:`~deploykit.models.DeploymentStatus` and returns a snapshot of it.
On failure the error is re-raised with the finished status attached as
``exc.deployment``, after an automatic rollback when the config asks for
one.
"""

from __future__ import annotations

import logging
import shlex
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from .canary import CanaryMonitor
from .cancellation import CancelToken, ensure_token
from .config import DeploymentConfig
from .errors import (
    DeployKitError,
    DeploymentCancelled,
    DeploymentError,
    MetricsError,
    RollbackError,
    VerificationError,
)
from .events import (
    DEPLOYMENT_COMPLETED,
    DEPLOYMENT_FAILED,
    DEPLOYMENT_STARTED,
    ROLLBACK_COMPLETED,
    STEP_COMPLETED,
    STEP_FAILED,
    STEP_SKIPPED,
    STEP_STARTED,
    TRAFFIC_SHIFTED,
    EventBus,
    Listener,
)
from .health import HealthChecker
from .images import ImageBuilder
from .manifests import ManifestBuilder
from .metrics import GrafanaAnnotator, MetricsBackend, PrometheusMetrics
from .models import DeploymentState, DeploymentStatus, DeploymentStep, RollbackInfo
from .preflight import PreflightChecker
from .runner import CommandRunner, ShellCommandRunner
from .runtime import ComposeRuntime, KubernetesRuntime
from .strategies import DeploymentStrategy, StrategyContext, get_registry

logger = logging.getLogger(__name__)

PRE_CHECKS = "pre-deployment-checks"
BUILD = "build-docker-image"
TESTS = "run-tests"
MIGRATIONS = "database-migrations"
DEPLOY = "deploy-application"
VERIFY = "verify-deployment"
MONITORING = "update-monitoring"
CLEANUP = "cleanup"

STEPS = (PRE_CHECKS, BUILD, TESTS, MIGRATIONS, DEPLOY, VERIFY, MONITORING, CLEANUP)

_OUTPUT_TAIL_LINES = 50


def _tail(text: str, lines: int = _OUTPUT_TAIL_LINES) -> str:
    parts = text.rstrip("\n").splitlines()
    return "\n".join(parts[-lines:])


class DeploymentOrchestrator:
    """Runs deployments of one environment and keeps their history.

    All collaborators default to real implementations built from *config*;
    pass any of them to substitute a fake or a differently configured one.
    Histories live in memory for the lifetime of the orchestrator.
    """

    def __init__(
        self,
        config: DeploymentConfig,
        runner: Optional[CommandRunner] = None,
        *,
        health: Optional[HealthChecker] = None,
        metrics: Optional[MetricsBackend] = None,
        grafana: Optional[GrafanaAnnotator] = None,
        kubernetes: Optional[KubernetesRuntime] = None,
        compose: Optional[ComposeRuntime] = None,
        images: Optional[ImageBuilder] = None,
        preflight: Optional[PreflightChecker] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        config.validate()
        self.config = config
        self.runner = runner or ShellCommandRunner()
        self.manifests = ManifestBuilder(config)

        if kubernetes is None and config.kubernetes is not None:
            kubernetes = KubernetesRuntime(
                self.runner,
                config.kubernetes,
                poll_interval=config.deployment.readiness_poll_interval,
            )
        self.kubernetes = kubernetes
        if compose is None and config.kubernetes is None:
            compose = ComposeRuntime(self.runner, config.environment)
        self.compose = compose

        self.images = images or ImageBuilder(self.runner, config.docker)
        self.health = health or HealthChecker(config)

        mon = config.monitoring
        if metrics is None and mon.prometheus_endpoint:
            metrics = PrometheusMetrics(mon.prometheus_endpoint, config.app_name, timeout=mon.query_timeout)
        self.metrics = metrics
        if grafana is None and mon.grafana_url:
            grafana = GrafanaAnnotator(mon.grafana_url, timeout=mon.query_timeout)
        self.grafana = grafana

        self.preflight = preflight or PreflightChecker(config, self.kubernetes)
        self.events = events or EventBus()

        self._lock = threading.RLock()
        self._current: Optional[DeploymentStatus] = None
        self._active: list[DeploymentStatus] = []
        self._history: list[DeploymentStatus] = []
        self._versions: list[str] = []
        self._rollbacks: list[RollbackInfo] = []

    def close(self) -> None:
        self.health.close()
        if self.metrics is not None:
            self.metrics.close()
        if self.grafana is not None:
            self.grafana.close()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Listener:
        return self.events.subscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        self.events.unsubscribe(listener)

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    def deploy(
        self,
        version: str,
        *,
        dry_run: bool = False,
        force: bool = False,
        skip_tests: bool = False,
        cancel: Optional[CancelToken] = None,
    ) -> DeploymentStatus:
        """Run the full pipeline for *version*; return the finished status.

        Raises the failing step's :class:`~deploykit.errors.DeployKitError`
        (unexpected exceptions wrapped in
        :class:`~deploykit.errors.DeploymentError`), or
        :class:`~deploykit.errors.RollbackError` when the automatic rollback
        that followed also failed.
        """
        token = ensure_token(cancel)
        status = DeploymentStatus(
            environment=self.config.environment,
            version=version,
            dry_run=dry_run,
            steps=[DeploymentStep(name) for name in STEPS],
        )
        with self._lock:
            others = list(self._active)
            self._active.append(status)
            self._current = status

        start = time.monotonic()
        logger.info(
            "Starting deployment %s of %s to %s%s",
            status.id,
            version,
            self.config.environment,
            " (dry run)" if dry_run else "",
        )
        self.events.emit(
            DEPLOYMENT_STARTED,
            status.id,
            version=version,
            environment=self.config.environment,
            strategy=self.config.strategy.value,
            dry_run=dry_run,
        )

        try:
            self._run_step(status, PRE_CHECKS, token, lambda: self._pre_checks(status, others, force, token))

            self._set_state(status, DeploymentState.BUILDING)
            self._run_step(status, BUILD, token, lambda: self._build(status, version, dry_run, token))

            if skip_tests:
                self._skip_step(status, TESTS, "skipped by request")
            else:
                self._run_step(status, TESTS, token, lambda: self._run_tests(token))

            if self.config.database.run_migrations:
                self._run_step(status, MIGRATIONS, token, lambda: self._migrate(dry_run, token))
            else:
                self._skip_step(status, MIGRATIONS, "migrations disabled")

            self._set_state(status, DeploymentState.DEPLOYING)
            self._run_step(status, DEPLOY, token, lambda: self._deploy_application(status, version, dry_run, token))

            self._set_state(status, DeploymentState.VERIFYING)
            self._run_step(status, VERIFY, token, lambda: self._verify(status, version, token))
            self._run_step(status, MONITORING, token, lambda: self._update_monitoring(status, version, dry_run))
            self._run_step(status, CLEANUP, token, lambda: self._cleanup(version, dry_run))
        except Exception as exc:
            error = self._handle_failure(status, exc, start, force)
            if error is exc:
                raise
            raise error from (error.__cause__ or exc)

        with self._lock:
            status.status = DeploymentState.COMPLETED
            status.finished_at = datetime.now(timezone.utc)
            status.metrics.deployment_duration = time.monotonic() - start
            self._history.append(status)
            self._active.remove(status)
            if not dry_run:
                self._versions.append(version)
                keep = self.config.rollback.keep_previous_versions
                del self._versions[:-keep]
            snapshot = status.snapshot()

        logger.info(
            "Deployment %s of %s completed in %.1fs",
            status.id,
            version,
            snapshot.metrics.deployment_duration,
        )
        self.events.emit(
            DEPLOYMENT_COMPLETED,
            status.id,
            version=version,
            duration=snapshot.metrics.deployment_duration,
            dry_run=dry_run,
        )
        return snapshot

    def _handle_failure(
        self,
        status: DeploymentStatus,
        exc: Exception,
        start: float,
        force: bool,
    ) -> DeployKitError:
        """Finalize a failed status, auto-rollback if configured; return the error to raise."""
        if isinstance(exc, DeployKitError):
            error: DeployKitError = exc
        else:
            logger.exception("Unexpected error during deployment %s", status.id)
            error = DeploymentError(f"{type(exc).__name__}: {exc}")

        with self._lock:
            status.status = DeploymentState.FAILED
            status.finished_at = datetime.now(timezone.utc)
            status.metrics.deployment_duration = time.monotonic() - start
            status.errors.append(str(error))
            self._history.append(status)
            self._active.remove(status)
            can_roll_back = len(self._versions) >= 2

        logger.error("Deployment %s of %s failed: %s", status.id, status.version, error)
        self.events.emit(DEPLOYMENT_FAILED, status.id, version=status.version, error=str(error))

        auto = (
            self.config.rollback.enable_auto_rollback
            and not force
            and not status.dry_run
            and not isinstance(exc, DeploymentCancelled)
        )
        if auto and not can_roll_back:
            self._warn(status, "Automatic rollback skipped: no previous version to roll back to")
        elif auto:
            try:
                info = self.rollback(f"Automatic rollback: {error}", automatic=True)
            except RollbackError as rollback_exc:
                with self._lock:
                    status.rollback = rollback_exc.info
                    status.errors.append(str(rollback_exc))
                    self._current = status
                combined = RollbackError(
                    f"Deployment of {status.version} failed ({error}) and automatic rollback failed: {rollback_exc}",
                    info=rollback_exc.info,
                )
                combined.__cause__ = rollback_exc
                error = combined
            else:
                with self._lock:
                    status.rollback = info
                    status.status = DeploymentState.ROLLED_BACK
                    self._current = status

        with self._lock:
            error.deployment = status.snapshot()
        return error

    # ------------------------------------------------------------------
    # Step plumbing
    # ------------------------------------------------------------------

    def _run_step(
        self,
        status: DeploymentStatus,
        name: str,
        token: CancelToken,
        action: Callable[[], Optional[str]],
    ) -> None:
        token.raise_if_cancelled()
        step = status.step(name)
        with self._lock:
            step.start()
        logger.info("[%s] %s", status.id, name)
        self.events.emit(STEP_STARTED, status.id, step=name)
        try:
            output = action()
        except Exception as exc:
            with self._lock:
                step.fail(str(exc) or type(exc).__name__)
            self.events.emit(STEP_FAILED, status.id, step=name, error=str(exc))
            raise
        with self._lock:
            step.complete(output)
        self.events.emit(STEP_COMPLETED, status.id, step=name, duration=step.duration)

    def _skip_step(self, status: DeploymentStatus, name: str, reason: str) -> None:
        with self._lock:
            status.step(name).skip(reason)
        logger.info("[%s] %s skipped: %s", status.id, name, reason)
        self.events.emit(STEP_SKIPPED, status.id, step=name, reason=reason)

    def _set_state(self, status: DeploymentStatus, state: DeploymentState) -> None:
        with self._lock:
            status.status = state

    def _warn(self, status: DeploymentStatus, message: str) -> None:
        logger.warning(message)
        with self._lock:
            status.warnings.append(message)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _pre_checks(
        self,
        status: DeploymentStatus,
        others: Sequence[DeploymentStatus],
        force: bool,
        token: CancelToken,
    ) -> str:
        report = self.preflight.run(others, force=force, cancel=token, dry_run=status.dry_run)
        for warning in report.warnings:
            self._warn(status, warning)
        return report.summary()

    def _build(self, status: DeploymentStatus, version: str, dry_run: bool, token: CancelToken) -> str:
        if dry_run:
            command = self.images.build_command(version)
            logger.info("[dry-run] would build: %s", command)
            return f"[dry-run] {command}"
        start = time.monotonic()
        result = self.images.build(version, cancel=token)
        with self._lock:
            status.metrics.build_duration = time.monotonic() - start
        return _tail(result.output) or f"built {self.images.image_ref(version)}"

    def _run_tests(self, token: CancelToken) -> str:
        outputs = []
        for command in self.config.test_commands:
            result = self.runner.run(command, context="tests", cancel=token)
            outputs.append(_tail(result.output, 10))
        return "\n".join(o for o in outputs if o)

    def backup_file(self) -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        return f"{self.config.database.backup_dir.rstrip('/')}/backup-{stamp}.sql"

    def _migrate(self, dry_run: bool, token: CancelToken) -> str:
        db = self.config.database
        commands = []
        if db.backup_before_migration:
            commands.append(("backup", db.backup_command.format(backup_file=shlex.quote(self.backup_file()))))
        commands.append(("migrate", db.migrate_command))

        if dry_run:
            for context, command in commands:
                logger.info("[dry-run] would run %s: %s", context, command)
            return "\n".join(f"[dry-run] {command}" for _, command in commands)

        outputs = []
        for context, command in commands:
            result = self.runner.run(command, context=context, timeout=db.migration_timeout, cancel=token)
            outputs.append(_tail(result.output, 10))
        return "\n".join(o for o in outputs if o)

    def create_strategy(self, status: Optional[DeploymentStatus] = None) -> DeploymentStrategy:
        """Instantiate the configured strategy wired to this orchestrator."""
        monitor = CanaryMonitor(
            self.health,
            self.metrics,
            self.config.rollback.max_error_rate,
            sample_interval=self.config.canary.sample_interval,
            error_rate_window=self.config.canary.error_rate_window,
        )
        on_traffic_shift = None
        if status is not None:

            def on_traffic_shift(weight: float) -> None:
                self._record_traffic(status, weight)

        context = StrategyContext(
            config=self.config,
            manifests=self.manifests,
            health=self.health,
            kubernetes=self.kubernetes,
            compose=self.compose,
            monitor=monitor,
            on_traffic_shift=on_traffic_shift,
        )
        return get_registry().create(self.config.strategy, context)

    def _record_traffic(self, status: DeploymentStatus, weight: float) -> None:
        with self._lock:
            status.metrics.traffic_weights.append(weight)
        self.events.emit(TRAFFIC_SHIFTED, status.id, weight=weight)

    def _deploy_application(
        self,
        status: DeploymentStatus,
        version: str,
        dry_run: bool,
        token: CancelToken,
    ) -> str:
        strategy = self.create_strategy(status)
        result = strategy.execute(version, dry_run=dry_run, cancel=token)
        with self._lock:
            if result.downtime is not None:
                status.metrics.downtime = result.downtime
            status.metrics.affected_services.extend(result.affected_services)
        if dry_run:
            return "\n".join(result.plan)
        return result.summary()

    def _verify(self, status: DeploymentStatus, version: str, token: CancelToken) -> str:
        results = self.health.check_all(cancel=token)
        lines = [f"{r.service}: HTTP {r.status_code}" for r in results]
        if self.metrics is None:
            return "\n".join(lines)

        window = self.config.canary.error_rate_window
        try:
            rate = self.metrics.error_rate(version, window)
        except MetricsError as exc:
            self._warn(status, f"Could not query error rate: {exc}")
            return "\n".join(lines)

        threshold = self.config.rollback.max_error_rate
        if rate > threshold:
            raise VerificationError(
                f"Error rate {rate:.2f}% exceeds threshold {threshold:.2f}%"
            )
        lines.append(f"error rate {rate:.2f}%")

        try:
            for key, value in self.metrics.key_metrics(version).items():
                lines.append(f"{key}: {value:.2f}")
        except MetricsError as exc:
            self._warn(status, f"Could not query key metrics: {exc}")
        return "\n".join(lines)

    def _update_monitoring(self, status: DeploymentStatus, version: str, dry_run: bool) -> str:
        notes = []
        if self.grafana is not None:
            text = f"Deployed version {version} to {self.config.environment}"
            if dry_run:
                notes.append(f"[dry-run] would annotate Grafana: {text}")
            else:
                try:
                    if self.grafana.annotate(text, ["deployment", self.config.environment, version]):
                        notes.append("Grafana annotation created")
                except MetricsError as exc:
                    self._warn(status, f"Failed to create Grafana annotation: {exc}")
        if self.config.monitoring.alert_manager_url:
            logger.info("Alertmanager at %s, alert rules unchanged", self.config.monitoring.alert_manager_url)
        return "\n".join(notes) or "monitoring unchanged"

    def _cleanup(self, version: str, dry_run: bool) -> str:
        keep = self.config.rollback.keep_previous_versions
        with self._lock:
            prospective = self._versions + [version]
        retained = set(prospective[-keep:])
        expired = []
        for old in prospective[:-keep]:
            if old not in retained and old not in expired:
                expired.append(old)
        if not expired:
            return "nothing to clean up"
        if dry_run:
            for old in expired:
                logger.info("[dry-run] would remove image %s", self.images.image_ref(old))
            return "[dry-run] would remove " + ", ".join(expired)
        removed = [old for old in expired if self.images.remove(old)]
        return f"removed {len(removed)} of {len(expired)} old images"

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback(
        self,
        reason: str,
        *,
        automatic: bool = False,
        cancel: Optional[CancelToken] = None,
    ) -> RollbackInfo:
        """Redeploy the previous version with ``force`` and ``skip_tests``.

        Raises :class:`RollbackError` without deploying when fewer than two
        versions are known, and with the recorded :class:`RollbackInfo`
        when the redeploy fails.
        """
        with self._lock:
            if len(self._versions) < 2:
                raise RollbackError("No previous version available for rollback")
            from_version, to_version = self._versions[-1], self._versions[-2]

        logger.warning("Rolling back from %s to %s: %s", from_version, to_version, reason)
        try:
            self.deploy(to_version, force=True, skip_tests=True, cancel=cancel)
        except DeployKitError as exc:
            info = RollbackInfo(
                from_version=from_version,
                to_version=to_version,
                reason=reason,
                automatic=automatic,
                success=False,
                error=str(exc),
            )
            self._record_rollback(info)
            logger.error("Rollback to %s failed: %s", to_version, exc)
            raise RollbackError(f"Rollback to {to_version} failed: {exc}", info=info) from exc

        info = RollbackInfo(
            from_version=from_version,
            to_version=to_version,
            reason=reason,
            automatic=automatic,
            success=True,
        )
        self._record_rollback(info)
        logger.info("Rolled back to %s", to_version)
        return info

    def _record_rollback(self, info: RollbackInfo) -> None:
        with self._lock:
            self._rollbacks.append(info)
        self.events.emit(ROLLBACK_COMPLETED, None, **info.to_dict())

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    def get_status(self) -> Optional[DeploymentStatus]:
        with self._lock:
            return self._current.snapshot() if self._current is not None else None

    def get_history(self, limit: int = 10) -> list[DeploymentStatus]:
        """The last *limit* finished deployments, oldest first."""
        with self._lock:
            recent = self._history[-limit:] if limit > 0 else []
            return [d.snapshot() for d in recent]

    def get_version_history(self) -> list[str]:
        with self._lock:
            return list(self._versions)

    def get_rollback_history(self) -> list[RollbackInfo]:
        with self._lock:
            return list(self._rollbacks)

    def get_system_status(self) -> dict[str, Any]:
        """Live health probe results plus the current version and last deployment."""
        probes = [self.health.probe(check) for check in self.health.checks]
        with self._lock:
            current_version = self._versions[-1] if self._versions else None
            last = self._history[-1].to_dict() if self._history else None
        return {
            "environment": self.config.environment,
            "strategy": self.config.strategy.value,
            "current_version": current_version,
            "healthy": all(p.healthy for p in probes),
            "health": [p.to_dict() for p in probes],
            "last_deployment": last,
        }
