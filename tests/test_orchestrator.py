"""Tests for deploykit.orchestrator.DeploymentOrchestrator."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from conftest import deployment_json, health_checker, make_config, service_json
from deploykit.cancellation import CancelToken
from deploykit.config import DatabaseSettings, RollbackSettings, StrategyName
from deploykit.errors import (
    CommandError,
    DeploymentCancelled,
    DeploymentError,
    DeploymentInProgressError,
    HealthCheckError,
    MetricsError,
    ReadinessTimeoutError,
    RollbackError,
    VerificationError,
)
from deploykit.events import STEP_STARTED, TRAFFIC_SHIFTED
from deploykit.metrics import MetricsBackend
from deploykit.models import DeploymentState, StepState
from deploykit.orchestrator import STEPS, DeploymentOrchestrator
from deploykit.runner import CommandResult


class _Metrics(MetricsBackend):
    """Error rate per version; 0 unless configured."""

    def __init__(self, rates=None, fail=False):
        self.rates = rates or {}
        self.fail = fail

    def error_rate(self, version, window="1m"):
        if self.fail:
            raise MetricsError("prometheus unreachable")
        return self.rates.get(version, 0.0)


def _orchestrator(runner, strategy=StrategyName.RECREATE, cluster=False, status_code=200, **kwargs):
    changes = {k: kwargs.pop(k) for k in ("rollback", "database") if k in kwargs}
    config = make_config(strategy, cluster=cluster, **changes)
    return DeploymentOrchestrator(config, runner, health=health_checker(config, status_code), **kwargs)


def _auto_rollback(max_error_rate=5.0, keep=3):
    return RollbackSettings(enable_auto_rollback=True, max_error_rate=max_error_rate, keep_previous_versions=keep)


def _states(status):
    return [s.status for s in status.steps]


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class TestDeploy:
    def test_successful_pipeline(self, runner):
        orch = _orchestrator(runner)
        status = orch.deploy("v1")

        assert status.status is DeploymentState.COMPLETED
        assert [s.name for s in status.steps] == list(STEPS)
        assert _states(status) == [
            StepState.COMPLETED,
            StepState.COMPLETED,
            StepState.COMPLETED,
            StepState.SKIPPED,
            StepState.COMPLETED,
            StepState.COMPLETED,
            StepState.COMPLETED,
            StepState.COMPLETED,
        ]
        assert status.metrics.deployment_duration >= 0
        assert status.metrics.build_duration >= 0
        assert status.metrics.downtime is not None
        assert status.finished_at is not None
        assert orch.get_version_history() == ["v1"]
        assert runner.ran("docker buildx build")
        assert runner.ran("make test")
        assert runner.ran("docker-compose -f docker-compose.staging.yml up -d")

    def test_state_transitions(self, runner):
        orch = _orchestrator(runner)
        seen = {}

        def listener(event):
            if event.name == STEP_STARTED:
                seen[event.payload["step"]] = orch.get_status().status

        orch.subscribe(listener)
        orch.deploy("v1")
        assert seen == {
            "pre-deployment-checks": DeploymentState.PENDING,
            "build-docker-image": DeploymentState.BUILDING,
            "run-tests": DeploymentState.BUILDING,
            "deploy-application": DeploymentState.DEPLOYING,
            "verify-deployment": DeploymentState.VERIFYING,
            "update-monitoring": DeploymentState.VERIFYING,
            "cleanup": DeploymentState.VERIFYING,
        }

    def test_skip_tests(self, runner):
        status = _orchestrator(runner).deploy("v1", skip_tests=True)
        assert status.step("run-tests").status is StepState.SKIPPED
        assert runner.ran("make test") == []

    def test_migrations_with_backup(self, runner):
        database = DatabaseSettings(
            run_migrations=True,
            backup_before_migration=True,
            migration_timeout=42.0,
            backup_dir="/backups/",
        )
        orch = _orchestrator(runner, database=database)
        status = orch.deploy("v1")

        assert status.step("database-migrations").status is StepState.COMPLETED
        backup = runner.ran("pg_dump")
        assert len(backup) == 1
        assert "> /backups/backup-" in backup[0]
        migrate_index = runner.commands.index("npm run migrate:latest")
        assert runner.commands.index(backup[0]) < migrate_index
        assert runner.timeouts[migrate_index] == 42.0

    def test_failed_step_halts_pipeline(self, runner):
        runner.on("make test", returncode=2, stderr="1 failing")
        orch = _orchestrator(runner)
        with pytest.raises(CommandError) as exc_info:
            orch.deploy("v1")

        status = exc_info.value.deployment
        assert status.status is DeploymentState.FAILED
        assert status.step("run-tests").status is StepState.FAILED
        assert "exit code 2" in status.step("run-tests").error
        assert all(s.status is StepState.PENDING for s in status.steps[3:])
        assert status.errors
        assert runner.ran("docker-compose") == []
        assert orch.get_version_history() == []
        assert orch.get_history()[-1].id == status.id

    def test_unexpected_exception_is_wrapped(self, runner):
        runner.on("make test", responses=[ValueError("boom")])
        with pytest.raises(DeploymentError, match="ValueError: boom") as exc_info:
            _orchestrator(runner).deploy("v1")
        assert isinstance(exc_info.value.__cause__, ValueError)
        assert exc_info.value.deployment.status is DeploymentState.FAILED

    def test_verification_health_failure(self, runner):
        with pytest.raises(HealthCheckError):
            _orchestrator(runner, status_code=503).deploy("v1")

    def test_cleanup_bound(self, runner):
        orch = _orchestrator(runner)
        for version in ("v1", "v2", "v3", "v4", "v5"):
            orch.deploy(version)
        assert orch.get_version_history() == ["v3", "v4", "v5"]
        assert runner.ran("docker rmi") == [
            "docker rmi localhost:5000/credential-management:v1",
            "docker rmi localhost:5000/credential-management:v2",
        ]

    def test_redeployed_version_image_is_kept(self, runner):
        orch = _orchestrator(runner, rollback=RollbackSettings(keep_previous_versions=2))
        for version in ("v1", "v2", "v1"):
            orch.deploy(version)
        assert orch.get_version_history() == ["v2", "v1"]
        assert runner.ran("docker rmi") == []


class TestDryRun:
    def test_no_side_effects(self, runner):
        orch = _orchestrator(runner, database=DatabaseSettings(run_migrations=True, backup_before_migration=True))
        status = orch.deploy("v1", dry_run=True)

        assert status.dry_run
        assert status.status is DeploymentState.COMPLETED
        assert runner.ran("docker buildx") == []
        assert runner.ran("pg_dump") == []
        assert runner.ran("migrate") == []
        assert runner.ran("docker-compose") == []
        assert runner.ran("make test")
        assert "[dry-run]" in status.step("build-docker-image").output
        assert orch.get_version_history() == []

    def test_idempotent_step_shape(self, runner):
        orch = _orchestrator(runner)
        first = orch.deploy("v1", dry_run=True)
        second = orch.deploy("v1", dry_run=True)
        assert [(s.name, s.status) for s in first.steps] == [(s.name, s.status) for s in second.steps]
        assert orch.get_version_history() == []

    def test_dry_run_never_rolls_back(self, runner):
        orch = _orchestrator(runner, rollback=_auto_rollback())
        orch.deploy("v1")
        orch.deploy("v2")
        runner.on("make test", returncode=1)
        with pytest.raises(CommandError):
            orch.deploy("v3", dry_run=True)
        assert orch.get_rollback_history() == []

    def test_cluster_dry_run_leaves_kubeconfig_alone(self, runner):
        orch = _orchestrator(runner, strategy=StrategyName.CANARY, cluster=True)
        orch.deploy("v2", dry_run=True)
        assert runner.ran("use-context") == []
        assert runner.ran("kubectl config get-contexts test-cluster")
        assert runner.ran("apply") == []

    def test_cleanup_only_reports(self, runner):
        orch = _orchestrator(runner, rollback=RollbackSettings(keep_previous_versions=1))
        orch.deploy("v1")
        status = orch.deploy("v2", dry_run=True)
        assert runner.ran("docker rmi") == []
        assert "would remove v1" in status.step("cleanup").output


# ---------------------------------------------------------------------------
# Verification and monitoring
# ---------------------------------------------------------------------------


class TestVerification:
    def test_error_rate_breach_fails_verification(self, runner):
        orch = _orchestrator(runner, metrics=_Metrics({"v1": 12.0}))
        with pytest.raises(VerificationError, match="12.00%"):
            orch.deploy("v1")

    def test_metrics_unreachable_is_a_warning(self, runner):
        status = _orchestrator(runner, metrics=_Metrics(fail=True)).deploy("v1")
        assert status.status is DeploymentState.COMPLETED
        assert any("Could not query error rate" in w for w in status.warnings)

    def test_grafana_failure_is_a_warning(self, runner):
        grafana = MagicMock()
        grafana.annotate.side_effect = MetricsError("401")
        status = _orchestrator(runner, grafana=grafana).deploy("v1")
        assert status.status is DeploymentState.COMPLETED
        assert any("Grafana annotation" in w for w in status.warnings)
        grafana.annotate.assert_called_once_with(
            "Deployed version v1 to staging", ["deployment", "staging", "v1"]
        )

    def test_grafana_not_called_in_dry_run(self, runner):
        grafana = MagicMock()
        _orchestrator(runner, grafana=grafana).deploy("v1", dry_run=True)
        grafana.annotate.assert_not_called()


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------


class TestRollback:
    def test_requires_two_versions(self, runner):
        orch = _orchestrator(runner)
        orch.deploy("v1")
        runner.commands.clear()
        with pytest.raises(RollbackError, match="No previous version"):
            orch.rollback("bad release")
        assert runner.commands == []
        assert orch.get_rollback_history() == []

    def test_manual_rollback(self, runner):
        orch = _orchestrator(runner)
        orch.deploy("v1")
        orch.deploy("v2")
        info = orch.rollback("bad release")

        assert (info.from_version, info.to_version) == ("v2", "v1")
        assert info.success and not info.automatic
        assert orch.get_rollback_history() == [info]
        last = orch.get_history()[-1]
        assert last.version == "v1"
        assert last.step("run-tests").status is StepState.SKIPPED

    def test_failed_rollback_is_recorded(self, runner):
        orch = _orchestrator(runner)
        orch.deploy("v1")
        orch.deploy("v2")
        runner.on("credential-management:v1 ", returncode=1, stderr="manifest unknown")
        with pytest.raises(RollbackError) as exc_info:
            orch.rollback("bad release")

        info = exc_info.value.info
        assert not info.success
        assert "manifest unknown" in info.error or "exit code 1" in info.error
        assert orch.get_rollback_history() == [info]
        assert isinstance(exc_info.value.__cause__, CommandError)

    def test_auto_rollback_after_error_rate_breach(self, runner):
        orch = _orchestrator(runner, rollback=_auto_rollback(), metrics=_Metrics({"v3": 50.0}))
        orch.deploy("v1")
        orch.deploy("v2")

        with pytest.raises(VerificationError) as exc_info:
            orch.deploy("v3")

        failed = exc_info.value.deployment
        assert failed.status is DeploymentState.ROLLED_BACK
        assert failed.rollback.automatic and failed.rollback.success
        assert failed.step("verify-deployment").status is StepState.FAILED

        history = orch.get_history()
        assert [d.version for d in history] == ["v1", "v2", "v3", "v1"]
        assert history[2].status is DeploymentState.ROLLED_BACK
        rollbacks = orch.get_rollback_history()
        assert len(rollbacks) == 1 and rollbacks[0].automatic
        assert orch.get_status().id == failed.id

    def test_auto_rollback_impossible_with_one_version(self, runner):
        orch = _orchestrator(runner, rollback=_auto_rollback(), metrics=_Metrics({"v2": 50.0}))
        orch.deploy("v1")
        with pytest.raises(VerificationError) as exc_info:
            orch.deploy("v2")

        status = exc_info.value.deployment
        assert status.status is DeploymentState.FAILED
        assert status.rollback is None
        assert any("rollback skipped" in w for w in status.warnings)
        assert orch.get_rollback_history() == []

    def test_auto_rollback_failure_surfaces(self, runner):
        orch = _orchestrator(runner, rollback=_auto_rollback(), metrics=_Metrics({"v3": 50.0}))
        orch.deploy("v1")
        orch.deploy("v2")
        runner.on("credential-management:v1 ", returncode=1)

        with pytest.raises(RollbackError) as exc_info:
            orch.deploy("v3")

        status = exc_info.value.deployment
        assert status.status is DeploymentState.FAILED
        assert status.rollback is not None and not status.rollback.success
        assert len(status.errors) == 2
        assert "automatic rollback failed" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, RollbackError)

    def test_force_disables_auto_rollback(self, runner):
        orch = _orchestrator(runner, rollback=_auto_rollback(), metrics=_Metrics({"v3": 50.0}))
        orch.deploy("v1")
        orch.deploy("v2")
        with pytest.raises(VerificationError):
            orch.deploy("v3", force=True)
        assert orch.get_rollback_history() == []


# ---------------------------------------------------------------------------
# Cancellation and concurrency
# ---------------------------------------------------------------------------


class TestCancellation:
    def test_cancelled_before_start(self, runner):
        token = CancelToken()
        token.cancel("operator")
        orch = _orchestrator(runner, rollback=_auto_rollback())
        with pytest.raises(DeploymentCancelled):
            orch.deploy("v1", cancel=token)
        assert runner.commands == []
        assert orch.get_status().status is DeploymentState.FAILED

    def test_cancel_mid_pipeline_skips_auto_rollback(self, runner):
        orch = _orchestrator(runner, rollback=_auto_rollback())
        orch.deploy("v1")
        orch.deploy("v2")
        token = CancelToken()
        def cancel_during_tests(command):
            token.cancel("stop")
            return CommandResult(command, 0)

        runner.on("make test", responses=[cancel_during_tests])

        with pytest.raises(DeploymentCancelled) as exc_info:
            orch.deploy("v3", cancel=token)
        status = exc_info.value.deployment
        assert status.status is DeploymentState.FAILED
        assert status.step("database-migrations").status is StepState.SKIPPED
        assert status.step("deploy-application").status is StepState.PENDING
        assert orch.get_rollback_history() == []


class TestConcurrency:
    def test_second_deployment_rejected_while_building(self, runner):
        orch = _orchestrator(runner)
        rejected = []

        def listener(event):
            if event.name == STEP_STARTED and event.payload["step"] == "build-docker-image" and not rejected:
                rejected.append(None)
                try:
                    orch.deploy("v2")
                except DeploymentInProgressError as exc:
                    rejected[0] = exc

        orch.subscribe(listener)
        status = orch.deploy("v1")
        assert isinstance(rejected[0], DeploymentInProgressError)
        assert rejected[0].deployment_id == status.id
        assert status.status is DeploymentState.COMPLETED

    def test_reads_are_snapshots(self, runner):
        orch = _orchestrator(runner)
        orch.deploy("v1")
        snapshot = orch.get_status()
        snapshot.warnings.append("mutated")
        snapshot.steps.clear()
        assert orch.get_status().warnings == []
        assert len(orch.get_status().steps) == len(STEPS)

    def test_history_limit(self, runner):
        orch = _orchestrator(runner)
        for version in ("v1", "v2", "v3"):
            orch.deploy(version, dry_run=True)
        assert [d.version for d in orch.get_history(limit=2)] == ["v2", "v3"]
        assert orch.get_history(limit=0) == []


# ---------------------------------------------------------------------------
# Events, strategies and status
# ---------------------------------------------------------------------------


class TestEventsAndStatus:
    def test_event_sequence(self, runner):
        orch = _orchestrator(runner)
        names = []
        orch.subscribe(lambda e: names.append(e.name))
        orch.deploy("v1")
        assert names[0] == "deployment-started"
        assert names[-1] == "deployment-completed"
        assert names.count("step-started") == 7
        assert names.count("step-skipped") == 1

    def test_canary_weights_recorded(self, runner):
        orch = _orchestrator(runner, strategy=StrategyName.CANARY, cluster=True, metrics=_Metrics())
        shifts = []
        orch.subscribe(lambda e: shifts.append(e.payload["weight"]) if e.name == TRAFFIC_SHIFTED else None)
        status = orch.deploy("v2")
        assert status.metrics.traffic_weights == [0.1, 0.25, 0.5, 0.75, 1.0]
        assert shifts == status.metrics.traffic_weights
        assert runner.ran("kubectl config use-context test-cluster")

    def test_blue_green_through_orchestrator(self, runner):
        orch = _orchestrator(runner, strategy=StrategyName.BLUE_GREEN, cluster=True)
        status = orch.deploy("v2")
        assert "shop-green" in status.metrics.affected_services
        assert "blue -> green" in status.step("deploy-application").output

    def test_blue_green_readiness_timeout_leaves_blue_serving(self, runner):
        runner.on("get service", stdout=service_json("blue"))
        runner.on("get deployment", stdout=deployment_json(replicas=1, ready=0))
        orch = _orchestrator(runner, strategy=StrategyName.BLUE_GREEN, cluster=True)
        with pytest.raises(ReadinessTimeoutError) as exc_info:
            orch.deploy("v2")

        status = exc_info.value.deployment
        assert status.status is DeploymentState.FAILED
        assert status.step("deploy-application").status is StepState.FAILED
        assert status.step("verify-deployment").status is StepState.PENDING
        applied = [(d["kind"], d["metadata"]["name"]) for d in runner.applied]
        assert ("Deployment", "shop-green") in applied
        assert ("Service", "shop") not in applied
        assert runner.ran("delete") == []
        assert orch.get_version_history() == []

    def test_system_status(self, runner):
        orch = _orchestrator(runner)
        orch.deploy("v1")
        system = orch.get_system_status()
        assert system["current_version"] == "v1"
        assert system["healthy"] is True
        assert system["strategy"] == "recreate"
        assert system["health"][0]["service"] == "api"
        assert system["last_deployment"]["version"] == "v1"
