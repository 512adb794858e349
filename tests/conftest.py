"""Shared fakes and config factories for the deploykit tests."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

import httpx
import pytest
import yaml

from deploykit.cancellation import ensure_token
from deploykit.config import (
    CanarySettings,
    DeploymentConfig,
    DeploymentSettings,
    HealthCheck,
    HealthSettings,
    KubernetesSettings,
    PreflightSettings,
    RollbackSettings,
    StrategyName,
)
from deploykit.errors import CommandError
from deploykit.health import HealthChecker
from deploykit.runner import CommandResult, CommandRunner

Response = Union[CommandResult, Callable[[str], CommandResult], BaseException]


@dataclass
class _Rule:
    pattern: str
    responses: list


class FakeRunner(CommandRunner):
    """Scripted CommandRunner.

    ``on(pattern, ...)`` registers responses for commands containing
    *pattern*; the most recently registered matching rule wins.  A rule
    with several responses hands them out in order and then repeats the
    last one.  ``kubectl apply -f`` manifests are parsed into ``applied``.
    """

    def __init__(self) -> None:
        self.commands: list[str] = []
        self.contexts: list[str] = []
        self.timeouts: list[Optional[float]] = []
        self.applied: list[dict[str, Any]] = []
        self._rules: list[_Rule] = []

    def on(
        self,
        pattern: str,
        stdout: str = "",
        returncode: int = 0,
        stderr: str = "",
        responses: Optional[list[Response]] = None,
    ) -> None:
        if responses is None:
            responses = [CommandResult("", returncode, stdout, stderr)]
        self._rules.append(_Rule(pattern, list(responses)))

    def ran(self, pattern: str) -> list[str]:
        return [c for c in self.commands if pattern in c]

    def run(self, command, *, context="command", timeout=None, cancel=None, check=True):
        ensure_token(cancel).raise_if_cancelled()
        self.commands.append(command)
        self.contexts.append(context)
        self.timeouts.append(timeout)
        if "apply -f " in command:
            path = command.split("apply -f ", 1)[1].split()[0].strip("'")
            with open(path) as f:
                self.applied.extend(d for d in yaml.safe_load_all(f) if d)

        response: Response = CommandResult(command, 0)
        for rule in reversed(self._rules):
            if rule.pattern in command:
                response = rule.responses.pop(0) if len(rule.responses) > 1 else rule.responses[0]
                break
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = response(command)
        result = CommandResult(command, response.returncode, response.stdout, response.stderr)
        if check and not result.ok:
            raise CommandError(command, returncode=result.returncode, output=result.output)
        return result


def deployment_json(
    replicas: int = 1,
    ready: int = 1,
    updated: Optional[int] = None,
    generation: int = 1,
    observed: Optional[int] = None,
) -> str:
    """``kubectl get deployment -o json``; by default the rollout is current."""
    return json.dumps(
        {
            "metadata": {"generation": generation},
            "spec": {"replicas": replicas},
            "status": {
                "observedGeneration": generation if observed is None else observed,
                "updatedReplicas": ready if updated is None else updated,
                "readyReplicas": ready,
            },
        }
    )


def service_json(variant: str) -> str:
    return json.dumps({"spec": {"selector": {"app": "shop", "variant": variant}}})


NOT_FOUND = CommandResult("", 1, "", 'Error from server (NotFound): "shop" not found')


def make_config(
    strategy: StrategyName = StrategyName.ROLLING,
    cluster: bool = True,
    **changes: Any,
) -> DeploymentConfig:
    """Config with zero waits and no host requirements."""
    config = DeploymentConfig(
        environment="staging",
        app_name="shop",
        deployment=DeploymentSettings(
            strategy=strategy,
            health_check_timeout=5.0,
            readiness_timeout=0.2,
            readiness_poll_interval=0.0,
        ),
        kubernetes=KubernetesSettings(cluster="test-cluster", namespace="apps") if cluster else None,
        health=HealthSettings(
            checks=(HealthCheck("api", "/health", retries=2, timeout=1.0),),
            retry_delay=0.0,
            base_url="http://shop.test",
        ),
        canary=CanarySettings(
            initial_observation=0.0,
            step_observation=0.0,
            sample_interval=0.0,
        ),
        rollback=RollbackSettings(keep_previous_versions=3),
        preflight=PreflightSettings(
            required_env=(),
            required_tools=(),
            cluster_tools=(),
            disk_usage_warning=100.0,
            disk_usage_limit=100.0,
            memory_warning_mb=0.0,
        ),
        test_commands=("make test",),
    )
    return config.replace(**changes) if changes else config


def health_checker(config: DeploymentConfig, status_code: int = 200, seen: Optional[list] = None) -> HealthChecker:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(str(request.url))
        return httpx.Response(status_code)

    return HealthChecker(config, transport=httpx.MockTransport(handler))


@pytest.fixture
def runner() -> FakeRunner:
    fake = FakeRunner()
    fake.on("get deployment", stdout=deployment_json())
    fake.on("rollout status", stdout='deployment "shop" successfully rolled out')
    fake.on("get service", responses=[NOT_FOUND])
    return fake
