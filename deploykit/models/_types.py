"""Data classes for deployment status, steps, metrics and rollbacks."""

from __future__ import annotations

import copy
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentState(str, Enum):
    PENDING = "pending"
    BUILDING = "building"
    DEPLOYING = "deploying"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class StepState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


_IN_PROGRESS = frozenset({DeploymentState.BUILDING, DeploymentState.DEPLOYING})
_TERMINAL = frozenset(
    {DeploymentState.COMPLETED, DeploymentState.FAILED, DeploymentState.ROLLED_BACK}
)


@dataclass
class DeploymentStep:
    """One pipeline step of a deployment."""

    name: str
    status: StepState = StepState.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    output: Optional[str] = None
    error: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def start(self) -> None:
        if self.status is not StepState.PENDING:
            raise ValueError(f"Step {self.name} already {self.status.value}")
        self.status = StepState.RUNNING
        self.started_at = _utcnow()

    def complete(self, output: Optional[str] = None) -> None:
        if self.status is not StepState.RUNNING:
            raise ValueError(f"Step {self.name} is not running")
        self.status = StepState.COMPLETED
        self.finished_at = _utcnow()
        self.output = output

    def fail(self, error: str) -> None:
        if self.status is not StepState.RUNNING:
            raise ValueError(f"Step {self.name} is not running")
        self.status = StepState.FAILED
        self.finished_at = _utcnow()
        self.error = error

    def skip(self, reason: Optional[str] = None) -> None:
        if self.status is not StepState.PENDING:
            raise ValueError(f"Step {self.name} already {self.status.value}")
        self.status = StepState.SKIPPED
        self.output = reason

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["started_at"] = self.started_at.isoformat() if self.started_at else None
        d["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return d


@dataclass
class DeploymentMetrics:
    """Post-hoc measurements of a deployment (all durations in seconds)."""

    deployment_duration: Optional[float] = None
    build_duration: Optional[float] = None
    downtime: Optional[float] = None
    traffic_weights: list[float] = field(default_factory=list)
    affected_services: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RollbackInfo:
    """Record of a single rollback attempt."""

    from_version: str
    to_version: str
    reason: str
    automatic: bool
    success: bool
    timestamp: datetime = field(default_factory=_utcnow)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        return d


@dataclass
class DeploymentStatus:
    """Lifecycle record of one ``deploy()`` call.

    Mutated only by the orchestrator that created it.  Readers should work
    on :meth:`snapshot` copies.
    """

    environment: str
    version: str
    id: str = field(default_factory=lambda: f"deploy_{uuid.uuid4().hex[:12]}")
    status: DeploymentState = DeploymentState.PENDING
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None
    steps: list[DeploymentStep] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    metrics: DeploymentMetrics = field(default_factory=DeploymentMetrics)
    dry_run: bool = False
    rollback: Optional[RollbackInfo] = None

    @property
    def in_progress(self) -> bool:
        return self.status in _IN_PROGRESS

    @property
    def finished(self) -> bool:
        return self.status in _TERMINAL

    def step(self, name: str) -> Optional[DeploymentStep]:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def snapshot(self) -> DeploymentStatus:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "environment": self.environment,
            "version": self.version,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "steps": [s.to_dict() for s in self.steps],
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "metrics": self.metrics.to_dict(),
            "dry_run": self.dry_run,
            "rollback": self.rollback.to_dict() if self.rollback else None,
        }
