from ._types import (
    DeploymentMetrics,
    DeploymentState,
    DeploymentStatus,
    DeploymentStep,
    RollbackInfo,
    StepState,
)

__all__ = [
    "DeploymentMetrics",
    "DeploymentState",
    "DeploymentStatus",
    "DeploymentStep",
    "RollbackInfo",
    "StepState",
]
