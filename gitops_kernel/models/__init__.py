"""GitOps Kernel data models."""

from gitops_kernel.models.delta import Delta, DeltaAction, DeltaOperation
from gitops_kernel.models.environment import (
    Environment,
    ExposureMode,
    ResourceQuotaSpec,
    SyncPolicy,
    SyncWindow,
    SyncWindowKind,
)
from gitops_kernel.models.health import (
    EnvironmentHealth,
    HealthState,
    ResourceHealth,
)
from gitops_kernel.models.reconciler import EnvironmentRecord, ReconcilerConfig
from gitops_kernel.models.resource import (
    DesiredState,
    LiveResource,
    LiveState,
    ResourceKey,
)
from gitops_kernel.models.sync import (
    ApplyResult,
    OperationOutcome,
    SchedulerState,
    SyncOperation,
    SyncStatus,
    SyncTrigger,
)

__all__ = [
    "ApplyResult",
    "Delta",
    "DeltaAction",
    "DeltaOperation",
    "DesiredState",
    "Environment",
    "EnvironmentHealth",
    "EnvironmentRecord",
    "ExposureMode",
    "HealthState",
    "LiveResource",
    "LiveState",
    "OperationOutcome",
    "ReconcilerConfig",
    "ResourceHealth",
    "ResourceKey",
    "ResourceQuotaSpec",
    "SchedulerState",
    "SyncOperation",
    "SyncPolicy",
    "SyncStatus",
    "SyncTrigger",
    "SyncWindow",
    "SyncWindowKind",
]
