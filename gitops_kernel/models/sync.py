"""Sync operations — one attempt to apply a Delta — and apply outcomes."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from gitops_kernel.models.environment import SyncPolicy
from gitops_kernel.models.health import HealthState


class SchedulerState(str, Enum):
    IDLE = "Idle"
    DIFFING = "Diffing"
    NO_OP = "NoOp"
    PENDING_APPROVAL = "PendingApproval"
    APPLYING = "Applying"


class SyncTrigger(str, Enum):
    NEW_REVISION = "new_revision"   # Desired state moved to a new commit
    DRIFT = "drift"                 # Live state diverged out of band
    MANUAL = "manual"               # Explicit trigger-sync command


class SyncStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIAL = "partial"


class OperationOutcome(BaseModel):
    """Result of applying one delta operation."""

    key: str
    action: str
    success: bool
    attempts: int = 1
    error: Optional[str] = None
    error_type: Optional[str] = None
    duration: float = 0.0


class ApplyResult(BaseModel):
    """Outcome of applying a whole Delta."""

    applied: List[OperationOutcome] = []
    failed: List[OperationOutcome] = []
    skipped: List[str] = []                 # Identities never attempted
    aborted: bool = False                   # Cancelled by an explicit abort
    rejected: bool = False                  # Stopped by a non-transient failure

    @property
    def success(self) -> bool:
        return not self.failed and not self.skipped and not self.aborted

    @property
    def status(self) -> SyncStatus:
        if self.success:
            return SyncStatus.SUCCEEDED
        if self.applied or self.aborted:
            return SyncStatus.PARTIAL
        return SyncStatus.FAILED


class SyncOperation(BaseModel):
    """One attempt to apply a Delta to an environment."""

    id: str
    environment: str
    revision: str
    policy: SyncPolicy
    trigger: SyncTrigger
    status: SyncStatus = SyncStatus.RUNNING
    applied: List[str] = []
    failed: List[str] = []
    skipped: List[str] = []
    cause: str = ""                         # Human-readable
    health: Optional[HealthState] = None
    started_at: datetime
    finished_at: Optional[datetime] = None

    @property
    def terminal(self) -> bool:
        return self.status != SyncStatus.RUNNING
