"""Reconciler configuration and per-environment runtime state."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from gitops_kernel.models.health import EnvironmentHealth
from gitops_kernel.models.sync import SchedulerState


class ReconcilerConfig(BaseModel):
    """Configuration for the reconciliation loop."""

    heartbeat_interval_seconds: int = 60
    live_state_timeout_seconds: float = 30.0
    apply_timeout_seconds: float = 30.0
    health_timeout_seconds: float = 300.0
    health_poll_interval_seconds: float = 5.0
    max_retry_budget: int = Field(ge=1, default=5)
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    max_apply_workers: int = Field(ge=1, default=4)
    max_environment_workers: int = Field(ge=1, default=4)
    cooldown_seconds: int = 0
    circuit_breaker_threshold: int = 5


class EnvironmentRecord(BaseModel):
    """
    Mutable runtime record of one environment. Written only by the pass
    that holds the environment's lock.
    """

    environment: str
    state: SchedulerState = SchedulerState.IDLE
    last_applied_revision: Optional[str] = None
    last_seen_revision: Optional[str] = None
    last_sync_id: Optional[str] = None
    last_pass_at: Optional[datetime] = None
    last_decision: Optional[SchedulerState] = None   # NoOp, PendingApproval or Applying
    pending_reason: Optional[str] = None
    health: Optional[EnvironmentHealth] = None
    queued: bool = False                    # A pass arrived while applying

    # Dampening: back off automatic syncs that keep failing
    consecutive_failures: int = 0
    cooldown_until: Optional[datetime] = None
    circuit_broken: bool = False
