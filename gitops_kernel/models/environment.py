"""Environment — a deployment target and its sync policy."""

from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from croniter import croniter
from pydantic import BaseModel, Field, field_validator


class SyncPolicy(str, Enum):
    """Tagged variant over sync-policy kinds, dispatched once per pass."""
    AUTO_SELF_HEAL = "auto-self-heal"         # Apply every delta, drift included
    AUTO_NO_SELF_HEAL = "auto-no-self-heal"   # Apply new revisions, report drift
    MANUAL = "manual"                         # Apply only on explicit trigger


class ExposureMode(str, Enum):
    INTERNAL = "internal"   # ClusterIP service
    EXTERNAL = "external"   # LoadBalancer service, reachable from outside


class ResourceQuotaSpec(BaseModel):
    """Namespace resource quota applied to an environment."""

    requests_cpu: str = "1"
    requests_memory: str = "1Gi"
    limits_cpu: str = "2"
    limits_memory: str = "2Gi"
    pods: int = Field(ge=1, default=10)


class SyncWindowKind(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class SyncWindow(BaseModel):
    """
    A cron-scheduled window that allows or denies automatic syncs.

    The window opens at each firing of ``schedule`` and stays open for
    ``duration_minutes``.
    """

    kind: SyncWindowKind = SyncWindowKind.ALLOW
    schedule: str                           # Cron expression, e.g. "0 22 * * *"
    duration_minutes: int = Field(ge=1)
    manual_sync: bool = True                # Manual triggers bypass the window

    @field_validator("schedule")
    @classmethod
    def _valid_cron(cls, value: str) -> str:
        if not croniter.is_valid(value):
            raise ValueError(f"invalid cron expression: {value!r}")
        return value

    def is_active(self, current_time: datetime) -> bool:
        """Whether ``current_time`` falls inside an opening of this window."""
        if croniter.match(self.schedule, current_time):
            return True
        opened = croniter(self.schedule, current_time).get_prev(datetime)
        return current_time < opened + timedelta(minutes=self.duration_minutes)


class Environment(BaseModel):
    """A deployment target. Defined statically; never deleted at runtime."""

    name: str
    namespace: str
    replicas: int = Field(ge=0, default=1)
    exposure: ExposureMode = ExposureMode.INTERNAL
    quota: ResourceQuotaSpec = ResourceQuotaSpec()
    sync_policy: SyncPolicy = SyncPolicy.AUTO_SELF_HEAL
    source_path: str = ""                   # Manifest directory in the repo
    revision: str = "main"                  # Branch, tag or commit SHA to track
    prune: bool = False
    sync_windows: List[SyncWindow] = []
    description: Optional[str] = None
