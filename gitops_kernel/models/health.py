"""Health status — per resource and rolled up per environment."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from gitops_kernel.models.resource import ResourceKey


class HealthState(str, Enum):
    PROGRESSING = "Progressing"
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    UNKNOWN = "Unknown"


# Rollup precedence, worst first
_SEVERITY = {
    HealthState.DEGRADED: 3,
    HealthState.UNKNOWN: 2,
    HealthState.PROGRESSING: 1,
    HealthState.HEALTHY: 0,
}


def worst(states: List[HealthState]) -> HealthState:
    """Roll a set of states up to the most severe one."""
    if not states:
        return HealthState.HEALTHY
    return max(states, key=lambda s: _SEVERITY[s])


class ResourceHealth(BaseModel):
    key: ResourceKey
    state: HealthState
    message: str = ""


class EnvironmentHealth(BaseModel):
    """Rollup for one environment, always backed by a fresh observation."""

    environment: str
    state: HealthState
    resources: List[ResourceHealth] = []
    message: str = ""
    observed_at: Optional[datetime] = None

    @classmethod
    def rollup(
        cls,
        environment: str,
        resources: List[ResourceHealth],
        observed_at: datetime,
        message: str = "",
    ) -> "EnvironmentHealth":
        return cls(
            environment=environment,
            state=worst([r.state for r in resources]),
            resources=resources,
            message=message,
            observed_at=observed_at,
        )
