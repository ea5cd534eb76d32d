"""
Health Evaluator — polls applied resources until they settle.

Behavioral Contract:
- Progressing -> Healthy when every resource reports ready
- Progressing -> Degraded on crash loops, failed rollouts, or timeout
- Progressing -> Unknown when the cluster cannot be observed
- Every returned EnvironmentHealth is backed by a fresh observation;
  a resource is never reported Healthy from a cached reading
- Degraded and Unknown are reported, never rolled back
"""

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from gitops_kernel.cluster.client import ClusterClient
from gitops_kernel.errors import (
    ClusterUnreachable,
    GitOpsError,
    HealthDegraded,
    HealthTimeout,
    ResourceNotFound,
)
from gitops_kernel.models.environment import Environment
from gitops_kernel.models.health import (
    EnvironmentHealth,
    HealthState,
    ResourceHealth,
)
from gitops_kernel.models.resource import LiveResource, ResourceKey

logger = logging.getLogger(__name__)

FAILING_WAIT_REASONS = frozenset({
    "CrashLoopBackOff",
    "ImagePullBackOff",
    "ErrImagePull",
    "CreateContainerConfigError",
    "InvalidImageName",
})

TIMEOUT_PREFIX = "HealthTimeout: "


def _condition(status: dict, condition_type: str) -> Optional[dict]:
    for condition in status.get("conditions") or []:
        if condition.get("type") == condition_type:
            return condition
    return None


def _failing_container(pod: dict) -> Optional[str]:
    """Return a reason if any container in the pod is crash-looping."""
    status = pod.get("status") or {}
    for container in (status.get("containerStatuses") or []) + (
        status.get("initContainerStatuses") or []
    ):
        waiting = (container.get("state") or {}).get("waiting") or {}
        if waiting.get("reason") in FAILING_WAIT_REASONS:
            return f"container {container.get('name')}: {waiting['reason']}"
    return None


def _selector_matches(selector: dict, labels: dict) -> bool:
    match_labels = (selector or {}).get("matchLabels") or {}
    return bool(match_labels) and all(labels.get(k) == v for k, v in match_labels.items())


def health_error(health: EnvironmentHealth) -> Optional[GitOpsError]:
    """
    The error a Degraded rollup surfaces as, naming the first failing
    resource. None when nothing is Degraded.
    """
    for resource in health.resources:
        if resource.state != HealthState.DEGRADED:
            continue
        if resource.message.startswith(TIMEOUT_PREFIX):
            return HealthTimeout(resource.message[len(TIMEOUT_PREFIX):], key=resource.key)
        return HealthDegraded(resource.message, key=resource.key)
    return None


class HealthEvaluator:
    """Evaluates and polls resource health through a ClusterClient."""

    def __init__(
        self,
        cluster: ClusterClient,
        timeout_seconds: float = 300.0,
        poll_interval_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cluster = cluster
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._rules: Dict[str, Callable[[LiveResource, List[dict]], ResourceHealth]] = {
            "Deployment": self._workload_health,
            "StatefulSet": self._workload_health,
            "DaemonSet": self._daemonset_health,
            "Job": self._job_health,
            "Pod": self._pod_health,
            "Service": self._service_health,
            "Namespace": self._namespace_health,
        }

    # --- Rules ---

    def _workload_health(self, res: LiveResource, pods: List[dict]) -> ResourceHealth:
        manifest = res.manifest
        spec = manifest.get("spec") or {}
        status = res.status
        desired = spec.get("replicas", 1)
        generation = (manifest.get("metadata") or {}).get("generation", 0)

        stalled = _condition(status, "Progressing")
        if stalled and stalled.get("reason") == "ProgressDeadlineExceeded":
            return ResourceHealth(
                key=res.key, state=HealthState.DEGRADED,
                message=stalled.get("message") or "Progress deadline exceeded",
            )

        for pod in pods:
            if _selector_matches(spec.get("selector"), (pod.get("metadata") or {}).get("labels") or {}):
                reason = _failing_container(pod)
                if reason:
                    pod_name = (pod.get("metadata") or {}).get("name")
                    return ResourceHealth(
                        key=res.key, state=HealthState.DEGRADED,
                        message=f"Pod {pod_name} {reason}",
                    )

        if status.get("observedGeneration", 0) < generation:
            return ResourceHealth(
                key=res.key, state=HealthState.PROGRESSING,
                message="Waiting for rollout to be observed",
            )

        ready = status.get("readyReplicas", 0)
        updated = status.get("updatedReplicas", 0)
        if ready >= desired and updated >= desired:
            return ResourceHealth(
                key=res.key, state=HealthState.HEALTHY,
                message=f"{ready}/{desired} replicas ready",
            )
        return ResourceHealth(
            key=res.key, state=HealthState.PROGRESSING,
            message=f"{ready}/{desired} replicas ready, {updated} updated",
        )

    def _daemonset_health(self, res: LiveResource, pods: List[dict]) -> ResourceHealth:
        status = res.status
        desired = status.get("desiredNumberScheduled", 0)
        ready = status.get("numberReady", 0)
        state = HealthState.HEALTHY if ready >= desired else HealthState.PROGRESSING
        return ResourceHealth(key=res.key, state=state, message=f"{ready}/{desired} pods ready")

    def _job_health(self, res: LiveResource, pods: List[dict]) -> ResourceHealth:
        status = res.status
        failed = _condition(status, "Failed")
        if failed and failed.get("status") == "True":
            return ResourceHealth(
                key=res.key, state=HealthState.DEGRADED,
                message=failed.get("message") or "Job failed",
            )
        if status.get("succeeded", 0) > 0:
            return ResourceHealth(key=res.key, state=HealthState.HEALTHY, message="Job complete")
        return ResourceHealth(key=res.key, state=HealthState.PROGRESSING, message="Job running")

    def _pod_health(self, res: LiveResource, pods: List[dict]) -> ResourceHealth:
        status = res.status
        reason = _failing_container(res.manifest)
        if reason or status.get("phase") == "Failed":
            return ResourceHealth(
                key=res.key, state=HealthState.DEGRADED, message=reason or "Pod failed",
            )
        ready = _condition(status, "Ready")
        if status.get("phase") == "Running" and ready and ready.get("status") == "True":
            return ResourceHealth(key=res.key, state=HealthState.HEALTHY, message="Running")
        return ResourceHealth(
            key=res.key, state=HealthState.PROGRESSING,
            message=f"Phase {status.get('phase', 'Pending')}",
        )

    def _service_health(self, res: LiveResource, pods: List[dict]) -> ResourceHealth:
        spec = res.manifest.get("spec") or {}
        if spec.get("type") != "LoadBalancer":
            return ResourceHealth(key=res.key, state=HealthState.HEALTHY)
        ingress = (res.status.get("loadBalancer") or {}).get("ingress") or []
        if ingress:
            address = ingress[0].get("ip") or ingress[0].get("hostname")
            return ResourceHealth(
                key=res.key, state=HealthState.HEALTHY, message=f"External address {address}",
            )
        return ResourceHealth(
            key=res.key, state=HealthState.PROGRESSING,
            message="Waiting for external address",
        )

    def _namespace_health(self, res: LiveResource, pods: List[dict]) -> ResourceHealth:
        phase = res.status.get("phase", "Active")
        state = HealthState.HEALTHY if phase == "Active" else HealthState.PROGRESSING
        return ResourceHealth(key=res.key, state=state, message=phase)

    def evaluate(self, resource: LiveResource, pods: Optional[List[dict]] = None) -> ResourceHealth:
        """Health of one observed resource."""
        rule = self._rules.get(resource.key.kind)
        if rule is None:
            return ResourceHealth(key=resource.key, state=HealthState.HEALTHY)
        return rule(resource, pods or [])

    # --- Observation ---

    def _unknown(
        self, environment: Environment, keys: List[ResourceKey], message: str, now: datetime,
    ) -> EnvironmentHealth:
        return EnvironmentHealth(
            environment=environment.name,
            state=HealthState.UNKNOWN,
            resources=[
                ResourceHealth(key=k, state=HealthState.UNKNOWN, message=message)
                for k in keys
            ],
            message=message,
            observed_at=now,
        )

    def check(self, environment: Environment, keys: Iterable[ResourceKey]) -> EnvironmentHealth:
        """One fresh observation of ``keys``. Never raises for cluster errors."""
        keys = sorted(set(keys), key=lambda k: k.sort_key)
        now = datetime.utcnow()
        try:
            pods = []
            if any(k.kind in ("Deployment", "StatefulSet") for k in keys):
                pods = [p.manifest for p in self.cluster.list(environment.namespace, ["Pod"])]

            results = []
            for key in keys:
                try:
                    resource = self.cluster.get(key)
                except ResourceNotFound:
                    results.append(ResourceHealth(
                        key=key, state=HealthState.PROGRESSING, message="Not found yet",
                    ))
                    continue
                results.append(self.evaluate(resource, pods))
        except ClusterUnreachable as e:
            return self._unknown(environment, keys, f"Cluster unreachable: {e}", now)
        except GitOpsError as e:
            logger.warning("%s: cannot observe health: %s", environment.name, e)
            return self._unknown(environment, keys, f"{type(e).__name__}: {e}", now)
        return EnvironmentHealth.rollup(environment.name, results, observed_at=now)

    def poll(
        self,
        environment: Environment,
        keys: Iterable[ResourceKey],
        on_change: Optional[Callable[[EnvironmentHealth], None]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> EnvironmentHealth:
        """
        Poll until every resource is Healthy, one is Degraded, the cluster
        is unreachable, or the timeout elapses (reported as Degraded).
        A set ``cancel`` event stops polling and returns the latest
        observation as is.
        """
        keys = list(keys)
        deadline = self._clock() + self.timeout_seconds
        previous: Optional[HealthState] = None

        while True:
            health = self.check(environment, keys)
            if on_change is not None and health.state != previous:
                on_change(health)
            previous = health.state

            if health.state != HealthState.PROGRESSING:
                return health
            if cancel is not None and cancel.is_set():
                logger.info("%s: health polling cancelled", environment.name)
                return health

            if self._clock() + self.poll_interval_seconds > deadline:
                timed_out = [
                    r if r.state != HealthState.PROGRESSING else ResourceHealth(
                        key=r.key,
                        state=HealthState.DEGRADED,
                        message=f"{TIMEOUT_PREFIX}{r.message}",
                    )
                    for r in health.resources
                ]
                result = EnvironmentHealth.rollup(
                    environment.name,
                    timed_out,
                    observed_at=health.observed_at,
                    message=f"Not healthy after {self.timeout_seconds}s",
                )
                logger.warning("%s: %s", environment.name, result.message)
                if on_change is not None:
                    on_change(result)
                return result

            self._sleep(self.poll_interval_seconds)
