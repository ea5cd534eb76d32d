"""Tests for the Applier, dependency ordering and retry policy."""

import threading
import time

import pytest

from gitops_kernel.applier.applier import Applier
from gitops_kernel.applier.ordering import plan_tiers, tier_of
from gitops_kernel.applier.retry import RetryPolicy
from gitops_kernel.cluster.client import InMemoryCluster
from gitops_kernel.diff.engine import diff
from gitops_kernel.errors import ApplyConflict, ApplyRejected, ClusterUnreachable
from gitops_kernel.models.delta import Delta, DeltaAction, DeltaOperation
from gitops_kernel.models.resource import DesiredState, LiveState, ResourceKey
from gitops_kernel.models.sync import SyncStatus

NS = "hello-staging"
NAMESPACE_KEY = ResourceKey(kind="Namespace", name=NS)
QUOTA_KEY = ResourceKey(kind="ResourceQuota", namespace=NS, name="staging-quota")
DEPLOYMENT_KEY = ResourceKey(kind="Deployment", namespace=NS, name="hello")
SERVICE_KEY = ResourceKey(kind="Service", namespace=NS, name="hello")
HPA_KEY = ResourceKey(kind="HorizontalPodAutoscaler", namespace=NS, name="hello")


def _manifests(image: str = "hello:1.0", replicas: int = 3) -> dict:
    container = {"name": "hello"}
    if image:
        container["image"] = image
    return {
        NAMESPACE_KEY: {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": NS}},
        QUOTA_KEY: {
            "apiVersion": "v1", "kind": "ResourceQuota",
            "metadata": {"name": "staging-quota", "namespace": NS},
            "spec": {"hard": {"pods": "10"}},
        },
        DEPLOYMENT_KEY: {
            "apiVersion": "apps/v1", "kind": "Deployment",
            "metadata": {"name": "hello", "namespace": NS},
            "spec": {
                "replicas": replicas,
                "selector": {"matchLabels": {"app": "hello"}},
                "template": {
                    "metadata": {"labels": {"app": "hello"}},
                    "spec": {"containers": [container]},
                },
            },
        },
        SERVICE_KEY: {
            "apiVersion": "v1", "kind": "Service",
            "metadata": {"name": "hello", "namespace": NS},
            "spec": {"ports": [{"name": "http", "port": 80}]},
        },
        HPA_KEY: {
            "apiVersion": "autoscaling/v2", "kind": "HorizontalPodAutoscaler",
            "metadata": {"name": "hello", "namespace": NS},
            "spec": {"minReplicas": 3, "maxReplicas": 6},
        },
    }


def _create_delta(manifests: dict) -> Delta:
    desired = DesiredState(environment="staging", revision="r1", resources=manifests)
    return diff(desired, LiveState(environment="staging"))


def _no_sleep(seconds: float) -> None:
    pass


def _make_applier(cluster, max_attempts: int = 3, sleep=_no_sleep, **kwargs) -> Applier:
    policy = RetryPolicy(max_attempts=max_attempts, base_delay_seconds=1.0, max_delay_seconds=4.0)
    return Applier(cluster, retry_policy=policy, sleep=sleep, **kwargs)


class TestOrdering:
    def test_tiers(self):
        assert tier_of("ConfigMap") < tier_of("Deployment") < tier_of("Service")
        assert tier_of("Service") < tier_of("HorizontalPodAutoscaler")
        assert tier_of("SomeCustomKind") == tier_of("Service")

    def test_namespace_first_deletes_last_in_reverse(self):
        ops = [
            DeltaOperation(action=DeltaAction.DELETE, key=ResourceKey(kind="ConfigMap", namespace=NS, name="old")),
            DeltaOperation(action=DeltaAction.CREATE, key=SERVICE_KEY, desired={}),
            DeltaOperation(action=DeltaAction.DELETE, key=ResourceKey(kind="Service", namespace=NS, name="old")),
            DeltaOperation(action=DeltaAction.CREATE, key=DEPLOYMENT_KEY, desired={}),
            DeltaOperation(action=DeltaAction.CREATE, key=QUOTA_KEY, desired={}),
            DeltaOperation(action=DeltaAction.CREATE, key=NAMESPACE_KEY, desired={}),
        ]
        batches = plan_tiers(ops)
        assert [[(op.action.value, op.key.kind) for op in b] for b in batches] == [
            [("create", "Namespace")],
            [("create", "ResourceQuota")],
            [("create", "Deployment")],
            [("create", "Service")],
            [("delete", "Service")],
            [("delete", "ConfigMap")],
        ]


class TestRetryPolicy:
    def test_exponential_backoff_is_capped(self):
        policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=5.0)
        assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_state_machine_exhausts_budget(self):
        retry = RetryPolicy(max_attempts=3, base_delay_seconds=0.5).start()
        assert retry.advance(ClusterUnreachable("down"))
        assert (retry.attempt, retry.delay) == (2, 0.5)
        assert retry.advance(ClusterUnreachable("down"))
        assert (retry.attempt, retry.delay) == (3, 1.0)
        assert not retry.advance(ClusterUnreachable("down"))
        assert retry.exhausted

    def test_structural_errors_not_retried(self):
        retry = RetryPolicy(max_attempts=5).start()
        assert not retry.advance(ApplyRejected("invalid"))
        assert retry.attempt == 1

    def test_deadline_stops_retrying(self):
        now = [0.0]
        policy = RetryPolicy(max_attempts=10, base_delay_seconds=4.0, deadline_seconds=5.0)
        retry = policy.start(clock=lambda: now[0])
        assert retry.advance(ApplyConflict("stale"))
        now[0] = 4.0
        assert not retry.advance(ApplyConflict("stale"))


class TestApplier:
    def test_applies_in_dependency_order(self):
        cluster = InMemoryCluster()
        result = _make_applier(cluster).apply(_create_delta(_manifests()))

        assert result.status == SyncStatus.SUCCEEDED
        order = [key.kind for action, key in cluster.operations]
        assert order == ["Namespace", "ResourceQuota", "Deployment", "Service", "HorizontalPodAutoscaler"]

    def test_conflict_rereads_and_retries(self):
        """An out-of-band edit between diff and apply is retried with the fresh version."""
        cluster = InMemoryCluster()
        _make_applier(cluster).apply(_create_delta(_manifests()))

        desired = DesiredState(environment="staging", revision="r2", resources=_manifests(replicas=5))
        live = LiveState(environment="staging", resources={k: cluster.get(k) for k in desired.resources})
        delta = diff(desired, live)
        assert [op.key for op in delta.operations] == [DEPLOYMENT_KEY]

        cluster.external_edit(DEPLOYMENT_KEY, lambda obj: obj["metadata"].setdefault("annotations", {}).update(owner="ops"))
        sleeps = []
        result = _make_applier(cluster, sleep=sleeps.append).apply(delta)

        assert result.status == SyncStatus.SUCCEEDED
        assert result.applied[0].attempts == 2
        assert sleeps == [1.0]
        assert cluster.get(DEPLOYMENT_KEY).manifest["spec"]["replicas"] == 5

    def test_create_conflict_becomes_update(self):
        cluster = InMemoryCluster()
        delta = _create_delta(_manifests())
        cluster.create(_manifests()[NAMESPACE_KEY])

        result = _make_applier(cluster).apply(delta)
        assert result.status == SyncStatus.SUCCEEDED
        assert ("update", NAMESPACE_KEY) in cluster.operations

    def test_failed_reread_after_conflict_is_recorded(self):
        cluster = InMemoryCluster()
        cluster.inject_fault("create", ApplyConflict("already exists"), key=NAMESPACE_KEY)
        cluster.inject_fault("get", ApplyRejected("forbidden"), key=NAMESPACE_KEY)

        result = _make_applier(cluster).apply(_create_delta(_manifests()))

        assert result.status == SyncStatus.FAILED
        assert result.failed[0].key == str(NAMESPACE_KEY)
        assert result.failed[0].error_type == "ApplyRejected"
        assert len(result.skipped) == 4

    def test_rejected_operation_stops_later_batches(self):
        cluster = InMemoryCluster()
        result = _make_applier(cluster).apply(_create_delta(_manifests(image="")))

        assert result.status == SyncStatus.PARTIAL
        assert result.rejected
        assert [o.key for o in result.applied] == [str(NAMESPACE_KEY), str(QUOTA_KEY)]
        assert result.failed[0].key == str(DEPLOYMENT_KEY)
        assert result.failed[0].error_type == "ApplyRejected"
        assert result.failed[0].attempts == 1
        assert result.skipped == [str(SERVICE_KEY), str(HPA_KEY)]
        assert DEPLOYMENT_KEY not in cluster.objects()

    def test_transient_failure_retried_then_surfaced(self):
        cluster = InMemoryCluster()
        cluster.inject_fault("create", ClusterUnreachable("connection refused"), times=10)
        sleeps = []
        result = _make_applier(cluster, max_attempts=3, sleep=sleeps.append).apply(
            _create_delta(_manifests())
        )

        assert result.status == SyncStatus.FAILED
        assert result.failed[0].key == str(NAMESPACE_KEY)
        assert result.failed[0].error_type == "ClusterUnreachable"
        assert result.failed[0].attempts == 3
        assert sleeps == [1.0, 2.0]
        assert len(result.skipped) == 4

    def test_transient_failure_recovers(self):
        cluster = InMemoryCluster()
        cluster.inject_fault("create", ClusterUnreachable("blip"), key=SERVICE_KEY, times=2)
        result = _make_applier(cluster, max_attempts=3).apply(_create_delta(_manifests()))

        assert result.status == SyncStatus.SUCCEEDED
        service = [o for o in result.applied if o.key == str(SERVICE_KEY)][0]
        assert service.attempts == 3

    def test_delete_of_missing_resource_succeeds(self):
        cluster = InMemoryCluster()
        delta = Delta(environment="staging", operations=[
            DeltaOperation(action=DeltaAction.DELETE, key=SERVICE_KEY, live_resource_version="3"),
        ])
        result = _make_applier(cluster).apply(delta)
        assert result.status == SyncStatus.SUCCEEDED

    def test_abort_leaves_applied_work(self):
        cancel = threading.Event()

        class AbortingCluster(InMemoryCluster):
            def create(self, manifest):
                live = super().create(manifest)
                if manifest["kind"] == "Namespace":
                    cancel.set()
                return live

        cluster = AbortingCluster()
        result = _make_applier(cluster).apply(_create_delta(_manifests()), cancel)

        assert result.aborted
        assert result.status == SyncStatus.PARTIAL
        assert [o.key for o in result.applied] == [str(NAMESPACE_KEY)]
        assert len(result.skipped) == 4
        assert NAMESPACE_KEY in cluster.objects()

    def test_slow_operation_times_out(self):
        class SlowCluster(InMemoryCluster):
            def create(self, manifest):
                time.sleep(0.5)
                return super().create(manifest)

        applier = _make_applier(SlowCluster(), max_attempts=1, operation_timeout=0.05)
        result = applier.apply(_create_delta({NAMESPACE_KEY: _manifests()[NAMESPACE_KEY]}))

        assert result.status == SyncStatus.FAILED
        assert result.failed[0].error_type == "ApplyTimeout"


@pytest.mark.parametrize("kind", ["ConfigMap", "Secret", "ServiceAccount"])
def test_config_kinds_precede_workloads(kind):
    assert tier_of(kind) < tier_of("Deployment")
