"""Tests for the Live-State Observer."""

import time

import pytest

from gitops_kernel.applier.retry import RetryPolicy
from gitops_kernel.cluster.client import InMemoryCluster
from gitops_kernel.errors import ClusterUnreachable
from gitops_kernel.models.environment import Environment
from gitops_kernel.models.resource import (
    ENVIRONMENT_LABEL,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    ResourceKey,
)
from gitops_kernel.observer.live_state import LiveStateObserver

NS = "hello-development"


def _config_map(name: str, environment: str = None) -> dict:
    labels = {}
    if environment:
        labels = {MANAGED_BY_LABEL: MANAGED_BY_VALUE, ENVIRONMENT_LABEL: environment}
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": NS, "labels": labels},
        "data": {"mode": "fast"},
    }


@pytest.fixture
def cluster():
    cluster = InMemoryCluster()
    cluster.create({"apiVersion": "v1", "kind": "Namespace", "metadata": {
        "name": NS, "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE, ENVIRONMENT_LABEL: "development"},
    }})
    cluster.create(_config_map("ours", "development"))
    cluster.create(_config_map("theirs", "staging"))
    cluster.create(_config_map("unlabelled"))
    return cluster


def _environment() -> Environment:
    return Environment(name="development", namespace=NS)


class TestSnapshot:
    def test_only_tracked_resources(self, cluster):
        live = LiveStateObserver(cluster).snapshot(_environment())
        assert sorted(str(k) for k in live.resources) == [
            "ConfigMap/hello-development/ours",
            f"Namespace/{NS}",
        ]
        assert live.environment == "development"

    def test_desired_identities_included_without_label(self, cluster):
        wanted = ResourceKey(kind="ConfigMap", namespace=NS, name="unlabelled")
        live = LiveStateObserver(cluster).snapshot(_environment(), [wanted])
        assert wanted in live.resources
        assert not live.resources[wanted].managed

    def test_transient_outage_retried(self, cluster):
        cluster.inject_fault("list", ClusterUnreachable("blip"), times=1)
        sleeps = []
        observer = LiveStateObserver(
            cluster, retry_policy=RetryPolicy(max_attempts=3, base_delay_seconds=2.0), sleep=sleeps.append,
        )
        live = observer.snapshot(_environment())
        assert len(live.resources) == 2
        assert sleeps == [2.0]

    def test_outage_surfaces_after_budget(self, cluster):
        cluster.unreachable = True
        sleeps = []
        observer = LiveStateObserver(
            cluster, retry_policy=RetryPolicy(max_attempts=2, base_delay_seconds=1.0), sleep=sleeps.append,
        )
        with pytest.raises(ClusterUnreachable):
            observer.snapshot(_environment())
        assert sleeps == [1.0]

    def test_slow_listing_times_out(self, cluster):
        class SlowCluster(InMemoryCluster):
            def list(self, namespace, kinds):
                time.sleep(0.5)
                return []

        observer = LiveStateObserver(
            SlowCluster(), timeout_seconds=0.05, retry_policy=RetryPolicy(max_attempts=1),
        )
        with pytest.raises(ClusterUnreachable):
            observer.snapshot(_environment())
