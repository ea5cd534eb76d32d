"""Tests for the Diff Engine."""

import copy

import pytest

from gitops_kernel.cluster.client import InMemoryCluster
from gitops_kernel.diff.engine import apply_delta, changed_fields, diff
from gitops_kernel.models.delta import DeltaAction
from gitops_kernel.models.resource import (
    ENVIRONMENT_LABEL,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    DesiredState,
    LiveResource,
    LiveState,
    ResourceKey,
)

NS = "hello-development"
DEPLOYMENT_KEY = ResourceKey(kind="Deployment", namespace=NS, name="hello")
SERVICE_KEY = ResourceKey(kind="Service", namespace=NS, name="hello")
CONFIG_KEY = ResourceKey(kind="ConfigMap", namespace=NS, name="settings")


def _labels() -> dict:
    return {MANAGED_BY_LABEL: MANAGED_BY_VALUE, ENVIRONMENT_LABEL: "development"}


def _deployment(replicas: int = 2, image: str = "hello:1.0") -> dict:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "hello", "namespace": NS, "labels": _labels()},
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": {"app": "hello"}},
            "template": {
                "metadata": {"labels": {"app": "hello"}},
                "spec": {"containers": [
                    {"name": "hello", "image": image},
                    {"name": "sidecar", "image": "proxy:1.0"},
                ]},
            },
        },
    }


def _service() -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": "hello", "namespace": NS, "labels": _labels()},
        "spec": {"type": "ClusterIP", "ports": [{"name": "http", "port": 80}]},
    }


def _config_map(labels: dict = None) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": "settings", "namespace": NS, "labels": labels or _labels()},
        "data": {"mode": "fast"},
    }


def _desired(resources: dict) -> DesiredState:
    return DesiredState(environment="development", revision="abc123", resources=resources)


def _live(manifests: dict) -> LiveState:
    return LiveState(environment="development", resources={
        key: LiveResource(
            key=key,
            manifest=manifest,
            resource_version=manifest.get("metadata", {}).get("resourceVersion", ""),
        )
        for key, manifest in manifests.items()
    })


def _server_view(manifest: dict, version: str = "7") -> dict:
    """What the API server would return for ``manifest``."""
    live = copy.deepcopy(manifest)
    live["metadata"].update({
        "uid": "0000-1111",
        "resourceVersion": version,
        "generation": 3,
        "creationTimestamp": "2026-01-01T00:00:00Z",
        "managedFields": [{"manager": "kubectl"}],
    })
    live["status"] = {"readyReplicas": 2}
    if manifest["kind"] == "Deployment":
        live["spec"]["revisionHistoryLimit"] = 10
        containers = live["spec"]["template"]["spec"]["containers"]
        for c in containers:
            c["imagePullPolicy"] = "IfNotPresent"
        containers.reverse()
    if manifest["kind"] == "Service":
        live["spec"]["clusterIP"] = "10.0.0.12"
        live["spec"]["ports"][0]["protocol"] = "TCP"
    return live


class TestDiff:
    def test_identical_states_produce_empty_delta(self):
        resources = {DEPLOYMENT_KEY: _deployment(), SERVICE_KEY: _service()}
        delta = diff(_desired(resources), _live(copy.deepcopy(resources)))
        assert delta.is_empty
        assert delta.orphans == []

    def test_server_fields_are_ignored(self):
        resources = {DEPLOYMENT_KEY: _deployment(), SERVICE_KEY: _service()}
        live = {key: _server_view(m) for key, m in resources.items()}
        assert diff(_desired(resources), _live(live)).is_empty

    def test_desired_only_is_create(self):
        delta = diff(_desired({DEPLOYMENT_KEY: _deployment()}), _live({}))
        assert [op.action for op in delta.operations] == [DeltaAction.CREATE]
        assert delta.operations[0].desired == _deployment()

    def test_changed_field_is_update_with_version(self):
        live = {DEPLOYMENT_KEY: _server_view(_deployment(replicas=7), version="42")}
        delta = diff(_desired({DEPLOYMENT_KEY: _deployment(replicas=2)}), _live(live))

        assert len(delta.operations) == 1
        op = delta.operations[0]
        assert op.action == DeltaAction.UPDATE
        assert op.live_resource_version == "42"
        assert op.changed_fields == ["spec.replicas"]

    def test_named_list_compared_by_name(self):
        live = {DEPLOYMENT_KEY: _server_view(_deployment(image="hello:0.9"))}
        delta = diff(_desired({DEPLOYMENT_KEY: _deployment(image="hello:1.0")}), _live(live))
        assert delta.operations[0].changed_fields == [
            "spec.template.spec.containers.[hello].image"
        ]

    def test_removed_container_is_a_change(self):
        desired = _deployment()
        live = copy.deepcopy(desired)
        live["spec"]["template"]["spec"]["containers"].pop()
        assert changed_fields(desired, live) == ["spec.template.spec.containers"]

    def test_managed_orphan_deleted_when_pruning(self):
        live = {DEPLOYMENT_KEY: _deployment(), CONFIG_KEY: _config_map()}
        delta = diff(_desired({DEPLOYMENT_KEY: _deployment()}), _live(live), prune=True)
        assert [(op.action, op.key) for op in delta.operations] == [
            (DeltaAction.DELETE, CONFIG_KEY)
        ]

    def test_managed_orphan_reported_without_prune(self):
        live = {DEPLOYMENT_KEY: _deployment(), CONFIG_KEY: _config_map()}
        delta = diff(_desired({DEPLOYMENT_KEY: _deployment()}), _live(live), prune=False)
        assert delta.is_empty
        assert delta.orphans == [CONFIG_KEY]

    def test_unmanaged_resource_never_deleted(self):
        foreign = _config_map(labels={"app": "someone-else"})
        delta = diff(_desired({}), _live({CONFIG_KEY: foreign}), prune=True)
        assert delta.is_empty
        assert delta.orphans == []

    def test_cross_environment_diff_rejected(self):
        other = LiveState(environment="production")
        with pytest.raises(ValueError):
            diff(_desired({}), other)

    def test_inputs_not_mutated(self):
        resources = {DEPLOYMENT_KEY: _deployment()}
        live_manifests = {DEPLOYMENT_KEY: _server_view(_deployment(replicas=5))}
        desired, live = _desired(resources), _live(live_manifests)
        before = (copy.deepcopy(desired.resources), copy.deepcopy(live.manifests()))
        diff(desired, live)
        assert (desired.resources, live.manifests()) == before

    def test_operations_in_stable_order(self):
        resources = {SERVICE_KEY: _service(), DEPLOYMENT_KEY: _deployment(), CONFIG_KEY: _config_map()}
        delta = diff(_desired(resources), _live({}))
        assert [op.key.kind for op in delta.operations] == ["ConfigMap", "Deployment", "Service"]


class TestConvergence:
    def test_apply_delta_converges(self):
        desired = _desired({DEPLOYMENT_KEY: _deployment(replicas=3), SERVICE_KEY: _service()})
        live = {
            DEPLOYMENT_KEY: _server_view(_deployment(replicas=9)),
            CONFIG_KEY: _config_map(),
        }
        delta = diff(desired, _live(live), prune=True)
        converged = apply_delta(live, delta)

        assert set(converged) == {DEPLOYMENT_KEY, SERVICE_KEY}
        assert diff(desired, _live(converged), prune=True).is_empty
        # fields only the server set survive the update
        assert converged[DEPLOYMENT_KEY]["metadata"]["uid"] == "0000-1111"

    def test_converges_against_cluster(self):
        cluster = InMemoryCluster()
        cluster.create({"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": NS}})
        desired = _desired({DEPLOYMENT_KEY: _deployment(), SERVICE_KEY: _service()})

        for op in diff(desired, _live({})).operations:
            cluster.create(op.desired)

        observed = LiveState(environment="development", resources={
            key: cluster.get(key) for key in desired.resources
        })
        assert diff(desired, observed).is_empty
