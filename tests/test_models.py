"""Tests for the data models."""

from datetime import datetime

import pytest
from pydantic import ValidationError

from gitops_kernel.models.delta import Delta, DeltaAction, DeltaOperation
from gitops_kernel.models.environment import Environment, SyncPolicy, SyncWindow, SyncWindowKind
from gitops_kernel.models.health import EnvironmentHealth, HealthState, ResourceHealth, worst
from gitops_kernel.models.resource import (
    ENVIRONMENT_LABEL,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    LiveResource,
    ResourceKey,
)
from gitops_kernel.models.sync import ApplyResult, OperationOutcome, SyncStatus


class TestResourceKey:
    def test_from_manifest_uses_default_namespace(self):
        key = ResourceKey.from_manifest(
            {"kind": "Deployment", "metadata": {"name": "hello"}},
            default_namespace="hello-development",
        )
        assert key == ResourceKey(kind="Deployment", namespace="hello-development", name="hello")
        assert str(key) == "Deployment/hello-development/hello"

    def test_cluster_scoped_kind_has_no_namespace(self):
        key = ResourceKey.from_manifest(
            {"kind": "Namespace", "metadata": {"name": "hello-staging", "namespace": "x"}},
            default_namespace="hello-staging",
        )
        assert key.namespace == ""
        assert str(key) == "Namespace/hello-staging"

    def test_keys_are_hashable_and_immutable(self):
        a = ResourceKey(kind="Service", namespace="ns", name="hello")
        b = ResourceKey(kind="Service", namespace="ns", name="hello")
        assert {a: 1}[b] == 1
        with pytest.raises(ValidationError):
            a.name = "other"


class TestLiveResource:
    def test_managed_requires_ownership_label(self):
        key = ResourceKey(kind="ConfigMap", namespace="ns", name="cfg")
        owned = LiveResource(key=key, manifest={
            "metadata": {"labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE, ENVIRONMENT_LABEL: "dev"}},
        })
        foreign = LiveResource(key=key, manifest={"metadata": {"labels": {MANAGED_BY_LABEL: "helm"}}})
        bare = LiveResource(key=key, manifest={"metadata": {}})

        assert owned.managed
        assert not foreign.managed
        assert not bare.managed
        assert bare.labels == {}
        assert bare.status == {}


class TestDelta:
    def test_summary_and_grouping(self):
        key = ResourceKey(kind="Deployment", namespace="ns", name="hello")
        delta = Delta(environment="dev", operations=[
            DeltaOperation(action=DeltaAction.CREATE, key=key, desired={}),
            DeltaOperation(action=DeltaAction.DELETE, key=key),
            DeltaOperation(action=DeltaAction.DELETE, key=key),
        ])
        assert not delta.is_empty
        assert len(delta.by_action(DeltaAction.DELETE)) == 2
        assert delta.summary() == "1 create, 0 update, 2 delete"

    def test_empty_delta(self):
        assert Delta(environment="dev").is_empty


class TestHealthRollup:
    def test_worst_state_wins(self):
        assert worst([HealthState.HEALTHY, HealthState.PROGRESSING]) == HealthState.PROGRESSING
        assert worst([HealthState.UNKNOWN, HealthState.PROGRESSING]) == HealthState.UNKNOWN
        assert worst([HealthState.UNKNOWN, HealthState.DEGRADED]) == HealthState.DEGRADED
        assert worst([]) == HealthState.HEALTHY

    def test_environment_rollup(self):
        key = ResourceKey(kind="Deployment", namespace="ns", name="hello")
        health = EnvironmentHealth.rollup(
            "dev",
            [
                ResourceHealth(key=key, state=HealthState.HEALTHY),
                ResourceHealth(key=key, state=HealthState.DEGRADED, message="crash"),
            ],
            observed_at=datetime.utcnow(),
        )
        assert health.state == HealthState.DEGRADED


class TestSyncWindow:
    def test_window_open_after_schedule_fires(self):
        window = SyncWindow(schedule="0 22 * * *", duration_minutes=120)
        assert window.is_active(datetime(2026, 3, 10, 22, 0))
        assert window.is_active(datetime(2026, 3, 10, 23, 30))
        assert not window.is_active(datetime(2026, 3, 11, 0, 30))
        assert not window.is_active(datetime(2026, 3, 10, 12, 0))

    def test_invalid_cron_rejected(self):
        with pytest.raises(ValidationError):
            SyncWindow(kind=SyncWindowKind.DENY, schedule="not a cron", duration_minutes=10)

    def test_environment_defaults(self):
        env = Environment(name="dev", namespace="hello-dev")
        assert env.sync_policy == SyncPolicy.AUTO_SELF_HEAL
        assert env.prune is False
        assert env.revision == "main"


class TestApplyResult:
    def _outcome(self, success=True):
        return OperationOutcome(key="Deployment/ns/hello", action="create", success=success)

    def test_all_applied_is_succeeded(self):
        result = ApplyResult(applied=[self._outcome()])
        assert result.success
        assert result.status == SyncStatus.SUCCEEDED

    def test_some_applied_then_failure_is_partial(self):
        result = ApplyResult(
            applied=[self._outcome()],
            failed=[self._outcome(success=False)],
            skipped=["Service/ns/hello"],
        )
        assert result.status == SyncStatus.PARTIAL

    def test_nothing_applied_is_failed(self):
        result = ApplyResult(failed=[self._outcome(success=False)])
        assert result.status == SyncStatus.FAILED

    def test_abort_is_partial(self):
        result = ApplyResult(skipped=["Service/ns/hello"], aborted=True)
        assert result.status == SyncStatus.PARTIAL
