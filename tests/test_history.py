"""Tests for the Sync History Store."""

from datetime import datetime

import pytest

from gitops_kernel.history.store import SyncHistoryStore
from gitops_kernel.models.environment import SyncPolicy
from gitops_kernel.models.health import HealthState
from gitops_kernel.models.sync import SyncOperation, SyncStatus, SyncTrigger


def _make_operation(
    operation_id: str = "sync_1",
    environment: str = "development",
    status: SyncStatus = SyncStatus.RUNNING,
) -> SyncOperation:
    return SyncOperation(
        id=operation_id,
        environment=environment,
        revision="4f2c9a1e",
        policy=SyncPolicy.AUTO_SELF_HEAL,
        trigger=SyncTrigger.NEW_REVISION,
        status=status,
        started_at=datetime.utcnow(),
    )


@pytest.fixture
def store():
    store = SyncHistoryStore(db_path=":memory:")
    yield store
    store.close()


class TestSyncHistoryStore:
    def test_save_and_get(self, store):
        store.save(_make_operation())
        retrieved = store.get("sync_1")
        assert retrieved is not None
        assert retrieved.status == SyncStatus.RUNNING
        assert retrieved.trigger == SyncTrigger.NEW_REVISION

    def test_get_nonexistent(self, store):
        assert store.get("nope") is None

    def test_running_operation_finalized(self, store):
        operation = _make_operation()
        store.save(operation)

        operation.status = SyncStatus.SUCCEEDED
        operation.applied = ["Deployment/hello-development/hello"]
        operation.health = HealthState.HEALTHY
        operation.cause = "Synced to 4f2c9a1e"
        operation.finished_at = datetime.utcnow()
        store.save(operation)

        retrieved = store.get("sync_1")
        assert retrieved.terminal
        assert retrieved.applied == ["Deployment/hello-development/hello"]
        assert retrieved.health == HealthState.HEALTHY
        assert store.count() == 1

    def test_finalized_operation_is_immutable(self, store):
        operation = _make_operation(status=SyncStatus.FAILED)
        store.save(operation)
        operation.cause = "rewritten"
        with pytest.raises(ValueError):
            store.save(operation)
        assert store.get("sync_1").cause == ""

    def test_query_by_environment(self, store):
        for i in range(3):
            store.save(_make_operation(f"dev_{i}", "development", SyncStatus.SUCCEEDED))
        store.save(_make_operation("prod_0", "production", SyncStatus.PARTIAL))

        dev = store.query_by_environment("development")
        assert [op.id for op in dev] == ["dev_0", "dev_1", "dev_2"]
        assert [op.id for op in store.query_by_environment("development", limit=2)] == ["dev_1", "dev_2"]
        assert store.latest("development").id == "dev_2"
        assert store.latest("staging") is None

    def test_query_by_status(self, store):
        store.save(_make_operation("a", status=SyncStatus.SUCCEEDED))
        store.save(_make_operation("b", status=SyncStatus.PARTIAL))
        store.save(_make_operation("c", status=SyncStatus.PARTIAL))
        assert [op.id for op in store.query_by_status(SyncStatus.PARTIAL)] == ["b", "c"]

    def test_query_recent(self, store):
        for i in range(5):
            store.save(_make_operation(f"op_{i}", status=SyncStatus.SUCCEEDED))
        assert [op.id for op in store.query_recent(limit=2)] == ["op_3", "op_4"]

    def test_persists_across_instances(self, tmp_path):
        path = str(tmp_path / "history.db")
        first = SyncHistoryStore(path)
        first.save(_make_operation(status=SyncStatus.SUCCEEDED))
        first.close()

        second = SyncHistoryStore(path)
        assert second.get("sync_1").status == SyncStatus.SUCCEEDED
        second.close()
