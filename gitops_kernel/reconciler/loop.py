"""
Reconciler Loop — the heartbeat of the kernel.

One reconciliation pass per environment:
  observe (Git + cluster) -> diff -> decide -> apply -> poll health

Environments reconcile concurrently and independently; a failure in one
is recorded against that environment only. Within an environment, passes
are serialized by the Sync Scheduler.
"""

import asyncio
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from gitops_kernel.applier.applier import Applier
from gitops_kernel.applier.retry import RetryPolicy
from gitops_kernel.cluster.client import ClusterClient
from gitops_kernel.diff.engine import diff
from gitops_kernel.errors import GitOpsError
from gitops_kernel.health.evaluator import HealthEvaluator, health_error
from gitops_kernel.history.store import SyncHistoryStore
from gitops_kernel.models.delta import Delta, DeltaAction
from gitops_kernel.models.environment import Environment
from gitops_kernel.models.health import EnvironmentHealth, HealthState
from gitops_kernel.models.reconciler import ReconcilerConfig
from gitops_kernel.models.resource import DesiredState
from gitops_kernel.models.sync import (
    ApplyResult,
    SchedulerState,
    SyncOperation,
    SyncStatus,
    SyncTrigger,
)
from gitops_kernel.notifications.sink import (
    LoggingSink,
    Notification,
    NotificationEvent,
    NotificationSink,
)
from gitops_kernel.observer.live_state import LiveStateObserver
from gitops_kernel.scheduler.sync_scheduler import SyncScheduler
from gitops_kernel.source.git_source import ManifestSource

logger = logging.getLogger(__name__)


def _retry_policy(config: ReconcilerConfig) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.max_retry_budget,
        base_delay_seconds=config.backoff_base_seconds,
        max_delay_seconds=config.backoff_max_seconds,
    )


class ReconcilerLoop:
    """
    Drives reconciliation passes for every registered environment.

    ``sleep`` and ``clock`` are injectable so retries and health polling
    can be driven deterministically.
    """

    def __init__(
        self,
        environments: List[Environment],
        source: ManifestSource,
        cluster: ClusterClient,
        history: Optional[SyncHistoryStore] = None,
        notifier: Optional[NotificationSink] = None,
        config: Optional[ReconcilerConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or ReconcilerConfig()
        self.source = source
        self.cluster = cluster
        self.history = history or SyncHistoryStore()
        self.notifier = notifier or LoggingSink()
        self.scheduler = SyncScheduler(environments, self.config)

        retry_policy = _retry_policy(self.config)
        self.observer = LiveStateObserver(
            cluster,
            timeout_seconds=self.config.live_state_timeout_seconds,
            retry_policy=retry_policy,
            sleep=sleep,
        )
        self.applier = Applier(
            cluster,
            retry_policy=retry_policy,
            max_workers=self.config.max_apply_workers,
            operation_timeout=self.config.apply_timeout_seconds,
            sleep=sleep,
        )
        self.health = HealthEvaluator(
            cluster,
            timeout_seconds=self.config.health_timeout_seconds,
            poll_interval_seconds=self.config.health_poll_interval_seconds,
            clock=clock,
            sleep=sleep,
        )
        self._running = False

    @property
    def status(self) -> str:
        """Current reconciler status."""
        return "running" if self._running else "stopped"

    def update_config(self, config: ReconcilerConfig) -> None:
        """
        Swap in new settings. Timeouts, retry budget and worker counts
        apply to operations started after the update.
        """
        self.config = config
        self.scheduler.config = config
        retry_policy = _retry_policy(config)
        self.observer.timeout_seconds = config.live_state_timeout_seconds
        self.observer.retry_policy = retry_policy
        self.applier.reconfigure(
            retry_policy,
            max_workers=config.max_apply_workers,
            operation_timeout=config.apply_timeout_seconds,
        )
        self.health.timeout_seconds = config.health_timeout_seconds
        self.health.poll_interval_seconds = config.health_poll_interval_seconds
        logger.info("Reconciler configuration updated")

    # --- Notifications ---

    def _notify(self, event: NotificationEvent, environment: str, **payload) -> None:
        self.notifier.emit(Notification(
            event=event,
            environment=environment,
            payload=payload,
            emitted_at=datetime.utcnow(),
        ))

    def _set_health(self, name: str, health: EnvironmentHealth) -> None:
        """Store a fresh observation, notifying when the rollup changes."""
        previous = self.scheduler.record(name).health
        self.scheduler.update_record(name, health=health)
        if previous is None or previous.state != health.state:
            self._notify(
                NotificationEvent.HEALTH_CHANGED,
                name,
                previous=previous.state.value if previous else None,
                current=health.state.value,
                message=health.message,
            )

    # --- Operator commands ---

    def trigger_sync(self, name: str) -> dict:
        """Explicit sync: the next pass applies regardless of policy."""
        self.scheduler.trigger_sync(name)
        return self.reconcile_environment(name)

    def abort_sync(self, name: str) -> bool:
        return self.scheduler.abort_sync(name)

    def get_status(self, name: str) -> dict:
        env = self.scheduler.environment(name)
        record = self.scheduler.record(name)
        last = self.history.latest(name)
        return {
            "environment": env.model_dump(mode="json"),
            "state": record.state.value,
            "last_decision": record.last_decision.value if record.last_decision else None,
            "pending_reason": record.pending_reason,
            "sync_requested": self.scheduler.manual_requested(name),
            "last_seen_revision": record.last_seen_revision,
            "last_applied_revision": record.last_applied_revision,
            "last_pass_at": record.last_pass_at.isoformat() if record.last_pass_at else None,
            "health": record.health.model_dump(mode="json") if record.health else None,
            "last_sync": last.model_dump(mode="json") if last else None,
            "circuit_broken": record.circuit_broken,
        }

    def preview(self, name: str) -> Delta:
        """Compute the current delta for an environment without applying it."""
        env = self.scheduler.environment(name)
        desired = self.source.fetch(env)
        live = self.observer.snapshot(env, desired.resources.keys())
        return diff(desired, live, prune=env.prune)

    # --- Reconciliation ---

    def reconcile_once(self) -> List[dict]:
        """Run one pass for every environment, concurrently."""
        names = [env.name for env in self.scheduler.environments()]
        if not names:
            return []
        workers = min(self.config.max_environment_workers, len(names))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reconcile") as pool:
            futures = [pool.submit(self.reconcile_environment, name) for name in names]
            results = []
            for name, future in zip(names, futures):
                try:
                    results.append(future.result())
                except Exception as e:
                    logger.exception("%s: reconciliation pass crashed", name)
                    results.append({
                        "environment": name,
                        "decision": "error",
                        "error": str(e),
                        "error_type": type(e).__name__,
                    })
            return results

    def reconcile_environment(self, name: str) -> dict:
        """
        Run a pass for one environment. If another pass holds the
        environment, this one is queued and the holder re-runs it once
        its own pass is done; the holder returns its first pass's result.
        """
        with self.scheduler.pass_slot(name) as acquired:
            if not acquired:
                return {"environment": name, "decision": "queued"}
            result = self._run_pass(name)
            while self.scheduler.take_queued(name):
                logger.info("%s: re-running queued pass", name)
                self._run_pass(name)
            return result

    def _trigger_for(self, name: str, desired: DesiredState) -> SyncTrigger:
        if self.scheduler.manual_requested(name):
            return SyncTrigger.MANUAL
        record = self.scheduler.record(name)
        if desired.revision != record.last_applied_revision:
            return SyncTrigger.NEW_REVISION
        return SyncTrigger.DRIFT

    def _run_pass(self, name: str) -> dict:
        env = self.scheduler.environment(name)
        self.scheduler.transition(name, SchedulerState.DIFFING)
        self.scheduler.update_record(name, last_pass_at=datetime.utcnow())
        try:
            return self._diff_and_decide(env)
        finally:
            self.scheduler.transition(name, SchedulerState.IDLE)

    def _diff_and_decide(self, env: Environment) -> dict:
        name = env.name
        try:
            desired = self.source.fetch(env)
            live = self.observer.snapshot(env, desired.resources.keys())
        except GitOpsError as e:
            logger.error("%s: reconciliation failed: %s", name, e)
            self._notify(
                NotificationEvent.RECONCILE_FAILED, name,
                error=str(e), error_type=type(e).__name__,
            )
            return {
                "environment": name,
                "decision": "error",
                "error": str(e),
                "error_type": type(e).__name__,
            }

        delta = diff(desired, live, prune=env.prune)
        trigger = self._trigger_for(name, desired)
        decision = self.scheduler.decide(name, delta, trigger)
        self.scheduler.update_record(name, last_seen_revision=desired.revision)

        result = {
            "environment": name,
            "revision": desired.revision,
            "decision": decision.value,
            "trigger": trigger.value,
            "delta": delta.summary(),
            "orphans": [str(k) for k in delta.orphans],
        }

        if decision == SchedulerState.APPLYING:
            operation = self._sync(env, desired, delta, trigger)
            result["sync_id"] = operation.id
            result["status"] = operation.status.value
            result["health"] = operation.health.value if operation.health else None
        else:
            if decision == SchedulerState.NO_OP:
                self.scheduler.update_record(name, last_applied_revision=desired.revision)
            else:
                self._notify(
                    NotificationEvent.PENDING_APPROVAL, name,
                    revision=desired.revision,
                    trigger=trigger.value,
                    delta=delta.summary(),
                    reason=self.scheduler.record(name).pending_reason,
                    changes={
                        str(op.key): op.changed_fields or [op.action.value]
                        for op in delta.operations
                    },
                )
            if desired.resources:
                health = self.health.check(env, desired.resources.keys())
                self._set_health(name, health)
                result["health"] = health.state.value
        return result

    def _sync(
        self,
        env: Environment,
        desired: DesiredState,
        delta: Delta,
        trigger: SyncTrigger,
    ) -> SyncOperation:
        """Apply a delta and poll health, recording a SyncOperation."""
        cancel = self.scheduler.begin_apply(env.name)
        operation = SyncOperation(
            id=f"sync_{uuid4().hex[:12]}",
            environment=env.name,
            revision=desired.revision,
            policy=env.sync_policy,
            trigger=trigger,
            cause=f"{trigger.value}: {delta.summary()}",
            started_at=datetime.utcnow(),
        )
        self.history.save(operation)
        self.scheduler.update_record(env.name, last_sync_id=operation.id)
        logger.info(
            "%s: syncing revision %s (%s, %s)",
            env.name, desired.revision[:12], trigger.value, delta.summary(),
        )
        self._notify(
            NotificationEvent.SYNC_STARTED, env.name,
            sync_id=operation.id, revision=desired.revision, trigger=trigger.value,
        )

        health: Optional[EnvironmentHealth] = None
        try:
            result = self.applier.apply(delta, cancel)
            health = self._settle(env, desired, delta, operation, result, cancel)
        except GitOpsError as e:
            logger.error("%s: sync %s interrupted: %s", env.name, operation.id, e)
            operation.status = SyncStatus.PARTIAL if operation.applied else SyncStatus.FAILED
            operation.cause = f"{type(e).__name__}: {e}"
            self.scheduler.record_outcome(env.name, success=False)
        finally:
            if not operation.terminal:
                operation.status = SyncStatus.FAILED
                operation.cause = f"Sync interrupted by an internal error ({operation.cause})"
            operation.health = health.state if health else None
            operation.finished_at = datetime.utcnow()
            self.history.save(operation)

        log = logger.info if operation.status == SyncStatus.SUCCEEDED else logger.warning
        log("%s: sync %s %s: %s", env.name, operation.id, operation.status.value, operation.cause)
        self._notify(
            NotificationEvent.SYNC_FINISHED, env.name,
            sync_id=operation.id,
            status=operation.status.value,
            cause=operation.cause,
            health=operation.health.value if operation.health else None,
        )
        return operation

    def _settle(
        self,
        env: Environment,
        desired: DesiredState,
        delta: Delta,
        operation: SyncOperation,
        result: ApplyResult,
        cancel: threading.Event,
    ) -> Optional[EnvironmentHealth]:
        """Record the apply outcome on ``operation`` and observe health."""
        operation.applied = [o.key for o in result.applied]
        operation.failed = [o.key for o in result.failed]
        operation.skipped = list(result.skipped)

        applied = set(operation.applied)
        applied_keys = [
            op.key for op in delta.operations
            if op.action != DeltaAction.DELETE and str(op.key) in applied
        ]

        if not result.success:
            if result.aborted:
                operation.cause = (
                    f"Aborted by operator after {len(result.applied)} operation(s); "
                    f"{len(result.skipped)} not executed"
                )
            else:
                first = result.failed[0]
                operation.cause = (
                    f"{first.error_type} on {first.key}: {first.error}; "
                    f"{len(result.applied)} applied, {len(result.skipped)} not executed"
                )
                self.scheduler.record_outcome(env.name, success=False)
            operation.status = result.status
            health = None
            if applied_keys:
                health = self.health.check(env, applied_keys)
                self._set_health(env.name, health)
            return health

        health = self.health.poll(
            env, applied_keys,
            on_change=lambda h: self._set_health(env.name, h),
            cancel=cancel,
        )
        self.scheduler.update_record(env.name, last_applied_revision=desired.revision)
        if cancel.is_set():
            operation.status = SyncStatus.PARTIAL
            operation.cause = (
                f"Aborted by operator during health checks after "
                f"{len(result.applied)} operation(s); health {health.state.value}"
            )
            return health

        operation.status = SyncStatus.SUCCEEDED
        operation.cause = f"Synced to {desired.revision[:12]} ({delta.summary()})"
        error = health_error(health)
        if error is not None:
            operation.cause += f"; {type(error).__name__}: {error}"
        elif health.state != HealthState.HEALTHY:
            operation.cause += f"; health {health.state.value}: {health.message}"
        self.scheduler.record_outcome(env.name, success=True)
        return health

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run the reconciler loop asynchronously."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                await asyncio.to_thread(self.reconcile_once)
                try:
                    await asyncio.wait_for(
                        stop_event.wait(),
                        timeout=self.config.heartbeat_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    continue
        finally:
            self._running = False

    def environments(self) -> Dict[str, Environment]:
        return {env.name: env for env in self.scheduler.environments()}
