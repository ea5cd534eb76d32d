"""
Sync Scheduler — per-environment state machine and sync decisions.

States:
  Idle -> Diffing -> (NoOp | PendingApproval | Applying) -> Idle

Behavioral Contract:
- The sync policy is dispatched once per pass:
    auto-self-heal     any delta -> Applying
    auto-no-self-heal  new revision -> Applying; drift only -> PendingApproval
    manual             any delta -> PendingApproval until trigger_sync()
- Sync windows and failure dampening can hold an automatic decision at
  PendingApproval; an explicit trigger bypasses dampening
- At most one pass per environment; a pass arriving while another holds
  the environment is queued and re-run when the holder finishes
- abort_sync() cancels an in-flight apply; applied work stays in place
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, List, Optional

from gitops_kernel.errors import UnknownEnvironment
from gitops_kernel.models.delta import Delta
from gitops_kernel.models.environment import Environment, SyncPolicy, SyncWindowKind
from gitops_kernel.models.reconciler import EnvironmentRecord, ReconcilerConfig
from gitops_kernel.models.sync import SchedulerState, SyncTrigger

logger = logging.getLogger(__name__)


def windows_allow(environment: Environment, current_time: datetime, manual: bool) -> bool:
    """Whether the environment's sync windows permit a sync right now."""
    windows = environment.sync_windows
    for window in windows:
        if window.kind == SyncWindowKind.DENY and window.is_active(current_time):
            if not (manual and window.manual_sync):
                return False

    allow = [w for w in windows if w.kind == SyncWindowKind.ALLOW]
    if not allow:
        return True
    if any(w.is_active(current_time) for w in allow):
        return True
    return manual and any(w.manual_sync for w in allow)


def _auto_self_heal(trigger: SyncTrigger) -> SchedulerState:
    return SchedulerState.APPLYING


def _auto_no_self_heal(trigger: SyncTrigger) -> SchedulerState:
    if trigger == SyncTrigger.NEW_REVISION:
        return SchedulerState.APPLYING
    return SchedulerState.PENDING_APPROVAL


def _manual_only(trigger: SyncTrigger) -> SchedulerState:
    return SchedulerState.PENDING_APPROVAL


POLICY_DECISIONS: Dict[SyncPolicy, Callable[[SyncTrigger], SchedulerState]] = {
    SyncPolicy.AUTO_SELF_HEAL: _auto_self_heal,
    SyncPolicy.AUTO_NO_SELF_HEAL: _auto_no_self_heal,
    SyncPolicy.MANUAL: _manual_only,
}


class SyncScheduler:
    """Owns environment records, pass serialization and sync decisions."""

    def __init__(
        self,
        environments: List[Environment],
        config: Optional[ReconcilerConfig] = None,
    ):
        self.config = config or ReconcilerConfig()
        self._guard = threading.RLock()
        self._environments: Dict[str, Environment] = {}
        self._records: Dict[str, EnvironmentRecord] = {}
        self._pass_locks: Dict[str, threading.Lock] = {}
        self._cancel: Dict[str, threading.Event] = {}
        self._manual_requests: Dict[str, bool] = {}
        self._transitions: Dict[str, List[SchedulerState]] = {}
        for env in environments:
            self.register(env)

    # --- Registry ---

    def register(self, environment: Environment) -> None:
        """Add an environment, or replace its definition (policy change)."""
        with self._guard:
            self._environments[environment.name] = environment
            if environment.name not in self._records:
                self._records[environment.name] = EnvironmentRecord(environment=environment.name)
                self._pass_locks[environment.name] = threading.Lock()
                self._cancel[environment.name] = threading.Event()
                self._manual_requests[environment.name] = False
                self._transitions[environment.name] = []

    def environment(self, name: str) -> Environment:
        with self._guard:
            env = self._environments.get(name)
        if env is None:
            raise UnknownEnvironment(f"Unknown environment {name!r}")
        return env

    def environments(self) -> List[Environment]:
        with self._guard:
            return list(self._environments.values())

    def record(self, name: str) -> EnvironmentRecord:
        """A copy of the environment's runtime record."""
        self.environment(name)
        with self._guard:
            return self._records[name].model_copy(deep=True)

    def update_record(self, name: str, **fields) -> None:
        with self._guard:
            record = self._records[name]
            for field, value in fields.items():
                setattr(record, field, value)

    def transitions(self, name: str) -> List[SchedulerState]:
        with self._guard:
            return list(self._transitions[name])

    # --- State machine ---

    def transition(self, name: str, state: SchedulerState, reason: Optional[str] = None) -> None:
        with self._guard:
            record = self._records[name]
            if record.state != state:
                logger.debug("%s: %s -> %s", name, record.state.value, state.value)
            record.state = state
            if state == SchedulerState.PENDING_APPROVAL:
                record.pending_reason = reason
            elif state in (SchedulerState.APPLYING, SchedulerState.NO_OP):
                record.pending_reason = None
            if state in (
                SchedulerState.NO_OP,
                SchedulerState.PENDING_APPROVAL,
                SchedulerState.APPLYING,
            ):
                record.last_decision = state
            self._transitions[name].append(state)

    @contextmanager
    def pass_slot(self, name: str) -> Iterator[bool]:
        """
        Hold the environment for one pass. Yields False (and queues a
        re-run) when another pass already holds it.
        """
        self.environment(name)
        lock = self._pass_locks[name]
        if not lock.acquire(blocking=False):
            with self._guard:
                self._records[name].queued = True
            logger.debug("%s: pass already in progress, queued", name)
            yield False
            return
        try:
            yield True
        finally:
            lock.release()

    def take_queued(self, name: str) -> bool:
        """Consume the queued flag set by passes that arrived meanwhile."""
        with self._guard:
            record = self._records[name]
            queued = record.queued
            record.queued = False
            return queued

    # --- Commands ---

    def trigger_sync(self, name: str) -> None:
        """Request an explicit sync on the next pass."""
        self.environment(name)
        with self._guard:
            self._manual_requests[name] = True
            record = self._records[name]
            record.circuit_broken = False
            record.consecutive_failures = 0
            record.cooldown_until = None
        logger.info("%s: sync requested", name)

    def manual_requested(self, name: str) -> bool:
        with self._guard:
            return self._manual_requests[name]

    def abort_sync(self, name: str) -> bool:
        """Cancel an in-flight apply. Returns False if nothing is applying."""
        self.environment(name)
        with self._guard:
            if self._records[name].state != SchedulerState.APPLYING:
                return False
            self._cancel[name].set()
        logger.info("%s: abort requested", name)
        return True

    def begin_apply(self, name: str) -> threading.Event:
        """Enter Applying; returns the cancel event for this apply."""
        with self._guard:
            event = threading.Event()
            self._cancel[name] = event
            self._manual_requests[name] = False
        self.transition(name, SchedulerState.APPLYING)
        return event

    # --- Decisions ---

    def decide(
        self,
        name: str,
        delta: Delta,
        trigger: SyncTrigger,
        current_time: Optional[datetime] = None,
    ) -> SchedulerState:
        """
        Choose NoOp, PendingApproval or Applying for a computed delta.
        Records the decision on the environment and returns it.
        """
        current_time = current_time or datetime.utcnow()
        env = self.environment(name)

        if delta.is_empty:
            with self._guard:
                self._manual_requests[name] = False
            self.transition(name, SchedulerState.NO_OP)
            return SchedulerState.NO_OP

        manual = self.manual_requested(name)
        if manual:
            if windows_allow(env, current_time, manual=True):
                return SchedulerState.APPLYING
            self.transition(name, SchedulerState.PENDING_APPROVAL, "Blocked by sync window")
            return SchedulerState.PENDING_APPROVAL

        decision = POLICY_DECISIONS[env.sync_policy](trigger)
        reason = None
        if decision == SchedulerState.PENDING_APPROVAL:
            reason = (
                "Manual sync policy"
                if env.sync_policy == SyncPolicy.MANUAL
                else "Drift detected; self-heal disabled"
            )
        elif not windows_allow(env, current_time, manual=False):
            decision, reason = SchedulerState.PENDING_APPROVAL, "Outside sync window"
        elif self._dampened(name, current_time):
            decision, reason = SchedulerState.PENDING_APPROVAL, "Automatic sync backing off after failures"

        if decision == SchedulerState.PENDING_APPROVAL:
            logger.info("%s: %s pending approval (%s)", name, delta.summary(), reason)
            self.transition(name, decision, reason)
        return decision

    def _dampened(self, name: str, current_time: datetime) -> bool:
        with self._guard:
            record = self._records[name]
            if record.circuit_broken:
                return True
            return bool(record.cooldown_until and current_time < record.cooldown_until)

    def record_outcome(self, name: str, success: bool, current_time: Optional[datetime] = None) -> None:
        """Update failure dampening after an apply finishes."""
        current_time = current_time or datetime.utcnow()
        with self._guard:
            record = self._records[name]
            if success:
                record.consecutive_failures = 0
                record.cooldown_until = None
                return
            record.consecutive_failures += 1
            if self.config.cooldown_seconds:
                record.cooldown_until = current_time + timedelta(
                    seconds=self.config.cooldown_seconds
                )
            if record.consecutive_failures >= self.config.circuit_breaker_threshold:
                record.circuit_broken = True
                logger.warning(
                    "%s: %d consecutive failed syncs, automatic sync suspended",
                    name, record.consecutive_failures,
                )
