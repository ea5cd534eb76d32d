"""
Applier — issues create/update/delete operations against the cluster.

Behavioral Contract:
- Applies a Delta in dependency order: namespaces and config, then
  workloads, then network-facing resources, then autoscalers and
  disruption budgets; deletes run last, in reverse order
- A batch starts only after every operation of the previous batch succeeded
- Independent operations within a batch run concurrently
- Every update carries the resource version it was computed against;
  conflicts re-read the object and retry with the fresh version
- Transient failures are retried with bounded exponential backoff;
  ApplyRejected stops the remaining operations and the result is partial
- An abort stops before the next operation; applied work is left in place
"""

import copy
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, List, Optional

from gitops_kernel.applier.ordering import plan_tiers
from gitops_kernel.applier.retry import RetryPolicy
from gitops_kernel.cluster.client import ClusterClient
from gitops_kernel.errors import (
    ApplyConflict,
    ApplyRejected,
    ApplyTimeout,
    GitOpsError,
    ResourceNotFound,
)
from gitops_kernel.models.delta import Delta, DeltaAction, DeltaOperation
from gitops_kernel.models.sync import ApplyResult, OperationOutcome

logger = logging.getLogger(__name__)


class Applier:
    """Applies deltas through a ClusterClient."""

    def __init__(
        self,
        cluster: ClusterClient,
        retry_policy: Optional[RetryPolicy] = None,
        max_workers: int = 4,
        operation_timeout: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cluster = cluster
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_workers = max_workers
        self.operation_timeout = operation_timeout
        self._sleep = sleep
        self._io_pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="apply-io"
        )

    def apply(
        self, delta: Delta, cancel: Optional[threading.Event] = None
    ) -> ApplyResult:
        """Apply every operation in ``delta``; never raises for apply failures."""
        result = ApplyResult()
        batches = plan_tiers(delta.operations)
        stopped = False

        for batch in batches:
            if stopped or (cancel is not None and cancel.is_set()):
                result.skipped.extend(str(op.key) for op in batch)
                continue

            logger.debug(
                "Applying batch of %d for %s: %s",
                len(batch), delta.environment, ", ".join(str(op.key) for op in batch),
            )
            halt = threading.Event()
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                futures = [
                    pool.submit(self._apply_one, op, halt, cancel) for op in batch
                ]
                outcomes = [f.result() for f in futures]

            for op, outcome in zip(batch, outcomes):
                if outcome is None:
                    result.skipped.append(str(op.key))
                elif outcome.success:
                    result.applied.append(outcome)
                else:
                    result.failed.append(outcome)
                    if outcome.error_type == ApplyRejected.__name__:
                        result.rejected = True

            if result.failed or halt.is_set():
                stopped = True

        if cancel is not None and cancel.is_set() and (result.skipped or not batches):
            result.aborted = True

        logger.info(
            "Applied %s: %d applied, %d failed, %d skipped%s",
            delta.environment, len(result.applied), len(result.failed),
            len(result.skipped), " (aborted)" if result.aborted else "",
        )
        return result

    def reconfigure(
        self, retry_policy: RetryPolicy, max_workers: int, operation_timeout: float
    ) -> None:
        self.retry_policy = retry_policy
        self.operation_timeout = operation_timeout
        if max_workers != self.max_workers:
            previous = self._io_pool
            self._io_pool = ThreadPoolExecutor(
                max_workers=max_workers, thread_name_prefix="apply-io"
            )
            self.max_workers = max_workers
            previous.shutdown(wait=False)

    def _call(self, fn: Callable, *args):
        """Run one cluster call under the per-operation timeout."""
        future = self._io_pool.submit(fn, *args)
        try:
            return future.result(timeout=self.operation_timeout)
        except FutureTimeout as e:
            future.cancel()
            raise ApplyTimeout(
                f"Operation timed out after {self.operation_timeout}s"
            ) from e

    def _execute(self, action: DeltaAction, op: DeltaOperation, resource_version: str) -> None:
        if action == DeltaAction.CREATE:
            self._call(self.cluster.create, copy.deepcopy(op.desired))
        elif action == DeltaAction.UPDATE:
            self._call(self.cluster.update, copy.deepcopy(op.desired), resource_version)
        else:
            self._call(self.cluster.delete, op.key, resource_version)

    def _refresh_version(self, op: DeltaOperation) -> Optional[str]:
        """Re-read the object; None when it no longer exists."""
        try:
            return self._call(self.cluster.get, op.key).resource_version
        except ResourceNotFound:
            return None

    def _apply_one(
        self,
        op: DeltaOperation,
        halt: threading.Event,
        cancel: Optional[threading.Event],
    ) -> Optional[OperationOutcome]:
        """Apply a single operation with retry. Returns None if never started."""
        if halt.is_set() or (cancel is not None and cancel.is_set()):
            return None

        start = time.monotonic()
        action = op.action
        resource_version = op.live_resource_version
        retry = self.retry_policy.start()

        while True:
            try:
                self._execute(action, op, resource_version)
                logger.debug("%s %s (attempt %d)", action.value, op.key, retry.attempt)
                return OperationOutcome(
                    key=str(op.key),
                    action=op.action.value,
                    success=True,
                    attempts=retry.attempt,
                    duration=round(time.monotonic() - start, 3),
                )
            except ResourceNotFound as e:
                if action == DeltaAction.DELETE:
                    # Already gone
                    return OperationOutcome(
                        key=str(op.key),
                        action=op.action.value,
                        success=True,
                        attempts=retry.attempt,
                        duration=round(time.monotonic() - start, 3),
                    )
                if action == DeltaAction.UPDATE and retry.advance(
                    ApplyConflict(str(e), key=op.key)
                ):
                    action = DeltaAction.CREATE
                    continue
                error: GitOpsError = e
            except ApplyConflict as e:
                error = e
                if retry.advance(e):
                    try:
                        refreshed = self._refresh_version(op)
                    except GitOpsError as refresh_error:
                        error = refresh_error
                    else:
                        if refreshed is None:
                            if action == DeltaAction.DELETE:
                                continue
                            action = DeltaAction.CREATE
                            resource_version = ""
                        else:
                            if action == DeltaAction.CREATE:
                                action = DeltaAction.UPDATE
                            resource_version = refreshed
                        logger.warning(
                            "Conflict on %s, retrying in %.1fs with version %s",
                            op.key, retry.delay, resource_version or "<new>",
                        )
                        self._sleep(retry.delay)
                        continue
            except GitOpsError as e:
                if retry.advance(e):
                    logger.warning(
                        "%s on %s (attempt %d), retrying in %.1fs",
                        type(e).__name__, op.key, retry.attempt - 1, retry.delay,
                    )
                    self._sleep(retry.delay)
                    continue
                error = e

            if isinstance(error, ApplyRejected):
                halt.set()
            logger.warning(
                "Failed to %s %s after %d attempt(s): %s",
                op.action.value, op.key, retry.attempt, error,
            )
            return OperationOutcome(
                key=str(op.key),
                action=op.action.value,
                success=False,
                attempts=retry.attempt,
                error=str(error),
                error_type=type(error).__name__,
                duration=round(time.monotonic() - start, 3),
            )
