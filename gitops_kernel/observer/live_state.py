"""
Live-State Observer — snapshots what is running for one environment.

Behavioral Contract:
- Returns the full mapping ResourceKey -> LiveResource, or raises; never partial
- Scope is the environment namespace (plus the Namespace object itself)
- Only resources carrying the environment's tracking label, or named in the
  desired state, are included, so environments never leak into each other
- Transient unreachability is retried with backoff, then ClusterUnreachable
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime
from typing import Callable, Iterable, Optional

from gitops_kernel.applier.retry import RetryPolicy
from gitops_kernel.cluster.client import KIND_API_VERSIONS, ClusterClient
from gitops_kernel.errors import ClusterUnreachable
from gitops_kernel.models.environment import Environment
from gitops_kernel.models.resource import ENVIRONMENT_LABEL, LiveState, ResourceKey

logger = logging.getLogger(__name__)


class LiveStateObserver:
    """Reads live state through a ClusterClient under a timeout."""

    def __init__(
        self,
        cluster: ClusterClient,
        timeout_seconds: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cluster = cluster
        self.timeout_seconds = timeout_seconds
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3)
        self._sleep = sleep
        self._pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="observer")

    def _list(self, namespace: str, kinds: list):
        future = self._pool.submit(self.cluster.list, namespace, kinds)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeout as e:
            future.cancel()
            raise ClusterUnreachable(
                f"Listing {namespace} timed out after {self.timeout_seconds}s"
            ) from e

    def snapshot(
        self,
        environment: Environment,
        extra_keys: Iterable[ResourceKey] = (),
    ) -> LiveState:
        """
        Snapshot the environment. ``extra_keys`` (typically the desired
        identities) are included even when they lack the tracking label.
        """
        wanted = set(extra_keys)
        kinds = sorted(set(KIND_API_VERSIONS) | {k.kind for k in wanted})

        retry = self.retry_policy.start()
        while True:
            try:
                items = self._list(environment.namespace, kinds)
                break
            except ClusterUnreachable as e:
                if not retry.advance(e):
                    logger.warning(
                        "Live state for %s unavailable after %d attempts: %s",
                        environment.name, retry.attempt, e,
                    )
                    raise
                logger.warning(
                    "Live state for %s unavailable (attempt %d), retrying in %.1fs",
                    environment.name, retry.attempt, retry.delay,
                )
                self._sleep(retry.delay)

        resources = {}
        for item in items:
            tracked = item.labels.get(ENVIRONMENT_LABEL) == environment.name
            if tracked or item.key in wanted:
                resources[item.key] = item

        logger.debug(
            "Observed %d resources for %s", len(resources), environment.name
        )
        return LiveState(
            environment=environment.name,
            resources=resources,
            observed_at=datetime.utcnow(),
        )
