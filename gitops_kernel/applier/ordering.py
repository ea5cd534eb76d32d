"""Dependency tiers for applying resources."""

from typing import Dict, List

from gitops_kernel.models.delta import DeltaAction, DeltaOperation

# Lower tiers are applied first
KIND_TIERS: Dict[str, int] = {
    # Namespaces, config and policy
    "Namespace": 0,
    "ResourceQuota": 0,
    "LimitRange": 0,
    "ServiceAccount": 0,
    "ConfigMap": 0,
    "Secret": 0,
    "Role": 0,
    "RoleBinding": 0,
    "ClusterRole": 0,
    "ClusterRoleBinding": 0,
    # Workloads
    "Deployment": 1,
    "StatefulSet": 1,
    "DaemonSet": 1,
    "Job": 1,
    "CronJob": 1,
    "Pod": 1,
    # Network-facing
    "Service": 2,
    "Ingress": 2,
    "NetworkPolicy": 2,
    # Autoscaling and disruption budgets
    "HorizontalPodAutoscaler": 3,
    "PodDisruptionBudget": 3,
}

DEFAULT_TIER = 2


def tier_of(kind: str) -> int:
    return KIND_TIERS.get(kind, DEFAULT_TIER)


def plan_tiers(operations: List[DeltaOperation]) -> List[List[DeltaOperation]]:
    """
    Group operations into ordered batches. Creates and updates go by
    ascending tier, with namespaces split into their own first batch;
    deletes follow in descending tier. Operations within one batch are
    independent of each other.
    """
    writes: Dict[int, List[DeltaOperation]] = {}
    deletes: Dict[int, List[DeltaOperation]] = {}

    for op in operations:
        tier = tier_of(op.key.kind)
        if op.key.kind == "Namespace":
            tier = -1
        bucket = deletes if op.action == DeltaAction.DELETE else writes
        bucket.setdefault(tier, []).append(op)

    batches = [writes[t] for t in sorted(writes)]
    batches += [deletes[t] for t in sorted(deletes, reverse=True)]
    return [sorted(b, key=lambda op: op.key.sort_key) for b in batches]
