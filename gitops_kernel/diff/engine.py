"""
Diff Engine — structural delta between desired and live state.

Behavioral Contract:
- Pure: diff(desired, live) reads its inputs and returns a new Delta
- Desired only -> Create; both with differing owned fields -> Update;
  live only and managed by this controller -> Delete when prune is on
- Only fields present in the desired manifest are compared; anything the
  cluster adds (defaults, status, server metadata) never produces a diff
- diff(D, D) is empty, and applying diff(D, L) to L converges on D
"""

import copy
import logging
from typing import Any, Dict, List

from gitops_kernel.models.delta import Delta, DeltaAction, DeltaOperation
from gitops_kernel.models.resource import DesiredState, LiveState, ResourceKey

logger = logging.getLogger(__name__)

# metadata fields the API server owns
SERVER_METADATA_FIELDS = frozenset({
    "resourceVersion",
    "uid",
    "creationTimestamp",
    "generation",
    "managedFields",
    "selfLink",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
})

_EMPTY = (None, {}, [], "")


def _ignored(path: List[str]) -> bool:
    if path == ["status"]:
        return True
    return len(path) == 2 and path[0] == "metadata" and path[1] in SERVER_METADATA_FIELDS


def _dotted(path: List[str]) -> str:
    return ".".join(path) if path else "."


def _is_named_list(items: list) -> bool:
    return bool(items) and all(isinstance(i, dict) and "name" in i for i in items)


def _scalar_equal(desired: Any, live: Any) -> bool:
    if isinstance(desired, bool) or isinstance(live, bool):
        return desired is live
    if isinstance(desired, (int, float)) and isinstance(live, (int, float)):
        return desired == live
    return desired == live


def _compare(desired: Any, live: Any, path: List[str], changes: List[str]) -> None:
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            changes.append(_dotted(path))
            return
        for field, value in desired.items():
            sub = path + [str(field)]
            if _ignored(sub):
                continue
            if field not in live:
                if value not in _EMPTY:
                    changes.append(_dotted(sub))
                continue
            _compare(value, live[field], sub, changes)

    elif isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            changes.append(_dotted(path))
            return
        if _is_named_list(desired) and _is_named_list(live):
            live_by_name = {item["name"]: item for item in live}
            if set(live_by_name) != {item["name"] for item in desired}:
                changes.append(_dotted(path))
                return
            for item in desired:
                _compare(item, live_by_name[item["name"]], path + [f"[{item['name']}]"], changes)
        else:
            for index, (d, l) in enumerate(zip(desired, live)):
                _compare(d, l, path + [f"[{index}]"], changes)

    elif not _scalar_equal(desired, live):
        changes.append(_dotted(path))


def changed_fields(desired: dict, live: dict) -> List[str]:
    """Dotted paths of owned fields whose live value differs from desired."""
    changes: List[str] = []
    _compare(desired, live, [], changes)
    return changes


def diff(desired: DesiredState, live: LiveState, prune: bool = False) -> Delta:
    """Compute the operations that move ``live`` to ``desired``."""
    if desired.environment != live.environment:
        raise ValueError(
            f"Cannot diff across environments: desired={desired.environment} "
            f"live={live.environment}"
        )

    operations: List[DeltaOperation] = []
    for key in sorted(desired.resources, key=lambda k: k.sort_key):
        spec = desired.resources[key]
        current = live.resources.get(key)
        if current is None:
            operations.append(DeltaOperation(
                action=DeltaAction.CREATE, key=key, desired=spec,
            ))
            continue
        changes = changed_fields(spec, current.manifest)
        if changes:
            logger.debug("%s differs at %s", key, ", ".join(changes))
            operations.append(DeltaOperation(
                action=DeltaAction.UPDATE,
                key=key,
                desired=spec,
                live_resource_version=current.resource_version,
                changed_fields=changes,
            ))

    orphans: List[ResourceKey] = []
    for key in sorted(set(live.resources) - set(desired.resources), key=lambda k: k.sort_key):
        current = live.resources[key]
        if not current.managed:
            continue
        if prune:
            operations.append(DeltaOperation(
                action=DeltaAction.DELETE,
                key=key,
                live_resource_version=current.resource_version,
            ))
        else:
            orphans.append(key)

    return Delta(environment=desired.environment, operations=operations, orphans=orphans)


def _merge(base: Any, overlay: Any) -> Any:
    if isinstance(base, dict) and isinstance(overlay, dict):
        merged = dict(base)
        for field, value in overlay.items():
            merged[field] = _merge(base.get(field), value)
        return merged
    return copy.deepcopy(overlay)


def apply_delta(
    live: Dict[ResourceKey, dict], delta: Delta
) -> Dict[ResourceKey, dict]:
    """
    Return the manifests that result from applying ``delta`` to ``live``.
    Desired fields overwrite live ones; fields only the cluster set survive.
    """
    result = copy.deepcopy(live)
    for op in delta.operations:
        if op.action == DeltaAction.CREATE:
            result[op.key] = copy.deepcopy(op.desired)
        elif op.action == DeltaAction.UPDATE:
            result[op.key] = _merge(result.get(op.key, {}), op.desired)
        else:
            result.pop(op.key, None)
    return result
