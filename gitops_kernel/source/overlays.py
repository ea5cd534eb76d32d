"""
Environment overlays — the per-environment settings layered onto the
shared base manifests: namespace, resource quota, replica count and
service exposure.
"""

import copy
from typing import Dict

from gitops_kernel.models.environment import Environment, ExposureMode
from gitops_kernel.models.resource import ResourceKey

SCALABLE_KINDS = ("Deployment", "StatefulSet")
_EXPOSURE_TYPES = {
    ExposureMode.INTERNAL: "ClusterIP",
    ExposureMode.EXTERNAL: "LoadBalancer",
}


def namespace_manifest(environment: Environment) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {"name": environment.namespace},
    }


def quota_manifest(environment: Environment) -> dict:
    quota = environment.quota
    return {
        "apiVersion": "v1",
        "kind": "ResourceQuota",
        "metadata": {
            "name": f"{environment.name}-quota",
            "namespace": environment.namespace,
        },
        "spec": {
            "hard": {
                "requests.cpu": quota.requests_cpu,
                "requests.memory": quota.requests_memory,
                "limits.cpu": quota.limits_cpu,
                "limits.memory": quota.limits_memory,
                "pods": str(quota.pods),
            }
        },
    }


def apply_overlay(
    resources: Dict[ResourceKey, dict], environment: Environment
) -> Dict[ResourceKey, dict]:
    """
    Return a copy of ``resources`` with the environment's settings applied.
    Namespace and quota objects are added unless the manifests define them.
    """
    result = copy.deepcopy(resources)

    ns = namespace_manifest(environment)
    result.setdefault(ResourceKey.from_manifest(ns), ns)
    if not any(k.kind == "ResourceQuota" for k in result):
        quota = quota_manifest(environment)
        result[ResourceKey.from_manifest(quota)] = quota

    for key, manifest in result.items():
        if key.kind in SCALABLE_KINDS:
            manifest.setdefault("spec", {})["replicas"] = environment.replicas
        elif key.kind == "Service":
            spec = manifest.setdefault("spec", {})
            if spec.get("type") in (None, "ClusterIP", "LoadBalancer"):
                spec["type"] = _EXPOSURE_TYPES[environment.exposure]
    return result
