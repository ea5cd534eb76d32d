"""
Cluster API boundary.

The reconciliation core only touches the cluster through a ClusterClient:
create/read/update/delete keyed by (kind, namespace, name). Updates carry the
resource version they were computed against; a mismatch raises ApplyConflict.

InMemoryCluster is the prototype backend. It mimics the behaviours the core
depends on: server-side defaulting, resource versions, status reporting and
injected faults.
"""

import copy
import threading
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple
from uuid import uuid4

from gitops_kernel.errors import (
    ApplyConflict,
    ApplyRejected,
    ClusterUnreachable,
    GitOpsError,
    ResourceNotFound,
)
from gitops_kernel.models.resource import LiveResource, ResourceKey

# apiVersion per kind the kernel knows how to observe
KIND_API_VERSIONS: Dict[str, str] = {
    "Namespace": "v1",
    "ResourceQuota": "v1",
    "LimitRange": "v1",
    "ServiceAccount": "v1",
    "ConfigMap": "v1",
    "Secret": "v1",
    "Role": "rbac.authorization.k8s.io/v1",
    "RoleBinding": "rbac.authorization.k8s.io/v1",
    "Deployment": "apps/v1",
    "StatefulSet": "apps/v1",
    "DaemonSet": "apps/v1",
    "Job": "batch/v1",
    "CronJob": "batch/v1",
    "Pod": "v1",
    "Service": "v1",
    "Ingress": "networking.k8s.io/v1",
    "NetworkPolicy": "networking.k8s.io/v1",
    "HorizontalPodAutoscaler": "autoscaling/v2",
    "PodDisruptionBudget": "policy/v1",
}


class ClusterClient(Protocol):
    """CRUD over resource manifests, keyed by ResourceKey."""

    def get(self, key: ResourceKey) -> LiveResource: ...

    def list(self, namespace: str, kinds: Iterable[str]) -> List[LiveResource]: ...

    def create(self, manifest: dict) -> LiveResource: ...

    def update(self, manifest: dict, resource_version: str) -> LiveResource: ...

    def delete(self, key: ResourceKey, resource_version: str = "") -> None: ...


def _live(key: ResourceKey, manifest: dict) -> LiveResource:
    return LiveResource(
        key=key,
        manifest=copy.deepcopy(manifest),
        resource_version=(manifest.get("metadata") or {}).get("resourceVersion", ""),
        observed_at=datetime.utcnow(),
    )


# --- Server-side defaulting ---

def _default_deployment(manifest: dict) -> None:
    spec = manifest.setdefault("spec", {})
    spec.setdefault("replicas", 1)
    spec.setdefault("revisionHistoryLimit", 10)
    spec.setdefault("progressDeadlineSeconds", 600)
    spec.setdefault("strategy", {
        "type": "RollingUpdate",
        "rollingUpdate": {"maxSurge": "25%", "maxUnavailable": "25%"},
    })
    pod_spec = spec.get("template", {}).get("spec", {})
    pod_spec.setdefault("restartPolicy", "Always")
    pod_spec.setdefault("dnsPolicy", "ClusterFirst")
    for container in pod_spec.get("containers", []):
        container.setdefault("imagePullPolicy", "IfNotPresent")
        container.setdefault("terminationMessagePath", "/dev/termination-log")


def _default_service(manifest: dict) -> None:
    spec = manifest.setdefault("spec", {})
    spec.setdefault("type", "ClusterIP")
    spec.setdefault("sessionAffinity", "None")
    spec.setdefault("clusterIP", f"10.0.{uuid4().int % 250}.{uuid4().int % 250}")
    for port in spec.get("ports", []):
        port.setdefault("protocol", "TCP")
        port.setdefault("targetPort", port.get("port"))


DEFAULTERS: Dict[str, Callable[[dict], None]] = {
    "Deployment": _default_deployment,
    "StatefulSet": _default_deployment,
    "Service": _default_service,
}


# --- Admission validation ---

def _validate_workload(manifest: dict) -> Optional[str]:
    spec = manifest.get("spec") or {}
    replicas = spec.get("replicas", 1)
    if not isinstance(replicas, int) or replicas < 0:
        return f"spec.replicas: invalid value {replicas!r}"
    containers = (spec.get("template") or {}).get("spec", {}).get("containers")
    if not containers:
        return "spec.template.spec.containers: required value"
    for c in containers:
        if not c.get("name") or not c.get("image"):
            return "spec.template.spec.containers: name and image are required"
    return None


def _validate_service(manifest: dict) -> Optional[str]:
    spec = manifest.get("spec") or {}
    if spec.get("type") not in (None, "ClusterIP", "NodePort", "LoadBalancer", "ExternalName"):
        return f"spec.type: unsupported value {spec.get('type')!r}"
    for port in spec.get("ports", []):
        if not isinstance(port.get("port"), int) or not 0 < port["port"] < 65536:
            return f"spec.ports.port: invalid value {port.get('port')!r}"
    return None


VALIDATORS: Dict[str, Callable[[dict], Optional[str]]] = {
    "Deployment": _validate_workload,
    "StatefulSet": _validate_workload,
    "Service": _validate_service,
}


class InMemoryCluster:
    """
    In-memory cluster for the prototype and tests.
    Production uses KubernetesCluster against a real API server.
    """

    def __init__(self, auto_ready: bool = True):
        self.auto_ready = auto_ready
        self.unreachable = False
        self.operations: List[Tuple[str, ResourceKey]] = []

        self._objects: Dict[ResourceKey, dict] = {}
        self._version = 0
        self._faults: List[dict] = []
        self._lock = threading.RLock()

    # --- Fault injection ---

    def inject_fault(
        self,
        action: str,
        error: GitOpsError,
        key: Optional[ResourceKey] = None,
        times: int = 1,
    ) -> None:
        """Make the next ``times`` matching calls raise ``error``."""
        with self._lock:
            self._faults.append({"action": action, "key": key, "error": error, "remaining": times})

    def _check_faults(self, action: str, key: Optional[ResourceKey]) -> None:
        if self.unreachable:
            raise ClusterUnreachable("Cluster API is unreachable")
        for fault in self._faults:
            if fault["action"] != action or fault["remaining"] <= 0:
                continue
            if fault["key"] is not None and fault["key"] != key:
                continue
            fault["remaining"] -= 1
            raise fault["error"]

    # --- Internals ---

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _admit(self, manifest: dict, key: ResourceKey) -> dict:
        validator = VALIDATORS.get(key.kind)
        if validator:
            problem = validator(manifest)
            if problem:
                raise ApplyRejected(f"{key.kind} is invalid: {problem}", key=key)
        admitted = copy.deepcopy(manifest)
        defaulter = DEFAULTERS.get(key.kind)
        if defaulter:
            defaulter(admitted)
        return admitted

    def _simulate_status(self, manifest: dict, key: ResourceKey) -> None:
        metadata = manifest["metadata"]
        if key.kind == "Namespace":
            manifest["status"] = {"phase": "Active"}
        elif key.kind in ("Deployment", "StatefulSet"):
            replicas = manifest["spec"].get("replicas", 1)
            if self.auto_ready:
                manifest["status"] = {
                    "observedGeneration": metadata["generation"],
                    "replicas": replicas,
                    "updatedReplicas": replicas,
                    "readyReplicas": replicas,
                    "availableReplicas": replicas,
                }
            else:
                manifest["status"] = {
                    "observedGeneration": metadata["generation"],
                    "replicas": replicas,
                    "updatedReplicas": 0,
                    "readyReplicas": 0,
                }
        elif key.kind == "Service" and manifest["spec"].get("type") == "LoadBalancer":
            if self.auto_ready:
                manifest["status"] = {"loadBalancer": {"ingress": [{"ip": "203.0.113.10"}]}}
            else:
                manifest["status"] = {"loadBalancer": {}}

    # --- ClusterClient ---

    def get(self, key: ResourceKey) -> LiveResource:
        with self._lock:
            self._check_faults("get", key)
            obj = self._objects.get(key)
            if obj is None:
                raise ResourceNotFound("Resource not found", key=key)
            return _live(key, obj)

    def list(self, namespace: str, kinds: Iterable[str]) -> List[LiveResource]:
        kinds = set(kinds)
        with self._lock:
            self._check_faults("list", None)
            return [
                _live(key, obj)
                for key, obj in sorted(self._objects.items(), key=lambda kv: kv[0].sort_key)
                if key.kind in kinds and (key.namespace == namespace or (
                    key.kind == "Namespace" and key.name == namespace
                ))
            ]

    def create(self, manifest: dict) -> LiveResource:
        key = ResourceKey.from_manifest(manifest)
        with self._lock:
            self._check_faults("create", key)
            if key in self._objects:
                raise ApplyConflict("Resource already exists", key=key)
            if key.namespace and ResourceKey(kind="Namespace", name=key.namespace) not in self._objects:
                raise ApplyRejected(f"Namespace {key.namespace} not found", key=key)
            obj = self._admit(manifest, key)
            metadata = obj.setdefault("metadata", {})
            metadata["uid"] = str(uuid4())
            metadata["creationTimestamp"] = datetime.utcnow().isoformat()
            metadata["generation"] = 1
            metadata["resourceVersion"] = self._next_version()
            obj.pop("status", None)
            self._simulate_status(obj, key)
            self._objects[key] = obj
            self.operations.append(("create", key))
            return _live(key, obj)

    def update(self, manifest: dict, resource_version: str) -> LiveResource:
        key = ResourceKey.from_manifest(manifest)
        with self._lock:
            self._check_faults("update", key)
            current = self._objects.get(key)
            if current is None:
                raise ResourceNotFound("Resource not found", key=key)
            if resource_version and current["metadata"]["resourceVersion"] != resource_version:
                raise ApplyConflict(
                    f"Resource version {resource_version} is stale "
                    f"(current {current['metadata']['resourceVersion']})",
                    key=key,
                )
            obj = self._admit(manifest, key)
            metadata = obj.setdefault("metadata", {})
            for field in ("uid", "creationTimestamp"):
                metadata[field] = current["metadata"][field]
            generation = current["metadata"]["generation"]
            if obj.get("spec") != current.get("spec"):
                generation += 1
            metadata["generation"] = generation
            metadata["resourceVersion"] = self._next_version()
            obj.pop("status", None)
            self._simulate_status(obj, key)
            self._objects[key] = obj
            self.operations.append(("update", key))
            return _live(key, obj)

    def delete(self, key: ResourceKey, resource_version: str = "") -> None:
        with self._lock:
            self._check_faults("delete", key)
            current = self._objects.get(key)
            if current is None:
                raise ResourceNotFound("Resource not found", key=key)
            if resource_version and current["metadata"]["resourceVersion"] != resource_version:
                raise ApplyConflict("Resource version is stale", key=key)
            del self._objects[key]
            if key.kind == "Namespace":
                for other in [k for k in self._objects if k.namespace == key.name]:
                    del self._objects[other]
            self.operations.append(("delete", key))

    # --- Out-of-band helpers ---

    def external_edit(self, key: ResourceKey, mutate: Callable[[dict], None]) -> LiveResource:
        """Mutate an object outside the kernel (a human running kubectl)."""
        with self._lock:
            obj = self._objects[key]
            mutate(obj)
            obj["metadata"]["resourceVersion"] = self._next_version()
            return _live(key, obj)

    def set_status(self, key: ResourceKey, status: dict) -> None:
        """Overwrite the status a controller would report."""
        with self._lock:
            self._objects[key]["status"] = copy.deepcopy(status)

    def objects(self) -> Dict[ResourceKey, dict]:
        with self._lock:
            return copy.deepcopy(self._objects)
