"""Resource identity, desired state and live state."""

from datetime import datetime
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "gitops-kernel"
ENVIRONMENT_LABEL = "gitops-kernel/environment"

# Kinds that live outside any namespace
CLUSTER_SCOPED_KINDS = frozenset({
    "Namespace",
    "ClusterRole",
    "ClusterRoleBinding",
    "CustomResourceDefinition",
    "PersistentVolume",
    "StorageClass",
})


class ResourceKey(BaseModel):
    """Identity of a resource: (kind, namespace, name)."""

    model_config = ConfigDict(frozen=True)

    kind: str
    namespace: str = ""                    # Empty for cluster-scoped kinds
    name: str

    @classmethod
    def from_manifest(cls, manifest: dict, default_namespace: str = "") -> "ResourceKey":
        kind = manifest.get("kind", "")
        metadata = manifest.get("metadata") or {}
        if kind in CLUSTER_SCOPED_KINDS:
            namespace = ""
        else:
            namespace = metadata.get("namespace") or default_namespace
        return cls(kind=kind, namespace=namespace, name=metadata.get("name", ""))

    @property
    def sort_key(self) -> Tuple[str, str, str]:
        return (self.kind, self.namespace, self.name)

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


class LiveResource(BaseModel):
    """A resource as observed in the cluster."""

    key: ResourceKey
    manifest: dict                          # Full object, including server fields
    resource_version: str = ""
    observed_at: Optional[datetime] = None

    @property
    def status(self) -> dict:
        return self.manifest.get("status") or {}

    @property
    def labels(self) -> dict:
        return (self.manifest.get("metadata") or {}).get("labels") or {}

    @property
    def managed(self) -> bool:
        """Whether this controller created the resource."""
        return self.labels.get(MANAGED_BY_LABEL) == MANAGED_BY_VALUE


class DesiredState(BaseModel):
    """Resolved resource manifests for one environment at one revision."""

    model_config = ConfigDict(frozen=True)

    environment: str
    revision: str
    resources: Dict[ResourceKey, dict] = {}
    fetched_at: Optional[datetime] = None


class LiveState(BaseModel):
    """Snapshot of the resources running in the cluster for one environment."""

    environment: str
    resources: Dict[ResourceKey, LiveResource] = {}
    observed_at: Optional[datetime] = None

    def manifests(self) -> Dict[ResourceKey, dict]:
        return {key: res.manifest for key, res in self.resources.items()}
