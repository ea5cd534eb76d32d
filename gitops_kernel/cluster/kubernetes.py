"""ClusterClient backed by a real Kubernetes API server."""

import logging
from typing import Iterable, List, Optional

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError
from urllib3.exceptions import HTTPError

from gitops_kernel.cluster.client import KIND_API_VERSIONS
from gitops_kernel.errors import (
    ApplyConflict,
    ApplyRejected,
    ClusterUnreachable,
    GitOpsError,
    ResourceNotFound,
)
from gitops_kernel.models.resource import LiveResource, ResourceKey

logger = logging.getLogger(__name__)


def _translate(e: Exception, key: Optional[ResourceKey]) -> GitOpsError:
    """Map API errors onto the kernel's taxonomy."""
    if isinstance(e, ApiException):
        status = e.status or 0
        reason = e.reason or ""
        if status == 404:
            return ResourceNotFound(f"Not found: {reason}", key=key)
        if status == 409:
            return ApplyConflict(f"Conflict: {reason}", key=key)
        if status in (400, 403, 422):
            return ApplyRejected(f"Rejected ({status}): {reason}", key=key)
        if status == 429 or status >= 500:
            return ClusterUnreachable(f"API server error ({status}): {reason}", key=key)
        return ApplyRejected(f"Unexpected API error ({status}): {reason}", key=key)
    return ClusterUnreachable(f"Cannot reach API server: {e}", key=key)


class KubernetesCluster:
    """
    Wraps the official client's DynamicClient so any kind with a known
    apiVersion can be read and written by (kind, namespace, name).
    """

    def __init__(
        self,
        kubeconfig: Optional[str] = None,
        context: Optional[str] = None,
        in_cluster: bool = False,
        request_timeout: float = 30.0,
    ):
        try:
            if in_cluster:
                k8s_config.load_incluster_config()
            else:
                k8s_config.load_kube_config(config_file=kubeconfig, context=context)
            self._dynamic = DynamicClient(k8s_client.ApiClient())
        except (ConfigException, ApiException, HTTPError) as e:
            raise ClusterUnreachable(f"Cannot connect to cluster: {e}") from e
        self.request_timeout = request_timeout

    def _api(self, kind: str, api_version: Optional[str] = None):
        api_version = api_version or KIND_API_VERSIONS.get(kind)
        try:
            return self._dynamic.resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError as e:
            raise ApplyRejected(f"Unknown kind {api_version}/{kind}") from e

    def _to_live(self, key: ResourceKey, obj: dict) -> LiveResource:
        obj.setdefault("kind", key.kind)
        obj.setdefault("apiVersion", KIND_API_VERSIONS.get(key.kind, ""))
        return LiveResource(
            key=key,
            manifest=obj,
            resource_version=(obj.get("metadata") or {}).get("resourceVersion", ""),
        )

    def get(self, key: ResourceKey) -> LiveResource:
        try:
            obj = self._api(key.kind).get(
                name=key.name,
                namespace=key.namespace or None,
                _request_timeout=self.request_timeout,
            )
        except (ApiException, HTTPError) as e:
            raise _translate(e, key) from e
        return self._to_live(key, obj.to_dict())

    def list(self, namespace: str, kinds: Iterable[str]) -> List[LiveResource]:
        found = []
        for kind in kinds:
            if kind == "Namespace":
                try:
                    found.append(self.get(ResourceKey(kind="Namespace", name=namespace)))
                except ResourceNotFound:
                    pass
                continue
            try:
                result = self._api(kind).get(
                    namespace=namespace, _request_timeout=self.request_timeout
                )
            except (ApiException, HTTPError) as e:
                raise _translate(e, None) from e
            for item in result.to_dict().get("items", []):
                item["kind"] = kind
                key = ResourceKey.from_manifest(item)
                found.append(self._to_live(key, item))
        return found

    def create(self, manifest: dict) -> LiveResource:
        key = ResourceKey.from_manifest(manifest)
        try:
            obj = self._api(key.kind, manifest.get("apiVersion")).create(
                body=manifest,
                namespace=key.namespace or None,
                _request_timeout=self.request_timeout,
            )
        except (ApiException, HTTPError) as e:
            raise _translate(e, key) from e
        return self._to_live(key, obj.to_dict())

    def update(self, manifest: dict, resource_version: str) -> LiveResource:
        key = ResourceKey.from_manifest(manifest)
        body = dict(manifest)
        body["metadata"] = dict(manifest.get("metadata") or {})
        if resource_version:
            body["metadata"]["resourceVersion"] = resource_version
        try:
            obj = self._api(key.kind, manifest.get("apiVersion")).replace(
                body=body,
                namespace=key.namespace or None,
                _request_timeout=self.request_timeout,
            )
        except (ApiException, HTTPError) as e:
            raise _translate(e, key) from e
        return self._to_live(key, obj.to_dict())

    def delete(self, key: ResourceKey, resource_version: str = "") -> None:
        body = None
        if resource_version:
            body = {"preconditions": {"resourceVersion": resource_version}}
        try:
            self._api(key.kind).delete(
                name=key.name,
                namespace=key.namespace or None,
                body=body,
                _request_timeout=self.request_timeout,
            )
        except (ApiException, HTTPError) as e:
            raise _translate(e, key) from e
        logger.debug("Deleted %s", key)
