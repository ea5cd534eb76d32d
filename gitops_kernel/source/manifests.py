"""Manifest parsing — YAML documents to resource manifests."""

import copy
import logging
from typing import Dict, Iterable, Tuple

import yaml

from gitops_kernel.errors import ParseError
from gitops_kernel.models.resource import (
    CLUSTER_SCOPED_KINDS,
    ENVIRONMENT_LABEL,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    ResourceKey,
)

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")


def decode_manifest(data: bytes, origin: str) -> str:
    """Decode a manifest file as UTF-8, naming the file on failure."""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ParseError(f"Manifest is not valid UTF-8: {e}", key=origin) from e


def _documents(text: str, origin: str) -> list:
    try:
        return list(yaml.safe_load_all(text))
    except yaml.YAMLError as e:
        raise ParseError(f"Invalid YAML: {e}", key=origin) from e


def _expand(doc: dict) -> list:
    """Flatten ``kind: List`` wrappers into their items."""
    if doc.get("kind") == "List":
        return [item for item in doc.get("items") or [] if item]
    return [doc]


def parse_manifests(
    text: str,
    default_namespace: str = "",
    origin: str = "<string>",
) -> Dict[ResourceKey, dict]:
    """
    Parse a multi-document YAML stream into ``{ResourceKey: manifest}``.

    Namespaced resources without ``metadata.namespace`` are placed in
    ``default_namespace``. Raises ParseError naming the offending resource
    identity, or ``origin`` when no identity could be read.
    """
    resources: Dict[ResourceKey, dict] = {}

    for index, doc in enumerate(_documents(text, origin)):
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise ParseError(
                f"Document {index} is not a mapping", key=f"{origin}#{index}"
            )

        for item in _expand(doc):
            if not isinstance(item, dict):
                raise ParseError(
                    f"List item in document {index} is not a mapping",
                    key=f"{origin}#{index}",
                )
            manifest = copy.deepcopy(item)
            kind = manifest.get("kind")
            metadata = manifest.get("metadata")
            if not kind or not isinstance(metadata, dict) or not metadata.get("name"):
                partial = f"{kind or '?'}/{(metadata or {}).get('name', '?')}"
                raise ParseError(
                    "Manifest requires kind and metadata.name",
                    key=f"{origin}:{partial}",
                )
            namespace = metadata.get("namespace")
            if not isinstance(kind, str) or not isinstance(metadata["name"], str) or (
                namespace is not None and not isinstance(namespace, str)
            ):
                raise ParseError(
                    "kind, metadata.name and metadata.namespace must be strings",
                    key=f"{origin}#{index}",
                )
            if "apiVersion" not in manifest:
                raise ParseError(
                    "Manifest requires apiVersion",
                    key=ResourceKey.from_manifest(manifest, default_namespace),
                )

            if kind not in CLUSTER_SCOPED_KINDS and not metadata.get("namespace"):
                if default_namespace:
                    metadata["namespace"] = default_namespace
            if kind in CLUSTER_SCOPED_KINDS:
                metadata.pop("namespace", None)

            key = ResourceKey.from_manifest(manifest, default_namespace)
            if key in resources:
                raise ParseError("Duplicate resource identity", key=key)
            resources[key] = manifest

    return resources


def parse_files(
    files: Iterable[Tuple[str, str]], default_namespace: str = ""
) -> Dict[ResourceKey, dict]:
    """Parse ``(path, text)`` pairs, rejecting identities defined twice."""
    merged: Dict[ResourceKey, dict] = {}
    for path, text in files:
        parsed = parse_manifests(text, default_namespace, origin=path)
        for key, manifest in parsed.items():
            if key in merged:
                raise ParseError(f"Duplicate resource identity in {path}", key=key)
            merged[key] = manifest
        logger.debug("Parsed %d resources from %s", len(parsed), path)
    return merged


def stamp_ownership(manifest: dict, environment: str) -> dict:
    """Return a copy carrying the ownership and tracking labels."""
    stamped = copy.deepcopy(manifest)
    metadata = stamped.setdefault("metadata", {})
    labels = metadata.get("labels") or {}
    metadata["labels"] = labels
    labels[MANAGED_BY_LABEL] = MANAGED_BY_VALUE
    labels[ENVIRONMENT_LABEL] = environment
    return stamped


def confine_to_namespace(resources: Dict[ResourceKey, dict], namespace: str) -> None:
    """
    Reject resources outside ``namespace``: namespaced objects elsewhere,
    other Namespace objects and any other cluster-scoped kind. Such
    objects would be written but never observed by the environment.
    """
    for key in resources:
        if key.kind == "Namespace":
            if key.name != namespace:
                raise ParseError(
                    f"Namespace differs from the environment namespace {namespace!r}",
                    key=key,
                )
        elif not key.namespace:
            raise ParseError(
                f"Cluster-scoped {key.kind} cannot be managed per environment", key=key,
            )
        elif key.namespace != namespace:
            raise ParseError(
                f"Resource targets namespace {key.namespace!r}, "
                f"outside the environment namespace {namespace!r}",
                key=key,
            )
