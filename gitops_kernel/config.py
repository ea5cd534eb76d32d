"""
Configuration loading.

A single YAML file names the manifest repository, the environments and the
reconciler settings. The path defaults to ``$GITOPS_KERNEL_CONFIG``; the log
level to ``$GITOPS_KERNEL_LOG_LEVEL``.
"""

import logging
import os
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, ValidationError

from gitops_kernel.models.environment import (
    Environment,
    ExposureMode,
    ResourceQuotaSpec,
    SyncPolicy,
)
from gitops_kernel.models.reconciler import ReconcilerConfig

CONFIG_ENV_VAR = "GITOPS_KERNEL_CONFIG"
LOG_LEVEL_ENV_VAR = "GITOPS_KERNEL_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class ConfigError(Exception):
    """Raised when the configuration file is missing or invalid."""
    pass


class ClusterSettings(BaseModel):
    """Which cluster backend to talk to."""

    backend: str = "memory"                 # "memory" | "kubernetes"
    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    in_cluster: bool = False


class GitOpsConfig(BaseModel):
    """Top-level configuration."""

    repository: str = "."                   # Local path or remote URL
    cache_dir: Optional[str] = None         # Clone location for remote repositories
    history_db: str = ":memory:"
    cluster: ClusterSettings = ClusterSettings()
    environments: List[Environment] = []
    reconciler: ReconcilerConfig = ReconcilerConfig()


def default_environments(source_path: str = "manifests/hello") -> List[Environment]:
    """The development / staging / production catalog for the hello service."""
    return [
        Environment(
            name="development",
            namespace="hello-development",
            replicas=2,
            exposure=ExposureMode.INTERNAL,
            quota=ResourceQuotaSpec(
                requests_cpu="500m", requests_memory="512Mi",
                limits_cpu="1", limits_memory="1Gi", pods=5,
            ),
            sync_policy=SyncPolicy.AUTO_SELF_HEAL,
            source_path=source_path,
            prune=True,
        ),
        Environment(
            name="staging",
            namespace="hello-staging",
            replicas=3,
            exposure=ExposureMode.INTERNAL,
            quota=ResourceQuotaSpec(
                requests_cpu="1", requests_memory="1Gi",
                limits_cpu="2", limits_memory="2Gi", pods=10,
            ),
            sync_policy=SyncPolicy.AUTO_NO_SELF_HEAL,
            source_path=source_path,
            prune=True,
        ),
        Environment(
            name="production",
            namespace="hello-production",
            replicas=5,
            exposure=ExposureMode.EXTERNAL,
            quota=ResourceQuotaSpec(
                requests_cpu="2", requests_memory="2Gi",
                limits_cpu="4", limits_memory="4Gi", pods=20,
            ),
            sync_policy=SyncPolicy.MANUAL,
            source_path=source_path,
            prune=False,
        ),
    ]


def load_config(path: Optional[str] = None) -> GitOpsConfig:
    """
    Load configuration from YAML. With no path and no environment variable,
    returns the defaults with the built-in environment catalog.
    """
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return GitOpsConfig(environments=default_environments())

    config_path = Path(path)
    if not config_path.is_file():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    try:
        config = GitOpsConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e

    names = [env.name for env in config.environments]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigError(f"Duplicate environment names: {', '.join(duplicates)}")
    namespaces = [env.namespace for env in config.environments]
    if len(set(namespaces)) != len(namespaces):
        raise ConfigError("Environments must not share a namespace")
    return config


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for an entry point."""
    level = (level or os.environ.get(LOG_LEVEL_ENV_VAR) or "INFO").upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)
