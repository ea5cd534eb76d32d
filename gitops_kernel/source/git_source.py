"""
Desired-State Source — versioned manifests read from Git.

Behavioral Contract:
- Given a revision and a path, returns {ResourceKey: manifest} for one environment
- Reads blobs straight from the commit tree; the working copy is never touched
- Raises SourceUnreachable if the repo, revision or path cannot be fetched
- Raises ParseError (with the offending identity) on malformed manifests
- Raises ParseError for resources outside the environment namespace
- Every returned manifest carries this controller's ownership labels
"""

import hashlib
import logging
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Protocol, Tuple

from git import Repo
from git.exc import BadName, GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from gitops_kernel.errors import SourceUnreachable
from gitops_kernel.models.environment import Environment
from gitops_kernel.models.resource import DesiredState
from gitops_kernel.source.manifests import (
    MANIFEST_SUFFIXES,
    confine_to_namespace,
    decode_manifest,
    parse_files,
    stamp_ownership,
)
from gitops_kernel.source.overlays import apply_overlay

logger = logging.getLogger(__name__)


class ManifestSource(Protocol):
    """Anything that can resolve an environment's desired state."""

    def fetch(
        self, environment: Environment, revision: Optional[str] = None
    ) -> DesiredState: ...


def _build_desired_state(
    environment: Environment,
    revision: str,
    files: List[Tuple[str, str]],
) -> DesiredState:
    parsed = parse_files(files, default_namespace=environment.namespace)
    confine_to_namespace(parsed, environment.namespace)
    resources = apply_overlay(parsed, environment)
    stamped = {
        key: stamp_ownership(manifest, environment.name)
        for key, manifest in resources.items()
    }
    return DesiredState(
        environment=environment.name,
        revision=revision,
        resources=stamped,
        fetched_at=datetime.utcnow(),
    )


class GitManifestSource:
    """
    Reads manifests from a Git repository at a given revision.

    ``repo_url`` may be a local repository path or a remote URL. Remote
    repositories are cloned once into ``cache_dir`` and fetched on every
    subsequent call.
    """

    def __init__(self, repo_url: str, cache_dir: Optional[str] = None):
        self.repo_url = repo_url
        self.cache_dir = cache_dir
        self._repo: Optional[Repo] = None
        self._lock = threading.Lock()

    @property
    def is_remote(self) -> bool:
        return self.repo_url.startswith(("http://", "https://", "git@", "git://", "ssh://"))

    def _open(self) -> Repo:
        """Open (or clone) the repository; fetch remotes on every call."""
        try:
            if self._repo is None:
                if self.is_remote:
                    target = Path(self.cache_dir or tempfile.mkdtemp(prefix="gitops_"))
                    if (target / ".git").is_dir():
                        self._repo = Repo(target)
                    else:
                        logger.info("Cloning %s into %s", self.repo_url, target)
                        self._repo = Repo.clone_from(self.repo_url, target)
                else:
                    self._repo = Repo(self.repo_url)
            elif self.is_remote:
                for remote in self._repo.remotes:
                    remote.fetch()
        except (GitCommandError, InvalidGitRepositoryError, NoSuchPathError) as e:
            raise SourceUnreachable(
                f"Cannot open repository {self.repo_url}: {e}"
            ) from e
        return self._repo

    def resolve(self, revision: str) -> str:
        """Resolve a branch, tag or SHA to a commit SHA."""
        with self._lock:
            return self._resolve_commit(self._open(), revision).hexsha

    def _resolve_commit(self, repo: Repo, revision: str):
        candidates = [revision]
        if repo.remotes:
            candidates.insert(0, f"{repo.remotes[0].name}/{revision}")
        for candidate in candidates:
            try:
                return repo.commit(candidate)
            except (BadName, ValueError, GitCommandError):
                continue
        raise SourceUnreachable(
            f"Revision {revision!r} not found in {self.repo_url}"
        )

    def _read_files(self, repo: Repo, revision: str, path: str) -> Tuple[str, List[Tuple[str, str]]]:
        commit = self._resolve_commit(repo, revision)
        tree = commit.tree
        if path and path.strip("/"):
            try:
                tree = tree / path.strip("/")
            except KeyError as e:
                raise SourceUnreachable(
                    f"Path {path!r} not found at revision {commit.hexsha[:12]}"
                ) from e

        files = []
        for item in tree.traverse():
            if item.type != "blob" or not item.path.endswith(MANIFEST_SUFFIXES):
                continue
            data = item.data_stream.read()
            files.append((item.path, decode_manifest(data, item.path)))
        files.sort(key=lambda f: f[0])
        return commit.hexsha, files

    def fetch(
        self, environment: Environment, revision: Optional[str] = None
    ) -> DesiredState:
        """Resolve the environment's desired state at ``revision``."""
        revision = revision or environment.revision
        with self._lock:
            repo = self._open()
            sha, files = self._read_files(repo, revision, environment.source_path)

        logger.debug(
            "Fetched %d manifest files for %s at %s",
            len(files), environment.name, sha[:12],
        )
        return _build_desired_state(environment, sha, files)


class DirectoryManifestSource:
    """
    Reads manifests from a plain directory, for local development.
    The revision is a content hash of the manifest files.
    """

    def __init__(self, root: str):
        self.root = Path(root)

    def fetch(
        self, environment: Environment, revision: Optional[str] = None
    ) -> DesiredState:
        base = self.root / environment.source_path if environment.source_path else self.root
        if not base.is_dir():
            raise SourceUnreachable(f"Manifest directory not found: {base}")

        files = []
        for p in sorted(base.rglob("*")):
            if p.is_file() and p.suffix in MANIFEST_SUFFIXES:
                path = str(p.relative_to(base))
                files.append((path, decode_manifest(p.read_bytes(), path)))

        digest = hashlib.sha256()
        for path, text in files:
            digest.update(path.encode())
            digest.update(text.encode())
        return _build_desired_state(environment, digest.hexdigest(), files)
