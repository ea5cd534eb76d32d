"""Tests for the command-line interface."""

import json

import pytest
from git import Actor, Repo

from gitops_kernel.cli import main

DEPLOYMENT = """
apiVersion: apps/v1
kind: Deployment
metadata:
  name: hello
spec:
  selector:
    matchLabels:
      app: hello
  template:
    metadata:
      labels:
        app: hello
    spec:
      containers:
        - name: hello
          image: hello:1.0
"""


@pytest.fixture
def config_path(tmp_path):
    repo_dir = tmp_path / "repo"
    (repo_dir / "hello").mkdir(parents=True)
    (repo_dir / "hello" / "deployment.yaml").write_text(DEPLOYMENT)
    repo = Repo.init(repo_dir)
    repo.index.add([str(repo_dir / "hello" / "deployment.yaml")])
    author = Actor("Test", "test@example.com")
    repo.index.commit("initial", author=author, committer=author)

    path = tmp_path / "gitops.yaml"
    path.write_text(f"""
repository: {repo_dir}
environments:
  - name: development
    namespace: hello-development
    replicas: 2
    source_path: hello
    revision: {repo.active_branch.name}
  - name: production
    namespace: hello-production
    sync_policy: manual
    source_path: hello
    revision: {repo.active_branch.name}
""")
    return str(path)


def _run(argv) -> int:
    with pytest.raises(SystemExit) as excinfo:
        main(argv)
    return excinfo.value.code


class TestCli:
    def test_no_command_prints_help(self, capsys):
        assert _run([]) == 0
        assert "usage" in capsys.readouterr().out

    def test_diff(self, config_path, capsys):
        assert _run(["--config", config_path, "diff", "development"]) == 0
        out = capsys.readouterr().out
        assert "create  Deployment/hello-development/hello" in out
        assert out.strip().endswith("3 create, 0 update, 0 delete")

    def test_reconcile(self, config_path, capsys):
        assert _run(["--config", config_path, "reconcile"]) == 0
        results = {r["environment"]: r for r in json.loads(capsys.readouterr().out)}
        assert results["development"]["status"] == "succeeded"
        assert results["production"]["decision"] == "PendingApproval"

    def test_sync(self, config_path, capsys):
        assert _run(["--config", config_path, "sync", "production"]) == 0
        assert json.loads(capsys.readouterr().out)["trigger"] == "manual"

    def test_unknown_environment(self, config_path, capsys):
        assert _run(["--config", config_path, "status", "qa"]) == 1
        assert "UnknownEnvironment" in capsys.readouterr().err

    def test_missing_config(self, tmp_path, capsys):
        assert _run(["--config", str(tmp_path / "absent.yaml"), "status"]) == 1
        assert "not found" in capsys.readouterr().err
