"""Shared fixtures: pipeline configuration and throwaway git repositories."""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

from pushdeploy.config import PipelineConfig, StageTimeouts, TriggerPolicy
from pushdeploy.models import Credentials

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git binary not available")

_GIT_IDENTITY = [
    "-c",
    "user.name=Pipeline Tests",
    "-c",
    "user.email=tests@example.com",
    "-c",
    "commit.gpgsign=false",
]


def git(cwd: Path, *args: str) -> str:
    """Run a git command in *cwd* and return stdout."""
    result = subprocess.run(
        ["git", *_GIT_IDENTITY, *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout


class FixtureRepo:
    """A local repository whose history tests can grow commit by commit."""

    def __init__(self, path: Path) -> None:
        self.path = path
        path.mkdir(parents=True)
        git(path, "init", "--quiet")
        git(path, "symbolic-ref", "HEAD", "refs/heads/main")
        self._counter = 0

    def commit(self, count: int = 1) -> None:
        for _ in range(count):
            self._counter += 1
            (self.path / "CHANGES").write_text(f"change {self._counter}\n")
            git(self.path, "add", "CHANGES")
            git(self.path, "commit", "--quiet", "-m", f"change {self._counter}")

    def merge_branch(self, name: str, commits: int) -> None:
        """Add *commits* on a side branch and merge it into main with a merge commit."""
        git(self.path, "checkout", "--quiet", "-b", name)
        for i in range(commits):
            (self.path / f"{name}-{i}").write_text(f"{name} {i}\n")
            git(self.path, "add", f"{name}-{i}")
            git(self.path, "commit", "--quiet", "-m", f"{name} {i}")
        git(self.path, "checkout", "--quiet", "main")
        git(self.path, "merge", "--quiet", "--no-ff", "-m", f"merge {name}", name)


@pytest.fixture()
def fixture_repo(tmp_path: Path) -> Callable[[str, int], FixtureRepo]:
    """Factory: ``fixture_repo("svc-a", 7)`` builds a repo with 7 commits on main."""

    def make(name: str = "svc-a", commits: int = 1) -> FixtureRepo:
        repo = FixtureRepo(tmp_path / "origin" / name)
        repo.commit(commits)
        return repo

    return make


def make_config(tmp_path: Path, **overrides: object) -> PipelineConfig:
    """Create a PipelineConfig with fast timings rooted in *tmp_path*."""
    values: dict[str, object] = {
        "registry": Credentials("acme", "registry-pass"),
        "source": Credentials("acme-bot", "source-pass"),
        "update_authority_url": "http://updater.test",
        "workspace_root": tmp_path / "workspaces",
        "timeouts": StageTimeouts(),
        "push_attempts": 3,
        "push_backoff_seconds": 0,
        "trigger_policy": TriggerPolicy.QUEUE,
        "max_concurrent_runs": 4,
        "history_limit": 10,
    }
    values.update(overrides)
    return PipelineConfig(**values)  # type: ignore[arg-type]


@pytest.fixture()
def pipeline_config(tmp_path: Path) -> PipelineConfig:
    return make_config(tmp_path)
