# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the patchgate test suite.

This module provides foundational fixtures used across all test modules:
- Temporary Node-style repositories (plain and git-initialized)
- A bare remote so apply can push without network access
- Isolated configuration (no user or environment config leaks in)
- Fake command executors and recording audit clients

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
"""

from __future__ import annotations

import json
import shutil
import subprocess
from pathlib import Path
from typing import Any

import pytest

from patchgate.core.config import PipelineConfig, load_config
from patchgate.core.executor import CommandResult

# =============================================================================
# Environment isolation
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_config_env(tmp_path_factory, monkeypatch) -> Path:
    """Keep ~/.patchgate and $PATCHGATE_CONFIG out of every test."""
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("PATCHGATE_CONFIG", raising=False)
    return home


# =============================================================================
# Repository and File System Fixtures
# =============================================================================


def _git(args: list[str], cwd: Path) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    )


@pytest.fixture
def node_repo(tmp_path: Path) -> Path:
    """Create a small Node-style project without any gate configuration.

    Creates:
        - package.json (no scripts, no eslintConfig)
        - src/index.js
        - README.md

    No tsconfig.json, eslint config, build or test script exists, so every
    preflight gate is reported without running a command.
    """
    repo = tmp_path / "repo"
    repo.mkdir()
    (repo / "package.json").write_text(
        json.dumps({"name": "demo", "version": "1.0.0", "private": True}, indent=2) + "\n"
    )
    (repo / "src").mkdir()
    (repo / "src" / "index.js").write_text(
        "const a = 1;\nconst b = 2;\nmodule.exports = { a, b };\n"
    )
    (repo / "README.md").write_text("# Demo\n")
    return repo


@pytest.fixture
def git_repo(node_repo: Path) -> Path:
    """node_repo with a real git history (one commit on HEAD).

    WARNING: Runs actual git commands. Skips when git is unavailable.
    """
    if shutil.which("git") is None:
        pytest.skip("Git not available")
    try:
        _git(["init"], node_repo)
        _git(["config", "user.email", "test@example.com"], node_repo)
        _git(["config", "user.name", "Test User"], node_repo)
        _git(["config", "commit.gpgsign", "false"], node_repo)
        _git(["add", "."], node_repo)
        _git(["commit", "-m", "Initial commit"], node_repo)
    except subprocess.CalledProcessError:
        pytest.skip("Git not available")
    return node_repo


@pytest.fixture
def git_repo_with_remote(git_repo: Path, tmp_path: Path) -> tuple[Path, Path]:
    """git_repo with a local bare repository registered as ``origin``.

    Returns:
        (repo, bare_remote)
    """
    remote = tmp_path / "remote.git"
    _git(["init", "--bare", str(remote)], tmp_path)
    _git(["remote", "add", "origin", str(remote)], git_repo)
    return git_repo, remote


def remote_branches(remote: Path) -> list[str]:
    result = _git(["for-each-ref", "--format=%(refname:short)", "refs/heads"], remote)
    return [line for line in result.stdout.splitlines() if line]


def local_branches(repo: Path) -> list[str]:
    result = _git(["for-each-ref", "--format=%(refname:short)", "refs/heads"], repo)
    return [line for line in result.stdout.splitlines() if line]


def worktree_count(repo: Path) -> int:
    result = _git(["worktree", "list", "--porcelain"], repo)
    return sum(1 for line in result.stdout.splitlines() if line.startswith("worktree "))


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def pipeline_config(tmp_path: Path) -> PipelineConfig:
    """Packaged default configuration with workspaces under tmp_path."""
    config = load_config()
    workspace = config.workspace.model_copy(update={"temp_root": tmp_path / "workspaces"})
    audit = config.audit.model_copy(update={"backend": "none"})
    return config.model_copy(update={"workspace": workspace, "audit": audit})


# =============================================================================
# Fakes
# =============================================================================


class FakeExecutor:
    """CommandExecutor stand-in returning canned results keyed by command text.

    Example:
        executor = FakeExecutor({"npx tsc --noEmit": (2, "error TS2322")})
    """

    def __init__(self, responses: dict[str, tuple[int, str]] | None = None, default=(0, "ok")):
        self.responses = responses or {}
        self.default = default
        self.calls: list[dict[str, Any]] = []

    def run(self, command, workdir=None, timeout=300, env=None) -> CommandResult:
        self.calls.append(
            {"command": list(command), "workdir": workdir, "timeout": timeout, "env": env}
        )
        key = " ".join(command)
        returncode, output = self.responses.get(key, self.default)
        if returncode == "timeout":
            return CommandResult(
                command=list(command),
                returncode=-1,
                output=f"Timed out after {timeout}s",
                timed_out=True,
            )
        return CommandResult(command=list(command), returncode=returncode, output=output)

    @property
    def commands(self) -> list[str]:
        return [" ".join(call["command"]) for call in self.calls]


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


class RecordingAuditClient:
    """AuditClient that keeps every call in memory."""

    def __init__(self):
        self.calls: list[tuple[str, tuple]] = []

    def execution_started(self, proposal_id, kind, timestamp):
        self.calls.append(("execution_started", (proposal_id, kind, timestamp)))

    def execution_ended(self, proposal_id, kind, status, details):
        self.calls.append(("execution_ended", (proposal_id, kind, status, details)))

    def preflight_completed(self, proposal_id, checklist):
        self.calls.append(("preflight_completed", (proposal_id, checklist)))

    def apply_completed(self, proposal_id, branch_name, commit_sha, apply_log, success):
        self.calls.append(
            ("apply_completed", (proposal_id, branch_name, commit_sha, apply_log, success))
        )

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


@pytest.fixture
def recording_audit() -> RecordingAuditClient:
    return RecordingAuditClient()


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "integration: marks integration tests")
    config.addinivalue_line("markers", "git: marks tests requiring git")
