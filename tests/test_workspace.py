"""Tests for workspace provisioning (worktree and copy strategies)."""

from __future__ import annotations

import re
import subprocess
from pathlib import Path

import pytest

from conftest import local_branches, worktree_count
from patchgate.core.git import GitError
from patchgate.core.workspace import (
    CopyStrategy,
    Workspace,
    WorkspaceError,
    WorkspaceProvisioner,
    make_branch_name,
)


class TestBranchNames:
    """make_branch_name."""

    def test_format(self):
        name = make_branch_name("ai-proposal")
        assert re.fullmatch(r"ai-proposal-\d{13}-[0-9a-f]{4}", name)

    def test_unique_within_same_millisecond(self, mocker):
        mocker.patch("patchgate.core.workspace.epoch_millis", return_value=1700000000000)
        names = {make_branch_name("p") for _ in range(50)}
        assert len(names) > 1


class TestCopyWorkspace:
    """Copy fallback on a directory that is not a git repository."""

    def test_provision_copies_tree_without_excluded_dirs(self, node_repo, tmp_path):
        (node_repo / "node_modules" / "dep").mkdir(parents=True)
        (node_repo / "node_modules" / "dep" / "index.js").write_text("x")
        (node_repo / "dist").mkdir()
        (node_repo / "dist" / "bundle.js").write_text("x")

        provisioner = WorkspaceProvisioner(node_repo, temp_root=tmp_path / "ws")
        ws = provisioner.provision("feature-1")
        try:
            assert ws.strategy == "copy"
            assert ws.branch_created is False
            assert ws.path != node_repo
            assert (ws.path / "package.json").exists()
            assert (ws.path / "src" / "index.js").exists()
            assert not (ws.path / "node_modules").exists()
            assert not (ws.path / "dist").exists()
        finally:
            provisioner.destroy(ws)
        assert not ws.path.exists()

    def test_symlinks_copied_as_links(self, node_repo, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "secret.txt").write_text("s")
        (node_repo / "link").symlink_to(outside, target_is_directory=True)

        provisioner = WorkspaceProvisioner(node_repo, temp_root=tmp_path / "ws")
        with provisioner.workspace("b") as ws:
            assert (ws.path / "link").is_symlink()
        assert (outside / "secret.txt").exists()

    def test_destroy_is_idempotent(self, node_repo, tmp_path):
        provisioner = WorkspaceProvisioner(node_repo, temp_root=tmp_path / "ws")
        ws = provisioner.provision("b")
        provisioner.destroy(ws)
        provisioner.destroy(ws)
        provisioner.destroy(None)
        assert not ws.path.exists()

    def test_context_manager_destroys_on_error(self, node_repo, tmp_path):
        provisioner = WorkspaceProvisioner(node_repo, temp_root=tmp_path / "ws")
        with pytest.raises(RuntimeError):
            with provisioner.workspace("b") as ws:
                raise RuntimeError("boom")
        assert not ws.path.exists()

    def test_copy_failure_raises_and_cleans(self, node_repo, tmp_path, mocker):
        mocker.patch(
            "patchgate.core.workspace.shutil.copytree", side_effect=OSError("disk full")
        )
        provisioner = WorkspaceProvisioner(node_repo, temp_root=tmp_path / "ws")
        with pytest.raises(WorkspaceError, match="disk full"):
            provisioner.provision("b")
        assert list((tmp_path / "ws").iterdir()) == []

    def test_missing_repo_root(self, tmp_path):
        with pytest.raises(WorkspaceError):
            WorkspaceProvisioner(tmp_path / "nope")

    def test_never_destroys_repo_root(self, node_repo):
        provisioner = WorkspaceProvisioner(node_repo)
        bogus = Workspace(path=node_repo, branch_name="x", strategy="copy", repo_root=node_repo)
        provisioner.destroy(bogus)
        assert (node_repo / "package.json").exists()

    def test_copy_strategy_custom_exclude(self, node_repo, tmp_path):
        strategy = CopyStrategy(node_repo, exclude=["src"])
        target = tmp_path / "copy"
        ws = strategy.create("b", target)
        assert not (ws.path / "src").exists()
        assert (ws.path / "README.md").exists()


@pytest.mark.git
class TestWorktreeWorkspace:
    """Worktree strategy against a real git repository."""

    def test_provision_creates_branch_and_worktree(self, git_repo, tmp_path):
        provisioner = WorkspaceProvisioner(git_repo, temp_root=tmp_path / "ws")
        ws = provisioner.provision("ai-proposal-test")
        try:
            assert ws.strategy == "worktree"
            assert ws.branch_created is True
            assert ws.path.resolve() != git_repo.resolve()
            assert (ws.path / "package.json").exists()
            assert "ai-proposal-test" in local_branches(git_repo)
            assert worktree_count(git_repo) == 2
        finally:
            provisioner.destroy(ws)

        assert not ws.path.exists()
        assert "ai-proposal-test" not in local_branches(git_repo)
        assert worktree_count(git_repo) == 1

    def test_main_tree_untouched_by_workspace_writes(self, git_repo, tmp_path):
        provisioner = WorkspaceProvisioner(git_repo, temp_root=tmp_path / "ws")
        with provisioner.workspace("b1") as ws:
            (ws.path / "README.md").write_text("changed")
        assert (git_repo / "README.md").read_text() == "# Demo\n"
        status = subprocess.run(
            ["git", "status", "--porcelain"], cwd=git_repo, capture_output=True, text=True
        )
        assert status.stdout.strip() == ""

    def test_existing_branch_falls_back_to_copy_and_is_kept(self, git_repo, tmp_path):
        subprocess.run(["git", "branch", "keep-me"], cwd=git_repo, check=True)
        provisioner = WorkspaceProvisioner(git_repo, temp_root=tmp_path / "ws")
        ws = provisioner.provision("keep-me")
        try:
            assert ws.strategy == "copy"
            assert ws.branch_created is False
            assert not (ws.path / ".git").exists()
        finally:
            provisioner.destroy(ws)
        assert "keep-me" in local_branches(git_repo)

    def test_git_failure_falls_back_to_copy(self, git_repo, tmp_path, mocker, caplog):
        mocker.patch(
            "patchgate.core.workspace.WorktreeStrategy.create",
            side_effect=GitError("git worktree failed"),
        )
        provisioner = WorkspaceProvisioner(git_repo, temp_root=tmp_path / "ws")
        with provisioner.workspace("b2") as ws:
            assert ws.strategy == "copy"
            assert (ws.path / "package.json").exists()
        assert "falling back to copy" in caplog.text

    def test_prefer_worktree_false_uses_copy(self, git_repo, tmp_path):
        provisioner = WorkspaceProvisioner(
            git_repo, temp_root=tmp_path / "ws", prefer_worktree=False
        )
        with provisioner.workspace("b3") as ws:
            assert ws.strategy == "copy"

    def test_destroy_after_manual_removal(self, git_repo, tmp_path):
        provisioner = WorkspaceProvisioner(git_repo, temp_root=tmp_path / "ws")
        ws = provisioner.provision("b4")
        import shutil

        shutil.rmtree(ws.path)
        provisioner.destroy(ws)
        assert "b4" not in local_branches(git_repo)
        assert worktree_count(git_repo) == 1

    def test_concurrent_provisioning(self, git_repo, tmp_path):
        from concurrent.futures import ThreadPoolExecutor

        provisioner = WorkspaceProvisioner(git_repo, temp_root=tmp_path / "ws")
        names = [f"par-{i}" for i in range(4)]
        with ThreadPoolExecutor(max_workers=4) as pool:
            workspaces = list(pool.map(provisioner.provision, names))
        try:
            assert all(ws.strategy == "worktree" for ws in workspaces)
            assert len({ws.path for ws in workspaces}) == 4
        finally:
            for ws in workspaces:
                provisioner.destroy(ws)
        assert worktree_count(git_repo) == 1


def test_workspace_is_versioned_property(tmp_path: Path):
    ws = Workspace(path=tmp_path, branch_name="b", strategy="worktree", repo_root=tmp_path)
    assert ws.is_versioned
    ws.strategy = "copy"
    assert not ws.is_versioned
