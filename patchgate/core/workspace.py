"""Disposable, isolated workspaces for patch application.

Each dry-run or apply gets its own workspace outside the real repository:
a git worktree on a fresh branch when git is usable, otherwise a plain copy
of the tree. Every workspace is destroyed on every exit path; the main
working tree is never written to.
"""

from __future__ import annotations

import logging
import os
import secrets
import shutil
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Literal

from filelock import FileLock
from filelock import Timeout as FileLockTimeout

from patchgate.core.git import GitError, git_available, git_common_dir, is_work_tree, run_git
from patchgate.core.utils import epoch_millis, utc_now

logger = logging.getLogger(__name__)

DEFAULT_COPY_EXCLUDE = (
    ".git",
    "node_modules",
    "dist",
    "build",
    ".next",
    "coverage",
    ".patchgate",
)


class WorkspaceError(Exception):
    """Error while provisioning a workspace."""

    pass


@dataclass
class Workspace:
    """An isolated checkout plus the branch identity it was created for."""

    path: Path
    branch_name: str
    strategy: Literal["worktree", "copy"]
    repo_root: Path
    branch_created: bool = False
    created_at: datetime = field(default_factory=utc_now)

    @property
    def is_versioned(self) -> bool:
        return self.strategy == "worktree"


def make_branch_name(prefix: str = "ai-proposal") -> str:
    """``<prefix>-<epoch ms>-<4 hex>``; the suffix separates same-millisecond runs."""
    return f"{prefix}-{epoch_millis()}-{secrets.token_hex(2)}"


def _safe_dir_prefix(branch_name: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in "-_" else "-" for ch in branch_name)
    cleaned = cleaned.lstrip(".-")[:48]
    return f"{cleaned or 'workspace'}-"


def _remove_tree(path: Path) -> None:
    """Forcefully remove a workspace directory without following symlinks."""
    if not path.exists() and not path.is_symlink():
        return
    if path.is_symlink():
        path.unlink()
        return

    try:
        shutil.rmtree(path)
    except OSError:
        # Read-only entries (e.g. git pack files) block rmtree; make the tree writable.
        for root, dirs, files in os.walk(path):
            for name in dirs + files:
                entry = os.path.join(root, name)
                if not os.path.islink(entry):
                    os.chmod(entry, 0o700)
        shutil.rmtree(path)


class WorkspaceStrategy(ABC):
    """How a workspace directory is materialized."""

    name: str

    def __init__(self, repo_root: Path, git_timeout: int = 60):
        self.repo_root = repo_root
        self.git_timeout = git_timeout

    @abstractmethod
    def create(self, branch_name: str, path: Path) -> Workspace:
        """Populate path (an empty directory) for branch_name."""

    @abstractmethod
    def destroy(self, workspace: Workspace) -> None:
        """Remove everything create() produced. Must never raise."""


class WorktreeStrategy(WorkspaceStrategy):
    """``git worktree add -b <branch>`` at a temporary path."""

    name = "worktree"
    LOCK_TIMEOUT = 60
    LOCK_FILENAME = "patchgate-worktree.lock"

    def _lock(self) -> FileLock:
        # git's worktree metadata is shared by every worktree of the repo.
        common_dir = git_common_dir(self.repo_root, self.git_timeout)
        return FileLock(str(common_dir / self.LOCK_FILENAME), timeout=self.LOCK_TIMEOUT)

    def create(self, branch_name: str, path: Path) -> Workspace:
        """Raises GitError if git refuses (including an existing branch name)."""
        prefix = run_git(["rev-parse", "--show-prefix"], self.repo_root, self.git_timeout)
        if prefix.stdout.strip():
            raise GitError(f"{self.repo_root} is not the top level of its work tree")
        try:
            with self._lock():
                # -b, not -B: an existing local branch must never be reset.
                run_git(
                    ["worktree", "add", "-b", branch_name, str(path), "HEAD"],
                    self.repo_root,
                    self.git_timeout,
                )
        except FileLockTimeout:
            raise GitError(f"Timed out waiting for worktree lock after {self.LOCK_TIMEOUT}s")
        return Workspace(
            path=path,
            branch_name=branch_name,
            strategy="worktree",
            repo_root=self.repo_root,
            branch_created=True,
        )

    def destroy(self, workspace: Workspace) -> None:
        try:
            lock = self._lock()
        except GitError as e:
            logger.warning(f"Cannot locate git directory for cleanup of {workspace.path}: {e}")
            lock = None

        try:
            if lock is not None:
                lock.acquire()
        except FileLockTimeout:
            logger.warning("Worktree lock timed out during cleanup; continuing without it")
            lock = None

        try:
            self._git_step(["worktree", "remove", "--force", str(workspace.path)])
            if workspace.branch_created:
                self._git_step(["branch", "-D", workspace.branch_name])
            try:
                _remove_tree(workspace.path)
            except OSError as e:
                logger.warning(f"Failed to remove workspace directory {workspace.path}: {e}")
            self._git_step(["worktree", "prune"])
        finally:
            if lock is not None:
                lock.release()

    def _git_step(self, args: list[str]) -> None:
        try:
            run_git(args, self.repo_root, self.git_timeout)
        except GitError as e:
            logger.warning(f"Cleanup step 'git {' '.join(args[:2])}' failed: {e}")


class CopyStrategy(WorkspaceStrategy):
    """Recursive copy of the repository, minus version control and build output."""

    name = "copy"

    def __init__(
        self,
        repo_root: Path,
        git_timeout: int = 60,
        exclude: Iterable[str] = DEFAULT_COPY_EXCLUDE,
    ):
        super().__init__(repo_root, git_timeout)
        self.exclude = frozenset(exclude)

    def _ignore(self, src: str, names: list[str]) -> list[str]:
        return [name for name in names if name in self.exclude]

    def create(self, branch_name: str, path: Path) -> Workspace:
        try:
            # symlinks=True copies links as links; nothing outside the tree is read.
            shutil.copytree(
                self.repo_root,
                path,
                symlinks=True,
                ignore=self._ignore,
                dirs_exist_ok=True,
            )
        except (OSError, shutil.Error) as e:
            raise WorkspaceError(f"Failed to copy repository into workspace: {e}") from e
        return Workspace(
            path=path,
            branch_name=branch_name,
            strategy="copy",
            repo_root=self.repo_root,
            branch_created=False,
        )

    def destroy(self, workspace: Workspace) -> None:
        try:
            _remove_tree(workspace.path)
        except OSError as e:
            logger.warning(f"Failed to remove workspace directory {workspace.path}: {e}")


class WorkspaceProvisioner:
    """Creates and destroys workspaces for one repository.

    Usage:
        provisioner = WorkspaceProvisioner(repo_root)
        with provisioner.workspace("ai-proposal-1") as ws:
            ...  # ws.path is disposable
    """

    def __init__(
        self,
        repo_root: Path,
        temp_root: Path | None = None,
        git_timeout: int = 60,
        copy_exclude: Iterable[str] = DEFAULT_COPY_EXCLUDE,
        prefer_worktree: bool = True,
    ):
        self.repo_root = Path(repo_root).absolute()
        if not self.repo_root.is_dir():
            raise WorkspaceError(f"Repository root does not exist: {self.repo_root}")
        self.temp_root = Path(temp_root) if temp_root else None
        self.git_timeout = git_timeout
        self.prefer_worktree = prefer_worktree
        self.worktree_strategy = WorktreeStrategy(self.repo_root, git_timeout)
        self.copy_strategy = CopyStrategy(self.repo_root, git_timeout, copy_exclude)

    def _worktree_usable(self) -> bool:
        return self.prefer_worktree and git_available() and is_work_tree(
            self.repo_root, self.git_timeout
        )

    def _make_temp_dir(self, branch_name: str) -> Path:
        if self.temp_root is not None:
            self.temp_root.mkdir(parents=True, exist_ok=True)
        path = Path(
            tempfile.mkdtemp(
                prefix=_safe_dir_prefix(branch_name),
                dir=str(self.temp_root) if self.temp_root else None,
            )
        ).absolute()
        if path.resolve() == self.repo_root.resolve():
            raise WorkspaceError(f"Workspace path equals the repository root: {path}")
        return path

    def provision(self, branch_name: str) -> Workspace:
        """Create a workspace for branch_name.

        Worktree failures of any kind fall back to a copy.

        Raises:
            WorkspaceError: If neither strategy can produce a workspace.
        """
        path = self._make_temp_dir(branch_name)
        try:
            if self._worktree_usable():
                try:
                    workspace = self.worktree_strategy.create(branch_name, path)
                    logger.info(f"Provisioned worktree {path} on branch {branch_name}")
                    return workspace
                except GitError as e:
                    logger.warning(f"git worktree unavailable ({e}); falling back to copy")
                    # A failed "worktree add" may leave a partial directory behind.
                    _remove_tree(path)
                    path.mkdir(parents=True)
            workspace = self.copy_strategy.create(branch_name, path)
            logger.info(f"Provisioned copy workspace {path} for {branch_name}")
            return workspace
        except BaseException:
            try:
                _remove_tree(path)
            except OSError as e:
                logger.warning(f"Failed to remove partial workspace {path}: {e}")
            raise

    def destroy(self, workspace: Workspace | None) -> None:
        """Tear down a workspace. Idempotent; logs failures, never raises."""
        if workspace is None:
            return
        if workspace.path.resolve() == self.repo_root.resolve():
            logger.warning(f"Refusing to destroy the repository root {workspace.path}")
            return
        strategy = (
            self.worktree_strategy if workspace.strategy == "worktree" else self.copy_strategy
        )
        try:
            strategy.destroy(workspace)
        except Exception as e:
            logger.warning(f"Workspace cleanup for {workspace.path} failed: {e}")
        logger.info(f"Destroyed workspace {workspace.path}")

    @contextmanager
    def workspace(self, branch_name: str) -> Generator[Workspace, None, None]:
        ws = self.provision(branch_name)
        try:
            yield ws
        finally:
            self.destroy(ws)
