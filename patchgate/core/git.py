"""Thin wrapper over the git command line."""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 60


class GitError(Exception):
    """A git command failed or timed out."""

    def __init__(self, message: str, args: list[str] | None = None, output: str = ""):
        self.git_args = args or []
        self.output = output
        super().__init__(message)


def git_available() -> bool:
    return shutil.which("git") is not None


def run_git(
    args: list[str],
    cwd: Path,
    timeout: int = GIT_TIMEOUT,
    env: dict[str, str] | None = None,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    """Run ``git <args>`` in cwd.

    Raises:
        GitError: On timeout, missing git, or (when check is set) a non-zero exit.
    """
    command = ["git", *args]
    logger.debug(f"git {' '.join(args)} (cwd={cwd})")
    try:
        result = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
            stdin=subprocess.DEVNULL,
        )
    except subprocess.TimeoutExpired:
        raise GitError(f"git {args[0]} timed out after {timeout}s", args)
    except FileNotFoundError:
        raise GitError("git executable not found", args)

    if check and result.returncode != 0:
        detail = (result.stderr or result.stdout).strip()
        raise GitError(f"git {args[0]} failed: {detail}", args, detail)
    return result


def is_work_tree(path: Path, timeout: int = GIT_TIMEOUT) -> bool:
    """True if path is inside a git work tree."""
    if not git_available():
        return False
    try:
        result = run_git(["rev-parse", "--is-inside-work-tree"], path, timeout, check=False)
    except GitError:
        return False
    return result.returncode == 0 and result.stdout.strip() == "true"


def git_common_dir(path: Path, timeout: int = GIT_TIMEOUT) -> Path:
    """Absolute path of the repository's common git directory.

    Shared by all worktrees of the repository, so it is where the worktree
    lock lives.
    """
    result = run_git(["rev-parse", "--git-common-dir"], path, timeout)
    common = Path(result.stdout.strip())
    if not common.is_absolute():
        common = (path / common).resolve()
    return common


def head_sha(path: Path, timeout: int = GIT_TIMEOUT) -> str:
    result = run_git(["rev-parse", "HEAD"], path, timeout)
    return result.stdout.strip()


def commit_all(
    path: Path,
    message: str,
    author_name: str,
    author_email: str,
    timeout: int = GIT_TIMEOUT,
) -> str:
    """Stage everything in path, commit it, and return the new HEAD sha."""
    identity = [
        "-c", f"user.name={author_name}",
        "-c", f"user.email={author_email}",
    ]
    run_git(["add", "-A"], path, timeout)
    run_git([*identity, "commit", "-m", message], path, timeout)
    return head_sha(path, timeout)


def push_branch(path: Path, remote: str, branch: str, timeout: int = GIT_TIMEOUT) -> None:
    run_git(["push", remote, branch], path, timeout)
