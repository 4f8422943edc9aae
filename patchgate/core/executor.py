"""Local command execution with deadlines.

Every subprocess the pipeline starts goes through ``CommandExecutor.run``:
the child is placed in its own session so that a timeout can kill the whole
process group (npm and npx spawn grandchildren that would otherwise survive).
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from pathlib import Path

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class CommandResult(BaseModel):
    """Result of a local command. ``output`` is stdout and stderr interleaved."""

    command: list[str]
    returncode: int
    output: str
    timed_out: bool = False
    not_found: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


def _kill_process_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        # Group already gone; fall back to the direct child.
        try:
            proc.kill()
        except ProcessLookupError:
            pass


class CommandExecutor:
    """Run commands in a working directory with an explicit timeout."""

    def __init__(self, workdir: Path | None = None, env: dict[str, str] | None = None):
        self.workdir = Path(workdir).absolute() if workdir else Path.cwd()
        self.env = env

    def run(
        self,
        command: list[str],
        workdir: str | Path | None = None,
        timeout: int = 300,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        """Run command, returning its combined output.

        Never raises for command-level failures: a missing executable or a
        timeout is reported through the result.
        """
        effective_workdir = Path(workdir) if workdir else self.workdir
        merged_env = None
        if self.env or env:
            merged_env = dict(os.environ)
            merged_env.update(self.env or {})
            merged_env.update(env or {})

        logger.debug(f"Running {' '.join(command)} in {effective_workdir} (timeout {timeout}s)")
        try:
            proc = subprocess.Popen(
                command,
                cwd=effective_workdir,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                env=merged_env,
                start_new_session=True,
            )
        except FileNotFoundError:
            return CommandResult(
                command=command,
                returncode=127,
                output=f"Command not found: {command[0]}",
                not_found=True,
            )
        except OSError as e:
            return CommandResult(
                command=command,
                returncode=126,
                output=f"Failed to start {command[0]}: {e}",
            )

        try:
            output, _ = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            _kill_process_group(proc)
            partial, _ = proc.communicate()
            logger.warning(f"Command timed out after {timeout}s: {' '.join(command)}")
            message = f"Timed out after {timeout}s"
            return CommandResult(
                command=command,
                returncode=-1,
                output=f"{partial}\n{message}" if partial else message,
                timed_out=True,
            )

        return CommandResult(command=command, returncode=proc.returncode, output=output or "")
