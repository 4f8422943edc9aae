"""Preflight gates: type-check, lint, build and tests inside a workspace."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

from patchgate.core.executor import CommandExecutor
from patchgate.core.gate_models import PREFLIGHT_GATES, GateConfig, GateResult, GateStatus
from patchgate.core.models import PreflightChecklist
from patchgate.core.utils import truncate_output

if TYPE_CHECKING:
    from patchgate.core.config import PipelineConfig

logger = logging.getLogger(__name__)

# What "npm init" writes for the test script; not a real test suite.
NPM_PLACEHOLDER_TEST = "no test specified"


def read_package_json(workspace_path: Path) -> dict[str, Any] | None:
    """Parse package.json, or None if it is missing or unreadable."""
    package_json = workspace_path / "package.json"
    if not package_json.is_file():
        return None
    try:
        data = json.loads(package_json.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"Cannot read {package_json}: {e}")
        return None
    return data if isinstance(data, dict) else None


def has_package_script(package: dict[str, Any] | None, script: str) -> bool:
    if not package:
        return False
    scripts = package.get("scripts")
    if not isinstance(scripts, dict):
        return False
    command = scripts.get(script)
    if not isinstance(command, str) or not command.strip():
        return False
    if script == "test" and NPM_PLACEHOLDER_TEST in command:
        return False
    return True


class PreflightRunner:
    """Run the fixed set of preflight gates sequentially.

    Gates never short-circuit: a failing type-check still lets lint, build
    and tests run, so the checklist is always complete.
    """

    def __init__(
        self,
        gates: list[GateConfig],
        executor: CommandExecutor | None = None,
        max_log_chars: int = 20000,
    ):
        names = [gate.name for gate in gates]
        if sorted(names) != sorted(PREFLIGHT_GATES):
            raise ValueError(f"Expected gates {list(PREFLIGHT_GATES)}, got {names}")
        self.gates = sorted(gates, key=lambda gate: PREFLIGHT_GATES.index(gate.name))
        self.executor = executor or CommandExecutor()
        self.max_log_chars = max_log_chars

    @classmethod
    def from_config(
        cls, config: PipelineConfig, executor: CommandExecutor | None = None
    ) -> PreflightRunner:
        return cls(config.gate_configs(), executor, config.output.max_log_chars)

    def prerequisites_met(self, gate: GateConfig, workspace_path: Path) -> bool:
        """True when the gate has something to check in this workspace."""
        if not gate.has_prerequisites:
            return True
        if any((workspace_path / name).exists() for name in gate.config_files):
            return True
        package = None
        if gate.package_json_key or gate.package_script:
            package = read_package_json(workspace_path)
        if gate.package_json_key and package and gate.package_json_key in package:
            return True
        if gate.package_script and has_package_script(package, gate.package_script):
            return True
        return False

    def run_gate(self, gate: GateConfig, workspace_path: Path) -> GateResult:
        if not self.prerequisites_met(gate, workspace_path):
            logger.info(f"Gate {gate.name}: prerequisites absent, {gate.when_missing.value}")
            return GateResult(
                gate_name=gate.name,
                status=gate.when_missing,
                output=f"{gate.name}: not configured in workspace",
                duration_seconds=0,
            )

        start_time = time.time()
        result = self.executor.run(
            command=gate.command,
            workdir=workspace_path,
            timeout=gate.timeout,
            env=gate.env or None,
        )
        duration = time.time() - start_time

        status = GateStatus.PASS if result.ok else GateStatus.FAIL
        if result.timed_out:
            logger.warning(f"Gate {gate.name} timed out after {gate.timeout}s")
        else:
            logger.info(f"Gate {gate.name}: {status.value} ({duration:.1f}s)")
        return GateResult(
            gate_name=gate.name,
            status=status,
            output=truncate_output(result.output, self.max_log_chars),
            duration_seconds=duration,
            returncode=None if result.timed_out else result.returncode,
            timed_out=result.timed_out,
        )

    def run_gates(self, workspace_path: Path) -> list[GateResult]:
        workspace_path = Path(workspace_path)
        return [self.run_gate(gate, workspace_path) for gate in self.gates]

    def run(self, workspace_path: Path) -> PreflightChecklist:
        return PreflightChecklist.from_results(self.run_gates(workspace_path))
