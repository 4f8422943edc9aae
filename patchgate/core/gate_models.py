"""Gate configuration models, results, and core exceptions."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

PACKAGE_DIR = Path(__file__).parent.parent

# Checklist keys, in execution order.
PREFLIGHT_GATES: tuple[str, ...] = ("tsc", "eslint", "build", "tests")
DEFAULT_CRITICAL_GATES: tuple[str, ...] = ("tsc", "eslint", "build")


class GateStatus(str, Enum):
    """Execution status of a gate."""

    PASS = "pass"
    FAIL = "fail"
    SKIPPED = "skipped"


class GateConfigError(Exception):
    """Invalid gate configuration."""

    pass


@dataclass
class GateConfig:
    """Configuration for a preflight gate.

    A gate runs only when its prerequisites are present in the workspace:
    any of ``config_files`` exists, ``package_json_key`` is a top-level key
    of package.json, or ``package_script`` is declared under package.json
    "scripts". With no prerequisites declared the gate always runs. When the
    prerequisites are absent the gate reports ``when_missing`` without running.
    """

    name: str
    command: list[str]
    description: str = ""
    timeout: int = 300
    config_files: list[str] = field(default_factory=list)
    package_json_key: str | None = None
    package_script: str | None = None
    when_missing: GateStatus = GateStatus.SKIPPED
    env: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.command:
            raise GateConfigError(f"Gate '{self.name}' has an empty command")
        if self.timeout <= 0:
            raise GateConfigError(f"Gate '{self.name}' timeout must be positive")
        if self.when_missing == GateStatus.FAIL:
            raise GateConfigError(
                f"Gate '{self.name}': when_missing must be 'skipped' or 'pass'"
            )

    @property
    def has_prerequisites(self) -> bool:
        return bool(self.config_files or self.package_json_key or self.package_script)


@dataclass
class GateResult:
    """Result of gate execution."""

    gate_name: str
    status: GateStatus
    output: str
    duration_seconds: float
    returncode: int | None = None
    timed_out: bool = False

    @property
    def passed(self) -> bool:
        return self.status == GateStatus.PASS

    @property
    def skipped(self) -> bool:
        return self.status == GateStatus.SKIPPED

    @property
    def failed(self) -> bool:
        return self.status == GateStatus.FAIL
