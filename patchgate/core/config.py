"""Pipeline configuration loading.

Configuration is YAML, validated with pydantic. The packaged default
(``patchgate/config/pipeline.yaml``) is always loaded first; the first user
file found on the search path is deep-merged over it:

1. explicit path (``--config`` / ``load_config(path)``)
2. ``$PATCHGATE_CONFIG``
3. ``<repo>/.patchgate/config.yaml``
4. ``~/.patchgate/config.yaml``
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from patchgate.core.gate_models import (
    DEFAULT_CRITICAL_GATES,
    PACKAGE_DIR,
    PREFLIGHT_GATES,
    GateConfig,
    GateConfigError,
    GateStatus,
)
from patchgate.core.workspace import DEFAULT_COPY_EXCLUDE

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = PACKAGE_DIR / "config" / "pipeline.yaml"
CONFIG_ENV_VAR = "PATCHGATE_CONFIG"


class ConfigError(Exception):
    """Invalid or unreadable configuration file."""

    pass


class WorkspaceSettings(BaseModel):
    temp_root: Path | None = None
    branch_prefix: str = "ai-proposal"
    git_timeout: int = 60
    copy_exclude: list[str] = Field(
        default_factory=lambda: list(DEFAULT_COPY_EXCLUDE)
    )


class AllowlistSettings(BaseModel):
    patterns: list[str] = Field(default_factory=list)
    deny_dirs: list[str] = Field(default_factory=list)
    deny_names: list[str] = Field(default_factory=list)
    deny_name_prefixes: list[str] = Field(default_factory=list)
    deny_extensions: list[str] = Field(default_factory=list)


class GateSettings(BaseModel):
    name: str
    command: list[str]
    description: str = ""
    timeout: int = 300
    config_files: list[str] = Field(default_factory=list)
    package_json_key: str | None = None
    package_script: str | None = None
    when_missing: Literal["skipped", "pass"] = "skipped"
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("command", mode="before")
    @classmethod
    def _split_command(cls, value: Any) -> Any:
        # Allow "npx tsc --noEmit" as shorthand for a list.
        if isinstance(value, str):
            return value.split()
        return value

    def to_gate_config(self) -> GateConfig:
        return GateConfig(
            name=self.name,
            command=list(self.command),
            description=self.description,
            timeout=self.timeout,
            config_files=list(self.config_files),
            package_json_key=self.package_json_key,
            package_script=self.package_script,
            when_missing=GateStatus(self.when_missing),
            env=dict(self.env),
        )


class GitSettings(BaseModel):
    remote: str = "origin"
    committer_name: str = "patchgate"
    committer_email: str = "patchgate@localhost"
    push_timeout: int = 120
    commit_message_template: str = "AI-generated proposal: {branch}"


class AuditSettings(BaseModel):
    backend: Literal["logging", "sqlite", "none"] = "logging"
    db_path: Path = Path(".patchgate/audit.db")


class OutputSettings(BaseModel):
    max_log_chars: int = 20000


class PipelineConfig(BaseModel):
    """Validated pipeline configuration."""

    workspace: WorkspaceSettings = Field(default_factory=WorkspaceSettings)
    allowlist: AllowlistSettings = Field(default_factory=AllowlistSettings)
    gates: list[GateSettings] = Field(default_factory=list)
    critical_gates: list[str] = Field(default_factory=lambda: list(DEFAULT_CRITICAL_GATES))
    git: GitSettings = Field(default_factory=GitSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    output: OutputSettings = Field(default_factory=OutputSettings)

    def gate_configs(self) -> list[GateConfig]:
        """Build gate configs, checking the checklist keys are exactly covered."""
        configs = [gate.to_gate_config() for gate in self.gates]
        names = [config.name for config in configs]
        if len(set(names)) != len(names):
            raise GateConfigError(f"Duplicate gate names in configuration: {names}")
        unknown = [name for name in names if name not in PREFLIGHT_GATES]
        if unknown:
            raise GateConfigError(
                f"Unknown gates {unknown}; expected only {list(PREFLIGHT_GATES)}"
            )
        missing = [name for name in PREFLIGHT_GATES if name not in names]
        if missing:
            raise GateConfigError(f"Missing gate definitions: {missing}")
        # Fixed execution order regardless of file order.
        return sorted(configs, key=lambda config: PREFLIGHT_GATES.index(config.name))

    @field_validator("critical_gates")
    @classmethod
    def _known_critical_gates(cls, value: list[str]) -> list[str]:
        unknown = [name for name in value if name not in PREFLIGHT_GATES]
        if unknown:
            raise ValueError(f"unknown critical gates: {unknown}")
        return value


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge override into a copy of base. Mappings merge, everything else replaces."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing YAML file '{path}': {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file '{path}': {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Invalid configuration in '{path}': expected a mapping, got {type(data).__name__}"
        )
    return data


def find_user_config(repo_root: Path | None = None, explicit: Path | None = None) -> Path | None:
    """Return the first existing user configuration file on the search path."""
    candidates: list[Path] = []
    if explicit is not None:
        if not explicit.exists():
            raise ConfigError(f"Configuration file not found: {explicit}")
        return explicit
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        candidates.append(Path(env_path))
    if repo_root is not None:
        candidates.append(repo_root / ".patchgate" / "config.yaml")
    candidates.append(Path.home() / ".patchgate" / "config.yaml")

    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def load_config(
    path: str | Path | None = None,
    repo_root: str | Path | None = None,
) -> PipelineConfig:
    """Load the pipeline configuration.

    Args:
        path: Explicit configuration file; must exist when given.
        repo_root: Repository whose ``.patchgate/config.yaml`` is consulted.

    Raises:
        ConfigError: If a file cannot be parsed or fails validation.
    """
    data = _read_yaml(DEFAULT_CONFIG_PATH)
    user_path = find_user_config(
        Path(repo_root) if repo_root is not None else None,
        Path(path) if path is not None else None,
    )
    if user_path is not None:
        logger.debug(f"Merging configuration from {user_path}")
        data = _deep_merge(data, _read_yaml(user_path))

    try:
        config = PipelineConfig(**data)
        config.gate_configs()
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {details}") from e
    except GateConfigError as e:
        raise ConfigError(f"Invalid gate configuration: {e}") from e
    return config
