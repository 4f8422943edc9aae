"""Pydantic models for patches, preflight checklists and pipeline results."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from patchgate.core.gate_models import PREFLIGHT_GATES, GateResult, GateStatus

INVALID_PATCH_FORMAT = "Invalid patch format"


class InvalidPatchError(Exception):
    """Patch payload does not match any supported variant."""

    def __init__(self, message: str = INVALID_PATCH_FORMAT, detail: str | None = None):
        self.detail = detail
        super().__init__(message)


# --- Patch ---


class FileOperation(BaseModel):
    """A single structured file operation.

    ``op`` is deliberately a free string: unknown kinds are accepted here and
    skipped (with a warning) by the applier.
    """

    model_config = ConfigDict(frozen=True)

    path: str
    op: str
    content: str | None = None


class UnifiedPatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["unified"] = "unified"
    diff: str


class OperationListPatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["ops"] = "ops"
    ops: tuple[FileOperation, ...] = ()

    def target_paths(self) -> list[str]:
        return [operation.path for operation in self.ops]


Patch = Annotated[UnifiedPatch | OperationListPatch, Field(discriminator="type")]

_patch_adapter: TypeAdapter[UnifiedPatch | OperationListPatch] = TypeAdapter(Patch)


def parse_patch(
    data: Mapping[str, Any] | UnifiedPatch | OperationListPatch,
) -> UnifiedPatch | OperationListPatch:
    """Validate a raw mapping into a patch variant.

    Raises:
        InvalidPatchError: If the mapping has no known ``type`` or bad fields.
    """
    if isinstance(data, (UnifiedPatch, OperationListPatch)):
        return data
    if not isinstance(data, Mapping):
        raise InvalidPatchError(detail=f"expected a mapping, got {type(data).__name__}")
    try:
        return _patch_adapter.validate_python(dict(data))
    except ValidationError as e:
        raise InvalidPatchError(detail=str(e)) from e


class PatchOutcome(BaseModel):
    """Result of applying a patch to a workspace."""

    ok: bool
    reason: str | None = None
    touched_paths: list[str] = Field(default_factory=list)

    @classmethod
    def failure(cls, reason: str, touched_paths: list[str] | None = None) -> PatchOutcome:
        return cls(ok=False, reason=reason, touched_paths=touched_paths or [])


# --- Preflight ---


class PreflightChecklist(BaseModel):
    """Status of every preflight gate plus the captured log of each."""

    model_config = ConfigDict(frozen=True)

    tsc: GateStatus
    eslint: GateStatus
    build: GateStatus
    tests: GateStatus
    logs: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_results(cls, results: Iterable[GateResult]) -> PreflightChecklist:
        by_name = {result.gate_name: result for result in results}
        missing = [name for name in PREFLIGHT_GATES if name not in by_name]
        if missing:
            raise ValueError(f"Missing gate results: {missing}")
        return cls(
            **{name: by_name[name].status for name in PREFLIGHT_GATES},
            logs={name: by_name[name].output for name in PREFLIGHT_GATES},
        )

    def status_of(self, gate_name: str) -> GateStatus:
        if gate_name not in PREFLIGHT_GATES:
            raise KeyError(gate_name)
        return getattr(self, gate_name)

    def failed_gates(self, names: Iterable[str] = PREFLIGHT_GATES) -> list[str]:
        """Names among ``names`` whose status is fail, in checklist order."""
        wanted = set(names)
        return [
            name
            for name in PREFLIGHT_GATES
            if name in wanted and self.status_of(name) == GateStatus.FAIL
        ]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {name: self.status_of(name).value for name in PREFLIGHT_GATES}
        data["logs"] = dict(self.logs)
        return data


# --- Pipeline results ---


class RollbackInstructions(BaseModel):
    model_config = ConfigDict(frozen=True)

    branch_name: str
    commit_sha: str
    commands: list[str]
    summary: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "branchName": self.branch_name,
            "commitSha": self.commit_sha,
            "commands": list(self.commands),
            "summary": self.summary,
        }


class ExecutionResult(BaseModel):
    """Outcome of a dry-run or apply.

    ``state`` is the last pipeline state reached, kept for diagnosis.
    """

    ok: bool
    reason: str | None = None
    checklist: PreflightChecklist | None = None
    branch_name: str | None = None
    commit_sha: str | None = None
    logs: dict[str, str] = Field(default_factory=dict)
    rollback: RollbackInstructions | None = None
    state: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Wire shape with camelCase keys; unset fields are omitted."""
        data: dict[str, Any] = {"ok": self.ok}
        if self.reason is not None:
            data["reason"] = self.reason
        if self.checklist is not None:
            data["checklist"] = self.checklist.to_dict()
        if self.branch_name is not None:
            data["branchName"] = self.branch_name
        if self.commit_sha is not None:
            data["commitSha"] = self.commit_sha
        if self.logs:
            data["logs"] = dict(self.logs)
        if self.rollback is not None:
            data["rollback"] = self.rollback.to_dict()
        if self.state is not None:
            data["state"] = self.state
        return data
