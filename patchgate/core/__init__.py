"""Core modules for the patchgate pipeline."""

from patchgate.core.allowlist import Allowlist
from patchgate.core.models import (
    ExecutionResult,
    FileOperation,
    OperationListPatch,
    Patch,
    PatchOutcome,
    PreflightChecklist,
    RollbackInstructions,
    UnifiedPatch,
    parse_patch,
)
from patchgate.core.pipeline import ExecutionPipeline

__all__ = [
    "Allowlist",
    "ExecutionPipeline",
    "ExecutionResult",
    "FileOperation",
    "OperationListPatch",
    "Patch",
    "PatchOutcome",
    "PreflightChecklist",
    "RollbackInstructions",
    "UnifiedPatch",
    "parse_patch",
]
