"""Apply unified diffs and operation lists to a workspace.

Unified diffs use a deliberately simple line-based model: for each file the
removed lines are dropped by first value match and the added lines are
appended at the end of the file. Hunk line counts only delimit hunk bodies;
hunk positions and context lines are not used for placement. Callers that
need exact placement should send an operation list with full file contents
instead.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from patchgate.core.allowlist import Allowlist, PathNotAllowedError
from patchgate.core.models import (
    INVALID_PATCH_FORMAT,
    FileOperation,
    InvalidPatchError,
    OperationListPatch,
    PatchOutcome,
    UnifiedPatch,
)
from patchgate.core.utils import resolve_within

logger = logging.getLogger(__name__)

ChangeKind = Literal["add", "remove"]

DEV_NULL = "/dev/null"
KNOWN_OPS = ("add", "replace", "remove")


@dataclass
class FileDiff:
    """Changes for one file section of a unified diff."""

    path: str
    changes: list[tuple[ChangeKind, str]] = field(default_factory=list)
    hunks: int = 0
    deleted: bool = False


_C_ESCAPES = {
    "a": 0x07,
    "b": 0x08,
    "t": 0x09,
    "n": 0x0A,
    "v": 0x0B,
    "f": 0x0C,
    "r": 0x0D,
    '"': 0x22,
    "\\": 0x5C,
}

_HUNK_HEADER = re.compile(r"^@@ -\d+(?:,(?P<old>\d+))? \+\d+(?:,(?P<new>\d+))? @@")


def _unquote_git_path(value: str) -> str:
    """Decode a C-style quoted path as written by git (core.quotePath).

    Raises:
        InvalidPatchError: On a malformed escape or bytes that are not UTF-8.
    """
    raw = bytearray()
    index = 0
    while index < len(value):
        char = value[index]
        if char != "\\":
            raw.extend(char.encode("utf-8"))
            index += 1
            continue
        escape = value[index + 1 : index + 2]
        if escape in _C_ESCAPES:
            raw.append(_C_ESCAPES[escape])
            index += 2
        elif len(value[index + 1 : index + 4]) == 3 and all(
            c in "01234567" for c in value[index + 1 : index + 4]
        ):
            raw.append(int(value[index + 1 : index + 4], 8))
            index += 4
        else:
            raise InvalidPatchError(detail=f"bad escape in quoted path {value!r}")
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidPatchError(detail=f"quoted path is not UTF-8: {value!r}") from e


def _header_path(line: str) -> str:
    # "+++ b/src/a.ts\t2024-01-01 ..." -> "src/a.ts"
    value = line[4:].split("\t", 1)[0].strip()
    if value.startswith('"') and value.endswith('"') and len(value) > 1:
        value = _unquote_git_path(value[1:-1])
    if value == DEV_NULL:
        return value
    if value.startswith(("a/", "b/")):
        value = value[2:]
    return value


def parse_unified_diff(diff: str) -> list[FileDiff]:
    """Fold a unified diff into per-file change lists.

    Inside a hunk the line counts from its "@@ -a,b +c,d @@" header decide
    where the body ends, so removed or added lines that start with "--" or
    "++" are never mistaken for file headers. Outside a hunk a "--- " line is
    a header only when the next line is a "+++ " header.

    Raises:
        InvalidPatchError: If a quoted header path cannot be decoded.
    """
    files: list[FileDiff] = []
    current: FileDiff | None = None
    source: str | None = None
    # Lines left in the current hunk body; None when not in a counted hunk.
    old_left: int | None = None
    new_left: int | None = None
    lines = diff.splitlines()

    for index, line in enumerate(lines):
        if current is not None and old_left is not None and new_left is not None:
            if line.startswith("\\"):
                continue
            if line.startswith("-"):
                current.changes.append(("remove", line[1:]))
                old_left -= 1
            elif line.startswith("+"):
                current.changes.append(("add", line[1:]))
                new_left -= 1
            else:
                # Context; a blank line is context whose leading space was stripped.
                old_left -= 1
                new_left -= 1
            if old_left <= 0 and new_left <= 0:
                old_left = new_left = None
            continue

        next_line = lines[index + 1] if index + 1 < len(lines) else ""
        if line.startswith("--- ") and next_line.startswith("+++ "):
            source = _header_path(line)
            continue
        if line.startswith("+++ ") and source is not None:
            target = _header_path(line)
            if target == DEV_NULL:
                current = FileDiff(path=source, deleted=True)
            else:
                current = FileDiff(path=target)
            files.append(current)
            source = None
            continue
        if current is None:
            # Preamble: "diff --git", "index", mode lines, commit messages.
            continue
        if line.startswith("@@"):
            current.hunks += 1
            match = _HUNK_HEADER.match(line)
            if match:
                old_left = int(match.group("old") or 1)
                new_left = int(match.group("new") or 1)
                if old_left <= 0 and new_left <= 0:
                    old_left = new_left = None
        elif line.startswith("+"):
            current.changes.append(("add", line[1:]))
        elif line.startswith("-"):
            current.changes.append(("remove", line[1:]))
        # Context lines, "\ No newline at end of file" and metadata are ignored.

    return files


def apply_line_changes(content: str, changes: list[tuple[ChangeKind, str]]) -> str:
    """Apply add/remove changes to file content, keeping a trailing newline if present."""
    trailing_newline = content.endswith("\n")
    lines = content.split("\n") if content else []
    if trailing_newline:
        lines.pop()

    for kind, text in changes:
        if kind == "add":
            lines.append(text)
        else:
            try:
                lines.remove(text)
            except ValueError:
                logger.debug(f"Line to remove not found: {text!r}")

    result = "\n".join(lines)
    if trailing_newline and lines:
        result += "\n"
    return result


class PatchApplier:
    """Apply a patch inside a workspace, confined by an allowlist.

    Every target path is validated before the first write: a patch naming a
    single disallowed path leaves the workspace untouched.
    """

    def __init__(self, allowlist: Allowlist):
        self.allowlist = allowlist

    def apply(self, patch: object, workspace_path: Path) -> PatchOutcome:
        workspace_path = Path(workspace_path)
        if isinstance(patch, UnifiedPatch):
            return self._apply_unified(patch, workspace_path)
        if isinstance(patch, OperationListPatch):
            return self._apply_ops(patch, workspace_path)
        return PatchOutcome.failure(INVALID_PATCH_FORMAT)

    def _validate(self, raw_path: str, workspace_path: Path) -> tuple[str, Path]:
        """Return the normalized relative path and its absolute location.

        Both the path as written and the path it resolves to (after following
        symlinks) must pass the allowlist.

        Raises:
            PathNotAllowedError: If the allowlist rejects it or it resolves
                outside the workspace.
        """
        normalized = self.allowlist.check(raw_path)
        try:
            target = resolve_within(workspace_path, normalized)
        except ValueError as e:
            raise PathNotAllowedError(raw_path, str(e)) from e

        resolved = target.relative_to(workspace_path.resolve()).as_posix()
        if resolved != normalized:
            reason = self.allowlist.explain(resolved)
            if reason is not None:
                raise PathNotAllowedError(raw_path, f"resolves to '{resolved}': {reason}")
        return normalized, target

    def _validate_all(
        self, raw_paths: list[str], workspace_path: Path
    ) -> dict[str, tuple[str, Path]] | PatchOutcome:
        resolved: dict[str, tuple[str, Path]] = {}
        for raw_path in raw_paths:
            try:
                normalized, target = self._validate(raw_path, workspace_path)
            except PathNotAllowedError as e:
                logger.warning(f"Rejected patch path {e.path!r}: {e.detail}")
                return PatchOutcome.failure(str(e))
            resolved[raw_path] = (normalized, target)
        return resolved

    def _apply_unified(self, patch: UnifiedPatch, workspace_path: Path) -> PatchOutcome:
        try:
            file_diffs = parse_unified_diff(patch.diff)
        except InvalidPatchError as e:
            logger.warning(f"Rejected unified diff: {e.detail}")
            return PatchOutcome.failure(INVALID_PATCH_FORMAT)
        if not file_diffs:
            return PatchOutcome.failure(INVALID_PATCH_FORMAT)

        resolved = self._validate_all([fd.path for fd in file_diffs], workspace_path)
        if isinstance(resolved, PatchOutcome):
            return resolved

        touched: list[str] = []
        for file_diff in file_diffs:
            normalized, target = resolved[file_diff.path]
            try:
                if file_diff.deleted:
                    if target.exists() or target.is_symlink():
                        target.unlink()
                elif file_diff.changes or not target.exists():
                    existing = target.read_text(encoding="utf-8") if target.exists() else ""
                    target.parent.mkdir(parents=True, exist_ok=True)
                    with open(target, "w", encoding="utf-8", newline="") as f:
                        f.write(apply_line_changes(existing, file_diff.changes))
            except (OSError, UnicodeDecodeError) as e:
                return PatchOutcome.failure(
                    f"Failed to apply changes to {file_diff.path}: {e}", touched
                )
            if normalized not in touched:
                touched.append(normalized)

        logger.info(f"Applied unified diff touching {len(touched)} file(s)")
        return PatchOutcome(ok=True, touched_paths=touched)

    def _apply_ops(self, patch: OperationListPatch, workspace_path: Path) -> PatchOutcome:
        resolved = self._validate_all(patch.target_paths(), workspace_path)
        if isinstance(resolved, PatchOutcome):
            return resolved

        touched: list[str] = []
        for operation in patch.ops:
            if operation.op not in KNOWN_OPS:
                logger.warning(f"Skipping unknown operation {operation.op!r} on {operation.path}")
                continue
            normalized, target = resolved[operation.path]
            try:
                self._apply_operation(operation, target)
            except OSError as e:
                return PatchOutcome.failure(
                    f"Failed to apply operation {operation.op} on {operation.path}: {e}",
                    touched,
                )
            if normalized not in touched:
                touched.append(normalized)

        logger.info(f"Applied {len(patch.ops)} operation(s) touching {len(touched)} file(s)")
        return PatchOutcome(ok=True, touched_paths=touched)

    @staticmethod
    def _apply_operation(operation: FileOperation, target: Path) -> None:
        if operation.op == "remove":
            if target.exists() or target.is_symlink():
                target.unlink()
            return
        # add and replace both write the full content.
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w", encoding="utf-8", newline="") as f:
            f.write(operation.content or "")
