"""Shared utility functions for patchgate core modules."""

from __future__ import annotations

import posixpath
import time
from datetime import UTC, datetime
from pathlib import Path


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def epoch_millis() -> int:
    """Wallclock timestamp in milliseconds, used for workspace and branch names."""
    return int(time.time() * 1000)


def normalize_patch_path(file_path: str) -> str:
    """Normalize a patch-supplied path to canonical slash-separated form.

    Purely lexical: never touches the filesystem. Backslashes become slashes,
    leading "./" and duplicate separators are dropped, and "." segments are
    removed. ".." segments are kept so callers can reject them.

    Examples:
        "./src//a.ts" -> "src/a.ts"
        "src\\b.ts"   -> "src/b.ts"
    """
    value = file_path.replace("\\", "/").strip()
    while value.startswith("./"):
        value = value[2:]
    while "//" in value:
        value = value.replace("//", "/")

    leading_slash = value.startswith("/")
    segments = [seg for seg in value.split("/") if seg not in ("", ".")]
    normalized = "/".join(segments)
    if leading_slash:
        normalized = "/" + normalized
    return normalized


def is_absolute_patch_path(file_path: str) -> bool:
    """True for POSIX absolute paths and Windows drive or UNC paths."""
    value = file_path.replace("\\", "/")
    if value.startswith("/"):
        return True
    return len(value) > 1 and value[1] == ":" and value[0].isalpha()


def has_traversal(file_path: str) -> bool:
    """True if any segment of the path is "..".

    Checked on the raw value so "a/../b" is rejected even though it would
    collapse to a path inside the tree.
    """
    return ".." in file_path.replace("\\", "/").split("/")


def resolve_within(root: Path, relative_path: str) -> Path:
    """Resolve relative_path under root, refusing anything that escapes it.

    SECURITY: Resolution follows symlinks, so a symlinked parent directory that
    points outside root is caught here even when the lexical path looks safe.

    Raises:
        ValueError: If the resolved path is not inside root.
    """
    resolved_root = root.resolve()
    candidate = (resolved_root / posixpath.normpath(relative_path)).resolve()
    try:
        candidate.relative_to(resolved_root)
    except ValueError:
        raise ValueError(f"Path '{relative_path}' resolves outside '{resolved_root}'")
    return candidate


def truncate_output(output: str, max_length: int = 20000) -> str:
    """Truncate output preserving both head and tail.

    Tool logs usually carry the actual failure at the END (test summaries,
    compiler error counts), so only keeping the head loses the useful part.

    Returns: First ~40% + separator + last ~60% if truncation is needed.
    """
    if len(output) <= max_length:
        return output

    min_for_split = 60
    if max_length < min_for_split:
        if max_length <= 3:
            return output[:max_length]
        return output[: max_length - 3] + "..."

    truncated_chars = len(output) - max_length
    separator = f"\n\n... [{truncated_chars} chars truncated] ...\n\n"
    available = max_length - len(separator)
    if available < 20:
        return output[: max_length - 3] + "..."

    head_size = int(available * 0.4)
    tail_size = available - head_size
    return f"{output[:head_size]}{separator}{output[-tail_size:]}"
