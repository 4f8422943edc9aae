"""Path allowlist guarding every file a patch may touch."""

from __future__ import annotations

import logging
import posixpath
from collections.abc import Iterable
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import TYPE_CHECKING

from patchgate.core.utils import has_traversal, is_absolute_patch_path, normalize_patch_path

if TYPE_CHECKING:
    from patchgate.core.config import AllowlistSettings

logger = logging.getLogger(__name__)

DEFAULT_DENY_DIRS = (
    ".git",
    "node_modules",
    "dist",
    "build",
    ".next",
    "coverage",
    ".venv",
    "__pycache__",
    ".patchgate",
)
DEFAULT_DENY_NAMES = (".env", ".npmrc", ".netrc", "id_rsa", "id_ed25519")
DEFAULT_DENY_NAME_PREFIXES = (".env.",)
DEFAULT_DENY_EXTENSIONS = (".pem", ".key", ".p12", ".pfx", ".crt", ".secrets")

_GLOB_CHARS = frozenset("*?[")


class PathNotAllowedError(Exception):
    """A patch targets a path rejected by the allowlist."""

    def __init__(self, path: str, detail: str | None = None):
        self.path = path
        self.detail = detail
        super().__init__(f"File not in allowlist: {path}")


def _glob_match(path: str, pattern: str) -> bool:
    if fnmatchcase(path, pattern):
        return True
    # "**/" may match zero directories: "src/**/*.ts" covers "src/a.ts".
    if "**/" in pattern and fnmatchcase(path, pattern.replace("**/", "")):
        return True
    # Slash-free patterns also match on the basename.
    if "/" not in pattern and fnmatchcase(posixpath.basename(path), pattern):
        return True
    return False


def pattern_matches(path: str, pattern: str) -> bool:
    """Match a normalized path against one allow pattern.

    - glob (contains ``*``, ``?`` or ``[``): fnmatch with ``**`` support
    - ends with ``/``: directory prefix
    - anything else: exact, prefix or substring match
    """
    pattern = normalize_patch_path(pattern) + ("/" if pattern.endswith("/") else "")
    if not pattern or pattern == "/":
        return False
    if any(ch in _GLOB_CHARS for ch in pattern):
        return _glob_match(path, pattern)
    if pattern.endswith("/"):
        return path.startswith(pattern)
    return path == pattern or pattern in path


@dataclass(frozen=True)
class Allowlist:
    """Decides which workspace-relative paths a patch may mutate.

    Deny rules always win. With no allow patterns every path that survives
    the deny rules is allowed.
    """

    patterns: tuple[str, ...] = ()
    deny_dirs: frozenset[str] = field(default_factory=lambda: frozenset(DEFAULT_DENY_DIRS))
    deny_names: frozenset[str] = field(default_factory=lambda: frozenset(DEFAULT_DENY_NAMES))
    deny_name_prefixes: tuple[str, ...] = DEFAULT_DENY_NAME_PREFIXES
    deny_extensions: frozenset[str] = field(
        default_factory=lambda: frozenset(DEFAULT_DENY_EXTENSIONS)
    )

    @classmethod
    def from_patterns(cls, patterns: Iterable[str]) -> Allowlist:
        return cls(patterns=tuple(p for p in patterns if p and p.strip()))

    @classmethod
    def from_config(
        cls,
        settings: AllowlistSettings,
        patterns: Iterable[str] | None = None,
    ) -> Allowlist:
        """Build from configuration. Explicit ``patterns`` replace the configured ones."""
        allow = list(patterns) if patterns is not None else list(settings.patterns)
        return cls(
            patterns=tuple(p for p in allow if p and p.strip()),
            deny_dirs=frozenset(name.lower() for name in settings.deny_dirs),
            deny_names=frozenset(name.lower() for name in settings.deny_names),
            deny_name_prefixes=tuple(prefix.lower() for prefix in settings.deny_name_prefixes),
            deny_extensions=frozenset(ext.lower() for ext in settings.deny_extensions),
        )

    def explain(self, path: str) -> str | None:
        """Return why path is rejected, or None if it is allowed."""
        if not path or not path.strip():
            return "empty path"
        if "\x00" in path:
            return "path contains NUL byte"
        if is_absolute_patch_path(path):
            return "absolute path"
        if has_traversal(path):
            return "path traversal ('..')"

        normalized = normalize_patch_path(path)
        if not normalized:
            return "empty path"

        segments = normalized.split("/")
        for segment in segments[:-1]:
            if segment.lower() in self.deny_dirs:
                return f"denied directory '{segment}/'"
        # A path naming a denied directory itself is denied too.
        if segments[-1].lower() in self.deny_dirs:
            return f"denied directory '{segments[-1]}/'"

        name = segments[-1].lower()
        if name in self.deny_names:
            return f"denied file name '{segments[-1]}'"
        if any(name.startswith(prefix) for prefix in self.deny_name_prefixes):
            return f"denied file name '{segments[-1]}'"
        _, ext = posixpath.splitext(name)
        if ext and ext in self.deny_extensions:
            return f"denied extension '{ext}'"

        if self.patterns and not any(pattern_matches(normalized, p) for p in self.patterns):
            return "no allow pattern matches"
        return None

    def is_allowed(self, path: str) -> bool:
        reason = self.explain(path)
        if reason is not None:
            logger.debug(f"Rejected path {path!r}: {reason}")
            return False
        return True

    def check(self, path: str) -> str:
        """Return the normalized path, raising if it is not allowed.

        Raises:
            PathNotAllowedError: If the path is rejected.
        """
        reason = self.explain(path)
        if reason is not None:
            raise PathNotAllowedError(path, reason)
        return normalize_patch_path(path)
