"""Tests for the path allowlist."""

from __future__ import annotations

import pytest

from patchgate.core.allowlist import Allowlist, PathNotAllowedError, pattern_matches
from patchgate.core.config import load_config


class TestRejections:
    """Paths rejected regardless of allow patterns."""

    @pytest.mark.parametrize(
        "path",
        [
            "",
            "   ",
            "../etc/passwd",
            "src/../../secret.ts",
            "a/../b.ts",
            "/etc/passwd",
            "C:/Windows/system32",
            "C:\\Windows\\system32",
            "src/a\x00.ts",
        ],
    )
    def test_unsafe_paths_rejected(self, path):
        assert Allowlist().is_allowed(path) is False

    @pytest.mark.parametrize(
        "path",
        [
            ".git/config",
            "node_modules/left-pad/index.js",
            "packages/app/node_modules/x.js",
            "dist/bundle.js",
            "build/index.html",
            ".next/cache/x",
            "coverage/lcov.info",
            ".env",
            "config/.env",
            ".env.production",
            ".npmrc",
            "keys/id_rsa",
            "certs/server.pem",
            "certs/server.key",
            "app.secrets",
            ".GIT/hooks/pre-commit",
            "Node_Modules/pkg/index.js",
            "DIST/bundle.js",
            "src/.ENV",
            "certs/Server.PEM",
        ],
    )
    def test_denied_paths_rejected_even_when_pattern_matches(self, path):
        allowlist = Allowlist.from_patterns(["*", "**/*"])
        assert allowlist.is_allowed(path) is False

    def test_explain_names_reason(self):
        allowlist = Allowlist()
        assert allowlist.explain("../x") == "path traversal ('..')"
        assert allowlist.explain("node_modules/x.js") == "denied directory 'node_modules/'"
        assert allowlist.explain("a/.env") == "denied file name '.env'"
        assert allowlist.explain("a.pem") == "denied extension '.pem'"
        assert allowlist.explain("src/a.ts") is None


class TestAllowPatterns:
    """Allow pattern semantics."""

    def test_no_patterns_allows_everything_not_denied(self):
        allowlist = Allowlist()
        assert allowlist.is_allowed("src/app.ts")
        assert allowlist.is_allowed("README.md")

    def test_glob_basename_match(self):
        allowlist = Allowlist.from_patterns(["*.md"])
        assert allowlist.is_allowed("readme.md")
        assert allowlist.is_allowed("docs/guide.md")
        assert not allowlist.is_allowed("src/app.ts")

    def test_double_star_matches_zero_or_more_directories(self):
        allowlist = Allowlist.from_patterns(["src/**/*.ts"])
        assert allowlist.is_allowed("src/a.ts")
        assert allowlist.is_allowed("src/deep/nested/a.ts")
        assert not allowlist.is_allowed("lib/a.ts")

    def test_directory_prefix(self):
        allowlist = Allowlist.from_patterns(["src/components/"])
        assert allowlist.is_allowed("src/components/Button.tsx")
        assert not allowlist.is_allowed("src/componentsX/Button.tsx")
        assert not allowlist.is_allowed("src/App.tsx")

    def test_plain_prefix_and_substring(self):
        allowlist = Allowlist.from_patterns(["src/utils"])
        assert allowlist.is_allowed("src/utils.ts")
        assert allowlist.is_allowed("src/utils/math.ts")
        assert allowlist.is_allowed("packages/src/utils/x.ts")
        assert not allowlist.is_allowed("src/app.ts")

    def test_normalization_before_matching(self):
        allowlist = Allowlist.from_patterns(["src/"])
        assert allowlist.is_allowed("./src//a.ts")
        assert allowlist.is_allowed("src\\b.ts")
        assert allowlist.is_allowed("src/./c.ts")

    def test_pattern_matches_helper(self):
        assert pattern_matches("a/b/c.md", "*.md")
        assert pattern_matches("a/b/c.md", "a/")
        assert not pattern_matches("ab/c.md", "a/")


class TestCheck:
    """check() returns normalized paths or raises."""

    def test_returns_normalized(self):
        assert Allowlist().check("./src//a.ts") == "src/a.ts"

    def test_raises_with_path(self):
        with pytest.raises(PathNotAllowedError) as exc_info:
            Allowlist.from_patterns(["src/"]).check("readme.md")
        assert exc_info.value.path == "readme.md"
        assert str(exc_info.value) == "File not in allowlist: readme.md"
        assert exc_info.value.detail == "no allow pattern matches"


class TestFromConfig:
    """Building from configuration."""

    def test_uses_configured_deny_rules(self):
        settings = load_config().allowlist
        allowlist = Allowlist.from_config(settings)
        assert not allowlist.is_allowed("node_modules/x.js")
        assert not allowlist.is_allowed("id_ed25519")
        assert allowlist.patterns == ()

    def test_explicit_patterns_replace_configured(self):
        settings = load_config().allowlist.model_copy(update={"patterns": ["docs/"]})
        assert Allowlist.from_config(settings).is_allowed("docs/a.md")
        assert not Allowlist.from_config(settings).is_allowed("src/a.ts")

        overridden = Allowlist.from_config(settings, ["src/"])
        assert overridden.is_allowed("src/a.ts")
        assert not overridden.is_allowed("docs/a.md")

    def test_configured_deny_dirs_ignore_case(self):
        settings = load_config().allowlist.model_copy(update={"deny_dirs": ["Vendor"]})
        allowlist = Allowlist.from_config(settings)
        assert not allowlist.is_allowed("vendor/lib.js")
        assert not allowlist.is_allowed("VENDOR/lib.js")
        assert allowlist.explain("pkg/VeNdOr/x.js") == "denied directory 'VeNdOr/'"

    def test_custom_deny_extension(self):
        settings = load_config().allowlist.model_copy(update={"deny_extensions": [".LOG"]})
        allowlist = Allowlist.from_config(settings)
        assert not allowlist.is_allowed("server.log")
        assert allowlist.is_allowed("server.pem")
