"""Tests for the read-only discovery scan."""

from __future__ import annotations

import json

from conftest import FakeExecutor
from patchgate.core.allowlist import Allowlist
from patchgate.core.discovery import DiscoveryRunner

TSC_OUTPUT = """\
src/app.ts(12,5): error TS2322: Type 'string' is not assignable to type 'number'.
node_modules/lib/index.d.ts(1,1): error TS2300: Duplicate identifier 'x'.
Found 2 errors in 2 files.
"""


def _eslint_report(repo, *files):
    return json.dumps(
        [
            {
                "filePath": str(repo / name),
                "messages": [
                    {"line": 3, "ruleId": "no-unused-vars", "message": "'x' is unused."},
                    {"line": None, "ruleId": None, "message": "Parsing error"},
                ],
            }
            for name in files
        ]
    )


class TestDiscoveryRunner:
    """Tool selection and parsing."""

    def test_nothing_configured(self, node_repo, fake_executor):
        result = DiscoveryRunner(node_repo, Allowlist(), fake_executor).run()
        assert fake_executor.calls == []
        assert result.evidence == []
        assert result.skipped_tools == ["tsc (no tsconfig.json)", "eslint (no config found)"]
        assert result.to_dict() == {
            "evidence": [],
            "evidenceCount": 0,
            "skippedTools": ["tsc (no tsconfig.json)", "eslint (no config found)"],
        }

    def test_tsc_findings_filtered_by_allowlist(self, node_repo):
        (node_repo / "tsconfig.json").write_text("{}")
        executor = FakeExecutor({"npx tsc --noEmit --pretty false": (2, TSC_OUTPUT)})
        result = DiscoveryRunner(node_repo, Allowlist(), executor).run()

        assert result.evidence_count == 1
        entry = result.evidence[0]
        assert (entry.file, entry.line, entry.rule) == ("src/app.ts", 12, "TS2322")
        assert entry.note.startswith("Type 'string'")

    def test_eslint_json_with_preamble(self, node_repo):
        (node_repo / ".eslintrc.json").write_text("{}")
        report = "npm notice: update available\n" + _eslint_report(
            node_repo, "src/index.js", "dist/out.js"
        )
        executor = FakeExecutor({"npx eslint . --format json": (1, report)})
        result = DiscoveryRunner(node_repo, Allowlist(), executor).run()

        assert [(e.file, e.line, e.rule) for e in result.evidence] == [
            ("src/index.js", 3, "no-unused-vars"),
            ("src/index.js", 1, "eslint"),
        ]
        assert result.skipped_tools == ["tsc (no tsconfig.json)"]

    def test_allow_patterns_restrict_findings(self, node_repo):
        (node_repo / ".eslintrc.json").write_text("{}")
        report = _eslint_report(node_repo, "src/index.js", "scripts/tool.js")
        executor = FakeExecutor({"npx eslint . --format json": (1, report)})
        result = DiscoveryRunner(node_repo, Allowlist.from_patterns(["scripts/"]), executor).run()
        assert {entry.file for entry in result.evidence} == {"scripts/tool.js"}

    def test_unparseable_eslint_output(self, node_repo):
        (node_repo / ".eslintrc.json").write_text("{}")
        executor = FakeExecutor({"npx eslint . --format json": (2, "Oops! Something went wrong")})
        result = DiscoveryRunner(node_repo, Allowlist(), executor).run()
        assert "eslint (unparseable output)" in result.skipped_tools

    def test_tool_timeout_is_skipped(self, node_repo):
        (node_repo / "tsconfig.json").write_text("{}")
        executor = FakeExecutor({"npx tsc --noEmit --pretty false": ("timeout", "")})
        result = DiscoveryRunner(node_repo, Allowlist(), executor).run()
        assert "tsc (execution failed)" in result.skipped_tools

    def test_never_writes_to_repository(self, node_repo):
        (node_repo / "tsconfig.json").write_text("{}")
        before = sorted(p.relative_to(node_repo) for p in node_repo.rglob("*"))
        DiscoveryRunner(node_repo, Allowlist(), FakeExecutor()).run()
        after = sorted(p.relative_to(node_repo) for p in node_repo.rglob("*"))
        assert before == after
