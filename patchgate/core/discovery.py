"""Read-only repository scan producing evidence for future proposals.

Runs the TypeScript compiler and ESLint against the real repository
without writing anything, and reports one ``EvidenceEntry`` per finding.
Findings in files the allowlist rejects are dropped.
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path

from pydantic import BaseModel, Field

from patchgate.core.allowlist import Allowlist
from patchgate.core.executor import CommandExecutor
from patchgate.core.preflight import read_package_json
from patchgate.core.utils import normalize_patch_path

logger = logging.getLogger(__name__)

DISCOVERY_TIMEOUT = 120

ESLINT_CONFIG_FILES = (
    "eslint.config.js",
    "eslint.config.mjs",
    "eslint.config.cjs",
    ".eslintrc",
    ".eslintrc.js",
    ".eslintrc.cjs",
    ".eslintrc.json",
    ".eslintrc.yml",
    ".eslintrc.yaml",
)

# src/app.ts(12,5): error TS2322: Type 'string' is not assignable ...
_TSC_ERROR = re.compile(
    r"^(?P<file>.+\.(?:ts|tsx|mts|cts))\((?P<line>\d+),\d+\): "
    r"error (?P<code>TS\d+): (?P<note>.+)$"
)


class EvidenceEntry(BaseModel):
    file: str
    line: int
    rule: str
    note: str


class DiscoveryResult(BaseModel):
    evidence: list[EvidenceEntry] = Field(default_factory=list)
    evidence_count: int = 0
    skipped_tools: list[str] = Field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "evidence": [entry.model_dump() for entry in self.evidence],
            "evidenceCount": self.evidence_count,
            "skippedTools": list(self.skipped_tools),
        }


class DiscoveryRunner:
    """Collect tsc and eslint findings for a repository."""

    def __init__(
        self,
        repo_root: Path,
        allowlist: Allowlist,
        executor: CommandExecutor | None = None,
        timeout: int = DISCOVERY_TIMEOUT,
    ):
        self.repo_root = Path(repo_root).absolute()
        self.allowlist = allowlist
        self.executor = executor or CommandExecutor(self.repo_root)
        self.timeout = timeout

    def run(self) -> DiscoveryResult:
        skipped: list[str] = []
        evidence = self._run_tsc(skipped) + self._run_eslint(skipped)
        logger.info(
            f"Discovery finished: {len(evidence)} evidence entries, {len(skipped)} tools skipped"
        )
        return DiscoveryResult(
            evidence=evidence, evidence_count=len(evidence), skipped_tools=skipped
        )

    def _relative(self, file_path: str) -> str | None:
        """Repository-relative form of a tool-reported path, or None if outside."""
        path = Path(file_path)
        if path.is_absolute():
            try:
                return path.relative_to(self.repo_root).as_posix()
            except ValueError:
                try:
                    return path.resolve().relative_to(self.repo_root.resolve()).as_posix()
                except ValueError:
                    return None
        return normalize_patch_path(file_path)

    def _accept(self, file_path: str) -> str | None:
        relative = self._relative(file_path)
        if relative is None or not self.allowlist.is_allowed(relative):
            logger.debug(f"Discovery finding suppressed for {file_path}")
            return None
        return relative

    def _run_tsc(self, skipped: list[str]) -> list[EvidenceEntry]:
        if not (self.repo_root / "tsconfig.json").exists():
            skipped.append("tsc (no tsconfig.json)")
            return []
        result = self.executor.run(
            ["npx", "tsc", "--noEmit", "--pretty", "false"],
            workdir=self.repo_root,
            timeout=self.timeout,
        )
        if result.not_found or result.timed_out:
            logger.warning(f"TypeScript check failed: {result.output.strip()[:200]}")
            skipped.append("tsc (execution failed)")
            return []
        return self.parse_tsc_output(result.output)

    def parse_tsc_output(self, output: str) -> list[EvidenceEntry]:
        evidence: list[EvidenceEntry] = []
        for line in output.splitlines():
            match = _TSC_ERROR.match(line.strip())
            if not match:
                continue
            relative = self._accept(match.group("file"))
            if relative is None:
                continue
            evidence.append(
                EvidenceEntry(
                    file=relative,
                    line=int(match.group("line")),
                    rule=match.group("code"),
                    note=match.group("note").strip(),
                )
            )
        return evidence

    def _has_eslint_config(self) -> bool:
        if any((self.repo_root / name).exists() for name in ESLINT_CONFIG_FILES):
            return True
        package = read_package_json(self.repo_root)
        return bool(package and "eslintConfig" in package)

    def _run_eslint(self, skipped: list[str]) -> list[EvidenceEntry]:
        if not self._has_eslint_config():
            skipped.append("eslint (no config found)")
            return []
        result = self.executor.run(
            ["npx", "eslint", ".", "--format", "json"],
            workdir=self.repo_root,
            timeout=self.timeout,
        )
        if result.not_found or result.timed_out:
            logger.warning(f"ESLint check failed: {result.output.strip()[:200]}")
            skipped.append("eslint (execution failed)")
            return []
        try:
            return self.parse_eslint_output(result.output)
        except ValueError as e:
            logger.warning(f"Failed to parse ESLint output: {e}")
            skipped.append("eslint (unparseable output)")
            return []

    def parse_eslint_output(self, output: str) -> list[EvidenceEntry]:
        """Parse ``--format json`` output.

        Raises:
            ValueError: If no JSON array can be found in the output.
        """
        # npx may print notices before the report.
        start = output.find("[")
        if start == -1:
            raise ValueError("no JSON report in output")
        reports = json.loads(output[start:])
        if not isinstance(reports, list):
            raise ValueError("ESLint report is not a list")

        evidence: list[EvidenceEntry] = []
        for report in reports:
            file_path = report.get("filePath", "")
            relative = self._accept(file_path.replace(os.sep, "/")) if file_path else None
            if relative is None:
                continue
            for message in report.get("messages") or []:
                evidence.append(
                    EvidenceEntry(
                        file=relative,
                        line=message.get("line") or 1,
                        rule=message.get("ruleId") or "eslint",
                        note=message.get("message", ""),
                    )
                )
        return evidence
