"""Execution orchestrator: dry-run and apply flows.

Both flows walk the same states::

    IDLE -> PROVISIONED -> PATCH_APPLIED -> GATED -> COMMITTED | DISCARDED

and always finish with CLEANUP, which destroys the workspace. This module is
the only place where exceptions are turned into ``ExecutionResult`` failures.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from enum import Enum
from pathlib import Path
from typing import Any

from patchgate.core.allowlist import Allowlist
from patchgate.core.audit import AuditClient, AuditDispatcher, build_audit_client
from patchgate.core.config import PipelineConfig, load_config
from patchgate.core.git import GitError, commit_all, push_branch
from patchgate.core.models import (
    INVALID_PATCH_FORMAT,
    ExecutionResult,
    InvalidPatchError,
    OperationListPatch,
    PreflightChecklist,
    RollbackInstructions,
    UnifiedPatch,
    parse_patch,
)
from patchgate.core.patch import PatchApplier
from patchgate.core.preflight import PreflightRunner
from patchgate.core.utils import utc_now
from patchgate.core.workspace import Workspace, WorkspaceProvisioner, make_branch_name

logger = logging.getLogger(__name__)

PatchInput = UnifiedPatch | OperationListPatch | Mapping[str, Any]
AllowlistInput = Allowlist | Iterable[str] | None


class PipelineState(str, Enum):
    IDLE = "IDLE"
    PROVISIONED = "PROVISIONED"
    PATCH_APPLIED = "PATCH_APPLIED"
    GATED = "GATED"
    COMMITTED = "COMMITTED"
    DISCARDED = "DISCARDED"
    CLEANUP = "CLEANUP"


class _StateTrail:
    """Records the states a run passes through."""

    def __init__(self, kind: str, proposal_id: str):
        self.kind = kind
        self.proposal_id = proposal_id
        self.states: list[PipelineState] = [PipelineState.IDLE]

    def enter(self, state: PipelineState) -> None:
        self.states.append(state)
        logger.info(f"[{self.kind} {self.proposal_id}] -> {state.value}")

    @property
    def outcome(self) -> PipelineState:
        """Last state before cleanup."""
        for state in reversed(self.states):
            if state != PipelineState.CLEANUP:
                return state
        return PipelineState.IDLE

    def render(self) -> str:
        return " -> ".join(state.value for state in self.states)


def build_rollback_instructions(
    branch_name: str, commit_sha: str, remote: str = "origin"
) -> RollbackInstructions:
    """Commands that revert an applied proposal on its branch."""
    return RollbackInstructions(
        branch_name=branch_name,
        commit_sha=commit_sha,
        commands=[
            f"git fetch {remote} {branch_name}",
            f"git checkout {branch_name}",
            f"git revert --no-edit {commit_sha}",
            f"git push {remote} {branch_name}",
        ],
        summary=(
            f"Revert commit {commit_sha} on branch {branch_name} "
            f"and push the revert to {remote}."
        ),
    )


class ExecutionPipeline:
    """Validate patches in disposable workspaces and land them on branches.

    Runs share no mutable state, so any number may be in flight at once
    through the async surface.
    """

    def __init__(
        self,
        repo_root: str | Path,
        config: PipelineConfig | None = None,
        provisioner: WorkspaceProvisioner | None = None,
        preflight: PreflightRunner | None = None,
        audit: AuditClient | None = None,
    ):
        self.repo_root = Path(repo_root).absolute()
        self.config = config or load_config(repo_root=self.repo_root)
        self.provisioner = provisioner or WorkspaceProvisioner(
            self.repo_root,
            temp_root=self.config.workspace.temp_root,
            git_timeout=self.config.workspace.git_timeout,
            copy_exclude=self.config.workspace.copy_exclude,
        )
        self.preflight = preflight or PreflightRunner.from_config(self.config)
        client = audit if audit is not None else build_audit_client(self.config, self.repo_root)
        self.audit = client if isinstance(client, AuditDispatcher) else AuditDispatcher(client)
        self.critical_gates = tuple(self.config.critical_gates)

    def _resolve_allowlist(self, allowlist: AllowlistInput) -> Allowlist:
        if isinstance(allowlist, Allowlist):
            return allowlist
        patterns = list(allowlist) if allowlist is not None else None
        return Allowlist.from_config(self.config.allowlist, patterns)

    def _finish(
        self,
        result: ExecutionResult,
        trail: _StateTrail,
        status_details: dict[str, Any] | None = None,
    ) -> ExecutionResult:
        logs = dict(result.logs)
        logs["pipeline"] = trail.render()
        final = result.model_copy(update={"logs": logs, "state": trail.outcome.value})
        details = {"reason": final.reason, "state": final.state}
        details.update(status_details or {})
        self.audit.execution_ended(
            trail.proposal_id, trail.kind, "success" if final.ok else "failure", details
        )
        return final

    def _gate(self, trail: _StateTrail, workspace: Workspace) -> PreflightChecklist:
        checklist = self.preflight.run(workspace.path)
        trail.enter(PipelineState.GATED)
        self.audit.preflight_completed(trail.proposal_id, checklist)
        return checklist

    # --- Dry run ---

    def dry_run(
        self,
        patch: PatchInput,
        allowlist: AllowlistInput = None,
        branch_prefix: str | None = None,
        proposal_id: str | None = None,
    ) -> ExecutionResult:
        """Apply and gate a patch in a throwaway workspace. Never commits or pushes."""
        branch_name = make_branch_name(branch_prefix or self.config.workspace.branch_prefix)
        trail = _StateTrail("dry_run", proposal_id or branch_name)
        self.audit.execution_started(trail.proposal_id, trail.kind, utc_now())

        workspace: Workspace | None = None
        try:
            parsed = parse_patch(patch)
            applier = PatchApplier(self._resolve_allowlist(allowlist))
            workspace = self.provisioner.provision(branch_name)
            trail.enter(PipelineState.PROVISIONED)

            outcome = applier.apply(parsed, workspace.path)
            if not outcome.ok:
                trail.enter(PipelineState.DISCARDED)
                result = ExecutionResult(ok=False, reason=outcome.reason)
            else:
                trail.enter(PipelineState.PATCH_APPLIED)
                checklist = self._gate(trail, workspace)
                trail.enter(PipelineState.DISCARDED)
                result = ExecutionResult(ok=True, checklist=checklist, logs=dict(checklist.logs))
        except InvalidPatchError:
            result = ExecutionResult(ok=False, reason=INVALID_PATCH_FORMAT)
        except Exception as e:
            logger.exception("Dry run failed")
            result = ExecutionResult(ok=False, reason=f"Dry run failed: {e}")
        finally:
            self.provisioner.destroy(workspace)
            trail.enter(PipelineState.CLEANUP)

        return self._finish(result, trail)

    # --- Apply ---

    def apply(
        self,
        patch: PatchInput,
        allowlist: AllowlistInput = None,
        branch_name: str = "",
        proposal_id: str | None = None,
    ) -> ExecutionResult:
        """Apply, gate, and (if every critical gate holds) commit and push to branch_name."""
        trail = _StateTrail("apply", proposal_id or branch_name or "apply")
        self.audit.execution_started(trail.proposal_id, trail.kind, utc_now())

        if not branch_name or not branch_name.strip():
            trail.enter(PipelineState.DISCARDED)
            result = ExecutionResult(ok=False, reason="Apply failed: branch name is required")
            return self._finish(result, trail)

        workspace: Workspace | None = None
        try:
            parsed = parse_patch(patch)
            applier = PatchApplier(self._resolve_allowlist(allowlist))
            workspace = self.provisioner.provision(branch_name)
            trail.enter(PipelineState.PROVISIONED)

            outcome = applier.apply(parsed, workspace.path)
            if not outcome.ok:
                trail.enter(PipelineState.DISCARDED)
                result = ExecutionResult(ok=False, reason=outcome.reason)
            else:
                trail.enter(PipelineState.PATCH_APPLIED)
                checklist = self._gate(trail, workspace)
                result = self._commit_and_push(trail, workspace, checklist)
        except InvalidPatchError:
            result = ExecutionResult(ok=False, reason=INVALID_PATCH_FORMAT)
        except Exception as e:
            logger.exception("Apply failed")
            result = ExecutionResult(ok=False, reason=f"Apply failed: {e}")
        finally:
            self.provisioner.destroy(workspace)
            trail.enter(PipelineState.CLEANUP)

        if result.checklist is not None:
            self.audit.apply_completed(
                trail.proposal_id,
                result.branch_name,
                result.commit_sha,
                result.logs.get("git", result.reason or ""),
                result.ok,
            )
        return self._finish(result, trail, {"branch_name": branch_name})

    def _commit_and_push(
        self,
        trail: _StateTrail,
        workspace: Workspace,
        checklist: PreflightChecklist,
    ) -> ExecutionResult:
        logs = dict(checklist.logs)
        branch_name = workspace.branch_name

        failed = checklist.failed_gates(self.critical_gates)
        if failed:
            trail.enter(PipelineState.DISCARDED)
            return ExecutionResult(
                ok=False,
                reason=f"Preflight gates failed: {', '.join(failed)}",
                checklist=checklist,
                logs=logs,
            )

        if not workspace.is_versioned:
            trail.enter(PipelineState.DISCARDED)
            return ExecutionResult(
                ok=False,
                reason="Workspace is not under version control; cannot commit",
                checklist=checklist,
                logs=logs,
            )

        git_settings = self.config.git
        try:
            commit_sha = commit_all(
                workspace.path,
                git_settings.commit_message_template.format(branch=branch_name),
                git_settings.committer_name,
                git_settings.committer_email,
                timeout=self.config.workspace.git_timeout,
            )
        except GitError as e:
            trail.enter(PipelineState.DISCARDED)
            logs["git"] = str(e)
            return ExecutionResult(
                ok=False,
                reason=f"Failed to commit changes: {e}",
                checklist=checklist,
                logs=logs,
            )
        logs["git"] = f"Committed {commit_sha} on {branch_name}"

        try:
            push_branch(
                workspace.path, git_settings.remote, branch_name, timeout=git_settings.push_timeout
            )
        except GitError as e:
            # The commit only exists in the workspace and is lost on cleanup.
            trail.enter(PipelineState.DISCARDED)
            logs["git"] += f"\nPush failed: {e}"
            return ExecutionResult(
                ok=False,
                reason=f"Failed to push branch: {e}",
                checklist=checklist,
                branch_name=branch_name,
                commit_sha=commit_sha,
                logs=logs,
            )

        trail.enter(PipelineState.COMMITTED)
        logs["git"] += f"\nPushed {branch_name} to {git_settings.remote}"
        return ExecutionResult(
            ok=True,
            checklist=checklist,
            branch_name=branch_name,
            commit_sha=commit_sha,
            logs=logs,
            rollback=build_rollback_instructions(branch_name, commit_sha, git_settings.remote),
        )

    # --- Async surface ---

    async def dry_run_async(
        self,
        patch: PatchInput,
        allowlist: AllowlistInput = None,
        branch_prefix: str | None = None,
        proposal_id: str | None = None,
    ) -> ExecutionResult:
        return await asyncio.to_thread(self.dry_run, patch, allowlist, branch_prefix, proposal_id)

    async def apply_async(
        self,
        patch: PatchInput,
        allowlist: AllowlistInput = None,
        branch_name: str = "",
        proposal_id: str | None = None,
    ) -> ExecutionResult:
        return await asyncio.to_thread(self.apply, patch, allowlist, branch_name, proposal_id)
