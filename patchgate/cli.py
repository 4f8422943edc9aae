"""CLI entry point for patchgate.

Commands:
- patchgate dry-run: Apply a patch in a throwaway workspace and run the gates
- patchgate apply: Apply, gate, commit and push a patch to a branch
- patchgate preflight: Run the preflight gates against a directory
- patchgate discover: Read-only tsc/eslint scan of the repository
- patchgate events: Show the audit events of a proposal
- patchgate rollback-plan: Print the commands that revert an applied proposal
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from patchgate import __version__
from patchgate.core.allowlist import Allowlist
from patchgate.core.audit import EventLogAuditClient
from patchgate.core.config import ConfigError, PipelineConfig, load_config
from patchgate.core.discovery import DiscoveryRunner
from patchgate.core.gate_models import PREFLIGHT_GATES, GateStatus
from patchgate.core.models import ExecutionResult, PreflightChecklist
from patchgate.core.pipeline import ExecutionPipeline, build_rollback_instructions
from patchgate.core.preflight import PreflightRunner

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    GateStatus.PASS: "green",
    GateStatus.FAIL: "red",
    GateStatus.SKIPPED: "yellow",
}


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=verbose, markup=False)],
        force=True,
    )


def _load_patch_file(path: Path) -> Any:
    """Read a JSON or YAML patch file. A .diff/.patch file is a unified diff."""
    text = path.read_text(encoding="utf-8")
    if path.suffix in (".diff", ".patch"):
        return {"type": "unified", "diff": text}
    if path.suffix == ".json":
        return json.loads(text)
    return yaml.safe_load(text)


def _load_config_or_exit(ctx: click.Context) -> PipelineConfig:
    try:
        return load_config(ctx.obj["config_path"], repo_root=ctx.obj["repo"])
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        sys.exit(1)


def _allowlist(config: PipelineConfig, allow: tuple[str, ...]) -> Allowlist:
    return Allowlist.from_config(config.allowlist, list(allow) if allow else None)


def _render_checklist(checklist: PreflightChecklist) -> Table:
    table = Table(title="Preflight")
    table.add_column("Gate", style="cyan")
    table.add_column("Status")
    for name in PREFLIGHT_GATES:
        status = checklist.status_of(name)
        style = STATUS_STYLES[status]
        table.add_row(name, f"[{style}]{status.value}[/{style}]")
    return table


def _report(result: ExecutionResult, as_json: bool, title: str) -> None:
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        if result.ok:
            console.print(Panel(f"[green]{title} succeeded[/green]", title="Status"))
        else:
            console.print(
                Panel(f"[red]{title} failed:[/red] {escape(result.reason or '')}", title="Status")
            )
        if result.checklist is not None:
            console.print(_render_checklist(result.checklist))
        if result.commit_sha:
            console.print(f"[bold]Branch:[/bold] {escape(result.branch_name or '')}")
            console.print(f"[bold]Commit:[/bold] {result.commit_sha}")
        if result.rollback is not None:
            console.print("\n[bold]Rollback:[/bold]")
            for command in result.rollback.commands:
                console.print(f"  {escape(command)}")
    if not result.ok:
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--repo",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    show_default=True,
    help="Repository to operate on",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Configuration file (overrides the search path)",
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx: click.Context, repo: Path, config_path: Path | None, verbose: bool) -> None:
    """patchgate - gated application of generated patches.

    Every patch is applied in a disposable workspace, checked against a path
    allowlist and run through type-check, lint, build and test gates before
    anything is committed.
    """
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["repo"] = repo.absolute()
    ctx.obj["config_path"] = config_path


@main.command("dry-run")
@click.argument("patch_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--allow", "-a", multiple=True, help="Allow pattern (repeatable)")
@click.option("--branch-prefix", help="Prefix for the throwaway branch name")
@click.option("--proposal-id", help="Proposal id used for audit events")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def dry_run(
    ctx: click.Context,
    patch_file: Path,
    allow: tuple[str, ...],
    branch_prefix: str | None,
    proposal_id: str | None,
    as_json: bool,
) -> None:
    """Apply PATCH_FILE in a throwaway workspace and run the gates. Never commits."""
    config = _load_config_or_exit(ctx)
    try:
        patch = _load_patch_file(patch_file)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Cannot read patch file:[/red] {escape(str(e))}")
        sys.exit(1)

    pipeline = ExecutionPipeline(ctx.obj["repo"], config=config)
    result = pipeline.dry_run(
        patch, _allowlist(config, allow), branch_prefix=branch_prefix, proposal_id=proposal_id
    )
    pipeline.audit.flush()
    _report(result, as_json, "Dry run")


@main.command()
@click.argument("patch_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--branch", "-b", required=True, help="Branch to commit and push")
@click.option("--allow", "-a", multiple=True, help="Allow pattern (repeatable)")
@click.option("--proposal-id", help="Proposal id used for audit events")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def apply(
    ctx: click.Context,
    patch_file: Path,
    branch: str,
    allow: tuple[str, ...],
    proposal_id: str | None,
    as_json: bool,
) -> None:
    """Apply PATCH_FILE and, if the critical gates pass, commit and push it to BRANCH."""
    config = _load_config_or_exit(ctx)
    try:
        patch = _load_patch_file(patch_file)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Cannot read patch file:[/red] {escape(str(e))}")
        sys.exit(1)

    pipeline = ExecutionPipeline(ctx.obj["repo"], config=config)
    result = pipeline.apply(
        patch, _allowlist(config, allow), branch_name=branch, proposal_id=proposal_id
    )
    pipeline.audit.flush()
    _report(result, as_json, "Apply")


@main.command()
@click.argument(
    "path",
    required=False,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
)
@click.option("--json", "as_json", is_flag=True, help="Print the checklist as JSON")
@click.pass_context
def preflight(ctx: click.Context, path: Path | None, as_json: bool) -> None:
    """Run the preflight gates in PATH (default: the repository) without isolation."""
    config = _load_config_or_exit(ctx)
    target = (path or ctx.obj["repo"]).absolute()
    checklist = PreflightRunner.from_config(config).run(target)

    if as_json:
        click.echo(json.dumps(checklist.to_dict(), indent=2))
    else:
        console.print(_render_checklist(checklist))
        for name in checklist.failed_gates():
            console.print(Panel(escape(checklist.logs.get(name, "")), title=f"{name} log"))
    if checklist.failed_gates():
        sys.exit(1)


@main.command()
@click.option("--allow", "-a", multiple=True, help="Allow pattern (repeatable)")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def discover(ctx: click.Context, allow: tuple[str, ...], as_json: bool) -> None:
    """Scan the repository with tsc and eslint without changing anything."""
    config = _load_config_or_exit(ctx)
    result = DiscoveryRunner(ctx.obj["repo"], _allowlist(config, allow)).run()

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    table = Table(title=f"Evidence ({result.evidence_count})")
    table.add_column("File", style="cyan")
    table.add_column("Line", justify="right")
    table.add_column("Rule", style="magenta")
    table.add_column("Note")
    for entry in result.evidence:
        table.add_row(escape(entry.file), str(entry.line), escape(entry.rule), escape(entry.note))
    console.print(table)
    for tool in result.skipped_tools:
        console.print(f"[yellow]Skipped:[/yellow] {escape(tool)}")


@main.command()
@click.argument("proposal_id")
@click.option("--json", "as_json", is_flag=True, help="Print events as JSON")
@click.pass_context
def events(ctx: click.Context, proposal_id: str, as_json: bool) -> None:
    """Show audit events recorded for PROPOSAL_ID (sqlite audit backend)."""
    config = _load_config_or_exit(ctx)
    db_path = config.audit.db_path
    if not db_path.is_absolute():
        db_path = ctx.obj["repo"] / db_path
    if not db_path.exists():
        console.print(
            "[yellow]No audit database found.[/yellow] "
            "Set audit.backend to 'sqlite' to record events."
        )
        sys.exit(1)

    found = EventLogAuditClient(db_path).get_events(proposal_id)
    if as_json:
        click.echo(json.dumps([event.model_dump(mode="json") for event in found], indent=2))
        return
    if not found:
        console.print(f"[yellow]No events for proposal '{escape(proposal_id)}'[/yellow]")
        return

    table = Table(title=f"Audit events: {escape(proposal_id)}")
    table.add_column("Time", style="dim")
    table.add_column("Event", style="cyan")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Details")
    for event in found:
        table.add_row(
            event.timestamp.isoformat(timespec="seconds"),
            event.event_type.value,
            event.kind or "",
            event.status or "",
            escape(json.dumps(event.payload)[:120]),
        )
    console.print(table)


@main.command("rollback-plan")
@click.option("--branch", "-b", required=True, help="Branch the proposal was pushed to")
@click.option("--sha", required=True, help="Commit to revert")
@click.option("--remote", help="Remote name (default from configuration)")
@click.pass_context
def rollback_plan(ctx: click.Context, branch: str, sha: str, remote: str | None) -> None:
    """Print the git commands that revert commit SHA on BRANCH."""
    config = _load_config_or_exit(ctx)
    plan = build_rollback_instructions(branch, sha, remote or config.git.remote)
    console.print(plan.summary)
    for command in plan.commands:
        click.echo(command)


if __name__ == "__main__":
    main()
