"""Schema Steward CLI — main entry point."""

from __future__ import annotations

import asyncio
import json as json_mod
import logging
import sys
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from . import __version__, get_steward_home

app = typer.Typer(
    name="steward",
    help="Schema Steward — consolidate legacy columns into documents and drop them safely",
    add_completion=False,
)
console = Console()

# --- Sub-command groups ---

backup_app = typer.Typer(help="Create, check and restore table backups")
app.add_typer(backup_app, name="backup")

config_app = typer.Typer(help="View and create configuration")
app.add_typer(config_app, name="config")

# Global options set by the callback
_options: dict[str, Any] = {"config_path": None, "verbose": False}

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


# --- Async helper ---


def _run_async(coro):
    """Run an async function from sync CLI context."""
    return asyncio.run(coro)


def _load_config():
    from .config import StewardConfig

    return StewardConfig.load(_options["config_path"])


def _get_context():
    """Build an unconnected context for CLI commands."""
    from .context import StewardContext

    return StewardContext.from_config(_load_config())


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


def _resolve(group: list[str] | None, groups_file: Path | None):
    from .groups import resolve_groups

    path = groups_file or _load_config().groups_file or None
    try:
        return resolve_groups(group, path)
    except (ValueError, OSError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2) from exc


def _run_guarded(coro) -> Any:
    """Run ``coro``; map Steward errors onto messages and exit codes."""
    from .errors import InvalidIdentifier, MigrationLocked, PreconditionViolation, StewardError

    try:
        return _run_async(coro)
    except PreconditionViolation as exc:
        _print_precondition(str(exc), exc.details)
        raise typer.Exit(code=1) from exc
    except MigrationLocked as exc:
        console.print(f"[red]Locked:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    except InvalidIdentifier as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2) from exc
    except StewardError as exc:
        console.print(f"[red]Database error:[/red] {exc}")
        raise typer.Exit(code=1) from exc


def _dump(payload: Any) -> None:
    print(json_mod.dumps(payload, default=str))


# --- Rendering ---


def _print_precondition(message: str, details: list[str] | None = None) -> None:
    console.print(f"[bold red]PRECONDITION VIOLATION:[/bold red] [red]{message}[/red]")
    for line in details or []:
        console.print(f"  [red]- {line}[/red]")


def _render_inspection(inspection) -> None:
    if not inspection.accessible:
        console.print(f"[red]{inspection.table}: inaccessible[/red] ({inspection.error})")
        return
    console.print(
        f"[bold]{inspection.table}[/bold]  {inspection.row_count} row(s), "
        f"{inspection.sampled} sampled"
    )
    table = Table(show_header=True)
    table.add_column("Column", style="cyan")
    table.add_column("Type")
    table.add_column("Populated", justify="right")
    table.add_column("Document keys", style="dim")
    for info in inspection.columns.values():
        populated = str(info.populated) if info.populated else "[yellow]0[/yellow]"
        table.add_row(info.name, info.inferred_type, populated, ", ".join(info.document_keys))
    console.print(table)


def _render_consolidation(results) -> None:
    table = Table(title="Consolidation", show_header=True)
    table.add_column("Group", style="cyan")
    table.add_column("Target")
    for heading in ("Attempted", "Updated", "Unchanged", "Skipped", "Failed", "Unparsed"):
        table.add_column(heading, justify="right")
    for r in results:
        failed = f"[red]{r.failed}[/red]" if r.failed else "0"
        table.add_row(
            r.group,
            r.target,
            str(r.attempted),
            "-" if r.dry_run else str(r.updated),
            "-" if r.dry_run else str(r.unchanged),
            str(r.skipped),
            failed,
            str(r.unparsed),
        )
    console.print(table)

    for r in results:
        for error in r.errors:
            console.print(f"  [red]{r.group} {error.record_id}:[/red] {error.error}")
        for preview in r.previews:
            console.print(f"\n[bold]{r.group}[/bold] {preview.record_id}")
            console.print(f"  [dim]from[/dim] {json_mod.dumps(preview.source, default=str)}")
            console.print(f"  [dim]to[/dim]   {json_mod.dumps(preview.destination, default=str)}")


def _render_report(report) -> None:
    table = Table(title="Verification", show_header=True)
    table.add_column("Group", style="cyan")
    table.add_column("Legacy", justify="right")
    table.add_column("Nested", justify="right")
    table.add_column("Result")
    for g in report.groups:
        verdict = "[green]PASS[/green]" if g.passed else f"[red]FAIL[/red] ({g.deficit} missing)"
        table.add_row(g.group, str(g.legacy_count), str(g.nested_count), verdict)
    console.print(table)
    for g in report.groups:
        for mismatch in g.mismatches:
            console.print(f"  [yellow]{g.group}[/yellow] [dim]{mismatch}[/dim]")


def _render_drop(run) -> None:
    console.print(f"[bold]Dropper state:[/bold] {run.state.value}")
    if run.interrupted:
        console.print(f"  [yellow]Interrupted:[/yellow] {run.interrupted}")
    if run.ledger:
        table = Table(title="Column drops", show_header=True)
        table.add_column("Column", style="cyan")
        table.add_column("Group")
        table.add_column("Status")
        for outcome in run.ledger:
            color = {"dropped": "green", "absent": "dim", "failed": "red"}[outcome.status.value]
            status = f"[{color}]{outcome.status.value}[/{color}]"
            if outcome.error:
                status += f" {outcome.error}"
            table.add_row(outcome.column, outcome.group, status)
        console.print(table)
    remaining = run.remaining_columns
    if remaining and run.state.value == "verified_safe":
        names = ", ".join(c for _, c in remaining)
        console.print(f"  [dim]Pending columns:[/dim] {names}")


def _drop_payload(run) -> dict[str, Any]:
    return {
        **run.model_dump(mode="json"),
        "remaining_columns": [c for _, c in run.remaining_columns],
    }


def _report_payload(report) -> dict[str, Any]:
    return {
        **report.model_dump(mode="json"),
        "passed": report.passed,
        "groups": [
            {**g.model_dump(mode="json"), "passed": g.passed, "deficit": g.deficit}
            for g in report.groups
        ],
    }


# --- Top-level commands ---


@app.callback()
def main(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging to stderr"),
) -> None:
    """Schema Steward — verified column consolidation for document tables."""
    _options["config_path"] = config
    _options["verbose"] = verbose
    level = "DEBUG" if verbose else _load_config().log_level
    _setup_logging(level)


@app.command("version")
def version() -> None:
    """Show version information."""
    console.print(f"Schema Steward v{__version__}")


@app.command("invoke")
def invoke(
    table: str = typer.Argument(..., help="Table to migrate"),
    group: list[str] | None = typer.Option(None, "--group", "-g", help="Group(s) to run"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview consolidation only"),
    confirm_drop: bool = typer.Option(False, "--confirm-drop", help="Drop verified columns"),
    drop_empty: bool = typer.Option(False, "--drop-empty", help="Also drop never-populated columns"),
    groups_file: Path | None = typer.Option(None, "--groups-file", help="YAML group definitions"),
    sample: int | None = typer.Option(None, "--sample", help="Records to spot-check"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Inspect, consolidate, verify, back up and (with --confirm-drop) drop."""
    groups = _resolve(group, groups_file)

    async def _invoke():
        from .workflow import run_workflow

        ctx = _get_context()
        await ctx.connect()
        try:
            return await run_workflow(
                ctx,
                table,
                groups,
                dry_run=dry_run,
                confirm_drop=confirm_drop,
                drop_empty=drop_empty,
                sample_size=sample,
            )
        finally:
            await ctx.close()

    result = _run_guarded(_invoke())

    if json_output:
        _dump(
            {
                **result.model_dump(mode="json"),
                "summary": {
                    "attempted": result.attempted,
                    "succeeded": result.succeeded,
                    "failed": result.failed,
                    "noop": result.noop,
                },
                "final_state": result.final_state,
                "exit_code": result.exit_code,
            }
        )
        raise typer.Exit(code=result.exit_code)

    if result.precondition:
        _print_precondition(result.precondition, result.precondition_details)
    if result.inspection and result.inspection.accessible:
        _render_inspection(result.inspection)
    if result.empty_columns:
        console.print(f"[dim]Never-populated columns:[/dim] {', '.join(result.empty_columns)}")
    if result.consolidation:
        _render_consolidation(result.consolidation)
    if result.report:
        _render_report(result.report)
    if result.backup:
        console.print(f"[green]Backup:[/green] {result.backup.data_path}")
    if result.drop:
        _render_drop(result.drop)
        if result.drop.state.value == "verified_safe" and not confirm_drop:
            console.print("[dim]Report only. Re-run with --confirm-drop to drop columns.[/dim]")

    console.print(
        f"\n[bold]Summary:[/bold] attempted {result.attempted}, "
        f"succeeded {result.succeeded}, failed {result.failed}, no-op {result.noop}"
    )
    if result.exit_code:
        raise typer.Exit(code=result.exit_code)


@app.command("inspect")
def inspect(
    tables: list[str] = typer.Argument(..., help="Table(s) to inspect"),
    sample: int | None = typer.Option(None, "--sample", "-n", help="Rows to sample for types"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Show each table's columns, inferred types and population counts."""

    async def _inspect():
        from .inspector import inspect_tables

        ctx = _get_context()
        await ctx.connect()
        try:
            return await inspect_tables(ctx, tables, sample)
        finally:
            await ctx.close()

    results = _run_guarded(_inspect())

    if json_output:
        _dump([r.model_dump(mode="json") for r in results])
    else:
        for i, inspection in enumerate(results):
            if i:
                console.print()
            _render_inspection(inspection)

    if any(not r.accessible for r in results):
        raise typer.Exit(code=1)


@app.command("consolidate")
def consolidate(
    table: str = typer.Argument(..., help="Table to consolidate"),
    group: list[str] | None = typer.Option(None, "--group", "-g", help="Group(s) to run"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Compute documents without writing"),
    groups_file: Path | None = typer.Option(None, "--groups-file", help="YAML group definitions"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Write nested documents from legacy columns (idempotent)."""
    groups = _resolve(group, groups_file)

    async def _consolidate():
        from .consolidator import consolidate_groups

        ctx = _get_context()
        await ctx.connect()
        try:
            return await consolidate_groups(ctx, table, groups, dry_run=dry_run)
        finally:
            await ctx.close()

    results = _run_guarded(_consolidate())

    if json_output:
        _dump([r.model_dump(mode="json") for r in results])
    else:
        _render_consolidation(results)

    if any(not r.ok for r in results):
        raise typer.Exit(code=1)


@app.command("verify")
def verify(
    table: str = typer.Argument(..., help="Table to verify"),
    group: list[str] | None = typer.Option(None, "--group", "-g", help="Group(s) to verify"),
    sample: int | None = typer.Option(None, "--sample", "-n", help="Records to spot-check"),
    groups_file: Path | None = typer.Option(None, "--groups-file", help="YAML group definitions"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Check every record with legacy data has its nested field."""
    groups = _resolve(group, groups_file)

    async def _verify():
        from .verifier import verify_groups

        ctx = _get_context()
        await ctx.connect()
        try:
            size = ctx.config.verify_sample_size if sample is None else sample
            return await verify_groups(ctx, table, groups, size)
        finally:
            await ctx.close()

    report = _run_guarded(_verify())

    if json_output:
        _dump(_report_payload(report))
    else:
        _render_report(report)

    if not report.passed:
        if not json_output:
            _print_precondition(f"verification failed for: {', '.join(report.failing_groups)}")
        raise typer.Exit(code=1)


@app.command("drop")
def drop(
    table: str = typer.Argument(..., help="Table to drop legacy columns from"),
    group: list[str] | None = typer.Option(None, "--group", "-g", help="Group(s) to drop"),
    confirm_drop: bool = typer.Option(False, "--confirm-drop", help="Actually drop columns"),
    resume: bool = typer.Option(False, "--resume", help="Continue an interrupted drop"),
    groups_file: Path | None = typer.Option(None, "--groups-file", help="YAML group definitions"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Drop consolidated legacy columns behind the backup and verification gates."""
    groups = [] if resume else _resolve(group, groups_file)

    async def _drop():
        from .backup import latest_backup
        from .dropper import SafeColumnDropper

        ctx = _get_context()
        await ctx.connect()
        try:
            if resume:
                dropper = SafeColumnDropper.load(ctx, table)
                return await dropper.resume(confirm=confirm_drop)
            dropper = SafeColumnDropper(
                ctx, table, groups, sample_size=ctx.config.verify_sample_size
            )
            dropper.save()
            return await dropper.run_all(latest_backup(ctx, table), confirm=confirm_drop)
        finally:
            await ctx.close()

    run = _run_guarded(_drop())

    if json_output:
        _dump(_drop_payload(run))
    else:
        if run.report:
            _render_report(run.report)
        _render_drop(run)
        if run.state.value == "verified_safe" and not confirm_drop:
            console.print("[dim]Report only. Re-run with --confirm-drop to drop columns.[/dim]")

    if run.failed_columns or run.interrupted:
        raise typer.Exit(code=1)


@app.command("groups")
def groups(
    groups_file: Path | None = typer.Option(None, "--groups-file", help="YAML group definitions"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """List the consolidation groups available."""
    resolved = _resolve(None, groups_file)

    if json_output:
        _dump([g.model_dump(mode="json") for g in resolved])
        return

    table = Table(show_header=True)
    table.add_column("Group", style="cyan")
    table.add_column("Target")
    table.add_column("Source columns")
    table.add_column("Derived", style="dim")
    for g in resolved:
        table.add_row(g.name, g.target, ", ".join(g.source_columns), g.derive or "")
    console.print(table)


# --- Backup sub-commands ---


@backup_app.command("create")
def backup_create(
    table: str = typer.Argument(..., help="Table to back up"),
    group: list[str] | None = typer.Option(None, "--group", "-g", help="Groups in scope"),
    groups_file: Path | None = typer.Option(None, "--groups-file", help="YAML group definitions"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Snapshot a table to a write-once JSON file with a checksum sidecar."""
    groups = _resolve(group, groups_file)

    async def _create():
        from .backup import capture_backup

        ctx = _get_context()
        await ctx.connect()
        try:
            return await capture_backup(ctx, table, groups)
        finally:
            await ctx.close()

    artifact = _run_guarded(_create())

    if json_output:
        _dump(artifact.model_dump(mode="json"))
        return
    console.print(f"[green]Backed up {artifact.row_count} row(s):[/green] {artifact.data_path}")
    console.print(f"  [dim]sha256[/dim] {artifact.checksum}")


@backup_app.command("verify")
def backup_verify(
    path: Path = typer.Argument(..., help="Backup data file or .verify.json sidecar"),
) -> None:
    """Recompute a backup's checksum and compare it with its sidecar."""
    from .backup import integrity_problems, load_backup
    from .errors import PreconditionViolation

    try:
        artifact = load_backup(path)
    except (PreconditionViolation, ValueError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc

    problems = integrity_problems(artifact)
    if problems:
        _print_precondition(f"backup {artifact.data_path} failed verification", problems)
        raise typer.Exit(code=1)
    console.print(
        f"[green]OK[/green] {artifact.data_path} ({artifact.row_count} row(s), sha256 verified)"
    )


@backup_app.command("list")
def backup_list(
    table: str = typer.Argument(..., help="Table name"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """List backups of a table, oldest first."""
    from .backup import list_backups
    from .context import StewardContext
    from .db.client import StewardDatabase
    from .errors import InvalidIdentifier

    config = _load_config()
    ctx = StewardContext(config=config, db=StewardDatabase.from_config(config))
    try:
        backups = list_backups(ctx, table)
    except InvalidIdentifier as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2) from exc

    if json_output:
        _dump([b.model_dump(mode="json") for b in backups])
        return
    if not backups:
        console.print(f"[dim]No backups of {table} in {ctx.backup_dir}[/dim]")
        return
    listing = Table(show_header=True)
    listing.add_column("Captured (UTC)")
    listing.add_column("Rows", justify="right")
    listing.add_column("Checksum", style="dim")
    listing.add_column("File")
    for b in backups:
        listing.add_row(
            b.captured_at.strftime("%Y-%m-%d %H:%M:%S"),
            str(b.row_count),
            b.checksum[:12],
            b.data_path,
        )
    console.print(listing)


@backup_app.command("restore")
def backup_restore(
    table: str = typer.Argument(..., help="Table to restore columns on"),
    column: list[str] = typer.Option(..., "--column", help="Legacy column(s) to write back"),
    backup: Path | None = typer.Option(None, "--backup", help="Backup file (default: latest)"),
    confirm: bool = typer.Option(False, "--confirm", help="Write to the database"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Roll back: write legacy columns from a backup onto live records."""

    async def _restore():
        from .backup import latest_backup, load_backup, restore_columns
        from .errors import PreconditionViolation

        ctx = _get_context()
        artifact = load_backup(backup) if backup else latest_backup(ctx, table)
        if artifact is None:
            raise PreconditionViolation(f"no backup of {table}")
        if artifact.table != table:
            raise PreconditionViolation(f"backup is of table {artifact.table}, not {table}")
        if not confirm:
            return artifact, None
        await ctx.connect()
        try:
            return artifact, await restore_columns(ctx, artifact, column)
        finally:
            await ctx.close()

    try:
        artifact, result = _run_guarded(_restore())
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2) from exc

    if result is None:
        console.print(
            f"Would restore {', '.join(column)} on {table} from {artifact.data_path} "
            f"({artifact.row_count} row(s)). Re-run with --confirm to write."
        )
        return

    if json_output:
        _dump(result.model_dump(mode="json"))
    else:
        console.print(
            f"[green]Restored[/green] {', '.join(column)} on {result.restored} record(s) "
            f"({result.missing} missing, {result.failed} failed)"
        )
        for error in result.errors:
            console.print(f"  [red]{error.record_id}:[/red] {error.error}")
    if not result.ok:
        raise typer.Exit(code=1)


# --- Config sub-commands ---


@config_app.command("show")
def config_show() -> None:
    """Show current configuration (passwords masked)."""
    import yaml
    from rich.syntax import Syntax

    content = yaml.dump(_load_config().redacted(), default_flow_style=False)
    console.print(Syntax(content, "yaml", theme="monokai"))


@config_app.command("init")
def config_init() -> None:
    """Create ~/.steward/ with a default config."""
    from .config import get_default_config_content

    home = get_steward_home()
    for subdir in ["backups", "state"]:
        (home / subdir).mkdir(parents=True, exist_ok=True)

    config_path = _options["config_path"] or home / "config.yaml"
    if not config_path.exists():
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(get_default_config_content(), encoding="utf-8")
        console.print(f"[green]Created config:[/green] {config_path}")
    else:
        console.print(f"[dim]Config already exists:[/dim] {config_path}")

    console.print(f"[green]Steward home ready:[/green] {home}")
