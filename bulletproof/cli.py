from __future__ import annotations

import asyncio
import csv
import io
import json
import logging
from dataclasses import asdict
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from bulletproof.config import (
    BulletproofConfig,
    DestinationConfig,
    config_path,
    detect_installation,
    load_backup_config,
    load_config,
    save_config,
    set_config_value,
    validate_config,
)
from bulletproof.engine import BackupEngine
from bulletproof.errors import BulletproofError, config_not_initialized
from bulletproof.ids import CURRENT_STATE_ID, assign_short_ids, sort_newest_first


VERSION = "0.1.0"
MAX_SAMPLES = 10
SNAPSHOT_FORMATS = ("text", "json", "csv")
SNAPSHOT_FIELDS = ["short_id", "full_id", "timestamp", "message", "file_count"]

app = typer.Typer(help="Bulletproof: snapshot, diff and restore agent configuration folders")
config_app = typer.Typer(help="Show or change the bulletproof configuration")
app.add_typer(config_app, name="config")
console = Console()


def _configure_logging(verbose: bool) -> None:
    logger = logging.getLogger("bulletproof")
    if not any(isinstance(handler, RichHandler) for handler in logger.handlers):
        logger.addHandler(RichHandler(console=console, show_path=False))
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging."),
) -> None:
    _configure_logging(verbose)


def _print_error(exc: Exception, prefix: str = "") -> None:
    text = Text(style="red")
    if prefix:
        text.append(f"{prefix} ", style="bold red")
    text.append(str(exc))
    console.print(text)


def _load_engine(*, progress: bool = False) -> BackupEngine:
    config = load_config()
    if config.destination is None:
        raise config_not_initialized()
    return BackupEngine(config, console=console if progress else None)


def _format_rows(rows: list[dict], output_format: str) -> str:
    if output_format == "json":
        return json.dumps(rows, indent=2) + "\n"
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=SNAPSHOT_FIELDS, lineterminator="\n")
    writer.writeheader()
    writer.writerows(rows)
    return buffer.getvalue()


def _render_path_summary(title: str, paths, style: str, marker: str) -> None:
    if not paths:
        return
    console.print(Text(f"{title} ({len(paths)}):", style=style))
    for path in list(paths)[:MAX_SAMPLES]:
        console.print(Text(f"  {marker} {path}"))
    if len(paths) > MAX_SAMPLES:
        console.print(f"  ... and {len(paths) - MAX_SAMPLES} more")


@app.command()
def init(
    source: list[str] | None = typer.Option(
        None,
        "--source",
        "-s",
        help="Folder to back up (repeatable). Defaults to ~/.openclaw when present.",
    ),
    destination: str | None = typer.Option(
        None, "--destination", "-d", help="Backup folder, git repository path or remote URL."
    ),
    destination_type: str | None = typer.Option(
        None, "--type", "-t", help="Destination type: local, git or sync (default: local)."
    ),
    from_backup: str | None = typer.Option(
        None,
        "--from-backup",
        help="Snapshot folder whose stored config should be reused, e.g. on a new machine.",
    ),
) -> None:
    """Create the bulletproof config file."""
    try:
        if from_backup:
            base = load_backup_config(Path(from_backup))
            console.print(f"Loaded configuration from backup: {from_backup}")
        else:
            base = load_config()
    except BulletproofError as exc:
        _print_error(exc)
        raise typer.Exit(code=1)

    sources = list(source or ())
    if not sources:
        detected = detect_installation()
        if detected is not None:
            sources = [str(detected)]
        elif from_backup:
            sources = base.get_sources()
        if not sources:
            console.print(
                "[red]No source given and ~/.openclaw was not found.[/red] Use --source PATH."
            )
            raise typer.Exit(code=1)

    previous = base.destination if from_backup else None
    if destination is None and previous is None:
        console.print("[red]No destination given.[/red] Use --destination PATH.")
        raise typer.Exit(code=1)
    destination = destination or previous.path
    destination_type = destination_type or (previous.type if previous else "local")

    config = BulletproofConfig(
        openclaw_path=sources[0] if len(sources) == 1 else "",
        sources=sources if len(sources) > 1 else [],
        destination=DestinationConfig(type=destination_type, path=destination),
        exclude=base.exclude,
        scripts=base.scripts,
        retention=base.retention,
    )
    try:
        validate_config(config)
    except BulletproofError as exc:
        _print_error(exc)
        raise typer.Exit(code=1)

    path = save_config(config)
    console.print(f"[green]Initialized bulletproof[/green] ({destination_type} destination)")
    console.print(f"Config: {path}")
    for item in sources:
        console.print(f"Source: {item}")
    console.print(f"Destination: {destination}")


async def _backup_async(dry_run: bool, message: str, no_scripts: bool, force: bool) -> int:
    try:
        engine = _load_engine(progress=True)
        sources = engine.sources()
        if len(sources) == 1:
            console.print(f"Scanning source at [bold]{sources[0]}[/bold] ...")
        else:
            console.print(f"Scanning {len(sources)} sources:")
            for source in sources:
                console.print(f"  {source}")
        result = await engine.backup(
            dry_run=dry_run, message=message, no_scripts=no_scripts, force=force
        )
    except KeyboardInterrupt:
        console.print("[yellow]Backup interrupted.[/yellow] No snapshot was recorded.")
        return 130
    except BulletproofError as exc:
        _print_error(exc)
        return 1

    console.print(f"Found {result.snapshot.file_count} file(s)")
    if result.diff is None:
        console.print("First backup - no previous snapshot found")
    else:
        console.print(f"Changes since last backup: {result.diff.summary()}")

    if result.skipped:
        console.print("[green]No changes detected. Backup skipped.[/green]")
        console.print("Use --force to create a backup anyway.")
        return 0
    if result.dry_run:
        console.print("[yellow]Dry run - no changes made[/yellow]")
        if result.diff is not None:
            _render_path_summary("Added", result.diff.added, "green", "+")
            _render_path_summary("Modified", result.diff.modified, "yellow", "~")
            _render_path_summary("Removed", result.diff.removed, "red", "-")
        return 0

    for warning in result.warnings:
        console.print(Text(f"Warning: {warning}", style="yellow"))
    console.print(f"[green]Backup complete:[/green] {result.snapshot.id}")
    return 0


@app.command()
def backup(
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be backed up."),
    message: str = typer.Option("", "--message", "-m", help="Message stored with the snapshot."),
    no_scripts: bool = typer.Option(False, "--no-scripts", help="Skip pre-backup scripts."),
    force: bool = typer.Option(False, "--force", help="Back up even when nothing changed."),
) -> None:
    """Capture a new snapshot of the configured sources."""
    raise typer.Exit(code=asyncio.run(_backup_async(dry_run, message, no_scripts, force)))


async def _diff_async(
    first: str | None, second: str | None, pattern: str | None, metadata_only: bool
) -> int:
    if first is None:
        from_text, to_text = "1", CURRENT_STATE_ID
    elif second is None:
        from_text, to_text = first, CURRENT_STATE_ID
    else:
        from_text, to_text = first, second

    try:
        engine = _load_engine()
        if first is None and not await engine.list_snapshots():
            console.print("[yellow]No snapshots yet.[/yellow] Run `bulletproof backup` first.")
            return 1
        comparison = await engine.compare(
            from_text, to_text, pattern=pattern, content=not metadata_only
        )
    except KeyboardInterrupt:
        console.print("[yellow]Diff interrupted.[/yellow]")
        return 130
    except BulletproofError as exc:
        _print_error(exc)
        return 1

    label_from = "current" if comparison.from_id == CURRENT_STATE_ID else comparison.from_id
    label_to = "current" if comparison.to_id == CURRENT_STATE_ID else comparison.to_id
    console.print(Text(f"Comparing {label_from} -> {label_to}", style="bold"))
    if comparison.diff.is_empty:
        console.print("[green]No changes.[/green]")
        return 0

    console.print(comparison.unified, markup=False, highlight=False, end="")
    console.print(Text(comparison.diff.summary(), style="bold"))
    return 0


@app.command()
def diff(
    first: str | None = typer.Argument(None, help="Snapshot to compare from (default: 1)."),
    second: str | None = typer.Argument(None, help="Snapshot to compare to (default: 0)."),
    pattern: str | None = typer.Argument(None, help="Only show paths matching this pattern."),
    metadata_only: bool = typer.Option(
        False, "--metadata", help="Show hashes and sizes instead of line hunks."
    ),
) -> None:
    """Show a unified diff between two snapshots (0 is the current state)."""
    raise typer.Exit(code=asyncio.run(_diff_async(first, second, pattern, metadata_only)))


async def _snapshots_async(output_format: str) -> int:
    if output_format not in SNAPSHOT_FORMATS:
        _print_error(BulletproofError(f"Unknown format {output_format!r}; use text, json or csv"))
        return 1
    try:
        engine = _load_engine()
        infos = await engine.list_snapshots()
    except BulletproofError as exc:
        _print_error(exc)
        return 1

    short_ids = assign_short_ids(infos)
    if output_format != "text":
        rows = [
            {
                "short_id": short_ids[info.id],
                "full_id": info.id,
                "timestamp": info.timestamp.isoformat(timespec="seconds"),
                "message": info.message,
                "file_count": info.file_count,
            }
            for info in sort_newest_first(infos)
        ]
        typer.echo(_format_rows(rows, output_format), nl=False)
        return 0

    if not infos:
        console.print("No snapshots yet.")
        return 0

    table = Table(title="Snapshots")
    table.add_column("#", justify="right")
    table.add_column("ID")
    table.add_column("Created")
    table.add_column("Files", justify="right")
    table.add_column("Message")
    for info in sort_newest_first(infos):
        table.add_row(
            str(short_ids[info.id]),
            info.id,
            info.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            str(info.file_count),
            info.message,
        )
    console.print(table)
    console.print("Use the # column with `bulletproof diff` and `bulletproof restore`; 0 is the current state.")
    return 0


@app.command()
def snapshots(
    output_format: str = typer.Option(
        "text", "--format", "-f", help="Output format: text, json or csv."
    ),
) -> None:
    """List stored snapshots, newest first."""
    raise typer.Exit(code=asyncio.run(_snapshots_async(output_format)))


app.command("history", help="Alias for `snapshots`.")(snapshots)


async def _restore_async(
    snapshot: str,
    target: str | None,
    dry_run: bool,
    force: bool,
    no_scripts: bool,
) -> int:
    target_path = Path(target).expanduser() if target else None
    try:
        engine = _load_engine()
        plan = await engine.plan_restore(snapshot, target_path)
    except BulletproofError as exc:
        _print_error(exc)
        return 1

    console.print(f"Found snapshot {plan.snapshot.id} with {plan.snapshot.file_count} file(s)")
    _render_path_summary("Files to be added", plan.diff.added, "green", "+")
    _render_path_summary("Files to be modified", plan.diff.modified, "yellow", "~")
    _render_path_summary("Files to be removed", plan.diff.removed, "red", "-")
    if plan.diff.is_empty:
        console.print("[green]Current state already matches this snapshot.[/green]")

    if dry_run:
        console.print("[yellow]Dry run - no changes made[/yellow]")
        return 0
    if not force and not plan.diff.is_empty:
        if not typer.confirm("This will overwrite your current files. Continue?", default=False):
            console.print("Restore cancelled.")
            return 0

    post_restore = engine.config.scripts.post_restore
    if post_restore and not no_scripts and not force:
        console.print("[bold yellow]This restore runs post-restore scripts with your permissions:[/bold yellow]")
        for script in post_restore:
            console.print(Text(f"  {script.name}: {script.command}"))
        if not typer.confirm("Run these scripts?", default=False):
            console.print("Scripts will be skipped.")
            no_scripts = True

    try:
        result = await engine.restore(snapshot, target=target_path, no_scripts=no_scripts)
    except KeyboardInterrupt:
        console.print("[yellow]Restore interrupted.[/yellow] Files may be partially restored.")
        return 130
    except BulletproofError as exc:
        _print_error(exc, "Restore failed:")
        return 1

    safety = result.safety_backup
    if safety is not None and not safety.skipped:
        console.print(f"Safety backup created: {safety.snapshot.id}")
    console.print(
        f"[green]Restore complete:[/green] {len(result.restored)} file(s) restored, "
        f"{len(result.removed)} removed"
    )
    if safety is not None and not safety.skipped:
        console.print(f"If something went wrong, restore from: {safety.snapshot.id}")
    if result.scripts_ran:
        console.print("[green]Post-restore scripts completed[/green]")
    return 0


@app.command()
def restore(
    snapshot: str = typer.Argument(..., help="Snapshot to restore (short or full ID)."),
    target: str | None = typer.Option(
        None, "--target", help="Restore into this folder instead of the configured sources."
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would change."),
    force: bool = typer.Option(False, "--force", help="Skip confirmation prompts."),
    no_scripts: bool = typer.Option(False, "--no-scripts", help="Skip post-restore scripts."),
) -> None:
    """Restore files from a snapshot, taking a safety backup first."""
    raise typer.Exit(
        code=asyncio.run(_restore_async(snapshot, target, dry_run, force, no_scripts))
    )


async def _prune_async(dry_run: bool, force: bool) -> int:
    try:
        engine = _load_engine()
        result, _ = await engine.prune(dry_run=True)
    except BulletproofError as exc:
        _print_error(exc)
        return 1

    console.print("Retention policy:")
    for line in engine.config.retention.describe():
        console.print(f"  {line}")
    console.print(
        f"Snapshots: {result.total_snapshots} total, {len(result.to_keep)} kept, "
        f"{len(result.to_delete)} to delete"
    )
    for info in result.to_keep:
        reasons = ", ".join(sorted(result.reasons.get(info.id, ())))
        console.print(Text(f"  keep   {info.id} ({reasons})", style="green"))
    for info in result.to_delete:
        console.print(Text(f"  delete {info.id}", style="red"))

    if not result.to_delete:
        console.print("[green]Nothing to prune.[/green]")
        return 0
    if dry_run:
        console.print("[yellow]Dry run - no snapshots deleted[/yellow]")
        return 0
    if not force and not typer.confirm(f"Delete {len(result.to_delete)} snapshot(s)?", default=False):
        console.print("Prune cancelled.")
        return 0

    try:
        _, report = await engine.prune()
    except KeyboardInterrupt:
        console.print("[yellow]Prune interrupted.[/yellow] Some snapshots may already be deleted.")
        return 130
    except BulletproofError as exc:
        _print_error(exc, "Prune failed:")
        return 1

    if report is None:
        return 0
    console.print(f"[green]Deleted {len(report.deleted)} snapshot(s)[/green]")
    for snapshot_id, reason in report.failures.items():
        console.print(Text(f"Failed to delete {snapshot_id}: {reason}", style="red"))
    return 0 if report.ok else 1


@app.command()
def prune(
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be deleted."),
    force: bool = typer.Option(False, "--force", help="Skip the confirmation prompt."),
) -> None:
    """Delete snapshots that fall outside the retention policy."""
    raise typer.Exit(code=asyncio.run(_prune_async(dry_run, force)))


@config_app.command("show")
def config_show() -> None:
    """Print the current configuration."""
    try:
        config = load_config()
    except BulletproofError as exc:
        _print_error(exc)
        raise typer.Exit(code=1)
    console.print(f"Config: {config_path()}")
    console.print_json(json.dumps(asdict(config)))


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Dotted key, e.g. destination.path or retention.keep_last."),
    value: str = typer.Argument(..., help="New value; lists are comma separated."),
) -> None:
    """Change one configuration value."""
    try:
        config = load_config()
        set_config_value(config, key, value)
    except BulletproofError as exc:
        _print_error(exc)
        raise typer.Exit(code=1)
    save_config(config)
    console.print(f"[green]Set[/green] {key} = {value}")


@app.command()
def version() -> None:
    """Print the bulletproof version."""
    console.print(f"bulletproof {VERSION}")

