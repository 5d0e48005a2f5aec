"""Turnpoint CLI - inspect and drive checkpoint history from a terminal."""

import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from turnpoint import __version__
from turnpoint.config import PROJECT_DIRNAME, TURNPOINT_DIR, SnapshotConfig, detect_project_root, get_config
from turnpoint.errors import SnapshotError, format_error
from turnpoint.logging import setup_logging
from turnpoint.service import SnapshotService, SnapshotStore

console = Console()


def _project(path: str | None) -> Path:
    if path:
        return Path(path).resolve()
    return detect_project_root() or Path.cwd()


def _service(ctx: click.Context, project: Path) -> SnapshotService:
    config = get_config(project)
    if ctx.obj.get("store"):
        config.storage_dir = ctx.obj["store"]
    service = SnapshotService(SnapshotStore.from_config(config).open(), config)
    ctx.call_on_close(service.close)
    return service


def _fail(error: Exception) -> None:
    console.print(f"[red]{format_error(error)}[/red]")
    sys.exit(1)


def _stat_cell(insertions: int, deletions: int) -> str:
    return f"[green]+{insertions}[/green] [red]-{deletions}[/red]"


@click.group()
@click.version_option(version=__version__)
@click.option("--store", type=click.Path(file_okay=False), help="Snapshot store directory")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx: click.Context, store: str | None, verbose: bool):
    """Turnpoint: branchable file checkpoints for coding sessions."""
    ctx.ensure_object(dict)
    ctx.obj["store"] = store
    setup_logging(verbose)


@main.command()
@click.argument("session_id")
@click.argument("message_id")
@click.option("--project", "-p", type=click.Path(exists=True, file_okay=False), help="Project directory")
@click.pass_context
def capture(ctx: click.Context, session_id: str, message_id: str, project: str | None):
    """Capture the project directory as a new checkpoint."""
    project_path = _project(project)
    try:
        node = _service(ctx, project_path).capture_directory(session_id, message_id, project_path)
    except (SnapshotError, ValueError) as e:
        _fail(e)
        return

    console.print(f"[green]✓[/green] Checkpoint {node.id} for message {node.message_id}")
    console.print(f"  {node.stats.summary}")


@main.command()
@click.argument("session_id")
@click.argument("node_id")
@click.option("--project", "-p", type=click.Path(exists=True, file_okay=False), help="Project directory")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation")
@click.pass_context
def restore(ctx: click.Context, session_id: str, node_id: str, project: str | None, force: bool):
    """Restore the project directory to a checkpoint and move HEAD there."""
    project_path = _project(project)
    service = _service(ctx, project_path)

    try:
        changes = service.diff_against_directory(session_id, node_id, project_path)
    except (SnapshotError, ValueError) as e:
        _fail(e)
        return

    if not changes:
        console.print("Working directory already matches this checkpoint.")
    elif not force:
        console.print(f"Restoring {node_id} will change {len(changes)} files in {project_path}")
        if not click.confirm("Continue?"):
            console.print("Cancelled.")
            return

    try:
        result = service.restore_to_directory(session_id, node_id, project_path)
    except (SnapshotError, ValueError) as e:
        _fail(e)
        return

    console.print(
        f"[green]✓[/green] Restored {node_id}: {len(result.written)} written, "
        f"{len(result.deleted)} deleted, {len(result.unchanged)} unchanged"
    )


@main.command()
@click.argument("session_id")
@click.option("--all", "show_all", is_flag=True, help="Include orphaned branches")
@click.option("--project", "-p", type=click.Path(exists=True, file_okay=False), help="Project directory")
@click.pass_context
def timeline(ctx: click.Context, session_id: str, show_all: bool, project: str | None):
    """Show checkpoint history for a session."""
    try:
        result = _service(ctx, _project(project)).get_timeline(session_id)
    except (SnapshotError, ValueError) as e:
        _fail(e)
        return

    if not result.nodes:
        console.print(f"No checkpoints for session {session_id}")
        return

    table = Table()
    table.add_column("")
    table.add_column("CHECKPOINT")
    table.add_column("MESSAGE")
    table.add_column("PARENT")
    table.add_column("CHANGES", justify="right")
    table.add_column("TIME")

    for node in result.nodes:
        if node["is_orphaned"] and not show_all:
            continue
        marker = "[bold cyan]●[/bold cyan]" if node["is_current"] else ("│" if node["is_on_active_path"] else "[dim]○[/dim]")
        style = "dim" if node["is_orphaned"] else None
        table.add_row(
            marker,
            node["id"],
            node["message_id"],
            node["parent_id"] or "-",
            _stat_cell(node["insertions"], node["deletions"]),
            node["timestamp"][:19],
            style=style,
        )

    console.print(table)
    console.print(f"[dim]HEAD: {result.current_head_id}[/dim]")


@main.command()
@click.argument("session_id")
@click.argument("from_id")
@click.argument("to_id", required=False)
@click.option("--project", "-p", type=click.Path(exists=True, file_okay=False), help="Project directory")
@click.pass_context
def diff(ctx: click.Context, session_id: str, from_id: str, to_id: str | None, project: str | None):
    """Show file changes between two checkpoints, or a checkpoint and the directory."""
    project_path = _project(project)
    service = _service(ctx, project_path)
    try:
        if to_id:
            changes = service.diff_checkpoints(session_id, from_id, to_id)
        else:
            changes = service.diff_against_directory(session_id, from_id, project_path)
    except (SnapshotError, ValueError) as e:
        _fail(e)
        return

    if not changes:
        console.print("No changes.")
        return

    table = Table()
    table.add_column("STATUS")
    table.add_column("FILE")
    table.add_column("CHANGES", justify="right")
    for change in changes:
        table.add_row(change.status, change.path, _stat_cell(change.insertions, change.deletions))
    console.print(table)


@main.command()
@click.argument("session_id")
@click.option("--project", "-p", type=click.Path(exists=True, file_okay=False), help="Project directory")
@click.pass_context
def migrate(ctx: click.Context, session_id: str, project: str | None):
    """Move legacy inline checkpoints into the blob store."""
    try:
        count = _service(ctx, _project(project)).migrate_inline_checkpoints(session_id)
    except (SnapshotError, ValueError) as e:
        _fail(e)
        return
    console.print(f"[green]✓[/green] Migrated {count} checkpoints")


@main.command()
@click.option("--project", "-p", type=click.Path(exists=True, file_okay=False), help="Project directory")
@click.pass_context
def sessions(ctx: click.Context, project: str | None):
    """List sessions with checkpoint history."""
    service = _service(ctx, _project(project))
    names = service.sessions()
    if not names:
        console.print("No sessions.")
        return
    for name in names:
        console.print(name)


@main.command()
@click.option("--dry-run", is_flag=True, help="Report without deleting")
@click.option("--min-age", type=float, default=3600, show_default=True, help="Seconds before unreferenced content may be removed")
@click.option("--project", "-p", type=click.Path(exists=True, file_okay=False), help="Project directory")
@click.pass_context
def gc(ctx: click.Context, dry_run: bool, min_age: float, project: str | None):
    """Remove blobs and trees no checkpoint references."""
    from turnpoint.maintenance import collect_garbage

    service = _service(ctx, _project(project))
    try:
        result = collect_garbage(service.store, dry_run=dry_run, min_age_seconds=min_age)
    except SnapshotError as e:
        _fail(e)
        return

    verb = "Would remove" if dry_run else "Removed"
    console.print(f"{verb} {result.trees_removed} trees and {result.blobs_removed} blobs")
    console.print(f"[dim]Kept {result.trees_kept} trees, {result.blobs_kept} blobs[/dim]")
    for tree_hash in result.missing_trees:
        console.print(f"[yellow]Missing referenced tree: {tree_hash}[/yellow]")


@main.group()
def config():
    """Manage configuration.

    Values cascade: project .turnpoint/config.yaml → ~/.turnpoint/config.yaml → defaults.
    """
    pass


@config.command("list")
@click.option("--project", "-p", type=click.Path(exists=True, file_okay=False), help="Project directory")
def config_list(project: str | None):
    """Show effective configuration."""
    effective = get_config(_project(project))
    defaults = SnapshotConfig()

    table = Table()
    table.add_column("KEY")
    table.add_column("VALUE")
    table.add_column("DEFAULT")
    for key, value in effective.to_dict().items():
        default = getattr(defaults, key)
        marker = "" if value == default else " *"
        table.add_row(key, f"{value}{marker}", str(default))
    console.print(table)
    console.print(f"[dim]store: {effective.store_path}[/dim]")


def _coerce(key: str, value: str):
    default = getattr(SnapshotConfig(), key)
    if isinstance(default, bool):
        return value.lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    if isinstance(default, list):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.option("--project", is_flag=True, help="Set in project-level config")
def config_set(key: str, value: str, project: bool):
    """Set a configuration value.

    Examples:
        turnpoint config set max_file_size 1048576
        turnpoint config set always_exclude .git,node_modules,dist --project
    """
    key = key.replace("-", "_")
    if key not in SnapshotConfig().to_dict():
        console.print(f"[red]Unknown config key: {key}[/red]")
        sys.exit(1)

    config_dir = (Path.cwd() / PROJECT_DIRNAME) if project else TURNPOINT_DIR
    current = SnapshotConfig.load(config_dir)

    try:
        typed_value = _coerce(key, value)
    except ValueError:
        console.print(f"[red]Invalid value for {key}: {value}[/red]")
        sys.exit(1)

    data = current.to_dict()
    data[key] = typed_value
    try:
        SnapshotConfig(**data).save(config_dir)
    except SnapshotError as e:
        _fail(e)
        return

    location = "project" if project else "user"
    console.print(f"[green]✓[/green] Set {key} = {typed_value} ({location}-level config)")


if __name__ == "__main__":
    main()
