"""Timeline CLI - working-tree snapshots that never touch the git index."""

import json
import sys
from pathlib import Path

import click
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from timeline import __version__, git
from timeline.capture import save as save_capture
from timeline.config import TimelineConfig, coerce_value
from timeline.errors import TimelineError, format_error
from timeline.hooks import read_hook_payload
from timeline.index import TimelineIndex
from timeline.lock_guard import CaptureState
from timeline.logging import configure_logging, logger
from timeline.queue import DeferredQueue
from timeline.retention import RetentionManager
from timeline.search import SearchEngine
from timeline.travel import TravelEngine

console = Console()


def _load_config(verbose: bool = False) -> TimelineConfig:
    try:
        config = TimelineConfig.load()
    except (OSError, yaml.YAMLError) as e:
        console.print(f"[red]Failed to read config: {escape(str(e))}[/red]")
        sys.exit(1)
    configure_logging(config, verbose=verbose)
    return config


def _workspace() -> Path:
    try:
        return git.require_repo(Path.cwd())
    except TimelineError as e:
        console.print(f"[red]{format_error(e)}[/red]")
        sys.exit(1)


def _fail(error: BaseException) -> None:
    console.print(f"[red]{format_error(error)}[/red]")
    sys.exit(1)


def _ts(created: str) -> str:
    return created[:19].replace("T", " ") if created else "-"


@click.group()
@click.version_option(version=__version__)
def main():
    """Timeline: snapshots of your working tree, without touching the index."""
    pass


@main.command()
@click.option("--quiet", "-q", is_flag=True, help="Print nothing (for hooks)")
def save(quiet):
    """Snapshot the working tree. Always exits 0.

    Reads an optional hook payload (JSON) from stdin. If git's index is
    locked for too long the request is queued and retried later.
    """
    try:
        try:
            config = TimelineConfig.load()
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Ignoring unreadable config, using defaults: {e}")
            config = TimelineConfig()
        configure_logging(config)
        outcome = save_capture(config=config, payload=read_hook_payload())
    except Exception as e:  # noqa: BLE001 - a hook must never fail its caller
        logger.exception(f"Unexpected error during save: {e}")
        return

    if quiet:
        return
    if outcome.state is CaptureState.COMMITTED and outcome.result:
        console.print(f"[green]✓[/green] Snapshot {outcome.result.commit[:7]} saved")
    elif outcome.state is CaptureState.NOOP:
        console.print("[dim]No changes since last commit[/dim]")
    elif outcome.deferred:
        console.print("[yellow]Repository busy, snapshot queued[/yellow]")
    else:
        console.print(f"[dim]Nothing saved: {outcome.error}[/dim]")


@main.command("list")
@click.option("--branch", "-b", help="Line of work (default: current branch)")
@click.option("--session", "-s", help="Only snapshots from this session")
@click.option("--all", "show_all", is_flag=True, help="Every line of work")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
def list_cmd(branch, session, show_all, as_json):
    """List snapshots, newest first."""
    config = _load_config()
    workspace = _workspace()
    index = TimelineIndex(workspace, config)

    try:
        if show_all:
            snapshots = index.list_all(session_id=session, with_metadata=True)
        else:
            snapshots = index.list(branch, session_id=session, with_metadata=True)
    except TimelineError as e:
        _fail(e)
        return

    if as_json:
        print(json.dumps([s.to_dict() for s in snapshots], indent=2))
        return

    if not snapshots:
        console.print("[yellow]No snapshots found.[/yellow]")
        console.print("Create one with: timeline save")
        return

    table = Table()
    table.add_column("#", justify="right")
    table.add_column("COMMIT")
    if show_all:
        table.add_column("BRANCH")
    table.add_column("CREATED")
    table.add_column("SESSION")
    table.add_column("TOOL")

    for number, snapshot in enumerate(snapshots, 1):
        meta = snapshot.metadata
        session_id = meta.session_id if meta and meta.session_id else "-"
        row = [str(number), snapshot.commit[:7]]
        if show_all:
            row.append(snapshot.line_of_work or "-")
        row.extend([
            _ts(snapshot.created),
            session_id[:12],
            (meta.tool if meta else None) or "-",
        ])
        table.add_row(*row)

    console.print(table)


@main.command()
@click.argument("target", default="1")
def show(target):
    """Show one snapshot and how it differs from HEAD.

    TARGET is a number from 'timeline list' (1 = most recent), a reference
    name or a commit id.
    """
    config = _load_config()
    workspace = _workspace()

    try:
        snapshot = TimelineIndex(workspace, config).detail(target)
    except TimelineError as e:
        _fail(e)
        return

    console.print(f"[bold]{snapshot.name}[/bold]")
    console.print(f"[dim]{snapshot.commit} | {_ts(snapshot.created)}[/dim]")
    meta = snapshot.metadata
    if meta:
        if meta.session_id:
            console.print(f"  Session: {meta.session_id}")
        if meta.tool:
            console.print(f"  Tool: {meta.tool}")
        if meta.files:
            console.print(f"  Files: {', '.join(meta.files)}")
    console.print()
    if snapshot.diff:
        console.print(f"[bold]vs HEAD:[/bold] {snapshot.diff.summary}")
        for status, path in snapshot.diff.files:
            console.print(f"  {status}  {path}")


@main.command()
@click.argument("target", required=False)
def travel(target):
    """Restore the working tree to a snapshot.

    The current state is saved as a snapshot first, so travel can always be
    undone. The index is left alone.
    """
    config = _load_config()
    workspace = _workspace()
    engine = TravelEngine(workspace, config)

    if not target:
        snapshots = engine.index.list()
        if not snapshots:
            console.print("[yellow]No snapshots to travel to.[/yellow]")
            return
        for number, snapshot in enumerate(snapshots, 1):
            console.print(f"  {number}. {escape(f'[{snapshot.commit[:7]}]')} {snapshot.subject}")
        target = click.prompt("Snapshot number or commit id")

    try:
        result = engine.travel(target)
    except TimelineError as e:
        _fail(e)
        return

    if result.safety.created:
        console.print(f"[dim]Saved current state as {result.safety.commit[:7]}[/dim]")
    console.print(f"[green]✓[/green] Restored {result.target.name}")


@main.command()
@click.argument("pattern", required=False)
@click.option("--ignore-case", "-i", is_flag=True, help="Case-insensitive match")
@click.option("--branch", "-b", help="Line of work (default: current branch)")
def search(pattern, ignore_case, branch):
    """Search file contents and names across snapshots."""
    if not pattern:
        console.print("[red]Usage: timeline search <pattern>[/red]")
        sys.exit(1)

    config = _load_config()
    workspace = _workspace()

    try:
        matches = SearchEngine(workspace, config).search(pattern, ignore_case=ignore_case, line_of_work=branch)
    except TimelineError as e:
        _fail(e)
        return

    if not matches:
        console.print("[yellow]No matches found.[/yellow]")
        return

    for match in matches:
        console.print()
        console.print(f"[bold]{escape(f'[{match.snapshot.commit[:7]}]')}[/bold] {match.snapshot.subject}")
        for path in match.paths:
            console.print(f"  [cyan]{path}[/cyan]")
        for line in match.lines:
            console.print(f"  {line}", markup=False, highlight=False)

    console.print()
    console.print(f"Found matches in {len(matches)} snapshot(s)")


@main.command()
@click.argument("target", required=False)
@click.option("--branch", "-b", help="Line of work (default: current branch)")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation")
def delete(target, branch, force):
    """Delete one snapshot, or every snapshot of a branch.

    With TARGET only that snapshot is removed.
    """
    config = _load_config()
    workspace = _workspace()
    retention = RetentionManager(workspace, config)

    try:
        if target:
            if not force and not click.confirm(f"Delete snapshot '{target}'?"):
                console.print("Cancelled.")
                return
            name = retention.delete(target)
            console.print(f"[green]✓[/green] Deleted: {name}")
            return

        snapshots = retention.index.list(branch)
        if not snapshots:
            console.print("[yellow]No snapshots to delete.[/yellow]")
            return
        for snapshot in snapshots:
            console.print(f"  - {escape(f'[{snapshot.commit[:7]}]')} {snapshot.name}")
        confirmed = force or click.confirm(f"Permanently delete {len(snapshots)} snapshot(s)?")
        report = retention.delete_line(branch, confirmed)
    except TimelineError as e:
        _fail(e)
        return

    if report.cancelled:
        console.print("Cancelled.")
        return
    console.print(f"[green]✓[/green] Deleted {len(report.deleted)} snapshot(s)")
    if report.failed:
        console.print(f"[red]Failed to delete {len(report.failed)}[/red]")
        sys.exit(1)


@main.command()
@click.option("--force", "-f", is_flag=True, help="Skip confirmation")
def cleanup(force):
    """Delete snapshots whose branch no longer exists."""
    config = _load_config()
    workspace = _workspace()
    retention = RetentionManager(workspace, config)

    try:
        orphaned = retention.find_orphaned()
        if not orphaned:
            console.print("No orphaned snapshots found.")
            return
        console.print(f"Found {len(orphaned)} orphaned snapshot(s):")
        for ref in orphaned:
            console.print(f"  - {ref.short_name}")
        confirmed = force or click.confirm("Delete these snapshots?")
        report = retention.cleanup(confirmed)
    except TimelineError as e:
        _fail(e)
        return

    if report.cancelled:
        console.print("Cancelled.")
        return
    console.print(f"[green]✓[/green] Deleted {len(report.deleted)} orphaned snapshot(s)")
    if report.failed:
        console.print(f"[red]Failed to delete {len(report.failed)}[/red]")
        sys.exit(1)


@main.command()
def sessions():
    """Snapshots grouped by session."""
    config = _load_config()
    workspace = _workspace()

    try:
        groups = TimelineIndex(workspace, config).group_by_session()
    except TimelineError as e:
        _fail(e)
        return

    if not groups:
        console.print("[yellow]No snapshots found.[/yellow]")
        return

    table = Table()
    table.add_column("SESSION", no_wrap=True)
    table.add_column("SNAPSHOTS", justify="right")
    table.add_column("LATEST")
    table.add_column("PROJECT", overflow="fold")
    for group in groups:
        latest = group.latest
        table.add_row(
            group.session_id,
            str(len(group.snapshots)),
            _ts(latest.created) if latest else "-",
            group.project_path or "-",
        )
    console.print(table)


@main.group()
def queue():
    """Inspect and drain the deferred capture queue."""
    pass


@queue.command("process")
def queue_process():
    """Retry queued captures now."""
    config = _load_config()
    try:
        report = DeferredQueue(config).drain()
    except (TimelineError, OSError) as e:
        _fail(e)
        return

    if report.skipped:
        console.print("[yellow]Another process is draining the queue.[/yellow]")
        return
    console.print(
        f"Captured {report.captured}, pending {report.retained}, "
        f"dead-lettered {report.dead_lettered}, corrupt {report.corrupt}"
    )


@queue.command("daemon")
@click.option("--interval", default=5.0, show_default=True, help="Seconds between drains")
def queue_daemon(interval):
    """Drain the queue repeatedly until interrupted."""
    config = _load_config()
    console.print(f"Queue daemon started, draining every {interval}s (Ctrl+C to stop)")
    try:
        DeferredQueue(config).run_daemon(interval_seconds=interval)
    except KeyboardInterrupt:
        console.print("Stopped.")


@queue.command("status")
def queue_status():
    """Show queue depth and lock state."""
    config = _load_config()
    try:
        status = DeferredQueue(config).status()
    except OSError as e:
        _fail(e)
        return

    console.print(f"  pending: {status.pending}")
    console.print(f"  dead-lettered: {status.dead_lettered}")
    if status.lock_age_seconds is None:
        console.print("  lock: free")
    elif status.lock_held:
        console.print(f"  lock: held ({status.lock_age_seconds:.0f}s)")
    else:
        console.print(f"  lock: [yellow]stale[/yellow] ({status.lock_age_seconds:.0f}s)")
    if status.dead_lettered:
        console.print(f"[dim]Dead letters: {config.dead_letter_file}[/dim]")


@main.group()
def config():
    """Manage configuration (~/.timeline/config.yaml)."""
    pass


@config.command("list")
def config_list():
    """Show current configuration."""
    cfg = _load_config()
    defaults = TimelineConfig(state_dir=cfg.state_dir)

    console.print(f"[bold]Configuration[/bold] [dim]({cfg.state_dir / 'config.yaml'})[/dim]")
    console.print()
    for key, value in cfg.to_dict().items():
        _show_value(key, value, getattr(defaults, key))

    console.print()
    console.print("[dim]timeline config set KEY VALUE      Set a value[/dim]")


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str):
    """Set a configuration value.

    Examples:
        timeline config set wait_budget_ms 5000
        timeline config set drain_on_save false
    """
    key = key.replace("-", "_")
    try:
        typed_value = coerce_value(key, value)
    except KeyError:
        console.print(f"[red]Unknown config key: {key}[/red]")
        console.print(f"[dim]Keys: {', '.join(TimelineConfig(state_dir=Path('.')).to_dict())}[/dim]")
        sys.exit(1)
    except ValueError:
        console.print(f"[red]Invalid value for {key}: {value}[/red]")
        sys.exit(1)

    cfg = _load_config()
    setattr(cfg, key, typed_value)
    try:
        cfg.save()
    except OSError as e:
        _fail(e)
    console.print(f"[green]✓[/green] Set {key} = {typed_value}")


def _show_value(key: str, value, default):
    """Display a value, highlighting if non-default."""
    if value != default:
        console.print(f"  {key}: [cyan]{value}[/cyan] [dim](default: {default})[/dim]")
    else:
        console.print(f"  {key}: {value}")


if __name__ == "__main__":
    main()
