"""Bundle commands: check, sync, inspect and clear the installed bundle."""

from __future__ import annotations

import json
import sys
from typing import Any

import click
import structlog
from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from dms_tools.core.config import AppConfig
from dms_tools.core.errors import BundleError
from dms_tools.core.manager import ContentManager
from dms_tools.core.synchronizer import SyncOutcome, SyncResult
from dms_tools.core.types import BundleInfo

logger = structlog.get_logger()


def _get_context_objects(ctx: click.Context) -> tuple[AppConfig, Console, bool, bool]:
    """Extract common context objects."""
    config: AppConfig = ctx.obj["config"]
    console: Console = ctx.obj["console"]
    verbose: bool = ctx.obj["verbose"]
    debug: bool = ctx.obj["debug"]
    return config, console, verbose, debug


def _output_json(data: dict[str, Any]) -> None:
    """Output data as JSON."""
    print(json.dumps(data, indent=2, default=str))


def _bundle_info_dict(info: BundleInfo | None) -> dict[str, Any] | None:
    if info is None:
        return None
    return info.model_dump(mode="json")


def _bundle_info_table(info: BundleInfo, title: str) -> Table:
    table = Table(title=title)
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="magenta")

    table.add_row("Identifier", info.identifier or "N/A")
    table.add_row("Published", info.publish_date.isoformat() if info.publish_date else "N/A")
    table.add_row("Download URL", info.download_url or "N/A")
    languages = info.available_languages
    table.add_row("Languages", ", ".join(languages) if languages else "N/A")
    return table


def _resolve_project(config: AppConfig, project_id: str | None) -> str:
    project = project_id or config.project_id
    if not project:
        raise click.UsageError("No project ID given and none configured")
    return project


@click.group()
@click.pass_context
def bundle(ctx: click.Context) -> None:
    """Check, sync and inspect the installed content bundle."""
    pass


@bundle.command()
@click.argument("project_id", type=str, required=False)
@click.option("--language", "-l", type=str, help="Bundle language code")
@click.pass_context
def info(ctx: click.Context, project_id: str | None, language: str | None) -> None:
    """Show the latest published bundle for a project."""
    config, console, verbose, debug = _get_context_objects(ctx)
    project = _resolve_project(config, project_id)

    try:
        with ContentManager(config) as manager:
            bundle_info = manager.metadata_client.get_latest_bundle_info(
                project, language or config.language
            )
            current = manager.cache.current_bundle_timestamp
    except BundleError as e:
        console.print(f"[red]Failed to fetch bundle information: {e}[/red]")
        sys.exit(1)

    remote = bundle_info.publish_timestamp
    update_available = remote is not None and remote > current

    if config.output_format == "json":
        _output_json({
            "project": project,
            "bundle": _bundle_info_dict(bundle_info),
            "update_available": update_available,
        })
        return

    console.print(_bundle_info_table(bundle_info, f"Latest Bundle for Project {project}"))
    if update_available:
        console.print("[yellow]An update is available[/yellow]")
    else:
        console.print("[green]Installed bundle is up to date[/green]")


@bundle.command()
@click.argument("project_id", type=str, required=False)
@click.option("--language", "-l", type=str, help="Bundle language code")
@click.pass_context
def sync(ctx: click.Context, project_id: str | None, language: str | None) -> None:
    """Download and install the latest bundle if it is newer."""
    config, console, verbose, debug = _get_context_objects(ctx)
    project = _resolve_project(config, project_id)
    language = language or config.language

    with ContentManager(config) as manager:
        if config.output_format == "rich":
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                DownloadColumn(),
                TransferSpeedColumn(),
                TimeElapsedColumn(),
                console=console,
            ) as progress:
                task = progress.add_task("Syncing bundle", total=None)

                def on_progress(done: int, total: int) -> None:
                    progress.update(task, completed=done, total=total or None)

                result = manager.synchronizer.sync(project, language, on_progress=on_progress)
        else:
            result = manager.synchronizer.sync(project, language)

    _report_sync(result, project, config, console, verbose)
    if not result.ok:
        sys.exit(1)


def _report_sync(
    result: SyncResult,
    project: str,
    config: AppConfig,
    console: Console,
    verbose: bool,
) -> None:
    if config.output_format == "json":
        _output_json({
            "project": project,
            "outcome": result.outcome.value,
            "bundle": _bundle_info_dict(result.bundle_info),
            "error": result.reason,
            "stale_paths": [str(path) for path in result.stale_paths],
        })
        return

    if result.outcome == SyncOutcome.UPDATED:
        identifier = result.bundle_info.identifier if result.bundle_info else None
        console.print(f"[green]Bundle updated[/green] ({identifier or 'unknown'})")
        if result.stale_paths:
            console.print(
                f"[yellow]{len(result.stale_paths)} leftover path(s) could not be removed[/yellow]"
            )
            if verbose:
                for path in result.stale_paths:
                    console.print(f"  {path}")
    elif result.outcome == SyncOutcome.UP_TO_DATE:
        console.print("[green]Bundle is up to date[/green]")
    else:
        console.print(f"[red]Sync failed: {result.reason}[/red]")


@bundle.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the installed bundle."""
    config, console, verbose, debug = _get_context_objects(ctx)

    with ContentManager(config) as manager:
        timestamp = manager.cache.current_bundle_timestamp
        cached = manager.cache.cached_bundle_info
        loaded = manager.tree.loaded
        node_count = manager.tree.node_count

    if config.output_format == "json":
        _output_json({
            "bundle_dir": str(config.bundle_dir),
            "current_bundle_timestamp": timestamp,
            "cached_bundle": _bundle_info_dict(cached),
            "manifest_loaded": loaded,
            "nodes": node_count,
        })
        return

    if timestamp == 0:
        console.print("[yellow]No bundle installed[/yellow]")
        return

    if cached is not None:
        console.print(_bundle_info_table(cached, "Installed Bundle"))
    console.print(f"Bundle directory: {config.bundle_dir}")
    console.print(f"Nodes: {node_count}" if loaded else "[yellow]Manifest not loaded[/yellow]")


@bundle.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def clear(ctx: click.Context, yes: bool) -> None:
    """Delete the installed bundle and reset its state."""
    config, console, verbose, debug = _get_context_objects(ctx)

    if not yes:
        click.confirm(f"Delete everything under {config.bundle_dir}?", abort=True)

    with ContentManager(config) as manager:
        failed = manager.clear_bundle()

    if failed:
        console.print(f"[yellow]{len(failed)} path(s) could not be removed[/yellow]")
        for path in failed:
            console.print(f"  {path}")
        sys.exit(1)
    console.print("[green]Bundle cleared[/green]")
