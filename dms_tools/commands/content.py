"""Content commands: look up nodes and resolve local files."""

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
    TextColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from dms_tools.core.config import AppConfig
from dms_tools.core.errors import BundleError
from dms_tools.core.manager import ContentManager
from dms_tools.core.types import DirectoryNode
from dms_tools.core.utils import format_size

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


def _node_dict(node: DirectoryNode) -> dict[str, Any]:
    return {
        "id": node.identifier,
        "parent_id": node.parent_identifier,
        "order": node.order,
        "title": node.title,
        "content": node.content,
        "metadata": node.metadata,
        "critical": node.critical,
        "children": [child.identifier for child in node.sorted_children()],
        "attachments": [
            attachment.model_dump() for attachment in node.attachments or ()
        ],
    }


@click.group()
@click.pass_context
def content(ctx: click.Context) -> None:
    """Look up nodes of the installed bundle."""
    pass


@content.command()
@click.argument("identifier", type=int)
@click.pass_context
def find(ctx: click.Context, identifier: int) -> None:
    """Show the node with IDENTIFIER."""
    config, console, verbose, debug = _get_context_objects(ctx)

    try:
        with ContentManager(config) as manager:
            node = manager.tree.find(identifier)
    except BundleError as e:
        console.print(f"[red]Lookup failed: {e}[/red]")
        sys.exit(1)

    if node is None:
        console.print(f"[red]No node with ID {identifier}[/red]")
        sys.exit(1)

    if config.output_format == "json":
        _output_json(_node_dict(node))
        return

    table = Table(title=f"Node {node.identifier}")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="magenta")

    table.add_row("Title", node.title or "N/A")
    table.add_row("Parent", str(node.parent_identifier) if node.parent_identifier is not None else "N/A")
    table.add_row("Order", str(node.order))
    table.add_row("Critical", "yes" if node.critical else "no")
    table.add_row("Children", str(len(node.children or ())))
    if node.content:
        preview = node.content if verbose or len(node.content) <= 80 else f"{node.content[:77]}..."
        table.add_row("Content", preview)
    console.print(table)

    if node.children:
        children = Table(title="Children")
        children.add_column("ID", style="cyan")
        children.add_column("Order", style="yellow")
        children.add_column("Title", style="green")
        for child in node.sorted_children():
            children.add_row(str(child.identifier), str(child.order), child.title or "")
        console.print(children)

    if node.attachments:
        attachments = Table(title="Attachments")
        attachments.add_column("Title", style="cyan")
        attachments.add_column("Type", style="yellow")
        attachments.add_column("Size", style="green")
        attachments.add_column("URL", style="magenta")
        for attachment in node.attachments:
            attachments.add_row(
                attachment.title or "",
                attachment.mime or "",
                format_size(attachment.size),
                attachment.url or "",
            )
        console.print(attachments)


@content.command()
@click.argument("content_path", type=str)
@click.pass_context
def resolve(ctx: click.Context, content_path: str) -> None:
    """Print the local file for a bundle-relative CONTENT_PATH."""
    config, console, verbose, debug = _get_context_objects(ctx)

    try:
        with ContentManager(config) as manager:
            path = manager.resolver.resolve_bundle_path(content_path)
    except BundleError as e:
        console.print(f"[red]Lookup failed: {e}[/red]")
        sys.exit(1)

    if path is None:
        console.print(f"[red]Not found in bundle: {content_path}[/red]")
        sys.exit(1)

    if config.output_format == "json":
        _output_json({"content_path": content_path, "path": str(path)})
    else:
        console.print(str(path))


@click.group()
@click.pass_context
def document(ctx: click.Context) -> None:
    """Manage the local documents cache."""
    pass


@document.command()
@click.argument("url", type=str)
@click.option("--force", is_flag=True, help="Download even if a cached copy exists")
@click.pass_context
def fetch(ctx: click.Context, url: str, force: bool) -> None:
    """Download the document at URL into the cache."""
    config, console, verbose, debug = _get_context_objects(ctx)

    with ContentManager(config) as manager:
        cached = None if force else manager.resolver.resolve_document(url)
        if cached is not None:
            path = cached
        else:
            try:
                if config.output_format == "rich":
                    with Progress(
                        TextColumn("[progress.description]{task.description}"),
                        BarColumn(),
                        DownloadColumn(),
                        TransferSpeedColumn(),
                        console=console,
                    ) as progress:
                        task = progress.add_task("Downloading", total=None)

                        def on_progress(done: int, total: int) -> None:
                            progress.update(task, completed=done, total=total or None)

                        path = manager.resolver.download_document(url, on_progress=on_progress)
                else:
                    path = manager.resolver.download_document(url)
            except BundleError as e:
                console.print(f"[red]Download failed: {e}[/red]")
                sys.exit(1)

    if config.output_format == "json":
        _output_json({"url": url, "path": str(path), "cached": cached is not None})
    elif cached is not None:
        console.print(f"[green]Already cached:[/green] {path}")
    else:
        console.print(f"[green]Saved to[/green] {path}")


@document.command()
@click.argument("url", type=str)
@click.pass_context
def path(ctx: click.Context, url: str) -> None:
    """Print the cached file for URL, if it has been downloaded."""
    config, console, verbose, debug = _get_context_objects(ctx)

    with ContentManager(config) as manager:
        local = manager.resolver.resolve_document(url)

    if local is None:
        console.print(f"[red]Not cached: {url}[/red]")
        sys.exit(1)

    if config.output_format == "json":
        _output_json({"url": url, "path": str(local)})
    else:
        console.print(str(local))
