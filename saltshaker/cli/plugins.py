"""
Saltshaker CLI - Plugin Commands

Commands:
    install   - Install a plugin archive
    list      - List installed plugins
    info      - Show plugin metadata and its capability grant
    uninstall - Remove an installed plugin
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.panel import Panel

from saltshaker.cli import console, get_config, plugin_app
from saltshaker.cli.output import print_error, print_json, print_success, print_table
from saltshaker.host import PluginHost
from saltshaker.plugins.errors import PluginInstallError
from saltshaker.plugins.models import InstallRequest, PluginResource


def parse_resource(value: str) -> PluginResource:
    """Parse ``ID:TYPE:PATH``; the path may itself contain colons."""
    parts = value.split(":", 2)
    if len(parts) != 3 or not all(parts):
        raise typer.BadParameter(f"expected ID:TYPE:PATH, got {value!r}")
    resource_id, resource_type, path = parts
    return PluginResource(id=resource_id, type=resource_type, path=path)


@plugin_app.command("install")
def install_plugin(
    ctx: typer.Context,
    archive: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        readable=True,
        help="Plugin .tgz archive.",
    ),
    plugin_id: str = typer.Option(..., "--id", help="Plugin id."),
    name: str = typer.Option(..., "--name", help="Display name."),
    version: str = typer.Option(..., "--version", help="Plugin version."),
    sha256: Optional[str] = typer.Option(
        None,
        "--sha256",
        help="Expected sha256 of the archive.",
    ),
    permissions: Optional[list[str]] = typer.Option(
        None,
        "--permission",
        "-p",
        help="Permission to grant, e.g. file.read. Repeatable.",
    ),
    resources: Optional[list[str]] = typer.Option(
        None,
        "--resource",
        "-r",
        help="Readable resource as ID:TYPE:PATH, e.g. prefs:json:{home}/prefs.json. Repeatable.",
    ),
) -> None:
    """
    Install a plugin archive.

    The archive's first path component is stripped on extraction; the
    plugin code must end up in a dist/ folder.
    """
    declared = [parse_resource(r) for r in resources or []]

    try:
        request = InstallRequest(
            id=plugin_id,
            name=name,
            version=version,
            content_hash=sha256,
            archive_bytes=archive.read_bytes(),
            permissions=set(permissions or []),
            resources={r.id: r for r in declared},
        )
    except ValidationError as e:
        print_error("Invalid install request", details=str(e))
        raise typer.Exit(1)

    host = PluginHost.from_settings(get_config(ctx))
    try:
        result = asyncio.run(host.plugins.install_plugin(request))
    except PluginInstallError as e:
        print_error(str(e))
        raise typer.Exit(1)

    print_success(f"Installed {plugin_id} {version}", details=result.storage_path)


@plugin_app.command("list")
def list_plugins(
    ctx: typer.Context,
    format: str = typer.Option(
        "table",
        "--format",
        "-f",
        help="Output format: table, json.",
    ),
) -> None:
    """
    List installed plugins.
    """
    host = PluginHost.from_settings(get_config(ctx))
    installed = host.plugins.list_installed_plugins()

    if format == "json":
        print_json([m.model_dump(mode="json") for m in installed])
        return

    if not installed:
        console.print("[dim]No plugins installed[/dim]")
        return

    print_table(
        title="Installed Plugins",
        columns=["ID", "Name", "Version", "Entry", "Installed"],
        rows=[
            [m.id, m.name, m.version, m.entry, m.installed_at.strftime("%Y-%m-%d %H:%M")]
            for m in installed
        ],
        styles=["cyan", None, "green", "dim", None],
    )


@plugin_app.command("info")
def plugin_info(
    ctx: typer.Context,
    plugin_id: str = typer.Argument(..., help="Plugin id."),
) -> None:
    """
    Show plugin metadata and granted capabilities.
    """
    host = PluginHost.from_settings(get_config(ctx))
    metadata = host.registry.get_metadata(plugin_id)
    if metadata is None:
        print_error(f"Plugin {plugin_id} is not installed")
        raise typer.Exit(1)

    context = host.registry.get_context(plugin_id)
    permissions = ", ".join(sorted(context.permissions)) if context and context.permissions else "none"

    console.print(Panel.fit(
        f"[bold]{metadata.name}[/bold] [green]{metadata.version}[/green]\n"
        f"ID: [cyan]{metadata.id}[/cyan]\n"
        f"Entry: {metadata.entry}\n"
        f"SHA-256: [dim]{metadata.content_hash}[/dim]\n"
        f"Installed: {metadata.installed_at.isoformat()}\n"
        f"Permissions: {permissions}",
        title="Plugin",
    ))

    if context and context.resources:
        print_table(
            title="Resources",
            columns=["ID", "Type", "Path"],
            rows=[[r.id, r.type, r.path] for r in context.resources.values()],
            styles=["cyan", None, "dim"],
        )


@plugin_app.command("uninstall")
def uninstall_plugin(
    ctx: typer.Context,
    plugin_id: str = typer.Argument(..., help="Plugin id."),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Do not ask for confirmation.",
    ),
) -> None:
    """
    Remove an installed plugin.
    """
    if not yes and not typer.confirm(f"Uninstall {plugin_id}?"):
        raise typer.Exit(1)

    host = PluginHost.from_settings(get_config(ctx))
    result = asyncio.run(host.plugins.uninstall_plugin(plugin_id))
    if not result["ok"]:
        print_error(f"Plugin {plugin_id} is not installed")
        raise typer.Exit(1)

    print_success(f"Uninstalled {plugin_id}")
