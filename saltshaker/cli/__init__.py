"""
Saltshaker - Command Line Interface

Usage:
    $ saltshaker --help
    $ saltshaker run
    $ saltshaker run overlay stats
    $ saltshaker plugin install overlay.tgz --id overlay --name Overlay --version 1.0.0
    $ saltshaker plugin list

Sub-command Groups:
    plugin - Install, inspect and remove plugins

For detailed help on any command:
    $ saltshaker <command> --help
    $ saltshaker <group> <command> --help
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.panel import Panel

from saltshaker import __version__
from saltshaker.cli.output import console, err_console
from saltshaker.config.settings import Settings

app = typer.Typer(
    name="saltshaker",
    help="Saltshaker - sandboxed plugin host for Slippi telemetry",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)

plugin_app = typer.Typer(
    name="plugin",
    help="Plugin management commands",
    no_args_is_help=True,
)

app.add_typer(plugin_app, name="plugin")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"Saltshaker version {__version__}")
        raise typer.Exit()


def verbose_callback(value: bool) -> None:
    """Set verbose mode."""
    if value:
        logging.basicConfig(level=logging.DEBUG)


@app.callback()
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        callback=verbose_callback,
        help="Enable verbose output.",
    ),
    plugins_dir: Optional[Path] = typer.Option(
        None,
        "--plugins-dir",
        "-d",
        help="Directory holding installed plugins.",
    ),
) -> None:
    """
    Saltshaker - sandboxed plugin host for Slippi telemetry

    Installs third-party plugins, runs them in a restricted context and
    feeds them live match events relayed from Dolphin.
    """
    config = Settings()
    if plugins_dir is not None:
        config = config.model_copy(update={"PLUGINS_DIR": plugins_dir})
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = config


def get_config(ctx: typer.Context) -> Settings:
    """Settings resolved by the main callback."""
    config = ctx.find_root().obj
    return config if isinstance(config, Settings) else Settings()


@app.command()
def run(
    ctx: typer.Context,
    plugin_ids: Optional[list[str]] = typer.Argument(
        None,
        help="Installed plugins to activate. Defaults to all of them.",
    ),
    duration: Optional[float] = typer.Option(
        None,
        "--duration",
        help="Stop after this many seconds instead of waiting for Ctrl+C.",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Do not print bus events.",
    ),
) -> None:
    """
    Start the plugin host.

    Activates installed plugins and keeps the telemetry relay connection alive
    while any of them listens for telemetry. Bus events on the UI
    channels are printed as they happen.
    """
    from saltshaker.cli.output import print_error, print_info, print_warning
    from saltshaker.host import PluginHost

    config = get_config(ctx)
    host = PluginHost.from_settings(config)

    console.print(Panel.fit(
        f"Telemetry relay at [cyan]{config.RELAY_HOST}:{config.RELAY_PORT}[/cyan]\n"
        f"Plugins in [cyan]{config.PLUGINS_DIR}[/cyan]",
        title="Saltshaker",
    ))

    async def _serve() -> dict[str, bool]:
        from saltshaker.cli.output import print_event
        from saltshaker.events.bus import UI_CHANNELS

        if not quiet:
            for topic in UI_CHANNELS:
                host.bus.subscribe(topic, lambda payload, topic=topic: print_event(topic, payload))

        results = await host.start(plugin_ids or None)
        try:
            if duration is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(duration)
        finally:
            await host.shutdown()
        return results

    try:
        results = asyncio.run(_serve())
    except KeyboardInterrupt:
        print_info("Stopped")
        return

    failed = [plugin_id for plugin_id, ok in results.items() if not ok]
    if not results:
        print_warning("No plugins were activated")
    if failed:
        print_error(f"Failed to activate: {', '.join(failed)}")
        raise typer.Exit(1)


def _register_subcommands() -> None:
    """Register all subcommand modules."""
    from saltshaker.cli import plugins  # noqa: F401


_register_subcommands()


__all__ = [
    "app",
    "plugin_app",
    "console",
    "err_console",
    "get_config",
]


def cli() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    cli()
