"""
Saltshaker CLI - Rich Output Helpers

Functions:
    print_table   - Print a formatted table
    print_json    - Print formatted JSON
    print_error   - Print error message
    print_success - Print success message
    print_warning - Print warning message
    print_info    - Print info message
    print_event   - Print one bus event
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

from rich.console import Console
from rich.json import JSON
from rich.markup import escape
from rich.table import Table

console = Console()
err_console = Console(stderr=True)


def print_table(
    title: str,
    columns: list[str],
    rows: list[list[str]],
    styles: Optional[list[str]] = None,
    show_lines: bool = False,
) -> None:
    """
    Print a rich table.

    Args:
        title: Table title
        columns: Column headers
        rows: Table rows (list of lists)
        styles: Optional column styles
        show_lines: Whether to show row separator lines
    """
    table = Table(title=title, show_lines=show_lines)

    for i, col in enumerate(columns):
        style = styles[i] if styles and i < len(styles) else None
        table.add_column(col, style=style)

    for row in rows:
        padded_row = list(row) + [""] * (len(columns) - len(row))
        table.add_row(*padded_row[:len(columns)])

    console.print(table)


def print_json(data: dict | list, indent: int = 2, highlight: bool = True) -> None:
    json_str = json.dumps(data, indent=indent, default=str)
    if highlight:
        console.print(JSON(json_str))
    else:
        console.print(json_str, markup=False, highlight=False)


def print_error(message: str, details: Optional[str] = None, hint: Optional[str] = None) -> None:
    err_console.print(f"[bold red]Error:[/bold red] {escape(message)}")
    if details:
        err_console.print(f"[dim]{escape(details)}[/dim]")
    if hint:
        err_console.print(f"[yellow]Hint:[/yellow] {hint}")


def print_success(message: str, details: Optional[str] = None) -> None:
    console.print(f"[bold green]Success:[/bold green] {message}")
    if details:
        console.print(f"[dim]{escape(details)}[/dim]")


def print_warning(message: str, details: Optional[str] = None) -> None:
    console.print(f"[bold yellow]Warning:[/bold yellow] {message}")
    if details:
        console.print(f"[dim]{escape(details)}[/dim]")


def print_info(message: str, details: Optional[str] = None) -> None:
    console.print(f"[bold blue]Info:[/bold blue] {message}")
    if details:
        console.print(f"[dim]{escape(details)}[/dim]")


def print_event(topic: str, payload: Any) -> None:
    """Print a bus event as one line, prefixed with the local time."""
    stamp = datetime.now().strftime("%H:%M:%S")
    rendered = "" if payload is None else json.dumps(payload, default=str)
    console.print(f"[dim]{stamp}[/dim] [cyan]{escape(topic)}[/cyan] {escape(rendered)}", highlight=False)
