"""
Replacement map maintenance commands.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from catalogharvest.core.config.replacements import ReplacementStore
from catalogharvest.core.errors import ReplacementError

from .common import ConfigOption, load_config

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    help="Manage attribute label replacements",
    no_args_is_help=True,
)


def _store(config_path: Optional[Path]) -> ReplacementStore:
    config = load_config(config_path, quiet=True)
    return ReplacementStore(config.replacements_path)


@app.command("list")
def list_replacements(
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Show all stored label replacements."""
    store = _store(config_path)
    replacements = store.as_dict()

    if not replacements:
        console.print("[dim]No replacements stored.[/dim]")
        console.print(f"[dim]File: {store.path}[/dim]")
        return

    table = Table(title="Label Replacements", show_header=True, header_style="bold magenta")
    table.add_column("Original label", style="cyan")
    table.add_column("Replacement", style="green")

    for original, short in sorted(replacements.items()):
        table.add_row(escape(original), escape(short))

    console.print(table)
    console.print(f"[dim]{len(replacements)} entr{'y' if len(replacements) == 1 else 'ies'} in {store.path}[/dim]")


@app.command("set")
def set_replacement(
    label: str = typer.Argument(..., help="Original (long) attribute label"),
    replacement: str = typer.Argument(..., help="Short label to use instead"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Add or update one replacement."""
    store = _store(config_path)
    try:
        store.merge({label: replacement})
    except ReplacementError as e:
        err_console.print(f"[red]Invalid replacement:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"[green]Saved:[/green] {escape(label)} -> {escape(replacement.strip())}")


@app.command("remove")
def remove_replacement(
    label: str = typer.Argument(..., help="Original attribute label to forget"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Remove one replacement."""
    store = _store(config_path)
    if not store.remove(label):
        err_console.print(f"[red]No replacement for:[/red] {escape(label)}")
        raise typer.Exit(1)

    console.print(f"[green]Removed:[/green] {escape(label)}")
