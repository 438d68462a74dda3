"""
Run commands: harvest items from the terminal and browse run history.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from catalogharvest.core.config.models import MAX_LABEL_LENGTH, AppConfig
from catalogharvest.core.errors import EmptyRunError, ReplacementError
from catalogharvest.core.orchestrator import EventKind, RunOrchestrator, RunStatus
from catalogharvest.persistence.db import dispose_engines
from catalogharvest.persistence.history import HistoryLedger

from .common import ConfigOption, load_config

console = Console()
err_console = Console(stderr=True)


STATUS_STYLES = {
    "done": "green",
    "awaiting_resolution": "yellow",
    "cancelled": "dim",
    "error": "red",
}


def _prompt_replacements(labels: list[str]) -> dict[str, str]:
    """Ask for a short name for each over-length label."""
    console.print()
    console.print(
        f"[bold yellow]{len(labels)} attribute label(s) are {MAX_LABEL_LENGTH}+ characters long.[/bold yellow]"
    )
    console.print("[dim]Enter a shorter name for each (empty input stops the run).[/dim]")

    replacements: dict[str, str] = {}
    for label in labels:
        while True:
            short = typer.prompt(f"  {label}", default="", show_default=False).strip()
            if not short:
                return {}
            if len(short) < MAX_LABEL_LENGTH:
                replacements[label] = short
                break
            err_console.print(f"[red]Must be shorter than {MAX_LABEL_LENGTH} characters[/red]")
    return replacements


async def _drive_run(config: AppConfig, items: list[str], interactive: bool) -> RunStatus:
    orchestrator = RunOrchestrator.from_config(config)
    try:
        run_id = await orchestrator.create_run(items)
        console.print(f"[bold]Run[/bold] [cyan]{run_id}[/cyan] started for {len(items)} item(s)")

        async with orchestrator.subscribe(run_id) as events:
            async for event in events:
                if event.kind == EventKind.LOG:
                    console.print(f"  {event.payload.get('message', '')}", markup=False)

                elif event.kind == EventKind.NEEDS_RESOLUTION:
                    labels = list(event.payload.get("long_labels", []))
                    if not interactive:
                        for label in labels:
                            console.print(f"  [yellow]needs replacement:[/yellow] {escape(label)}")
                        break

                    replacements = await asyncio.to_thread(_prompt_replacements, labels)
                    if not replacements:
                        break
                    try:
                        await orchestrator.resolve(run_id, replacements)
                    except ReplacementError as e:
                        err_console.print(f"[red]Invalid replacements:[/red] {e}")
                        break
                    console.print("[dim]Resuming with new replacements...[/dim]")

                elif event.kind == EventKind.DONE:
                    console.print(
                        f"[green]Done:[/green] {event.payload.get('filename')} "
                        f"-> {config.output_dir / str(event.payload.get('archive'))}"
                    )
                elif event.kind == EventKind.CANCELLED:
                    console.print(f"[yellow]Cancelled:[/yellow] {event.payload.get('message')}")
                elif event.kind == EventKind.ERROR:
                    err_console.print(f"[red]Error:[/red] {event.payload.get('message')}")

        return orchestrator.get_run(run_id).status
    finally:
        await orchestrator.shutdown()
        dispose_engines()


def run_command(
    items: List[str] = typer.Argument(..., help="Catalog article numbers to harvest"),
    interactive: bool = typer.Option(
        True,
        "--interactive/--no-interactive",
        help="Prompt for replacements when labels are too long",
    ),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Harvest product cards for ITEMS and build the archive.

    Examples:
        catalogharvest run 12345 67890
        catalogharvest run 12345 --no-interactive
    """
    config = load_config(config_path)
    config.ensure_directories()

    try:
        status = asyncio.run(_drive_run(config, items, interactive))
    except EmptyRunError as e:
        err_console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        err_console.print("[yellow]Interrupted[/yellow]")
        raise typer.Exit(130)

    if status != RunStatus.DONE:
        raise typer.Exit(1)


def history_command(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries to show"),
    run_id: Optional[str] = typer.Option(None, "--run", "-r", help="Only show this run"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Show recorded run outcomes, most recent first."""
    config = load_config(config_path, quiet=True)
    ledger = HistoryLedger(config.database.url, echo=config.database.echo)

    try:
        entries = asyncio.run(ledger.entries())
    finally:
        dispose_engines()

    if run_id:
        entries = [e for e in entries if e.run_id == run_id]
    entries = entries[:limit]

    if not entries:
        console.print("[dim]No history yet.[/dim]")
        return

    table = Table(title="Run History", show_header=True, header_style="bold magenta")
    table.add_column("When", style="dim")
    table.add_column("Run", style="cyan")
    table.add_column("#", justify="right")
    table.add_column("Status", justify="center")
    table.add_column("Titles")
    table.add_column("Details")

    for entry in entries:
        style = STATUS_STYLES.get(entry.status, "default")
        titles = ", ".join(entry.titles[:3])
        if len(entry.titles) > 3:
            titles += f" (+{len(entry.titles) - 3})"

        if entry.archive:
            details = entry.archive
        elif entry.long_labels:
            details = "; ".join(entry.long_labels)
        else:
            details = entry.message or ""

        table.add_row(
            entry.timestamp.strftime("%Y-%m-%d %H:%M"),
            entry.run_id,
            str(entry.attempt),
            f"[{style}]{entry.status}[/{style}]",
            escape(titles),
            escape(details),
        )

    console.print(table)
