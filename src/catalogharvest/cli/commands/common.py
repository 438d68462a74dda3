"""
Shared helpers for CLI commands.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from catalogharvest.core.config.loader import ConfigError, load_app_config
from catalogharvest.core.config.models import AppConfig
from catalogharvest.core.logging import setup_logging

err_console = Console(stderr=True)


ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to app.yaml (default: configs/app.yaml)",
)


def load_config(path: Optional[Path] = None, quiet: bool = False) -> AppConfig:
    """Load app config and configure logging, exiting on invalid config."""
    try:
        config = load_app_config(path)
    except ConfigError as e:
        err_console.print(f"[red]Configuration error:[/red] {e}")
        if e.details:
            err_console.print(f"[dim]{e.details}[/dim]")
        raise typer.Exit(1)

    setup_logging(
        level="WARNING" if quiet else config.logging.level,
        log_file=config.logging.file,
        json_format=config.logging.json_format,
        rich_console=config.logging.rich_console,
    )
    return config
