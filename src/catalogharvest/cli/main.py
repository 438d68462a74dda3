"""
CatalogHarvest CLI - Main entry point.

Harvest product cards from the terminal, serve the HTTP API, and maintain
the label replacement map.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.traceback import install as install_rich_traceback

from catalogharvest import __app_name__, __version__

# Load environment variables from .env (if present)
load_dotenv()

install_rich_traceback(show_locals=False, width=120)

# Scraped catalog text is Cyrillic; keep Windows consoles from choking on it
if sys.platform == "win32":
    os.environ.setdefault("PYTHONIOENCODING", "utf-8")
    for stream in (sys.stdout, sys.stderr):
        if hasattr(stream, "reconfigure"):
            try:
                stream.reconfigure(encoding="utf-8", errors="replace")
            except (AttributeError, OSError):
                pass

console = Console(legacy_windows=False)

app = typer.Typer(
    name=__app_name__,
    help="Interruptible product catalog harvester",
    rich_markup_mode="rich",
    no_args_is_help=True,
    pretty_exceptions_show_locals=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold cyan]{__app_name__}[/bold cyan] version [green]{__version__}[/green]")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """CatalogHarvest - product catalog harvester."""
    pass


# =============================================================================
# Import and register subcommand modules
# =============================================================================

from .commands import replacements, runs  # noqa: E402
from .commands.common import ConfigOption, load_config  # noqa: E402

app.command("run")(runs.run_command)
app.command("history")(runs.history_command)
app.add_typer(replacements.app, name="replacements", help="Manage attribute label replacements")


# =============================================================================
# Init Command
# =============================================================================


DEFAULT_APP_CONFIG = """\
# CatalogHarvest Configuration

# Directory paths
data_dir: data
output_dir: out
replacements_path: configs/replacements.yaml

# History database
database:
  url: ${CATALOGHARVEST_DATABASE_URL:-sqlite:///data/history.db}
  echo: false

# Logging settings
logging:
  level: INFO
  file: logs/catalogharvest.log
  json_format: true
  rich_console: true

# HTTP API
server:
  host: 127.0.0.1
  port: ${PORT:-3000}

# Catalog scraping
scraper:
  base_url: https://www.tinko.ru/catalog/
  backend: http  # http | playwright
  timeout_seconds: 30
  delay_between_items_ms: 2000
  max_retries: 3
  headless: true

# Archive packaging
packager:
  download_attachments: true
  documents_dir_name: Documents
  certificates_dir_name: Certificates
"""


@app.command()
def init(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Overwrite existing configuration",
    ),
) -> None:
    """Initialize CatalogHarvest directories, configuration and database."""
    from catalogharvest.core.config.loader import DEFAULT_APP_CONFIG_PATH
    from catalogharvest.persistence.db import dispose_engines, init_db

    app_config_path = DEFAULT_APP_CONFIG_PATH
    if not app_config_path.exists() or force:
        app_config_path.parent.mkdir(parents=True, exist_ok=True)
        app_config_path.write_text(DEFAULT_APP_CONFIG, encoding="utf-8")

    config = load_config(app_config_path, quiet=True)
    config.ensure_directories()
    init_db(config.database.url)
    dispose_engines()

    console.print()
    console.print(Panel.fit(
        "[bold green]OK - CatalogHarvest initialized[/bold green]\n\n"
        "Created:\n"
        f"  - [cyan]{app_config_path}[/cyan] - Application configuration\n"
        f"  - [cyan]{config.data_dir}/[/cyan] - History database\n"
        f"  - [cyan]{config.output_dir}/[/cyan] - CSV files and archives\n\n"
        "Next steps:\n"
        "  1. Harvest items: [yellow]catalogharvest run <article> ...[/yellow]\n"
        "  2. Or start the API: [yellow]catalogharvest serve[/yellow]",
        title="[bold]Initialization Complete[/bold]",
        border_style="green",
    ))


# =============================================================================
# Serve Command
# =============================================================================


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default from config)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port (default from config)"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Run the HTTP API with live run event streams."""
    import uvicorn

    from catalogharvest.web.app import create_app

    config = load_config(config_path)
    bind_host = host or config.server.host
    bind_port = port or config.server.port

    console.print(f"[bold]Serving on[/bold] [cyan]http://{bind_host}:{bind_port}[/cyan]")
    uvicorn.run(
        create_app(config),
        host=bind_host,
        port=bind_port,
        log_level=config.logging.level.lower(),
    )


# =============================================================================
# Entry Point
# =============================================================================


def run() -> None:
    """Run the CLI application."""
    app()


if __name__ == "__main__":
    run()
