"""
Logging infrastructure for CatalogHarvest.

Provides:
- Structured JSON logging for file output
- Rich console output for terminal
- Contextual logging with run/attempt context
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

import orjson

if TYPE_CHECKING:
    from rich.console import Console


def json_dumps(obj: Any) -> str:
    return orjson.dumps(obj, default=str).decode("utf-8")


# =============================================================================
# JSON Formatter for File Logging
# =============================================================================


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines."""

    CONTEXT_FIELDS = ("run_id", "attempt", "article", "url")

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key in self.CONTEXT_FIELDS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        return json_dumps(log_data)


# =============================================================================
# Rich Console Handler
# =============================================================================


class RichConsoleHandler(logging.Handler):
    """Handler that outputs to Rich console with formatting."""

    LEVEL_STYLES = {
        logging.DEBUG: "dim",
        logging.INFO: "default",
        logging.WARNING: "yellow",
        logging.ERROR: "red",
        logging.CRITICAL: "bold red",
    }

    def __init__(self, console: "Console | None" = None, level: int = logging.INFO):
        super().__init__(level)
        if console is None:
            from rich.console import Console
            console = Console(stderr=True)
        self.console = console

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
            style = self.LEVEL_STYLES.get(record.levelno, "default")

            prefix = ""
            if hasattr(record, "run_id"):
                prefix = f"[cyan][{record.run_id}][/cyan] "

            # Scraped labels may contain square brackets
            from rich.markup import escape
            self.console.print(f"{prefix}[{style}]{escape(message)}[/{style}]")

            if record.exc_info:
                self.console.print_exception()

        except Exception:
            self.handleError(record)


# =============================================================================
# Logger Configuration
# =============================================================================


def setup_logging(
    level: str = "INFO",
    log_file: Path | str | None = None,
    json_format: bool = True,
    rich_console: bool = True,
) -> logging.Logger:
    """Set up logging for CatalogHarvest.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Path to log file (optional)
        json_format: Use JSON format for file logs
        rich_console: Use Rich for console output

    Returns:
        Root logger for catalogharvest
    """
    logger = logging.getLogger("catalogharvest")
    logger.setLevel(getattr(logging, level.upper()))
    logger.handlers.clear()

    if rich_console:
        console_handler: logging.Handler = RichConsoleHandler()
        console_handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
    console_handler.setLevel(getattr(logging, level.upper()))
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)

        if json_format:
            file_handler.setFormatter(JSONFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                    datefmt="%Y-%m-%d %H:%M:%S",
                )
            )

        logger.addHandler(file_handler)

    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (prefixed with 'catalogharvest.' unless already under it)

    Returns:
        Logger instance
    """
    if name and name.startswith("catalogharvest"):
        return logging.getLogger(name)
    if name:
        return logging.getLogger(f"catalogharvest.{name}")
    return logging.getLogger("catalogharvest")


# =============================================================================
# Contextual Logging Adapter
# =============================================================================


class ContextualLogger(logging.LoggerAdapter):
    """Logger adapter that stamps run and attempt onto every record."""

    def __init__(
        self,
        logger: logging.Logger,
        run_id: str | None = None,
        attempt: int | None = None,
    ):
        super().__init__(logger, {})
        self.run_id = run_id
        self.attempt = attempt

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = kwargs.get("extra", {})

        if self.run_id:
            extra["run_id"] = self.run_id
        if self.attempt:
            extra["attempt"] = self.attempt

        kwargs["extra"] = extra
        return msg, kwargs


def get_contextual_logger(
    name: str | None = None,
    run_id: str | None = None,
    attempt: int | None = None,
) -> ContextualLogger:
    """Get a contextual logger with run/attempt context.

    Args:
        name: Logger name
        run_id: Run ID for context
        attempt: Attempt number for context

    Returns:
        ContextualLogger instance
    """
    base_logger = get_logger(name)
    return ContextualLogger(base_logger, run_id=run_id, attempt=attempt)
