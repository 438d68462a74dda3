"""CLI command modules."""

from . import replacements, runs

__all__ = [
    "replacements",
    "runs",
]
