"""
Exception hierarchy for run coordination.

Backend and configuration errors live next to the code that raises them
(``core.backends.base`` and ``core.config.loader``).
"""

from __future__ import annotations


class HarvestError(Exception):
    """Base exception for CatalogHarvest errors."""
    pass


class RunNotFoundError(HarvestError):
    """Run id is unknown, or not in the state the operation requires."""

    def __init__(self, run_id: str, message: str | None = None):
        super().__init__(message or f"Unknown run: {run_id}")
        self.run_id = run_id


class EmptyRunError(HarvestError):
    """A run was requested without any items."""
    pass


class RunCancelled(HarvestError):
    """Raised by an extractor when it observes a cancellation request."""
    pass


class ArchiveNotFoundError(HarvestError):
    """No downloadable archive exists for a run."""

    def __init__(self, run_id: str, message: str | None = None):
        super().__init__(message or f"Archive not found for run: {run_id}")
        self.run_id = run_id


class PackagingError(HarvestError):
    """Writing or zipping run artifacts failed."""
    pass


class ReplacementError(HarvestError):
    """A replacement map entry failed validation."""
    pass
