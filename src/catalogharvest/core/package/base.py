"""
Packager contract.

A packager turns a successful extraction into a single downloadable archive::

    ref = await packager(suggested_filename, records)

and raises ``PackagingError`` when the archive cannot be produced.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Protocol, Sequence


@dataclass(frozen=True)
class ArchiveRef:
    """Where a run's archive lives and the name it is served under."""

    path: Path
    name: str


class Packager(Protocol):
    """Callable that bundles extracted records into an archive."""

    def __call__(
        self,
        suggested_filename: str,
        records: Sequence[dict[str, Any]],
    ) -> Awaitable[ArchiveRef]:
        ...
