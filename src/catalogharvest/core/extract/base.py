"""
Extraction contract between the orchestrator and extractors.

An extractor is any async callable::

    await extractor(items, replacements, log, token)

that returns ``NeedsResolution`` or ``ExtractionSuccess`` and raises only for
failures that are not tied to a single item. Per-item failures are folded
into the records as degraded entries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Protocol, Sequence, Union

if TYPE_CHECKING:
    from catalogharvest.core.orchestrator.cancellation import CancellationToken


# Degraded record keys
ERROR_KEY = "error"
URL_KEY = "url"

LogSink = Callable[[str], None]


@dataclass(frozen=True)
class NeedsResolution:
    """Labels that must be shortened by a human before the run can finish."""

    long_labels: tuple[str, ...]


@dataclass(frozen=True)
class ExtractionSuccess:
    """All items processed; some records may be degraded."""

    records: list[dict[str, Any]]
    suggested_filename: str
    titles: tuple[str, ...] = field(default=())

    @property
    def degraded(self) -> list[dict[str, Any]]:
        return [record for record in self.records if ERROR_KEY in record]


ExtractionOutcome = Union[NeedsResolution, ExtractionSuccess]


class Extractor(Protocol):
    """Callable that collects records for a batch of catalog items."""

    def __call__(
        self,
        items: Sequence[str],
        replacements: Mapping[str, str],
        log: LogSink,
        token: "CancellationToken",
    ) -> Awaitable[ExtractionOutcome]:
        ...


def record_title(record: Mapping[str, Any]) -> str | None:
    """Human-readable name of a record: product title, else article."""
    title = record.get("title") or record.get("article")
    return str(title) if title else None
