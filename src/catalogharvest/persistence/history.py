"""
Append-only history ledger of run outcomes.

Entries are loaded from the database on first use and cached newest-first.
Appends are serialized by an asyncio lock so concurrently finishing runs
never lose each other's entries. Database work runs in a worker thread.

A missing or unreadable database starts the ledger empty; a failed write is
logged and the entry is still kept in memory for this process.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select

from .db import get_session, init_db
from .models import HistoryRecord

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class HistoryEntry:
    """Immutable record of one attempt's outcome."""

    run_id: str
    attempt: int
    status: str
    titles: tuple[str, ...]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    filename: str | None = None
    archive: str | None = None
    long_labels: tuple[str, ...] | None = None
    message: str | None = None

    @classmethod
    def from_record(cls, record: HistoryRecord) -> "HistoryEntry":
        return cls(
            run_id=record.run_id,
            attempt=record.attempt,
            status=record.status,
            titles=tuple(record.titles or ()),
            timestamp=_as_utc(record.recorded_at),
            filename=record.filename,
            archive=record.archive,
            long_labels=tuple(record.long_labels) if record.long_labels is not None else None,
            message=record.message,
        )

    def to_record(self) -> HistoryRecord:
        return HistoryRecord(
            run_id=self.run_id,
            attempt=self.attempt,
            status=self.status,
            recorded_at=self.timestamp,
            titles=list(self.titles),
            filename=self.filename,
            archive=self.archive,
            long_labels=list(self.long_labels) if self.long_labels is not None else None,
            message=self.message,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, leaving out fields the status doesn't use."""
        data: dict[str, Any] = {
            "run_id": self.run_id,
            "attempt": self.attempt,
            "timestamp": self.timestamp.isoformat(),
            "status": self.status,
            "titles": list(self.titles),
        }
        if self.filename is not None:
            data["filename"] = self.filename
        if self.archive is not None:
            data["archive"] = self.archive
        if self.long_labels is not None:
            data["long_labels"] = list(self.long_labels)
        if self.message is not None:
            data["message"] = self.message
        return data


class HistoryLedger:
    """Durable, append-only, most-recent-first log of attempt outcomes."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.echo = echo
        self._entries: list[HistoryEntry] | None = None
        self._lock = asyncio.Lock()

    def _load_sync(self) -> list[HistoryEntry]:
        init_db(self.url, echo=self.echo)
        with get_session(self.url) as session:
            stmt = select(HistoryRecord).order_by(HistoryRecord.id.desc())
            return [HistoryEntry.from_record(r) for r in session.execute(stmt).scalars()]

    def _insert_sync(self, entry: HistoryEntry) -> None:
        init_db(self.url, echo=self.echo)
        with get_session(self.url) as session:
            session.add(entry.to_record())

    async def _ensure_loaded(self) -> list[HistoryEntry]:
        # Caller holds the lock
        if self._entries is None:
            try:
                self._entries = await asyncio.to_thread(self._load_sync)
                logger.info(f"History loaded, {len(self._entries)} entries")
            except Exception as e:
                logger.warning(f"History store at {self.url} unreadable, starting empty: {e}")
                self._entries = []
        return self._entries

    async def entries(self) -> list[HistoryEntry]:
        """All entries, most recent first."""
        async with self._lock:
            return list(await self._ensure_loaded())

    async def append(self, entry: HistoryEntry) -> None:
        """Record ``entry`` as the newest item in the ledger."""
        async with self._lock:
            entries = await self._ensure_loaded()
            try:
                await asyncio.to_thread(self._insert_sync, entry)
            except Exception as e:
                logger.error(f"Failed to persist history entry for run {entry.run_id}: {e}")
            entries.insert(0, entry)

    async def latest_for(self, run_id: str, status: str | None = None) -> HistoryEntry | None:
        """Most recent entry for ``run_id``, optionally restricted to a status."""
        for entry in await self.entries():
            if entry.run_id == run_id and (status is None or entry.status == status):
                return entry
        return None
