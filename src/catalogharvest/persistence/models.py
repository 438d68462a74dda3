"""
SQLAlchemy ORM models for CatalogHarvest.

The schema holds a single append-only table: one row per settled run
attempt. Rows are inserted and read, never updated or deleted.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        dict[str, Any]: JSON,
        list[str]: JSON,
    }


class HistoryRecord(Base):
    """Outcome of one run attempt."""

    __tablename__ = "history_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Input items, or resolved product titles once known
    titles: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    # done
    filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    archive: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # awaiting_resolution
    long_labels: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    # cancelled / error
    message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_history_entries_run_id", "run_id"),
    )

    def __repr__(self) -> str:
        return f"<HistoryRecord {self.run_id}#{self.attempt} {self.status}>"
