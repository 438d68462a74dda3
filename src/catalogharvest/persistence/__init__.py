"""Database persistence layer."""

from .db import dispose_engines, get_engine, get_session, init_db
from .history import HistoryEntry, HistoryLedger
from .models import Base, HistoryRecord

__all__ = [
    "dispose_engines",
    "get_engine",
    "get_session",
    "init_db",
    "Base",
    "HistoryRecord",
    "HistoryEntry",
    "HistoryLedger",
]
