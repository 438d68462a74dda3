"""
In-memory run registry and run state machine.

    pending -> running -> awaiting_resolution | done | cancelled | error
    awaiting_resolution -> running   (resolve starts a new attempt)

Only the attempt that currently owns a run may move it out of ``running``,
and only once: late or duplicate transitions are ignored.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from catalogharvest.core.errors import EmptyRunError, RunNotFoundError

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    """Run lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    AWAITING_RESOLUTION = "awaiting_resolution"
    DONE = "done"
    CANCELLED = "cancelled"
    ERROR = "error"


# States an attempt can finish in
SETTLED_STATUSES = frozenset({
    RunStatus.AWAITING_RESOLUTION,
    RunStatus.DONE,
    RunStatus.CANCELLED,
    RunStatus.ERROR,
})

# Fields an attempt may record on the run when it settles
_OUTCOME_FIELDS = ("titles", "filename", "archive_path", "archive_name", "long_labels", "error")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RunView:
    """Read-only snapshot of a run."""

    run_id: str
    items: tuple[str, ...]
    status: RunStatus
    attempt: int
    created_at: datetime
    updated_at: datetime
    titles: tuple[str, ...] = ()
    filename: str | None = None
    archive_path: Path | None = None
    archive_name: str | None = None
    long_labels: tuple[str, ...] = ()
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (archive path stays server-side)."""
        return {
            "run_id": self.run_id,
            "items": list(self.items),
            "status": self.status.value,
            "attempt": self.attempt,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "titles": list(self.titles),
            "filename": self.filename,
            "archive": self.archive_name,
            "long_labels": list(self.long_labels),
            "error": self.error,
        }


@dataclass
class _RunState:
    view: RunView
    attempt_settled: bool = True


class RunRegistry:
    """Maps run id to the current run snapshot."""

    def __init__(self) -> None:
        self._runs: dict[str, _RunState] = {}
        self._last_id = 0

    def _new_run_id(self) -> str:
        # Millisecond timestamp, bumped when two runs land in the same millisecond
        candidate = int(time.time() * 1000)
        if candidate <= self._last_id:
            candidate = self._last_id + 1
        self._last_id = candidate
        return str(candidate)

    def create(self, items: list[str]) -> RunView:
        """Register a new pending run.

        Raises:
            EmptyRunError: If no non-blank items were given
        """
        cleaned = tuple(item.strip() for item in items if item and item.strip())
        if not cleaned:
            raise EmptyRunError("A run needs at least one item")

        now = _utcnow()
        view = RunView(
            run_id=self._new_run_id(),
            items=cleaned,
            status=RunStatus.PENDING,
            attempt=0,
            created_at=now,
            updated_at=now,
        )
        self._runs[view.run_id] = _RunState(view=view)
        return view

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._runs

    def _state(self, run_id: str) -> _RunState:
        try:
            return self._runs[run_id]
        except KeyError:
            raise RunNotFoundError(run_id) from None

    def snapshot(self, run_id: str) -> RunView:
        """Current view of a run.

        Raises:
            RunNotFoundError: If the run id is unknown
        """
        return self._state(run_id).view

    def find(self, run_id: str) -> RunView | None:
        state = self._runs.get(run_id)
        return state.view if state else None

    def all(self) -> list[RunView]:
        """All runs, newest first."""
        return sorted(
            (state.view for state in self._runs.values()),
            key=lambda view: view.created_at,
            reverse=True,
        )

    def begin_attempt(self, run_id: str) -> int:
        """Hand the run to a new attempt and mark it running.

        Returns:
            The new attempt number
        """
        state = self._state(run_id)
        attempt = state.view.attempt + 1
        state.view = replace(
            state.view,
            status=RunStatus.RUNNING,
            attempt=attempt,
            updated_at=_utcnow(),
            long_labels=(),
            error=None,
        )
        state.attempt_settled = False
        return attempt

    def is_current(self, run_id: str, attempt: int) -> bool:
        """Whether ``attempt`` owns the run and has not settled yet."""
        state = self._runs.get(run_id)
        return (
            state is not None
            and state.view.attempt == attempt
            and not state.attempt_settled
        )

    def transition(self, run_id: str, attempt: int, status: RunStatus, **outcome: Any) -> bool:
        """Settle ``attempt`` with ``status``; first writer wins.

        Args:
            run_id: Run to update
            attempt: Attempt number claiming the transition
            status: One of the settled statuses
            **outcome: Run fields to record (titles, filename, archive_path,
                archive_name, long_labels, error)

        Returns:
            True if applied, False if the attempt is stale or already settled
        """
        if status not in SETTLED_STATUSES:
            raise ValueError(f"Not a settled status: {status}")

        unknown = set(outcome) - set(_OUTCOME_FIELDS)
        if unknown:
            raise ValueError(f"Unknown run fields: {', '.join(sorted(unknown))}")

        if not self.is_current(run_id, attempt):
            logger.debug(f"Ignoring {status.value} for run {run_id} attempt {attempt}")
            return False

        for key in ("titles", "long_labels"):
            if key in outcome:
                outcome[key] = tuple(outcome[key] or ())

        state = self._runs[run_id]
        state.view = replace(state.view, status=status, updated_at=_utcnow(), **outcome)
        state.attempt_settled = True
        return True
