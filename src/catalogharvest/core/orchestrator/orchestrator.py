"""
Run orchestrator.

Drives each run attempt end to end: extract -> (checkpoint | package) ->
record the outcome -> notify observers.

Every attempt settles exactly once, as one of needs_resolution, done,
cancelled or error. Settling writes the registry, then the history ledger,
then publishes the matching event. A transition from an attempt that no
longer owns its run is dropped along with its ledger entry and event.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from catalogharvest.core.backends import create_backend
from catalogharvest.core.config.replacements import ReplacementStore
from catalogharvest.core.errors import ArchiveNotFoundError, RunCancelled, RunNotFoundError
from catalogharvest.core.extract.base import Extractor, NeedsResolution, record_title
from catalogharvest.core.extract.catalog import CatalogExtractor
from catalogharvest.core.logging import ContextualLogger, get_contextual_logger
from catalogharvest.core.package.archive import ArchivePackager
from catalogharvest.core.package.base import Packager
from catalogharvest.persistence.history import HistoryEntry, HistoryLedger

from .cancellation import CancellationToken
from .events import EventChannel, EventKind, Subscription
from .registry import RunRegistry, RunStatus, RunView

if TYPE_CHECKING:
    from catalogharvest.core.config.models import AppConfig


logger = logging.getLogger(__name__)


# Attempt-level error messages are cut to this length
MAX_MESSAGE_LENGTH = 200

SHUTDOWN_REASON = "Shutting down"
SUPERSEDED_REASON = "Superseded by a newer attempt"

# A run in one of these states publishes no further events
FINISHED_STATUSES = frozenset({RunStatus.DONE, RunStatus.CANCELLED, RunStatus.ERROR})


def truncate_message(message: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    return message if len(message) <= limit else message[:limit]


@dataclass
class Attempt:
    """One live execution of the extractor for a run."""

    run_id: str
    number: int
    token: CancellationToken
    task: asyncio.Task[None] | None = None


@dataclass
class _Outcome:
    status: RunStatus
    fields: dict[str, Any]
    message: str | None = None


class RunOrchestrator:
    """Owns the run registry, event channel and active attempts.

    Build one per process, either directly with injected collaborators or
    with ``from_config``. All methods must be called from the event loop
    that runs the attempts.
    """

    def __init__(
        self,
        extractor: Extractor,
        packager: Packager,
        ledger: HistoryLedger,
        replacements: ReplacementStore,
        archive_dir: Path | str,
        registry: RunRegistry | None = None,
        channel: EventChannel | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            extractor: Collects records for a batch of items
            packager: Bundles successful records into an archive
            ledger: Durable history of attempt outcomes
            replacements: Persisted label replacement map
            archive_dir: Where archives of earlier processes are looked up
            registry: Run registry (fresh one if omitted)
            channel: Event channel (fresh one if omitted)
        """
        self.extractor = extractor
        self.packager = packager
        self.ledger = ledger
        self.replacements = replacements
        self.archive_dir = Path(archive_dir)
        self.registry = registry or RunRegistry()
        self.channel = channel or EventChannel()
        self._active: dict[str, Attempt] = {}

    @classmethod
    def from_config(cls, config: "AppConfig") -> "RunOrchestrator":
        """Wire the default catalog extractor, archive packager and stores."""
        return cls(
            extractor=CatalogExtractor(config.scraper),
            packager=ArchivePackager(
                config.output_dir,
                config.packager,
                backend_factory=lambda: create_backend(config.scraper),
            ),
            ledger=HistoryLedger(config.database.url, echo=config.database.echo),
            replacements=ReplacementStore(config.replacements_path),
            archive_dir=config.output_dir,
        )

    # =========================================================================
    # Public surface
    # =========================================================================

    async def create_run(self, items: Iterable[str]) -> str:
        """Register a run and start its first attempt in the background.

        Raises:
            EmptyRunError: If ``items`` holds no non-blank entries
        """
        view = self.registry.create(list(items))
        logger.info(f"Run {view.run_id} created with {len(view.items)} item(s)")
        await self._launch(view.run_id)
        return view.run_id

    def subscribe(self, run_id: str) -> Subscription:
        """Live event stream for a run, starting now (no replay).

        A run that already finished, with no attempt still settling, gets a
        stream that ends immediately.

        Raises:
            RunNotFoundError: If the run id is unknown
        """
        view = self.registry.snapshot(run_id)
        subscription = self.channel.subscribe(run_id)
        if view.status in FINISHED_STATUSES and run_id not in self._active:
            subscription.close()
        return subscription

    async def resolve(self, run_id: str, replacements: Mapping[str, str]) -> None:
        """Merge replacements and resume a run awaiting resolution.

        Raises:
            RunNotFoundError: If the run is unknown or not awaiting resolution
            ReplacementError: If a replacement is empty or still too long
        """
        view = self.registry.snapshot(run_id)
        previous = self._active.get(run_id)
        if (
            view.status == RunStatus.AWAITING_RESOLUTION
            and previous is not None
            and previous.task is not None
        ):
            # The checkpoint is still being recorded and announced
            await asyncio.wait({previous.task})
            view = self.registry.snapshot(run_id)

        if view.status != RunStatus.AWAITING_RESOLUTION:
            raise RunNotFoundError(
                run_id, f"Run {run_id} is not awaiting resolution (status: {view.status.value})"
            )

        merged = self.replacements.merge(dict(replacements))
        logger.info(
            f"Run {run_id} resolved with {len(replacements)} replacement(s), "
            f"{len(merged.replacements)} stored"
        )
        await self._launch(run_id)

    def cancel(self, run_id: str) -> bool:
        """Ask the run's active attempt to stop.

        Returns:
            False if there is no active attempt to cancel
        """
        attempt = self._active.get(run_id)
        if attempt is None or not self.registry.is_current(run_id, attempt.number):
            return False

        if attempt.token.cancel():
            logger.info(f"Cancellation requested for run {run_id} attempt {attempt.number}")
        return True

    async def list_history(self) -> list[HistoryEntry]:
        """All recorded attempt outcomes, most recent first."""
        return await self.ledger.entries()

    async def download(self, run_id: str) -> Path:
        """Path of a finished run's archive.

        Runs from earlier processes are found through the history ledger.

        Raises:
            ArchiveNotFoundError: If the run never finished or the file is
                missing or empty
        """
        path: Path | None = None
        view = self.registry.find(run_id)

        if view is not None:
            if view.status == RunStatus.DONE and view.archive_path is not None:
                path = view.archive_path
        else:
            entry = await self.ledger.latest_for(run_id, status=RunStatus.DONE.value)
            if entry is not None and entry.archive:
                path = self.archive_dir / Path(entry.archive).name

        if path is None:
            raise ArchiveNotFoundError(run_id)
        if not path.is_file() or path.stat().st_size == 0:
            raise ArchiveNotFoundError(run_id, f"Archive file is missing for run {run_id}")
        return path

    def get_run(self, run_id: str) -> RunView:
        """Current snapshot of a run.

        Raises:
            RunNotFoundError: If the run id is unknown
        """
        return self.registry.snapshot(run_id)

    def list_runs(self) -> list[RunView]:
        return self.registry.all()

    async def wait_for(self, run_id: str) -> RunView:
        """Wait until the run's current attempt finishes, then snapshot it."""
        attempt = self._active.get(run_id)
        if attempt is not None and attempt.task is not None:
            await asyncio.shield(attempt.task)
        return self.registry.snapshot(run_id)

    async def shutdown(self, timeout: float | None = 10.0) -> None:
        """Stop all active attempts and wait for them to settle."""
        attempts = list(self._active.values())
        for attempt in attempts:
            attempt.token.cancel(SHUTDOWN_REASON)

        tasks = [a.task for a in attempts if a.task is not None]
        if not tasks:
            return

        logger.info(f"Waiting for {len(tasks)} active attempt(s) to stop")
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # =========================================================================
    # Attempts
    # =========================================================================

    async def _launch(self, run_id: str) -> Attempt:
        previous = self._active.get(run_id)
        if previous is not None and self.registry.is_current(run_id, previous.number):
            previous.token.cancel(SUPERSEDED_REASON)
            await self._settle(
                previous,
                _Outcome(RunStatus.CANCELLED, {}, message=SUPERSEDED_REASON),
            )

        number = self.registry.begin_attempt(run_id)
        attempt = Attempt(run_id=run_id, number=number, token=CancellationToken())
        self._active[run_id] = attempt

        attempt.task = asyncio.create_task(
            self._run_attempt(attempt),
            name=f"run-{run_id}-attempt-{number}",
        )
        attempt.task.add_done_callback(lambda _: self._forget(attempt))
        return attempt

    def _forget(self, attempt: Attempt) -> None:
        if self._active.get(attempt.run_id) is attempt:
            del self._active[attempt.run_id]

    def _log_sink(self, attempt: Attempt, log: ContextualLogger):
        def sink(message: str) -> None:
            if not self.registry.is_current(attempt.run_id, attempt.number):
                return
            log.debug(message)
            self.channel.publish(attempt.run_id, EventKind.LOG, message=message)

        return sink

    async def _run_attempt(self, attempt: Attempt) -> None:
        log = get_contextual_logger(__name__, run_id=attempt.run_id, attempt=attempt.number)
        log.info(f"Attempt {attempt.number} started")

        try:
            outcome = await self._execute(attempt, log)
        except RunCancelled as e:
            outcome = _Outcome(RunStatus.CANCELLED, {}, message=str(e))
        except asyncio.CancelledError:
            await self._settle(
                attempt,
                _Outcome(RunStatus.CANCELLED, {}, message=attempt.token.reason or SHUTDOWN_REASON),
            )
            raise
        except Exception as e:
            log.exception(f"Attempt {attempt.number} failed")
            outcome = _Outcome(
                RunStatus.ERROR,
                {},
                message=truncate_message(str(e) or type(e).__name__),
            )

        # A stop request wins over whatever the attempt produced afterwards
        if attempt.token.cancelled and outcome.status != RunStatus.CANCELLED:
            outcome = _Outcome(
                RunStatus.CANCELLED,
                {"titles": outcome.fields.get("titles", ())},
                message=attempt.token.reason,
            )

        await self._settle(attempt, outcome)

    async def _execute(self, attempt: Attempt, log: ContextualLogger) -> _Outcome:
        view = self.registry.snapshot(attempt.run_id)
        replacements = self.replacements.as_dict()

        result = await self.extractor(
            list(view.items),
            replacements,
            self._log_sink(attempt, log),
            attempt.token,
        )
        attempt.token.raise_if_cancelled()

        if isinstance(result, NeedsResolution):
            return _Outcome(
                RunStatus.AWAITING_RESOLUTION,
                {"long_labels": result.long_labels},
            )

        titles = result.titles or tuple(
            t for t in (record_title(r) for r in result.records) if t
        )
        if result.degraded:
            log.warning(f"{len(result.degraded)} item(s) degraded")

        try:
            archive = await self.packager(result.suggested_filename, result.records)
        except Exception as e:
            log.exception("Packaging failed")
            return _Outcome(
                RunStatus.ERROR,
                {"titles": titles, "filename": result.suggested_filename},
                message=truncate_message(f"Packaging failed: {e}"),
            )
        attempt.token.raise_if_cancelled()

        return _Outcome(
            RunStatus.DONE,
            {
                "titles": titles,
                "filename": result.suggested_filename,
                "archive_path": archive.path,
                "archive_name": archive.name,
            },
        )

    async def _settle(self, attempt: Attempt, outcome: _Outcome) -> bool:
        """Apply an attempt's outcome once: registry, ledger, then event."""
        fields = dict(outcome.fields)
        if outcome.status == RunStatus.ERROR:
            fields["error"] = outcome.message

        if not self.registry.transition(attempt.run_id, attempt.number, outcome.status, **fields):
            logger.debug(
                f"Dropped {outcome.status.value} from stale attempt {attempt.number} "
                f"of run {attempt.run_id}"
            )
            return False

        view = self.registry.snapshot(attempt.run_id)
        logger.info(
            f"Run {attempt.run_id} attempt {attempt.number} -> {outcome.status.value}",
            extra={"run_id": attempt.run_id, "attempt": attempt.number},
        )

        await self.ledger.append(self._history_entry(view, outcome))
        self._publish(view, outcome)
        return True

    def _history_entry(self, view: RunView, outcome: _Outcome) -> HistoryEntry:
        status = outcome.status
        return HistoryEntry(
            run_id=view.run_id,
            attempt=view.attempt,
            status=status.value,
            titles=view.titles or view.items,
            filename=view.filename if status == RunStatus.DONE else None,
            archive=view.archive_name if status == RunStatus.DONE else None,
            long_labels=view.long_labels if status == RunStatus.AWAITING_RESOLUTION else None,
            message=outcome.message if status in (RunStatus.CANCELLED, RunStatus.ERROR) else None,
        )

    def _publish(self, view: RunView, outcome: _Outcome) -> None:
        run_id = view.run_id
        if outcome.status == RunStatus.AWAITING_RESOLUTION:
            self.channel.publish(run_id, EventKind.NEEDS_RESOLUTION, long_labels=list(view.long_labels))
        elif outcome.status == RunStatus.DONE:
            self.channel.publish(run_id, EventKind.DONE, filename=view.filename, archive=view.archive_name)
        elif outcome.status == RunStatus.CANCELLED:
            self.channel.publish(run_id, EventKind.CANCELLED, message=outcome.message or "Cancelled")
        else:
            self.channel.publish(run_id, EventKind.ERROR, message=outcome.message or "Unknown error")
