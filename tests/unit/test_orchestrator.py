from __future__ import annotations

import asyncio
from pathlib import Path

import httpx
import pytest

from catalogharvest.core.backends import HttpBackend
from catalogharvest.core.config.models import ScraperConfig
from catalogharvest.core.errors import (
    ArchiveNotFoundError,
    EmptyRunError,
    ReplacementError,
    RunNotFoundError,
)
from catalogharvest.core.extract import CatalogExtractor, ExtractionSuccess, NeedsResolution
from catalogharvest.core.orchestrator import (
    MAX_MESSAGE_LENGTH,
    OUTCOME_KINDS,
    EventKind,
    RunOrchestrator,
    RunStatus,
)
from catalogharvest.core.orchestrator.orchestrator import SUPERSEDED_REASON
from catalogharvest.persistence import HistoryLedger, dispose_engines

from fakes import FakeExtractor, FakePackager, collect, failing_packager

LONG_LABEL = "Very Long Attribute Label Example"


def outcome_kinds(events) -> list[EventKind]:
    return [e.kind for e in events if e.kind in OUTCOME_KINDS]


# =============================================================================
# Happy path and scenarios
# =============================================================================


@pytest.mark.asyncio
async def test_successful_run_emits_single_done_and_history_entry(make_orchestrator, packager) -> None:
    orchestrator = make_orchestrator()

    run_id = await orchestrator.create_run(["A1", "A2"])
    events = await collect(orchestrator.subscribe(run_id))

    assert outcome_kinds(events) == [EventKind.DONE]
    done = events[-1]
    assert done.payload["archive"]
    assert done.payload["filename"] == "catalog_products_test.csv"
    assert [e.payload["message"] for e in events if e.kind == EventKind.LOG] == [
        "fetched A1",
        "fetched A2",
    ]

    view = orchestrator.get_run(run_id)
    assert view.status == RunStatus.DONE
    assert view.titles == ("Product A1", "Product A2")

    history = await orchestrator.list_history()
    assert len(history) == 1
    assert history[0].status == "done"
    assert history[0].run_id == run_id
    assert history[0].archive == done.payload["archive"]


@pytest.mark.asyncio
async def test_events_are_sequenced_per_run(make_orchestrator) -> None:
    orchestrator = make_orchestrator()

    run_id = await orchestrator.create_run(["A1", "A2", "A3"])
    events = await collect(orchestrator.subscribe(run_id))

    seqs = [e.seq for e in events]
    assert seqs == sorted(seqs)
    assert len(set(seqs)) == len(seqs)


@pytest.mark.asyncio
async def test_failing_item_becomes_degraded_record_not_error(make_orchestrator, packager) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    config = ScraperConfig(base_url="https://catalog.test/catalog/", delay_between_items_ms=0, max_retries=1)
    extractor = CatalogExtractor(
        config,
        backend_factory=lambda: HttpBackend(max_retries=1, transport=httpx.MockTransport(handler)),
    )
    orchestrator = make_orchestrator(extractor=extractor)

    run_id = await orchestrator.create_run(["BAD"])
    events = await collect(orchestrator.subscribe(run_id))

    assert outcome_kinds(events) == [EventKind.DONE]
    _, records = packager.calls[0]
    assert records == [{
        "article": "BAD",
        "url": "https://catalog.test/catalog/product/BAD",
        "error": "HTTP 502",
    }]


@pytest.mark.asyncio
async def test_empty_run_fails_immediately(make_orchestrator) -> None:
    extractor = FakeExtractor()
    orchestrator = make_orchestrator(extractor=extractor)

    with pytest.raises(EmptyRunError):
        await orchestrator.create_run([])
    with pytest.raises(EmptyRunError):
        await orchestrator.create_run(["  ", ""])

    await asyncio.sleep(0)
    assert extractor.calls == []
    assert await orchestrator.list_history() == []
    assert orchestrator.list_runs() == []


@pytest.mark.asyncio
async def test_checkpoint_then_resolve_reuses_run_id(make_orchestrator, store) -> None:
    async def script(items, replacements, log, token):
        if LONG_LABEL not in replacements:
            return NeedsResolution(long_labels=(LONG_LABEL,))
        return ExtractionSuccess(
            records=[{"article": items[0], "title": "Detector", "Attribute 1 name": replacements[LONG_LABEL]}],
            suggested_filename="catalog_products_resolved.csv",
        )

    extractor = FakeExtractor(script)
    orchestrator = make_orchestrator(extractor=extractor)

    run_id = await orchestrator.create_run(["12345"])
    subscription = orchestrator.subscribe(run_id)

    first = await asyncio.wait_for(subscription.__anext__(), timeout=5)
    assert first.kind == EventKind.NEEDS_RESOLUTION
    assert first.payload["long_labels"] == [LONG_LABEL]
    await orchestrator.wait_for(run_id)

    view = orchestrator.get_run(run_id)
    assert view.status == RunStatus.AWAITING_RESOLUTION
    assert view.attempt == 1
    checkpoint_history = await orchestrator.list_history()
    assert [e.status for e in checkpoint_history] == ["awaiting_resolution"]

    await orchestrator.resolve(run_id, {LONG_LABEL: "Short Label"})
    rest = await collect(subscription)

    assert outcome_kinds(rest) == [EventKind.DONE]
    assert orchestrator.get_run(run_id).status == RunStatus.DONE
    assert orchestrator.get_run(run_id).attempt == 2
    assert orchestrator.get_run(run_id).long_labels == ()
    assert extractor.calls[1]["replacements"] == {LONG_LABEL: "Short Label"}
    assert store.as_dict() == {LONG_LABEL: "Short Label"}

    history = await orchestrator.list_history()
    assert [(e.run_id, e.attempt, e.status) for e in history] == [
        (run_id, 2, "done"),
        (run_id, 1, "awaiting_resolution"),
    ]
    assert history[1] == checkpoint_history[0]
    assert history[1].long_labels == (LONG_LABEL,)


@pytest.mark.asyncio
async def test_cancel_without_active_attempt_is_noop(make_orchestrator) -> None:
    orchestrator = make_orchestrator()

    assert orchestrator.cancel("does-not-exist") is False

    run_id = await orchestrator.create_run(["A1"])
    await orchestrator.wait_for(run_id)
    history_before = await orchestrator.list_history()

    subscription = orchestrator.subscribe(run_id)
    assert orchestrator.cancel(run_id) is False
    assert subscription.pending() == []
    assert await orchestrator.list_history() == history_before
    subscription.close()


@pytest.mark.asyncio
async def test_subscribe_after_run_finished_ends_immediately(make_orchestrator) -> None:
    async def boom(items, replacements, log, token):
        raise RuntimeError("boom")

    for orchestrator in (make_orchestrator(), make_orchestrator(extractor=FakeExtractor(boom))):
        run_id = await orchestrator.create_run(["A1"])
        await orchestrator.wait_for(run_id)

        subscription = orchestrator.subscribe(run_id)

        assert subscription.closed
        assert await collect(subscription, timeout=1.0) == []
        assert orchestrator.channel.subscriber_count(run_id) == 0


@pytest.mark.asyncio
async def test_subscribe_while_checkpointed_stays_open(make_orchestrator) -> None:
    async def checkpoint(items, replacements, log, token):
        return NeedsResolution(long_labels=(LONG_LABEL,))

    orchestrator = make_orchestrator(extractor=FakeExtractor(checkpoint))
    run_id = await orchestrator.create_run(["A1"])
    await orchestrator.wait_for(run_id)

    subscription = orchestrator.subscribe(run_id)
    assert not subscription.closed
    subscription.close()


# =============================================================================
# Cancellation
# =============================================================================


@pytest.mark.asyncio
async def test_cancel_during_extraction_yields_cancelled(make_orchestrator, packager) -> None:
    started = asyncio.Event()

    async def script(items, replacements, log, token):
        for item in items:
            token.raise_if_cancelled()
            log(f"fetched {item}")
            started.set()
            await token.sleep(30)
        return ExtractionSuccess(records=[], suggested_filename="never.csv")

    orchestrator = make_orchestrator(extractor=FakeExtractor(script))
    run_id = await orchestrator.create_run(["A1", "A2"])
    subscription = orchestrator.subscribe(run_id)

    await asyncio.wait_for(started.wait(), timeout=5)
    assert orchestrator.cancel(run_id) is True
    events = await collect(subscription)

    assert outcome_kinds(events) == [EventKind.CANCELLED]
    assert orchestrator.get_run(run_id).status == RunStatus.CANCELLED
    assert packager.calls == []

    history = await orchestrator.list_history()
    assert [e.status for e in history] == ["cancelled"]
    assert history[0].message == "Cancelled by user"


@pytest.mark.asyncio
async def test_cancel_during_packaging_wins_over_done(make_orchestrator, packager) -> None:
    packager.gate = asyncio.Event()
    orchestrator = make_orchestrator()

    run_id = await orchestrator.create_run(["A1"])
    subscription = orchestrator.subscribe(run_id)
    await asyncio.wait_for(packager.entered.wait(), timeout=5)

    assert orchestrator.cancel(run_id) is True
    packager.gate.set()
    events = await collect(subscription)

    assert outcome_kinds(events) == [EventKind.CANCELLED]
    assert orchestrator.get_run(run_id).status == RunStatus.CANCELLED
    with pytest.raises(ArchiveNotFoundError):
        await orchestrator.download(run_id)


@pytest.mark.asyncio
async def test_cancel_after_done_is_ignored(make_orchestrator) -> None:
    orchestrator = make_orchestrator()
    run_id = await orchestrator.create_run(["A1"])
    await orchestrator.wait_for(run_id)

    assert orchestrator.cancel(run_id) is False
    assert orchestrator.get_run(run_id).status == RunStatus.DONE
    assert [e.status for e in await orchestrator.list_history()] == ["done"]


@pytest.mark.asyncio
async def test_shutdown_cancels_active_attempts(make_orchestrator) -> None:
    started = asyncio.Event()

    async def script(items, replacements, log, token):
        started.set()
        await token.wait()
        token.raise_if_cancelled()
        return ExtractionSuccess(records=[], suggested_filename="never.csv")

    orchestrator = make_orchestrator(extractor=FakeExtractor(script))
    run_id = await orchestrator.create_run(["A1"])
    await asyncio.wait_for(started.wait(), timeout=5)

    await orchestrator.shutdown()

    assert orchestrator.get_run(run_id).status == RunStatus.CANCELLED
    history = await orchestrator.list_history()
    assert [(e.status, e.message) for e in history] == [("cancelled", "Shutting down")]


# =============================================================================
# Failures
# =============================================================================


@pytest.mark.asyncio
async def test_extractor_failure_is_error_with_truncated_message(make_orchestrator) -> None:
    async def script(items, replacements, log, token):
        raise RuntimeError("x" * 500)

    orchestrator = make_orchestrator(extractor=FakeExtractor(script))
    run_id = await orchestrator.create_run(["A1"])
    events = await collect(orchestrator.subscribe(run_id))

    assert outcome_kinds(events) == [EventKind.ERROR]
    assert len(events[-1].payload["message"]) == MAX_MESSAGE_LENGTH

    view = orchestrator.get_run(run_id)
    assert view.status == RunStatus.ERROR
    assert view.error == "x" * MAX_MESSAGE_LENGTH

    history = await orchestrator.list_history()
    assert history[0].status == "error"
    assert history[0].message == "x" * MAX_MESSAGE_LENGTH


@pytest.mark.asyncio
async def test_packaging_failure_is_error(make_orchestrator, output_dir: Path) -> None:
    orchestrator = make_orchestrator(packager_override=failing_packager(output_dir))

    run_id = await orchestrator.create_run(["A1"])
    events = await collect(orchestrator.subscribe(run_id))

    assert outcome_kinds(events) == [EventKind.ERROR]
    assert events[-1].payload["message"].startswith("Packaging failed")
    history = await orchestrator.list_history()
    assert [e.status for e in history] == ["error"]
    with pytest.raises(ArchiveNotFoundError):
        await orchestrator.download(run_id)


@pytest.mark.asyncio
async def test_every_attempt_settles_exactly_once(make_orchestrator, output_dir: Path) -> None:
    async def boom(items, replacements, log, token):
        raise ValueError("boom")

    async def checkpoint(items, replacements, log, token):
        return NeedsResolution(long_labels=(LONG_LABEL,))

    scenarios = [
        make_orchestrator(),
        make_orchestrator(extractor=FakeExtractor(boom)),
        make_orchestrator(extractor=FakeExtractor(checkpoint)),
        make_orchestrator(packager_override=failing_packager(output_dir)),
    ]

    for orchestrator in scenarios:
        before = await orchestrator.list_history()
        run_id = await orchestrator.create_run(["A1"])
        subscription = orchestrator.subscribe(run_id)
        await orchestrator.wait_for(run_id)
        events = subscription.pending()
        subscription.close()

        assert len(outcome_kinds(events)) == 1
        after = await orchestrator.list_history()
        assert len(after) == len(before) + 1
        assert after[0].status == orchestrator.get_run(run_id).status.value


# =============================================================================
# Resolve, history, download
# =============================================================================


@pytest.mark.asyncio
async def test_resolve_rejects_unknown_or_not_waiting_runs(make_orchestrator) -> None:
    orchestrator = make_orchestrator()

    with pytest.raises(RunNotFoundError):
        await orchestrator.resolve("missing", {"a": "b"})

    run_id = await orchestrator.create_run(["A1"])
    await orchestrator.wait_for(run_id)
    with pytest.raises(RunNotFoundError):
        await orchestrator.resolve(run_id, {"a": "b"})


@pytest.mark.asyncio
async def test_resolve_rejects_replacement_that_is_still_too_long(make_orchestrator) -> None:
    async def checkpoint(items, replacements, log, token):
        return NeedsResolution(long_labels=(LONG_LABEL,))

    extractor = FakeExtractor(checkpoint)
    orchestrator = make_orchestrator(extractor=extractor)
    run_id = await orchestrator.create_run(["A1"])
    await orchestrator.wait_for(run_id)

    with pytest.raises(ReplacementError):
        await orchestrator.resolve(run_id, {LONG_LABEL: "y" * 40})

    assert orchestrator.get_run(run_id).status == RunStatus.AWAITING_RESOLUTION
    assert len(extractor.calls) == 1


@pytest.mark.asyncio
async def test_history_is_append_only(make_orchestrator) -> None:
    orchestrator = make_orchestrator()

    first = await orchestrator.create_run(["A1"])
    await orchestrator.wait_for(first)
    before = await orchestrator.list_history()

    second = await orchestrator.create_run(["B1"])
    await orchestrator.wait_for(second)
    after = await orchestrator.list_history()

    assert after[1:] == before
    assert after[0].run_id == second
    assert second != first


@pytest.mark.asyncio
async def test_subscribe_unknown_run_raises(make_orchestrator) -> None:
    orchestrator = make_orchestrator()
    with pytest.raises(RunNotFoundError):
        orchestrator.subscribe("nope")


@pytest.mark.asyncio
async def test_download_requires_done_and_file_on_disk(make_orchestrator) -> None:
    orchestrator = make_orchestrator()

    with pytest.raises(ArchiveNotFoundError):
        await orchestrator.download("never-created")

    run_id = await orchestrator.create_run(["A1"])
    await orchestrator.wait_for(run_id)

    path = await orchestrator.download(run_id)
    assert path.is_file()
    assert path.stat().st_size > 0

    path.unlink()
    with pytest.raises(ArchiveNotFoundError):
        await orchestrator.download(run_id)


@pytest.mark.asyncio
async def test_download_rejects_zero_length_archive(make_orchestrator) -> None:
    orchestrator = make_orchestrator()
    run_id = await orchestrator.create_run(["A1"])
    view = await orchestrator.wait_for(run_id)

    view.archive_path.write_bytes(b"")
    with pytest.raises(ArchiveNotFoundError):
        await orchestrator.download(run_id)


@pytest.mark.asyncio
async def test_download_finds_archive_of_earlier_process(
    make_orchestrator, ledger, store, packager, output_dir: Path
) -> None:
    orchestrator = make_orchestrator()
    run_id = await orchestrator.create_run(["A1"])
    await orchestrator.wait_for(run_id)

    restarted = RunOrchestrator(
        extractor=FakeExtractor(),
        packager=packager,
        ledger=ledger,
        replacements=store,
        archive_dir=output_dir,
    )
    path = await restarted.download(run_id)

    assert path == output_dir / "catalog_products_test.zip"
    with pytest.raises(RunNotFoundError):
        restarted.get_run(run_id)


# =============================================================================
# Attempt handover
# =============================================================================


class SlowLedger(HistoryLedger):
    """Ledger whose writes take a while to land."""

    async def append(self, entry) -> None:
        await asyncio.sleep(0.2)
        await super().append(entry)


@pytest.mark.asyncio
async def test_resolve_during_checkpoint_recording_keeps_event_order(
    database_url, store, packager, output_dir: Path
) -> None:
    async def script(items, replacements, log, token):
        if LONG_LABEL not in replacements:
            return NeedsResolution(long_labels=(LONG_LABEL,))
        log("resumed")
        return ExtractionSuccess(
            records=[{"article": items[0], "title": "Detector"}],
            suggested_filename="catalog_products_resolved.csv",
        )

    extractor = FakeExtractor(script)
    orchestrator = RunOrchestrator(
        extractor=extractor,
        packager=packager,
        ledger=SlowLedger(database_url),
        replacements=store,
        archive_dir=output_dir,
    )

    run_id = await orchestrator.create_run(["A1"])
    subscription = orchestrator.subscribe(run_id)
    while orchestrator.get_run(run_id).status != RunStatus.AWAITING_RESOLUTION:
        await asyncio.sleep(0.01)

    # The checkpoint is in the registry but not yet in the ledger or the stream
    assert subscription.pending() == []
    await orchestrator.resolve(run_id, {LONG_LABEL: "Short Label"})
    events = await collect(subscription)

    assert [(e.kind, e.payload.get("message")) for e in events] == [
        (EventKind.NEEDS_RESOLUTION, None),
        (EventKind.LOG, "resumed"),
        (EventKind.DONE, None),
    ]
    history = await orchestrator.list_history()
    assert [(e.attempt, e.status) for e in history] == [(2, "done"), (1, "awaiting_resolution")]
    assert len(extractor.calls) == 2
    dispose_engines()


@pytest.mark.asyncio
async def test_new_attempt_supersedes_live_one(make_orchestrator) -> None:
    entered = asyncio.Event()
    gate = asyncio.Event()

    async def script(items, replacements, log, token):
        if not entered.is_set():
            entered.set()
            await gate.wait()
            log("late log")
            return ExtractionSuccess(records=[{"article": "A1", "title": "Late"}], suggested_filename="late.csv")
        log("second attempt")
        return ExtractionSuccess(
            records=[{"article": "A1", "title": "Fresh"}],
            suggested_filename="catalog_products_test.csv",
        )

    orchestrator = make_orchestrator(extractor=FakeExtractor(script))
    run_id = await orchestrator.create_run(["A1"])
    subscription = orchestrator.subscribe(run_id)
    await asyncio.wait_for(entered.wait(), timeout=5)
    first = orchestrator._active[run_id]

    second = await orchestrator._launch(run_id)

    assert first.token.cancelled
    assert first.token.reason == SUPERSEDED_REASON
    assert second.number == first.number + 1

    await orchestrator.wait_for(run_id)
    gate.set()
    await asyncio.wait_for(first.task, timeout=5)

    events = subscription.pending()
    subscription.close()
    assert outcome_kinds(events) == [EventKind.CANCELLED, EventKind.DONE]
    cancelled = [e for e in events if e.kind == EventKind.CANCELLED]
    assert [e.payload["message"] for e in cancelled] == [SUPERSEDED_REASON]
    assert [e.payload["message"] for e in events if e.kind == EventKind.LOG] == ["second attempt"]

    view = orchestrator.get_run(run_id)
    assert view.status == RunStatus.DONE
    assert view.attempt == 2
    assert view.titles == ("Fresh",)

    history = await orchestrator.list_history()
    assert [(e.attempt, e.status) for e in history] == [(2, "done"), (1, "cancelled")]
    assert history[1].message == SUPERSEDED_REASON
