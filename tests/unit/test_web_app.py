from __future__ import annotations

import asyncio
import time
import zipfile
from io import BytesIO
from pathlib import Path
from typing import Any

import orjson
import pytest
from fastapi.testclient import TestClient

from catalogharvest.core.config.models import AppConfig, LoggingConfig
from catalogharvest.core.extract import ExtractionSuccess, NeedsResolution
from catalogharvest.web.app import create_app

from fakes import FakeExtractor

LONG_LABEL = "Very Long Attribute Label Example"


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        data_dir=tmp_path / "data",
        output_dir=tmp_path / "out",
        replacements_path=tmp_path / "configs" / "replacements.yaml",
        logging=LoggingConfig(file=None),
    )


@pytest.fixture
def client(app_config: AppConfig, make_orchestrator):
    app = create_app(app_config, orchestrator=make_orchestrator())
    with TestClient(app) as test_client:
        yield test_client


def wait_until_settled(client: TestClient, run_id: str) -> dict[str, Any]:
    for _ in range(250):
        run = client.get(f"/api/runs/{run_id}").json()["run"]
        if run["status"] not in ("pending", "running"):
            return run
        time.sleep(0.02)
    raise AssertionError(f"run {run_id} did not settle")


def parse_sse(body: str) -> list[tuple[str, dict[str, Any]]]:
    frames = []
    for block in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        frames.append((lines["event"], orjson.loads(lines["data"])))
    return frames


def test_ping(client: TestClient) -> None:
    data = client.get("/api/ping").json()
    assert data["ok"] is True
    assert data["app"] == "catalogharvest"


def test_run_lifecycle_and_download(client: TestClient) -> None:
    response = client.post("/api/runs", json={"items": ["A1", "A2"]})
    assert response.status_code == 200
    run_id = response.json()["run_id"]

    run = wait_until_settled(client, run_id)
    assert run["status"] == "done"
    assert run["titles"] == ["Product A1", "Product A2"]
    assert run["archive"] == "catalog_products_test.zip"

    history = client.get("/api/history").json()["history"]
    assert [(h["run_id"], h["status"]) for h in history] == [(run_id, "done")]
    assert history[0]["archive"] == "catalog_products_test.zip"

    download = client.get(f"/api/runs/{run_id}/download")
    assert download.status_code == 200
    assert download.headers["content-type"] == "application/zip"
    with zipfile.ZipFile(BytesIO(download.content)) as zf:
        assert zf.namelist() == ["catalog_products_test.csv"]


def test_empty_run_is_rejected(client: TestClient) -> None:
    response = client.post("/api/runs", json={"items": ["", "  "]})
    assert response.status_code == 400
    assert client.get("/api/history").json()["history"] == []


def test_unknown_run(client: TestClient) -> None:
    assert client.get("/api/runs/nope").status_code == 404
    assert client.get("/api/runs/nope/events").status_code == 404
    assert client.get("/api/runs/nope/download").status_code == 404
    assert client.post("/api/runs/nope/resolve", json={"replacements": {}}).status_code == 404
    assert client.post("/api/runs/nope/cancel").json() == {"ok": True, "cancelled": False}


def test_replacements_roundtrip(client: TestClient) -> None:
    assert client.get("/api/replacements").json()["replacements"] == {}

    response = client.put("/api/replacements", json={"replacements": {LONG_LABEL: "Short Label"}})
    assert response.status_code == 200
    assert client.get("/api/replacements").json()["replacements"] == {LONG_LABEL: "Short Label"}

    response = client.put("/api/replacements", json={"replacements": {LONG_LABEL: "x" * 40}})
    assert response.status_code == 422
    assert client.get("/api/replacements").json()["replacements"] == {LONG_LABEL: "Short Label"}


def test_event_stream(app_config: AppConfig, make_orchestrator) -> None:
    holder: dict[str, Any] = {}

    async def wait_for_listener(items, replacements, log, token):
        orchestrator = holder["orchestrator"]
        for _ in range(500):
            if any(orchestrator.channel.subscriber_count(v.run_id) for v in orchestrator.list_runs()):
                break
            await asyncio.sleep(0.01)
        log("fetched A1")
        return ExtractionSuccess(
            records=[{"article": "A1", "title": "Smoke detector"}],
            suggested_filename="catalog_products_stream.csv",
        )

    orchestrator = make_orchestrator(extractor=FakeExtractor(wait_for_listener))
    holder["orchestrator"] = orchestrator

    with TestClient(create_app(app_config, orchestrator=orchestrator)) as client:
        run_id = client.post("/api/runs", json={"items": ["A1"]}).json()["run_id"]
        response = client.get(f"/api/runs/{run_id}/events")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    frames = parse_sse(response.text)
    assert [name for name, _ in frames] == ["log", "done"]
    assert frames[0][1]["message"] == "fetched A1"
    assert frames[1][1]["archive"] == "catalog_products_stream.zip"
    assert frames[0][1]["seq"] < frames[1][1]["seq"]


def test_event_stream_of_finished_run_ends(client: TestClient) -> None:
    run_id = client.post("/api/runs", json={"items": ["A1"]}).json()["run_id"]
    assert wait_until_settled(client, run_id)["status"] == "done"

    response = client.get(f"/api/runs/{run_id}/events")

    assert response.status_code == 200
    # At most the terminal frame, if the attempt was still announcing it
    frames = parse_sse(response.text) if response.text.strip() else []
    assert [name for name, _ in frames] in ([], ["done"])


def test_resolve_over_http(app_config: AppConfig, make_orchestrator) -> None:
    async def script(items, replacements, log, token):
        if LONG_LABEL not in replacements:
            return NeedsResolution(long_labels=(LONG_LABEL,))
        return ExtractionSuccess(
            records=[{"article": items[0], "title": "Siren"}],
            suggested_filename="catalog_products_resolved.csv",
        )

    orchestrator = make_orchestrator(extractor=FakeExtractor(script))
    with TestClient(create_app(app_config, orchestrator=orchestrator)) as client:
        run_id = client.post("/api/runs", json={"items": ["S1"]}).json()["run_id"]
        run = wait_until_settled(client, run_id)
        assert run["status"] == "awaiting_resolution"
        assert run["long_labels"] == [LONG_LABEL]

        rejected = client.post(f"/api/runs/{run_id}/resolve", json={"replacements": {LONG_LABEL: "y" * 30}})
        assert rejected.status_code == 422

        accepted = client.post(f"/api/runs/{run_id}/resolve", json={"replacements": {LONG_LABEL: "Tone"}})
        assert accepted.json() == {"ok": True, "run_id": run_id}

        run = wait_until_settled(client, run_id)
        assert run["status"] == "done"
        assert run["attempt"] == 2

        statuses = [h["status"] for h in client.get("/api/history").json()["history"]]
        assert statuses == ["done", "awaiting_resolution"]
