from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from catalogharvest.core.config.replacements import ReplacementStore
from catalogharvest.core.orchestrator import RunOrchestrator
from catalogharvest.persistence.db import dispose_engines
from catalogharvest.persistence.history import HistoryLedger

from fakes import FakeExtractor, FakePackager


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    path = tmp_path / "out"
    path.mkdir()
    return path


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'data' / 'history.db'}"


@pytest.fixture
def ledger(database_url: str):
    yield HistoryLedger(database_url)
    dispose_engines()


@pytest.fixture
def store(tmp_path: Path) -> ReplacementStore:
    return ReplacementStore(tmp_path / "configs" / "replacements.yaml")


@pytest.fixture
def packager(output_dir: Path) -> FakePackager:
    return FakePackager(output_dir)


@pytest.fixture
def make_orchestrator(ledger: HistoryLedger, store: ReplacementStore, packager: FakePackager, output_dir: Path):
    def factory(extractor: Any = None, packager_override: Any = None) -> RunOrchestrator:
        return RunOrchestrator(
            extractor=extractor or FakeExtractor(),
            packager=packager_override or packager,
            ledger=ledger,
            replacements=store,
            archive_dir=output_dir,
        )

    return factory
