from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, StreamingResponse
from pydantic import BaseModel, Field

from catalogharvest import __app_name__, __version__
from catalogharvest.core.config.models import AppConfig
from catalogharvest.core.errors import (
    ArchiveNotFoundError,
    EmptyRunError,
    ReplacementError,
    RunNotFoundError,
)
from catalogharvest.core.orchestrator import RunOrchestrator
from catalogharvest.persistence.db import dispose_engines

logger = logging.getLogger(__name__)


SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class CreateRunRequest(BaseModel):
    items: list[str] = Field(default_factory=list)


class ResolveRequest(BaseModel):
    replacements: dict[str, str] = Field(default_factory=dict)


class ReplacementsRequest(BaseModel):
    replacements: dict[str, str] = Field(default_factory=dict)


def create_app(config: AppConfig, orchestrator: RunOrchestrator | None = None) -> FastAPI:
    config.ensure_directories()
    runs = orchestrator or RunOrchestrator.from_config(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(f"API ready: {config.summary()}")
        yield
        await runs.shutdown()
        dispose_engines()

    app = FastAPI(title="Catalog Harvest", version=__version__, lifespan=lifespan)
    app.state.orchestrator = runs

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/ping")
    def api_ping() -> dict[str, Any]:
        return {"ok": True, "app": __app_name__, "version": __version__, "pid": os.getpid()}

    @app.post("/api/runs")
    async def api_create_run(req: CreateRunRequest) -> dict[str, Any]:
        try:
            run_id = await runs.create_run(req.items)
        except EmptyRunError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"ok": True, "run_id": run_id}

    @app.get("/api/runs/{run_id}")
    def api_get_run(run_id: str) -> dict[str, Any]:
        try:
            view = runs.get_run(run_id)
        except RunNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"ok": True, "run": view.to_dict()}

    @app.get("/api/runs/{run_id}/events")
    async def api_run_events(run_id: str) -> StreamingResponse:
        try:
            subscription = runs.subscribe(run_id)
        except RunNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

        async def iterator() -> AsyncIterator[str]:
            async with subscription:
                async for event in subscription:
                    yield event.to_sse()

        return StreamingResponse(iterator(), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.post("/api/runs/{run_id}/resolve")
    async def api_resolve(run_id: str, req: ResolveRequest) -> dict[str, Any]:
        try:
            await runs.resolve(run_id, req.replacements)
        except RunNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ReplacementError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return {"ok": True, "run_id": run_id}

    @app.post("/api/runs/{run_id}/cancel")
    def api_cancel(run_id: str) -> dict[str, Any]:
        return {"ok": True, "cancelled": runs.cancel(run_id)}

    @app.get("/api/runs/{run_id}/download")
    async def api_download(run_id: str) -> FileResponse:
        try:
            path = await runs.download(run_id)
        except ArchiveNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return FileResponse(path, media_type="application/zip", filename=path.name)

    @app.get("/api/history")
    async def api_history() -> dict[str, Any]:
        entries = await runs.list_history()
        return {"ok": True, "history": [entry.to_dict() for entry in entries]}

    @app.get("/api/replacements")
    def api_get_replacements() -> dict[str, Any]:
        return {"ok": True, "replacements": runs.replacements.as_dict()}

    @app.put("/api/replacements")
    def api_put_replacements(req: ReplacementsRequest) -> dict[str, Any]:
        try:
            stored = runs.replacements.replace_all(req.replacements)
        except ReplacementError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return {"ok": True, "replacements": dict(stored.replacements)}

    return app
