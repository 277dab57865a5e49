from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Response

from roblox_newspaper_service import NewspaperService, build_service
from roblox_scheduler import WeeklyScheduler

DEFAULT_API_PORT = 3001
THUMBNAIL_CACHE_CONTROL = "public, max-age=300"
THUMBNAIL_CACHE_CONTROL_HIT = "public, max-age=300, stale-while-revalidate=600"
LOGGER = logging.getLogger(__name__)
LOGGER.setLevel(logging.INFO)


def create_app(service: NewspaperService | None = None, scheduler_enabled: bool | None = None) -> FastAPI:
    service = service or build_service()
    run_scheduler = service.settings.scheduler_enabled if scheduler_enabled is None else scheduler_enabled

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler = None
        if run_scheduler:
            scheduler = WeeklyScheduler(service.refresh, run_on_start=True)
            scheduler.start()
        app.state.scheduler = scheduler
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.stop()

    app = FastAPI(title="Roblox Weekly Newspaper API", version="1.0.0", lifespan=lifespan)
    app.state.service = service

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/status")
    def get_status() -> dict[str, Any]:
        return service.status()

    @app.post("/api/refresh", status_code=202)
    def trigger_refresh() -> dict[str, Any]:
        if not service.start_refresh_in_background():
            raise HTTPException(status_code=409, detail="Snapshot refresh already running")
        return {"status": "started"}

    @app.get("/api/snapshot/latest")
    def get_latest_snapshot() -> dict[str, Any]:
        try:
            snapshot = service.latest_snapshot_with_delta()
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("Snapshot load failed: %s", exc)
            raise HTTPException(status_code=500, detail="Snapshot load failed") from None
        if snapshot is None:
            raise HTTPException(status_code=404, detail="No snapshot found")
        return snapshot

    @app.get("/api/thumbnails")
    def get_thumbnails(
        response: Response,
        universe_ids: str = Query(default="", alias="universeIds"),
    ) -> Any:
        key = universe_ids.strip()
        if not key:
            raise HTTPException(status_code=400, detail="universeIds required")
        try:
            payload, cached = service.get_thumbnails(key)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Thumbnail proxy failed ids=%s: %s", key[:120], exc)
            raise HTTPException(status_code=502, detail="thumbnail proxy failed") from None
        response.headers["Cache-Control"] = THUMBNAIL_CACHE_CONTROL_HIT if cached else THUMBNAIL_CACHE_CONTROL
        return payload

    return app


app = create_app()
