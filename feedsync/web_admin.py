from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from feedsync.calendar_service import attach_calendar, detach_calendar, user_calendar_ids
from feedsync.config_manager import ConfigManager
from feedsync.document_store import SqliteDocumentStore
from feedsync.errors import CalendarBusyError, CalendarNotFoundError
from feedsync.feed_fetcher import FeedFetcher
from feedsync.models import Calendar
from feedsync.orchestrator import AutoSyncOrchestrator
from feedsync.scheduler import SyncScheduler
from feedsync.sync_unit import CalendarSyncUnit


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class AttachCalendarRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    feed_address: str = Field(min_length=1, max_length=2000)
    color: str = ""
    description: str = ""
    provider: str = ""
    sync_now: bool = True


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        self.store = SqliteDocumentStore(state_path)
        self.fetcher = FeedFetcher(config.fetch)
        self.sync_unit = CalendarSyncUnit(self.store, self.fetcher, config.sync)
        self.orchestrator = AutoSyncOrchestrator(self.sync_unit, max_workers=config.sync.max_workers)
        self.scheduler = SyncScheduler(self.orchestrator, self.store, self.config_manager)

    def user_id(self) -> str:
        return self.config_manager.load().user_id

    def calendar_ids(self) -> list[str]:
        return user_calendar_ids(self.store, self.user_id())


def _calendar_summary(calendar: Calendar, in_flight: set[str]) -> dict[str, Any]:
    return {
        "calendar_id": calendar.calendar_id,
        "name": calendar.name,
        "color": calendar.color,
        "description": calendar.description,
        "feed_address": calendar.source.feed_address,
        "event_count": len(calendar.events),
        "sync": calendar.sync.to_dict(),
        "in_flight": calendar.calendar_id in in_flight,
    }


def create_app() -> FastAPI:
    config_path = os.getenv("FEEDSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("FEEDSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="feedsync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        try:
            updated = app.state.context.config_manager.update(request.payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"message": "config updated", "config": updated.to_dict()}

    @app.get("/api/calendars")
    def list_calendars() -> dict[str, Any]:
        ctx = app.state.context
        in_flight = ctx.orchestrator.in_flight()
        calendars = ctx.orchestrator.load_calendars(ctx.calendar_ids())
        return {"calendars": [_calendar_summary(calendar, in_flight) for calendar in calendars]}

    @app.post("/api/calendars")
    def add_calendar(request: AttachCalendarRequest) -> dict[str, Any]:
        ctx = app.state.context
        user_id = ctx.user_id()
        if not user_id:
            raise HTTPException(status_code=400, detail="user_id is not configured")
        try:
            calendar = attach_calendar(
                ctx.store,
                user_id,
                name=request.name,
                feed_address=request.feed_address,
                color=request.color,
                description=request.description,
                provider=request.provider,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        outcome = ctx.orchestrator.sync_one(calendar.calendar_id) if request.sync_now else None
        return {
            "calendar": _calendar_summary(ctx.sync_unit.load_calendar(calendar.calendar_id), set()),
            "sync": outcome.to_dict() if outcome else None,
        }

    @app.get("/api/calendars/stale")
    def stale_calendars() -> dict[str, Any]:
        ctx = app.state.context
        entries = ctx.orchestrator.stale_entries(ctx.calendar_ids())
        return {"stale": [entry.to_dict() for entry in entries]}

    @app.get("/api/calendars/{calendar_id}")
    def get_calendar(calendar_id: str) -> dict[str, Any]:
        try:
            calendar = app.state.context.sync_unit.load_calendar(calendar_id)
        except CalendarNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"calendar": calendar.to_dict()}

    @app.delete("/api/calendars/{calendar_id}")
    def remove_calendar(calendar_id: str) -> dict[str, Any]:
        ctx = app.state.context
        try:
            detach_calendar(ctx.store, ctx.user_id(), calendar_id)
        except CalendarNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"message": "calendar removed", "calendar_id": calendar_id}

    @app.post("/api/calendars/{calendar_id}/sync")
    def sync_calendar(calendar_id: str) -> dict[str, Any]:
        try:
            outcome = app.state.context.orchestrator.sync_one(calendar_id)
        except CalendarNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except CalendarBusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"calendar_id": calendar_id, "outcome": outcome.to_dict()}

    @app.post("/api/sync")
    def sync_stale() -> dict[str, Any]:
        ctx = app.state.context
        return ctx.orchestrator.run_stale(ctx.calendar_ids(), trigger="manual").to_dict()

    @app.post("/api/sync/all")
    def sync_all() -> dict[str, Any]:
        ctx = app.state.context
        return ctx.orchestrator.sync_now(ctx.calendar_ids(), trigger="manual").to_dict()

    @app.get("/api/sync/status")
    def sync_status() -> dict[str, Any]:
        orchestrator = app.state.context.orchestrator
        return {
            "batch_in_flight": orchestrator.batch_in_flight,
            "in_flight": sorted(orchestrator.in_flight()),
        }

    return app

