from __future__ import annotations

import logging
import os
from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from plansync.config_manager import ConfigManager
from plansync.errors import NotFound, PlanSyncError, ValidationError, format_error_response
from plansync.models import Actor, OPERATIONS
from plansync.service import PlanSyncService

logger = logging.getLogger(__name__)


class CreateEventRequest(BaseModel):
    collection_id: str = ""
    summary: str = ""
    start: str = ""
    end: str = ""
    description: str = ""
    location: str = ""
    metadata: dict[str, Any] | None = None


class UpdateEventRequest(BaseModel):
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start: str | None = None
    end: str | None = None
    metadata: dict[str, Any] | None = None
    collection_id: str | None = None


class MoveEventRequest(BaseModel):
    target_collection_id: str = Field(min_length=1)


class EventQueryRequest(BaseModel):
    collection_ids: list[str] = Field(default_factory=list)
    start: str
    end: str


class RefreshRequest(BaseModel):
    collection_id: str | None = None


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


def _actor(request: Request) -> Actor | None:
    email = request.headers.get("x-actor-email", "").strip()
    name = request.headers.get("x-actor-name", "").strip()
    if not email and not name:
        return None
    return Actor(email=email or None, name=name or None)


def _config_manager() -> ConfigManager:
    return ConfigManager(os.getenv("PLANSYNC_CONFIG_PATH", "config.yaml"))


def create_app(
    service: PlanSyncService | None = None,
    config_manager: ConfigManager | None = None,
) -> FastAPI:
    if service is None:
        config_manager = config_manager or _config_manager()
        service = PlanSyncService(config_manager.load())
    debug = bool(service.config.debug)

    app = FastAPI(title="PlanSync", version="0.1.0")
    app.state.service = service

    @app.on_event("startup")
    def _startup() -> None:
        app.state.service.initialize()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.service.stop()

    @app.exception_handler(PlanSyncError)
    def _plansync_error(request: Request, exc: PlanSyncError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        status, body = format_error_response(exc, debug=debug)
        return JSONResponse(status_code=status, content=body)

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/calendars")
    def list_calendars() -> dict[str, Any]:
        return {
            "collections": [item.to_dict() for item in service.cache.list_collections()],
            "status": service.status(),
        }

    @app.post("/api/calendars/refresh")
    def refresh_calendars(request: RefreshRequest | None = None) -> dict[str, Any]:
        if request is not None and request.collection_id:
            if not service.cache.refresh_single(request.collection_id):
                raise NotFound(f"Calendar not found: {request.collection_id}")
            return {"success": True, "refreshed": True}
        return {"success": True, "refreshed": service.cache.refresh_all()}

    @app.post("/api/events/query")
    def query_events(request: EventQueryRequest) -> dict[str, Any]:
        return service.coordinator.get_events(request.collection_ids, request.start, request.end)

    @app.post("/api/events/all-day")
    def create_all_day_event(payload: CreateEventRequest, request: Request) -> dict[str, Any]:
        event = service.coordinator.create_all_day_event(
            collection_id=payload.collection_id,
            summary=payload.summary,
            start=payload.start,
            end=payload.end,
            description=payload.description,
            location=payload.location,
            metadata=payload.metadata,
            actor=_actor(request),
        )
        service.refresh_in_background()
        return {"success": True, "event": event}

    @app.get("/api/events/search")
    def search_events(
        query: str | None = None,
        order_number: str | None = Query(None, alias="orderNumber"),
        start: str | None = Query(None, alias="from"),
        end: str | None = Query(None, alias="to"),
    ) -> dict[str, Any]:
        term = order_number or query
        if not term or not term.strip():
            raise ValidationError("Search parameter required (orderNumber or query)")
        try:
            found = service.cache.search_events(term, start or None, end or None)
        except ValueError as exc:
            raise ValidationError(f"Invalid search: {exc}") from exc
        body: dict[str, Any] = {
            "success": True,
            "found": bool(found.events),
            "count": len(found.events),
            "events": [event.to_dict() for event in found.events],
        }
        if not found.events:
            body["message"] = f"No events found matching: {term}"
        return body

    @app.get("/api/events/{uid}")
    def get_event(uid: str) -> dict[str, Any]:
        event = service.coordinator.get_event(uid)
        if event is None:
            raise NotFound(f"Event {uid} not found")
        return {"success": True, "event": event}

    @app.put("/api/events/{uid}")
    def update_event(uid: str, payload: UpdateEventRequest, request: Request) -> dict[str, Any]:
        patch = payload.model_dump(exclude_unset=True)
        if not patch:
            raise ValidationError("No fields to update")
        event = service.coordinator.update_event(uid, patch, _actor(request))
        service.refresh_in_background()
        return {"success": True, "event": event}

    @app.delete("/api/events/{uid}")
    def delete_event(uid: str, request: Request) -> dict[str, Any]:
        deleted = service.coordinator.delete_event(uid, _actor(request))
        service.refresh_in_background()
        return {"success": deleted}

    @app.post("/api/events/{uid}/move")
    def move_event(uid: str, payload: MoveEventRequest, request: Request) -> dict[str, Any]:
        event = service.coordinator.move_event(uid, payload.target_collection_id, _actor(request))
        service.refresh_in_background()
        return {"success": True, "event": event}

    @app.get("/api/audit/event/{uid}")
    def audit_event_history(uid: str, limit: int = Query(50, ge=1, le=500)) -> dict[str, Any]:
        history = service.ledger.get_event_history(uid, limit=limit)
        return {
            "success": True,
            "event_uid": uid,
            "count": len(history),
            "history": [record.to_dict() for record in history],
        }

    @app.get("/api/audit/recent")
    def audit_recent(
        operation: str | None = None,
        actor_email: str | None = None,
        collection: str | None = None,
        since: str | None = None,
        until: str | None = None,
        limit: int = Query(100, ge=1, le=500),
    ) -> dict[str, Any]:
        if operation and operation.upper() not in OPERATIONS:
            raise ValidationError("Invalid operation type")
        try:
            history = service.ledger.get_recent_history(
                operation=operation,
                actor_email=actor_email,
                collection=collection,
                since=since,
                until=until,
                limit=limit,
            )
        except ValueError as exc:
            raise ValidationError(f"Invalid filter: {exc}") from exc
        return {"success": True, "count": len(history), "history": [record.to_dict() for record in history]}

    @app.post("/api/audit/undo/{uid}")
    def undo_last_change(uid: str, request: Request) -> dict[str, Any]:
        result = service.undo.undo(uid, _actor(request))
        return result.to_dict()

    @app.get("/api/audit/stats")
    def audit_stats() -> dict[str, Any]:
        return {"success": True, "stats": service.ledger.get_statistics()}

    if config_manager is not None:
        manager = config_manager

        @app.get("/api/config")
        def get_config() -> dict[str, Any]:
            return manager.masked()

        @app.put("/api/config")
        def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
            if not request.payload:
                raise ValidationError("payload is required")
            manager.update(request.payload)
            logger.info("Configuration updated; changes apply on restart")
            return {"success": True, "restart_required": True, "config": manager.masked()}

    return app
