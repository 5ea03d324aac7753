from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any

import requests
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from calbridge.config_manager import ConfigManager
from calbridge.connection_service import ConnectionService
from calbridge.errors import (
    CalbridgeError,
    ConnectionNotFoundError,
    DuplicateConnectionError,
    OAuthSessionError,
    ProviderConfigurationError,
    UnsupportedOperationError,
    ValidationError,
)
from calbridge.event_store import EventStore
from calbridge.models import CalendarProvider, ExternalCalendarEvent
from calbridge.notifications import RecentNotificationSink
from calbridge.oauth_flow import CalendarSelection, OAuthFlowService
from calbridge.providers import build_registry
from calbridge.scheduler import SyncScheduler
from calbridge.state_store import StateStore
from calbridge.sync_engine import SyncEngine


logger = logging.getLogger(__name__)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class IcsConnectionRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    ics_url: str = Field(min_length=1)
    created_by: str = "admin"
    color: str | None = None
    assigned_member_ids: list[str] = Field(default_factory=list)


class IcsValidationRequest(BaseModel):
    ics_url: str = Field(min_length=1)


class ConnectionUpdateRequest(BaseModel):
    name: str | None = None
    color: str | None = None
    assigned_member_ids: list[str] | None = None
    is_enabled: bool | None = None
    sync_settings: dict[str, Any] | None = None


class OAuthStartRequest(BaseModel):
    provider: CalendarProvider
    redirect_uri: str = ""
    created_by: str = "admin"


class OAuthCompleteRequest(BaseModel):
    code: str = Field(min_length=1)
    state: str = Field(min_length=1)
    redirect_uri: str = Field(min_length=1)


class CalendarSelectionRequest(BaseModel):
    external_calendar_id: str
    display_name: str
    color: str | None = None
    assigned_member_ids: list[str] = Field(default_factory=list)


class CreateConnectionsRequest(BaseModel):
    calendars: list[CalendarSelectionRequest] = Field(default_factory=list)


class PushEventRequest(BaseModel):
    external_id: str = ""
    title: str = Field(min_length=1)
    description: str | None = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    location: str | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.event_store = EventStore(state_path)
        self.registry = build_registry(self.config_manager.load())
        self.notifier = RecentNotificationSink()
        self.oauth_flow = OAuthFlowService(self.state_store, self.registry)
        self.connections = ConnectionService(self.state_store, self.event_store, self.registry)
        self.sync_engine = SyncEngine(
            self.config_manager,
            self.state_store,
            self.event_store,
            self.registry,
            notifier=self.notifier,
        )
        self.scheduler = SyncScheduler(
            self.sync_engine,
            self.state_store,
            self.config_manager,
            oauth_flow=self.oauth_flow,
        )

    def reload_providers(self) -> None:
        """Rebuild adapters so credential changes apply without a restart."""
        registry = build_registry(self.config_manager.load())
        self.registry = registry
        self.oauth_flow.registry = registry
        self.connections.registry = registry
        self.sync_engine.registry = registry


def error_status(exc: CalbridgeError) -> int:
    if isinstance(exc, ConnectionNotFoundError):
        return 404
    if isinstance(exc, DuplicateConnectionError):
        return 409
    if isinstance(exc, ProviderConfigurationError):
        return 503
    if isinstance(exc, (ValidationError, OAuthSessionError, UnsupportedOperationError)):
        return 400
    return 502


def _error_body(exc: CalbridgeError) -> dict[str, Any]:
    body: dict[str, Any] = {"detail": str(exc)}
    if isinstance(exc, OAuthSessionError):
        body["code"] = exc.code
    return body


def create_app() -> FastAPI:
    config_path = os.getenv("CALBRIDGE_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CALBRIDGE_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Calbridge Admin", version="0.1.0")
    app.state.context = context

    @app.exception_handler(CalbridgeError)
    async def calbridge_error_handler(request: Request, exc: CalbridgeError) -> JSONResponse:
        status = error_status(exc)
        if status >= 500:
            logger.error("Request %s failed: %s", request.url.path, exc)
        return JSONResponse(status_code=status, content=_error_body(exc))

    @app.exception_handler(requests.RequestException)
    async def provider_network_error_handler(request: Request, exc: requests.RequestException) -> JSONResponse:
        logger.error("Request %s failed talking to a provider: %s", request.url.path, exc)
        detail = f"Calendar provider unreachable: {type(exc).__name__}"
        return JSONResponse(status_code=502, content={"detail": detail})

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
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        app.state.context.config_manager.update(request.payload)
        app.state.context.reload_providers()
        return {"message": "config updated", "config": app.state.context.config_manager.masked()}

    @app.get("/api/families/{family_id}/connections")
    def list_connections(family_id: str) -> dict[str, Any]:
        connections = app.state.context.connections.list_connections(family_id)
        return {"connections": [item.to_dict(include_secrets=False) for item in connections]}

    @app.get("/api/families/{family_id}/connections/{connection_id}")
    def get_connection(family_id: str, connection_id: str) -> dict[str, Any]:
        connection = app.state.context.connections.get_connection(family_id, connection_id)
        return connection.to_dict(include_secrets=False)

    @app.patch("/api/families/{family_id}/connections/{connection_id}")
    def update_connection(family_id: str, connection_id: str, request: ConnectionUpdateRequest) -> dict[str, Any]:
        connection = app.state.context.connections.update_connection(
            family_id,
            connection_id,
            name=request.name,
            color=request.color,
            assigned_member_ids=request.assigned_member_ids,
            is_enabled=request.is_enabled,
            sync_settings=request.sync_settings,
        )
        return connection.to_dict(include_secrets=False)

    @app.delete("/api/families/{family_id}/connections/{connection_id}")
    def delete_connection(family_id: str, connection_id: str, delete_synced_events: bool = True) -> dict[str, Any]:
        removed = app.state.context.connections.disconnect(
            family_id, connection_id, delete_synced_events=delete_synced_events
        )
        return {"message": "connection removed", "events_removed": removed}

    @app.post("/api/families/{family_id}/connections/{connection_id}/resume")
    def resume_connection(family_id: str, connection_id: str) -> dict[str, Any]:
        connection = app.state.context.connections.resume(family_id, connection_id)
        return connection.to_dict(include_secrets=False)

    @app.post("/api/families/{family_id}/connections/{connection_id}/sync")
    def sync_connection(family_id: str, connection_id: str) -> dict[str, Any]:
        app.state.context.connections.get_connection(family_id, connection_id)
        summary = app.state.context.sync_engine.sync_connection(connection_id)
        return summary.to_dict()

    @app.post("/api/families/{family_id}/connections/{connection_id}/events")
    def push_event(family_id: str, connection_id: str, request: PushEventRequest) -> dict[str, Any]:
        event = ExternalCalendarEvent(**request.model_dump())
        if event.external_id:
            app.state.context.connections.push_update(family_id, connection_id, event)
            return {"external_id": event.external_id}
        external_id = app.state.context.connections.push_event(family_id, connection_id, event)
        return {"external_id": external_id}

    @app.delete("/api/families/{family_id}/connections/{connection_id}/events/{external_id}")
    def push_delete(family_id: str, connection_id: str, external_id: str) -> dict[str, str]:
        app.state.context.connections.push_delete(family_id, connection_id, external_id)
        return {"message": "event deleted"}

    @app.post("/api/families/{family_id}/connections/ics")
    def register_ics(family_id: str, request: IcsConnectionRequest) -> dict[str, Any]:
        connection = app.state.context.connections.register_ics(
            family_id,
            request.name,
            request.ics_url,
            request.created_by,
            color=request.color,
            assigned_member_ids=request.assigned_member_ids,
        )
        return connection.to_dict(include_secrets=False)

    @app.post("/api/families/{family_id}/connections/ics/validate")
    def validate_ics(family_id: str, request: IcsValidationRequest) -> dict[str, Any]:
        return app.state.context.connections.validate_ics_url(request.ics_url).to_dict()

    @app.post("/api/families/{family_id}/oauth/start")
    def start_oauth(family_id: str, request: OAuthStartRequest) -> dict[str, Any]:
        redirect_uri = request.redirect_uri or app.state.context.config_manager.load().default_redirect_uri
        initiation = app.state.context.oauth_flow.initiate_oauth(
            family_id, request.provider, redirect_uri, request.created_by
        )
        return initiation.to_dict()

    @app.post("/api/oauth/complete")
    def complete_oauth(request: OAuthCompleteRequest) -> dict[str, Any]:
        completion = app.state.context.oauth_flow.complete_oauth_by_state(
            request.code, request.state, request.redirect_uri
        )
        return completion.to_dict()

    @app.post("/api/families/{family_id}/oauth/sessions/{session_id}/connections")
    def create_connections(family_id: str, session_id: str, request: CreateConnectionsRequest) -> dict[str, Any]:
        selections = [CalendarSelection(**item.model_dump()) for item in request.calendars]
        created = app.state.context.oauth_flow.create_connections_from_session(family_id, session_id, selections)
        app.state.context.scheduler.trigger_manual()
        return {"connections": [item.to_dict(include_secrets=False) for item in created]}

    @app.get("/api/families/{family_id}/events")
    def list_events(family_id: str, calendar_key: str | None = None) -> dict[str, Any]:
        return {"events": app.state.context.event_store.list_events(family_id, calendar_key)}

    @app.get("/api/families/{family_id}/notifications")
    def recent_notifications(family_id: str) -> dict[str, Any]:
        items = app.state.context.notifier.recent(family_id)
        return {"notifications": [item.to_dict() for item in items]}

    @app.get("/api/connections/errors")
    def connections_in_error() -> dict[str, Any]:
        connections = app.state.context.connections.connections_in_error()
        return {"connections": [item.to_dict(include_secrets=False) for item in connections]}

    @app.post("/api/sync/run-due")
    def run_due(limit: int | None = None) -> dict[str, Any]:
        if limit is not None and limit < 1:
            raise HTTPException(status_code=400, detail="limit must be positive")
        summaries = app.state.context.scheduler.sync_due_connections(limit=limit, trigger="manual")
        return {"results": [item.to_dict() for item in summaries]}

    @app.get("/api/sync/runs")
    def sync_runs(limit: int = 20, connection_id: str | None = None) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit, connection_id=connection_id)}

    return app


app = create_app()
