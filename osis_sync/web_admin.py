from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any, Literal, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from osis_sync.calendar_adapter import CalendarAdapter
from osis_sync.config_manager import ConfigManager
from osis_sync.credentials import OAuthCredentialProvider
from osis_sync.errors import (
    AuthorizationDenied,
    EntityNotFound,
    StaleWrite,
    StoreError,
    UnknownUser,
)
from osis_sync.ledger_adapter import LedgerAdapter
from osis_sync.models import AppConfig, EntityKind, EventStatus, Role, Source
from osis_sync.notifications import ChangeBus
from osis_sync.scheduler import SyncScheduler
from osis_sync.service import MutationService
from osis_sync.state_store import StateStore
from osis_sync.sync_engine import SyncContext, SyncOrchestrator

logger = logging.getLogger(__name__)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class EventCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    start: datetime
    end: datetime
    status: EventStatus = EventStatus.PLANNED
    notes: str = ""


class EventUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    status: Optional[EventStatus] = None
    notes: Optional[str] = None
    expected_version: Optional[int] = None


class TransactionCreateRequest(BaseModel):
    amount: int
    category: str = Field(min_length=1, max_length=200)
    timestamp: datetime
    note: str = ""


class TransactionUpdateRequest(BaseModel):
    amount: Optional[int] = None
    category: Optional[str] = Field(default=None, min_length=1, max_length=200)
    timestamp: Optional[datetime] = None
    note: Optional[str] = None
    expected_version: Optional[int] = None


class RoleUpdateRequest(BaseModel):
    role: Role


class SyncRequest(BaseModel):
    source: Optional[Source] = None
    wait: bool = False


class ReviewClearRequest(BaseModel):
    keep: Literal["local", "external"] = "local"


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.notifier = ChangeBus()
        config = self.config_manager.load()
        self.credentials = OAuthCredentialProvider(config.credentials)
        self.orchestrator = SyncOrchestrator(
            SyncContext(
                store=self.state_store,
                adapters=self._build_adapters(config),
                credentials=self.credentials,
                config=config.sync,
                notifier=self.notifier,
            )
        )
        self.scheduler = SyncScheduler(self.orchestrator, self.config_manager)
        self.service = MutationService(self.state_store, self.notifier, self.scheduler)
        self.service.seed_users(config.users)

    def _build_adapters(self, config: AppConfig) -> dict[Source, Any]:
        return {
            Source.CALENDAR: CalendarAdapter(config.calendar, self.credentials),
            Source.LEDGER: LedgerAdapter(config.ledger, self.credentials),
        }

    def apply_config(self, config: AppConfig) -> None:
        """Point the running engine at a freshly saved configuration."""
        self.credentials.config = config.credentials
        self.orchestrator.context.adapters.update(self._build_adapters(config))
        self.orchestrator.context.config = config.sync
        self.service.seed_users(config.users)


def _entity_kind(kind: str) -> EntityKind:
    try:
        return EntityKind(kind)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=f"unknown entity kind {kind!r}") from exc


def _fields(request: BaseModel) -> dict[str, Any]:
    return request.model_dump(exclude_none=True, exclude={"expected_version"})


def create_app(config_path: Optional[str] = None, state_path: Optional[str] = None) -> FastAPI:
    config_path = config_path or os.getenv("OSIS_SYNC_CONFIG_PATH", "config.yaml")
    state_path = state_path or os.getenv("OSIS_SYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="OSIS Sync", version="0.1.0")
    app.state.context = context

    @app.exception_handler(AuthorizationDenied)
    async def _denied(_: Request, exc: AuthorizationDenied) -> JSONResponse:
        return JSONResponse(status_code=403, content={"detail": str(exc), "reason": exc.reason})

    @app.exception_handler(StaleWrite)
    async def _stale(_: Request, exc: StaleWrite) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "expected": exc.expected, "current": exc.current},
        )

    @app.exception_handler(EntityNotFound)
    async def _missing(_: Request, exc: EntityNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": f"not found: {exc}"})

    @app.exception_handler(UnknownUser)
    async def _unknown_user(_: Request, exc: UnknownUser) -> JSONResponse:
        return JSONResponse(status_code=401, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def _invalid(_: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(StoreError)
    async def _store_failed(_: Request, exc: StoreError) -> JSONResponse:
        logger.error("store operation failed: %s", exc)
        return JSONResponse(status_code=500, content={"detail": "state store failure"})

    @app.on_event("startup")
    async def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        updated = app.state.context.config_manager.update(request.payload)
        app.state.context.apply_config(updated)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/state")
    def get_state() -> dict[str, Any]:
        store = app.state.context.state_store
        orchestrator = app.state.context.orchestrator
        return {
            "events": [item.to_dict() for item in store.list_entities(EntityKind.EVENT)],
            "transactions": [item.to_dict() for item in store.list_entities(EntityKind.TRANSACTION)],
            "sources": {
                source.value: {
                    "state": orchestrator.states[source].value,
                    "cursor": store.get_cursor(source).to_dict(),
                }
                for source in orchestrator.states
            },
        }

    # Mutation endpoints run on the event loop so the scheduler's debounce timers stay on it.

    @app.post("/api/events", status_code=201)
    async def create_event(
        request: EventCreateRequest, x_user_id: Optional[str] = Header(default=None)
    ) -> dict[str, Any]:
        entity = app.state.context.service.create(x_user_id, EntityKind.EVENT, _fields(request))
        return {"event": entity.to_dict()}

    @app.patch("/api/events/{local_id}")
    async def update_event(
        local_id: str, request: EventUpdateRequest, x_user_id: Optional[str] = Header(default=None)
    ) -> dict[str, Any]:
        entity = app.state.context.service.update(
            x_user_id, EntityKind.EVENT, local_id, _fields(request), request.expected_version
        )
        return {"event": entity.to_dict()}

    @app.delete("/api/events/{local_id}")
    async def delete_event(
        local_id: str,
        expected_version: Optional[int] = None,
        x_user_id: Optional[str] = Header(default=None),
    ) -> dict[str, Any]:
        result = app.state.context.service.delete(x_user_id, EntityKind.EVENT, local_id, expected_version)
        return {"purged": result is None, "event": result.to_dict() if result else None}

    @app.post("/api/transactions", status_code=201)
    async def create_transaction(
        request: TransactionCreateRequest, x_user_id: Optional[str] = Header(default=None)
    ) -> dict[str, Any]:
        entity = app.state.context.service.create(x_user_id, EntityKind.TRANSACTION, _fields(request))
        return {"transaction": entity.to_dict()}

    @app.patch("/api/transactions/{local_id}")
    async def update_transaction(
        local_id: str, request: TransactionUpdateRequest, x_user_id: Optional[str] = Header(default=None)
    ) -> dict[str, Any]:
        entity = app.state.context.service.update(
            x_user_id, EntityKind.TRANSACTION, local_id, _fields(request), request.expected_version
        )
        return {"transaction": entity.to_dict()}

    @app.delete("/api/transactions/{local_id}")
    async def delete_transaction(
        local_id: str,
        expected_version: Optional[int] = None,
        x_user_id: Optional[str] = Header(default=None),
    ) -> dict[str, Any]:
        result = app.state.context.service.delete(
            x_user_id, EntityKind.TRANSACTION, local_id, expected_version
        )
        return {"purged": result is None, "transaction": result.to_dict() if result else None}

    @app.put("/api/users/{user_id}/role")
    async def put_user_role(
        user_id: str, request: RoleUpdateRequest, x_user_id: Optional[str] = Header(default=None)
    ) -> dict[str, Any]:
        user = app.state.context.service.reassign_role(x_user_id, user_id, request.role)
        return {"user": user.to_dict()}

    @app.post("/api/sync")
    async def force_sync(request: Optional[SyncRequest] = None) -> dict[str, Any]:
        request = request or SyncRequest()
        if not request.wait:
            app.state.context.scheduler.trigger(request.source)
            return {"message": "sync triggered"}
        orchestrator = app.state.context.orchestrator
        sources = [request.source] if request.source else list(orchestrator.states)
        results = [await orchestrator.run_cycle(source, trigger="manual") for source in sources]
        return {"message": "sync completed", "results": [result.to_dict() for result in results]}

    @app.get("/api/review")
    def list_review() -> dict[str, Any]:
        return {"items": app.state.context.state_store.list_review()}

    @app.post("/api/review/{kind}/{local_id}/clear")
    async def clear_review(
        kind: str,
        local_id: str,
        request: Optional[ReviewClearRequest] = None,
        x_user_id: Optional[str] = Header(default=None),
    ) -> dict[str, Any]:
        request = request or ReviewClearRequest()
        entity = app.state.context.service.clear_review(x_user_id, _entity_kind(kind), local_id, request.keep)
        return {"message": "review cleared", "entity": entity.to_dict()}

    @app.get("/api/sync/runs")
    def sync_runs(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    @app.get("/api/audit")
    def audit_events(limit: int = 100) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit)}

    @app.get("/api/notifications")
    def notifications(limit: int = 50) -> dict[str, Any]:
        return {"notifications": app.state.context.notifier.recent(limit=limit)}

    return app
