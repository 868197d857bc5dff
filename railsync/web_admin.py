from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from railsync.config_manager import ConfigManager
from railsync.models import (
    EventSyncSettings,
    GlobalSyncSettings,
    ProjectSyncSettings,
    ResolutionContext,
    SubtrackSyncSettings,
    TrackSyncSettings,
    validate_entity_type,
)
from railsync.propagation import BulkPropagator
from railsync.roadmap import RoadmapService, roadmap_item_from_row
from railsync.scheduler import PropagationRequest, PropagationScheduler
from railsync.settings_store import SettingsStore
from railsync.state_store import StateStore
from railsync.sync_engine import CalendarSyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SyncSettingsRequest(BaseModel):
    sync_enabled: bool = False
    sync_roadmap_events: bool = True
    sync_tasks_with_dates: bool = True
    sync_mindmesh_events: bool = True
    target_calendar_type: str = "personal"
    target_space_id: str | None = None


class ProjectSettingsRequest(SyncSettingsRequest):
    inherit_from_global: bool = True


class TrackSettingsRequest(SyncSettingsRequest):
    inherit_from_project: bool = True


class SubtrackSettingsRequest(SyncSettingsRequest):
    inherit_from_track: bool = True


class EventSettingsRequest(BaseModel):
    entity_type: str = "roadmap_event"
    track_id: str | None = None
    subtrack_id: str | None = None
    sync_enabled: bool = False
    target_calendar_type: str = "personal"
    target_space_id: str | None = None
    inherit_from_subtrack: bool | None = None
    inherit_from_track: bool | None = None
    inherit_from_project: bool | None = None


class ResolveRequest(BaseModel):
    project_id: str
    track_id: str | None = None
    subtrack_id: str | None = None
    event_id: str | None = None
    entity_type: str = "roadmap_event"


class ExecuteSyncRequest(BaseModel):
    project_id: str
    entity_type: str = "roadmap_event"
    project_name: str | None = None
    track_id: str | None = None
    subtrack_id: str | None = None


class BulkSyncRequest(BaseModel):
    project_id: str
    track_id: str | None = None
    subtrack_id: str | None = None
    background: bool = False


class CreateRoadmapItemRequest(BaseModel):
    master_project_id: str
    title: str = Field(min_length=1, max_length=500)
    type: str = "task"
    description: str = ""
    start_date: str | None = None
    end_date: str | None = None
    track_id: str | None = None
    subtrack_id: str | None = None
    status: str = "pending"
    metadata: dict[str, Any] = Field(default_factory=dict)


class UpdateRoadmapItemRequest(BaseModel):
    changes: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.settings_store = SettingsStore(self.state_store)
        self.roadmap = RoadmapService(self.state_store)
        self.sync_engine = CalendarSyncEngine(
            self.config_manager,
            self.state_store,
            self.settings_store,
            self.roadmap,
        )
        self.roadmap.attach_sync_engine(self.sync_engine)
        self.propagator = BulkPropagator(self.sync_engine)
        self.scheduler = PropagationScheduler(self.propagator)


def _require_user(user_id: str | None) -> str:
    text = str(user_id or "").strip()
    if not text:
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    return text


def _settings_response(settings: Any | None) -> dict[str, Any]:
    return {"settings": settings.to_dict() if settings is not None else None}


def create_app() -> FastAPI:
    config_path = os.getenv("RAILSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("RAILSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Railsync Admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    def _after_settings_change(
        user_id: str,
        project_id: str,
        track_id: str | None = None,
        subtrack_id: str | None = None,
    ) -> bool:
        ctx: AppContext = app.state.context
        ctx.state_store.record_activity(
            user_id=user_id,
            entity_id=subtrack_id or track_id or project_id,
            action="settings_change",
            details={"project_id": project_id, "track_id": track_id, "subtrack_id": subtrack_id},
        )
        if not ctx.config_manager.load().sync.propagate_on_settings_change:
            return False
        return ctx.scheduler.enqueue(
            PropagationRequest(user_id=user_id, project_id=project_id, track_id=track_id, subtrack_id=subtrack_id)
        )

    def _resync_event(user_id: str, event_id: str, entity_type: str) -> dict[str, Any] | None:
        ctx: AppContext = app.state.context
        if entity_type != "roadmap_event":
            return None
        item = ctx.roadmap.get_roadmap_item(event_id)
        if item is None:
            return None
        result = ctx.sync_engine.sync_roadmap_item(item, user_id)
        return result.to_dict() if result else None

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        if not isinstance(request.payload, dict):
            raise HTTPException(status_code=400, detail="payload must be an object")
        updated = app.state.context.config_manager.update(request.payload)
        return {"message": "config updated", "config": updated.to_dict()}

    @app.get("/api/settings/global")
    def get_global_settings(x_user_id: str | None = Header(default=None)) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        return _settings_response(app.state.context.settings_store.get_global_settings(user_id))

    @app.put("/api/settings/global")
    def put_global_settings(
        request: SyncSettingsRequest,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        try:
            stored = app.state.context.settings_store.upsert_global_settings(
                GlobalSyncSettings(user_id=user_id, **request.model_dump())
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _settings_response(stored)

    @app.delete("/api/settings/global")
    def delete_global_settings(x_user_id: str | None = Header(default=None)) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        return {"deleted": app.state.context.settings_store.delete_global_settings(user_id)}

    @app.get("/api/settings/projects/{project_id}")
    def get_project_settings(project_id: str, x_user_id: str | None = Header(default=None)) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        return _settings_response(app.state.context.settings_store.get_project_settings(user_id, project_id))

    @app.put("/api/settings/projects/{project_id}")
    def put_project_settings(
        project_id: str,
        request: ProjectSettingsRequest,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        try:
            stored = app.state.context.settings_store.upsert_project_settings(
                ProjectSyncSettings(user_id=user_id, project_id=project_id, **request.model_dump())
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        queued = _after_settings_change(user_id, project_id)
        return {**_settings_response(stored), "propagation_queued": queued}

    @app.delete("/api/settings/projects/{project_id}")
    def delete_project_settings(project_id: str, x_user_id: str | None = Header(default=None)) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        deleted = app.state.context.settings_store.delete_project_settings(user_id, project_id)
        queued = _after_settings_change(user_id, project_id) if deleted else False
        return {"deleted": deleted, "propagation_queued": queued}

    @app.get("/api/settings/projects/{project_id}/tracks")
    def list_track_settings(project_id: str, x_user_id: str | None = Header(default=None)) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        items = app.state.context.settings_store.list_track_settings_for_project(user_id, project_id)
        return {"settings": [item.to_dict() for item in items]}

    @app.get("/api/settings/projects/{project_id}/tracks/{track_id}")
    def get_track_settings(
        project_id: str,
        track_id: str,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        return _settings_response(app.state.context.settings_store.get_track_settings(user_id, project_id, track_id))

    @app.put("/api/settings/projects/{project_id}/tracks/{track_id}")
    def put_track_settings(
        project_id: str,
        track_id: str,
        request: TrackSettingsRequest,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        try:
            stored = app.state.context.settings_store.upsert_track_settings(
                TrackSyncSettings(user_id=user_id, project_id=project_id, track_id=track_id, **request.model_dump())
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        queued = _after_settings_change(user_id, project_id, track_id)
        return {**_settings_response(stored), "propagation_queued": queued}

    @app.delete("/api/settings/projects/{project_id}/tracks/{track_id}")
    def delete_track_settings(
        project_id: str,
        track_id: str,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        deleted = app.state.context.settings_store.delete_track_settings(user_id, project_id, track_id)
        queued = _after_settings_change(user_id, project_id, track_id) if deleted else False
        return {"deleted": deleted, "propagation_queued": queued}

    @app.get("/api/settings/projects/{project_id}/tracks/{track_id}/subtracks")
    def list_subtrack_settings(
        project_id: str,
        track_id: str,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        items = app.state.context.settings_store.list_subtrack_settings_for_track(user_id, project_id, track_id)
        return {"settings": [item.to_dict() for item in items]}

    @app.get("/api/settings/projects/{project_id}/tracks/{track_id}/subtracks/{subtrack_id}")
    def get_subtrack_settings(
        project_id: str,
        track_id: str,
        subtrack_id: str,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        stored = app.state.context.settings_store.get_subtrack_settings(user_id, project_id, track_id, subtrack_id)
        return _settings_response(stored)

    @app.put("/api/settings/projects/{project_id}/tracks/{track_id}/subtracks/{subtrack_id}")
    def put_subtrack_settings(
        project_id: str,
        track_id: str,
        subtrack_id: str,
        request: SubtrackSettingsRequest,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        try:
            stored = app.state.context.settings_store.upsert_subtrack_settings(
                SubtrackSyncSettings(
                    user_id=user_id,
                    project_id=project_id,
                    track_id=track_id,
                    subtrack_id=subtrack_id,
                    **request.model_dump(),
                )
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        queued = _after_settings_change(user_id, project_id, track_id, subtrack_id)
        return {**_settings_response(stored), "propagation_queued": queued}

    @app.delete("/api/settings/projects/{project_id}/tracks/{track_id}/subtracks/{subtrack_id}")
    def delete_subtrack_settings(
        project_id: str,
        track_id: str,
        subtrack_id: str,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        deleted = app.state.context.settings_store.delete_subtrack_settings(
            user_id, project_id, track_id, subtrack_id
        )
        queued = _after_settings_change(user_id, project_id, track_id, subtrack_id) if deleted else False
        return {"deleted": deleted, "propagation_queued": queued}

    @app.get("/api/settings/projects/{project_id}/events")
    def list_event_settings(project_id: str, x_user_id: str | None = Header(default=None)) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        items = app.state.context.settings_store.list_event_settings_for_project(user_id, project_id)
        return {"settings": [item.to_dict() for item in items]}

    @app.get("/api/settings/projects/{project_id}/events/{event_id}")
    def get_event_settings(
        project_id: str,
        event_id: str,
        entity_type: str = "roadmap_event",
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        try:
            stored = app.state.context.settings_store.get_event_settings(user_id, project_id, event_id, entity_type)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _settings_response(stored)

    @app.put("/api/settings/projects/{project_id}/events/{event_id}")
    def put_event_settings(
        project_id: str,
        event_id: str,
        request: EventSettingsRequest,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        try:
            stored = app.state.context.settings_store.upsert_event_settings(
                EventSyncSettings(user_id=user_id, project_id=project_id, event_id=event_id, **request.model_dump())
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {**_settings_response(stored), "sync_result": _resync_event(user_id, event_id, stored.entity_type)}

    @app.delete("/api/settings/projects/{project_id}/events/{event_id}")
    def delete_event_settings(
        project_id: str,
        event_id: str,
        entity_type: str = "roadmap_event",
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        try:
            deleted = app.state.context.settings_store.delete_event_settings(
                user_id, project_id, event_id, entity_type
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        sync_result = _resync_event(user_id, event_id, entity_type) if deleted else None
        return {"deleted": deleted, "sync_result": sync_result}

    @app.post("/api/resolve")
    def resolve(request: ResolveRequest, x_user_id: str | None = Header(default=None)) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        try:
            result = app.state.context.sync_engine.resolve(user_id, ResolutionContext(**request.model_dump()))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"result": result.to_dict()}

    @app.post("/api/sync/events/{event_id}")
    def execute_event_sync(
        event_id: str,
        request: ExecuteSyncRequest,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        ctx: AppContext = app.state.context
        try:
            entity_type = validate_entity_type(request.entity_type)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        project_name = (
            request.project_name
            or ctx.roadmap.get_project_name(request.project_id)
            or ctx.config_manager.load().sync.unknown_project_name
        )
        result = ctx.sync_engine.execute_calendar_sync_for_event(
            user_id,
            event_id,
            entity_type,
            request.project_id,
            project_name,
            request.track_id,
            request.subtrack_id,
        )
        return {"result": result.to_dict()}

    @app.post("/api/sync/bulk")
    def bulk_sync(request: BulkSyncRequest, x_user_id: str | None = Header(default=None)) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        if request.subtrack_id and not request.track_id:
            raise HTTPException(status_code=400, detail="subtrack_id requires track_id")
        propagation = PropagationRequest(
            user_id=user_id,
            project_id=request.project_id,
            track_id=request.track_id,
            subtrack_id=request.subtrack_id,
        )
        if request.background:
            queued = app.state.context.scheduler.enqueue(propagation)
            return {"message": "bulk sync queued", "queued": queued, "scope": propagation.scope}
        result = app.state.context.scheduler.run_request(propagation)
        return {"message": "bulk sync completed", "scope": propagation.scope, "result": result.to_dict()}

    @app.post("/api/roadmap/items")
    def create_roadmap_item(
        request: CreateRoadmapItemRequest,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        try:
            item = roadmap_item_from_row({"id": "", **request.model_dump()})
            created = app.state.context.roadmap.create_roadmap_item(item, user_id=x_user_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"item": created.to_dict()}

    @app.get("/api/roadmap/items/{item_id}")
    def get_roadmap_item(item_id: str) -> dict[str, Any]:
        item = app.state.context.roadmap.get_roadmap_item(item_id)
        if item is None:
            raise HTTPException(status_code=404, detail="roadmap item not found")
        return {"item": item.to_dict()}

    @app.patch("/api/roadmap/items/{item_id}")
    def update_roadmap_item(
        item_id: str,
        request: UpdateRoadmapItemRequest,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        try:
            updated = app.state.context.roadmap.update_roadmap_item(item_id, request.changes, user_id=x_user_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if updated is None:
            raise HTTPException(status_code=404, detail="roadmap item not found")
        return {"item": updated.to_dict()}

    @app.delete("/api/roadmap/items/{item_id}")
    def delete_roadmap_item(item_id: str, x_user_id: str | None = Header(default=None)) -> dict[str, Any]:
        deleted = app.state.context.roadmap.delete_roadmap_item(item_id, user_id=x_user_id)
        if not deleted:
            raise HTTPException(status_code=404, detail="roadmap item not found")
        return {"deleted": True}

    @app.get("/api/activity")
    def activity(
        limit: int = 100,
        action: str | None = None,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        user_id = _require_user(x_user_id)
        return {"events": app.state.context.state_store.recent_activity(limit=limit, user_id=user_id, action=action)}

    return app


app = create_app()
