from __future__ import annotations

import logging

from railsync.models import (
    EventSyncSettings,
    GlobalSyncSettings,
    ProjectSyncSettings,
    SubtrackSyncSettings,
    TrackSyncSettings,
    validate_entity_type,
    validate_target_calendar_type,
)
from railsync.state_store import StateStore


logger = logging.getLogger(__name__)

GLOBAL_TABLE = "global_calendar_sync_settings"
PROJECT_TABLE = "project_calendar_sync_settings"
TRACK_TABLE = "track_calendar_sync_settings"
SUBTRACK_TABLE = "subtrack_calendar_sync_settings"
EVENT_TABLE = "event_calendar_sync_settings"

GLOBAL_KEY = ("user_id",)
PROJECT_KEY = ("user_id", "project_id")
TRACK_KEY = ("user_id", "project_id", "track_id")
SUBTRACK_KEY = ("user_id", "project_id", "track_id", "subtrack_id")
EVENT_KEY = ("user_id", "project_id", "event_id", "entity_type")


class SettingsStore:
    """CRUD for calendar sync settings at global, project, track, subtrack and
    event scope.

    Each upsert resolves conflicts on the scope's natural key, so calling it
    repeatedly updates the one record instead of adding rows. Nothing here
    creates settings implicitly.
    """

    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    # Global

    def get_global_settings(self, user_id: str) -> GlobalSyncSettings | None:
        row = self.state_store.select_one(GLOBAL_TABLE, {"user_id": user_id})
        return GlobalSyncSettings.from_dict(row) if row else None

    def upsert_global_settings(self, settings: GlobalSyncSettings) -> GlobalSyncSettings:
        settings.target_calendar_type = validate_target_calendar_type(settings.target_calendar_type)
        row = self.state_store.upsert(GLOBAL_TABLE, settings.to_row(), GLOBAL_KEY)
        return GlobalSyncSettings.from_dict(row)

    def delete_global_settings(self, user_id: str) -> bool:
        return self.state_store.delete(GLOBAL_TABLE, {"user_id": user_id}) > 0

    # Project

    def get_project_settings(self, user_id: str, project_id: str) -> ProjectSyncSettings | None:
        row = self.state_store.select_one(PROJECT_TABLE, {"user_id": user_id, "project_id": project_id})
        return ProjectSyncSettings.from_dict(row) if row else None

    def upsert_project_settings(self, settings: ProjectSyncSettings) -> ProjectSyncSettings:
        settings.target_calendar_type = validate_target_calendar_type(settings.target_calendar_type)
        row = self.state_store.upsert(PROJECT_TABLE, settings.to_row(), PROJECT_KEY)
        logger.debug("Upserted project sync settings user=%s project=%s", settings.user_id, settings.project_id)
        return ProjectSyncSettings.from_dict(row)

    def delete_project_settings(self, user_id: str, project_id: str) -> bool:
        return self.state_store.delete(PROJECT_TABLE, {"user_id": user_id, "project_id": project_id}) > 0

    # Track

    def get_track_settings(self, user_id: str, project_id: str, track_id: str) -> TrackSyncSettings | None:
        row = self.state_store.select_one(
            TRACK_TABLE,
            {"user_id": user_id, "project_id": project_id, "track_id": track_id},
        )
        return TrackSyncSettings.from_dict(row) if row else None

    def list_track_settings_for_project(self, user_id: str, project_id: str) -> list[TrackSyncSettings]:
        rows = self.state_store.select(
            TRACK_TABLE,
            {"user_id": user_id, "project_id": project_id},
            order_by="created_at",
        )
        return [TrackSyncSettings.from_dict(row) for row in rows]

    def upsert_track_settings(self, settings: TrackSyncSettings) -> TrackSyncSettings:
        settings.target_calendar_type = validate_target_calendar_type(settings.target_calendar_type)
        row = self.state_store.upsert(TRACK_TABLE, settings.to_row(), TRACK_KEY)
        logger.debug("Upserted track sync settings user=%s track=%s", settings.user_id, settings.track_id)
        return TrackSyncSettings.from_dict(row)

    def delete_track_settings(self, user_id: str, project_id: str, track_id: str) -> bool:
        deleted = self.state_store.delete(
            TRACK_TABLE,
            {"user_id": user_id, "project_id": project_id, "track_id": track_id},
        )
        return deleted > 0

    # Subtrack

    def get_subtrack_settings(
        self,
        user_id: str,
        project_id: str,
        track_id: str,
        subtrack_id: str,
    ) -> SubtrackSyncSettings | None:
        row = self.state_store.select_one(
            SUBTRACK_TABLE,
            {
                "user_id": user_id,
                "project_id": project_id,
                "track_id": track_id,
                "subtrack_id": subtrack_id,
            },
        )
        return SubtrackSyncSettings.from_dict(row) if row else None

    def list_subtrack_settings_for_track(
        self,
        user_id: str,
        project_id: str,
        track_id: str,
    ) -> list[SubtrackSyncSettings]:
        rows = self.state_store.select(
            SUBTRACK_TABLE,
            {"user_id": user_id, "project_id": project_id, "track_id": track_id},
            order_by="created_at",
        )
        return [SubtrackSyncSettings.from_dict(row) for row in rows]

    def upsert_subtrack_settings(self, settings: SubtrackSyncSettings) -> SubtrackSyncSettings:
        settings.target_calendar_type = validate_target_calendar_type(settings.target_calendar_type)
        row = self.state_store.upsert(SUBTRACK_TABLE, settings.to_row(), SUBTRACK_KEY)
        logger.debug("Upserted subtrack sync settings user=%s subtrack=%s", settings.user_id, settings.subtrack_id)
        return SubtrackSyncSettings.from_dict(row)

    def delete_subtrack_settings(self, user_id: str, project_id: str, track_id: str, subtrack_id: str) -> bool:
        deleted = self.state_store.delete(
            SUBTRACK_TABLE,
            {
                "user_id": user_id,
                "project_id": project_id,
                "track_id": track_id,
                "subtrack_id": subtrack_id,
            },
        )
        return deleted > 0

    # Event

    def get_event_settings(
        self,
        user_id: str,
        project_id: str,
        event_id: str,
        entity_type: str,
    ) -> EventSyncSettings | None:
        row = self.state_store.select_one(
            EVENT_TABLE,
            {
                "user_id": user_id,
                "project_id": project_id,
                "event_id": event_id,
                "entity_type": validate_entity_type(entity_type),
            },
        )
        return EventSyncSettings.from_dict(row) if row else None

    def list_event_settings_for_project(self, user_id: str, project_id: str) -> list[EventSyncSettings]:
        rows = self.state_store.select(
            EVENT_TABLE,
            {"user_id": user_id, "project_id": project_id},
            order_by="created_at",
        )
        return [EventSyncSettings.from_dict(row) for row in rows]

    def upsert_event_settings(self, settings: EventSyncSettings) -> EventSyncSettings:
        settings.target_calendar_type = validate_target_calendar_type(settings.target_calendar_type)
        settings.entity_type = validate_entity_type(settings.entity_type)
        row = self.state_store.upsert(EVENT_TABLE, settings.to_row(), EVENT_KEY)
        logger.debug("Upserted event sync settings user=%s event=%s", settings.user_id, settings.event_id)
        return EventSyncSettings.from_dict(row)

    def delete_event_settings(self, user_id: str, project_id: str, event_id: str, entity_type: str) -> bool:
        deleted = self.state_store.delete(
            EVENT_TABLE,
            {
                "user_id": user_id,
                "project_id": project_id,
                "event_id": event_id,
                "entity_type": validate_entity_type(entity_type),
            },
        )
        return deleted > 0
