from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from railsync.models import (
    LegacyRoadmapItem,
    RoadmapEvent,
    RoadmapItem,
    RoadmapTask,
    parse_iso_date,
    serialize_date,
)
from railsync.state_store import StateStore

if TYPE_CHECKING:
    from railsync.sync_engine import CalendarSyncEngine


logger = logging.getLogger(__name__)

ROADMAP_TABLE = "roadmap_items"
PROJECT_TABLE = "master_projects"

ROADMAP_ITEM_TYPES = (
    "task",
    "event",
    "milestone",
    "goal",
    "habit",
    "note",
    "document",
    "photo",
    "grocery_list",
    "review",
)
UPDATABLE_FIELDS = (
    "title",
    "description",
    "start_date",
    "end_date",
    "status",
    "metadata",
    "track_id",
    "subtrack_id",
    "type",
)

_ITEM_CLASSES: dict[str, type[RoadmapItem]] = {
    "event": RoadmapEvent,
    "task": RoadmapTask,
}


def roadmap_item_from_row(row: dict[str, Any]) -> RoadmapItem:
    item_type = str(row.get("type") or "task")
    item_cls = _ITEM_CLASSES.get(item_type, LegacyRoadmapItem)
    metadata = row.get("metadata")
    return item_cls(
        id=str(row["id"]),
        master_project_id=str(row.get("master_project_id") or ""),
        type=item_type,
        title=str(row.get("title") or ""),
        description=str(row.get("description") or ""),
        start_date=parse_iso_date(row.get("start_date")),
        end_date=parse_iso_date(row.get("end_date")),
        track_id=row.get("track_id") or None,
        subtrack_id=row.get("subtrack_id") or None,
        status=str(row.get("status") or "pending"),
        metadata=metadata if isinstance(metadata, dict) else {},
        parent_item_id=row.get("parent_item_id") or None,
    )


def _validate_item_fields(payload: dict[str, Any]) -> None:
    item_type = payload.get("type")
    if item_type is not None and item_type not in ROADMAP_ITEM_TYPES:
        raise ValueError(f"unsupported roadmap item type: {item_type}")
    if "title" in payload and not str(payload.get("title") or "").strip():
        raise ValueError("title must not be empty")
    start = parse_iso_date(payload.get("start_date"))
    end = parse_iso_date(payload.get("end_date"))
    if start and end and end < start:
        raise ValueError("end_date must not be earlier than start_date")


class RoadmapService:
    """Reads and mutates roadmap items.

    Mutations hand the resulting item to the calendar sync engine when one is
    attached. Sync runs after the write and its outcome never affects the
    mutation itself.
    """

    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store
        self.sync_engine: CalendarSyncEngine | None = None

    def attach_sync_engine(self, sync_engine: CalendarSyncEngine) -> None:
        self.sync_engine = sync_engine

    def get_roadmap_item(self, item_id: str) -> RoadmapItem | None:
        row = self.state_store.select_one(ROADMAP_TABLE, {"id": item_id})
        return roadmap_item_from_row(row) if row else None

    def get_roadmap_items_by_project(self, project_id: str) -> list[RoadmapItem]:
        rows = self.state_store.select(ROADMAP_TABLE, {"master_project_id": project_id}, order_by="start_date")
        return [roadmap_item_from_row(row) for row in rows]

    def get_roadmap_items_by_track(self, track_id: str, project_id: str | None = None) -> list[RoadmapItem]:
        filters = {"track_id": track_id}
        if project_id:
            filters["master_project_id"] = project_id
        rows = self.state_store.select(ROADMAP_TABLE, filters, order_by="start_date")
        return [roadmap_item_from_row(row) for row in rows]

    def get_roadmap_items_by_subtrack(
        self,
        subtrack_id: str,
        project_id: str | None = None,
        track_id: str | None = None,
    ) -> list[RoadmapItem]:
        filters = {"subtrack_id": subtrack_id}
        if project_id:
            filters["master_project_id"] = project_id
        if track_id:
            filters["track_id"] = track_id
        rows = self.state_store.select(ROADMAP_TABLE, filters, order_by="start_date")
        return [roadmap_item_from_row(row) for row in rows]

    def get_project_name(self, project_id: str) -> str | None:
        row = self.state_store.select_one(PROJECT_TABLE, {"id": project_id})
        if row is None:
            return None
        return str(row.get("name") or "") or None

    def create_project(self, name: str, project_id: str | None = None) -> dict[str, Any]:
        values: dict[str, Any] = {"name": name}
        if project_id:
            values["id"] = project_id
        return self.state_store.insert(PROJECT_TABLE, values)

    def create_roadmap_item(self, item: RoadmapItem, user_id: str | None = None) -> RoadmapItem:
        row = item.to_row()
        if not row.get("id"):
            row.pop("id", None)
        _validate_item_fields(row)
        stored = self.state_store.insert(ROADMAP_TABLE, row)
        created = roadmap_item_from_row(stored)
        self._try_calendar_sync(created, user_id)
        return created

    def update_roadmap_item(
        self,
        item_id: str,
        changes: dict[str, Any],
        user_id: str | None = None,
    ) -> RoadmapItem | None:
        unknown = sorted(set(changes) - set(UPDATABLE_FIELDS))
        if unknown:
            raise ValueError(f"fields cannot be updated: {', '.join(unknown)}")
        existing = self.get_roadmap_item(item_id)
        if existing is None:
            return None
        merged = existing.to_row()
        merged.update(changes)
        _validate_item_fields(merged)

        values = dict(changes)
        for key in ("start_date", "end_date"):
            if key in values:
                values[key] = serialize_date(parse_iso_date(values[key]))
        if values:
            self.state_store.update(ROADMAP_TABLE, values, {"id": item_id})
        updated = self.get_roadmap_item(item_id)
        if updated is None:
            return None
        if existing.is_event and not updated.is_event:
            self._try_calendar_unsync(updated, user_id)
        else:
            self._try_calendar_sync(updated, user_id)
        return updated

    def delete_roadmap_item(self, item_id: str, user_id: str | None = None) -> bool:
        existing = self.get_roadmap_item(item_id)
        if existing is None:
            return False
        if existing.is_event:
            self._try_calendar_unsync(existing, user_id)
        return self.state_store.delete(ROADMAP_TABLE, {"id": item_id}) > 0

    def _try_calendar_sync(self, item: RoadmapItem, user_id: str | None) -> None:
        if self.sync_engine is None:
            return
        try:
            self.sync_engine.sync_roadmap_item(item, user_id)
        except Exception:
            logger.exception("Calendar sync failed for roadmap item %s", item.id)

    def _try_calendar_unsync(self, item: RoadmapItem, user_id: str | None) -> None:
        if self.sync_engine is None or not user_id:
            return
        try:
            self.sync_engine.unsync_roadmap_item(user_id, item.id)
        except Exception:
            logger.exception("Calendar cleanup failed for roadmap item %s", item.id)
