from __future__ import annotations

import logging
from typing import Any

from railsync.config_manager import ConfigManager
from railsync.models import (
    BranchResult,
    ExecutionResult,
    ResolutionContext,
    ResolutionResult,
    RoadmapItem,
)
from railsync.resolver import resolve_effective_calendar_sync
from railsync.roadmap import RoadmapService
from railsync.settings_store import SettingsStore
from railsync.shared_projection import SharedProjectionSync, event_time_bounds
from railsync.state_store import StateStore


logger = logging.getLogger(__name__)

CALENDAR_EVENTS_TABLE = "calendar_events"
HOUSEHOLD_MEMBERS_TABLE = "household_members"
SUPPORTED_ENTITY_TYPES = {"roadmap_event"}


def _combine_both(personal: BranchResult, shared: BranchResult) -> ExecutionResult:
    executed = personal.executed or shared.executed
    errors = [error for error in (personal.error, shared.error) if error]
    return ExecutionResult(
        executed=executed,
        action="updated" if executed else "noop",
        reason=f"Personal: {personal.reason}, Shared: {shared.reason}",
        error="; ".join(errors) if errors and not executed else None,
        calendar_event_id=personal.calendar_event_id,
        personal=personal,
        shared=shared,
    )


def _from_branch(branch: BranchResult, *, personal: bool) -> ExecutionResult:
    return ExecutionResult(
        executed=branch.executed,
        action=branch.action,
        reason=branch.reason,
        error=branch.error,
        calendar_event_id=branch.calendar_event_id,
        personal=branch if personal else None,
        shared=None if personal else branch,
    )


class CalendarSyncEngine:
    """Single writer for calendar rows derived from roadmap events.

    Every step is a find-then-write against the store, so repeating a call
    with unchanged inputs leaves the stored state unchanged.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        settings_store: SettingsStore,
        roadmap: RoadmapService,
        shared_projection: SharedProjectionSync | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.settings_store = settings_store
        self.roadmap = roadmap
        self.shared_projection = shared_projection or SharedProjectionSync(state_store)

    def resolve(self, user_id: str, context: ResolutionContext) -> ResolutionResult:
        return resolve_effective_calendar_sync(self.settings_store, user_id, context)

    def get_user_household_id(self, user_id: str) -> str | None:
        row = self.state_store.select_one(HOUSEHOLD_MEMBERS_TABLE, {"user_id": user_id, "status": "accepted"})
        if row is None:
            return None
        return str(row["household_id"])

    def find_personal_calendar_event(self, user_id: str, event_id: str, entity_type: str) -> dict[str, Any] | None:
        return self.state_store.select_one(
            CALENDAR_EVENTS_TABLE,
            {"source_type": entity_type, "source_entity_id": event_id, "created_by": user_id},
        )

    def delete_personal_calendar_event(self, user_id: str, event_id: str, entity_type: str) -> bool:
        deleted = self.state_store.delete(
            CALENDAR_EVENTS_TABLE,
            {"source_type": entity_type, "source_entity_id": event_id, "created_by": user_id},
        )
        return deleted > 0

    def _upsert_personal_calendar_event(
        self,
        user_id: str,
        event: RoadmapItem,
        project_id: str,
        track_id: str | None,
        subtrack_id: str | None,
    ) -> BranchResult:
        household_id = self.get_user_household_id(user_id)
        if not household_id:
            logger.warning("User %s does not belong to a household, personal sync blocked", user_id)
            return BranchResult(
                executed=False,
                action="noop",
                reason="User does not belong to a household",
                error="No household_id",
            )
        try:
            config = self.config_manager.load()
            start_at, end_at = event_time_bounds(event)
            values = {
                "household_id": household_id,
                "created_by": user_id,
                "title": event.title,
                "description": event.description or "",
                "start_at": start_at,
                "end_at": end_at,
                "all_day": True,
                "color": event.metadata.get("color") or config.sync.default_event_color,
                "source_type": "roadmap_event",
                "source_entity_id": event.id,
                "source_project_id": project_id,
                "source_track_id": track_id,
                "source_subtrack_id": subtrack_id,
            }
            existing = self.find_personal_calendar_event(user_id, event.id, "roadmap_event")
            if existing:
                self.state_store.update(CALENDAR_EVENTS_TABLE, values, {"id": existing["id"]})
                calendar_event_id = str(existing["id"])
                action = "updated"
            else:
                calendar_event_id = str(self.state_store.insert(CALENDAR_EVENTS_TABLE, values)["id"])
                action = "created"
        except Exception as exc:
            logger.exception("Personal calendar write failed for event %s", event.id)
            return BranchResult(executed=False, action="noop", reason="Personal calendar write failed", error=str(exc))
        logger.info("Personal sync for event %s: %s calendar event %s", event.id, action, calendar_event_id)
        return BranchResult(
            executed=True,
            action=action,
            reason=f"{action} personal calendar event",
            calendar_event_id=calendar_event_id,
        )

    def _remove_projections(self, user_id: str, event_id: str, entity_type: str, target_space_id: str | None) -> bool:
        removed_personal = self.delete_personal_calendar_event(user_id, event_id, entity_type)
        shared = self.shared_projection.remove_shared_projection(user_id, event_id, target_space_id)
        if shared.error:
            raise RuntimeError(f"Failed to revoke shared projection: {shared.error}")
        return removed_personal or shared.executed

    def execute_calendar_sync_for_event(
        self,
        user_id: str,
        event_id: str,
        entity_type: str,
        project_id: str,
        project_name: str,
        track_id: str | None = None,
        subtrack_id: str | None = None,
    ) -> ExecutionResult:
        """Bring the calendar rows derived from one event in line with the
        effective sync settings. Never raises; failures come back as
        ``executed=False`` with ``error`` set."""
        try:
            result = self._execute(user_id, event_id, entity_type, project_id, project_name, track_id, subtrack_id)
        except Exception as exc:
            logger.exception("Calendar sync failed for event %s (%s)", event_id, entity_type)
            result = ExecutionResult.noop("Execution failed", error=str(exc))
        self._record_activity(user_id, event_id, entity_type, project_id, result)
        return result

    def _execute(
        self,
        user_id: str,
        event_id: str,
        entity_type: str,
        project_id: str,
        project_name: str,
        track_id: str | None,
        subtrack_id: str | None,
    ) -> ExecutionResult:
        effective = self.resolve(
            user_id,
            ResolutionContext(
                project_id=project_id,
                track_id=track_id,
                subtrack_id=subtrack_id,
                event_id=event_id,
                entity_type=entity_type,
            ),
        )
        logger.info(
            "Event %s (%s) resolved: should_sync=%s target=%s source=%s",
            event_id,
            entity_type,
            effective.should_sync,
            effective.target_calendar,
            effective.source,
        )

        if not effective.should_sync:
            reason = f"Sync disabled (source: {effective.source})"
            if self._remove_projections(user_id, event_id, entity_type, effective.target_space_id):
                logger.info("Event %s unsynced: %s", event_id, reason)
                return ExecutionResult(executed=True, action="deleted", reason=reason)
            return ExecutionResult.noop(reason)

        if effective.includes_shared and not effective.target_space_id:
            return ExecutionResult.noop("Shared/Both target requires target_space_id")

        if entity_type not in SUPPORTED_ENTITY_TYPES:
            return ExecutionResult.noop(f"Entity type '{entity_type}' not supported")

        event = self.roadmap.get_roadmap_item(event_id)
        if event is None:
            return ExecutionResult.noop("Event not found")
        if event.start_date is None:
            # An undated event cannot be projected anywhere.
            self._remove_projections(user_id, event_id, entity_type, None)
            return ExecutionResult.noop("Event has no start date")

        effective_track_id = track_id or event.track_id
        effective_subtrack_id = subtrack_id or event.subtrack_id

        personal: BranchResult | None = None
        if effective.includes_personal:
            personal = self._upsert_personal_calendar_event(
                user_id, event, project_id, effective_track_id, effective_subtrack_id
            )

        shared: BranchResult | None = None
        if effective.includes_shared:
            shared = self.shared_projection.ensure_shared_projection(
                user_id,
                event,
                project_id,
                project_name,
                str(effective.target_space_id),
                effective_track_id,
                effective_subtrack_id,
            )

        if personal is not None and shared is not None:
            return _combine_both(personal, shared)
        if shared is not None:
            return _from_branch(shared, personal=False)
        if personal is not None:
            return _from_branch(personal, personal=True)
        return ExecutionResult.noop("No sync executed")

    def sync_roadmap_item(self, item: RoadmapItem, user_id: str | None) -> ExecutionResult | None:
        """Sync hook for roadmap create/update. Returns None when there is
        nothing to do (no signed-in user, or the item is not an event)."""
        if not user_id:
            logger.info("No authenticated user, skipping calendar sync for roadmap item %s", item.id)
            return None
        if not item.is_event:
            return None
        project_name = self.roadmap.get_project_name(item.master_project_id)
        if project_name is None:
            project_name = self.config_manager.load().sync.unknown_project_name
        return self.execute_calendar_sync_for_event(
            user_id,
            item.id,
            "roadmap_event",
            item.master_project_id,
            project_name,
            item.track_id,
            item.subtrack_id,
        )

    def unsync_roadmap_item(self, user_id: str, event_id: str) -> ExecutionResult:
        removed = self._remove_projections(user_id, event_id, "roadmap_event", None)
        result = (
            ExecutionResult(executed=True, action="deleted", reason="Roadmap item deleted")
            if removed
            else ExecutionResult.noop("Nothing to remove")
        )
        self._record_activity(user_id, event_id, "roadmap_event", None, result)
        return result

    def _record_activity(
        self,
        user_id: str,
        event_id: str,
        entity_type: str,
        project_id: str | None,
        result: ExecutionResult,
    ) -> None:
        try:
            self.state_store.record_activity(
                user_id=user_id,
                entity_id=event_id,
                action="calendar_sync",
                details={"entity_type": entity_type, "project_id": project_id, **result.to_dict()},
            )
        except Exception:
            logger.warning("Could not write activity log for event %s", event_id, exc_info=True)
