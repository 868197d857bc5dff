from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from railsync.models import BranchResult, RoadmapItem, date_to_datetime
from railsync.state_store import StateStore


logger = logging.getLogger(__name__)

CONTEXTS_TABLE = "contexts"
CONTEXT_EVENTS_TABLE = "context_events"
PROJECTIONS_TABLE = "calendar_projections"

SOURCE_TAG = "guardrails"
ACTIVE_PROJECTION_STATUSES = ("accepted", "pending")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def event_time_bounds(event: RoadmapItem) -> tuple[datetime, datetime]:
    """All-day span: start of the start date through end of the end date
    (or of the start date when no end date is set)."""
    start_at = date_to_datetime(event.start_date)
    end_at = date_to_datetime(event.end_date or event.start_date, is_end=True)
    if start_at is None or end_at is None:
        raise ValueError(f"roadmap item {event.id} has no start date")
    return start_at, end_at


class SharedProjectionSync:
    """Projects roadmap events into shared space calendars.

    A per-project context owns one context event per roadmap event; a
    calendar projection links that context event to the target space.
    Projections are revoked, never deleted, and context events are kept.
    """

    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def get_or_create_project_context(self, user_id: str, project_id: str, project_name: str) -> str:
        existing = self.state_store.select_one(
            CONTEXTS_TABLE,
            {"type": "project", "linked_project_id": project_id, "owner_user_id": user_id},
        )
        if existing:
            return str(existing["id"])
        created = self.state_store.insert(
            CONTEXTS_TABLE,
            {
                "type": "project",
                "owner_user_id": user_id,
                "name": project_name,
                "description": f"Guardrails project: {project_name}",
                "linked_project_id": project_id,
                "metadata": {"source": SOURCE_TAG, "project_id": project_id},
            },
        )
        logger.info("Created project context %s for project %s", created["id"], project_id)
        return str(created["id"])

    def _find_context_event(self, context_id: str, user_id: str, event_id: str) -> dict[str, Any] | None:
        return self.state_store.select_one(
            CONTEXT_EVENTS_TABLE,
            {
                "context_id": context_id,
                "created_by": user_id,
                "metadata->>source": SOURCE_TAG,
                "metadata->>roadmap_item_id": event_id,
            },
        )

    def get_or_create_context_event(
        self,
        context_id: str,
        user_id: str,
        event: RoadmapItem,
        project_id: str,
        track_id: str | None = None,
        subtrack_id: str | None = None,
    ) -> str:
        start_at, end_at = event_time_bounds(event)
        existing = self._find_context_event(context_id, user_id, event.id)
        if existing:
            self.state_store.update(
                CONTEXT_EVENTS_TABLE,
                {
                    "title": event.title,
                    "description": event.description or "",
                    "start_at": start_at,
                    "end_at": end_at,
                },
                {"id": existing["id"]},
            )
            return str(existing["id"])
        created = self.state_store.insert(
            CONTEXT_EVENTS_TABLE,
            {
                "context_id": context_id,
                "created_by": user_id,
                "event_type": "milestone",
                "time_scope": "all_day",
                "title": event.title,
                "description": event.description or "",
                "start_at": start_at,
                "end_at": end_at,
                "metadata": {
                    "source": SOURCE_TAG,
                    "roadmap_item_id": event.id,
                    "project_id": project_id,
                    "track_id": track_id,
                    "subtrack_id": subtrack_id,
                },
            },
        )
        return str(created["id"])

    def ensure_shared_projection(
        self,
        user_id: str,
        event: RoadmapItem,
        project_id: str,
        project_name: str,
        target_space_id: str,
        track_id: str | None = None,
        subtrack_id: str | None = None,
    ) -> BranchResult:
        log_prefix = f"Event {event.id} -> space {target_space_id}"
        try:
            context_id = self.get_or_create_project_context(user_id, project_id, project_name)
            context_event_id = self.get_or_create_context_event(
                context_id, user_id, event, project_id, track_id, subtrack_id
            )
            existing = self.state_store.select_one(
                PROJECTIONS_TABLE,
                {"event_id": context_event_id, "target_space_id": target_space_id, "created_by": user_id},
            )
            accepted = {"status": "accepted", "scope": "full", "accepted_at": _utc_now(), "revoked_at": None}
            if existing:
                self.state_store.update(PROJECTIONS_TABLE, accepted, {"id": existing["id"]})
                logger.info("%s: updated projection %s", log_prefix, existing["id"])
                return BranchResult(
                    executed=True,
                    action="updated",
                    reason="Updated existing shared projection",
                    projection_id=str(existing["id"]),
                    context_event_id=context_event_id,
                )
            created = self.state_store.insert(
                PROJECTIONS_TABLE,
                {
                    "event_id": context_event_id,
                    "target_user_id": user_id,
                    "target_space_id": target_space_id,
                    "created_by": user_id,
                    **accepted,
                },
            )
            logger.info("%s: created projection %s", log_prefix, created["id"])
            return BranchResult(
                executed=True,
                action="created",
                reason="Created new shared projection",
                projection_id=str(created["id"]),
                context_event_id=context_event_id,
            )
        except Exception as exc:
            logger.exception("%s: shared projection failed", log_prefix)
            return BranchResult(executed=False, action="noop", reason="Execution failed", error=str(exc))

    def remove_shared_projection(
        self,
        user_id: str,
        event_id: str,
        target_space_id: str | None = None,
    ) -> BranchResult:
        """Revoke active projections of ``event_id``. Without a space, every
        space the event is projected to is revoked."""
        log_prefix = f"Remove event {event_id} -> space {target_space_id or '*'}"
        try:
            context_events = self.state_store.select(
                CONTEXT_EVENTS_TABLE,
                {
                    "created_by": user_id,
                    "metadata->>source": SOURCE_TAG,
                    "metadata->>roadmap_item_id": event_id,
                },
            )
            if not context_events:
                return BranchResult(executed=False, action="noop", reason="No context events found")

            filters: dict[str, Any] = {
                "event_id": [row["id"] for row in context_events],
                "created_by": user_id,
                "status": list(ACTIVE_PROJECTION_STATUSES),
            }
            if target_space_id:
                filters["target_space_id"] = target_space_id
            revoked = self.state_store.update(
                PROJECTIONS_TABLE,
                {"status": "revoked", "revoked_at": _utc_now()},
                filters,
            )
            if revoked == 0:
                return BranchResult(executed=False, action="noop", reason="No active projections found")
            logger.info("%s: revoked %d projection(s)", log_prefix, revoked)
            return BranchResult(executed=True, action="deleted", reason=f"Revoked {revoked} projection(s)")
        except Exception as exc:
            logger.exception("%s: revoke failed", log_prefix)
            return BranchResult(executed=False, action="noop", reason="Execution failed", error=str(exc))
