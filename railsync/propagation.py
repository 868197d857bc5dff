from __future__ import annotations

import logging
import time
from typing import Iterable

from railsync.models import BulkSyncError, BulkSyncResult, ResolutionContext, RoadmapItem
from railsync.sync_engine import CalendarSyncEngine


logger = logging.getLogger(__name__)


def _batches(items: list[RoadmapItem], size: int) -> Iterable[list[RoadmapItem]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class BulkPropagator:
    """Re-applies effective sync settings to every roadmap event under a
    project, track or subtrack.

    Events are processed sequentially in fixed-size batches with a pause
    between batches. A failing event is recorded and the run continues.
    """

    def __init__(self, sync_engine: CalendarSyncEngine) -> None:
        self.sync_engine = sync_engine

    def bulk_sync_project_roadmap_events(self, user_id: str, project_id: str) -> BulkSyncResult:
        items = self.sync_engine.roadmap.get_roadmap_items_by_project(project_id)
        return self._run(user_id, project_id, items, scope=f"project {project_id}")

    def bulk_sync_track_roadmap_events(self, user_id: str, project_id: str, track_id: str) -> BulkSyncResult:
        items = self.sync_engine.roadmap.get_roadmap_items_by_track(track_id, project_id)
        return self._run(user_id, project_id, items, scope=f"track {track_id}")

    def bulk_sync_subtrack_roadmap_events(
        self,
        user_id: str,
        project_id: str,
        track_id: str,
        subtrack_id: str,
    ) -> BulkSyncResult:
        items = self.sync_engine.roadmap.get_roadmap_items_by_subtrack(subtrack_id, project_id, track_id)
        return self._run(user_id, project_id, items, scope=f"subtrack {subtrack_id} (track {track_id})")

    def _run(self, user_id: str, project_id: str, items: list[RoadmapItem], *, scope: str) -> BulkSyncResult:
        config = self.sync_engine.config_manager.load()
        project_name = self.sync_engine.roadmap.get_project_name(project_id) or config.sync.unknown_project_name
        events = [item for item in items if item.is_event]
        logger.info("Bulk sync %s: %d roadmap events", scope, len(events))

        result = BulkSyncResult(scanned_count=len(events))
        batch_size = config.sync.batch_size
        for index, batch in enumerate(_batches(events, batch_size), start=1):
            logger.debug("Bulk sync %s: batch %d (%d events)", scope, index, len(batch))
            for event in batch:
                self._process_event(user_id, event, project_name, result)
            if index * batch_size < len(events):
                time.sleep(config.sync.batch_pause_seconds)

        logger.info(
            "Bulk sync %s complete: synced=%d unsynced=%d skipped=%d errors=%d",
            scope,
            result.synced_count,
            result.unsynced_count,
            result.skipped_count,
            result.errors_count,
        )
        try:
            self.sync_engine.state_store.record_activity(
                user_id=user_id,
                entity_id=project_id,
                action="bulk_sync",
                details={"scope": scope, **result.to_dict()},
            )
        except Exception:
            logger.warning("Could not write activity log for bulk sync %s", scope, exc_info=True)
        return result

    def _process_event(self, user_id: str, event: RoadmapItem, project_name: str, result: BulkSyncResult) -> None:
        if event.start_date is None:
            logger.info("Bulk sync skipped event %s: no start date", event.id)
            result.skipped_count += 1
            return
        try:
            # Resolved up front so a resolver failure is recorded as this event's error.
            decision = self.sync_engine.resolve(
                user_id,
                ResolutionContext(
                    project_id=event.master_project_id,
                    track_id=event.track_id,
                    subtrack_id=event.subtrack_id,
                    event_id=event.id,
                    entity_type="roadmap_event",
                ),
            )
            logger.debug(
                "Bulk sync decision for %s: should_sync=%s target=%s source=%s",
                event.id,
                decision.should_sync,
                decision.target_calendar,
                decision.source,
            )
            outcome = self.sync_engine.execute_calendar_sync_for_event(
                user_id,
                event.id,
                "roadmap_event",
                event.master_project_id,
                project_name,
                event.track_id,
                event.subtrack_id,
            )
        except Exception as exc:
            logger.exception("Bulk sync failed for event %s", event.id)
            result.errors.append(BulkSyncError(event_id=event.id, reason=str(exc)))
            return

        if outcome.executed:
            if outcome.action == "deleted":
                result.unsynced_count += 1
            else:
                result.synced_count += 1
        elif outcome.error:
            result.errors.append(BulkSyncError(event_id=event.id, reason=outcome.error))
        else:
            result.skipped_count += 1
