import tempfile
import unittest
from pathlib import Path
from unittest import mock

from railsync.config_manager import ConfigManager
from railsync.models import ProjectSyncSettings, TrackSyncSettings
from railsync.propagation import BulkPropagator
from railsync.roadmap import RoadmapService
from railsync.settings_store import SettingsStore
from railsync.state_store import StateStore
from railsync.sync_engine import CalendarSyncEngine


class BulkPropagatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        base = Path(self.temp_dir.name)
        self.config_manager = ConfigManager(str(base / "config.yaml"))
        self.state_store = StateStore(str(base / "state.db"))
        self.settings = SettingsStore(self.state_store)
        roadmap = RoadmapService(self.state_store)
        self.engine = CalendarSyncEngine(self.config_manager, self.state_store, self.settings, roadmap)
        self.propagator = BulkPropagator(self.engine)

        roadmap.create_project("Garden", project_id="p1")
        self.state_store.insert("household_members", {"household_id": "h1", "user_id": "u1", "status": "accepted"})
        items = [
            {"id": "e1", "track_id": "t1", "type": "event", "start_date": "2026-04-01"},
            {"id": "e2", "track_id": "t1", "subtrack_id": "s1", "type": "event", "start_date": "2026-04-02"},
            {"id": "e3", "track_id": "t2", "type": "event", "start_date": "2026-04-03"},
            {"id": "e4", "track_id": "t2", "type": "event", "start_date": None},
            {"id": "k1", "track_id": "t1", "type": "task", "start_date": "2026-04-01"},
        ]
        for item in items:
            self.state_store.insert("roadmap_items", {"master_project_id": "p1", "title": item["id"], **item})
        self.state_store.insert(
            "roadmap_items",
            {"id": "x1", "master_project_id": "p2", "type": "event", "title": "x1", "start_date": "2026-04-01"},
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def enable_project(self, enabled: bool = True) -> None:
        self.settings.upsert_project_settings(
            ProjectSyncSettings(user_id="u1", project_id="p1", sync_enabled=enabled, inherit_from_global=False)
        )

    def test_project_counts(self) -> None:
        self.enable_project()
        result = self.propagator.bulk_sync_project_roadmap_events("u1", "p1")

        self.assertEqual(result.scanned_count, 4)
        self.assertEqual(result.synced_count, 3)
        self.assertEqual(result.skipped_count, 1)
        self.assertEqual(result.unsynced_count, 0)
        self.assertEqual(result.errors_count, 0)
        self.assertEqual(len(self.state_store.select("calendar_events")), 3)

        self.enable_project(enabled=False)
        reverted = self.propagator.bulk_sync_project_roadmap_events("u1", "p1")
        self.assertEqual(reverted.unsynced_count, 3)
        self.assertEqual(reverted.skipped_count, 1)
        self.assertEqual(self.state_store.select("calendar_events"), [])

        untouched = self.propagator.bulk_sync_project_roadmap_events("u1", "p1")
        self.assertEqual(untouched.skipped_count, 4)

    def test_track_and_subtrack_scope(self) -> None:
        self.settings.upsert_track_settings(
            TrackSyncSettings(user_id="u1", project_id="p1", track_id="t1", sync_enabled=True, inherit_from_project=False)
        )
        track = self.propagator.bulk_sync_track_roadmap_events("u1", "p1", "t1")
        self.assertEqual(track.scanned_count, 2)
        self.assertEqual(track.synced_count, 2)

        subtrack = self.propagator.bulk_sync_subtrack_roadmap_events("u1", "p1", "t1", "s1")
        self.assertEqual(subtrack.scanned_count, 1)
        self.assertEqual(subtrack.synced_count, 1)

    def test_track_scope_stays_inside_project(self) -> None:
        self.state_store.insert(
            "roadmap_items",
            {
                "id": "y1",
                "master_project_id": "p2",
                "track_id": "t1",
                "subtrack_id": "s1",
                "type": "event",
                "title": "y1",
                "start_date": "2026-04-05",
            },
        )
        self.enable_project()

        track = self.propagator.bulk_sync_track_roadmap_events("u1", "p1", "t1")
        subtrack = self.propagator.bulk_sync_subtrack_roadmap_events("u1", "p1", "t1", "s1")

        self.assertEqual(track.scanned_count, 2)
        self.assertEqual(subtrack.scanned_count, 1)
        synced_ids = {row["source_entity_id"] for row in self.state_store.select("calendar_events")}
        self.assertNotIn("y1", synced_ids)

    def test_failing_event_does_not_stop_the_run(self) -> None:
        self.enable_project()
        original_resolve = self.engine.resolve

        def flaky_resolve(user_id, context):
            if context.event_id == "e2":
                raise RuntimeError("settings lookup timed out")
            return original_resolve(user_id, context)

        with mock.patch.object(self.engine, "resolve", side_effect=flaky_resolve):
            result = self.propagator.bulk_sync_project_roadmap_events("u1", "p1")

        self.assertEqual(result.synced_count, 2)
        self.assertEqual(result.errors_count, 1)
        self.assertEqual(result.errors[0].event_id, "e2")
        self.assertEqual(result.errors[0].reason, "settings lookup timed out")

    def test_error_results_are_counted_as_errors(self) -> None:
        self.enable_project()
        self.state_store.delete("household_members", {"user_id": "u1"})
        result = self.propagator.bulk_sync_project_roadmap_events("u1", "p1")
        self.assertEqual(result.synced_count, 0)
        self.assertEqual(result.errors_count, 3)
        self.assertEqual({error.reason for error in result.errors}, {"No household_id"})

    def test_pauses_between_batches(self) -> None:
        self.enable_project()
        self.config_manager.update({"sync": {"batch_size": 2, "batch_pause_seconds": 0.25}})
        with mock.patch("railsync.propagation.time.sleep") as sleep:
            self.propagator.bulk_sync_project_roadmap_events("u1", "p1")
        sleep.assert_called_once_with(0.25)

    def test_run_is_recorded_in_activity_log(self) -> None:
        self.enable_project()
        self.propagator.bulk_sync_project_roadmap_events("u1", "p1")
        events = self.state_store.recent_activity(limit=1, action="bulk_sync")
        self.assertEqual(events[0]["entity_id"], "p1")
        self.assertEqual(events[0]["details"]["scope"], "project p1")
        self.assertEqual(events[0]["details"]["synced_count"], 3)


if __name__ == "__main__":
    unittest.main()
