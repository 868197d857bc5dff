import tempfile
import unittest
from pathlib import Path

from railsync.models import (
    EventSyncSettings,
    GlobalSyncSettings,
    ProjectSyncSettings,
    SubtrackSyncSettings,
    TrackSyncSettings,
)
from railsync.settings_store import SettingsStore
from railsync.state_store import StateStore


class SettingsStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = SettingsStore(StateStore(str(Path(self.temp_dir.name) / "state.db")))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_missing_settings_are_not_created_on_read(self) -> None:
        self.assertIsNone(self.store.get_global_settings("u1"))
        self.assertIsNone(self.store.get_project_settings("u1", "p1"))
        self.assertIsNone(self.store.get_track_settings("u1", "p1", "t1"))
        self.assertIsNone(self.store.get_subtrack_settings("u1", "p1", "t1", "s1"))
        self.assertIsNone(self.store.get_event_settings("u1", "p1", "e1", "roadmap_event"))
        self.assertIsNone(self.store.get_global_settings("u1"))

    def test_upsert_is_idempotent_per_natural_key(self) -> None:
        first = self.store.upsert_project_settings(
            ProjectSyncSettings(user_id="u1", project_id="p1", sync_enabled=True, inherit_from_global=False)
        )
        second = self.store.upsert_project_settings(
            ProjectSyncSettings(user_id="u1", project_id="p1", sync_enabled=False, inherit_from_global=False)
        )
        self.assertEqual(first.id, second.id)
        self.assertFalse(second.sync_enabled)
        self.assertFalse(second.inherit_from_global)

        other_user = self.store.upsert_project_settings(ProjectSyncSettings(user_id="u2", project_id="p1"))
        self.assertNotEqual(other_user.id, first.id)

    def test_global_roundtrip_and_delete(self) -> None:
        stored = self.store.upsert_global_settings(
            GlobalSyncSettings(user_id="u1", sync_enabled=True, target_calendar_type="Shared", target_space_id="sp")
        )
        self.assertEqual(stored.target_calendar_type, "shared")
        self.assertTrue(stored.sync_enabled)
        self.assertTrue(self.store.delete_global_settings("u1"))
        self.assertFalse(self.store.delete_global_settings("u1"))
        self.assertIsNone(self.store.get_global_settings("u1"))

    def test_invalid_target_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.store.upsert_track_settings(
                TrackSyncSettings(user_id="u1", project_id="p1", track_id="t1", target_calendar_type="team")
            )
        with self.assertRaises(ValueError):
            self.store.upsert_event_settings(
                EventSyncSettings(user_id="u1", project_id="p1", event_id="e1", entity_type="habit")
            )

    def test_track_and_subtrack_listing(self) -> None:
        self.store.upsert_track_settings(TrackSyncSettings(user_id="u1", project_id="p1", track_id="t1"))
        self.store.upsert_track_settings(TrackSyncSettings(user_id="u1", project_id="p1", track_id="t2"))
        self.store.upsert_track_settings(TrackSyncSettings(user_id="u1", project_id="p2", track_id="t3"))
        self.store.upsert_subtrack_settings(
            SubtrackSyncSettings(user_id="u1", project_id="p1", track_id="t1", subtrack_id="s1")
        )

        tracks = self.store.list_track_settings_for_project("u1", "p1")
        self.assertEqual(sorted(item.track_id for item in tracks), ["t1", "t2"])
        subtracks = self.store.list_subtrack_settings_for_track("u1", "p1", "t1")
        self.assertEqual([item.subtrack_id for item in subtracks], ["s1"])
        self.assertTrue(self.store.delete_subtrack_settings("u1", "p1", "t1", "s1"))
        self.assertTrue(self.store.delete_track_settings("u1", "p1", "t2"))
        self.assertEqual(len(self.store.list_track_settings_for_project("u1", "p1")), 1)

    def test_event_settings_are_keyed_by_entity_type(self) -> None:
        self.store.upsert_event_settings(
            EventSyncSettings(
                user_id="u1",
                project_id="p1",
                event_id="e1",
                entity_type="roadmap_event",
                sync_enabled=True,
                inherit_from_track=False,
            )
        )
        self.store.upsert_event_settings(
            EventSyncSettings(user_id="u1", project_id="p1", event_id="e1", entity_type="task")
        )

        roadmap = self.store.get_event_settings("u1", "p1", "e1", "roadmap_event")
        self.assertTrue(roadmap.sync_enabled)
        self.assertIs(roadmap.inherit_from_track, False)
        self.assertIsNone(roadmap.inherit_from_subtrack)
        self.assertFalse(self.store.get_event_settings("u1", "p1", "e1", "task").sync_enabled)
        self.assertEqual(len(self.store.list_event_settings_for_project("u1", "p1")), 2)

        self.assertTrue(self.store.delete_event_settings("u1", "p1", "e1", "task"))
        self.assertIsNone(self.store.get_event_settings("u1", "p1", "e1", "task"))


if __name__ == "__main__":
    unittest.main()
