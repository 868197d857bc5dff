import tempfile
import unittest
from pathlib import Path
from unittest import mock

from railsync.models import LegacyRoadmapItem, RoadmapEvent, RoadmapTask
from railsync.roadmap import RoadmapService, roadmap_item_from_row
from railsync.state_store import StateStore


class RoadmapItemMappingTests(unittest.TestCase):
    def test_type_selects_variant(self) -> None:
        event = roadmap_item_from_row({"id": "1", "type": "event", "start_date": "2026-05-01"})
        task = roadmap_item_from_row({"id": "2", "type": "task"})
        legacy = roadmap_item_from_row({"id": "3", "type": "milestone", "metadata": "oops"})

        self.assertIsInstance(event, RoadmapEvent)
        self.assertTrue(event.is_event)
        self.assertIsInstance(task, RoadmapTask)
        self.assertFalse(task.is_event)
        self.assertIsInstance(legacy, LegacyRoadmapItem)
        self.assertEqual(legacy.metadata, {})
        self.assertEqual(event.to_dict()["kind"], "event")
        self.assertEqual(event.to_dict()["start_date"], "2026-05-01")


class RoadmapServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.service = RoadmapService(StateStore(str(Path(self.temp_dir.name) / "state.db")))
        self.sync_engine = mock.Mock()
        self.service.attach_sync_engine(self.sync_engine)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_project_name_lookup(self) -> None:
        self.service.create_project("Garden", project_id="p1")
        self.assertEqual(self.service.get_project_name("p1"), "Garden")
        self.assertIsNone(self.service.get_project_name("missing"))

    def test_create_runs_sync_hook(self) -> None:
        created = self.service.create_roadmap_item(
            RoadmapEvent(id="", master_project_id="p1", type="event", title="Harvest", start_date=None),
            user_id="u1",
        )
        self.assertTrue(created.id)
        self.sync_engine.sync_roadmap_item.assert_called_once_with(created, "u1")

    def test_sync_failure_does_not_fail_mutation(self) -> None:
        self.sync_engine.sync_roadmap_item.side_effect = RuntimeError("calendar offline")
        with self.assertLogs("railsync.roadmap", level="ERROR"):
            created = self.service.create_roadmap_item(
                RoadmapEvent(id="", master_project_id="p1", type="event", title="Harvest"),
                user_id="u1",
            )
        self.assertIsNotNone(self.service.get_roadmap_item(created.id))

        with self.assertLogs("railsync.roadmap", level="ERROR"):
            updated = self.service.update_roadmap_item(created.id, {"title": "Big harvest"}, user_id="u1")
        self.assertEqual(updated.title, "Big harvest")

    def test_update_validates_fields(self) -> None:
        created = self.service.create_roadmap_item(RoadmapTask(id="", master_project_id="p1", title="Weed"))
        with self.assertRaises(ValueError):
            self.service.update_roadmap_item(created.id, {"master_project_id": "p2"})
        with self.assertRaises(ValueError):
            self.service.update_roadmap_item(created.id, {"start_date": "2026-05-02", "end_date": "2026-05-01"})
        self.assertIsNone(self.service.update_roadmap_item("missing", {"title": "x"}))

    def test_changing_type_changes_variant(self) -> None:
        created = self.service.create_roadmap_item(RoadmapTask(id="", master_project_id="p1", title="Weed"))
        updated = self.service.update_roadmap_item(created.id, {"type": "event", "start_date": "2026-05-01"})
        self.assertIsInstance(updated, RoadmapEvent)

    def test_listing_by_track_and_subtrack(self) -> None:
        for item_id, track_id, subtrack_id, start in (
            ("a", "t1", None, "2026-05-03"),
            ("b", "t1", "s1", "2026-05-01"),
            ("c", "t2", None, "2026-05-02"),
        ):
            self.service.state_store.insert(
                "roadmap_items",
                {
                    "id": item_id,
                    "master_project_id": "p1",
                    "track_id": track_id,
                    "subtrack_id": subtrack_id,
                    "title": item_id,
                    "start_date": start,
                },
            )
        self.assertEqual([item.id for item in self.service.get_roadmap_items_by_project("p1")], ["b", "c", "a"])
        self.assertEqual([item.id for item in self.service.get_roadmap_items_by_track("t1")], ["b", "a"])
        self.assertEqual([item.id for item in self.service.get_roadmap_items_by_subtrack("s1")], ["b"])

    def test_retyping_event_unsyncs_it(self) -> None:
        created = self.service.create_roadmap_item(
            RoadmapEvent(id="", master_project_id="p1", type="event", title="Harvest", start_date=None),
            user_id="u1",
        )
        self.sync_engine.reset_mock()

        updated = self.service.update_roadmap_item(created.id, {"type": "task"}, user_id="u1")

        self.assertIsInstance(updated, RoadmapTask)
        self.sync_engine.unsync_roadmap_item.assert_called_once_with("u1", created.id)
        self.sync_engine.sync_roadmap_item.assert_not_called()

    def test_retyping_task_does_not_unsync(self) -> None:
        created = self.service.create_roadmap_item(RoadmapTask(id="", master_project_id="p1", title="Weed"))
        self.service.update_roadmap_item(created.id, {"type": "note"}, user_id="u1")
        self.sync_engine.unsync_roadmap_item.assert_not_called()

    def test_delete_event_unsyncs_first(self) -> None:
        created = self.service.create_roadmap_item(
            RoadmapEvent(id="", master_project_id="p1", type="event", title="Harvest"),
        )
        self.assertTrue(self.service.delete_roadmap_item(created.id, user_id="u1"))
        self.sync_engine.unsync_roadmap_item.assert_called_once_with("u1", created.id)
        self.assertIsNone(self.service.get_roadmap_item(created.id))
        self.assertFalse(self.service.delete_roadmap_item(created.id, user_id="u1"))


if __name__ == "__main__":
    unittest.main()
