import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from railsync.config_manager import ConfigManager
from railsync.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_missing_file_is_created_with_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path))

            self.assertTrue(config_path.exists())
            config = manager.load()
            self.assertEqual(config.sync.batch_size, 25)
            self.assertEqual(config.sync.unknown_project_name, "Unknown Project")
            self.assertTrue(config.sync.propagate_on_settings_change)
            self.assertEqual(config.logging.level, "INFO")

    def test_update_deep_merges_sections(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"sync": {"batch_size": 5}})
            config = manager.update({"logging": {"level": "debug"}})

            self.assertEqual(config.sync.batch_size, 5)
            self.assertEqual(config.sync.default_event_color, "blue")
            self.assertEqual(config.logging.level, "DEBUG")
            self.assertEqual(manager.load().sync.batch_size, 5)

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "sync": {"batch_size": 10, "unknown_project_name": "Untitled"},
                    "logging": {"level": "WARNING"},
                }
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            self.assertTrue(config_path.exists())
            self.assertFalse(config_path.with_suffix(".yaml.tmp").exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["sync"]["batch_size"], 10)
            self.assertEqual(data["sync"]["unknown_project_name"], "Untitled")
            self.assertEqual(data["logging"]["level"], "WARNING")

    def test_save_reraises_other_os_errors(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))

            def replace_side_effect(self: Path, target: Path) -> Path:
                raise OSError(errno.EACCES, "Permission denied")

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                with self.assertRaises(OSError):
                    manager.save(AppConfig())


if __name__ == "__main__":
    unittest.main()
