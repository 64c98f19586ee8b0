import errno
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from feedsync.config_manager import ConfigManager
from feedsync.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_creates_default_config(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path))
            self.assertTrue(config_path.exists())
            self.assertEqual(manager.load().sync.stale_after_hours, 24)

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict({"user_id": "u1", "fetch": {"timeout_seconds": 10}})

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            self.assertTrue(config_path.exists())
            self.assertFalse(Path(str(config_path) + ".tmp").exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["user_id"], "u1")
            self.assertEqual(data["fetch"]["timeout_seconds"], 10)

    def test_update_merges_nested_values(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"sync": {"max_retries": 4}})
            updated = manager.update({"sync": {"stale_after_hours": 12}})
            self.assertEqual(updated.sync.max_retries, 4)
            self.assertEqual(updated.sync.stale_after_hours, 12)
            self.assertEqual(manager.load().sync.max_retries, 4)

    def test_environment_overrides_are_not_persisted(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            with mock.patch.dict(os.environ, {"FEEDSYNC_USER_ID": "env-user"}):
                self.assertEqual(manager.load().user_id, "env-user")
                manager.update({"sync": {"max_retries": 1}})
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["user_id"], "")


if __name__ == "__main__":
    unittest.main()
