import errno
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from plansync.config_manager import ConfigManager, merge_settings
from plansync.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_missing_file_is_created_with_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "conf" / "config.yaml"
            manager = ConfigManager(str(config_path))
            self.assertTrue(config_path.exists())
            config = manager.load()
            self.assertEqual(config.cache.ttl_seconds, 300)
            self.assertEqual(config.cache.lookback_months, 3)
            self.assertEqual(config.cache.lookahead_months, 12)
            self.assertEqual(config.audit.db_path, "data/audit-history.db")

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "caldav": {"base_url": "https://dav.example.com", "username": "u", "password": "p"},
                    "calendars": {"order": ["https://dav.example.com/cal/a/"]},
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
            self.assertEqual(data["caldav"]["base_url"], "https://dav.example.com")
            self.assertEqual(data["calendars"]["order"], ["https://dav.example.com/cal/a/"])

    def test_update_merges_and_keeps_masked_password(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"caldav": {"base_url": "https://dav.example.com", "username": "u", "password": "secret"}})
            config = manager.update({"caldav": {"password": "***"}, "cache": {"ttl_seconds": 60}})
            self.assertEqual(config.caldav.password, "secret")
            self.assertEqual(config.caldav.base_url, "https://dav.example.com")
            self.assertEqual(config.cache.ttl_seconds, 60)
            self.assertEqual(config.cache.lookahead_months, 12)
            self.assertEqual(manager.masked()["caldav"]["password"], "***")

    def test_merge_settings_overlays_nested_sections(self) -> None:
        current = {"cache": {"ttl_seconds": 300, "lookback_months": 3}, "debug": False}
        merged = merge_settings(current, {"cache": {"ttl_seconds": 60}, "debug": True})
        self.assertEqual(merged, {"cache": {"ttl_seconds": 60, "lookback_months": 3}, "debug": True})
        merged["cache"]["lookback_months"] = 9
        self.assertEqual(current["cache"]["lookback_months"], 3)

    def test_log_level_can_come_from_environment(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            with mock.patch.dict(os.environ, {"PLANSYNC_LOG_LEVEL": "debug"}):
                self.assertEqual(manager.load().logging.level, "DEBUG")


if __name__ == "__main__":
    unittest.main()
