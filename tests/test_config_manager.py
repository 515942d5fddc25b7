import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from cadence.config_manager import ConfigManager
from cadence.errors import ConfigError
from cadence.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_missing_file_is_created_with_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path))
            self.assertTrue(config_path.exists())
            self.assertEqual(manager.load(), AppConfig())

    def test_update_merges_nested_values(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            updated = manager.update({"series": {"max_occurrences": 52}})
            self.assertEqual(updated.series.max_occurrences, 52)
            self.assertTrue(updated.series.materialize_anchor_occurrence)
            self.assertEqual(manager.load().series.max_occurrences, 52)

    def test_update_rejects_unknown_or_mistyped_keys(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            bad_payloads = [
                ({"series": {"concurrent_writes": True}}, "series.concurrent_writes"),
                ({"caldav": {"password": "x"}}, "caldav"),
                ({"series": {"max_occurrences": "lots"}}, "series.max_occurrences"),
                ({"series": {"max_occurrences": 0}}, "series.max_occurrences"),
                ({"series": {"materialize_anchor_occurrence": "no"}}, "series.materialize_anchor_occurrence"),
                ({"series": 5}, "series"),
            ]
            for payload, key in bad_payloads:
                with self.subTest(key=key):
                    with self.assertRaises(ConfigError) as ctx:
                        manager.update(payload)
                    self.assertEqual(ctx.exception.key, key)
            self.assertEqual(manager.load(), AppConfig())

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {"series": {"materialize_anchor_occurrence": False, "max_occurrences": 90}}
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertFalse(data["series"]["materialize_anchor_occurrence"])
            self.assertEqual(data["series"]["max_occurrences"], 90)
            self.assertFalse(Path(str(config_path) + ".tmp").exists())


if __name__ == "__main__":
    unittest.main()
