import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from consilium.config import DEFAULT_SUMMARY_PROMPT, Config, _deep_merge, load_config


class ConfigTests(unittest.TestCase):
    def test_deep_merge(self):
        merged = _deep_merge({"a": {"b": 1, "c": 2}, "d": 1}, {"a": {"c": 3}, "e": 4})
        self.assertEqual(merged, {"a": {"b": 1, "c": 3}, "d": 1, "e": 4})

    def test_defaults_loaded(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config = Config(load_config(Path(tmpdir) / "absent.yaml"))
        self.assertEqual(config.settings["max_rounds_without_elimination"], 3)
        self.assertEqual(config.settings["summary_prompt"], DEFAULT_SUMMARY_PROMPT)
        self.assertEqual(config.chunk_max_chars, 800)
        self.assertTrue(config.doctors)

    def test_user_file_and_env_override(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            user = Path(tmpdir) / "config.yaml"
            user.write_text("consultation:\n  max_rounds_without_elimination: 5\n")
            env = {
                "CONSILIUM_DATA_DIR": tmpdir,
                "CONSILIUM_TURN_ORDER": "fixed",
                "CONSILIUM_CALL_TIMEOUT": "7.5",
                "CONSILIUM_PORT": "not-a-port",
            }
            with patch.dict(os.environ, env):
                config = Config(load_config(user))
        self.assertEqual(config.data_dir, Path(tmpdir))
        self.assertEqual(config.settings["turn_order"], "fixed")
        self.assertEqual(config.settings["max_rounds_without_elimination"], 5)
        self.assertEqual(config.call_timeout_seconds, 7.5)
        self.assertEqual(config.server.get("port"), 8099)

    def test_empty_config(self):
        config = Config({})
        self.assertEqual(config.call_timeout_seconds, 60.0)
        self.assertEqual(config.settings["turn_order"], "random")
        self.assertEqual(config.doctors, [])


if __name__ == "__main__":
    unittest.main()
