import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from shardflip.config import AppConfig, PROJECT_ROOT, load_config, save_config


class TestConfig(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "config.json"

    def tearDown(self):
        self.tmp.cleanup()

    def test_defaults_without_file(self):
        with patch.dict(os.environ, {}, clear=True):
            config = load_config(self.path)
        self.assertEqual(config.ledger.payout_multiplier, 2)
        self.assertEqual(config.ledger.min_bet, 10**16)
        self.assertEqual(config.ledger.max_bet, 10**19)
        self.assertEqual(config.rate_limit.game_requests, "10/minute")

    def test_file_values_loaded(self):
        self.path.write_text(json.dumps({"ledger": {"owner": "0xboss", "min_bet": 5}}))
        with patch.dict(os.environ, {}, clear=True):
            config = load_config(self.path)
        self.assertEqual(config.ledger.owner, "0xboss")
        self.assertEqual(config.ledger.min_bet, 5)

    def test_environment_overrides_file(self):
        self.path.write_text(json.dumps({"ledger": {"owner": "0xboss"}}))
        env = {
            "LEDGER_OWNER": "0xenv",
            "LEDGER_RANDOMNESS": "commit_reveal",
            "RATE_LIMIT_ENABLED": "false",
            "DB_PATH": "/tmp/elsewhere.db",
        }
        with patch.dict(os.environ, env, clear=True):
            config = load_config(self.path)
        self.assertEqual(config.ledger.owner, "0xenv")
        self.assertEqual(config.ledger.randomness, "commit_reveal")
        self.assertFalse(config.rate_limit.enabled)
        self.assertEqual(config.paths.get_db_path(), Path("/tmp/elsewhere.db"))

    def test_relative_paths_resolve_against_project_root(self):
        config = AppConfig()
        self.assertEqual(config.paths.get_db_path(), PROJECT_ROOT / "data" / "shardflip.db")

    def test_save_then_load(self):
        config = AppConfig()
        config.ledger.owner = "0xsaved"
        save_config(config, self.path)
        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(load_config(self.path).ledger.owner, "0xsaved")


if __name__ == "__main__":
    unittest.main()
