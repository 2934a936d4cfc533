import json
import logging
import tempfile
import unittest
from pathlib import Path

from shardflip.core.logger import JsonFormatter, PlainFormatter, setup_logger


def make_record(**extra):
    record = logging.LogRecord("shardflip.ledger", logging.INFO, __file__, 1, "Bet settled", (), None)
    record.__dict__.update(extra)
    return record


class TestFormatters(unittest.TestCase):
    def test_json_formatter_includes_extra_context(self):
        data = json.loads(JsonFormatter().format(make_record(player="0xalice", stake=100)))
        self.assertEqual(data["message"], "Bet settled")
        self.assertEqual(data["level"], "INFO")
        self.assertEqual(data["player"], "0xalice")
        self.assertEqual(data["stake"], 100)

    def test_plain_formatter_appends_key_values(self):
        line = PlainFormatter().format(make_record(index=7))
        self.assertIn("shardflip.ledger", line)
        self.assertTrue(line.endswith("Bet settled index=7"))


class TestSetupLogger(unittest.TestCase):
    def test_file_logging_and_handler_replacement(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "logs" / "app.log"
            logger = setup_logger("shardflip-test", log_to_file=True, log_file_path=path)
            logger = setup_logger("shardflip-test", log_to_file=True, log_file_path=path)
            self.assertEqual(len(logger.handlers), 2)

            logger.warning("Pool low", extra={"pool": 5})
            for handler in logger.handlers:
                handler.flush()
            self.assertIn("Pool low pool=5", path.read_text())

            for handler in list(logger.handlers):
                logger.removeHandler(handler)
                handler.close()


if __name__ == "__main__":
    unittest.main()
