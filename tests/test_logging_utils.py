"""Tests for structured log helpers."""

import logging
import os
import tempfile
import unittest
from unittest import mock

from ingestflow.logging_utils import configure_logging, log_event


class TestLogEvent(unittest.TestCase):
    def test_key_value_format(self):
        logger = logging.getLogger("ingestflow.tests.events")
        with self.assertLogs(logger, level="INFO") as captured:
            log_event(logger, logging.INFO, "site_complete", source_id="a", stored=3)
        self.assertEqual(captured.records[0].getMessage(), "event=site_complete source_id=a stored=3")


class TestConfigureLogging(unittest.TestCase):
    """Verify environment-driven logging setup."""

    def setUp(self):
        self._dir = tempfile.TemporaryDirectory()
        root = logging.getLogger()
        self._handlers = list(root.handlers)
        self._level = root.level

    def tearDown(self):
        root = logging.getLogger()
        for handler in list(root.handlers):
            if handler not in self._handlers:
                root.removeHandler(handler)
                handler.close()
        root.setLevel(self._level)
        logging.getLogger("ingestflow.noisy").setLevel(logging.NOTSET)
        self._dir.cleanup()

    def test_level_file_and_overrides(self):
        log_path = os.path.join(self._dir.name, "logs", "ingest.log")
        env = {
            "INGESTFLOW_LOG_LEVEL": "debug",
            "INGESTFLOW_LOG_FILE": log_path,
            "INGESTFLOW_LOG_LEVELS": "ingestflow.noisy=error, junk",
        }
        with mock.patch.dict(os.environ, env):
            logger = configure_logging("ingestflow.tests")
            configure_logging("ingestflow.tests")

        root = logging.getLogger()
        self.assertEqual(logger.name, "ingestflow.tests")
        self.assertEqual(root.level, logging.DEBUG)
        file_handlers = [h for h in root.handlers if getattr(h, "baseFilename", None) == os.path.abspath(log_path)]
        self.assertEqual(len(file_handlers), 1)
        self.assertTrue(os.path.isdir(os.path.dirname(log_path)))
        self.assertEqual(logging.getLogger("ingestflow.noisy").level, logging.ERROR)


if __name__ == "__main__":
    unittest.main()
