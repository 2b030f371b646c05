"""Tests for the daily maintenance window."""

import unittest
from datetime import datetime, timezone

from ingestflow.config import MaintenanceConfig
from ingestflow.errors import ConfigError
from ingestflow.maintenance import MaintenanceWindow, parse_time_of_day


def utc(hour, minute):
    return datetime(2026, 4, 14, hour, minute, tzinfo=timezone.utc)


class TestMaintenanceWindow(unittest.TestCase):
    def test_same_day_window_is_inclusive(self):
        window = MaintenanceWindow("01:00", "02:00")
        self.assertFalse(window.contains(utc(0, 59)))
        self.assertTrue(window.contains(utc(1, 0)))
        self.assertTrue(window.contains(utc(2, 0)))
        self.assertTrue(window.contains(utc(2, 0).replace(second=59)))
        self.assertFalse(window.contains(utc(2, 1)))

    def test_overnight_window_wraps(self):
        """A 23:00-01:00 window covers both sides of midnight."""
        window = MaintenanceWindow("23:00", "01:00")
        self.assertTrue(window.contains(utc(23, 30)))
        self.assertTrue(window.contains(utc(0, 30)))
        self.assertTrue(window.contains(utc(1, 0)))
        self.assertFalse(window.contains(utc(12, 0)))
        self.assertFalse(window.contains(utc(22, 59)))

    def test_window_uses_its_timezone(self):
        """Bounds are read on the wall clock of the configured zone."""
        window = MaintenanceWindow.from_config(MaintenanceConfig(enabled=True, start="02:00", end="03:00", timezone="Europe/Berlin"))
        # 00:30 UTC is 02:30 in Berlin during summer time.
        self.assertTrue(window.contains(utc(0, 30)))
        self.assertFalse(window.contains(utc(2, 30)))

    def test_naive_datetime_is_utc(self):
        window = MaintenanceWindow("01:00", "02:00")
        self.assertTrue(window.contains(datetime(2026, 4, 14, 1, 30)))

    def test_parse_time_of_day(self):
        self.assertEqual(parse_time_of_day("07:05").hour, 7)
        for bad in ("7", "25:00", "aa:bb"):
            with self.subTest(value=bad):
                with self.assertRaises(ConfigError):
                    parse_time_of_day(bad)


if __name__ == "__main__":
    unittest.main()
