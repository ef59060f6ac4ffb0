"""Tests for session configuration (zestfuzz/config.py)."""

import dataclasses
import unittest

from zestfuzz.config import SessionConfig, parse_duration


class TestParseDuration(unittest.TestCase):
    def test_forms(self):
        self.assertEqual(parse_duration("45s"), 45.0)
        self.assertEqual(parse_duration("10m"), 600.0)
        self.assertEqual(parse_duration("1h30m"), 5400.0)
        self.assertEqual(parse_duration("1h2m3s"), 3723.0)
        self.assertEqual(parse_duration("2.5"), 2.5)
        self.assertEqual(parse_duration(" 2M "), 120.0)

    def test_rejects_garbage(self):
        for text in ("", "h", "10x", "1m1h"):
            with self.subTest(text=text):
                with self.assertRaises(ValueError):
                    parse_duration(text)


class TestSessionConfig(unittest.TestCase):
    def test_defaults(self):
        config = SessionConfig()
        self.assertEqual(config.engine, "zest")
        self.assertFalse(config.uses_index)
        self.assertIsNone(config.trials)

    def test_is_immutable(self):
        with self.assertRaises(dataclasses.FrozenInstanceError):
            SessionConfig().trials = 5

    def test_zeal_uses_index_unless_blind(self):
        self.assertTrue(SessionConfig(engine="zeal").uses_index)
        self.assertFalse(SessionConfig(engine="zeal", blind=True).uses_index)

    def test_validation(self):
        bad = [
            {"engine": "afl"},
            {"duration": 0},
            {"trials": -1},
            {"run_timeout": 0},
            {"disable_coverage": True},
        ]
        for kwargs in bad:
            with self.subTest(**kwargs):
                with self.assertRaises(ValueError):
                    SessionConfig(**kwargs)
        SessionConfig(disable_coverage=True, blind=True)


if __name__ == "__main__":
    unittest.main()
