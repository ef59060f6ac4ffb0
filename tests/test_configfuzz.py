"""Tests for the configuration-collection pre-round (zestfuzz/configfuzz.py)."""

import random
import unittest
from io import StringIO
from unittest.mock import patch

from zestfuzz import configfuzz
from zestfuzz.configfuzz import ConfigTracker, DefaultConfigCollectionGuidance
from zestfuzz.errors import GuidanceError, PreRoundError, assume
from zestfuzz.harness import Harness
from zestfuzz.orchestrator import run_fuzzing
from zestfuzz.target import FuzzTarget, uint8
from zestfuzz.types import Failure, Success


class TestConfigTracker(unittest.TestCase):
    def test_records_only_during_preround(self):
        tracker = ConfigTracker()
        self.assertEqual(tracker.track("cache.size", 10), 10)
        self.assertEqual(tracker.collected, {})
        tracker.preround = True
        tracker.track("cache.size", 10)
        tracker.track("cache.size", 99)
        self.assertEqual(tracker.collected, {"cache.size": 10})


class TestDefaultConfigCollectionGuidance(unittest.TestCase):
    def setUp(self):
        patch("sys.stderr", new_callable=StringIO).start()
        self.addCleanup(patch.stopall)
        self.addCleanup(configfuzz.default_tracker().clear)

    def test_single_run_collects_keys(self):
        def test(value):
            configfuzz.track("parser.strict", True)
            configfuzz.track("parser.depth", 8)
            self.assertTrue(configfuzz.is_preround())

        guidance = DefaultConfigCollectionGuidance(random.Random(0))
        run_fuzzing(guidance, Harness(FuzzTarget(uint8, test)))
        self.assertEqual(guidance.executions, 1)
        self.assertEqual(guidance.collected, {"parser.strict": True, "parser.depth": 8})
        self.assertIsInstance(guidance.outcome.result, Success)
        self.assertFalse(configfuzz.is_preround())
        with self.assertRaises(GuidanceError):
            guidance.get_input()

    def test_failure_ends_preround_with_cause(self):
        def test(value):
            configfuzz.track("mode", "fast")
            raise RuntimeError("bad default config")

        with patch("sys.stderr", new_callable=StringIO) as mock_stderr:
            guidance = DefaultConfigCollectionGuidance(random.Random(0))
            run_fuzzing(guidance, Harness(FuzzTarget(uint8, test)))
        self.assertIsInstance(guidance.outcome.result, Failure)
        self.assertEqual(guidance.collected, {"mode": "fast"})
        self.assertIn("bad default config", mock_stderr.getvalue())

    def test_invalid_preround_is_fatal(self):
        def reject(value):
            assume(False, "never valid")

        guidance = DefaultConfigCollectionGuidance(random.Random(0))
        with self.assertRaises(PreRoundError):
            run_fuzzing(guidance, Harness(FuzzTarget(uint8, reject)))
        self.assertFalse(configfuzz.is_preround())

    def test_private_tracker(self):
        tracker = ConfigTracker()
        guidance = DefaultConfigCollectionGuidance(random.Random(0), config_tracker=tracker)
        self.assertTrue(tracker.preround)
        self.assertFalse(configfuzz.is_preround())
        guidance._finish()
        self.assertFalse(tracker.preround)


if __name__ == "__main__":
    unittest.main()
