"""Tests for novelty detection (zestfuzz/scoring.py)."""

import unittest
from io import StringIO
from unittest.mock import patch

from zestfuzz.coverage import CoverageState, Signature
from zestfuzz.probes import ProbeLayout
from zestfuzz.scoring import NewCoverageInfo, describe_changes, find_new_coverage

LAYOUT = ProbeLayout(4, 4, 8)


class TestFindNewCoverage(unittest.TestCase):
    def test_new_probe_is_interesting(self):
        with patch("sys.stderr", new_callable=StringIO) as mock_stderr:
            info = find_new_coverage(CoverageState(), Signature({LAYOUT.pack(1, 2, 3): 1}), LAYOUT)
        self.assertTrue(info.is_interesting())
        self.assertEqual(info.new_probes, 1)
        self.assertIn("[NEW PROBE] c1:u2:l3", mock_stderr.getvalue())

    def test_bucket_increase_is_interesting(self):
        state = CoverageState({5: 1})
        info = find_new_coverage(state, Signature({5: 4}), LAYOUT, verbose=False)
        self.assertEqual(info.bucket_increases, 1)
        self.assertEqual(info.new_probes, 0)
        self.assertEqual(info.changes, {5: (1, 4)})

    def test_same_bucket_is_not_interesting(self):
        state = CoverageState({5: 4})
        info = find_new_coverage(state, Signature({5: 6}), LAYOUT, verbose=False)
        self.assertFalse(info.is_interesting())

    def test_seen_digest_short_circuits(self):
        state = CoverageState()
        signature = Signature({1: 1})
        state.seen_digests.add(signature.digest)
        info = find_new_coverage(state, signature, LAYOUT, verbose=False)
        self.assertFalse(info.is_interesting())
        self.assertEqual(info.total_probes, 1)

    def test_does_not_modify_state(self):
        state = CoverageState()
        find_new_coverage(state, Signature({1: 1}), LAYOUT, verbose=False)
        self.assertEqual(state.best, {})
        self.assertEqual(state.seen_digests, set())

    def test_quiet_prints_nothing(self):
        with patch("sys.stderr", new_callable=StringIO) as mock_stderr:
            find_new_coverage(CoverageState(), Signature({1: 1}), LAYOUT, verbose=False)
        self.assertEqual(mock_stderr.getvalue(), "")


class TestNewCoverageInfo(unittest.TestCase):
    def test_empty_is_not_interesting(self):
        self.assertFalse(NewCoverageInfo().is_interesting())


class TestDescribeChanges(unittest.TestCase):
    def test_records_are_sorted_and_unpacked(self):
        records = describe_changes({LAYOUT.pack(0, 1, 2): (0, 1), 1: (1, 3)}, LAYOUT)
        self.assertEqual([r["probe"] for r in records], [1, LAYOUT.pack(0, 1, 2)])
        self.assertEqual(records[1]["unit"], 1)
        self.assertEqual(records[1]["location"], 2)
        self.assertEqual(records[0]["old_bucket"], 1)
        self.assertEqual(records[0]["new_bucket"], 3)


if __name__ == "__main__":
    unittest.main()
