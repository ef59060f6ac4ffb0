"""
Tests for the utils module (zestfuzz/utils.py).

This module tests run stats loading/saving and the TeeLogger.
"""

import json
import tempfile
import unittest
from io import StringIO
from pathlib import Path
from unittest.mock import patch

from zestfuzz.utils import TeeLogger, _default_run_stats, load_run_stats, save_run_stats


class TestRunStats(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.stats_file = Path(self.tmp.name) / "fuzz_run_stats.json"

    def tearDown(self):
        self.tmp.cleanup()

    def test_returns_default_when_file_not_exists(self):
        stats = load_run_stats(self.stats_file)
        self.assertEqual(stats["total_sessions"], 0)
        self.assertEqual(stats["trials"], 0)
        self.assertIn("start_time", stats)

    def test_round_trip_and_missing_fields(self):
        save_run_stats({"start_time": "2026-01-01T00:00:00", "total_sessions": 4}, self.stats_file)
        stats = load_run_stats(self.stats_file)
        self.assertEqual(stats["total_sessions"], 4)
        self.assertEqual(stats["start_time"], "2026-01-01T00:00:00")
        self.assertEqual(stats["unique_failures"], 0)

    def test_corrupted_file_prints_warning(self):
        self.stats_file.write_text("{bad json}")
        with patch("sys.stderr", new_callable=StringIO) as mock_stderr:
            stats = load_run_stats(self.stats_file)
        self.assertEqual(stats, {**_default_run_stats(), "start_time": stats["start_time"]})
        self.assertIn("starting fresh", mock_stderr.getvalue())

    def test_save_leaves_no_temporary_file(self):
        save_run_stats({"trials": 3}, self.stats_file)
        self.assertEqual([p.name for p in Path(self.tmp.name).iterdir()], ["fuzz_run_stats.json"])
        self.assertEqual(json.loads(self.stats_file.read_text())["trials"], 3)

    def test_save_failure_warns(self):
        with patch("sys.stderr", new_callable=StringIO) as mock_stderr:
            save_run_stats({}, Path("/nonexistent/dir/stats.json"))
        self.assertIn("Could not save run stats", mock_stderr.getvalue())


class TestTeeLogger(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.log_path = Path(self.tmp.name) / "run.log"
        self.console = StringIO()

    def tearDown(self):
        self.tmp.cleanup()

    def test_writes_to_both(self):
        tee = TeeLogger(self.log_path, self.console)
        print("[+] hello", file=tee)
        tee.close()
        self.assertEqual(self.console.getvalue(), "[+] hello\n")
        self.assertEqual(self.log_path.read_text(), "[+] hello\n")

    def test_collapses_repeats(self):
        tee = TeeLogger(self.log_path, self.console)
        for _ in range(3):
            tee.write("[*] same line\n")
        tee.write("[*] other\n")
        tee.close()
        self.assertEqual(self.console.getvalue(), "[*] same line (×3)\n[*] other\n")

    def test_quiet_suppresses_detail_lines(self):
        tee = TeeLogger(self.log_path, self.console, verbose=False)
        print("[NEW PROBE] c0:u1:l2 (id 1026) bucket 1", file=tee)
        print("  [+] Saved input id_000001", file=tee)
        print("[!!!] FAILURE DETECTED!", file=tee)
        tee.close()
        self.assertEqual(self.console.getvalue(), "[!!!] FAILURE DETECTED!\n")

    def test_partial_writes_and_blank_lines(self):
        tee = TeeLogger(self.log_path, self.console)
        tee.write("[+] par")
        tee.write("tial\n\n[+] par")
        tee.write("tial\n")
        tee.close()
        self.assertEqual(self.console.getvalue(), "[+] partial\n\n[+] partial\n")

    def test_flush_writes_pending_text(self):
        tee = TeeLogger(self.log_path, self.console)
        tee.write("[*] progress...")
        tee.flush()
        self.assertEqual(self.console.getvalue(), "[*] progress...")
        tee.close()
        self.assertEqual(self.log_path.read_text(), "[*] progress...")

    def test_fileno_without_descriptor(self):
        tee = TeeLogger(self.log_path, self.console)
        with self.assertRaises(OSError):
            tee.fileno()
        tee.close()


if __name__ == "__main__":
    unittest.main()
