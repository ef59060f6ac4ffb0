"""
End-to-end fuzzing sessions.

The targets below are instrumented with the real settrace instrumentor, so
each nested comparison that starts to hold is new line coverage.
"""

import tempfile
import unittest
from io import StringIO
from pathlib import Path
from unittest.mock import patch

from zestfuzz.config import SessionConfig
from zestfuzz.coverage import CoverageTracker
from zestfuzz.guidance import ReplayGuidance
from zestfuzz.harness import Harness
from zestfuzz.instrument import Instrumentor
from zestfuzz.orchestrator import FuzzSession
from zestfuzz.stream import InputStream
from zestfuzz.target import byte_string, fuzz, int32_le, list_of
from zestfuzz.types import Failure, SessionOutcome


def check_value(value):
    if value & 0xFF == 42:
        if (value >> 8) & 0xFF == 0:
            if (value >> 16) & 0xFF == 0:
                if (value >> 24) & 0xFF == 0:
                    raise AssertionError("found 42")


@fuzz(int32_le)
def find_42(value):
    check_value(value)


def count_shapes(chunks):
    total = 0
    for chunk in chunks:
        if chunk[:1] == b"{":
            total += 1
        elif len(chunk) > 3:
            total += 2
    return total


@fuzz(list_of(byte_string(8), max_length=6))
def chunk_target(chunks):
    count_shapes(chunks)


class SessionTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.out = self.root / "out"
        self.seeds = self.root / "seeds"
        self.seeds.mkdir()
        patch("sys.stderr", new_callable=StringIO).start()
        self.addCleanup(patch.stopall)

    def tearDown(self):
        self.tmp.cleanup()

    def config(self, **kwargs):
        kwargs.setdefault("random_seed", 1)
        kwargs.setdefault("input_dir", self.seeds)
        kwargs.setdefault("output_dir", self.out)
        kwargs.setdefault("quiet", True)
        kwargs.setdefault("includes", (__name__,))
        return SessionConfig(**kwargs)


class TestFindFortyTwo(SessionTestCase):
    def test_finds_and_reproduces_crash(self):
        (self.seeds / "empty").write_bytes(b"")
        config = self.config(trials=300_000, fixed_size=True, exit_on_crash=True)
        target = find_42.__fuzz_target__
        report = FuzzSession(target, config).run()

        self.assertEqual(report.outcome, SessionOutcome.BUGS_FOUND)
        self.assertEqual(report.unique_failures, 1)
        crash_file = self.out / "failures" / "id_000000"
        self.assertEqual(crash_file.read_bytes(), b"\x2a\x00\x00\x00")
        self.assertIn("ASSERT:", crash_file.with_name("id_000000.cause.txt").read_text())

        # The saved bytes reproduce the failure on every replay.
        for _ in range(3):
            replay = ReplayGuidance.from_files([crash_file], fixed_size=True)
            while replay.has_input():
                replay.handle_result(Harness(target).run(replay.get_input()))
            self.assertEqual(len(replay.failures), 1)
            self.assertIsInstance(replay.failures[0][1].result.cause, AssertionError)

    def test_saved_inputs_replay_to_at_least_their_coverage(self):
        (self.seeds / "empty").write_bytes(b"")
        session = FuzzSession(find_42.__fuzz_target__, self.config(trials=3000, fixed_size=True))
        session.run()
        self.assertGreater(len(session.corpus), 0)

        tracker = CoverageTracker()
        harness = Harness(find_42.__fuzz_target__, tracker, instrumentation=Instrumentor(tracker, includes=(__name__,)))
        for entry in session.corpus.inputs.values():
            outcome = harness.run(InputStream.replay(entry.data, fixed_size=True))
            # Probe ids may differ between instrumentors; compare bucket multisets.
            self.assertEqual(
                sorted(outcome.signature.buckets().values()),
                sorted(entry.signature.buckets().values()),
            )


class TestIdenticalSignatures(SessionTestCase):
    def test_first_input_is_the_representative(self):
        (self.seeds / "a").write_bytes(b"\x05\x00\x00\x00")
        (self.seeds / "b").write_bytes(b"\x06\x00\x00\x00")
        session = FuzzSession(find_42.__fuzz_target__, self.config(trials=2))
        report = session.run()
        self.assertEqual(report.trials, 2)
        self.assertEqual(len(session.corpus), 1)
        entry = session.corpus.get(0)
        self.assertEqual(entry.data, b"\x05\x00\x00\x00")
        self.assertEqual(session.corpus.cull(), [0])


class TestEngines(SessionTestCase):
    def test_zeal_session_records_regions(self):
        (self.seeds / "chunks").write_bytes(b"\x03\x02{a\x05abcde\x01z")
        session = FuzzSession(chunk_target.__fuzz_target__, self.config(engine="zeal", trials=500))
        report = session.run()
        self.assertEqual(report.outcome, SessionOutcome.CLEAN)
        self.assertEqual(report.trials, 500)
        seed_entry = session.corpus.get(0)
        self.assertTrue(any(context for context in seed_entry.regions))
        self.assertTrue(session.corpus.index_map)

    def test_blind_session_keeps_no_corpus(self):
        config = self.config(blind=True, trials=200, fixed_size=True, save_all=True)
        session = FuzzSession(find_42.__fuzz_target__, config)
        report = session.run()
        self.assertEqual(report.corpus_size, 0)
        self.assertGreater(report.covered_probes, 0)
        self.assertGreaterEqual(len(list((self.out / "all").iterdir())), 200)

    def test_blind_without_coverage(self):
        config = self.config(blind=True, disable_coverage=True, trials=50, fixed_size=True)
        session = FuzzSession(find_42.__fuzz_target__, config)
        self.assertIsNone(session.instrumentor)
        report = session.run()
        self.assertEqual(report.covered_probes, 0)
        self.assertEqual(report.trials, 50)


class TestFailureInsideSession(SessionTestCase):
    def test_failures_do_not_enter_corpus(self):
        (self.seeds / "crash").write_bytes(b"\x2a\x00\x00\x00")
        session = FuzzSession(find_42.__fuzz_target__, self.config(trials=1))
        report = session.run()
        self.assertEqual(report.outcome, SessionOutcome.BUGS_FOUND)
        self.assertEqual(len(session.corpus), 0)
        self.assertEqual(len(session.corpus.coverage), 0)

    def test_replay_reports_failure_cause(self):
        target = find_42.__fuzz_target__
        replay = ReplayGuidance([("crash", b"\x2a\x00\x00\x00")])
        outcome = Harness(target).run(replay.get_input())
        replay.handle_result(outcome)
        self.assertIsInstance(outcome.result, Failure)


if __name__ == "__main__":
    unittest.main()
