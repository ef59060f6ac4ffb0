"""Tests for settrace-based instrumentation (zestfuzz/instrument.py)."""

import sys
import unittest

from zestfuzz.coverage import CoverageTracker
from zestfuzz.errors import GuidanceError, ProbeIdError
from zestfuzz.indexing import READ_SITE, ExecutionIndexTracker
from zestfuzz.instrument import Instrumentor
from zestfuzz.probes import ProbeLayout
from zestfuzz.stream import InputStream
from zestfuzz.target import byte_string


def classify(value):
    if value > 10:
        return "big"
    return "small"


def read_one(stream):
    return stream.read_byte()


def read_pair(stream):
    return read_one(stream), read_one(stream)


def long_function():
    a = 1
    b = 2
    c = 3
    d = 4
    e = 5
    return a + b + c + d + e


def first_helper():
    return 1


def second_helper():
    return 2


def third_helper():
    return 3


def call_helpers_ignoring_value_errors():
    results = []
    for helper in (first_helper, second_helper, third_helper):
        try:
            results.append(helper())
        except ValueError:
            results.append(None)
    return results


class TestInstrumentor(unittest.TestCase):
    def setUp(self):
        self.tracker = CoverageTracker()
        self.instrumentor = Instrumentor(self.tracker, includes=(__name__,))

    def run_traced(self, func, *args):
        self.tracker.reset()
        with self.instrumentor.tracing():
            result = func(*args)
        return result, self.tracker.snapshot()

    def test_branches_produce_different_signatures(self):
        result_big, big = self.run_traced(classify, 20)
        result_small, small = self.run_traced(classify, 1)
        self.assertEqual((result_big, result_small), ("big", "small"))
        self.assertNotEqual(big.probes, small.probes)
        self.assertTrue(big.probes & small.probes)

    def test_ids_are_stable_across_runs(self):
        _, first = self.run_traced(classify, 20)
        _, second = self.run_traced(classify, 20)
        self.assertEqual(first, second)

    def test_probe_ids_map_back_to_source(self):
        self.run_traced(classify, 20)
        code = classify.__code__
        probe_id = self.instrumentor.probe_id(code, code.co_firstlineno + 2)
        description = self.instrumentor.describe(probe_id)
        self.assertIn("classify", description)
        self.assertIn(f":{code.co_firstlineno + 2}", description)

    def test_one_component_per_file(self):
        self.run_traced(classify, 1)
        self.run_traced(read_pair, InputStream.replay(b"ab"))
        self.assertEqual(list(self.instrumentor.components), [classify.__code__.co_filename])

    def test_excluded_modules_record_nothing(self):
        instrumentor = Instrumentor(self.tracker, includes=(__name__,), excludes=(__name__,))
        self.tracker.reset()
        with instrumentor.tracing():
            classify(3)
        self.assertEqual(self.tracker.hit_probes, 0)

    def test_engine_is_never_instrumented(self):
        instrumentor = Instrumentor(self.tracker, includes=("zestfuzz",))
        self.tracker.reset()
        with instrumentor.tracing():
            InputStream.replay(b"abc").read(3)
        self.assertEqual(self.tracker.hit_probes, 0)

    def test_previous_trace_function_is_restored(self):
        before = sys.gettrace()
        with self.instrumentor.tracing():
            pass
        self.assertIs(sys.gettrace(), before)

    def test_line_span_overflow_is_fatal(self):
        tracker = CoverageTracker(ProbeLayout(2, 2, 2))
        instrumentor = Instrumentor(tracker, includes=(__name__,))
        with self.assertRaises(ProbeIdError):
            with instrumentor.tracing():
                long_function()

    def test_overflow_caught_by_the_target_is_still_raised(self):
        # Two units fit: the caller and the first helper. The second overflows.
        tracker = CoverageTracker(ProbeLayout(component_bits=2, unit_bits=1, location_bits=6))
        instrumentor = Instrumentor(tracker, includes=(__name__,))
        previous = sys.gettrace()
        with self.assertRaises(ProbeIdError):
            with instrumentor.tracing():
                call_helpers_ignoring_value_errors()
        self.assertIs(sys.gettrace(), previous)

        # The error is reported once, not carried into the next block.
        with instrumentor.tracing():
            pass

    def test_saved_numbering_keeps_ids_stable_across_instrumentors(self):
        _, first_run = self.run_traced(classify, 20)
        probe_map = self.instrumentor.probe_map()

        tracker = CoverageTracker()
        resumed = Instrumentor(tracker, includes=(__name__,))
        resumed.load_probe_map(probe_map)
        # Different code runs first this time.
        with resumed.tracing():
            long_function()
        tracker.reset()
        with resumed.tracing():
            classify(20)
        self.assertEqual(tracker.snapshot(), first_run)

    def test_numbering_cannot_be_replaced_once_used(self):
        self.run_traced(classify, 1)
        with self.assertRaises(GuidanceError):
            self.instrumentor.load_probe_map({"components": {}, "units": {}})


class TestIndexedInstrumentation(unittest.TestCase):
    def test_reads_are_tagged_with_call_context(self):
        index_tracker = ExecutionIndexTracker()
        tracker = CoverageTracker(index_tracker=index_tracker)
        instrumentor = Instrumentor(tracker, index_tracker, includes=(__name__,))
        stream = InputStream.replay(b"ab", index_tracker=index_tracker)
        with instrumentor.tracing():
            self.assertEqual(read_pair(stream), (ord("a"), ord("b")))

        first, second = stream.indices
        self.assertEqual(len(first), 3)
        self.assertEqual(first[-1], (READ_SITE, 1))
        # Both reads go through the same call site, on successive iterations.
        self.assertEqual(first[0], second[0])
        self.assertEqual(first[1][0], second[1][0])
        self.assertEqual((first[1][1], second[1][1]), (1, 2))
        self.assertEqual(index_tracker.depth, 0)

    def test_builtin_generators_are_indexed_not_covered(self):
        index_tracker = ExecutionIndexTracker()
        tracker = CoverageTracker(index_tracker=index_tracker)
        instrumentor = Instrumentor(tracker, index_tracker, includes=(__name__,))
        stream = InputStream.replay(b"\x02ab", index_tracker=index_tracker)
        with instrumentor.tracing():
            value = byte_string(4)(stream)
        self.assertEqual(value, b"ab")
        self.assertEqual(tracker.hit_probes, 0)
        self.assertEqual([len(index) for index in stream.indices], [2, 2, 2])
        self.assertEqual(len({index[0] for index in stream.indices}), 1)


if __name__ == "__main__":
    unittest.main()
