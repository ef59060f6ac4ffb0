"""Tests for execution indexing (zestfuzz/indexing.py)."""

import unittest

from zestfuzz.indexing import (
    READ_SITE,
    ExecutionIndexTracker,
    context_regions,
)


class TestExecutionIndexTracker(unittest.TestCase):
    def setUp(self):
        self.tracker = ExecutionIndexTracker()

    def test_nested_contexts(self):
        self.tracker.enter(10)
        self.tracker.enter(20)
        self.assertEqual(self.tracker.current_context(), ((10, 1), (20, 1)))
        self.tracker.exit()
        self.assertEqual(self.tracker.current_context(), ((10, 1),))

    def test_repeated_calls_get_iteration_tags(self):
        for expected in (1, 2, 3):
            self.tracker.enter(7)
            self.assertEqual(self.tracker.current_context(), ((7, expected),))
            self.tracker.exit()

    def test_iteration_counts_restart_in_a_new_parent_frame(self):
        self.tracker.enter(1)
        self.tracker.enter(2)
        self.tracker.exit()
        self.tracker.exit()
        self.tracker.enter(1)
        self.tracker.enter(2)
        self.assertEqual(self.tracker.current_context(), ((1, 2), (2, 1)))

    def test_iterations_beyond_cap_collapse(self):
        tracker = ExecutionIndexTracker(iteration_cap=3)
        tags = []
        for _ in range(5):
            tracker.enter(9)
            tags.append(tracker.current_context()[-1][1])
            tracker.exit()
        self.assertEqual(tags, [1, 2, 3, 3, 3])

    def test_unmatched_exit_is_ignored(self):
        self.tracker.exit()
        self.assertEqual(self.tracker.depth, 0)

    def test_current_index_numbers_reads(self):
        self.tracker.enter(5)
        first = self.tracker.current_index()
        second = self.tracker.current_index()
        self.assertEqual(first, ((5, 1), (READ_SITE, 1)))
        self.assertEqual(second, ((5, 1), (READ_SITE, 2)))

    def test_reset(self):
        self.tracker.enter(5)
        self.tracker.current_index()
        self.tracker.reset()
        self.assertEqual(self.tracker.current_index(), ((READ_SITE, 1),))

    def test_bad_cap(self):
        with self.assertRaises(ValueError):
            ExecutionIndexTracker(iteration_cap=0)


class TestContextRegions(unittest.TestCase):
    def test_regions_cover_first_to_last_byte(self):
        a = ((1, 1), (READ_SITE, 1))
        b = ((2, 1), (READ_SITE, 1))
        indices = [((READ_SITE, 1),), a, ((1, 1), (READ_SITE, 2)), b]
        regions = context_regions(indices)
        self.assertEqual(regions[()], (0, 4))
        self.assertEqual(regions[((1, 1),)], (1, 3))
        self.assertEqual(regions[((2, 1),)], (3, 4))

    def test_nested_context_counts_for_parent(self):
        indices = [((1, 1), (2, 1), (READ_SITE, 1))]
        regions = context_regions(indices)
        self.assertEqual(regions[((1, 1),)], (0, 1))
        self.assertEqual(regions[((1, 1), (2, 1))], (0, 1))


if __name__ == "__main__":
    unittest.main()
