"""
Coverage tracking for zestfuzz.

This module provides:
- CoverageTracker: the per-run probe hit counter fed by instrumentation
- Signature: the immutable per-run snapshot of probe hit counts
- CoverageState: the session-wide cumulative best bucket per probe, which is
  the single source of truth for "has this behavior been seen before"
- load/save helpers persisting the coverage state to disk atomically
"""

from __future__ import annotations

import os
import pickle
import secrets
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

from zestfuzz.probes import DEFAULT_LAYOUT, ProbeLayout

if TYPE_CHECKING:
    from zestfuzz.indexing import ExecutionContext, ExecutionIndexTracker

# Per-run hit counts saturate here.
HIT_COUNT_CAP = 8


def bucket_of(count: int) -> int:
    """Map a hit count onto its coarse bucket: 1, 2, 3, 4-7, 8+."""
    if count <= 3:
        return max(count, 0)
    if count < 8:
        return 4
    return 5


# Lookup table so snapshots never call bucket_of() per probe.
_BUCKETS = bytes(bucket_of(i) for i in range(256))


class Signature:
    """Immutable map of probe id -> saturated hit count for one execution."""

    __slots__ = ("_counts", "_digest")

    def __init__(self, counts: dict[int, int] | None = None):
        self._counts: dict[int, int] = dict(counts or {})
        self._digest: int | None = None

    def __len__(self) -> int:
        return len(self._counts)

    def __iter__(self):
        return iter(self._counts)

    def __contains__(self, probe_id: object) -> bool:
        return probe_id in self._counts

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Signature):
            return NotImplemented
        return self.buckets() == other.buckets()

    def __hash__(self) -> int:
        return self.digest

    def __repr__(self) -> str:
        return f"Signature({len(self._counts)} probes, {self.total_hits} hits)"

    def count(self, probe_id: int) -> int:
        return self._counts.get(probe_id, 0)

    def bucket(self, probe_id: int) -> int:
        return _BUCKETS[self._counts.get(probe_id, 0)]

    def items(self) -> Iterable[tuple[int, int]]:
        return self._counts.items()

    def buckets(self) -> dict[int, int]:
        return {probe: _BUCKETS[count] for probe, count in self._counts.items()}

    @property
    def probes(self) -> frozenset[int]:
        return frozenset(self._counts)

    @property
    def total_hits(self) -> int:
        return sum(self._counts.values())

    @property
    def digest(self) -> int:
        """Coarse hash of the bucketed signature, used to reject repeats fast."""
        if self._digest is None:
            self._digest = hash(tuple(sorted(self.buckets().items())))
        return self._digest


class CoverageTracker:
    """
    Record the probes reached during a single run.

    The table is a pre-sized flat bytearray indexed directly by probe id, so
    recording a hit is an index and a compare. Probes hit for the first time
    in a run are remembered in a list so that reset() and snapshot() only
    touch what the run actually reached.
    """

    def __init__(
        self,
        layout: ProbeLayout = DEFAULT_LAYOUT,
        cap: int = HIT_COUNT_CAP,
        index_tracker: "ExecutionIndexTracker | None" = None,
    ):
        if not 0 < cap < 256:
            raise ValueError(f"Hit count cap must be in 1..255, got {cap}")
        self.layout = layout
        self.cap = cap
        self.index_tracker = index_tracker
        self._size = layout.size
        self._counts = bytearray(self._size)
        self._touched: list[int] = []
        self._contexts: dict[int, "ExecutionContext"] = {}
        self._accepting = True

    def reset(self) -> None:
        """Clear all per-run state. Must be called before every run."""
        counts = self._counts
        for probe_id in self._touched:
            counts[probe_id] = 0
        self._touched.clear()
        self._contexts.clear()
        self._accepting = True

    def invalidate(self) -> None:
        """Stop accepting hits until the next reset().

        Used after a timeout so that a late write from the aborted run is
        never attributed to the next one.
        """
        self._accepting = False

    def record(self, probe_id: int) -> None:
        """Count one hit of ``probe_id``. Out-of-range ids are ignored."""
        if not self._accepting or probe_id < 0 or probe_id >= self._size:
            return
        counts = self._counts
        count = counts[probe_id]
        if count == 0:
            self._touched.append(probe_id)
            if self.index_tracker is not None:
                self._contexts[probe_id] = self.index_tracker.current_context()
        if count < self.cap:
            counts[probe_id] = count + 1

    def snapshot(self) -> Signature:
        counts = self._counts
        return Signature({probe_id: counts[probe_id] for probe_id in self._touched})

    def probe_contexts(self) -> dict[int, "ExecutionContext"]:
        """Return the call context active when each probe first fired."""
        return dict(self._contexts)

    @property
    def hit_probes(self) -> int:
        return len(self._touched)


class CoverageState:
    """
    The cumulative best bucket observed for every probe in the session.

    Buckets only ever go up. ``seen_digests`` remembers every signature
    that has already been compared so identical repeats are rejected
    without walking their probes.
    """

    def __init__(
        self,
        best: dict[int, int] | None = None,
        probe_map: dict[str, Any] | None = None,
    ):
        self.best: dict[int, int] = dict(best or {})
        self.seen_digests: set[int] = set()
        # How the instrumentor numbered code objects, so ids match in a later session.
        self.probe_map: dict[str, Any] = dict(probe_map or {})

    def __len__(self) -> int:
        return len(self.best)

    def bucket(self, probe_id: int) -> int:
        return self.best.get(probe_id, 0)

    def improvements(self, signature: Signature) -> dict[int, tuple[int, int]]:
        """Return probe -> (old bucket, new bucket) for every bucket increase."""
        best = self.best
        changes = {}
        for probe_id, count in signature.items():
            new_bucket = _BUCKETS[count]
            old_bucket = best.get(probe_id, 0)
            if new_bucket > old_bucket:
                changes[probe_id] = (old_bucket, new_bucket)
        return changes

    def merge(self, signature: Signature) -> dict[int, tuple[int, int]]:
        """Raise the cumulative best to cover ``signature`` and return the changes."""
        changes = self.improvements(signature)
        for probe_id, (_, new_bucket) in changes.items():
            self.best[probe_id] = new_bucket
        self.seen_digests.add(signature.digest)
        return changes

    def to_dict(self) -> dict[str, Any]:
        return {"best": dict(self.best), "probe_map": self.probe_map}


def load_coverage_state(state_file: Path) -> CoverageState:
    """
    Load the cumulative coverage state from its pickle file.

    Return an empty state if the file doesn't exist or is corrupted.
    """
    if not state_file.is_file():
        return CoverageState()
    try:
        with open(state_file, "rb") as f:
            data: dict[str, Any] = pickle.load(f)
        return CoverageState(data.get("best", {}), data.get("probe_map", {}))
    except (pickle.UnpicklingError, OSError, EOFError) as e:
        print(
            f"Warning: Could not load coverage state file. Starting fresh. Error: {e}",
            file=sys.stderr,
        )
        return CoverageState()


def save_coverage_state(state: CoverageState, state_file: Path) -> None:
    """Save the coverage state to its pickle file atomically.

    Raises OSError on failure; the caller decides whether that is fatal.
    """
    state_file.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = state_file.with_suffix(f".pkl.tmp.{secrets.token_hex(4)}")
    try:
        with open(tmp_path, "wb") as f:
            pickle.dump(state.to_dict(), f)
        os.replace(tmp_path, state_file)
    except (OSError, pickle.PicklingError):
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError as e_unlink:
                print(
                    f"[!] Warning: Could not remove temporary state file {tmp_path}: {e_unlink}",
                    file=sys.stderr,
                )
        raise
