"""
Novelty detection for the zestfuzz engine.

This module decides whether a run's coverage signature is worth keeping: a
run is interesting if any probe's hit-count bucket rises above the best
bucket ever observed for that probe in the session.
"""

import sys
from dataclasses import dataclass, field

from zestfuzz.coverage import CoverageState, Signature
from zestfuzz.probes import DEFAULT_LAYOUT, ProbeLayout


@dataclass
class NewCoverageInfo:
    """A data class to hold the new coverage found by one run."""

    # probe id -> (old bucket, new bucket)
    changes: dict[int, tuple[int, int]] = field(default_factory=dict)
    new_probes: int = 0
    bucket_increases: int = 0
    total_probes: int = 0

    def is_interesting(self) -> bool:
        """Return True if any new coverage was found."""
        return self.new_probes > 0 or self.bucket_increases > 0


def find_new_coverage(
    state: CoverageState,
    signature: Signature,
    layout: ProbeLayout = DEFAULT_LAYOUT,
    verbose: bool = True,
) -> NewCoverageInfo:
    """
    Compare a run's signature against the cumulative best.

    A signature whose digest has already been merged cannot improve the
    cumulative best and is rejected without walking its probes. This does
    not modify ``state``; the caller merges once it decides to keep the run.
    """
    info = NewCoverageInfo(total_probes=len(signature))
    if signature.digest in state.seen_digests:
        return info

    info.changes = state.improvements(signature)
    for probe_id, (old_bucket, new_bucket) in sorted(info.changes.items()):
        if old_bucket == 0:
            info.new_probes += 1
            if verbose:
                print(
                    f"[NEW PROBE] {layout.describe(probe_id)} (id {probe_id}) bucket {new_bucket}",
                    file=sys.stderr,
                )
        else:
            info.bucket_increases += 1
    return info


def describe_changes(
    changes: dict[int, tuple[int, int]], layout: ProbeLayout = DEFAULT_LAYOUT
) -> list[dict]:
    """Return JSON-ready records of the probes that triggered a save."""
    records = []
    for probe_id, (old_bucket, new_bucket) in sorted(changes.items()):
        component, unit, location = layout.unpack(probe_id)
        records.append(
            {
                "probe": probe_id,
                "component": component,
                "unit": unit,
                "location": location,
                "old_bucket": old_bucket,
                "new_bucket": new_bucket,
            }
        )
    return records
