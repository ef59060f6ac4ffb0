"""
Health monitoring for the zestfuzz engine.

Records discrete adverse events to a JSONL log file for observability.
The HealthMonitor is non-intrusive: it never raises on I/O errors and adds
negligible overhead to the fuzzing loop.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

# Threshold for consecutive timeout warnings
CONSECUTIVE_TIMEOUT_THRESHOLD = 5

# Threshold for consecutive Invalid results from one parent
CONSECUTIVE_INVALID_THRESHOLD = 100

# Threshold for saved input size warnings (bytes)
INPUT_SIZE_WARNING_THRESHOLD = 64 * 1024


class HealthMonitor:
    """Track and record adverse fuzzing events for observability.

    Writes events to a JSONL log file (when given one) and maintains
    in-memory counters for streak detection.
    """

    def __init__(self, log_path: Path | None = None) -> None:
        self.log_path = log_path
        self.counters: dict[str, int] = {}

        # streak kind -> (parent id, consecutive count)
        self._streaks: dict[str, tuple[int | None, int]] = {}

    def _write_event(self, category: str, event: str, **kwargs: Any) -> None:
        """Append a single event to the JSONL log and bump its counter."""
        if self.log_path is not None:
            try:
                record: dict[str, Any] = {
                    "ts": datetime.now(timezone.utc).isoformat(),
                    "cat": category,
                    "event": event,
                }
                record.update(kwargs)
                with open(self.log_path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(record, default=str) + "\n")
            except OSError:
                pass  # Never crash the fuzzer for a health event

        counter_key = f"{category}.{event}"
        self.counters[counter_key] = self.counters.get(counter_key, 0) + 1

    # =========================================================================
    # Execution Events
    # =========================================================================

    def _bump_streak(self, kind: str, parent_id: int | None, threshold: int) -> None:
        last_parent, count = self._streaks.get(kind, (None, 0))
        count = count + 1 if count and last_parent == parent_id else 1
        self._streaks[kind] = (parent_id, count)
        if count == threshold:
            self._write_event("execution", f"consecutive_{kind}", parent_id=parent_id, count=count)

    def record_timeout(self, parent_id: int | None) -> None:
        """Record a timeout and flag a streak of them from one parent."""
        self._bump_streak("timeouts", parent_id, CONSECUTIVE_TIMEOUT_THRESHOLD)

    def reset_timeout_streak(self) -> None:
        self._streaks.pop("timeouts", None)

    def record_invalid(self, parent_id: int | None) -> None:
        """Record an Invalid result and flag long streaks from one parent."""
        self._bump_streak("invalids", parent_id, CONSECUTIVE_INVALID_THRESHOLD)

    def reset_invalid_streak(self) -> None:
        self._streaks.pop("invalids", None)

    def record_duplicate_failure(self, fingerprint: str) -> None:
        """Record a failure whose fingerprint was already saved."""
        self._write_event("execution", "duplicate_failure", fingerprint=fingerprint)

    # =========================================================================
    # Corpus Health Events
    # =========================================================================

    def record_parent_sterile(self, parent_id: int, children: int) -> None:
        """Record a parent whose whole energy produced no new input."""
        self._write_event(
            "corpus_health",
            "sterile_parent",
            parent_id=parent_id,
            children=children,
        )

    def record_parent_abandoned(self, parent_id: int, attempts: int) -> None:
        """Record a parent skipped because its children were all Invalid."""
        self._write_event(
            "corpus_health",
            "parent_abandoned",
            parent_id=parent_id,
            attempts=attempts,
        )

    def record_input_size_warning(self, seq_id: int, size_bytes: int) -> None:
        if size_bytes < INPUT_SIZE_WARNING_THRESHOLD:
            return
        self._write_event(
            "corpus_health",
            "input_size_warning",
            seq_id=seq_id,
            size_bytes=size_bytes,
        )

    # =========================================================================
    # Summary
    # =========================================================================

    def get_summary(self) -> dict[str, int]:
        """Return a copy of the in-memory event counters."""
        return dict(self.counters)
