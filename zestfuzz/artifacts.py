"""
Artifact management and telemetry for zestfuzz.

This module provides:
- ArtifactManager: deduplicated saving of failure and timeout inputs, plus
  the optional archive of every executed input
- TelemetryManager: run statistics persistence and time-series logging
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

import psutil

from zestfuzz.analysis import CrashFingerprinter, CrashSignature, CrashType
from zestfuzz.errors import CorpusIOError
from zestfuzz.types import Failure, RunOutcome, Timeout
from zestfuzz.utils import existing_ids, save_run_stats

if TYPE_CHECKING:
    from zestfuzz.guidance import ZestGuidance
    from zestfuzz.health import HealthMonitor


class ArtifactManager:
    """
    Manages saving of failure and timeout artifacts.

    Failures and timeouts are deduplicated by fingerprint: only the first
    input reaching a given fingerprint is written, next to a
    ``.cause.txt`` holding the fingerprint and traceback. Without
    directories the manager still deduplicates, in memory only.

    Artifacts left in the directories by an earlier session keep their
    names: their fingerprints count as known and numbering continues after
    them.
    """

    def __init__(
        self,
        failures_dir: Path | None = None,
        timeouts_dir: Path | None = None,
        all_dir: Path | None = None,
        fingerprinter: CrashFingerprinter | None = None,
        health_monitor: "HealthMonitor | None" = None,
    ):
        self.failures_dir = failures_dir
        self.timeouts_dir = timeouts_dir
        self.all_dir = all_dir
        self.fingerprinter = fingerprinter or CrashFingerprinter()
        self.health_monitor = health_monitor

        self.fingerprints: dict[str, Path | None] = {}
        self.failures_found = 0
        self.timeouts_found = 0
        self.unique_failures = 0
        self.unique_timeouts = 0

        for directory in (failures_dir, timeouts_dir, all_dir):
            if directory is not None:
                try:
                    directory.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    raise CorpusIOError(f"Cannot create artifact directory {directory}: {e}") from e

        self._next_failure_id = self._resume_from(failures_dir)
        self._next_timeout_id = self._resume_from(timeouts_dir)
        self._executions_saved = self._resume_from(all_dir, with_causes=False)

    def _resume_from(self, directory: Path | None, with_causes: bool = True) -> int:
        """Return the next free artifact number, loading fingerprints of saved artifacts."""
        saved = existing_ids(directory)
        if with_causes:
            for path in saved.values():
                cause_path = path.with_name(path.name + ".cause.txt")
                try:
                    first_line = cause_path.read_text(encoding="utf-8").partition("\n")[0]
                except OSError:
                    continue
                if first_line.startswith("Fingerprint: "):
                    self.fingerprints[first_line[len("Fingerprint: ") :]] = path
        return max(saved, default=-1) + 1

    @property
    def unique_artifacts(self) -> int:
        return self.unique_failures + self.unique_timeouts

    def save_failure(self, outcome: RunOutcome) -> CrashSignature | None:
        """
        Persist a Failure or Timeout unless its fingerprint is already known.

        Returns the crash signature of a newly saved artifact, or None for a
        duplicate.
        """
        result = outcome.result
        is_timeout = isinstance(result, Timeout)
        if is_timeout:
            self.timeouts_found += 1
        else:
            self.failures_found += 1

        signature = self.fingerprinter.analyze(result)
        if signature.fingerprint in self.fingerprints:
            if self.health_monitor is not None:
                self.health_monitor.record_duplicate_failure(signature.fingerprint)
            return None

        if signature.crash_type == CrashType.TIMEOUT:
            self.unique_timeouts += 1
            dest_dir, label = self.timeouts_dir, "TIMEOUT"
            number = self._next_timeout_id
            self._next_timeout_id += 1
        else:
            self.unique_failures += 1
            dest_dir, label = self.failures_dir, "FAILURE"
            number = self._next_failure_id
            self._next_failure_id += 1

        dest_path = None
        if dest_dir is not None:
            dest_path = dest_dir / f"id_{number:06d}"
            self._write_artifact(dest_path, outcome, signature)
        self.fingerprints[signature.fingerprint] = dest_path

        print(f"  [!!!] {label} DETECTED! Fingerprint: {signature.fingerprint}", file=sys.stderr)
        if dest_path is not None:
            print(f"  [+] {label.capitalize()} saved to {dest_path}", file=sys.stderr)
        return signature

    def _write_artifact(self, dest_path: Path, outcome: RunOutcome, signature: CrashSignature) -> None:
        result = outcome.result
        if isinstance(result, (Failure, Timeout)):
            cause = result.cause
            traceback_text = result.traceback_text
        else:
            cause, traceback_text = None, ""
        lines = [
            f"Fingerprint: {signature.fingerprint}",
            f"Status: {result.status}",
            f"Exception: {signature.exception_name}",
            f"Location: {signature.location or 'unknown'}",
            f"Cause: {cause!r}",
            "",
            traceback_text,
        ]
        try:
            dest_path.write_bytes(outcome.data)
            dest_path.with_name(dest_path.name + ".cause.txt").write_text(
                "\n".join(lines), encoding="utf-8"
            )
        except OSError as e:
            raise CorpusIOError(f"Could not save artifact {dest_path}: {e}") from e

    def record_execution(self, data: bytes) -> None:
        """Archive an executed input when save-all mode is on."""
        if self.all_dir is None:
            return
        dest_path = self.all_dir / f"id_{self._executions_saved:06d}"
        self._executions_saved += 1
        try:
            dest_path.write_bytes(data)
        except OSError as e:
            raise CorpusIOError(f"Could not save executed input {dest_path}: {e}") from e


class TelemetryManager:
    """Manages run statistics persistence and time-series telemetry logging."""

    def __init__(
        self,
        run_stats: dict,
        guidance: "ZestGuidance",
        stats_path: Path,
        timeseries_log_path: Path,
    ):
        self.run_stats = run_stats
        self.guidance = guidance
        self.stats_path = stats_path
        self.timeseries_log_path = timeseries_log_path

    def update_and_save_run_stats(self) -> None:
        """Update dynamic run statistics and save them to the stats file."""
        self.run_stats.update(self.guidance.stats())
        self.run_stats["last_update_time"] = datetime.now(timezone.utc).isoformat()
        save_run_stats(self.run_stats, self.stats_path)

    def log_timeseries_datapoint(self) -> None:
        """Append a snapshot of the current run statistics to the time-series log."""
        datapoint = self.run_stats.copy()
        datapoint.update(self.guidance.stats())
        datapoint["timestamp"] = datetime.now(timezone.utc).isoformat()

        try:
            datapoint["system_load_1min"] = psutil.getloadavg()[0]
        except (OSError, AttributeError):
            datapoint["system_load_1min"] = None

        datapoint["process_rss_mb"] = round(psutil.Process().memory_info().rss / (1024 * 1024), 2)

        try:
            with open(self.timeseries_log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(datapoint) + "\n")
        except OSError as e:
            print(
                f"[!] Warning: Could not write to time-series log file: {e}",
                file=sys.stderr,
            )
