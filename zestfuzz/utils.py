"""
Session log and run statistics helpers.

Run statistics live in ``fuzz_run_stats.json`` in the output directory and
accumulate across sessions. TeeLogger mirrors the CLI's stdout and stderr
into the session log file. existing_ids finds the numbered files an earlier
session left in an output directory.
"""

import json
import os
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TextIO

RUN_STATS_NAME = "fuzz_run_stats.json"

_ID_NAME_RE = re.compile(r"id_(\d{6,})")

# Counters every stats file carries, refreshed from the guidance while running.
RUN_STATS_COUNTERS = (
    "total_sessions",
    "trials",
    "invalid_runs",
    "corpus_size",
    "favored_inputs",
    "cycles_completed",
    "covered_probes",
    "failures_found",
    "unique_failures",
    "timeouts_found",
    "unique_timeouts",
    "new_coverage_finds",
)


def _default_run_stats() -> dict[str, Any]:
    stats: dict[str, Any] = {
        "start_time": datetime.now(timezone.utc).isoformat(),
        "last_update_time": None,
    }
    stats.update(dict.fromkeys(RUN_STATS_COUNTERS, 0))
    return stats


def load_run_stats(stats_file: Path) -> dict[str, Any]:
    """
    Load run statistics, or start a fresh set if there are none yet.

    Counters missing from an older file are filled in with zero. An
    unreadable file is reported and replaced by a fresh set.
    """
    stats = _default_run_stats()
    if not stats_file.is_file():
        return stats
    try:
        with open(stats_file, "r", encoding="utf-8") as f:
            stored = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        print(f"[!] Warning: Could not load run stats, starting fresh: {e}", file=sys.stderr)
        return stats
    stats.update(stored)
    return stats


def save_run_stats(stats: dict[str, Any], stats_file: Path) -> None:
    """Write run statistics through a temporary file so readers never see half a file."""
    tmp_path = stats_file.with_name(stats_file.name + ".tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(stats, f, indent=2, sort_keys=True)
        os.replace(tmp_path, stats_file)
    except OSError as e:
        print(f"[!] Warning: Could not save run stats: {e}", file=sys.stderr)


class TeeLogger:
    """
    Copy everything written to both a console stream and a log file.

    Output is handled a line at a time. A run of identical consecutive
    lines is written once with a ``(×N)`` suffix, and with ``verbose``
    off the per-trial detail lines are dropped from both destinations.
    """

    QUIET_PREFIXES: tuple[str, ...] = (
        "[NEW PROBE]",
        "[+] New coverage",
        "[+] Saved input",
        "[*] Culled corpus",
    )

    def __init__(self, file_path: str | Path, original_stream: TextIO, verbose: bool = True):
        self.original_stream = original_stream
        self.log_file = open(file_path, "w", encoding="utf-8")
        self.verbose = verbose
        self._partial = ""
        self._held_line: str | None = None
        self._held_count = 0

    def _emit(self, text: str) -> None:
        self.original_stream.write(text)
        self.log_file.write(text)

    def _release_held(self) -> None:
        if self._held_line is None:
            return
        suffix = f" (×{self._held_count})" if self._held_count > 1 else ""
        self._emit(f"{self._held_line}{suffix}\n")
        self._held_line = None
        self._held_count = 0

    def _handle_line(self, line: str) -> None:
        if not self.verbose and line.lstrip().startswith(self.QUIET_PREFIXES):
            return
        if line and line == self._held_line:
            self._held_count += 1
            return
        self._release_held()
        if line:
            self._held_line = line
            self._held_count = 1
        else:
            self._emit("\n")

    def write(self, message: str) -> int:
        text = self._partial + message
        *lines, self._partial = text.split("\n")
        for line in lines:
            self._handle_line(line)
        return len(message)

    def flush(self) -> None:
        self._release_held()
        if self._partial:
            self._emit(self._partial)
            self._partial = ""
        self.original_stream.flush()
        self.log_file.flush()

    def close(self) -> None:
        self.flush()
        self.log_file.close()

    @property
    def encoding(self) -> str:
        return getattr(self.original_stream, "encoding", "utf-8")

    def isatty(self) -> bool:
        return hasattr(self.original_stream, "isatty") and self.original_stream.isatty()

    def fileno(self) -> int:
        if hasattr(self.original_stream, "fileno"):
            return self.original_stream.fileno()
        raise OSError("TeeLogger has no file descriptor")


def existing_ids(directory: Path | None) -> dict[int, Path]:
    """Map the number of every ``id_NNNNNN`` file already in ``directory`` to its path."""
    if directory is None or not directory.is_dir():
        return {}
    found = {}
    for path in directory.iterdir():
        match = _ID_NAME_RE.fullmatch(path.name)
        if match and path.is_file():
            found[int(match.group(1))] = path
    return dict(sorted(found.items()))
