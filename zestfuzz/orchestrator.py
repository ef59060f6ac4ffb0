"""
Session assembly, the fuzzing loop, and the command-line interface.

``FuzzSession`` wires the engine together from a FuzzTarget and a
SessionConfig. ``run_fuzzing`` is the loop shared by fuzzing, the
configuration pre-round and replay. ``main`` is the ``zestfuzz`` CLI with
two subcommands: ``fuzz`` and ``repro``.
"""

import argparse
import json
import logging
import os
import platform
import random
import socket
import sys
import time
import traceback
from datetime import datetime
from pathlib import Path
from textwrap import dedent

import psutil

from zestfuzz.artifacts import ArtifactManager, TelemetryManager
from zestfuzz.config import ENGINES, SessionConfig, parse_duration
from zestfuzz.configfuzz import DefaultConfigCollectionGuidance
from zestfuzz.corpus_manager import Corpus, load_seeds
from zestfuzz.coverage import CoverageTracker
from zestfuzz.errors import GuidanceError
from zestfuzz.guidance import Guidance, ReplayGuidance, ZestGuidance
from zestfuzz.harness import Harness
from zestfuzz.health import HealthMonitor
from zestfuzz.indexing import ExecutionIndexTracker
from zestfuzz.instrument import Instrumentor
from zestfuzz.mutator import MutationEngine, parse_dictionary
from zestfuzz.probes import DEFAULT_LAYOUT, ProbeLayout
from zestfuzz.target import FuzzTarget, load_target
from zestfuzz.types import SessionOutcome, SessionReport, Success
from zestfuzz.utils import RUN_STATS_NAME, TeeLogger, load_run_stats

DEFAULT_OUTPUT_DIR = Path("fuzz-results")
LOGS_DIRNAME = "logs"
CONFIG_KEYS_NAME = "config_keys.json"

STATUS_INTERVAL_SECONDS = 5.0
TIMESERIES_INTERVAL_SECONDS = 60.0

EXIT_CLEAN = 0
EXIT_BUGS_FOUND = 1
EXIT_ABORTED = 2
EXIT_INTERRUPTED = 130


def run_fuzzing(
    guidance: Guidance,
    harness: Harness,
    on_status=None,
    status_interval: float = STATUS_INTERVAL_SECONDS,
) -> None:
    """Drive ``guidance`` until it runs out of inputs."""
    last_status = time.monotonic()
    while guidance.has_input():
        stream = guidance.get_input()
        outcome = harness.run(stream)
        guidance.handle_result(outcome)
        if on_status is not None:
            now = time.monotonic()
            if now - last_status >= status_interval:
                on_status()
                last_status = now


def default_includes(target: FuzzTarget) -> tuple[str, ...]:
    """Instrument the top-level package the test function lives in."""
    module = getattr(target.test, "__module__", None) or ""
    return (module.split(".")[0],) if module else ()


class FuzzSession:
    """All the collaborators of one fuzzing session."""

    def __init__(
        self,
        target: FuzzTarget,
        config: SessionConfig,
        layout: ProbeLayout = DEFAULT_LAYOUT,
    ):
        self.target = target
        self.config = config
        self.layout = layout
        self.rng = random.Random(config.random_seed)
        output_dir = config.output_dir

        self.index_tracker = ExecutionIndexTracker() if config.uses_index else None
        self.tracker = None
        self.instrumentor = None
        if not config.disable_coverage:
            self.tracker = CoverageTracker(layout, index_tracker=self.index_tracker)
            self.instrumentor = Instrumentor(
                self.tracker,
                self.index_tracker,
                includes=config.includes or default_includes(target),
                excludes=config.excludes,
                index_includes=config.index_includes,
            )

        self.logs_dir = None
        if output_dir is not None:
            self.logs_dir = output_dir / LOGS_DIRNAME
            self.logs_dir.mkdir(parents=True, exist_ok=True)

        self.health_monitor = HealthMonitor(
            self.logs_dir / "health_events.jsonl" if self.logs_dir else None
        )
        self.artifacts = ArtifactManager(
            failures_dir=output_dir / "failures" if output_dir else None,
            timeouts_dir=output_dir / "timeouts" if output_dir else None,
            all_dir=output_dir / "all" if output_dir and config.save_all else None,
            health_monitor=self.health_monitor,
        )
        self.corpus = Corpus(output_dir, layout)
        if self.instrumentor is not None and self.corpus.coverage.probe_map:
            self.instrumentor.load_probe_map(self.corpus.coverage.probe_map)
        self.mutator = MutationEngine(self.rng, config.dictionary, config.max_input_size)
        self.harness = Harness(
            target,
            self.tracker,
            self.index_tracker,
            self.instrumentor,
            config.run_timeout,
        )
        seeds = load_seeds(config.input_dir) if config.input_dir is not None else []
        self.guidance = ZestGuidance(
            config,
            self.corpus,
            self.mutator,
            self.rng,
            seeds=seeds,
            artifacts=self.artifacts,
            index_tracker=self.index_tracker,
            health_monitor=self.health_monitor,
        )

        self.run_stats: dict = {}
        self.telemetry = None
        if output_dir is not None:
            self.run_stats = load_run_stats(output_dir / RUN_STATS_NAME)
            self.run_stats["total_sessions"] = self.run_stats.get("total_sessions", 0) + 1
            self.telemetry = TelemetryManager(
                self.run_stats,
                self.guidance,
                output_dir / RUN_STATS_NAME,
                self.logs_dir / "timeseries.jsonl",
            )
        self._last_timeseries = time.monotonic()

    def run_preround(self) -> dict:
        """Run the configuration-collection pre-round and return the keys it saw."""
        print("[*] Running configuration pre-round...", file=sys.stderr)
        preround = DefaultConfigCollectionGuidance(self.rng, index_tracker=self.index_tracker)
        run_fuzzing(preround, self.harness)
        collected = preround.collected
        if self.config.output_dir is not None:
            with open(self.config.output_dir / CONFIG_KEYS_NAME, "w", encoding="utf-8") as f:
                json.dump(collected, f, indent=2, sort_keys=True, default=repr)
        if (
            self.config.preround_seed
            and preround.outcome is not None
            and isinstance(preround.outcome.result, Success)
        ):
            self.guidance.add_seed(preround.outcome.data)
        return collected

    def print_status(self) -> None:
        stats = self.guidance.stats()
        elapsed = self.guidance.elapsed
        rate = stats["trials"] / elapsed if elapsed > 0 else 0.0
        print(
            f"[+] {elapsed:7.1f}s | trials {stats['trials']} ({rate:.0f}/s) | "
            f"invalid {stats['invalid_runs']} | corpus {stats['corpus_size']} "
            f"({stats['favored_inputs']} favored) | cycles {stats['cycles_completed']} | "
            f"probes {stats['covered_probes']} | unique failures {stats['unique_failures']}",
            file=sys.stderr,
        )
        if self.telemetry is not None:
            self.telemetry.update_and_save_run_stats()
            now = time.monotonic()
            if now - self._last_timeseries >= TIMESERIES_INTERVAL_SECONDS:
                self.telemetry.log_timeseries_datapoint()
                self._last_timeseries = now

    def run(self) -> SessionReport:
        """Run the session to completion. Internal errors propagate."""
        if self.config.config_fuzz:
            self.run_preround()
        print(
            f"[+] Starting {self.config.engine} fuzzing of {self.target.name or 'target'}"
            f"{' (blind)' if self.config.blind else ''}.",
            file=sys.stderr,
        )
        try:
            run_fuzzing(self.guidance, self.harness, on_status=self.print_status)
        except KeyboardInterrupt:
            self.guidance.stop("interrupted by user")
            raise
        finally:
            if self.instrumentor is not None:
                self.corpus.coverage.probe_map = self.instrumentor.probe_map()
            self.corpus.save_coverage()
            if self.telemetry is not None:
                self.telemetry.update_and_save_run_stats()
                self.telemetry.log_timeseries_datapoint()
        return self.guidance.report()


# ---------------------------------------------------------------------------
# Command-line interface
# ---------------------------------------------------------------------------


def _parse_env(pairs: list[str]) -> dict[str, str]:
    env = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"--env expects KEY=VALUE, got {pair!r}")
        env[key] = value
    return env


def build_config(args: argparse.Namespace) -> SessionConfig:
    dictionary: tuple[bytes, ...] = ()
    if args.dict:
        dictionary = tuple(parse_dictionary(Path(args.dict).read_text(encoding="utf-8")))
    return SessionConfig(
        random_seed=args.seed,
        duration=parse_duration(args.time) if args.time else None,
        trials=args.trials,
        input_dir=Path(args.input_dir) if args.input_dir else None,
        output_dir=Path(args.out),
        engine=args.engine,
        blind=args.blind,
        fixed_size=args.fixed_size,
        exit_on_crash=args.exit_on_crash,
        run_timeout=args.run_timeout,
        save_all=args.save_all,
        quiet=args.quiet,
        disable_coverage=args.no_cov,
        includes=tuple(args.include),
        excludes=tuple(args.exclude),
        index_includes=tuple(args.index_include),
        dictionary=dictionary,
        max_input_size=args.max_input_size,
        config_fuzz=args.config_fuzz,
        preround_seed=args.preround_seed,
        env=_parse_env(args.env),
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zestfuzz",
        description="zestfuzz: coverage-guided structured fuzzing for Python.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    fuzz = subparsers.add_parser("fuzz", help="Fuzz a target.")
    fuzz.add_argument("target", help="The fuzz target, as 'package.module:function'.")
    fuzz.add_argument("--time", default=None, help="Time budget, e.g. 1h30m, 10m, 45s.")
    fuzz.add_argument("--trials", type=int, default=None, help="Stop after N valid trials.")
    fuzz.add_argument("--seed", type=int, default=None, help="Random seed for reproducible runs.")
    fuzz.add_argument(
        "--in", dest="input_dir", default=None, help="Directory of seed inputs (raw bytes)."
    )
    fuzz.add_argument(
        "--out", default=str(DEFAULT_OUTPUT_DIR), help="Output directory (default: fuzz-results)."
    )
    fuzz.add_argument("--engine", choices=ENGINES, default="zest", help="Guidance engine.")
    fuzz.add_argument(
        "--blind", action="store_true", help="Unguided random generation (coverage only reported)."
    )
    fuzz.add_argument(
        "--no-cov", action="store_true", help="Disable coverage collection (requires --blind)."
    )
    fuzz.add_argument(
        "--fixed-size",
        action="store_true",
        help="Pad inputs with zero bytes instead of rejecting reads past their end.",
    )
    fuzz.add_argument(
        "--exit-on-crash", action="store_true", help="Stop at the first unique failure."
    )
    fuzz.add_argument(
        "--run-timeout", type=float, default=None, help="Per-run timeout in seconds."
    )
    fuzz.add_argument("--save-all", action="store_true", help="Save every executed input.")
    fuzz.add_argument("--quiet", action="store_true", help="Suppress per-trial detail lines.")
    fuzz.add_argument(
        "--include", action="append", default=[], help="Module prefix to instrument (repeatable)."
    )
    fuzz.add_argument(
        "--exclude", action="append", default=[], help="Module prefix to skip (repeatable)."
    )
    fuzz.add_argument(
        "--index-include",
        action="append",
        default=[],
        help="Module prefix whose calls form execution indices (zeal; repeatable).",
    )
    fuzz.add_argument("--dict", default=None, help="Dictionary file, one token per line.")
    fuzz.add_argument(
        "--max-input-size", type=int, default=10 * 1024, help="Truncate mutated inputs to N bytes."
    )
    fuzz.add_argument(
        "--config-fuzz",
        action="store_true",
        help="Run a configuration-collection pre-round before fuzzing.",
    )
    fuzz.add_argument(
        "--preround-seed",
        action="store_true",
        help="Use the pre-round input as an extra seed.",
    )
    fuzz.add_argument(
        "--env", action="append", default=[], help="Set KEY=VALUE in the environment (repeatable)."
    )

    repro = subparsers.add_parser("repro", help="Replay saved inputs against a target.")
    repro.add_argument("target", help="The fuzz target, as 'package.module:function'.")
    repro.add_argument("inputs", nargs="+", help="Input files to replay.")
    repro.add_argument("--fixed-size", action="store_true", help="Replay in fixed-size mode.")
    repro.add_argument(
        "--env", action="append", default=[], help="Set KEY=VALUE in the environment (repeatable)."
    )
    return parser


def _repro(args: argparse.Namespace) -> int:
    os.environ.update(_parse_env(args.env))
    target = load_target(args.target)
    guidance = ReplayGuidance.from_files([Path(p) for p in args.inputs], args.fixed_size)
    run_fuzzing(guidance, Harness(target))
    return EXIT_BUGS_FOUND if guidance.failures else EXIT_CLEAN


def _fuzz(args: argparse.Namespace) -> int:
    config = build_config(args)
    os.environ.update(config.env)
    output_dir = config.output_dir
    logs_dir = output_dir / LOGS_DIRNAME
    logs_dir.mkdir(parents=True, exist_ok=True)

    run_start_time = datetime.now()
    timestamp_iso = run_start_time.isoformat()
    safe_timestamp = timestamp_iso.replace(":", "-").replace("+", "Z")
    log_path = logs_dir / f"fuzz_run_{safe_timestamp}.log"

    original_stdout = sys.stdout
    original_stderr = sys.stderr

    # This initial print goes only to the console
    print(f"[+] Starting zestfuzz. Full log will be at: {log_path}")

    tee_logger = TeeLogger(log_path, original_stdout, verbose=not config.quiet)
    sys.stdout = tee_logger
    sys.stderr = tee_logger
    log_handler = logging.StreamHandler(tee_logger)
    log_handler.setFormatter(logging.Formatter("%(message)s"))
    package_logger = logging.getLogger("zestfuzz")
    previous_level = package_logger.level
    package_logger.addHandler(log_handler)
    package_logger.setLevel(logging.WARNING if config.quiet else logging.INFO)

    termination_reason = "Completed"
    exit_code = EXIT_CLEAN
    report: SessionReport | None = None
    session: FuzzSession | None = None
    start_stats = load_run_stats(output_dir / RUN_STATS_NAME)

    try:
        header = f"""
================================================================================
ZESTFUZZ RUN
================================================================================
- Hostname:          {socket.gethostname()}
- Platform:          {platform.platform()}
- Process ID:        {os.getpid()}
- CPU Count:         {psutil.cpu_count()}
- Python Version:    {sys.version.replace(chr(10), " ")}
- Working Dir:       {Path.cwd()}
- Log File:          {log_path}
- Start Time:        {timestamp_iso}
- Command:           {" ".join(sys.argv)}
- Target:            {args.target}
- Engine:            {config.engine}{" (blind)" if config.blind else ""}
- Random Seed:       {config.random_seed}
- Time Budget:       {config.duration} seconds
- Trial Budget:      {config.trials}
- Run Timeout:       {config.run_timeout} seconds
--------------------------------------------------------------------------------
Initial Stats:
{json.dumps(start_stats, indent=4)}
================================================================================

"""
        print(dedent(header))

        target = load_target(args.target)
        session = FuzzSession(target, config)
        report = session.run()
        termination_reason = report.termination_reason or termination_reason
        exit_code = EXIT_BUGS_FOUND if report.outcome == SessionOutcome.BUGS_FOUND else EXIT_CLEAN
    except KeyboardInterrupt:
        print("\n[!] Fuzzing stopped by user.")
        termination_reason = "KeyboardInterrupt"
        exit_code = EXIT_INTERRUPTED
        if session is not None:
            report = session.guidance.report()
    except GuidanceError as e:
        termination_reason = f"Aborted: {e}"
        exit_code = EXIT_ABORTED
        print(f"\n[!!!] Internal guidance error, aborting: {e}", file=original_stderr)
        traceback.print_exc(file=original_stderr)
        if session is not None:
            report = session.guidance.report(aborted=True)
    finally:
        print("\n" + "=" * 80)
        print("FUZZING RUN SUMMARY")
        print("=" * 80)

        end_time = datetime.now()
        duration = end_time - run_start_time
        end_stats = load_run_stats(output_dir / RUN_STATS_NAME)
        duration_secs = duration.total_seconds()
        trials = report.trials if report else end_stats.get("trials", 0)
        exec_per_sec = trials / duration_secs if duration_secs > 0 else 0

        summary = f"""
- Termination:       {termination_reason}
- Outcome:           {report.outcome.value if report else "aborted"}
- End Time:          {end_time.isoformat()}
- Total Duration:    {str(duration)}

--- Discoveries This Run ---
- Corpus Size:       {report.corpus_size if report else "n/a"}
- Covered Probes:    {report.covered_probes if report else "n/a"}
- Unique Failures:   {report.unique_failures if report else "n/a"}
- Unique Timeouts:   {report.unique_timeouts if report else "n/a"}

--- Performance This Run ---
- Valid Trials:      {trials}
- Invalid Runs:      {report.invalid if report else "n/a"}
- Execs per Second:  {exec_per_sec:.2f}

--- Cumulative Stats (all sessions) ---
{json.dumps(end_stats, indent=4)}
================================================================================
"""
        print(dedent(summary))

        package_logger.removeHandler(log_handler)
        package_logger.setLevel(previous_level)
        tee_logger.close()
        sys.stdout = original_stdout
        sys.stderr = original_stderr
        print(f"[+] Fuzzing session finished. Full log saved to: {log_path}")
    return exit_code


def main(argv: list[str] | None = None) -> int:
    """Parse command-line arguments and run the requested zestfuzz command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command == "repro":
        try:
            return _repro(args)
        except KeyboardInterrupt:
            return EXIT_INTERRUPTED
        except GuidanceError as e:
            print(f"[!!!] Internal guidance error, aborting: {e}", file=sys.stderr)
            return EXIT_ABORTED
        except ValueError as e:
            parser.error(str(e))
    try:
        return _fuzz(args)
    except ValueError as e:
        parser.error(str(e))


if __name__ == "__main__":
    sys.exit(main())
