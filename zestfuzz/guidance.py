"""
The guidance state machine of zestfuzz.

A guidance object drives the fuzzing loop one input at a time::

    while guidance.has_input():
        stream = guidance.get_input()
        outcome = harness.run(stream)
        guidance.handle_result(outcome)

ZestGuidance is the coverage-guided engine. It is parameterized by an
optional ExecutionIndexTracker: without one it mutates inputs as flat byte
buffers (zest); with one it can focus mutations and splices on the byte
range consumed under a specific call context (zeal). The corpus, mutation
and scheduling logic is shared by both.

ReplayGuidance runs a fixed list of inputs once each, for reproducing
saved failures.
"""

import random
import sys
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Protocol, Sequence

from zestfuzz.artifacts import ArtifactManager
from zestfuzz.config import SessionConfig
from zestfuzz.corpus_manager import Corpus
from zestfuzz.errors import GuidanceError
from zestfuzz.health import HealthMonitor
from zestfuzz.indexing import ExecutionContext, ExecutionIndexTracker, context_regions
from zestfuzz.mutator import MutationEngine
from zestfuzz.scoring import find_new_coverage
from zestfuzz.stream import InputStream
from zestfuzz.types import (
    Failure,
    Input,
    Invalid,
    MutationInfo,
    Origin,
    RunOutcome,
    SessionOutcome,
    SessionReport,
    Success,
    Timeout,
)

# Chance that a zeal child focuses on one execution context of its parent.
TARGETED_MUTATION_PROBABILITY = 0.5
# Chance that a child starts with a splice from another saved input.
SPLICE_PROBABILITY = 0.1
TARGETED_SPLICE_PROBABILITY = 0.25
# A parent is dropped for the cycle after this many attempts per unit of energy.
MAX_ATTEMPTS_PER_ENERGY = 10


class Guidance(Protocol):
    """What the fuzzing loop needs from a guidance."""

    def has_input(self) -> bool: ...

    def get_input(self) -> InputStream: ...

    def handle_result(self, outcome: RunOutcome) -> None: ...


class GuidanceState(str, Enum):
    SEEDING = "seeding"
    GENERATING = "generating"
    TERMINAL = "terminal"


@dataclass
class _Candidate:
    """Provenance of the input currently being executed."""

    origin: Origin
    parent_id: int | None = None
    mutation: MutationInfo | None = None
    # Id of the earlier session's saved input being replayed, if any.
    resume_id: int | None = None


class ZestGuidance:
    """Coverage-guided input generation with optional execution indexing."""

    def __init__(
        self,
        config: SessionConfig,
        corpus: Corpus,
        mutator: MutationEngine,
        rng: random.Random,
        seeds: Sequence[bytes] = (),
        artifacts: ArtifactManager | None = None,
        index_tracker: ExecutionIndexTracker | None = None,
        health_monitor: HealthMonitor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.corpus = corpus
        self.mutator = mutator
        self.rng = rng
        self.artifacts = artifacts if artifacts is not None else ArtifactManager()
        self.index_tracker = index_tracker
        self.health_monitor = health_monitor if health_monitor is not None else HealthMonitor()
        self.clock = clock
        self.verbose = not config.quiet

        self.state = GuidanceState.SEEDING
        self.termination_reason = ""
        # Saved inputs of an earlier session are replayed before any seed.
        self._pending_resumes = deque(corpus.resumable)
        # With no seeds, one synthetic fresh input stands in for them.
        self._pending_seeds = deque(bytes(seed) for seed in seeds)
        self._candidate: _Candidate | None = None

        self.trials = 0
        self.invalid_count = 0
        self.cycles = 0
        self.new_coverage_finds = 0
        self.start_time = clock()

        self._queue: deque[int] = deque()
        self._cycle_started = False
        self._parent: Input | None = None
        self._energy_left = 0
        self._attempts = 0
        self._attempt_limit = 0
        self._finds_at_selection = 0
        self._children_valid = 0

    # --- Budgets ---

    @property
    def elapsed(self) -> float:
        return self.clock() - self.start_time

    def _check_budgets(self) -> None:
        if self.state == GuidanceState.TERMINAL:
            return
        if self.config.trials is not None and self.trials >= self.config.trials:
            self._terminate("trial budget exhausted")
        elif self.config.duration is not None and self.elapsed >= self.config.duration:
            self._terminate("time budget exhausted")

    def _terminate(self, reason: str) -> None:
        self.state = GuidanceState.TERMINAL
        self.termination_reason = reason
        print(f"[*] Fuzzing stopped: {reason}.", file=sys.stderr)

    def add_seed(self, data: bytes) -> None:
        """Queue an extra seed. Only possible before seeding has finished."""
        if self.state != GuidanceState.SEEDING:
            raise GuidanceError("Seeds can only be added before generation starts")
        self._pending_seeds.append(bytes(data))

    def stop(self, reason: str) -> None:
        """Move to the terminal state from outside (e.g. on interrupt)."""
        if self.state != GuidanceState.TERMINAL:
            self._terminate(reason)

    # --- Guidance protocol ---

    def has_input(self) -> bool:
        self._check_budgets()
        return self.state != GuidanceState.TERMINAL

    def get_input(self) -> InputStream:
        if self.state == GuidanceState.TERMINAL:
            raise GuidanceError("No more inputs: the session has terminated")
        if self._candidate is not None:
            raise GuidanceError("get_input() called before the previous result was handled")

        if self.state == GuidanceState.SEEDING:
            if self._pending_resumes:
                seq_id, data = self._pending_resumes.popleft()
                self._candidate = _Candidate(Origin.SEED, resume_id=seq_id)
                return self._replay(data)
            if self._pending_seeds:
                self._candidate = _Candidate(Origin.SEED)
                return self._replay(self._pending_seeds.popleft())
            self._candidate = _Candidate(Origin.FRESH)
            return InputStream.fresh(self.rng, self.index_tracker)

        if self.config.blind or not self.corpus.inputs:
            self._candidate = _Candidate(Origin.FRESH)
            return InputStream.fresh(self.rng, self.index_tracker)

        return self._replay(self._next_child())

    def handle_result(self, outcome: RunOutcome) -> None:
        candidate = self._candidate
        if candidate is None:
            raise GuidanceError("handle_result() called without a pending input")
        self._candidate = None
        result = outcome.result

        self.artifacts.record_execution(outcome.data)

        if candidate.resume_id is not None and not isinstance(result, Success):
            print(
                f"[!] Saved input id_{candidate.resume_id:06d} no longer runs cleanly "
                f"({result.status}); leaving it out of the corpus.",
                file=sys.stderr,
            )

        if isinstance(result, Invalid):
            # Invalid runs count toward neither the trial budget nor a parent's energy.
            self.invalid_count += 1
            self.health_monitor.record_invalid(candidate.parent_id)
            self._after_result()
            return
        self.health_monitor.reset_invalid_streak()

        self.trials += 1
        if self._parent is not None and candidate.parent_id == self._parent.seq_id:
            self._energy_left -= 1
            self._children_valid += 1

        if isinstance(result, Success):
            self.health_monitor.reset_timeout_streak()
            if candidate.resume_id is not None:
                self._restore(outcome, candidate.resume_id)
            else:
                self._handle_success(outcome, candidate)
        elif isinstance(result, Timeout):
            self.health_monitor.record_timeout(candidate.parent_id)
            self._handle_failure(outcome)
        elif isinstance(result, Failure):
            self.health_monitor.reset_timeout_streak()
            self._handle_failure(outcome)
        else:
            raise GuidanceError(f"Unknown run result {result!r}")

        self._after_result()

    # --- Result handling ---

    def _handle_success(self, outcome: RunOutcome, candidate: _Candidate) -> None:
        signature = outcome.signature
        if signature is None:
            return
        if self.config.blind:
            # Coverage is still reported in blind mode, never used for steering.
            self.corpus.coverage.merge(signature)
            return

        info = find_new_coverage(self.corpus.coverage, signature, self.corpus.layout, self.verbose)
        if not info.is_interesting():
            self.corpus.coverage.seen_digests.add(signature.digest)
            return

        regions = context_regions(outcome.indices) if outcome.indices else {}
        contexts: tuple[ExecutionContext, ...] = ()
        if outcome.probe_contexts:
            contexts = tuple(
                dict.fromkeys(
                    outcome.probe_contexts[probe_id]
                    for probe_id in sorted(info.changes)
                    if probe_id in outcome.probe_contexts
                )
            )
        entry = self.corpus.add(
            outcome.data,
            signature,
            outcome.run_cost,
            candidate.origin,
            changes=info.changes,
            parent_id=candidate.parent_id,
            mutation=candidate.mutation,
            regions=regions,
            interesting_contexts=contexts,
        )
        self.new_coverage_finds += 1
        self.health_monitor.record_input_size_warning(entry.seq_id, entry.size)
        if self.verbose:
            print(
                f"  [+] New coverage ({info.new_probes} new probes, {info.bucket_increases} "
                f"bucket increases): saved {entry.filename} ({entry.size} bytes, "
                f"origin {entry.origin.value}, parent {entry.parent_id})",
                file=sys.stderr,
            )

    def _restore(self, outcome: RunOutcome, seq_id: int) -> None:
        # Restored under its old id whether or not it adds coverage now.
        if outcome.signature is None or self.config.blind:
            return
        regions = context_regions(outcome.indices) if outcome.indices else {}
        self.corpus.restore(seq_id, outcome.data, outcome.signature, outcome.run_cost, regions)

    def _handle_failure(self, outcome: RunOutcome) -> None:
        # Failure and timeout signatures never touch the cumulative best.
        crash = self.artifacts.save_failure(outcome)
        if crash is not None and self.config.exit_on_crash:
            self._terminate(f"stopping on first crash ({crash.fingerprint})")

    def _after_result(self) -> None:
        if (
            self.state == GuidanceState.SEEDING
            and not self._pending_resumes
            and not self._pending_seeds
        ):
            self.state = GuidanceState.GENERATING
            print(
                f"[*] Seeding complete: {len(self.corpus)} inputs saved. Generating...",
                file=sys.stderr,
            )
        self._check_budgets()

    # --- Child generation ---

    def _replay(self, data: bytes) -> InputStream:
        return InputStream.replay(data, self.config.fixed_size, self.index_tracker)

    def _start_cycle(self) -> None:
        if self._cycle_started:
            self.cycles += 1
            print(
                f"[*] Completed cycle {self.cycles}: {len(self.corpus)} inputs, "
                f"{len(self.corpus.favored)} favored, {len(self.corpus.coverage)} probes covered.",
                file=sys.stderr,
            )
        self._cycle_started = True
        favored = self.corpus.cull()
        self._queue = deque(favored or sorted(self.corpus.inputs))

    def _select_parent(self) -> Input:
        """Return the parent for the next child, advancing through the cycle."""
        while (
            self._parent is None
            or self._energy_left <= 0
            or self._attempts >= self._attempt_limit
        ):
            self._retire_parent()
            if not self._queue:
                self._start_cycle()
            self._parent = self.corpus.get(self._queue.popleft())
            energy = self.corpus.scheduler.energy(self._parent)
            self._energy_left = energy
            self._attempt_limit = energy * MAX_ATTEMPTS_PER_ENERGY
            self._attempts = 0
            self._children_valid = 0
            self._finds_at_selection = self._parent.total_finds
        self._attempts += 1
        return self._parent

    def _retire_parent(self) -> None:
        parent = self._parent
        if parent is None:
            return
        if self._attempts >= self._attempt_limit and self._energy_left > 0:
            self.health_monitor.record_parent_abandoned(parent.seq_id, self._attempts)
        elif parent.total_finds == self._finds_at_selection:
            self.health_monitor.record_parent_sterile(parent.seq_id, self._children_valid)
        self._parent = None

    def _next_child(self) -> bytes:
        parent = self._select_parent()
        parent.num_children += 1

        context = None
        region = None
        if self.index_tracker is not None and self.rng.random() < TARGETED_MUTATION_PROBABILITY:
            context = self.corpus.choose_context(self.rng, parent)
            if context is not None:
                region = parent.regions[context]

        donor = None
        donor_region = None
        splice_probability = TARGETED_SPLICE_PROBABILITY if context is not None else SPLICE_PROBABILITY
        if len(self.corpus) > 1 and self.rng.random() < splice_probability:
            choice = self.corpus.choose_donor(self.rng, context, exclude=parent.seq_id)
            if choice is not None:
                donor, donor_region = choice

        child, info = self.mutator.mutate(
            parent.data,
            region=region,
            context=context,
            donor=donor.data if donor is not None else None,
            donor_region=donor_region,
            donor_id=donor.seq_id if donor is not None else None,
        )
        origin = Origin.SPLICED if donor is not None else Origin.MUTATED
        self._candidate = _Candidate(origin, parent.seq_id, info)
        return child

    # --- Reporting ---

    def stats(self) -> dict:
        return {
            "state": self.state.value,
            "trials": self.trials,
            "invalid_runs": self.invalid_count,
            "corpus_size": len(self.corpus),
            "favored_inputs": len(self.corpus.favored),
            "cycles_completed": self.cycles,
            "covered_probes": len(self.corpus.coverage),
            "new_coverage_finds": self.new_coverage_finds,
            "failures_found": self.artifacts.failures_found,
            "unique_failures": self.artifacts.unique_failures,
            "timeouts_found": self.artifacts.timeouts_found,
            "unique_timeouts": self.artifacts.unique_timeouts,
        }

    def report(self, aborted: bool = False) -> SessionReport:
        if aborted:
            outcome = SessionOutcome.ABORTED
        elif self.artifacts.unique_artifacts:
            outcome = SessionOutcome.BUGS_FOUND
        else:
            outcome = SessionOutcome.CLEAN
        return SessionReport(
            outcome=outcome,
            trials=self.trials,
            invalid=self.invalid_count,
            unique_failures=self.artifacts.unique_failures,
            unique_timeouts=self.artifacts.unique_timeouts,
            corpus_size=len(self.corpus),
            cycles=self.cycles,
            covered_probes=len(self.corpus.coverage),
            elapsed_seconds=self.elapsed,
            termination_reason=self.termination_reason,
        )


class ReplayGuidance:
    """Run each of a fixed list of inputs exactly once."""

    def __init__(
        self,
        inputs: Sequence[tuple[str, bytes]],
        fixed_size: bool = False,
        index_tracker: ExecutionIndexTracker | None = None,
    ):
        self._pending = deque(inputs)
        self.fixed_size = fixed_size
        self.index_tracker = index_tracker
        self.results: list[tuple[str, RunOutcome]] = []
        self._current: str | None = None

    @classmethod
    def from_files(cls, paths: Sequence[Path], fixed_size: bool = False) -> "ReplayGuidance":
        return cls([(str(path), path.read_bytes()) for path in paths], fixed_size)

    def has_input(self) -> bool:
        return bool(self._pending)

    def get_input(self) -> InputStream:
        if not self._pending:
            raise GuidanceError("No more inputs to replay")
        name, data = self._pending.popleft()
        self._current = name
        return InputStream.replay(data, self.fixed_size, self.index_tracker)

    def handle_result(self, outcome: RunOutcome) -> None:
        if self._current is None:
            raise GuidanceError("handle_result() called without a pending input")
        name, self._current = self._current, None
        self.results.append((name, outcome))
        result = outcome.result
        print(f"[*] {name}: {result.status}", file=sys.stderr)
        if isinstance(result, Failure):
            print(result.traceback_text, file=sys.stderr)
        elif isinstance(result, Invalid):
            print(f"  -> {result.reason}", file=sys.stderr)

    @property
    def failures(self) -> list[tuple[str, RunOutcome]]:
        return [(name, o) for name, o in self.results if isinstance(o.result, (Failure, Timeout))]
