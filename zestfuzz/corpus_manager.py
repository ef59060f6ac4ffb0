import json
import logging
import math
import random
from collections import Counter
from pathlib import Path
from typing import Any

from zestfuzz.coverage import CoverageState, Signature, load_coverage_state, save_coverage_state
from zestfuzz.errors import CorpusIOError
from zestfuzz.indexing import ExecutionContext
from zestfuzz.probes import DEFAULT_LAYOUT, ProbeLayout
from zestfuzz.scoring import describe_changes
from zestfuzz.types import Input, MutationInfo, Origin
from zestfuzz.utils import existing_ids

logger = logging.getLogger(__name__)

CORPUS_DIRNAME = "corpus"
SAVES_LOG_NAME = "saves.jsonl"
COVERAGE_STATE_NAME = "coverage_state.pkl"

# Energy tuning
CHILDREN_BASELINE = 100
UNIQUE_COVER_MULTIPLIER = 2.0
MIN_ENERGY = 1
MAX_ENERGY = 1000
# Run costs are in seconds; anything faster than this counts as this fast.
MIN_RUN_COST = 1e-5


def _favor_key(entry: Input) -> float:
    """Smaller is better: a fast, short input is the cheapest representative."""
    return (entry.size + 1) * max(entry.run_cost, MIN_RUN_COST)


class CorpusScheduler:
    """Calculate how many children each favored input gets per cycle."""

    def __init__(self, corpus: "Corpus"):
        self.corpus = corpus

    def energy(self, entry: Input) -> int:
        """
        Smaller, faster inputs get more children; an input that is the only
        one covering some probe gets a rarity bonus.
        """
        size_factor = 1.0 + math.log2(1 + entry.size)
        cost_factor = 1.0 + math.log10(1 + max(entry.run_cost, MIN_RUN_COST) / MIN_RUN_COST) / 2
        energy = CHILDREN_BASELINE / (size_factor * cost_factor)
        if self.corpus.unique_covers(entry) > 0:
            energy *= UNIQUE_COVER_MULTIPLIER
        return max(MIN_ENERGY, min(MAX_ENERGY, int(round(energy))))


class Corpus:
    """
    Hold the saved inputs of a session and everything derived from them.

    The corpus owns the cumulative best signature, the per-probe
    representative (the best-scoring input covering each probe), the
    favored frontier culled from those representatives, and, for the zeal
    engine, a map from execution context to the byte ranges of saved
    inputs consumed under it. When ``output_dir`` is given, every save is
    written to ``<output_dir>/corpus`` and logged to ``saves.jsonl``.

    An output directory left by an earlier session is resumed: its coverage
    state is loaded, its saved inputs are listed in ``resumable`` for the
    guidance to replay and ``restore``, and new saves are numbered after
    them.
    """

    def __init__(
        self,
        output_dir: Path | None = None,
        layout: ProbeLayout = DEFAULT_LAYOUT,
        coverage: CoverageState | None = None,
    ):
        self.layout = layout
        if coverage is None:
            if output_dir is not None:
                coverage = load_coverage_state(output_dir / COVERAGE_STATE_NAME)
            else:
                coverage = CoverageState()
        self.coverage = coverage
        self.inputs: dict[int, Input] = {}
        self.top_rated: dict[int, int] = {}
        self.coverers: Counter[int] = Counter()
        self.favored: list[int] = []
        self.index_map: dict[ExecutionContext, list[tuple[int, int, int]]] = {}
        self.next_seq_id = 0
        self.scheduler = CorpusScheduler(self)
        self._needs_cull = False

        self.output_dir = output_dir
        self.corpus_dir: Path | None = None
        self.resumable: list[tuple[int, bytes]] = []
        if output_dir is not None:
            self.corpus_dir = output_dir / CORPUS_DIRNAME
            try:
                self.corpus_dir.mkdir(parents=True, exist_ok=True)
                self.resumable = [
                    (seq_id, path.read_bytes())
                    for seq_id, path in existing_ids(self.corpus_dir).items()
                ]
            except OSError as e:
                raise CorpusIOError(f"Cannot prepare corpus directory {self.corpus_dir}: {e}") from e
            if self.resumable:
                self.next_seq_id = self.resumable[-1][0] + 1
                logger.info(
                    f"[*] Resuming corpus: {len(self.resumable)} saved inputs, "
                    f"{len(self.coverage)} probes covered, next id {self.next_seq_id}"
                )

    def __len__(self) -> int:
        return len(self.inputs)

    def __contains__(self, seq_id: object) -> bool:
        return seq_id in self.inputs

    def get(self, seq_id: int) -> Input:
        return self.inputs[seq_id]

    def add(
        self,
        data: bytes,
        signature: Signature,
        run_cost: float,
        origin: Origin,
        changes: dict[int, tuple[int, int]] | None = None,
        parent_id: int | None = None,
        mutation: MutationInfo | None = None,
        regions: dict[ExecutionContext, tuple[int, int]] | None = None,
        interesting_contexts: tuple[ExecutionContext, ...] = (),
    ) -> Input:
        """
        Save a new input and fold its signature into the cumulative best.

        ``changes`` are the bucket increases that earned the save; they are
        recomputed from the cumulative best when not given.
        """
        if changes is None:
            changes = self.coverage.improvements(signature)
        entry = Input(
            seq_id=self.next_seq_id,
            data=bytes(data),
            origin=origin,
            signature=signature,
            run_cost=run_cost,
            parent_id=parent_id,
            mutation=mutation,
            regions=dict(regions or {}),
            interesting_contexts=interesting_contexts,
        )
        self.next_seq_id += 1
        self._register(entry)

        if parent_id is not None and parent_id in self.inputs:
            self.inputs[parent_id].total_finds += 1

        self._persist(entry, changes)
        logger.info(
            f"[+] Saved input {entry.filename} ({entry.size} bytes, {len(changes)} probe changes, "
            f"origin {entry.origin.value})"
        )
        return entry

    def restore(
        self,
        seq_id: int,
        data: bytes,
        signature: Signature,
        run_cost: float,
        regions: dict[ExecutionContext, tuple[int, int]] | None = None,
    ) -> Input:
        """
        Re-register an input saved by an earlier session under its old id.

        Nothing is written: the file is already in the corpus directory.
        """
        if seq_id in self.inputs:
            raise CorpusIOError(f"Input id_{seq_id:06d} is already in the corpus")
        entry = Input(
            seq_id=seq_id,
            data=bytes(data),
            origin=Origin.SEED,
            signature=signature,
            run_cost=run_cost,
            regions=dict(regions or {}),
        )
        self._register(entry)
        self.next_seq_id = max(self.next_seq_id, seq_id + 1)
        logger.debug(f"[*] Restored input {entry.filename} ({entry.size} bytes)")
        return entry

    def _register(self, entry: Input) -> None:
        self.inputs[entry.seq_id] = entry
        signature = entry.signature
        self.coverage.merge(signature)

        for probe_id in signature:
            self.coverers[probe_id] += 1
            incumbent_id = self.top_rated.get(probe_id)
            # Strictly better only: on a tie the earlier (lower id) input stays.
            if incumbent_id is None or _favor_key(entry) < _favor_key(self.inputs[incumbent_id]):
                self.top_rated[probe_id] = entry.seq_id
                self._needs_cull = True

        for context, (start, end) in entry.regions.items():
            if context:
                self.index_map.setdefault(context, []).append((entry.seq_id, start, end))

    def cull(self) -> list[int]:
        """
        Recompute the favored frontier with a greedy set cover.

        Probes are visited from the rarest (fewest saved inputs cover them)
        to the most common, ties broken by probe id. Each probe not yet
        covered by a favored input promotes its representative, whose whole
        signature then counts as covered.
        """
        if not self._needs_cull:
            return self.favored
        covered: set[int] = set()
        favored: set[int] = set()
        responsibilities: dict[int, set[int]] = {}
        for probe_id in sorted(self.top_rated, key=lambda p: (self.coverers[p], p)):
            seq_id = self.top_rated[probe_id]
            responsibilities.setdefault(seq_id, set()).add(probe_id)
            if probe_id in covered:
                continue
            favored.add(seq_id)
            covered |= self.inputs[seq_id].signature.probes

        for seq_id, entry in self.inputs.items():
            entry.favored = seq_id in favored
            entry.responsibilities = frozenset(responsibilities.get(seq_id, ()))
        self.favored = sorted(favored)
        self._needs_cull = False
        logger.debug(f"[*] Culled corpus: {len(self.favored)} favored of {len(self.inputs)} inputs")
        return self.favored

    def unique_covers(self, entry: Input) -> int:
        """Count the probes that no other saved input covers."""
        return sum(1 for probe_id in entry.signature if self.coverers[probe_id] == 1)

    def choose_context(self, rng: random.Random, entry: Input) -> ExecutionContext | None:
        """Pick an execution context of ``entry`` to focus mutation on."""
        candidates = [c for c in entry.interesting_contexts if c and c in entry.regions]
        if not candidates:
            candidates = [c for c in entry.regions if c]
        if not candidates:
            return None
        return rng.choice(candidates)

    def choose_donor(
        self,
        rng: random.Random,
        context: ExecutionContext | None = None,
        exclude: int | None = None,
    ) -> tuple[Input, tuple[int, int] | None] | None:
        """
        Pick a splice donor other than ``exclude``.

        With a context, only inputs that consumed bytes under that same
        context qualify, and their byte range for it is returned too.
        """
        if context is not None:
            candidates = [item for item in self.index_map.get(context, ()) if item[0] != exclude]
            if not candidates:
                return None
            seq_id, start, end = rng.choice(candidates)
            return self.inputs[seq_id], (start, end)
        seq_ids = [seq_id for seq_id in self.inputs if seq_id != exclude]
        if not seq_ids:
            return None
        return self.inputs[rng.choice(seq_ids)], None

    # --- Persistence ---

    def _persist(self, entry: Input, changes: dict[int, tuple[int, int]]) -> None:
        if self.corpus_dir is None:
            return
        record: dict[str, Any] = {
            "seq_id": entry.seq_id,
            "timestamp": entry.discovery_time,
            "origin": entry.origin.value,
            "parent_id": entry.parent_id,
            "size": entry.size,
            "run_cost": entry.run_cost,
            "probes": describe_changes(changes, self.layout),
        }
        if entry.mutation:
            record["operators"] = entry.mutation.get("operators", [])
        try:
            (self.corpus_dir / entry.filename).write_bytes(entry.data)
            with open(self.corpus_dir / SAVES_LOG_NAME, "a", encoding="utf-8") as f:
                f.write(json.dumps(record) + "\n")
        except OSError as e:
            raise CorpusIOError(f"Failed to save {entry.filename}: {e}") from e

    def save_coverage(self) -> None:
        if self.output_dir is None:
            return
        try:
            save_coverage_state(self.coverage, self.output_dir / COVERAGE_STATE_NAME)
        except OSError as e:
            raise CorpusIOError(f"Failed to save coverage state: {e}") from e


def load_seeds(input_dir: Path) -> list[bytes]:
    """Read every regular file in ``input_dir`` (sorted by name) as a seed."""
    if not input_dir.is_dir():
        raise CorpusIOError(f"Seed directory {input_dir} does not exist")
    seeds = []
    try:
        for path in sorted(input_dir.iterdir()):
            if path.is_file() and not path.name.startswith("."):
                seeds.append(path.read_bytes())
    except OSError as e:
        raise CorpusIOError(f"Failed to read seeds from {input_dir}: {e}") from e
    logger.info(f"[*] Loaded {len(seeds)} seed inputs from {input_dir}")
    return seeds
