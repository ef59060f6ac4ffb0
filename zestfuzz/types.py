"""Shared type definitions for zestfuzz.

This module holds the data that flows between the harness, the guidance
state machine and the corpus. Keeping it in one place avoids circular
imports between those layers.

The RunResult hierarchy uses frozen dataclasses so callers dispatch with
isinstance() and results cannot be changed after classification.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, TypedDict

from zestfuzz.coverage import Signature
from zestfuzz.indexing import ExecutionContext, ExecutionIndex


class Origin(str, Enum):
    """Where an input's bytes came from."""

    SEED = "seed"
    FRESH = "fresh"
    MUTATED = "mutated"
    SPLICED = "spliced"
    PREROUND = "preround"


class MutationInfo(TypedDict, total=False):
    """Describes how a child buffer was derived from its parent.

    Uses total=False because fresh and seed inputs carry no mutation at all
    and only splices have a donor.
    """

    operators: list[str]
    size_delta: int
    region: tuple[int, int] | None
    context: ExecutionContext | None
    donor_id: int | None


# ---------------------------------------------------------------------------
# RunResult hierarchy: exactly one per execution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunResult:
    """Base class of the four run outcomes."""

    STATUS: ClassVar[str] = "UNKNOWN"

    @property
    def status(self) -> str:
        return self.STATUS


@dataclass(frozen=True)
class Success(RunResult):
    STATUS: ClassVar[str] = "SUCCESS"


@dataclass(frozen=True)
class Failure(RunResult):
    """The test raised or violated an assertion."""

    STATUS: ClassVar[str] = "FAILURE"

    cause: BaseException
    traceback_text: str = ""


@dataclass(frozen=True)
class Invalid(RunResult):
    """The generator could not decode the stream into a well-formed value."""

    STATUS: ClassVar[str] = "INVALID"

    reason: str = ""


@dataclass(frozen=True)
class Timeout(RunResult):
    """The run was aborted by the watchdog."""

    STATUS: ClassVar[str] = "TIMEOUT"

    limit_seconds: float = 0.0
    cause: BaseException | None = None
    traceback_text: str = ""


@dataclass
class RunOutcome:
    """Everything the harness observed about one execution."""

    result: RunResult
    data: bytes
    signature: Signature | None
    run_cost: float
    indices: list[ExecutionIndex] | None = None
    probe_contexts: dict[int, ExecutionContext] | None = None


# ---------------------------------------------------------------------------
# Saved inputs
# ---------------------------------------------------------------------------


@dataclass
class Input:
    """An input that earned a place in the corpus.

    The byte buffer is never modified after saving; mutation always
    produces a new buffer.
    """

    seq_id: int
    data: bytes
    origin: Origin
    signature: Signature
    run_cost: float
    parent_id: int | None = None
    mutation: MutationInfo | None = None
    favored: bool = False
    responsibilities: frozenset[int] = frozenset()
    # Byte range [start, end) consumed under each call context (zeal only).
    regions: dict[ExecutionContext, tuple[int, int]] = field(default_factory=dict)
    # Contexts in which this input's novel probes first fired (zeal only).
    interesting_contexts: tuple[ExecutionContext, ...] = ()
    discovery_time: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    num_children: int = 0
    total_finds: int = 0

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def filename(self) -> str:
        return f"id_{self.seq_id:06d}"


# ---------------------------------------------------------------------------
# Session-level reporting
# ---------------------------------------------------------------------------


class SessionOutcome(str, Enum):
    CLEAN = "clean"
    BUGS_FOUND = "bugs_found"
    ABORTED = "aborted"


@dataclass
class SessionReport:
    outcome: SessionOutcome
    trials: int = 0
    invalid: int = 0
    unique_failures: int = 0
    unique_timeouts: int = 0
    corpus_size: int = 0
    cycles: int = 0
    covered_probes: int = 0
    elapsed_seconds: float = 0.0
    termination_reason: str = ""
