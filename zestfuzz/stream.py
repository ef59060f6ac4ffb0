"""
The pseudorandom input stream handed to structured generators.

A stream turns a lazy sequence of bytes into primitive decisions (bytes,
booleans, bounded integers, choices). In fresh mode the bytes come from a
seeded random generator and never run out. In replay mode they come from a
fixed buffer: running off the end raises EndOfStream, or, in fixed-size
mode, yields a zero sentinel that is not recorded as part of the input.

Every byte actually pulled from the backing source is recorded, so the
bytes consumed by a run (not the whole parent buffer) are what gets saved.
Streams are not rewindable; replaying means building a new stream over the
recorded bytes.
"""

from __future__ import annotations

import random
from typing import TYPE_CHECKING, Iterator, Sequence, TypeVar

from zestfuzz.errors import EndOfStream

if TYPE_CHECKING:
    from zestfuzz.indexing import ExecutionIndex, ExecutionIndexTracker

T = TypeVar("T")

SENTINEL = 0


def fresh_bytes(rng: random.Random) -> Iterator[int]:
    while True:
        yield rng.getrandbits(8)


def buffer_bytes(data: bytes) -> Iterator[int]:
    yield from data


class InputStream:
    """A pull-based source of bytes for one run."""

    def __init__(
        self,
        source: Iterator[int],
        backing_size: int | None = None,
        fixed_size: bool = False,
        index_tracker: "ExecutionIndexTracker | None" = None,
    ):
        self._source = source
        self.backing_size = backing_size
        self.fixed_size = fixed_size
        self.index_tracker = index_tracker
        self._consumed = bytearray()
        self._indices: list["ExecutionIndex"] | None = [] if index_tracker is not None else None
        self.overrun = 0

    @classmethod
    def fresh(
        cls, rng: random.Random, index_tracker: "ExecutionIndexTracker | None" = None
    ) -> "InputStream":
        return cls(fresh_bytes(rng), index_tracker=index_tracker)

    @classmethod
    def replay(
        cls,
        data: bytes,
        fixed_size: bool = False,
        index_tracker: "ExecutionIndexTracker | None" = None,
    ) -> "InputStream":
        return cls(
            buffer_bytes(bytes(data)),
            backing_size=len(data),
            fixed_size=fixed_size,
            index_tracker=index_tracker,
        )

    # --- Primitive draws ---

    def read_byte(self) -> int:
        try:
            value = next(self._source)
        except StopIteration:
            if self.fixed_size:
                self.overrun += 1
                return SENTINEL
            raise EndOfStream(f"Input exhausted after {len(self._consumed)} bytes") from None
        self._consumed.append(value)
        if self._indices is not None:
            self._indices.append(self.index_tracker.current_index())
        return value

    def read(self, n: int) -> bytes:
        return bytes(self.read_byte() for _ in range(n))

    def read_bool(self) -> bool:
        return bool(self.read_byte() & 1)

    def read_int(self, low: int, high: int) -> int:
        """Return an integer in the inclusive range [low, high]."""
        if high < low:
            raise ValueError(f"Empty range [{low}, {high}]")
        span = high - low + 1
        if span == 1:
            return low
        num_bytes = ((span - 1).bit_length() + 7) // 8
        raw = int.from_bytes(self.read(num_bytes), "little")
        return low + raw % span

    def read_choice(self, options: Sequence[T]) -> T:
        if not options:
            raise ValueError("Cannot choose from an empty sequence")
        return options[self.read_int(0, len(options) - 1)]

    # --- Iterator protocol: end of data ends iteration instead of raising ---

    def __iter__(self) -> "InputStream":
        return self

    def __next__(self) -> int:
        try:
            return self.read_byte()
        except EndOfStream:
            raise StopIteration from None

    # --- Run bookkeeping ---

    @property
    def consumed(self) -> bytes:
        return bytes(self._consumed)

    @property
    def position(self) -> int:
        return len(self._consumed)

    @property
    def remaining(self) -> int | None:
        """Bytes left in the backing buffer, or None for an unbounded stream."""
        if self.backing_size is None:
            return None
        return max(0, self.backing_size - len(self._consumed))

    @property
    def exhausted(self) -> bool:
        """True once a fixed-size stream has served a sentinel byte."""
        return self.overrun > 0

    @property
    def indices(self) -> list["ExecutionIndex"] | None:
        return self._indices
