"""
The byte-level mutation engine for zestfuzz.

A child is derived from a copy of its parent's bytes by applying a random
number of operators in sequence. The number of operators is geometrically
distributed and shrinks for large inputs, so most children stay close to
their parent. Every operator works inside a target region: the whole buffer
for flat mutation, or the byte range consumed under one execution context
when execution indexing is available. Splicing replaces a range of the
parent with a range of a donor input; with indexing, both ranges come from
the same execution context so structurally unrelated bytes are not mixed.

All randomness is drawn from the ``random.Random`` instance the engine is
given, so a fixed seed and a fixed parent always yield the same child.
"""

from __future__ import annotations

import math
import random
from typing import Callable, Sequence

from zestfuzz.indexing import ExecutionContext
from zestfuzz.types import MutationInfo

# Mean number of operators applied to one child.
MEAN_MUTATION_COUNT = 8.0
# Mean length of a byte run touched by one operator.
MEAN_MUTATION_SIZE = 4.0
# Inputs above this size get proportionally fewer operators.
LARGE_INPUT_SIZE = 256
MAX_MUTATION_COUNT = 64
# AFL-style bound for byte increments and decrements.
ARITH_MAX = 35

Region = tuple[int, int]


def sample_geometric(rng: random.Random, mean: float) -> int:
    """Draw from a geometric distribution over 1, 2, 3... with the given mean."""
    if mean <= 1.0:
        return 1
    p = 1.0 / mean
    u = rng.random()
    return max(1, int(math.ceil(math.log(1.0 - u) / math.log(1.0 - p))))


class MutationEngine:
    """Produce mutated children from parent byte buffers."""

    OPERATORS = (
        "bit_flip",
        "arith",
        "random_overwrite",
        "insert_random",
        "insert_dictionary",
        "delete_run",
    )

    def __init__(
        self,
        rng: random.Random,
        dictionary: Sequence[bytes] = (),
        max_input_size: int | None = None,
        mean_mutation_count: float = MEAN_MUTATION_COUNT,
        mean_mutation_size: float = MEAN_MUTATION_SIZE,
    ):
        self.rng = rng
        self.dictionary = [bytes(token) for token in dictionary if token]
        self.max_input_size = max_input_size
        self.mean_mutation_count = mean_mutation_count
        self.mean_mutation_size = mean_mutation_size
        self._operators: dict[str, Callable[[bytearray, Region], int]] = {
            "bit_flip": self._bit_flip,
            "arith": self._arith,
            "random_overwrite": self._random_overwrite,
            "insert_random": self._insert_random,
            "insert_dictionary": self._insert_dictionary,
            "delete_run": self._delete_run,
        }

    def mutation_count(self, size: int) -> int:
        """Pick how many operators to apply to a child of a ``size``-byte parent."""
        mean = self.mean_mutation_count
        if size > LARGE_INPUT_SIZE:
            mean = max(1.0, mean / (1.0 + math.log2(size / LARGE_INPUT_SIZE)))
        return min(sample_geometric(self.rng, mean), MAX_MUTATION_COUNT)

    def mutate(
        self,
        data: bytes,
        region: Region | None = None,
        context: ExecutionContext | None = None,
        donor: bytes | None = None,
        donor_region: Region | None = None,
        donor_id: int | None = None,
    ) -> tuple[bytes, MutationInfo]:
        """
        Return a new child buffer and a description of how it was made.

        ``data`` is never modified. If ``donor`` is given the first operator
        is a splice from it. ``size_delta`` in the returned info is always
        ``len(child) - len(data)``.
        """
        child = bytearray(data)
        target = _clamp(region, len(child))
        operators: list[str] = []
        count = self.mutation_count(len(child))

        if donor is not None:
            delta = self.splice(child, region, donor, donor_region)
            operators.append("splice")
            target = _shift_end(target, delta, len(child))
            count -= 1

        for _ in range(count):
            name = self.rng.choice(self.OPERATORS)
            applied, delta = self.apply(child, name, target)
            operators.append(applied)
            target = _shift_end(target, delta, len(child))

        if self.max_input_size is not None and len(child) > self.max_input_size:
            del child[self.max_input_size :]

        info: MutationInfo = {
            "operators": operators,
            "size_delta": len(child) - len(data),
            "region": target,
            "context": context,
            "donor_id": donor_id,
        }
        return bytes(child), info

    def apply(self, data: bytearray, name: str, region: Region | None = None) -> tuple[str, int]:
        """
        Apply one named operator in place.

        Returns the name of the operator actually applied, which differs from
        ``name`` when it cannot work here, and the size change.
        """
        region = _clamp(region, len(data))
        if name == "insert_dictionary" and not self.dictionary:
            name = "insert_random"
        elif region[0] == region[1] and name not in ("insert_random", "insert_dictionary"):
            # Nothing to modify in an empty region; grow it instead.
            name = "insert_random"
        return name, self._operators[name](data, region)

    def splice(
        self,
        data: bytearray,
        region: Region | None,
        donor: bytes,
        donor_region: Region | None = None,
    ) -> int:
        """Replace a range of ``data`` with a range of ``donor`` in place."""
        start, end = _clamp(region, len(data))
        donor_start, donor_end = _clamp(donor_region, len(donor))
        if region is None:
            start, end = self._random_range(start, end)
        if donor_region is None:
            donor_start, donor_end = self._random_range(donor_start, donor_end)
        replacement = donor[donor_start:donor_end]
        data[start:end] = replacement
        return len(replacement) - (end - start)

    # --- Operators: each works inside [start, end) and returns its size delta ---

    def _bit_flip(self, data: bytearray, region: Region) -> int:
        for _ in range(self.rng.choice((1, 2, 4))):
            pos = self.rng.randrange(*region)
            data[pos] ^= 1 << self.rng.randrange(8)
        return 0

    def _arith(self, data: bytearray, region: Region) -> int:
        pos = self.rng.randrange(*region)
        kind = self.rng.randrange(3)
        if kind == 0:
            data[pos] = (data[pos] + self.rng.randint(1, ARITH_MAX)) & 0xFF
        elif kind == 1:
            data[pos] = (data[pos] - self.rng.randint(1, ARITH_MAX)) & 0xFF
        else:
            data[pos] = -data[pos] & 0xFF
        return 0

    def _random_overwrite(self, data: bytearray, region: Region) -> int:
        start, end = region
        pos = self.rng.randrange(start, end)
        length = min(sample_geometric(self.rng, self.mean_mutation_size), end - pos)
        for i in range(pos, pos + length):
            data[i] = self.rng.getrandbits(8)
        return 0

    def _insert_random(self, data: bytearray, region: Region) -> int:
        pos = self.rng.randint(*region)
        length = sample_geometric(self.rng, self.mean_mutation_size)
        data[pos:pos] = bytes(self.rng.getrandbits(8) for _ in range(length))
        return length

    def _insert_dictionary(self, data: bytearray, region: Region) -> int:
        pos = self.rng.randint(*region)
        token = self.rng.choice(self.dictionary)
        data[pos:pos] = token
        return len(token)

    def _delete_run(self, data: bytearray, region: Region) -> int:
        start, end = region
        pos = self.rng.randrange(start, end)
        length = min(sample_geometric(self.rng, self.mean_mutation_size), end - pos)
        del data[pos : pos + length]
        return -length

    def _random_range(self, start: int, end: int) -> Region:
        if start == end:
            return start, end
        a = self.rng.randint(start, end)
        b = self.rng.randint(start, end)
        return min(a, b), max(a, b)


def _clamp(region: Region | None, size: int) -> Region:
    if region is None:
        return 0, size
    start = min(max(region[0], 0), size)
    return start, min(max(region[1], start), size)


def _shift_end(region: Region, delta: int, size: int) -> Region:
    start, end = region
    return start, min(max(start, end + delta), size)


def parse_dictionary(text: str) -> list[bytes]:
    """
    Parse a dictionary file: one token per line, blank lines and ``#``
    comments ignored, optionally wrapped in double quotes, with ``\\xNN``
    escapes for arbitrary bytes.
    """
    tokens = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if len(line) >= 2 and line[0] == line[-1] == '"':
            line = line[1:-1]
        # unicode_escape reads the UTF-8 bytes as latin-1, so encoding back
        # to latin-1 restores them and turns each \xNN into one byte.
        tokens.append(line.encode("utf-8").decode("unicode_escape").encode("latin-1"))
    return tokens
