"""
Execution indexing for the zeal engine.

An execution index identifies *where* in the structured generator's logic a
byte of the input stream was consumed: the chain of active call sites, each
tagged with how many times that call site has been entered from the same
parent frame. Two runs that consume a byte under the same execution index
consumed it for the same structural purpose, which lets the mutator target
or splice byte ranges that belong to one generated sub-structure.
"""

from contextlib import contextmanager
from typing import Iterator

# An ordered tuple of (call-site id, iteration) pairs.
ExecutionIndex = tuple[tuple[int, int], ...]
# The call-stack part of an execution index, without the final read pair.
ExecutionContext = tuple[tuple[int, int], ...]

# Pseudo call site used to number successive reads inside one frame.
READ_SITE = -1

# Iterations beyond this collapse onto the same tag.
MAX_ITERATION_TAG = 64


class ExecutionIndexTracker:
    """
    Maintain the rolling execution index of the current run.

    ``enter``/``exit`` must mirror the generator's call nesting. Calls that
    exit more often than they entered are ignored rather than corrupting
    the stack, because the instrumentation may start tracing mid-frame.
    """

    def __init__(self, iteration_cap: int = MAX_ITERATION_TAG):
        if iteration_cap < 1:
            raise ValueError("iteration_cap must be at least 1")
        self.iteration_cap = iteration_cap
        self._stack: list[tuple[int, int]] = []
        # _counters[d] counts call sites entered from the frame at depth d.
        self._counters: list[dict[int, int]] = [{}]

    def reset(self) -> None:
        self._stack.clear()
        self._counters = [{}]

    @property
    def depth(self) -> int:
        return len(self._stack)

    def loop_iteration(self, call_site_id: int) -> int:
        """Bump and return the iteration tag of ``call_site_id`` at this depth."""
        counters = self._counters[len(self._stack)]
        count = counters.get(call_site_id, 0) + 1
        counters[call_site_id] = count
        return min(count, self.iteration_cap)

    def enter(self, call_site_id: int) -> None:
        iteration = self.loop_iteration(call_site_id)
        self._stack.append((call_site_id, iteration))
        depth = len(self._stack)
        if depth >= len(self._counters):
            self._counters.append({})
        else:
            self._counters[depth].clear()

    def exit(self) -> None:
        if not self._stack:
            return
        self._counters[len(self._stack)].clear()
        self._stack.pop()

    def current_context(self) -> ExecutionContext:
        return tuple(self._stack)

    def current_index(self, site_id: int = READ_SITE) -> ExecutionIndex:
        """Return the execution index of a read happening right now."""
        return tuple(self._stack) + ((site_id, self.loop_iteration(site_id)),)

    @contextmanager
    def track(self, call_site_id: int) -> Iterator[None]:
        """Mark a generator call site by hand, for code that is not traced."""
        self.enter(call_site_id)
        try:
            yield
        finally:
            self.exit()


def context_regions(indices: list[ExecutionIndex]) -> dict[ExecutionContext, tuple[int, int]]:
    """
    Map every call context seen in a run to the byte range it consumed.

    ``indices[i]`` is the execution index of byte ``i``. A context covers
    every byte read under it or under any of its callees; the range runs
    from the first such byte to one past the last.
    """
    regions: dict[ExecutionContext, tuple[int, int]] = {}
    for offset, index in enumerate(indices):
        # Every proper prefix of the index (including the empty root) is
        # an enclosing context of this byte.
        for depth in range(len(index)):
            context = index[:depth]
            span = regions.get(context)
            if span is None:
                regions[context] = (offset, offset + 1)
            else:
                regions[context] = (span[0], offset + 1)
    return regions
