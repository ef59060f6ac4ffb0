"""
Line-coverage instrumentation for Python targets.

The Instrumentor installs a ``sys.settrace`` hook for the duration of a
run and turns interpreter events into engine callbacks:

- every executed line of an instrumented code object fires
  ``CoverageTracker.record`` with a packed probe id;
- with an execution index tracker attached, every call into and return
  from instrumented code fires ``enter``/``exit`` so stream reads can be
  tagged with their dynamic call context. Calls into the built-in
  generators are indexed the same way but never recorded as coverage.

Probe ids are assigned once per code object, the first time it is seen:
the component is the source file, the unit is the code object within
that file, and the location is the line offset from the code object's
first line. A code object is known by its file, first line and name, and
probe_map() lets a later session number the same code the same way. Ids
are validated against the probe layout when a code object is registered,
so an id space overflow stops the session before any aliased coverage is
recorded.
"""

import dis
import sys
from contextlib import contextmanager
from types import CodeType, FrameType
from typing import Any, Iterator

from zestfuzz.coverage import CoverageTracker
from zestfuzz.errors import GuidanceError, ProbeIdError
from zestfuzz.indexing import ExecutionIndexTracker

# The engine never instruments itself.
ALWAYS_EXCLUDED = ("zestfuzz",)
# Built-in generators are never covered, but calls into them are indexed.
INDEXED_GENERATOR_MODULES = ("zestfuzz.target",)


def _matches(module: str, prefixes: tuple[str, ...]) -> bool:
    return any(module == prefix or module.startswith(prefix + ".") for prefix in prefixes)


class Instrumentor:
    """Assign probe ids to code objects and forward trace events."""

    def __init__(
        self,
        tracker: CoverageTracker,
        index_tracker: ExecutionIndexTracker | None = None,
        includes: tuple[str, ...] = (),
        excludes: tuple[str, ...] = (),
        index_includes: tuple[str, ...] = (),
    ):
        self.tracker = tracker
        self.index_tracker = index_tracker
        self.layout = tracker.layout
        self.includes = tuple(includes)
        self.excludes = ALWAYS_EXCLUDED + tuple(excludes)
        self.index_includes = tuple(index_includes)

        self.components: dict[str, int] = {}
        self._units_per_component: dict[int, int] = {}
        # (filename, first line, name) -> unit number within its component
        self._unit_keys: dict[tuple[str, int, str], int] = {}
        # code object -> base probe id, or None when not instrumented
        self._code_ids: dict[CodeType, int | None] = {}
        # code object -> whether calls into it are indexed
        self._indexed: dict[CodeType, bool] = {}
        # (caller code, caller line) -> synthetic call-site id
        self._site_ids: dict[tuple[CodeType, int], int] = {}
        # first internal error raised from the trace hook during a tracing() block
        self._error: GuidanceError | None = None

    # --- Id assignment ---

    def _wants(self, module: str) -> bool:
        if _matches(module, self.excludes):
            return False
        return not self.includes or _matches(module, self.includes)

    def _register(self, code: CodeType, module: str) -> int | None:
        base = self._assign_probe_ids(code) if self._wants(module) else None
        self._code_ids[code] = base
        if self.index_tracker is None:
            self._indexed[code] = False
        elif base is None:
            self._indexed[code] = _matches(module, INDEXED_GENERATOR_MODULES)
        else:
            self._indexed[code] = not self.index_includes or _matches(module, self.index_includes)
        return base

    def _assign_probe_ids(self, code: CodeType) -> int:
        filename = code.co_filename
        component = self.components.get(filename)
        if component is None:
            component = len(self.components)
            if component >= self.layout.max_components:
                raise ProbeIdError(
                    f"Too many instrumented files: {filename} would be component {component}, "
                    f"but the layout allows {self.layout.max_components}"
                )
            self.components[filename] = component

        key = (filename, code.co_firstlineno, code.co_name)
        unit = self._unit_keys.get(key)
        if unit is None:
            unit = self._units_per_component.get(component, 0)
            self._units_per_component[component] = unit + 1
            self._unit_keys[key] = unit
        last_line = max(
            (line for _, line in dis.findlinestarts(code) if line is not None),
            default=code.co_firstlineno,
        )
        # pack() raises ProbeIdError for a unit or line span that doesn't fit.
        base = self.layout.pack(component, unit, 0)
        self.layout.pack(component, unit, last_line - code.co_firstlineno)

        return base

    def probe_id(self, code: CodeType, line: int) -> int | None:
        """Return the probe id of ``line`` in an already registered ``code``."""
        base = self._code_ids.get(code)
        if base is None:
            return None
        return base + (line - code.co_firstlineno)

    def probe_map(self) -> dict[str, Any]:
        """Snapshot the id assignment so a later session can number code the same way."""
        return {"components": dict(self.components), "units": dict(self._unit_keys)}

    def load_probe_map(self, probe_map: dict[str, Any]) -> None:
        """Reuse the id assignment of an earlier session. Only valid before any tracing."""
        if self._code_ids:
            raise GuidanceError("A probe map can only be loaded before code is registered")
        self.components = dict(probe_map.get("components", {}))
        self._unit_keys = dict(probe_map.get("units", {}))
        self._units_per_component = {}
        for (filename, _, _), unit in self._unit_keys.items():
            component = self.components.get(filename)
            if component is None:
                continue
            self._units_per_component[component] = max(
                self._units_per_component.get(component, 0), unit + 1
            )

    def _call_site(self, caller: FrameType | None, code: CodeType) -> int:
        """
        Identify the call site of a new frame.

        An instrumented caller line is its own probe id. Any other caller
        line gets a stable synthetic id above the probe id space.
        """
        if caller is not None:
            probe_id = self.probe_id(caller.f_code, caller.f_lineno)
            if probe_id is not None:
                return probe_id
            key = (caller.f_code, caller.f_lineno)
        else:
            key = (code, 0)
        site = self._site_ids.get(key)
        if site is None:
            site = self.layout.size + len(self._site_ids)
            self._site_ids[key] = site
        return site

    # --- Trace functions ---

    def _global_trace(self, frame: FrameType, event: str, arg: Any):
        if event != "call":
            return None
        code = frame.f_code
        if code in self._code_ids:
            base = self._code_ids[code]
        else:
            try:
                base = self._register(code, frame.f_globals.get("__name__", ""))
            except GuidanceError as e:
                # The target may catch this; tracing() raises it again on exit.
                if self._error is None:
                    self._error = e
                raise

        if not self._indexed[code]:
            if base is None:
                return None
            self.tracker.record(base)
            return self._local_trace

        self.index_tracker.enter(self._call_site(frame.f_back, code))
        if base is None:
            frame.f_trace_lines = False
            return self._exit_trace
        self.tracker.record(base)
        return self._indexed_trace

    def _local_trace(self, frame: FrameType, event: str, arg: Any):
        if event == "line":
            code = frame.f_code
            self.tracker.record(self._code_ids[code] + (frame.f_lineno - code.co_firstlineno))
        return self._local_trace

    def _indexed_trace(self, frame: FrameType, event: str, arg: Any):
        if event == "line":
            code = frame.f_code
            self.tracker.record(self._code_ids[code] + (frame.f_lineno - code.co_firstlineno))
        elif event == "return":
            self.index_tracker.exit()
        return self._indexed_trace

    def _exit_trace(self, frame: FrameType, event: str, arg: Any):
        if event == "return":
            self.index_tracker.exit()
        return self._exit_trace

    @contextmanager
    def tracing(self) -> Iterator[None]:
        """
        Enable the trace hook in this thread, restoring the previous one after.

        An internal error raised from the hook is raised again when the block
        exits, even if the traced code caught it.
        """
        previous = sys.gettrace()
        self._error = None
        sys.settrace(self._global_trace)
        try:
            yield
        finally:
            sys.settrace(previous)
            error, self._error = self._error, None
            if error is not None:
                raise error

    def describe(self, probe_id: int) -> str:
        """Map a probe id back to ``file:line`` where possible."""
        component, unit, location = self.layout.unpack(probe_id)
        for code, base in self._code_ids.items():
            if base is not None and base == self.layout.pack(component, unit, 0):
                return f"{code.co_filename}:{code.co_firstlineno + location} ({code.co_name})"
        return self.layout.describe(probe_id)
