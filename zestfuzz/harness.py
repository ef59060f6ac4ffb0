"""
The run boundary: execute one input and classify what happened.

The harness hands a stream to the target's generator, runs the test on
the generated value under a per-run watchdog, and turns whatever happened
into exactly one Run Result. Generator and target exceptions are caught
here; internal guidance errors and interpreter exits are not.
"""

import signal
import sys
import threading
import time
import traceback
from contextlib import contextmanager, nullcontext
from typing import ContextManager, Iterator

from zestfuzz.coverage import CoverageTracker
from zestfuzz.errors import GuidanceError, InvalidInput, RunTimeout
from zestfuzz.indexing import ExecutionIndexTracker
from zestfuzz.stream import InputStream
from zestfuzz.target import FuzzTarget
from zestfuzz.types import Failure, Invalid, RunOutcome, RunResult, Success, Timeout

_warned_no_watchdog = False


@contextmanager
def run_timeout(seconds: float | None) -> Iterator[None]:
    """Raise RunTimeout inside the enclosed block once ``seconds`` elapse.

    Uses SIGALRM with a real-time interval timer, so it only works in the
    main thread on platforms that have it; elsewhere runs are not bounded.
    """
    global _warned_no_watchdog
    if not seconds:
        yield
        return
    if not hasattr(signal, "setitimer") or threading.current_thread() is not threading.main_thread():
        if not _warned_no_watchdog:
            print(
                "[!] Warning: Per-run timeouts need SIGALRM in the main thread; runs are unbounded.",
                file=sys.stderr,
            )
            _warned_no_watchdog = True
        yield
        return

    def timeout_handler(signum, frame):
        raise RunTimeout(f"Run exceeded {seconds}s")

    old_handler = signal.signal(signal.SIGALRM, timeout_handler)
    signal.setitimer(signal.ITIMER_REAL, seconds)
    try:
        yield
    finally:
        signal.setitimer(signal.ITIMER_REAL, 0)
        signal.signal(signal.SIGALRM, old_handler)


class Harness:
    """
    Execute inputs against a target and report a RunOutcome for each.

    ``instrumentation`` is any object whose ``tracing()`` method returns a
    context manager enabling probe callbacks for the duration of a run (see
    zestfuzz.instrument). Targets may also call ``tracker.record`` by hand.
    """

    def __init__(
        self,
        target: FuzzTarget,
        tracker: CoverageTracker | None = None,
        index_tracker: ExecutionIndexTracker | None = None,
        instrumentation=None,
        timeout: float | None = None,
    ):
        self.target = target
        self.tracker = tracker
        self.index_tracker = index_tracker
        self.instrumentation = instrumentation
        self.timeout = timeout

    def _tracing(self) -> ContextManager:
        if self.instrumentation is None:
            return nullcontext()
        return self.instrumentation.tracing()

    def run(self, stream: InputStream) -> RunOutcome:
        """Run one input. Per-run tracker state is reset first."""
        if self.tracker is not None:
            self.tracker.reset()
        if self.index_tracker is not None:
            self.index_tracker.reset()

        result: RunResult
        start = time.perf_counter()
        try:
            with run_timeout(self.timeout):
                with self._tracing():
                    self.target.run(stream)
            result = Success()
        except InvalidInput as e:
            result = Invalid(str(e) or type(e).__name__)
        except RunTimeout as e:
            result = Timeout(self.timeout or 0.0, e, traceback.format_exc())
        except GuidanceError:
            raise
        except Exception as e:
            result = Failure(e, traceback.format_exc())
        run_cost = time.perf_counter() - start

        signature = None
        probe_contexts = None
        if self.tracker is not None:
            if isinstance(result, Timeout):
                # Anything the aborted run writes from here on is dropped.
                self.tracker.invalidate()
            elif not isinstance(result, Invalid):
                signature = self.tracker.snapshot()
                if self.index_tracker is not None:
                    probe_contexts = self.tracker.probe_contexts()

        return RunOutcome(
            result=result,
            data=stream.consumed,
            signature=signature,
            run_cost=run_cost,
            indices=stream.indices,
            probe_contexts=probe_contexts,
        )
