"""
The configuration-collection pre-round.

Before configuration fuzzing starts, the target is run once on a fresh
random input with a ConfigTracker active, so that every configuration key
the target reads (through ``track``) is recorded together with its default
value. The collected map tells the user (or a later fuzzing layer) which
parameters the code under test actually consults.
"""

import random
import sys
import traceback
from typing import Any

from zestfuzz.errors import GuidanceError, PreRoundError
from zestfuzz.indexing import ExecutionIndexTracker
from zestfuzz.stream import InputStream
from zestfuzz.types import Failure, Invalid, RunOutcome, Timeout


class ConfigTracker:
    """Record configuration keys read while the pre-round is active."""

    def __init__(self) -> None:
        self.collected: dict[str, Any] = {}
        self.preround = False

    def track(self, key: str, value: Any = None) -> Any:
        """Note that ``key`` was read with default ``value`` and return the value."""
        if self.preround:
            self.collected.setdefault(key, value)
        return value

    def clear(self) -> None:
        self.collected.clear()


_default_tracker = ConfigTracker()


def default_tracker() -> ConfigTracker:
    return _default_tracker


def track(key: str, value: Any = None) -> Any:
    """Record a configuration read on the default tracker. Safe to call anytime."""
    return _default_tracker.track(key, value)


def is_preround() -> bool:
    return _default_tracker.preround


class DefaultConfigCollectionGuidance:
    """
    Serve exactly one fresh random input and collect configuration reads.

    A Failure (or Timeout) in the pre-round is reported and ends it. An
    Invalid pre-round means no configuration could be collected at all and
    raises PreRoundError.
    """

    def __init__(
        self,
        rng: random.Random,
        config_tracker: ConfigTracker | None = None,
        index_tracker: ExecutionIndexTracker | None = None,
    ):
        self.rng = rng
        self.config_tracker = config_tracker if config_tracker is not None else _default_tracker
        self.index_tracker = index_tracker
        self.executions = 0
        self.finished = False
        self.outcome: RunOutcome | None = None
        self.config_tracker.clear()
        self.config_tracker.preround = True

    def has_input(self) -> bool:
        return not self.finished

    def get_input(self) -> InputStream:
        if self.finished:
            raise GuidanceError("The pre-round has already finished")
        return InputStream.fresh(self.rng, self.index_tracker)

    def handle_result(self, outcome: RunOutcome) -> None:
        self.executions += 1
        self.outcome = outcome
        result = outcome.result
        if isinstance(result, Invalid):
            self._finish()
            raise PreRoundError(f"Pre-round input was invalid: {result.reason}")
        if isinstance(result, (Failure, Timeout)):
            print("[!] Pre-round run failed:", file=sys.stderr)
            print(
                result.traceback_text
                or "".join(traceback.format_exception_only(type(result.cause), result.cause)),
                file=sys.stderr,
            )
        self._finish()
        print(
            f"[*] Pre-round complete: collected {len(self.collected)} configuration keys.",
            file=sys.stderr,
        )

    def _finish(self) -> None:
        self.finished = True
        self.config_tracker.preround = False

    @property
    def collected(self) -> dict[str, Any]:
        return dict(self.config_tracker.collected)
