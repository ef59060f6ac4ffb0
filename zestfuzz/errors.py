"""
Exception taxonomy for the zestfuzz engine.

Generator- and target-level problems are caught at the run boundary and
turned into Run Results. Internal guidance errors are never caught by the
engine: they mean the coverage signal itself can no longer be trusted.
"""


class InvalidInput(Exception):
    """The generator (or an assumption in the test) rejected the input."""


class EndOfStream(InvalidInput):
    """A replayed input ran out of bytes before the generator was done."""


class RunTimeout(BaseException):
    """Raised into the executing code when the per-run watchdog fires.

    Derives from BaseException so that a target's ``except Exception``
    cannot swallow it.
    """


class GuidanceError(Exception):
    """An internal error of the guidance engine. Always fatal."""


class ProbeIdError(GuidanceError, ValueError):
    """A probe id or one of its sub-fields does not fit the packing layout."""


class CorpusIOError(GuidanceError):
    """Reading or writing the on-disk corpus failed."""


class PreRoundError(GuidanceError):
    """The configuration-collection pre-round could not complete."""


def assume(condition: bool, reason: str = "assumption violated") -> None:
    """Discard the current input as Invalid unless ``condition`` holds."""
    if not condition:
        raise InvalidInput(reason)
