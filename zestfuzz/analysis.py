import traceback
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from zestfuzz.types import Failure, RunResult, Timeout

# Frames inside the engine itself never identify where a target failed.
_PACKAGE_DIR = str(Path(__file__).resolve().parent)


class CrashType(str, Enum):
    ASSERTION = "ASSERTION"
    EXCEPTION = "EXCEPTION"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"


@dataclass
class CrashSignature:
    crash_type: CrashType
    exception_name: str
    location: Optional[str]  # file:line of the culprit frame
    fingerprint: str  # Dedup key: equal fingerprints are one bug


class CrashFingerprinter:
    """Fingerprints failures and hangs by exception type and culprit frame."""

    def __init__(self, skip_dirs: tuple[str, ...] = (_PACKAGE_DIR,)):
        self.skip_dirs = skip_dirs

    def _culprit_frame(self, exc: BaseException) -> Optional[str]:
        """
        Return ``file:line`` of the innermost frame outside the engine.

        The innermost frame is where the exception was raised; engine
        frames (the harness, the watchdog handler) are skipped so a hang
        is attributed to the target code that was running.
        """
        frames = traceback.extract_tb(exc.__traceback__)
        for frame in reversed(frames):
            filename = str(Path(frame.filename).resolve()) if frame.filename[:1] != "<" else frame.filename
            if any(filename.startswith(skip) for skip in self.skip_dirs):
                continue
            return f"{frame.filename}:{frame.lineno}"
        return None

    def analyze(self, result: RunResult) -> CrashSignature:
        """
        Analyze a Failure or Timeout to determine its unique fingerprint.
        """
        if isinstance(result, Timeout):
            location = self._culprit_frame(result.cause) if result.cause is not None else None
            return CrashSignature(
                crash_type=CrashType.TIMEOUT,
                exception_name="RunTimeout",
                location=location,
                fingerprint=f"TIMEOUT:{location or 'unknown'}",
            )

        if isinstance(result, Failure):
            exc = result.cause
            exc_name = type(exc).__qualname__
            location = self._culprit_frame(exc)
            if isinstance(exc, AssertionError):
                return CrashSignature(
                    crash_type=CrashType.ASSERTION,
                    exception_name=exc_name,
                    location=location,
                    fingerprint=f"ASSERT:{location or 'unknown'}",
                )
            return CrashSignature(
                crash_type=CrashType.EXCEPTION,
                exception_name=exc_name,
                location=location,
                fingerprint=f"PYTHON:{exc_name}:{location or 'unknown'}",
            )

        # Fallback
        return CrashSignature(
            crash_type=CrashType.UNKNOWN,
            exception_name="",
            location=None,
            fingerprint=f"STATUS:{result.status}",
        )
