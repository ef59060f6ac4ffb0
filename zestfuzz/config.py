"""Immutable session configuration for zestfuzz."""

import re
from dataclasses import dataclass, field
from pathlib import Path

ENGINES = ("zest", "zeal")

DEFAULT_MAX_INPUT_SIZE = 10 * 1024

_DURATION_PATTERN = re.compile(r"^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$")


def parse_duration(text: str) -> float:
    """
    Parse a duration such as ``1h30m``, ``45s`` or ``2m`` into seconds.

    A bare number is taken as seconds. Raises ValueError for anything else.
    """
    text = text.strip().lower()
    if not text:
        raise ValueError("Empty duration")
    try:
        return float(text)
    except ValueError:
        pass
    match = _DURATION_PATTERN.match(text)
    if match is None or not any(match.groups()):
        raise ValueError(f"Invalid duration {text!r}; expected a form like 1h30m or 45s")
    hours, minutes, seconds = (int(group or 0) for group in match.groups())
    return float(hours * 3600 + minutes * 60 + seconds)


@dataclass(frozen=True)
class SessionConfig:
    """Everything a fuzzing session needs to know, fixed at session start."""

    random_seed: int | None = None
    duration: float | None = None
    trials: int | None = None
    input_dir: Path | None = None
    output_dir: Path | None = None
    engine: str = "zest"
    blind: bool = False
    fixed_size: bool = False
    exit_on_crash: bool = False
    run_timeout: float | None = None
    save_all: bool = False
    quiet: bool = False
    disable_coverage: bool = False
    includes: tuple[str, ...] = ()
    excludes: tuple[str, ...] = ()
    index_includes: tuple[str, ...] = ()
    dictionary: tuple[bytes, ...] = ()
    max_input_size: int | None = DEFAULT_MAX_INPUT_SIZE
    config_fuzz: bool = False
    preround_seed: bool = False
    env: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.engine not in ENGINES:
            raise ValueError(f"Unknown engine {self.engine!r}; choose from {', '.join(ENGINES)}")
        if self.duration is not None and self.duration <= 0:
            raise ValueError("duration must be positive")
        if self.trials is not None and self.trials <= 0:
            raise ValueError("trials must be positive")
        if self.run_timeout is not None and self.run_timeout <= 0:
            raise ValueError("run_timeout must be positive")
        if self.disable_coverage and not self.blind:
            raise ValueError("Coverage can only be disabled in blind mode")

    @property
    def uses_index(self) -> bool:
        return self.engine == "zeal" and not self.blind
