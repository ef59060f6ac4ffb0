"""
Structured generators and the test targets they feed.

A target pairs a generator (a callable that turns an InputStream into a
typed value, raising InvalidInput if the stream cannot be decoded) with a
test function that exercises the value and raises on failure.
"""

import importlib
from dataclasses import dataclass
from typing import Any, Callable

from zestfuzz.errors import InvalidInput
from zestfuzz.stream import InputStream

Generator = Callable[[InputStream], Any]
TestFunction = Callable[[Any], None]


@dataclass(frozen=True)
class FuzzTarget:
    generator: Generator
    test: TestFunction
    name: str = ""

    def run(self, stream: InputStream) -> None:
        self.test(self.generator(stream))


def fuzz(generator: Generator) -> Callable[[TestFunction], TestFunction]:
    """
    Mark ``test`` as a fuzz target fed by ``generator``::

        @fuzz(int32_le)
        def test_parse(value): ...

    The decorated function is returned unchanged apart from a
    ``__fuzz_target__`` attribute, so it can still be called directly.
    """

    def decorator(test: TestFunction) -> TestFunction:
        test.__fuzz_target__ = FuzzTarget(  # type: ignore[attr-defined]
            generator, test, f"{test.__module__}.{test.__qualname__}"
        )
        return test

    return decorator


def load_target(name: str) -> FuzzTarget:
    """Resolve ``package.module:function`` to a FuzzTarget."""
    module_name, sep, attr_path = name.partition(":")
    if not sep or not module_name or not attr_path:
        raise ValueError(f"Target must look like 'module:function', got {name!r}")
    obj: Any = importlib.import_module(module_name)
    for attr in attr_path.split("."):
        obj = getattr(obj, attr)
    if isinstance(obj, FuzzTarget):
        return obj
    target = getattr(obj, "__fuzz_target__", None)
    if not isinstance(target, FuzzTarget):
        raise ValueError(f"{name} is not decorated with @fuzz(generator)")
    return target


# --- Built-in generators ---


def int32_le(stream: InputStream) -> int:
    """Decode a signed 32-bit little-endian integer from four bytes."""
    data = stream.read(4)
    if stream.exhausted:
        raise InvalidInput("Fewer than 4 bytes available")
    return int.from_bytes(data, "little", signed=True)


def uint8(stream: InputStream) -> int:
    return stream.read_byte()


def byte_string(max_length: int = 256) -> Generator:
    """Return a generator of byte strings of 0 to ``max_length`` bytes."""

    def generate(stream: InputStream) -> bytes:
        length = stream.read_int(0, max_length)
        data = stream.read(length)
        if stream.exhausted:
            raise InvalidInput("Input ended inside a byte string")
        return data

    return generate


def text(max_length: int = 256, alphabet: str | None = None) -> Generator:
    """Return a generator of strings, drawn from ``alphabet`` or printable ASCII."""
    characters = alphabet or "".join(chr(c) for c in range(32, 127))

    def generate(stream: InputStream) -> str:
        length = stream.read_int(0, max_length)
        value = "".join(stream.read_choice(characters) for _ in range(length))
        if stream.exhausted:
            raise InvalidInput("Input ended inside a string")
        return value

    return generate


def list_of(element: Generator, max_length: int = 16) -> Generator:
    """Return a generator of lists whose items come from ``element``."""

    def generate(stream: InputStream) -> list:
        return [element(stream) for _ in range(stream.read_int(0, max_length))]

    return generate
