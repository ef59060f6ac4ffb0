"""
Packing and unpacking of coverage probe ids.

A probe id is a single integer holding three sub-fields: a coarse component
id (a module), a sub-unit id (a code object inside that module) and an
intra-unit location id (a line offset inside that code object). The fields
use fixed bit widths, most significant first:

    | component | unit | location |

Ids are assigned by the instrumentation layer and handed to the engine as
plain integers; this module only packs and unpacks them. A field that does
not fit its width is a hard error, because a silently truncated id would
alias two different code locations.
"""

from dataclasses import dataclass

from zestfuzz.errors import ProbeIdError


@dataclass(frozen=True)
class ProbeLayout:
    """Bit widths of the three probe-id sub-fields."""

    component_bits: int = 6
    unit_bits: int = 8
    location_bits: int = 10

    def __post_init__(self) -> None:
        for name in ("component_bits", "unit_bits", "location_bits"):
            if getattr(self, name) <= 0:
                raise ProbeIdError(f"{name} must be positive, got {getattr(self, name)}")

    @property
    def total_bits(self) -> int:
        return self.component_bits + self.unit_bits + self.location_bits

    @property
    def size(self) -> int:
        """Number of distinct probe ids; the coverage table is this long."""
        return 1 << self.total_bits

    @property
    def max_components(self) -> int:
        return 1 << self.component_bits

    @property
    def max_units(self) -> int:
        return 1 << self.unit_bits

    @property
    def max_locations(self) -> int:
        return 1 << self.location_bits

    def pack(self, component: int, unit: int, location: int) -> int:
        """Combine the three sub-fields into one probe id.

        Raises ProbeIdError if any sub-field overflows its width.
        """
        _validate(component, self.component_bits, "component")
        _validate(unit, self.unit_bits, "unit")
        _validate(location, self.location_bits, "location")
        return (
            (component << (self.unit_bits + self.location_bits))
            | (unit << self.location_bits)
            | location
        )

    def unpack(self, probe_id: int) -> tuple[int, int, int]:
        """Split a probe id back into (component, unit, location)."""
        if probe_id < 0 or probe_id >= self.size:
            raise ProbeIdError(f"Probe id {probe_id} is outside a {self.total_bits}-bit layout")
        location = probe_id & (self.max_locations - 1)
        unit = (probe_id >> self.location_bits) & (self.max_units - 1)
        component = probe_id >> (self.unit_bits + self.location_bits)
        return component, unit, location

    def describe(self, probe_id: int) -> str:
        """Return a short human-readable form, e.g. ``c3:u12:l40``."""
        component, unit, location = self.unpack(probe_id)
        return f"c{component}:u{unit}:l{location}"


def _validate(value: int, bits: int, field_name: str) -> None:
    if value < 0 or value >= (1 << bits):
        raise ProbeIdError(
            f"Invalid {field_name} id {value}: must fit in {bits} bits "
            f"(0..{(1 << bits) - 1})"
        )


DEFAULT_LAYOUT = ProbeLayout()
