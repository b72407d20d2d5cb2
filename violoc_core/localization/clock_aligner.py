"""
Clock alignment between the localization subsystem and the estimator.

Maps localization-clock timestamps into the estimator clock with a fixed
affine relation fixed at construction:

    t_local = round(scale * t_foreign + offset_ns)

Epoch nanoseconds exceed the float64 mantissa, so the mapping is evaluated
in integers and only the scale deviation goes through floating point; with
scale == 1 the mapping is exact.

scale > 0 keeps the mapping monotonic, so ordering and buffer lookups stay
consistent across the two domains.
"""

from dataclasses import dataclass

NANOSECONDS_PER_SECOND = 1_000_000_000


def seconds_to_nanoseconds(t_s: float) -> int:
    """Convert seconds to integer nanoseconds."""
    return int(round(t_s * NANOSECONDS_PER_SECOND))


def nanoseconds_to_seconds(t_ns: int) -> float:
    """Convert integer nanoseconds to seconds."""
    return t_ns / NANOSECONDS_PER_SECOND


@dataclass(frozen=True)
class ClockAligner:
    """
    Stateless foreign-to-local clock mapping.
    
    Attributes:
        offset_ns: Offset added after scaling (nanoseconds)
        scale: Clock rate ratio local/foreign (must be positive)
    """
    
    offset_ns: int = 0
    scale: float = 1.0
    
    def __post_init__(self):
        """Validate mapping."""
        if not self.scale > 0:
            raise ValueError(f"Clock scale must be positive: {self.scale}")
        object.__setattr__(self, 'offset_ns', int(self.offset_ns))
    
    def to_local_clock(self, t_foreign_ns: int) -> int:
        """Localization clock -> estimator clock (nanoseconds)."""
        t_foreign_ns = int(t_foreign_ns)
        return t_foreign_ns + self.offset_ns + int(round((self.scale - 1.0) * t_foreign_ns))
    
    def to_foreign_clock(self, t_local_ns: int) -> int:
        """Estimator clock -> localization clock (nanoseconds)."""
        shifted_ns = int(t_local_ns) - self.offset_ns
        return shifted_ns - int(round((1.0 - 1.0 / self.scale) * shifted_ns))
    
    def to_local_seconds(self, t_foreign_ns: int) -> float:
        """Localization clock (ns) -> estimator clock in seconds."""
        return nanoseconds_to_seconds(self.to_local_clock(t_foreign_ns))
