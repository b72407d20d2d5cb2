"""
Error taxonomy for the localization fusion core.

Recoverable conditions (pose not available, insufficient consensus, quality
rejection) are reported through status codes and drop reasons, never as
exceptions. Only broken internal invariants raise.
"""


class LocalizationFusionError(Exception):
    """Base class for errors raised by violoc_core."""


class InvariantViolation(LocalizationFusionError):
    """
    An internal invariant does not hold.

    Indicates a programming error, not bad input. Never caught inside the
    core; callers are expected to let it terminate the process.
    """
