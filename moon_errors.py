"""Exception types raised by the moon/bbmodel codecs."""
from __future__ import annotations


class MoonError(ValueError):
    """Base class for every structural problem found in a bundle or model."""


class FormatError(MoonError):
    """Malformed or truncated data, failed decompression, or an unknown field."""


class SchemaViolation(MoonError):
    """A value is present but falls outside the allowed set or range."""


class InvariantViolation(MoonError):
    """The tree breaks a structural rule, e.g. a cube that has children."""
