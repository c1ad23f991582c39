"""
errors.py
~~~~~~~~~

Exception hierarchy shared by the network core and its collaborators.

Every error also derives from ValueError, so callers that only care about
"bad value supplied" can keep catching the builtin.
"""


class DigitNetError(Exception):
    """Base class for all digitnet errors."""


class ConfigurationError(DigitNetError, ValueError):
    """Invalid network parameters (sizes, learning rate, replacement weights)."""


class InputShapeError(DigitNetError, ValueError):
    """An input or target vector does not match the network's layer sizes."""

    def __init__(self, name: str, expected: int, actual):
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{name} must have {expected} entries, got {actual}"
        )


class DimensionMismatchError(DigitNetError, ValueError):
    """Operand shapes are incompatible for a matrix operation."""


class DatasetError(DigitNetError, ValueError):
    """A dataset file is missing or contains a malformed row."""
