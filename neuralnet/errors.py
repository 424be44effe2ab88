"""
Errors
======

Exception types raised by the library.

Every failure here is a programming or configuration error, not a transient
condition: nothing is retried, errors propagate straight to the caller.
"""


class NeuralNetworkError(Exception):
    """Base class for all library errors."""


class ShapeMismatchError(NeuralNetworkError, ValueError):
    """A tensor shape disagrees with the shape a layer or kernel expects."""

    def __init__(self, message, expected=None, actual=None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class InvalidModeError(NeuralNetworkError, ValueError):
    """An unrecognized mode discriminator (normalization, processing...)."""


class BackendFailureError(NeuralNetworkError, RuntimeError):
    """A compute kernel could not be executed."""
