"""Errors raised by torch-lkf.

Both errors are raised at the boundary where they are detected and propagate to the caller.
The filter never retries nor falls back to another numerical scheme: the caller decides how to recover
(skip the update, inflate the covariance, abort the run, ...).
"""

from __future__ import annotations


class KalmanFilterError(Exception):
    """Base class of all errors raised by torch-lkf."""


class DimensionMismatch(KalmanFilterError, ValueError):
    """A matrix or vector does not match the state dimension of the filter.

    Attributes:
        name (str): Name of the faulty argument.
        expected (tuple[int, ...]): Expected trailing shape.
        received (tuple[int, ...]): Full shape received.
    """

    def __init__(self, name: str, expected: tuple[int, ...], received: tuple[int, ...]) -> None:
        self.name = name
        self.expected = tuple(expected)
        self.received = tuple(received)
        super().__init__(f"{name}: expected shape {self.expected}, got {self.received}")


class SingularInnovationCovariance(KalmanFilterError, ArithmeticError):
    """The innovation covariance ``S = P + R`` cannot be inverted.

    Non-finite values (nan, inf) in ``P`` or ``R`` make ``S`` non invertible and are reported with this error.
    """
