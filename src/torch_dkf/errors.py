"""Errors raised by torch-dkf."""


class KalmanFilterError(Exception):
    """Base class of every error raised by the filter."""


class DimensionMismatch(KalmanFilterError, ValueError):
    """A matrix or vector does not have the shape declared by the filter.

    Raised before any mutation of the filter state.
    """

    def __init__(self, name: str, expected: tuple[int, ...], got: tuple[int, ...]) -> None:
        super().__init__(f"{name}: expected shape {expected}, got {got}")
        self.name = name
        self.expected = expected
        self.got = got


class SingularInnovationCovariance(KalmanFilterError, RuntimeError):
    """The innovation covariance ``S = C P Cᵀ + R`` could not be inverted."""


class InvariantViolation(KalmanFilterError, AssertionError):
    """The posterior record is malformed (mean without correction or the opposite).

    This is a logic error: a correct use of the filter never produces it.
    """
