"""
Error taxonomy shared by every stage.

Fatal errors derive from ``DiffCoexError``. ``ThresholdSelectionFailure`` is a
warning category: soft-threshold selection falls back to a documented power
and keeps going.
"""

from __future__ import annotations


class DiffCoexError(Exception):
    """Base class for all errors raised by diffcoexnet."""


class InputShapeError(DiffCoexError, ValueError):
    """Matrices disagree in shape, feature set or feature order."""


class DegenerateFeatureError(DiffCoexError):
    """A zero-variance feature was found where correlations must be defined."""

    def __init__(self, message: str, features: list | None = None) -> None:
        super().__init__(message)
        self.features = list(features) if features is not None else []


class NumericalInstabilityError(DiffCoexError, ArithmeticError):
    """Non-finite values appeared in a covariance or eigenvector computation."""


class ConfigurationError(DiffCoexError, ValueError):
    """Invalid parameters, detected before any computation starts."""


class ComparisonCancelled(DiffCoexError):
    """Work stopped between two whole work items because cancellation was requested."""


class ThresholdSelectionFailure(UserWarning):
    """No soft-threshold power reached the scale-free fit cutoff."""
