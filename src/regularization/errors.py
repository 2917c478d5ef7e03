from __future__ import annotations


class RegularizationError(Exception):
    """Base class for every error raised by the regularization engine."""


class ValidationError(RegularizationError):
    """A write was rejected: uniqueness, make consistency or strict fuel type rules."""


class NotFoundError(RegularizationError):
    """A pair, mapping or canonical value no longer exists (e.g. after a re-import)."""


class ComputationError(RegularizationError):
    """The store could not be reached or a sweep could not finish."""
