"""
Exceptions and warnings raised while fitting boosted tree ensembles.

Configuration and data problems are raised before the first tree is grown.
Numerical failures abort the boosting loop but hand back every iteration
that completed successfully.
"""

from typing import Optional


class GBMError(Exception):
    """Base class for all gbmboost errors."""


class ConfigurationError(GBMError, ValueError):
    """Invalid training configuration or distribution/response combination."""


class DataError(GBMError, ValueError):
    """Response, weight or offset values violate the distribution's constraints."""


class NumericalInstabilityError(GBMError, ArithmeticError):
    """
    A gradient or loss became non-finite during boosting.

    Attributes:
        iteration: 1-based iteration at which the failure occurred.
        partial_result: FitResult holding all iterations completed before
            the failure, or None if it failed before the first tree.
    """

    def __init__(self, message: str, iteration: int, partial_result: Optional[object] = None):
        super().__init__(message)
        self.iteration = iteration
        self.partial_result = partial_result


class DegenerateFitWarning(UserWarning):
    """A tree was grown with zero splits because its root sample was too small."""


class OOBBiasWarning(UserWarning):
    """Out-of-bag iteration selection tends to underestimate the optimal number of trees."""
