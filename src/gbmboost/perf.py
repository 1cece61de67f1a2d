"""
Selection of the number of boosting iterations from recorded error traces.
"""

from typing import Optional
import logging
import warnings
import numpy as np
import pandas as pd
from scipy.ndimage import uniform_filter1d

from .driver import FitResult
from .errors import ConfigurationError, OOBBiasWarning

logger = logging.getLogger(__name__)

METHODS = ("test", "cv", "oob")

# Width of the moving average applied to the OOB improvements.
OOB_SMOOTHING_WINDOW = 11


def smoothed_oob_curve(oob_improvement: np.ndarray, window: int = OOB_SMOOTHING_WINDOW) -> np.ndarray:
    """
    Estimated loss curve implied by the OOB improvements: the negative
    cumulative sum of the moving-average-smoothed improvements.
    """
    improvement = np.asarray(oob_improvement, dtype=np.float64)
    size = max(1, min(int(window), improvement.shape[0]))
    smoothed = uniform_filter1d(improvement, size=size, mode="nearest")
    return -np.cumsum(smoothed)


def best_iteration(result: FitResult, method: str = "test") -> int:
    """
    1-based iteration minimising the chosen error curve.

    Args:
        result: Fit to evaluate.
        method: "test" uses the held-out loss (requires num_train < N),
            "cv" the cross-validation curve (requires cv_folds or fold_ids),
            "oob" the smoothed cumulative out-of-bag improvement (requires
            bag_fraction < 1).

    Raises:
        ConfigurationError: unknown method or the method's trace is absent.
    """
    if method not in METHODS:
        raise ConfigurationError(f"method must be one of {METHODS}, got {method!r}")

    if method == "test":
        if not result.has_valid:
            raise ConfigurationError("method='test' requires a held-out test set (num_train < N)")
        curve = result.valid_loss
    elif method == "cv":
        if not result.has_cv:
            raise ConfigurationError("method='cv' requires a fit with cross-validation")
        curve = result.cv_error
    else:
        if not result.has_oob:
            raise ConfigurationError("method='oob' requires bag_fraction < 1")
        warnings.warn(
            "OOB generally underestimates the optimal number of iterations, although "
            "predictive performance is reasonably competitive. Using cv or a test set "
            "usually gives better estimates.",
            OOBBiasWarning,
            stacklevel=2,
        )
        curve = smoothed_oob_curve(result.oob_improvement)

    best = int(np.argmin(curve)) + 1
    logger.info(f"Best iteration by {method}: {best}")
    return best


def perf_table(result: FitResult, smoothing_window: Optional[int] = None) -> pd.DataFrame:
    """
    All error traces of a fit as a DataFrame indexed by 1-based iteration.

    Columns: train, and where available valid, oob_improvement, oob_curve and cv.
    """
    n = result.n_trees
    index = pd.RangeIndex(1, n + 1, name="iteration")
    table = pd.DataFrame({"train": result.train_loss}, index=index)
    if result.has_valid:
        table["valid"] = result.valid_loss
    if result.has_oob:
        table["oob_improvement"] = result.oob_improvement
        table["oob_curve"] = smoothed_oob_curve(
            result.oob_improvement, smoothing_window or OOB_SMOOTHING_WINDOW
        )
    if result.has_cv:
        cv = np.full(n, np.nan)
        m = min(n, result.cv_error.shape[0])
        cv[:m] = result.cv_error[:m]
        table["cv"] = cv
    return table
