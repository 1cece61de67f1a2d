"""
Utility functions shared by distributions, the tree builder and the driver.

Weighted summaries, a numerically stable sigmoid, bounded line search and
array validation.
"""

from typing import Callable, Optional, Tuple
import numpy as np
from scipy.optimize import minimize_scalar

from .errors import ConfigurationError, DataError


# ===========================
# Weighted summaries
# ===========================

def weighted_mean(values: np.ndarray, weights: np.ndarray) -> float:
    """Weighted mean; 0.0 when the total weight is zero."""
    total = np.sum(weights)
    if total <= 0:
        return 0.0
    return float(np.sum(weights * values) / total)


def weighted_quantile(values: np.ndarray, weights: np.ndarray, alpha: float) -> float:
    """
    Weighted α-quantile: the smallest value whose cumulative weight reaches
    α times the total weight. Zero-weight observations are ignored.

    For α = 0.5 this is the weighted median used by the Laplace loss.
    """
    keep = weights > 0
    if not np.any(keep):
        return 0.0
    v = values[keep]
    w = weights[keep]
    order = np.argsort(v, kind="mergesort")
    v = v[order]
    cum = np.cumsum(w[order])
    target = alpha * cum[-1]
    idx = int(np.searchsorted(cum, target, side="left"))
    return float(v[min(idx, v.size - 1)])


def sigmoid(x: np.ndarray) -> np.ndarray:
    """Numerically stable sigmoid function."""
    x = np.asarray(x, dtype=np.float64)
    out = np.empty_like(x)
    pos = x >= 0
    out[pos] = 1.0 / (1.0 + np.exp(-x[pos]))
    ex = np.exp(x[~pos])
    out[~pos] = ex / (1.0 + ex)
    return out


def line_search(objective: Callable[[float], float], lower: float, upper: float) -> float:
    """
    Minimise a scalar objective on [lower, upper] with bounded Brent search.

    Used for losses whose optimal constant has no closed form (t-distribution,
    huberized hinge). Degenerate intervals return the single admissible point.
    """
    if not np.isfinite(lower) or not np.isfinite(upper):
        raise DataError("Line search bounds must be finite")
    if upper - lower <= 1e-12:
        return float(lower)
    result = minimize_scalar(objective, bounds=(lower, upper), method="bounded",
                             options={"xatol": 1e-10})
    return float(result.x)


# ===========================
# Input validation
# ===========================

def as_feature_matrix(X) -> np.ndarray:
    """Return X as a 2-D float64 array; NaN marks missing values."""
    X = np.asarray(X, dtype=np.float64)
    if X.ndim == 1:
        X = X.reshape(-1, 1)
    if X.ndim != 2:
        raise DataError(f"Feature matrix must be 2-D, got shape {X.shape}")
    return X


def as_vector(values, n: int, name: str, default: float) -> np.ndarray:
    """Return a length-n float64 vector, filling with `default` when values is None."""
    if values is None:
        return np.full(n, default, dtype=np.float64)
    values = np.asarray(values, dtype=np.float64).ravel()
    if values.shape[0] != n:
        raise DataError(f"{name} has length {values.shape[0]}, expected {n}")
    if not np.all(np.isfinite(values)):
        raise DataError(f"{name} contains non-finite values")
    return values


def normalise_weights(weights: np.ndarray) -> np.ndarray:
    """Rescale non-negative weights so they sum to their count."""
    if np.any(weights < 0):
        raise DataError("Weights must be non-negative")
    total = np.sum(weights)
    if total <= 0:
        raise DataError("Weights sum to zero")
    return weights * (weights.shape[0] / total)


def check_var_types(var_types: Optional[np.ndarray], n_features: int) -> np.ndarray:
    """
    Validate the per-column type vector: 0 = continuous, K > 0 = categorical
    with K levels coded 0..K-1.
    """
    if var_types is None:
        return np.zeros(n_features, dtype=np.int64)
    var_types = np.asarray(var_types, dtype=np.int64).ravel()
    if var_types.shape[0] != n_features:
        raise ConfigurationError(
            f"var_types has length {var_types.shape[0]}, expected {n_features}"
        )
    if np.any(var_types < 0):
        raise ConfigurationError("var_types entries must be >= 0")
    return var_types


def eta(f: np.ndarray, offset: Optional[np.ndarray]) -> np.ndarray:
    """Linear predictor: ensemble score plus offset."""
    if offset is None:
        return f
    return f + offset


def split_response(y: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Split a two-column response into its columns."""
    return y[:, 0], y[:, 1]
