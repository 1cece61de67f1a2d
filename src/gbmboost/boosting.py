"""
Public entry points: fit, continue_fit, predict and relative_influence.

``fit`` validates the inputs, fits the primary ensemble on the leading
``num_train`` rows and then optionally cross-validates; any remaining rows
form the test set whose loss is tracked every iteration.
"""

from dataclasses import replace
from typing import Optional, Sequence, Union
import logging
import numpy as np

from .config import TrainingConfig
from .cv import cross_validate, resolve_folds
from .distributions import Distribution
from .driver import FitResult, TrainingData, continue_fit, run_boosting
from .ensemble import Ensemble
from .errors import ConfigurationError, DataError, NumericalInstabilityError
from .utils import as_feature_matrix, as_vector, check_var_types, normalise_weights

logger = logging.getLogger(__name__)

__all__ = ["fit", "continue_fit", "predict", "relative_influence"]


def _check_categorical_codes(X: np.ndarray, var_types: np.ndarray) -> None:
    for j in np.flatnonzero(var_types > 0):
        x = X[:, j]
        x = x[~np.isnan(x)]
        if np.any(x != np.floor(x)) or np.any(x < 0) or np.any(x >= var_types[j]):
            raise DataError(
                f"Column {j} is categorical with {var_types[j]} levels; "
                f"values must be integer codes in [0, {var_types[j]})"
            )


def fit(
    config: TrainingConfig,
    distribution: Distribution,
    features,
    response,
    weights=None,
    offset=None,
    fold_ids=None,
    var_types=None,
    feature_names: Optional[Sequence[str]] = None
) -> FitResult:
    """
    Fit a gradient boosted tree ensemble.

    Args:
        config: Training configuration.
        distribution: Loss distribution (e.g. ``Gaussian()``, ``Quantile(0.9)``).
        features: Feature matrix, shape (n_samples, n_features); NaN is missing.
        response: Response vector, or an (n_samples, 2) array for CoxPH
            (time, event) and Pairwise (score, group).
        weights: Non-negative observation weights; defaults to ones.
        offset: Additive offset on the link scale; defaults to zeros.
        fold_ids: Explicit cross-validation fold per row. Overrides
            ``config.cv_folds``.
        var_types: Per-feature 0 (continuous) or number of categorical levels.
        feature_names: Optional column names carried by the ensemble.

    Returns:
        FitResult with the ensemble and its error traces.

    Raises:
        ConfigurationError: invalid configuration or distribution/response pairing.
        DataError: response, weights or features violate constraints.
        NumericalInstabilityError: loss became non-finite; ``partial_result``
            holds the completed iterations of the primary fit (all of them
            when the failure happened in a cross-validation fold).
    """
    if not isinstance(distribution, Distribution):
        raise ConfigurationError(f"Expected a Distribution, got {type(distribution).__name__}")
    X = as_feature_matrix(features)
    n_rows, n_cols = X.shape
    y = distribution.check_response(response)
    if y.shape[0] != n_rows:
        raise DataError(f"response has {y.shape[0]} rows, features have {n_rows}")
    config.check_data(n_rows, n_cols)
    var_types = check_var_types(var_types, n_cols)
    _check_categorical_codes(X, var_types)
    if feature_names is not None:
        feature_names = tuple(str(name) for name in feature_names)
        if len(feature_names) != n_cols:
            raise ConfigurationError(
                f"feature_names has length {len(feature_names)}, expected {n_cols}"
            )

    w = as_vector(weights, n_rows, "weights", 1.0)
    if distribution.normalize_weights:
        w = normalise_weights(w)
    elif np.any(w < 0):
        raise DataError("Weights must be non-negative")
    o = as_vector(offset, n_rows, "offset", 0.0)

    n_train = n_rows if config.num_train is None else int(config.num_train)
    seed = config.seed if config.seed is not None else np.random.SeedSequence().entropy
    data = TrainingData(X=X, y=y, weights=w, offset=o, var_types=var_types,
                        feature_names=feature_names)

    run_cv = fold_ids is not None or config.cv_folds > 1
    if fold_ids is not None:
        fold_ids = np.asarray(fold_ids)
        if fold_ids.shape[0] != n_rows:
            raise DataError(f"fold_ids has length {fold_ids.shape[0]}, expected {n_rows}")
    if run_cv:
        fold_ids = resolve_folds(distribution, y[:n_train], config, seed, fold_ids)

    logger.info(
        f"Fitting {distribution.name} ensemble: {config.n_trees} trees on "
        f"{n_train} of {n_rows} rows"
    )
    rng = np.random.default_rng(np.random.SeedSequence(seed))
    result = run_boosting(distribution, data, config, np.arange(n_train),
                          np.arange(n_train, n_rows), rng, seed)
    if not run_cv:
        return result

    try:
        outcome = cross_validate(distribution, data, config, n_train, seed, fold_ids)
    except NumericalInstabilityError as exc:
        # The primary ensemble is complete; only its CV curve is missing.
        exc.partial_result = result
        raise
    return replace(result, cv_error=outcome.cv_error, cv_fits=outcome.fits,
                   cv_fitted=outcome.cv_fitted, fold_ids=outcome.fold_ids)


def _as_ensemble(model: Union[Ensemble, FitResult]) -> Ensemble:
    if isinstance(model, FitResult):
        return model.ensemble
    if isinstance(model, Ensemble):
        return model
    raise ConfigurationError(f"Expected an Ensemble or FitResult, got {type(model).__name__}")


def predict(
    model: Union[Ensemble, FitResult],
    features,
    n_trees: Union[None, int, Sequence[int]] = None,
    offset=None,
    kind: str = "link"
) -> np.ndarray:
    """
    Ensemble predictions f_0 + ν Σ_{m <= n_trees} T_m(x).

    ``n_trees`` may be a sequence to get staged predictions, one column per
    count. ``kind="response"`` applies the distribution's inverse link.
    """
    return _as_ensemble(model).predict(features, n_trees=n_trees, offset=offset, kind=kind)


def relative_influence(
    model: Union[Ensemble, FitResult],
    n_trees: Optional[int] = None,
    normalize: bool = False
) -> np.ndarray:
    """
    Per-feature sum of split gains over the first ``n_trees`` trees.

    Values are non-negative and sum to the total gain of all splits used;
    ``normalize=True`` rescales them to percentages.
    """
    return _as_ensemble(model).relative_influence(n_trees=n_trees, normalize=normalize)
