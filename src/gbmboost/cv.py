"""
K-fold cross-validation of the boosting driver.

Each fold is an independent boosting run on the training rows outside the
fold, evaluated every iteration on the rows inside it. Fold runs use their
own random streams derived from (seed, fold index), so the CV curve does not
depend on how many folds run concurrently.
"""

from dataclasses import dataclass
from typing import Optional, Tuple
import logging
import numpy as np
from joblib import Parallel, delayed
from sklearn.model_selection import KFold, StratifiedKFold

from .config import TrainingConfig
from .distributions import Distribution
from .driver import FitResult, TrainingData, run_boosting
from .errors import ConfigurationError, NumericalInstabilityError

logger = logging.getLogger(__name__)

# spawn_key 0 is reserved for fold assignment; fold k uses k + 1.
_ASSIGNMENT_KEY = 0


def fold_rng(seed: int, fold: int) -> np.random.Generator:
    """Independent generator for the ``fold``-th (0-based) cross-validation run."""
    return np.random.default_rng(np.random.SeedSequence(seed, spawn_key=(fold + 1,)))


def assign_folds(distribution: Distribution, y: np.ndarray, n_folds: int, seed: int) -> np.ndarray:
    """
    Random fold ids in 0..n_folds-1 for the training rows.

    Classification-type distributions stratify on the response so that each
    fold keeps the class proportions; pairwise ranking keeps query groups
    together.
    """
    n_rows = y.shape[0]
    if n_folds < 2 or n_folds > n_rows:
        raise ConfigurationError(f"cv_folds={n_folds} must lie in [2, {n_rows}]")
    sequence = np.random.SeedSequence(seed, spawn_key=(_ASSIGNMENT_KEY,))

    groups = distribution.bag_groups(y)
    if groups is not None:
        labels, inverse = np.unique(groups, return_inverse=True)
        if labels.shape[0] < n_folds:
            raise ConfigurationError(
                f"cv_folds={n_folds} exceeds the number of groups ({labels.shape[0]})"
            )
        permutation = np.random.default_rng(sequence).permutation(labels.shape[0])
        group_fold = np.empty(labels.shape[0], dtype=np.int64)
        group_fold[permutation] = np.arange(labels.shape[0]) % n_folds
        return group_fold[inverse]

    random_state = int(sequence.generate_state(1)[0])
    strata = distribution.fold_strata(y)
    folds = np.empty(n_rows, dtype=np.int64)
    try:
        if strata is not None:
            splits = StratifiedKFold(n_splits=n_folds, shuffle=True,
                                     random_state=random_state).split(np.zeros(n_rows), strata)
        else:
            splits = KFold(n_splits=n_folds, shuffle=True,
                           random_state=random_state).split(np.zeros(n_rows))
        for k, (_, held_out) in enumerate(splits):
            folds[held_out] = k
    except ValueError as exc:
        raise ConfigurationError(f"Cannot assign {n_folds} folds: {exc}") from None
    return folds


def resolve_folds(
    distribution: Distribution,
    y: np.ndarray,
    config: TrainingConfig,
    seed: int,
    fold_ids: Optional[np.ndarray] = None
) -> np.ndarray:
    """Validated fold id for each of the training rows ``y``."""
    n_train = y.shape[0]
    if fold_ids is None:
        folds = assign_folds(distribution, y, int(config.cv_folds), seed)
    else:
        folds = np.asarray(fold_ids).ravel()[:n_train].astype(np.int64)
        if np.any(folds < 0):
            raise ConfigurationError("fold ids must be non-negative integers")
    if np.unique(folds).shape[0] < 2:
        raise ConfigurationError("Cross-validation needs at least two distinct folds")
    return folds


@dataclass(frozen=True)
class CVOutcome:
    """Aggregated cross-validation output."""

    cv_error: np.ndarray
    fits: Tuple[FitResult, ...]
    cv_fitted: np.ndarray
    fold_ids: np.ndarray


def cross_validate(
    distribution: Distribution,
    data: TrainingData,
    config: TrainingConfig,
    n_train: int,
    seed: int,
    fold_ids: Optional[np.ndarray] = None
) -> CVOutcome:
    """
    Run one boosting fit per fold and average the held-out loss curves.

    Args:
        distribution: Loss distribution.
        data: Full observation set; only the first ``n_train`` rows take part.
        config: Training configuration shared by all folds.
        n_train: Number of leading training rows.
        seed: Seed the fold streams are derived from.
        fold_ids: Explicit fold id per row (only the first n_train are used);
            None assigns ``config.cv_folds`` random folds.

    Returns:
        CVOutcome with the mean held-out loss per iteration.

    Raises:
        NumericalInstabilityError: a fold run aborted; ``partial_result`` is None.
    """
    folds = resolve_folds(distribution, data.y[:n_train], config, seed, fold_ids)
    labels = np.unique(folds)

    logger.info(f"Cross-validating over {labels.shape[0]} folds")

    def run_fold(k: int, label: int) -> FitResult:
        held_out = np.flatnonzero(folds == label)
        kept = np.flatnonzero(folds != label)
        try:
            return run_boosting(distribution, data, config, kept, held_out,
                                fold_rng(seed, k), seed, label=f"fold {k + 1}")
        except NumericalInstabilityError as exc:
            # The fold's partial ensemble is not the caller's model.
            raise NumericalInstabilityError(
                f"Cross-validation fold {k + 1} aborted: {exc}",
                iteration=exc.iteration,
            ) from exc

    fits = Parallel(n_jobs=config.n_jobs, backend="threading")(
        delayed(run_fold)(k, label) for k, label in enumerate(labels)
    )

    length = min(fit.valid_loss.shape[0] for fit in fits)
    cv_error = np.mean(np.vstack([fit.valid_loss[:length] for fit in fits]), axis=0)
    cv_error.setflags(write=False)

    cv_fitted = np.full(data.n_rows, np.nan)
    for fit in fits:
        cv_fitted[fit.valid_index] = fit.scores[fit.valid_index]
    cv_fitted.setflags(write=False)
    folds.setflags(write=False)

    return CVOutcome(cv_error=cv_error, fits=tuple(fits), cv_fitted=cv_fitted, fold_ids=folds)
