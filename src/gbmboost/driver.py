"""
The boosting loop (stochastic gradient boosting, Friedman 2002).

For m = 1..M:
  1. Draw a bag of training rows without replacement.
  2. Compute pseudo-residuals z_i for every training row from the current scores.
  3. Grow a tree on the bag against z.
  4. Add ν · T_m(x) to the score of every row.
  5. Record the training loss, the held-out loss and the out-of-bag improvement.

Results are immutable; continuing a fit returns a new FitResult that shares
the existing trees and resumes the random stream where the fit left off.

References:
- Friedman, J. H. (2002). Stochastic gradient boosting.
  Computational Statistics & Data Analysis, 38(4), 367-378.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple
import logging
import time
import numpy as np

from .config import TrainingConfig
from .distributions import Distribution
from .ensemble import Ensemble
from .errors import ConfigurationError, NumericalInstabilityError
from .tree import Tree, TreeBuilder

logger = logging.getLogger(__name__)


def _frozen(values) -> np.ndarray:
    arr = np.array(values, dtype=np.float64)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class TrainingData:
    """Validated observation set: features, response, weights, offsets."""

    X: np.ndarray
    y: np.ndarray
    weights: np.ndarray
    offset: np.ndarray
    var_types: np.ndarray
    feature_names: Optional[Tuple[str, ...]] = None

    @property
    def n_rows(self) -> int:
        return int(self.X.shape[0])


@dataclass(frozen=True)
class FitResult:
    """
    Fitted ensemble plus its per-iteration error traces.

    Attributes:
        ensemble: The fitted trees.
        config: Configuration as requested. ``n_trees`` is the requested
            iteration count; the trees actually grown are ``n_trees`` of
            the result, which is smaller after an early stop or an abort.
        train_loss: Loss over the training rows after each iteration.
        valid_loss: Loss over the held-out rows (empty without a test split).
        oob_improvement: Out-of-bag loss reduction per iteration (empty when
            bag_fraction == 1).
        train_index, valid_index: Row indices used for fitting and validation.
        data: Training data kept for continuation.
        scores: Current ensemble score for every row (without offset).
        rng_state: Bit generator state after the last iteration.
        seed: Seed (entropy) the random streams were derived from.
        cv_error: Mean held-out loss per iteration across folds.
        cv_fits: Per-fold results.
        cv_fitted: Out-of-fold score of every training row.
        fold_ids: Fold assignment of the training rows.
        stopped_early: True if the wall-clock limit ended the loop.
    """

    ensemble: Ensemble
    config: TrainingConfig
    train_loss: np.ndarray
    valid_loss: np.ndarray
    oob_improvement: np.ndarray
    train_index: np.ndarray
    valid_index: np.ndarray
    data: TrainingData = field(repr=False)
    scores: np.ndarray = field(repr=False)
    rng_state: Dict[str, Any] = field(repr=False)
    seed: int = 0
    cv_error: Optional[np.ndarray] = None
    cv_fits: Tuple["FitResult", ...] = field(default=(), repr=False)
    cv_fitted: Optional[np.ndarray] = field(default=None, repr=False)
    fold_ids: Optional[np.ndarray] = field(default=None, repr=False)
    stopped_early: bool = False

    @property
    def n_trees(self) -> int:
        return self.ensemble.n_trees

    @property
    def n_train(self) -> int:
        return int(self.train_index.shape[0])

    @property
    def has_valid(self) -> bool:
        return self.valid_loss.shape[0] > 0

    @property
    def has_oob(self) -> bool:
        return self.oob_improvement.shape[0] > 0

    @property
    def has_cv(self) -> bool:
        return self.cv_error is not None and self.cv_error.shape[0] > 0


@dataclass
class _Progress:
    """Mutable accumulator for one run of the loop."""

    scores: np.ndarray
    trees: List[Tree] = field(default_factory=list)
    train_loss: List[float] = field(default_factory=list)
    valid_loss: List[float] = field(default_factory=list)
    oob_improvement: List[float] = field(default_factory=list)
    failure: Optional[str] = None
    stopped_early: bool = False


def draw_bag(
    rng: np.random.Generator,
    n_rows: int,
    bag_fraction: float,
    strata: Optional[np.ndarray] = None,
    groups: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Sorted positions of the rows in this iteration's bag.

    Rows are drawn without replacement. With ``groups`` whole groups are
    drawn; with ``strata`` the fraction is drawn within every class.
    """
    if bag_fraction >= 1.0:
        return np.arange(n_rows)
    if groups is not None:
        labels, inverse = np.unique(groups, return_inverse=True)
        n_bag = max(1, int(bag_fraction * labels.shape[0]))
        chosen = rng.choice(labels.shape[0], size=n_bag, replace=False)
        return np.flatnonzero(np.isin(inverse, chosen))
    if strata is not None:
        parts = []
        for level in np.unique(strata):
            members = np.flatnonzero(strata == level)
            k = int(bag_fraction * members.shape[0])
            if k > 0:
                parts.append(rng.choice(members, size=k, replace=False))
        if not parts:
            return np.arange(0)
        return np.sort(np.concatenate(parts))
    n_bag = max(1, int(bag_fraction * n_rows))
    return np.sort(rng.choice(n_rows, size=n_bag, replace=False))


def _boost(
    distribution: Distribution,
    data: TrainingData,
    config: TrainingConfig,
    train_index: np.ndarray,
    valid_index: np.ndarray,
    n_iterations: int,
    rng: np.random.Generator,
    scores: np.ndarray,
    start: int = 0,
    label: str = ""
) -> _Progress:
    """Run ``n_iterations`` boosting iterations, updating ``scores`` for all rows."""
    X, y, w, offset = data.X, data.y, data.weights, data.offset
    X_t, y_t, w_t, o_t = X[train_index], y[train_index], w[train_index], offset[train_index]
    y_v, w_v, o_v = y[valid_index], w[valid_index], offset[valid_index]
    n_train = train_index.shape[0]
    strata = distribution.fold_strata(y_t)
    groups = distribution.bag_groups(y_t)
    has_oob = config.bag_fraction < 1.0

    builder = TreeBuilder(
        interaction_depth=config.interaction_depth,
        min_obs_in_node=config.min_obs_in_node,
        n_features=config.n_features,
        monotone=config.monotone_array(X.shape[1]),
        var_types=data.var_types,
        n_jobs=config.n_jobs,
    )

    progress = _Progress(scores=scores)
    total = start + n_iterations
    prefix = f"[{label}] " if label else ""
    started = time.monotonic()

    for m in range(start, total):
        if (config.time_limit is not None and m > start
                and time.monotonic() - started > config.time_limit):
            logger.warning(
                f"{prefix}Time limit of {config.time_limit}s reached after {m} iterations"
            )
            progress.stopped_early = True
            break

        # (1) Bag selection
        bag = draw_bag(rng, n_train, config.bag_fraction, strata, groups)

        # (2) Pseudo-residuals for every training row
        f_t = progress.scores[train_index]
        z = distribution.gradient(y_t, f_t, w_t, o_t)
        h = distribution.curvature(y_t, f_t, w_t, o_t)
        if not np.all(np.isfinite(z)) or (h is not None and not np.all(np.isfinite(h))):
            progress.failure = f"non-finite gradient at iteration {m + 1}"
            break

        oob = np.setdiff1d(np.arange(n_train), bag, assume_unique=True) if has_oob else None
        if has_oob and oob.shape[0] > 0:
            oob_before = distribution.loss(y_t[oob], f_t[oob], w_t[oob], o_t[oob])

        # (3) Grow the tree on the bag
        y_b, f_b, w_b, o_b, z_b = y_t[bag], f_t[bag], w_t[bag], o_t[bag], z[bag]
        h_b = None if h is None else h[bag]

        def node_fit(rows):
            return distribution.node_fit(
                y_b[rows], f_b[rows], w_b[rows], o_b[rows], z_b[rows],
                None if h_b is None else h_b[rows],
            )

        tree = builder.grow(X_t[bag], z_b, w_b, rng, node_fit=node_fit)

        # (4) Update every row's score
        new_scores = progress.scores + config.shrinkage * tree.predict(X)

        # (5) Error tracking
        f_t = new_scores[train_index]
        train_loss = distribution.loss(y_t, f_t, w_t, o_t)
        if not np.isfinite(train_loss):
            progress.failure = f"non-finite training loss at iteration {m + 1}"
            break
        valid_loss = None
        if valid_index.shape[0] > 0:
            valid_loss = distribution.loss(y_v, new_scores[valid_index], w_v, o_v)
        improvement = None
        if has_oob:
            improvement = 0.0
            if oob.shape[0] > 0:
                improvement = oob_before - distribution.loss(y_t[oob], f_t[oob], w_t[oob], o_t[oob])

        progress.scores = new_scores
        progress.trees.append(tree)
        progress.train_loss.append(train_loss)
        if valid_loss is not None:
            progress.valid_loss.append(valid_loss)
        if improvement is not None:
            progress.oob_improvement.append(improvement)

        if config.verbose and (m + 1) % config.verbose == 0:
            message = f"{prefix}Iteration {m + 1}/{total}: train_loss={train_loss:.6f}"
            if valid_loss is not None:
                message += f", valid_loss={valid_loss:.6f}"
            if improvement is not None:
                message += f", oob_improve={improvement:.6f}"
            logger.info(message)

    return progress


def run_boosting(
    distribution: Distribution,
    data: TrainingData,
    config: TrainingConfig,
    train_index: np.ndarray,
    valid_index: np.ndarray,
    rng: np.random.Generator,
    seed: int,
    label: str = ""
) -> FitResult:
    """
    Fit a fresh ensemble on ``train_index`` and track loss on ``valid_index``.

    Raises:
        NumericalInstabilityError: a gradient or loss became non-finite; the
            exception's ``partial_result`` holds the completed iterations.
    """
    y_t = data.y[train_index]
    initial_value = distribution.initial_value(
        y_t, data.weights[train_index], data.offset[train_index]
    )
    if not np.isfinite(initial_value):
        raise NumericalInstabilityError("non-finite initial value", iteration=0)
    logger.info(f"{'[' + label + '] ' if label else ''}Initial f_0 = {initial_value:.6f}")

    ensemble = Ensemble(
        distribution=distribution,
        initial_value=float(initial_value),
        shrinkage=config.shrinkage,
        trees=(),
        var_types=data.var_types,
        feature_names=data.feature_names,
    )
    scores = np.full(data.n_rows, ensemble.initial_value, dtype=np.float64)
    progress = _boost(distribution, data, config, train_index, valid_index,
                      config.n_trees, rng, scores, start=0, label=label)
    result = FitResult(
        ensemble=ensemble.extend(progress.trees),
        config=config,
        train_loss=_frozen(progress.train_loss),
        valid_loss=_frozen(progress.valid_loss),
        oob_improvement=_frozen(progress.oob_improvement),
        train_index=train_index,
        valid_index=valid_index,
        data=data,
        scores=_frozen(progress.scores),
        rng_state=rng.bit_generator.state,
        seed=seed,
        stopped_early=progress.stopped_early,
    )
    _raise_on_failure(progress, result, label)
    return result


def _raise_on_failure(progress: _Progress, result: FitResult, label: str) -> None:
    if progress.failure is None:
        return
    prefix = f"[{label}] " if label else ""
    logger.error(f"{prefix}Boosting aborted: {progress.failure}; "
                 f"keeping {result.n_trees} completed iterations")
    raise NumericalInstabilityError(
        f"Boosting aborted: {progress.failure}",
        iteration=result.n_trees + 1,
        partial_result=result,
    )


def continue_fit(prior: FitResult, num_new_trees: int, verbose: Optional[int] = None) -> FitResult:
    """
    Grow ``num_new_trees`` more trees on an existing fit.

    The prior result is left untouched: the new result shares its trees and
    extends its traces. Only the primary ensemble is extended; the
    cross-validation curve and fold fits are carried over unchanged.

    Args:
        prior: Result of :func:`gbmboost.fit` (or an earlier continuation).
        num_new_trees: Number of additional iterations.
        verbose: Override the logging frequency of the original configuration.

    Returns:
        A new FitResult with prior.n_trees + num_new_trees trees.
    """
    if int(num_new_trees) < 1:
        raise ConfigurationError(f"num_new_trees must be >= 1, got {num_new_trees}")
    if prior.data is None:
        raise ConfigurationError("The prior fit does not keep its training data")
    config = prior.config if verbose is None else replace(prior.config, verbose=verbose)

    rng = np.random.Generator(np.random.PCG64())
    rng.bit_generator.state = prior.rng_state
    distribution = prior.ensemble.distribution

    progress = _boost(distribution, prior.data, config, prior.train_index, prior.valid_index,
                      int(num_new_trees), rng, prior.scores.copy(), start=prior.n_trees)
    result = replace(
        prior,
        ensemble=prior.ensemble.extend(progress.trees),
        config=replace(config, n_trees=prior.config.n_trees + int(num_new_trees)),
        train_loss=_frozen(np.concatenate([prior.train_loss, progress.train_loss])),
        valid_loss=_frozen(np.concatenate([prior.valid_loss, progress.valid_loss])),
        oob_improvement=_frozen(np.concatenate([prior.oob_improvement, progress.oob_improvement])),
        scores=_frozen(progress.scores),
        rng_state=rng.bit_generator.state,
        stopped_early=progress.stopped_early,
    )
    _raise_on_failure(progress, result, "")
    return result
