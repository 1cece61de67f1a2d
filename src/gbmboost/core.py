"""
Estimator interface over the functional fit/predict API.

Wraps :func:`gbmboost.boosting.fit` in fit/predict estimators for
regression, binary classification, survival analysis and ranking. The
boosting itself follows Algorithm 10.4 (Gradient Tree Boosting) from
"The Elements of Statistical Learning" with the stochastic extension of
Friedman (2002).

References:
- Hastie, T., Tibshirani, R., & Friedman, J. (2009). The Elements of Statistical
  Learning (2nd ed.). Springer. Chapter 10.
- Friedman, J. H. (2001). Greedy function approximation: A gradient boosting machine.
  Annals of Statistics, 29(5), 1189-1232.
- Friedman, J. H. (2002). Stochastic gradient boosting.
  Computational Statistics & Data Analysis, 38(4), 367-378.
"""

from typing import Optional, Sequence, Union
import logging
import numpy as np

from .boosting import fit, continue_fit
from .config import TrainingConfig
from .distributions import Distribution, make_distribution
from .driver import FitResult
from .errors import ConfigurationError, DataError
from .perf import best_iteration


class GradientBoostingBase:
    """
    Base class for gradient boosting estimators.

    Holds the hyperparameters, builds a :class:`TrainingConfig` from them and
    exposes the fitted state with scikit-learn style trailing underscores.
    """

    default_loss = "gaussian"

    def __init__(
        self,
        loss: Union[str, Distribution, None] = None,
        n_estimators: int = 100,
        learning_rate: float = 0.1,
        interaction_depth: int = 1,
        min_samples_leaf: int = 10,
        subsample: float = 0.5,
        max_features: Optional[int] = None,
        monotone: Optional[Sequence[int]] = None,
        train_fraction: float = 1.0,
        cv_folds: int = 0,
        n_jobs: Optional[int] = 1,
        random_state: Optional[int] = None,
        verbose: bool = False,
        **loss_params
    ):
        """
        Args:
            loss: Distribution name (e.g. "gaussian", "quantile") or instance.
            n_estimators: Number of boosting stages (M).
            learning_rate: Shrinkage parameter ν ∈ (0, 1]. Multiplies tree contributions.
            interaction_depth: Splits per tree; trees have interaction_depth + 1 leaves.
            min_samples_leaf: Minimum samples required in a leaf node.
            subsample: Fraction of samples to use per iteration (stochastic boosting).
            max_features: Features sampled as split candidates; None uses all.
            monotone: Per-feature monotonicity constraint in {-1, 0, +1}.
            train_fraction: Leading fraction of rows used for fitting; the
                rest is tracked as a test set.
            cv_folds: Number of cross-validation folds (0 disables).
            n_jobs: Worker count for split scans and CV folds.
            random_state: Random seed for reproducibility.
            verbose: Enable logging output (True logs every 10 iterations).
            **loss_params: Extra distribution parameters, e.g. alpha=0.9.
        """
        self.loss = loss
        self.n_estimators = n_estimators
        self.learning_rate = learning_rate
        self.interaction_depth = interaction_depth
        self.min_samples_leaf = min_samples_leaf
        self.subsample = subsample
        self.max_features = max_features
        self.monotone = monotone
        self.train_fraction = train_fraction
        self.cv_folds = cv_folds
        self.n_jobs = n_jobs
        self.random_state = random_state
        self.verbose = verbose
        self.loss_params = loss_params

        # Model state
        self.fit_result_: Optional[FitResult] = None

        # Setup logging
        self.logger = logging.getLogger(__name__)
        if self.verbose:
            logging.basicConfig(level=logging.INFO)

    def _distribution(self) -> Distribution:
        loss = self.default_loss if self.loss is None else self.loss
        if isinstance(loss, Distribution):
            if self.loss_params:
                raise ConfigurationError("loss_params are only used with a distribution name")
            return loss
        return make_distribution(loss, **self.loss_params)

    def _config(self, n_rows: int) -> TrainingConfig:
        if not 0.0 < self.train_fraction <= 1.0:
            raise ConfigurationError(
                f"train_fraction must lie in (0, 1], got {self.train_fraction}"
            )
        num_train = None
        if self.train_fraction < 1.0:
            num_train = max(1, int(np.floor(self.train_fraction * n_rows)))
        return TrainingConfig(
            n_trees=self.n_estimators,
            interaction_depth=self.interaction_depth,
            min_obs_in_node=self.min_samples_leaf,
            shrinkage=self.learning_rate,
            bag_fraction=self.subsample,
            num_train=num_train,
            n_features=self.max_features,
            monotone=None if self.monotone is None else tuple(self.monotone),
            cv_folds=self.cv_folds,
            seed=self.random_state,
            n_jobs=self.n_jobs,
            verbose=10 if self.verbose is True else int(self.verbose),
        )

    def _fit(self, X, response, sample_weight=None, offset=None, fold_ids=None,
             var_types=None, feature_names=None):
        if feature_names is None and hasattr(X, "columns"):
            feature_names = list(X.columns)
        X = np.asarray(X, dtype=np.float64)
        if X.ndim != 2:
            raise DataError(f"X must be 2-dimensional, got shape {X.shape}")
        self.fit_result_ = fit(
            self._config(X.shape[0]),
            self._distribution(),
            X,
            response,
            weights=sample_weight,
            offset=offset,
            fold_ids=fold_ids,
            var_types=var_types,
            feature_names=feature_names,
        )
        self.logger.info(
            f"Fitted {self.fit_result_.n_trees} trees, "
            f"final train_loss={self.fit_result_.train_loss[-1]:.6f}"
        )
        return self

    def _check_fitted(self) -> FitResult:
        if self.fit_result_ is None:
            raise ConfigurationError(f"{type(self).__name__} is not fitted yet; call fit first")
        return self.fit_result_

    def fit_more(self, n_estimators: int):
        """
        Grow ``n_estimators`` additional trees, continuing the random stream.

        Equivalent to having fit with the larger number of trees from the start.
        """
        self.fit_result_ = continue_fit(self._check_fitted(), n_estimators)
        self.n_estimators = self.fit_result_.n_trees
        return self

    # Fitted state

    @property
    def f0_(self) -> float:
        """Initial constant prediction."""
        return self._check_fitted().ensemble.initial_value

    @property
    def estimators_(self):
        return list(self._check_fitted().ensemble.trees)

    @property
    def train_scores_(self) -> np.ndarray:
        return self._check_fitted().train_loss

    @property
    def val_scores_(self) -> np.ndarray:
        return self._check_fitted().valid_loss

    @property
    def oob_improvement_(self) -> np.ndarray:
        return self._check_fitted().oob_improvement

    @property
    def cv_scores_(self) -> Optional[np.ndarray]:
        return self._check_fitted().cv_error

    @property
    def feature_importances_(self) -> np.ndarray:
        """Relative influence of each feature, in percent."""
        return self._check_fitted().ensemble.relative_influence(normalize=True)

    def best_iteration(self, method: Optional[str] = None) -> int:
        """
        Estimated optimal number of trees.

        ``method`` defaults to "cv" when cross-validation ran, else "test"
        when a test fraction was held out, else "oob".
        """
        result = self._check_fitted()
        if method is None:
            method = "cv" if result.has_cv else ("test" if result.has_valid else "oob")
        return best_iteration(result, method)

    def _predict_raw(self, X: np.ndarray, up_to_iteration: Optional[int] = None,
                     offset=None) -> np.ndarray:
        """
        Raw predictions on the link scale.

        Args:
            X: Features, shape (n_samples, n_features).
            up_to_iteration: Use only first k estimators (for staged predictions).
            offset: Optional offset added to the score.

        Returns:
            Predictions, shape (n_samples,).
        """
        return self._check_fitted().ensemble.predict(X, n_trees=up_to_iteration, offset=offset)

    def decision_function(self, X: np.ndarray, n_iterations: Optional[int] = None) -> np.ndarray:
        return self._predict_raw(X, up_to_iteration=n_iterations)

    def staged_decision_function(self, X: np.ndarray, iterations: Sequence[int]) -> np.ndarray:
        """Link-scale predictions after each count in ``iterations``, one column per count."""
        return self._check_fitted().ensemble.predict(X, n_trees=list(iterations))


class GradientBoostingRegressor(GradientBoostingBase):
    """
    Gradient Tree Boosting for regression.

    Supports the gaussian, laplace, quantile, tdist and poisson losses; the
    default is squared error.
    """

    _losses = ("gaussian", "laplace", "quantile", "tdist", "poisson")

    def fit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        sample_weight: Optional[np.ndarray] = None,
        offset: Optional[np.ndarray] = None,
        fold_ids: Optional[np.ndarray] = None,
        var_types: Optional[np.ndarray] = None
    ) -> "GradientBoostingRegressor":
        """
        Fit gradient boosting regressor.

        Args:
            X: Training features, shape (n_samples, n_features); NaN marks missing.
            y: Training targets, shape (n_samples,).
            sample_weight: Optional observation weights.
            offset: Optional link-scale offset.
            fold_ids: Optional explicit cross-validation folds.
            var_types: Per-feature 0 (continuous) or number of categorical levels.

        Returns:
            self
        """
        if self._distribution().name not in self._losses:
            raise ConfigurationError(
                f"{type(self).__name__} supports losses {self._losses}"
            )
        return self._fit(X, y, sample_weight, offset, fold_ids, var_types)

    def predict(self, X: np.ndarray, n_iterations: Optional[int] = None) -> np.ndarray:
        """Predict regression targets (response scale; exp(f) for poisson)."""
        return self._check_fitted().ensemble.predict(X, n_trees=n_iterations, kind="response")


class GradientBoostingClassifier(GradientBoostingBase):
    """
    Gradient Tree Boosting for binary classification.

    Uses binomial deviance with Newton-Raphson leaf values by default
    (LogitBoost); "adaboost" and "huberized" are also accepted.

    References:
    - Friedman et al. (2000), "Additive logistic regression" (LogitBoost).
    """

    default_loss = "bernoulli"
    _losses = ("bernoulli", "adaboost", "huberized")

    def fit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        sample_weight: Optional[np.ndarray] = None,
        offset: Optional[np.ndarray] = None,
        fold_ids: Optional[np.ndarray] = None,
        var_types: Optional[np.ndarray] = None
    ) -> "GradientBoostingClassifier":
        """
        Fit gradient boosting classifier.

        Args:
            X: Training features, shape (n_samples, n_features).
            y: Training targets {0, 1}, shape (n_samples,).

        Returns:
            self
        """
        if self._distribution().name not in self._losses:
            raise ConfigurationError(
                f"{type(self).__name__} supports losses {self._losses}"
            )
        return self._fit(X, y, sample_weight, offset, fold_ids, var_types)

    def predict_proba(self, X: np.ndarray, n_iterations: Optional[int] = None) -> np.ndarray:
        """
        Predict class probabilities.

        Returns:
            Probabilities for class 1, shape (n_samples,).
        """
        return self._check_fitted().ensemble.predict(X, n_trees=n_iterations, kind="response")

    def predict(self, X: np.ndarray, n_iterations: Optional[int] = None) -> np.ndarray:
        """Predict class labels {0, 1}."""
        proba = self.predict_proba(X, n_iterations)
        return (proba >= 0.5).astype(int)


class GradientBoostingSurvivalAnalysis(GradientBoostingBase):
    """Cox proportional hazards boosting; predictions are relative risks exp(f)."""

    default_loss = "coxph"

    def fit(self, X, time, event, sample_weight=None, offset=None, fold_ids=None,
            var_types=None) -> "GradientBoostingSurvivalAnalysis":
        time = np.asarray(time, dtype=np.float64).ravel()
        event = np.asarray(event, dtype=np.float64).ravel()
        if time.shape != event.shape:
            raise DataError(f"time has shape {time.shape}, event has shape {event.shape}")
        return self._fit(X, np.column_stack([time, event]), sample_weight, offset,
                         fold_ids, var_types)

    def predict(self, X: np.ndarray, n_iterations: Optional[int] = None) -> np.ndarray:
        return self._check_fitted().ensemble.predict(X, n_trees=n_iterations, kind="response")


class GradientBoostingRanker(GradientBoostingBase):
    """
    Pairwise learning to rank within query groups.

    Extra keyword arguments ``metric`` ("conc" or "ndcg") and ``max_rank``
    are passed to the pairwise distribution.
    """

    default_loss = "pairwise"

    def fit(self, X, y, group, sample_weight=None, fold_ids=None,
            var_types=None) -> "GradientBoostingRanker":
        y = np.asarray(y, dtype=np.float64).ravel()
        group = np.asarray(group).ravel()
        if y.shape != group.shape:
            raise DataError(f"y has shape {y.shape}, group has shape {group.shape}")
        group_codes = np.unique(group, return_inverse=True)[1]
        return self._fit(X, np.column_stack([y, group_codes]), sample_weight,
                         None, fold_ids, var_types)

    def predict(self, X: np.ndarray, n_iterations: Optional[int] = None) -> np.ndarray:
        """Ranking scores; higher means ranked earlier within a group."""
        return self._predict_raw(X, up_to_iteration=n_iterations)
