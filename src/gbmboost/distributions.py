"""
Loss distributions for gradient tree boosting.

Each distribution maps (response, current score, weight, offset) to:

- an initial constant f_0 = argmin_γ Σ w_i L(y_i, o_i + γ),
- pseudo-residuals z_i = -(1/w_i) ∂/∂f_i Σ_j w_j L(y_j, o_j + f_j),
- the aggregate loss Σ w_i L(y_i, o_i + f_i) / Σ w_i,
- the fitted value of a terminal node.

Newton-type distributions (Bernoulli, AdaBoost, Cox, pairwise) also expose a
per-observation curvature and fit terminal nodes with a one-step Newton
update γ = Σ w z / Σ w h rather than a plain mean.

References:
- Friedman, J. H. (2001). Greedy function approximation: A gradient boosting machine.
  Annals of Statistics, 29(5), 1189-1232.
- Ridgeway, G. (1999). The state of boosting. Computing Science and Statistics, 31.
- Burges, C. J. C. (2010). From RankNet to LambdaRank to LambdaMART: An overview.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import ClassVar, Dict, List, Optional, Type
import logging
import numpy as np

from .errors import ConfigurationError, DataError
from .utils import (
    eta, line_search, sigmoid, split_response, weighted_mean, weighted_quantile
)

logger = logging.getLogger(__name__)

# Log-scale cap for Poisson/AdaBoost constants when a node is pure.
LOG_CAP = 19.0


def _average(total: float, weights: np.ndarray) -> float:
    """Normalise an accumulated loss by total weight."""
    w_sum = np.sum(weights)
    if w_sum <= 0:
        return 0.0
    return float(total / w_sum)


def _newton_step(residual: np.ndarray, weights: np.ndarray, curvature: np.ndarray) -> float:
    """One Newton-Raphson step γ = Σ w z / Σ w h; 0 when the curvature vanishes."""
    denominator = np.sum(weights * curvature)
    if not denominator > 0:
        return 0.0
    return float(np.sum(weights * residual) / denominator)


def _check_binary(values: np.ndarray, name: str, what: str = "response") -> None:
    if not np.all((values == 0) | (values == 1)):
        raise DataError(f"{name} requires {what} values in {{0, 1}}")


class Distribution(ABC):
    """
    Abstract loss distribution.

    Subclasses are frozen dataclasses carrying their own extra parameters.
    All methods are pure functions of their inputs.
    """

    name: ClassVar[str] = ""
    response_arity: ClassVar[int] = 1
    stratify: ClassVar[bool] = False
    normalize_weights: ClassVar[bool] = True

    def check_response(self, y) -> np.ndarray:
        """
        Validate the response shape and values.

        Raises:
            ConfigurationError: response arity does not match the distribution.
            DataError: response values violate the distribution's constraints.
        """
        y = np.asarray(y, dtype=np.float64)
        if self.response_arity == 1:
            if y.ndim == 2 and y.shape[1] == 1:
                y = y.ravel()
            if y.ndim != 1:
                raise ConfigurationError(
                    f"{self.name} requires a 1-D response, got shape {y.shape}"
                )
        elif y.ndim != 2 or y.shape[1] != self.response_arity:
            raise ConfigurationError(
                f"{self.name} requires a response with {self.response_arity} columns, "
                f"got shape {y.shape}"
            )
        if not np.all(np.isfinite(y)):
            raise DataError(f"{self.name} response contains non-finite values")
        self._check_values(y)
        return y

    def _check_values(self, y: np.ndarray) -> None:
        """Hook for value constraints; default accepts any finite response."""

    @abstractmethod
    def initial_value(self, y: np.ndarray, w: np.ndarray, offset: Optional[np.ndarray] = None) -> float:
        """Constant minimising the total weighted loss with no predictors."""

    @abstractmethod
    def gradient(self, y: np.ndarray, f: np.ndarray, w: np.ndarray,
                 offset: Optional[np.ndarray] = None) -> np.ndarray:
        """Pseudo-residuals (negative gradient per unit weight)."""

    @abstractmethod
    def loss(self, y: np.ndarray, f: np.ndarray, w: np.ndarray,
             offset: Optional[np.ndarray] = None) -> float:
        """Weighted average loss Σ w L / Σ w."""

    def curvature(self, y: np.ndarray, f: np.ndarray, w: np.ndarray,
                  offset: Optional[np.ndarray] = None) -> Optional[np.ndarray]:
        """Second derivative per unit weight, for Newton node fits. None if unused."""
        return None

    def node_fit(self, y: np.ndarray, f: np.ndarray, w: np.ndarray,
                 offset: Optional[np.ndarray], residual: np.ndarray,
                 curvature: Optional[np.ndarray] = None) -> float:
        """Terminal node value; defaults to the weighted mean of the residuals."""
        return weighted_mean(residual, w)

    def inverse_link(self, f: np.ndarray) -> np.ndarray:
        """Map scores to the response scale."""
        return f

    def fold_strata(self, y: np.ndarray) -> Optional[np.ndarray]:
        """Class labels to stratify folds and bags on, or None."""
        return y if self.stratify else None

    def bag_groups(self, y: np.ndarray) -> Optional[np.ndarray]:
        """Labels of units that must be bagged and folded together, or None."""
        return None


# =============================================================================
# Regression losses
# =============================================================================


@dataclass(frozen=True)
class Gaussian(Distribution):
    """Squared error: L(y, f) = ½ (y - f)²."""

    name: ClassVar[str] = "gaussian"

    def initial_value(self, y, w, offset=None):
        return weighted_mean(y - eta(0.0, offset), w)

    def gradient(self, y, f, w, offset=None):
        return y - eta(f, offset)

    def loss(self, y, f, w, offset=None):
        r = y - eta(f, offset)
        return _average(0.5 * np.sum(w * r * r), w)


@dataclass(frozen=True)
class Laplace(Distribution):
    """Absolute error: L(y, f) = |y - f|; nodes take the weighted median."""

    name: ClassVar[str] = "laplace"

    def initial_value(self, y, w, offset=None):
        return weighted_quantile(y - eta(0.0, offset), w, 0.5)

    def gradient(self, y, f, w, offset=None):
        return np.sign(y - eta(f, offset))

    def loss(self, y, f, w, offset=None):
        return _average(np.sum(w * np.abs(y - eta(f, offset))), w)

    def node_fit(self, y, f, w, offset, residual, curvature=None):
        return weighted_quantile(y - eta(f, offset), w, 0.5)


@dataclass(frozen=True)
class Quantile(Distribution):
    """Check loss: L = α r for r > 0 and (α - 1) r otherwise, r = y - f."""

    alpha: float = 0.5
    name: ClassVar[str] = "quantile"

    def __post_init__(self):
        if not 0.0 < self.alpha < 1.0:
            raise ConfigurationError(f"Quantile alpha must lie in (0, 1), got {self.alpha}")

    def initial_value(self, y, w, offset=None):
        return weighted_quantile(y - eta(0.0, offset), w, self.alpha)

    def gradient(self, y, f, w, offset=None):
        r = y - eta(f, offset)
        return np.where(r > 0, self.alpha, -(1.0 - self.alpha))

    def loss(self, y, f, w, offset=None):
        r = y - eta(f, offset)
        per_obs = np.where(r > 0, self.alpha * r, (self.alpha - 1.0) * r)
        return _average(np.sum(w * per_obs), w)

    def node_fit(self, y, f, w, offset, residual, curvature=None):
        return weighted_quantile(y - eta(f, offset), w, self.alpha)


@dataclass(frozen=True)
class TDist(Distribution):
    """
    Student-t loss: L = log(1 + (y - f)² / ν).

    Robust to heavy-tailed noise; constants are found by bounded line search
    since the loss is not convex.
    """

    df: float = 4.0
    name: ClassVar[str] = "tdist"

    def __post_init__(self):
        if not self.df > 0:
            raise ConfigurationError(f"t-distribution df must be positive, got {self.df}")

    def _constant(self, r: np.ndarray, w: np.ndarray) -> float:
        keep = w > 0
        if not np.any(keep):
            return 0.0
        r, w = r[keep], w[keep]

        def objective(gamma):
            u = r - gamma
            return np.sum(w * np.log1p(u * u / self.df))

        return line_search(objective, float(np.min(r)), float(np.max(r)))

    def initial_value(self, y, w, offset=None):
        return self._constant(y - eta(0.0, offset), w)

    def gradient(self, y, f, w, offset=None):
        u = y - eta(f, offset)
        return 2.0 * u / (self.df + u * u)

    def loss(self, y, f, w, offset=None):
        u = y - eta(f, offset)
        return _average(np.sum(w * np.log1p(u * u / self.df)), w)

    def node_fit(self, y, f, w, offset, residual, curvature=None):
        return self._constant(y - eta(f, offset), w)


@dataclass(frozen=True)
class Poisson(Distribution):
    """Poisson deviance with log link: L = exp(f) - y f."""

    name: ClassVar[str] = "poisson"

    def _check_values(self, y):
        if np.any(y < 0):
            raise DataError("poisson requires non-negative response values")

    @staticmethod
    def _log_ratio(numerator: float, denominator: float) -> float:
        if numerator <= 0:
            return -LOG_CAP
        if denominator <= 0:
            return 0.0
        return float(np.clip(np.log(numerator / denominator), -LOG_CAP, LOG_CAP))

    def initial_value(self, y, w, offset=None):
        base = np.exp(eta(np.zeros_like(y), offset))
        return self._log_ratio(np.sum(w * y), np.sum(w * base))

    def gradient(self, y, f, w, offset=None):
        return y - np.exp(eta(f, offset))

    def curvature(self, y, f, w, offset=None):
        return np.exp(eta(f, offset))

    def loss(self, y, f, w, offset=None):
        e = eta(f, offset)
        return _average(np.sum(w * (np.exp(e) - y * e)), w)

    def node_fit(self, y, f, w, offset, residual, curvature=None):
        return self._log_ratio(np.sum(w * y), np.sum(w * np.exp(eta(f, offset))))

    def inverse_link(self, f):
        return np.exp(f)


# =============================================================================
# Classification losses
# =============================================================================


@dataclass(frozen=True)
class Bernoulli(Distribution):
    """
    Binomial deviance (logistic loss) for y ∈ {0, 1}:
    L(y, f) = log(1 + exp(f)) - y f.

    Terminal nodes use the LogitBoost Newton step Σ w (y - p) / Σ w p (1 - p).
    """

    name: ClassVar[str] = "bernoulli"
    stratify: ClassVar[bool] = True

    def _check_values(self, y):
        _check_binary(y, self.name)

    def initial_value(self, y, w, offset=None):
        if offset is None or not np.any(offset):
            p = np.clip(weighted_mean(y, w), 1e-15, 1 - 1e-15)
            return float(np.log(p / (1 - p)))
        # Newton iterations for the intercept in the presence of an offset
        f0 = 0.0
        for _ in range(100):
            p = sigmoid(offset + f0)
            step = _newton_step(y - p, w, p * (1 - p))
            f0 += step
            if abs(step) < 1e-12:
                break
        return float(f0)

    def gradient(self, y, f, w, offset=None):
        return y - sigmoid(eta(f, offset))

    def curvature(self, y, f, w, offset=None):
        p = sigmoid(eta(f, offset))
        return p * (1 - p)

    def loss(self, y, f, w, offset=None):
        e = eta(f, offset)
        return _average(np.sum(w * (np.logaddexp(0.0, e) - y * e)), w)

    def node_fit(self, y, f, w, offset, residual, curvature=None):
        if curvature is None:
            curvature = self.curvature(y, f, w, offset)
        return _newton_step(residual, w, curvature)

    def inverse_link(self, f):
        return sigmoid(f)


@dataclass(frozen=True)
class AdaBoost(Distribution):
    """Exponential loss for y ∈ {0, 1}: L = exp(-(2y - 1) f)."""

    name: ClassVar[str] = "adaboost"
    stratify: ClassVar[bool] = True

    def _check_values(self, y):
        _check_binary(y, self.name)

    def initial_value(self, y, w, offset=None):
        o = eta(np.zeros_like(y), offset)
        numerator = max(np.sum(w * y * np.exp(-o)), 1e-15)
        denominator = max(np.sum(w * (1 - y) * np.exp(o)), 1e-15)
        return float(np.clip(0.5 * np.log(numerator / denominator), -LOG_CAP, LOG_CAP))

    def gradient(self, y, f, w, offset=None):
        sign = 2 * y - 1
        return sign * np.exp(-sign * eta(f, offset))

    def curvature(self, y, f, w, offset=None):
        return np.exp(-(2 * y - 1) * eta(f, offset))

    def loss(self, y, f, w, offset=None):
        return _average(np.sum(w * np.exp(-(2 * y - 1) * eta(f, offset))), w)

    def node_fit(self, y, f, w, offset, residual, curvature=None):
        if curvature is None:
            curvature = self.curvature(y, f, w, offset)
        return _newton_step(residual, w, curvature)

    def inverse_link(self, f):
        return sigmoid(2 * f)


@dataclass(frozen=True)
class Huberized(Distribution):
    """
    Huberized squared hinge loss for y ∈ {0, 1} with margin m = (2y - 1) f:
    L = -4m for m < -1, (1 - m)² for -1 ≤ m < 1, and 0 otherwise.

    The population minimiser is 2p - 1, which gives the probability mapping.
    """

    name: ClassVar[str] = "huberized"
    stratify: ClassVar[bool] = True

    def _check_values(self, y):
        _check_binary(y, self.name)

    @staticmethod
    def _per_obs(y, e):
        m = (2 * y - 1) * e
        return np.where(m < -1, -4 * m, np.where(m < 1, (1 - m) ** 2, 0.0))

    def _constant(self, y, w, e):
        keep = w > 0
        if not np.any(keep):
            return 0.0
        y, w, e = y[keep], w[keep], e[keep]

        def objective(gamma):
            return np.sum(w * self._per_obs(y, e + gamma))

        return line_search(objective, -1.0 - float(np.max(e)), 1.0 - float(np.min(e)))

    def initial_value(self, y, w, offset=None):
        return self._constant(y, w, eta(np.zeros_like(y), offset))

    def gradient(self, y, f, w, offset=None):
        sign = 2 * y - 1
        m = sign * eta(f, offset)
        return np.where(m < -1, 4 * sign, np.where(m < 1, 2 * sign * (1 - m), 0.0))

    def loss(self, y, f, w, offset=None):
        return _average(np.sum(w * self._per_obs(y, eta(f, offset))), w)

    def node_fit(self, y, f, w, offset, residual, curvature=None):
        return self._constant(y, w, eta(f, offset))

    def inverse_link(self, f):
        return np.clip((f + 1) / 2, 0.0, 1.0)


# =============================================================================
# Survival: Cox proportional hazards
# =============================================================================


@dataclass(frozen=True)
class CoxPH(Distribution):
    """
    Cox partial likelihood with Breslow handling of tied times.

    The response is an (n, 2) array of (time, event). The risk set of an
    event at time t is every observation with time >= t, tied ones included.
    Exponentials are shifted by max(f) before summing to avoid overflow.
    """

    name: ClassVar[str] = "coxph"
    response_arity: ClassVar[int] = 2

    def _check_values(self, y):
        _check_binary(y[:, 1], self.name, what="event")

    def _risk_terms(self, y, f, w, offset):
        """
        Per-observation risk-set quantities in the original row order.

        Returns (log S, A, B, exp(η - shift)) where S_i is the weighted risk
        sum for row i's time, A_m = Σ_{events i: t_i <= t_m} w_i / S_i and
        B_m = Σ w_i / S_i², all on the shifted scale.
        """
        time, event = split_response(y)
        e = eta(f, offset)
        n = time.shape[0]
        shift = float(np.max(e)) if n else 0.0
        order = np.lexsort((np.arange(n), -time))
        t_sorted = time[order]
        scaled = np.exp(e - shift)
        risk = np.cumsum(w[order] * scaled[order])

        new_group = np.empty(n, dtype=bool)
        new_group[:1] = True
        new_group[1:] = t_sorted[1:] != t_sorted[:-1]
        group_start = np.flatnonzero(new_group)
        group_end = np.append(group_start[1:], n) - 1
        group_id = np.cumsum(new_group) - 1
        S = risk[group_end[group_id]]

        w_sorted = w[order]
        counted = (event[order] > 0) & (w_sorted > 0)
        with np.errstate(divide="ignore", invalid="ignore"):
            q1 = np.where(counted, w_sorted / S, 0.0)
            q2 = np.where(counted, w_sorted / (S * S), 0.0)
            log_S = np.log(S) + shift
        A = np.cumsum(q1[::-1])[::-1][group_start[group_id]]
        B = np.cumsum(q2[::-1])[::-1][group_start[group_id]]

        inverse = np.empty(n, dtype=np.int64)
        inverse[order] = np.arange(n)
        return log_S[inverse], A[inverse], B[inverse], scaled

    def initial_value(self, y, w, offset=None):
        # A constant shift leaves the partial likelihood unchanged.
        return 0.0

    def gradient(self, y, f, w, offset=None):
        _, A, _, scaled = self._risk_terms(y, f, w, offset)
        return y[:, 1] - scaled * A

    def curvature(self, y, f, w, offset=None):
        _, A, B, scaled = self._risk_terms(y, f, w, offset)
        return scaled * A - w * scaled * scaled * B

    def loss(self, y, f, w, offset=None):
        log_S, _, _, _ = self._risk_terms(y, f, w, offset)
        counted = (y[:, 1] > 0) & (w > 0)
        e = eta(f, offset)
        total = -np.sum(w[counted] * (e[counted] - log_S[counted]))
        return _average(total, w)

    def node_fit(self, y, f, w, offset, residual, curvature=None):
        if curvature is None:
            raise ConfigurationError("coxph node fits need the global risk-set curvature")
        return _newton_step(residual, w, curvature)

    def inverse_link(self, f):
        return np.exp(f)


# =============================================================================
# Ranking: pairwise
# =============================================================================


@dataclass(frozen=True)
class Pairwise(Distribution):
    """
    Pairwise ranking within query groups.

    The response is an (n, 2) array of (relevance score, group id). For every
    ordered pair (i, j) in a group with score_i > score_j the loss is
    Δ_ij log(1 + exp(-(f_i - f_j))), averaged over the group's pairs.

    ``metric="conc"`` uses Δ = 1 (RankNet). ``metric="ndcg"`` uses the change
    in NDCG from swapping i and j under the current ranking (LambdaRank),
    truncated at ``max_rank``. Since NDCG is piecewise constant in f, the
    gradient is the exact derivative of the loss wherever ranks do not tie.

    The weight of a group is the weight of its first observation; weights are
    not renormalised.
    """

    metric: str = "conc"
    max_rank: Optional[int] = None
    name: ClassVar[str] = "pairwise"
    response_arity: ClassVar[int] = 2
    normalize_weights: ClassVar[bool] = False

    def __post_init__(self):
        if self.metric not in ("conc", "ndcg"):
            raise ConfigurationError(f"Unsupported pairwise metric: {self.metric}")
        if self.max_rank is not None and self.max_rank < 1:
            raise ConfigurationError("max_rank must be a positive integer")

    def bag_groups(self, y):
        return y[:, 1]

    @staticmethod
    def _group_index(group: np.ndarray) -> List[np.ndarray]:
        _, inverse, counts = np.unique(group, return_inverse=True, return_counts=True)
        order = np.argsort(inverse, kind="mergesort")
        return np.split(order, np.cumsum(counts)[:-1])

    def _discount(self, ranks: np.ndarray) -> np.ndarray:
        disc = 1.0 / np.log2(1.0 + ranks)
        if self.max_rank is not None:
            disc = np.where(ranks > self.max_rank, 0.0, disc)
        return disc

    def _pair_weights(self, score: np.ndarray, e: np.ndarray) -> Optional[np.ndarray]:
        """Matrix Δ_ij over ordered pairs, or None if the group has no pairs."""
        preferred = score[:, None] > score[None, :]
        n_pairs = np.count_nonzero(preferred)
        if n_pairs == 0:
            return None
        if self.metric == "conc":
            delta = preferred.astype(np.float64)
        else:
            n = score.shape[0]
            ranks = np.empty(n)
            ranks[np.lexsort((np.arange(n), -e))] = np.arange(1, n + 1)
            disc = self._discount(ranks)
            ideal = np.sum(np.sort(score)[::-1] * self._discount(np.arange(1, n + 1)))
            if ideal <= 0:
                return None
            delta = np.abs((score[:, None] - score[None, :]) * (disc[:, None] - disc[None, :]))
            delta = np.where(preferred, delta / ideal, 0.0)
        return delta / n_pairs

    def _pairwise_terms(self, y, f, w, offset, what: str) -> np.ndarray:
        score, group = split_response(y)
        e = eta(f, offset)
        out = np.zeros_like(e)
        for idx in self._group_index(group):
            delta = self._pair_weights(score[idx], e[idx])
            if delta is None:
                continue
            diff = e[idx][:, None] - e[idx][None, :]
            rho = sigmoid(-diff)
            if what == "gradient":
                lam = delta * rho
                out[idx] = lam.sum(axis=1) - lam.sum(axis=0)
            else:
                hess = delta * rho * (1 - rho)
                out[idx] = hess.sum(axis=1) + hess.sum(axis=0)
        return out

    def initial_value(self, y, w, offset=None):
        return 0.0

    def gradient(self, y, f, w, offset=None):
        return self._pairwise_terms(y, f, w, offset, "gradient")

    def curvature(self, y, f, w, offset=None):
        return self._pairwise_terms(y, f, w, offset, "curvature")

    def loss(self, y, f, w, offset=None):
        score, group = split_response(y)
        e = eta(f, offset)
        total = 0.0
        weight = 0.0
        for idx in self._group_index(group):
            group_weight = w[idx[0]]
            weight += group_weight
            delta = self._pair_weights(score[idx], e[idx])
            if delta is None:
                continue
            diff = e[idx][:, None] - e[idx][None, :]
            total += group_weight * np.sum(delta * np.logaddexp(0.0, -diff))
        if weight <= 0:
            return 0.0
        return float(total / weight)

    def node_fit(self, y, f, w, offset, residual, curvature=None):
        if curvature is None:
            curvature = self.curvature(y, f, w, offset)
        return _newton_step(residual, w, curvature)


_DISTRIBUTIONS: Dict[str, Type[Distribution]] = {
    cls.name: cls
    for cls in (Gaussian, Laplace, Quantile, TDist, Poisson,
                Bernoulli, AdaBoost, Huberized, CoxPH, Pairwise)
}


def make_distribution(name: str, **params) -> Distribution:
    """
    Build a distribution from its name and extra parameters.

    Args:
        name: One of gaussian, laplace, quantile, tdist, poisson, bernoulli,
            adaboost, huberized, coxph, pairwise.
        **params: Variant parameters, e.g. ``alpha`` for quantile, ``df`` for
            tdist, ``metric``/``max_rank`` for pairwise.

    Raises:
        ConfigurationError: unknown name or invalid parameters.
    """
    try:
        cls = _DISTRIBUTIONS[name.lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown distribution {name!r}; expected one of {sorted(_DISTRIBUTIONS)}"
        ) from None
    try:
        return cls(**params)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid parameters for {name}: {exc}") from None
