"""
Regression trees fitted to pseudo-residuals.

Trees are grown best-first: every open leaf carries its best candidate split
in a priority queue keyed by gain, and the globally best leaf is expanded
until the split budget (interaction depth) is spent. Nodes live in flat
arrays indexed by integer ids; children always have larger ids than their
parent.

Split gain is the reduction in weighted squared error,

    gain = w_L w_R / (w_L + w_R) * (mean_L - mean_R)²,

evaluated from cumulative weighted sums over the sorted feature values.
Categorical features are scanned in order of their per-level mean residual.
Missing values are excluded from the scan and then merged into whichever
child yields the larger gain.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, List, Optional, Tuple
import heapq
import logging
import warnings
import numpy as np
import pandas as pd

from .errors import DegenerateFitWarning
from .parallel import parallel_map
from .utils import weighted_mean

logger = logging.getLogger(__name__)


class MissingRoute(IntEnum):
    """Where observations with a missing split value go."""

    LEFT = 0
    RIGHT = 1
    NODE = 2  # stop at the split node and take its own value


@dataclass
class SplitCandidate:
    """Best split found for one feature of one node."""

    feature: int
    gain: float
    threshold: float = np.nan
    left_levels: Optional[np.ndarray] = None
    missing: MissingRoute = MissingRoute.NODE


def goes_left(x: np.ndarray, threshold: float, left_levels: Optional[np.ndarray],
              missing: MissingRoute) -> np.ndarray:
    """
    Boolean mask of observations sent to the left child.

    Continuous splits send x < threshold left. Categorical splits send the
    levels flagged in ``left_levels`` left; unknown levels go right. Missing
    values follow ``missing`` (NODE leaves them unrouted, reported as False).
    """
    is_missing = np.isnan(x)
    if left_levels is None:
        with np.errstate(invalid="ignore"):
            left = x < threshold
    else:
        codes = np.where(is_missing, -1, x).astype(np.int64)
        known = (codes >= 0) & (codes < left_levels.shape[0])
        left = np.zeros(x.shape[0], dtype=bool)
        left[known] = left_levels[codes[known]]
    if missing == MissingRoute.LEFT:
        left[is_missing] = True
    elif missing == MissingRoute.RIGHT:
        left[is_missing] = False
    return left


@dataclass(frozen=True)
class Tree:
    """
    A fitted regression tree stored as parallel node arrays.

    Internal nodes have ``feature >= 0``; terminal nodes have ``feature == -1``
    and ``left_child == right_child == -1``. Every node carries a fitted
    ``value`` so that missing values routed to their own branch (NODE) can
    stop at an internal node.
    """

    feature: np.ndarray
    threshold: np.ndarray
    left_levels: Tuple[Optional[np.ndarray], ...]
    missing: np.ndarray
    left_child: np.ndarray
    right_child: np.ndarray
    value: np.ndarray
    weight: np.ndarray
    count: np.ndarray
    improvement: np.ndarray

    @property
    def n_nodes(self) -> int:
        return int(self.feature.shape[0])

    @property
    def n_splits(self) -> int:
        return int(np.count_nonzero(self.feature >= 0))

    @property
    def is_leaf(self) -> np.ndarray:
        return self.feature < 0

    def apply(self, X: np.ndarray) -> np.ndarray:
        """Return the id of the node each row of X ends in."""
        X = np.asarray(X, dtype=np.float64)
        node = np.zeros(X.shape[0], dtype=np.int64)
        for i in range(self.n_nodes):
            if self.feature[i] < 0:
                continue
            rows = np.flatnonzero(node == i)
            if rows.size == 0:
                continue
            x = X[rows, self.feature[i]]
            route = MissingRoute(int(self.missing[i]))
            left = goes_left(x, self.threshold[i], self.left_levels[i], route)
            dest = np.where(left, self.left_child[i], self.right_child[i])
            if route == MissingRoute.NODE:
                dest[np.isnan(x)] = i
            node[rows] = dest
        return node

    def predict(self, X: np.ndarray) -> np.ndarray:
        """Fitted value of the node each row of X ends in."""
        return self.value[self.apply(X)]

    def to_frame(self, feature_names: Optional[List[str]] = None) -> pd.DataFrame:
        """Tabulate the tree, one row per node."""
        split_var = []
        split_point = []
        for i in range(self.n_nodes):
            f = int(self.feature[i])
            if f < 0:
                split_var.append(None)
                split_point.append(None)
                continue
            split_var.append(feature_names[f] if feature_names is not None else f)
            levels = self.left_levels[i]
            if levels is None:
                split_point.append(float(self.threshold[i]))
            else:
                split_point.append(tuple(int(v) for v in np.flatnonzero(levels)))
        return pd.DataFrame({
            "split_var": split_var,
            "split_point": split_point,
            "left": self.left_child,
            "right": self.right_child,
            "missing": [MissingRoute(int(m)).name if f >= 0 else None
                        for m, f in zip(self.missing, self.feature)],
            "improvement": self.improvement,
            "weight": self.weight,
            "count": self.count,
            "prediction": self.value,
        })


class _NodeArena:
    """Growable node storage used while a tree is being built."""

    def __init__(self):
        self.rows: List[np.ndarray] = []
        self.feature: List[int] = []
        self.threshold: List[float] = []
        self.left_levels: List[Optional[np.ndarray]] = []
        self.missing: List[int] = []
        self.left_child: List[int] = []
        self.right_child: List[int] = []
        self.improvement: List[float] = []

    def add(self, rows: np.ndarray) -> int:
        self.rows.append(rows)
        self.feature.append(-1)
        self.threshold.append(np.nan)
        self.left_levels.append(None)
        self.missing.append(int(MissingRoute.NODE))
        self.left_child.append(-1)
        self.right_child.append(-1)
        self.improvement.append(0.0)
        return len(self.rows) - 1

    def set_split(self, node: int, split: SplitCandidate, left: int, right: int) -> None:
        self.feature[node] = split.feature
        self.threshold[node] = split.threshold
        self.left_levels[node] = split.left_levels
        self.missing[node] = int(split.missing)
        self.left_child[node] = left
        self.right_child[node] = right
        self.improvement[node] = split.gain


class TreeBuilder:
    """
    Grows one regression tree on a (bagged) sample against pseudo-residuals.

    Args:
        interaction_depth: Maximum number of splits; the tree has at most
            interaction_depth + 1 terminal nodes.
        min_obs_in_node: Minimum observation count of every child.
        n_features: Features sampled without replacement at each node. None
            scans every feature.
        monotone: Per-feature constraint in {-1, 0, +1} for continuous features.
        var_types: Per-feature 0 (continuous) or number of categorical levels.
        n_jobs: Workers used to scan candidate features in parallel.
    """

    def __init__(
        self,
        interaction_depth: int = 1,
        min_obs_in_node: int = 10,
        n_features: Optional[int] = None,
        monotone: Optional[np.ndarray] = None,
        var_types: Optional[np.ndarray] = None,
        n_jobs: Optional[int] = 1
    ):
        self.interaction_depth = int(interaction_depth)
        self.min_obs_in_node = int(min_obs_in_node)
        self.n_features = n_features
        self.monotone = monotone
        self.var_types = var_types
        self.n_jobs = n_jobs

    def grow(
        self,
        X: np.ndarray,
        residuals: np.ndarray,
        weights: np.ndarray,
        rng: np.random.Generator,
        node_fit: Optional[Callable[[np.ndarray], float]] = None
    ) -> Tree:
        """
        Grow a tree.

        Args:
            X: Features of the sampled rows, shape (n, p); NaN is missing.
            residuals: Pseudo-residuals of the sampled rows.
            weights: Observation weights of the sampled rows.
            rng: Generator used for per-node feature sampling.
            node_fit: Maps row positions (into the sample) to a node value.
                Defaults to the weighted mean residual.

        Returns:
            The fitted Tree.
        """
        n_rows, n_cols = X.shape
        var_types = (np.zeros(n_cols, dtype=np.int64) if self.var_types is None
                     else np.asarray(self.var_types))
        monotone = (np.zeros(n_cols, dtype=np.int64) if self.monotone is None
                    else np.asarray(self.monotone))
        n_candidates = n_cols if self.n_features is None else min(int(self.n_features), n_cols)
        if node_fit is None:
            def node_fit(rows):
                return weighted_mean(residuals[rows], weights[rows])

        weighted_residuals = weights * residuals
        arena = _NodeArena()
        root = arena.add(np.arange(n_rows))
        if n_rows < self.min_obs_in_node:
            warnings.warn(
                f"Sample of {n_rows} rows is below min_obs_in_node={self.min_obs_in_node}; "
                "growing a single-node tree",
                DegenerateFitWarning,
                stacklevel=2,
            )

        def find_split(rows: np.ndarray) -> Optional[SplitCandidate]:
            if rows.size < max(self.min_obs_in_node, 2):
                return None
            if n_candidates < n_cols:
                features = np.sort(rng.choice(n_cols, size=n_candidates, replace=False))
            else:
                features = np.arange(n_cols)
            z = weighted_residuals[rows]
            w = weights[rows]

            def scan(j):
                x = X[rows, j]
                if var_types[j] > 0:
                    return self._scan_categorical(int(j), x, z, w, int(var_types[j]))
                return self._scan_continuous(int(j), x, z, w, int(monotone[j]))

            best = None
            for candidate in parallel_map(scan, features, self.n_jobs):
                if candidate is not None and (best is None or candidate.gain > best.gain):
                    best = candidate
            return best

        frontier: List[Tuple[float, int, SplitCandidate]] = []
        split = find_split(arena.rows[root])
        if split is not None:
            heapq.heappush(frontier, (-split.gain, root, split))

        n_terminal = 1
        while frontier and n_terminal < self.interaction_depth + 1:
            _, node, split = heapq.heappop(frontier)
            rows = arena.rows[node]
            left_mask = goes_left(X[rows, split.feature], split.threshold,
                                  split.left_levels, split.missing)
            left = arena.add(rows[left_mask])
            right = arena.add(rows[~left_mask])
            arena.set_split(node, split, left, right)
            n_terminal += 1
            for child in (left, right):
                child_split = find_split(arena.rows[child])
                if child_split is not None:
                    heapq.heappush(frontier, (-child_split.gain, child, child_split))

        if n_terminal == 1:
            logger.debug(f"Tree has no splits ({n_rows} rows)")

        values = np.array([node_fit(rows) for rows in arena.rows], dtype=np.float64)
        node_weight = np.array([np.sum(weights[rows]) for rows in arena.rows], dtype=np.float64)
        self._enforce_monotone(arena, values, node_weight, monotone, var_types)

        return Tree(
            feature=np.asarray(arena.feature, dtype=np.int64),
            threshold=np.asarray(arena.threshold, dtype=np.float64),
            left_levels=tuple(arena.left_levels),
            missing=np.asarray(arena.missing, dtype=np.int8),
            left_child=np.asarray(arena.left_child, dtype=np.int64),
            right_child=np.asarray(arena.right_child, dtype=np.int64),
            value=values,
            weight=node_weight,
            count=np.array([rows.size for rows in arena.rows], dtype=np.int64),
            improvement=np.asarray(arena.improvement, dtype=np.float64),
        )

    # ------------------------------------------------------------------
    # Split search
    # ------------------------------------------------------------------

    def _best_partition(self, w_left, s_left, n_left, totals, missing, valid, sign):
        """
        Pick the best boundary among cumulative left-side statistics.

        Returns (index, gain, route) or None when no admissible split has
        positive gain. ``totals`` and ``missing`` are (Σw, Σwz, count) of the
        non-missing and missing observations.
        """
        w_total, s_total, n_total = totals
        w_miss, s_miss, n_miss = missing
        w_right = w_total - w_left
        s_right = s_total - s_left
        n_right = n_total - n_left
        min_obs = self.min_obs_in_node

        def evaluate(wl, sl, nl, wr, sr, nr):
            ok = valid & (nl >= min_obs) & (nr >= min_obs) & (wl > 0) & (wr > 0)
            with np.errstate(divide="ignore", invalid="ignore"):
                mean_l = sl / wl
                mean_r = sr / wr
                gain = wl * wr / (wl + wr) * (mean_l - mean_r) ** 2
            if sign != 0:
                ok &= sign * (mean_r - mean_l) >= 0
            return np.where(ok, gain, -np.inf)

        if n_miss == 0:
            gain = evaluate(w_left, s_left, n_left, w_right, s_right, n_right)
            routes = np.full(gain.shape[0], int(MissingRoute.NODE))
        else:
            gain_l = evaluate(w_left + w_miss, s_left + s_miss, n_left + n_miss,
                              w_right, s_right, n_right)
            gain_r = evaluate(w_left, s_left, n_left,
                              w_right + w_miss, s_right + s_miss, n_right + n_miss)
            use_left = gain_l >= gain_r
            gain = np.where(use_left, gain_l, gain_r)
            routes = np.where(use_left, int(MissingRoute.LEFT), int(MissingRoute.RIGHT))

        if gain.shape[0] == 0:
            return None
        best = int(np.argmax(gain))
        if not gain[best] > 0:
            return None
        return best, float(gain[best]), MissingRoute(int(routes[best]))

    def _scan_continuous(self, feature, x, wz, w, sign) -> Optional[SplitCandidate]:
        is_missing = np.isnan(x)
        present = ~is_missing
        xp = x[present]
        if xp.shape[0] < 2:
            return None
        order = np.argsort(xp, kind="mergesort")
        xs = xp[order]
        valid = xs[:-1] < xs[1:]
        if not np.any(valid):
            return None
        ws = w[present][order]
        wzs = wz[present][order]
        cum_w = np.cumsum(ws)
        cum_s = np.cumsum(wzs)
        n_present = xs.shape[0]
        result = self._best_partition(
            cum_w[:-1], cum_s[:-1], np.arange(1, n_present),
            (cum_w[-1], cum_s[-1], n_present),
            (np.sum(w[is_missing]), np.sum(wz[is_missing]), int(np.count_nonzero(is_missing))),
            valid, sign,
        )
        if result is None:
            return None
        i, gain, route = result
        threshold = 0.5 * (xs[i] + xs[i + 1])
        if not xs[i] < threshold:
            threshold = xs[i + 1]
        return SplitCandidate(feature=feature, gain=gain, threshold=float(threshold),
                              missing=route)

    def _scan_categorical(self, feature, x, wz, w, n_levels) -> Optional[SplitCandidate]:
        is_missing = np.isnan(x)
        present = ~is_missing
        codes = x[present].astype(np.int64)
        level_w = np.bincount(codes, weights=w[present], minlength=n_levels)
        level_s = np.bincount(codes, weights=wz[present], minlength=n_levels)
        level_n = np.bincount(codes, minlength=n_levels)
        levels = np.flatnonzero(level_n > 0)
        if levels.shape[0] < 2:
            return None
        with np.errstate(divide="ignore", invalid="ignore"):
            means = np.where(level_w[levels] > 0, level_s[levels] / level_w[levels], 0.0)
        order = levels[np.argsort(means, kind="mergesort")]
        cum_w = np.cumsum(level_w[order])
        cum_s = np.cumsum(level_s[order])
        cum_n = np.cumsum(level_n[order])
        result = self._best_partition(
            cum_w[:-1], cum_s[:-1], cum_n[:-1],
            (cum_w[-1], cum_s[-1], cum_n[-1]),
            (np.sum(w[is_missing]), np.sum(wz[is_missing]), int(np.count_nonzero(is_missing))),
            np.ones(order.shape[0] - 1, dtype=bool), 0,
        )
        if result is None:
            return None
        i, gain, route = result
        left_levels = np.zeros(n_levels, dtype=bool)
        left_levels[order[:i + 1]] = True
        return SplitCandidate(feature=feature, gain=gain, left_levels=left_levels,
                              missing=route)

    def _enforce_monotone(self, arena, values, node_weight, monotone, var_types) -> None:
        """Pool sibling terminal values that violate a monotone constraint."""
        for node, feature in enumerate(arena.feature):
            if feature < 0 or monotone[feature] == 0 or var_types[feature] > 0:
                continue
            left, right = arena.left_child[node], arena.right_child[node]
            if arena.feature[left] >= 0 or arena.feature[right] >= 0:
                continue
            if monotone[feature] * (values[right] - values[left]) >= 0:
                continue
            total = node_weight[left] + node_weight[right]
            if total > 0:
                pooled = (node_weight[left] * values[left] + node_weight[right] * values[right]) / total
            else:
                pooled = 0.5 * (values[left] + values[right])
            values[left] = values[right] = pooled


def grow_tree(
    X: np.ndarray,
    residuals: np.ndarray,
    weights: np.ndarray,
    monotone: Optional[np.ndarray] = None,
    interaction_depth: int = 1,
    min_obs_in_node: int = 10,
    n_features: Optional[int] = None,
    var_types: Optional[np.ndarray] = None,
    rng: Optional[np.random.Generator] = None,
    node_fit: Optional[Callable[[np.ndarray], float]] = None,
    n_jobs: Optional[int] = 1
) -> Tree:
    """Grow a single tree; see :class:`TreeBuilder`."""
    builder = TreeBuilder(
        interaction_depth=interaction_depth,
        min_obs_in_node=min_obs_in_node,
        n_features=n_features,
        monotone=monotone,
        var_types=var_types,
        n_jobs=n_jobs,
    )
    if rng is None:
        rng = np.random.default_rng()
    return builder.grow(np.asarray(X, dtype=np.float64), np.asarray(residuals, dtype=np.float64),
                        np.asarray(weights, dtype=np.float64), rng, node_fit=node_fit)
