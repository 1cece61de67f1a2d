"""
Additive tree ensemble: F(x) = f_0 + ν Σ_m T_m(x).
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union
import numpy as np

from .distributions import Distribution
from .errors import ConfigurationError
from .tree import Tree
from .utils import as_feature_matrix


@dataclass(frozen=True)
class Ensemble:
    """
    Ordered sequence of trees with the global initial value and shrinkage.

    Trees are stored in a tuple so that extending an ensemble shares the
    existing prefix instead of copying or mutating it.
    """

    distribution: Distribution
    initial_value: float
    shrinkage: float
    trees: Tuple[Tree, ...]
    var_types: np.ndarray
    feature_names: Optional[Tuple[str, ...]] = None

    @property
    def n_trees(self) -> int:
        return len(self.trees)

    @property
    def n_features(self) -> int:
        return int(self.var_types.shape[0])

    def extend(self, trees: Sequence[Tree]) -> "Ensemble":
        """New ensemble with ``trees`` appended."""
        return Ensemble(
            distribution=self.distribution,
            initial_value=self.initial_value,
            shrinkage=self.shrinkage,
            trees=self.trees + tuple(trees),
            var_types=self.var_types,
            feature_names=self.feature_names,
        )

    def _check_n_trees(self, n_trees: Optional[int]) -> int:
        if n_trees is None:
            return self.n_trees
        n_trees = int(n_trees)
        if n_trees < 0 or n_trees > self.n_trees:
            raise ConfigurationError(
                f"n_trees={n_trees} outside [0, {self.n_trees}]"
            )
        return n_trees

    def predict(
        self,
        X: np.ndarray,
        n_trees: Union[None, int, Sequence[int]] = None,
        offset: Optional[np.ndarray] = None,
        kind: str = "link"
    ) -> np.ndarray:
        """
        Predictions using the first ``n_trees`` trees.

        Args:
            X: Features, shape (n_samples, n_features); NaN is missing.
            n_trees: Tree count, or a sequence of counts for staged predictions
                (returns shape (n_samples, len(n_trees))). None uses all trees.
            offset: Optional offset added to the score.
            kind: "link" for the raw score, "response" to apply the
                distribution's inverse link.

        Returns:
            Predictions, shape (n_samples,) or (n_samples, len(n_trees)).
        """
        if kind not in ("link", "response"):
            raise ConfigurationError(f"kind must be 'link' or 'response', got {kind!r}")
        X = as_feature_matrix(X)
        if X.shape[1] != self.n_features:
            raise ConfigurationError(
                f"X has {X.shape[1]} columns, the ensemble was fit on {self.n_features}"
            )
        staged = n_trees is not None and np.ndim(n_trees) > 0
        counts = [self._check_n_trees(k) for k in (n_trees if staged else [n_trees])]

        F = np.full(X.shape[0], self.initial_value, dtype=np.float64)
        if offset is not None:
            F = F + np.asarray(offset, dtype=np.float64)
        out = np.empty((X.shape[0], len(counts)), dtype=np.float64)
        done = 0
        for col in np.argsort(counts, kind="mergesort"):
            for m in range(done, counts[col]):
                F += self.shrinkage * self.trees[m].predict(X)
            done = max(done, counts[col])
            out[:, col] = F
        if kind == "response":
            out = self.distribution.inverse_link(out)
        return out if staged else out[:, 0]

    def relative_influence(self, n_trees: Optional[int] = None, normalize: bool = False) -> np.ndarray:
        """
        Per-feature sum of split improvements over the first ``n_trees`` trees.

        With ``normalize=True`` the values are scaled to sum to 100.
        """
        n_trees = self._check_n_trees(n_trees)
        influence = np.zeros(self.n_features, dtype=np.float64)
        for tree in self.trees[:n_trees]:
            internal = tree.feature >= 0
            influence += np.bincount(tree.feature[internal], weights=tree.improvement[internal],
                                     minlength=self.n_features)
        if normalize:
            total = influence.sum()
            if total > 0:
                influence = 100.0 * influence / total
        return influence
