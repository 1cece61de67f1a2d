"""
Training configuration for the boosting driver.
"""

from dataclasses import dataclass
from typing import Optional, Tuple
import numpy as np

from .errors import ConfigurationError


@dataclass(frozen=True)
class TrainingConfig:
    """
    Hyperparameters of a boosting run.

    Args:
        n_trees: Number of boosting iterations.
        interaction_depth: Maximum number of splits per tree; a tree has at
            most interaction_depth + 1 terminal nodes.
        min_obs_in_node: Minimum number of observations in any terminal node.
        shrinkage: Learning rate ν ∈ (0, 1] applied to every tree.
        bag_fraction: Fraction of training rows drawn (without replacement)
            to grow each tree.
        num_train: Number of leading rows used for fitting; the remaining
            rows form the test set. None means all rows.
        n_features: Candidate features sampled per split. None means all.
        monotone: Per-feature constraint in {-1, 0, +1}. None means none.
        cv_folds: Number of cross-validation folds; 0 or 1 disables CV.
        seed: Seed for bagging, feature sampling and fold assignment.
        n_jobs: Worker count for split scans and CV folds (joblib semantics).
        time_limit: Wall-clock budget in seconds, checked between iterations.
        verbose: Log traces every ``verbose`` iterations (True means 10).
    """

    n_trees: int = 100
    interaction_depth: int = 1
    min_obs_in_node: int = 10
    shrinkage: float = 0.1
    bag_fraction: float = 0.5
    num_train: Optional[int] = None
    n_features: Optional[int] = None
    monotone: Optional[Tuple[int, ...]] = None
    cv_folds: int = 0
    seed: Optional[int] = None
    n_jobs: Optional[int] = 1
    time_limit: Optional[float] = None
    verbose: int = 0

    def __post_init__(self):
        if self.monotone is not None:
            object.__setattr__(self, "monotone", tuple(int(m) for m in self.monotone))
        if self.verbose is True:
            object.__setattr__(self, "verbose", 10)
        self.validate()

    def validate(self) -> None:
        """Check data-independent constraints; raises ConfigurationError."""
        if int(self.n_trees) < 1:
            raise ConfigurationError(f"n_trees must be >= 1, got {self.n_trees}")
        if int(self.interaction_depth) < 1:
            raise ConfigurationError(
                f"interaction_depth must be >= 1, got {self.interaction_depth}"
            )
        if int(self.min_obs_in_node) < 1:
            raise ConfigurationError(f"min_obs_in_node must be >= 1, got {self.min_obs_in_node}")
        if not 0.0 < self.shrinkage <= 1.0:
            raise ConfigurationError(f"shrinkage must lie in (0, 1], got {self.shrinkage}")
        if not 0.0 < self.bag_fraction <= 1.0:
            raise ConfigurationError(f"bag_fraction must lie in (0, 1], got {self.bag_fraction}")
        if self.num_train is not None and int(self.num_train) < 1:
            raise ConfigurationError(f"num_train must be >= 1, got {self.num_train}")
        if self.n_features is not None and int(self.n_features) < 1:
            raise ConfigurationError(f"n_features must be >= 1, got {self.n_features}")
        if self.monotone is not None and any(m not in (-1, 0, 1) for m in self.monotone):
            raise ConfigurationError("monotone entries must be -1, 0 or +1")
        if int(self.cv_folds) < 0:
            raise ConfigurationError(f"cv_folds must be >= 0, got {self.cv_folds}")
        if self.time_limit is not None and not self.time_limit > 0:
            raise ConfigurationError(f"time_limit must be positive, got {self.time_limit}")

    def check_data(self, n_rows: int, n_columns: int) -> None:
        """Check constraints that depend on the data shape."""
        if self.num_train is not None and self.num_train > n_rows:
            raise ConfigurationError(
                f"num_train={self.num_train} exceeds the number of rows ({n_rows})"
            )
        if self.n_features is not None and self.n_features > n_columns:
            raise ConfigurationError(
                f"n_features={self.n_features} exceeds the number of columns ({n_columns})"
            )
        if self.monotone is not None and len(self.monotone) != n_columns:
            raise ConfigurationError(
                f"monotone has length {len(self.monotone)}, expected {n_columns}"
            )

    def monotone_array(self, n_columns: int) -> np.ndarray:
        if self.monotone is None:
            return np.zeros(n_columns, dtype=np.int64)
        return np.asarray(self.monotone, dtype=np.int64)
