"""
Generalized gradient boosted regression trees.

Stochastic gradient tree boosting with a family of loss distributions
(regression, classification, survival and ranking), best-first trees with
missing-value and categorical handling, monotone constraints, bagging with
out-of-bag tracking, cross-validation and resumable fits.
"""

from .boosting import fit, continue_fit, predict, relative_influence
from .config import TrainingConfig
from .core import (
    GradientBoostingRegressor, GradientBoostingClassifier,
    GradientBoostingSurvivalAnalysis, GradientBoostingRanker
)
from .distributions import (
    Distribution, Gaussian, Laplace, Quantile, TDist, Poisson,
    Bernoulli, AdaBoost, Huberized, CoxPH, Pairwise, make_distribution
)
from .driver import FitResult
from .ensemble import Ensemble
from .errors import (
    GBMError, ConfigurationError, DataError, NumericalInstabilityError,
    DegenerateFitWarning, OOBBiasWarning
)
from .perf import best_iteration, perf_table
from .tree import Tree, grow_tree

__version__ = "0.1.0"
__all__ = [
    "fit", "continue_fit", "predict", "relative_influence",
    "best_iteration", "perf_table",
    "TrainingConfig", "FitResult", "Ensemble", "Tree", "grow_tree",
    "Distribution", "Gaussian", "Laplace", "Quantile", "TDist", "Poisson",
    "Bernoulli", "AdaBoost", "Huberized", "CoxPH", "Pairwise", "make_distribution",
    "GBMError", "ConfigurationError", "DataError", "NumericalInstabilityError",
    "DegenerateFitWarning", "OOBBiasWarning",
    "GradientBoostingRegressor", "GradientBoostingClassifier",
    "GradientBoostingSurvivalAnalysis", "GradientBoostingRanker",
]
