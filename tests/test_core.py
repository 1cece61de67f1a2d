"""
Unit tests for the gradient boosting estimators.

Tests numerical correctness of:
- Initial predictions and single-tree fits
- Model fitting and prediction
- Determinism with random_state
- Continuation with fit_more
"""

import numpy as np
import pandas as pd
import pytest
from sklearn.tree import DecisionTreeRegressor
from sklearn.datasets import make_regression, make_classification
from sklearn.model_selection import train_test_split

import sys
from pathlib import Path

# Add src directory to path
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from gbmboost.core import (
    GradientBoostingRegressor, GradientBoostingClassifier,
    GradientBoostingSurvivalAnalysis, GradientBoostingRanker
)
from gbmboost.distributions import Quantile
from gbmboost.errors import ConfigurationError, DegenerateFitWarning


# =========================
# Test GradientBoostingRegressor
# =========================

def test_regressor_single_stump_matches_dt():
    """
    A single stump (n_estimators=1, learning_rate=1.0, no subsampling)
    matches a depth-1 DecisionTreeRegressor fitted to residuals from the mean.
    """
    X, y = make_regression(n_samples=100, n_features=10, random_state=42)

    gbr = GradientBoostingRegressor(
        n_estimators=1,
        learning_rate=1.0,
        interaction_depth=1,
        min_samples_leaf=1,
        subsample=1.0,
        random_state=42
    )
    gbr.fit(X, y)
    y_pred_boost = gbr.predict(X)

    f0 = np.mean(y)
    dt = DecisionTreeRegressor(max_depth=1, random_state=42)
    dt.fit(X, y - f0)
    y_pred_dt = f0 + dt.predict(X)

    np.testing.assert_allclose(y_pred_boost, y_pred_dt, rtol=1e-5)


def test_regressor_initial_value_is_mean():
    X, y = make_regression(n_samples=80, n_features=3, random_state=0)
    gbr = GradientBoostingRegressor(n_estimators=3, random_state=0).fit(X, y)
    assert gbr.f0_ == pytest.approx(np.mean(y))


def test_regressor_determinism():
    """Test that same random_state gives identical results."""
    X, y = make_regression(n_samples=100, n_features=5, random_state=123)

    gbr1 = GradientBoostingRegressor(n_estimators=10, subsample=0.8, random_state=42)
    gbr1.fit(X, y)
    gbr2 = GradientBoostingRegressor(n_estimators=10, subsample=0.8, random_state=42)
    gbr2.fit(X, y)

    np.testing.assert_array_equal(gbr1.predict(X), gbr2.predict(X))


def test_regressor_learning_rate_effect():
    """Test that lower learning_rate reduces per-iteration impact."""
    X, y = make_regression(n_samples=100, n_features=5, random_state=42)

    gbr_high = GradientBoostingRegressor(
        n_estimators=5, learning_rate=1.0, interaction_depth=3, random_state=42
    ).fit(X, y)
    gbr_low = GradientBoostingRegressor(
        n_estimators=5, learning_rate=0.1, interaction_depth=3, random_state=42
    ).fit(X, y)

    mse_high = np.mean((y - gbr_high.predict(X)) ** 2)
    mse_low = np.mean((y - gbr_low.predict(X)) ** 2)

    assert mse_high < mse_low


def test_regressor_validation_tracking():
    """Held-out rows (train_fraction < 1) are tracked every iteration."""
    X, y = make_regression(n_samples=200, n_features=5, random_state=42)

    gbr = GradientBoostingRegressor(n_estimators=10, train_fraction=0.7, random_state=42)
    gbr.fit(X, y)

    assert len(gbr.train_scores_) == 10
    assert len(gbr.val_scores_) == 10
    assert 1 <= gbr.best_iteration() <= 10


def test_regressor_generalises():
    X, y = make_regression(n_samples=400, n_features=5, n_informative=3,
                           noise=5.0, random_state=0)
    X_train, X_test, y_train, y_test = train_test_split(X, y, test_size=0.25, random_state=0)

    gbr = GradientBoostingRegressor(n_estimators=200, interaction_depth=3,
                                    random_state=0).fit(X_train, y_train)
    residual = y_test - gbr.predict(X_test)
    r2 = 1 - np.sum(residual ** 2) / np.sum((y_test - y_test.mean()) ** 2)

    assert r2 > 0.6


def test_regressor_quantile_loss_by_name_and_instance():
    X, y = make_regression(n_samples=100, n_features=3, noise=5.0, random_state=1)
    by_name = GradientBoostingRegressor(loss="quantile", alpha=0.8, n_estimators=10,
                                        random_state=0).fit(X, y)
    by_instance = GradientBoostingRegressor(loss=Quantile(alpha=0.8), n_estimators=10,
                                            random_state=0).fit(X, y)
    np.testing.assert_array_equal(by_name.predict(X), by_instance.predict(X))


def test_regressor_fit_more_equals_longer_fit():
    X, y = make_regression(n_samples=120, n_features=4, random_state=3)

    staged = GradientBoostingRegressor(n_estimators=10, random_state=7).fit(X, y)
    staged.fit_more(15)
    direct = GradientBoostingRegressor(n_estimators=25, random_state=7).fit(X, y)

    assert staged.n_estimators == 25
    assert len(staged.estimators_) == 25
    np.testing.assert_array_equal(staged.predict(X), direct.predict(X))


def test_regressor_feature_importances():
    X, y = make_regression(n_samples=200, n_features=6, n_informative=2,
                           shuffle=False, random_state=0)
    gbr = GradientBoostingRegressor(n_estimators=50, random_state=0).fit(X, y)
    importances = gbr.feature_importances_

    assert importances.sum() == pytest.approx(100.0)
    # The informative features come first when shuffle=False
    assert importances[:2].sum() > importances[2:].sum()


def test_regressor_monotone_constraint():
    rng = np.random.default_rng(0)
    X = rng.uniform(0, 1, size=(300, 2))
    y = 3 * X[:, 0] + rng.normal(scale=1.0, size=300)
    gbr = GradientBoostingRegressor(n_estimators=60, interaction_depth=1,
                                    monotone=[1, 0], random_state=0).fit(X, y)

    grid = np.column_stack([np.linspace(0, 1, 50), np.full(50, 0.5)])
    assert np.all(np.diff(gbr.predict(grid)) >= -1e-12)


def test_regressor_rejects_classification_loss():
    X, y = make_regression(n_samples=50, n_features=2, random_state=0)
    with pytest.raises(ConfigurationError):
        GradientBoostingRegressor(loss="bernoulli").fit(X, y)


def test_unfitted_estimator():
    with pytest.raises(ConfigurationError):
        GradientBoostingRegressor().predict(np.zeros((2, 2)))


def test_dataframe_columns_become_feature_names():
    X, y = make_regression(n_samples=60, n_features=3, random_state=0)
    frame = pd.DataFrame(X, columns=["a", "b", "c"])
    gbr = GradientBoostingRegressor(n_estimators=2, random_state=0).fit(frame, y)
    assert gbr.fit_result_.ensemble.feature_names == ("a", "b", "c")


# =========================
# Test GradientBoostingClassifier
# =========================

def test_classifier_predict_proba_range():
    """Test that predicted probabilities are in [0, 1]."""
    X, y = make_classification(n_samples=100, n_features=10, n_classes=2, random_state=42)

    gbc = GradientBoostingClassifier(n_estimators=20, random_state=42)
    gbc.fit(X, y)
    proba = gbc.predict_proba(X)

    assert np.all(proba >= 0.0)
    assert np.all(proba <= 1.0)


def test_classifier_initial_value_is_log_odds():
    X, y = make_classification(n_samples=100, n_features=4, weights=[0.7], random_state=0)
    gbc = GradientBoostingClassifier(n_estimators=2, random_state=0).fit(X, y)
    p = np.mean(y)
    assert gbc.f0_ == pytest.approx(np.log(p / (1 - p)))


def test_classifier_predict_matches_proba():
    X, y = make_classification(n_samples=100, n_features=10, n_classes=2, random_state=42)

    gbc = GradientBoostingClassifier(n_estimators=20, random_state=42)
    gbc.fit(X, y)

    pred_from_proba = (gbc.predict_proba(X) >= 0.5).astype(int)
    np.testing.assert_array_equal(gbc.predict(X), pred_from_proba)


def test_classifier_determinism():
    X, y = make_classification(n_samples=100, n_features=5, random_state=123)

    gbc1 = GradientBoostingClassifier(n_estimators=10, subsample=0.8, random_state=42).fit(X, y)
    gbc2 = GradientBoostingClassifier(n_estimators=10, subsample=0.8, random_state=42).fit(X, y)

    np.testing.assert_array_equal(gbc1.predict_proba(X), gbc2.predict_proba(X))


def test_classifier_improves_with_iterations():
    """More iterations lower the training deviance."""
    X, y = make_classification(n_samples=200, n_features=10, n_informative=8, random_state=42)

    gbc = GradientBoostingClassifier(n_estimators=50, interaction_depth=2,
                                     subsample=1.0, random_state=42).fit(X, y)

    assert gbc.train_scores_[-1] < gbc.train_scores_[4]
    acc_few = np.mean(gbc.predict(X, n_iterations=5) == y)
    acc_many = np.mean(gbc.predict(X) == y)
    assert acc_many >= acc_few


def test_classifier_accuracy():
    X, y = make_classification(n_samples=400, n_features=10, n_informative=5, random_state=0)
    X_train, X_test, y_train, y_test = train_test_split(X, y, test_size=0.25,
                                                        random_state=0, stratify=y)
    gbc = GradientBoostingClassifier(n_estimators=150, interaction_depth=3,
                                     random_state=0).fit(X_train, y_train)
    assert np.mean(gbc.predict(X_test) == y_test) > 0.75


def test_classifier_cross_validation():
    X, y = make_classification(n_samples=150, n_features=5, random_state=2)
    gbc = GradientBoostingClassifier(n_estimators=20, cv_folds=3, random_state=0).fit(X, y)

    assert gbc.cv_scores_.shape == (20,)
    assert gbc.best_iteration() == int(np.argmin(gbc.cv_scores_)) + 1


@pytest.mark.parametrize("loss", ["adaboost", "huberized"])
def test_classifier_alternative_losses(loss):
    X, y = make_classification(n_samples=150, n_features=5, random_state=0)
    gbc = GradientBoostingClassifier(loss=loss, n_estimators=30, random_state=0).fit(X, y)
    proba = gbc.predict_proba(X)
    assert np.all((proba >= 0.0) & (proba <= 1.0))
    assert np.mean(gbc.predict(X) == y) > 0.7


# =========================
# Survival and ranking
# =========================

def test_survival_relative_risk_orders_hazard():
    rng = np.random.default_rng(0)
    X = rng.normal(size=(300, 3))
    time = rng.exponential(np.exp(-1.5 * X[:, 0]))
    event = (rng.uniform(size=300) < 0.8).astype(float)

    model = GradientBoostingSurvivalAnalysis(n_estimators=80, interaction_depth=2,
                                             random_state=0).fit(X, time, event)
    risk = model.predict(X)

    assert np.all(risk > 0)
    assert np.corrcoef(np.log(risk), X[:, 0])[0, 1] > 0.5


def test_ranker_scores_follow_relevance():
    rng = np.random.default_rng(1)
    X = rng.normal(size=(200, 3))
    group = np.repeat(np.arange(20), 10)
    relevance = np.clip(np.round(X[:, 1] + 1.5), 0, 3)

    model = GradientBoostingRanker(n_estimators=60, min_samples_leaf=5,
                                   random_state=0).fit(X, relevance, group)
    scores = model.predict(X)

    assert np.corrcoef(scores, X[:, 1])[0, 1] > 0.5


def test_ranker_accepts_string_groups():
    rng = np.random.default_rng(2)
    X = rng.normal(size=(40, 2))
    group = np.repeat(["q1", "q2", "q3", "q4"], 10)
    relevance = (X[:, 0] > 0).astype(float)
    model = GradientBoostingRanker(loss="pairwise", metric="ndcg", n_estimators=5,
                                   min_samples_leaf=3, random_state=0)
    model.fit(X, relevance, group)
    assert model.predict(X).shape == (40,)


# =========================
# Test Edge Cases
# =========================

def test_regressor_tiny_sample():
    """Samples below min_samples_leaf give single-node trees with a warning."""
    X = np.array([[1, 2], [3, 4]])
    y = np.array([1.0, 2.0])

    gbr = GradientBoostingRegressor(n_estimators=5, random_state=42)
    with pytest.warns(DegenerateFitWarning):
        gbr.fit(X, y)

    assert gbr.predict(X).shape == y.shape


def test_classifier_tiny_sample():
    X = np.array([[1, 2], [3, 4]])
    y = np.array([0, 1])

    gbc = GradientBoostingClassifier(n_estimators=5, random_state=42)
    with pytest.warns(DegenerateFitWarning):
        gbc.fit(X, y)
    proba = gbc.predict_proba(X)

    assert gbc.predict(X).shape == y.shape
    assert proba.shape == y.shape
    assert np.all(proba >= 0.0) and np.all(proba <= 1.0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
