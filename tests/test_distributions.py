"""
Unit tests for the loss distributions.

Tests numerical correctness of:
- Pseudo-residuals against finite differences of the aggregate loss
- Initial values and terminal node fits
- Cox partial likelihood with tied event times
- Response validation
"""

import numpy as np
import pytest

import sys
from pathlib import Path

# Add src directory to path
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from gbmboost.distributions import (
    Gaussian, Laplace, Quantile, TDist, Poisson, Bernoulli, AdaBoost,
    Huberized, CoxPH, Pairwise, make_distribution
)
from gbmboost.errors import ConfigurationError, DataError
from gbmboost.utils import sigmoid, weighted_quantile


def finite_difference(dist, y, f, w, h=1e-6):
    """Central differences of the weighted average loss w.r.t. each score."""
    grad = np.empty_like(f)
    for i in range(f.shape[0]):
        up = f.copy()
        down = f.copy()
        up[i] += h
        down[i] -= h
        grad[i] = (dist.loss(y, up, w) - dist.loss(y, down, w)) / (2 * h)
    return grad


@pytest.fixture
def rng():
    return np.random.default_rng(0)


# =========================
# Gradient / loss consistency
# =========================

class TestGradientConsistency:
    """z_i = -(1/w_i) d/df_i Σ w L, so d(loss)/df_i = -w_i z_i / Σ w."""

    @pytest.mark.parametrize("dist", [
        Gaussian(), Laplace(), Quantile(alpha=0.8), TDist(df=4.0)
    ])
    def test_continuous_response(self, dist, rng):
        y = rng.normal(size=12)
        f = y + rng.normal(scale=0.5, size=12)
        w = rng.uniform(0.5, 2.0, size=12)

        z = dist.gradient(y, f, w)
        expected = -w * z / w.sum()

        np.testing.assert_allclose(finite_difference(dist, y, f, w), expected,
                                   rtol=1e-4, atol=1e-7)

    def test_poisson(self, rng):
        dist = Poisson()
        y = rng.poisson(3.0, size=12).astype(float)
        f = rng.normal(1.0, 0.3, size=12)
        w = rng.uniform(0.5, 2.0, size=12)

        z = dist.gradient(y, f, w)
        np.testing.assert_allclose(finite_difference(dist, y, f, w), -w * z / w.sum(),
                                   rtol=1e-4, atol=1e-7)

    @pytest.mark.parametrize("dist", [Bernoulli(), AdaBoost(), Huberized()])
    def test_binary_response(self, dist, rng):
        y = np.array([0, 1, 1, 0, 1, 0, 0, 1, 1, 1], dtype=float)
        f = rng.uniform(-1.8, 1.8, size=10)
        w = rng.uniform(0.5, 2.0, size=10)

        z = dist.gradient(y, f, w)
        np.testing.assert_allclose(finite_difference(dist, y, f, w), -w * z / w.sum(),
                                   rtol=1e-4, atol=1e-7)

    def test_coxph_with_ties(self, rng):
        dist = CoxPH()
        time = np.array([1.0, 2.0, 2.0, 3.0, 4.0, 4.0, 4.0, 5.0])
        event = np.array([1, 1, 0, 1, 1, 1, 0, 0], dtype=float)
        y = np.column_stack([time, event])
        f = rng.normal(scale=0.5, size=8)
        w = rng.uniform(0.5, 2.0, size=8)

        z = dist.gradient(y, f, w)
        np.testing.assert_allclose(finite_difference(dist, y, f, w), -w * z / w.sum(),
                                   rtol=1e-4, atol=1e-7)

    def test_pairwise_concordance(self, rng):
        dist = Pairwise(metric="conc")
        score = np.array([3, 2, 1, 0, 2, 1, 1, 0], dtype=float)
        group = np.array([0, 0, 0, 0, 1, 1, 1, 1], dtype=float)
        y = np.column_stack([score, group])
        f = rng.normal(size=8)
        w = np.ones(8)

        z = dist.gradient(y, f, w)
        n_groups = 2
        np.testing.assert_allclose(finite_difference(dist, y, f, w), -z / n_groups,
                                   rtol=1e-4, atol=1e-7)

    @pytest.mark.parametrize("max_rank", [None, 3])
    def test_pairwise_ndcg(self, rng, max_rank):
        dist = Pairwise(metric="ndcg", max_rank=max_rank)
        score = np.array([3, 2, 2, 1, 0, 2, 1, 1, 0, 0], dtype=float)
        group = np.repeat([0.0, 1.0], 5)
        y = np.column_stack([score, group])
        f = rng.normal(size=10)
        w = np.ones(10)

        z = dist.gradient(y, f, w)
        n_groups = 2
        assert np.any(z != 0)
        np.testing.assert_allclose(finite_difference(dist, y, f, w), -z / n_groups,
                                   rtol=1e-4, atol=1e-7)


# =========================
# Initial values and node fits
# =========================

class TestInitialValues:

    def test_gaussian_is_weighted_mean(self):
        y = np.array([1.0, 2.0, 6.0])
        w = np.array([1.0, 1.0, 2.0])
        assert Gaussian().initial_value(y, w) == pytest.approx(15.0 / 4.0)

    def test_single_nonzero_weight(self):
        """All weights zero except one: f_0 is that observation's response."""
        y = np.array([3.7, -1.2, 8.9, 0.4, 2.2, 5.5, -7.1, 1.9])
        w = np.zeros(8)
        w[2] = 1.0

        assert Gaussian().initial_value(y, w) == 8.9
        assert Laplace().initial_value(y, w) == 8.9
        assert Quantile(alpha=0.25).initial_value(y, w) == 8.9

    def test_bernoulli_log_odds(self):
        y = np.array([1, 1, 1, 0], dtype=float)
        w = np.ones(4)
        assert Bernoulli().initial_value(y, w) == pytest.approx(np.log(3.0))

    def test_bernoulli_with_offset_solves_score_equation(self):
        y = np.array([1, 0, 1, 1, 0, 1], dtype=float)
        w = np.ones(6)
        offset = np.array([0.5, -0.3, 1.0, 0.2, 0.0, -1.0])
        f0 = Bernoulli().initial_value(y, w, offset)
        assert np.sum(y - sigmoid(offset + f0)) == pytest.approx(0.0, abs=1e-9)

    def test_poisson_log_mean(self):
        y = np.array([1.0, 2.0, 3.0, 6.0])
        w = np.ones(4)
        assert Poisson().initial_value(y, w) == pytest.approx(np.log(3.0))

    def test_coxph_initial_value_is_zero(self):
        y = np.column_stack([[1.0, 2.0, 3.0], [1.0, 0.0, 1.0]])
        assert CoxPH().initial_value(y, np.ones(3)) == 0.0

    def test_tdist_minimises_loss(self):
        y = np.array([0.0, 0.1, 0.2, 0.3, 50.0])
        w = np.ones(5)
        dist = TDist(df=4.0)
        f0 = dist.initial_value(y, w)
        base = dist.loss(y, np.full(5, f0), w)
        for delta in (-0.05, 0.05):
            assert base <= dist.loss(y, np.full(5, f0 + delta), w) + 1e-12
        # Robust to the outlier, unlike the mean
        assert f0 < 1.0


class TestNodeFits:

    def test_gaussian_node_is_weighted_mean_residual(self):
        y = np.array([1.0, 2.0, 4.0])
        f = np.zeros(3)
        w = np.array([1.0, 2.0, 1.0])
        z = Gaussian().gradient(y, f, w)
        assert Gaussian().node_fit(y, f, w, None, z) == pytest.approx(9.0 / 4.0)

    def test_laplace_node_is_weighted_median(self):
        y = np.array([1.0, 2.0, 10.0, 11.0, 12.0])
        f = np.full(5, 1.0)
        w = np.ones(5)
        z = Laplace().gradient(y, f, w)
        assert Laplace().node_fit(y, f, w, None, z) == pytest.approx(9.0)

    def test_bernoulli_newton_step(self):
        """γ = Σ w (y - p) / Σ w p (1 - p)."""
        y = np.array([0, 1, 1, 0, 1], dtype=float)
        f = np.array([-0.5, 1.2, 0.3, -1.0, 0.0])
        w = np.array([1.0, 2.0, 1.0, 1.0, 0.5])
        dist = Bernoulli()

        p = sigmoid(f)
        expected = np.sum(w * (y - p)) / np.sum(w * p * (1 - p))
        z = dist.gradient(y, f, w)
        h = dist.curvature(y, f, w)

        assert dist.node_fit(y, f, w, None, z, h) == pytest.approx(expected, rel=1e-10)

    def test_poisson_node_is_log_ratio(self):
        y = np.array([2.0, 4.0])
        f = np.zeros(2)
        w = np.ones(2)
        z = Poisson().gradient(y, f, w)
        assert Poisson().node_fit(y, f, w, None, z) == pytest.approx(np.log(3.0))

    def test_poisson_node_with_zero_counts_is_capped(self):
        y = np.zeros(3)
        f = np.zeros(3)
        w = np.ones(3)
        z = Poisson().gradient(y, f, w)
        assert Poisson().node_fit(y, f, w, None, z) == -19.0

    def test_coxph_node_requires_curvature(self):
        y = np.column_stack([[1.0, 2.0], [1.0, 1.0]])
        with pytest.raises(ConfigurationError):
            CoxPH().node_fit(y, np.zeros(2), np.ones(2), None, np.zeros(2), None)


# =========================
# Cox partial likelihood
# =========================

class TestCoxPH:

    def test_breslow_loss_with_ties(self):
        """Risk set of an event at t includes every row with time >= t."""
        time = np.array([2.0, 1.0, 2.0, 3.0, 2.0])
        event = np.array([1, 1, 1, 0, 0], dtype=float)
        f = np.array([0.3, -0.2, 0.1, 0.5, -0.4])
        w = np.ones(5)

        total = 0.0
        for i in range(5):
            if event[i]:
                total += f[i] - np.log(np.sum(np.exp(f[time >= time[i]])))
        expected = -total / 5.0

        loss = CoxPH().loss(np.column_stack([time, event]), f, w)
        assert loss == pytest.approx(expected, rel=1e-12)

    def test_large_scores_stay_finite(self):
        y = np.column_stack([[1.0, 2.0, 3.0], [1.0, 1.0, 1.0]])
        f = np.array([800.0, 790.0, 805.0])
        w = np.ones(3)
        dist = CoxPH()
        assert np.isfinite(dist.loss(y, f, w))
        assert np.all(np.isfinite(dist.gradient(y, f, w)))

    def test_row_order_does_not_matter(self, rng):
        time = rng.integers(1, 5, size=10).astype(float)
        event = rng.integers(0, 2, size=10).astype(float)
        f = rng.normal(size=10)
        w = np.ones(10)
        perm = rng.permutation(10)
        dist = CoxPH()

        z = dist.gradient(np.column_stack([time, event]), f, w)
        z_perm = dist.gradient(np.column_stack([time[perm], event[perm]]), f[perm], w)

        np.testing.assert_allclose(z[perm], z_perm, rtol=1e-12, atol=1e-12)


# =========================
# Validation
# =========================

class TestValidation:

    def test_bernoulli_rejects_non_binary(self):
        with pytest.raises(DataError):
            Bernoulli().check_response([0, 1, 2])

    def test_poisson_rejects_negative(self):
        with pytest.raises(DataError):
            Poisson().check_response([1.0, -1.0])

    def test_coxph_requires_two_columns(self):
        with pytest.raises(ConfigurationError):
            CoxPH().check_response([1.0, 2.0, 3.0])

    def test_non_finite_response(self):
        with pytest.raises(DataError):
            Gaussian().check_response([1.0, np.nan])

    def test_quantile_alpha_range(self):
        with pytest.raises(ConfigurationError):
            Quantile(alpha=1.5)

    def test_pairwise_metric(self):
        with pytest.raises(ConfigurationError):
            Pairwise(metric="map")

    def test_make_distribution(self):
        dist = make_distribution("quantile", alpha=0.9)
        assert isinstance(dist, Quantile)
        assert dist.alpha == 0.9
        assert isinstance(make_distribution("Bernoulli"), Bernoulli)

    def test_make_distribution_unknown(self):
        with pytest.raises(ConfigurationError):
            make_distribution("gamma")

    def test_make_distribution_bad_params(self):
        with pytest.raises(ConfigurationError):
            make_distribution("gaussian", alpha=0.5)


def test_weighted_quantile_ignores_zero_weights():
    values = np.array([5.0, 1.0, 3.0, 100.0])
    weights = np.array([1.0, 1.0, 1.0, 0.0])
    assert weighted_quantile(values, weights, 0.5) == 3.0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
