"""
Unit tests for empirical Bayes variance moderation.
"""

import numpy as np
import pytest
from scipy import special

from gdsdiff.services.analysis.empirical_bayes import (
    ModeratedStatistics,
    adjust_p_values,
    fit_f_dist,
    moderate_statistics,
    squeeze_var,
    trigamma_inverse,
)


@pytest.fixture
def simulated_variances():
    """Residual variances drawn from the hierarchical model with s0^2=0.5, d0=6."""
    rng = np.random.default_rng(123)
    n_genes, df, s0_sq, d0 = 20000, 4, 0.5, 6.0
    sigma_sq = d0 * s0_sq / rng.chisquare(d0, size=n_genes)
    s_sq = sigma_sq * rng.chisquare(df, size=n_genes) / df
    return s_sq, df, s0_sq, d0


@pytest.mark.unit
class TestTrigammaInverse:
    """Newton inversion of the trigamma function."""

    @pytest.mark.parametrize("x", [1e-3, 0.1, 0.5, 1.0, 10.0, 1e4])
    def test_inverts_trigamma(self, x):
        y = trigamma_inverse(np.array([x]))[0]
        assert special.polygamma(1, y) == pytest.approx(x, rel=1e-6)

    def test_special_values(self):
        y = trigamma_inverse(np.array([0.0, -1.0]))
        assert np.isinf(y[0])
        assert np.isnan(y[1])


@pytest.mark.unit
class TestFitFDist:
    """Moment estimation of the variance prior."""

    def test_recovers_prior(self, simulated_variances):
        s_sq, df, s0_sq, d0 = simulated_variances
        s20, df2 = fit_f_dist(s_sq, df)

        assert s20 == pytest.approx(s0_sq, rel=0.1)
        assert df2 == pytest.approx(d0, rel=0.3)

    def test_identical_variances_give_infinite_df(self):
        s20, df2 = fit_f_dist(np.full(100, 2.0), 5)
        assert np.isinf(df2)
        assert s20 == pytest.approx(2.0)

    def test_ignores_missing(self, simulated_variances):
        s_sq, df, _, _ = simulated_variances
        with_nan = np.concatenate([s_sq, [np.nan, np.nan]])
        assert fit_f_dist(with_nan, df) == pytest.approx(fit_f_dist(s_sq, df))

    def test_no_usable_values(self):
        s20, df2 = fit_f_dist(np.array([np.nan, np.nan]), 3)
        assert np.isnan(s20)
        assert np.isnan(df2)


@pytest.mark.unit
class TestSqueezeVar:
    """Posterior variances."""

    def test_weighted_average(self):
        post = squeeze_var(np.array([1.0, 4.0]), 4, s2_prior=2.0, df_prior=4.0)
        np.testing.assert_allclose(post, [1.5, 3.0])

    def test_infinite_prior_df(self):
        post = squeeze_var(np.array([1.0, 4.0]), 4, s2_prior=2.0, df_prior=np.inf)
        np.testing.assert_allclose(post, [2.0, 2.0])

    def test_no_residual_df_takes_prior(self):
        post = squeeze_var(np.array([np.nan, 4.0]), np.array([0.0, 4.0]), 2.0, 4.0)
        np.testing.assert_allclose(post, [2.0, 3.0])

    def test_shrinks_towards_prior(self, simulated_variances):
        s_sq, df, _, _ = simulated_variances
        s20, d0 = fit_f_dist(s_sq, df)
        post = squeeze_var(s_sq, df, s20, d0)

        assert np.var(np.log(post)) < np.var(np.log(s_sq))
        between = (np.minimum(s_sq, s20) <= post + 1e-12) & (
            post <= np.maximum(s_sq, s20) + 1e-12
        )
        assert between.all()


@pytest.mark.unit
class TestModerateStatistics:
    """Moderated t, p-values and B statistics."""

    @pytest.fixture
    def inputs(self):
        rng = np.random.default_rng(5)
        n = 2000
        coefficient = rng.normal(0, 0.3, size=n)
        coefficient[:50] += 3.0
        stdev_unscaled = np.full(n, np.sqrt(2 / 5))
        sigma = np.sqrt(0.2 * rng.chisquare(8, size=n) / 8)
        df = np.full(n, 8.0)
        return coefficient, stdev_unscaled, sigma, df

    def test_outputs(self, inputs):
        result = moderate_statistics(*inputs)

        assert isinstance(result, ModeratedStatistics)
        assert result.t.shape == inputs[0].shape
        assert ((result.p_value >= 0) & (result.p_value <= 1)).all()
        assert np.all(np.sign(result.t) == np.sign(inputs[0]))
        assert result.s2_prior > 0
        assert (result.df_total <= inputs[3].sum()).all()

    def test_p_value_decreases_with_effect(self, inputs):
        result = moderate_statistics(*inputs)

        order = np.argsort(np.abs(result.t))
        assert np.all(np.diff(result.p_value[order]) <= 1e-15)

    def test_b_ranks_like_t(self, inputs):
        result = moderate_statistics(*inputs)
        assert np.argmax(result.lods) == np.argmax(np.abs(result.t))
        assert (result.lods[:50] > 0).mean() > 0.9

    def test_missing_gene_propagates_nan(self, inputs):
        coefficient, stdev_unscaled, sigma, df = (a.copy() for a in inputs)
        coefficient[10] = np.nan
        result = moderate_statistics(coefficient, stdev_unscaled, sigma, df)

        assert np.isnan(result.t[10])
        assert np.isnan(result.p_value[10])
        assert np.isfinite(result.t[11])


@pytest.mark.unit
class TestReferenceValues:
    """
    A three-gene case with closed-form limma results.

    Log variances of -a, 0 and a with a = pi/sqrt(3) and two residual df per
    gene make the moment equation trigamma(d0/2) = pi^2/6, so d0 = 2 and
    s0^2 = 1. The largest |t| is 1, so the coefficient prior variance sits
    at its lower limit 0.1^2 / s0^2 and p-values follow the t CDF with four
    degrees of freedom, which gives every expected value below in closed form.
    """

    @pytest.fixture
    def result(self):
        a = np.pi / np.sqrt(3)
        return moderate_statistics(
            coefficient=np.array([0.0, 1.0, 0.0]),
            stdev_unscaled=np.ones(3),
            sigma=np.sqrt(np.exp([-a, 0.0, a])),
            df_residual=np.full(3, 2.0),
        )

    def test_prior(self, result):
        assert result.df_prior == pytest.approx(2.0, rel=1e-8)
        assert result.s2_prior == pytest.approx(1.0, rel=1e-8)
        assert result.var_prior == pytest.approx(0.01, rel=1e-8)
        np.testing.assert_allclose(result.df_total, [4.0, 4.0, 4.0])

    def test_moderated_t_and_p(self, result):
        np.testing.assert_allclose(result.t, [0.0, 1.0, 0.0], atol=1e-8)
        np.testing.assert_allclose(
            result.p_value, [1.0, 0.37390096630006, 1.0], rtol=1e-8
        )
        assert result.s2_post[1] == pytest.approx(1.0, rel=1e-8)

    def test_log_odds(self, result):
        np.testing.assert_allclose(
            result.lods,
            [-4.60009501556117, -4.59513961255121, -4.60009501556117],
            rtol=1e-9,
        )


@pytest.mark.unit
class TestAdjustPValues:
    """Benjamini-Hochberg adjustment."""

    def test_known_values(self):
        adjusted = adjust_p_values(np.array([0.01, 0.04, 0.03, 0.2]))
        np.testing.assert_allclose(adjusted, [0.04, 0.04 * 4 / 3, 0.04 * 4 / 3, 0.2])

    def test_nan_preserved(self):
        adjusted = adjust_p_values(np.array([0.01, np.nan, 0.02]))
        assert np.isnan(adjusted[1])
        np.testing.assert_allclose(adjusted[[0, 2]], [0.02, 0.02])

    def test_all_nan(self):
        assert np.isnan(adjust_p_values(np.array([np.nan]))).all()
