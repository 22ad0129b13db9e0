"""
Tests for per-gene negative-binomial GLM fits and Cook's distances.
"""

import numpy as np
import pandas as pd
import pytest

import deferential_nb.deseq as deseq
from deferential_nb.deseq.nbinom_glm import default_cooks_cutoff


@pytest.fixture
def two_group_design():
    return pd.DataFrame(
        {"Intercept": np.ones(6), "condition[T.B]": np.repeat([0.0, 1.0], 3)},
        index=[f"s{i}" for i in range(6)],
    )


class TestFitGeneGLM:
    """Tests for the pure per-gene fitting function."""

    def test_recovers_group_means(self, two_group_design):
        y = np.array([10.0, 10.0, 10.0, 40.0, 40.0, 40.0])
        fit = deseq.fit_gene_glm(y, 0.01, 0.04, np.ones(6), two_group_design.to_numpy())
        assert fit.status == deseq.GeneStatus.OK
        assert fit.converged
        np.testing.assert_allclose(fit.coef, [np.log(10.0), np.log(4.0)], atol=1e-4)
        np.testing.assert_allclose(fit.mu, y, rtol=1e-4)

    def test_size_factor_offset(self, two_group_design):
        sf = np.array([1.0, 2.0, 0.5, 1.0, 2.0, 0.5])
        y = np.array([10.0, 20.0, 5.0, 40.0, 80.0, 20.0])
        fit = deseq.fit_gene_glm(y, 0.01, 0.04, sf, two_group_design.to_numpy())
        np.testing.assert_allclose(fit.coef, [np.log(10.0), np.log(4.0)], atol=1e-4)

    def test_hat_trace_equals_rank(self, two_group_design):
        y = np.array([12.0, 8.0, 15.0, 30.0, 45.0, 38.0])
        fit = deseq.fit_gene_glm(y, 0.05, 0.05, np.ones(6), two_group_design.to_numpy())
        np.testing.assert_allclose(fit.hat.sum(), 2.0, rtol=1e-4)
        assert np.all((fit.hat > 0) & (fit.hat < 1))

    def test_covariance_positive(self, two_group_design):
        y = np.array([12.0, 8.0, 15.0, 30.0, 45.0, 38.0])
        fit = deseq.fit_gene_glm(y, 0.05, 0.05, np.ones(6), two_group_design.to_numpy())
        assert np.all(np.diag(fit.cov) > 0)
        np.testing.assert_allclose(fit.cov, fit.cov.T)

    def test_nan_dispersion_unfittable(self, two_group_design):
        fit = deseq.fit_gene_glm(np.zeros(6), np.nan, 0.04, np.ones(6), two_group_design.to_numpy())
        assert fit.status == deseq.GeneStatus.UNFITTABLE
        assert np.all(np.isnan(fit.coef))

    def test_iteration_limit_without_fallback_fails(self, two_group_design):
        y = np.array([12.0, 8.0, 15.0, 30.0, 45.0, 38.0])
        fit = deseq.fit_gene_glm(
            y, 0.05, 0.05, np.ones(6), two_group_design.to_numpy(), max_iter=1, optim_fallback=False,
        )
        assert fit.status == deseq.GeneStatus.FIT_FAILED
        assert np.isnan(fit.deviance)

    def test_optimizer_fallback(self, two_group_design):
        y = np.array([12.0, 8.0, 15.0, 30.0, 45.0, 38.0])
        full = deseq.fit_gene_glm(y, 0.05, 0.05, np.ones(6), two_group_design.to_numpy())
        fallback = deseq.fit_gene_glm(
            y, 0.05, 0.05, np.ones(6), two_group_design.to_numpy(), max_iter=1, optim_fallback=True,
        )
        assert fallback.status == deseq.GeneStatus.OK
        np.testing.assert_allclose(fallback.coef, full.coef, atol=1e-3)

    def test_zero_group(self, two_group_design):
        y = np.array([0.0, 0.0, 0.0, 50.0, 60.0, 40.0])
        fit = deseq.fit_gene_glm(y, 0.05, 0.05, np.ones(6), two_group_design.to_numpy())
        assert fit.status == deseq.GeneStatus.OK
        assert np.all(np.isfinite(fit.coef))
        assert fit.coef[1] > 3


class TestFitNBinomGLM:
    """Tests for fit_nbinom_glm over many genes."""

    def test_stacked_shapes(self, two_group_design):
        rng = np.random.default_rng(3)
        counts = rng.poisson(50, size=(20, 6))
        fit = deseq.fit_nbinom_glm(counts, np.ones(6), two_group_design, np.full(20, 0.05))
        assert fit.coef.shape == (20, 2)
        assert fit.se.shape == (20, 2)
        assert fit.cov.shape == (20, 2, 2)
        assert fit.mu.shape == (20, 6)
        assert fit.coef_names == ["Intercept", "condition[T.B]"]
        assert fit.count_status(deseq.GeneStatus.OK) == 20

    def test_default_cooks_cutoff(self, two_group_design):
        counts = np.full((3, 6), 20)
        fit = deseq.fit_nbinom_glm(counts, np.ones(6), two_group_design, np.full(3, 0.05))
        assert fit.cooks_cutoff == pytest.approx(default_cooks_cutoff(6, 2))

    def test_single_outlier_flagged(self, two_group_design):
        counts = np.array([
            [100, 100, 100, 100, 100, 10000],
            [100, 110, 90, 105, 95, 100],
        ])
        fit = deseq.fit_nbinom_glm(counts, np.ones(6), two_group_design, np.array([0.5, 0.01]))
        assert fit.influential[0, 5]
        assert fit.n_influential[0] == 1
        assert fit.n_influential[1] == 0
        assert fit.max_cooks[0] > fit.cooks_cutoff

    def test_small_cells_never_influential(self):
        design = pd.DataFrame({"Intercept": np.ones(4), "g": [0.0, 0.0, 1.0, 1.0]})
        counts = np.array([[10, 10, 10, 5000]])
        fit = deseq.fit_nbinom_glm(counts, np.ones(4), design, np.array([0.5]))
        assert fit.n_influential[0] == 0

    def test_cooks_disabled(self, two_group_design):
        counts = np.array([[100, 100, 100, 100, 100, 10000]])
        fit = deseq.fit_nbinom_glm(
            counts, np.ones(6), two_group_design, np.array([0.5]), cooks_cutoff=False,
        )
        assert fit.n_influential[0] == 0

    def test_unfittable_gene_kept(self, two_group_design):
        counts = np.array([[0, 0, 0, 0, 0, 0], [10, 12, 9, 30, 33, 29]])
        fit = deseq.fit_nbinom_glm(counts, np.ones(6), two_group_design, np.array([np.nan, 0.05]))
        assert list(fit.status) == [deseq.GeneStatus.UNFITTABLE, deseq.GeneStatus.OK]
        assert np.isnan(fit.max_cooks[0])
