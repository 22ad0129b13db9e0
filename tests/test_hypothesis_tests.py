"""
Tests for Wald and likelihood-ratio tests.
"""

import logging

import numpy as np
import pandas as pd
import pytest

import deferential_nb.deseq as deseq
from deferential_nb import DesignError


@pytest.fixture
def design():
    return pd.DataFrame(
        {"Intercept": np.ones(6), "condition[T.B]": np.repeat([0.0, 1.0], 3)},
        index=[f"s{i}" for i in range(6)],
    )


@pytest.fixture
def counts():
    """Gene 0 is strongly up in B, gene 1 is flat, gene 2 is all zero."""
    return np.array([
        [20, 25, 22, 200, 210, 190],
        [100, 95, 105, 98, 102, 100],
        [0, 0, 0, 0, 0, 0],
        [50, 60, 40, 80, 90, 70],
    ])


@pytest.fixture
def glm_fit(counts, design):
    disp = np.array([0.02, 0.02, np.nan, 0.05])
    return deseq.fit_nbinom_glm(counts, np.ones(6), design, disp)


class TestWaldTest:
    """Tests for wald_test."""

    def test_default_is_last_coefficient(self, glm_fit):
        res = deseq.wald_test(glm_fit)
        assert res.label == "condition[T.B]"
        assert res.test == "wald"
        np.testing.assert_allclose(res.log2_fc[0], np.log2(200 / 22.333), atol=1e-3)

    def test_name_and_index_agree(self, glm_fit):
        by_name = deseq.wald_test(glm_fit, coef="condition[T.B]")
        by_index = deseq.wald_test(glm_fit, coef=1)
        np.testing.assert_array_equal(by_name.p_value, by_index.p_value)

    def test_tuple_contrast(self, glm_fit):
        tup = deseq.wald_test(glm_fit, contrast=("condition", "B", "A"))
        flipped = deseq.wald_test(glm_fit, contrast=("condition", "A", "B"))
        coef = deseq.wald_test(glm_fit, coef=1)
        np.testing.assert_allclose(tup.log2_fc, coef.log2_fc, equal_nan=True)
        np.testing.assert_allclose(flipped.log2_fc, -coef.log2_fc, equal_nan=True)

    def test_numeric_contrast(self, glm_fit):
        res = deseq.wald_test(glm_fit, contrast=[0, 1])
        coef = deseq.wald_test(glm_fit, coef=1)
        np.testing.assert_allclose(res.stat, coef.stat, equal_nan=True)

    def test_clear_de_gene_significant(self, glm_fit):
        res = deseq.wald_test(glm_fit)
        assert res.p_value[0] < 1e-6
        assert res.p_value[1] > 0.5

    def test_unfittable_has_nan_pvalue(self, glm_fit):
        res = deseq.wald_test(glm_fit)
        assert np.isnan(res.p_value[2])
        assert res.status[2] == deseq.GeneStatus.UNFITTABLE
        assert res.n_tested == 3

    def test_t_distribution_more_conservative(self, glm_fit):
        normal = deseq.wald_test(glm_fit)
        student = deseq.wald_test(glm_fit, use_t=True)
        assert student.df == 4.0
        assert student.p_value[0] > normal.p_value[0]
        np.testing.assert_allclose(student.stat, normal.stat, equal_nan=True)

    def test_lfc_threshold(self, glm_fit):
        plain = deseq.wald_test(glm_fit)
        thresh = deseq.wald_test(glm_fit, lfc_threshold=1.0)
        assert thresh.p_value[0] >= plain.p_value[0]
        assert thresh.p_value[1] == pytest.approx(1.0)
        with pytest.raises(ValueError):
            deseq.wald_test(glm_fit, lfc_threshold=-1.0)

    def test_bad_coefficient(self, glm_fit):
        with pytest.raises(DesignError):
            deseq.wald_test(glm_fit, coef="batch[T.b2]")
        with pytest.raises(DesignError):
            deseq.wald_test(glm_fit, coef=5)
        with pytest.raises(DesignError):
            deseq.wald_test(glm_fit, coef=1, contrast=[0, 1])

    def test_cooks_outlier_gene(self, design):
        counts = np.array([[100, 100, 100, 100, 100, 10000], [100, 110, 90, 105, 95, 100]])
        fit = deseq.fit_nbinom_glm(counts, np.ones(6), design, np.array([0.5, 0.01]))
        strict = deseq.wald_test(fit)
        assert strict.status[0] == deseq.GeneStatus.COOKS_OUTLIER
        assert np.isnan(strict.p_value[0])
        assert np.isfinite(strict.log2_fc[0])
        lenient = deseq.wald_test(fit, max_cooks_outliers=1)
        assert lenient.status[0] == deseq.GeneStatus.OK
        assert np.isfinite(lenient.p_value[0])


class TestLikelihoodRatioTest:
    """Tests for likelihood_ratio_test."""

    def test_lrt_against_intercept(self, counts, glm_fit):
        reduced = pd.DataFrame({"Intercept": np.ones(6)})
        res = deseq.likelihood_ratio_test(counts, glm_fit, reduced)
        assert res.test == "lrt"
        assert res.df == 1.0
        assert res.p_value[0] < 1e-6
        assert res.p_value[1] > 0.5
        assert np.isnan(res.p_value[2])
        assert np.all(res.stat[[0, 1, 3]] >= 0)

    def test_lrt_logs_only_its_own_summary(self, counts, glm_fit, caplog):
        reduced = pd.DataFrame({"Intercept": np.ones(6)})
        with caplog.at_level(logging.INFO, logger="deferential_nb.deseq"):
            res = deseq.likelihood_ratio_test(counts, glm_fit, reduced)
        assert "LRT test" in caplog.text
        assert "Wald test" not in caplog.text
        np.testing.assert_allclose(res.lfc_se, deseq.wald_test(glm_fit).lfc_se, equal_nan=True)

    def test_lrt_and_wald_agree_on_ranking(self, counts, glm_fit):
        reduced = pd.DataFrame({"Intercept": np.ones(6)})
        lrt = deseq.likelihood_ratio_test(counts, glm_fit, reduced)
        wald = deseq.wald_test(glm_fit)
        tested = [0, 1, 3]
        assert list(np.argsort(lrt.p_value[tested])) == list(np.argsort(wald.p_value[tested]))
        np.testing.assert_allclose(lrt.log2_fc, wald.log2_fc, equal_nan=True)

    def test_reduced_not_smaller(self, counts, glm_fit, design):
        with pytest.raises(DesignError):
            deseq.likelihood_ratio_test(counts, glm_fit, design)

    def test_reduced_wrong_samples(self, counts, glm_fit):
        with pytest.raises(DesignError):
            deseq.likelihood_ratio_test(counts, glm_fit, pd.DataFrame({"Intercept": np.ones(4)}))
