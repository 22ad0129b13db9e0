"""
Tests for the se.deseq accessor on CountExperiment.
"""

import numpy as np
import pandas as pd
import pytest

from deferential_nb import CountExperiment
from deferential_nb.extensions import (
    AccessorRegistrationWarning,
    register_count_accessor,
    registered_accessors,
)
import deferential_nb.deseq as deseq


@pytest.fixture
def count_se():
    rng = np.random.default_rng(0)
    counts = rng.negative_binomial(20, 20 / (20 + 200), size=(60, 6))
    counts[:6, 3:] *= 5
    samples = [f"S{i}" for i in range(6)]
    coldata = pd.DataFrame({"condition": ["A"] * 3 + ["B"] * 3}, index=samples)
    return CountExperiment.from_pandas(
        pd.DataFrame(counts, index=[f"g{i}" for i in range(60)], columns=samples),
        column_data=coldata,
    )


class TestDESeqAccessor:
    """Tests for DESeqAccessor methods."""

    def test_accessor_registered(self, count_se):
        assert isinstance(count_se.deseq, deseq.DESeqAccessor)
        assert count_se.deseq is count_se.deseq

    def test_estimate_size_factors(self, count_se):
        out = count_se.deseq.estimate_size_factors()
        assert isinstance(out, CountExperiment)
        sf = np.asarray(out.get_column_data()["size_factor"])
        expected = deseq.size_factors_from_matrix(count_se.assays["counts"])
        np.testing.assert_allclose(sf, expected)
        assert "size_factor" not in count_se.get_column_data().column_names

    def test_normalized_counts_assay(self, count_se):
        out = count_se.deseq.normalized_counts()
        assert "normalized_counts" in out.assay_names
        assert "size_factor" in out.get_column_data().column_names

    def test_fit_matches_functional(self, count_se):
        model = count_se.deseq.fit("~ condition")
        functional = deseq.deseq(count_se, "~ condition")
        assert isinstance(model, deseq.DESeqModel)
        pd.testing.assert_frame_equal(model.results().to_pandas(), functional.results().to_pandas())

    def test_fit_reuses_stored_size_factors(self, count_se):
        se = count_se.with_column("size_factor", np.array([1.0, 2.0, 1.0, 2.0, 1.0, 2.0]))
        model = se.deseq.fit("~ condition")
        np.testing.assert_allclose(model.size_factors, [1.0, 2.0, 1.0, 2.0, 1.0, 2.0])

    def test_results_and_add_results(self, count_se):
        res = count_se.deseq.results("~ condition", contrast=("condition", "B", "A"))
        assert isinstance(res, deseq.DESeqResults)
        out = count_se.deseq.add_results(res)
        rowdata = out.row_data_df()
        assert "deseq_adj_p_value" in rowdata.columns
        assert "deseq_gene" not in rowdata.columns
        np.testing.assert_allclose(
            rowdata["deseq_log2_fc"].to_numpy(dtype=float),
            res.to_pandas()["log2_fc"].to_numpy(),
        )

    def test_add_results_wrong_length(self, count_se):
        res = count_se.deseq.results("~ condition")
        with pytest.raises(ValueError):
            count_se[:10, :].deseq.add_results(res)


class TestRegistration:
    """Tests for register_count_accessor and registered_accessors."""

    def test_deseq_listed(self):
        assert registered_accessors()["deseq"] is deseq.DESeqAccessor

    def test_class_access_raises(self):
        with pytest.raises(AttributeError):
            CountExperiment.deseq

    def test_missing_methods_rejected(self):
        with pytest.raises(TypeError, match="fit"):
            @register_count_accessor("_incomplete", methods=("fit",))
            class Incomplete:
                def __init__(self, se):
                    self._se = se
        assert "_incomplete" not in registered_accessors()

    def test_conflict_warns(self):
        @register_count_accessor("_extra")
        class Extra:
            def __init__(self, se):
                self._se = se

        try:
            assert registered_accessors()["_extra"] is Extra
            with pytest.warns(AccessorRegistrationWarning):
                @register_count_accessor("_extra")
                class ExtraAgain:
                    def __init__(self, se):
                        self._se = se
        finally:
            delattr(CountExperiment, "_extra")
        assert "_extra" not in registered_accessors()

    def test_shadowing_inherited_attribute_warns(self):
        try:
            with pytest.warns(AccessorRegistrationWarning):
                @register_count_accessor("get_column_data")
                class Shadow:
                    def __init__(self, se):
                        self._se = se
        finally:
            delattr(CountExperiment, "get_column_data")
        assert callable(CountExperiment.get_column_data)
