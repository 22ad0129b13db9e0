"""
Tests for count validation, CountExperiment and the error hierarchy.
"""

import numpy as np
import pandas as pd
import pytest

from biocframe import BiocFrame
from summarizedexperiment import SummarizedExperiment

from deferential_nb import (
    CountDataError,
    CountExperiment,
    DeferentialError,
    DesignError,
    InsufficientDataError,
    get_counts,
    initialize_counts,
    validate_count_matrix,
)


@pytest.fixture
def counts_df():
    """Small genes x samples count table."""
    return pd.DataFrame(
        [[10, 20, 30, 40], [0, 5, 0, 5], [100, 90, 110, 95]],
        index=["g1", "g2", "g3"],
        columns=["s1", "s2", "s3", "s4"],
    )


@pytest.fixture
def coldata():
    """Covariates in a different sample order than the counts."""
    return pd.DataFrame(
        {"condition": ["B", "A", "B", "A"]},
        index=["s3", "s1", "s4", "s2"],
    )


class TestValidateCountMatrix:
    """Tests for validate_count_matrix."""

    def test_integer_valued_floats_accepted(self):
        arr = validate_count_matrix(np.array([[1.0, 2.0], [3.0, 0.0]]))
        assert arr.dtype == np.int64
        np.testing.assert_array_equal(arr, [[1, 2], [3, 0]])

    def test_negative_rejected(self):
        with pytest.raises(CountDataError, match="negative"):
            validate_count_matrix(np.array([[1, -1], [2, 3]]))

    def test_non_integer_rejected(self):
        with pytest.raises(CountDataError, match="non-integer"):
            validate_count_matrix(np.array([[1.5, 1.0], [2.0, 3.0]]))

    def test_nan_rejected(self):
        with pytest.raises(CountDataError, match="NaN"):
            validate_count_matrix(np.array([[np.nan, 1.0], [2.0, 3.0]]))

    def test_one_dimensional_rejected(self):
        with pytest.raises(CountDataError, match="2D"):
            validate_count_matrix(np.array([1, 2, 3]))

    def test_count_data_error_is_value_error(self):
        assert issubclass(CountDataError, ValueError)
        assert issubclass(CountDataError, DeferentialError)
        assert issubclass(DesignError, ValueError)
        assert issubclass(InsufficientDataError, DeferentialError)


class TestInitializeCounts:
    """Tests for initialize_counts on plain SummarizedExperiment objects."""

    def test_returns_int_assay(self):
        se = SummarizedExperiment(
            assays={"counts": np.array([[1.0, 2.0], [3.0, 4.0]])},
            row_names=["g1", "g2"],
            column_names=["s1", "s2"],
        )
        out = initialize_counts(se)
        assert out is not se
        assert get_counts(out).dtype == np.int64

    def test_missing_assay(self):
        se = SummarizedExperiment(assays={"counts": np.ones((2, 2), dtype=int)})
        with pytest.raises(KeyError):
            initialize_counts(se, assay="raw")

    def test_duplicate_gene_names(self):
        se = SummarizedExperiment(
            assays={"counts": np.ones((2, 2), dtype=int)},
            row_names=["g1", "g1"],
            column_names=["s1", "s2"],
        )
        with pytest.raises(CountDataError, match="Duplicated gene"):
            initialize_counts(se)


class TestCountExperiment:
    """Tests for the CountExperiment container."""

    def test_from_pandas(self, counts_df, coldata):
        se = CountExperiment.from_pandas(counts_df, column_data=coldata)
        assert se.shape == (3, 4)
        assert list(se.column_names) == ["s1", "s2", "s3", "s4"]
        assert list(se.column_data_df()["condition"]) == ["A", "A", "B", "B"]
        pd.testing.assert_frame_equal(se.assay_df("counts"), counts_df, check_dtype=False)

    def test_from_pandas_missing_samples(self, counts_df):
        cd = pd.DataFrame({"condition": ["A", "B"]}, index=["s1", "s2"])
        with pytest.raises(KeyError):
            CountExperiment.from_pandas(counts_df, column_data=cd)

    def test_with_column_is_functional(self, counts_df, coldata):
        se = CountExperiment.from_pandas(counts_df, column_data=coldata)
        new = se.with_column("batch", ["x", "y", "x", "y"])
        assert "batch" in new.get_column_data().column_names
        assert "batch" not in se.get_column_data().column_names
        assert isinstance(new, CountExperiment)

    def test_with_assay(self, counts_df):
        se = CountExperiment.from_pandas(counts_df)
        new = se.with_assay("double", se.assays["counts"] * 2)
        assert "double" in new.assay_names
        assert "double" not in se.assay_names

    def test_roundtrip_summarized_experiment(self, counts_df, coldata):
        se = CountExperiment.from_pandas(counts_df, column_data=coldata)
        base = se.to_summarized_experiment()
        assert type(base) is SummarizedExperiment
        back = CountExperiment.from_summarized_experiment(base)
        assert isinstance(back, CountExperiment)
        assert list(back.row_names) == ["g1", "g2", "g3"]

    def test_bioc_column_data_kept(self, counts_df):
        cd = BiocFrame({"condition": ["A", "A", "B", "B"]}, row_names=["s1", "s2", "s3", "s4"])
        se = CountExperiment(
            assays={"counts": counts_df.to_numpy()},
            column_data=cd,
            row_names=list(counts_df.index),
            column_names=list(counts_df.columns),
        )
        assert list(se.column_data_df()["condition"]) == ["A", "A", "B", "B"]
