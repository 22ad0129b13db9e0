"""
CountExperiment: a SummarizedExperiment holding a raw count assay.

CountExperiment is a drop-in subclass of BiocPy's SummarizedExperiment that
serves as the anchor for method accessors (``se.deseq``) and adds a few
pandas-facing conveniences. All setters return new objects.
"""

from typing import Any, Dict, Optional, Sequence, Union
import numpy as np
import pandas as pd

from biocframe import BiocFrame
from summarizedexperiment import SummarizedExperiment


def _frame_to_bioc(df: Optional[Union[pd.DataFrame, BiocFrame]]) -> Optional[BiocFrame]:
    """Convert a pandas DataFrame to a BiocFrame, keeping its index as row names."""
    if df is None or isinstance(df, BiocFrame):
        return df
    return BiocFrame(
        {str(col): df[col].to_numpy() for col in df.columns},
        row_names=[str(i) for i in df.index],
        number_of_rows=len(df),
    )


class CountExperiment(SummarizedExperiment):  # type: ignore[misc]
    """
    SummarizedExperiment subclass for count-based differential expression.

    Keeps the constructor signature of SummarizedExperiment so slicing and
    copying preserve the class. Sample covariates live in ``column_data``;
    size factors are written to ``column_data["size_factor"]`` and
    normalized counts to the ``"normalized_counts"`` assay.
    """

    def __init__(
        self,
        assays: Optional[Dict[str, Any]] = None,
        row_data: Optional[Union[pd.DataFrame, BiocFrame]] = None,
        column_data: Optional[Union[pd.DataFrame, BiocFrame]] = None,
        row_names: Optional[Sequence[str]] = None,
        column_names: Optional[Sequence[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        """Initialize a ``CountExperiment``.

        Args:
            assays: Mapping from assay name to a genes x samples matrix.
            row_data: Optional feature annotations (pandas or BiocFrame).
            column_data: Optional sample annotations (pandas or BiocFrame).
            row_names: Optional feature names.
            column_names: Optional sample names.
            metadata: Optional dictionary of free-form metadata.
            **kwargs: Forwarded to the base ``SummarizedExperiment`` constructor.
        """
        super().__init__(
            assays=assays,
            row_data=_frame_to_bioc(row_data),
            column_data=_frame_to_bioc(column_data),
            row_names=row_names,
            column_names=column_names,
            metadata=metadata or {},
            **kwargs,
        )

    # ------- convenience getters -------
    def assay_df(self, name: str = "counts") -> pd.DataFrame:
        """Return an assay as a genes x samples pandas DataFrame."""
        from .count_init import gene_names, sample_names

        arr = self.assays[name]
        if hasattr(arr, "toarray"):
            arr = arr.toarray()
        return pd.DataFrame(np.asarray(arr), index=gene_names(self), columns=sample_names(self))

    def row_data_df(self) -> Optional[pd.DataFrame]:
        """Row (gene) annotations as pandas."""
        rd = self.get_row_data()
        return None if rd is None else rd.to_pandas()

    def column_data_df(self) -> Optional[pd.DataFrame]:
        """Column (sample) annotations as pandas."""
        cd = self.get_column_data()
        return None if cd is None else cd.to_pandas()

    # ------- functional setters -------
    def with_column(self, name: str, values: Sequence[Any]) -> "CountExperiment":
        """Return a copy with ``values`` stored in ``column_data[name]``."""
        coldata = self.get_column_data()
        new_coldata = coldata.set_column(name, np.asarray(values))
        return self.set_column_data(new_coldata, in_place=False)

    def with_assay(self, name: str, value: Any) -> "CountExperiment":
        """Return a copy with an added or replaced assay."""
        new_assays = dict(self.assays)
        new_assays[name] = value
        return self.set_assays(new_assays, in_place=False)

    # ------- conversion -------
    def to_summarized_experiment(self) -> SummarizedExperiment:
        """Convert to a base ``SummarizedExperiment``."""
        return SummarizedExperiment(
            assays=dict(self.assays),
            row_data=self.row_data,
            column_data=self.column_data,
            row_names=self.row_names,
            column_names=self.column_names,
            metadata=dict(self.metadata),
        )

    @staticmethod
    def from_summarized_experiment(se: SummarizedExperiment) -> "CountExperiment":
        """Create a ``CountExperiment`` from any SummarizedExperiment variant."""
        return CountExperiment(
            assays=dict(se.assays),
            row_data=se.row_data,
            column_data=se.column_data,
            row_names=se.row_names,
            column_names=se.column_names,
            metadata=dict(se.metadata),
        )

    @staticmethod
    def from_pandas(
        counts: pd.DataFrame,
        column_data: Optional[pd.DataFrame] = None,
        assay: str = "counts",
    ) -> "CountExperiment":
        """Build a ``CountExperiment`` from a genes x samples count DataFrame.

        Args:
            counts: Count table, genes as index, samples as columns.
            column_data: Optional per-sample covariates indexed by sample name.
                Rows are reordered to match ``counts.columns``.
            assay: Name under which the counts are stored.

        Returns:
            CountExperiment.
        """
        sample_ids = [str(c) for c in counts.columns]
        if column_data is not None:
            column_data = column_data.copy()
            column_data.index = [str(i) for i in column_data.index]
            missing = set(sample_ids) - set(column_data.index)
            if missing:
                raise KeyError(f"column_data lacks samples: {sorted(missing)[:5]}")
            column_data = column_data.loc[sample_ids]
        return CountExperiment(
            assays={assay: counts.to_numpy()},
            column_data=column_data,
            row_names=[str(i) for i in counts.index],
            column_names=sample_ids,
        )
