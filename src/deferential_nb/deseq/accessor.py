"""
DESeq accessor for CountExperiment.

Provides the DESeq pipeline via the accessor pattern.

Usage:
    import deferential_nb.deseq  # Triggers accessor registration

    se = CountExperiment(assays={"counts": counts}, column_data=coldata)
    se = se.deseq.estimate_size_factors()
    model = se.deseq.fit("~ condition")
    res = se.deseq.results("~ condition", contrast=("condition", "B", "A"))
    se = se.deseq.add_results(res)

All methods return new objects (functional/immutable style).
Vector results per sample go to column_data, per gene to row_data, and
matrix results to assays.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional, Sequence
import numpy as np

from ..extensions import register_count_accessor
from .config import DESeqConfig
from .deseq import DESeqModel, deseq
from .design import DesignLike
from .results import DESeqResults
from .size_factors import estimate_size_factors, normalized_counts

if TYPE_CHECKING:
    from ..countexperiment import CountExperiment


@register_count_accessor(
    "deseq",
    methods=("estimate_size_factors", "normalized_counts", "fit", "results", "add_results"),
)
class DESeqAccessor:
    """
    Accessor providing DESeq methods on a CountExperiment.

    Attributes:
        _se: Reference to the parent CountExperiment.
    """

    def __init__(self, se: CountExperiment) -> None:
        self._se = se

    # =========================================================================
    # Methods that modify column_data / assays
    # =========================================================================

    def estimate_size_factors(
        self,
        assay: str = "counts",
        method: str = "ratio",
        control_genes: Optional[Sequence[bool]] = None,
        normalize: bool = True,
    ) -> CountExperiment:
        """
        Compute median-of-ratios size factors into ``column_data["size_factor"]``.

        Example:
            >>> se = se.deseq.estimate_size_factors(method="poscounts")
            >>> se.column_data["size_factor"]
        """
        return estimate_size_factors(
            self._se, assay=assay, method=method, control_genes=control_genes, normalize=normalize,
        )

    def normalized_counts(self, assay: str = "counts") -> CountExperiment:
        """
        Add a ``"normalized_counts"`` assay.

        Uses ``column_data["size_factor"]``, estimating size factors first
        when they are missing.
        """
        se = self._se
        coldata = se.get_column_data()
        if coldata is None or "size_factor" not in coldata.column_names:
            se = estimate_size_factors(se, assay=assay)
        return normalized_counts(se, assay=assay, as_assay=True)

    # =========================================================================
    # Model fitting and testing
    # =========================================================================

    def _size_factors(self) -> Optional[np.ndarray]:
        coldata = self._se.get_column_data()
        if coldata is not None and "size_factor" in coldata.column_names:
            return np.asarray(coldata["size_factor"], dtype=float)
        return None

    def fit(
        self,
        design: DesignLike,
        config: Optional[DESeqConfig] = None,
        assay: str = "counts",
        **kwargs: Any,
    ) -> DESeqModel:
        """
        Fit the DESeq model. Size factors already stored in column_data are
        reused.

        Args:
            design: Formula over column_data, DesignSpec, or design DataFrame.
            config: Pipeline configuration; keyword arguments override fields.
            assay: Counts assay name.

        Returns:
            DESeqModel.
        """
        return deseq(
            self._se, design, config=config, assay=assay,
            size_factors=self._size_factors(), **kwargs,
        )

    def results(
        self,
        design: DesignLike,
        config: Optional[DESeqConfig] = None,
        assay: str = "counts",
        **results_kwargs: Any,
    ) -> DESeqResults:
        """Fit the model and return ``DESeqModel.results(**results_kwargs)``."""
        return self.fit(design, config=config, assay=assay).results(**results_kwargs)

    def add_results(self, results: DESeqResults, prefix: str = "deseq_") -> CountExperiment:
        """
        Store per-gene result columns in row_data.

        Args:
            results: Results for the genes of this experiment, in row order.
            prefix: Prefix for the new row_data columns.

        Returns:
            New CountExperiment with the result columns in row_data.
        """
        if len(results) != self._se.shape[0]:
            raise ValueError(
                f"Results have {len(results)} genes but the experiment has {self._se.shape[0]}"
            )
        output = self._se._define_output(in_place=False)
        rowdata = output.get_row_data()
        table = results.to_pandas()
        for col in table.columns:
            if col == "gene":
                continue
            rowdata = rowdata.set_column(f"{prefix}{col}", table[col].to_numpy())
        return output.set_row_data(rowdata, in_place=True)


def activate():
    """
    Called on package import to register the DESeq accessor.

    Registration happens via the @register_count_accessor decorator when the
    class is defined; this is the explicit hook point.
    """
    pass
