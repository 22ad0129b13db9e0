"""
Result table of a DESeq test.

DESeqResults wraps one row per input gene, in input order. Genes that were
not tested keep their row with NaN statistics and a status explaining why.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Sequence
import numpy as np
import pandas as pd

from .dispersion import DispersionEstimates
from .independent_filtering import FilterResult
from .lfc_shrink import ShrinkageResult
from .nbinom_glm import NBGLMFit
from .status import GeneStatus
from .wald_test import TestResult

RESULT_COLUMNS = [
    "gene",
    "base_mean",
    "log2_fc",
    "lfc_se",
    "stat",
    "p_value",
    "adj_p_value",
    "log2_fc_shrunk",
    "lfc_se_shrunk",
    "dispersion",
    "dispersion_outlier",
    "n_cooks_outliers",
    "max_cooks",
    "status",
]


@dataclass(frozen=True)
class DESeqResults:
    """Differential expression results.

    The table itself is private; ``table``, ``to_pandas`` and the query
    methods hand out copies, and ``column`` returns read-only arrays.

    Attributes:
        _table: DataFrame with ``RESULT_COLUMNS``, one row per gene.
        contrast: Description of the tested coefficient, contrast or model.
        test: ``"wald"`` or ``"lrt"``.
        alpha: FDR level used for filtering and summaries.
        _filter_summary: Chosen independent filtering threshold and the
            number of rejections per candidate threshold; read through the
            ``filter_summary`` view.
        shrink_method: Prior family of the shrunk columns, if any.
    """
    _table: pd.DataFrame = field(repr=False)
    contrast: str
    test: str
    alpha: float
    _filter_summary: Dict[str, Any] = field(default_factory=dict, repr=False)
    shrink_method: Optional[str] = None

    @property
    def table(self) -> pd.DataFrame:
        """Copy of the result table."""
        return self._table.copy()

    @property
    def filter_summary(self) -> Mapping[str, Any]:
        summary = dict(self._filter_summary)
        if "rejections" in summary:
            summary["rejections"] = summary["rejections"].copy()
        return MappingProxyType(summary)

    def __len__(self) -> int:
        return len(self._table)

    def __repr__(self) -> str:
        return (
            f"DESeqResults(test={self.test!r}, contrast={self.contrast!r}, "
            f"n_genes={len(self)}, n_significant={len(self.significant())})"
        )

    def to_pandas(self) -> pd.DataFrame:
        """Copy of the result table."""
        return self._table.copy()

    def column(self, name: str) -> np.ndarray:
        """Read-only array of one result column."""
        arr = self._table[name].to_numpy(copy=True)
        arr.setflags(write=False)
        return arr

    def significant(self, alpha: Optional[float] = None, lfc: float = 0.0) -> pd.DataFrame:
        """Genes with adjusted p-value below ``alpha`` and ``|log2_fc| >= lfc``."""
        alpha = self.alpha if alpha is None else alpha
        df = self._table
        mask = (df["adj_p_value"] < alpha) & (df["log2_fc"].abs() >= lfc)
        return df[mask.fillna(False)].copy()

    def top(self, n: int = 10) -> pd.DataFrame:
        """``n`` genes with the smallest adjusted (then raw) p-values."""
        return (
            self._table.sort_values(["adj_p_value", "p_value"], na_position="last", kind="mergesort")
            .head(n)
            .copy()
        )

    def summary(self, alpha: Optional[float] = None) -> Dict[str, Any]:
        """Counts of up/down regulated genes and of each exclusion reason."""
        alpha = self.alpha if alpha is None else alpha
        sig = self.significant(alpha)
        status = self._table["status"]
        return {
            "n_genes": len(self),
            "alpha": alpha,
            "n_up": int((sig["log2_fc"] > 0).sum()),
            "n_down": int((sig["log2_fc"] < 0).sum()),
            "n_tested": int(self._table["p_value"].notna().sum()),
            "n_unfittable": int((status == GeneStatus.UNFITTABLE.value).sum()),
            "n_fit_failed": int((status == GeneStatus.FIT_FAILED.value).sum()),
            "n_cooks_outliers": int((status == GeneStatus.COOKS_OUTLIER.value).sum()),
            "n_filtered": int((status == GeneStatus.FILTERED.value).sum()),
            "n_dispersion_outliers": int(self._table["dispersion_outlier"].sum()),
        }

    def with_shrinkage(self, shrinkage: ShrinkageResult) -> "DESeqResults":
        """Copy with the shrunk LFC columns replaced."""
        table = self._table.copy()
        table["log2_fc_shrunk"] = np.asarray(shrinkage.log2_fc_shrunk)
        table["lfc_se_shrunk"] = np.asarray(shrinkage.lfc_se_shrunk)
        return replace(self, _table=table, shrink_method=shrinkage.method)


def build_results(
    gene_names: Sequence[str],
    dispersions: DispersionEstimates,
    fit: NBGLMFit,
    test: TestResult,
    filtering: FilterResult,
    shrinkage: Optional[ShrinkageResult] = None,
) -> DESeqResults:
    """Assemble the per-gene result table from the stage outputs."""
    n_genes = len(gene_names)
    status = np.array(test.status, dtype=object)
    status[np.asarray(filtering.filtered)] = GeneStatus.FILTERED

    table = pd.DataFrame({
        "gene": list(gene_names),
        "base_mean": np.asarray(dispersions.base_mean),
        "log2_fc": np.asarray(test.log2_fc),
        "lfc_se": np.asarray(test.lfc_se),
        "stat": np.asarray(test.stat),
        "p_value": np.asarray(test.p_value),
        "adj_p_value": np.asarray(filtering.adj_p_value),
        "log2_fc_shrunk": (
            np.asarray(shrinkage.log2_fc_shrunk) if shrinkage is not None else np.full(n_genes, np.nan)
        ),
        "lfc_se_shrunk": (
            np.asarray(shrinkage.lfc_se_shrunk) if shrinkage is not None else np.full(n_genes, np.nan)
        ),
        "dispersion": np.asarray(dispersions.final),
        "dispersion_outlier": np.asarray(dispersions.dispersion_outlier),
        "n_cooks_outliers": np.asarray(fit.n_influential),
        "max_cooks": np.asarray(fit.max_cooks),
        "status": [GeneStatus(s).value for s in status],
    }, columns=RESULT_COLUMNS)
    return DESeqResults(
        _table=table,
        contrast=test.label,
        test=test.test,
        alpha=filtering.alpha,
        _filter_summary=filtering.summary(),
        shrink_method=shrinkage.method if shrinkage is not None else None,
    )
