"""
End-to-end DESeq pipeline.

``deseq()`` validates counts and design, estimates size factors and
dispersions, and fits the negative-binomial GLMs. The returned DESeqModel is
immutable; ``DESeqModel.results()`` runs the tests, independent filtering,
BH adjustment and LFC shrinkage.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple, Union
import numpy as np
import pandas as pd

from ..count_init import (
    check_unique_names,
    gene_names as se_gene_names,
    get_counts,
    sample_names as se_sample_names,
    validate_count_matrix,
)
from ..errors import DesignError
from .checks import check_coef_or_contrast, check_count_experiment, check_min_samples, check_results_match
from .config import DESeqConfig, ShrinkMethod
from .design import DesignLike, DesignSpec, resolve_design
from .dispersion import DispersionEstimates, estimate_dispersions, robust_moments_dispersion
from .independent_filtering import independent_filtering
from .lfc_shrink import lfc_shrink as shrink_lfc
from .lrt import likelihood_ratio_test
from .nbinom_glm import NBGLMFit, fit_nbinom_glm
from .results import DESeqResults, build_results
from .size_factors import size_factors_from_matrix
from .utils import freeze
from .wald_test import wald_test

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DESeqModel:
    """Fitted DESeq model.

    Attributes:
        counts: Validated raw counts, genes x samples (read-only).
        gene_names: Gene identifiers in input order.
        sample_names: Sample identifiers in input order.
        design: Design matrix used for the fits.
        size_factors: Per-sample size factors.
        dispersions: Dispersion estimates of all stages.
        glm_fit: Per-gene GLM fits.
        config: Configuration used for every stage.
        covariates: Sample covariates, used to build reduced designs from
            formulas.
    """
    counts: np.ndarray
    gene_names: Sequence[str]
    sample_names: Sequence[str]
    design: pd.DataFrame
    size_factors: np.ndarray
    dispersions: DispersionEstimates
    glm_fit: NBGLMFit
    config: DESeqConfig
    covariates: Optional[pd.DataFrame] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def coef_names(self):
        return list(self.design.columns)

    def __repr__(self) -> str:
        return (
            f"DESeqModel(n_genes={len(self.gene_names)}, n_samples={len(self.sample_names)}, "
            f"coefficients={self.coef_names})"
        )

    def normalized_counts(self) -> pd.DataFrame:
        """Counts divided by size factors, genes x samples."""
        return pd.DataFrame(
            self.counts / self.size_factors[np.newaxis, :],
            index=list(self.gene_names),
            columns=list(self.sample_names),
        )

    def coefficients(self, log2: bool = True) -> pd.DataFrame:
        """Per-gene coefficients, on the log2 scale by default."""
        coef = np.asarray(self.glm_fit.coef)
        if log2:
            coef = coef / np.log(2.0)
        return pd.DataFrame(coef, index=list(self.gene_names), columns=self.coef_names)

    def dispersions_df(self) -> pd.DataFrame:
        """Per-gene dispersion estimates of every stage."""
        d = self.dispersions
        return pd.DataFrame({
            "base_mean": d.base_mean,
            "base_var": d.base_var,
            "genewise": d.genewise,
            "trend": d.trend,
            "map": d.map,
            "final": d.final,
            "dispersion_outlier": d.dispersion_outlier,
            "unfittable": d.unfittable,
        }, index=list(self.gene_names))

    def _reduced_design(self, reduced: DesignLike) -> pd.DataFrame:
        if isinstance(reduced, str):
            if self.covariates is None:
                raise DesignError("Model has no covariates; pass the reduced design as a DataFrame")
            reduced = DesignSpec(reduced, self.covariates)
        return resolve_design(reduced, n_samples=len(self.sample_names))

    def results(
        self,
        coef: Optional[Union[str, int]] = None,
        contrast: Optional[Union[Sequence[float], Tuple[str, str, str]]] = None,
        test: str = "wald",
        reduced: Optional[DesignLike] = None,
        use_t: bool = False,
        lfc_threshold: float = 0.0,
        alpha: Optional[float] = None,
        independent_filter: Optional[bool] = None,
        shrink: Union[bool, ShrinkMethod] = True,
    ) -> DESeqResults:
        """
        Test every gene and assemble the result table.

        Args:
            coef: Coefficient name or 0-based index. Defaults to the last
                design column.
            contrast: Numeric contrast vector or ``(variable, numerator,
                denominator)`` tuple (Wald test only).
            test: ``"wald"`` or ``"lrt"``.
            reduced: Reduced design (formula, DesignSpec or DataFrame),
                required for ``test="lrt"``.
            use_t: Student-t reference distribution for the Wald test.
            lfc_threshold: log2 fold-change threshold of the Wald test.
            alpha: FDR level; defaults to ``config.alpha``.
            independent_filter: Defaults to ``config.independent_filter``.
            shrink: ``True`` uses ``config.shrink_method``; a method name
                selects the prior; ``False`` leaves the shrunk columns NaN.

        Returns:
            DESeqResults.

        Example:
            >>> model = deseq(se, "~ condition")
            >>> res = model.results(contrast=("condition", "treated", "control"))
            >>> res.significant(0.05)
        """
        check_coef_or_contrast(coef, contrast)
        alpha = self.config.alpha if alpha is None else alpha
        if independent_filter is None:
            independent_filter = self.config.independent_filter

        if test == "wald":
            if reduced is not None:
                raise ValueError("`reduced` is only used with test='lrt'")
            tested = wald_test(
                self.glm_fit, coef=coef, contrast=contrast, use_t=use_t,
                lfc_threshold=lfc_threshold, max_cooks_outliers=self.config.max_cooks_outliers,
            )
        elif test == "lrt":
            if reduced is None:
                raise ValueError("test='lrt' requires a `reduced` design")
            if contrast is not None:
                raise ValueError("`contrast` is not supported with test='lrt'")
            tested = likelihood_ratio_test(
                self.counts, self.glm_fit, self._reduced_design(reduced), coef=coef, config=self.config,
            )
        else:
            raise ValueError(f"Unknown test: {test!r}; use 'wald' or 'lrt'")

        filtering = independent_filtering(
            tested.p_value,
            self.dispersions.base_mean,
            alpha=alpha,
            n_theta=self.config.filter_n_theta,
            max_quantile=self.config.filter_max_quantile,
            enabled=independent_filter,
        )

        shrinkage = None
        if shrink:
            method = self.config.shrink_method if shrink is True else shrink
            shrinkage = shrink_lfc(tested.log2_fc, tested.lfc_se, method=method)

        return build_results(
            self.gene_names, self.dispersions, self.glm_fit, tested, filtering, shrinkage,
        )

    def lfc_shrink(self, results: DESeqResults, method: Optional[ShrinkMethod] = None) -> DESeqResults:
        """Recompute the shrunk LFC columns of ``results`` with another prior."""
        check_results_match(results, self.gene_names)
        method = method or self.config.shrink_method
        shrinkage = shrink_lfc(results.column("log2_fc"), results.column("lfc_se"), method=method)
        return results.with_shrinkage(shrinkage)


def _counts_and_names(
    data: Any, assay: str
) -> Tuple[np.ndarray, list, list, Optional[pd.DataFrame]]:
    if isinstance(data, pd.DataFrame):
        check_unique_names(data.index, "gene")
        check_unique_names(data.columns, "sample")
        return (
            validate_count_matrix(data.to_numpy()),
            [str(g) for g in data.index],
            [str(s) for s in data.columns],
            None,
        )
    if hasattr(data, "assay_names"):
        check_count_experiment(data, assay)
        covariates = None
        coldata = data.get_column_data()
        if coldata is not None and len(coldata.column_names) > 0:
            covariates = coldata.to_pandas()
            covariates.index = se_sample_names(data)
        return get_counts(data, assay), se_gene_names(data), se_sample_names(data), covariates
    counts = validate_count_matrix(data)
    return (
        counts,
        [f"gene_{i}" for i in range(counts.shape[0])],
        [f"sample_{j}" for j in range(counts.shape[1])],
        None,
    )


def deseq(
    data: Any,
    design: DesignLike,
    config: Optional[DESeqConfig] = None,
    assay: str = "counts",
    column_data: Optional[pd.DataFrame] = None,
    size_factors: Optional[Sequence[float]] = None,
    **kwargs: Any,
) -> DESeqModel:
    """
    Fit the DESeq negative-binomial model.

    Args:
        data: SummarizedExperiment (any BiocPy variant), a genes x samples
            count DataFrame, or a 2D array of counts.
        design: Formula such as ``"~ batch + condition"``, a DesignSpec, or a
            numeric design DataFrame (samples x coefficients).
        config: Pipeline configuration; keyword arguments override fields.
        assay: Counts assay name when ``data`` is an SE.
        column_data: Sample covariates for formula designs when ``data`` is
            not an SE (rows in sample order).
        size_factors: Precomputed size factors; estimated when omitted.

    Returns:
        DESeqModel.

    Raises:
        CountDataError: Invalid counts or duplicated identifiers.
        DesignError: Malformed design or missing covariates.
        InsufficientDataError: Too few samples, rank-deficient design, or no
            genes usable for size factors.

    Example:
        >>> import deferential_nb.deseq as deseq
        >>> model = deseq.deseq(se, "~ condition", n_jobs=4)
        >>> res = model.results()
        >>> res.top(10)
    """
    config = config or DESeqConfig()
    if kwargs:
        config = config.update(**kwargs)

    counts, genes, samples, covariates = _counts_and_names(data, assay)
    n_genes, n_samples = counts.shape
    check_min_samples(n_samples)
    if column_data is not None:
        if len(column_data) != n_samples:
            raise DesignError(f"column_data has {len(column_data)} rows, expected {n_samples}")
        covariates = column_data.copy()

    if isinstance(design, str):
        if covariates is None:
            raise DesignError("A formula design needs sample covariates (column_data)")
        design = DesignSpec(design, covariates)
    design_df = resolve_design(design, n_samples=n_samples)
    design_df.index = samples
    logger.info(
        "Fitting %d genes x %d samples with design columns %s",
        n_genes, n_samples, list(design_df.columns),
    )

    if size_factors is None:
        sf = size_factors_from_matrix(
            counts, method=config.size_factor_method, normalize=config.normalize_size_factors,
        )
    else:
        sf = np.asarray(size_factors, dtype=float)
        if sf.shape != (n_samples,) or not np.all(np.isfinite(sf)) or np.any(sf <= 0):
            raise ValueError(f"size_factors must be {n_samples} positive finite values")
        sf = freeze(sf)

    X = design_df.to_numpy(dtype=float)
    dispersions = estimate_dispersions(counts, sf, X, config=config)
    glm_fit = fit_nbinom_glm(
        counts, sf, design_df, dispersions.final,
        cooks_dispersions=robust_moments_dispersion(counts, sf, X),
        config=config,
    )
    return DESeqModel(
        counts=freeze(counts),
        gene_names=tuple(genes),
        sample_names=tuple(samples),
        design=design_df,
        size_factors=sf,
        dispersions=dispersions,
        glm_fit=glm_fit,
        config=config,
        covariates=covariates,
    )
