"""DESeq: negative-binomial differential expression for count data.

Median-of-ratios size factors, empirical Bayes dispersion shrinkage,
per-gene NB GLMs with Wald or likelihood-ratio tests, LFC shrinkage and
independent filtering with Benjamini-Hochberg adjustment.

Functional API:
    >>> import deferential_nb.deseq as deseq
    >>> model = deseq.deseq(se, "~ condition")
    >>> res = model.results(contrast=("condition", "treated", "control"))
    >>> res.top(10)

Accessor API:
    >>> import deferential_nb.deseq
    >>> se = se.deseq.estimate_size_factors()
    >>> model = se.deseq.fit("~ condition")
"""

# Functional API exports
from .config import DESeqConfig
from .design import DesignSpec, contrast_vector, resolve_design
from .size_factors import (
    estimate_size_factors,
    get_size_factors,
    normalized_counts,
    size_factors_from_matrix,
)
from .dispersion import (
    DispersionEstimates,
    MeanTrend,
    ParametricTrend,
    estimate_dispersions,
    fit_dispersion_trend,
)
from .nbinom_glm import GeneFit, NBGLMFit, fit_gene_glm, fit_nbinom_glm
from .wald_test import TestResult, wald_test
from .lrt import likelihood_ratio_test
from .lfc_shrink import ShrinkageResult, lfc_shrink
from .independent_filtering import FilterResult, independent_filtering, p_adjust_bh
from .results import DESeqResults, RESULT_COLUMNS
from .status import GeneStatus
from .deseq import DESeqModel, deseq

# Register DESeq accessor on CountExperiment
from .accessor import activate, DESeqAccessor
activate()

__all__ = [
    # Functional API
    "estimate_size_factors",
    "get_size_factors",
    "normalized_counts",
    "size_factors_from_matrix",
    "estimate_dispersions",
    "fit_dispersion_trend",
    "fit_gene_glm",
    "fit_nbinom_glm",
    "wald_test",
    "likelihood_ratio_test",
    "lfc_shrink",
    "independent_filtering",
    "p_adjust_bh",
    "deseq",
    "contrast_vector",
    "resolve_design",
    # Model classes
    "DESeqConfig",
    "DesignSpec",
    "DispersionEstimates",
    "MeanTrend",
    "ParametricTrend",
    "GeneFit",
    "NBGLMFit",
    "TestResult",
    "ShrinkageResult",
    "FilterResult",
    "DESeqResults",
    "DESeqModel",
    "GeneStatus",
    "RESULT_COLUMNS",
    # Accessor
    "DESeqAccessor",
]
