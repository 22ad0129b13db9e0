"""
Configuration for the DESeq negative-binomial pipeline.

The DESeqConfig dataclass collects every tunable constant of the pipeline in
one place. Functions of the functional API accept the same values as
keyword arguments; ``deseq()`` threads a single config through all stages.
"""

from __future__ import annotations
from dataclasses import dataclass, asdict, replace
from typing import Any, Dict, Literal, Optional

SizeFactorMethod = Literal["ratio", "poscounts"]
FitType = Literal["parametric", "mean"]
ShrinkMethod = Literal["mixture", "normal"]


@dataclass(frozen=True)
class DESeqConfig:
    """Configuration used for size factors, dispersions, GLM fits and tests.

    Attributes:
        size_factor_method: ``"ratio"`` excludes genes with any zero from the
            geometric-mean reference; ``"poscounts"`` uses the geometric mean
            of positive counts so sparse data still yields size factors.
        normalize_size_factors: Rescale size factors to geometric mean 1.
        min_disp: Lower bound for dispersion estimates.
        min_mu: Floor for fitted means used in likelihoods.
        min_nonzero_samples: Genes with fewer non-zero samples are unfittable.
        disp_tol: Tolerance of the bounded dispersion optimizer.
        fit_type: Dispersion trend strategy, ``"parametric"`` (a/mu + b) or
            ``"mean"``.
        outlier_sd: Gene-wise dispersions more than this many prior SDs above
            the trend keep their gene-wise value.
        prior_var_floor: Lower bound for the log-dispersion prior variance.
        trend_max_iter: Maximum number of trimming rounds of the trend fit.
        glm_max_iter: IRLS iteration limit per gene.
        glm_tol: IRLS relative deviance tolerance.
        ridge_lambda: Ridge penalty on log2-scale coefficients.
        optim_fallback: Refit non-converged genes with L-BFGS-B before
            declaring them failed.
        cooks_cutoff: Cook's distance cutoff; ``None`` uses the 0.99 quantile
            of F(p, m - p). ``False`` disables outlier flagging.
        min_replicates_cooks: Only samples in design cells with at least this
            many replicates count as influential.
        max_cooks_outliers: Genes with more influential samples get NA
            p-values.
        alpha: Target FDR for independent filtering and summaries.
        independent_filter: Run independent filtering before BH.
        filter_n_theta: Number of quantile thresholds evaluated.
        filter_max_quantile: Largest base-mean quantile considered.
        shrink_method: Empirical-Bayes prior family for LFC shrinkage.
        n_jobs: joblib workers for per-gene stages (1 = serial).
        chunk_size: Genes per joblib task.
    """
    size_factor_method: SizeFactorMethod = "ratio"
    normalize_size_factors: bool = True
    min_disp: float = 1e-8
    min_mu: float = 0.5
    min_nonzero_samples: int = 1
    disp_tol: float = 1e-6
    fit_type: FitType = "parametric"
    outlier_sd: float = 2.0
    prior_var_floor: float = 0.25
    trend_max_iter: int = 10
    glm_max_iter: int = 100
    glm_tol: float = 1e-8
    ridge_lambda: float = 1e-6
    optim_fallback: bool = True
    cooks_cutoff: Optional[Any] = None
    min_replicates_cooks: int = 3
    max_cooks_outliers: int = 0
    alpha: float = 0.1
    independent_filter: bool = True
    filter_n_theta: int = 50
    filter_max_quantile: float = 0.95
    shrink_method: ShrinkMethod = "mixture"
    n_jobs: int = 1
    chunk_size: int = 256

    def __post_init__(self) -> None:
        if self.size_factor_method not in ("ratio", "poscounts"):
            raise ValueError(f"Unknown size_factor_method: {self.size_factor_method!r}")
        if self.fit_type not in ("parametric", "mean"):
            raise ValueError(f"Unknown fit_type: {self.fit_type!r}")
        if self.shrink_method not in ("mixture", "normal"):
            raise ValueError(f"Unknown shrink_method: {self.shrink_method!r}")
        if self.min_disp <= 0:
            raise ValueError("min_disp must be positive")
        if self.min_mu <= 0:
            raise ValueError("min_mu must be positive")
        if not 0 < self.alpha < 1:
            raise ValueError("alpha must be in (0, 1)")
        if not 0 < self.filter_max_quantile < 1:
            raise ValueError("filter_max_quantile must be in (0, 1)")
        if self.glm_max_iter < 1 or self.trend_max_iter < 1:
            raise ValueError("iteration limits must be >= 1")
        if self.max_cooks_outliers < 0:
            raise ValueError("max_cooks_outliers must be >= 0")
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")

    def update(self, **kwargs: Any) -> "DESeqConfig":
        """Return a copy with the given fields replaced."""
        unknown = set(kwargs) - set(self.to_dict())
        if unknown:
            raise TypeError(f"Unknown DESeqConfig fields: {sorted(unknown)}")
        return replace(self, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
