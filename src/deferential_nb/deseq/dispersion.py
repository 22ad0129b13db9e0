"""
Negative-binomial dispersion estimation with empirical-Bayes shrinkage.

Three stages, each separated by a barrier over all genes:

1. gene-wise estimates maximizing the Cox-Reid adjusted likelihood,
2. a dispersion-mean trend fitted across genes (pluggable strategy),
3. maximum a posteriori estimates under a log-normal prior centred on the
   trend, keeping gene-wise values for genes far above the trend.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Type, Union
import numpy as np
from scipy.optimize import minimize_scalar
from scipy.special import polygamma
from scipy.stats import median_abs_deviation, trim_mean

from .config import DESeqConfig
from .utils import design_cells, freeze, map_genes, nb_log_likelihood, trimmed_variance

logger = logging.getLogger(__name__)


class TrendFitError(RuntimeError):
    """A trend strategy could not be fitted to the gene-wise estimates."""


# =============================================================================
# Trend strategies
# =============================================================================

class DispersionTrend:
    """Smooth dispersion as a function of mean normalized count."""

    name = "base"

    @classmethod
    def configured(cls, max_iter: int = 10) -> "DispersionTrend":
        """Unfitted instance built from the pipeline options."""
        return cls()

    def fit(self, base_mean: np.ndarray, disp: np.ndarray) -> "DispersionTrend":
        raise NotImplementedError

    def __call__(self, base_mean: np.ndarray) -> np.ndarray:
        raise NotImplementedError


class ParametricTrend(DispersionTrend):
    """alpha(mu) = asympt_disp + extra_pois / mu, fitted as a gamma GLM with identity link.

    Genes whose ratio of gene-wise estimate to the current trend falls
    outside ``[1e-4, 15]`` are trimmed before each refit.
    """

    name = "parametric"

    @classmethod
    def configured(cls, max_iter: int = 10) -> "ParametricTrend":
        return cls(max_iter=max_iter)

    def __init__(self, max_iter: int = 10) -> None:
        self.max_iter = max_iter
        self.asympt_disp: Optional[float] = None
        self.extra_pois: Optional[float] = None

    def fit(self, base_mean: np.ndarray, disp: np.ndarray) -> "ParametricTrend":
        if base_mean.size < 3:
            raise TrendFitError(f"need at least 3 genes, got {base_mean.size}")
        coefs = np.array([0.1, 1.0])
        for _ in range(self.max_iter + 1):
            residuals = disp / (coefs[0] + coefs[1] / base_mean)
            good = (residuals > 1e-4) & (residuals < 15)
            if good.sum() < 3:
                raise TrendFitError("too few genes left after trimming")
            old = coefs
            coefs = _gamma_identity_glm(1.0 / base_mean[good], disp[good], start=coefs)
            if not np.all(coefs > 0):
                raise TrendFitError(f"non-positive trend coefficients {coefs.tolist()}")
            if np.sum(np.log(coefs / old) ** 2) < 1e-6:
                break
        else:
            raise TrendFitError("trend fit did not converge")
        self.asympt_disp, self.extra_pois = float(coefs[0]), float(coefs[1])
        return self

    def __call__(self, base_mean: np.ndarray) -> np.ndarray:
        with np.errstate(divide="ignore"):
            return self.asympt_disp + self.extra_pois / np.asarray(base_mean, dtype=float)

    def __repr__(self) -> str:
        return f"ParametricTrend(asympt_disp={self.asympt_disp}, extra_pois={self.extra_pois})"


class MeanTrend(DispersionTrend):
    """Constant trend: the 0.1%-trimmed mean of the gene-wise estimates."""

    name = "mean"

    def __init__(self, trim: float = 0.001) -> None:
        self.trim = trim
        self.value: Optional[float] = None

    def fit(self, base_mean: np.ndarray, disp: np.ndarray) -> "MeanTrend":
        if disp.size == 0:
            raise TrendFitError("no gene-wise estimates to average")
        self.value = float(trim_mean(disp, self.trim))
        return self

    def __call__(self, base_mean: np.ndarray) -> np.ndarray:
        return np.full(np.shape(base_mean), self.value, dtype=float)

    def __repr__(self) -> str:
        return f"MeanTrend(value={self.value})"


TREND_STRATEGIES: Dict[str, Type[DispersionTrend]] = {
    "parametric": ParametricTrend,
    "mean": MeanTrend,
}


def _gamma_identity_glm(x: np.ndarray, y: np.ndarray, start: np.ndarray, max_iter: int = 50) -> np.ndarray:
    """IRLS for y ~ b0 + b1 * x with gamma variance (weights 1 / fitted^2)."""
    A = np.column_stack([np.ones_like(x), x])
    beta = np.asarray(start, dtype=float)
    for _ in range(max_iter):
        fitted = A @ beta
        if np.any(fitted <= 0):
            raise TrendFitError("trend became non-positive during fitting")
        sw = 1.0 / fitted
        new, *_ = np.linalg.lstsq(A * sw[:, np.newaxis], y * sw, rcond=None)
        if np.max(np.abs(new - beta) / (np.abs(beta) + 1e-8)) < 1e-8:
            return new
        beta = new
    raise TrendFitError("gamma GLM for the dispersion trend did not converge")


def fit_dispersion_trend(
    base_mean: np.ndarray,
    genewise: np.ndarray,
    fit_type: Union[str, DispersionTrend] = "parametric",
    min_disp: float = 1e-8,
    max_iter: int = 10,
) -> DispersionTrend:
    """
    Fit the dispersion-mean trend, falling back to a mean trend on failure.

    Only genes with a gene-wise estimate of at least ``100 * min_disp`` feed
    the fit. When none qualify, the trend is the mean over all finite
    gene-wise estimates.

    Args:
        base_mean: Mean normalized counts per gene.
        genewise: Gene-wise dispersion estimates (NaN for unfittable genes).
        fit_type: Key of ``TREND_STRATEGIES``, or an unfitted
            DispersionTrend instance.
        min_disp: Lower dispersion bound.
        max_iter: Trimming rounds of the parametric fit.

    Returns:
        A fitted DispersionTrend.
    """
    if isinstance(fit_type, DispersionTrend):
        strategy = fit_type
    elif fit_type in TREND_STRATEGIES:
        strategy = TREND_STRATEGIES[fit_type].configured(max_iter=max_iter)
    else:
        raise ValueError(f"Unknown fit_type {fit_type!r}; choose from {sorted(TREND_STRATEGIES)}")
    finite = np.isfinite(genewise) & (base_mean > 0)
    use = finite & (genewise >= 100 * min_disp)

    if not use.any():
        logger.warning(
            "All gene-wise dispersions are within two orders of magnitude of "
            "min_disp; using their mean as the trend"
        )
        return MeanTrend(trim=0.0).fit(base_mean[finite], np.maximum(genewise[finite], min_disp))

    try:
        return strategy.fit(base_mean[use], genewise[use])
    except TrendFitError as err:
        logger.warning("%s dispersion trend failed (%s); falling back to mean trend", strategy.name, err)
        return MeanTrend().fit(base_mean[use], genewise[use])


# =============================================================================
# Per-gene likelihood pieces
# =============================================================================

def cox_reid_log_posterior(
    log_alpha: float,
    y: np.ndarray,
    mu: np.ndarray,
    design: np.ndarray,
    prior_mean: Optional[float] = None,
    prior_var: Optional[float] = None,
    use_cr: bool = True,
) -> float:
    """
    Log-likelihood of one gene's dispersion with Cox-Reid adjustment and optional log-normal prior.

    Args:
        log_alpha: Natural log of the dispersion.
        y: Counts of the gene (n_samples,).
        mu: Fitted means (n_samples,).
        design: Design matrix (n_samples, n_coef).
        prior_mean: Prior mean of log dispersion (log trend value).
        prior_var: Prior variance of log dispersion.
        use_cr: Include the Cox-Reid bias adjustment -0.5 * log det(X'WX).
    """
    alpha = np.exp(log_alpha)
    ll = float(np.sum(nb_log_likelihood(y, mu, alpha)))
    if use_cr:
        w = 1.0 / (1.0 / mu + alpha)
        _, logdet = np.linalg.slogdet(design.T @ (design * w[:, np.newaxis]))
        ll -= 0.5 * logdet
    if prior_mean is not None:
        ll -= (log_alpha - prior_mean) ** 2 / (2.0 * prior_var)
    return ll


def _maximize_log_alpha(objective, lower: float, upper: float, start: float, tol: float) -> float:
    """Coarse grid plus bounded Brent search for the maximizing log dispersion."""
    grid = np.append(np.linspace(lower, upper, 25), np.clip(start, lower, upper))
    values = np.array([objective(g) for g in grid])
    values[~np.isfinite(values)] = -np.inf
    best = int(np.argmax(values))
    step = (upper - lower) / 24.0
    lo = max(lower, grid[best] - step)
    hi = min(upper, grid[best] + step)
    res = minimize_scalar(lambda la: -objective(la), bounds=(lo, hi), method="bounded",
                          options={"xatol": tol})
    if res.success and np.isfinite(res.fun) and -res.fun >= values[best]:
        return float(res.x)
    return float(grid[best])


def fit_genewise_dispersion(
    y: np.ndarray,
    mu: np.ndarray,
    alpha_init: float,
    design: np.ndarray,
    min_disp: float,
    max_disp: float,
    tol: float = 1e-6,
) -> float:
    """Gene-wise dispersion maximizing the Cox-Reid adjusted NB likelihood."""
    log_alpha = _maximize_log_alpha(
        lambda la: cox_reid_log_posterior(la, y, mu, design),
        np.log(min_disp / 10.0), np.log(max_disp), np.log(alpha_init), tol,
    )
    return float(np.clip(np.exp(log_alpha), min_disp, max_disp))


def fit_map_dispersion(
    y: np.ndarray,
    mu: np.ndarray,
    log_trend: float,
    alpha_init: float,
    design: np.ndarray,
    prior_var: float,
    min_disp: float,
    max_disp: float,
    tol: float = 1e-6,
) -> float:
    """Maximum a posteriori dispersion under a log-normal prior centred on the trend."""
    log_alpha = _maximize_log_alpha(
        lambda la: cox_reid_log_posterior(la, y, mu, design, prior_mean=log_trend, prior_var=prior_var),
        np.log(min_disp / 10.0), np.log(max_disp), np.log(alpha_init), tol,
    )
    return float(np.clip(np.exp(log_alpha), min_disp, max_disp))


# =============================================================================
# Moment estimators
# =============================================================================

def moments_dispersion(norm_counts: np.ndarray, size_factors: np.ndarray) -> np.ndarray:
    """Method-of-moments dispersion from normalized counts, ignoring the design."""
    mean = norm_counts.mean(axis=1)
    var = norm_counts.var(axis=1, ddof=1)
    xim = np.mean(1.0 / size_factors)
    with np.errstate(divide="ignore", invalid="ignore"):
        return (var - xim * mean) / mean ** 2


def rough_dispersion(norm_counts: np.ndarray, design: np.ndarray) -> np.ndarray:
    """Moment estimate from residuals of a linear fit on normalized counts."""
    n_samples, n_coef = design.shape
    mu = np.maximum(linear_model_mu(norm_counts, design), 1.0)
    est = np.sum(((norm_counts - mu) ** 2 - mu) / mu ** 2, axis=1) / (n_samples - n_coef)
    return np.maximum(est, 0.0)


def linear_model_mu(norm_counts: np.ndarray, design: np.ndarray) -> np.ndarray:
    """Least-squares fitted values of normalized counts on the design."""
    hat = design @ np.linalg.pinv(design)
    return norm_counts @ hat.T


def robust_moments_dispersion(
    counts: np.ndarray,
    size_factors: np.ndarray,
    design: np.ndarray,
    min_value: float = 0.04,
) -> np.ndarray:
    """
    Outlier-resistant moments dispersion used for Cook's distances.

    Uses the largest trimmed within-cell variance over design cells with at
    least three replicates, or the trimmed variance across all samples when
    no cell is that large.
    """
    norm = counts / size_factors[np.newaxis, :]
    cells = design_cells(design)
    sizes = np.bincount(cells)
    big = np.flatnonzero(sizes >= 3)
    if big.size:
        cell_vars = []
        for c in big:
            n = sizes[c]
            trim, scale = (1 / 3, 2.04) if n <= 3.5 else ((1 / 4, 1.86) if n <= 23 else (1 / 8, 1.51))
            cell_vars.append(trimmed_variance(norm[:, cells == c], trim=trim, scale=scale))
        var = np.max(np.column_stack(cell_vars), axis=1)
    else:
        var = trimmed_variance(norm)
    mean = norm.mean(axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        alpha = (var - mean) / mean ** 2
    return np.where(np.isfinite(alpha), np.maximum(alpha, min_value), min_value)


# =============================================================================
# Result container and pipeline stage
# =============================================================================

@dataclass(frozen=True)
class DispersionEstimates:
    """Per-gene dispersion estimates of one analysis run.

    Attributes:
        base_mean: Mean of normalized counts.
        base_var: Variance of normalized counts.
        genewise: Gene-wise (Cox-Reid MLE) estimates.
        trend: Trend value at each gene's base mean.
        map: Posterior (shrunk) estimates.
        final: Dispersion used by the GLM: ``map``, or ``genewise`` for
            dispersion outliers.
        dispersion_outlier: Gene-wise estimate far above the trend.
        unfittable: Too few non-zero samples; all estimates are NaN.
        prior_var: Prior variance of the log dispersion.
        var_log_disp_ests: Robust variance of log(genewise / trend).
        trend_fit: The fitted trend strategy.
    """
    base_mean: np.ndarray
    base_var: np.ndarray
    genewise: np.ndarray
    trend: np.ndarray
    map: np.ndarray
    final: np.ndarray
    dispersion_outlier: np.ndarray
    unfittable: np.ndarray
    prior_var: float
    var_log_disp_ests: float
    trend_fit: DispersionTrend

    @property
    def n_outliers(self) -> int:
        return int(self.dispersion_outlier.sum())

    @property
    def n_unfittable(self) -> int:
        return int(self.unfittable.sum())


def dispersion_prior_variance(
    genewise: np.ndarray,
    trend: np.ndarray,
    n_samples: int,
    n_coef: int,
    min_disp: float,
    floor: float = 0.25,
) -> tuple:
    """
    Prior variance of log dispersions around the trend.

    Returns:
        Tuple ``(prior_var, var_log_disp_ests)``. The observed robust variance
        of log residuals minus the sampling variance expected with
        ``n_samples - n_coef`` residual degrees of freedom, floored at ``floor``.
    """
    above = np.isfinite(genewise) & (genewise >= 100 * min_disp)
    if above.sum() < 2:
        return floor, 0.0
    resid = np.log(genewise[above]) - np.log(trend[above])
    var_log = float(median_abs_deviation(resid, scale="normal") ** 2)
    expected = float(polygamma(1, (n_samples - n_coef) / 2.0))
    return max(var_log - expected, floor), var_log


def estimate_dispersions(
    counts: np.ndarray,
    size_factors: np.ndarray,
    design: np.ndarray,
    config: Optional[DESeqConfig] = None,
    **kwargs: Any,
) -> DispersionEstimates:
    """
    Estimate final per-gene dispersions from raw counts.

    Args:
        counts: Raw counts, genes x samples.
        size_factors: One positive factor per sample.
        design: Full-rank design matrix (n_samples, n_coef) as ndarray or
            DataFrame.
        config: Pipeline configuration; keyword arguments override fields.

    Returns:
        DispersionEstimates with NaN entries for unfittable genes.
    """
    config = config or DESeqConfig()
    if kwargs:
        config = config.update(**kwargs)
    counts = np.asarray(counts, dtype=float)
    size_factors = np.asarray(size_factors, dtype=float)
    X = np.asarray(design, dtype=float)
    n_genes, n_samples = counts.shape
    n_coef = X.shape[1]
    min_disp = config.min_disp
    max_disp = max(10.0, float(n_samples))

    norm = counts / size_factors[np.newaxis, :]
    base_mean = norm.mean(axis=1)
    base_var = norm.var(axis=1, ddof=1)
    unfittable = (counts > 0).sum(axis=1) < config.min_nonzero_samples
    fit_idx = np.flatnonzero(~unfittable)
    if unfittable.any():
        logger.info("%d of %d genes are unfittable (fewer than %d non-zero samples)",
                    int(unfittable.sum()), n_genes, config.min_nonzero_samples)

    # stage 1: gene-wise estimates
    rough = rough_dispersion(norm[fit_idx], X)
    moments = moments_dispersion(norm[fit_idx], size_factors)
    alpha_init = np.clip(np.fmin(rough, np.nan_to_num(moments, nan=rough)), min_disp, max_disp)
    mu = np.maximum(linear_model_mu(norm[fit_idx], X) * size_factors[np.newaxis, :], config.min_mu)

    shared = dict(design=X, min_disp=min_disp, max_disp=max_disp, tol=config.disp_tol)
    gw_fit = map_genes(
        fit_genewise_dispersion,
        list(zip(counts[fit_idx], mu, alpha_init)),
        shared, n_jobs=config.n_jobs, chunk_size=config.chunk_size,
    )
    genewise = np.full(n_genes, np.nan)
    genewise[fit_idx] = gw_fit

    # stage 2: trend across all gene-wise estimates
    trend_fit = fit_dispersion_trend(
        base_mean, genewise, fit_type=config.fit_type, min_disp=min_disp,
        max_iter=config.trend_max_iter,
    )
    trend = np.full(n_genes, np.nan)
    trend[fit_idx] = np.clip(trend_fit(base_mean[fit_idx]), min_disp, max_disp)
    prior_var, var_log_disp = dispersion_prior_variance(
        genewise, trend, n_samples, n_coef, min_disp, floor=config.prior_var_floor,
    )
    logger.info("Dispersion trend %r, prior variance %.4g", trend_fit, prior_var)

    # stage 3: shrinkage toward the trend
    map_fit = map_genes(
        fit_map_dispersion,
        list(zip(counts[fit_idx], mu, np.log(trend[fit_idx]), genewise[fit_idx])),
        dict(shared, prior_var=prior_var), n_jobs=config.n_jobs, chunk_size=config.chunk_size,
    )
    map_est = np.full(n_genes, np.nan)
    map_est[fit_idx] = map_fit

    outlier = np.zeros(n_genes, dtype=bool)
    outlier[fit_idx] = (
        np.log(genewise[fit_idx])
        > np.log(trend[fit_idx]) + config.outlier_sd * np.sqrt(var_log_disp)
    )
    final = np.where(outlier, genewise, map_est)
    final[fit_idx] = np.clip(final[fit_idx], min_disp, max_disp)
    logger.info("%d genes flagged as dispersion outliers keep gene-wise estimates", int(outlier.sum()))

    return DispersionEstimates(
        base_mean=freeze(base_mean),
        base_var=freeze(base_var),
        genewise=freeze(genewise),
        trend=freeze(trend),
        map=freeze(map_est),
        final=freeze(final),
        dispersion_outlier=freeze(outlier),
        unfittable=freeze(unfittable),
        prior_var=float(prior_var),
        var_log_disp_ests=float(var_log_disp),
        trend_fit=trend_fit,
    )
