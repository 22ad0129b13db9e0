"""
Per-gene negative-binomial GLM fits with a log link.

``fit_gene_glm`` is a pure function of one gene's counts, the shared size
factors and design, and the gene's dispersion. ``fit_nbinom_glm`` maps it
across genes and stacks the per-gene records into an NBGLMFit.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple, Union
import numpy as np
import pandas as pd
from scipy.optimize import minimize
from scipy.stats import f as f_dist

from .config import DESeqConfig
from .status import GeneStatus
from .utils import design_cells, freeze, map_genes, nb_deviance, nb_log_likelihood

logger = logging.getLogger(__name__)

LOG2 = np.log(2.0)


@dataclass(frozen=True)
class GeneFit:
    """GLM fit of a single gene.

    Attributes:
        coef: Coefficients on the natural-log scale (n_coef,).
        cov: Coefficient covariance (n_coef, n_coef).
        mu: Fitted means including size factors (n_samples,).
        deviance: -2 * log-likelihood at the fit.
        hat: Diagonal of the weighted hat matrix (n_samples,).
        cooks: Cook's distance per sample.
        influential: Samples whose Cook's distance exceeds the cutoff and
            that sit in design cells with enough replicates.
        converged: Whether IRLS (or the optimizer fallback) converged.
        n_iter: IRLS iterations used.
        status: ``OK``, ``UNFITTABLE`` or ``FIT_FAILED``.
    """
    coef: np.ndarray
    cov: np.ndarray
    mu: np.ndarray
    deviance: float
    hat: np.ndarray
    cooks: np.ndarray
    influential: np.ndarray
    converged: bool
    n_iter: int
    status: GeneStatus

    @classmethod
    def empty(cls, n_coef: int, n_samples: int, status: GeneStatus, n_iter: int = 0) -> "GeneFit":
        """A record with NaN estimates for genes that could not be fitted."""
        return cls(
            coef=np.full(n_coef, np.nan),
            cov=np.full((n_coef, n_coef), np.nan),
            mu=np.full(n_samples, np.nan),
            deviance=np.nan,
            hat=np.full(n_samples, np.nan),
            cooks=np.full(n_samples, np.nan),
            influential=np.zeros(n_samples, dtype=bool),
            converged=False,
            n_iter=n_iter,
            status=status,
        )


def _initial_beta(y: np.ndarray, size_factors: np.ndarray, X: np.ndarray) -> np.ndarray:
    beta, *_ = np.linalg.lstsq(X, np.log(y / size_factors + 0.1), rcond=None)
    return beta


def _finish_fit(y, mu, beta, alpha, X, ridge, cooks_alpha, cooks_cutoff, eligible, converged, n_iter):
    w = mu / (1.0 + alpha * mu)
    xtwx = X.T @ (X * w[:, np.newaxis])
    A_inv = np.linalg.inv(xtwx + ridge)
    cov = A_inv @ xtwx @ A_inv
    hat = np.sum((X @ A_inv) * X, axis=1) * w
    p = X.shape[1]
    pearson_sq = (y - mu) ** 2 / (mu + cooks_alpha * mu ** 2)
    with np.errstate(divide="ignore", invalid="ignore"):
        cooks = pearson_sq / p * hat / (1.0 - hat) ** 2
    cooks = np.where(np.isfinite(cooks), cooks, 0.0)
    influential = (cooks > cooks_cutoff) & eligible
    return GeneFit(
        coef=beta,
        cov=cov,
        mu=mu,
        deviance=nb_deviance(y, mu, alpha),
        hat=hat,
        cooks=cooks,
        influential=influential,
        converged=converged,
        n_iter=n_iter,
        status=GeneStatus.OK,
    )


def _optim_beta(y, size_factors, X, alpha, ridge, beta0, min_mu) -> Optional[np.ndarray]:
    """Penalized likelihood maximization with L-BFGS-B."""
    log_sf = np.log(size_factors)

    def objective(beta):
        mu = np.maximum(np.exp(log_sf + X @ beta), min_mu)
        nll = -np.sum(nb_log_likelihood(y, mu, alpha)) + 0.5 * beta @ ridge @ beta
        grad_eta = -(y - mu) / (1.0 + alpha * mu)
        return nll, X.T @ grad_eta + ridge @ beta

    res = minimize(objective, beta0, jac=True, method="L-BFGS-B",
                   bounds=[(-30 * LOG2, 30 * LOG2)] * X.shape[1])
    if not res.success or not np.all(np.isfinite(res.x)):
        return None
    return res.x


def fit_gene_glm(
    y: np.ndarray,
    alpha: float,
    cooks_alpha: float,
    size_factors: np.ndarray,
    design: np.ndarray,
    ridge_lambda: float = 1e-6,
    max_iter: int = 100,
    tol: float = 1e-8,
    min_mu: float = 0.5,
    optim_fallback: bool = True,
    cooks_cutoff: float = np.inf,
    eligible: Optional[np.ndarray] = None,
) -> GeneFit:
    """
    Fit log(mu) = log(size_factor) + X beta for one gene by ridge-penalized IRLS.

    Args:
        y: Counts of the gene (n_samples,).
        alpha: Dispersion of the gene; NaN marks the gene unfittable.
        cooks_alpha: Dispersion used in Pearson residuals for Cook's distance.
        size_factors: Per-sample size factors.
        design: Design matrix (n_samples, n_coef).
        ridge_lambda: Ridge penalty on log2-scale coefficients.
        max_iter: IRLS iteration limit; exceeding it without convergence
            triggers the optimizer fallback or a ``FIT_FAILED`` record.
        tol: Convergence threshold on the relative change of deviance.
        min_mu: Floor for fitted means.
        optim_fallback: Retry non-converged fits with L-BFGS-B.
        cooks_cutoff: Cook's distance above which a sample is influential.
        eligible: Samples allowed to be flagged influential.

    Returns:
        GeneFit.
    """
    X = np.asarray(design, dtype=float)
    y = np.asarray(y, dtype=float)
    n_samples, n_coef = X.shape
    if not np.isfinite(alpha):
        return GeneFit.empty(n_coef, n_samples, GeneStatus.UNFITTABLE)
    if eligible is None:
        eligible = np.ones(n_samples, dtype=bool)
    ridge = np.diag(np.full(n_coef, ridge_lambda / LOG2 ** 2))

    beta0 = _initial_beta(y, size_factors, X)
    beta = beta0
    mu = np.maximum(size_factors * np.exp(X @ beta), min_mu)
    dev_old = 0.0
    converged = False
    n_iter = 0
    for t in range(max_iter):
        n_iter = t + 1
        w = mu / (1.0 + alpha * mu)
        z = np.log(mu / size_factors) + (y - mu) / mu
        try:
            beta = np.linalg.solve(X.T @ (X * w[:, np.newaxis]) + ridge, X.T @ (w * z))
        except np.linalg.LinAlgError:
            break
        mu = np.maximum(size_factors * np.exp(X @ beta), min_mu)
        dev = nb_deviance(y, mu, alpha)
        if not np.isfinite(dev) or not np.all(np.isfinite(beta)):
            break
        if t > 0 and abs(dev - dev_old) / (abs(dev) + 0.1) < tol:
            converged = True
            break
        dev_old = dev

    if not converged and optim_fallback:
        opt = _optim_beta(y, size_factors, X, alpha, ridge, beta0, min_mu)
        if opt is not None:
            beta = opt
            mu = np.maximum(size_factors * np.exp(X @ beta), min_mu)
            converged = True

    if not converged:
        return GeneFit.empty(n_coef, n_samples, GeneStatus.FIT_FAILED, n_iter=n_iter)
    return _finish_fit(y, mu, beta, alpha, X, ridge, cooks_alpha, cooks_cutoff, eligible,
                       converged, n_iter)


@dataclass(frozen=True)
class NBGLMFit:
    """Stacked per-gene GLM fits.

    Attributes:
        gene_fits: One GeneFit per gene, in input order.
        design: Design matrix used for the fits.
        dispersions: Dispersion used per gene.
        size_factors: Size factors used for the offsets.
        cooks_cutoff: Cutoff applied to Cook's distances.
    """
    gene_fits: Tuple[GeneFit, ...]
    design: pd.DataFrame
    dispersions: np.ndarray
    size_factors: np.ndarray
    cooks_cutoff: float

    def _stack(self, attr: str) -> np.ndarray:
        return freeze(np.stack([getattr(g, attr) for g in self.gene_fits]))

    @property
    def coef_names(self) -> List[str]:
        return list(self.design.columns)

    @property
    def coef(self) -> np.ndarray:
        """Natural-log scale coefficients, genes x coefficients."""
        return self._stack("coef")

    @property
    def cov(self) -> np.ndarray:
        return self._stack("cov")

    @property
    def se(self) -> np.ndarray:
        """Natural-log scale standard errors, genes x coefficients."""
        cov = self.cov
        return freeze(np.sqrt(np.clip(np.diagonal(cov, axis1=1, axis2=2), 0.0, None)))

    @property
    def mu(self) -> np.ndarray:
        return self._stack("mu")

    @property
    def deviance(self) -> np.ndarray:
        return freeze(np.array([g.deviance for g in self.gene_fits], dtype=float))

    @property
    def cooks(self) -> np.ndarray:
        return self._stack("cooks")

    @property
    def influential(self) -> np.ndarray:
        return self._stack("influential")

    @property
    def n_influential(self) -> np.ndarray:
        return freeze(self.influential.sum(axis=1))

    @property
    def max_cooks(self) -> np.ndarray:
        cooks = self.cooks
        with np.errstate(invalid="ignore"):
            out = np.full(cooks.shape[0], np.nan)
            ok = np.isfinite(cooks).any(axis=1)
            out[ok] = np.nanmax(cooks[ok], axis=1)
        return freeze(out)

    @property
    def converged(self) -> np.ndarray:
        return freeze(np.array([g.converged for g in self.gene_fits], dtype=bool))

    @property
    def status(self) -> np.ndarray:
        return freeze(np.array([g.status for g in self.gene_fits], dtype=object))

    def count_status(self, status: GeneStatus) -> int:
        return sum(g.status == status for g in self.gene_fits)


def default_cooks_cutoff(n_samples: int, n_coef: int) -> float:
    """0.99 quantile of the F(p, m - p) distribution."""
    return float(f_dist.ppf(0.99, n_coef, n_samples - n_coef))


def fit_nbinom_glm(
    counts: np.ndarray,
    size_factors: Sequence[float],
    design: Union[pd.DataFrame, np.ndarray],
    dispersions: Sequence[float],
    cooks_dispersions: Optional[Sequence[float]] = None,
    config: Optional[DESeqConfig] = None,
    **kwargs: Any,
) -> NBGLMFit:
    """
    Fit negative-binomial GLMs for all genes.

    Args:
        counts: Raw counts, genes x samples.
        size_factors: One positive factor per sample.
        design: Design matrix; a DataFrame keeps coefficient names.
        dispersions: Final dispersion per gene (NaN = unfittable).
        cooks_dispersions: Dispersions for Cook's distances; defaults to
            the robust moments estimate.
        config: Pipeline configuration; keyword arguments override fields.

    Returns:
        NBGLMFit.

    Example:
        >>> fit = fit_nbinom_glm(counts, sf, design, disp.final)
        >>> fit.coef[:, 1] / np.log(2)  # log2 fold changes
    """
    from .dispersion import robust_moments_dispersion

    config = config or DESeqConfig()
    if kwargs:
        config = config.update(**kwargs)
    if not isinstance(design, pd.DataFrame):
        design = pd.DataFrame(design, columns=[f"x{i}" for i in range(np.shape(design)[1])])
    counts = np.asarray(counts, dtype=float)
    size_factors = np.asarray(size_factors, dtype=float)
    dispersions = np.asarray(dispersions, dtype=float)
    X = design.to_numpy(dtype=float)
    n_samples, n_coef = X.shape

    if cooks_dispersions is None:
        cooks_dispersions = robust_moments_dispersion(counts, size_factors, X)
    if config.cooks_cutoff is False:
        cutoff = np.inf
    elif config.cooks_cutoff is None:
        cutoff = default_cooks_cutoff(n_samples, n_coef)
    else:
        cutoff = float(config.cooks_cutoff)
    cells = design_cells(X)
    eligible = np.bincount(cells)[cells] >= config.min_replicates_cooks

    shared = dict(
        size_factors=size_factors,
        design=X,
        ridge_lambda=config.ridge_lambda,
        max_iter=config.glm_max_iter,
        tol=config.glm_tol,
        min_mu=config.min_mu,
        optim_fallback=config.optim_fallback,
        cooks_cutoff=cutoff,
        eligible=eligible,
    )
    gene_fits = map_genes(
        fit_gene_glm,
        list(zip(counts, dispersions, np.asarray(cooks_dispersions, dtype=float))),
        shared, n_jobs=config.n_jobs, chunk_size=config.chunk_size,
    )

    fit = NBGLMFit(
        gene_fits=tuple(gene_fits),
        design=design,
        dispersions=freeze(dispersions),
        size_factors=freeze(size_factors),
        cooks_cutoff=cutoff,
    )
    n_failed = fit.count_status(GeneStatus.FIT_FAILED)
    if n_failed:
        logger.warning("%d genes failed to converge within %d iterations", n_failed, config.glm_max_iter)
    logger.info(
        "Fitted %d genes; %d with influential samples (Cook's cutoff %.3g)",
        fit.count_status(GeneStatus.OK), int((fit.n_influential > 0).sum()), cutoff,
    )
    return fit
