"""
Empirical Bayes shrinkage of log2 fold changes.

Shrinkage only adjusts effect sizes and their standard errors; test
statistics and p-values are left untouched. Two prior families:

- ``"mixture"`` (default): scale mixture of zero-mean normals on a fixed
  geometric grid of scales. Mixture weights maximise the marginal
  likelihood of all fittable genes and are found by EM.
- ``"normal"``: a single zero-mean normal whose variance is matched to the
  upper quantile of the absolute MLEs.

Genes with ``se == 0`` keep their MLE. Genes whose SE is missing, infinite
or far beyond the scale of the data (see ``informative_se_cap``) carry no
information about their effect; they are shrunk to 0 and left out of the
prior fit.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import numpy as np
from scipy.special import logsumexp
from scipy.stats import norm

from .config import ShrinkMethod
from .utils import freeze

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShrinkageResult:
    """Shrunken log2 fold changes.

    Attributes:
        log2_fc_shrunk: Posterior mean per gene (NaN where the MLE is NaN).
        lfc_se_shrunk: Posterior standard deviation per gene.
        method: Prior family used.
        prior: Fitted prior parameters (``weights`` and ``sigma_grid`` for
            the mixture, ``prior_var`` for the normal prior).
        converged: Whether EM converged (always True for ``"normal"``).
        n_iter: EM iterations used.
    """
    log2_fc_shrunk: np.ndarray
    lfc_se_shrunk: np.ndarray
    method: str
    prior: Dict[str, Any] = field(default_factory=dict)
    converged: bool = True
    n_iter: int = 0


def default_sigma_grid(
    log2_fc: np.ndarray,
    lfc_se: np.ndarray,
    n_grid: int = 25,
    sigma_min: float = 1e-6,
    sigma_max_mult: float = 3.0,
) -> np.ndarray:
    """Geometric grid of ``n_grid + 1`` prior scales.

    The grid runs from ``sigma_min`` (close to a point mass at zero) up to
    ``sigma_max_mult`` times the larger of the biggest absolute effect and
    the biggest standard error.
    """
    top = max(float(np.max(np.abs(log2_fc))), float(np.max(lfc_se)), sigma_min * 10)
    return np.geomspace(sigma_min, sigma_max_mult * top, n_grid + 1)


def informative_se_cap(beta: np.ndarray, se: np.ndarray, max_se_ratio: float = 1e3) -> float:
    """Largest SE still treated as informative.

    The cap is ``max_se_ratio`` times the larger of the biggest absolute MLE
    and the median SE. Above it the posterior is the prior up to rounding.
    """
    if beta.size == 0:
        return np.inf
    ref = max(float(np.max(np.abs(beta))), float(np.median(se)))
    return max_se_ratio * ref if ref > 0 else np.inf


def _log_marginal(beta: np.ndarray, se: np.ndarray, sigma_grid: np.ndarray) -> np.ndarray:
    scale = np.hypot(sigma_grid[np.newaxis, :], se[:, np.newaxis])
    return norm.logpdf(beta[:, np.newaxis], loc=0.0, scale=scale)


def fit_scale_mixture_prior(
    beta: np.ndarray,
    se: np.ndarray,
    sigma_grid: Optional[np.ndarray] = None,
    max_iter: int = 200,
    tol: float = 1e-8,
) -> Dict[str, Any]:
    """
    Estimate mixture weights of ``beta_g ~ sum_k w_k N(0, sigma_k^2)`` by EM,
    with observations ``beta_hat_g | beta_g ~ N(beta_g, se_g^2)``.

    Returns:
        dict with ``weights``, ``sigma_grid``, ``n_iter``,
        ``log_likelihood`` and ``converged``.
    """
    if sigma_grid is None:
        sigma_grid = default_sigma_grid(beta, se)
    sigma_grid = np.asarray(sigma_grid, dtype=float)
    log_dens = _log_marginal(beta, se, sigma_grid)

    weights = np.full(sigma_grid.shape[0], 1.0 / sigma_grid.shape[0])
    prev_ll = -np.inf
    ll = prev_ll
    converged = False
    n_iter = 0
    for n_iter in range(1, max_iter + 1):
        log_num = np.log(weights)[np.newaxis, :] + log_dens
        log_den = logsumexp(log_num, axis=1, keepdims=True)
        ll = float(np.sum(log_den))
        if abs(ll - prev_ll) < tol:
            converged = True
            break
        prev_ll = ll
        weights = np.mean(np.exp(log_num - log_den), axis=0)
        weights = np.maximum(weights, 1e-15)
        weights /= weights.sum()

    return {
        "weights": weights,
        "sigma_grid": sigma_grid,
        "n_iter": n_iter,
        "log_likelihood": ll,
        "converged": converged,
    }


def mixture_posterior(
    beta: np.ndarray,
    se: np.ndarray,
    weights: np.ndarray,
    sigma_grid: np.ndarray,
):
    """Posterior mean and SD under a fitted scale-mixture prior."""
    sigma = sigma_grid[np.newaxis, :]
    s = se[:, np.newaxis]
    total = np.hypot(sigma, s)
    comp_mean = beta[:, np.newaxis] * (sigma / total) ** 2
    comp_var = (sigma * (s / total)) ** 2

    log_num = np.log(weights)[np.newaxis, :] + _log_marginal(beta, se, sigma_grid)
    gamma = np.exp(log_num - logsumexp(log_num, axis=1, keepdims=True))

    mean = np.sum(gamma * comp_mean, axis=1)
    var = np.sum(gamma * comp_var, axis=1) + np.sum(gamma * comp_mean ** 2, axis=1) - mean ** 2
    return mean, np.sqrt(np.maximum(var, 0.0))


def normal_prior_variance(beta: np.ndarray, upper_quantile: float = 0.05, floor: float = 1e-6) -> float:
    """Variance of a zero-mean normal whose ``1 - upper_quantile`` quantile of
    ``|x|`` matches that of the absolute MLEs."""
    q = np.quantile(np.abs(beta), 1.0 - upper_quantile)
    sd = q / norm.ppf(1.0 - upper_quantile / 2.0)
    return max(float(sd ** 2), floor)


def lfc_shrink(
    log2_fc: np.ndarray,
    lfc_se: np.ndarray,
    method: ShrinkMethod = "mixture",
    sigma_grid: Optional[np.ndarray] = None,
    max_iter: int = 200,
    tol: float = 1e-8,
    upper_quantile: float = 0.05,
    max_se_ratio: float = 1e3,
) -> ShrinkageResult:
    """
    Shrink log2 fold changes towards zero with an empirical Bayes prior.

    Args:
        log2_fc: MLE log2 fold changes (NaN for untested genes).
        lfc_se: Standard errors of the MLEs.
        method: ``"mixture"`` or ``"normal"``.
        sigma_grid: Prior scales for the mixture; defaults to
            ``default_sigma_grid``.
        max_iter: EM iteration limit.
        tol: EM tolerance on the marginal log-likelihood.
        upper_quantile: Upper quantile used to match the normal prior.
        max_se_ratio: Multiplier for ``informative_se_cap``; genes with a
            larger SE are treated like genes with an infinite SE.

    Returns:
        ShrinkageResult.

    Example:
        >>> shr = lfc_shrink(res.log2_fc, res.lfc_se, method="normal")
        >>> shr.log2_fc_shrunk
    """
    if method not in ("mixture", "normal"):
        raise ValueError(f"Unknown shrinkage method: {method!r}")
    beta = np.asarray(log2_fc, dtype=float)
    se = np.asarray(lfc_se, dtype=float)
    if beta.shape != se.shape:
        raise ValueError("log2_fc and lfc_se must have the same shape")

    has_beta = np.isfinite(beta)
    usable = has_beta & np.isfinite(se) & (se >= 0)
    cap = informative_se_cap(beta[usable], se[usable], max_se_ratio)
    capped = usable & (se > cap)
    if capped.any():
        logger.info("%d genes with SE above %.3g carry no effect-size information", int(capped.sum()), cap)
    usable &= ~capped
    no_info = has_beta & ~usable

    shrunk = np.full(beta.shape, np.nan)
    shrunk_se = np.full(beta.shape, np.nan)
    prior: Dict[str, Any] = {}
    converged, n_iter = True, 0

    if usable.any():
        b, s = beta[usable], se[usable]
        exact = s == 0
        if method == "normal":
            prior_var = normal_prior_variance(b, upper_quantile)
            prior["prior_var"] = prior_var
            prior_sd = np.sqrt(prior_var)
            total = np.hypot(prior_sd, s)
            mean = b * (prior_sd / total) ** 2
            sd = prior_sd * (s / total)
        else:
            fitted = fit_scale_mixture_prior(b, s, sigma_grid, max_iter=max_iter, tol=tol)
            prior.update(weights=fitted["weights"], sigma_grid=fitted["sigma_grid"])
            converged, n_iter = fitted["converged"], fitted["n_iter"]
            if not converged:
                logger.warning("Mixture prior EM did not converge in %d iterations", max_iter)
            mean, sd = mixture_posterior(b, s, fitted["weights"], fitted["sigma_grid"])
            prior_sd = float(np.sqrt(np.sum(fitted["weights"] * fitted["sigma_grid"] ** 2)))
        mean = np.where(exact, b, mean)
        sd = np.where(exact, 0.0, sd)
        shrunk[usable] = mean
        shrunk_se[usable] = sd
    else:
        prior_sd = np.nan

    shrunk[no_info] = 0.0
    shrunk_se[no_info] = prior_sd
    logger.info("Shrunk %d log2 fold changes with a %s prior", int(usable.sum()), method)
    return ShrinkageResult(
        log2_fc_shrunk=freeze(shrunk),
        lfc_se_shrunk=freeze(shrunk_se),
        method=method,
        prior=prior,
        converged=converged,
        n_iter=n_iter,
    )
