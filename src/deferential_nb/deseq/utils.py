"""Numerical and execution helpers shared by the DESeq stages."""

from __future__ import annotations
from typing import Any, Callable, Dict, List, Optional, Sequence
import numpy as np
from joblib import Parallel, delayed
from scipy.special import gammaln
from scipy.stats import trim_mean


def freeze(arr: Any) -> np.ndarray:
    """Return ``arr`` as a read-only ndarray view."""
    out = np.array(arr, copy=True) if not isinstance(arr, np.ndarray) else arr.view()
    out.setflags(write=False)
    return out


def nb_log_likelihood(y: np.ndarray, mu: np.ndarray, alpha: Any) -> np.ndarray:
    """Elementwise negative-binomial log-likelihood with variance mu + alpha * mu^2."""
    size = 1.0 / alpha
    return (
        gammaln(y + size)
        - gammaln(size)
        - gammaln(y + 1.0)
        + size * np.log(size / (size + mu))
        + y * np.log(mu / (size + mu))
    )


def nb_deviance(y: np.ndarray, mu: np.ndarray, alpha: float) -> float:
    """Model deviance, -2 times the log-likelihood (DESeq2 convention)."""
    return float(-2.0 * np.sum(nb_log_likelihood(y, mu, alpha)))


def _run_chunk(func: Callable, chunk: Sequence[tuple], shared: Dict[str, Any]) -> List[Any]:
    return [func(*args, **shared) for args in chunk]


def map_genes(
    func: Callable,
    per_gene_args: Sequence[tuple],
    shared: Optional[Dict[str, Any]] = None,
    n_jobs: int = 1,
    chunk_size: int = 256,
) -> List[Any]:
    """
    Apply a pure per-gene function across genes, optionally with joblib workers.

    Args:
        func: Called as ``func(*per_gene_args[i], **shared)``. Must not mutate
            its inputs.
        per_gene_args: One tuple of positional arguments per gene.
        shared: Keyword arguments identical for all genes (size factors,
            design matrix, constants).
        n_jobs: Number of joblib workers. 1 runs serially in-process.
        chunk_size: Genes per joblib task.

    Returns:
        List of per-gene results in input order.
    """
    shared = shared or {}
    per_gene_args = list(per_gene_args)
    if n_jobs == 1 or len(per_gene_args) <= chunk_size:
        return _run_chunk(func, per_gene_args, shared)

    chunks = [per_gene_args[i:i + chunk_size] for i in range(0, len(per_gene_args), chunk_size)]
    out = Parallel(n_jobs=n_jobs)(delayed(_run_chunk)(func, chunk, shared) for chunk in chunks)
    return [res for chunk_res in out for res in chunk_res]


def design_cells(design: np.ndarray) -> np.ndarray:
    """Integer label per sample identifying samples with identical design rows."""
    _, labels = np.unique(np.round(design, 12), axis=0, return_inverse=True)
    return np.asarray(labels).reshape(-1)


def trimmed_variance(x: np.ndarray, trim: float = 0.125, scale: float = 1.51) -> np.ndarray:
    """Row-wise variance around the trimmed mean.

    ``scale`` makes the trimmed mean of squared deviations consistent for
    normal data at the given trim fraction (1.51 for 1/8, 1.86 for 1/4,
    2.04 for 1/3).
    """
    center = trim_mean(x, trim, axis=1)
    sq = (x - center[:, np.newaxis]) ** 2
    return scale * trim_mean(sq, trim, axis=1)
