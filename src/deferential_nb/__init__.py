"""deferential_nb: negative-binomial differential expression on BiocPy containers.

This package provides a DESeq-style analysis of RNA-seq count data with
lazy loading of method subpackages.

Usage:
    >>> from deferential_nb import CountExperiment
    >>> se = CountExperiment.from_pandas(counts_df, column_data=coldata)
    >>>
    >>> import deferential_nb.deseq  # registers the se.deseq accessor
    >>> model = se.deseq.fit("~ condition")
"""

from __future__ import annotations

import importlib

from .countexperiment import CountExperiment
from .count_init import initialize_counts, get_counts, validate_count_matrix
from .errors import CountDataError, DeferentialError, DesignError, InsufficientDataError

__all__ = [
    "CountExperiment",
    "initialize_counts",
    "get_counts",
    "validate_count_matrix",
    "DeferentialError",
    "CountDataError",
    "DesignError",
    "InsufficientDataError",
    # Lazy-loaded submodules
    "deseq",
]

# Submodules to be lazily loaded
_LAZY_SUBMODULES = {"deseq"}


def __getattr__(name: str):
    """Lazy loading of submodules per PEP 562."""
    if name in _LAZY_SUBMODULES:
        module = importlib.import_module(f".{name}", __name__)
        globals()[name] = module
        return module
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__():
    """Include lazy submodules in dir() output."""
    return list(__all__)
