"""
Design specification: per-sample covariates plus a model formula.

Formulas are Wilkinson-style strings evaluated with formulaic, e.g.
``"~ batch + condition"``. String columns are treated as categorical with
sorted levels; use a pandas Categorical to choose the reference level. A
precomputed numeric design DataFrame is accepted everywhere a DesignSpec is.
"""

from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Tuple, Union
import numpy as np
import pandas as pd
from formulaic import model_matrix

from ..errors import DesignError
from .checks import check_design, check_full_rank


@dataclass(frozen=True)
class DesignSpec:
    """Per-sample covariates and the formula defining the design matrix.

    Attributes:
        formula: Model formula, e.g. ``"~ condition"``.
        covariates: DataFrame with one row per sample (index = sample names).
    """
    formula: str
    covariates: pd.DataFrame

    def __post_init__(self) -> None:
        if not isinstance(self.covariates, pd.DataFrame):
            raise TypeError(
                f"Expected `covariates` to be a pandas DataFrame, "
                f"got {type(self.covariates).__name__}"
            )
        used = [c for c in self.covariates.columns if _mentions(self.formula, str(c))]
        incomplete = [c for c in used if self.covariates[c].isna().any()]
        if incomplete:
            raise DesignError(f"Covariates with missing values: {incomplete}")

    @property
    def sample_names(self) -> list:
        return [str(i) for i in self.covariates.index]

    def model_matrix(self) -> pd.DataFrame:
        """Evaluate the formula into a full-rank numeric design DataFrame.

        Raises:
            DesignError: If the formula cannot be evaluated.
            InsufficientDataError: If the design is rank deficient or leaves no
                residual degrees of freedom.
        """
        formula = self.formula if self.formula.strip().startswith("~") else f"~ {self.formula}"
        try:
            mm = model_matrix(formula, self.covariates)
        except Exception as err:
            raise DesignError(f"Cannot evaluate design formula {self.formula!r}: {err}") from err
        design = pd.DataFrame(
            np.asarray(mm, dtype=float),
            index=self.sample_names,
            columns=[str(c) for c in mm.columns],
        )
        check_design(design, len(self.covariates))
        check_full_rank(design)
        return design

    @classmethod
    def from_se(cls, se: Any, formula: str) -> "DesignSpec":
        """Build a DesignSpec from the ``column_data`` of a SummarizedExperiment."""
        from ..count_init import sample_names

        coldata = se.get_column_data()
        covariates = coldata.to_pandas() if coldata is not None else pd.DataFrame()
        covariates.index = sample_names(se)
        return cls(formula=formula, covariates=covariates)


DesignLike = Union[str, DesignSpec, pd.DataFrame]


def _mentions(formula: str, name: str) -> bool:
    return re.search(rf"(?<![\w.]){re.escape(name)}(?![\w.])", formula) is not None


def resolve_design(design: DesignLike, se: Any = None, n_samples: Optional[int] = None) -> pd.DataFrame:
    """
    Turn a formula, DesignSpec or design DataFrame into a validated design matrix.

    Args:
        design: Formula string (requires ``se`` for covariates), DesignSpec, or
            a numeric design DataFrame (samples x coefficients).
        se: SummarizedExperiment providing ``column_data`` for formula strings.
        n_samples: Expected number of samples.

    Returns:
        pd.DataFrame: Full-rank design matrix.
    """
    if isinstance(design, str):
        if se is None:
            raise DesignError("A formula design needs sample covariates; pass a DesignSpec")
        design = DesignSpec.from_se(se, design)
    if isinstance(design, DesignSpec):
        mat = design.model_matrix()
    else:
        check_design(design, n_samples)
        mat = design.astype(float)
        check_full_rank(mat)
    if n_samples is not None and len(mat) != n_samples:
        raise DesignError(f"Design matrix has {len(mat)} rows but expected {n_samples} samples")
    return mat


def contrast_vector(
    design: pd.DataFrame,
    coef: Optional[Union[str, int]] = None,
    contrast: Optional[Union[Sequence[float], Tuple[str, str, str]]] = None,
) -> Tuple[np.ndarray, str]:
    """
    Build the numeric contrast vector for a coefficient or contrast.

    Args:
        design: Design matrix whose columns name the coefficients.
        coef: Coefficient name or 0-based column index. Defaults to the last
            column when neither coef nor contrast is given.
        contrast: Numeric vector (one weight per column), or a tuple
            ``(variable, numerator_level, denominator_level)`` for a
            treatment-coded factor.

    Returns:
        Tuple of (contrast vector, human-readable label).
    """
    columns = list(design.columns)
    p = len(columns)
    if coef is not None and contrast is not None:
        raise DesignError("Specify either `coef` or `contrast`, not both")

    if contrast is None:
        if coef is None:
            coef = p - 1
        if isinstance(coef, (int, np.integer)):
            if not -p <= coef < p:
                raise DesignError(f"Coefficient index {coef} out of range for {p} columns")
            idx = int(coef) % p
        else:
            if coef not in columns:
                raise DesignError(f"Coefficient {coef!r} not in design columns {columns}")
            idx = columns.index(coef)
        vec = np.zeros(p)
        vec[idx] = 1.0
        return vec, columns[idx]

    if (
        isinstance(contrast, tuple)
        and len(contrast) == 3
        and all(isinstance(c, str) for c in contrast)
    ):
        variable, numerator, denominator = contrast
        if numerator == denominator:
            raise DesignError("Contrast numerator and denominator levels are identical")
        vec = np.zeros(p)
        found = False
        for level, sign in ((numerator, 1.0), (denominator, -1.0)):
            col = _level_column(columns, variable, level)
            if col is not None:
                vec[columns.index(col)] = sign
                found = True
        if not found:
            raise DesignError(
                f"Neither level {numerator!r} nor {denominator!r} of {variable!r} "
                f"has a column in {columns}"
            )
        return vec, f"{variable}: {numerator} vs {denominator}"

    vec = np.asarray(contrast, dtype=float)
    if vec.ndim != 1 or vec.shape[0] != p:
        raise DesignError(f"Contrast must have {p} entries, got shape {vec.shape}")
    if not np.any(vec):
        raise DesignError("Contrast vector is all zeros")
    label = " + ".join(f"{w:g}*{c}" for w, c in zip(vec, columns) if w != 0)
    return vec, label


def _level_column(columns: Sequence[str], variable: str, level: str) -> Optional[str]:
    for candidate in (f"{variable}[T.{level}]", f"{variable}[{level}]", f"{variable}{level}"):
        if candidate in columns:
            return candidate
    return None
