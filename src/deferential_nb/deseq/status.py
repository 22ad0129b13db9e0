"""Per-gene outcome codes carried from the fits into the result table."""

from enum import Enum


class GeneStatus(str, Enum):
    """Distinguished per-gene states.

    ``UNFITTABLE`` and ``FIT_FAILED`` come from dispersion estimation and the
    GLM fit, ``COOKS_OUTLIER`` from the influential-sample policy of the test,
    ``FILTERED`` from independent filtering. Genes in any of these states
    have NA adjusted p-values; only ``OK`` genes enter the FDR correction.
    """
    OK = "ok"
    UNFITTABLE = "unfittable"
    FIT_FAILED = "fit_failed"
    COOKS_OUTLIER = "cooks_outlier"
    FILTERED = "filtered"

    def __str__(self) -> str:
        return self.value
