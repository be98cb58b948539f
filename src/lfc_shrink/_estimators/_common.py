"""Helpers shared by the shrinkage estimators."""

from __future__ import annotations

import numpy as np


def svalue(lfsr: np.ndarray) -> np.ndarray:
    """s-values from local false sign rates.

    The s-value of a feature is the mean lfsr of all features whose
    lfsr is at most its own (ties broken by position).  Missing lfsr
    values stay missing and do not enter any mean.
    """
    lfsr = np.asarray(lfsr, dtype=float)
    out = np.full(lfsr.shape, np.nan)
    ok = np.flatnonzero(~np.isnan(lfsr))
    if ok.size == 0:
        return out
    order = ok[np.argsort(lfsr[ok], kind="stable")]
    sorted_lfsr = lfsr[order]
    out[order] = np.cumsum(sorted_lfsr) / np.arange(1, sorted_lfsr.size + 1)
    return out
