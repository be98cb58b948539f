"""Empirical normal prior on log2 fold changes.

The prior variance of each coefficient is matched to the spread of
its MLE estimates across features: the upper ``u`` quantile of
``|β̂|`` is set equal to the ``1 - u/2`` quantile of a zero-centred
normal,

    σ² = ( q_{1-u}(|β̂|) / Φ⁻¹(1 - u/2) )²

With ``method="weighted"`` (the default) the quantile is weighted by
``1 / (1/mean(μ) + α)``, the inverse of the approximate sampling
variance of a log count, so precisely measured features dominate the
estimate.

For an *expanded* model matrix every level of a factor has its own
coefficient.  The variance is then matched for every pairwise
difference of the factor's level effects and averaged, and the
average is used for each level column.  The intercept always gets a
wide prior (variance ``1e6``).
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from itertools import combinations

import numpy as np
import pandas as pd
from scipy.stats import norm

from ._exceptions import DegenerateModel, IncompatibleModelState
from .dataset import FittedModel
from .design import (
    expanded_level_columns,
    factor_levels,
    is_intercept,
    standard_coefficient_name,
)
from .wald import all_zero_rows, model_matrix_for

logger = logging.getLogger(__name__)

MLE_PREFIX = "MLE_"
INTERCEPT_PRIOR_VAR = 1e6
MIN_PRIOR_VAR = 1e-6

_MLE_DESCRIPTION = re.compile(r"log2 fold change \(MLE\)")


# ------------------------------------------------------------------ #
# MLE column tagging
# ------------------------------------------------------------------ #


def mle_columns(descriptions: Mapping[str, str]) -> list[str]:
    """Columns whose description marks them as MLE log2 fold changes."""
    return [c for c, d in descriptions.items() if _MLE_DESCRIPTION.search(d or "")]


def tag_mle_columns(
    row_data: pd.DataFrame, descriptions: Mapping[str, str]
) -> tuple[pd.DataFrame, dict[str, str]]:
    """Prefix the MLE coefficient columns with ``MLE_``.

    Nothing is renamed when any of those columns already carries the
    prefix, so applying the tagging twice equals applying it once.
    Returns new objects; the inputs are left untouched.

    Raises:
        IncompatibleModelState: If no column is described as an MLE
            log2 fold change.
    """
    beta_cols = [c for c in mle_columns(descriptions) if c in row_data.columns]
    if not beta_cols:
        raise IncompatibleModelState(
            "no MLE log2 fold change columns found; run nbinom_wald_test() "
            "without a prior first"
        )
    if any(c.startswith(MLE_PREFIX) for c in beta_cols):
        return row_data.copy(), dict(descriptions)
    renames = {c: f"{MLE_PREFIX}{c}" for c in beta_cols}
    return (
        row_data.rename(columns=renames),
        {renames.get(c, c): d for c, d in descriptions.items()},
    )


def _mle_betas(model: FittedModel) -> pd.DataFrame:
    """MLE coefficients keyed by coefficient name (prefix stripped)."""
    if model.row_data is None:
        raise IncompatibleModelState(
            "the model has no coefficient table; call nbinom_wald_test() first"
        )
    cols = [c for c in mle_columns(model.row_descriptions) if c in model.row_data.columns]
    if not cols:
        raise IncompatibleModelState("no MLE log2 fold change columns found")
    betas = model.row_data[cols]
    return betas.rename(
        columns={c: c[len(MLE_PREFIX):] for c in cols if c.startswith(MLE_PREFIX)}
    )


# ------------------------------------------------------------------ #
# Quantile matching
# ------------------------------------------------------------------ #


def weighted_quantile(x: np.ndarray, weights: np.ndarray, q: float) -> float:
    """Weighted quantile with weights normalised to the sample size.

    Interpolates between the order statistics at positions
    ``1 + (n - 1) q`` of the weight-expanded sample, stepping to the
    next order statistic at each cumulative-weight boundary.
    """
    order = np.argsort(x)
    xs = np.asarray(x, dtype=float)[order]
    w = np.asarray(weights, dtype=float)[order]
    w = w * len(xs) / w.sum()
    cum = np.cumsum(w)
    n = cum[-1]
    pos = 1.0 + (n - 1.0) * q
    low = max(np.floor(pos), 1.0)
    high = min(low + 1.0, n)
    frac = pos % 1.0

    def _at(t: float) -> float:
        i = int(np.searchsorted(cum, t, side="left"))
        return float(xs[min(i, len(xs) - 1)])

    return (1.0 - frac) * _at(low) + frac * _at(high)


def match_upper_quantile_variance(
    x: np.ndarray,
    weights: np.ndarray | None = None,
    upper_quantile: float = 0.05,
) -> float:
    """Normal variance whose upper quantile matches that of ``|x|``."""
    ax = np.abs(np.asarray(x, dtype=float))
    if weights is None:
        q = float(np.quantile(ax, 1.0 - upper_quantile))
    else:
        q = weighted_quantile(ax, weights, 1.0 - upper_quantile)
    return (q / norm.ppf(1.0 - upper_quantile / 2.0)) ** 2


# ------------------------------------------------------------------ #
# Prior variance
# ------------------------------------------------------------------ #


def _level_effects(
    betas: pd.DataFrame, factor: str, metadata: pd.DataFrame
) -> dict[str, np.ndarray]:
    """Per-level MLE effects of *factor*; the reference level is zero."""
    effects: dict[str, np.ndarray] = {}
    for level in factor_levels(metadata, factor):
        coef = standard_coefficient_name(factor, level, metadata)
        if coef is None:
            effects[level] = np.zeros(len(betas))
        elif coef in betas.columns:
            effects[level] = betas[coef].to_numpy(dtype=float)
    return effects


def estimate_beta_prior_var(
    model: FittedModel,
    model_matrix: pd.DataFrame | np.ndarray | None = None,
    model_matrix_type: str = "standard",
    method: str = "weighted",
    upper_quantile: float = 0.05,
) -> pd.Series:
    """Estimate the normal prior variance of every coefficient.

    Args:
        model: A model with MLE coefficients (possibly ``MLE_``-tagged).
        model_matrix: Explicit model matrix of the refit.
        model_matrix_type: ``"standard"`` or ``"expanded"``.
        method: ``"weighted"`` or ``"quantile"``.
        upper_quantile: Upper quantile of ``|β̂|`` to match.

    Returns:
        Prior variances (log2 scale), indexed by the coefficient names
        of the model matrix being refit.  All are at least ``1e-6``.

    Raises:
        DegenerateModel: If there is no shrinkable coefficient or no
            feature with a non-zero count.
        IncompatibleModelState: If the model has no MLE coefficients.
        ValueError: On an unknown *method*.
    """
    if method not in ("weighted", "quantile"):
        raise ValueError(f"Unknown method '{method}'. Choose from: quantile, weighted")

    X = model_matrix_for(model, model_matrix, model_matrix_type)
    coef_names = [str(c) for c in X.columns]
    if not any(not is_intercept(c) for c in coef_names):
        raise DegenerateModel("the model matrix has no coefficient besides the intercept")

    usable = ~all_zero_rows(model)
    if not usable.any():
        raise DegenerateModel("every feature has only zero counts")

    betas = _mle_betas(model).loc[usable]

    weights = None
    if method == "weighted":
        if model.mu is None or model.dispersions is None:
            raise IncompatibleModelState(
                "weighted prior estimation needs fitted means and dispersions"
            )
        mean_mu = np.nanmean(model.mu[usable], axis=1)
        weights = 1.0 / (1.0 / mean_mu + model.dispersions[usable])

    def _match(x: np.ndarray) -> float:
        ok = np.isfinite(x)
        if weights is not None:
            ok &= np.isfinite(weights)
        if not ok.any():
            raise DegenerateModel("no finite MLE estimates to estimate the prior from")
        w = None if weights is None else weights[ok]
        return match_upper_quantile_variance(x[ok], w, upper_quantile)

    prior_var: dict[str, float] = {}
    is_expanded = model_matrix_type == "expanded" and isinstance(model.design, str)
    if is_expanded:
        for factor, cols in expanded_level_columns(model.design, model.metadata).items():
            effects = _level_effects(betas, factor, model.metadata)
            pairs = [effects[a] - effects[b] for a, b in combinations(effects, 2)]
            if not pairs:
                continue
            avg = float(np.mean([_match(d) for d in pairs]))
            for col in cols:
                prior_var[col] = avg

    for coef in coef_names:
        if coef in prior_var:
            continue
        if is_intercept(coef):
            prior_var[coef] = INTERCEPT_PRIOR_VAR
            continue
        if coef not in betas.columns:
            raise IncompatibleModelState(
                f"no MLE estimate for coefficient '{coef}'; refit with nbinom_wald_test()"
            )
        prior_var[coef] = _match(betas[coef].to_numpy(dtype=float))

    result = pd.Series(
        np.maximum([prior_var[c] for c in coef_names], MIN_PRIOR_VAR),
        index=coef_names,
        name="betaPriorVar",
    )
    logger.debug("beta prior variance (%s, %s): %s", model_matrix_type, method, result.to_dict())
    return result


__all__ = [
    "INTERCEPT_PRIOR_VAR",
    "MIN_PRIOR_VAR",
    "MLE_PREFIX",
    "estimate_beta_prior_var",
    "match_upper_quantile_variance",
    "mle_columns",
    "tag_mle_columns",
    "weighted_quantile",
]
