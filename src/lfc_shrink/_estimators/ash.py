"""Adaptive shrinkage with a zero-centred mixture-of-normals prior.

Given estimates ``β̂_j`` with standard errors ``s_j`` the prior on the
true effects is

    g = π_0 δ_0 + Σ_k π_k N(0, σ_k²)

over a fixed grid of standard deviations ``σ_k``; the weights ``π``
are fitted by EM on the marginal likelihood
``Π_j Σ_k π_k N(β̂_j; 0, σ_k² + s_j²)``.  Each feature's posterior is
again a mixture of normals, which gives the posterior mean and SD, the
local false sign rate (lfsr) and the s-value.

Methods
-------
``"shrink"``
    No point mass at zero, flat Dirichlet penalty on ``π``.
``"fdr"``
    Point mass at zero, Dirichlet penalty ``nullweight`` on ``π_0``
    (a null-biased prior, conservative for false discovery control).

Features with a missing estimate or a non-positive standard error do
not enter the fit and get missing posterior summaries.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd
from scipy.special import logsumexp
from scipy.stats import norm

from ._common import svalue as _svalue

_METHODS = ("shrink", "fdr")


@dataclass(frozen=True)
class NormalMixture:
    """Fitted prior: mixture weights, means and standard deviations."""

    pi: np.ndarray
    mean: np.ndarray
    sd: np.ndarray

    def __len__(self) -> int:
        return int(self.pi.shape[0])

    def to_dict(self) -> dict[str, Any]:
        return {"pi": self.pi.tolist(), "mean": self.mean.tolist(), "sd": self.sd.tolist()}


@dataclass(frozen=True)
class AshFit:
    """Output of :func:`ash`.

    Attributes:
        result: Per-feature table with ``betahat``, ``sebetahat``,
            ``NegativeProb``, ``PositiveProb``, ``lfsr``, ``svalue``,
            ``lfdr``, ``PosteriorMean`` and ``PosteriorSD``.
        fitted_g: The fitted mixture prior.
        loglik: Marginal log-likelihood at the fitted prior.
        method: ``"shrink"`` or ``"fdr"``.
        n_iter: EM iterations used.
    """

    result: pd.DataFrame
    fitted_g: NormalMixture
    loglik: float
    method: str
    n_iter: int


def mixture_sd_grid(
    betahat: np.ndarray, sebetahat: np.ndarray, gridmult: float = np.sqrt(2.0)
) -> np.ndarray:
    """Geometric grid of prior standard deviations.

    From ``min(se) / 10`` up to ``2 sqrt(max(β̂² - se²))`` (or eight
    times the lower end when no estimate exceeds its noise), in
    steps of *gridmult*.
    """
    sigma_min = float(np.min(sebetahat)) / 10.0
    excess = betahat**2 - sebetahat**2
    if np.any(excess > 0):
        sigma_max = 2.0 * float(np.sqrt(np.max(excess)))
    else:
        sigma_max = 8.0 * sigma_min
    if sigma_max <= sigma_min:
        sigma_max = 8.0 * sigma_min
    n_point = int(np.ceil(np.log2(sigma_max / sigma_min) / np.log2(gridmult)))
    return gridmult ** np.arange(-n_point, 1, dtype=float) * sigma_max


def _em_weights(
    log_lik: np.ndarray, prior: np.ndarray, max_iter: int, tol: float
) -> tuple[np.ndarray, int]:
    """Penalised EM for mixture weights given the log-likelihood matrix ``(J, K)``."""
    n_comp = log_lik.shape[1]
    pi = np.full(n_comp, 1.0 / n_comp)
    n_iter = 0
    for n_iter in range(1, max_iter + 1):
        log_post = log_lik + np.log(np.maximum(pi, 1e-300))
        resp = np.exp(log_post - logsumexp(log_post, axis=1, keepdims=True))
        counts = resp.sum(axis=0) + prior - 1.0
        new_pi = np.maximum(counts, 0.0)
        new_pi /= new_pi.sum()
        delta = float(np.max(np.abs(new_pi - pi)))
        pi = new_pi
        if delta < tol:
            break
    return pi, n_iter


def ash(
    betahat: np.ndarray | pd.Series | Sequence[float],
    sebetahat: np.ndarray | pd.Series | Sequence[float],
    mixcompdist: str = "normal",
    method: str = "shrink",
    pointmass: bool | None = None,
    nullweight: float = 10.0,
    gridmult: float = np.sqrt(2.0),
    mixsd: np.ndarray | Sequence[float] | None = None,
    max_iter: int = 5000,
    tol: float = 1e-8,
) -> AshFit:
    """Fit the mixture prior and return posterior summaries.

    Args:
        betahat: Estimates.
        sebetahat: Their standard errors.
        mixcompdist: Mixture component family; only ``"normal"``.
        method: ``"shrink"`` or ``"fdr"``.
        pointmass: Include a point mass at zero; defaults from *method*.
        nullweight: Dirichlet penalty on the null component under
            ``method="fdr"``.
        gridmult: Ratio between consecutive grid standard deviations.
        mixsd: Explicit grid, overriding the automatic one.
        max_iter: Maximum EM iterations.
        tol: EM tolerance on the change of the weights.

    Raises:
        ValueError: On an unsupported *mixcompdist* or *method*, or if
            no feature has a usable estimate.
    """
    if mixcompdist != "normal":
        raise ValueError(f"Invalid mixcompdist '{mixcompdist}'. Only 'normal' is supported.")
    if method not in _METHODS:
        raise ValueError(f"Invalid method '{method}'. Choose from: {', '.join(_METHODS)}.")

    index = betahat.index if isinstance(betahat, pd.Series) else None
    b = np.asarray(betahat, dtype=float)
    s = np.asarray(sebetahat, dtype=float)
    ok = np.isfinite(b) & np.isfinite(s) & (s > 0)
    if not ok.any():
        raise ValueError("no feature has a finite estimate with a positive standard error")
    if pointmass is None:
        pointmass = method == "fdr"

    grid = (
        np.asarray(mixsd, dtype=float)
        if mixsd is not None
        else mixture_sd_grid(b[ok], s[ok], gridmult)
    )
    if pointmass:
        grid = np.concatenate([[0.0], grid[grid > 0]])
    prior = np.ones(grid.size)
    if method == "fdr" and pointmass:
        prior[0] = nullweight

    bo, so = b[ok], s[ok]
    total_sd = np.sqrt(grid[np.newaxis, :] ** 2 + so[:, np.newaxis] ** 2)
    log_lik = norm.logpdf(bo[:, np.newaxis], loc=0.0, scale=total_sd)
    pi, n_iter = _em_weights(log_lik, prior, max_iter, tol)

    log_post = log_lik + np.log(np.maximum(pi, 1e-300))
    loglik = float(np.sum(logsumexp(log_post, axis=1)))
    resp = np.exp(log_post - logsumexp(log_post, axis=1, keepdims=True))

    # Conjugate normal update per component; the point mass stays at zero.
    var_k = grid[np.newaxis, :] ** 2
    var_s = so[:, np.newaxis] ** 2
    post_var = var_k * var_s / (var_k + var_s)
    post_mean = post_var * bo[:, np.newaxis] / var_s
    post_sd = np.sqrt(post_var)

    mean = np.sum(resp * post_mean, axis=1)
    second = np.sum(resp * (post_var + post_mean**2), axis=1)
    sd = np.sqrt(np.maximum(second - mean**2, 0.0))

    with np.errstate(divide="ignore", invalid="ignore"):
        neg_k = np.where(post_sd > 0, norm.cdf(-post_mean / post_sd), 0.0)
    zero_prob = np.sum(resp * (post_sd == 0), axis=1)
    neg_prob = np.sum(resp * neg_k, axis=1)
    pos_prob = np.clip(1.0 - neg_prob - zero_prob, 0.0, 1.0)
    lfsr = np.where(
        neg_prob > 0.5 * (1.0 - zero_prob), 1.0 - neg_prob, neg_prob + zero_prob
    )

    def _full(values: np.ndarray) -> np.ndarray:
        out = np.full(b.shape, np.nan)
        out[ok] = values
        return out

    lfsr_full = _full(lfsr)
    result = pd.DataFrame(
        {
            "betahat": b,
            "sebetahat": s,
            "NegativeProb": _full(neg_prob),
            "PositiveProb": _full(pos_prob),
            "lfsr": lfsr_full,
            "svalue": _svalue(lfsr_full),
            "lfdr": _full(zero_prob),
            "PosteriorMean": _full(mean),
            "PosteriorSD": _full(sd),
        },
        index=index,
    )
    return AshFit(
        result=result,
        fitted_g=NormalMixture(pi=pi, mean=np.zeros(grid.size), sd=grid),
        loglik=loglik,
        method=method,
        n_iter=n_iter,
    )


__all__ = ["AshFit", "NormalMixture", "ash", "mixture_sd_grid"]
