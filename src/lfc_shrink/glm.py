"""Negative-binomial GLM fit with an optional ridge penalty.

:func:`fit_nbinom_glm` fits ``log μ_ij = log s_ij + x_j'β_i`` for every
feature ``i`` with the dispersion held fixed at its estimate.  The
penalty ``λ`` is given on the log2 scale (``λ_k = 1 / σ²_k`` for a
zero-centred normal prior on the log2 coefficient ``k``) and converted
to the natural-log scale the solver works on.  An MLE fit is a fit
with a negligible penalty of ``1e-6`` on every coefficient, which only
stabilises the linear solves.

The IRLS iterations run on the configured solver backend
(:mod:`._backends`); standard errors are computed here, in NumPy, for
both backends:

    Σ = (X'WX + Λ)⁻¹ X'WX (X'WX + Λ)⁻¹

which reduces to the inverse Fisher information when ``Λ → 0``.
Coefficients, standard errors and covariances are returned on the
log2 scale.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
import pandas as pd

from ._backends import (
    DEFAULT_MAX_ITER,
    DEFAULT_MIN_MU,
    DEFAULT_TOL,
    BackendProtocol,
    resolve_backend,
)
from ._backends._numpy import nb_deviance

logger = logging.getLogger(__name__)

LN2 = np.log(2.0)
MLE_LAMBDA = 1e-6


@dataclass(frozen=True)
class GLMFit:
    """Per-feature output of :func:`fit_nbinom_glm`.

    All coefficient quantities are on the log2 scale.
    """

    coef_names: tuple[str, ...]
    beta: np.ndarray
    """Coefficients ``(G, p)``."""
    se: np.ndarray
    """Standard errors ``(G, p)``."""
    covariance: np.ndarray
    """Coefficient covariance ``(G, p, p)``."""
    mu: np.ndarray
    """Fitted means ``(G, n)``."""
    converged: np.ndarray
    iterations: np.ndarray
    deviance: np.ndarray

    @property
    def n_features(self) -> int:
        return int(self.beta.shape[0])

    @classmethod
    def merge(
        cls, parts: Sequence[GLMFit], row_indices: Sequence[np.ndarray], n_rows: int
    ) -> GLMFit:
        """Scatter partition fits back into one fit of *n_rows* features.

        ``parts[k]`` holds the features at positions ``row_indices[k]``.
        """
        if not parts:
            raise ValueError("no partition fits to merge")
        first = parts[0]
        p = first.beta.shape[1]
        n = first.mu.shape[1]
        beta = np.full((n_rows, p), np.nan)
        se = np.full((n_rows, p), np.nan)
        cov = np.full((n_rows, p, p), np.nan)
        mu = np.full((n_rows, n), np.nan)
        converged = np.zeros(n_rows, dtype=bool)
        iterations = np.zeros(n_rows, dtype=np.int64)
        deviance = np.full(n_rows, np.nan)
        for part, idx in zip(parts, row_indices):
            beta[idx] = part.beta
            se[idx] = part.se
            cov[idx] = part.covariance
            mu[idx] = part.mu
            converged[idx] = part.converged
            iterations[idx] = part.iterations
            deviance[idx] = part.deviance
        return cls(
            coef_names=first.coef_names,
            beta=beta,
            se=se,
            covariance=cov,
            mu=mu,
            converged=converged,
            iterations=iterations,
            deviance=deviance,
        )


def _initial_beta(counts: np.ndarray, X: np.ndarray, normalization: np.ndarray) -> np.ndarray:
    """Least-squares start on ``log(y / s + 0.1)``."""
    log_norm = np.log(counts / normalization + 0.1)
    beta, *_ = np.linalg.lstsq(X, log_norm.T, rcond=None)
    return beta.T


def fit_nbinom_glm(
    counts: np.ndarray,
    model_matrix: pd.DataFrame | np.ndarray,
    normalization: np.ndarray,
    dispersions: np.ndarray,
    *,
    weights: np.ndarray | None = None,
    lambda_: np.ndarray | Sequence[float] | None = None,
    max_iter: int = DEFAULT_MAX_ITER,
    tol: float = DEFAULT_TOL,
    min_mu: float = DEFAULT_MIN_MU,
    backend: str | BackendProtocol | None = None,
) -> GLMFit:
    """Fit a negative-binomial GLM to every row of *counts*.

    Args:
        counts: Counts ``(G, n)``.
        model_matrix: Model matrix ``(n, p)``; ``DataFrame`` columns
            name the coefficients.
        normalization: Size or normalisation factors ``(G, n)``.
        dispersions: Per-feature dispersions ``(G,)``.
        weights: Observation weights ``(G, n)``, ones when ``None``.
        lambda_: Ridge penalty per coefficient on the log2 scale;
            ``None`` gives the MLE fit.
        max_iter: Maximum IRLS iterations.
        tol: Relative deviance tolerance.
        min_mu: Lower bound on fitted means inside the IRLS weights.
        backend: Backend name or instance; ``None`` uses the
            configured policy.

    Returns:
        A :class:`GLMFit` on the log2 scale.
    """
    if isinstance(model_matrix, pd.DataFrame):
        coef_names = tuple(str(c) for c in model_matrix.columns)
        X = model_matrix.to_numpy(dtype=float)
    else:
        X = np.asarray(model_matrix, dtype=float)
        coef_names = tuple(f"x{k + 1}" for k in range(X.shape[1]))

    y = np.asarray(counts, dtype=float)
    nf = np.asarray(normalization, dtype=float)
    alpha = np.asarray(dispersions, dtype=float)
    obs_w = np.ones_like(y) if weights is None else np.asarray(weights, dtype=float)
    n_features, p = y.shape[0], X.shape[1]

    if lambda_ is None:
        lam = np.full(p, MLE_LAMBDA)
    else:
        lam = np.broadcast_to(np.asarray(lambda_, dtype=float), (p,))
    ridge = lam / LN2**2

    if n_features == 0:
        return GLMFit(
            coef_names=coef_names,
            beta=np.empty((0, p)),
            se=np.empty((0, p)),
            covariance=np.empty((0, p, p)),
            mu=np.empty((0, y.shape[1])),
            converged=np.empty(0, dtype=bool),
            iterations=np.empty(0, dtype=np.int64),
            deviance=np.empty(0),
        )

    solver = backend if isinstance(backend, BackendProtocol) else resolve_backend(backend)
    log_offsets = np.log(nf)
    beta, converged, iterations = solver.fit_nbinom(
        y,
        X,
        log_offsets,
        obs_w,
        alpha,
        ridge,
        _initial_beta(y, X, nf),
        max_iter=max_iter,
        tol=tol,
        min_mu=min_mu,
    )
    logger.debug(
        "IRLS (%s): %d features, %d converged, max %d iterations",
        solver.name,
        n_features,
        int(converged.sum()),
        int(iterations.max(initial=0)),
    )

    # Sandwich covariance at the final estimate.
    mu_clamped = np.maximum(nf * np.exp(beta @ X.T), min_mu)
    w = obs_w * mu_clamped / (1.0 + alpha[:, np.newaxis] * mu_clamped)
    xtwx = np.einsum("gn,ni,nj->gij", w, X, X)
    inv = np.linalg.inv(xtwx + np.diag(ridge))
    sigma = inv @ xtwx @ inv
    covariance = sigma / LN2**2
    se = np.sqrt(np.clip(np.diagonal(covariance, axis1=1, axis2=2), 0.0, None))

    mu = nf * np.exp(beta @ X.T)
    deviance = nb_deviance(y, mu, alpha, obs_w)

    return GLMFit(
        coef_names=coef_names,
        beta=beta / LN2,
        se=se,
        covariance=covariance,
        mu=mu,
        converged=converged,
        iterations=iterations,
        deviance=deviance,
    )


__all__ = ["LN2", "MLE_LAMBDA", "GLMFit", "fit_nbinom_glm"]
