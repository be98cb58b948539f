"""NumPy / SciPy IRLS backend (always available).

Architecture
~~~~~~~~~~~~
The IRLS update for a negative-binomial GLM with log link, offset
``o`` and ridge matrix ``Λ`` is

    μ   = max(exp(Xβ + o), min_mu)
    w   = ω · μ / (1 + α μ)                 (ω = observation weights)
    z   = log μ − o + (y − μ) / μ
    β ← (X'WX + Λ)⁻¹ X'Wz

The model matrix X is shared by every feature, so one iteration for
all G features is two ``np.einsum`` contractions
(``(G, n) × (n, p) × (n, p) → (G, p, p)`` for the Gram matrices and
``(G, n) × (n, p) → (G, p)`` for the right-hand sides) followed by a
single batched ``np.linalg.solve``.  Features that converge (or
diverge) leave the active set, so late iterations only touch the
stragglers.

Convergence
~~~~~~~~~~~
A feature has converged when the relative deviance change
``|D − D_old| / (|D| + 0.1)`` drops below ``tol``.  A coefficient
beyond ``LARGE_BETA`` in absolute value stops the feature as
non-converged and keeps the last finite estimate.  Non-converged
features are **retained**; the caller reports them in aggregate.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.stats import nbinom

from . import DEFAULT_MAX_ITER, DEFAULT_MIN_MU, DEFAULT_TOL, LARGE_BETA


def nb_deviance(
    counts: np.ndarray,
    mu: np.ndarray,
    dispersions: np.ndarray,
    weights: np.ndarray,
) -> np.ndarray:
    """Per-feature deviance ``−2 Σ ω log NB(y; μ, 1/α)``.

    Args:
        counts: ``(G, n)``.
        mu: ``(G, n)``.
        dispersions: ``(G,)`` or ``(G, 1)``.
        weights: ``(G, n)``.

    Returns:
        Deviance ``(G,)``.
    """
    alpha = np.reshape(dispersions, (-1, 1))
    size = 1.0 / alpha
    logpmf = nbinom.logpmf(counts, size, size / (size + mu))
    return -2.0 * np.sum(weights * logpmf, axis=1)


@dataclass(frozen=True)
class NumpyBackend:
    """Vectorised NumPy IRLS backend.

    The class is a frozen dataclass with no instance state; it
    exists solely to namespace the solver behind the
    :class:`BackendProtocol` interface.  Frozen = immutable = safe to
    cache in the module-level ``_BACKEND_CACHE`` singleton and to
    share across worker threads.
    """

    @property
    def name(self) -> str:
        return "numpy"

    @property
    def is_available(self) -> bool:  # noqa: PLR6301
        return True

    def fit_nbinom(
        self,
        counts: np.ndarray,
        X: np.ndarray,
        log_offsets: np.ndarray,
        weights: np.ndarray,
        dispersions: np.ndarray,
        ridge: np.ndarray,
        beta_init: np.ndarray,
        max_iter: int = DEFAULT_MAX_ITER,
        tol: float = DEFAULT_TOL,
        min_mu: float = DEFAULT_MIN_MU,
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Ridge-penalised NB IRLS, vectorised over features.

        See :meth:`BackendProtocol.fit_nbinom` for the argument
        contract.
        """
        n_features = counts.shape[0]
        beta = np.array(beta_init, dtype=float, copy=True)
        ridge_matrix = np.diag(np.asarray(ridge, dtype=float))
        dev_old = np.zeros(n_features)
        converged = np.zeros(n_features, dtype=bool)
        iterations = np.zeros(n_features, dtype=np.int64)
        active = np.ones(n_features, dtype=bool)

        for _ in range(max_iter):
            idx = np.flatnonzero(active)
            if idx.size == 0:
                break
            y = counts[idx]
            off = log_offsets[idx]
            obs_w = weights[idx]
            alpha = dispersions[idx, np.newaxis]

            mu = np.maximum(np.exp(beta[idx] @ X.T + off), min_mu)
            w = obs_w * mu / (1.0 + alpha * mu)
            z = np.log(mu) - off + (y - mu) / mu

            gram = np.einsum("gn,ni,nj->gij", w, X, X) + ridge_matrix
            rhs = np.einsum("gn,ni->gi", w * z, X)
            beta_new = np.linalg.solve(gram, rhs[..., np.newaxis])[..., 0]
            iterations[idx] += 1

            diverged = ~np.all(np.isfinite(beta_new), axis=1) | np.any(
                np.abs(beta_new) > LARGE_BETA, axis=1
            )
            ok = ~diverged
            ok_idx = idx[ok]
            beta[ok_idx] = beta_new[ok]

            mu_new = np.maximum(np.exp(beta_new[ok] @ X.T + off[ok]), min_mu)
            dev = nb_deviance(y[ok], mu_new, alpha[ok], obs_w[ok])
            conv_test = np.abs(dev - dev_old[ok_idx]) / (np.abs(dev) + 0.1)
            dev_old[ok_idx] = dev

            newly = conv_test < tol
            converged[ok_idx[newly]] = True
            active[ok_idx[newly]] = False
            active[idx[diverged]] = False

        return beta, converged, iterations
