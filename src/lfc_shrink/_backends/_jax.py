"""JAX-accelerated IRLS backend.

Architecture
~~~~~~~~~~~~
The module has two layers:

1. **Solver kernel** (module-level, inside ``if _CAN_IMPORT_JAX``):
   a single-feature ridge IRLS written with ``jax.lax.while_loop`` so
   that every feature exits as soon as its deviance settles.  The
   kernel is mapped across features with ``jax.vmap`` and compiled
   with ``jax.jit``; one compiled kernel is cached per
   ``(max_iter, tol, min_mu)`` triple.

2. **JaxBackend class** (``BackendProtocol`` implementation): converts
   NumPy → JAX at the boundary, calls the compiled kernel, and
   converts results back.  Callers never touch JAX types.

The update rule, convergence test and divergence guard are identical
to :mod:`._numpy`, so both backends agree to solver tolerance.

Float64
~~~~~~~
All arithmetic uses float64.  The deviance convergence test compares
relative changes of 1e-8, which float32 cannot resolve.

Graceful degradation
~~~~~~~~~~~~~~~~~~~~
If JAX is not installed, :class:`JaxBackend` can still be
instantiated but ``is_available`` returns ``False`` and
:func:`~._backends.resolve_backend` raises ``ImportError`` when this
backend is explicitly requested.
"""

from __future__ import annotations

import functools
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import numpy as np

from . import DEFAULT_MAX_ITER, DEFAULT_MIN_MU, DEFAULT_TOL, LARGE_BETA

try:
    import jax

    # Enable 64-bit floating point before any array creation.
    jax.config.update("jax_enable_x64", True)

    import jax.numpy as jnp
    from jax import jit, vmap
    from jax.scipy.special import gammaln

    _CAN_IMPORT_JAX = True
except ImportError:
    _CAN_IMPORT_JAX = False


if _CAN_IMPORT_JAX:

    def _nb_deviance(
        y: jnp.ndarray, mu: jnp.ndarray, alpha: jnp.ndarray, obs_w: jnp.ndarray
    ) -> jnp.ndarray:
        """``−2 Σ ω log NB(y; μ, 1/α)`` for one feature."""
        size = 1.0 / alpha
        logpmf = (
            gammaln(y + size)
            - gammaln(size)
            - gammaln(y + 1.0)
            + size * jnp.log(size / (size + mu))
            + y * jnp.log(mu / (size + mu))
        )
        return -2.0 * jnp.sum(obs_w * logpmf)

    @functools.lru_cache(maxsize=8)
    def _make_irls_kernel(max_iter: int, tol: float, min_mu: float) -> Callable[..., Any]:
        """Build the vmapped, jitted IRLS kernel for fixed solver settings."""

        def _solve_one(y, log_off, obs_w, alpha, beta_init, X, ridge):
            ridge_matrix = jnp.diag(ridge)

            def _mu(beta):
                return jnp.maximum(jnp.exp(X @ beta + log_off), min_mu)

            def cond(state):
                i, _beta, _dev, converged, diverged = state
                return (i < max_iter) & ~converged & ~diverged

            def body(state):
                i, beta, dev_old, _converged, _diverged = state
                mu = _mu(beta)
                w = obs_w * mu / (1.0 + alpha * mu)
                z = jnp.log(mu) - log_off + (y - mu) / mu
                XtW = X.T * w
                beta_new = jnp.linalg.solve(XtW @ X + ridge_matrix, XtW @ z)
                diverged = ~jnp.all(jnp.isfinite(beta_new)) | jnp.any(
                    jnp.abs(beta_new) > LARGE_BETA
                )
                dev = _nb_deviance(y, _mu(beta_new), alpha, obs_w)
                converged = (jnp.abs(dev - dev_old) / (jnp.abs(dev) + 0.1) < tol) & ~diverged
                return (
                    i + 1,
                    jnp.where(diverged, beta, beta_new),
                    jnp.where(diverged, dev_old, dev),
                    converged,
                    diverged,
                )

            init_state = (
                jnp.array(0),
                beta_init,
                jnp.array(0.0, dtype=jnp.float64),
                jnp.array(False),
                jnp.array(False),
            )
            n_iter, beta, _dev, converged, _diverged = jax.lax.while_loop(
                cond, body, init_state
            )
            return beta, converged, n_iter

        return jit(vmap(_solve_one, in_axes=(0, 0, 0, 0, 0, None, None)))


@dataclass(frozen=True)
class JaxBackend:
    """JAX-accelerated IRLS backend.

    The frozen dataclass has no mutable state, so instances are
    thread-safe and can be cached by ``resolve_backend``.
    """

    @property
    def name(self) -> str:
        return "jax"

    @property
    def is_available(self) -> bool:  # noqa: PLR6301
        return _CAN_IMPORT_JAX

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
        """Ridge-penalised NB IRLS via ``vmap`` over features.

        See :meth:`BackendProtocol.fit_nbinom` for the argument
        contract.
        """
        kernel = _make_irls_kernel(int(max_iter), float(tol), float(min_mu))
        beta, converged, n_iter = kernel(
            jnp.array(counts, dtype=jnp.float64),
            jnp.array(log_offsets, dtype=jnp.float64),
            jnp.array(weights, dtype=jnp.float64),
            jnp.array(dispersions, dtype=jnp.float64),
            jnp.array(beta_init, dtype=jnp.float64),
            jnp.array(X, dtype=jnp.float64),
            jnp.array(ridge, dtype=jnp.float64),
        )
        return (
            np.asarray(beta, dtype=float),
            np.asarray(converged, dtype=bool),
            np.asarray(n_iter, dtype=np.int64),
        )
