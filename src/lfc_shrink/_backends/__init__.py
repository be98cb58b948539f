"""Solvers for the negative-binomial IRLS fit.

A backend fits a log-link NB GLM with fixed per-feature dispersions,
per-observation offsets and weights, and an optional ridge penalty to
all features in one call (:class:`BackendProtocol`).  It returns the
coefficients and convergence bookkeeping only; :mod:`lfc_shrink.glm`
adds standard errors and deviances.

With no explicit name the solver comes from
:func:`~lfc_shrink.get_backend`.  Asking for ``"jax"`` on a machine
without JAX raises :class:`ImportError` rather than quietly using
NumPy; only the ``"auto"`` policy falls back.

A new solver needs a ``_backends/_<name>.py`` module, a branch in
:func:`resolve_backend` and its name in ``_SOLVERS`` in
:mod:`._config`.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import numpy as np

from .._config import get_backend

# ------------------------------------------------------------------ #
# Solver defaults
# ------------------------------------------------------------------ #

DEFAULT_MAX_ITER: int = 100
"""Maximum IRLS iterations per feature."""

DEFAULT_TOL: float = 1e-8
"""Relative deviance change below which a feature has converged."""

DEFAULT_MIN_MU: float = 0.5
"""Lower bound on fitted means inside the IRLS weights."""

LARGE_BETA: float = 30.0
"""Natural-log coefficients beyond this abort the feature as non-converged."""


# ------------------------------------------------------------------ #
# BackendProtocol
# ------------------------------------------------------------------ #


@runtime_checkable
class BackendProtocol(Protocol):
    """What glm.fit_nbinom_glm needs from a solver.

    Attributes:
        name: ``"numpy"`` or ``"jax"``.
    """

    @property
    def name(self) -> str: ...

    @property
    def is_available(self) -> bool:
        """Whether the backend's dependencies are importable."""
        ...

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
        """Ridge-penalised NB IRLS for every feature.

        Args:
            counts: Counts ``(G, n)``.
            X: Shared model matrix ``(n, p)``.
            log_offsets: Log normalisation ``(G, n)``.
            weights: Observation weights ``(G, n)``.
            dispersions: Per-feature dispersion ``(G,)``.
            ridge: Natural-log-scale ridge penalty ``(p,)``.
            beta_init: Starting coefficients ``(G, p)``.
            max_iter: Maximum IRLS iterations.
            tol: Relative deviance tolerance.
            min_mu: Lower bound on fitted means.

        Returns:
            ``(beta, converged, iterations)``: natural-log
            coefficients ``(G, p)``, convergence flags ``(G,)`` and
            iteration counts ``(G,)``.
        """
        ...


# ------------------------------------------------------------------ #
# Backend resolution
# ------------------------------------------------------------------ #

# One instance per backend name.
_BACKEND_CACHE: dict[str, BackendProtocol] = {}


def resolve_backend(name: str | None = None) -> BackendProtocol:
    """Solver instance for *name*, created once and then reused.

    Args:
        name: ``"numpy"``, ``"jax"``, or ``None`` for
            :func:`~lfc_shrink._config.get_backend`.

    Raises:
        ImportError: If ``"jax"`` is requested and JAX is missing.
        ValueError: On an unknown name.
    """
    key = (get_backend() if name is None else name).strip().lower()
    cached = _BACKEND_CACHE.get(key)
    if cached is not None:
        return cached

    backend: BackendProtocol
    if key == "numpy":
        from ._numpy import NumpyBackend

        backend = NumpyBackend()
    elif key == "jax":
        from ._jax import JaxBackend

        backend = JaxBackend()
        if not backend.is_available:
            raise ImportError(
                "backend='jax' needs JAX, which is not installed; install the "
                "'jax' extra or use backend='numpy'"
            )
    else:
        raise ValueError(f"Unknown backend '{key}'. Choose from: jax, numpy.")

    _BACKEND_CACHE[key] = backend
    return backend


__all__ = [
    "DEFAULT_MAX_ITER",
    "DEFAULT_MIN_MU",
    "DEFAULT_TOL",
    "LARGE_BETA",
    "BackendProtocol",
    "resolve_backend",
]
