"""Which IRLS solver the normal-prior refit and the Wald fit use.

Two solvers exist: a JIT-compiled JAX solver and a vectorised NumPy
solver.  The active one is chosen by, in decreasing priority:

* a name passed to :func:`set_backend`,
* the ``LFC_SHRINK_BACKEND`` environment variable,
* whichever is installed, JAX first.

Names are ``"jax"``, ``"numpy"`` and ``"auto"``; case and surrounding
whitespace are ignored.  ``"auto"`` clears an earlier
:func:`set_backend` call.

Examples:
    From the shell::

        export LFC_SHRINK_BACKEND=numpy

    From Python::

        import lfc_shrink
        lfc_shrink.set_backend("numpy")
        ...
        lfc_shrink.set_backend("auto")

Passing ``backend=`` to :func:`~lfc_shrink.lfc_shrink` or
:func:`~lfc_shrink.nbinom_wald_test` skips this module for that call.
"""

from __future__ import annotations

import os

_ENV_VAR = "LFC_SHRINK_BACKEND"
_SOLVERS = ("jax", "numpy")
_CHOICES = (*_SOLVERS, "auto")

# None until set_backend() is called.
_backend_override: str | None = None


def _jax_is_available() -> bool:
    try:
        import jax  # noqa: F401
    except ImportError:
        return False
    return True


def get_backend() -> str:
    """Name of the solver a call without ``backend=`` will use.

    Returns:
        ``"jax"`` or ``"numpy"``.
    """
    if _backend_override in _SOLVERS:
        return _backend_override

    from_env = os.environ.get(_ENV_VAR, "").strip().lower()
    if from_env in _SOLVERS:
        return from_env

    return "jax" if _jax_is_available() else "numpy"


def set_backend(name: str) -> None:
    """Pin the solver for the rest of the session.

    Args:
        name: ``"jax"``, ``"numpy"`` or ``"auto"``.

    Raises:
        ValueError: On any other name.
    """
    global _backend_override
    choice = name.strip().lower()
    if choice not in _CHOICES:
        raise ValueError(f"Unknown backend '{name}'. Choose from: {', '.join(_CHOICES)}.")
    _backend_override = choice
