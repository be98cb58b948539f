"""Registry of the external shrinkage estimators.

The apeglm-style and ashr-style estimators are *located* when a
shrinkage call needs them, not imported with the package.  Each name
maps to an import target (a ``"module:attribute"`` string or a
callable) resolved by :func:`locate_estimator`.  A target that cannot
be imported raises :class:`~lfc_shrink.BackendUnavailable`, which
aborts the whole call.

Swapping in a different implementation
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
:func:`register_estimator` replaces the target for a name.  The
replacement must accept the same keyword arguments and return an
object with the same fields as the built-in estimator:

* ``"apeglm"`` — ``map``, ``sd``, ``fsr``, ``svalue``, ``interval``,
  ``diag``, ``prior_control``
  (see :class:`~lfc_shrink._estimators.apeglm.ApeglmFit`).
* ``"ashr"`` — ``result`` with ``PosteriorMean``, ``PosteriorSD`` and
  ``svalue`` columns, and ``fitted_g``
  (see :class:`~lfc_shrink._estimators.ash.AshFit`).
"""

from __future__ import annotations

import importlib
import sys
from collections.abc import Callable
from dataclasses import dataclass
from importlib import metadata
from typing import Any

from .._exceptions import BackendUnavailable

_DEFAULT_TARGETS: dict[str, str] = {
    "apeglm": "lfc_shrink._estimators.apeglm:apeglm",
    "ashr": "lfc_shrink._estimators.ash:ash",
}

_ESTIMATOR_REGISTRY: dict[str, str | Callable[..., Any]] = dict(_DEFAULT_TARGETS)


@dataclass(frozen=True)
class EstimatorSpec:
    """A located estimator.

    Attributes:
        name: Registry name (``"apeglm"`` or ``"ashr"``).
        func: The estimator callable.
        package: Top-level package that implements it.
        version: That package's version.
    """

    name: str
    func: Callable[..., Any]
    package: str
    version: str


def package_version(package: str) -> str:
    """Installed version of *package*, falling back to its ``__version__``."""
    try:
        return metadata.version(package)
    except metadata.PackageNotFoundError:
        module = sys.modules.get(package)
        return str(getattr(module, "__version__", "unknown"))


def register_estimator(name: str, target: str | Callable[..., Any]) -> None:
    """Point registry entry *name* at *target*.

    Args:
        name: ``"apeglm"`` or ``"ashr"``.
        target: ``"module:attribute"`` import string or a callable.

    Raises:
        ValueError: If *name* is not a known estimator or *target* is
            a malformed import string.
    """
    if name not in _DEFAULT_TARGETS:
        valid = ", ".join(sorted(_DEFAULT_TARGETS))
        raise ValueError(f"Invalid estimator '{name}'. Choose from: {valid}.")
    if isinstance(target, str) and target.count(":") != 1:
        raise ValueError(f"import target must look like 'module:attribute', got '{target}'")
    _ESTIMATOR_REGISTRY[name] = target


def reset_estimators() -> None:
    """Restore the built-in estimator targets."""
    _ESTIMATOR_REGISTRY.clear()
    _ESTIMATOR_REGISTRY.update(_DEFAULT_TARGETS)


def locate_estimator(name: str) -> EstimatorSpec:
    """Import and return the estimator registered as *name*.

    Raises:
        BackendUnavailable: If nothing is registered under *name* or
            its target cannot be imported.
    """
    target = _ESTIMATOR_REGISTRY.get(name)
    if target is None:
        raise BackendUnavailable(f"no estimator is registered under '{name}'")

    if callable(target):
        func = target
        module_name = getattr(target, "__module__", None) or name
    else:
        module_name, _, attr = target.partition(":")
        try:
            module = importlib.import_module(module_name)
            func = getattr(module, attr)
        except ImportError as exc:
            raise BackendUnavailable(
                f"estimator '{name}' requires '{module_name}', which cannot be imported"
            ) from exc
        except AttributeError as exc:
            raise BackendUnavailable(
                f"estimator '{name}': '{module_name}' has no attribute '{attr}'"
            ) from exc

    package = module_name.split(".")[0]
    return EstimatorSpec(
        name=name, func=func, package=package, version=package_version(package)
    )


__all__ = [
    "EstimatorSpec",
    "locate_estimator",
    "package_version",
    "register_estimator",
    "reset_estimators",
]
