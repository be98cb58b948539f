"""Error taxonomy for the shrinkage engine.

Every hard failure raised by :func:`~lfc_shrink.lfc_shrink` derives
from :class:`ShrinkageError` *and* from the built-in exception a
caller would naturally catch for that situation (``ValueError`` for
bad arguments, ``RuntimeError`` for model-state violations,
``ImportError`` for a missing numerical service).  Code written
against plain built-ins keeps working; code that wants to tell the
engine's failures apart can catch the specific class.

Taxonomy::

    ShrinkageError
    ├── InvalidCoefficient      caller input — unknown name / bad index
    ├── ConflictingSpec         caller input — coef *and* contrast
    ├── MissingSpec             caller input — neither, and no results
    ├── UnsupportedContrast     caller input — estimator needs a coef
    ├── IncompatibleModelState  model precondition violated
    ├── DegenerateModel         prior estimation found no usable data
    └── BackendUnavailable      configuration — estimator not importable

Soft conditions are reported through :class:`ConvergenceWarning` and
never change the returned row set.
"""

from __future__ import annotations


class ShrinkageError(Exception):
    """Base class for all hard errors raised by the shrinkage engine."""


class InvalidCoefficient(ShrinkageError, ValueError):
    """Coefficient index out of range, or name not among the fit's coefficients."""


class ConflictingSpec(ShrinkageError, ValueError):
    """Both a coefficient and a contrast were supplied."""


class MissingSpec(ShrinkageError, ValueError):
    """Neither a coefficient nor a contrast was supplied, and no results table."""


class UnsupportedContrast(ShrinkageError, ValueError):
    """The selected estimator (or design) only supports a single coefficient."""


class IncompatibleModelState(ShrinkageError, RuntimeError):
    """The fitted model does not satisfy a precondition of the requested shrinkage.

    Raised for a model already fit with a coefficient prior, a design
    with interaction terms under ``estimator="normal"``, missing
    dispersions, missing MLE coefficients, or a results table whose
    rows do not line up with the model.
    """


class DegenerateModel(ShrinkageError, ValueError):
    """Prior-variance estimation found no shrinkable coefficients or data."""


class BackendUnavailable(ShrinkageError, ImportError):
    """A required estimator could not be imported.

    This is a configuration error, not a data error: the whole call is
    aborted rather than degraded.
    """


class ConvergenceWarning(UserWarning):
    """Some features did not converge; their rows are still returned."""


__all__ = [
    "BackendUnavailable",
    "ConflictingSpec",
    "ConvergenceWarning",
    "DegenerateModel",
    "IncompatibleModelState",
    "InvalidCoefficient",
    "MissingSpec",
    "ShrinkageError",
    "UnsupportedContrast",
]
