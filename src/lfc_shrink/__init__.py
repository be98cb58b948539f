"""lfc_shrink — Empirical-Bayes shrinkage of log2 fold changes.

Fits negative-binomial GLMs to count data, runs Wald tests on their
coefficients, and shrinks the resulting log2 fold changes with a
normal prior (ridge refit), an adaptive Cauchy prior (apeglm-style) or
an adaptive mixture prior (ashr-style).  Feature-wise work can be
split over a ``joblib`` worker pool, and the IRLS refit runs on a
vectorised NumPy solver or a JIT-compiled JAX solver.

Public API:
    .. autosummary::
        lfc_shrink
        nbinom_wald_test
        results
        estimate_beta_prior_var
        estimate_size_factors
        make_example_dataset
        register_estimator
        get_backend
        set_backend
        FittedModel
        ResultsTable
        PriorInfo
        ShrinkageDetail
        ShrinkageEngine
"""

from ._config import get_backend, set_backend
from ._estimators import register_estimator, reset_estimators
from ._exceptions import (
    BackendUnavailable,
    ConflictingSpec,
    ConvergenceWarning,
    DegenerateModel,
    IncompatibleModelState,
    InvalidCoefficient,
    MissingSpec,
    ShrinkageError,
    UnsupportedContrast,
)
from ._results import PriorInfo, ResultsTable, ShrinkageDetail
from .core import lfc_shrink
from .dataset import FittedModel, estimate_size_factors, make_example_dataset
from .engine import ShrinkageEngine
from .prior import estimate_beta_prior_var
from .results import results
from .wald import nbinom_wald_test

__all__ = [
    "FittedModel",
    "PriorInfo",
    "ResultsTable",
    "ShrinkageDetail",
    "ShrinkageEngine",
    "lfc_shrink",
    "nbinom_wald_test",
    "results",
    "estimate_beta_prior_var",
    "estimate_size_factors",
    "make_example_dataset",
    "register_estimator",
    "reset_estimators",
    "get_backend",
    "set_backend",
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

__version__ = "0.1.0"
