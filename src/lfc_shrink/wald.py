"""Wald tests on negative-binomial GLM coefficients.

:func:`nbinom_wald_test` fits the model's design to its counts (MLE,
or MAP under a zero-centred normal prior when ``beta_prior=True``) and
stores, per feature, the coefficient table in ``row_data``:

* ``<coef>``                — log2 coefficient
* ``SE_<coef>``             — its standard error
* ``WaldStatistic_<coef>``  — coefficient / SE
* ``WaldPvalue_<coef>``     — two-sided normal p-value
* ``baseMean``, ``baseVar``, ``allZero``, ``dispersion``,
  ``betaConv``, ``betaIter``, ``deviance``

Every column carries a description; the coefficient descriptions read
``"log2 fold change (MLE): <coef>"`` (or ``(MAP)``), which is how the
prior-variance estimator later finds the MLE columns.

Features whose counts are all zero are not fitted; their coefficient
columns are ``NaN``.
"""

from __future__ import annotations

import warnings
from collections.abc import Sequence

import numpy as np
import pandas as pd
from scipy.stats import norm

from ._backends import DEFAULT_MAX_ITER, BackendProtocol
from ._exceptions import ConvergenceWarning, IncompatibleModelState
from .dataset import FittedModel
from .design import build_expanded_model_matrix, build_model_matrix
from .glm import GLMFit, fit_nbinom_glm

_FIT_COLUMNS_PREFIXES = ("SE_", "WaldStatistic_", "WaldPvalue_")


def coefficient_label(name: str) -> str:
    """Human-readable coefficient label (underscores become spaces)."""
    return name.replace("_", " ")


def model_matrix_for(
    model: FittedModel,
    model_matrix: pd.DataFrame | np.ndarray | None = None,
    model_matrix_type: str = "standard",
) -> pd.DataFrame:
    """Model matrix used to fit *model*.

    An explicit *model_matrix* wins, then a user-supplied design, then
    the formula evaluated as a ``"standard"`` or ``"expanded"`` matrix.
    """
    if model_matrix is not None:
        if isinstance(model_matrix, pd.DataFrame):
            return model_matrix.astype(float)
        arr = np.asarray(model_matrix, dtype=float)
        return pd.DataFrame(
            arr,
            index=model.metadata.index,
            columns=[f"x{k + 1}" for k in range(arr.shape[1])],
        )
    user = model.user_model_matrix()
    if user is not None:
        return user
    if model_matrix_type == "expanded":
        return build_expanded_model_matrix(model.design, model.metadata)
    return build_model_matrix(model.design, model.metadata)


def all_zero_rows(model: FittedModel) -> np.ndarray:
    return ~np.any(model.counts.to_numpy() > 0, axis=1)


def fit_model(
    model: FittedModel,
    model_matrix: pd.DataFrame,
    *,
    lambda_: np.ndarray | None = None,
    max_iter: int = DEFAULT_MAX_ITER,
    backend: str | BackendProtocol | None = None,
) -> GLMFit:
    """Fit *model_matrix* to every feature of *model* that has a non-zero count.

    Raises:
        IncompatibleModelState: If the model has no dispersions.
    """
    if model.dispersions is None:
        raise IncompatibleModelState(
            "the model has no dispersion estimates; attach them with "
            "with_dispersions() before fitting"
        )
    keep = np.flatnonzero(~all_zero_rows(model))
    part = fit_nbinom_glm(
        model.counts.to_numpy(dtype=float)[keep],
        model_matrix,
        model.normalization_matrix()[keep],
        model.dispersions[keep],
        weights=model.weights_matrix()[keep],
        lambda_=lambda_,
        max_iter=max_iter,
        backend=backend,
    )
    return GLMFit.merge([part], [keep], model.n_features)


def _is_fit_column(col: str, coef_names: Sequence[str]) -> bool:
    if col in coef_names:
        return True
    return any(col.startswith(prefix) for prefix in _FIT_COLUMNS_PREFIXES)


def apply_wald_test(
    model: FittedModel,
    fit: GLMFit,
    *,
    beta_prior: bool = False,
    model_matrix_type: str = "standard",
    model_matrix: pd.DataFrame | None = None,
    stacklevel: int = 2,
) -> FittedModel:
    """Store *fit* and its Wald tests in a copy of *model*.

    Coefficient, SE and Wald columns of an earlier fit are replaced;
    any other ``row_data`` column (for instance ``MLE_``-tagged
    coefficients) is kept.

    Warns:
        ConvergenceWarning: If any fitted feature did not converge.
    """
    all_zero = all_zero_rows(model)
    tag = "MAP" if beta_prior else "MLE"
    normalized = model.normalized_counts()

    cols: dict[str, object] = {}
    desc: dict[str, str] = {}
    cols["baseMean"] = normalized.mean(axis=1)
    desc["baseMean"] = "mean of normalized counts for all samples"
    cols["baseVar"] = normalized.var(axis=1, ddof=1)
    desc["baseVar"] = "variance of normalized counts for all samples"
    cols["allZero"] = all_zero
    desc["allZero"] = "all counts for a gene are zero"
    cols["dispersion"] = np.asarray(model.dispersions, dtype=float)
    desc["dispersion"] = "final estimate of dispersion"

    with np.errstate(divide="ignore", invalid="ignore"):
        stat = fit.beta / fit.se
    pvalue = 2.0 * norm.sf(np.abs(stat))

    for k, name in enumerate(fit.coef_names):
        label = coefficient_label(name)
        cols[name] = fit.beta[:, k]
        desc[name] = f"log2 fold change ({tag}): {label}"
    for k, name in enumerate(fit.coef_names):
        label = coefficient_label(name)
        cols[f"SE_{name}"] = fit.se[:, k]
        desc[f"SE_{name}"] = f"standard error: {label}"
    for k, name in enumerate(fit.coef_names):
        label = coefficient_label(name)
        cols[f"WaldStatistic_{name}"] = stat[:, k]
        desc[f"WaldStatistic_{name}"] = f"Wald statistic: {label}"
    for k, name in enumerate(fit.coef_names):
        label = coefficient_label(name)
        cols[f"WaldPvalue_{name}"] = pvalue[:, k]
        desc[f"WaldPvalue_{name}"] = f"Wald test p-value: {label}"

    cols["betaConv"] = pd.array(
        [pd.NA if z else bool(c) for z, c in zip(all_zero, fit.converged)],
        dtype="boolean",
    )
    desc["betaConv"] = "convergence of betas"
    cols["betaIter"] = fit.iterations
    desc["betaIter"] = "iterations for betas"
    cols["deviance"] = fit.deviance
    desc["deviance"] = "deviance for the fitted model"

    new = pd.DataFrame(cols, index=model.feature_names)

    if model.row_data is None:
        row_data = new
        descriptions = desc
    else:
        stale = [
            c for c in model.row_data.columns
            if c in new.columns or _is_fit_column(c, fit.coef_names)
        ]
        kept = model.row_data.drop(columns=stale)
        row_data = pd.concat([kept, new], axis=1)
        descriptions = {c: model.row_descriptions.get(c, "") for c in kept.columns}
        descriptions.update(desc)

    n_bad = int(np.sum(~fit.converged & ~all_zero))
    if n_bad:
        warnings.warn(
            f"{n_bad} rows did not converge in beta, labelled in betaConv. "
            "Use a larger max_iter.",
            ConvergenceWarning,
            stacklevel=stacklevel,
        )

    is_user = model_matrix is not None
    return model.replace(
        row_data=row_data,
        row_descriptions=descriptions,
        result_names=tuple(fit.coef_names),
        coef_covariance=fit.covariance,
        mu=fit.mu,
        beta_prior=beta_prior,
        model_matrix_type="user-supplied" if is_user else model_matrix_type,
        model_matrix=model_matrix if is_user else None,
    )


def prior_lambda(
    beta_prior_var: pd.Series | np.ndarray | Sequence[float], coef_names: Sequence[str]
) -> np.ndarray:
    """Ridge penalties ``1 / var`` in *coef_names* order."""
    if isinstance(beta_prior_var, pd.Series):
        missing = [c for c in coef_names if c not in beta_prior_var.index]
        if missing:
            raise ValueError(f"beta_prior_var has no entry for: {', '.join(missing)}")
        var = beta_prior_var.loc[list(coef_names)].to_numpy(dtype=float)
    else:
        var = np.asarray(beta_prior_var, dtype=float)
        if var.shape != (len(coef_names),):
            raise ValueError(
                f"beta_prior_var must have {len(coef_names)} entries, got {var.size}"
            )
    if np.any(~np.isfinite(var)) or np.any(var <= 0):
        raise ValueError("beta_prior_var must be positive and finite")
    return 1.0 / var


def nbinom_wald_test(
    model: FittedModel,
    beta_prior: bool = False,
    beta_prior_var: pd.Series | np.ndarray | None = None,
    model_matrix: pd.DataFrame | np.ndarray | None = None,
    model_matrix_type: str = "standard",
    max_iter: int = DEFAULT_MAX_ITER,
    backend: str | BackendProtocol | None = None,
) -> FittedModel:
    """Fit the model and run Wald tests on every coefficient.

    Args:
        model: Model with counts, normalisation and dispersions.
        beta_prior: Fit MAP coefficients under a normal prior with
            variance *beta_prior_var* (ridge penalty ``1 / var``).
        beta_prior_var: Prior variance per coefficient (log2 scale),
            indexed by coefficient name or in model-matrix order.
        model_matrix: Explicit model matrix overriding the design.
        model_matrix_type: ``"standard"`` or ``"expanded"`` for
            formula designs.
        max_iter: Maximum IRLS iterations.
        backend: Solver backend name or instance.

    Returns:
        A new :class:`FittedModel` carrying the coefficient table.

    Raises:
        IncompatibleModelState: If dispersions are missing.
        ValueError: If ``beta_prior=True`` without a valid
            *beta_prior_var*.
    """
    if model.dispersions is None:
        raise IncompatibleModelState(
            "the model has no dispersion estimates; attach them with "
            "with_dispersions() before calling nbinom_wald_test()"
        )
    X = model_matrix_for(model, model_matrix, model_matrix_type)
    lambda_ = None
    if beta_prior:
        if beta_prior_var is None:
            raise ValueError("beta_prior=True requires beta_prior_var")
        lambda_ = prior_lambda(beta_prior_var, list(X.columns))

    fit = fit_model(model, X, lambda_=lambda_, max_iter=max_iter, backend=backend)
    user = X if (model_matrix is not None or model.user_model_matrix() is not None) else None
    return apply_wald_test(
        model,
        fit,
        beta_prior=beta_prior,
        model_matrix_type=model_matrix_type,
        model_matrix=user,
        stacklevel=3,
    )


__all__ = [
    "all_zero_rows",
    "apply_wald_test",
    "coefficient_label",
    "fit_model",
    "model_matrix_for",
    "nbinom_wald_test",
    "prior_lambda",
]
