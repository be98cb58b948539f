"""Results tables from a fitted model.

:func:`results` extracts one coefficient, or one contrast of
coefficients, from the table stored by
:func:`~lfc_shrink.wald.nbinom_wald_test` into a
:class:`~lfc_shrink._results.ResultsTable` with the columns

    baseMean, log2FoldChange, lfcSE, stat, pvalue, padj

Benjamini–Hochberg adjustment is delegated to
``statsmodels.stats.multitest.multipletests``.  Features with a
missing p-value (all-zero counts) get a missing adjusted p-value and
do not count toward the number of tests.

Contrast forms
--------------
* ``[factor, numerator, denominator]`` — the log2 ratio of two levels
  of a factor.  On a standard model matrix the reference level has
  weight zero; on an expanded one each level has its own column.
* A numeric vector with one weight per coefficient of the fit.
* A pair ``(numerator_names, denominator_names)`` of coefficient-name
  lists, weighted ``+1`` and ``-1``.

The contrast estimate is ``c'β`` with standard error ``sqrt(c'Σc)``.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np
import pandas as pd
from scipy.stats import norm
from statsmodels.stats.multitest import multipletests

from ._exceptions import IncompatibleModelState, InvalidCoefficient
from ._results import ResultsTable
from ._typing import ContrastLike
from .dataset import FittedModel
from .design import (
    design_factors,
    expanded_coefficient_name,
    factor_levels,
    standard_coefficient_name,
)
from .wald import coefficient_label

RESULT_COLUMNS = ("baseMean", "log2FoldChange", "lfcSE", "stat", "pvalue", "padj")


def adjust_bh(pvalues: np.ndarray) -> np.ndarray:
    """Benjamini–Hochberg adjusted p-values; missing values stay missing."""
    p = np.asarray(pvalues, dtype=float)
    padj = np.full_like(p, np.nan)
    ok = ~np.isnan(p)
    if ok.any():
        padj[ok] = multipletests(p[ok], method="fdr_bh")[1]
    return padj


def _is_factor_form(contrast: ContrastLike) -> bool:
    return (
        isinstance(contrast, Sequence)
        and not isinstance(contrast, str)
        and len(contrast) == 3
        and all(isinstance(c, str) for c in contrast)
    )


def _is_list_form(contrast: ContrastLike) -> bool:
    return (
        isinstance(contrast, Sequence)
        and not isinstance(contrast, str)
        and len(contrast) == 2
        and all(
            isinstance(side, Sequence) and not isinstance(side, str) for side in contrast
        )
    )


def contrast_vector(model: FittedModel, contrast: ContrastLike) -> tuple[np.ndarray, str]:
    """Weights over ``model.result_names`` and a label for *contrast*.

    Raises:
        InvalidCoefficient: If the contrast names an unknown factor,
            level or coefficient, or a numeric contrast has the wrong
            length.
    """
    names = list(model.result_names)
    weights = np.zeros(len(names))

    if _is_factor_form(contrast):
        factor, numerator, denominator = (str(c) for c in contrast)
        if isinstance(model.design, pd.DataFrame) or factor not in design_factors(
            model.design, model.metadata
        ):
            raise InvalidCoefficient(f"'{factor}' is not a factor of the design")
        levels = factor_levels(model.metadata, factor)
        for level in (numerator, denominator):
            if level not in levels:
                raise InvalidCoefficient(
                    f"'{level}' is not a level of '{factor}' (levels: {', '.join(levels)})"
                )
        if numerator == denominator:
            raise InvalidCoefficient("contrast numerator and denominator are the same level")
        for level, sign in ((numerator, 1.0), (denominator, -1.0)):
            if model.model_matrix_type == "expanded":
                coef = expanded_coefficient_name(factor, level)
            else:
                coef = standard_coefficient_name(factor, level, model.metadata)
                if coef is None:
                    continue
            if coef not in names:
                raise InvalidCoefficient(f"coefficient '{coef}' is not in the fit")
            weights[names.index(coef)] = sign
        return weights, f"{factor} {numerator} vs {denominator}"

    if _is_list_form(contrast):
        numerator, denominator = ([str(n) for n in side] for side in contrast)
        for coef in (*numerator, *denominator):
            if coef not in names:
                raise InvalidCoefficient(f"coefficient '{coef}' is not in the fit")
        for coef in numerator:
            weights[names.index(coef)] += 1.0
        for coef in denominator:
            weights[names.index(coef)] -= 1.0
        label = " vs ".join(
            "+".join(coefficient_label(n) for n in side) or "0"
            for side in (numerator, denominator)
        )
        return weights, label

    try:
        numeric = np.asarray(contrast, dtype=float)
    except (TypeError, ValueError):
        raise InvalidCoefficient(f"unrecognised contrast: {contrast!r}") from None
    if numeric.shape != (len(names),):
        raise InvalidCoefficient(
            f"numeric contrast must have {len(names)} elements (one per coefficient)"
        )
    if not np.any(numeric):
        raise InvalidCoefficient("numeric contrast must have a non-zero element")
    return numeric, ",".join(f"{w:+g}" for w in numeric)


def _require_fit(model: FittedModel) -> pd.DataFrame:
    if not model.is_fitted or model.row_data is None:
        raise IncompatibleModelState(
            "the model has no coefficient table; call nbinom_wald_test() first"
        )
    return model.row_data


def results(
    model: FittedModel,
    name: str | None = None,
    contrast: ContrastLike | None = None,
) -> ResultsTable:
    """Build the results table for one coefficient or contrast.

    Args:
        model: A model fitted by :func:`~lfc_shrink.nbinom_wald_test`.
        name: Coefficient name; defaults to the last coefficient when
            *contrast* is ``None`` too.
        contrast: Contrast in one of the forms listed in the module
            docstring.

    Raises:
        IncompatibleModelState: If the model has not been fitted.
        InvalidCoefficient: If *name* or *contrast* does not match
            the fit.
        ValueError: If both *name* and *contrast* are given.
    """
    row_data = _require_fit(model)
    if name is not None and contrast is not None:
        raise ValueError("specify only one of name or contrast")
    base = row_data["baseMean"].to_numpy(dtype=float)
    base_desc = model.row_descriptions.get(
        "baseMean", "mean of normalized counts for all samples"
    )

    if contrast is None:
        coef = model.result_names[-1] if name is None else name
        if coef not in model.result_names:
            raise InvalidCoefficient(
                f"'{coef}' is not a coefficient of the fit "
                f"(result names: {', '.join(model.result_names)})"
            )
        label = coefficient_label(coef)
        lfc = row_data[coef].to_numpy(dtype=float)
        se = row_data[f"SE_{coef}"].to_numpy(dtype=float)
        stat = row_data[f"WaldStatistic_{coef}"].to_numpy(dtype=float)
        pvalue = row_data[f"WaldPvalue_{coef}"].to_numpy(dtype=float)
        lfc_desc = model.row_descriptions.get(coef, f"log2 fold change (MLE): {label}")
    else:
        weights, label = contrast_vector(model, contrast)
        beta = row_data[list(model.result_names)].to_numpy(dtype=float)
        if model.coef_covariance is None:
            raise IncompatibleModelState("the fit stored no coefficient covariance")
        lfc = beta @ weights
        se = np.sqrt(np.einsum("i,gij,j->g", weights, model.coef_covariance, weights))
        with np.errstate(divide="ignore", invalid="ignore"):
            stat = lfc / se
        pvalue = 2.0 * norm.sf(np.abs(stat))
        tag = "MAP" if model.beta_prior else "MLE"
        lfc_desc = f"log2 fold change ({tag}): {label}"

    data = pd.DataFrame(
        {
            "baseMean": base,
            "log2FoldChange": lfc,
            "lfcSE": se,
            "stat": stat,
            "pvalue": pvalue,
            "padj": adjust_bh(pvalue),
        },
        index=model.feature_names,
    )
    descriptions = {
        "baseMean": base_desc,
        "log2FoldChange": lfc_desc,
        "lfcSE": f"standard error: {label}",
        "stat": f"Wald statistic: {label}",
        "pvalue": f"Wald test p-value: {label}",
        "padj": "BH adjusted p-values",
    }
    return ResultsTable(data=data, descriptions=descriptions)


__all__ = ["RESULT_COLUMNS", "adjust_bh", "contrast_vector", "results"]
