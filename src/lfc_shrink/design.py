"""Design formulas and model matrices.

A design is either a formula string such as ``"~ batch + condition"``
evaluated against the sample metadata, or a user-supplied model
matrix (a ``DataFrame`` of samples × coefficients).  This module turns
formulas into the two model-matrix flavours used by the fit:

* **standard** — treatment coding via ``patsy``.  The first level of
  each factor is the reference, and coefficients are named
  ``"<factor>_<level>_vs_<reference>"``; continuous covariates keep
  their column name and the intercept is ``"Intercept"``.
* **expanded** — an intercept plus one indicator column *per level*
  of every factor (``"<factor><level>"``).  Over-parameterised on
  purpose: under a ridge penalty every level is shrunk toward the
  intercept symmetrically, so the result of a contrast does not
  depend on which level happens to be the reference.

Factor levels follow the ``pandas.Categorical`` category order when
the metadata column is categorical, otherwise sorted order — which is
what ``patsy`` does, so both flavours agree on the reference level.
Re-level a factor by making it categorical with the reference first.
"""

from __future__ import annotations

import re

import numpy as np
import pandas as pd
from patsy import ModelDesc, dmatrix

_INTERCEPT = "Intercept"

# "condition[T.B]" or "C(condition)[T.B]" or "C(condition, Sum)[T.B]"
_TREATMENT_COL = re.compile(r"^(?:C\()?(?P<var>[^\[\(\),\s]+)[^\[]*\[T\.(?P<level>.+)\]$")
_C_CALL = re.compile(r"^C\(\s*(?P<var>[^,\)\s]+).*\)$")
_UNSAFE = re.compile(r"[^0-9A-Za-z_.]")


def _clean_name(name: str) -> str:
    return _UNSAFE.sub("_", name)


def _normalise_formula(design: str) -> str:
    formula = design.strip()
    if not formula.startswith("~"):
        formula = "~ " + formula
    return formula


def _variable_name(code: str) -> str:
    """Strip a ``C(...)`` wrapper from a patsy factor code."""
    match = _C_CALL.match(code.strip())
    return match.group("var") if match else code.strip()


def design_terms(design: str) -> list[tuple[str, ...]]:
    """Return the right-hand-side terms of *design* as tuples of variable names.

    The intercept term is returned as an empty tuple.  An interaction
    ``a:b`` is returned as ``("a", "b")``.
    """
    desc = ModelDesc.from_formula(_normalise_formula(design))
    return [
        tuple(_variable_name(factor.code) for factor in term.factors)
        for term in desc.rhs_termlist
    ]


def has_intercept(design: str) -> bool:
    """Whether the formula keeps the intercept term."""
    return () in design_terms(design)


def has_interactions(design: str) -> bool:
    """Whether any term of the formula involves more than one variable."""
    return any(len(term) > 1 for term in design_terms(design))


def is_factor(metadata: pd.DataFrame, variable: str) -> bool:
    """Whether *variable* is treated as categorical in a model matrix."""
    col = metadata[variable]
    return isinstance(col.dtype, pd.CategoricalDtype) or not (
        pd.api.types.is_numeric_dtype(col) and not pd.api.types.is_bool_dtype(col)
    )


def factor_levels(metadata: pd.DataFrame, variable: str) -> list[str]:
    """Levels of a factor, reference level first."""
    col = metadata[variable]
    if isinstance(col.dtype, pd.CategoricalDtype):
        levels = list(col.cat.categories)
    else:
        levels = sorted(col.dropna().unique().tolist())
    return [str(lvl) for lvl in levels]


def design_factors(design: str, metadata: pd.DataFrame) -> list[str]:
    """Variables of *design* that enter the model as factors."""
    seen: list[str] = []
    for term in design_terms(design):
        for var in term:
            if var in metadata.columns and is_factor(metadata, var) and var not in seen:
                seen.append(var)
    return seen


def _rename_column(col: str, metadata: pd.DataFrame) -> str:
    if col == _INTERCEPT:
        return col
    parts = col.split(":")
    if len(parts) == 1:
        match = _TREATMENT_COL.match(col)
        if match is None:
            return _clean_name(col)
        var, level = match.group("var"), match.group("level")
        reference = factor_levels(metadata, var)[0]
        return _clean_name(f"{var}_{level}_vs_{reference}")
    # Interaction columns: "a[T.x]:b[T.y]" -> "ax.by"
    pieces = []
    for part in parts:
        match = _TREATMENT_COL.match(part)
        pieces.append(
            f"{match.group('var')}{match.group('level')}" if match else part
        )
    return _clean_name(".".join(pieces))


def build_model_matrix(design: str, metadata: pd.DataFrame) -> pd.DataFrame:
    """Evaluate *design* against *metadata* with treatment coding.

    Args:
        design: Formula string, with or without the leading ``~``.
        metadata: Sample metadata, one row per sample.

    Returns:
        Model matrix ``(n_samples, n_coefficients)`` indexed like
        *metadata*, with coefficient names as columns.
    """
    mm = dmatrix(_normalise_formula(design), metadata, return_type="dataframe")
    mm.columns = [_rename_column(str(c), metadata) for c in mm.columns]
    mm.index = metadata.index
    return mm.astype(float)


def build_expanded_model_matrix(design: str, metadata: pd.DataFrame) -> pd.DataFrame:
    """Build the expanded model matrix (one indicator per factor level).

    Only main-effect designs are supported; interaction terms have no
    expanded counterpart.

    Raises:
        ValueError: If the design contains interaction terms.
    """
    if has_interactions(design):
        raise ValueError("expanded model matrices require a design without interactions")

    columns: dict[str, np.ndarray] = {}
    for term in design_terms(design):
        if not term:
            columns[_INTERCEPT] = np.ones(len(metadata))
            continue
        var = term[0]
        values = metadata[var]
        if is_factor(metadata, var):
            as_str = values.astype(str).to_numpy()
            for level in factor_levels(metadata, var):
                columns[_clean_name(f"{var}{level}")] = (as_str == level).astype(float)
        else:
            columns[_clean_name(var)] = values.to_numpy(dtype=float)
    return pd.DataFrame(columns, index=metadata.index)


def expanded_level_columns(design: str, metadata: pd.DataFrame) -> dict[str, list[str]]:
    """Map each factor of *design* to its expanded column names, in level order."""
    return {
        var: [_clean_name(f"{var}{level}") for level in factor_levels(metadata, var)]
        for var in design_factors(design, metadata)
    }


def standard_coefficient_name(factor: str, level: str, metadata: pd.DataFrame) -> str | None:
    """Standard coefficient name for *level* of *factor*, or ``None`` for the reference."""
    reference = factor_levels(metadata, factor)[0]
    if level == reference:
        return None
    return _clean_name(f"{factor}_{level}_vs_{reference}")


def expanded_coefficient_name(factor: str, level: str) -> str:
    """Expanded coefficient name for *level* of *factor*."""
    return _clean_name(f"{factor}{level}")


def is_intercept(name: str) -> bool:
    """Whether a coefficient name denotes the intercept."""
    return name in (_INTERCEPT, "(Intercept)")


__all__ = [
    "build_expanded_model_matrix",
    "build_model_matrix",
    "design_factors",
    "design_terms",
    "expanded_coefficient_name",
    "expanded_level_columns",
    "factor_levels",
    "has_intercept",
    "has_interactions",
    "is_factor",
    "is_intercept",
    "standard_coefficient_name",
]
