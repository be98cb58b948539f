"""Coefficient resolution and call-spec validation."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from ._exceptions import ConflictingSpec, InvalidCoefficient, MissingSpec
from ._typing import CoefLike


@dataclass(frozen=True)
class CoefficientId:
    """Canonical identity of one fitted coefficient.

    Attributes:
        name: Coefficient name as in ``result_names``.
        index: 1-based position in ``result_names``.
    """

    name: str
    index: int

    @property
    def column(self) -> int:
        """0-based column of the coefficient in the model matrix."""
        return self.index - 1


def resolve_coefficient(result_names: Sequence[str], coef: CoefLike) -> CoefficientId:
    """Map a 1-based index or an exact name to a :class:`CoefficientId`.

    Resolving a name and its index gives equal identities.

    Raises:
        InvalidCoefficient: If the index is out of range, the name is
            unknown, or *coef* is neither an integer nor a string.
    """
    names = list(result_names)
    if isinstance(coef, (bool, np.bool_)):
        raise InvalidCoefficient(f"coef must be an integer index or a name, got {coef!r}")
    if isinstance(coef, (int, np.integer)):
        if not 1 <= int(coef) <= len(names):
            raise InvalidCoefficient(
                f"coef index {int(coef)} is out of range; the fit has "
                f"{len(names)} coefficients (1-based)"
            )
        return CoefficientId(name=names[int(coef) - 1], index=int(coef))
    if isinstance(coef, str):
        if coef not in names:
            raise InvalidCoefficient(
                f"'{coef}' is not a coefficient of the fit "
                f"(result names: {', '.join(names)})"
            )
        return CoefficientId(name=coef, index=names.index(coef) + 1)
    raise InvalidCoefficient(f"coef must be an integer index or a name, got {coef!r}")


def check_spec(coef: object, contrast: object, res: object) -> None:
    """Enforce that exactly one of *coef* / *contrast* is given.

    Neither is allowed only when a results table *res* is supplied.

    Raises:
        ConflictingSpec: If both are given.
        MissingSpec: If neither is given and *res* is ``None``.
    """
    if coef is not None and contrast is not None:
        raise ConflictingSpec("only one of coef or contrast can be specified, not both")
    if coef is None and contrast is None and res is None:
        raise MissingSpec("one of coef or contrast is required when res is not supplied")


_MLE_LFC_PREFIX = "log2 fold change (MLE): "


def coefficient_from_description(description: str) -> str:
    """Coefficient name encoded in an MLE log2 fold change description.

    ``"log2 fold change (MLE): condition B vs A"`` gives
    ``"condition_B_vs_A"``.
    """
    return description.replace(_MLE_LFC_PREFIX, "", 1).replace(" ", "_")


__all__ = [
    "CoefficientId",
    "check_spec",
    "coefficient_from_description",
    "resolve_coefficient",
]
