"""Containers returned by a shrinkage call.

* :class:`ResultsTable`: one row per feature, a description per
  column, and the :class:`PriorInfo` of the estimator that filled it.
* :class:`PriorInfo`: which estimator ran, from which package and
  version, and the prior it fitted.  Fields read as attributes
  (``info.type``) or as keys (``info["type"]``, ``info.get(...)``),
  and ``to_dict()`` gives a JSON-ready copy.
* :class:`ShrinkageDetail`: the ``(res, fit)`` pair returned under
  ``return_fit=True``.

None of them can be edited in place; the ``with_*`` methods of
:class:`ResultsTable` return new tables.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, fields
from typing import Any, NamedTuple

import numpy as np
import pandas as pd

# ------------------------------------------------------------------ #
# Serialisation
# ------------------------------------------------------------------ #


def _numpy_to_python(obj: Any) -> Any:
    """Plain-Python copy of *obj*: Series become dicts, arrays lists."""
    if isinstance(obj, pd.Series):
        return {str(k): _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, Mapping):
        return {k: _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return type(obj)(_numpy_to_python(item) for item in obj)
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return _numpy_to_python(to_dict())
    return obj


# ------------------------------------------------------------------ #
# Key access
# ------------------------------------------------------------------ #


class _DictAccessMixin:
    """``obj["field"]``, ``obj.get("field")`` and ``"field" in obj``."""

    def __getitem__(self, key: str) -> Any:
        try:
            return getattr(self, key)
        except AttributeError:
            raise KeyError(key) from None

    def get(self, key: str, default: Any = None) -> Any:
        return getattr(self, key, default)

    def __contains__(self, key: object) -> bool:
        return any(f.name == key for f in fields(self))  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain, JSON-serialisable dictionary."""
        return {
            f.name: _numpy_to_python(getattr(self, f.name))
            for f in fields(self)  # type: ignore[arg-type]
        }


# ------------------------------------------------------------------ #
# PriorInfo
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class PriorInfo(_DictAccessMixin):
    """Provenance of a shrunk results table.

    Exactly one of the payload fields is populated, depending on the
    estimator that produced the table.
    """

    type: str
    """Estimator name: ``"normal"``, ``"apeglm"`` or ``"ashr"``."""

    package: str
    """Distribution that implements the estimator."""

    version: str
    """Version of that distribution."""

    estimator_kind: str
    """``"normal"``, ``"external-parametric"`` or ``"external-nonparametric"``."""

    beta_prior_var: pd.Series | None = None
    """Normal prior variance per coefficient (log2 scale)."""

    prior_control: dict[str, Any] | None = None
    """Prior settings of the apeglm fit (from the first partition)."""

    fitted_g: Any = None
    """Fitted mixture prior of the ashr fit."""


# ------------------------------------------------------------------ #
# ResultsTable
# ------------------------------------------------------------------ #


@dataclass(frozen=True, eq=False)
class ResultsTable:
    """Per-feature results with one description string per column.

    Attributes:
        data: One row per feature, in the fitted model's row order.
        descriptions: Column name → human-readable description.
        prior_info: Provenance of the shrinkage, ``None`` for an
            unshrunk table.
    """

    data: pd.DataFrame
    descriptions: Mapping[str, str] = field(default_factory=dict)
    prior_info: PriorInfo | None = None

    def __post_init__(self) -> None:
        missing = [c for c in self.data.columns if c not in self.descriptions]
        extra = [c for c in self.descriptions if c not in self.data.columns]
        if missing or extra:
            desc = {c: self.descriptions.get(c, "") for c in self.data.columns}
            object.__setattr__(self, "descriptions", desc)
        else:
            object.__setattr__(self, "descriptions", dict(self.descriptions))

    # ---- Read access -----------------------------------------------

    def __len__(self) -> int:
        return len(self.data)

    def __getitem__(self, column: str) -> pd.Series:
        return self.data[column]

    def __contains__(self, column: object) -> bool:
        return column in self.data.columns

    def __repr__(self) -> str:
        head = f"ResultsTable with {len(self)} rows and {len(self.columns)} columns"
        if self.prior_info is not None:
            head += f" (shrunk by {self.prior_info.type})"
        return f"{head}\n{self.data!r}"

    @property
    def columns(self) -> list[str]:
        return list(self.data.columns)

    @property
    def index(self) -> pd.Index:
        return self.data.index

    def description(self, column: str) -> str:
        return self.descriptions[column]

    def to_frame(self) -> pd.DataFrame:
        """Copy of the underlying data."""
        return self.data.copy()

    # ---- Derived copies --------------------------------------------

    def select(self, columns: Sequence[str]) -> ResultsTable:
        """Keep only *columns*, in the given order."""
        cols = list(columns)
        return ResultsTable(
            data=self.data.loc[:, cols].copy(),
            descriptions={c: self.descriptions[c] for c in cols},
            prior_info=self.prior_info,
        )

    def drop(self, columns: Iterable[str]) -> ResultsTable:
        dropped = set(columns)
        return self.select([c for c in self.columns if c not in dropped])

    def with_column(
        self, name: str, values: Any, description: str | None = None
    ) -> ResultsTable:
        """Set (or append) column *name*.

        The existing description is kept when *description* is ``None``.
        """
        data = self.data.copy()
        data[name] = np.asarray(values)
        descriptions = dict(self.descriptions)
        if description is not None or name not in descriptions:
            descriptions[name] = description or ""
        return ResultsTable(data=data, descriptions=descriptions, prior_info=self.prior_info)

    def with_description(self, name: str, description: str) -> ResultsTable:
        if name not in self.data.columns:
            raise KeyError(name)
        descriptions = dict(self.descriptions)
        descriptions[name] = description
        return ResultsTable(data=self.data, descriptions=descriptions, prior_info=self.prior_info)

    def with_prior_info(self, prior_info: PriorInfo | None) -> ResultsTable:
        return ResultsTable(data=self.data, descriptions=self.descriptions, prior_info=prior_info)


# ------------------------------------------------------------------ #
# ShrinkageDetail
# ------------------------------------------------------------------ #


class ShrinkageDetail(NamedTuple):
    """Shrunk results together with the raw estimator output.

    Unpacks as a pair: ``res, fit = lfc_shrink(..., return_fit=True)``.
    """

    res: ResultsTable
    fit: Any


__all__ = ["PriorInfo", "ResultsTable", "ShrinkageDetail"]
