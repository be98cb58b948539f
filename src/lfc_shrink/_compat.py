"""Accept Polars frames wherever a count matrix or metadata is read.

:class:`~lfc_shrink.dataset.FittedModel` keeps pandas objects only.
:func:`to_pandas_frame` converts a ``polars.DataFrame`` or
``polars.LazyFrame`` on the way in.  Polars frames have no row index,
so the column holding feature identifiers is named with
``index_col``.

Polars is an optional extra; without it only pandas input is accepted.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeAlias

import pandas as pd

if TYPE_CHECKING:
    import polars as pl

    DataFrameLike: TypeAlias = pd.DataFrame | pl.DataFrame | pl.LazyFrame
else:
    DataFrameLike: TypeAlias = pd.DataFrame

try:
    import polars as pl

    _HAS_POLARS = True
except ImportError:
    _HAS_POLARS = False


def _from_polars(obj: object) -> pd.DataFrame | None:
    if not _HAS_POLARS:
        return None
    if isinstance(obj, pl.LazyFrame):
        obj = obj.collect()
    if isinstance(obj, pl.DataFrame):
        return obj.to_pandas()
    return None


def to_pandas_frame(
    obj: DataFrameLike,
    *,
    name: str = "input",
    index_col: str | None = None,
) -> pd.DataFrame:
    """Return *obj* as a pandas DataFrame.

    pandas input is returned unchanged (same object).  Polars input is
    converted and, with *index_col*, that column becomes the index.

    Args:
        obj: pandas DataFrame, Polars DataFrame or Polars LazyFrame.
        name: Argument name for error messages.
        index_col: Column to use as the index of converted Polars
            input.

    Raises:
        TypeError: If *obj* is none of the accepted types.
        KeyError: If *index_col* is missing from the converted frame.
    """
    if isinstance(obj, pd.DataFrame):
        return obj

    frame = _from_polars(obj)
    if frame is None:
        accepted = "a pandas or Polars DataFrame" if _HAS_POLARS else "a pandas DataFrame"
        raise TypeError(f"'{name}' must be {accepted}, got {type(obj).__name__}")
    if index_col is not None:
        if index_col not in frame.columns:
            raise KeyError(f"index_col '{index_col}' is not a column of '{name}'")
        frame = frame.set_index(index_col)
    return frame
