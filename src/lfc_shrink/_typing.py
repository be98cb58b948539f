"""Shared type aliases for the lfc_shrink package."""

from collections.abc import Sequence

import numpy as np

# A coefficient reference: 1-based index or exact name.
CoefLike = int | str

# A contrast: [factor, numerator, denominator], a numeric vector over
# the coefficient names, or a (numerator names, denominator names) pair.
ContrastLike = Sequence[str] | Sequence[float] | np.ndarray | tuple[Sequence[str], Sequence[str]]
