"""Shrinkage context — the resolved inputs of one shrinkage call.

A :class:`ShrinkContext` is built by
:class:`~lfc_shrink.engine.ShrinkageEngine` once every argument has
been validated, and handed to the selected shrinker.  It is a frozen
snapshot: shrinkers read from it and return a
:class:`~lfc_shrink._shrinkers.ShrinkOutcome`; they never write back.

Lifecycle::

    ┌──────────────────────────────────────────────┐
    │  lfc_shrink()                                │
    │  ├─ ShrinkageEngine(model, coef, …)          │
    │  │   ├─ shrinker = resolve_shrinker(…)       │
    │  │   ├─ check_spec / resolve_coefficient     │
    │  │   ├─ res = results(model, …)  (if absent) │
    │  │   └─ ctx = ShrinkContext(…)               │
    │  ├─ outcome = shrinker.shrink(ctx)           │
    │  ├─ assemble_results(ctx.res, outcome, …)    │
    │  └─ return table  (or ShrinkageDetail)       │
    └──────────────────────────────────────────────┘
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ._results import ResultsTable
from ._typing import ContrastLike
from .dataset import FittedModel
from .resolver import CoefficientId

if TYPE_CHECKING:
    from joblib import Parallel


@dataclass(frozen=True)
class ShrinkContext:
    """Validated inputs shared by every shrinker.

    Sections
    --------
    **Model** — the caller's fitted model and the unshrunk results
    table (built on demand when the caller did not supply one).

    **Spec** — the resolved coefficient, or the contrast.

    **Options** — s-values, apeglm settings and execution settings.
    """

    # ---- Model ---------------------------------------------------
    model: FittedModel
    """The caller's fitted model (read-only)."""

    res: ResultsTable
    """Unshrunk results, row-aligned with :attr:`model`."""

    # ---- Spec ----------------------------------------------------
    coef: CoefficientId | None = None
    """Resolved coefficient, ``None`` when a contrast is shrunk."""

    contrast: ContrastLike | None = None
    """Contrast as given by the caller."""

    # ---- Options -------------------------------------------------
    svalue: bool = False
    """Replace p-values with s-values in the output."""

    ape_adapt: bool = True
    """Adapt the apeglm prior scale to the MLE estimates."""

    ape_method: str = "nbinomCR"
    """apeglm fitting method."""

    pool: Parallel | None = None
    """Worker pool; ``None`` runs serially."""

    bpx: int = 1
    """Chunks per worker for partitioned execution."""

    backend: str | None = None
    """IRLS solver backend for the normal refit."""

    estimator_kwargs: Mapping[str, Any] = field(default_factory=dict)
    """Options forwarded verbatim to the external estimator."""

    @property
    def parallel(self) -> bool:
        return self.pool is not None
