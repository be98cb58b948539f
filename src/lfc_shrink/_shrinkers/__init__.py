"""Shrinker registry and protocol.

Each shrinker wraps one way of moderating log2 fold changes (the
normal-prior refit, the apeglm-style adaptive Cauchy prior, the
ashr-style mixture prior) behind a uniform ``shrink()`` interface that
:class:`~lfc_shrink.engine.ShrinkageEngine` calls once it has resolved
the coefficient, the unshrunk results and the worker pool.

A shrinker never edits the results table itself.  It returns a
:class:`ShrinkOutcome` (shrunk LFC and SE vectors plus the metadata
the assembler needs) and
:func:`~lfc_shrink.assemble.assemble_results` writes it into a copy.

Adding a new shrinker
~~~~~~~~~~~~~~~~~~~~~
1. Create a module under ``_shrinkers/`` with a class that satisfies
   the :class:`Shrinker` protocol.
2. Register it in :func:`_ensure_registry` below.
3. The engine and :func:`~lfc_shrink.lfc_shrink` will pick it up
   automatically.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import numpy as np

if TYPE_CHECKING:
    from .._context import ShrinkContext
    from .._results import PriorInfo, ResultsTable

# ------------------------------------------------------------------ #
# Outcome
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class ShrinkOutcome:
    """What a shrinker hands back to the assembler.

    Attributes:
        lfc: Shrunk log2 fold changes, row-aligned with the results.
        lfc_se: Their standard errors.
        tag: Label replacing ``MLE`` in the LFC description
            (``"MAP"`` or ``"PostMean"``).
        prior_info: Provenance record attached to the output.
        fit: Raw estimator output, returned under ``return_fit``.
        descriptions: Column descriptions taken over verbatim instead
            of rewriting the incoming ones.
        svalue: s-values, when the estimator produces them.
        svalue_label: Label for the ``"s-value: <label>"`` description.
        replacement: A regenerated results table whose test columns
            replace the incoming ones (normal refit of a contrast).
    """

    lfc: np.ndarray
    lfc_se: np.ndarray
    tag: str
    prior_info: PriorInfo
    fit: Any = None
    descriptions: dict[str, str] | None = None
    svalue: np.ndarray | None = None
    svalue_label: str | None = None
    replacement: ResultsTable | None = None


# ------------------------------------------------------------------ #
# Shrinker protocol
# ------------------------------------------------------------------ #


@runtime_checkable
class Shrinker(Protocol):
    """Interface that every shrinker must satisfy.

    ``validate()`` runs before any results are computed and rejects
    call shapes the shrinker cannot handle; ``shrink()`` does the work.
    """

    name: str
    """Canonical estimator name (``"normal"``, ``"apeglm"``, ``"ashr"``)."""

    supports_parallel: bool
    """Whether ``shrink()`` partitions features over a worker pool."""

    needs_dispersions: bool
    """Whether the model must carry dispersion estimates."""

    def validate(self, *, contrast: object, svalue: bool) -> None:
        """Reject unsupported argument combinations."""
        ...

    def shrink(self, ctx: ShrinkContext) -> ShrinkOutcome:
        """Compute shrunk LFCs for every row of ``ctx.res``."""
        ...


# ------------------------------------------------------------------ #
# Registry
# ------------------------------------------------------------------ #

_SHRINKER_REGISTRY: dict[str, type[Shrinker]] = {}

# Descriptive names accepted alongside the short ones.
_ALIASES = {
    "external-parametric": "apeglm",
    "external-nonparametric": "ashr",
}


def _ensure_registry() -> None:
    """Populate the registry on first access."""
    if _SHRINKER_REGISTRY:
        return

    from .apeglm import ApeglmShrinker
    from .ashr import AshrShrinker
    from .normal import NormalShrinker

    _SHRINKER_REGISTRY.update(
        {
            "normal": NormalShrinker,
            "apeglm": ApeglmShrinker,
            "ashr": AshrShrinker,
        }
    )


def resolve_shrinker(estimator: str) -> Shrinker:
    """Return a shrinker instance for the given estimator name.

    Args:
        estimator: One of ``"normal"``, ``"apeglm"``, ``"ashr"``, or
            the aliases ``"external-parametric"`` (apeglm) and
            ``"external-nonparametric"`` (ashr).

    Raises:
        ValueError: If *estimator* is not recognised.
    """
    _ensure_registry()
    key = _ALIASES.get(estimator, estimator) if isinstance(estimator, str) else None
    cls = _SHRINKER_REGISTRY.get(key) if key is not None else None
    if cls is None:
        valid = ", ".join(sorted([*_SHRINKER_REGISTRY, *_ALIASES]))
        raise ValueError(f"Invalid estimator '{estimator}'. Choose from: {valid}.")
    return cls()


__all__ = [
    "ShrinkOutcome",
    "Shrinker",
    "resolve_shrinker",
]
