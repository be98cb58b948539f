"""Adaptive mixture-prior shrinkage through the ashr-style estimator.

Works on the results table alone: the incoming LFC and SE are the
estimator's inputs and the posterior mean and SD are its outputs, so
any coefficient or contrast the table describes can be shrunk.  The
estimator is always run once over all features.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np

from .._estimators import locate_estimator
from .._results import PriorInfo
from . import ShrinkOutcome

if TYPE_CHECKING:
    from .._context import ShrinkContext

logger = logging.getLogger(__name__)

_PVALUE_PREFIX = "p-value: "


def _svalue_label(pvalue_description: str) -> str:
    _, sep, tail = pvalue_description.partition(_PVALUE_PREFIX)
    return tail if sep else pvalue_description


class AshrShrinker:
    """Mixture-of-normals prior fitted to the incoming estimates."""

    name: str = "ashr"
    supports_parallel: bool = False
    needs_dispersions: bool = False

    def validate(self, *, contrast: object, svalue: bool) -> None:
        return None

    def shrink(self, ctx: ShrinkContext) -> ShrinkOutcome:
        spec = locate_estimator("ashr")
        logger.info(
            "using 'ashr' for LFC shrinkage. If used in published research, please cite:\n"
            "    Stephens, M. (2016) False discovery rates: a new deal. "
            "Biostatistics, 18:2. https://doi.org/10.1093/biostatistics/kxw041"
        )
        if ctx.pool is not None:
            logger.debug("ashr runs once over all features; the worker pool is not used")

        res = ctx.res
        options = {"mixcompdist": "normal", "method": "shrink", **ctx.estimator_kwargs}
        fit = spec.func(res["log2FoldChange"], res["lfcSE"], **options)

        table = fit.result
        prior_info = PriorInfo(
            type="ashr",
            package=spec.package,
            version=spec.version,
            estimator_kind="external-nonparametric",
            fitted_g=fit.fitted_g,
        )
        label = _svalue_label(res.description("pvalue")) if "pvalue" in res else None
        return ShrinkOutcome(
            lfc=np.asarray(table["PosteriorMean"], dtype=float),
            lfc_se=np.asarray(table["PosteriorSD"], dtype=float),
            tag="PostMean",
            prior_info=prior_info,
            fit=fit,
            svalue=np.asarray(table["svalue"], dtype=float),
            svalue_label=label,
        )
