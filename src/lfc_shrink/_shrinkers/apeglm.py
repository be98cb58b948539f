"""Adaptive heavy-tailed prior shrinkage through the apeglm-style estimator.

The estimator works on the natural-log scale: the MLE estimates and
standard errors handed to it for prior adaptation are multiplied by
``ln 2``, and its posterior modes and SDs are multiplied by
``log2(e)`` on the way back.  Only a single coefficient can be
shrunk, and it must be the coefficient the incoming results table
describes.
"""

from __future__ import annotations

import logging
import warnings
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from .._exceptions import (
    ConvergenceWarning,
    IncompatibleModelState,
    InvalidCoefficient,
    UnsupportedContrast,
)
from .._estimators import locate_estimator
from .._estimators.apeglm import ApeglmFit, log_lik_nb
from .._results import PriorInfo
from ..design import build_model_matrix
from ..glm import LN2
from ..partition import map_partitions
from ..resolver import coefficient_from_description
from ..wald import coefficient_label
from . import ShrinkOutcome

if TYPE_CHECKING:
    from .._context import ShrinkContext

logger = logging.getLogger(__name__)

LOG2E = 1.0 / LN2


class ApeglmShrinker:
    """Cauchy prior with an MLE-adapted scale on one coefficient."""

    name: str = "apeglm"
    supports_parallel: bool = True
    needs_dispersions: bool = True

    def validate(self, *, contrast: object, svalue: bool) -> None:
        if contrast is not None:
            raise UnsupportedContrast(
                "estimator='apeglm' shrinks a single coefficient; use coef= or "
                "estimator='ashr' for contrasts"
            )

    def shrink(self, ctx: ShrinkContext) -> ShrinkOutcome:
        spec = locate_estimator("apeglm")
        logger.info("using 'apeglm' for LFC shrinkage")

        model, res, coef = ctx.model, ctx.res, ctx.coef
        incoming = coefficient_from_description(res.description("log2FoldChange"))
        if coef.name != incoming:
            raise InvalidCoefficient(
                f"coef '{coef.name}' does not match the coefficient of the results "
                f"table ('{incoming}'); pass the same coefficient to results() and "
                "lfc_shrink()"
            )

        user_matrix = model.user_model_matrix()
        X = user_matrix if user_matrix is not None else build_model_matrix(
            model.design, model.metadata
        )
        counts = model.counts
        offset = np.log(model.normalization_matrix())
        weights = model.weights_matrix()
        dispersions = np.asarray(model.dispersions, dtype=float)

        mle = None
        if ctx.ape_adapt:
            mle = LN2 * np.column_stack(
                [res["log2FoldChange"].to_numpy(dtype=float), res["lfcSE"].to_numpy(dtype=float)]
            )
        log_lik = log_lik_nb if ctx.ape_method == "general" else None
        extra: dict[str, Any] = dict(ctx.estimator_kwargs)

        def _run(rows: np.ndarray) -> ApeglmFit:
            return spec.func(
                Y=counts.iloc[rows],
                x=X,
                log_lik=log_lik,
                param=dispersions[rows],
                coef=coef.index,
                mle=mle,
                weights=weights[rows],
                offset=offset[rows],
                method=ctx.ape_method,
                **extra,
            )

        if ctx.pool is not None and model.n_features > 0:
            parts, _ = map_partitions(_run, model.n_features, ctx.pool, bpx=ctx.bpx)
            fit = ApeglmFit.concat(parts)
        else:
            fit = _run(np.arange(model.n_features))

        if len(fit.map) != model.n_features:
            raise IncompatibleModelState(
                f"the apeglm estimator returned {len(fit.map)} rows for "
                f"{model.n_features} features"
            )
        conv = pd.to_numeric(fit.diag["conv"], errors="coerce").to_numpy(dtype=float)
        n_bad = int(np.sum(~np.isnan(conv) & (conv != 0)))
        if n_bad:
            warnings.warn(
                f"{n_bad} rows did not converge in finding the MAP",
                ConvergenceWarning,
                stacklevel=4,
            )

        prior_info = PriorInfo(
            type="apeglm",
            package=spec.package,
            version=spec.version,
            estimator_kind="external-parametric",
            prior_control=dict(fit.prior_control),
        )
        return ShrinkOutcome(
            lfc=LOG2E * fit.map.iloc[:, coef.column].to_numpy(dtype=float),
            lfc_se=LOG2E * fit.sd.iloc[:, coef.column].to_numpy(dtype=float),
            tag="MAP",
            prior_info=prior_info,
            fit=fit,
            svalue=np.asarray(fit.svalue, dtype=float),
            svalue_label=coefficient_label(coef.name),
        )
