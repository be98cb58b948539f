"""Normal-prior shrinkage by MAP refit.

Algorithm
---------
1. Tag the MLE coefficient columns of a copy of the model with the
   ``MLE_`` prefix so the refit cannot overwrite them.
2. Estimate a zero-centred normal prior variance per coefficient from
   the spread of the MLE estimates
   (:func:`~lfc_shrink.prior.estimate_beta_prior_var`).
3. Refit every feature under that prior (ridge penalty ``1 / σ²``),
   serially or chunk by chunk on the worker pool, and run the Wald
   tests on the MAP coefficients.
4. Read the shrunk LFC and SE off the refit: by coefficient name, or
   by contrast, in which case the whole results row is regenerated.

A contrast given as ``[factor, numerator, denominator]`` is refit on
the *expanded* model matrix (one column per factor level) so the
prior treats every level symmetrically; coefficient and other
contrast forms are refit on the standard matrix.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np

from .._exceptions import IncompatibleModelState, UnsupportedContrast
from .._estimators import package_version
from .._results import PriorInfo
from ..design import has_interactions
from ..glm import GLMFit
from ..partition import map_partitions
from ..prior import estimate_beta_prior_var, tag_mle_columns
from ..results import _is_factor_form, results
from ..wald import apply_wald_test, fit_model, model_matrix_for, prior_lambda
from . import ShrinkOutcome

if TYPE_CHECKING:
    from .._context import ShrinkContext

logger = logging.getLogger(__name__)


class NormalShrinker:
    """Zero-centred normal prior, fitted by refitting the GLM.

    The refit model is returned as the raw fit under ``return_fit``.
    """

    name: str = "normal"
    supports_parallel: bool = True
    needs_dispersions: bool = True

    def validate(self, *, contrast: object, svalue: bool) -> None:
        if svalue:
            raise ValueError(
                "svalue=True requires estimator='apeglm' or 'ashr'; the normal "
                "prior does not produce s-values"
            )

    def shrink(self, ctx: ShrinkContext) -> ShrinkOutcome:
        model = ctx.model
        user_matrix = model.user_model_matrix()
        if user_matrix is not None:
            if ctx.contrast is not None:
                raise UnsupportedContrast(
                    "a user-supplied model matrix only supports shrinking a coefficient "
                    "with estimator='normal'; use coef= instead of contrast="
                )
        elif has_interactions(model.design):
            raise IncompatibleModelState(
                "estimator='normal' does not support designs with interaction terms; "
                "use estimator='apeglm' or 'ashr'"
            )

        if ctx.contrast is not None and _is_factor_form(ctx.contrast):
            matrix_type = "expanded"
        else:
            matrix_type = "standard"

        if model.row_data is None:
            raise IncompatibleModelState(
                "the model has no coefficient table; call nbinom_wald_test() first"
            )
        row_data, descriptions = tag_mle_columns(model.row_data, model.row_descriptions)
        tagged = model.replace(row_data=row_data, row_descriptions=descriptions)

        prior_var = estimate_beta_prior_var(
            tagged, model_matrix=user_matrix, model_matrix_type=matrix_type
        )
        X = model_matrix_for(tagged, user_matrix, matrix_type)
        lambda_ = prior_lambda(prior_var, list(X.columns))
        logger.debug(
            "normal refit: %d features, %s model matrix, %s",
            model.n_features,
            matrix_type,
            "partitioned" if ctx.parallel else "serial",
        )

        if ctx.pool is not None and model.n_features > 0:

            def _refit(rows: np.ndarray) -> GLMFit:
                return fit_model(
                    tagged.subset_rows(rows), X, lambda_=lambda_, backend=ctx.backend
                )

            parts, row_indices = map_partitions(
                _refit, model.n_features, ctx.pool, bpx=ctx.bpx
            )
            fit = GLMFit.merge(parts, row_indices, model.n_features)
        else:
            fit = fit_model(tagged, X, lambda_=lambda_, backend=ctx.backend)

        refit = apply_wald_test(
            tagged,
            fit,
            beta_prior=True,
            model_matrix_type=matrix_type,
            model_matrix=user_matrix,
            stacklevel=5,
        )

        prior_info = PriorInfo(
            type="normal",
            package="lfc_shrink",
            version=package_version("lfc_shrink"),
            estimator_kind="normal",
            beta_prior_var=prior_var,
        )

        if ctx.contrast is None:
            shrunk = results(refit, name=ctx.coef.name)
            return ShrinkOutcome(
                lfc=shrunk["log2FoldChange"].to_numpy(dtype=float),
                lfc_se=shrunk["lfcSE"].to_numpy(dtype=float),
                tag="MAP",
                prior_info=prior_info,
                fit=refit,
                descriptions={
                    "log2FoldChange": shrunk.description("log2FoldChange"),
                    "lfcSE": shrunk.description("lfcSE"),
                },
            )

        shrunk = results(refit, contrast=ctx.contrast)
        return ShrinkOutcome(
            lfc=shrunk["log2FoldChange"].to_numpy(dtype=float),
            lfc_se=shrunk["lfcSE"].to_numpy(dtype=float),
            tag="MAP",
            prior_info=prior_info,
            fit=refit,
            replacement=shrunk,
        )
