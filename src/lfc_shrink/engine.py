"""Shrinkage engine — Builder for validation, resolution and dispatch.

The :class:`ShrinkageEngine` centralises everything that happens
*before* a shrinker runs:

1. **Argument checks** — ``bpx``, the estimator name and the
   estimator's own restrictions (s-values, contrasts).
2. **Model state** — reject a model already fit with a coefficient
   prior, and a model without dispersions when the estimator refits.
3. **Spec resolution** — exactly one of coefficient / contrast (or an
   incoming results table), and the coefficient mapped to its
   canonical name and 1-based index.
4. **Results** — compute the unshrunk table when the caller did not
   pass one, and check that it is row-aligned with the model.
5. **Execution** — pick the worker pool for partitioned estimators.

Every failure in these steps happens before any numerical work, so a
rejected call never costs a refit.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from ._context import ShrinkContext
from ._exceptions import IncompatibleModelState, MissingSpec
from ._results import ResultsTable, ShrinkageDetail
from ._shrinkers import Shrinker, resolve_shrinker
from ._typing import CoefLike, ContrastLike
from .assemble import assemble_results
from .dataset import FittedModel
from .partition import default_pool
from .resolver import (
    CoefficientId,
    check_spec,
    coefficient_from_description,
    resolve_coefficient,
)
from .results import results

if TYPE_CHECKING:
    from joblib import Parallel

logger = logging.getLogger(__name__)


class ShrinkageEngine:
    """Builder that validates a shrinkage call and captures its state.

    Construct an engine, then call :meth:`run`.  The engine is
    immutable after construction: every check has passed and
    :attr:`ctx` holds the resolved inputs.

    Attributes:
        shrinker: The resolved shrinker.
        ctx: The validated :class:`~lfc_shrink._context.ShrinkContext`.
    """

    def __init__(
        self,
        model: FittedModel,
        *,
        coef: CoefLike | None = None,
        contrast: ContrastLike | None = None,
        res: ResultsTable | None = None,
        estimator: str = "normal",
        svalue: bool = False,
        ape_adapt: bool = True,
        ape_method: str = "nbinomCR",
        parallel: bool = False,
        worker_pool: Parallel | None = None,
        bpx: int = 1,
        backend: str | None = None,
        estimator_kwargs: Mapping[str, Any] | None = None,
    ) -> None:
        # ---- Argument checks --------------------------------------
        if isinstance(bpx, bool) or int(bpx) != bpx or bpx < 1:
            raise ValueError(f"bpx must be a positive integer, got {bpx!r}")
        self.shrinker: Shrinker = resolve_shrinker(estimator)

        # ---- Model state ------------------------------------------
        if model.beta_prior:
            raise IncompatibleModelState(
                "lfc_shrink() needs MLE coefficients, but the model was fit with "
                "beta_prior=True; refit with nbinom_wald_test(beta_prior=False)"
            )

        # ---- Spec resolution --------------------------------------
        check_spec(coef, contrast, res)
        self.shrinker.validate(contrast=contrast, svalue=svalue)

        coef_id = None
        if coef is not None:
            if not model.is_fitted:
                raise IncompatibleModelState(
                    "the model has no coefficient table; call nbinom_wald_test() first"
                )
            coef_id = resolve_coefficient(model.result_names, coef)

        if self.shrinker.needs_dispersions and model.dispersions is None:
            raise IncompatibleModelState(
                f"estimator='{self.shrinker.name}' needs dispersion estimates; attach "
                "them with with_dispersions() first"
            )

        # ---- Results ----------------------------------------------
        if res is None:
            if coef_id is not None:
                res = results(model, name=coef_id.name)
            else:
                res = results(model, contrast=contrast)
        elif not res.index.equals(model.feature_names):
            raise IncompatibleModelState(
                "the rows of res do not match the rows of the model; build res "
                "with results() on the same model"
            )

        if coef_id is None and contrast is None and self.shrinker.name != "ashr":
            coef_id = self._coefficient_from_results(model, res)

        # ---- Execution --------------------------------------------
        pool = None
        if parallel and self.shrinker.supports_parallel:
            pool = worker_pool if worker_pool is not None else default_pool()

        self.ctx = ShrinkContext(
            model=model,
            res=res,
            coef=coef_id,
            contrast=contrast,
            svalue=svalue,
            ape_adapt=ape_adapt,
            ape_method=ape_method,
            pool=pool,
            bpx=int(bpx),
            backend=backend,
            estimator_kwargs=dict(estimator_kwargs or {}),
        )
        logger.debug(
            "shrinkage call: estimator=%s coef=%s contrast=%s parallel=%s",
            self.shrinker.name,
            None if coef_id is None else coef_id.name,
            contrast,
            pool is not None,
        )

    @staticmethod
    def _coefficient_from_results(model: FittedModel, res: ResultsTable) -> CoefficientId:
        """Coefficient described by the LFC column of *res*."""
        if not model.is_fitted:
            raise IncompatibleModelState(
                "the model has no coefficient table; call nbinom_wald_test() first"
            )
        name = coefficient_from_description(res.description("log2FoldChange"))
        if name not in model.result_names:
            raise MissingSpec(
                "res does not describe a single coefficient of the model; pass coef="
            )
        return resolve_coefficient(model.result_names, name)

    def run(self, *, return_fit: bool = False) -> ResultsTable | ShrinkageDetail:
        """Shrink and assemble the output table."""
        outcome = self.shrinker.shrink(self.ctx)
        return assemble_results(
            self.ctx.res,
            outcome,
            reshape=self.shrinker.name != "normal",
            svalue=self.ctx.svalue,
            return_fit=return_fit,
        )


__all__ = ["ShrinkageEngine"]
