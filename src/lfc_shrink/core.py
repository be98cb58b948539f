"""Shrinkage of log2 fold-change estimates.

Maximum-likelihood log2 fold changes (LFCs) from a negative-binomial
GLM are noisy for features with low counts or high dispersion: a
feature with three reads in one group and none in the other can show
an LFC of 5 with an enormous standard error.  Ranking or plotting
features by such raw estimates mostly surfaces noise.

Shrinkage replaces each MLE by a posterior estimate under a prior
fitted to all features at once.  Well-measured features keep their
estimates; poorly measured ones are pulled toward zero in proportion
to their uncertainty.

Three estimators are available:

1. **normal** – A zero-centred normal prior per coefficient whose
   variance is matched to the upper quantile of the MLE estimates.
   The GLM is refit with the ridge penalty ``1 / σ²`` and the MAP
   coefficients replace the MLEs.  Supports coefficients and
   contrasts, but not designs with interaction terms.

2. **apeglm** – A heavy-tailed Cauchy prior on the shrunk coefficient
   with its scale adapted to the MLE estimates.  Large effects are
   barely shrunk while null effects collapse to zero.  A single
   coefficient only.

3. **ashr** – A unimodal mixture-of-normals prior fitted by EM to the
   MLE estimates and their standard errors.  Works on any coefficient
   or contrast, since it only needs the results table.

The normal and apeglm estimators can split the features into chunks
and process them on a ``joblib`` worker pool; the output is the same
as the serial run.

References:
    Love, M. I., Huber, W. & Anders, S. (2014). Moderated estimation
    of fold change and dispersion for RNA-seq data with DESeq2.
    *Genome Biology*, 15, 550.

    Zhu, A., Ibrahim, J. G. & Love, M. I. (2019). Heavy-tailed prior
    distributions for sequence count data: removing the noise and
    preserving large differences. *Bioinformatics*, 35(12), 2084–2092.

    Stephens, M. (2016). False discovery rates: a new deal.
    *Biostatistics*, 18(2), 275–294.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ._results import ResultsTable, ShrinkageDetail
from ._typing import CoefLike, ContrastLike
from .dataset import FittedModel
from .engine import ShrinkageEngine

if TYPE_CHECKING:
    from joblib import Parallel


def lfc_shrink(
    model: FittedModel,
    coef: CoefLike | None = None,
    contrast: ContrastLike | None = None,
    res: ResultsTable | None = None,
    estimator: str = "normal",
    svalue: bool = False,
    return_fit: bool = False,
    ape_adapt: bool = True,
    ape_method: str = "nbinomCR",
    parallel: bool = False,
    worker_pool: Parallel | None = None,
    bpx: int = 1,
    backend: str | None = None,
    **kwargs: Any,
) -> ResultsTable | ShrinkageDetail:
    """Shrink the log2 fold changes of one coefficient or contrast.

    Args:
        model: A model fitted by :func:`~lfc_shrink.nbinom_wald_test`
            without a coefficient prior.
        coef: Coefficient to shrink, by name or 1-based index into
            ``model.result_names``.
        contrast: Contrast to shrink instead of a coefficient:
            ``[factor, numerator, denominator]``, a numeric vector over
            the coefficients, or a ``(numerator names, denominator
            names)`` pair.  Not supported by ``"apeglm"``.
        res: Unshrunk results, as returned by
            :func:`~lfc_shrink.results`.  Computed from *coef* /
            *contrast* when omitted; otherwise it must be row-aligned
            with *model* and *coef* / *contrast* may be left out.
        estimator: ``"normal"``, ``"apeglm"`` or ``"ashr"``
            (aliases ``"external-parametric"`` and
            ``"external-nonparametric"``).
        svalue: Replace ``pvalue`` and ``padj`` by s-values
            (``"apeglm"`` and ``"ashr"`` only).
        return_fit: Also return the raw estimator output.
        ape_adapt: Adapt the apeglm prior scale to the MLE estimates.
        ape_method: apeglm fitting method: ``"nbinomCR"``,
            ``"nbinomR"`` or ``"general"``.
        parallel: Process features in chunks on a worker pool
            (``"normal"`` and ``"apeglm"``).
        worker_pool: ``joblib.Parallel`` handle to use; a thread pool
            over all cores is created when omitted.
        bpx: Chunks per worker.
        backend: IRLS solver backend for the normal refit
            (``"numpy"`` or ``"jax"``); defaults to
            :func:`~lfc_shrink.get_backend`.
        **kwargs: Passed verbatim to the apeglm or ashr estimator.

    Returns:
        A :class:`~lfc_shrink.ResultsTable` with the shrunk
        ``log2FoldChange`` and ``lfcSE`` in the row order of *model*,
        and a ``prior_info`` record.  With ``return_fit=True`` a
        :class:`~lfc_shrink.ShrinkageDetail` ``(res, fit)``.

    Raises:
        ValueError: On an unknown *estimator*, ``bpx < 1`` or
            ``svalue=True`` with ``"normal"``.
        ConflictingSpec: If both *coef* and *contrast* are given.
        MissingSpec: If neither is given and *res* is omitted.
        InvalidCoefficient: If *coef* does not name a coefficient of
            the fit, or does not match *res* under ``"apeglm"``.
        UnsupportedContrast: If a contrast is given to ``"apeglm"``,
            or to ``"normal"`` with a user-supplied model matrix.
        IncompatibleModelState: If the model was fit with a
            coefficient prior, lacks dispersions, has interaction
            terms under ``"normal"``, or is not row-aligned with *res*.
        DegenerateModel: If the normal prior cannot be estimated.
        BackendUnavailable: If the apeglm or ashr estimator cannot be
            imported.

    Warns:
        ConvergenceWarning: If some features did not converge; their
            rows are still returned.

    Examples:
        >>> from lfc_shrink import (
        ...     lfc_shrink, make_example_dataset, nbinom_wald_test,
        ... )
        >>> model = nbinom_wald_test(make_example_dataset(n_genes=200, seed=1))
        >>> shrunk = lfc_shrink(model, coef="condition_B_vs_A")
        >>> shrunk.description("log2FoldChange")
        'log2 fold change (MAP): condition B vs A'
    """
    engine = ShrinkageEngine(
        model,
        coef=coef,
        contrast=contrast,
        res=res,
        estimator=estimator,
        svalue=svalue,
        ape_adapt=ape_adapt,
        ape_method=ape_method,
        parallel=parallel,
        worker_pool=worker_pool,
        bpx=bpx,
        backend=backend,
        estimator_kwargs=kwargs,
    )
    return engine.run(return_fit=return_fit)
