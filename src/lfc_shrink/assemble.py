"""Write a shrinker's outcome into a copy of the results table.

The incoming table is never edited.  The copy keeps the incoming row
order and identifiers; the shrunk LFC and SE overwrite
``log2FoldChange`` and ``lfcSE``, and the LFC description has its
``MLE`` tag replaced by the shrinker's (``MAP`` or ``PostMean``).

For the apeglm- and ashr-style estimators the column set is reshaped:

* ``svalue=True`` — ``baseMean, log2FoldChange, lfcSE, svalue``
* ``svalue=False`` — ``baseMean, log2FoldChange, lfcSE, pvalue, padj``

The Wald statistic is dropped because it no longer matches the shrunk
LFC and SE.  The normal estimator keeps every incoming column.
"""

from __future__ import annotations

from ._exceptions import IncompatibleModelState
from ._results import ResultsTable, ShrinkageDetail
from ._shrinkers import ShrinkOutcome

_SVALUE_COLUMNS = ("baseMean", "log2FoldChange", "lfcSE")
_PVALUE_COLUMNS = ("baseMean", "log2FoldChange", "lfcSE", "pvalue", "padj")
_REPLACED_COLUMNS = ("log2FoldChange", "lfcSE", "stat", "pvalue", "padj")


def _retag(description: str, tag: str) -> str:
    return description.replace("MLE", tag, 1)


def assemble_results(
    res: ResultsTable,
    outcome: ShrinkOutcome,
    *,
    reshape: bool,
    svalue: bool = False,
    return_fit: bool = False,
) -> ResultsTable | ShrinkageDetail:
    """Build the shrunk results table.

    Args:
        res: Unshrunk results.
        outcome: The shrinker's output.
        reshape: Apply the external-estimator column layout.
        svalue: Replace ``pvalue``/``padj`` by ``svalue``
            (only with *reshape*).
        return_fit: Return a :class:`ShrinkageDetail` with the raw fit.

    Raises:
        IncompatibleModelState: If the outcome is not row-aligned with
            *res*.
    """
    n = len(res)
    if outcome.lfc.shape != (n,) or outcome.lfc_se.shape != (n,):
        raise IncompatibleModelState(
            f"shrunk estimates have {outcome.lfc.shape[0]} rows, the results table {n}"
        )

    if outcome.replacement is not None:
        table = res
        for col in _REPLACED_COLUMNS:
            if col in outcome.replacement:
                table = table.with_column(
                    col,
                    outcome.replacement[col].to_numpy(),
                    outcome.replacement.description(col),
                )
    else:
        if outcome.descriptions is not None:
            lfc_desc = outcome.descriptions["log2FoldChange"]
            se_desc = outcome.descriptions.get("lfcSE")
        else:
            lfc_desc = _retag(res.description("log2FoldChange"), outcome.tag)
            se_desc = None
        table = res.with_column("log2FoldChange", outcome.lfc, lfc_desc)
        table = table.with_column("lfcSE", outcome.lfc_se, se_desc)

    if reshape:
        if svalue:
            if outcome.svalue is None:
                raise ValueError("the estimator did not produce s-values")
            table = table.select(_SVALUE_COLUMNS).with_column(
                "svalue", outcome.svalue, f"s-value: {outcome.svalue_label or ''}".rstrip()
            )
        else:
            table = table.select([c for c in _PVALUE_COLUMNS if c in table])

    table = table.with_prior_info(outcome.prior_info)
    if return_fit:
        return ShrinkageDetail(res=table, fit=outcome.fit)
    return table


__all__ = ["assemble_results"]
