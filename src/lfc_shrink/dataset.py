"""Fitted-model container and dataset helpers.

:class:`FittedModel` bundles everything the shrinkage engine reads
about a negative-binomial fit: the count matrix, sample metadata, the
design, normalisation (size factors or a full normalisation-factor
matrix), optional observation weights, dispersions, and, once
:func:`~lfc_shrink.wald.nbinom_wald_test` has run, the per-feature
coefficient table with its column descriptions.

The container is a frozen dataclass.  Every ``with_*`` / ``subset_*``
method returns a **new** instance; nothing in the package mutates a
model in place, so a caller's object is never aliased by a refit.

Row invariant: every per-feature quantity (dispersions, ``row_data``,
``mu``, covariance, normalisation-factor and weight matrices) has
exactly ``counts.shape[0]`` rows, in the order of ``counts.index``.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

from ._compat import DataFrameLike, to_pandas_frame
from ._exceptions import IncompatibleModelState

_MODEL_MATRIX_TYPES = ("standard", "expanded", "user-supplied")


@dataclass(frozen=True, eq=False)
class FittedModel:
    """Counts, design and fit state for one negative-binomial GLM.

    Attributes:
        counts: Non-negative integer counts, features × samples.
        metadata: Sample metadata indexed by sample name.
        design: Formula string (``"~ condition"``) or a user-supplied
            model matrix ``(n_samples, n_coefficients)``.
        size_factors: Per-sample size factors ``(n_samples,)``.
        normalization_factors: Per-observation normalisation factors
            ``(n_features, n_samples)``.  Takes precedence over
            *size_factors* wherever both are present.
        weights: Observation weights ``(n_features, n_samples)``.
        dispersions: Per-feature NB dispersion estimates.
        result_names: Coefficient names of the last fit, in model-matrix
            column order.
        row_data: Per-feature fit columns (coefficients, SEs, Wald
            statistics, convergence flags, ...).
        row_descriptions: Human-readable description per ``row_data``
            column.
        coef_covariance: Per-feature coefficient covariance on the log2
            scale ``(n_features, p, p)``.
        mu: Fitted means ``(n_features, n_samples)``.
        beta_prior: Whether the coefficients were fit with a prior.
        model_matrix_type: ``"standard"``, ``"expanded"`` or
            ``"user-supplied"``.
        model_matrix: The stored model matrix when the last fit used a
            user-supplied one.
    """

    counts: pd.DataFrame
    metadata: pd.DataFrame
    design: str | pd.DataFrame
    size_factors: np.ndarray | None = None
    normalization_factors: pd.DataFrame | None = None
    weights: pd.DataFrame | None = None
    dispersions: np.ndarray | None = None
    result_names: tuple[str, ...] = ()
    row_data: pd.DataFrame | None = None
    row_descriptions: Mapping[str, str] = field(default_factory=dict)
    coef_covariance: np.ndarray | None = field(default=None, repr=False)
    mu: np.ndarray | None = field(default=None, repr=False)
    beta_prior: bool = False
    model_matrix_type: str = "standard"
    model_matrix: pd.DataFrame | None = None

    def __post_init__(self) -> None:
        n_rows, n_cols = self.counts.shape
        if not self.counts.index.is_unique:
            raise ValueError("feature names (counts.index) must be unique")
        if len(self.metadata) != n_cols:
            raise ValueError(
                f"metadata has {len(self.metadata)} rows but counts has {n_cols} samples"
            )
        if self.model_matrix_type not in _MODEL_MATRIX_TYPES:
            raise ValueError(
                f"Invalid model_matrix_type '{self.model_matrix_type}'. "
                f"Choose from: {', '.join(_MODEL_MATRIX_TYPES)}."
            )
        if self.size_factors is not None and len(self.size_factors) != n_cols:
            raise ValueError("size_factors must have one entry per sample")
        for name in ("normalization_factors", "weights"):
            mat = getattr(self, name)
            if mat is not None and mat.shape != (n_rows, n_cols):
                raise ValueError(f"{name} must have the shape of counts {(n_rows, n_cols)}")
        if self.dispersions is not None and len(self.dispersions) != n_rows:
            raise ValueError("dispersions must have one entry per feature")
        if self.row_data is not None and len(self.row_data) != n_rows:
            raise ValueError("row_data must have one row per feature")
        if self.mu is not None and self.mu.shape != (n_rows, n_cols):
            raise ValueError("mu must have the shape of counts")
        if self.coef_covariance is not None and self.coef_covariance.shape[0] != n_rows:
            raise ValueError("coef_covariance must have one matrix per feature")

    # ---- Construction ----------------------------------------------

    @classmethod
    def from_counts(
        cls,
        counts: DataFrameLike,
        metadata: DataFrameLike,
        design: str | pd.DataFrame,
        *,
        size_factors: Sequence[float] | np.ndarray | None = None,
        normalization_factors: pd.DataFrame | np.ndarray | None = None,
        weights: pd.DataFrame | np.ndarray | None = None,
        dispersions: Sequence[float] | np.ndarray | None = None,
        index_col: str | None = None,
    ) -> FittedModel:
        """Build an unfitted model from a count matrix and sample metadata.

        Args:
            counts: Features × samples counts (pandas or Polars).  For
                Polars input, *index_col* names the feature-ID column.
            metadata: One row per sample.  A default ``RangeIndex`` is
                replaced by the count matrix's column names; any other
                index must match them exactly.
            design: Formula string or model matrix.
            size_factors, normalization_factors, weights, dispersions:
                Optional normalisation and fit inputs.
            index_col: Feature-ID column for Polars *counts*.

        Raises:
            ValueError: On negative or non-integer counts, or when the
                metadata does not line up with the count columns.
        """
        counts_df = to_pandas_frame(counts, name="counts", index_col=index_col)
        meta_df = to_pandas_frame(metadata, name="metadata").copy()

        values = counts_df.to_numpy(dtype=float)
        if np.any(values < 0) or np.any(np.isnan(values)):
            raise ValueError("counts must be non-negative and non-missing")
        if np.any(values != np.round(values)):
            raise ValueError("counts must be integer-valued")
        counts_df = counts_df.astype(np.int64)

        if isinstance(meta_df.index, pd.RangeIndex):
            meta_df.index = counts_df.columns
        elif list(meta_df.index) != list(counts_df.columns):
            raise ValueError("metadata index must match the count matrix's column names")

        def _matrix(mat: pd.DataFrame | np.ndarray | None) -> pd.DataFrame | None:
            if mat is None:
                return None
            return pd.DataFrame(
                np.asarray(mat, dtype=float), index=counts_df.index, columns=counts_df.columns
            )

        if isinstance(design, pd.DataFrame):
            design = design.set_axis(counts_df.columns, axis=0).astype(float)

        return cls(
            counts=counts_df,
            metadata=meta_df,
            design=design,
            size_factors=None if size_factors is None else np.asarray(size_factors, dtype=float),
            normalization_factors=_matrix(normalization_factors),
            weights=_matrix(weights),
            dispersions=None if dispersions is None else np.asarray(dispersions, dtype=float),
        )

    # ---- Shape -----------------------------------------------------

    @property
    def n_features(self) -> int:
        return int(self.counts.shape[0])

    @property
    def n_samples(self) -> int:
        return int(self.counts.shape[1])

    @property
    def feature_names(self) -> pd.Index:
        return self.counts.index

    @property
    def is_fitted(self) -> bool:
        """Whether a coefficient table is present."""
        return self.row_data is not None and len(self.result_names) > 0

    # ---- Derived matrices ------------------------------------------

    def normalization_matrix(self) -> np.ndarray:
        """Per-observation normalisation ``(n_features, n_samples)``.

        The stored normalisation-factor matrix wins when present;
        otherwise the size factors are broadcast across features.

        Raises:
            IncompatibleModelState: If neither is available.
        """
        if self.normalization_factors is not None:
            return self.normalization_factors.to_numpy(dtype=float)
        if self.size_factors is not None:
            return np.broadcast_to(
                self.size_factors, (self.n_features, self.n_samples)
            ).astype(float)
        raise IncompatibleModelState(
            "the model has neither size factors nor normalization factors; "
            "call estimate_size_factors() first"
        )

    def weights_matrix(self) -> np.ndarray:
        """Observation weights, all ones when none are stored."""
        if self.weights is None:
            return np.ones((self.n_features, self.n_samples))
        return self.weights.to_numpy(dtype=float)

    def normalized_counts(self) -> np.ndarray:
        return self.counts.to_numpy(dtype=float) / self.normalization_matrix()

    def user_model_matrix(self) -> pd.DataFrame | None:
        """The user-supplied model matrix, or ``None`` for formula designs."""
        if self.model_matrix_type == "user-supplied" and self.model_matrix is not None:
            return self.model_matrix
        if isinstance(self.design, pd.DataFrame):
            return self.design
        return None

    # ---- Derived copies --------------------------------------------

    def replace(self, **changes: Any) -> FittedModel:
        """Return a copy with *changes* applied (``dataclasses.replace``)."""
        return dataclasses.replace(self, **changes)

    def with_size_factors(self, size_factors: Sequence[float] | np.ndarray) -> FittedModel:
        return self.replace(size_factors=np.asarray(size_factors, dtype=float))

    def with_dispersions(self, dispersions: Sequence[float] | np.ndarray | None) -> FittedModel:
        return self.replace(
            dispersions=None if dispersions is None else np.asarray(dispersions, dtype=float)
        )

    def with_normalization_factors(self, factors: pd.DataFrame | np.ndarray) -> FittedModel:
        return self.replace(
            normalization_factors=pd.DataFrame(
                np.asarray(factors, dtype=float),
                index=self.counts.index,
                columns=self.counts.columns,
            )
        )

    def with_weights(self, weights: pd.DataFrame | np.ndarray) -> FittedModel:
        return self.replace(
            weights=pd.DataFrame(
                np.asarray(weights, dtype=float),
                index=self.counts.index,
                columns=self.counts.columns,
            )
        )

    def subset_rows(self, rows: np.ndarray | Sequence[int]) -> FittedModel:
        """Return the model restricted to the feature positions *rows*."""
        idx = np.asarray(rows, dtype=np.intp)

        def _take(mat: pd.DataFrame | None) -> pd.DataFrame | None:
            return None if mat is None else mat.iloc[idx]

        return self.replace(
            counts=self.counts.iloc[idx],
            normalization_factors=_take(self.normalization_factors),
            weights=_take(self.weights),
            dispersions=None if self.dispersions is None else self.dispersions[idx],
            row_data=_take(self.row_data),
            coef_covariance=None if self.coef_covariance is None else self.coef_covariance[idx],
            mu=None if self.mu is None else self.mu[idx],
        )


# ------------------------------------------------------------------ #
# Size factors
# ------------------------------------------------------------------ #


def estimate_size_factors(model: FittedModel) -> FittedModel:
    """Median-of-ratios size factors.

    Each sample's factor is the median, over features with no zero
    count, of its count divided by the feature's geometric mean.

    Raises:
        ValueError: If every feature contains at least one zero.
    """
    counts = model.counts.to_numpy(dtype=float)
    with np.errstate(divide="ignore"):
        log_counts = np.log(counts)
    log_geo_means = log_counts.mean(axis=1)
    usable = np.isfinite(log_geo_means)
    if not usable.any():
        raise ValueError(
            "every feature contains a zero; cannot compute log geometric means"
        )
    ratios = log_counts[usable] - log_geo_means[usable, np.newaxis]
    size_factors = np.exp(np.median(ratios, axis=0))
    return model.with_size_factors(size_factors)


# ------------------------------------------------------------------ #
# Simulation
# ------------------------------------------------------------------ #


def make_example_dataset(
    n_genes: int = 1000,
    n_samples: int = 12,
    beta_sd: float = 0.0,
    intercept_mean: float = 4.0,
    intercept_sd: float = 2.0,
    seed: int | None = None,
) -> FittedModel:
    """Simulate a two-group negative-binomial dataset.

    Log2 intercepts are drawn from ``N(intercept_mean, intercept_sd)``
    and log2 fold changes (B vs A) from ``N(0, beta_sd)``.  Dispersion
    follows the mean trend ``4 / mu + 0.1``.  Samples alternate
    between groups in two halves (first half ``A``, second half
    ``B``) and all size factors are 1.

    Dispersion estimation is not part of this package, so the true
    dispersions are attached as the model's estimates.  The simulated
    parameters are kept in ``row_data`` as ``trueIntercept``,
    ``trueBeta`` and ``trueDisp``.

    Returns:
        An unfitted :class:`FittedModel` with design ``"~ condition"``.
    """
    rng = np.random.default_rng(seed)
    intercept = rng.normal(intercept_mean, intercept_sd, size=n_genes)
    beta = rng.normal(0.0, beta_sd, size=n_genes) if beta_sd > 0 else np.zeros(n_genes)
    dispersion = 4.0 / 2.0**intercept + 0.1

    half = n_samples // 2
    condition = pd.Categorical(
        ["A"] * half + ["B"] * (n_samples - half), categories=["A", "B"]
    )
    is_b = np.asarray(condition == "B", dtype=float)
    mu = 2.0 ** (intercept[:, np.newaxis] + beta[:, np.newaxis] * is_b[np.newaxis, :])
    size = 1.0 / dispersion[:, np.newaxis]
    counts = rng.negative_binomial(size, size / (size + mu))

    genes = [f"gene{i + 1}" for i in range(n_genes)]
    samples = [f"sample{j + 1}" for j in range(n_samples)]
    row_data = pd.DataFrame(
        {"trueIntercept": intercept, "trueBeta": beta, "trueDisp": dispersion},
        index=genes,
    )
    return FittedModel(
        counts=pd.DataFrame(counts.astype(np.int64), index=genes, columns=samples),
        metadata=pd.DataFrame({"condition": condition}, index=samples),
        design="~ condition",
        size_factors=np.ones(n_samples),
        dispersions=dispersion,
        row_data=row_data,
        row_descriptions={
            "trueIntercept": "simulated intercept values",
            "trueBeta": "simulated beta values",
            "trueDisp": "simulated dispersion values",
        },
    )


__all__ = ["FittedModel", "estimate_size_factors", "make_example_dataset"]
