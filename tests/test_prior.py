"""Tests for MLE tagging and normal prior-variance estimation."""

import numpy as np
import pandas as pd
import pytest
from scipy.stats import norm

from lfc_shrink import (
    DegenerateModel,
    IncompatibleModelState,
    estimate_beta_prior_var,
    make_example_dataset,
    nbinom_wald_test,
)
from lfc_shrink.prior import (
    INTERCEPT_PRIOR_VAR,
    MIN_PRIOR_VAR,
    match_upper_quantile_variance,
    mle_columns,
    tag_mle_columns,
    weighted_quantile,
)


@pytest.fixture(scope="module")
def fitted():
    model = make_example_dataset(n_genes=200, n_samples=12, beta_sd=1.0, seed=4)
    return nbinom_wald_test(model, backend="numpy")


class TestTagging:
    def test_prefixes_mle_columns(self, fitted):
        row_data, desc = tag_mle_columns(fitted.row_data, fitted.row_descriptions)
        assert "MLE_condition_B_vs_A" in row_data.columns
        assert "MLE_Intercept" in row_data.columns
        assert "condition_B_vs_A" not in row_data.columns
        assert desc["MLE_condition_B_vs_A"] == "log2 fold change (MLE): condition B vs A"
        # standard errors and simulation columns are not coefficients
        assert "SE_condition_B_vs_A" in row_data.columns
        assert "trueBeta" in row_data.columns

    def test_idempotent(self, fitted):
        once = tag_mle_columns(fitted.row_data, fitted.row_descriptions)
        twice = tag_mle_columns(*once)
        assert list(twice[0].columns) == list(once[0].columns)
        assert twice[1] == once[1]

    def test_inputs_untouched(self, fitted):
        tag_mle_columns(fitted.row_data, fitted.row_descriptions)
        assert "condition_B_vs_A" in fitted.row_data.columns

    def test_no_mle_columns(self):
        row_data = pd.DataFrame({"x": [1.0]})
        with pytest.raises(IncompatibleModelState, match="no MLE"):
            tag_mle_columns(row_data, {"x": "something else"})

    def test_mle_columns_ignores_map(self):
        desc = {
            "a": "log2 fold change (MLE): a",
            "b": "log2 fold change (MAP): b",
            "c": "standard error: a",
        }
        assert mle_columns(desc) == ["a"]


class TestQuantileMatching:
    def test_equal_weights_match_numpy_quantile(self):
        rng = np.random.default_rng(0)
        x = rng.normal(size=101)
        np.testing.assert_allclose(
            weighted_quantile(x, np.ones_like(x), 0.95), np.quantile(x, 0.95)
        )

    def test_heavier_weight_pulls_quantile(self):
        x = np.arange(1.0, 11.0)
        w = np.ones(10)
        w[-1] = 50.0
        assert weighted_quantile(x, w, 0.5) > np.quantile(x, 0.5)

    def test_normal_sample_recovers_variance(self):
        rng = np.random.default_rng(1)
        x = rng.normal(0.0, 0.7, size=20000)
        assert match_upper_quantile_variance(x) == pytest.approx(0.49, rel=0.05)

    def test_formula(self):
        x = np.linspace(-2.0, 2.0, 401)
        q = np.quantile(np.abs(x), 0.95)
        expected = (q / norm.ppf(0.975)) ** 2
        assert match_upper_quantile_variance(x) == pytest.approx(expected)


class TestEstimateBetaPriorVar:
    def test_indexed_by_coefficient(self, fitted):
        var = estimate_beta_prior_var(fitted)
        assert list(var.index) == ["Intercept", "condition_B_vs_A"]
        assert var.name == "betaPriorVar"
        assert var["Intercept"] == INTERCEPT_PRIOR_VAR

    def test_positive_and_finite(self, fitted):
        for method in ("weighted", "quantile"):
            var = estimate_beta_prior_var(fitted, method=method)
            assert np.all(np.isfinite(var))
            assert np.all(var >= MIN_PRIOR_VAR)

    def test_same_after_tagging(self, fitted):
        row_data, desc = tag_mle_columns(fitted.row_data, fitted.row_descriptions)
        tagged = fitted.replace(row_data=row_data, row_descriptions=desc)
        pd.testing.assert_series_equal(
            estimate_beta_prior_var(tagged), estimate_beta_prior_var(fitted)
        )

    def test_expanded_two_levels_matches_standard(self, fitted):
        standard = estimate_beta_prior_var(fitted)
        expanded = estimate_beta_prior_var(fitted, model_matrix_type="expanded")
        assert list(expanded.index) == ["Intercept", "conditionA", "conditionB"]
        assert expanded["conditionA"] == pytest.approx(standard["condition_B_vs_A"])
        assert expanded["conditionB"] == pytest.approx(standard["condition_B_vs_A"])

    def test_quantile_method_ignores_weights(self, fitted):
        var = estimate_beta_prior_var(fitted, method="quantile")
        mle = fitted.row_data["condition_B_vs_A"].to_numpy()
        expected = match_upper_quantile_variance(mle[np.isfinite(mle)])
        assert var["condition_B_vs_A"] == pytest.approx(max(expected, MIN_PRIOR_VAR))

    def test_unknown_method(self, fitted):
        with pytest.raises(ValueError, match="Unknown method"):
            estimate_beta_prior_var(fitted, method="median")

    def test_intercept_only_design(self):
        model = make_example_dataset(n_genes=30, seed=5).replace(design="~ 1")
        fitted = nbinom_wald_test(model, backend="numpy")
        with pytest.raises(DegenerateModel, match="intercept"):
            estimate_beta_prior_var(fitted)

    def test_all_zero_counts(self):
        model = make_example_dataset(n_genes=10, seed=6)
        zeros = model.counts * 0
        fitted = nbinom_wald_test(model.replace(counts=zeros), backend="numpy")
        with pytest.raises(DegenerateModel, match="zero"):
            estimate_beta_prior_var(fitted)

    def test_unfitted_model(self):
        with pytest.raises(IncompatibleModelState):
            estimate_beta_prior_var(make_example_dataset(n_genes=10, seed=7))
