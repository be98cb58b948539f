"""Tests for Wald testing, results tables and contrasts."""

import json

import numpy as np
import pandas as pd
import pytest
from statsmodels.stats.multitest import multipletests

from lfc_shrink import (
    IncompatibleModelState,
    InvalidCoefficient,
    PriorInfo,
    ResultsTable,
    make_example_dataset,
    nbinom_wald_test,
    results,
)
from lfc_shrink.results import adjust_bh, contrast_vector

# ------------------------------------------------------------------ #
# Shared fixtures
# ------------------------------------------------------------------ #


@pytest.fixture(scope="module")
def raw_model():
    return make_example_dataset(n_genes=120, n_samples=12, beta_sd=1.0, seed=1)


@pytest.fixture(scope="module")
def fitted(raw_model):
    return nbinom_wald_test(raw_model, backend="numpy")


@pytest.fixture(scope="module")
def three_level():
    """Three-level condition factor, fitted."""
    base = make_example_dataset(n_genes=80, n_samples=12, beta_sd=1.0, seed=2)
    metadata = pd.DataFrame(
        {"condition": pd.Categorical(["A"] * 4 + ["B"] * 4 + ["C"] * 4)},
        index=base.metadata.index,
    )
    return nbinom_wald_test(base.replace(metadata=metadata), backend="numpy")


# ------------------------------------------------------------------ #
# nbinom_wald_test
# ------------------------------------------------------------------ #


class TestWaldTest:
    def test_result_names(self, fitted):
        assert fitted.result_names == ("Intercept", "condition_B_vs_A")
        assert fitted.is_fitted
        assert not fitted.beta_prior
        assert fitted.model_matrix_type == "standard"

    def test_columns_and_descriptions(self, fitted):
        cols = set(fitted.row_data.columns)
        assert {
            "baseMean",
            "condition_B_vs_A",
            "SE_condition_B_vs_A",
            "WaldStatistic_condition_B_vs_A",
            "WaldPvalue_condition_B_vs_A",
            "betaConv",
            "betaIter",
        } <= cols
        assert (
            fitted.row_descriptions["condition_B_vs_A"]
            == "log2 fold change (MLE): condition B vs A"
        )
        assert fitted.row_descriptions["SE_Intercept"] == "standard error: Intercept"

    def test_input_model_untouched(self, raw_model, fitted):
        assert not raw_model.is_fitted
        assert "condition_B_vs_A" not in raw_model.row_data.columns
        # simulation columns survive the fit
        assert "trueBeta" in fitted.row_data.columns

    def test_estimates_track_truth(self, fitted):
        est = fitted.row_data["condition_B_vs_A"].to_numpy()
        truth = fitted.row_data["trueBeta"].to_numpy()
        ok = np.isfinite(est)
        assert np.corrcoef(est[ok], truth[ok])[0, 1] > 0.6

    def test_all_zero_row_is_nan(self, raw_model):
        counts = raw_model.counts.copy()
        counts.iloc[0] = 0
        model = nbinom_wald_test(raw_model.replace(counts=counts), backend="numpy")
        assert bool(model.row_data["allZero"].iloc[0])
        assert np.isnan(model.row_data["condition_B_vs_A"].iloc[0])
        assert pd.isna(model.row_data["betaConv"].iloc[0])
        assert np.isfinite(model.row_data["condition_B_vs_A"].iloc[1])

    def test_missing_dispersions(self, raw_model):
        with pytest.raises(IncompatibleModelState, match="dispersion"):
            nbinom_wald_test(raw_model.with_dispersions(None), backend="numpy")

    def test_beta_prior_requires_variance(self, raw_model):
        with pytest.raises(ValueError, match="beta_prior_var"):
            nbinom_wald_test(raw_model, beta_prior=True, backend="numpy")

    def test_beta_prior_tags_map(self, raw_model):
        model = nbinom_wald_test(
            raw_model,
            beta_prior=True,
            beta_prior_var=pd.Series({"Intercept": 1e6, "condition_B_vs_A": 0.5}),
            backend="numpy",
        )
        assert model.beta_prior
        assert model.row_descriptions["condition_B_vs_A"].startswith("log2 fold change (MAP)")

    def test_user_supplied_matrix(self, raw_model):
        X = pd.DataFrame(
            {
                "Intercept": 1.0,
                "treated": (raw_model.metadata["condition"] == "B").astype(float),
            },
            index=raw_model.metadata.index,
        )
        user = nbinom_wald_test(raw_model, model_matrix=X, backend="numpy")
        formula = nbinom_wald_test(raw_model, backend="numpy")
        assert user.result_names == ("Intercept", "treated")
        assert user.model_matrix_type == "user-supplied"
        np.testing.assert_allclose(
            user.row_data["treated"], formula.row_data["condition_B_vs_A"], rtol=1e-8
        )


# ------------------------------------------------------------------ #
# results()
# ------------------------------------------------------------------ #


class TestResults:
    def test_default_is_last_coefficient(self, fitted):
        res = results(fitted)
        assert res.columns == ["baseMean", "log2FoldChange", "lfcSE", "stat", "pvalue", "padj"]
        assert res.description("log2FoldChange") == "log2 fold change (MLE): condition B vs A"
        np.testing.assert_allclose(
            res["log2FoldChange"], fitted.row_data["condition_B_vs_A"]
        )
        assert res.prior_info is None

    def test_row_order_matches_model(self, fitted):
        res = results(fitted, name="condition_B_vs_A")
        assert res.index.equals(fitted.feature_names)
        assert len(res) == fitted.n_features

    def test_padj_is_bh(self, fitted):
        res = results(fitted)
        p = res["pvalue"].to_numpy()
        ok = ~np.isnan(p)
        expected = multipletests(p[ok], method="fdr_bh")[1]
        np.testing.assert_allclose(res["padj"].to_numpy()[ok], expected)
        assert res.description("padj") == "BH adjusted p-values"

    def test_unknown_name(self, fitted):
        with pytest.raises(InvalidCoefficient, match="not a coefficient"):
            results(fitted, name="condition_C_vs_A")

    def test_name_and_contrast_conflict(self, fitted):
        with pytest.raises(ValueError, match="only one"):
            results(fitted, name="condition_B_vs_A", contrast=["condition", "B", "A"])

    def test_unfitted_model(self, raw_model):
        with pytest.raises(IncompatibleModelState):
            results(raw_model)


class TestContrasts:
    def test_factor_form_matches_coefficient(self, fitted):
        by_name = results(fitted, name="condition_B_vs_A")
        by_contrast = results(fitted, contrast=["condition", "B", "A"])
        np.testing.assert_allclose(by_contrast["log2FoldChange"], by_name["log2FoldChange"])
        np.testing.assert_allclose(by_contrast["lfcSE"], by_name["lfcSE"], rtol=1e-10)
        assert by_contrast.description("log2FoldChange") == (
            "log2 fold change (MLE): condition B vs A"
        )

    def test_reversed_contrast_flips_sign(self, fitted):
        forward = results(fitted, contrast=["condition", "B", "A"])
        reverse = results(fitted, contrast=["condition", "A", "B"])
        np.testing.assert_allclose(reverse["log2FoldChange"], -forward["log2FoldChange"])
        np.testing.assert_allclose(reverse["pvalue"], forward["pvalue"])

    def test_numeric_and_list_forms(self, fitted):
        by_name = results(fitted, name="condition_B_vs_A")
        numeric = results(fitted, contrast=[0, 1])
        listed = results(fitted, contrast=(["condition_B_vs_A"], []))
        np.testing.assert_allclose(numeric["log2FoldChange"], by_name["log2FoldChange"])
        np.testing.assert_allclose(listed["log2FoldChange"], by_name["log2FoldChange"])

    def test_between_non_reference_levels(self, three_level):
        res = results(three_level, contrast=["condition", "C", "B"])
        rd = three_level.row_data
        np.testing.assert_allclose(
            res["log2FoldChange"], rd["condition_C_vs_A"] - rd["condition_B_vs_A"]
        )

    def test_contrast_vector_weights(self, three_level):
        weights, label = contrast_vector(three_level, ["condition", "C", "B"])
        np.testing.assert_array_equal(weights, [0.0, -1.0, 1.0])
        assert label == "condition C vs B"

    def test_unknown_level(self, fitted):
        with pytest.raises(InvalidCoefficient, match="not a level"):
            results(fitted, contrast=["condition", "Z", "A"])

    def test_unknown_factor(self, fitted):
        with pytest.raises(InvalidCoefficient, match="not a factor"):
            results(fitted, contrast=["batch", "x", "y"])

    def test_numeric_wrong_length(self, fitted):
        with pytest.raises(InvalidCoefficient, match="2 elements"):
            results(fitted, contrast=[0, 1, 0])


class TestAdjustBH:
    def test_nan_preserved(self):
        padj = adjust_bh(np.array([0.01, np.nan, 0.04, 0.03]))
        assert np.isnan(padj[1])
        np.testing.assert_allclose(padj[[0, 2, 3]], [0.03, 0.04, 0.04])

    def test_all_nan(self):
        assert np.isnan(adjust_bh(np.array([np.nan, np.nan]))).all()


# ------------------------------------------------------------------ #
# Result containers
# ------------------------------------------------------------------ #


class TestResultsTable:
    @pytest.fixture()
    def table(self):
        data = pd.DataFrame({"a": [1.0, 2.0], "b": [3.0, 4.0]}, index=["g1", "g2"])
        return ResultsTable(data=data, descriptions={"a": "first", "b": "second"})

    def test_missing_descriptions_filled(self):
        table = ResultsTable(data=pd.DataFrame({"a": [1.0]}), descriptions={"zzz": "x"})
        assert table.descriptions == {"a": ""}

    def test_select_and_drop(self, table):
        assert table.select(["b"]).columns == ["b"]
        assert table.drop(["a"]).description("b") == "second"

    def test_with_column_keeps_description(self, table):
        updated = table.with_column("a", [9.0, 8.0])
        assert updated.description("a") == "first"
        assert table["a"].tolist() == [1.0, 2.0]

    def test_with_description(self, table):
        assert table.with_description("a", "new").description("a") == "new"
        with pytest.raises(KeyError):
            table.with_description("c", "nope")

    def test_to_frame_is_copy(self, table):
        frame = table.to_frame()
        frame.iloc[0, 0] = -1.0
        assert table["a"].iloc[0] == 1.0

    def test_repr_mentions_estimator(self, table):
        info = PriorInfo(type="ashr", package="lfc_shrink", version="0", estimator_kind="x")
        assert "shrunk by ashr" in repr(table.with_prior_info(info))


class TestPriorInfo:
    def test_dict_access(self):
        info = PriorInfo(
            type="normal",
            package="lfc_shrink",
            version="0.1.0",
            estimator_kind="normal",
            beta_prior_var=pd.Series({"Intercept": 1e6, "x": np.float64(0.25)}),
        )
        assert info["type"] == "normal"
        assert info.get("fitted_g") is None
        assert "package" in info
        with pytest.raises(KeyError):
            info["nope"]

    def test_to_dict_is_json_serialisable(self):
        info = PriorInfo(
            type="normal",
            package="lfc_shrink",
            version="0.1.0",
            estimator_kind="normal",
            beta_prior_var=pd.Series({"Intercept": 1e6, "x": np.float64(0.25)}),
        )
        payload = info.to_dict()
        assert payload["beta_prior_var"] == {"Intercept": 1e6, "x": 0.25}
        json.dumps(payload)
