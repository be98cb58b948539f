"""Tests for the estimator registry and the apeglm / ashr estimators."""

import importlib

import numpy as np
import pandas as pd
import pytest

from lfc_shrink import BackendUnavailable, register_estimator, reset_estimators
from lfc_shrink._estimators import locate_estimator
from lfc_shrink._estimators._common import svalue
from lfc_shrink._estimators.apeglm import (
    ApeglmFit,
    apeglm,
    log_lik_nb,
    prior_scale_from_mle,
)
from lfc_shrink._estimators.ash import ash, mixture_sd_grid
from lfc_shrink.glm import LN2, fit_nbinom_glm

_SEED = 11

# ------------------------------------------------------------------ #
# Shared fixtures
# ------------------------------------------------------------------ #


@pytest.fixture(scope="module")
def nb_data():
    """Counts for 60 features, half null, with their MLE fit (natural log)."""
    rng = np.random.default_rng(_SEED)
    n_genes, n_samples = 60, 10
    X = pd.DataFrame(
        {"Intercept": 1.0, "condition_B_vs_A": np.repeat([0.0, 1.0], n_samples // 2)}
    )
    intercept = rng.uniform(2.0, 6.0, n_genes)
    lfc = np.where(np.arange(n_genes) < 30, 0.0, rng.normal(0.0, 2.0, n_genes))
    mu = np.exp(intercept[:, None] + lfc[:, None] * X["condition_B_vs_A"].to_numpy()[None, :])
    alpha = np.full(n_genes, 0.1)
    size = 1.0 / alpha[:, None]
    counts = rng.negative_binomial(size, size / (size + mu))
    Y = pd.DataFrame(counts, index=[f"g{i}" for i in range(n_genes)])

    fit = fit_nbinom_glm(counts, X, np.ones(counts.shape), alpha, backend="numpy")
    mle = LN2 * np.column_stack([fit.beta[:, 1], fit.se[:, 1]])
    return Y, X, alpha, mle


# ------------------------------------------------------------------ #
# Registry
# ------------------------------------------------------------------ #


class TestRegistry:
    def teardown_method(self):
        reset_estimators()

    def test_builtin_targets_resolve(self):
        spec = locate_estimator("apeglm")
        assert spec.func is apeglm
        assert spec.package == "lfc_shrink"
        assert locate_estimator("ashr").func is ash

    def test_missing_module_is_backend_unavailable(self):
        register_estimator("ashr", "no_such_package_xyz:ash")
        with pytest.raises(BackendUnavailable, match="no_such_package_xyz"):
            locate_estimator("ashr")

    def test_missing_attribute_is_backend_unavailable(self):
        register_estimator("apeglm", "lfc_shrink._estimators.ash:nope")
        with pytest.raises(BackendUnavailable, match="no attribute 'nope'"):
            locate_estimator("apeglm")

    def test_backend_unavailable_is_import_error(self):
        register_estimator("ashr", "no_such_package_xyz:ash")
        with pytest.raises(ImportError):
            locate_estimator("ashr")

    def test_callable_target(self):
        def custom(*args, **kwargs):
            return None

        register_estimator("ashr", custom)
        assert locate_estimator("ashr").func is custom

    def test_unknown_name_rejected(self):
        with pytest.raises(ValueError, match="Invalid estimator"):
            register_estimator("mystery", "x:y")

    def test_malformed_target_rejected(self):
        with pytest.raises(ValueError, match="module:attribute"):
            register_estimator("ashr", "just_a_module")

    def test_reset_restores_defaults(self):
        register_estimator("ashr", "no_such_package_xyz:ash")
        reset_estimators()
        assert locate_estimator("ashr").func is ash


# ------------------------------------------------------------------ #
# s-values
# ------------------------------------------------------------------ #


class TestSvalue:
    def test_cumulative_mean_of_sorted_lfsr(self):
        lfsr = np.array([0.3, 0.1, 0.2])
        np.testing.assert_allclose(svalue(lfsr), [0.2, 0.1, 0.15])

    def test_nan_preserved(self):
        out = svalue(np.array([0.2, np.nan, 0.4]))
        assert np.isnan(out[1])
        np.testing.assert_allclose(out[[0, 2]], [0.2, 0.3])

    def test_all_nan(self):
        assert np.isnan(svalue(np.array([np.nan]))).all()


# ------------------------------------------------------------------ #
# apeglm
# ------------------------------------------------------------------ #


class TestApeglm:
    def test_output_shapes_and_names(self, nb_data):
        Y, X, alpha, mle = nb_data
        fit = apeglm(Y, X, param=alpha, coef=2, mle=mle)
        assert isinstance(fit, ApeglmFit)
        assert len(fit) == len(Y)
        assert list(fit.map.columns) == ["Intercept", "condition_B_vs_A"]
        assert fit.map.index.equals(Y.index)
        assert list(fit.fsr.columns) == ["condition_B_vs_A"]
        assert list(fit.interval.columns) == ["2.5 %", "97.5 %"]
        assert list(fit.diag.columns) == ["conv", "count", "value"]

    def test_shrinks_null_effects(self, nb_data):
        Y, X, alpha, mle = nb_data
        fit = apeglm(Y, X, param=alpha, coef=2, mle=mle)
        null = slice(0, 30)
        assert np.mean(np.abs(fit.map.iloc[null, 1])) < np.mean(np.abs(mle[null, 0]))

    def test_interval_brackets_map(self, nb_data):
        Y, X, alpha, mle = nb_data
        fit = apeglm(Y, X, param=alpha, coef=2, mle=mle)
        lo, hi = fit.interval.iloc[:, 0], fit.interval.iloc[:, 1]
        mode = fit.map.iloc[:, 1]
        ok = lo.notna() & hi.notna()
        assert np.all(lo[ok] < mode[ok])
        assert np.all(mode[ok] < hi[ok])

    def test_fsr_and_svalue(self, nb_data):
        Y, X, alpha, mle = nb_data
        fit = apeglm(Y, X, param=alpha, coef=2, mle=mle)
        fsr = fit.fsr.iloc[:, 0].to_numpy()
        ok = ~np.isnan(fsr)
        assert ok.sum() > 50
        assert np.all((fsr[ok] >= 0) & (fsr[ok] <= 0.5))
        np.testing.assert_allclose(fit.svalue, svalue(fsr))

    def test_adaptive_scale_recorded(self, nb_data):
        Y, X, alpha, mle = nb_data
        adapted = apeglm(Y, X, param=alpha, coef=2, mle=mle)
        fixed = apeglm(Y, X, param=alpha, coef=2)
        assert adapted.prior_control["prior_scale"] == pytest.approx(prior_scale_from_mle(mle))
        assert fixed.prior_control["prior_scale"] == 1.0
        assert adapted.prior_control["no_shrink"] == [1]

    def test_prior_control_override(self, nb_data):
        Y, X, alpha, _ = nb_data
        fit = apeglm(Y.iloc[:5], X, param=alpha[:5], coef=2, prior_control={"prior_scale": 0.2})
        assert fit.prior_control["prior_scale"] == 0.2

    def test_no_shrink_scale_override_moves_intercept(self, nb_data):
        Y, X, alpha, mle = nb_data
        rows = slice(0, 10)
        wide = apeglm(Y.iloc[rows], X, param=alpha[rows], coef=2, mle=mle)
        tight = apeglm(
            Y.iloc[rows], X, param=alpha[rows], coef=2, mle=mle,
            prior_control={"prior_no_shrink_scale": 0.01},
        )
        assert tight.prior_control["prior_no_shrink_scale"] == 0.01
        # Intercepts are simulated between 2 and 6; a N(0, 0.01²) prior pins them near 0.
        assert np.all(wide.map["Intercept"] > 1.0)
        assert np.all(np.abs(tight.map["Intercept"]) < 0.5)

    def test_no_shrink_columns_override(self, nb_data):
        Y, X, alpha, mle = nb_data
        rows = slice(30, 40)
        listed = apeglm(
            Y.iloc[rows], X, param=alpha[rows], coef=2, mle=mle,
            prior_control={"no_shrink": [1, 2]},
        )
        flagged = apeglm(Y.iloc[rows], X, param=alpha[rows], coef=2, mle=mle, no_shrink=True)
        assert listed.prior_control["no_shrink"] == [1, 2]
        np.testing.assert_allclose(listed.map, flagged.map, rtol=1e-8, atol=1e-10)

    def test_prior_mean_and_df_applied(self, nb_data):
        Y, X, alpha, _ = nb_data
        null = slice(0, 10)
        # A huge df turns the t prior into a tight N(1, 0.01²) on the shrunk column.
        fit = apeglm(
            Y.iloc[null], X, param=alpha[null], coef=2,
            prior_control={"prior_mean": 1.0, "prior_scale": 0.01, "prior_df": 1e6},
        )
        np.testing.assert_allclose(fit.map["condition_B_vs_A"], 1.0, atol=0.05)

    @pytest.mark.parametrize(
        "control, match",
        [
            ({"prior_sd": 1.0}, "Unknown prior_control"),
            ({"prior_scale": 0.0}, "prior_scale"),
            ({"prior_df": -1.0}, "prior_df"),
            ({"prior_no_shrink_scale": np.inf}, "prior_no_shrink_scale"),
            ({"no_shrink": [3]}, "no_shrink"),
        ],
    )
    def test_invalid_prior_control(self, nb_data, control, match):
        Y, X, alpha, _ = nb_data
        with pytest.raises(ValueError, match=match):
            apeglm(Y.iloc[:3], X, param=alpha[:3], coef=2, prior_control=control)

    def test_non_finite_sd_flagged_unconverged(self, nb_data, monkeypatch):
        Y, X, alpha, _ = nb_data
        module = importlib.import_module("lfc_shrink._estimators.apeglm")

        def indefinite(y, X, w, off, alpha, beta0, prior, method, log_lik):
            return beta0, -np.eye(len(beta0)), 0, 4, 1.0

        monkeypatch.setattr(module, "_fit_one", indefinite)
        fit = apeglm(Y.iloc[:4], X, param=alpha[:4], coef=2)
        assert fit.diag["conv"].tolist() == [2, 2, 2, 2]
        assert fit.sd.isna().all().all()
        assert fit.map.notna().all().all()

    def test_no_shrink_approaches_mle(self, nb_data):
        Y, X, alpha, mle = nb_data
        null = slice(0, 30)
        fit = apeglm(Y.iloc[null], X, param=alpha[null], coef=2, no_shrink=True)
        np.testing.assert_allclose(fit.map.iloc[:, 1], mle[null, 0], atol=0.05)

    def test_methods_agree(self, nb_data):
        Y, X, alpha, mle = nb_data
        rows = slice(0, 10)
        cr = apeglm(Y.iloc[rows], X, param=alpha[rows], coef=2, mle=mle)
        newton = apeglm(Y.iloc[rows], X, param=alpha[rows], coef=2, mle=mle, method="nbinomR")
        general = apeglm(
            Y.iloc[rows], X, log_lik=log_lik_nb, param=alpha[rows], coef=2, mle=mle,
            method="general",
        )
        np.testing.assert_allclose(newton.map, cr.map, atol=1e-3)
        np.testing.assert_allclose(general.map, cr.map, atol=2e-2)

    def test_concat_recomputes_svalue(self, nb_data):
        Y, X, alpha, mle = nb_data
        whole = apeglm(Y, X, param=alpha, coef=2, mle=mle)
        parts = [
            apeglm(Y.iloc[s], X, param=alpha[s], coef=2, mle=mle)
            for s in (slice(0, 25), slice(25, 60))
        ]
        joined = ApeglmFit.concat(parts)
        np.testing.assert_allclose(joined.map, whole.map, rtol=1e-8, atol=1e-10)
        np.testing.assert_allclose(joined.svalue, whole.svalue, rtol=1e-8, atol=1e-10)
        assert joined.map.index.equals(Y.index)

    def test_invalid_arguments(self, nb_data):
        Y, X, alpha, _ = nb_data
        with pytest.raises(ValueError, match="Invalid method"):
            apeglm(Y, X, param=alpha, coef=2, method="newton")
        with pytest.raises(ValueError, match="log_lik"):
            apeglm(Y, X, param=alpha, coef=2, method="general")
        with pytest.raises(ValueError, match="coef"):
            apeglm(Y, X, param=alpha, coef=3)
        with pytest.raises(ValueError, match="param"):
            apeglm(Y, X, coef=2)


class TestPriorScale:
    def test_wider_effects_give_wider_prior(self):
        rng = np.random.default_rng(0)
        se = np.full(500, 0.2)
        narrow = np.column_stack([rng.normal(0, 0.1, 500), se])
        wide = np.column_stack([rng.normal(0, 2.0, 500), se])
        assert prior_scale_from_mle(wide) > prior_scale_from_mle(narrow)

    def test_recovers_effect_sd(self):
        rng = np.random.default_rng(1)
        se = np.full(4000, 0.3)
        b = rng.normal(0, 1.5, 4000) + rng.normal(0, 0.3, 4000)
        assert prior_scale_from_mle(np.column_stack([b, se])) == pytest.approx(1.5, rel=0.1)

    def test_no_usable_rows(self):
        assert prior_scale_from_mle(np.array([[np.nan, 1.0], [1.0, 0.0]])) == 1.0


# ------------------------------------------------------------------ #
# ash
# ------------------------------------------------------------------ #


class TestAsh:
    @pytest.fixture(scope="class")
    def estimates(self):
        rng = np.random.default_rng(3)
        truth = np.where(rng.random(400) < 0.7, 0.0, rng.normal(0.0, 2.0, 400))
        se = rng.uniform(0.2, 1.0, 400)
        return truth + rng.normal(0.0, se), se

    def test_result_columns(self, estimates):
        b, s = estimates
        fit = ash(b, s)
        assert list(fit.result.columns) == [
            "betahat",
            "sebetahat",
            "NegativeProb",
            "PositiveProb",
            "lfsr",
            "svalue",
            "lfdr",
            "PosteriorMean",
            "PosteriorSD",
        ]
        assert fit.method == "shrink"
        np.testing.assert_allclose(fit.fitted_g.pi.sum(), 1.0)

    def test_posterior_mean_between_zero_and_mle(self, estimates):
        b, s = estimates
        pm = ash(b, s).result["PosteriorMean"].to_numpy()
        assert np.all(np.abs(pm) <= np.abs(b) + 1e-12)
        assert np.all(pm * b >= 0)

    def test_lfsr_bounds_and_svalue(self, estimates):
        b, s = estimates
        res = ash(b, s).result
        assert res["lfsr"].between(0.0, 1.0).all()
        np.testing.assert_allclose(res["svalue"], svalue(res["lfsr"].to_numpy()))

    def test_fdr_has_point_mass(self, estimates):
        b, s = estimates
        fit = ash(b, s, method="fdr")
        assert fit.fitted_g.sd[0] == 0.0
        assert fit.fitted_g.pi[0] > 0.3
        assert (fit.result["lfdr"] > 0).any()

    def test_shrink_has_no_point_mass(self, estimates):
        b, s = estimates
        fit = ash(b, s)
        assert np.all(fit.fitted_g.sd > 0)
        np.testing.assert_allclose(fit.result["lfdr"], 0.0)

    def test_series_index_kept(self):
        b = pd.Series([0.5, -1.0, 3.0], index=["a", "b", "c"])
        res = ash(b, np.array([0.5, 0.5, 0.5])).result
        assert list(res.index) == ["a", "b", "c"]

    def test_unusable_rows_get_nan(self):
        b = np.array([1.0, np.nan, -0.5, 2.0])
        s = np.array([0.5, 0.5, 0.0, 0.4])
        res = ash(b, s).result
        assert res["PosteriorMean"].isna().tolist() == [False, True, True, False]

    def test_grid_spans_estimates(self):
        grid = mixture_sd_grid(np.array([0.0, 4.0]), np.array([0.5, 0.5]))
        assert grid.min() <= 0.05 + 1e-12
        assert grid.max() >= 2 * np.sqrt(16 - 0.25) - 1e-9

    def test_invalid_arguments(self):
        with pytest.raises(ValueError, match="mixcompdist"):
            ash([1.0], [1.0], mixcompdist="uniform")
        with pytest.raises(ValueError, match="Invalid method"):
            ash([1.0], [1.0], method="other")
        with pytest.raises(ValueError, match="no feature"):
            ash([np.nan], [1.0])
