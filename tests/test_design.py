"""Tests for design formulas and model matrices."""

import numpy as np
import pandas as pd
import pytest

from lfc_shrink.design import (
    build_expanded_model_matrix,
    build_model_matrix,
    design_factors,
    design_terms,
    expanded_coefficient_name,
    expanded_level_columns,
    factor_levels,
    has_intercept,
    has_interactions,
    is_factor,
    is_intercept,
    standard_coefficient_name,
)


@pytest.fixture()
def metadata():
    return pd.DataFrame(
        {
            "condition": pd.Categorical(["A", "A", "B", "B", "C", "C"], categories=["A", "B", "C"]),
            "batch": ["x", "y", "x", "y", "x", "y"],
            "age": [31.0, 45.0, 28.0, 52.0, 39.0, 60.0],
        },
        index=[f"s{i}" for i in range(6)],
    )


class TestFormulaTerms:
    def test_terms_include_intercept(self):
        assert design_terms("~ condition") == [(), ("condition",)]

    def test_leading_tilde_optional(self):
        assert design_terms("condition") == design_terms("~ condition")

    def test_interaction_detected(self):
        assert has_interactions("~ batch + condition + batch:condition")
        assert not has_interactions("~ batch + condition")

    def test_intercept_removal(self):
        assert has_intercept("~ condition")
        assert not has_intercept("~ 0 + condition")

    def test_c_wrapper_stripped(self):
        assert design_terms("~ C(condition)") == [(), ("condition",)]


class TestFactors:
    def test_categorical_levels_keep_order(self, metadata):
        assert factor_levels(metadata, "condition") == ["A", "B", "C"]

    def test_string_levels_sorted(self, metadata):
        assert factor_levels(metadata, "batch") == ["x", "y"]

    def test_numeric_is_not_factor(self, metadata):
        assert not is_factor(metadata, "age")
        assert is_factor(metadata, "batch")

    def test_design_factors_in_formula_order(self, metadata):
        assert design_factors("~ batch + age + condition", metadata) == ["batch", "condition"]


class TestStandardMatrix:
    def test_treatment_coding_names(self, metadata):
        mm = build_model_matrix("~ batch + condition", metadata)
        assert list(mm.columns) == [
            "Intercept",
            "batch_y_vs_x",
            "condition_B_vs_A",
            "condition_C_vs_A",
        ]
        assert list(mm.index) == list(metadata.index)

    def test_indicator_values(self, metadata):
        mm = build_model_matrix("~ condition", metadata)
        np.testing.assert_array_equal(mm["condition_B_vs_A"], [0, 0, 1, 1, 0, 0])
        np.testing.assert_array_equal(mm["Intercept"], np.ones(6))

    def test_continuous_covariate_keeps_name(self, metadata):
        mm = build_model_matrix("~ age + condition", metadata)
        assert "age" in mm.columns
        np.testing.assert_allclose(mm["age"], metadata["age"])

    def test_standard_coefficient_name(self, metadata):
        assert standard_coefficient_name("condition", "C", metadata) == "condition_C_vs_A"
        assert standard_coefficient_name("condition", "A", metadata) is None


class TestExpandedMatrix:
    def test_one_column_per_level(self, metadata):
        mm = build_expanded_model_matrix("~ batch + condition", metadata)
        assert list(mm.columns) == [
            "Intercept",
            "batchx",
            "batchy",
            "conditionA",
            "conditionB",
            "conditionC",
        ]
        # every sample sits in exactly one level of each factor
        np.testing.assert_array_equal(
            mm[["conditionA", "conditionB", "conditionC"]].sum(axis=1), np.ones(6)
        )

    def test_rejects_interactions(self, metadata):
        with pytest.raises(ValueError, match="interactions"):
            build_expanded_model_matrix("~ batch * condition", metadata)

    def test_level_columns(self, metadata):
        assert expanded_level_columns("~ batch + condition", metadata) == {
            "batch": ["batchx", "batchy"],
            "condition": ["conditionA", "conditionB", "conditionC"],
        }
        assert expanded_coefficient_name("condition", "B") == "conditionB"


def test_is_intercept():
    assert is_intercept("Intercept")
    assert is_intercept("(Intercept)")
    assert not is_intercept("condition_B_vs_A")
