"""Tests for the shared regression specification."""

from __future__ import annotations

import dataclasses

import numpy as np
import pytest

from model_specification import ModelSpecification, reading_time_specification
from reading_time_data import DataIntegrityError, merge_frequency_and_reading_times


def test_default_formula() -> None:
    spec = reading_time_specification()
    assert spec.formula == (
        "mean_rt ~ log_unigram_freq + log_bigram_prob + word_length + (1 | story) + (1 | position)"
    )
    assert spec.group_terms == ("1|story", "1|position")


def test_specification_is_immutable() -> None:
    spec = ModelSpecification(fixed_effects=["word_length"])
    assert spec.fixed_effects == ("word_length",)
    with pytest.raises(dataclasses.FrozenInstanceError):
        spec.response = "log_rt"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"fixed_effects": ()},
        {"fixed_effects": ("mean_rt",)},
        {"fixed_effects": ("word_length", "word_length")},
        {"group_factors": ("story", "word_length")},
    ],
)
def test_invalid_specifications_are_rejected(kwargs) -> None:
    with pytest.raises(ValueError):
        ModelSpecification(**kwargs)


def test_design_table_standardizes_without_touching_input(sources) -> None:
    table = merge_frequency_and_reading_times(*sources)
    before = table.copy()
    spec = reading_time_specification()

    design = spec.design_table(table)

    assert design.columns.tolist() == spec.columns
    for col in spec.fixed_effects:
        assert design[col].mean() == pytest.approx(0.0, abs=1e-9)
        assert np.std(design[col]) == pytest.approx(1.0)
    assert str(design["story"].dtype) == "category"
    np.testing.assert_allclose(design["mean_rt"], table["mean_rt"])
    assert table.equals(before)


def test_design_table_centers_constant_predictor(sources) -> None:
    table = merge_frequency_and_reading_times(*sources)
    table["word_length"] = 4
    design = reading_time_specification().design_table(table)
    assert (design["word_length"] == 0).all()


def test_design_table_requires_model_columns(sources) -> None:
    table = merge_frequency_and_reading_times(*sources).drop(columns="log_bigram_prob")
    with pytest.raises(DataIntegrityError, match="log_bigram_prob"):
        reading_time_specification().design_table(table)
