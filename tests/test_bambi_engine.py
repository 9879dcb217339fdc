"""Model construction through bambi for every family; no sampling."""

from __future__ import annotations

import bambi as bmb
import pytest

from conftest import make_sources
from family_fits import BambiEngine
from family_priors import priors_for, required_parameter_classes
from model_specification import reading_time_specification
from reading_time_data import merge_frequency_and_reading_times
from reading_time_families import Family


@pytest.fixture(scope="module")
def design():
    table = merge_frequency_and_reading_times(*make_sources(n_stories=3, n_tokens=6))
    return reading_time_specification().design_table(table)


@pytest.mark.parametrize("family", list(Family))
def test_engine_skeleton_is_covered_by_registry(family, design) -> None:
    spec = reading_time_specification()

    classes = BambiEngine().default_prior_classes(spec, family, design)

    assert {"Intercept", "b", "sd"} <= classes
    assert classes <= required_parameter_classes(family)
    assert set(family.auxiliary_parameters) <= classes


@pytest.mark.parametrize("family", list(Family))
def test_model_builds_with_registry_priors(family, design) -> None:
    spec = reading_time_specification()
    priors = priors_for(family, response=design[spec.response])

    model = BambiEngine().build_model(spec, family, priors, design)
    model.build()

    assert isinstance(model, bmb.Model)
    assert model.backend is not None
    assert model.formula.main == spec.formula
