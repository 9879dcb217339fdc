"""Tests for LOO/WAIC ranking and posterior-predictive checks."""

from __future__ import annotations

import itertools

import numpy as np
import pytest

from conftest import SyntheticEngine, make_sources
from family_fits import CriterionEstimate, FitStatus, FittedModel, SamplerSettings, fit_families
from family_priors import priors_for
from model_comparison import (
    compare_models,
    estimate_criterion,
    posterior_predictive_check,
    rank_estimates,
)
from model_specification import reading_time_specification
from reading_time_data import merge_frequency_and_reading_times
from reading_time_families import Family


def stub_fit(family, elpd=None, se=5.0, status=FitStatus.OK, error=None, criterion="loo") -> FittedModel:
    family = Family.parse(family)
    fit = FittedModel(
        family=family,
        formula="mean_rt ~ word_length",
        response="mean_rt",
        priors=priors_for(family),
        status=status,
        error=error,
    )
    if elpd is not None:
        fit.attach_criterion(CriterionEstimate(criterion, elpd, se))
    return fit


@pytest.fixture(scope="module")
def synthetic_fits():
    table = merge_frequency_and_reading_times(*make_sources(n_stories=3, n_tokens=6))
    settings = SamplerSettings(draws=1000, tune=0, chains=4)
    return fit_families(reading_time_specification(), table, SyntheticEngine(), settings=settings)


# ---------------------------------------------------------------------------
# Ranking


def test_rank_orders_by_descending_elpd() -> None:
    fits = [
        stub_fit("lognormal", -100.0),
        stub_fit("wald", -90.0),
        stub_fit("weibull", -110.0),
    ]
    report = compare_models(fits, criteria=("loo",))

    ranking = report.ranking("loo")
    assert [entry.elpd for entry in ranking] == [-90.0, -100.0, -110.0]
    assert report.ranked_families() == ["wald", "lognormal", "weibull"]
    assert [entry.rank for entry in ranking] == [1, 2, 3]
    assert [entry.elpd_diff for entry in ranking] == [0.0, -10.0, -20.0]
    assert report.best().family == "wald"


def test_ranking_does_not_depend_on_input_order() -> None:
    fits = [
        stub_fit("lognormal", -100.0),
        stub_fit("wald", -90.0),
        stub_fit("weibull", -110.0),
        stub_fit("exgaussian", -100.0),
    ]
    expected = compare_models(fits, criteria=("loo",)).ranked_families()

    for permutation in itertools.permutations(fits):
        assert compare_models(permutation, criteria=("loo",)).ranked_families() == expected
    assert expected == ["wald", "exgaussian", "lognormal", "weibull"]


def test_overlapping_bands_and_ties_are_reported() -> None:
    estimates = {
        "lognormal": CriterionEstimate("loo", -100.0, 5.0),
        "wald": CriterionEstimate("loo", -95.0, 5.0),
        "weibull": CriterionEstimate("loo", -100.0, 1.0),
        "exgaussian": CriterionEstimate("loo", -200.0, 1.0),
    }
    ranking = {entry.family: entry for entry in rank_estimates(estimates)}

    assert ranking["wald"].overlaps == ("lognormal", "weibull")
    assert ranking["lognormal"].ties == ("weibull",)
    assert ranking["weibull"].ties == ("lognormal",)
    assert ranking["exgaussian"].overlaps == ()
    assert ranking["wald"].rank == 1


def test_mixed_criteria_cannot_be_ranked_together() -> None:
    with pytest.raises(ValueError):
        rank_estimates(
            {
                "lognormal": CriterionEstimate("loo", -100.0, 5.0),
                "wald": CriterionEstimate("waic", -90.0, 5.0),
            }
        )


def test_unknown_criterion_is_rejected() -> None:
    with pytest.raises(ValueError, match="dic"):
        compare_models([stub_fit("lognormal", -100.0)], criteria=("dic",))


def test_duplicate_families_are_rejected() -> None:
    with pytest.raises(ValueError):
        compare_models([stub_fit("wald", -90.0), stub_fit("wald", -95.0)], criteria=("loo",))


# ---------------------------------------------------------------------------
# Exclusions


def test_unusable_fits_are_excluded_with_a_note() -> None:
    fits = [
        stub_fit("lognormal", -100.0),
        stub_fit("wald", -90.0, status=FitStatus.FAILED, error="sampler crashed"),
        stub_fit("weibull", -80.0, status=FitStatus.CANCELLED, error="timed out after 5 s"),
        stub_fit("exgaussian", -95.0, status=FitStatus.UNRELIABLE, error="max R-hat 1.100 > 1.01"),
    ]
    report = compare_models(fits, criteria=("loo",), expected=list(Family))

    assert report.ranked_families() == ["lognormal"]
    assert report.excluded["wald"] == "failed: sampler crashed"
    assert report.excluded["weibull"].startswith("cancelled")
    assert report.excluded["exgaussian"].startswith("unreliable")
    assert report.excluded["shifted_lognormal"] == "not fitted"


def test_unreliable_fits_can_be_ranked_on_request() -> None:
    fits = [
        stub_fit("lognormal", -100.0),
        stub_fit("exgaussian", -95.0, status=FitStatus.UNRELIABLE, error="3 divergent transitions"),
    ]
    report = compare_models(fits, criteria=("loo",), include_unreliable=True)
    assert report.ranked_families() == ["exgaussian", "lognormal"]


def test_fit_without_log_likelihood_is_excluded() -> None:
    report = compare_models([stub_fit("lognormal", -100.0), stub_fit("wald")], criteria=("loo",))
    assert report.excluded == {"wald": "no pointwise log-likelihood"}


def test_fits_on_different_observations_are_excluded(sources, settings) -> None:
    spec = reading_time_specification()
    table = merge_frequency_and_reading_times(*sources)
    engine = SyntheticEngine()
    (lognormal,) = fit_families(spec, table, engine, families=["lognormal"], settings=settings)
    (wald,) = fit_families(spec, table.iloc[:-1], engine, families=["wald"], settings=settings)

    report = compare_models([lognormal, wald], criteria=("loo",))

    assert report.ranked_families() == ["lognormal"]
    assert report.excluded["wald"] == "observations differ from lognormal"


# ---------------------------------------------------------------------------
# Criteria and predictive checks on sampled posteriors


def test_loo_and_waic_rank_the_generating_family_first(synthetic_fits) -> None:
    report = compare_models(synthetic_fits, expected=list(Family))

    assert report.excluded == {}
    for criterion in ("loo", "waic"):
        ranking = report.ranking(criterion)
        assert [entry.family for entry in ranking][0] == "lognormal"
        assert [entry.family for entry in ranking][-1] == "exgaussian"
        elpds = [entry.elpd for entry in ranking]
        assert elpds == sorted(elpds, reverse=True)
        assert all(np.isfinite(entry.dse) for entry in ranking)
        assert ranking[0].dse == 0.0
    assert set(synthetic_fits[0].criteria) == {"loo", "waic"}


def test_estimate_criterion_returns_pointwise_values(synthetic_fits) -> None:
    lognormal = synthetic_fits[0]
    loo = estimate_criterion(lognormal, "loo")

    assert loo.criterion == "loo"
    assert loo.pointwise.shape == (18,)
    assert loo.elpd == pytest.approx(loo.pointwise.sum())
    assert loo.se > 0
    assert loo.n_bad_pareto_k == 0
    with pytest.raises(ValueError):
        estimate_criterion(lognormal, "bic")


def test_posterior_predictive_check_summaries(synthetic_fits) -> None:
    check = posterior_predictive_check(synthetic_fits[0])

    assert check.family == "lognormal"
    assert check.draws.shape == (4000, 18)
    frame = check.to_frame()
    assert frame.index.tolist() == ["mean", "sd", "median", "min", "max"]
    assert frame.columns.tolist() == ["observed", "replicated_mean", "p_value"]
    assert frame["p_value"].between(0, 1).all()
    assert frame.loc["mean", "observed"] == pytest.approx(check.observed.mean())


def test_report_frame_and_summary(synthetic_fits) -> None:
    report = compare_models(synthetic_fits, criteria=("loo",))

    frame = report.to_frame()
    assert frame["model"].tolist() == report.ranked_families("loo")
    assert frame["rank"].tolist() == [1, 2, 3, 4, 5]
    assert set(report.predictive_draws()) == {family.value for family in Family}
    lines = report.summary_lines()
    assert lines[0].startswith("LOO ranking")
    assert "1. lognormal" in lines[1]
    assert frame["n_bad_pareto_k"].tolist() == [0] * 5


def test_bad_pareto_k_count_is_reported() -> None:
    fit = stub_fit("wald")
    fit.attach_criterion(CriterionEstimate("loo", -90.0, 5.0, warning=True, n_bad_pareto_k=3))
    report = compare_models([fit, stub_fit("lognormal", -100.0)], criteria=("loo",))

    assert report.best().n_bad_pareto_k == 3
    assert report.to_frame()["n_bad_pareto_k"].tolist()[0] == 3
    assert "(3 Pareto k > 0.7)" in report.summary_lines()[1]
