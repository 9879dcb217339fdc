"""Shared builders and a deterministic stand-in for the MCMC engine."""

from __future__ import annotations

import threading

import arviz as az
import numpy as np
import pandas as pd
import pytest
from scipy import stats

from family_fits import SamplerSettings
from family_priors import required_parameter_classes
from reading_time_families import Family

TOKENS = ["The", "old", "man", "walked", "home", "She", "read", "every", "single", "page"]


def make_sources(
    n_stories: int = 2,
    n_tokens: int = 5,
    zero_bigram: set | None = None,
    seed: int = 0,
) -> tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """Unigram, bigram and reading-time tables with positive counts everywhere.

    ``zero_bigram`` holds (story, position) keys whose bigram count is 0.
    """
    rng = np.random.default_rng(seed)
    zero_bigram = zero_bigram or set()
    uni_rows, bi_rows, rt_rows = [], [], []
    for story in range(1, n_stories + 1):
        for position in range(1, n_tokens + 1):
            token = TOKENS[(story * n_tokens + position) % len(TOKENS)]
            code = f"{story}.{position}.word"
            unigram = int(rng.integers(50, 5000))
            context = int(rng.integers(50, 5000))
            bigram = 0 if (story, position) in zero_bigram else int(rng.integers(1, 50))
            uni_rows.append([code, 1, token, unigram, 0])
            bi_rows.append([code, 2, token, bigram, context])
            # Whole-token entries share the key but must be ignored.
            uni_rows.append([f"{story}.{position}.whole", 1, token, unigram + 1, 0])
            rt_rows.append([story, position, token, float(rng.uniform(250, 450))])

    columns = ["token_code", "ngram_order", "word", "freq", "context_freq"]
    unigrams = pd.DataFrame(uni_rows, columns=columns)
    bigrams = pd.DataFrame(bi_rows, columns=columns)
    reading_times = pd.DataFrame(rt_rows, columns=["item", "zone", "word", "meanItemRT"])
    return unigrams, bigrams, reading_times


class SyntheticEngine:
    """Returns lognormal-likelihood InferenceData without sampling.

    Later families in ``Family`` order get an inflated sigma, so their elpd is
    lower: lognormal ranks first, ex-Gaussian last.
    """

    def __init__(self, seed: int = 7, fail=(), divergences: dict | None = None, block=()) -> None:
        self.seed = seed
        self.fail = {Family.parse(f) for f in fail}
        self.block = {Family.parse(f) for f in block}
        self.divergences = {Family.parse(k): v for k, v in (divergences or {}).items()}
        self.release = threading.Event()
        self.calls: list[Family] = []
        self._lock = threading.Lock()

    def default_prior_classes(self, spec, family, data) -> frozenset:
        return required_parameter_classes(family)

    def fit(self, spec, family, priors, data, settings):
        with self._lock:
            self.calls.append(family)
        if family in self.block:
            self.release.wait(timeout=10)
        if family in self.fail:
            raise RuntimeError(f"sampler crashed for {family.value}")

        index = list(Family).index(family)
        rng = np.random.default_rng(self.seed + index)
        y = data[spec.response].to_numpy(dtype=float)
        # Floor at 1 ms so a zero reading time keeps a finite density.
        y_floor = np.maximum(y, 1.0)
        log_y = np.log(y_floor)
        shape = (settings.chains, settings.draws)

        intercept = rng.normal(log_y.mean(), 0.01, size=shape)
        sigma = np.abs(rng.normal(max(log_y.std(), 0.05) * (1 + 0.5 * index), 0.002, size=shape))
        scale = np.exp(intercept)[..., None]
        s = sigma[..., None]

        posterior = {"Intercept": intercept, "sigma": sigma}
        for name in spec.fixed_effects:
            posterior[name] = rng.normal(0.0, 0.05, size=shape)

        diverging = np.zeros(shape, dtype=bool)
        diverging.flat[: self.divergences.get(family, 0)] = True

        response = spec.response
        return az.from_dict(
            posterior=posterior,
            log_likelihood={response: stats.lognorm.logpdf(y_floor, s=s, scale=scale)},
            posterior_predictive={
                response: stats.lognorm.rvs(s=s, scale=scale, size=shape + (len(y),), random_state=rng)
            },
            observed_data={response: y},
            sample_stats={"diverging": diverging},
            coords={"__obs__": np.arange(len(y))},
            dims={response: ["__obs__"]},
        )


@pytest.fixture
def sources():
    return make_sources()


@pytest.fixture
def engine() -> SyntheticEngine:
    return SyntheticEngine()


@pytest.fixture
def settings() -> SamplerSettings:
    return SamplerSettings(draws=1000, tune=0, chains=4)
