"""
Family Fitting
==============

Fits the shared reading-time regression once per noise family.

The sampler is reached through an ``InferenceEngine``; ``BambiEngine`` is the
production implementation (bambi on top of PyMC NUTS). Each fit is cached as
NetCDF under a key built from the family name and a digest of everything that
determines the posterior: formula, priors, design data and sampler settings.

Fits for different families are independent and run concurrently. A fit that
raises, times out or misses convergence targets is reported through its
``FitStatus`` instead of aborting the run.
"""

import hashlib
import json
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

import arviz as az
import bambi as bmb
import numpy as np
import pandas as pd

from family_priors import FamilyPriorSet, PriorSpecificationError, priors_for
from reading_time_families import Family, bambi_family

logger = logging.getLogger(__name__)

# Model parameters
WARMUP_ITERATIONS = 1000
DEFAULT_ITERATIONS = 3000
N_CHAINS = 4
RANDOM_SEED = 42
TARGET_ACCEPT = 0.9


class FitCancelled(RuntimeError):
    """Raised when a fit is cancelled before its result was published."""


class FitStatus(str, Enum):
    OK = "ok"
    UNRELIABLE = "unreliable"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class SamplerSettings:
    draws: int = DEFAULT_ITERATIONS - WARMUP_ITERATIONS
    tune: int = WARMUP_ITERATIONS
    chains: int = N_CHAINS
    random_seed: int = RANDOM_SEED
    target_accept: float = TARGET_ACCEPT
    progressbar: bool = False

    @classmethod
    def from_iterations(cls, iterations: int = DEFAULT_ITERATIONS, **kwargs) -> "SamplerSettings":
        """Split a total iteration count into warmup and kept draws."""
        return cls(
            draws=max(iterations - WARMUP_ITERATIONS, 1000),
            tune=min(WARMUP_ITERATIONS, iterations // 2),
            **kwargs,
        )

    def cache_fields(self) -> dict:
        fields = asdict(self)
        fields.pop("progressbar")
        return fields


@dataclass(frozen=True)
class ConvergenceCriteria:
    max_rhat: float = 1.01
    min_ess_bulk: float = 400.0
    min_ess_tail: float = 400.0
    max_divergences: int = 0


def _extreme(dataset, reducer) -> float:
    values = []
    for name in dataset.data_vars:
        arr = np.asarray(dataset[name].values, dtype=float)
        arr = arr[np.isfinite(arr)]
        if arr.size:
            values.append(reducer(arr))
    return float(reducer(np.array(values))) if values else float("nan")


@dataclass(frozen=True)
class ConvergenceDiagnostics:
    """Summary of the sampler diagnostics ArviZ reports for a posterior."""

    max_rhat: float
    min_ess_bulk: float
    min_ess_tail: float
    n_divergent: int
    n_samples: int

    @classmethod
    def from_inference_data(cls, idata) -> "ConvergenceDiagnostics":
        posterior = idata.posterior
        n_divergent = 0
        if hasattr(idata, "sample_stats") and "diverging" in idata.sample_stats:
            n_divergent = int(idata.sample_stats["diverging"].values.sum())
        return cls(
            max_rhat=_extreme(az.rhat(posterior), np.max),
            min_ess_bulk=_extreme(az.ess(posterior, method="bulk"), np.min),
            min_ess_tail=_extreme(az.ess(posterior, method="tail"), np.min),
            n_divergent=n_divergent,
            n_samples=int(posterior.sizes["chain"] * posterior.sizes["draw"]),
        )

    def problems(self, criteria: ConvergenceCriteria = ConvergenceCriteria()) -> list:
        """Human-readable list of breached convergence targets."""
        found = []
        if not self.max_rhat <= criteria.max_rhat:
            found.append(f"max R-hat {self.max_rhat:.3f} > {criteria.max_rhat}")
        if not self.min_ess_bulk >= criteria.min_ess_bulk:
            found.append(f"min bulk ESS {self.min_ess_bulk:.0f} < {criteria.min_ess_bulk:.0f}")
        if not self.min_ess_tail >= criteria.min_ess_tail:
            found.append(f"min tail ESS {self.min_ess_tail:.0f} < {criteria.min_ess_tail:.0f}")
        if self.n_divergent > criteria.max_divergences:
            found.append(f"{self.n_divergent} divergent transitions")
        return found


@dataclass(frozen=True)
class CriterionEstimate:
    """Expected log pointwise predictive density under one criterion."""

    criterion: str
    elpd: float
    se: float
    p_eff: float = float("nan")
    pointwise: np.ndarray = field(default=None, compare=False, repr=False)
    warning: bool = False
    n_bad_pareto_k: int = None


@dataclass
class FittedModel:
    """
    One family's posterior plus the metadata needed to compare it.

    Apart from ``attach_criterion`` instances are not modified once returned
    by the fitter.
    """

    family: Family
    formula: str
    response: str
    priors: FamilyPriorSet
    status: FitStatus
    idata: az.InferenceData = None
    diagnostics: ConvergenceDiagnostics = None
    cache_key: str = None
    error: str = None
    from_cache: bool = False
    criteria: dict = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.family.value

    @property
    def has_posterior(self) -> bool:
        return self.status in (FitStatus.OK, FitStatus.UNRELIABLE) and self.idata is not None

    def attach_criterion(self, estimate: CriterionEstimate):
        self.criteria[estimate.criterion] = estimate

    def posterior_predictive(self) -> np.ndarray:
        """Replicated responses as a (samples, observations) array."""
        if not self.has_posterior or not hasattr(self.idata, "posterior_predictive"):
            raise ValueError(f"{self.name} has no posterior predictive draws")
        draws = np.asarray(self.idata.posterior_predictive[self.response].values, dtype=float)
        return draws.reshape(-1, *draws.shape[2:])

    def observed(self) -> np.ndarray:
        if self.idata is None or not hasattr(self.idata, "observed_data"):
            raise ValueError(f"{self.name} carries no observed data")
        return np.asarray(self.idata.observed_data[self.response].values, dtype=float)


class InferenceEngine(Protocol):
    """Black-box posterior sampler used by the fitter."""

    def fit(self, spec, family: Family, priors: FamilyPriorSet, data: pd.DataFrame, settings: SamplerSettings):
        """Return InferenceData with posterior, log_likelihood and posterior_predictive groups."""
        ...

    def default_prior_classes(self, spec, family: Family, data: pd.DataFrame) -> frozenset:
        """Parameter classes the engine would assign default priors to."""
        ...


class BambiEngine:
    """Fits models with bambi and samples with PyMC's NUTS."""

    def build_model(self, spec, family: Family, priors, data: pd.DataFrame) -> bmb.Model:
        family_arg, link = bambi_family(family)
        bambi_priors = priors.to_bambi(spec) if priors is not None else None
        return bmb.Model(spec.formula, data, family=family_arg, link=link, priors=bambi_priors)

    def default_prior_classes(self, spec, family, data):
        model = self.build_model(spec, family, None, data)
        likelihood = model.family.likelihood
        component = model.components[likelihood.parent]

        classes = set()
        if component.intercept_term is not None:
            classes.add("Intercept")
        if component.common_terms:
            classes.add("b")
        if component.group_specific_terms:
            classes.add("sd")
        classes.update(p for p in likelihood.params if p != likelihood.parent)
        return frozenset(classes)

    def fit(self, spec, family, priors, data, settings):
        model = self.build_model(spec, family, priors, data)
        idata = model.fit(
            draws=settings.draws,
            tune=settings.tune,
            chains=settings.chains,
            random_seed=settings.random_seed,
            target_accept=settings.target_accept,
            progressbar=settings.progressbar,
            idata_kwargs={"log_likelihood": True},
        )
        model.predict(idata, kind="response", inplace=True)
        return idata


def fit_cache_key(spec, family: Family, priors: FamilyPriorSet, design: pd.DataFrame, settings: SamplerSettings) -> str:
    """``<family>-<digest>`` where the digest covers every input of the fit."""
    payload = {
        "formula": spec.formula,
        "standardize": spec.standardize,
        "family": family.value,
        "priors": priors.as_records(),
        "sampler": settings.cache_fields(),
    }
    digest = hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode())
    digest.update(pd.util.hash_pandas_object(design, index=False).values.tobytes())
    return f"{family.value}-{digest.hexdigest()[:16]}"


class FitStore:
    """
    Directory of published fits, one NetCDF file per cache key.

    Results are written to ``<key>.nc.partial`` first and renamed into place,
    so a file named ``<key>.nc`` is always a complete fit.
    """

    SUFFIX = ".nc"
    STAGING_SUFFIX = ".nc.partial"

    def __init__(self, directory="model_fits"):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}{self.SUFFIX}"

    def staging_path_for(self, key: str) -> Path:
        return self.directory / f"{key}{self.STAGING_SUFFIX}"

    def __contains__(self, key: str) -> bool:
        return self.path_for(key).exists()

    def keys(self) -> list:
        return sorted(p.name[: -len(self.SUFFIX)] for p in self.directory.glob(f"*{self.SUFFIX}"))

    def load(self, key: str):
        path = self.path_for(key)
        if not path.exists():
            return None
        return az.from_netcdf(str(path))

    def publish(self, key: str, idata, cancel_event: threading.Event = None) -> Path:
        staging = self.staging_path_for(key)
        idata.to_netcdf(str(staging))
        if cancel_event is not None and cancel_event.is_set():
            staging.unlink(missing_ok=True)
            raise FitCancelled(f"Fit {key} cancelled before publishing")
        path = self.path_for(key)
        os.replace(staging, path)
        logger.debug("Published %s", path)
        return path

    def discard_partials(self) -> int:
        """Remove staging files left behind by interrupted runs."""
        partials = list(self.directory.glob(f"*{self.STAGING_SUFFIX}"))
        for path in partials:
            path.unlink(missing_ok=True)
        return len(partials)


def _finished(family, spec, priors, idata, key, criteria, from_cache) -> FittedModel:
    diagnostics = ConvergenceDiagnostics.from_inference_data(idata)
    problems = diagnostics.problems(criteria)
    if problems:
        logger.warning("%s fit is unreliable: %s", family.value, "; ".join(problems))
    return FittedModel(
        family=family,
        formula=spec.formula,
        response=spec.response,
        priors=priors,
        status=FitStatus.UNRELIABLE if problems else FitStatus.OK,
        idata=idata,
        diagnostics=diagnostics,
        cache_key=key,
        error="; ".join(problems) or None,
        from_cache=from_cache,
    )


def _unfinished(family, spec, priors, status, error, key=None) -> FittedModel:
    return FittedModel(
        family=family,
        formula=spec.formula,
        response=spec.response,
        priors=priors,
        status=status,
        cache_key=key,
        error=error,
    )


def fit_family(
    spec,
    family,
    priors: FamilyPriorSet,
    data: pd.DataFrame,
    engine: InferenceEngine,
    store: FitStore = None,
    settings: SamplerSettings = SamplerSettings(),
    criteria: ConvergenceCriteria = ConvergenceCriteria(),
    check_engine_defaults: bool = True,
    cancel_event: threading.Event = None,
) -> FittedModel:
    """
    Fit one family, reusing a published fit for identical inputs.

    Parameters
    ----------
    spec : ModelSpecification
        Shared regression structure
    family : Family or str
        Noise family
    priors : FamilyPriorSet
        Complete prior set for ``family``
    data : pd.DataFrame
        Analysis table; the model columns are taken from it
    engine : InferenceEngine
        Sampler
    store : FitStore, optional
        Cache of published fits
    settings : SamplerSettings
        Sampler configuration
    criteria : ConvergenceCriteria
        Targets below which the fit is flagged unreliable
    check_engine_defaults : bool
        Compare the prior classes with the engine's default prior skeleton
    cancel_event : threading.Event, optional
        When set, the result is discarded instead of published

    Returns
    -------
    FittedModel
        Status ``failed`` when the engine raised; never raises for sampler errors

    Raises
    ------
    PriorSpecificationError
        If the prior set is for another family or misses a parameter class
    """
    family = Family.parse(family)
    if priors.family is not family:
        raise PriorSpecificationError(
            f"Prior set for {priors.family.value} passed to a {family.value} fit"
        )
    priors.validate()

    design = spec.design_table(data)
    if check_engine_defaults:
        try:
            skeleton = engine.default_prior_classes(spec, family, design)
        except Exception as exc:
            logger.exception("Could not build the %s model", family.value)
            return _unfinished(family, spec, priors, FitStatus.FAILED, f"{type(exc).__name__}: {exc}")
        priors.validate(required=skeleton | priors.required_classes)

    key = fit_cache_key(spec, family, priors, design, settings)
    if store is not None:
        try:
            cached = store.load(key)
        except Exception as exc:
            # Unreadable cache entries are refitted and overwritten.
            logger.warning("Ignoring unreadable cached %s fit %s: %s", family.value, key, exc)
            cached = None
        if cached is not None:
            logger.info("Reusing cached %s fit %s", family.value, key)
            return _finished(family, spec, priors, cached, key, criteria, from_cache=True)

    logger.info("Fitting %s model on %d observations", family.value, len(design))
    try:
        idata = engine.fit(spec, family, priors, design, settings)
    except Exception as exc:
        # A crashing sampler fails this family only.
        logger.exception("%s fit failed", family.value)
        return _unfinished(family, spec, priors, FitStatus.FAILED, f"{type(exc).__name__}: {exc}", key)

    if cancel_event is not None and cancel_event.is_set():
        return _unfinished(family, spec, priors, FitStatus.CANCELLED, "cancelled", key)

    if store is not None:
        try:
            store.publish(key, idata, cancel_event)
        except FitCancelled as exc:
            return _unfinished(family, spec, priors, FitStatus.CANCELLED, str(exc), key)

    return _finished(family, spec, priors, idata, key, criteria, from_cache=False)


def fit_families(
    spec,
    data: pd.DataFrame,
    engine: InferenceEngine,
    families=tuple(Family),
    priors: dict = None,
    store: FitStore = None,
    settings: SamplerSettings = SamplerSettings(),
    criteria: ConvergenceCriteria = ConvergenceCriteria(),
    check_engine_defaults: bool = True,
    max_workers: int = None,
    timeout: float = None,
) -> tuple:
    """
    Fit several families concurrently, one independent task per family.

    Families without an entry in ``priors`` get the registry defaults. Fits
    still running after ``timeout`` seconds are reported with status
    ``cancelled`` and their results are never published. A thread cannot
    interrupt a running sampler, so those fits run to completion in the
    background and the interpreter waits for them at exit.

    Any exception raised while fitting one family gives that family a
    ``failed`` result; the other families are unaffected.

    Returns
    -------
    tuple of FittedModel
        In the order of ``families``
    """
    requested = list(dict.fromkeys(Family.parse(f) for f in families))
    if not requested:
        return ()
    overrides = {Family.parse(k): v for k, v in (priors or {}).items()}

    results = {}
    prior_sets = {}
    for family in requested:
        try:
            prior_sets[family] = overrides.get(family) or priors_for(family, response=data[spec.response])
        except PriorSpecificationError as exc:
            logger.error("No usable priors for %s: %s", family.value, exc)
            results[family] = _unfinished(family, spec, None, FitStatus.FAILED, str(exc))

    cancel_event = threading.Event()
    executor = ThreadPoolExecutor(
        max_workers=max_workers or len(requested), thread_name_prefix="family-fit"
    )
    pending = {}
    try:
        for family, prior_set in prior_sets.items():
            future = executor.submit(
                fit_family,
                spec,
                family,
                prior_set,
                data,
                engine,
                store=store,
                settings=settings,
                criteria=criteria,
                check_engine_defaults=check_engine_defaults,
                cancel_event=cancel_event,
            )
            pending[future] = family

        done, not_done = wait(pending, timeout=timeout)

        for future in done:
            family = pending[future]
            try:
                results[family] = future.result()
            except PriorSpecificationError as exc:
                logger.error("%s priors rejected: %s", family.value, exc)
                results[family] = _unfinished(family, spec, prior_sets[family], FitStatus.FAILED, str(exc))
            except Exception as exc:
                logger.error("%s fit failed: %s", family.value, exc)
                results[family] = _unfinished(
                    family, spec, prior_sets[family], FitStatus.FAILED, f"{type(exc).__name__}: {exc}"
                )

        if not_done:
            cancel_event.set()
            for future in not_done:
                future.cancel()
                family = pending[future]
                logger.warning("%s fit did not finish within %s s; cancelled", family.value, timeout)
                results[family] = _unfinished(
                    family, spec, prior_sets[family], FitStatus.CANCELLED, f"timed out after {timeout} s"
                )
    finally:
        # Timed-out fits keep running in the background until their publish check.
        executor.shutdown(wait=not cancel_event.is_set(), cancel_futures=True)

    return tuple(results[family] for family in requested)
