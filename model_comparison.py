"""
Model Comparison
================

Ranks fitted families by expected log pointwise predictive density (elpd).

Two approximations are computed from each posterior with ArviZ:
- PSIS-LOO (leave-one-out cross-validation)
- WAIC (widely applicable information criterion)

Every family models the raw reading time in ms, so the pointwise
log-likelihoods are densities over the same observations and the elpd values
are comparable across families. Only differences between models are
meaningful; the absolute values are not.

Posterior-predictive checks compare summary statistics of the replicated
responses with the observed ones.
"""

import logging
from dataclasses import dataclass, field

import arviz as az
import numpy as np
import pandas as pd

from family_fits import CriterionEstimate, FitStatus, FittedModel
from reading_time_families import Family

logger = logging.getLogger(__name__)

CRITERIA = ("loo", "waic")
BAD_PARETO_K = 0.7

PPC_STATISTICS = {
    "mean": np.mean,
    "sd": np.std,
    "median": np.median,
    "min": np.min,
    "max": np.max,
}

_FAMILY_ORDER = {family: index for index, family in enumerate(Family)}


def estimate_criterion(fit: FittedModel, criterion: str = "loo") -> CriterionEstimate:
    """
    Compute PSIS-LOO or WAIC for a fitted model.

    Parameters
    ----------
    fit : FittedModel
        Must carry a posterior with a log_likelihood group
    criterion : str
        ``"loo"`` or ``"waic"``

    Returns
    -------
    CriterionEstimate
        elpd on the log scale with its standard error and pointwise values
    """
    if criterion not in CRITERIA:
        raise ValueError(f"Unknown criterion {criterion!r}; choose from {CRITERIA}")
    if not fit.has_posterior or not hasattr(fit.idata, "log_likelihood"):
        raise ValueError(f"{fit.name} has no pointwise log-likelihood")

    if criterion == "loo":
        result = az.loo(fit.idata, pointwise=True, var_name=fit.response)
        pareto_k = np.asarray(result["pareto_k"], dtype=float)
        return CriterionEstimate(
            criterion="loo",
            elpd=float(result["elpd_loo"]),
            se=float(result["se"]),
            p_eff=float(result["p_loo"]),
            pointwise=np.asarray(result["loo_i"], dtype=float),
            warning=bool(result["warning"]),
            n_bad_pareto_k=int((pareto_k > BAD_PARETO_K).sum()),
        )

    result = az.waic(fit.idata, pointwise=True, var_name=fit.response)
    return CriterionEstimate(
        criterion="waic",
        elpd=float(result["elpd_waic"]),
        se=float(result["se"]),
        p_eff=float(result["p_waic"]),
        pointwise=np.asarray(result["waic_i"], dtype=float),
        warning=bool(result["warning"]),
    )


@dataclass(frozen=True)
class PredictiveCheck:
    """Replicated responses of one family and their posterior-predictive p-values."""

    family: str
    draws: np.ndarray = field(repr=False)
    observed: np.ndarray = field(repr=False)
    statistics: dict = field(default_factory=dict)

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame(self.statistics).T
        frame.index.name = "statistic"
        return frame


def posterior_predictive_check(fit: FittedModel) -> PredictiveCheck:
    """
    Compare replicated and observed responses.

    For each statistic T the p-value is P(T(y_rep) >= T(y)); values near 0
    or 1 show the family cannot reproduce that feature of the data.
    """
    draws = fit.posterior_predictive()
    observed = fit.observed().reshape(-1)
    if draws.shape[1] != observed.size:
        raise ValueError(
            f"{fit.name}: {draws.shape[1]} replicated observations for {observed.size} observed"
        )

    statistics = {}
    for name, statistic in PPC_STATISTICS.items():
        t_obs = float(statistic(observed))
        t_rep = statistic(draws, axis=1)
        statistics[name] = {
            "observed": t_obs,
            "replicated_mean": float(np.mean(t_rep)),
            "p_value": float(np.mean(t_rep >= t_obs)),
        }
    return PredictiveCheck(fit.name, draws, observed, statistics)


def posterior_predictive_checks(fits) -> dict:
    """Family name -> PredictiveCheck for every fit with replicated draws."""
    checks = {}
    for fit in fits:
        if fit.has_posterior and hasattr(fit.idata, "posterior_predictive"):
            checks[fit.name] = posterior_predictive_check(fit)
    return checks


@dataclass(frozen=True)
class RankedEntry:
    rank: int
    family: str
    criterion: str
    elpd: float
    se: float
    elpd_diff: float
    dse: float
    overlaps: tuple = ()
    ties: tuple = ()
    warning: bool = False
    n_bad_pareto_k: int = None


def _difference_se(best: CriterionEstimate, other: CriterionEstimate) -> float:
    if best.pointwise is None or other.pointwise is None:
        return float("nan")
    if best.pointwise.shape != other.pointwise.shape:
        return float("nan")
    diff = best.pointwise - other.pointwise
    return float(np.sqrt(diff.size * np.var(diff)))


def rank_estimates(estimates: dict, band: float = 1.0) -> tuple:
    """
    Order models by descending elpd.

    Equal elpd values are ordered by family name so the ranking depends only
    on the set of estimates. Each entry lists the models whose
    ``elpd +/- band * se`` interval overlaps its own and the models it is
    tied with; neither is resolved.

    Parameters
    ----------
    estimates : dict
        Family name -> CriterionEstimate, all for the same criterion
    band : float
        Width of the uncertainty band in standard errors

    Returns
    -------
    tuple of RankedEntry
    """
    if not estimates:
        return ()
    criteria = {est.criterion for est in estimates.values()}
    if len(criteria) != 1:
        raise ValueError(f"Cannot rank estimates of different criteria {sorted(criteria)}")

    ordered = sorted(estimates.items(), key=lambda item: (-item[1].elpd, item[0]))
    best_name, best = ordered[0]

    entries = []
    for rank, (name, est) in enumerate(ordered, start=1):
        others = [(other, o) for other, o in ordered if other != name]
        overlaps = tuple(
            sorted(other for other, o in others if abs(est.elpd - o.elpd) < band * (est.se + o.se))
        )
        ties = tuple(sorted(other for other, o in others if np.isclose(est.elpd, o.elpd)))
        entries.append(
            RankedEntry(
                rank=rank,
                family=name,
                criterion=est.criterion,
                elpd=est.elpd,
                se=est.se,
                elpd_diff=est.elpd - best.elpd,
                dse=0.0 if name == best_name else _difference_se(best, est),
                overlaps=overlaps,
                ties=ties,
                warning=est.warning,
                n_bad_pareto_k=est.n_bad_pareto_k,
            )
        )
    return tuple(entries)


@dataclass(frozen=True)
class ComparisonReport:
    criteria: tuple
    rankings: dict
    excluded: dict
    checks: dict = field(default_factory=dict)
    observed: np.ndarray = field(default=None, repr=False)

    def ranking(self, criterion: str = "loo") -> tuple:
        return self.rankings.get(criterion, ())

    def ranked_families(self, criterion: str = "loo") -> list:
        return [entry.family for entry in self.ranking(criterion)]

    def best(self, criterion: str = "loo"):
        ranking = self.ranking(criterion)
        return ranking[0] if ranking else None

    def predictive_draws(self) -> dict:
        """Family name -> (samples, observations) replicated responses."""
        return {name: check.draws for name, check in self.checks.items()}

    def to_frame(self) -> pd.DataFrame:
        """Long table with one row per (criterion, family)."""
        rows = []
        for criterion in self.criteria:
            for entry in self.ranking(criterion):
                rows.append(
                    {
                        "criterion": criterion,
                        "rank": entry.rank,
                        "model": entry.family,
                        "elpd": entry.elpd,
                        "se": entry.se,
                        "elpd_diff": entry.elpd_diff,
                        "dse": entry.dse,
                        "overlaps": ", ".join(entry.overlaps),
                        "ties": ", ".join(entry.ties),
                        "warning": entry.warning,
                        "n_bad_pareto_k": entry.n_bad_pareto_k,
                    }
                )
        columns = [
            "criterion", "rank", "model", "elpd", "se", "elpd_diff", "dse",
            "overlaps", "ties", "warning", "n_bad_pareto_k",
        ]
        return pd.DataFrame(rows, columns=columns)

    def summary_lines(self) -> list:
        lines = []
        for criterion in self.criteria:
            lines.append(f"{criterion.upper()} ranking (higher elpd is better):")
            for entry in self.ranking(criterion):
                line = (
                    f"  {entry.rank}. {entry.family:18s} elpd = {entry.elpd:10.1f} ± {entry.se:6.1f}"
                    f"   Δ = {entry.elpd_diff:+8.1f}"
                )
                if np.isfinite(entry.dse) and entry.rank > 1:
                    line += f" ± {entry.dse:5.1f}"
                if entry.overlaps:
                    line += f"   overlaps: {', '.join(entry.overlaps)}"
                if entry.warning:
                    line += "   (warning)"
                if entry.n_bad_pareto_k:
                    line += f"   ({entry.n_bad_pareto_k} Pareto k > {BAD_PARETO_K})"
                lines.append(line)
        for name, reason in sorted(self.excluded.items()):
            lines.append(f"  excluded {name}: {reason}")
        return lines


def _family_sort_key(fit: FittedModel):
    return (_FAMILY_ORDER.get(fit.family, len(_FAMILY_ORDER)), fit.name)


def compare_models(
    fits,
    criteria=CRITERIA,
    expected=None,
    include_unreliable: bool = False,
    band: float = 1.0,
) -> ComparisonReport:
    """
    Compare fitted families by LOO and WAIC.

    Failed and cancelled fits, unreliable fits (unless
    ``include_unreliable``), fits without pointwise log-likelihoods and fits
    observed on different data are excluded with a note. Families listed in
    ``expected`` but absent from ``fits`` are noted as not fitted. The
    ranking covers whatever remains.

    Criteria already attached to a fit are reused; computed ones are
    attached to it.

    Parameters
    ----------
    fits : iterable of FittedModel
        At most one fit per family
    criteria : tuple of str
        Subset of ``("loo", "waic")``
    expected : iterable, optional
        Families that were requested
    include_unreliable : bool
        Rank fits that missed convergence targets
    band : float
        Uncertainty band width in standard errors for overlap reporting

    Returns
    -------
    ComparisonReport
    """
    criteria = tuple(criteria)
    unknown = [c for c in criteria if c not in CRITERIA]
    if unknown:
        raise ValueError(f"Unknown criteria {unknown}; choose from {CRITERIA}")

    fits = sorted(fits, key=_family_sort_key)
    names = [fit.name for fit in fits]
    if len(set(names)) != len(names):
        raise ValueError(f"More than one fit per family: {names}")

    excluded = {}
    for family in expected or ():
        name = Family.parse(family).value
        if name not in names:
            excluded[name] = "not fitted"

    candidates = []
    for fit in fits:
        attached = all(c in fit.criteria for c in criteria)
        if fit.status in (FitStatus.FAILED, FitStatus.CANCELLED):
            excluded[fit.name] = f"{fit.status.value}: {fit.error}"
        elif fit.status is FitStatus.UNRELIABLE and not include_unreliable:
            excluded[fit.name] = f"unreliable: {fit.error}"
        elif not attached and (fit.idata is None or not hasattr(fit.idata, "log_likelihood")):
            excluded[fit.name] = "no pointwise log-likelihood"
        else:
            candidates.append(fit)

    reference = None
    observed = None
    comparable = []
    for fit in candidates:
        if fit.idata is None or not hasattr(fit.idata, "observed_data"):
            comparable.append(fit)
            continue
        values = fit.observed()
        if reference is None:
            reference, observed = fit.name, values
        elif values.shape != observed.shape or not np.allclose(values, observed):
            excluded[fit.name] = f"observations differ from {reference}"
            continue
        comparable.append(fit)

    rankings = {}
    for criterion in criteria:
        estimates = {}
        for fit in comparable:
            estimate = fit.criteria.get(criterion)
            if estimate is None:
                try:
                    estimate = estimate_criterion(fit, criterion)
                except ValueError as exc:
                    excluded[f"{fit.name} ({criterion})"] = str(exc)
                    continue
                fit.attach_criterion(estimate)
            estimates[fit.name] = estimate
        rankings[criterion] = rank_estimates(estimates, band=band)

    checks = posterior_predictive_checks(comparable)

    for name, reason in sorted(excluded.items()):
        logger.warning("Excluded %s from the ranking: %s", name, reason)

    return ComparisonReport(
        criteria=criteria,
        rankings=rankings,
        excluded=excluded,
        checks=checks,
        observed=observed,
    )
