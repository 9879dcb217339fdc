"""
Prior Registry
==============

Weakly-informative default priors for each noise family.

Parameter classes follow the usual mixed-model split:
- Intercept: population-level intercept
- b: fixed-effect coefficients (one prior shared by every predictor)
- sd: standard deviations of the random intercepts
- the family's auxiliary parameters (sigma, ndt, lam, alpha, nu)

Priors live on the link scale: log-link families center the intercept near
log(400 ms) ~ 6, the identity-link ex-Gaussian centers it at 300 ms.
"""

from dataclasses import dataclass, replace
from enum import Enum

import bambi as bmb
import numpy as np
import pymc as pm

from reading_time_families import Family


class ParameterClass(str, Enum):
    INTERCEPT = "Intercept"
    COEFFICIENT = "b"
    GROUP_SD = "sd"


STRUCTURAL_CLASSES = (
    ParameterClass.INTERCEPT.value,
    ParameterClass.COEFFICIENT.value,
    ParameterClass.GROUP_SD.value,
)

# Distributions whose support already excludes negative values
POSITIVE_SUPPORT = {
    "HalfNormal",
    "HalfStudentT",
    "HalfCauchy",
    "Gamma",
    "InverseGamma",
    "Exponential",
    "LogNormal",
    "Weibull",
}


class PriorSpecificationError(ValueError):
    """Raised when a prior set does not cover what its family needs."""


@dataclass(frozen=True)
class PriorScales:
    """
    Hyperparameters of the default priors.

    Values ending in ``_ms`` apply to the identity-link ex-Gaussian, whose
    coefficients and scales are in milliseconds.
    """

    student_nu: float = 3.0

    intercept_log_loc: float = 6.0
    intercept_log_scale: float = 1.5
    intercept_ms_loc: float = 300.0
    intercept_ms_scale: float = 100.0

    coefficient_scale: float = 1.0
    coefficient_scale_ms: float = 50.0

    group_sd_scale: float = 1.0
    group_sd_scale_ms: float = 50.0

    sigma_scale: float = 1.0
    sigma_scale_ms: float = 100.0

    # Non-decision time: Uniform(0, min RT), or this ceiling without data
    ndt_upper: float = 150.0

    # Shape parameters: Gamma priors truncated to a finite positive range
    wald_lam_alpha: float = 2.0
    wald_lam_beta: float = 0.002
    wald_lam_upper: float = 10000.0
    weibull_alpha_alpha: float = 2.0
    weibull_alpha_beta: float = 0.5
    weibull_alpha_upper: float = 20.0
    exgaussian_nu_alpha: float = 2.0
    exgaussian_nu_beta: float = 0.02
    exgaussian_nu_upper: float = 2000.0


@dataclass(frozen=True)
class PriorEntry:
    """One (parameter class, distribution, bounds) triple."""

    param_class: str
    distribution: str
    params: tuple
    lower: float = None
    upper: float = None

    def __post_init__(self):
        object.__setattr__(self, "param_class", str(getattr(self.param_class, "value", self.param_class)))
        if isinstance(self.params, dict):
            object.__setattr__(self, "params", tuple(sorted(self.params.items())))
        if self.lower is not None and self.upper is not None and self.lower >= self.upper:
            raise PriorSpecificationError(
                f"{self.param_class}: lower bound {self.lower} is not below upper bound {self.upper}"
            )

    @property
    def kwargs(self) -> dict:
        return dict(self.params)

    @property
    def truncated(self) -> bool:
        """Whether the bounds cut into the distribution's natural support."""
        if self.distribution == "Uniform":
            return False
        if self.upper is not None:
            return True
        if self.lower is None:
            return False
        return not (self.lower <= 0 and self.distribution in POSITIVE_SUPPORT)

    def describe(self) -> str:
        args = ", ".join(f"{k}={v:g}" for k, v in self.params)
        text = f"{self.distribution}({args})"
        if self.lower is not None or self.upper is not None:
            lower = "-inf" if self.lower is None else f"{self.lower:g}"
            upper = "inf" if self.upper is None else f"{self.upper:g}"
            text += f" on [{lower}, {upper}]"
        return text

    def to_bambi(self) -> bmb.Prior:
        if not self.truncated:
            return bmb.Prior(self.distribution, **self.kwargs)
        return bmb.Prior(
            f"Truncated{self.distribution}",
            dist=_truncated(self.distribution, self.lower, self.upper),
            **self.kwargs,
        )

    def as_record(self) -> dict:
        return {
            "class": self.param_class,
            "distribution": self.distribution,
            "params": {k: float(v) for k, v in self.params},
            "lower": self.lower,
            "upper": self.upper,
        }


def _truncated(distribution: str, lower, upper):
    base = getattr(pm, distribution)

    def build(name, *args, dims=None, shape=None, **kwargs):
        return pm.Truncated(
            name,
            base.dist(*args, **kwargs),
            lower=lower,
            upper=upper,
            dims=dims,
            shape=shape,
        )

    return build


def required_parameter_classes(family) -> frozenset:
    family = Family.parse(family)
    return frozenset(STRUCTURAL_CLASSES + family.auxiliary_parameters)


@dataclass(frozen=True)
class FamilyPriorSet:
    family: Family
    entries: tuple

    def __post_init__(self):
        object.__setattr__(self, "family", Family.parse(self.family))
        object.__setattr__(self, "entries", tuple(self.entries))
        classes = [entry.param_class for entry in self.entries]
        if len(set(classes)) != len(classes):
            raise PriorSpecificationError(f"{self.family.value}: duplicate parameter classes {classes}")

    @property
    def classes(self) -> frozenset:
        return frozenset(entry.param_class for entry in self.entries)

    @property
    def required_classes(self) -> frozenset:
        return required_parameter_classes(self.family)

    def entry(self, param_class) -> PriorEntry:
        param_class = str(getattr(param_class, "value", param_class))
        for entry in self.entries:
            if entry.param_class == param_class:
                return entry
        raise KeyError(f"No prior for class {param_class!r} in {self.family.value} set")

    def missing_classes(self, required=None) -> frozenset:
        required = self.required_classes if required is None else frozenset(required)
        return required - self.classes

    def validate(self, required=None):
        """Raise PriorSpecificationError if any required class has no prior."""
        missing = self.missing_classes(required)
        if missing:
            raise PriorSpecificationError(
                f"{self.family.value} priors lack parameter classes {sorted(missing)}"
            )

    def with_entry(self, entry: PriorEntry) -> "FamilyPriorSet":
        """New set with ``entry`` replacing the prior of the same class."""
        kept = [e for e in self.entries if e.param_class != entry.param_class]
        return replace(self, entries=tuple(kept) + (entry,))

    def to_bambi(self, spec) -> dict:
        """
        Expand the class-level priors into bambi's per-term dictionary.

        Parameters
        ----------
        spec : ModelSpecification
            Supplies predictor and grouping names

        Returns
        -------
        dict
            Term or parameter name -> ``bmb.Prior``
        """
        self.validate()
        priors = {"Intercept": self.entry(ParameterClass.INTERCEPT).to_bambi()}

        coefficient = self.entry(ParameterClass.COEFFICIENT)
        for predictor in spec.fixed_effects:
            priors[predictor] = coefficient.to_bambi()

        group_sd = self.entry(ParameterClass.GROUP_SD)
        for term in spec.group_terms:
            priors[term] = bmb.Prior("Normal", mu=0, sigma=group_sd.to_bambi())

        for name in self.family.auxiliary_parameters:
            priors[name] = self.entry(name).to_bambi()

        return priors

    def as_records(self) -> list:
        return [entry.as_record() for entry in self.entries]

    def describe(self) -> str:
        lines = [f"Priors for {self.family.label}:"]
        lines += [f"  {e.param_class:>9s} ~ {e.describe()}" for e in self.entries]
        return "\n".join(lines)


def _ndt_upper(response, scales: PriorScales) -> float:
    if response is None:
        return scales.ndt_upper
    values = np.asarray(response, dtype=float)
    values = values[np.isfinite(values)]
    if values.size == 0:
        return scales.ndt_upper
    upper = float(values.min())
    if upper <= 0:
        raise PriorSpecificationError(
            "A shifted lognormal needs strictly positive reading times"
        )
    return upper


def priors_for(family, response=None, scales: PriorScales = PriorScales()) -> FamilyPriorSet:
    """
    Default prior set for a family.

    Parameters
    ----------
    family : Family or str
        Noise family; unknown names raise UnsupportedFamilyError
    response : array-like, optional
        Observed reading times. Bounds the non-decision time of the shifted
        lognormal by the fastest observation
    scales : PriorScales
        Hyperparameters

    Returns
    -------
    FamilyPriorSet
        Covers every parameter class of the family
    """
    family = Family.parse(family)
    nu = scales.student_nu

    if family.link == "log":
        intercept = PriorEntry(
            ParameterClass.INTERCEPT, "StudentT",
            {"nu": nu, "mu": scales.intercept_log_loc, "sigma": scales.intercept_log_scale},
        )
        coefficient = PriorEntry(
            ParameterClass.COEFFICIENT, "Normal", {"mu": 0.0, "sigma": scales.coefficient_scale}
        )
        group_sd = PriorEntry(
            ParameterClass.GROUP_SD, "HalfStudentT",
            {"nu": nu, "sigma": scales.group_sd_scale}, lower=0.0,
        )
    else:
        intercept = PriorEntry(
            ParameterClass.INTERCEPT, "StudentT",
            {"nu": nu, "mu": scales.intercept_ms_loc, "sigma": scales.intercept_ms_scale},
        )
        coefficient = PriorEntry(
            ParameterClass.COEFFICIENT, "Normal", {"mu": 0.0, "sigma": scales.coefficient_scale_ms}
        )
        group_sd = PriorEntry(
            ParameterClass.GROUP_SD, "HalfStudentT",
            {"nu": nu, "sigma": scales.group_sd_scale_ms}, lower=0.0,
        )

    entries = [intercept, coefficient, group_sd]

    if family in (Family.LOGNORMAL, Family.SHIFTED_LOGNORMAL):
        entries.append(PriorEntry("sigma", "HalfNormal", {"sigma": scales.sigma_scale}, lower=0.0))
    if family is Family.SHIFTED_LOGNORMAL:
        ndt_upper = _ndt_upper(response, scales)
        entries.append(
            PriorEntry(
                "ndt", "Uniform", {"lower": 0.0, "upper": ndt_upper}, lower=0.0, upper=ndt_upper
            )
        )
    if family is Family.WALD:
        entries.append(
            PriorEntry(
                "lam", "Gamma",
                {"alpha": scales.wald_lam_alpha, "beta": scales.wald_lam_beta},
                lower=0.0, upper=scales.wald_lam_upper,
            )
        )
    if family is Family.WEIBULL:
        entries.append(
            PriorEntry(
                "alpha", "Gamma",
                {"alpha": scales.weibull_alpha_alpha, "beta": scales.weibull_alpha_beta},
                lower=0.0, upper=scales.weibull_alpha_upper,
            )
        )
    if family is Family.EXGAUSSIAN:
        entries.append(
            PriorEntry(
                "sigma", "HalfStudentT", {"nu": nu, "sigma": scales.sigma_scale_ms}, lower=0.0
            )
        )
        entries.append(
            PriorEntry(
                "nu", "Gamma",
                {"alpha": scales.exgaussian_nu_alpha, "beta": scales.exgaussian_nu_beta},
                lower=0.0, upper=scales.exgaussian_nu_upper,
            )
        )

    prior_set = FamilyPriorSet(family, tuple(entries))
    prior_set.validate()
    return prior_set
