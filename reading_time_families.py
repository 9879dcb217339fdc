"""
Noise Families for Reading-Time Models
======================================

Five candidate likelihoods for positively skewed reading times:

- lognormal:          log(RT) ~ Normal(mu, sigma)
- shifted_lognormal:  log(RT - ndt) ~ Normal(mu, sigma), ndt = non-decision time
- wald:               RT ~ InverseGaussian(mu, lam), log link on the mean
- weibull:            RT ~ Weibull(alpha, beta) parameterized by its mean, log link
- exgaussian:         RT ~ Normal(mu, sigma) + Exponential(mean nu), identity link

All five model the raw response in ms, so their pointwise log-likelihoods are
densities over the same outcome and their elpd estimates are comparable.
"""

from enum import Enum

import bambi as bmb
import pymc as pm


class UnsupportedFamilyError(ValueError):
    """Raised for a family name outside the supported set."""


class Family(str, Enum):
    LOGNORMAL = "lognormal"
    SHIFTED_LOGNORMAL = "shifted_lognormal"
    WALD = "wald"
    WEIBULL = "weibull"
    EXGAUSSIAN = "exgaussian"

    @classmethod
    def parse(cls, name) -> "Family":
        """Resolve a family from its name or a common alias."""
        if isinstance(name, cls):
            return name
        key = str(name).strip().lower().replace("-", "_")
        key = _ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            supported = ", ".join(f.value for f in cls)
            raise UnsupportedFamilyError(
                f"Unsupported family {name!r}. Supported: {supported}"
            ) from None

    @property
    def auxiliary_parameters(self) -> tuple:
        """Likelihood parameters other than the regression mean, in order."""
        return _AUXILIARY[self]

    @property
    def link(self) -> str:
        """Link applied to the regression mean."""
        return "identity" if self is Family.EXGAUSSIAN else "log"

    @property
    def label(self) -> str:
        return _LABELS[self]


_ALIASES = {
    "shiftedlognormal": "shifted_lognormal",
    "shifted_log_normal": "shifted_lognormal",
    "log_normal": "lognormal",
    "inverse_gaussian": "wald",
    "inversegaussian": "wald",
    "exgauss": "exgaussian",
    "ex_gaussian": "exgaussian",
    "emg": "exgaussian",
}

_AUXILIARY = {
    Family.LOGNORMAL: ("sigma",),
    Family.SHIFTED_LOGNORMAL: ("sigma", "ndt"),
    Family.WALD: ("lam",),
    Family.WEIBULL: ("alpha",),
    Family.EXGAUSSIAN: ("sigma", "nu"),
}

_LABELS = {
    Family.LOGNORMAL: "Lognormal",
    Family.SHIFTED_LOGNORMAL: "Shifted lognormal",
    Family.WALD: "Inverse Gaussian (Wald)",
    Family.WEIBULL: "Weibull",
    Family.EXGAUSSIAN: "Ex-Gaussian",
}


def _shifted_lognormal_dist(mu, sigma, ndt, size):
    return pm.LogNormal.dist(mu=mu, sigma=sigma, size=size) + ndt


class ShiftedLogNormal:
    """
    Lognormal shifted right by a non-decision time ``ndt``.

    Mirrors the PyMC distribution interface: calling the class registers a
    model variable, ``ShiftedLogNormal.dist`` returns an unregistered one.
    PyMC derives the log-density from the shifted lognormal graph.
    """

    def __new__(cls, name, mu, sigma, ndt, **kwargs):
        return pm.CustomDist(
            name, mu, sigma, ndt, dist=_shifted_lognormal_dist, class_name="ShiftedLogNormal", **kwargs
        )

    @classmethod
    def dist(cls, mu, sigma, ndt, **kwargs):
        return pm.CustomDist.dist(
            mu, sigma, ndt, dist=_shifted_lognormal_dist, class_name="ShiftedLogNormal", **kwargs
        )


def _custom_family(family: Family) -> bmb.Family:
    if family is Family.LOGNORMAL:
        likelihood = bmb.Likelihood("LogNormal", params=["mu", "sigma"], parent="mu")
        links = {"mu": "identity", "sigma": "log"}
        defaults = {"sigma": bmb.Prior("HalfNormal", sigma=1)}
    elif family is Family.SHIFTED_LOGNORMAL:
        likelihood = bmb.Likelihood(
            "ShiftedLogNormal",
            params=["mu", "sigma", "ndt"],
            parent="mu",
            dist=ShiftedLogNormal,
        )
        links = {"mu": "identity", "sigma": "log", "ndt": "log"}
        defaults = {
            "sigma": bmb.Prior("HalfNormal", sigma=1),
            "ndt": bmb.Prior("HalfNormal", sigma=100),
        }
    elif family is Family.EXGAUSSIAN:
        likelihood = bmb.Likelihood("ExGaussian", params=["mu", "sigma", "nu"], parent="mu")
        links = {"mu": "identity", "sigma": "log", "nu": "log"}
        defaults = {
            "sigma": bmb.Prior("HalfStudentT", nu=3, sigma=100),
            "nu": bmb.Prior("HalfStudentT", nu=3, sigma=100),
        }
    else:
        raise UnsupportedFamilyError(f"{family.value} is a built-in bambi family")

    custom = bmb.Family(family.value, likelihood, links)
    custom.set_default_priors(defaults)
    return custom


def bambi_family(family: Family):
    """
    Return the ``(family, link)`` arguments for ``bmb.Model``.

    Wald and Weibull are bambi built-ins refitted on a log link; the other
    three are custom families whose link dictionary is already set.
    """
    family = Family.parse(family)
    if family in (Family.WALD, Family.WEIBULL):
        return family.value, family.link
    return _custom_family(family), None
