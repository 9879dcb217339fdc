"""Shared regression structure for every noise family."""

from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import stats

from reading_time_data import DataIntegrityError

DEFAULT_RESPONSE = "mean_rt"
DEFAULT_FIXED_EFFECTS = ("log_unigram_freq", "log_bigram_prob", "word_length")
DEFAULT_GROUP_FACTORS = ("story", "position")


@dataclass(frozen=True)
class ModelSpecification:
    """
    Response, fixed effects and random-intercept grouping of the model.

    The same instance is handed to every family fit, so models differ only in
    their likelihood and priors.

    Attributes
    ----------
    response : str
        Response column (mean reading time in ms)
    fixed_effects : tuple of str
        Population-level predictors, in formula order
    group_factors : tuple of str
        Columns that get a random intercept each
    standardize : bool
        Z-score the fixed-effect predictors before fitting
    """

    response: str = DEFAULT_RESPONSE
    fixed_effects: tuple = DEFAULT_FIXED_EFFECTS
    group_factors: tuple = DEFAULT_GROUP_FACTORS
    standardize: bool = True

    def __post_init__(self):
        object.__setattr__(self, "fixed_effects", tuple(self.fixed_effects))
        object.__setattr__(self, "group_factors", tuple(self.group_factors))

        if not self.fixed_effects:
            raise ValueError("At least one fixed effect is required")
        if self.response in self.fixed_effects or self.response in self.group_factors:
            raise ValueError(f"Response {self.response!r} cannot also be a predictor")
        names = self.fixed_effects + self.group_factors
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate predictor names in {names}")

    @property
    def formula(self) -> str:
        """Bambi formula string."""
        terms = list(self.fixed_effects) + [f"(1 | {g})" for g in self.group_factors]
        return f"{self.response} ~ " + " + ".join(terms)

    @property
    def group_terms(self) -> tuple:
        """Bambi names of the group-specific intercept terms."""
        return tuple(f"1|{g}" for g in self.group_factors)

    @property
    def columns(self) -> list:
        return [self.response, *self.fixed_effects, *self.group_factors]

    def design_table(self, data: pd.DataFrame) -> pd.DataFrame:
        """
        Select and prepare the columns the model reads.

        Predictors are z-scored when ``standardize`` is set (a constant
        predictor is only centered) and grouping factors become categoricals.
        The input frame is left untouched.
        """
        missing = [col for col in self.columns if col not in data.columns]
        if missing:
            raise DataIntegrityError(f"Analysis table lacks model columns {missing}")

        design = data[self.columns].copy()
        design.attrs = {}

        if self.standardize:
            for col in self.fixed_effects:
                values = design[col].to_numpy(dtype=float)
                if np.std(values) > 0:
                    design[col] = stats.zscore(values)
                else:
                    design[col] = values - values.mean()

        for col in self.group_factors:
            design[col] = design[col].astype(str).astype("category")

        return design.reset_index(drop=True)

    def describe(self) -> str:
        scaling = "standardized" if self.standardize else "raw"
        return f"{self.formula} ({scaling} predictors)"


def reading_time_specification() -> ModelSpecification:
    """Default specification: RT ~ frequency + bigram probability + length."""
    return ModelSpecification()
