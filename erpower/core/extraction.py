"""
Model output extraction.

Normalizes a fitted model's marginal means and condition contrasts into
the canonical output rows and checks each interval against the known
population value.
"""

from itertools import combinations
from typing import Any, List

import numpy as np
import pandas as pd

from ..stats.emmeans import SUMMARY_COLUMNS
from ..utils.parsers import parse_formula
from .config import EMOTION_COL, PRESENT_COL, SimulationConfig

MODEL_TYPES = ("LME", "ANOVA")

PROBLEM_NONE = "none"
PROBLEM_NOT_CONVERGED = "did-not-converge"
PROBLEM_SINGULAR = "singular-fit"

OUTPUT_COLUMNS = ["emotion", *SUMMARY_COLUMNS, "inCL", "modelProblem", "modelType"]


class ModelOutputExtractor:
    """Turn fitted models into model-output rows.

    Args:
        config: Simulation settings (labels, population values, covariate
            value for LME marginal means).
        fitter: ``ModelFitter`` that produced the models.
    """

    def __init__(self, config: SimulationConfig, fitter: Any):
        self.config = config
        self.fitter = fitter
        self._population = config.population_values()
        self._lme_at = {PRESENT_COL: config.present_avg_value} if PRESENT_COL in parse_formula(config.lme_formula).fixed_terms else None

    @property
    def row_labels(self) -> List[str]:
        """Condition labels in declaration order, then pairwise contrast labels."""
        labels = list(self.config.emotion_labels)
        contrasts = [f"{a} - {b}" for a, b in combinations(labels, 2)]
        return labels + contrasts

    def model_problem(self, model: Any, model_type: str) -> str:
        """Diagnostic flag for a fit; ANOVA fits are never flagged."""
        if model_type != "LME":
            return PROBLEM_NONE
        if not self.fitter.converged(model):
            return PROBLEM_NOT_CONVERGED
        if self.fitter.singular(model):
            return PROBLEM_SINGULAR
        return PROBLEM_NONE

    def extract(self, model: Any, model_type: str) -> pd.DataFrame:
        """Extract marginal means and contrasts from a fitted model.

        Args:
            model: Model returned by the fitter.
            model_type: ``"LME"`` or ``"ANOVA"``.

        Returns:
            DataFrame with ``OUTPUT_COLUMNS``: one row per condition in
            declaration order, then one row per contrast. Flagged LME fits
            have every numeric field and ``inCL`` set to missing.

        Raises:
            ValueError: For an unknown *model_type*, or marginal means that
                do not cover every condition.
        """
        if model_type not in MODEL_TYPES:
            raise ValueError(f"model_type must be one of {MODEL_TYPES}, got '{model_type}'")

        problem = self.model_problem(model, model_type)
        labels = self.row_labels

        if problem == PROBLEM_NONE:
            at = self._lme_at if model_type == "LME" else None
            table = self.fitter.estimated_marginal_means(model, EMOTION_COL, at=at)
            rows = pd.concat(
                [
                    table.emmeans.rename(columns={table.factor: "emotion"}),
                    table.contrasts.rename(columns={"contrast": "emotion"}),
                ],
                ignore_index=True,
            )
            rows["emotion"] = rows["emotion"].astype(str)
            missing = [label for label in labels if label not in set(rows["emotion"])]
            if missing:
                raise ValueError(f"Marginal means missing for: {', '.join(missing)}")
            output = rows.set_index("emotion").loc[labels, SUMMARY_COLUMNS].reset_index()
        else:
            output = pd.DataFrame({"emotion": labels})
            for col in SUMMARY_COLUMNS:
                output[col] = np.nan

        output["inCL"] = self._in_confidence_limits(output)
        output["modelProblem"] = problem
        output["modelType"] = model_type
        return output[OUTPUT_COLUMNS]

    def _in_confidence_limits(self, output: pd.DataFrame) -> pd.Series:
        """Inclusive check of the population value against each interval."""
        truth = output["emotion"].map(self._population).astype(float)
        lower = output["lower.CL"].astype(float)
        upper = output["upper.CL"].astype(float)
        inside = pd.array((lower <= truth) & (truth <= upper), dtype="boolean")
        unknown = (truth.isna() | lower.isna() | upper.isna()).to_numpy()
        inside[unknown] = pd.NA
        return pd.Series(inside, index=output.index)
