"""
Simulation configuration for ERPower.

``SimulationConfig`` gathers every constant the pipeline needs (design
dimensions, population means, missingness weights, case-deletion
percentages, model formula) in one immutable object that is handed to each
component explicitly.
"""

import dataclasses
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Dict, Tuple

import numpy as np

from ..utils.parsers import parse_formula
from ..utils.validators import (
    _validate_age_weight,
    _validate_alpha,
    _validate_case_deletion_pcts,
    _validate_conf_level,
    _validate_count,
    _validate_labels,
    _validate_min_trials,
    _validate_numeric_parameter,
    _validate_probability,
    _validate_seed,
    _ValidationResult,
)

# Canonical trial-level column names
SUBJECT_COL = "SUBJECTID"
AGE_COL = "age"
EMOTION_COL = "emotion"
ACTOR_COL = "ACTOR"
PRESENT_COL = "presentNumber"
AMPLITUDE_COL = "meanAmpNC"

TRIAL_COLUMNS = (SUBJECT_COL, AGE_COL, EMOTION_COL, ACTOR_COL, PRESENT_COL, AMPLITUDE_COL)
TRIAL_KEY = (SUBJECT_COL, EMOTION_COL, ACTOR_COL, PRESENT_COL)

# Interface aliases accepted on load
COLUMN_ALIASES = {
    "subjectID": SUBJECT_COL,
    "actorID": ACTOR_COL,
    "amplitude": AMPLITUDE_COL,
}

POPULATION_TAG = "Pop."


@dataclass(frozen=True)
class SimulationConfig:
    """Immutable settings shared by every pipeline component.

    Defaults reproduce the published simulation: 50 subjects, 5 actors,
    10 presentations per actor and condition, conditions A/B with
    population means -9.995 and -11.997 µV, and 70 % of induced missing
    trials drawn from the later presentations.

    Attributes:
        subject_n: Subjects per sample.
        actor_n: Actors (stimulus identities) per condition.
        present_n: Presentations of each condition/actor stimulus.
        emotion_labels: Condition labels in declaration order.
        emotion_means: Population mean amplitude at the first presentation,
            one per condition.
        emotion_slope: Change in amplitude per successive presentation.
        younger_label: Age level for the younger group.
        older_label: Age level for the older group.
        present_weight_late: Share of missingness weight given to trials in
            the later half of presentations.
        age_weight_younger: Share of case-deletion weight given to younger
            subjects.
        min_trials: Trials per condition below which a subject is
            low-count and removed before the ANOVA.
        case_deletion_pcts: Percentages of subjects forced to low-count
            status, processed in order.
        seed: Run-level random seed (``None`` for fresh entropy).
        alpha: Significance level for the power calculation.
        conf_level: Confidence level of reported intervals.
        lme_formula: lme4-style formula for the trial-level model.
        sum_coded: Factors coded sum-to-zero in the LME design.
        actor_means: Population mean of each actor intercept.
        actor_sd: SD of actor intercepts around their means.
        subject_sd: SD of subject intercepts.
        age_effects: Amplitude offset per age level.
        trial_sd: SD of trial-to-trial amplitude deviation.
        noise_sd: SD of measurement noise.
    """

    subject_n: int = 50
    actor_n: int = 5
    present_n: int = 10
    emotion_labels: Tuple[str, ...] = ("A", "B")
    emotion_means: Tuple[float, ...] = (-9.995, -11.997)
    emotion_slope: float = 1.499
    younger_label: str = "youngerAgeGroup"
    older_label: str = "olderAgeGroup"
    present_weight_late: float = 0.7
    age_weight_younger: float = 0.5
    min_trials: int = 10
    case_deletion_pcts: Tuple[float, ...] = (0, 6, 11, 32)
    seed: Any = 20210329
    alpha: float = 0.05
    conf_level: float = 0.95
    lme_formula: str = "meanAmpNC ~ emotion + presentNumber + age + (1|SUBJECTID) + (1|ACTOR)"
    sum_coded: Tuple[str, ...] = ("age",)
    actor_means: Tuple[float, ...] = (-9.995, -5.006, 0.0, 5.006, 9.995)
    actor_sd: float = 5.006
    subject_sd: float = 9.995
    age_effects: Dict[str, float] = field(default_factory=lambda: {"olderAgeGroup": -2.002, "youngerAgeGroup": 2.002})
    trial_sd: float = 5.006
    noise_sd: float = 3.0

    def __post_init__(self):
        # Normalise sequences so list inputs hash and compare like tuples
        for name in ("emotion_labels", "emotion_means", "case_deletion_pcts", "sum_coded", "actor_means"):
            object.__setattr__(self, name, tuple(getattr(self, name)))
        object.__setattr__(self, "age_effects", dict(self.age_effects))
        self.validate().raise_if_invalid()

    # =========================================================================
    # Derived values
    # =========================================================================

    @property
    def emotion_trial_n(self) -> int:
        """Trials per subject and condition in the population sample."""
        return self.actor_n * self.present_n

    @property
    def emotion_n(self) -> int:
        return len(self.emotion_labels)

    @property
    def present_avg_value(self) -> float:
        """Mean presentation number, the covariate value for LME marginal means."""
        return float(np.mean(np.arange(1, self.present_n + 1)))

    @property
    def trial_missing_threshold(self) -> int:
        """Most trials a non-low-count subject may lose in one condition."""
        return self.emotion_trial_n - self.min_trials

    @property
    def age_labels(self) -> Tuple[str, str]:
        return (self.older_label, self.younger_label)

    def population_values(self) -> Dict[str, float]:
        """Known population value of every condition and pairwise contrast.

        Condition values average the linear presentation trend over
        ``1..present_n``; contrast labels follow ``"A - B"``.
        """
        offset = self.emotion_slope * (self.present_avg_value - 1)
        values = {label: float(mean + offset) for label, mean in zip(self.emotion_labels, self.emotion_means)}
        for (label_i, mean_i), (label_j, mean_j) in combinations(zip(self.emotion_labels, self.emotion_means), 2):
            values[f"{label_i} - {label_j}"] = float(mean_i - mean_j)
        return values

    def replace(self, **changes) -> "SimulationConfig":
        """Return a validated copy with *changes* applied."""
        return dataclasses.replace(self, **changes)

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self) -> _ValidationResult:
        """Check every setting; startup errors are fatal to the whole run."""
        result = _ValidationResult(True, [], [])

        for name in ("subject_n", "actor_n", "present_n"):
            result = result.merge(_validate_count(getattr(self, name), name))
        if not result.is_valid:
            return result

        if self.subject_n < 2:
            result = result.merge(_ValidationResult(False, ["subject_n must be >= 2"], []))

        if len(self.emotion_labels) < 2:
            result = result.merge(_ValidationResult(False, ["emotion_labels must name at least two conditions"], []))
        result = result.merge(_validate_labels(self.emotion_labels, self.emotion_means, "emotion_labels", "emotion_means"))
        result = result.merge(_validate_labels(tuple(range(self.actor_n)), self.actor_means, "actor_n", "actor_means"))

        if self.younger_label == self.older_label:
            result = result.merge(_ValidationResult(False, ["younger_label and older_label must differ"], []))
        missing_ages = [label for label in self.age_labels if label not in self.age_effects]
        if missing_ages:
            result = result.merge(_ValidationResult(False, [f"age_effects missing levels: {', '.join(missing_ages)}"], []))

        pct_result = _validate_case_deletion_pcts(self.case_deletion_pcts)
        younger_n = self.subject_n // 2
        result = result.merge(_validate_probability(self.present_weight_late, "present_weight_late", open_interval=True))
        result = result.merge(
            _validate_age_weight(
                self.age_weight_younger,
                younger_n,
                self.subject_n - younger_n,
                self.case_deletion_pcts if pct_result.is_valid else (),
            )
        )
        result = result.merge(_validate_min_trials(self.min_trials, self.emotion_trial_n))
        result = result.merge(pct_result)
        result = result.merge(_validate_seed(self.seed))
        result = result.merge(_validate_alpha(self.alpha))
        result = result.merge(_validate_conf_level(self.conf_level))

        for name in ("actor_sd", "subject_sd", "trial_sd", "noise_sd"):
            result = result.merge(_validate_numeric_parameter(getattr(self, name), name, min_val=0))

        try:
            parsed = parse_formula(self.lme_formula)
        except ValueError as e:
            return result.merge(_ValidationResult(False, [f"lme_formula: {e}"], []))

        unknown_sum = [name for name in self.sum_coded if name not in parsed.fixed_terms]
        if unknown_sum:
            result = result.merge(
                _ValidationResult(False, [f"sum_coded factors not in lme_formula fixed terms: {', '.join(unknown_sum)}"], [])
            )
        if EMOTION_COL not in parsed.fixed_terms:
            result = result.merge(_ValidationResult(False, [f"lme_formula must include the '{EMOTION_COL}' fixed effect"], []))
        if parsed.response != AMPLITUDE_COL:
            result = result.merge(_ValidationResult(False, [f"lme_formula response must be '{AMPLITUDE_COL}', got '{parsed.response}'"], []))

        return result
