"""
Missing-trial induction.

``MissingnessInducer`` turns a complete sample into one with missing
trials: a share of subjects, chosen with age weights, is forced below the
``min_trials`` threshold in at least one condition, while every other
subject loses a random number of trials that keeps each condition at or
above the threshold. Dropped trials are drawn with presentation weights so
that later presentations go missing more often.

Note that 0 % case deletion still removes trials from every subject through
the non-low-count branch.
"""

import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from .config import AMPLITUDE_COL, EMOTION_COL, SUBJECT_COL, SimulationConfig
from .dataset import AGE_WEIGHT_COL, PRESENT_WEIGHT_COL, TrialDataset, compute_missingness_weights


@dataclass
class InductionResult:
    """Outcome of one missingness induction.

    Attributes:
        data: Mutated copy of the sample (amplitudes set to NaN).
        low_count_subjects: Subjects forced below the threshold, in draw order.
        trial_counts: Remaining trials per subject and condition.
    """

    data: pd.DataFrame
    low_count_subjects: List[str] = field(default_factory=list)
    trial_counts: Optional[pd.DataFrame] = None


def count_trials(data: pd.DataFrame, emotion_labels: Sequence[str]) -> pd.DataFrame:
    """Count non-missing trials per subject and condition.

    Args:
        data: Trial-level frame.
        emotion_labels: Conditions in declaration order.

    Returns:
        DataFrame ``[SUBJECTID, emotion, trialN]`` with one row per subject
        and condition (zero counts included), sorted by subject then
        condition order.
    """
    subjects = sorted(data[SUBJECT_COL].astype(str).unique())
    index = pd.MultiIndex.from_product([subjects, list(emotion_labels)], names=[SUBJECT_COL, EMOTION_COL])

    present = data[data[AMPLITUDE_COL].notna()]
    counts = present.groupby([present[SUBJECT_COL].astype(str), present[EMOTION_COL].astype(str)]).size()
    counts.index.names = [SUBJECT_COL, EMOTION_COL]
    counts = counts.reindex(index, fill_value=0).astype(int)
    return counts.rename("trialN").reset_index()


class MissingnessInducer:
    """Induce missing trials in a sample.

    Args:
        config: Simulation settings (threshold, weights, condition labels).
    """

    def __init__(self, config: SimulationConfig):
        self.config = config

    def case_deletion_n(self, case_deletion_pct: float, n_subjects: int) -> int:
        """Number of low-count subjects for a percentage (rounded up)."""
        return int(math.ceil(case_deletion_pct * n_subjects / 100))

    def _missing_counts(self, low_count: bool, rng: np.random.Generator) -> np.ndarray:
        """Trials to drop per condition, before assignment to conditions."""
        emotion_trial_n = self.config.emotion_trial_n
        threshold = self.config.trial_missing_threshold
        emotion_n = self.config.emotion_n
        if low_count:
            deficit = rng.integers(threshold + 1, emotion_trial_n + 1)
            others = rng.integers(0, emotion_trial_n + 1, size=emotion_n - 1)
            return np.concatenate([[deficit], others])
        return rng.integers(0, threshold + 1, size=emotion_n)

    def induce(
        self,
        dataset: TrialDataset,
        case_deletion_pct: float,
        rng: np.random.Generator,
        weighted: Optional[pd.DataFrame] = None,
    ) -> InductionResult:
        """Set trials of *dataset* to missing for one case-deletion percentage.

        Args:
            dataset: Complete population sample (not mutated).
            case_deletion_pct: Percentage of subjects forced to low-count
                status, in [0, 100].
            rng: Source of all randomness.
            weighted: Sample frame with missingness weights already added
                (see ``compute_missingness_weights``); computed when omitted.

        Returns:
            InductionResult.

        Raises:
            ValueError: If the percentage is out of range, or the sample
                lacks enough eligible trials or subjects to draw from.
        """
        if not 0 <= case_deletion_pct <= 100:
            raise ValueError(f"case_deletion_pct must be in [0, 100], got {case_deletion_pct}")

        if weighted is None:
            weighted = compute_missingness_weights(dataset.copy_data(), self.config)
        data = weighted.reset_index(drop=True)

        subject_weights = data.groupby(SUBJECT_COL)[AGE_WEIGHT_COL].first().sort_index()
        subjects = subject_weights.index.to_numpy()
        n_low = self.case_deletion_n(case_deletion_pct, len(subjects))
        p = subject_weights.to_numpy(dtype=float)
        if np.count_nonzero(p) < n_low:
            raise ValueError(f"Cannot draw {n_low} low-count subjects: only {np.count_nonzero(p)} have a positive age weight")
        low_count_subjects = [str(s) for s in rng.choice(subjects, size=n_low, replace=False, p=p / p.sum())]
        low_set = set(low_count_subjects)

        cells = data.groupby([data[SUBJECT_COL], data[EMOTION_COL].astype(str)]).indices
        amplitude = data[AMPLITUDE_COL].to_numpy(dtype=float, copy=True)
        present_weight = data[PRESENT_WEIGHT_COL].to_numpy(dtype=float)
        labels = self.config.emotion_labels

        for subject in subjects:
            counts = self._missing_counts(subject in low_set, rng)
            order = rng.permutation(len(labels))
            for position, count in zip(order, counts):
                if count == 0:
                    continue
                label = labels[position]
                idx = cells.get((subject, label))
                if idx is None:
                    raise ValueError(f"Subject {subject} has no trials in condition {label}")
                w = present_weight[idx]
                if np.count_nonzero(w) < count:
                    raise ValueError(
                        f"Cannot drop {count} trials for subject {subject}, condition {label}: "
                        f"only {np.count_nonzero(w)} trials have a positive presentation weight"
                    )
                dropped = rng.choice(idx, size=int(count), replace=False, p=w / w.sum())
                amplitude[dropped] = np.nan

        mutated = data.drop(columns=[PRESENT_WEIGHT_COL, AGE_WEIGHT_COL])
        mutated[AMPLITUDE_COL] = amplitude
        return InductionResult(
            data=mutated,
            low_count_subjects=low_count_subjects,
            trial_counts=count_trials(mutated, labels),
        )
