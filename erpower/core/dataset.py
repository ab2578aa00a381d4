"""
Trial-level datasets.

``TrialDataset`` wraps one simulated sample: every trial of every subject,
condition, actor and presentation, with the amplitude column possibly
missing. The wrapped frame is never mutated; pipeline steps work on copies.
"""

from typing import List, Optional

import numpy as np
import pandas as pd

from ..utils.validators import _validate_trial_data, _ValidationResult
from .config import (
    ACTOR_COL,
    AGE_COL,
    AMPLITUDE_COL,
    COLUMN_ALIASES,
    EMOTION_COL,
    PRESENT_COL,
    SUBJECT_COL,
    TRIAL_COLUMNS,
    TRIAL_KEY,
    SimulationConfig,
)

PRESENT_WEIGHT_COL = "presentNumberWeight"
AGE_WEIGHT_COL = "ageWeight"


def _format_ids(series: pd.Series, width: int) -> pd.Series:
    """Zero-pad integer IDs (``1 -> "01"``); leave string IDs untouched."""
    if pd.api.types.is_integer_dtype(series):
        return series.map(lambda v: f"{int(v):0{width}d}")
    return series.astype(str)


def normalize_trial_frame(data: pd.DataFrame, config: Optional[SimulationConfig] = None) -> pd.DataFrame:
    """Validate a trial-level frame and coerce it to canonical form.

    Alias columns are renamed, IDs become strings, ``emotion`` and ``age``
    become categoricals (ordered as declared in *config* when given), and
    rows are sorted by subject, condition, actor and presentation.

    Args:
        data: Raw trial-level frame.
        config: Optional settings to check labels and trial counts against.

    Returns:
        A new canonical frame with exactly the trial columns.

    Raises:
        ValueError: If the frame is malformed or inconsistent with *config*.
    """
    frame = data.rename(columns={k: v for k, v in COLUMN_ALIASES.items() if k in data.columns})
    _validate_trial_data(frame, TRIAL_COLUMNS, TRIAL_KEY, (PRESENT_COL, AMPLITUDE_COL)).raise_if_invalid()

    frame = frame[list(TRIAL_COLUMNS)].copy()
    frame[SUBJECT_COL] = _format_ids(frame[SUBJECT_COL], 2)
    frame[ACTOR_COL] = frame[ACTOR_COL].astype(str)
    frame[AMPLITUDE_COL] = frame[AMPLITUDE_COL].astype(float)

    present = frame[PRESENT_COL].to_numpy(dtype=float)
    if np.any(present < 1) or np.any(present != np.round(present)):
        raise ValueError(f"Column '{PRESENT_COL}' must hold integers >= 1")
    frame[PRESENT_COL] = present.astype(int)

    result = _ValidationResult(True, [], [])
    emotion_values = frame[EMOTION_COL].astype(str)
    age_values = frame[AGE_COL].astype(str)
    if config is not None:
        emotion_levels = list(config.emotion_labels)
        age_levels = list(config.age_labels)
        unknown = sorted(set(emotion_values) - set(emotion_levels))
        if unknown:
            result = result.merge(_ValidationResult(False, [f"Unknown emotion labels: {', '.join(unknown)}"], []))
        unknown = sorted(set(age_values) - set(age_levels))
        if unknown:
            result = result.merge(_ValidationResult(False, [f"Unknown age labels: {', '.join(unknown)}"], []))
    else:
        emotion_levels = sorted(emotion_values.unique())
        age_levels = sorted(age_values.unique())
    result.raise_if_invalid()

    frame[EMOTION_COL] = pd.Categorical(emotion_values, categories=emotion_levels)
    frame[AGE_COL] = pd.Categorical(age_values, categories=age_levels)

    if frame.groupby(SUBJECT_COL)[AGE_COL].nunique().max() > 1:
        raise ValueError("Each subject must belong to a single age group")

    if config is not None:
        cell_sizes = frame.groupby([SUBJECT_COL, EMOTION_COL], observed=False).size()
        bad = cell_sizes[cell_sizes != config.emotion_trial_n]
        if len(bad):
            subject, emotion = bad.index[0]
            raise ValueError(
                f"Inconsistent trial counts: {len(bad)} subject x condition cells do not have "
                f"{config.emotion_trial_n} trials (e.g. subject {subject}, condition {emotion}: {bad.iloc[0]})"
            )

    return frame.sort_values(list(TRIAL_KEY), kind="mergesort").reset_index(drop=True)


class TrialDataset:
    """One sample of trial-level ERP amplitudes.

    Args:
        sample_id: Sample identifier (zero-padded to four digits when given
            as an integer).
        data: Canonical trial-level frame; copied on construction.

    Example:
        >>> dataset = TrialDataset.from_frame("0443", frame, config)
        >>> dataset.subjects[:3]
        ['01', '02', '03']
    """

    def __init__(self, sample_id, data: pd.DataFrame):
        if isinstance(sample_id, (int, np.integer)) and not isinstance(sample_id, bool):
            sample_id = f"{int(sample_id):04d}"
        self._sample_id = str(sample_id)
        self._data = data.copy()

    @classmethod
    def from_frame(cls, sample_id, data: pd.DataFrame, config: Optional[SimulationConfig] = None) -> "TrialDataset":
        """Validate and normalize *data*, then wrap it."""
        return cls(sample_id, normalize_trial_frame(data, config))

    @property
    def sample_id(self) -> str:
        return self._sample_id

    @property
    def subjects(self) -> List[str]:
        """Subject IDs in sorted order."""
        return sorted(self._data[SUBJECT_COL].unique())

    @property
    def n_subjects(self) -> int:
        return int(self._data[SUBJECT_COL].nunique())

    def copy_data(self) -> pd.DataFrame:
        """Independent copy of the trial frame."""
        return self._data.copy()

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"TrialDataset(sample_id={self._sample_id!r}, subjects={self.n_subjects}, trials={len(self._data)})"


def compute_missingness_weights(data: pd.DataFrame, config: SimulationConfig) -> pd.DataFrame:
    """Add presentation and age sampling weights to a copy of *data*.

    ``presentNumberWeight``: within each subject x condition cell, trials
    after the midpoint presentation share ``present_weight_late`` of the
    weight and the earlier trials share the rest.

    ``ageWeight``: younger subjects share ``age_weight_younger`` of the
    weight and older subjects the rest, split equally per subject.
    """
    weighted = data.copy()
    late = weighted[PRESENT_COL] > config.present_n / 2
    share = np.where(late, config.present_weight_late, 1.0 - config.present_weight_late)
    keys = [weighted[SUBJECT_COL], weighted[EMOTION_COL].astype(str), late.rename("late")]
    half_size = weighted.groupby(keys)[PRESENT_COL].transform("size")
    weighted[PRESENT_WEIGHT_COL] = share / half_size.to_numpy()

    ages = weighted.groupby(SUBJECT_COL)[AGE_COL].first().astype(str)
    group_size = ages.map(ages.value_counts())
    age_share = np.where(ages == config.younger_label, config.age_weight_younger, 1.0 - config.age_weight_younger)
    subject_weight = pd.Series(age_share / group_size.to_numpy(), index=ages.index)
    weighted[AGE_WEIGHT_COL] = weighted[SUBJECT_COL].map(subject_weight).to_numpy()
    return weighted
