"""
Validation utilities for ERPower.

This module provides validation functions for simulation settings,
case-deletion percentages, and trial-level datasets.
"""

import math
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

__all__ = []


@dataclass
class _ValidationResult:
    """Outcome of a validation check, carrying errors and warnings.

    Attributes:
        is_valid: ``True`` if no errors were found.
        errors: List of error messages (empty when valid).
        warnings: List of non-fatal warning messages.
    """

    is_valid: bool
    errors: List[str]
    warnings: List[str]

    def raise_if_invalid(self):
        """Raise ``ValueError`` if the validation failed."""
        if not self.is_valid:
            error_msg = "Validation failed:\n" + "\n".join(f"• {err}" for err in self.errors)
            raise ValueError(error_msg)

    def merge(self, other: "_ValidationResult") -> "_ValidationResult":
        """Combine two results into one."""
        errors = self.errors + other.errors
        return _ValidationResult(len(errors) == 0, errors, self.warnings + other.warnings)


class _Validator:
    """Static helpers for type and range checks used by all validators."""

    @staticmethod
    def _check_type(value: Any, expected_types: tuple, name: str) -> Optional[str]:
        """Check if value has expected type."""
        # bool is an int subclass but never a valid count or weight
        if isinstance(value, bool) or not isinstance(value, expected_types):
            actual_type = type(value).__name__
            expected = expected_types[0].__name__ if len(expected_types) == 1 else f"one of {[t.__name__ for t in expected_types]}"
            return f"{name} must be {expected}, got {actual_type}"
        return None

    @staticmethod
    def _check_range(
        value: Union[int, float],
        min_val: Optional[float],
        max_val: Optional[float],
        name: str,
    ) -> Optional[str]:
        """Check if value is within range."""
        if min_val is not None and value < min_val:
            return f"{name} must be >= {min_val}, got {value}"
        if max_val is not None and value > max_val:
            return f"{name} must be <= {max_val}, got {value}"
        return None


_validator = _Validator()


def _validate_numeric_parameter(
    value: Any,
    name: str,
    expected_types: tuple = (int, float, np.integer, np.floating),
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
) -> _ValidationResult:
    """Generic validation for numeric parameters."""
    errors: List[str] = []
    warnings: List[str] = []

    type_error = _validator._check_type(value, expected_types, name)
    if type_error:
        errors.append(type_error)
        return _ValidationResult(False, errors, warnings)

    if not np.isfinite(value):
        errors.append(f"{name} must be finite, got {value}")
        return _ValidationResult(False, errors, warnings)

    range_error = _validator._check_range(value, min_val, max_val, name)
    if range_error:
        errors.append(range_error)

    return _ValidationResult(len(errors) == 0, errors, warnings)


def _validate_count(value: Any, name: str, min_val: int = 1) -> _ValidationResult:
    """Validate a positive integer count (subjects, actors, presentations)."""
    return _validate_numeric_parameter(value, name, expected_types=(int, np.integer), min_val=min_val)


def _validate_probability(value: Any, name: str, open_interval: bool = False) -> _ValidationResult:
    """Validate a weight share in [0, 1], or in (0, 1) with *open_interval*."""
    result = _validate_numeric_parameter(value, name, min_val=0, max_val=1)
    if result.is_valid and open_interval and value in (0, 1):
        result.errors.append(f"{name} must be strictly between 0 and 1, got {value}")
        result.is_valid = False
    return result


def _validate_age_weight(age_weight_younger: Any, younger_n: int, older_n: int, pcts: Sequence[Any]) -> _ValidationResult:
    """Validate the younger-group share against the largest case-deletion draw.

    A share of 0 or 1 leaves one age group to draw low-count subjects
    from, so that group must hold ``ceil(max pct * subject_n / 100)``.
    """
    result = _validate_probability(age_weight_younger, "age_weight_younger")
    if not result.is_valid or age_weight_younger not in (0, 1) or len(pcts) == 0:
        return result

    group, group_n = ("younger", younger_n) if age_weight_younger == 1 else ("older", older_n)
    needed = math.ceil(max(pcts) * (younger_n + older_n) / 100)
    if needed > group_n:
        result.errors.append(
            f"age_weight_younger={age_weight_younger} draws only from the {group} group ({group_n} subjects), "
            f"but {max(pcts):g}% case deletion needs {needed} low-count subjects"
        )
        result.is_valid = False
    return result


def _validate_alpha(alpha: Any) -> _ValidationResult:
    """Validate alpha level parameter (0-0.25)."""
    result = _validate_numeric_parameter(alpha, "Alpha", min_val=0, max_val=0.25)
    if result.is_valid and alpha == 0:
        result.errors.append("Alpha must be > 0")
        result.is_valid = False
    return result


def _validate_conf_level(conf_level: Any) -> _ValidationResult:
    """Validate confidence level (strictly between 0 and 1)."""
    result = _validate_numeric_parameter(conf_level, "Confidence level", min_val=0, max_val=1)
    if result.is_valid and conf_level in (0, 1):
        result.errors.append(f"Confidence level must be strictly between 0 and 1, got {conf_level}")
        result.is_valid = False
    return result


def _validate_seed(seed: Any) -> _ValidationResult:
    """Validate a run-level seed (non-negative int or None)."""
    errors: List[str] = []
    if seed is not None:
        if isinstance(seed, bool) or not isinstance(seed, (int, np.integer)):
            errors.append(f"seed must be an integer or None, got {type(seed).__name__}")
        elif seed < 0:
            errors.append("seed must be non-negative")
        elif seed > 3000000000:
            errors.append("seed must be lower than 3,000,000,000")
    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_case_deletion_pcts(pcts: Sequence[Any]) -> _ValidationResult:
    """Validate the case-deletion percentage array (each value in [0, 100])."""
    errors: List[str] = []
    warnings: List[str] = []

    if len(pcts) == 0:
        errors.append("case_deletion_pcts must contain at least one percentage")
        return _ValidationResult(False, errors, warnings)

    for pct in pcts:
        result = _validate_numeric_parameter(pct, "Case-deletion percentage", min_val=0, max_val=100)
        errors.extend(result.errors)

    if not errors and len(set(pcts)) < len(pcts):
        warnings.append("case_deletion_pcts contains duplicates; each duplicate is fitted again")

    return _ValidationResult(len(errors) == 0, errors, warnings)


def _validate_min_trials(min_trials: Any, emotion_trial_n: int) -> _ValidationResult:
    """Validate the low-count threshold against the trials available per condition.

    Both sampling ranges of the missingness inducer must be non-empty:
    ``[threshold + 1, emotion_trial_n]`` needs ``min_trials >= 1`` and
    ``[0, threshold]`` needs ``min_trials <= emotion_trial_n``.
    """
    return _validate_numeric_parameter(
        min_trials,
        "min_trials",
        expected_types=(int, np.integer),
        min_val=1,
        max_val=emotion_trial_n,
    )


def _validate_labels(labels: Sequence[Any], values: Sequence[Any], labels_name: str, values_name: str) -> _ValidationResult:
    """Validate that a label tuple is unique and matches its values tuple in length."""
    errors: List[str] = []
    if len(set(labels)) != len(labels):
        errors.append(f"{labels_name} must be unique, got {list(labels)}")
    if len(labels) != len(values):
        errors.append(f"{labels_name} ({len(labels)}) and {values_name} ({len(values)}) must have the same length")
    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_trial_data(
    data: pd.DataFrame,
    required_columns: Sequence[str],
    key_columns: Sequence[str],
    numeric_columns: Sequence[str],
) -> _ValidationResult:
    """Validate the structure of a trial-level dataset.

    Args:
        data: Trial-level frame.
        required_columns: Columns that must be present.
        key_columns: Columns that jointly identify a trial.
        numeric_columns: Columns that must be numeric.

    Returns:
        ValidationResult with one error per structural problem.
    """
    errors: List[str] = []
    warnings: List[str] = []

    missing = [col for col in required_columns if col not in data.columns]
    if missing:
        errors.append(f"Missing required columns: {', '.join(missing)}")
        return _ValidationResult(False, errors, warnings)

    if len(data) == 0:
        errors.append("Dataset has no trials")
        return _ValidationResult(False, errors, warnings)

    for col in numeric_columns:
        if not pd.api.types.is_numeric_dtype(data[col]):
            errors.append(f"Column '{col}' must be numeric, got {data[col].dtype}")

    for col in key_columns:
        if data[col].isna().any():
            errors.append(f"Column '{col}' contains missing values")

    if not errors:
        n_duplicates = int(data.duplicated(subset=list(key_columns)).sum())
        if n_duplicates:
            errors.append(f"{n_duplicates} duplicate trials for key ({', '.join(key_columns)})")

    return _ValidationResult(len(errors) == 0, errors, warnings)


def _validate_parallel_settings(enable: Any, n_cores: Optional[int]) -> _ValidationResult:
    """Validate parallel processing settings."""
    errors: List[str] = []
    warnings: List[str] = []

    if enable not in (True, False):
        errors.append(f"parallel must be True or False, got {enable!r}")

    if n_cores is not None:
        if isinstance(n_cores, bool) or not isinstance(n_cores, int):
            errors.append(f"n_cores must be an integer, got {type(n_cores).__name__}")
        elif n_cores < 1:
            errors.append(f"n_cores must be >= 1, got {n_cores}")

    return _ValidationResult(len(errors) == 0, errors, warnings)
