"""
Power calculation for ERPower.

Aggregates model-output rows across samples into detection rates. Flagged
fits carry a missing p-value and count as non-detections, while the
denominator stays the number of samples attempted.
"""

from typing import Optional, Sequence

import numpy as np
import pandas as pd

from .config import POPULATION_TAG
from .simulation import format_case_deletion_pct


def _select_rows(model_output: pd.DataFrame, condition: str, model_type: str, case_deletion_pct) -> pd.DataFrame:
    tag = format_case_deletion_pct(case_deletion_pct)
    mask = (
        (model_output["emotion"] == condition)
        & (model_output["modelType"] == model_type)
        & (model_output["caseDeletionPct"].astype(str) == tag)
    )
    return model_output[mask]


def compute_power(
    model_output: pd.DataFrame,
    condition: str = "A - B",
    model_type: str = "LME",
    case_deletion_pct="32%",
    sample_n: Optional[int] = None,
    alpha: float = 0.05,
) -> float:
    """Percentage of samples detecting *condition* at level *alpha*.

    Args:
        model_output: Model-output rows of a batch.
        condition: Row label (condition or contrast).
        model_type: ``"LME"`` or ``"ANOVA"``.
        case_deletion_pct: Percentage (``32`` or ``"32%"``) or ``"Pop."``.
        sample_n: Samples attempted; defaults to the distinct samples in
            *model_output*.
        alpha: Significance level.

    Returns:
        ``100 * detections / sample_n``.

    Example:
        >>> compute_power(batch.model_output, "A - B", "LME", 32, sample_n=1000)
        82.4
    """
    if sample_n is None:
        sample_n = int(model_output["sample"].nunique())
    if sample_n <= 0:
        raise ValueError("sample_n must be positive")

    rows = _select_rows(model_output, condition, model_type, case_deletion_pct)
    p_values = pd.to_numeric(rows["p.value"], errors="coerce")
    detections = int((p_values.notna() & (p_values < alpha)).sum())
    return detections / sample_n * 100


def power_table(
    model_output: pd.DataFrame,
    sample_n: Optional[int] = None,
    condition: str = "A - B",
    alpha: float = 0.05,
    case_deletion_pcts: Optional[Sequence] = None,
) -> pd.DataFrame:
    """Power, CI coverage and model-problem rate per model type and percentage.

    Returns:
        DataFrame with columns ``modelType, caseDeletionPct, power,
        coverage, problemRate, nValid``. ``coverage`` is the share of rows
        whose interval contains the population value, among rows with a
        valid fit.
    """
    if sample_n is None:
        sample_n = int(model_output["sample"].nunique())

    if case_deletion_pcts is None:
        tags = list(pd.unique(model_output["caseDeletionPct"].astype(str)))
    else:
        tags = [POPULATION_TAG] + [format_case_deletion_pct(p) for p in case_deletion_pcts]

    records = []
    for model_type in ("LME", "ANOVA"):
        for tag in dict.fromkeys(tags):
            rows = _select_rows(model_output, condition, model_type, tag)
            in_cl = rows["inCL"].astype("boolean")
            n_valid = int(in_cl.notna().sum())
            records.append(
                {
                    "modelType": model_type,
                    "caseDeletionPct": tag,
                    "power": compute_power(model_output, condition, model_type, tag, sample_n=sample_n, alpha=alpha),
                    "coverage": float(in_cl.sum() / n_valid * 100) if n_valid else np.nan,
                    "problemRate": float((rows["modelProblem"] != "none").mean() * 100) if len(rows) else np.nan,
                    "nValid": n_valid,
                }
            )
    return pd.DataFrame(records)
