"""
Estimated marginal means and pairwise contrasts.

Every fitted model reduces a marginal mean to a linear combination of its
parameters with an estimate, a standard error and a denominator degrees of
freedom. This module turns those into the emmeans-style summary columns
(``estimate, SE, df, lower.CL, upper.CL, t.ratio, p.value``).
"""

from dataclasses import dataclass
from itertools import combinations
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats

SUMMARY_COLUMNS = ["estimate", "SE", "df", "lower.CL", "upper.CL", "t.ratio", "p.value"]


@dataclass
class EmmTable:
    """Marginal means of one factor plus its pairwise contrasts.

    Attributes:
        factor: Factor the means are computed for.
        emmeans: One row per level; the label column is named after the
            factor, followed by ``SUMMARY_COLUMNS``.
        contrasts: One row per pair ``level_i - level_j`` (``i < j``); the
            label column is ``contrast``.
    """

    factor: str
    emmeans: pd.DataFrame
    contrasts: pd.DataFrame

    @property
    def levels(self) -> List[str]:
        return list(self.emmeans[self.factor])


def pairwise_weights(levels: Sequence[str]) -> Tuple[List[str], np.ndarray]:
    """Contrast labels and weight rows for all ``level_i - level_j``, ``i < j``."""
    labels = []
    rows = []
    for i, j in combinations(range(len(levels)), 2):
        labels.append(f"{levels[i]} - {levels[j]}")
        row = np.zeros(len(levels))
        row[i] = 1.0
        row[j] = -1.0
        rows.append(row)
    return labels, np.array(rows).reshape(len(rows), len(levels))


def summarize(
    labels: Sequence[str],
    label_column: str,
    estimates: np.ndarray,
    se: np.ndarray,
    df: np.ndarray,
    conf_level: float = 0.95,
) -> pd.DataFrame:
    """Build a summary frame with t-based intervals and two-sided p-values.

    A ``nan`` df gives ``nan`` interval bounds and p-value.
    """
    estimates = np.asarray(estimates, dtype=float)
    se = np.asarray(se, dtype=float)
    df = np.asarray(df, dtype=float)

    with np.errstate(divide="ignore", invalid="ignore"):
        t_ratio = estimates / se
    t_crit = stats.t.ppf((1.0 + conf_level) / 2.0, df)
    p_value = 2.0 * stats.t.sf(np.abs(t_ratio), df)

    frame = pd.DataFrame(
        {
            label_column: list(labels),
            "estimate": estimates,
            "SE": se,
            "df": df,
            "lower.CL": estimates - t_crit * se,
            "upper.CL": estimates + t_crit * se,
            "t.ratio": t_ratio,
            "p.value": p_value,
        }
    )
    return frame


def emm_table(
    factor: str,
    levels: Sequence[str],
    L: np.ndarray,
    estimate_fn: Callable[[np.ndarray], Tuple[float, float, float]],
    conf_level: float = 0.95,
) -> EmmTable:
    """Evaluate marginal means and contrasts from a reference grid.

    Args:
        factor: Factor name (label column of the means).
        levels: Factor levels, one per row of *L*.
        L: ``(n_levels, n_params)`` reference-grid matrix.
        estimate_fn: Maps a parameter combination ``l`` to
            ``(estimate, SE, df)``.
        conf_level: Confidence level of the intervals.

    Returns:
        EmmTable.
    """
    levels = [str(level) for level in levels]
    contrast_labels, W = pairwise_weights(levels)

    def evaluate(rows: np.ndarray) -> np.ndarray:
        return np.array([estimate_fn(row) for row in rows], dtype=float).reshape(len(rows), 3)

    emm_values = evaluate(L)
    contrast_values = evaluate(W @ L)

    emmeans = summarize(levels, factor, emm_values[:, 0], emm_values[:, 1], emm_values[:, 2], conf_level)
    contrasts = summarize(
        contrast_labels,
        "contrast",
        contrast_values[:, 0],
        contrast_values[:, 1],
        contrast_values[:, 2],
        conf_level,
    )
    return EmmTable(factor=factor, emmeans=emmeans, contrasts=contrasts)


def lme_emmeans(result, design, factor: str, at: Optional[Dict[str, float]] = None, conf_level: float = 0.95) -> EmmTable:
    """Marginal means of *factor* from an LME fit.

    Numeric covariates sit at their *at* value (default: data mean); other
    factors are averaged over their levels with equal weights. Degrees of
    freedom use the Satterthwaite approximation.

    Args:
        result: ``LMEResult`` with ``beta``, ``cov_beta`` and
            ``satterthwaite_df``.
        design: ``DesignInfo`` of the fixed-effect matrix.
        factor: Factor term to compute means for.
        at: Covariate values for the reference grid.
        conf_level: Confidence level of the intervals.

    Raises:
        ValueError: If *factor* is not a factor term, or *at* names a term
            that is not a numeric covariate of the model.
    """
    at = dict(at or {})
    term = design.terms.get(factor)
    if term is None or term.kind != "factor":
        raise ValueError(f"'{factor}' is not a factor in the model. Factors: {', '.join(n for n, t in design.terms.items() if t.kind == 'factor')}")
    for name in at:
        covariate = design.terms.get(name)
        if covariate is None or covariate.kind != "numeric":
            raise ValueError(f"'at' value given for '{name}', which is not a numeric covariate of the model")

    L = np.array([design.reference_row({**at, factor: level}) for level in term.levels])

    def estimate_fn(row):
        return (
            float(row @ result.beta),
            float(np.sqrt(max(row @ result.cov_beta @ row, 0.0))),
            result.satterthwaite_df(row),
        )

    return emm_table(factor, term.levels, L, estimate_fn, conf_level)
