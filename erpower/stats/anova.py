"""
Mixed-design repeated-measures ANOVA.

Fits between-subject factors (full factorial cells) crossed with one
within-subject factor as a multivariate linear model on the
subject x within-level wide table, the model afex/emmeans use for
marginal means. Cell means are per between cell and within level;
standard errors come from the pooled within-cell covariance of the
repeated measures with ``n_subjects - n_cells`` residual degrees of
freedom. With two within levels this is identical to the univariate
mixed ANOVA.
"""

import warnings
from dataclasses import dataclass
from itertools import product
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .design import factor_levels
from .emmeans import EmmTable, emm_table


@dataclass
class AnovaFit:
    """Fitted mixed ANOVA.

    Attributes:
        subject: Subject identifier column.
        dv: Dependent variable column.
        between: Between-subject factor columns.
        within: Within-subject factor column.
        between_levels: Levels of each between factor.
        within_levels: Levels of the within factor.
        cells: Between cells as level tuples (full factorial).
        cell_means: ``(n_cells, n_within)`` means.
        cell_sizes: Subjects per cell.
        pooled_cov: ``(n_within, n_within)`` pooled residual covariance.
        df_error: Residual degrees of freedom.
        wide: Subject x within-level table used for the fit.
    """

    subject: str
    dv: str
    between: Tuple[str, ...]
    within: str
    between_levels: Tuple[Tuple[str, ...], ...]
    within_levels: Tuple[str, ...]
    cells: List[Tuple[str, ...]]
    cell_means: np.ndarray
    cell_sizes: np.ndarray
    pooled_cov: np.ndarray
    df_error: int
    wide: pd.DataFrame

    @property
    def n_subjects(self) -> int:
        return int(self.cell_sizes.sum())

    def linear_combination(self, weights: np.ndarray) -> Tuple[float, float, float]:
        """Estimate, SE and df of ``sum(weights * cell_means)``.

        Args:
            weights: ``(n_cells, n_within)`` array.
        """
        weights = np.asarray(weights, dtype=float)
        estimate = float(np.sum(weights * self.cell_means))
        variance = sum(w @ self.pooled_cov @ w / n for w, n in zip(weights, self.cell_sizes))
        return estimate, float(np.sqrt(max(variance, 0.0))), float(self.df_error)

    def reference_weights(self, factor: str, level: str) -> np.ndarray:
        """Equal-weight average over every cell and within level matching *level*."""
        n_cells, n_within = self.cell_means.shape
        weights = np.zeros((n_cells, n_within))
        if factor == self.within:
            weights[:, self.within_levels.index(level)] = 1.0
        else:
            position = self.between.index(factor)
            for c, cell in enumerate(self.cells):
                if cell[position] == level:
                    weights[c, :] = 1.0
        return weights / weights.sum()


def _aggregate_duplicates(data: pd.DataFrame, subject: str, dv: str, between: Sequence[str], within: str) -> pd.DataFrame:
    keys = [subject, within]
    if data.duplicated(subset=keys).any():
        warnings.warn(
            "More than one observation per subject and design cell, aggregating data using the mean.",
            stacklevel=3,
        )
    grouped = data.groupby(keys, observed=True, sort=False)
    aggregated = grouped[dv].mean().reset_index()
    for factor in between:
        aggregated[factor] = grouped[factor].first().to_numpy()
    return aggregated


def fit_mixed_anova(
    data: pd.DataFrame,
    subject: str,
    dv: str,
    between: Sequence[str] = (),
    within: Optional[str] = None,
) -> AnovaFit:
    """Fit a mixed ANOVA with between factors and one within factor.

    Args:
        data: Long frame, one row per subject and within level (duplicates
            are averaged with a warning).
        subject: Subject identifier column.
        dv: Dependent variable column.
        between: Between-subject factor columns.
        within: Within-subject factor column.

    Returns:
        AnovaFit.

    Raises:
        ValueError: On missing columns, a missing dependent value, a subject
            lacking a within level, a between factor that varies within a
            subject, an empty between cell, or no residual degrees of freedom.
    """
    between = tuple(between)
    if within is None:
        raise ValueError("A within-subject factor is required")
    columns = [subject, dv, within, *between]
    missing = [col for col in columns if col not in data.columns]
    if missing:
        raise ValueError(f"Missing ANOVA columns: {', '.join(missing)}")
    if data[dv].isna().any():
        raise ValueError(f"Dependent variable '{dv}' has missing values; remove them before fitting the ANOVA")
    if len(data) == 0:
        raise ValueError("No observations for ANOVA")

    frame = data[columns].copy()
    frame[subject] = frame[subject].astype(str)
    for factor in between:
        if frame.groupby(subject)[factor].nunique().max() > 1:
            raise ValueError(f"Between-subject factor '{factor}' varies within subjects")

    within_levels = factor_levels(frame[within])
    frame[within] = frame[within].astype(str)
    frame = _aggregate_duplicates(frame, subject, dv, between, within)

    wide = frame.pivot(index=subject, columns=within, values=dv).reindex(columns=list(within_levels)).sort_index()
    incomplete = wide.index[wide.isna().any(axis=1)]
    if len(incomplete):
        raise ValueError(
            f"Subjects missing a '{within}' cell: {', '.join(map(str, incomplete))}. "
            f"Every subject needs one value per level of {list(within_levels)}"
        )

    if between:
        subject_info = frame.groupby(subject, observed=True)[list(between)].first().reindex(wide.index)
        between_levels = tuple(factor_levels(subject_info[factor]) for factor in between)
        cell_keys = [tuple(str(v) for v in row) for row in subject_info.itertuples(index=False, name=None)]
    else:
        # Within-only design: every subject sits in the single empty cell
        between_levels = ()
        cell_keys = [()] * len(wide)
    cells = list(product(*between_levels))

    Y = wide.to_numpy(dtype=float)
    cell_means = np.zeros((len(cells), len(within_levels)))
    cell_sizes = np.zeros(len(cells), dtype=int)
    residuals = np.empty_like(Y)
    for c, cell in enumerate(cells):
        mask = np.array([key == cell for key in cell_keys])
        if not mask.any():
            raise ValueError(f"Empty between-subject cell {dict(zip(between, cell))}")
        cell_sizes[c] = int(mask.sum())
        cell_means[c] = Y[mask].mean(axis=0)
        residuals[mask] = Y[mask] - cell_means[c]

    df_error = len(Y) - len(cells)
    if df_error < 1:
        raise ValueError(f"Not enough subjects ({len(Y)}) for {len(cells)} between-subject cells")

    return AnovaFit(
        subject=subject,
        dv=dv,
        between=between,
        within=within,
        between_levels=between_levels,
        within_levels=within_levels,
        cells=cells,
        cell_means=cell_means,
        cell_sizes=cell_sizes,
        pooled_cov=residuals.T @ residuals / df_error,
        df_error=df_error,
        wide=wide,
    )


def anova_emmeans(fit: AnovaFit, factor: str, conf_level: float = 0.95) -> EmmTable:
    """Marginal means of a within or between factor, averaged equally over cells.

    Raises:
        ValueError: If *factor* is not a factor of the ANOVA.
    """
    if factor == fit.within:
        levels = fit.within_levels
    elif factor in fit.between:
        levels = fit.between_levels[fit.between.index(factor)]
    else:
        raise ValueError(f"'{factor}' is not a factor of the ANOVA. Factors: {', '.join((fit.within,) + fit.between)}")

    grid = np.array([fit.reference_weights(factor, level).ravel() for level in levels])
    shape = fit.cell_means.shape

    def estimate_fn(row):
        return fit.linear_combination(row.reshape(shape))

    return emm_table(factor, levels, grid, estimate_fn, conf_level)
