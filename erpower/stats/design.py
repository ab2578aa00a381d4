"""Fixed-effect design matrices with explicit factor coding.

Categorical terms get treatment coding (first level is the reference)
unless listed in ``sum_coded``, which get sum-to-zero coding with the
last level as the negative of the others. The coding matrices are kept so
that a reference grid for marginal means can be built from the same
columns.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd


@dataclass
class TermCoding:
    """Coding of one fixed-effect term.

    Attributes:
        name: Column in the data.
        kind: ``"numeric"`` or ``"factor"``.
        levels: Factor levels in coding order (empty for numeric terms).
        contrast: ``(n_levels, n_levels - 1)`` coding matrix, or ``None``.
        columns: Slice of the design matrix occupied by this term.
        mean: Data mean of a numeric term (reference-grid default).
    """

    name: str
    kind: str
    levels: Tuple[str, ...] = ()
    contrast: Optional[np.ndarray] = None
    columns: slice = field(default_factory=lambda: slice(0, 0))
    mean: float = 0.0


@dataclass
class DesignInfo:
    """Column layout of a fixed-effect design matrix (intercept first)."""

    column_names: List[str]
    terms: Dict[str, TermCoding]

    @property
    def n_columns(self) -> int:
        return len(self.column_names)

    def reference_row(self, values: Dict[str, object]) -> np.ndarray:
        """Build one row of ``L`` for a reference-grid point.

        Args:
            values: Per-term setting. Factors accept a level (that level's
                coding row) or ``None`` (equal-weight average over levels);
                numeric terms accept a number or ``None`` (their data mean).

        Returns:
            1-D array of length ``n_columns``.
        """
        row = np.zeros(self.n_columns)
        row[0] = 1.0
        for name, term in self.terms.items():
            value = values.get(name)
            if term.kind == "numeric":
                row[term.columns] = term.mean if value is None else float(value)
            elif value is None:
                row[term.columns] = term.contrast.mean(axis=0)
            else:
                level = str(value)
                if level not in term.levels:
                    raise ValueError(f"Unknown level '{level}' for factor '{name}'. Levels: {', '.join(term.levels)}")
                row[term.columns] = term.contrast[term.levels.index(level)]
        return row


def treatment_contrast(n_levels: int) -> np.ndarray:
    """R ``contr.treatment``: first level is the reference."""
    return np.eye(n_levels)[:, 1:]


def sum_contrast(n_levels: int) -> np.ndarray:
    """R ``contr.sum``: identity over the first levels, last level all -1."""
    contrast = np.zeros((n_levels, n_levels - 1))
    contrast[:-1] = np.eye(n_levels - 1)
    contrast[-1] = -1.0
    return contrast


def factor_levels(series: pd.Series) -> Tuple[str, ...]:
    """Levels of a factor: categorical order if declared, else sorted."""
    if isinstance(series.dtype, pd.CategoricalDtype):
        present = set(series.dropna().astype(str))
        return tuple(str(c) for c in series.cat.categories if str(c) in present)
    return tuple(sorted(series.dropna().astype(str).unique()))


def _is_factor(series: pd.Series) -> bool:
    return not pd.api.types.is_numeric_dtype(series) or isinstance(series.dtype, pd.CategoricalDtype)


def build_design(data: pd.DataFrame, terms: Sequence[str], sum_coded: Sequence[str] = ()) -> Tuple[np.ndarray, DesignInfo]:
    """Build the fixed-effect design matrix for *terms*.

    Args:
        data: Frame containing every term column (no missing values).
        terms: Fixed main-effect columns.
        sum_coded: Factor terms that use sum-to-zero coding.

    Returns:
        Tuple of ``(X, info)`` with the intercept in column 0.

    Raises:
        ValueError: If a term is missing, has missing values, or a factor
            has a single level.
    """
    n = len(data)
    blocks = [np.ones((n, 1))]
    column_names = ["(Intercept)"]
    codings: Dict[str, TermCoding] = {}
    offset = 1

    for name in terms:
        if name not in data.columns:
            raise ValueError(f"Fixed-effect term '{name}' not found in data")
        series = data[name]
        if series.isna().any():
            raise ValueError(f"Fixed-effect term '{name}' has missing values")

        if _is_factor(series):
            levels = factor_levels(series)
            if len(levels) < 2:
                raise ValueError(f"Factor '{name}' needs at least two levels, got {list(levels)}")
            contrast = sum_contrast(len(levels)) if name in sum_coded else treatment_contrast(len(levels))
            codes = pd.Categorical(series.astype(str), categories=list(levels)).codes
            block = contrast[codes]
            if name in sum_coded:
                names = [f"{name}{i + 1}" for i in range(len(levels) - 1)]
            else:
                names = [f"{name}{level}" for level in levels[1:]]
            codings[name] = TermCoding(
                name=name,
                kind="factor",
                levels=levels,
                contrast=contrast,
                columns=slice(offset, offset + block.shape[1]),
            )
        else:
            values = series.to_numpy(dtype=float)
            block = values[:, None]
            names = [name]
            codings[name] = TermCoding(
                name=name,
                kind="numeric",
                columns=slice(offset, offset + 1),
                mean=float(values.mean()),
            )

        blocks.append(block)
        column_names.extend(names)
        offset += block.shape[1]

    X = np.hstack(blocks)
    return X, DesignInfo(column_names=column_names, terms=codings)


def grouping_indicator(series: pd.Series) -> Tuple[np.ndarray, Tuple[str, ...]]:
    """Integer codes and level names of a random-effect grouping column."""
    levels = factor_levels(series.astype(str))
    codes = pd.Categorical(series.astype(str), categories=list(levels)).codes
    return codes.astype(np.int64), levels
