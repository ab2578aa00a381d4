"""
Model fitting for the LME vs. ANOVA comparison.

Defines the ``ModelFitter`` interface the pipeline depends on and the
default implementation backed by the in-package solvers:

- LME: crossed random-intercept REML (``lme_solver``) with Satterthwaite
  degrees of freedom for marginal means.
- ANOVA: mixed between/within design (``anova``).

Any object implementing the protocol can be handed to the pipeline in
place of ``DefaultModelFitter``.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Sequence, Tuple, runtime_checkable

import numpy as np
import pandas as pd

from ..utils.parsers import ParsedFormula, parse_formula
from .anova import AnovaFit, anova_emmeans, fit_mixed_anova
from .design import DesignInfo, build_design, grouping_indicator
from .emmeans import EmmTable, lme_emmeans
from .lme_solver import LMEResult, lme_fit


@runtime_checkable
class ModelFitter(Protocol):
    """Protocol defining the model fitter interface.

    Fitters raise ``ValueError`` for malformed input; non-convergence and
    singular fits are reported through ``converged`` and ``singular``.
    """

    def fit_lme(self, data: pd.DataFrame, formula: str) -> Any:
        """Fit a linear mixed-effects model to trial-level data."""
        ...

    def fit_anova(
        self,
        data: pd.DataFrame,
        subject: str,
        dv: str,
        between: Sequence[str],
        within: str,
    ) -> Any:
        """Fit a mixed ANOVA to subject x condition averages."""
        ...

    def estimated_marginal_means(self, model: Any, factor: str, at: Optional[Dict[str, float]] = None) -> EmmTable:
        """Marginal means of *factor* plus pairwise contrasts."""
        ...

    def converged(self, model: Any) -> bool: ...

    def singular(self, model: Any) -> bool: ...


@dataclass
class LMEFit:
    """LME fit together with the design it was fitted on.

    Attributes:
        result: Solver output (coefficients, covariance, diagnostics).
        design: Fixed-effect column layout and factor coding.
        formula: Parsed model formula.
        group_levels: Levels of each random-intercept grouping factor.
        n_obs: Observations used in the fit.
        n_dropped: Rows dropped for a missing response.
    """

    result: LMEResult
    design: DesignInfo
    formula: ParsedFormula
    group_levels: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    n_obs: int = 0
    n_dropped: int = 0

    @property
    def coefficients(self) -> pd.Series:
        return pd.Series(self.result.beta, index=self.design.column_names)

    @property
    def variance_components(self) -> Dict[str, float]:
        """Random-intercept variances by grouping factor, plus ``Residual``."""
        components = {name: float(tau2) for name, tau2 in zip(self.formula.grouping_vars, self.result.tau2)}
        components["Residual"] = float(self.result.sigma2)
        return components


class DefaultModelFitter:
    """In-package ``ModelFitter``.

    Args:
        sum_coded: Factors coded sum-to-zero in the LME design; other
            factors use treatment coding.
        conf_level: Confidence level of marginal-mean intervals.
    """

    def __init__(self, sum_coded: Sequence[str] = (), conf_level: float = 0.95):
        self.sum_coded = tuple(sum_coded)
        self.conf_level = conf_level

    def fit_lme(self, data: pd.DataFrame, formula: str) -> LMEFit:
        """Fit a crossed random-intercept model by REML.

        Rows with a missing response are dropped before fitting.

        Raises:
            ValueError: On an unsupported formula, missing columns, missing
                predictor values, a formula without random intercepts, or a
                rank-deficient design.
        """
        parsed = parse_formula(formula)
        if not parsed.grouping_vars:
            raise ValueError("LME formula needs at least one random intercept (1|group)")

        needed = [parsed.response, *parsed.fixed_terms, *parsed.grouping_vars]
        missing = [col for col in needed if col not in data.columns]
        if missing:
            raise ValueError(f"Columns not found in data: {', '.join(missing)}")

        observed = data.loc[data[parsed.response].notna(), needed]
        n_dropped = len(data) - len(observed)
        if len(observed) == 0:
            raise ValueError(f"No non-missing '{parsed.response}' values to fit")
        for name in parsed.grouping_vars:
            if observed[name].isna().any():
                raise ValueError(f"Grouping factor '{name}' has missing values")

        X, design = build_design(observed, parsed.fixed_terms, sum_coded=self.sum_coded)
        y = observed[parsed.response].to_numpy(dtype=float)

        codes, sizes, group_levels = [], [], {}
        for name in parsed.grouping_vars:
            group_codes, levels = grouping_indicator(observed[name])
            codes.append(group_codes)
            sizes.append(len(levels))
            group_levels[name] = levels

        result = lme_fit(X, y, codes, sizes)
        return LMEFit(
            result=result,
            design=design,
            formula=parsed,
            group_levels=group_levels,
            n_obs=len(observed),
            n_dropped=n_dropped,
        )

    def fit_anova(
        self,
        data: pd.DataFrame,
        subject: str,
        dv: str,
        between: Sequence[str] = (),
        within: Optional[str] = None,
    ) -> AnovaFit:
        return fit_mixed_anova(data, subject=subject, dv=dv, between=between, within=within)

    def estimated_marginal_means(self, model: Any, factor: str, at: Optional[Dict[str, float]] = None) -> EmmTable:
        """Marginal means of *factor* with pairwise contrasts.

        ``at`` fixes numeric covariates of an LME; ANOVA models have no
        covariates and reject it.
        """
        if isinstance(model, LMEFit):
            return lme_emmeans(model.result, model.design, factor, at=at, conf_level=self.conf_level)
        if isinstance(model, AnovaFit):
            if at:
                raise ValueError("ANOVA marginal means take no covariate values")
            return anova_emmeans(model, factor, conf_level=self.conf_level)
        raise TypeError(f"Unsupported model type: {type(model).__name__}")

    def converged(self, model: Any) -> bool:
        if isinstance(model, LMEFit):
            return bool(model.result.converged and np.all(np.isfinite(model.result.beta)))
        return True

    def singular(self, model: Any) -> bool:
        if isinstance(model, LMEFit):
            return bool(model.result.singular)
        return False
