"""
Parsing utilities for ERPower.

This module parses lme4-style model formulas into the response, the fixed
main-effect terms, and the crossed random-intercept grouping variables used
by the mixed-model fitter.
"""

import re
from dataclasses import dataclass
from typing import List, Tuple

__all__ = []

# Unicode-aware identifier pattern: letter or underscore, then word characters
_IDENT = r"[^\W\d]\w*"


@dataclass(frozen=True)
class ParsedFormula:
    """Components of a mixed-model formula.

    Attributes:
        response: Dependent variable column.
        fixed_terms: Fixed main-effect columns, in formula order.
        grouping_vars: Random-intercept grouping columns, in formula order.
    """

    response: str
    fixed_terms: Tuple[str, ...]
    grouping_vars: Tuple[str, ...]


def _parse_equation(equation: str) -> Tuple[str, str, List[str]]:
    """Split an R-style formula into response, fixed part and random intercepts.

    Supported random-effect syntax is ``(1|group)`` only. Random slopes
    ``(1 + x|group)`` and nested terms ``(1|A/B)`` are rejected because the
    solver fits crossed random intercepts.

    Args:
        equation: Formula string (e.g. ``"y ~ x1 + x2 + (1|subject)"``).

    Returns:
        Tuple of ``(dependent_var, fixed_formula, grouping_vars)``.

    Raises:
        ValueError: On a missing ``~``, unsupported random terms, or a
            grouping variable that appears more than once.
    """
    equation = equation.replace(" ", "")

    if "~" not in equation:
        raise ValueError(f"Formula must contain '~', got '{equation}'")

    left_side, formula_part = equation.split("~", 1)
    dep_var = left_side.strip()
    if not re.fullmatch(_IDENT, dep_var):
        raise ValueError(f"Invalid response variable: '{dep_var}'")

    nested_pattern = rf"\(\s*1\s*\|\s*{_IDENT}\s*/\s*{_IDENT}\s*\)"
    if re.search(nested_pattern, formula_part):
        raise ValueError("Nested random intercepts (1|A/B) are not supported; use crossed (1|A) + (1|B)")

    slope_pattern = r"\(\s*1\s*\+\s*[^|]+?\|\s*[^)]+\)"
    if re.search(slope_pattern, formula_part):
        raise ValueError("Random slopes are not supported; only random intercepts (1|group)")

    grouping_vars: List[str] = []
    intercept_pattern = rf"\(\s*1\s*\|\s*({_IDENT})\s*\)"
    for match in re.finditer(intercept_pattern, formula_part):
        grouping_var = match.group(1)
        if grouping_var in grouping_vars:
            raise ValueError(f"Duplicate random effect grouping variable: '{grouping_var}'")
        grouping_vars.append(grouping_var)

    formula_part = re.sub(intercept_pattern, "", formula_part)

    if "(" in formula_part or "|" in formula_part:
        raise ValueError(f"Unrecognised random-effect term in '{equation}'")

    # Clean up extra + signs
    formula_part = re.sub(r"\+\s*\+", "+", formula_part)
    formula_part = re.sub(r"^\+", "", formula_part)
    formula_part = re.sub(r"\+$", "", formula_part)

    return dep_var, formula_part.strip(), grouping_vars


def _parse_fixed_terms(formula: str) -> List[str]:
    """Extract fixed main-effect terms from the fixed part of a formula.

    Raises:
        ValueError: For interaction terms (``:`` or ``*``), term removal
            (``-``), or malformed term names.
    """
    if not formula:
        return []

    if ":" in formula or "*" in formula:
        raise ValueError("Interaction terms are not supported in the fixed part of the formula")
    if "-" in formula:
        raise ValueError("Term removal ('-') is not supported in the fixed part of the formula")

    terms: List[str] = []
    for term in formula.split("+"):
        term = term.strip()
        if term == "1":
            continue
        if not re.fullmatch(_IDENT, term):
            raise ValueError(f"Invalid fixed-effect term: '{term}'")
        if term not in terms:
            terms.append(term)
    return terms


def parse_formula(equation: str) -> ParsedFormula:
    """Parse a mixed-model formula.

    Example:
        >>> parse_formula("meanAmpNC ~ emotion + presentNumber + age + (1|SUBJECTID) + (1|ACTOR)")
        ParsedFormula(response='meanAmpNC', fixed_terms=('emotion', 'presentNumber', 'age'), grouping_vars=('SUBJECTID', 'ACTOR'))
    """
    dep_var, fixed_formula, grouping_vars = _parse_equation(equation)
    fixed_terms = _parse_fixed_terms(fixed_formula)

    overlap = set(fixed_terms) & set(grouping_vars)
    if overlap:
        raise ValueError(f"Variables used both as fixed effect and grouping factor: {', '.join(sorted(overlap))}")
    if dep_var in fixed_terms or dep_var in grouping_vars:
        raise ValueError(f"Response '{dep_var}' cannot also be a predictor")

    return ParsedFormula(response=dep_var, fixed_terms=tuple(fixed_terms), grouping_vars=tuple(grouping_vars))
