"""
Measure and time-series references inside formulas

Calculated measures may read other measures through two reference forms:
- {measure:weight}: latest recorded value of a measure
- {modifier:weight}: time-series value, where modifier is one of
  current, previous, delta or avgN (rolling N-day average, N > 0)

The caller resolves these references to numbers and passes them as
ordinary bindings keyed by the full reference name (e.g. "avg30:weight").
"""

from typing import List

from formula_engine.constants import (
    AVERAGE_MODIFIER_PREFIX,
    MEASURE_REFERENCE_PATTERN,
    TIME_SERIES_MODIFIERS,
    TIME_SERIES_REFERENCE_PATTERN,
)
from formula_engine.models import MeasureReference, ModifierValidation, TimeSeriesVariable


def extract_measure_references(formula: str) -> List[MeasureReference]:
    """
    Extract {measure:name} references from a formula

    Args:
        formula: Formula string

    Returns:
        References in order of appearance (repeats included)
    """
    if not isinstance(formula, str):
        return []

    return [
        MeasureReference(full=match.group(0), measure_name=match.group(1))
        for match in MEASURE_REFERENCE_PATTERN.finditer(formula)
    ]


def has_measure_references(formula: str) -> bool:
    """Check if a formula reads any {measure:name} reference"""
    return len(extract_measure_references(formula)) > 0


def extract_time_series_variables(formula: str) -> List[TimeSeriesVariable]:
    """
    Extract {modifier:name} time-series variables from a formula

    Args:
        formula: Formula string

    Returns:
        Variables in order of appearance (repeats included)
    """
    if not isinstance(formula, str):
        return []

    return [
        TimeSeriesVariable(
            full=match.group(0), modifier=match.group(1), measure_name=match.group(2)
        )
        for match in TIME_SERIES_REFERENCE_PATTERN.finditer(formula)
    ]


def has_time_series_variables(formula: str) -> bool:
    """Check if a formula reads any time-series variable"""
    return len(extract_time_series_variables(formula)) > 0


def _is_valid_modifier(modifier: str) -> bool:
    if modifier.startswith(AVERAGE_MODIFIER_PREFIX):
        days = modifier[len(AVERAGE_MODIFIER_PREFIX):]
        return days.isdigit() and int(days) > 0
    return modifier in TIME_SERIES_MODIFIERS


def validate_time_series_modifiers(formula: str) -> ModifierValidation:
    """
    Validate the time-series modifiers used in a formula

    Args:
        formula: Formula string

    Returns:
        ModifierValidation listing every invalid modifier (e.g. avg0)
    """
    invalid_modifiers = [
        variable.modifier
        for variable in extract_time_series_variables(formula)
        if not _is_valid_modifier(variable.modifier)
    ]

    if invalid_modifiers:
        return ModifierValidation(
            valid=False,
            error=f"Invalid time-series modifiers: {', '.join(invalid_modifiers)}",
            invalid_modifiers=invalid_modifiers,
        )

    return ModifierValidation(valid=True)
