"""
Built-in functions available in calculated-field formulas

Every implementation receives plain floats and returns a float. Functions
flagged with uses_clock receive the evaluation's current date as their
first argument, ahead of the formula arguments.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_CEILING, localcontext
from typing import Callable, Dict, List, Optional
import math

from formula_engine.constants import EPOCH, MAX_ROUND_DECIMALS, SUPPORTED_OPERATORS
from formula_engine.exceptions import EvaluationError
from formula_engine.types import FunctionInfoDict


@dataclass(frozen=True)
class FormulaFunction:
    """
    Registered formula function

    Attributes:
        name: Lowercase name used in formulas
        impl: Implementation
        min_args: Minimum number of formula arguments
        max_args: Maximum number of formula arguments (None = unbounded)
        description: Short description for formula builders
        example: Example usage
        category: "math" or "date"
        uses_clock: Whether the current date is passed as first argument
    """

    name: str
    impl: Callable[..., float]
    min_args: int
    max_args: Optional[int]
    description: str
    example: str
    category: str
    uses_clock: bool = False

    def accepts(self, arg_count: int) -> bool:
        """Check whether the function can be called with arg_count arguments"""
        if arg_count < self.min_args:
            return False
        return self.max_args is None or arg_count <= self.max_args

    def arity_description(self) -> str:
        """Human-readable expected argument count"""
        if self.max_args is None:
            return f"at least {self.min_args} argument{'s' if self.min_args != 1 else ''}"
        if self.min_args == self.max_args:
            return f"{self.min_args} argument{'s' if self.min_args != 1 else ''}"
        return f"{self.min_args} to {self.max_args} arguments"

    def info(self) -> FunctionInfoDict:
        return {
            "name": self.name,
            "description": self.description,
            "example": self.example,
            "category": self.category,
            "min_args": self.min_args,
            "max_args": self.max_args,
        }


# Registry of formula functions, keyed by lowercase name
FORMULA_FUNCTIONS: Dict[str, FormulaFunction] = {}


def register_function(
    name: str,
    min_args: int,
    max_args: Optional[int],
    description: str,
    example: str,
    category: str = "math",
    uses_clock: bool = False,
) -> Callable[[Callable[..., float]], Callable[..., float]]:
    """Decorator to register a formula function."""

    def decorator(func: Callable[..., float]) -> Callable[..., float]:
        FORMULA_FUNCTIONS[name.lower()] = FormulaFunction(
            name=name.lower(),
            impl=func,
            min_args=min_args,
            max_args=max_args,
            description=description,
            example=example,
            category=category,
            uses_clock=uses_clock,
        )
        return func

    return decorator


def get_function(name: str) -> Optional[FormulaFunction]:
    """Look up a function by name, case-insensitively"""
    return FORMULA_FUNCTIONS.get(name.lower())


# =============================================================================
# Date Helpers
# =============================================================================


def days_since_epoch(value: date) -> int:
    """Convert a calendar date to a day count since 1970-01-01"""
    return (value - EPOCH).days


def date_from_days(days: float) -> date:
    """
    Interpret a day count since 1970-01-01 as a calendar date

    Fractional day counts are floored to the day they fall in.

    Raises:
        EvaluationError: If the day count is outside the supported calendar
    """
    try:
        return EPOCH + timedelta(days=math.floor(days))
    except (OverflowError, ValueError) as e:
        raise EvaluationError(
            code="invalid_date",
            message=f"Invalid date value: {days}",
        ) from e


# =============================================================================
# Math Functions
# =============================================================================


@register_function("sqrt", 1, 1, "Square root", "sqrt({value})")
def func_sqrt(x: float) -> float:
    if x < 0:
        raise EvaluationError(
            code="negative_sqrt",
            message="Cannot take square root of negative number",
            details={"operand": x},
        )
    return math.sqrt(x)


@register_function("abs", 1, 1, "Absolute value", "abs({value})")
def func_abs(x: float) -> float:
    return abs(x)


@register_function("round", 1, 2, "Round to N decimals", "round({value}, 2)")
def func_round(x: float, decimals: float = 0) -> float:
    """
    Round half up (towards positive infinity), as spreadsheet users expect

    Negative decimals round to tens, hundreds, and so on. Fractional
    decimals are truncated.

    Raises:
        EvaluationError: If decimals is outside [-308, 308]
    """
    places = int(decimals)
    if abs(places) > MAX_ROUND_DECIMALS:
        raise EvaluationError(
            code="invalid_function_args",
            message=(
                f"round() decimals must be between -{MAX_ROUND_DECIMALS} and "
                f"{MAX_ROUND_DECIMALS}, got {decimals}"
            ),
        )
    with localcontext() as ctx:
        # Enough digits for the largest float at the finest quantum
        ctx.prec = 2 * MAX_ROUND_DECIMALS + 16
        rounded = Decimal(repr(x)).quantize(
            Decimal(1).scaleb(-places), rounding=ROUND_HALF_CEILING
        )
    # Adding 0.0 turns -0.0 into 0.0
    return float(rounded) + 0.0


@register_function("floor", 1, 1, "Round down", "floor({value})")
def func_floor(x: float) -> float:
    return float(math.floor(x))


@register_function("ceil", 1, 1, "Round up", "ceil({value})")
def func_ceil(x: float) -> float:
    return float(math.ceil(x))


@register_function("min", 1, None, "Minimum value", "min({value1}, {value2})")
def func_min(*args: float) -> float:
    return min(args)


@register_function("max", 1, None, "Maximum value", "max({value1}, {value2})")
def func_max(*args: float) -> float:
    return max(args)


# =============================================================================
# Date Functions
# =============================================================================


@register_function(
    "today", 0, 0, "Current date (days since epoch)", "today()",
    category="date", uses_clock=True,
)
def func_today(today: date) -> float:
    return float(days_since_epoch(today))


@register_function(
    "year", 1, 1, "Extract year from date", "year({birth_date})", category="date"
)
def func_year(days: float) -> float:
    return float(date_from_days(days).year)


@register_function(
    "month", 1, 1, "Extract month (1-12) from date", "month({birth_date})",
    category="date",
)
def func_month(days: float) -> float:
    return float(date_from_days(days).month)


@register_function(
    "day", 1, 1, "Extract day from date", "day({birth_date})", category="date"
)
def func_day(days: float) -> float:
    return float(date_from_days(days).day)


@register_function(
    "age_years", 1, 1, "Calculate age in years from birth date",
    "age_years({date_of_birth})", category="date", uses_clock=True,
)
def func_age_years(today: date, days: float) -> float:
    """Full years elapsed between the birth date and today"""
    birth = date_from_days(days)
    age = today.year - birth.year
    # Birthday not reached yet this year
    if (today.month, today.day) < (birth.month, birth.day):
        age -= 1
    return float(age)


def get_available_operators() -> Dict[str, List]:
    """
    Get available operators and functions for formula building

    Returns:
        Dictionary with 'operators' (list of symbols) and 'functions'
        (list of function descriptions)
    """
    return {
        "operators": list(SUPPORTED_OPERATORS),
        "functions": [func.info() for func in FORMULA_FUNCTIONS.values()],
    }
