"""
Formula evaluator for calculated custom fields
Evaluates parsed formulas against variable bindings and converts every
failure into a tagged result, so a cascading recalculation can continue
past individual field errors
"""

from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, localcontext
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
import logging
import math
import operator

from formula_engine.config import get_settings
from formula_engine.constants import (
    ISO_DATE_PATTERN,
    MEASURE_VARIABLE_PATTERN,
    REGULAR_VARIABLE_PATTERN,
    TIME_SERIES_VARIABLE_PATTERN,
    VARIABLE_REFERENCE_PATTERN,
)
from formula_engine.exceptions import EvaluationError
from formula_engine.functions import days_since_epoch, get_function
from formula_engine.models import (
    EvaluationFailure,
    EvaluationResult,
    EvaluationSuccess,
    FormulaInvalid,
    FormulaValid,
    ValidationResult,
)
from formula_engine.parser import (
    BinaryOpNode,
    FormulaNode,
    FormulaParser,
    FunctionCallNode,
    NumberNode,
    UnaryOpNode,
    VariableNode,
    check_braces,
    collect_variables,
    get_parser,
)
from formula_engine.references import validate_time_series_modifiers

logger = logging.getLogger(__name__)

# Returns the current calendar date; injected so tests can pin today()
Clock = Callable[[], date]

# Rounding to more places than this cannot change a float
MAX_ROUNDING_PLACES = 400


class _Scope:
    """Per-call evaluation state: resolved values and a lazily read clock"""

    __slots__ = ("values", "field_id", "_clock", "_today")

    def __init__(self, values: Dict[str, float], field_id: Optional[str], clock: Clock):
        self.values = values
        self.field_id = field_id
        self._clock = clock
        self._today: Optional[date] = None

    def today(self) -> date:
        # Read once per evaluation so repeated today() calls agree
        if self._today is None:
            now = self._clock()
            self._today = now.date() if isinstance(now, datetime) else now
        return self._today


class FormulaEvaluator:
    """
    Evaluate calculated-field formulas

    Supports:
    - Arithmetic operations (+, -, *, /, ^)
    - Variable references ({weight})
    - Math functions (sqrt, abs, round, floor, ceil, min, max)
    - Date functions over day counts since 1970-01-01
      (today, year, month, day, age_years)

    The evaluator holds no per-call state; one instance may be shared
    between threads.
    """

    # Operator implementations
    SAFE_OPERATORS = {
        "+": operator.add,
        "-": operator.sub,
        "*": operator.mul,
        "/": operator.truediv,
        "^": math.pow,
    }

    def __init__(self, clock: Optional[Clock] = None, parser: Optional[FormulaParser] = None):
        """
        Args:
            clock: Source of the current date for today() and age_years();
                defaults to the host's local date
            parser: Parser to use; defaults to the shared cached parser
        """
        self.clock: Clock = clock or date.today
        self.parser = parser or get_parser()

    def resolve_bindings(
        self,
        names: List[str],
        bindings: Mapping[str, Any],
        field_id: Optional[str] = None,
    ) -> Dict[str, float]:
        """
        Resolve the numeric value of every referenced variable

        Args:
            names: Referenced variable names, in first-occurrence order
            bindings: Caller-supplied values
            field_id: Optional field ID for error reporting

        Returns:
            Dictionary mapping each name to a finite float

        Raises:
            EvaluationError: On the first missing or invalid value
        """
        values: Dict[str, float] = {}
        for name in names:
            if name not in bindings or bindings[name] is None:
                raise EvaluationError(
                    code="missing_variable",
                    message=f"Missing value for variable: {name}",
                    field_id=field_id,
                    details={"variable": name},
                )
            values[name] = coerce_value(name, bindings[name], field_id)
        return values

    def eval_node(self, node: FormulaNode, scope: _Scope) -> float:
        """
        Evaluate an AST with an explicit stack

        Operands are evaluated left to right, so the first failing operand
        is the one reported. Long operator chains do not recurse.

        Raises:
            EvaluationError: If evaluation fails
        """
        results: List[float] = []
        # (node, operands_done): a node is pushed again once its operands are queued
        stack: List[Tuple[FormulaNode, bool]] = [(node, False)]

        while stack:
            current, operands_done = stack.pop()

            if isinstance(current, NumberNode):
                results.append(current.value)
            elif isinstance(current, VariableNode):
                results.append(self._lookup(current, scope))
            elif not operands_done:
                stack.append((current, True))
                for operand in reversed(self._operands(current, scope)):
                    stack.append((operand, False))
            elif isinstance(current, BinaryOpNode):
                right = results.pop()
                left = results.pop()
                results.append(self._eval_binop(current.operator, left, right, scope))
            elif isinstance(current, UnaryOpNode):
                results.append(self._eval_unaryop(current.operator, results.pop(), scope))
            else:
                start = len(results) - len(current.arguments)
                args = results[start:]
                del results[start:]
                results.append(self._eval_call(current, args, scope))

        return results[0]

    def _operands(self, node: FormulaNode, scope: _Scope) -> Tuple[FormulaNode, ...]:
        if isinstance(node, BinaryOpNode):
            return (node.left, node.right)
        if isinstance(node, UnaryOpNode):
            return (node.operand,)
        if isinstance(node, FunctionCallNode):
            return node.arguments
        raise EvaluationError(
            code="unsupported_node_type",
            message=f"Unsupported expression type: {type(node).__name__}",
            field_id=scope.field_id,
        )

    def _lookup(self, node: VariableNode, scope: _Scope) -> float:
        if node.name in scope.values:
            return scope.values[node.name]
        raise EvaluationError(
            code="missing_variable",
            message=f"Missing value for variable: {node.name}",
            field_id=scope.field_id,
            details={"variable": node.name},
        )

    def _eval_binop(self, op: str, left: float, right: float, scope: _Scope) -> float:
        """Evaluate binary operation"""
        if op not in self.SAFE_OPERATORS:
            raise EvaluationError(
                code="unsupported_operator",
                message=f"Unsupported operator: {op}",
                field_id=scope.field_id,
            )

        # 0 ^ negative is a division by zero in disguise
        if (op == "/" and right == 0) or (op == "^" and left == 0 and right < 0):
            raise EvaluationError(
                code="division_by_zero",
                message="Division by zero",
                field_id=scope.field_id,
            )

        try:
            result = self.SAFE_OPERATORS[op](left, right)
        except OverflowError as e:
            raise _non_finite(scope.field_id) from e
        except ValueError as e:
            # math.pow with a negative base and fractional exponent
            raise EvaluationError(
                code="math_domain_error",
                message=f"Result is not a real number: {left} ^ {right}",
                field_id=scope.field_id,
            ) from e

        return _ensure_finite(result, scope.field_id)

    def _eval_unaryop(self, op: str, operand: float, scope: _Scope) -> float:
        """Evaluate unary operation"""
        if op == "-":
            return -operand
        if op == "+":
            return operand
        raise EvaluationError(
            code="unsupported_unary_operator",
            message=f"Unsupported unary operator: {op}",
            field_id=scope.field_id,
        )

    def _eval_call(self, node: FunctionCallNode, args: List[Any], scope: _Scope) -> float:
        """Evaluate function call with already evaluated arguments"""
        func = get_function(node.name)
        if func is None:
            raise EvaluationError(
                code="unknown_function",
                message=f"Unknown function: {node.name}",
                field_id=scope.field_id,
            )

        if func.uses_clock:
            args.insert(0, scope.today())

        try:
            result = func.impl(*args)
        except EvaluationError as e:
            e.field_id = e.field_id or scope.field_id
            raise
        except OverflowError as e:
            raise _non_finite(scope.field_id) from e
        except ValueError as e:
            raise EvaluationError(
                code="math_domain_error",
                message=f"Math domain error in {func.name}: {str(e)}",
                field_id=scope.field_id,
            ) from e

        return _ensure_finite(float(result), scope.field_id)

    def evaluate(
        self,
        formula: str,
        bindings: Mapping[str, Any],
        field_id: Optional[str] = None,
    ) -> float:
        """
        Evaluate a formula with the given variable values

        Args:
            formula: Formula string
            bindings: Mapping of variable names to values
            field_id: Optional field ID for error reporting

        Returns:
            Evaluated finite result

        Raises:
            EvaluationError: If parsing, substitution or evaluation fails
        """
        try:
            tree = self.parser.parse(formula)
        except EvaluationError as e:
            e.field_id = field_id
            raise

        values = self.resolve_bindings(collect_variables(tree), bindings, field_id)
        scope = _Scope(values, field_id, self.clock)
        return _ensure_finite(self.eval_node(tree, scope), field_id)


# ============================================================================
# Value Helpers
# ============================================================================


def coerce_value(name: str, value: Any, field_id: Optional[str] = None) -> float:
    """
    Convert a binding to a finite float

    Numbers are used as-is, numeric strings are parsed, and dates (date
    objects or ISO YYYY-MM-DD strings) become day counts since 1970-01-01.

    Raises:
        EvaluationError: If the value is not numeric, not a date, or not finite
    """
    number: Optional[float] = None

    if isinstance(value, bool):
        number = None
    elif isinstance(value, datetime):
        number = float(days_since_epoch(value.date()))
    elif isinstance(value, date):
        number = float(days_since_epoch(value))
    elif isinstance(value, (int, float, Decimal)):
        try:
            number = float(value)
        except OverflowError:
            number = None
    elif isinstance(value, str):
        text = value.strip()
        if ISO_DATE_PATTERN.match(text):
            try:
                number = float(days_since_epoch(date.fromisoformat(text[:10])))
            except ValueError:
                number = None
        else:
            try:
                number = float(text)
            except ValueError:
                number = None

    if number is None or not math.isfinite(number):
        raise EvaluationError(
            code="invalid_variable_value",
            message=f"Invalid value for variable {name}: {value!r}",
            field_id=field_id,
            details={"variable": name},
        )
    return number


def _non_finite(field_id: Optional[str]) -> EvaluationError:
    return EvaluationError(
        code="non_finite_result",
        message="Numeric overflow: result is not finite",
        field_id=field_id,
    )


def _ensure_finite(value: float, field_id: Optional[str]) -> float:
    if not math.isfinite(value):
        raise _non_finite(field_id)
    return value


def round_half_up(value: float, places: int) -> float:
    """
    Round to a number of decimal places, halves away from zero

    Uses the shortest decimal representation of the float, so 2.675
    rounds to 2.68 rather than exposing its binary approximation.
    """
    if places > MAX_ROUNDING_PLACES:
        return value
    with localcontext() as ctx:
        ctx.prec = 2 * MAX_ROUNDING_PLACES
        try:
            quantized = Decimal(repr(value)).quantize(
                Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP
            )
        except InvalidOperation:
            return value
    # Adding 0.0 turns -0.0 into 0.0
    return float(quantized) + 0.0


# ============================================================================
# Engine Operations
# ============================================================================


def evaluate_formula(
    formula: str,
    bindings: Mapping[str, Any],
    precision: Optional[int] = None,
    *,
    field_id: Optional[str] = None,
    clock: Optional[Clock] = None,
) -> EvaluationResult:
    """
    Evaluate a formula against variable bindings

    Never raises: every error is returned as an EvaluationFailure.

    Args:
        formula: Formula string (e.g. "{weight} / ({height} * {height})")
        bindings: Mapping of variable names to values
        precision: Decimal places to round the result to; falls back to the
            configured default_precision, None meaning no rounding
        field_id: Optional calculated field ID, used in logs
        clock: Optional source of the current date for today()

    Returns:
        EvaluationSuccess with the result, or EvaluationFailure with the error
    """
    if not isinstance(formula, str) or not formula.strip():
        return EvaluationFailure(error="Formula is empty", code="empty_formula")

    if not isinstance(bindings, Mapping):
        return EvaluationFailure(error="Values must be a mapping", code="invalid_bindings")

    if precision is None:
        precision = get_settings().default_precision
    if precision is not None and (
        isinstance(precision, bool) or not isinstance(precision, int) or precision < 0
    ):
        return EvaluationFailure(
            error=f"Precision must be a non-negative integer, got {precision!r}",
            code="invalid_precision",
        )

    try:
        result = FormulaEvaluator(clock=clock).evaluate(formula, bindings, field_id)
        if precision is not None:
            result = round_half_up(result, precision)
        return EvaluationSuccess(result=result)
    except EvaluationError as e:
        logger.debug(
            f"Formula evaluation failed: {e}",
            extra={"field_id": field_id, "error_code": e.code},
        )
        return EvaluationFailure(error=e.message, code=e.code)
    except Exception as e:
        logger.exception(f"Unexpected error evaluating formula '{formula}'")
        return EvaluationFailure(
            error=f"Error evaluating formula: {str(e)}", code="evaluation_error"
        )


def extract_dependencies(formula: str) -> List[str]:
    """
    Extract the variable names a formula references

    Static scan only: nothing is parsed or evaluated. Names are trimmed,
    distinct, and in first-occurrence order. On malformed text the result is
    partial: every well-formed {name} pair is returned and unmatched brace
    fragments are ignored, so "{weight / {height}" yields ["height"].

    Args:
        formula: Formula string

    Returns:
        List of variable names; empty for an empty or non-string formula
    """
    if not isinstance(formula, str):
        return []

    dependencies: List[str] = []
    seen = set()
    for match in VARIABLE_REFERENCE_PATTERN.finditer(formula):
        name = match.group(1).strip()
        if name and name not in seen:
            seen.add(name)
            dependencies.append(name)
    return dependencies


def _is_valid_variable_name(name: str) -> bool:
    return bool(
        REGULAR_VARIABLE_PATTERN.match(name)
        or MEASURE_VARIABLE_PATTERN.match(name)
        or TIME_SERIES_VARIABLE_PATTERN.match(name)
    )


def validate_formula(formula: str) -> ValidationResult:
    """
    Validate a formula without evaluating it

    Checks braces, variable names, time-series modifiers, parentheses,
    syntax, function names and argument counts. No bindings are needed.

    Args:
        formula: Formula string

    Returns:
        FormulaValid with the dependency list, or FormulaInvalid with the error
    """
    if not isinstance(formula, str) or not formula.strip():
        return FormulaInvalid(error="Formula is empty", code="empty_formula")

    formula = formula.strip()
    try:
        check_braces(formula)
        dependencies = extract_dependencies(formula)

        modifiers = validate_time_series_modifiers(formula)
        if not modifiers.valid:
            return FormulaInvalid(
                error=modifiers.error or "Invalid time-series modifiers",
                code="invalid_time_series_modifier",
            )

        for dependency in dependencies:
            if not _is_valid_variable_name(dependency):
                return FormulaInvalid(
                    error=(
                        f"Invalid variable name: {dependency}. Use {{field_name}}, "
                        "{measure:measure_name}, or {modifier:measure_name}"
                    ),
                    code="invalid_variable_name",
                )

        get_parser().parse(formula)
        return FormulaValid(dependencies=dependencies)
    except EvaluationError as e:
        return FormulaInvalid(error=e.message, code=e.code)
    except Exception as e:
        logger.exception(f"Unexpected error validating formula '{formula}'")
        return FormulaInvalid(
            error=f"Error validating formula: {str(e)}", code="evaluation_error"
        )
