"""
Tests for formula evaluation
"""

import time
from datetime import date, datetime
from decimal import Decimal

import pytest

from formula_engine.constants import EPOCH
from formula_engine.evaluator import (
    FormulaEvaluator,
    coerce_value,
    evaluate_formula,
    round_half_up,
    validate_formula,
)
from formula_engine.exceptions import EvaluationError
from formula_engine.models import EvaluationFailure, EvaluationSuccess


def fixed_clock(day: date):
    return lambda: day


def test_evaluate_addition_with_negative_value():
    """Test adding a negative and a positive value"""
    result = evaluate_formula("{a} + {b}", {"a": -10, "b": 5})
    assert isinstance(result, EvaluationSuccess)
    assert result.success is True
    assert result.result == -5
    assert result.error is None


def test_evaluate_bmi():
    """Test the BMI formula"""
    result = evaluate_formula(
        "{weight} / ({height} * {height})", {"weight": 70, "height": 1.75}
    )
    assert result.success
    assert result.result == pytest.approx(22.857, abs=0.001)


def test_evaluate_bmi_with_precision():
    """Test rounding the BMI result to two decimals"""
    result = evaluate_formula(
        "{weight} / ({height} * {height})", {"weight": 70, "height": 1.75}, 2
    )
    assert result.result == 22.86


def test_evaluate_basic_arithmetic():
    """Test basic arithmetic operations"""
    values = {"x": 10, "y": 4}

    assert evaluate_formula("{x} + {y}", values).result == 14
    assert evaluate_formula("{x} - {y}", values).result == 6
    assert evaluate_formula("{x} * {y}", values).result == 40
    assert evaluate_formula("{x} / {y}", values).result == 2.5
    assert evaluate_formula("{x} ^ 2", values).result == 100


def test_evaluate_operator_precedence():
    """Test precedence and associativity"""
    assert evaluate_formula("2 + 3 * 4", {}).result == 14
    assert evaluate_formula("(2 + 3) * 4", {}).result == 20
    assert evaluate_formula("10 - 4 - 3", {}).result == 3
    assert evaluate_formula("16 / 4 / 2", {}).result == 2
    assert evaluate_formula("2 * 3 ^ 2", {}).result == 18
    # ^ is right associative
    assert evaluate_formula("2 ^ 3 ^ 2", {}).result == 512


def test_evaluate_unary_minus():
    """Test unary minus binding tighter than ^"""
    assert evaluate_formula("-2 ^ 2", {}).result == 4
    assert evaluate_formula("-(2 ^ 2)", {}).result == -4
    assert evaluate_formula("2 ^ -1", {}).result == 0.5
    assert evaluate_formula("-{a} + 1", {"a": 3}).result == -2
    assert evaluate_formula("+{a}", {"a": 3}).result == 3


def test_evaluate_numeric_literals():
    """Test integer, decimal and exponent literals"""
    assert evaluate_formula("1.5 + .5", {}).result == 2
    assert evaluate_formula("2e3", {}).result == 2000
    assert evaluate_formula("1.5E-1 * 10", {}).result == pytest.approx(1.5)


def test_evaluate_whitespace_in_references():
    """Test that whitespace inside braces is trimmed"""
    result = evaluate_formula("{ weight } * 2", {"weight": 35})
    assert result.result == 70


def test_evaluate_missing_variable():
    """Test error handling for missing variables"""
    result = evaluate_formula("{weight} / {height}", {"weight": 70})
    assert isinstance(result, EvaluationFailure)
    assert result.success is False
    assert result.result is None
    assert "Missing value for variable" in result.error
    assert "height" in result.error
    assert result.code == "missing_variable"


def test_evaluate_none_counts_as_missing():
    """Test that a None binding is reported as missing"""
    result = evaluate_formula("{a} + 1", {"a": None})
    assert not result.success
    assert result.error == "Missing value for variable: a"


def test_evaluate_missing_variable_reported_in_order():
    """Test that the first missing variable in the formula is reported"""
    result = evaluate_formula("{b} + {a}", {})
    assert result.error == "Missing value for variable: b"


def test_evaluate_bindings_are_case_sensitive():
    """Test that binding keys are case-sensitive"""
    result = evaluate_formula("{Weight}", {"weight": 70})
    assert not result.success
    assert "Weight" in result.error


def test_evaluate_invalid_variable_value():
    """Test rejection of non-numeric values"""
    result = evaluate_formula("{a} + 1", {"a": "abc"})
    assert not result.success
    assert result.code == "invalid_variable_value"
    assert "Invalid value for variable a" in result.error

    assert not evaluate_formula("{a} + 1", {"a": True}).success
    assert not evaluate_formula("{a} + 1", {"a": float("nan")}).success
    assert not evaluate_formula("{a} + 1", {"a": [1]}).success


def test_evaluate_numeric_string_value():
    """Test that numeric strings are accepted"""
    result = evaluate_formula("{a} * 2", {"a": " 70.5 "})
    assert result.result == 141


def test_evaluate_division_by_zero():
    """Test division by zero"""
    result = evaluate_formula("{weight} / {height}", {"weight": 70, "height": 0})
    assert not result.success
    assert "Division by zero" in result.error
    assert result.code == "division_by_zero"


def test_evaluate_zero_to_negative_power():
    """Test that 0 ^ negative is a division by zero"""
    result = evaluate_formula("0 ^ -1", {})
    assert not result.success
    assert "Division by zero" in result.error


def test_evaluate_sqrt_of_negative():
    """Test square root of a negative number"""
    result = evaluate_formula("sqrt({a})", {"a": -5})
    assert not result.success
    assert "square root of negative" in result.error
    assert result.code == "negative_sqrt"


def test_evaluate_fractional_power_of_negative():
    """Test a negative base with a fractional exponent"""
    result = evaluate_formula("(-8) ^ 0.5", {})
    assert not result.success
    assert result.code == "math_domain_error"
    assert "not a real number" in result.error


def test_evaluate_overflow():
    """Test that non-finite results are failures"""
    result = evaluate_formula("10 ^ 400", {})
    assert not result.success
    assert result.code == "non_finite_result"

    result = evaluate_formula("{a} * {a}", {"a": 1e200})
    assert not result.success
    assert "not finite" in result.error


def test_evaluate_functions():
    """Test mathematical functions"""
    values = {"x": 4}

    assert evaluate_formula("sqrt({x})", values).result == 2.0
    assert evaluate_formula("abs(-{x})", values).result == 4
    assert evaluate_formula("min({x}, 10)", values).result == 4
    assert evaluate_formula("max({x}, 10, 7)", values).result == 10
    assert evaluate_formula("floor(2.7)", values).result == 2
    assert evaluate_formula("ceil(2.1)", values).result == 3


def test_evaluate_round_function():
    """Test round() with and without decimals"""
    assert evaluate_formula("round(3.14159, 2)", {}).result == 3.14
    assert evaluate_formula("round(2.5)", {}).result == 3
    # Halves round towards positive infinity
    assert evaluate_formula("round(-2.5)", {}).result == -2


def test_evaluate_function_names_case_insensitive():
    """Test that function names ignore case"""
    assert evaluate_formula("SQRT(16)", {}).result == 4
    assert evaluate_formula("Max(1, 2)", {}).result == 2


def test_evaluate_unknown_function():
    """Test calling an unknown function"""
    result = evaluate_formula("foo({a})", {"a": 1})
    assert not result.success
    assert result.error == "Unknown function: foo"


def test_evaluate_wrong_argument_count():
    """Test calling a function with the wrong number of arguments"""
    result = evaluate_formula("sqrt(1, 2)", {})
    assert not result.success
    assert result.code == "invalid_function_args"
    assert "expects 1 argument, got 2" in result.error

    result = evaluate_formula("min()", {})
    assert not result.success
    assert "at least 1 argument" in result.error


def test_evaluate_empty_formula():
    """Test empty and whitespace-only formulas"""
    for formula in ["", "   ", None]:
        result = evaluate_formula(formula, {})
        assert not result.success
        assert result.error == "Formula is empty"


def test_evaluate_non_mapping_bindings():
    """Test that bindings must be a mapping"""
    result = evaluate_formula("1 + 1", [("a", 1)])
    assert not result.success
    assert result.code == "invalid_bindings"


def test_evaluate_syntax_errors():
    """Test that syntax errors become failures"""
    result = evaluate_formula("{weight / {height}", {"weight": 1, "height": 1})
    assert not result.success
    assert result.error == "Unbalanced braces in formula"

    result = evaluate_formula("({a} + 1", {"a": 1})
    assert result.error == "Mismatched parentheses"

    result = evaluate_formula("{a} +", {"a": 1})
    assert result.error == "Unexpected end of formula"

    result = evaluate_formula("{a} $ 1", {"a": 1})
    assert "Unrecognized character '$'" in result.error


def test_evaluate_formula_too_long():
    """Test rejection of overly long formulas"""
    formula = "1 + " * 600 + "1"
    result = evaluate_formula(formula, {})
    assert not result.success
    assert result.code == "formula_too_long"


def test_evaluate_precision():
    """Test result rounding"""
    assert evaluate_formula("10 / 3", {}, 0).result == 3
    assert evaluate_formula("10 / 3", {}, 3).result == 3.333
    assert evaluate_formula("2.675", {}, 2).result == 2.68
    assert evaluate_formula("10 / 3", {}).result == pytest.approx(3.3333333)


def test_evaluate_invalid_precision():
    """Test that negative or non-integer precision is rejected"""
    for precision in [-1, 1.5, True]:
        result = evaluate_formula("1", {}, precision)
        assert not result.success
        assert result.code == "invalid_precision"


def test_round_half_up():
    """Test decimal rounding helper"""
    assert round_half_up(2.5, 0) == 3
    assert round_half_up(-2.5, 0) == -3
    assert round_half_up(1.005, 2) == 1.01
    assert round_half_up(1.23456, 10) == 1.23456
    assert str(round_half_up(-0.0001, 2)) == "0.0"


def test_result_to_dict():
    """Test the plain dictionary shape of results"""
    assert evaluate_formula("1 + 1", {}).to_dict() == {
        "success": True,
        "result": 2.0,
        "error": None,
    }
    assert evaluate_formula("1 / 0", {}).to_dict() == {
        "success": False,
        "result": None,
        "error": "Division by zero",
    }


# =============================================================================
# Dates
# =============================================================================


def test_today_uses_injected_clock():
    """Test that today() reads the injected clock"""
    day = date(2024, 1, 15)
    result = evaluate_formula("today()", {}, clock=fixed_clock(day))
    assert result.result == (day - EPOCH).days


def test_today_is_stable_within_a_day():
    """Test that two evaluations on the same day agree"""
    morning = evaluate_formula(
        "today() - {start}", {"start": 100}, clock=lambda: datetime(2024, 3, 1, 8, 0)
    )
    evening = evaluate_formula(
        "today() - {start}", {"start": 100}, clock=lambda: datetime(2024, 3, 1, 23, 59)
    )
    assert morning.result == evening.result


def test_today_is_non_decreasing_across_days():
    """Test that today() never goes backwards"""
    days = [date(2023, 12, 31), date(2024, 1, 1), date(2024, 2, 29), date(2025, 1, 1)]
    results = [evaluate_formula("today()", {}, clock=fixed_clock(d)).result for d in days]
    assert results == sorted(results)


def test_today_reads_clock_on_every_call():
    """Test that today() is not cached across evaluations"""
    current = {"day": date(2024, 1, 1)}

    def clock():
        return current["day"]

    first = evaluate_formula("today()", {}, clock=clock).result
    current["day"] = date(2024, 1, 2)
    second = evaluate_formula("today()", {}, clock=clock).result
    assert second == first + 1


def test_date_component_functions():
    """Test year(), month() and day() on date bindings"""
    values = {"dob": date(1990, 6, 15)}

    assert evaluate_formula("year({dob})", values).result == 1990
    assert evaluate_formula("month({dob})", values).result == 6
    assert evaluate_formula("day({dob})", values).result == 15


def test_date_functions_accept_iso_strings_and_day_counts():
    """Test ISO strings and raw day counts as dates"""
    assert evaluate_formula("year({dob})", {"dob": "1990-06-15"}).result == 1990
    assert evaluate_formula("month({d})", {"d": 0}).result == 1
    # Fractional day counts are floored
    assert evaluate_formula("day({d})", {"d": 31.9}).result == 1
    assert evaluate_formula("year({d})", {"d": -1}).result == 1969


def test_date_out_of_range():
    """Test day counts outside the calendar"""
    result = evaluate_formula("year({d})", {"d": 1e12})
    assert not result.success
    assert result.code == "invalid_date"


def test_age_years():
    """Test age in full years"""
    values = {"dob": date(1990, 6, 15)}

    before = evaluate_formula("age_years({dob})", values, clock=fixed_clock(date(2024, 6, 14)))
    on = evaluate_formula("age_years({dob})", values, clock=fixed_clock(date(2024, 6, 15)))
    assert before.result == 33
    assert on.result == 34


def test_age_template_formula():
    """Test an age formula built on today()"""
    birth = date(2000, 1, 1)
    result = evaluate_formula(
        "(today() - {birth_date_days}) / 365.25",
        {"birth_date_days": (birth - EPOCH).days},
        0,
        clock=fixed_clock(date(2024, 3, 1)),
    )
    assert result.result == 24


# =============================================================================
# Cascading and Performance
# =============================================================================


def test_cascading_recalculation_is_deterministic():
    """Test recomputing a chain of fields from a fixed input"""
    field_b_formula = "{field_a} * 2 + 1"
    field_c_formula = "sqrt({field_b}) / 3"

    def recompute(field_a):
        field_b = evaluate_formula(field_b_formula, {"field_a": field_a}).result
        field_c = evaluate_formula(field_c_formula, {"field_b": field_b}).result
        return field_b, field_c

    first = recompute(12)
    for _ in range(5):
        assert recompute(12) == first


def test_performance_1000_formulas():
    """Test that 1000 simple formulas evaluate well under a second"""
    formulas = [
        "{a} + {b}",
        "{a} * {b} - {c}",
        "({a} + {b}) / {c}",
        "{weight} / ({height} * {height})",
    ]
    # Warm up the grammar
    evaluate_formula("1 + 1", {})

    start = time.perf_counter()
    for i in range(1000):
        values = {"a": i, "b": i + 1, "c": i + 2, "weight": 70 + i, "height": 1.75}
        result = evaluate_formula(formulas[i % len(formulas)], values)
        assert result.success
    elapsed = time.perf_counter() - start

    assert elapsed < 1.0


# =============================================================================
# FormulaEvaluator
# =============================================================================


def test_evaluator_raises_evaluation_error():
    """Test that the evaluator class raises instead of returning results"""
    evaluator = FormulaEvaluator(clock=fixed_clock(date(2024, 1, 1)))

    assert evaluator.evaluate("{x} * 3", {"x": 2}) == 6

    with pytest.raises(EvaluationError) as exc_info:
        evaluator.evaluate("{x} / 0", {"x": 2}, field_id="ratio")
    assert exc_info.value.code == "division_by_zero"
    assert exc_info.value.field_id == "ratio"


def test_evaluator_syntax_error_carries_field_id():
    """Test that parse errors are tagged with the field being evaluated"""
    evaluator = FormulaEvaluator()

    with pytest.raises(EvaluationError) as exc_info:
        evaluator.evaluate("{x} +", {"x": 1}, field_id="total")
    assert exc_info.value.field_id == "total"
    assert "Field: total" in str(exc_info.value)


def test_coerce_value():
    """Test binding conversion to floats"""
    assert coerce_value("a", 3) == 3.0
    assert coerce_value("a", Decimal("1.5")) == 1.5
    assert coerce_value("a", "1e3") == 1000.0
    assert coerce_value("a", date(1970, 1, 11)) == 10.0
    assert coerce_value("a", datetime(1970, 1, 2, 12, 30)) == 1.0
    assert coerce_value("a", "1970-01-03T10:00:00") == 2.0

    with pytest.raises(EvaluationError):
        coerce_value("a", "2024-13-45")
    with pytest.raises(EvaluationError):
        coerce_value("a", float("inf"))
    with pytest.raises(EvaluationError):
        coerce_value("a", False)


def test_evaluation_failure_is_logged(caplog):
    """Test that evaluation failures are logged with the field ID"""
    caplog.set_level("DEBUG", logger="formula_engine.evaluator")

    evaluate_formula("{a} / 0", {"a": 1}, field_id="bmi")

    records = [r for r in caplog.records if r.name == "formula_engine.evaluator"]
    assert records
    assert records[-1].field_id == "bmi"
    assert records[-1].error_code == "division_by_zero"


def test_evaluate_round_rejects_extreme_decimals():
    """Test that round() bounds its decimals argument"""
    start = time.perf_counter()
    result = evaluate_formula("round({a}, {d})", {"a": 1.5, "d": 3e7})
    assert time.perf_counter() - start < 1.0
    assert not result.success
    assert result.code == "invalid_function_args"
    assert "between -308 and 308" in result.error

    result = evaluate_formula("round({a}, -400)", {"a": 1.5})
    assert not result.success
    assert result.code == "invalid_function_args"


def test_evaluate_round_negative_decimals():
    """Test rounding to tens and hundreds"""
    assert evaluate_formula("round(1234, -2)", {}).result == 1200
    assert evaluate_formula("round(1250, -2)", {}).result == 1300
    assert evaluate_formula("round(-1250, -2)", {}).result == -1200
    assert evaluate_formula("round(1.5, -308)", {}).result == 0
    assert evaluate_formula("round({a}, 308)", {"a": 1e-300}).result == 1e-300


def test_evaluate_sum_of_many_fields():
    """Test that a flat sum of 100 fields is not too complex"""
    names = [f"f{i}" for i in range(100)]
    formula = " + ".join(f"{{{name}}}" for name in names)
    values = {name: i for i, name in enumerate(names)}

    assert validate_formula(formula).valid
    result = evaluate_formula(formula, values)
    assert result.success
    assert result.result == sum(range(100))


def test_evaluate_long_chain_does_not_recurse():
    """Test a chain near the node limit"""
    formula = "1 + " * 449 + "1"
    result = evaluate_formula(formula, {})
    assert result.success
    assert result.result == 450

    result = evaluate_formula("2 * " * 300 + "{a} / 0", {"a": 1})
    assert result.code == "division_by_zero"
