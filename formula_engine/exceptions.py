"""
Structured exception classes for the calculated-field formula engine

Every engine error carries a stable code next to its message. Errors raised
while parsing or evaluating stay inside the engine and surface as failure
results; the others are raised to callers of the graph and template helpers.
"""

from typing import Optional, Dict, Any, List


class FormulaEngineError(Exception):
    """
    Base exception for the formula engine

    Attributes:
        code: Error code for programmatic handling
        message: Human-readable error message
        details: Additional error details
    """

    def __init__(
        self, code: str, message: str, details: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary"""
        return {"code": self.code, "message": self.message, "details": dict(self.details)}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class EvaluationError(FormulaEngineError):
    """
    Formula could not be parsed or evaluated

    Converted into a failure result by evaluate_formula and validate_formula.

    Attributes:
        field_id: ID of the calculated field being evaluated, when known
        formula: The formula that failed, when known
    """

    def __init__(
        self,
        code: str,
        message: str,
        field_id: Optional[str] = None,
        formula: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
        self.field_id = field_id
        self.formula = formula

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        if self.field_id:
            result["details"]["field_id"] = self.field_id
        if self.formula:
            result["details"]["formula"] = self.formula
        return result

    def __str__(self) -> str:
        text = super().__str__()
        if self.field_id:
            text += f" | Field: {self.field_id}"
        if self.formula:
            text += f" | Formula: {self.formula}"
        return text


class FormulaSyntaxError(EvaluationError):
    """Formula text that cannot be parsed or uses unknown constructs"""

    def __init__(
        self,
        message: str,
        code: str = "syntax_error",
        formula: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code=code, message=message, formula=formula, details=details)


class CircularDependencyError(FormulaEngineError):
    """
    Field graph cannot be ordered because of a cycle

    Attributes:
        cycle: Field IDs forming the cycle, empty when it could not be isolated
    """

    def __init__(self, message: str, cycle: Optional[List[str]] = None):
        self.cycle = list(cycle or [])
        super().__init__("circular_dependency", message, {"cycle": self.cycle})


class TemplateNotFoundError(FormulaEngineError):
    """Formula template ID is unknown"""

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(
            "template_not_found",
            f"Template not found: {template_id}",
            {"template_id": template_id},
        )
