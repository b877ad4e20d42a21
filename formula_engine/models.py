"""
Pydantic models for the calculated-field formula engine
Defines tagged result types, field graph nodes, templates and formula references
"""

from pydantic import BaseModel, Field, field_validator
from typing import List, Literal, Optional, Union

from formula_engine.types import (
    EvaluationResultDict,
    ValidationResultDict,
    CircularDependencyResultDict,
)


# ============================================================================
# Evaluation Results
# ============================================================================


class EvaluationSuccess(BaseModel):
    """
    Formula evaluated to a finite number

    Attributes:
        result: Evaluated value, rounded when a precision was requested
    """

    success: Literal[True] = True
    result: float
    error: None = None

    def to_dict(self) -> EvaluationResultDict:
        return {"success": True, "result": self.result, "error": None}


class EvaluationFailure(BaseModel):
    """
    Formula could not be evaluated

    Attributes:
        error: Human-readable description of the failure
        code: Error code for programmatic handling
    """

    success: Literal[False] = False
    result: None = None
    error: str
    code: str = "evaluation_error"

    def to_dict(self) -> EvaluationResultDict:
        return {"success": False, "result": None, "error": self.error}


EvaluationResult = Union[EvaluationSuccess, EvaluationFailure]


# ============================================================================
# Validation Results
# ============================================================================


class FormulaValid(BaseModel):
    """Formula is syntactically valid; dependencies in first-occurrence order"""

    valid: Literal[True] = True
    dependencies: List[str] = Field(default_factory=list)
    error: None = None

    def to_dict(self) -> ValidationResultDict:
        return {"valid": True, "dependencies": list(self.dependencies), "error": None}


class FormulaInvalid(BaseModel):
    """Formula was rejected before it could be saved"""

    valid: Literal[False] = False
    dependencies: List[str] = Field(default_factory=list)
    error: str
    code: str = "syntax_error"

    def to_dict(self) -> ValidationResultDict:
        return {"valid": False, "dependencies": [], "error": self.error}


ValidationResult = Union[FormulaValid, FormulaInvalid]


# ============================================================================
# Circular Dependency Results
# ============================================================================


class NoCycle(BaseModel):
    """No field reachable from the checked field closes a loop"""

    has_circular: Literal[False] = False
    cycle: None = None

    def to_dict(self) -> CircularDependencyResultDict:
        return {"has_circular": False, "cycle": None}


class CycleFound(BaseModel):
    """
    A dependency loop was found

    Attributes:
        cycle: Field IDs forming the loop, in traversal order
    """

    has_circular: Literal[True] = True
    cycle: List[str]

    def to_dict(self) -> CircularDependencyResultDict:
        return {"has_circular": True, "cycle": list(self.cycle)}


CircularDependencyResult = Union[NoCycle, CycleFound]


# ============================================================================
# Field Graph
# ============================================================================


class FieldNode(BaseModel):
    """
    Calculated field entry of a field graph

    Attributes:
        dependencies: IDs of the fields this field's formula reads
    """

    dependencies: List[str] = Field(default_factory=list)


# ============================================================================
# Formula References
# ============================================================================


class MeasureReference(BaseModel):
    """A {measure:name} reference to the latest value of a measure"""

    full: str
    measure_name: str


class TimeSeriesVariable(BaseModel):
    """A {modifier:name} reference to a time-series value of a measure"""

    full: str
    modifier: str
    measure_name: str


class ModifierValidation(BaseModel):
    """Outcome of checking the time-series modifiers used by a formula"""

    valid: bool
    error: Optional[str] = None
    invalid_modifiers: List[str] = Field(default_factory=list)


# ============================================================================
# Templates
# ============================================================================


class FormulaTemplate(BaseModel):
    """
    Pre-built formula offered as a starting point for a calculated field

    Attributes:
        id: Unique template identifier
        name: Display name
        category: Grouping used by template pickers
        description: Short explanation of the calculation
        formula: Formula text
        dependencies: Variables the formula reads
        decimal_places: Suggested precision for the calculated field
        unit: Unit of the result
        help_text: Guidance on the required inputs
    """

    id: str
    name: str
    category: str
    description: str
    formula: str
    dependencies: List[str] = Field(default_factory=list)
    decimal_places: int = 2
    unit: Optional[str] = None
    help_text: Optional[str] = None

    @field_validator("decimal_places")
    @classmethod
    def validate_decimal_places(cls, v: int) -> int:
        """Decimal places must be non-negative"""
        if v < 0:
            raise ValueError("decimal_places must be non-negative")
        return v
