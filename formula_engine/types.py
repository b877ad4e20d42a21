"""
Type definitions for the calculated-field formula engine
Provides TypedDict shapes for results handed to callers as plain dictionaries
"""

from typing import TypedDict, List, Optional


class EvaluationResultDict(TypedDict):
    """
    Plain shape of an evaluation result

    success is True exactly when result is a number and error is None.
    """
    success: bool
    result: Optional[float]
    error: Optional[str]


class ValidationResultDict(TypedDict):
    """
    Plain shape of a formula validation result
    """
    valid: bool
    dependencies: List[str]
    error: Optional[str]


class CircularDependencyResultDict(TypedDict):
    """
    Plain shape of a circular dependency check
    """
    has_circular: bool
    cycle: Optional[List[str]]


class FunctionInfoDict(TypedDict):
    """
    Description of a formula function for formula builders
    """
    name: str
    description: str
    example: str
    category: str
    min_args: int
    max_args: Optional[int]


class CacheStatsDict(TypedDict):
    """
    Typed dictionary for cache statistics
    """
    size: int
    max_size: int
    hits: int
    misses: int
    evictions: int
    hit_rate: float
