"""
Shared constants for the calculated-field formula engine
Centralizes configuration to prevent inconsistencies between validator and evaluator
"""

import re
from datetime import date

# ============================================================================
# Operators
# ============================================================================

# Binary operators accepted in formulas, in display order
SUPPORTED_OPERATORS = ["+", "-", "*", "/", "^"]

# ============================================================================
# Dates
# ============================================================================

# Day counts handed to and returned by date functions are relative to this date
EPOCH = date(1970, 1, 1)

# ============================================================================
# Variable References
# ============================================================================

# Well-formed {name} pair, no nested braces
VARIABLE_REFERENCE_PATTERN = re.compile(r"\{([^{}]+)\}")

# Plain field reference: {weight}
REGULAR_VARIABLE_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Latest value of a measure: {measure:weight}
MEASURE_REFERENCE_PATTERN = re.compile(r"\{measure:([A-Za-z_][A-Za-z0-9_]*)\}")
MEASURE_VARIABLE_PATTERN = re.compile(r"^measure:[A-Za-z_][A-Za-z0-9_]*$")

# Time-series value of a measure: {current:weight}, {avg30:weight}
TIME_SERIES_REFERENCE_PATTERN = re.compile(
    r"\{(current|previous|delta|avg\d+):([A-Za-z_][A-Za-z0-9_]*)\}"
)
TIME_SERIES_VARIABLE_PATTERN = re.compile(
    r"^(current|previous|delta|avg\d+):[A-Za-z_][A-Za-z0-9_]*$"
)

# Modifiers accepted without a numeric suffix
TIME_SERIES_MODIFIERS = {"current", "previous", "delta"}

# Rolling-average modifier prefix (avgN, N > 0)
AVERAGE_MODIFIER_PREFIX = "avg"

# ISO date prefix accepted for date bindings (YYYY-MM-DD)
ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}")

# ============================================================================
# Rounding
# ============================================================================

# Decimal places accepted by round(); floats carry no digits beyond 1e-308
MAX_ROUND_DECIMALS = 308
