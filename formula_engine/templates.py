"""
Pre-built formula templates for calculated fields and calculated measures

Templates are starting points: a caller picks one, optionally remaps its
variable names onto the tenant's own fields, then validates and saves it
like any other formula.
"""

from typing import Dict, List, Optional
import re

from formula_engine.exceptions import TemplateNotFoundError
from formula_engine.models import FormulaTemplate


FIELD_TEMPLATES: List[FormulaTemplate] = [
    FormulaTemplate(
        id="bmi",
        name="BMI (Body Mass Index)",
        category="health",
        description="Calculate BMI from weight (kg) and height (m)",
        formula="{weight_kg} / ({height_m} * {height_m})",
        dependencies=["weight_kg", "height_m"],
        decimal_places=2,
        unit="kg/m²",
        help_text="Requires weight in kilograms and height in meters",
    ),
    FormulaTemplate(
        id="bmi_cm",
        name="BMI (with height in cm)",
        category="health",
        description="Calculate BMI from weight (kg) and height (cm)",
        formula="{weight_kg} / (({height_cm} / 100) * ({height_cm} / 100))",
        dependencies=["weight_kg", "height_cm"],
        decimal_places=2,
        unit="kg/m²",
        help_text="Requires weight in kilograms and height in centimeters",
    ),
    FormulaTemplate(
        id="age_years",
        name="Age in Years",
        category="demographics",
        description="Calculate age from birth date",
        formula="(today() - {birth_date_days}) / 365.25",
        dependencies=["birth_date_days"],
        decimal_places=0,
        unit="years",
        help_text="Requires birth date as days since epoch (use date field)",
    ),
    FormulaTemplate(
        id="weight_loss",
        name="Weight Loss",
        category="progress",
        description="Calculate weight loss from initial and current weight",
        formula="{initial_weight} - {current_weight}",
        dependencies=["initial_weight", "current_weight"],
        decimal_places=1,
        unit="kg",
        help_text="Positive values indicate weight loss",
    ),
    FormulaTemplate(
        id="weight_loss_percent",
        name="Weight Loss Percentage",
        category="progress",
        description="Calculate percentage of weight lost",
        formula="(({initial_weight} - {current_weight}) / {initial_weight}) * 100",
        dependencies=["initial_weight", "current_weight"],
        decimal_places=1,
        unit="%",
        help_text="Percentage of initial weight lost",
    ),
    FormulaTemplate(
        id="bmi_change",
        name="BMI Change",
        category="progress",
        description="Calculate change in BMI",
        formula="{current_bmi} - {initial_bmi}",
        dependencies=["current_bmi", "initial_bmi"],
        decimal_places=1,
        unit="kg/m²",
        help_text="Difference between current and initial BMI",
    ),
    FormulaTemplate(
        id="waist_hip_ratio",
        name="Waist-to-Hip Ratio",
        category="health",
        description="Calculate waist-to-hip ratio",
        formula="{waist_circumference} / {hip_circumference}",
        dependencies=["waist_circumference", "hip_circumference"],
        decimal_places=2,
        unit="ratio",
        help_text="Important indicator for cardiovascular health",
    ),
    FormulaTemplate(
        id="calorie_deficit",
        name="Calorie Deficit",
        category="nutrition",
        description="Calculate daily calorie deficit",
        formula="{tdee} - {calories_consumed}",
        dependencies=["tdee", "calories_consumed"],
        decimal_places=0,
        unit="kcal",
        help_text="TDEE minus calories consumed",
    ),
    FormulaTemplate(
        id="protein_per_kg",
        name="Protein per kg Body Weight",
        category="nutrition",
        description="Calculate protein intake per kg of body weight",
        formula="{protein_grams} / {weight_kg}",
        dependencies=["protein_grams", "weight_kg"],
        decimal_places=2,
        unit="g/kg",
        help_text="Recommended: 0.8-2.0 g/kg depending on goals",
    ),
    FormulaTemplate(
        id="ideal_weight_range",
        name="Ideal Weight (Mid-range)",
        category="health",
        description="Calculate ideal weight based on height (middle of healthy BMI range)",
        formula="22 * ({height_m} * {height_m})",
        dependencies=["height_m"],
        decimal_places=1,
        unit="kg",
        help_text="Based on BMI of 22 (middle of healthy range 18.5-25)",
    ),
]


# Measure templates read measure names; time-series variables depend on the
# underlying measure, so their dependency is the bare measure name
MEASURE_TEMPLATES: List[FormulaTemplate] = [
    FormulaTemplate(
        id="bmi",
        name="Body Mass Index (BMI)",
        category="anthropometric",
        description="BMI = weight (kg) / height (m)²",
        formula="{weight} / ({height} * {height})",
        dependencies=["weight", "height"],
        decimal_places=2,
        unit="kg/m²",
        help_text="Requires weight and height measures. Standard formula for Body Mass Index.",
    ),
    FormulaTemplate(
        id="weight_change",
        name="Weight Change",
        category="trends",
        description="Current weight - Previous weight",
        formula="{current:weight} - {previous:weight}",
        dependencies=["weight"],
        decimal_places=1,
        unit="kg",
        help_text="Time-series calculation showing weight change from previous measurement.",
    ),
    FormulaTemplate(
        id="weight_delta_percent",
        name="Weight Change Percentage",
        category="trends",
        description="((Current - Previous) / Previous) × 100",
        formula="(({current:weight} - {previous:weight}) / {previous:weight}) * 100",
        dependencies=["weight"],
        decimal_places=1,
        unit="%",
        help_text="Percentage change in weight from previous measurement.",
    ),
    FormulaTemplate(
        id="weight_trend",
        name="Weight Trend (30-day avg)",
        category="trends",
        description="Current weight - 30-day average",
        formula="{current:weight} - {avg30:weight}",
        dependencies=["weight"],
        decimal_places=1,
        unit="kg",
        help_text="Difference between current weight and 30-day rolling average.",
    ),
    FormulaTemplate(
        id="bsa_mosteller",
        name="Body Surface Area (Mosteller)",
        category="anthropometric",
        description="BSA = √((height × weight) / 3600)",
        formula="sqrt(({height} * {weight}) / 3600)",
        dependencies=["height", "weight"],
        decimal_places=2,
        unit="m²",
        help_text="Mosteller formula for Body Surface Area. Height in cm, weight in kg.",
    ),
    FormulaTemplate(
        id="bsa_dubois",
        name="Body Surface Area (DuBois)",
        category="anthropometric",
        description="BSA = 0.007184 × height^0.725 × weight^0.425",
        formula="0.007184 * ({height} ^ 0.725) * ({weight} ^ 0.425)",
        dependencies=["height", "weight"],
        decimal_places=2,
        unit="m²",
        help_text="DuBois formula for Body Surface Area. Height in cm, weight in kg.",
    ),
    FormulaTemplate(
        id="map",
        name="Mean Arterial Pressure",
        category="vitals",
        description="MAP = DBP + (SBP - DBP) / 3",
        formula="{diastolic_bp} + ({systolic_bp} - {diastolic_bp}) / 3",
        dependencies=["diastolic_bp", "systolic_bp"],
        decimal_places=0,
        unit="mmHg",
        help_text="Average arterial pressure during a single cardiac cycle.",
    ),
    FormulaTemplate(
        id="pulse_pressure",
        name="Pulse Pressure",
        category="vitals",
        description="PP = SBP - DBP",
        formula="{systolic_bp} - {diastolic_bp}",
        dependencies=["systolic_bp", "diastolic_bp"],
        decimal_places=0,
        unit="mmHg",
        help_text="Difference between systolic and diastolic blood pressure.",
    ),
    FormulaTemplate(
        id="waist_height_ratio",
        name="Waist-to-Height Ratio",
        category="anthropometric",
        description="WHtR = Waist / Height",
        formula="{waist} / {height}",
        dependencies=["waist", "height"],
        decimal_places=2,
        unit="ratio",
        help_text="Waist-to-height ratio. Should be <0.5 for healthy individuals.",
    ),
    FormulaTemplate(
        id="bmi_category_score",
        name="BMI Category Score",
        category="derived",
        description="Numeric score based on BMI category",
        formula="round({bmi} / 5) * 5",
        dependencies=["bmi"],
        decimal_places=0,
        unit="score",
        help_text="Rounded BMI score in 5-point increments for categorization.",
    ),
    FormulaTemplate(
        id="heart_rate_reserve",
        name="Heart Rate Reserve",
        category="vitals",
        description="HRR = Max HR - Resting HR",
        formula="{max_heart_rate} - {resting_heart_rate}",
        dependencies=["max_heart_rate", "resting_heart_rate"],
        decimal_places=0,
        unit="bpm",
        help_text="Difference between maximum and resting heart rate.",
    ),
    FormulaTemplate(
        id="target_heart_rate_zone",
        name="Target Heart Rate (60-70%)",
        category="vitals",
        description="THR = ((MaxHR - RestingHR) × 0.65) + RestingHR",
        formula="(({max_heart_rate} - {resting_heart_rate}) * 0.65) + {resting_heart_rate}",
        dependencies=["max_heart_rate", "resting_heart_rate"],
        decimal_places=0,
        unit="bpm",
        help_text="Target heart rate for moderate intensity exercise (mid-range 60-70%).",
    ),
]


def get_templates() -> List[FormulaTemplate]:
    """Get all calculated-field templates"""
    return [template.model_copy(deep=True) for template in FIELD_TEMPLATES]


def get_measure_templates() -> List[FormulaTemplate]:
    """Get all calculated-measure templates"""
    return [template.model_copy(deep=True) for template in MEASURE_TEMPLATES]


def get_template_by_id(template_id: str) -> Optional[FormulaTemplate]:
    """
    Get a calculated-field template by ID

    Returns:
        Template copy, or None if not found
    """
    for template in FIELD_TEMPLATES:
        if template.id == template_id:
            return template.model_copy(deep=True)
    return None


def get_templates_by_category(category: str) -> List[FormulaTemplate]:
    """Get calculated-field templates in a category"""
    return [template for template in get_templates() if template.category == category]


def get_categories() -> List[str]:
    """Get the distinct calculated-field template categories, sorted"""
    return sorted({template.category for template in FIELD_TEMPLATES})


def apply_template(
    template_id: str, field_mapping: Optional[Dict[str, str]] = None
) -> FormulaTemplate:
    """
    Get a template with its variables renamed onto actual field names

    Args:
        template_id: Template ID
        field_mapping: Optional mapping of template variable -> actual field name

    Returns:
        Template copy with formula and dependencies rewritten

    Raises:
        TemplateNotFoundError: If the template ID is unknown
    """
    template = get_template_by_id(template_id)
    if template is None:
        raise TemplateNotFoundError(template_id)

    if not field_mapping:
        return template

    formula = template.formula
    dependencies = list(template.dependencies)

    # Rename all references in one pass so swapped names do not collide
    pattern = re.compile(
        r"\{(" + "|".join(re.escape(name) for name in field_mapping) + r")\}"
    )
    formula = pattern.sub(lambda match: "{" + field_mapping[match.group(1)] + "}", formula)
    dependencies = [field_mapping.get(dep, dep) for dep in dependencies]

    return template.model_copy(update={"formula": formula, "dependencies": dependencies})
