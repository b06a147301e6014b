"""
Pre-built formula templates for common calculated measures.

Templates are starting points for authors: `apply_template` renames the
template's variables to the metrics that actually exist in a deployment.
"""

import re

from pydantic import BaseModel, ConfigDict, Field

from measures.services.dependencies import extract_dependencies


class FormulaTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    category: str
    description: str
    formula: str
    dependencies: list[str]
    decimal_places: int = Field(default=2, ge=0, le=10)
    unit: str | None = None
    help_text: str | None = None


_TEMPLATES: tuple[FormulaTemplate, ...] = (
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
        formula="age_years({birth_date})",
        dependencies=["birth_date"],
        decimal_places=0,
        unit="years",
        help_text="Completed years between the birth date and the evaluation date",
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
    FormulaTemplate(
        id="weight_change",
        name="Weight Change",
        category="trends",
        description="Current weight minus previous weight",
        formula="{current:weight} - {previous:weight}",
        dependencies=["weight"],
        decimal_places=1,
        unit="kg",
        help_text="Change since the previous weight measurement",
    ),
)


def get_templates() -> list[FormulaTemplate]:
    return list(_TEMPLATES)


def get_template_by_id(template_id: str) -> FormulaTemplate | None:
    return next((t for t in _TEMPLATES if t.id == template_id), None)


def get_templates_by_category(category: str) -> list[FormulaTemplate]:
    return [t for t in _TEMPLATES if t.category == category]


def get_categories() -> list[str]:
    return sorted({t.category for t in _TEMPLATES})


def apply_template(template_id: str, field_mapping: dict[str, str] | None = None) -> FormulaTemplate:
    """
    Return a copy of a template with its metric names remapped.

    Qualified references keep their selector: mapping weight -> body_weight
    turns {previous:weight} into {previous:body_weight}.

    Raises:
        KeyError: unknown template id
    """
    template = get_template_by_id(template_id)
    if template is None:
        raise KeyError(f"Template not found: {template_id}")
    if not field_mapping:
        return template

    def rename(match: re.Match[str]) -> str:
        selector, sep, name = match.group(1).rpartition(":")
        return "{" + selector + sep + field_mapping.get(name, name) + "}"

    formula = re.sub(r"\{([^{}]*)\}", rename, template.formula)
    return template.model_copy(
        update={"formula": formula, "dependencies": extract_dependencies(formula)}
    )
