"""
Nutrient Registry
Canonical nutrient keys, label normalization and nutrient arithmetic shared by
goals, tool outputs and the food log.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NutrientInfo:
    """Display name and unit for a canonical nutrient key"""
    name: str
    unit: str


NUTRIENT_REGISTRY: dict[str, NutrientInfo] = {
    "calories": NutrientInfo("Calories", "kcal"),
    "protein_g": NutrientInfo("Protein", "g"),
    "carbs_g": NutrientInfo("Carbs", "g"),
    "fat_total_g": NutrientInfo("Total Fat", "g"),
    "hydration_ml": NutrientInfo("Water", "ml"),
    "fat_saturated_g": NutrientInfo("Saturated Fat", "g"),
    "fat_poly_g": NutrientInfo("Polyunsaturated Fat", "g"),
    "fat_mono_g": NutrientInfo("Monounsaturated Fat", "g"),
    "fat_trans_g": NutrientInfo("Trans Fat", "g"),
    "omega_3_g": NutrientInfo("Omega-3 Fatty Acids", "g"),
    "omega_6_g": NutrientInfo("Omega-6 Fatty Acids", "g"),
    "omega_ratio": NutrientInfo("Omega 6:3 Ratio", ""),
    "fiber_g": NutrientInfo("Dietary Fiber", "g"),
    "fiber_soluble_g": NutrientInfo("Soluble Fiber", "g"),
    "sugar_g": NutrientInfo("Total Sugars", "g"),
    "sugar_added_g": NutrientInfo("Added Sugars", "g"),
    "cholesterol_mg": NutrientInfo("Cholesterol", "mg"),
    "sodium_mg": NutrientInfo("Sodium", "mg"),
    "potassium_mg": NutrientInfo("Potassium", "mg"),
    "calcium_mg": NutrientInfo("Calcium", "mg"),
    "iron_mg": NutrientInfo("Iron", "mg"),
    "magnesium_mg": NutrientInfo("Magnesium", "mg"),
    "phosphorus_mg": NutrientInfo("Phosphorus", "mg"),
    "zinc_mg": NutrientInfo("Zinc", "mg"),
    "copper_mg": NutrientInfo("Copper", "mg"),
    "manganese_mg": NutrientInfo("Manganese", "mg"),
    "selenium_mcg": NutrientInfo("Selenium", "mcg"),
    "vitamin_a_mcg": NutrientInfo("Vitamin A", "mcg"),
    "vitamin_c_mg": NutrientInfo("Vitamin C", "mg"),
    "vitamin_d_mcg": NutrientInfo("Vitamin D", "mcg"),
    "vitamin_e_mg": NutrientInfo("Vitamin E", "mg"),
    "vitamin_k_mcg": NutrientInfo("Vitamin K", "mcg"),
    "thiamin_mg": NutrientInfo("Thiamin (B1)", "mg"),
    "riboflavin_mg": NutrientInfo("Riboflavin (B2)", "mg"),
    "niacin_mg": NutrientInfo("Niacin (B3)", "mg"),
    "pantothenic_acid_mg": NutrientInfo("Pantothenic Acid (B5)", "mg"),
    "vitamin_b6_mg": NutrientInfo("Vitamin B6", "mg"),
    "biotin_mcg": NutrientInfo("Biotin (B7)", "mcg"),
    "folate_mcg": NutrientInfo("Folate (B9)", "mcg"),
    "vitamin_b12_mcg": NutrientInfo("Vitamin B12", "mcg"),
}

# Exact aliases, including typos users actually send
NUTRIENT_ALIASES: dict[str, str] = {
    "calories": "calories",
    "kcal": "calories",
    "energy": "calories",
    "protein": "protein_g",
    "carbs": "carbs_g",
    "carbohydrates": "carbs_g",
    "fat": "fat_total_g",
    "monosaturated": "fat_mono_g",
    "mono fat": "fat_mono_g",
    "monounsaturated": "fat_mono_g",
    "polyunsaturated": "fat_poly_g",
    "poly fat": "fat_poly_g",
    "sollubule": "fiber_soluble_g",
    "soluble": "fiber_soluble_g",
    "insoluble": "fiber_g",
    "added sugar": "sugar_added_g",
    "added_sugar": "sugar_added_g",
}

# Minerals checked by plain containment, in this order
_MINERAL_RULES = [
    ("sodium", "sodium_mg"),
    ("potassium", "potassium_mg"),
    ("cholesterol", "cholesterol_mg"),
    ("calcium", "calcium_mg"),
    ("iron", "iron_mg"),
    ("magnesium", "magnesium_mg"),
]

_VITAMIN_RULES = [
    ("a", "vitamin_a_mcg"),
    ("c", "vitamin_c_mg"),
    ("d", "vitamin_d_mcg"),
    ("e", "vitamin_e_mg"),
    ("k", "vitamin_k_mcg"),
]

# Columns that exist on the food log table; other tracked nutrients go to `extras`
FOOD_LOG_COLUMNS = [key for key in NUTRIENT_REGISTRY if key != "calories"]


def resolve_nutrient_key(label: str) -> str:
    """
    Map any nutrient label (user text, DB column, tool output key) to a
    canonical registry key.

    Never raises. Rule order matters: mono/poly/trans are tested before the
    generic "sat" and "fat" rules, and soluble fiber before plain fiber.
    Unknown labels come back as a sanitized slug.
    """
    k = " ".join(str(label or "").lower().split())

    # 1. Exact aliases
    if k in NUTRIENT_ALIASES:
        return NUTRIENT_ALIASES[k]

    # 2. Registry keys and display names
    for key, info in NUTRIENT_REGISTRY.items():
        if k == key or k == info.name.lower():
            return key
    if len(k) > 4:
        for key, info in NUTRIENT_REGISTRY.items():
            if k in info.name.lower():
                return key

    # 3. Ordered substring fallback
    if "protein" in k:
        return "protein_g"
    if "carb" in k:
        return "carbs_g"
    if "mono" in k:
        return "fat_mono_g"
    if "poly" in k:
        return "fat_poly_g"
    if "trans" in k:
        return "fat_trans_g"
    if "sat" in k and "mono" not in k and "poly" not in k:
        return "fat_saturated_g"
    if "fat" in k and "total" not in k:
        return "fat_total_g"
    if "fiber" in k and "sol" in k:
        return "fiber_soluble_g"
    if "fiber" in k:
        return "fiber_g"
    if "sugar" in k and "add" in k:
        return "sugar_added_g"
    if "sugar" in k:
        return "sugar_g"
    for needle, key in _MINERAL_RULES:
        if needle in k:
            return key
    if "vit" in k:
        tokens = set(re.split(r"[^a-z0-9]+", k))
        for letter, key in _VITAMIN_RULES:
            if letter in tokens:
                return key
    if "omega" in k and "3" in k:
        return "omega_3_g"
    if "omega" in k and "6" in k:
        return "omega_6_g"

    # 4. Sanitized slug
    slug = re.sub(r"[^a-z0-9_]", "_", k)
    slug = re.sub(r"_+", "_", slug).strip("_")
    return slug or "unknown"


def nutrient_unit(key: str) -> str:
    """Registry unit for a canonical key ('g' when unknown)"""
    info = NUTRIENT_REGISTRY.get(key)
    return info.unit if info else "g"


def format_nutrient_name(key: str) -> str:
    """Human-readable name for a nutrient key"""
    info = NUTRIENT_REGISTRY.get(key.lower().strip())
    if info:
        return info.name

    name = key.replace("_", " ").title()
    for suffix, unit in ((" G", "g"), (" Mg", "mg"), (" Mcg", "mcg"), (" Ml", "ml")):
        if name.endswith(suffix):
            return f"{name[: -len(suffix)]} ({unit})"
    return name


def round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def scale_nutrition(data: dict[str, Any], multiplier: float) -> dict[str, Any]:
    """
    Return a copy of `data` with every registry nutrient multiplied.

    Values are rounded to 0.1 (calories to whole numbers). If the result has
    no calories but does have macros, calories are derived 4/4/9 and the
    estimate is marked as such.
    """
    scaled = dict(data or {})

    if multiplier != 1:
        for key in NUTRIENT_REGISTRY:
            value = scaled.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                scaled[key] = round_half_up(value * multiplier, 1)
                if key == "calories":
                    scaled[key] = int(round_half_up(scaled[key]))

    protein = scaled.get("protein_g") or 0
    carbs = scaled.get("carbs_g") or 0
    fat = scaled.get("fat_total_g") or 0
    if not scaled.get("calories") and (protein > 0 or carbs > 0 or fat > 0):
        calculated = protein * 4 + carbs * 4 + fat * 9
        if calculated > 0:
            logger.info(
                f"0 calories with macros for {scaled.get('food_name', 'item')}; "
                f"calculated {calculated:.0f} kcal from macros"
            )
            scaled["calories"] = int(round_half_up(calculated))
            if scaled.get("confidence") == "high":
                scaled["confidence"] = "medium"
            sources = list(scaled.get("error_sources") or [])
            if "calculated_from_macros" not in sources:
                sources.append("calculated_from_macros")
            scaled["error_sources"] = sources

    return scaled


def sum_nutrition(items: list[dict[str, Any]]) -> dict[str, float]:
    """Add up registry nutrients across several nutrition dicts"""
    totals: dict[str, float] = {}
    for item in items:
        for key in NUTRIENT_REGISTRY:
            value = item.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                totals[key] = round_half_up(totals.get(key, 0) + value, 1)
    return totals


@dataclass
class NutrientValidation:
    valid: bool
    violations: list[str] = field(default_factory=list)


def validate_nutrient_hierarchy(nutrients: dict[str, Any]) -> NutrientValidation:
    """Check that component nutrients never exceed their parent (e.g. sugar <= carbs)"""
    violations: list[str] = []

    def val(key: str) -> float:
        value = nutrients.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and not math.isnan(value):
            return float(value)
        return 0.0

    if val("sugar_g") > val("carbs_g"):
        violations.append(f"Total Sugars ({val('sugar_g')}g) cannot exceed Total Carbs ({val('carbs_g')}g)")
    if val("fiber_g") > val("carbs_g"):
        violations.append(f"Dietary Fiber ({val('fiber_g')}g) cannot exceed Total Carbs ({val('carbs_g')}g)")
    # 1g tolerance for rounding on sums
    if val("sugar_g") + val("fiber_g") > val("carbs_g") + 1:
        violations.append(
            f"Sum of Sugars ({val('sugar_g')}g) and Fiber ({val('fiber_g')}g) "
            f"exceeds Total Carbs ({val('carbs_g')}g)"
        )
    if val("sugar_added_g") > val("sugar_g"):
        violations.append(
            f"Added Sugars ({val('sugar_added_g')}g) cannot exceed Total Sugars ({val('sugar_g')}g)"
        )

    fat_components = ["fat_saturated_g", "fat_poly_g", "fat_mono_g", "fat_trans_g"]
    for component in fat_components:
        if val(component) > val("fat_total_g"):
            violations.append(
                f"{NUTRIENT_REGISTRY[component].name} ({val(component)}g) "
                f"cannot exceed Total Fat ({val('fat_total_g')}g)"
            )
    fat_sum = sum(val(c) for c in fat_components)
    if fat_sum > val("fat_total_g") + 1:
        violations.append(f"Sum of fat breakdown ({fat_sum:.1f}g) exceeds Total Fat ({val('fat_total_g')}g)")

    if val("omega_3_g") > val("fat_poly_g"):
        violations.append(f"Omega-3 ({val('omega_3_g')}g) cannot exceed Polyunsaturated Fat ({val('fat_poly_g')}g)")
    if val("omega_6_g") > val("fat_poly_g"):
        violations.append(f"Omega-6 ({val('omega_6_g')}g) cannot exceed Polyunsaturated Fat ({val('fat_poly_g')}g)")

    return NutrientValidation(valid=not violations, violations=violations)


FL_OZ_TO_ML = 29.5735


def convert_goal_value(value: float, unit: Optional[str], nutrient: str) -> tuple[float, str]:
    """Convert a goal target into the nutrient's registry unit where we know how"""
    standard_unit = nutrient_unit(nutrient)
    if not unit:
        return value, standard_unit

    unit = unit.lower().strip()
    if unit in ("oz", "fl oz", "floz") and standard_unit == "ml":
        return round_half_up(value * FL_OZ_TO_ML), "ml"
    if unit in ("l", "liter", "liters", "litre", "litres") and standard_unit == "ml":
        return round_half_up(value * 1000), "ml"
    if unit == "g" and standard_unit == "mg":
        return round_half_up(value * 1000, 1), "mg"
    return value, unit
