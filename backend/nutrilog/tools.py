"""
Tool Dispatch
Capability-typed façade over nutrition lookup, recipe parsing, goals and
proposal construction. Every call returns a ToolResult; nothing raises past
execute().
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from config import DEFAULT_TRACKED_NUTRIENTS
from nutrilog.db import NutritionDb
from nutrilog.llm import LLMError
from nutrilog.models import ActionKind, Proposal
from nutrilog.nutrients import (
    NUTRIENT_REGISTRY,
    convert_goal_value,
    format_nutrient_name,
    nutrient_unit,
    resolve_nutrient_key,
    round_half_up,
    scale_nutrition,
    validate_nutrient_hierarchy,
)
from nutrilog.nutrition import NutritionLookup
from nutrilog.recipes import RecipeBook

logger = logging.getLogger(__name__)

STANDARD_NUTRIENTS = [
    "calories", "protein_g", "carbs_g", "fat_total_g", "hydration_ml", "fiber_g",
    "sugar_g", "sodium_mg", "cholesterol_mg", "potassium_mg", "fat_saturated_g",
    "fat_trans_g", "fat_mono_g", "fat_poly_g",
]


@dataclass
class ToolResult:
    """ok(data) | err(kind, detail)"""
    data: dict = field(default_factory=dict)
    error_kind: Optional[str] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @classmethod
    def success(cls, data: dict) -> "ToolResult":
        return cls(data=data)

    @classmethod
    def err(cls, kind: str, detail: str) -> "ToolResult":
        return cls(error_kind=kind, detail=detail)

    def to_dict(self) -> dict:
        if self.ok:
            return self.data
        return {"error": True, "kind": self.error_kind, "message": self.detail}


def new_proposal_id() -> str:
    return f"prop_{uuid.uuid4().hex[:12]}"


async def tracked_nutrients(db: NutritionDb, user_id: str) -> list[str]:
    """Nutrients the user has goals for, always including calories"""
    goals = await db.get_user_goals(user_id)
    keys = [resolve_nutrient_key(g["nutrient"]) for g in goals] or list(DEFAULT_TRACKED_NUTRIENTS)
    if "calories" not in keys:
        keys.insert(0, "calories")
    return list(dict.fromkeys(keys))


class ToolDispatch:
    def __init__(self, db: NutritionDb, recipes: RecipeBook, lookup: Optional[NutritionLookup] = None):
        self.db = db
        self.recipes = recipes
        self.lookup = lookup or recipes.lookup
        self._tools = {
            "lookup_nutrition": self.lookup_nutrition,
            "estimate_nutrition": self.estimate_nutrition,
            "propose_food_log": self.propose_food_log,
            "propose_recipe_log": self.propose_recipe_log,
            "parse_recipe_text": self.parse_recipe_text,
            "search_saved_recipes": self.search_saved_recipes,
            "get_user_goals": self.get_user_goals,
            "update_user_goal": self.update_user_goal,
        }

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    async def execute(self, name: str, args: dict, user_id: str) -> ToolResult:
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult.err("unknown_tool", f"Unknown tool: {name}")

        logger.info(f"Tool {name} args={args}")
        try:
            return await tool(user_id=user_id, **(args or {}))
        except TypeError as e:
            return ToolResult.err("bad_arguments", str(e))
        except ValueError as e:
            return ToolResult.err("invalid", str(e))
        except LLMError as e:
            return ToolResult.err("llm", str(e))
        except Exception as e:
            logger.exception(f"Tool {name} failed")
            return ToolResult.err("internal", str(e))

    # ========================================================================
    # NUTRITION
    # ========================================================================

    async def lookup_nutrition(self, user_id: str, food_name: str, portion: str = "1 serving") -> ToolResult:
        return ToolResult.success(await self.lookup.lookup(food_name, portion or "1 serving"))

    async def estimate_nutrition(self, user_id: str, food_name: str, portion: str = "1 serving") -> ToolResult:
        return ToolResult.success(await self.lookup.estimate(food_name, portion or "1 serving"))

    async def propose_food_log(
        self,
        user_id: str,
        food_name: str,
        portion: str = "1 serving",
        nutrition: Optional[dict] = None,
        **fields: Any,
    ) -> ToolResult:
        """Build a food_log proposal holding the tracked nutrients plus the standard set"""
        values: dict = {}
        for label, value in {**(nutrition or {}), **fields}.items():
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                values[resolve_nutrient_key(label)] = value

        tracked = await tracked_nutrients(self.db, user_id)
        data: dict = {"food_name": food_name, "portion": portion or "1 serving"}
        for key in list(dict.fromkeys(tracked + STANDARD_NUTRIENTS)):
            if key in values:
                data[key] = round_half_up(values[key], 1)
            elif key in tracked:
                data[key] = 0
        data = scale_nutrition(data, 1)
        data["calories"] = int(round_half_up(data.get("calories") or 0))

        validation = validate_nutrient_hierarchy(data)
        if not validation.valid:
            return ToolResult.err("validation", "; ".join(validation.violations))

        return ToolResult.success({
            "proposal_type": "food_log",
            "proposal_id": new_proposal_id(),
            "pending": True,
            "data": data,
            "message": f"Ready to log {data['food_name']} ({data['portion']}, {data['calories']} kcal).",
        })

    # ========================================================================
    # RECIPES
    # ========================================================================

    async def propose_recipe_log(
        self,
        user_id: str,
        recipe_name: str = "",
        servings: float = 1,
        recipe_id: Optional[str] = None,
    ) -> ToolResult:
        recipe = await self.db.get_recipe(user_id, recipe_id) if recipe_id else None
        if recipe is None:
            found = await self.recipes.find(user_id, recipe_name)
            if found.type == "multiple_found":
                recipe = found.recipes[0]["full_recipe"]
            elif found.type == "found":
                recipe = found.recipe
        if recipe is None:
            return ToolResult.err("not_found", f"No saved recipe called '{recipe_name}'")

        servings = float(servings or 1)
        per_serving = recipe.get("per_serving_nutrition") or scale_nutrition(
            recipe.get("nutrition_data") or {}, 1 / (recipe.get("servings") or 1)
        )
        scaled = scale_nutrition({k: v for k, v in per_serving.items() if k in NUTRIENT_REGISTRY}, servings)
        servings_label = int(servings) if servings == int(servings) else servings

        return ToolResult.success({
            "proposal_type": "recipe_log",
            "proposal_id": new_proposal_id(),
            "pending": True,
            "data": {
                "recipe_id": recipe["id"],
                "recipe_name": recipe["recipe_name"],
                "servings": servings_label,
                **scaled,
            },
            "message": f"Ready to log {servings_label} serving(s) of {recipe['recipe_name']}.",
        })

    async def parse_recipe_text(self, user_id: str, recipe_text: str = "", text: str = "") -> ToolResult:
        return ToolResult.success(await self.recipes.parse(user_id, recipe_text or text))

    async def search_saved_recipes(self, user_id: str, query: str) -> ToolResult:
        found = await self.recipes.find(user_id, query)
        result = found.to_dict()
        # Full rows are only needed by the picker, not by the model
        for entry in result.get("recipes", []):
            entry.pop("full_recipe", None)
        return ToolResult.success(result)

    # ========================================================================
    # GOALS
    # ========================================================================

    async def get_user_goals(self, user_id: str) -> ToolResult:
        goals = await self.db.get_user_goals(user_id)
        return ToolResult.success({
            "goals": [dict(g, display_name=format_nutrient_name(g["nutrient"])) for g in goals],
        })

    async def update_user_goal(
        self,
        user_id: str,
        nutrient: str,
        target_value: float,
        unit: Optional[str] = None,
        goal_type: str = "goal",
        yellow_min: Optional[float] = None,
        green_min: Optional[float] = None,
        red_min: Optional[float] = None,
    ) -> ToolResult:
        key = resolve_nutrient_key(nutrient)
        value, unit = convert_goal_value(float(target_value), unit, key)
        unit = unit or nutrient_unit(key)

        data = {
            "nutrient": key,
            "target_value": value,
            "unit": unit,
            "goal_type": goal_type or "goal",
            "yellow_min": yellow_min,
            "green_min": green_min,
            "red_min": red_min,
        }
        limit = " (Limit)" if data["goal_type"] == "limit" else ""
        return ToolResult.success({
            "proposal_type": "goal_update",
            "proposal_id": new_proposal_id(),
            "pending": True,
            "data": data,
            "message": f"Set your {format_nutrient_name(key)} goal to {value}{unit}{limit}?",
        })


def proposal_from_result(result: dict) -> Optional[Proposal]:
    """Build a Proposal from a tool result that carries proposal_type"""
    if not isinstance(result, dict) or not result.get("proposal_type") or not result.get("pending"):
        return None
    try:
        kind = ActionKind(result["proposal_type"])
    except ValueError:
        logger.warning(f"Ignoring unknown proposal type {result['proposal_type']}")
        return None

    if "data" in result:
        data = dict(result["data"])
    else:
        data = {k: v for k, v in result.items() if k not in ("proposal_type", "proposal_id", "pending", "message")}
    return Proposal(type=kind, id=result.get("proposal_id") or new_proposal_id(), data=data)

