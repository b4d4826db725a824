"""
Recipe Book
Finding, parsing and saving a user's recipes. Results cross the boundary as
FindResult / SaveResult variants instead of exceptions.
"""

import logging
import re
import sqlite3
import uuid
from dataclasses import dataclass, field
from typing import Optional

from rapidfuzz import fuzz

from config import PARSER_MODEL
from nutrilog.db import NutritionDb
from nutrilog.llm import call_llm_json_async
from nutrilog.nutrition import JsonCaller, NutritionLookup
from nutrilog.nutrients import round_half_up, scale_nutrition, sum_nutrition

logger = logging.getLogger(__name__)

STOP_WORDS = {"with", "and", "the", "for", "from"}
INVALID_NAMES = {"string", "recipe", "unknown", "my recipe", "custom recipe", "food"}
FUZZY_THRESHOLD = 80

PARSE_PROMPT = """Extract recipe details from the provided text. Return a JSON object:
{
  "recipe_name": "Extracted Name or Generated Name",
  "servings": 4,
  "ingredients": [ { "name": "Ingredient Name", "quantity": 1, "unit": "cup" } ],
  "instructions": "Step-by-step instructions (if provided in text)"
}
- If a name is provided in the text, use it. Otherwise GENERATE a short descriptive
  name from the ingredients (e.g. "Peanut Butter Banana Toast").
- NEVER return "String", "Recipe", "Unknown" or "My Recipe" as the name.
- Default servings to 1.
- ONLY include "instructions" if they were explicitly provided."""


# ============================================================================
# RESULT VARIANTS
# ============================================================================

@dataclass
class FindResult:
    """found (recipe) | multiple_found (recipes) | not_found"""
    type: str
    recipe: Optional[dict] = None
    recipes: list[dict] = field(default_factory=list)

    @classmethod
    def not_found(cls) -> "FindResult":
        return cls(type="not_found")

    def to_dict(self) -> dict:
        result: dict = {"type": self.type}
        if self.recipe is not None:
            result["recipe"] = self.recipe
        if self.recipes:
            result["recipes"] = self.recipes
        return result


@dataclass
class SaveResult:
    """error | updated | found (with skip_save) | saved"""
    type: str
    recipe: Optional[dict] = None
    error: Optional[str] = None
    skip_save: bool = False


def selection_entry(recipe: dict) -> dict:
    """Compact view of a recipe for a picker, keeping the full row for later"""
    servings = recipe.get("servings") or 1
    calories = (recipe.get("nutrition_data") or {}).get("calories")
    return {
        "id": recipe.get("id"),
        "recipe_name": recipe.get("recipe_name"),
        "servings": servings,
        "calories_per_serving": int(round_half_up(calories / servings)) if calories else 0,
        "full_recipe": recipe,
    }


def parse_portion_number(portion: Optional[str], default: float = 1.0) -> float:
    """Leading number of a portion string ('2 servings' -> 2.0)"""
    if portion is None:
        return default
    match = re.match(r"\s*(\d+(?:\.\d+)?)", str(portion))
    return float(match.group(1)) if match else default


class RecipeBook:
    def __init__(self, db: NutritionDb, lookup: Optional[NutritionLookup] = None,
                 llm_json: Optional[JsonCaller] = None):
        self.db = db
        self.llm_json = llm_json or call_llm_json_async
        self.lookup = lookup or NutritionLookup(llm_json=self.llm_json)

    # ========================================================================
    # FIND
    # ========================================================================

    async def find(self, user_id: str, name: str) -> FindResult:
        name = (name or "").strip()
        # An empty query would otherwise substring-match every recipe
        if len(name) < 2:
            return FindResult.not_found()

        recipes = await self.db.list_recipes(user_id)
        query = name.lower()
        logger.info(f"Searching {len(recipes)} saved recipes for '{name}'")

        exact = [r for r in recipes if r["recipe_name"].lower() == query]
        if exact:
            return FindResult(type="found", recipe=exact[0])

        substring = [r for r in recipes if query in r["recipe_name"].lower()]
        if len(substring) > 1:
            return FindResult(type="multiple_found", recipes=[selection_entry(r) for r in substring[:5]])
        if len(substring) == 1:
            return FindResult(type="found", recipe=substring[0])

        words = [w for w in query.split() if len(w) > 2 and w not in STOP_WORDS]
        if words:
            intersect = [r for r in recipes if all(w in r["recipe_name"].lower() for w in words)]
            if len(intersect) > 1:
                return FindResult(type="multiple_found", recipes=[selection_entry(r) for r in intersect[:5]])
            if len(intersect) == 1:
                return FindResult(type="found", recipe=intersect[0])

        best, best_score = None, 0.0
        for recipe in recipes:
            score = fuzz.ratio(query, recipe["recipe_name"].lower())
            if score > best_score:
                best, best_score = recipe, score
        if best is not None and best_score >= FUZZY_THRESHOLD:
            logger.info(f"Fuzzy recipe match '{best['recipe_name']}' ({best_score:.0f})")
            return FindResult(type="found", recipe=best)

        return FindResult.not_found()

    # ========================================================================
    # PARSE
    # ========================================================================

    async def parse(self, user_id: str, text: str) -> dict:
        """
        Parse recipe text into a recipe_save proposal.

        Nutrition is calculated up front so the flow state is complete whether
        the user saves, updates an existing recipe or just logs it.
        """
        parsed = await self.llm_json(
            [
                {"role": "system", "content": PARSE_PROMPT},
                {"role": "user", "content": text},
            ],
            model=PARSER_MODEL,
        )

        ingredients = [
            {
                "name": str(ing.get("name", "")).strip(),
                "quantity": ing.get("quantity", ""),
                "unit": ing.get("unit", "") or "",
            }
            for ing in parsed.get("ingredients") or []
            if ing.get("name")
        ]
        if not ingredients:
            raise ValueError(
                "I couldn't parse any ingredients from your recipe. Could you list them "
                "one per line with quantities?"
            )

        recipe_name = str(parsed.get("recipe_name") or "").strip()
        if not recipe_name or recipe_name.lower() in INVALID_NAMES:
            recipe_name = " and ".join(i["name"] for i in ingredients[:2]) + " (Recipe)"

        try:
            servings = max(float(parsed.get("servings") or 1), 1)
        except (TypeError, ValueError):
            servings = 1
        servings = int(servings) if servings == int(servings) else servings

        recipe = {
            "recipe_name": recipe_name,
            "servings": servings,
            "ingredients": ingredients,
            "instructions": parsed.get("instructions") or "",
        }

        batch_nutrition, ingredients_with_nutrition = await self.calculate_nutrition(ingredients)
        per_serving = scale_nutrition(batch_nutrition, 1 / servings)

        flow_state = {
            "step": "ready_to_save",
            "parsed": recipe,
            "batch_nutrition": batch_nutrition,
            "per_serving_nutrition": per_serving,
            "ingredients_with_nutrition": ingredients_with_nutrition,
        }

        existing = await self.find(user_id, recipe_name)
        match = existing.recipe if existing.type == "found" else (
            existing.recipes[0]["full_recipe"] if existing.type == "multiple_found" else None
        )
        if match:
            flow_state.update({
                "step": "pending_duplicate_confirm",
                "existing_recipe_id": match["id"],
                "existing_recipe_name": match["recipe_name"],
            })
            message = (
                f"You already have a recipe called \"**{match['recipe_name']}**\".\n\n"
                "What would you like to do?\n"
                "• **Log existing** - Use your saved version and log it\n"
                "• **Update** - Update the saved recipe with these details\n"
                "• **Save new** - Keep both versions"
            )
        else:
            message = (
                f"I've calculated the nutrition for \"{recipe_name}\" ({len(ingredients)} ingredients). "
                f"It makes **{servings} serving(s)** at **{per_serving.get('calories', 0)} kcal** each. "
                "Ready to save?"
            )

        return {
            "proposal_type": "recipe_save",
            "proposal_id": f"prop_{uuid.uuid4().hex[:12]}",
            "pending": True,
            "flow_state": flow_state,
            "nutrition": [dict(per_serving, food_name=recipe_name)],
            "message": message,
        }

    async def calculate_nutrition(self, ingredients: list[dict]) -> tuple[dict, list[dict]]:
        names = [i["name"] for i in ingredients]
        portions = [f"{i.get('quantity', '')} {i.get('unit', '')}".strip() or "1 serving" for i in ingredients]
        results = await self.lookup.lookup_many(names, portions)

        with_nutrition = []
        for ingredient, nutrition in zip(ingredients, results):
            with_nutrition.append({**ingredient, "nutrition": nutrition})
            if nutrition is None:
                logger.warning(f"No nutrition data for ingredient '{ingredient['name']}'")

        batch = sum_nutrition([n for n in results if n])
        if "calories" in batch:
            batch["calories"] = int(round_half_up(batch["calories"]))
        return batch, with_nutrition

    # ========================================================================
    # SAVE
    # ========================================================================

    async def save(self, user_id: str, action: dict) -> SaveResult:
        """
        Commit a recipe_save flow state.

        action["action"] is "handle_duplicate" (with choice log/update/new) or
        "save". Storage failures come back as an error result.
        """
        flow_state = action.get("flow_state") or {}
        parsed = dict(flow_state.get("parsed") or {})
        batch = flow_state.get("batch_nutrition") or {}
        servings = parsed.get("servings") or 1

        try:
            if action.get("action") == "handle_duplicate":
                choice = action.get("choice")
                existing_id = flow_state.get("existing_recipe_id")

                if choice == "log":
                    existing = await self.db.get_recipe(user_id, existing_id) if existing_id else None
                    if not existing:
                        return SaveResult(type="error", error="Could not find the existing recipe to log.")
                    return SaveResult(type="found", recipe=existing, skip_save=True)

                if choice == "update":
                    if not existing_id:
                        return SaveResult(type="error", error="There is no saved recipe to update.")
                    updated = await self.db.update_recipe(user_id, existing_id, {
                        "recipe_name": parsed.get("recipe_name"),
                        "servings": servings,
                        "nutrition_data": batch,
                        "per_serving_nutrition": scale_nutrition(batch, 1 / servings),
                        "ingredients": flow_state.get("ingredients_with_nutrition") or parsed.get("ingredients") or [],
                        "instructions": parsed.get("instructions") or "",
                    })
                    if not updated:
                        return SaveResult(type="error", error="Could not find the existing recipe to update.")
                    return SaveResult(type="updated", recipe=updated)

                if choice == "new":
                    parsed["recipe_name"] = f"{parsed.get('recipe_name')} (new)"
                else:
                    return SaveResult(type="error", error=f"Unknown choice: {choice}")

            if not parsed.get("recipe_name"):
                return SaveResult(type="error", error="Recipe has no name.")

            saved = await self.db.save_recipe(user_id, {
                "recipe_name": parsed["recipe_name"],
                "servings": servings,
                "nutrition_data": batch,
                "per_serving_nutrition": scale_nutrition(batch, 1 / servings),
                "ingredients": flow_state.get("ingredients_with_nutrition") or parsed.get("ingredients") or [],
                "instructions": parsed.get("instructions") or "",
            })
            logger.info(f"Saved recipe '{saved['recipe_name']}'")
            return SaveResult(type="saved", recipe=saved)

        except sqlite3.Error as e:
            logger.error(f"Recipe save failed: {e}")
            return SaveResult(type="error", error=str(e))
