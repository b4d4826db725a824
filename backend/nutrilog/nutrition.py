"""
Nutrition Lookup
Spoonacular first, LLM estimate as fallback. Every result is a flat dict of
canonical nutrient keys plus food_name, portion, source and confidence.
"""

import logging
from typing import Awaitable, Callable, Optional

from config import PARSER_MODEL
from nutrilog.llm import call_llm_json_async
from nutrilog.nutrients import NUTRIENT_REGISTRY, resolve_nutrient_key, scale_nutrition
from nutrilog.spoonacular import SpoonacularAPI, spoonacular_api

logger = logging.getLogger(__name__)

ESTIMATE_PROMPT = """You are a nutrition database. Estimate the nutrition of the food at the given portion.

Return ONLY a JSON object:
{
  "calories": 0,
  "protein_g": 0,
  "carbs_g": 0,
  "fat_total_g": 0,
  "fiber_g": 0,
  "sugar_g": 0,
  "sodium_mg": 0,
  "fat_saturated_g": 0,
  "cholesterol_mg": 0,
  "potassium_mg": 0,
  "confidence": "low|medium|high"
}

Rules:
- Numbers only, no units inside values
- Use typical USDA values for the portion
- Sugar and fiber can never exceed carbs; fat components can never exceed total fat"""


JsonCaller = Callable[..., Awaitable[dict]]


class NutritionLookup:
    def __init__(self, spoonacular: Optional[SpoonacularAPI] = None, llm_json: Optional[JsonCaller] = None):
        self.spoonacular = spoonacular or spoonacular_api
        self.llm_json = llm_json or call_llm_json_async

    async def lookup(self, food_name: str, portion: str = "1 serving") -> dict:
        result = await self.spoonacular.lookup_food(food_name, portion)
        if result:
            return scale_nutrition(result, 1)

        logger.info(f"No database match for '{food_name}', estimating")
        return await self.estimate(food_name, portion)

    async def estimate(self, food_name: str, portion: str = "1 serving") -> dict:
        raw = await self.llm_json(
            [
                {"role": "system", "content": ESTIMATE_PROMPT},
                {"role": "user", "content": f"Food: {food_name}\nPortion: {portion}"},
            ],
            model=PARSER_MODEL,
            temperature=0.1,
        )

        estimate = {
            "food_name": food_name,
            "portion": portion,
            "source": "llm_estimate",
            "confidence": raw.get("confidence") or "medium",
        }
        for label, value in raw.items():
            key = resolve_nutrient_key(label)
            if key in NUTRIENT_REGISTRY and isinstance(value, (int, float)) and not isinstance(value, bool):
                estimate[key] = value
        return scale_nutrition(estimate, 1)

    async def lookup_many(self, items: list[str], portions: list[str]) -> list[Optional[dict]]:
        results = []
        for i, item in enumerate(items):
            portion = portions[i] if i < len(portions) else "1 serving"
            try:
                results.append(await self.lookup(item, portion))
            except Exception as e:
                logger.warning(f"Nutrition lookup failed for '{item}': {e}")
                results.append(None)
        return results
