"""
Spoonacular API Integration
Ingredient parsing with nutrition, normalized to canonical nutrient keys
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Optional

import httpx

from config import SPOONACULAR_API_KEY, SPOONACULAR_BASE_URL
from nutrilog.nutrients import NUTRIENT_REGISTRY, resolve_nutrient_key, round_half_up

logger = logging.getLogger(__name__)

# Labels Spoonacular reports that would collide with a real key
SKIPPED_LABELS = {"net carbohydrates"}

UNIT_ALIASES = {"µg": "mcg", "ug": "mcg", "kcal": "kcal", "g": "g", "mg": "mg", "ml": "ml"}


class SpoonacularAPI:
    """Wrapper for Spoonacular API calls"""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        self.api_key = api_key if api_key is not None else SPOONACULAR_API_KEY
        self.base_url = base_url or SPOONACULAR_BASE_URL
        self.timeout = 30.0
        self.max_retries = 3
        self.retry_delay = 1.0
        # Ingredient lines repeat a lot within a conversation
        self._cache: dict = {}
        self._cache_ttl = 300

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _cache_key(self, endpoint: str, payload: dict) -> str:
        return f"{endpoint}:{json.dumps(sorted(payload.items()), default=str)}"

    def _get_cached(self, key: str):
        if key in self._cache:
            result, timestamp = self._cache[key]
            if (datetime.now() - timestamp).seconds < self._cache_ttl:
                return result
            del self._cache[key]
        return None

    def _set_cache(self, key: str, result):
        self._cache[key] = (result, datetime.now())
        if len(self._cache) > 100:
            oldest = min(self._cache.keys(), key=lambda k: self._cache[k][1])
            del self._cache[oldest]

    async def _post_form(self, endpoint: str, form: dict, use_cache: bool = True):
        """POST form data with retry on rate limits, 5xx and timeouts; None on failure"""
        cache_key = self._cache_key(endpoint, form)
        if use_cache:
            cached = self._get_cached(cache_key)
            if cached is not None:
                return cached

        url = f"{self.base_url}{endpoint}"
        params = {"apiKey": self.api_key}

        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, params=params, data=form)
                    response.raise_for_status()
                    result = response.json()
                    if use_cache:
                        self._set_cache(cache_key, result)
                    return result

            except httpx.HTTPStatusError as e:
                if e.response.status_code == 402:
                    logger.warning("Spoonacular quota exceeded (402)")
                    return None
                if e.response.status_code in [429, 500, 502, 503, 522]:
                    if attempt < self.max_retries - 1:
                        await asyncio.sleep(self.retry_delay * (attempt + 1))
                        continue
                logger.warning(f"Spoonacular API error: {e.response.status_code}")
                return None
            except httpx.TimeoutException:
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self.retry_delay * (attempt + 1))
                    continue
                logger.warning("Spoonacular API timeout")
                return None
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"Spoonacular API error: {e}")
                return None

        return None

    async def parse_ingredients(self, lines: list[str], servings: int = 1) -> Optional[list[dict]]:
        """Parse free-text ingredient lines with nutrition included"""
        if not self.enabled or not lines:
            return None

        result = await self._post_form("/recipes/parseIngredients", {
            "ingredientList": "\n".join(lines),
            "servings": servings,
            "includeNutrition": "true",
        })
        if not isinstance(result, list):
            return None
        return result

    async def lookup_food(self, food_name: str, portion: str = "1 serving") -> Optional[dict]:
        """Nutrition for one food at a portion, as a flat canonical-key dict"""
        line = food_name if portion in ("", "1 serving") else f"{portion} {food_name}"
        parsed = await self.parse_ingredients([line])
        if not parsed:
            return None

        nutrition = nutrients_to_canonical(parsed[0].get("nutrition", {}).get("nutrients", []))
        if not nutrition:
            return None

        return {
            "food_name": food_name,
            "portion": portion,
            "source": "spoonacular",
            "confidence": "high",
            **nutrition,
        }


def nutrients_to_canonical(nutrients: list[dict]) -> dict:
    """Map Spoonacular nutrient rows onto registry keys, dropping unit mismatches"""
    canonical: dict = {}
    for item in nutrients:
        label = str(item.get("name", ""))
        if label.lower() in SKIPPED_LABELS:
            continue

        key = resolve_nutrient_key(label)
        info = NUTRIENT_REGISTRY.get(key)
        if not info:
            continue

        unit = UNIT_ALIASES.get(str(item.get("unit", "")).strip(), str(item.get("unit", "")).strip())
        if info.unit and unit != info.unit:
            continue

        amount = item.get("amount")
        if not isinstance(amount, (int, float)):
            continue
        canonical[key] = round_half_up(canonical.get(key, 0) + amount, 1)

    if "calories" in canonical:
        canonical["calories"] = int(round_half_up(canonical["calories"]))
    return canonical


# Global instance
spoonacular_api = SpoonacularAPI()
