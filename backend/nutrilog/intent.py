"""
Intent Classifier
One JSON-mode LLM call that turns a message into an IntentDecision
"""

import logging
from typing import Optional

from config import INTENT_HISTORY_WINDOW, INTENT_MODEL
from nutrilog.llm import call_llm_json_async
from nutrilog.models import IntentDecision
from nutrilog.nutrition import JsonCaller

logger = logging.getLogger(__name__)

INTENTS = [
    "log_food", "log_recipe", "save_recipe", "query_nutrition", "query_goals",
    "update_goals", "suggest_goals", "dietary_advice", "clarify", "confirm",
    "decline", "greet", "off_topic",
]

SYSTEM_PROMPT = """You are a nutrition assistant's intent classifier. Classify the user's message into exactly one category:
- log_food: User wants to log a food item or meal they ate.
- log_recipe: User wants to log a recipe they previously saved.
- save_recipe: User wants to save a new recipe.
- query_nutrition: User is asking about nutritional content.
- query_goals: User is asking what their goals are.
- update_goals: User wants to change one or more nutrition goals.
- suggest_goals: User wants goal recommendations.
- dietary_advice: User wants advice about what to eat.
- clarify: User is providing missing info for a pending item.
- confirm: User explicitly agrees to the PREVIOUSLY mentioned item ("yes", "do it", "looks good").
- decline: User rejects the current action.
- greet: Hello.
- off_topic: Unrelated.

Be robust to typos ("protien" -> protein, "calores" -> calories).
Declarative phrasing ("I ate", "log", "add") is log_food; conditional phrasing ("what if I eat") is query_nutrition.

Return ONLY a JSON object:
{
  "intent": "<one of the categories>",
  "confidence": 0.0-1.0,
  "food_items": ["food names, without quantities"],
  "portions": ["portion for each food item, same order"],
  "recipe_text": "full recipe text if the user pasted one, else empty",
  "entities": ["other notable entities: dates, meals, nutrients"]
}"""


class IntentClassifier:
    def __init__(self, llm_json: Optional[JsonCaller] = None, model: str = INTENT_MODEL):
        self.llm_json = llm_json or call_llm_json_async
        self.model = model

    async def classify(self, message: str, history: list[dict]) -> IntentDecision:
        messages = [{"role": "system", "content": SYSTEM_PROMPT}]
        messages.extend(
            {"role": m.get("role", "user"), "content": m.get("content", "")}
            for m in history[-INTENT_HISTORY_WINDOW:]
        )
        messages.append({"role": "user", "content": message})

        raw = await self.llm_json(messages, model=self.model)
        decision = IntentDecision.from_dict(raw)
        if decision.intent not in INTENTS:
            logger.warning(f"Classifier returned unknown intent '{decision.intent}'")
        logger.info(f"Intent: {decision.intent} ({decision.confidence:.2f}) foods={decision.food_items}")
        return decision
