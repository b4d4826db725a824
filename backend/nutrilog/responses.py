"""
Response Assembly
Step recording, the response_type vocabulary and the mapping from internal
results to the wire shape the UI switches on
"""

import logging
from typing import Callable, Optional

from nutrilog.models import ActionKind, Proposal, TurnResult

logger = logging.getLogger(__name__)

# response_type vocabulary
CHAT_RESPONSE = "chat_response"
CONFIRMATION_FOOD_LOG = "confirmation_food_log"
CONFIRMATION_RECIPE_SAVE = "confirmation_recipe_save"
CONFIRMATION_GOAL_UPDATE = "confirmation_goal_update"
RECIPE_SELECTION = "recipe_selection"
FOOD_LOGGED = "food_logged"
RECIPE_LOGGED = "recipe_logged"
RECIPE_SAVED = "recipe_saved"
GOAL_UPDATED = "goal_updated"
ACTION_CONFIRMED = "action_confirmed"
ACTION_CANCELLED = "action_cancelled"
CONFIRMATION_FAILED = "confirmation_failed"
ERROR = "error"
FATAL_ERROR = "fatal_error"


class StepLog:
    """Ordered, append-only record of the progress messages of one turn"""

    def __init__(self, on_step: Optional[Callable[[str], None]] = None):
        self.steps: list[str] = []
        self.on_step = on_step

    def add(self, step: str):
        self.steps.append(step)
        logger.info(f"Step: {step}")
        if self.on_step:
            self.on_step(step)


def success(message: str, response_type: str, steps: StepLog, data: Optional[dict] = None) -> TurnResult:
    return TurnResult(status="success", message=message, response_type=response_type,
                      data=data, steps=list(steps.steps))


def failure(message: str, response_type: str, steps: StepLog, data: Optional[dict] = None) -> TurnResult:
    return TurnResult(status="error", message=message, response_type=response_type,
                      data=data, steps=list(steps.steps))


def fatal_error(error: BaseException, steps: StepLog) -> TurnResult:
    return failure(
        f"I encountered an unexpected error. Please try again. ({error})",
        FATAL_ERROR,
        steps,
    )


def recipe_ingredients_view(flow_state: dict) -> list[dict]:
    """Ingredient rows with calories, falling back to the parsed list at 0 kcal"""
    with_nutrition = flow_state.get("ingredients_with_nutrition")
    if with_nutrition:
        return [
            {
                "name": ing.get("name"),
                "amount": ing.get("quantity"),
                "unit": ing.get("unit"),
                "calories": (ing.get("nutrition") or {}).get("calories") or 0,
            }
            for ing in with_nutrition
        ]
    return [
        {
            "name": ing.get("name"),
            "amount": ing.get("quantity", ing.get("amount")),
            "unit": ing.get("unit"),
            "calories": ing.get("calories") or 0,
        }
        for ing in (flow_state.get("parsed") or {}).get("ingredients") or []
    ]


def recipe_save_view(flow_state: dict, preview: Optional[str] = None) -> dict:
    parsed = flow_state.get("parsed") or {}
    view = {
        "is_match": flow_state.get("step") == "pending_duplicate_confirm",
        "existing_recipe_name": flow_state.get("existing_recipe_name"),
        "parsed": {
            "recipe_name": parsed.get("recipe_name"),
            "servings": parsed.get("servings"),
            "nutrition_data": flow_state.get("batch_nutrition") or {},
            "per_serving_nutrition": flow_state.get("per_serving_nutrition") or {},
            "ingredients": recipe_ingredients_view(flow_state),
        },
    }
    if preview is not None:
        view["preview"] = preview
    return view


def food_log_items(data: dict) -> list[dict]:
    """A food_log proposal holds one item or a batch under 'items'"""
    if isinstance(data.get("items"), list):
        return data["items"]
    return [data]


def proposal_view(proposal: Proposal) -> tuple[str, dict]:
    """response_type and UI data for a pending proposal"""
    data = proposal.data or {}

    if proposal.type == ActionKind.FOOD_LOG:
        return CONFIRMATION_FOOD_LOG, {"nutrition": food_log_items(data)}

    if proposal.type == ActionKind.RECIPE_LOG:
        servings = data.get("servings", 1)
        return CONFIRMATION_FOOD_LOG, {"nutrition": [{
            "food_name": data.get("recipe_name"),
            "calories": data.get("calories"),
            "protein_g": data.get("protein_g"),
            "carbs_g": data.get("carbs_g"),
            "fat_total_g": data.get("fat_total_g"),
            "serving_size": f"{servings} serving(s)",
        }]}

    if proposal.type == ActionKind.RECIPE_SAVE and data.get("flow_state"):
        return CONFIRMATION_RECIPE_SAVE, recipe_save_view(data["flow_state"])

    if proposal.type == ActionKind.GOAL_UPDATE:
        return CONFIRMATION_GOAL_UPDATE, {}

    if proposal.type == ActionKind.RECIPE_SELECTION:
        return RECIPE_SELECTION, selection_view(data)

    return f"confirmation_{proposal.type.value}", {}


def selection_view(data: dict) -> dict:
    return {
        "recipes": [
            {
                "id": r.get("id"),
                "recipe_name": r.get("recipe_name"),
                "servings": r.get("servings"),
                "calories_per_serving": r.get("calories_per_serving"),
            }
            for r in data.get("recipes") or []
        ],
        "query": data.get("query"),
    }


def selection_message(query: str, recipes: list[dict], ask: str = "Which one would you like to log?") -> str:
    lines = [f'I found {len(recipes)} recipes matching "**{query}**". {ask}', ""]
    for i, r in enumerate(recipes, 1):
        lines.append(f"{i}. **{r['recipe_name']}** ({r['servings']} serving(s), ~{r['calories_per_serving']} kcal each)")
    return "\n".join(lines)
