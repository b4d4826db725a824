"""
Confirmation Protocol (Propose -> Confirm -> Commit)
Irreversible writes are stored as the user's single pending action and only
committed when a later message resolves it.
"""

import logging
import re
from typing import Optional

from nutrilog.db import NutritionDb, now_iso
from nutrilog.models import ActionKind, ConfirmationDirectives, PendingAction, Proposal, Session, TurnResult
from nutrilog.nutrients import FOOD_LOG_COLUMNS, round_half_up, scale_nutrition
from nutrilog.recipes import RecipeBook, parse_portion_number
from nutrilog.responses import (
    ACTION_CANCELLED,
    ACTION_CONFIRMED,
    CONFIRMATION_FAILED,
    CONFIRMATION_RECIPE_SAVE,
    ERROR,
    FOOD_LOGGED,
    GOAL_UPDATED,
    RECIPE_LOGGED,
    RECIPE_SAVED,
    StepLog,
    failure,
    food_log_items,
    recipe_save_view,
    success,
)
from nutrilog.store import SessionStore
from nutrilog.tools import new_proposal_id, tracked_nutrients

logger = logging.getLogger(__name__)


# ============================================================================
# REPLY RECOGNITION
# ============================================================================

CONFIRM_PHRASES = {
    "yes", "yeah", "yep", "correct", "confirm", "log it", "log this", "save it", "save this",
    "save", "record it", "track it", "looks good", "ok", "okay", "right", "sure",
    "yes log", "yes save", "yes, save", "yes, log", "confirm save",
}
CANCEL_PHRASES = {"cancel", "stop", "no, cancel", "decline", "no", "forget it"}
NEW_LOG_PREFIXES = ("log ", "track ", "save ", "add ")

PORTION_PATTERN = re.compile(r"portion:([\w\s.]+)", re.IGNORECASE)
CHOICE_PATTERN = re.compile(r"Confirm\s+(\w+)", re.IGNORECASE)
NAME_PATTERN = re.compile(r"name:([\w\s.!@#$%^&*()-]+)", re.IGNORECASE)

DUPLICATE_CHOICES = ("log", "update", "new")


def looks_like_new_log(lower: str) -> bool:
    return lower.startswith(NEW_LOG_PREFIXES)


def is_confirm_reply(lower: str) -> bool:
    """Button payloads and short agreement phrases"""
    bare = lower.replace(".", "").replace("!", "")
    return (
        lower.startswith("confirm")
        or lower.startswith("yes, ")
        or bare in CONFIRM_PHRASES
        or "portion:" in lower
        or "name:" in lower
    )


def is_cancel_reply(lower: str) -> bool:
    return lower in CANCEL_PHRASES or lower.startswith("cancel")


def parse_confirmation_directives(message: str) -> ConfirmationDirectives:
    """Pull the optional choice / portion / name fields out of a confirmation reply"""
    directives = ConfirmationDirectives()

    choice = CHOICE_PATTERN.search(message)
    if choice:
        directives.choice = choice.group(1).lower()

    portion = PORTION_PATTERN.search(message)
    if portion:
        directives.portion = portion.group(1).strip()

    name = NAME_PATTERN.search(message)
    if name:
        directives.custom_name = name.group(1).strip()

    return directives


def infer_choice(lower: str) -> Optional[str]:
    if "log" in lower:
        return "log"
    if "update" in lower:
        return "update"
    if "new" in lower:
        return "new"
    return None


# ============================================================================
# COMMIT HELPERS
# ============================================================================

async def log_filtered_food(db: NutritionDb, user_id: str, item: dict) -> dict:
    """
    Write one food log row holding calories plus the user's tracked nutrients.
    Tracked nutrients without a food_log column are kept under `extras`.
    """
    tracked = await tracked_nutrients(db, user_id)

    row: dict = {
        "food_name": item.get("food_name") or item.get("recipe_name") or "Unknown food",
        "portion": item.get("portion") or "1 serving",
        "calories": int(round_half_up(item.get("calories") or 0)),
        "log_time": now_iso(),
    }
    if item.get("recipe_id"):
        row["recipe_id"] = item["recipe_id"]

    extras = {}
    for key in tracked:
        if key == "calories":
            continue
        value = item.get(key)
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            continue
        if key in FOOD_LOG_COLUMNS:
            row[key] = round_half_up(value, 1)
        else:
            extras[key] = round_half_up(value, 1)
    if extras:
        row["extras"] = extras

    logged = await db.log_food_items(user_id, [row])
    return logged[0]


def duplicate_flow_state(recipe: dict) -> dict:
    """Flow state offering log / update / new for an already saved recipe"""
    servings = recipe.get("servings") or 1
    batch = recipe.get("nutrition_data") or {}
    return {
        "step": "pending_duplicate_confirm",
        "parsed": {
            "recipe_name": recipe.get("recipe_name"),
            "servings": servings,
            "ingredients": recipe.get("ingredients") or [],
        },
        "batch_nutrition": batch,
        "per_serving_nutrition": scale_nutrition(batch, 1 / servings),
        "existing_recipe_id": recipe.get("id"),
        "existing_recipe_name": recipe.get("recipe_name"),
    }


# ============================================================================
# ENGINE
# ============================================================================

class ConfirmationProtocol:
    def __init__(self, store: SessionStore, db: NutritionDb, recipes: RecipeBook):
        self.store = store
        self.db = db
        self.recipes = recipes

    async def propose(self, user_id: str, kind: ActionKind, data: dict,
                      proposal_id: Optional[str] = None) -> Proposal:
        """Persist a proposal as the user's pending action, replacing any previous one"""
        await self.store.save_pending_action(user_id, PendingAction(type=kind, data=data))
        logger.info(f"Proposed {kind.value} for {user_id}")
        return Proposal(type=kind, id=proposal_id or new_proposal_id(), data=data)

    async def cancel(self, user_id: str):
        await self.store.clear_pending_action(user_id)

    async def resolve(
        self,
        session: Session,
        message: str,
        steps: StepLog,
        directives: Optional[ConfirmationDirectives] = None,
    ) -> TurnResult:
        """
        Commit (or re-route) the session's pending action in response to a reply.

        The pending action is cleared afterwards whatever happens, except for
        recipe_selection: an unmatched reply keeps it so the user can retry, a
        match replaces it with the follow-up recipe_save proposal.
        """
        action = session.pending_action
        user_id = session.user_id
        data = dict(action.data)
        if directives:
            data.update(directives.to_dict())

        clear = True
        try:
            if action.type == ActionKind.RECIPE_SELECTION:
                result = await self._select_recipe(user_id, data, message, steps)
                clear = False
            elif action.type == ActionKind.FOOD_LOG:
                result = await self._commit_food_log(user_id, data, steps)
            elif action.type == ActionKind.RECIPE_LOG:
                result = await self._commit_recipe_log(user_id, data, steps)
            elif action.type == ActionKind.GOAL_UPDATE:
                result = await self._commit_goal_update(user_id, data, steps)
            elif action.type == ActionKind.RECIPE_SAVE:
                result = await self._commit_recipe_save(user_id, data, message, steps)
            else:
                result = success("Done! ✅", ACTION_CONFIRMED, steps)
        except Exception as e:
            logger.exception(f"Confirmation of {action.type.value} failed")
            result = failure(f"Failed to save: {e}. Please try again.", CONFIRMATION_FAILED, steps)
            clear = True

        if clear:
            await self.store.clear_pending_action(user_id)
        return result

    # ------------------------------------------------------------------

    async def _commit_food_log(self, user_id: str, data: dict, steps: StepLog) -> TurnResult:
        items = food_log_items(data)
        for item in items:
            await log_filtered_food(self.db, user_id, item)

        if len(items) == 1:
            message = f"✅ Logged {items[0].get('food_name')} ({items[0].get('calories')} cal)! Great choice! 🎉"
        else:
            total = sum(item.get("calories") or 0 for item in items)
            message = f"✅ Logged {len(items)} items ({int(round_half_up(total))} cal total)! Great choices! 🎉"
        return success(message, FOOD_LOGGED, steps, {"food_logged": items})

    async def _commit_recipe_log(self, user_id: str, data: dict, steps: StepLog) -> TurnResult:
        servings = data.get("servings", 1)
        await log_filtered_food(self.db, user_id, {
            **data,
            "food_name": data.get("recipe_name"),
            "portion": f"{servings} serving(s)",
        })
        return success(
            f"✅ Logged {servings} serving(s) of {data.get('recipe_name')}! 🍽️",
            RECIPE_LOGGED,
            steps,
            {"recipe_logged": data},
        )

    async def _commit_goal_update(self, user_id: str, data: dict, steps: StepLog) -> TurnResult:
        await self.db.update_user_goal(
            user_id,
            data["nutrient"],
            data["target_value"],
            data.get("unit"),
            data.get("goal_type"),
            {
                "yellow_min": data.get("yellow_min"),
                "green_min": data.get("green_min"),
                "red_min": data.get("red_min"),
            },
        )
        limit = " (Limit)" if data.get("goal_type") == "limit" else ""
        return success(
            f"✅ Updated your {data['nutrient']} goal to {data['target_value']}{data.get('unit') or ''}{limit}! 🎯",
            GOAL_UPDATED,
            steps,
            {"goal_updated": data},
        )

    async def _select_recipe(self, user_id: str, data: dict, message: str, steps: StepLog) -> TurnResult:
        recipes = data.get("recipes") or []
        choice = message.strip()

        selected = None
        if choice.isdigit() and 1 <= int(choice) <= len(recipes):
            selected = recipes[int(choice) - 1]
        elif choice:
            selected = next(
                (r for r in recipes if choice.lower() in str(r.get("recipe_name", "")).lower()),
                None,
            )

        if selected is None:
            return failure(
                f"I couldn't find that recipe in the list. Please enter the number (1-{len(recipes)}) "
                "or the recipe name.",
                ERROR,
                steps,
            )

        recipe = selected.get("full_recipe") or selected
        flow_state = duplicate_flow_state(recipe)
        await self.store.save_pending_action(user_id, PendingAction(
            type=ActionKind.RECIPE_SAVE,
            data={
                "flow_state": flow_state,
                "response_type": "pending_duplicate_confirm",
                "pending": True,
                "portion": data.get("original_portion"),
            },
        ))
        return success(
            f"Great! I'll use \"**{recipe.get('recipe_name')}**\". What would you like to do?",
            CONFIRMATION_RECIPE_SAVE,
            steps,
            recipe_save_view(flow_state),
        )

    async def _commit_recipe_save(self, user_id: str, data: dict, message: str, steps: StepLog) -> TurnResult:
        flow_state = dict(data.get("flow_state") or {})
        parsed = dict(flow_state.get("parsed") or data.get("parsed") or {})
        if data.get("custom_name"):
            parsed["recipe_name"] = data["custom_name"]
        flow_state["parsed"] = parsed

        if flow_state.get("step") == "pending_duplicate_confirm":
            choice = data.get("choice") or infer_choice(message.strip().lower())
            if choice == "save":
                choice = "new"
        else:
            choice = None

        if choice in DUPLICATE_CHOICES:
            action = {"action": "handle_duplicate", "choice": choice, "flow_state": flow_state}
        else:
            action = {"action": "save", "mode": "commit", "flow_state": flow_state}

        saved = await self.recipes.save(user_id, action)
        portion = data.get("portion")

        if saved.type == "error":
            raise RuntimeError(saved.error or "Unknown error saving recipe")

        if saved.type == "updated":
            recipe = saved.recipe
            if portion:
                await self._log_recipe_portion(user_id, recipe, portion)
                return success(
                    f"✅ Updated and logged {portion} of \"{recipe['recipe_name']}\"! 🍽️",
                    RECIPE_LOGGED,
                    steps,
                    {"recipe_logged": recipe},
                )
            return success(f"✅ Updated recipe \"{recipe['recipe_name']}\"! 📖", RECIPE_SAVED, steps, {"recipe": recipe})

        if saved.type == "found" and saved.skip_save:
            recipe = saved.recipe
            portion = portion or "1 serving"
            await self._log_recipe_portion(user_id, recipe, portion)
            return success(
                f"✅ Logged {portion} of \"{recipe['recipe_name']}\"! 🍽️",
                RECIPE_LOGGED,
                steps,
                {"recipe_logged": recipe},
            )

        name = (saved.recipe or {}).get("recipe_name") or "your recipe"
        return success(
            f"✅ Saved recipe \"{name}\"! You can now log it any time. 📖",
            RECIPE_SAVED,
            steps,
            {"recipe": saved.recipe},
        )

    async def _log_recipe_portion(self, user_id: str, recipe: dict, portion: str):
        scale = parse_portion_number(portion) / (recipe.get("servings") or 1)
        scaled = scale_nutrition(recipe.get("nutrition_data") or {}, scale)
        await log_filtered_food(self.db, user_id, {
            **scaled,
            "food_name": recipe["recipe_name"],
            "portion": portion,
            "recipe_id": recipe["id"],
        })
