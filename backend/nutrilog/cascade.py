"""
Intent Cascade
Ordered intent-resolution stages for one turn. Each stage returns a terminal
TurnResult or None ("not handled"); a turn nobody handles goes to the
reasoning fallback.
"""

import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from config import MAX_MESSAGE_CHARS, TRUNCATION_MARKER
from nutrilog.confirmation import (
    ConfirmationProtocol,
    duplicate_flow_state,
    is_cancel_reply,
    is_confirm_reply,
    looks_like_new_log,
    parse_confirmation_directives,
)
from nutrilog.intent import IntentClassifier
from nutrilog.models import ActionKind, IntentDecision, Session, TurnRequest, TurnResult
from nutrilog.recipes import FindResult, RecipeBook
from nutrilog.responses import (
    ACTION_CANCELLED,
    CHAT_RESPONSE,
    CONFIRMATION_FOOD_LOG,
    CONFIRMATION_RECIPE_SAVE,
    ERROR,
    RECIPE_SELECTION,
    StepLog,
    failure,
    recipe_save_view,
    selection_message,
    selection_view,
    success,
)
from nutrilog.tools import ToolDispatch, proposal_from_result

logger = logging.getLogger(__name__)

CLOSING_PHRASES = {"thanks", "thank you", "thx", "cheers", "awesome", "great"}
CONSUMPTION_KEYWORDS = ["ate", "had", "log", "consumption", "portion", "serving", "having"]
LOG_PREFIX_PATTERN = re.compile(r"^(log|track|have|had|ate|record)\s+(my\s+)?", re.IGNORECASE)

GREETING = (
    "Hi! I'm NutriLog 👋 I can log what you eat, save your recipes and keep an eye "
    "on your nutrition goals. What did you have today?"
)


@dataclass
class TurnContext:
    """Everything a stage needs about the turn in flight"""
    request: TurnRequest
    session: Session
    steps: StepLog
    intent: Optional[IntentDecision] = None

    @property
    def user_id(self) -> str:
        return self.request.user_id

    @property
    def raw(self) -> str:
        return self.request.message

    @property
    def lower(self) -> str:
        return self.request.message.strip().lower()

    @property
    def message(self) -> str:
        """Message as sent to the LLM services"""
        text = self.request.message
        if len(text) > MAX_MESSAGE_CHARS:
            return text[:MAX_MESSAGE_CHARS] + TRUNCATION_MARKER
        return text


Stage = Callable[[TurnContext], Awaitable[Optional[TurnResult]]]


def looks_like_recipe(message: str) -> bool:
    lower = message.lower()
    is_long = len(message) > 200
    is_multiline = "\n" in message and len(message.split("\n")) > 3
    mentions_recipe = "recipe" in lower and len(message) > 50
    if not (is_long or is_multiline or mentions_recipe):
        return False
    return not any(keyword in lower for keyword in CONSUMPTION_KEYWORDS)


class IntentCascade:
    def __init__(
        self,
        classifier: IntentClassifier,
        tools: ToolDispatch,
        recipes: RecipeBook,
        pcc: ConfirmationProtocol,
    ):
        self.classifier = classifier
        self.tools = tools
        self.recipes = recipes
        self.pcc = pcc

        # Synchronous short-circuits, evaluated before any service call
        self.fast_paths: list[Stage] = [
            self.closing,
            self.button_confirm,
            self.button_cancel,
            self.selection_reply,
        ]
        self.routes: dict[str, Stage] = {
            "greet": self.greet,
            "confirm": self.confirm,
            "decline": self.decline,
            "cancel": self.decline,
            "log_food": self.log_single_food,
            "query_nutrition": self.log_single_food,
            "log_recipe": self.log_recipe,
            "save_recipe": self.save_recipe,
        }

    async def run(self, ctx: TurnContext) -> Optional[TurnResult]:
        for stage in self.fast_paths:
            result = await stage(ctx)
            if result is not None:
                return result

        result = await self.recipe_heuristic(ctx)
        if result is not None:
            return result

        ctx.steps.add("Analyzing intent...")
        ctx.intent = await self.classifier.classify(ctx.message, ctx.request.chat_history)

        route = self.routes.get(ctx.intent.intent)
        if route is None:
            return None
        return await route(ctx)

    # ========================================================================
    # FAST PATHS
    # ========================================================================

    async def closing(self, ctx: TurnContext) -> Optional[TurnResult]:
        if len(ctx.lower) < 15 and ctx.lower in CLOSING_PHRASES:
            ctx.steps.add("Closing recognized")
            return success(
                "You're very welcome! Let me know if there's anything else I can help with. 😊",
                CHAT_RESPONSE,
                ctx.steps,
            )
        return None

    async def button_confirm(self, ctx: TurnContext) -> Optional[TurnResult]:
        if ctx.session.pending_action is None:
            return None
        if looks_like_new_log(ctx.lower) or not is_confirm_reply(ctx.lower):
            return None

        logger.info(f"Button confirm for pending {ctx.session.pending_action.type.value}")
        ctx.steps.add("Processing your confirmation...")
        return await self.pcc.resolve(ctx.session, ctx.raw, ctx.steps, parse_confirmation_directives(ctx.raw))

    async def button_cancel(self, ctx: TurnContext) -> Optional[TurnResult]:
        if ctx.session.pending_action is None or not is_cancel_reply(ctx.lower):
            return None

        await self.pcc.cancel(ctx.user_id)
        ctx.steps.add("Cancellation recognized")
        return success("Action cancelled. ❌", ACTION_CANCELLED, ctx.steps)

    async def selection_reply(self, ctx: TurnContext) -> Optional[TurnResult]:
        """A list number or a listed recipe name answers an open recipe picker"""
        pending = ctx.session.pending_action
        if pending is None or pending.type != ActionKind.RECIPE_SELECTION:
            return None
        names = [str(r.get("recipe_name", "")).lower() for r in pending.data.get("recipes") or []]
        if not (ctx.lower.isdigit() or (ctx.lower and any(ctx.lower in name for name in names))):
            return None

        ctx.steps.add("Processing your selection...")
        return await self.pcc.resolve(ctx.session, ctx.raw, ctx.steps)

    async def recipe_heuristic(self, ctx: TurnContext) -> Optional[TurnResult]:
        if not looks_like_recipe(ctx.raw):
            return None

        ctx.steps.add("Analyzing recipe...")
        preview = ctx.raw[:100] + "..."
        return await self._propose_parsed_recipe(ctx, ctx.message, preview=preview)

    # ========================================================================
    # SWITCHBOARD
    # ========================================================================

    async def greet(self, ctx: TurnContext) -> Optional[TurnResult]:
        return success(GREETING, CHAT_RESPONSE, ctx.steps)

    async def confirm(self, ctx: TurnContext) -> Optional[TurnResult]:
        # "confirm" with extracted foods reads as a new log request, not a stale confirmation
        if ctx.session.pending_action is None or ctx.intent.food_items:
            return None
        ctx.steps.add("Confirmed! Processing...")
        return await self.pcc.resolve(ctx.session, ctx.raw, ctx.steps)

    async def decline(self, ctx: TurnContext) -> Optional[TurnResult]:
        ctx.steps.add("Cancelling...")
        await self.pcc.cancel(ctx.user_id)
        return success("No problem! I've cancelled that. What else can I help with?", ACTION_CANCELLED, ctx.steps)

    async def log_single_food(self, ctx: TurnContext) -> Optional[TurnResult]:
        intent = ctx.intent
        if len(intent.food_items) != 1 or " recipes" in ctx.lower or " yesterday" in ctx.lower:
            return None

        food = intent.food_items[0]
        portion = intent.portions[0] if intent.portions else "1 serving"

        found = await self.recipes.find(ctx.user_id, food)
        if found.type == "multiple_found":
            return await self._offer_selection(ctx, found, food, portion)
        if found.type == "found":
            return await self._offer_saved_recipe(
                ctx, found.recipe, portion,
                f"I found your saved recipe for \"**{found.recipe['recipe_name']}**\"! "
                "Would you like to use it for this log?",
            )

        ctx.steps.add("Looking up nutrition...")
        lookup = await self.tools.execute("lookup_nutrition", {"food_name": food, "portion": portion}, ctx.user_id)
        if not lookup.ok:
            return failure(f"I couldn't look up nutrition for {food}: {lookup.detail}", ERROR, ctx.steps)

        proposed = await self.tools.execute(
            "propose_food_log",
            {"food_name": food, "portion": portion, "nutrition": lookup.data},
            ctx.user_id,
        )
        if not proposed.ok:
            return failure(f"I couldn't prepare a log for {food}: {proposed.detail}", ERROR, ctx.steps)

        proposal = proposal_from_result(proposed.data)
        await self.pcc.propose(ctx.user_id, proposal.type, proposal.data, proposal.id)
        return success(
            f"Here's what I found for **{food}** ({portion}). Does this look right?",
            CONFIRMATION_FOOD_LOG,
            ctx.steps,
            {"nutrition": [proposal.data], "proposal": proposal.to_dict()},
        )

    async def log_recipe(self, ctx: TurnContext) -> Optional[TurnResult]:
        intent = ctx.intent
        if len(ctx.raw) > 500 or intent.recipe_text:
            ctx.steps.add("Parsing recipe...")
            return await self._propose_parsed_recipe(ctx, intent.recipe_text or ctx.message)

        query = intent.food_items[0] if intent.food_items else LOG_PREFIX_PATTERN.sub("", ctx.raw.strip()).strip()
        portion = intent.portions[0] if intent.portions else "1 serving"
        ctx.steps.add(f"Searching for \"{query}\" in your recipes...")

        found = await self.recipes.find(ctx.user_id, query)
        if found.type == "multiple_found":
            return await self._offer_selection(
                ctx, found, query, portion,
                ask="Which one would you like to work with?", original_intent="log_recipe",
            )
        if found.type == "found":
            return await self._offer_saved_recipe(
                ctx, found.recipe, portion,
                f"I found your recipe for \"**{found.recipe['recipe_name']}**\"! What would you like to do?",
            )
        return None

    async def save_recipe(self, ctx: TurnContext) -> Optional[TurnResult]:
        ctx.steps.add("Parsing recipe...")
        return await self._propose_parsed_recipe(ctx, ctx.intent.recipe_text or ctx.message)

    # ========================================================================
    # SHARED
    # ========================================================================

    async def _propose_parsed_recipe(self, ctx: TurnContext, text: str,
                                     preview: Optional[str] = None) -> Optional[TurnResult]:
        parsed = await self.tools.execute("parse_recipe_text", {"recipe_text": text}, ctx.user_id)
        if not parsed.ok:
            logger.info(f"Recipe parse did not produce a proposal: {parsed.detail}")
            return None

        proposal = proposal_from_result(parsed.data)
        if proposal is None or proposal.type != ActionKind.RECIPE_SAVE or not proposal.data.get("flow_state"):
            return None

        await self.pcc.propose(ctx.user_id, proposal.type, proposal.data, proposal.id)
        return success(
            parsed.data.get("message") or "Ready to save this recipe?",
            CONFIRMATION_RECIPE_SAVE,
            ctx.steps,
            recipe_save_view(proposal.data["flow_state"], preview=preview),
        )

    async def _offer_selection(self, ctx: TurnContext, found: FindResult, query: str, portion: str,
                               ask: str = "Which one would you like to log?",
                               original_intent: Optional[str] = None) -> TurnResult:
        data = {"recipes": found.recipes, "query": query, "original_portion": portion}
        if original_intent:
            data["original_intent"] = original_intent
        await self.pcc.propose(ctx.user_id, ActionKind.RECIPE_SELECTION, data)
        return success(selection_message(query, found.recipes, ask), RECIPE_SELECTION, ctx.steps, selection_view(data))

    async def _offer_saved_recipe(self, ctx: TurnContext, recipe: dict, portion: str, message: str) -> TurnResult:
        flow_state = duplicate_flow_state(recipe)
        await self.pcc.propose(ctx.user_id, ActionKind.RECIPE_SAVE, {
            "flow_state": flow_state,
            "response_type": "pending_duplicate_confirm",
            "pending": True,
            "portion": portion,
        })
        return success(message, CONFIRMATION_RECIPE_SAVE, ctx.steps, recipe_save_view(flow_state))
