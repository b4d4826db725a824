"""
Turn Orchestrator
Runs one chat turn: load the session, walk the intent cascade, fall back to
reasoning, assemble the reply. Every exception ends as a fatal_error reply.
"""

import asyncio
import logging
import time
import weakref
from typing import Callable, Optional

from nutrilog.cascade import IntentCascade, TurnContext
from nutrilog.confirmation import ConfirmationProtocol
from nutrilog.db import NutritionDb
from nutrilog.intent import IntentClassifier
from nutrilog.models import ContextBuffer, IntentDecision, Proposal, Topic, TurnRequest, TurnResult
from nutrilog.reasoning import Reasoner, Responder
from nutrilog.recipes import RecipeBook
from nutrilog.responses import CHAT_RESPONSE, StepLog, fatal_error, proposal_view, success
from nutrilog.store import SessionStore
from nutrilog.tools import ToolDispatch

logger = logging.getLogger(__name__)

TOOL_STEPS = {
    "lookup_nutrition": "Looking up nutrition info...",
    "estimate_nutrition": "Estimating nutritional values...",
    "parse_recipe_text": "Parsing recipe details...",
    "get_user_goals": "Checking your nutrition goals...",
    "propose_food_log": "Preparing a log entry for you...",
}

INTENT_TOPICS = {
    "log_food": Topic.FOOD,
    "query_nutrition": Topic.FOOD,
    "dietary_advice": Topic.FOOD,
    "log_recipe": Topic.RECIPE,
    "save_recipe": Topic.RECIPE,
    "query_goals": Topic.GOALS,
    "update_goals": Topic.GOALS,
    "suggest_goals": Topic.GOALS,
    "off_topic": Topic.GENERAL,
    "clarify": Topic.GENERAL,
}

TIME_WORDS = {"today", "yesterday", "tomorrow", "morning", "evening", "lunch", "dinner", "breakfast"}


def extract_food_entities(intent: Optional[IntentDecision], gathered: dict) -> list[str]:
    """Food names mentioned this turn, in order of appearance, without duplicates"""
    foods: list[str] = []
    if intent:
        foods.extend(intent.food_items)
        foods.extend(e for e in intent.entities if e.lower() not in TIME_WORDS)

    def each(value):
        return value if isinstance(value, list) else [value]

    for lookup in each(gathered.get("lookup_nutrition") or []):
        if isinstance(lookup, dict) and lookup.get("food_name"):
            foods.append(lookup["food_name"])
    for proposed in each(gathered.get("propose_food_log") or []):
        if isinstance(proposed, dict) and (proposed.get("data") or {}).get("food_name"):
            foods.append(proposed["data"]["food_name"])

    return list(dict.fromkeys(f for f in foods if f))


class Orchestrator:
    def __init__(
        self,
        store: SessionStore,
        db: NutritionDb,
        classifier: IntentClassifier,
        reasoner: Reasoner,
        responder: Responder,
        tools: ToolDispatch,
        recipes: RecipeBook,
    ):
        self.store = store
        self.db = db
        self.reasoner = reasoner
        self.responder = responder
        self.pcc = ConfirmationProtocol(store, db, recipes)
        self.cascade = IntentCascade(classifier, tools, recipes, self.pcc)
        # Entries vanish once no turn holds or awaits the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._background: set[asyncio.Task] = set()

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    async def process_turn(
        self,
        request: TurnRequest,
        on_step: Optional[Callable[[str], None]] = None,
    ) -> TurnResult:
        steps = StepLog(on_step)
        start_time = time.time()

        # Turns of one user run one after the other
        async with self._lock_for(request.user_id):
            try:
                session = await self.store.get_session(request.user_id, request.session_id)
                ctx = TurnContext(request=request, session=session, steps=steps)

                result = await self.cascade.run(ctx)
                agents = ["intent"] if ctx.intent else []
                if result is None:
                    result = await self._reason(ctx)
                    agents += ["reasoning", "chat"]

            except Exception as e:
                logger.exception(f"Turn failed for {request.user_id}")
                return fatal_error(e, steps)

        self._schedule_execution_log(ctx, agents, start_time, result)
        return result

    async def _reason(self, ctx: TurnContext) -> TurnResult:
        steps = ctx.steps
        user_id = ctx.user_id
        history = ctx.request.chat_history
        pending = ctx.session.pending_action

        steps.add("Thinking about how to help...")
        reasoning = await self.reasoner.reason(user_id, ctx.message, ctx.intent, history, pending)
        for tool in reasoning.tools_used:
            if tool in TOOL_STEPS:
                steps.add(TOOL_STEPS[tool])

        proposal = reasoning.proposal
        if proposal is not None:
            await self.pcc.propose(user_id, proposal.type, proposal.data, proposal.id)
        elif pending is not None:
            # Keep showing the outstanding card; the store already holds it
            proposal = Proposal(
                type=pending.type,
                id=pending.data.get("proposal_id") or pending.data.get("id") or f"prop_persist_{int(time.time() * 1000)}",
                data=pending.data,
            )

        response_type, ui_data = proposal_view(proposal) if proposal else (CHAT_RESPONSE, {})

        intent = ctx.intent.intent if ctx.intent else "unknown"
        steps.add("Formatting response...")
        reply = await self.responder.respond(ctx.message, intent, reasoning, proposal, history)

        data = {**reasoning.data, **ui_data, "proposal": proposal.to_dict() if proposal else None}

        await self.store.update_context(user_id, {
            "intent": intent,
            "agent": "reasoning",
            "response_type": response_type,
        })
        foods = extract_food_entities(ctx.intent, reasoning.data)
        topic = INTENT_TOPICS.get(intent)
        if foods or topic:
            await self.store.update_buffer(user_id, ContextBuffer(recent_foods=foods, last_topic=topic))

        return success(reply, response_type, steps, data)

    def _schedule_execution_log(self, ctx: TurnContext, agents: list[str], start_time: float, result: TurnResult):
        """Best-effort execution record, written after the reply is returned"""
        request = ctx.request
        intent = ctx.intent.intent if ctx.intent else "fast_path"

        async def write():
            try:
                await self.db.log_execution(
                    request.user_id,
                    request.session_id,
                    intent,
                    agents,
                    start_time,
                    result.to_dict(),
                    request.message,
                    request.timezone,
                )
            except Exception as e:
                logger.warning(f"Execution log failed: {e}")

        task = asyncio.create_task(write())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self):
        """Wait for pending background writes (tests, shutdown)"""
        if self._background:
            await asyncio.gather(*list(self._background))


def create_orchestrator(store: Optional[SessionStore] = None, db: Optional[NutritionDb] = None) -> Orchestrator:
    """Wire the production collaborators from config"""
    from config import SESSION_STORE
    from nutrilog.store import InMemorySessionStore, SQLiteSessionStore

    db = db or NutritionDb()
    if store is None:
        store = InMemorySessionStore() if SESSION_STORE == "memory" else SQLiteSessionStore()

    recipes = RecipeBook(db)
    tools = ToolDispatch(db, recipes)
    return Orchestrator(
        store=store,
        db=db,
        classifier=IntentClassifier(),
        reasoner=Reasoner(tools),
        responder=Responder(),
        tools=tools,
        recipes=recipes,
    )
