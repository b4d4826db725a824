"""
Reasoning Fallback
General tool-calling agent used when no direct route handles a turn, plus the
responder that words the final reply
"""

import json
import logging
from typing import Awaitable, Callable, Optional

from config import CHAT_MODEL, REASONING_HISTORY_WINDOW, REASONING_MAX_ITERATIONS, REASONING_MODEL
from nutrilog.llm import call_llm_async, call_llm_with_tools_async
from nutrilog.models import ActionKind, IntentDecision, PendingAction, Proposal, ReasoningResult
from nutrilog.nutrients import NUTRIENT_REGISTRY
from nutrilog.tools import ToolDispatch, new_proposal_id, proposal_from_result

logger = logging.getLogger(__name__)

NUTRIENT_KEYS = ", ".join(f"{info.name} ({key})" for key, info in list(NUTRIENT_REGISTRY.items())[:16])

SYSTEM_PROMPT = f"""You are NutriLog's reasoning agent, the brain of a nutrition logging assistant.

1. Context first: call get_user_goals before answering "what should I eat" or "what are my goals".
2. Propose, never write: to log food call lookup_nutrition then propose_food_log. To log a
   saved recipe call search_saved_recipes then propose_recipe_log. For pasted recipe text call
   parse_recipe_text. To change a goal call update_user_goal. The user confirms every write.
3. If the user is only ASKING about nutrition, answer; do not propose a log.
4. Map nutrient names onto these keys: {NUTRIENT_KEYS}. "Water" is hydration_ml.
5. If a pending action is shown and the user asks about something else, answer the question
   and leave the pending action alone.
6. If the user is off-topic, be polite and redirect to nutrition."""

TOOL_DEFINITIONS = [
    {
        "type": "function",
        "function": {
            "name": "lookup_nutrition",
            "description": "Look up nutrition for one food at a portion",
            "parameters": {
                "type": "object",
                "properties": {
                    "food_name": {"type": "string"},
                    "portion": {"type": "string", "description": "e.g. '2 large', '100g', '1 serving'"},
                },
                "required": ["food_name"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "estimate_nutrition",
            "description": "Estimate nutrition when the database has no match",
            "parameters": {
                "type": "object",
                "properties": {
                    "food_name": {"type": "string"},
                    "portion": {"type": "string"},
                },
                "required": ["food_name"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "propose_food_log",
            "description": "Prepare a food log entry for the user to confirm",
            "parameters": {
                "type": "object",
                "properties": {
                    "food_name": {"type": "string"},
                    "portion": {"type": "string"},
                    "nutrition": {"type": "object", "description": "Nutrient key -> number"},
                },
                "required": ["food_name", "nutrition"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "propose_recipe_log",
            "description": "Prepare a log entry for a saved recipe",
            "parameters": {
                "type": "object",
                "properties": {
                    "recipe_name": {"type": "string"},
                    "recipe_id": {"type": "string"},
                    "servings": {"type": "number"},
                },
                "required": ["recipe_name"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "parse_recipe_text",
            "description": "Parse pasted recipe text and calculate its nutrition",
            "parameters": {
                "type": "object",
                "properties": {"recipe_text": {"type": "string"}},
                "required": ["recipe_text"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "search_saved_recipes",
            "description": "Search the user's saved recipes by name",
            "parameters": {
                "type": "object",
                "properties": {"query": {"type": "string"}},
                "required": ["query"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_user_goals",
            "description": "Get the user's nutrition goals",
            "parameters": {"type": "object", "properties": {}},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "update_user_goal",
            "description": "Propose a change to one nutrition goal",
            "parameters": {
                "type": "object",
                "properties": {
                    "nutrient": {"type": "string"},
                    "target_value": {"type": "number"},
                    "unit": {"type": "string"},
                    "goal_type": {"type": "string", "enum": ["goal", "limit"]},
                    "yellow_min": {"type": "number"},
                    "green_min": {"type": "number"},
                    "red_min": {"type": "number"},
                },
                "required": ["nutrient", "target_value"],
            },
        },
    },
]


ToolCaller = Callable[..., Awaitable[dict]]
TextCaller = Callable[..., Awaitable[str]]


class Reasoner:
    def __init__(self, tools: ToolDispatch, llm_tools: Optional[ToolCaller] = None, model: str = REASONING_MODEL):
        self.tools = tools
        self.llm_tools = llm_tools or call_llm_with_tools_async
        self.model = model

    async def reason(
        self,
        user_id: str,
        message: str,
        intent: Optional[IntentDecision],
        history: list[dict],
        pending_action: Optional[PendingAction] = None,
    ) -> ReasoningResult:
        messages = [{"role": "system", "content": SYSTEM_PROMPT}]
        messages.extend(
            {"role": m.get("role", "user"), "content": m.get("content", "")}
            for m in history[-REASONING_HISTORY_WINDOW:]
        )

        prefix = ""
        if intent:
            prefix += f"[Intent: {intent.intent}"
            if intent.food_items:
                prefix += f" | Foods: {', '.join(intent.food_items)}"
            if intent.portions:
                prefix += f" | Portions: {', '.join(intent.portions)}"
            prefix += "]"
        if pending_action:
            prefix += f" [Pending Action: {pending_action.type.value} | Data: {json.dumps(pending_action.data, default=str)}]"
        messages.append({"role": "user", "content": f"{prefix}\n\nUser: {message}" if prefix else message})

        result = ReasoningResult()
        food_logs: list[Proposal] = []
        assistant = await self.llm_tools(messages, TOOL_DEFINITIONS, model=self.model)

        iterations = 0
        while assistant.get("tool_calls") and iterations < REASONING_MAX_ITERATIONS:
            iterations += 1
            messages.append(assistant)

            for call in assistant["tool_calls"]:
                name = call["function"]["name"]
                try:
                    args = json.loads(call["function"].get("arguments") or "{}")
                except json.JSONDecodeError:
                    args = {}
                result.tools_used.append(name)

                outcome = await self.tools.execute(name, args, user_id)
                payload = outcome.to_dict()
                # Repeated calls (several foods) accumulate instead of overwriting
                if name in result.data:
                    previous = result.data[name]
                    result.data[name] = (previous if isinstance(previous, list) else [previous]) + [payload]
                else:
                    result.data[name] = payload
                if outcome.ok:
                    proposal = proposal_from_result(payload)
                    if proposal and proposal.type == ActionKind.FOOD_LOG:
                        food_logs.append(proposal)
                    elif proposal:
                        result.proposal = proposal

                messages.append({
                    "role": "tool",
                    "tool_call_id": call.get("id"),
                    "content": json.dumps(payload, default=str),
                })

            assistant = await self.llm_tools(messages, TOOL_DEFINITIONS, model=self.model)

        # Food logs take priority; several are bundled into one confirmation
        if len(food_logs) == 1:
            result.proposal = food_logs[0]
        elif food_logs:
            result.proposal = Proposal(
                type=ActionKind.FOOD_LOG,
                id=new_proposal_id(),
                data={"items": [p.data for p in food_logs]},
            )

        if assistant.get("tool_calls"):
            logger.warning(f"Reasoning stopped after {iterations} tool iterations")
        result.reasoning = assistant.get("content") or ""
        return result


RESPONDER_PROMPT = """You are NutriLog, a friendly and professional AI nutrition assistant.
Keep responses concise, encouraging and helpful.

- If a proposal is present the UI shows a confirmation card. Do NOT repeat the food name,
  portion or numbers; just ask the user to confirm. Never say something was logged before
  the user confirms.
- If the data has confidence 'low', say the values are estimated.
- Never use bullet points for nutrition data; the UI handles that.
- If the intent is log_food but no proposal exists, ask for the missing detail."""


class Responder:
    def __init__(self, llm: Optional[TextCaller] = None, model: str = CHAT_MODEL):
        self.llm = llm or call_llm_async
        self.model = model

    async def respond(
        self,
        message: str,
        intent: str,
        reasoning: ReasoningResult,
        proposal: Optional[Proposal],
        history: list[dict],
    ) -> str:
        context = {
            "reasoning": reasoning.reasoning,
            "tools_used": reasoning.tools_used,
            "proposal": proposal.to_dict() if proposal else None,
        }
        messages = [{"role": "system", "content": RESPONDER_PROMPT}]
        messages.extend(
            {"role": m.get("role", "user"), "content": m.get("content", "")}
            for m in history[-5:]
        )
        messages.append({
            "role": "system",
            "content": f"Current Intent: {intent}. Data involved: {json.dumps(context, default=str)}",
        })
        messages.append({"role": "user", "content": message})

        reply = await self.llm(messages, model=self.model, max_tokens=500)
        return reply or reasoning.reasoning or "I'm here to help with your nutrition!"
