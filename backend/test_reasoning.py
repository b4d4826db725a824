"""
Tests for the intent classifier, the tool-calling reasoner and the responder
"""

import asyncio
import json

from config import INTENT_HISTORY_WINDOW, REASONING_MAX_ITERATIONS
from conftest import ScriptedJson
from nutrilog.intent import IntentClassifier
from nutrilog.models import ActionKind, IntentDecision, PendingAction, Proposal, ReasoningResult
from nutrilog.reasoning import Reasoner, Responder


def tool_call(call_id, name, **args):
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": json.dumps(args)}}


class ScriptedTools:
    """Stands in for call_llm_with_tools_async"""

    def __init__(self, *replies, repeat=None):
        self.replies = list(replies)
        self.repeat = repeat
        self.calls = []

    async def __call__(self, messages, tools, **kwargs):
        self.calls.append(list(messages))
        if self.replies:
            return self.replies.pop(0)
        return self.repeat or {"role": "assistant", "content": "Done."}


def test_classifier_uses_recent_history():
    llm_json = ScriptedJson({"intent": "log_food", "confidence": "0.9", "food_items": ["eggs"], "portions": ["2"]})
    history = [{"role": "user", "content": f"message {i}"} for i in range(8)]

    decision = asyncio.run(IntentClassifier(llm_json=llm_json).classify("log 2 eggs", history))

    assert decision.intent == "log_food"
    assert decision.confidence == 0.9
    assert decision.food_items == ["eggs"]
    sent = llm_json.calls[0]
    assert len(sent) == INTENT_HISTORY_WINDOW + 2
    assert sent[1]["content"] == "message 3"
    assert sent[-1]["content"] == "log 2 eggs"


def test_classifier_tolerates_sparse_output():
    decision = asyncio.run(IntentClassifier(llm_json=ScriptedJson({})).classify("hmm", []))
    assert decision.intent == "clarify"
    assert decision.food_items == []


def test_reasoner_bundles_several_food_logs(tools):
    llm = ScriptedTools(
        {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                tool_call("c1", "lookup_nutrition", food_name="eggs", portion="2"),
                tool_call("c2", "propose_food_log", food_name="eggs", portion="2", nutrition={"calories": 143}),
                tool_call("c3", "propose_food_log", food_name="toast", portion="1 slice", nutrition={"calories": 80}),
            ],
        },
        {"role": "assistant", "content": "Shall I log both?"},
    )
    reasoner = Reasoner(tools, llm_tools=llm)

    result = asyncio.run(reasoner.reason("u1", "I had 2 eggs and toast", IntentDecision(intent="log_food"), []))

    assert result.tools_used == ["lookup_nutrition", "propose_food_log", "propose_food_log"]
    assert len(result.data["propose_food_log"]) == 2
    assert result.proposal.type == ActionKind.FOOD_LOG
    assert [item["food_name"] for item in result.proposal.data["items"]] == ["eggs", "toast"]
    assert result.reasoning == "Shall I log both?"

    # Tool outputs are fed back under their call ids
    tool_messages = [m for m in llm.calls[1] if m.get("role") == "tool"]
    assert [m["tool_call_id"] for m in tool_messages] == ["c1", "c2", "c3"]


def test_reasoner_single_goal_proposal(tools):
    llm = ScriptedTools(
        {"role": "assistant", "tool_calls": [
            tool_call("c1", "update_user_goal", nutrient="protein", target_value=150, unit="g"),
        ]},
        {"role": "assistant", "content": "Want me to set that?"},
    )

    result = asyncio.run(Reasoner(tools, llm_tools=llm).reason("u1", "protein goal 150g", None, []))

    assert result.proposal.type == ActionKind.GOAL_UPDATE
    assert result.proposal.data["nutrient"] == "protein_g"


def test_reasoner_stops_after_max_iterations(tools):
    looping = {"role": "assistant", "content": "", "tool_calls": [tool_call("c", "get_user_goals")]}
    llm = ScriptedTools(repeat=looping)

    result = asyncio.run(Reasoner(tools, llm_tools=llm).reason("u1", "goals?", None, []))

    assert len(llm.calls) == REASONING_MAX_ITERATIONS + 1
    assert result.proposal is None
    assert result.reasoning == ""


def test_reasoner_shows_pending_action_in_prompt(tools):
    llm = ScriptedTools()
    pending = PendingAction(ActionKind.FOOD_LOG, {"food_name": "pizza"})
    intent = IntentDecision(intent="query_nutrition", food_items=["pizza"])

    asyncio.run(Reasoner(tools, llm_tools=llm).reason("u1", "is that a lot?", intent, [], pending))

    prompt = llm.calls[0][-1]["content"]
    assert "[Intent: query_nutrition | Foods: pizza]" in prompt
    assert "[Pending Action: food_log" in prompt
    assert prompt.endswith("User: is that a lot?")


def test_responder_falls_back_to_reasoning_text():
    async def silent(messages, **kwargs):
        return ""

    reply = asyncio.run(Responder(llm=silent).respond(
        "hi", "greet", ReasoningResult(reasoning="Hello!"), None, [],
    ))

    assert reply == "Hello!"


def test_responder_sees_the_proposal():
    seen = []

    async def capture(messages, **kwargs):
        seen.append((messages, kwargs))
        return "Does this look right?"

    proposal = Proposal(ActionKind.FOOD_LOG, "prop_1", {"food_name": "eggs"})
    reply = asyncio.run(Responder(llm=capture).respond("log eggs", "log_food", ReasoningResult(), proposal, []))

    assert reply == "Does this look right?"
    messages, kwargs = seen[0]
    assert kwargs["max_tokens"] == 500
    assert '"prop_1"' in messages[-2]["content"]
