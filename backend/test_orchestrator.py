"""
Turn-level tests: fast paths, direct routes, the reasoning fallback and the
response contract
"""

import asyncio
import json

import pytest

from config import MAX_MESSAGE_CHARS, TRUNCATION_MARKER
from nutrilog.models import ActionKind, IntentDecision, PendingAction, Proposal, ReasoningResult, TurnRequest
from nutrilog.orchestrator import Orchestrator
from nutrilog.store import SQLiteSessionStore

RECIPE_MESSAGE = "Here is my recipe for banana toast: 2 slices bread, 1 banana, 2 tbsp peanut butter"

PARSED_RECIPE = {
    "recipe_name": "Banana Toast",
    "servings": 2,
    "ingredients": [
        {"name": "bread", "quantity": 2, "unit": "slices"},
        {"name": "banana", "quantity": 1, "unit": ""},
        {"name": "peanut butter", "quantity": 2, "unit": "tbsp"},
    ],
}


def turn(orchestrator, message, user_id="u1", **kwargs):
    async def run():
        result = await orchestrator.process_turn(TurnRequest(user_id=user_id, message=message, **kwargs))
        await orchestrator.drain()
        return result
    return asyncio.run(run())


def test_closing_skips_classifier(orchestrator, classifier):
    result = turn(orchestrator, "thanks")

    assert result.status == "success"
    assert result.response_type == "chat_response"
    assert result.steps == ["Closing recognized"]
    assert classifier.calls == []


def test_log_then_confirm(orchestrator, classifier, store, db):
    classifier.decisions.append(IntentDecision(intent="log_food", food_items=["eggs"], portions=["2"]))

    proposed = turn(orchestrator, "log 2 eggs")

    assert proposed.response_type == "confirmation_food_log"
    assert proposed.data["nutrition"][0]["food_name"] == "eggs"
    assert proposed.data["nutrition"][0]["calories"] == 143
    assert store.peek_pending_action("u1").type == ActionKind.FOOD_LOG

    confirmed = turn(orchestrator, "confirm")

    assert confirmed.response_type == "food_logged"
    assert store.peek_pending_action("u1") is None
    assert len(classifier.calls) == 1
    rows = asyncio.run(db.get_food_log("u1"))
    assert rows[0]["food_name"] == "eggs"
    assert rows[0]["protein_g"] == 12.6


def test_cancel_clears_pending(orchestrator, classifier, store):
    asyncio.run(store.save_pending_action("u1", PendingAction(ActionKind.FOOD_LOG, {"food_name": "pizza"})))

    result = turn(orchestrator, "cancel")

    assert result.response_type == "action_cancelled"
    assert store.peek_pending_action("u1") is None
    assert classifier.calls == []


def test_new_log_request_is_not_a_confirmation(orchestrator, classifier, store):
    asyncio.run(store.save_pending_action("u1", PendingAction(ActionKind.FOOD_LOG, {"food_name": "pizza"})))
    classifier.decisions.append(IntentDecision(intent="log_food", food_items=["banana"], portions=["1"]))

    result = turn(orchestrator, "log a banana")

    assert result.response_type == "confirmation_food_log"
    assert result.data["nutrition"][0]["food_name"] == "banana"
    assert store.peek_pending_action("u1").data["food_name"] == "banana"


def test_confirm_intent_with_foods_goes_to_reasoning(orchestrator, classifier, reasoner, store):
    asyncio.run(store.save_pending_action("u1", PendingAction(ActionKind.FOOD_LOG, {"food_name": "pizza"})))
    classifier.decisions.append(IntentDecision(intent="confirm", food_items=["apple"]))

    result = turn(orchestrator, "sure, and an apple too")

    assert len(reasoner.calls) == 1
    assert reasoner.calls[0]["pending_action"].type == ActionKind.FOOD_LOG
    # Nothing was committed, the old card is still up
    assert result.response_type == "confirmation_food_log"
    assert store.peek_pending_action("u1").data["food_name"] == "pizza"


def test_confirm_intent_resolves_pending(orchestrator, classifier, store, db):
    asyncio.run(store.save_pending_action("u1", PendingAction(ActionKind.FOOD_LOG, {
        "food_name": "pizza", "calories": 285,
    })))
    classifier.decisions.append(IntentDecision(intent="confirm"))

    result = turn(orchestrator, "sure go ahead")

    assert result.response_type == "food_logged"
    assert store.peek_pending_action("u1") is None


def test_continuity_reattaches_pending_without_rewrite(orchestrator, classifier, reasoner, store):
    flow_state = {
        "step": "ready_to_save",
        "parsed": {"recipe_name": "Banana Toast", "servings": 2},
        "batch_nutrition": {"calories": 455},
        "per_serving_nutrition": {"calories": 228},
    }
    asyncio.run(store.save_pending_action("u1", PendingAction(ActionKind.RECIPE_SAVE, {"flow_state": flow_state})))
    store.saves = 0
    classifier.decisions.append(IntentDecision(intent="query_nutrition"))
    reasoner.results.append(ReasoningResult(reasoning="About 228 kcal per serving."))

    result = turn(orchestrator, "how many calories is that per serving?")

    assert result.response_type == "confirmation_recipe_save"
    assert result.data["proposal"]["type"] == "recipe_save"
    assert result.data["parsed"]["recipe_name"] == "Banana Toast"
    assert store.saves == 0


def test_new_reasoning_proposal_replaces_pending(orchestrator, classifier, reasoner, store):
    asyncio.run(store.save_pending_action("u1", PendingAction(ActionKind.FOOD_LOG, {"food_name": "pizza"})))
    classifier.decisions.append(IntentDecision(intent="update_goals"))
    reasoner.results.append(ReasoningResult(
        proposal=Proposal(ActionKind.GOAL_UPDATE, "prop_goal", {
            "nutrient": "protein_g", "target_value": 150, "unit": "g", "goal_type": "goal",
        }),
        tools_used=["get_user_goals", "update_user_goal"],
    ))

    result = turn(orchestrator, "set my protein goal to 150g")

    assert result.response_type == "confirmation_goal_update"
    assert result.data["proposal"]["id"] == "prop_goal"
    assert "Checking your nutrition goals..." in result.steps
    assert store.peek_pending_action("u1").type == ActionKind.GOAL_UPDATE


def test_recipe_text_bypasses_classifier(orchestrator, classifier, llm_json, store, db):
    llm_json.payloads.append(PARSED_RECIPE)

    proposed = turn(orchestrator, RECIPE_MESSAGE)

    assert classifier.calls == []
    assert proposed.response_type == "confirmation_recipe_save"
    assert proposed.data["is_match"] is False
    assert proposed.data["parsed"]["nutrition_data"]["calories"] == 455
    assert proposed.data["preview"].endswith("...")
    assert store.peek_pending_action("u1").type == ActionKind.RECIPE_SAVE

    saved = turn(orchestrator, "yes")

    assert saved.response_type == "recipe_saved"
    recipes = asyncio.run(db.list_recipes("u1"))
    assert recipes[0]["recipe_name"] == "Banana Toast"
    assert recipes[0]["per_serving_nutrition"]["calories"] == 228


def test_saved_recipe_match_offers_duplicate_choices(orchestrator, classifier, store, db):
    asyncio.run(db.save_recipe("u1", {"recipe_name": "Chili", "servings": 4, "nutrition_data": {"calories": 800}}))
    classifier.decisions.append(IntentDecision(intent="log_food", food_items=["chili"], portions=["1 bowl"]))

    result = turn(orchestrator, "I had chili")

    assert result.response_type == "confirmation_recipe_save"
    assert result.data["is_match"] is True
    assert result.data["existing_recipe_name"] == "Chili"
    assert store.peek_pending_action("u1").data["portion"] == "1 bowl"


def test_several_saved_recipes_offer_selection(orchestrator, classifier, store, db):
    async def save():
        await db.save_recipe("u1", {"recipe_name": "Chicken Curry", "servings": 2, "nutrition_data": {"calories": 900}})
        await db.save_recipe("u1", {"recipe_name": "Chicken Soup", "servings": 3, "nutrition_data": {"calories": 600}})
    asyncio.run(save())
    classifier.decisions.append(IntentDecision(intent="log_recipe", food_items=["chicken"]))

    offered = turn(orchestrator, "log my chicken")

    assert offered.response_type == "recipe_selection"
    assert [r["recipe_name"] for r in offered.data["recipes"]] == ["Chicken Curry", "Chicken Soup"]
    assert offered.data["recipes"][0]["calories_per_serving"] == 450
    assert "full_recipe" not in offered.data["recipes"][0]

    retried = turn(orchestrator, "3")

    assert retried.response_type == "error"
    assert "(1-2)" in retried.message
    assert store.peek_pending_action("u1").type == ActionKind.RECIPE_SELECTION

    picked = turn(orchestrator, "soup")

    assert picked.response_type == "confirmation_recipe_save"
    assert picked.data["existing_recipe_name"] == "Chicken Soup"
    assert store.peek_pending_action("u1").type == ActionKind.RECIPE_SAVE
    assert len(classifier.calls) == 1


def test_greet(orchestrator, classifier):
    classifier.decisions.append(IntentDecision(intent="greet"))

    result = turn(orchestrator, "hello there")

    assert result.response_type == "chat_response"
    assert "NutriLog" in result.message


def test_unexpected_error_becomes_fatal_error(orchestrator, classifier):
    classifier.decisions.append(RuntimeError("classifier offline"))

    result = turn(orchestrator, "what should I eat?")

    assert result.status == "error"
    assert result.response_type == "fatal_error"
    assert "classifier offline" in result.message
    assert result.steps == ["Analyzing intent..."]


def test_long_message_is_truncated_for_services(orchestrator, classifier, responder):
    message = "I ate " + "x" * 3000
    classifier.decisions.append(IntentDecision(intent="off_topic"))

    turn(orchestrator, message)

    sent = classifier.calls[0]
    assert len(sent) == MAX_MESSAGE_CHARS + len(TRUNCATION_MARKER)
    assert sent.endswith(TRUNCATION_MARKER)
    assert responder.calls[0]["message"] == sent


def test_reasoning_turn_updates_context_and_logs_execution(orchestrator, classifier, store, db):
    classifier.decisions.append(IntentDecision(intent="dietary_advice", entities=["salmon", "dinner"]))

    result = turn(orchestrator, "is salmon good for dinner?", session_id="s9", timezone="Europe/Berlin")

    assert result.response_type == "chat_response"
    assert result.data["proposal"] is None
    session = asyncio.run(store.get_session("u1", "s9"))
    assert session.context["intent"] == "dietary_advice"
    assert session.buffer.recent_foods == ["salmon"]
    assert session.buffer.last_topic.value == "food"

    executions = asyncio.run(db.get_executions("u1"))
    assert executions[0]["session_id"] == "s9"
    assert executions[0]["timezone"] == "Europe/Berlin"
    assert executions[0]["response_type"] == "chat_response"


def test_steps_are_streamed_in_order(orchestrator, classifier):
    classifier.decisions.append(IntentDecision(intent="off_topic"))
    streamed = []

    async def run():
        return await orchestrator.process_turn(TurnRequest(user_id="u1", message="tell me a joke"), on_step=streamed.append)

    result = asyncio.run(run())

    assert streamed == result.steps
    assert streamed[0] == "Analyzing intent..."
    assert streamed[-1] == "Formatting response..."


@pytest.mark.parametrize("reply", ["ok", "okay", "sure", "right", "save", "Yes.", "yes!", "yes log", "yes save"])
def test_short_agreement_confirms_without_classifier(orchestrator, classifier, store, reply):
    asyncio.run(store.save_pending_action("u1", PendingAction(ActionKind.FOOD_LOG, {
        "food_name": "pizza", "calories": 285,
    })))

    result = turn(orchestrator, reply)

    assert result.response_type == "food_logged"
    assert classifier.calls == []
    assert store.peek_pending_action("u1") is None


def test_picker_number_selects_without_classifier(orchestrator, classifier, store, db):
    async def save():
        await db.save_recipe("u1", {"recipe_name": "Chicken Curry", "servings": 2, "nutrition_data": {"calories": 900}})
        await db.save_recipe("u1", {"recipe_name": "Chicken Soup", "servings": 3, "nutrition_data": {"calories": 600}})
    asyncio.run(save())
    classifier.decisions.append(IntentDecision(intent="log_recipe", food_items=["chicken"], portions=["1 bowl"]))
    turn(orchestrator, "log my chicken")

    picked = turn(orchestrator, "2")

    assert picked.response_type == "confirmation_recipe_save"
    assert picked.steps == ["Processing your selection..."]
    assert picked.data["existing_recipe_name"] == "Chicken Soup"
    assert len(classifier.calls) == 1
    pending = store.peek_pending_action("u1")
    assert pending.type == ActionKind.RECIPE_SAVE
    assert pending.data["portion"] == "1 bowl"


def test_query_nutrition_uses_direct_lookup(orchestrator, classifier, reasoner, store):
    classifier.decisions.append(IntentDecision(intent="query_nutrition", food_items=["banana"], portions=["1 medium"]))

    result = turn(orchestrator, "how many calories in a banana?")

    assert result.response_type == "confirmation_food_log"
    assert result.data["nutrition"][0]["calories"] == 105
    assert result.data["nutrition"][0]["portion"] == "1 medium"
    assert "Looking up nutrition..." in result.steps
    assert reasoner.calls == []
    assert store.peek_pending_action("u1").type == ActionKind.FOOD_LOG


def sqlite_orchestrator(tmp_path, db, classifier, reasoner, responder, tools, recipes):
    store = SQLiteSessionStore(tmp_path / "sessions.db")
    conn = store.get_conn()
    conn.execute(
        "INSERT INTO user_sessions (user_id, session_id, pending_action, agent_context, buffer, updated_at) "
        "VALUES ('u1', 'default', ?, '{}', '{}', '')",
        (json.dumps({"type": "bulk_goal_update", "data": {}}),),
    )
    conn.commit()
    conn.close()
    orchestrator = Orchestrator(
        store=store, db=db, classifier=classifier, reasoner=reasoner,
        responder=responder, tools=tools, recipes=recipes,
    )
    return orchestrator, store


@pytest.mark.parametrize("reply, response_type", [("cancel", "action_cancelled"), ("yes", "action_confirmed")])
def test_unrecognized_pending_type_does_not_block_the_user(
    tmp_path, db, classifier, reasoner, responder, tools, recipes, reply, response_type,
):
    orchestrator, store = sqlite_orchestrator(tmp_path, db, classifier, reasoner, responder, tools, recipes)

    result = turn(orchestrator, reply)

    assert result.status == "success"
    assert result.response_type == response_type
    assert asyncio.run(store.get_session("u1", "s1")).pending_action is None

    classifier.decisions.append(IntentDecision(intent="greet"))
    assert turn(orchestrator, "hello").response_type == "chat_response"


def test_user_lock_is_released_after_turn(orchestrator):
    turn(orchestrator, "thanks")

    assert "u1" not in orchestrator._locks
