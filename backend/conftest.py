"""
Shared fixtures: a temporary SQLite database and scripted stand-ins for the
LLM-backed collaborators
"""

import pytest

from nutrilog.db import NutritionDb
from nutrilog.models import IntentDecision, ReasoningResult
from nutrilog.nutrition import NutritionLookup
from nutrilog.orchestrator import Orchestrator
from nutrilog.recipes import RecipeBook
from nutrilog.store import InMemorySessionStore
from nutrilog.tools import ToolDispatch


FOODS = {
    "eggs": {"calories": 143, "protein_g": 12.6, "carbs_g": 0.7, "fat_total_g": 9.5},
    "bread": {"calories": 160, "protein_g": 6.0, "carbs_g": 30.0, "fat_total_g": 2.0, "fiber_g": 2.4},
    "banana": {"calories": 105, "protein_g": 1.3, "carbs_g": 27.0, "fat_total_g": 0.4, "sugar_g": 14.4},
    "peanut butter": {"calories": 190, "protein_g": 7.0, "carbs_g": 8.0, "fat_total_g": 16.0},
}


class FakeSpoonacular:
    """Answers from the FOODS table, 100 kcal of carbs for anything else"""

    enabled = True

    def __init__(self):
        self.calls = []

    async def lookup_food(self, food_name, portion="1 serving"):
        self.calls.append((food_name, portion))
        nutrition = FOODS.get(food_name.lower(), {"calories": 100, "carbs_g": 25.0})
        return {
            "food_name": food_name,
            "portion": portion,
            "source": "spoonacular",
            "confidence": "high",
            **nutrition,
        }


class ScriptedJson:
    """Stands in for call_llm_json_async, returning queued payloads in order"""

    def __init__(self, *payloads):
        self.payloads = list(payloads)
        self.calls = []

    async def __call__(self, messages, **kwargs):
        self.calls.append(messages)
        if not self.payloads:
            return {}
        return self.payloads.pop(0)


class ScriptedClassifier:
    def __init__(self, *decisions):
        self.decisions = list(decisions)
        self.calls = []

    async def classify(self, message, history):
        self.calls.append(message)
        if not self.decisions:
            return IntentDecision(intent="clarify")
        decision = self.decisions.pop(0)
        if isinstance(decision, Exception):
            raise decision
        return decision


class ScriptedReasoner:
    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    async def reason(self, user_id, message, intent, history, pending_action=None):
        self.calls.append({"message": message, "intent": intent, "pending_action": pending_action})
        if not self.results:
            return ReasoningResult(reasoning="Happy to help.")
        return self.results.pop(0)


class FakeResponder:
    def __init__(self, reply="Here you go!"):
        self.reply = reply
        self.calls = []

    async def respond(self, message, intent, reasoning, proposal, history):
        self.calls.append({"message": message, "intent": intent, "proposal": proposal})
        return self.reply


class CountingStore(InMemorySessionStore):
    """In-memory store that counts pending-action writes"""

    def __init__(self):
        super().__init__()
        self.saves = 0
        self.clears = 0

    async def save_pending_action(self, user_id, action):
        self.saves += 1
        await super().save_pending_action(user_id, action)

    async def clear_pending_action(self, user_id):
        self.clears += 1
        await super().clear_pending_action(user_id)


@pytest.fixture
def db(tmp_path):
    return NutritionDb(tmp_path / "nutrilog.db")


@pytest.fixture
def store():
    return CountingStore()


@pytest.fixture
def spoonacular():
    return FakeSpoonacular()


@pytest.fixture
def llm_json():
    return ScriptedJson()


@pytest.fixture
def lookup(spoonacular, llm_json):
    return NutritionLookup(spoonacular=spoonacular, llm_json=llm_json)


@pytest.fixture
def recipes(db, lookup, llm_json):
    return RecipeBook(db, lookup=lookup, llm_json=llm_json)


@pytest.fixture
def tools(db, recipes):
    return ToolDispatch(db, recipes)


@pytest.fixture
def classifier():
    return ScriptedClassifier()


@pytest.fixture
def reasoner():
    return ScriptedReasoner()


@pytest.fixture
def responder():
    return FakeResponder()


@pytest.fixture
def orchestrator(store, db, classifier, reasoner, responder, tools, recipes):
    return Orchestrator(
        store=store,
        db=db,
        classifier=classifier,
        reasoner=reasoner,
        responder=responder,
        tools=tools,
        recipes=recipes,
    )
