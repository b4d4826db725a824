"""
Conversation Data Model
Sessions, pending actions, intent decisions and turn input/output types
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)


class ActionKind(str, Enum):
    """Kinds of writes that must be confirmed before they are committed"""
    FOOD_LOG = "food_log"
    RECIPE_LOG = "recipe_log"
    RECIPE_SAVE = "recipe_save"
    GOAL_UPDATE = "goal_update"
    RECIPE_SELECTION = "recipe_selection"
    # Stored type not recognized on load
    UNKNOWN = "unknown"


class Topic(str, Enum):
    FOOD = "food"
    RECIPE = "recipe"
    GOALS = "goals"
    GENERAL = "general"


@dataclass
class PendingAction:
    """The single in-flight proposal awaiting the user's confirmation"""
    type: ActionKind
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": self.type.value, "data": self.data}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["PendingAction"]:
        if not data or not data.get("type"):
            return None
        try:
            kind = ActionKind(data["type"])
        except ValueError:
            logger.warning(f"Unrecognized pending action type: {data['type']}")
            kind = ActionKind.UNKNOWN
        return cls(type=kind, data=data.get("data") or {})


@dataclass
class ContextBuffer:
    """Short rolling memory of what the conversation is about"""
    recent_foods: list[str] = field(default_factory=list)
    last_topic: Optional[Topic] = None

    def to_dict(self) -> dict:
        return {
            "recent_foods": self.recent_foods,
            "last_topic": self.last_topic.value if self.last_topic else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ContextBuffer":
        if not data:
            return cls()
        topic = data.get("last_topic")
        return cls(
            recent_foods=list(data.get("recent_foods") or []),
            last_topic=Topic(topic) if topic else None,
        )


@dataclass
class Session:
    """One user's conversation state, loaded at turn start"""
    user_id: str
    session_id: str
    pending_action: Optional[PendingAction] = None
    context: dict = field(default_factory=dict)
    buffer: ContextBuffer = field(default_factory=ContextBuffer)


@dataclass
class IntentDecision:
    intent: str
    confidence: float = 0.0
    food_items: list[str] = field(default_factory=list)
    portions: list[str] = field(default_factory=list)
    recipe_text: Optional[str] = None
    entities: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "IntentDecision":
        try:
            confidence = float(data.get("confidence") or 0)
        except (TypeError, ValueError):
            confidence = 0.0
        return cls(
            intent=str(data.get("intent") or "clarify"),
            confidence=confidence,
            food_items=[str(f) for f in data.get("food_items") or []],
            portions=[str(p) for p in data.get("portions") or []],
            recipe_text=data.get("recipe_text") or None,
            entities=[str(e) for e in data.get("entities") or []],
        )

    def to_dict(self) -> dict:
        return {
            "intent": self.intent,
            "confidence": self.confidence,
            "food_items": self.food_items,
            "portions": self.portions,
            "recipe_text": self.recipe_text,
            "entities": self.entities,
        }


@dataclass
class Proposal:
    """A write the assistant is offering to make this turn"""
    type: ActionKind
    id: str
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": self.type.value, "id": self.id, "data": self.data}

    def to_pending_action(self) -> PendingAction:
        return PendingAction(type=self.type, data=self.data)


@dataclass
class ReasoningResult:
    reasoning: str = ""
    proposal: Optional[Proposal] = None
    tools_used: list[str] = field(default_factory=list)
    data: dict = field(default_factory=dict)


@dataclass
class ConfirmationDirectives:
    """Optional fields a confirmation reply can carry, e.g. 'Confirm log portion: 2 name: Chili'"""
    choice: Optional[str] = None
    portion: Optional[str] = None
    custom_name: Optional[str] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in {
            "choice": self.choice,
            "portion": self.portion,
            "custom_name": self.custom_name,
        }.items() if v}


@dataclass
class TurnRequest:
    user_id: str
    message: str
    session_id: str = "default"
    chat_history: list[dict] = field(default_factory=list)
    timezone: str = "UTC"


@dataclass
class TurnResult:
    """Wire response of one turn"""
    status: str
    message: str
    response_type: str
    data: Optional[dict] = None
    steps: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        result = {
            "status": self.status,
            "message": self.message,
            "response_type": self.response_type,
            "steps": self.steps,
        }
        if self.data is not None:
            result["data"] = self.data
        return result
