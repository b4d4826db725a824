"""
NutriLog Core Module
Conversation orchestration for the nutrition logging assistant
"""

from nutrilog.llm import LLMError, RateLimitError, APIError
from nutrilog.models import ActionKind, PendingAction, Session, TurnRequest, TurnResult
from nutrilog.nutrients import resolve_nutrient_key
from nutrilog.orchestrator import Orchestrator, create_orchestrator

__all__ = [
    "LLMError",
    "RateLimitError",
    "APIError",
    "ActionKind",
    "PendingAction",
    "Session",
    "TurnRequest",
    "TurnResult",
    "resolve_nutrient_key",
    "Orchestrator",
    "create_orchestrator",
]
