"""Funnel graph model and conversation engine."""

from app.funnel.states import StageName, ResourceCategory, ResourceType, ConversationPhase
from app.funnel.flow import (
    available_offers,
    detect_conversation_phase,
    validate_and_repair_flow,
    validate_resource_placement,
)

__all__ = [
    "StageName",
    "ResourceCategory",
    "ResourceType",
    "ConversationPhase",
    "available_offers",
    "detect_conversation_phase",
    "validate_and_repair_flow",
    "validate_resource_placement",
]
