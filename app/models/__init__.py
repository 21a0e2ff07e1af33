"""Models package for database models."""

from app.models.experience import Experience
from app.models.user import User
from app.models.funnel import Funnel
from app.models.resource import Resource
from app.models.funnel_resource import FunnelResource
from app.models.conversation import Conversation
from app.models.message import Message
from app.models.funnel_interaction import FunnelInteraction
from app.models.funnel_analytics import FunnelAnalytics
from app.models.tracking_link import TrackingLink
from app.models.webhook_event import WebhookEvent

__all__ = [
    "Experience",
    "User",
    "Funnel",
    "Resource",
    "FunnelResource",
    "Conversation",
    "Message",
    "FunnelInteraction",
    "FunnelAnalytics",
    "TrackingLink",
    "WebhookEvent",
]
