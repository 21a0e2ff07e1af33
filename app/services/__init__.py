"""Services package."""

from app.services.ai_service import AIService
from app.services.analytics_service import AnalyticsService
from app.services.funnel_service import FunnelService
from app.services.livechat_service import LiveChatService
from app.services.resource_queue import ResourceAssignmentQueue, assignment_queue
from app.services.resource_service import ResourceService
from app.services.tracking_service import TrackingService
from app.services.user_context_service import AuthenticatedUser, UserContextService
from app.services.whop_service import WhopService

__all__ = [
    "AIService",
    "AnalyticsService",
    "FunnelService",
    "LiveChatService",
    "ResourceAssignmentQueue",
    "assignment_queue",
    "ResourceService",
    "TrackingService",
    "AuthenticatedUser",
    "UserContextService",
    "WhopService",
]
