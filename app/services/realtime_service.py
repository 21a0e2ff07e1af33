"""
Realtime Service - fire-and-forget event publishing over Redis pub/sub.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from app.config import settings
from app.redis import RedisClient

logger = logging.getLogger(__name__)


def build_event(experience_id: Any, event_type: str, payload: Optional[Dict[str, Any]] = None) -> str:
    return json.dumps(
        {
            "type": event_type,
            "experience_id": str(experience_id),
            "payload": payload or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
        default=str,
    )


async def publish(experience_id: Any, event_type: str, payload: Optional[Dict[str, Any]] = None) -> bool:
    """Publish an event. Never raises; returns False when the publish failed."""
    try:
        client = RedisClient.get_client()
        await client.publish(settings.realtime_channel, build_event(experience_id, event_type, payload))
        return True
    except Exception as e:
        logger.warning(f"Realtime publish of {event_type} failed: {e}")
        return False
