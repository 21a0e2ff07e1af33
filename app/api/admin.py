"""
Admin Endpoints.
Operational views guarded by the X-Admin-Key header.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends

from app.api.deps import get_admin_user
from app.services.analytics_service import invalidate_analytics_cache
from app.services.resource_queue import assignment_queue

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/queues")
async def queue_stats(_: str = Depends(get_admin_user)):
    """Resource assignment queue stats for this process."""
    return {"status": "success", **assignment_queue.get_all_queue_stats()}


@router.delete("/cache")
async def clear_analytics_cache(
    match: Optional[str] = None,
    _: str = Depends(get_admin_user),
):
    """Drop cached analytics entries whose key contains match (all when empty)."""
    removed = invalidate_analytics_cache(match or "")
    logger.info(f"Admin cleared {removed} analytics cache entries")
    return {"status": "success", "removed": removed}
