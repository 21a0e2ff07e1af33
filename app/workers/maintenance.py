"""
Maintenance Worker.

Periodic housekeeping: expired queue entries, cache sweeps, and funnels
left in the "generating" state.
"""

import logging

from app.config import settings
from app.workers.celery_app import celery_app
from app.database import get_db_context
from app.logging_config import configure_logging

logger = logging.getLogger(__name__)

configure_logging(service=f"{settings.app_name}-worker")

STUCK_GENERATION_MINUTES = 15


@celery_app.task
def cleanup_expired_entries():
    """
    Expire stale assignment queue entries and sweep the in-process caches
    of this worker.
    """
    from app.services import analytics_service, user_context_service
    from app.services.resource_queue import assignment_queue

    expired = assignment_queue.cleanup_expired()
    contexts = user_context_service.cleanup_expired_cache()
    analytics = analytics_service.cleanup_expired_cache()

    logger.info(f"Cleanup: {expired} queue entries, {contexts} user contexts, {analytics} analytics entries")
    return {"success": True, "queue": expired, "user_contexts": contexts, "analytics": analytics}


@celery_app.task(bind=True, max_retries=3)
def reset_stuck_generations(self):
    """
    Mark funnels generating for longer than 15 minutes as failed.
    """
    import asyncio

    async def run():
        async with get_db_context() as db:
            from app.services.funnel_service import FunnelService

            service = FunnelService(db)
            return await service.reset_stuck_generations(STUCK_GENERATION_MINUTES)

    try:
        count = asyncio.run(run())
        logger.info(f"Reset {count} stuck generations")
        return {"success": True, "count": count}
    except Exception as e:
        logger.error(f"Stuck generation reset failed: {e}")
        self.retry(exc=e, countdown=60)
