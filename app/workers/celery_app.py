"""
Celery application configuration.
"""

from celery import Celery
from celery.schedules import crontab

from app.config import settings

# Create Celery app
celery_app = Celery(
    "funnelflow",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "app.workers.maintenance",
    ],
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # Expired queue entries and cache sweeps
    "cleanup-expired-queue-entries": {
        "task": "app.workers.maintenance.cleanup_expired_entries",
        "schedule": crontab(minute="*/5"),
    },
    # Funnels stuck in "generating" after a crashed request
    "reset-stuck-generations": {
        "task": "app.workers.maintenance.reset_stuck_generations",
        "schedule": crontab(minute="*/10"),
    },
}
