"""
Tests for the periodic maintenance tasks.
"""

from app.workers.celery_app import celery_app
from app.workers.maintenance import cleanup_expired_entries


class TestBeatSchedule:
    """Tests for the Celery beat configuration."""

    def test_tasks_scheduled(self):
        tasks = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
        assert tasks == {
            "app.workers.maintenance.cleanup_expired_entries",
            "app.workers.maintenance.reset_stuck_generations",
        }


class TestCleanupTask:
    """Tests for the cleanup task body."""

    def test_cleanup_runs_inline(self):
        result = cleanup_expired_entries()

        assert result["success"]
        assert result["queue"] == 0
        assert result["user_contexts"] == 0
        assert result["analytics"] == 0
