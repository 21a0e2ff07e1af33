"""
Tests for the per-user resource assignment queue.
"""

import asyncio

import pytest

from app.errors import LimitExceededError
from app.services.resource_queue import ResourceAssignmentQueue


class TestEnqueue:
    """Tests for ordering and results."""

    @pytest.mark.asyncio
    async def test_jobs_run_in_order(self):
        queue = ResourceAssignmentQueue(delay=0)
        order = []

        def job(n):
            async def run():
                await asyncio.sleep(0)
                order.append(n)
                return n
            return run

        results = await asyncio.gather(*(queue.enqueue("u1", "e1", job(n)) for n in range(5)))

        assert results == [0, 1, 2, 3, 4]
        assert order == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_job_error_propagates(self):
        queue = ResourceAssignmentQueue(delay=0)

        async def failing():
            raise ValueError("nope")

        with pytest.raises(ValueError):
            await queue.enqueue("u1", "e1", failing)

    @pytest.mark.asyncio
    async def test_full_queue_rejected(self):
        queue = ResourceAssignmentQueue(max_size=1, delay=0)
        gate = asyncio.Event()

        async def blocked():
            await gate.wait()
            return "done"

        first = asyncio.create_task(queue.enqueue("u1", "e1", blocked))
        await asyncio.sleep(0)
        second = asyncio.create_task(queue.enqueue("u1", "e1", blocked))
        await asyncio.sleep(0)

        with pytest.raises(LimitExceededError):
            await queue.enqueue("u1", "e1", blocked)

        gate.set()
        assert await first == "done"
        assert await second == "done"

    @pytest.mark.asyncio
    async def test_stale_job_times_out(self):
        # Every job is already past a negative timeout when picked up
        queue = ResourceAssignmentQueue(timeout=-1.0, delay=0)
        ran = []

        async def job():
            ran.append(True)

        with pytest.raises(TimeoutError, match="Assignment request timed out"):
            await queue.enqueue("u1", "e1", job)
        assert ran == []


class TestQueueAdmin:
    """Tests for status, clearing and expiry."""

    @pytest.mark.asyncio
    async def test_status_and_clear(self):
        queue = ResourceAssignmentQueue(delay=0)
        gate = asyncio.Event()

        async def blocked():
            await gate.wait()

        first = asyncio.create_task(queue.enqueue("u1", "e1", blocked))
        await asyncio.sleep(0)
        pending = asyncio.create_task(queue.enqueue("u1", "e1", blocked))
        await asyncio.sleep(0)

        status = queue.get_queue_status("u1", "e1")
        assert status["queue_size"] == 1
        assert status["is_processing"]
        assert queue.get_all_queue_stats()["total_queues"] == 1

        assert queue.clear_user_queue("u1", "e1") == 1
        with pytest.raises(RuntimeError, match="Queue cleared by system"):
            await pending

        gate.set()
        await first

    def test_status_of_unknown_key(self):
        queue = ResourceAssignmentQueue()
        assert queue.get_queue_status("x", "y") == {
            "queue_size": 0, "is_processing": False, "oldest_assignment": None,
        }

    @pytest.mark.asyncio
    async def test_cleanup_expired(self):
        queue = ResourceAssignmentQueue(timeout=30.0, delay=0)
        gate = asyncio.Event()

        async def blocked():
            await gate.wait()

        first = asyncio.create_task(queue.enqueue("u1", "e1", blocked))
        await asyncio.sleep(0)
        stale = asyncio.create_task(queue.enqueue("u1", "e1", blocked))
        await asyncio.sleep(0)

        queue._queues[queue.key("u1", "e1")].items[0].enqueued_at -= 60
        assert queue.cleanup_expired() == 1
        with pytest.raises(TimeoutError, match="Assignment expired"):
            await stale

        gate.set()
        await first
