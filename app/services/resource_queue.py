"""
Resource assignment queue.

Assignments of resources to funnels are serialised per (user, experience)
so concurrent requests cannot both pass the per-funnel limit checks.
Each key gets a FIFO drained by a single asyncio task.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from app.errors import LimitExceededError

logger = logging.getLogger(__name__)

MAX_QUEUE_SIZE = 50
QUEUE_TIMEOUT = 30.0
PROCESSING_DELAY = 0.1


@dataclass
class _PendingAssignment:
    job: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    enqueued_at: float = field(default_factory=time.monotonic)


@dataclass
class _UserQueue:
    items: Deque[_PendingAssignment] = field(default_factory=deque)
    is_processing: bool = False
    worker: Optional[asyncio.Task] = None


class ResourceAssignmentQueue:
    """Per-key FIFO of pending assignment jobs."""

    def __init__(
        self,
        max_size: int = MAX_QUEUE_SIZE,
        timeout: float = QUEUE_TIMEOUT,
        delay: float = PROCESSING_DELAY,
    ):
        self.max_size = max_size
        self.timeout = timeout
        self.delay = delay
        self._queues: Dict[str, _UserQueue] = {}

    @staticmethod
    def key(user_id: Any, experience_id: Any) -> str:
        return f"{user_id}:{experience_id}"

    async def enqueue(
        self,
        user_id: Any,
        experience_id: Any,
        job: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Queue job and wait for its result."""
        queue_key = self.key(user_id, experience_id)
        queue = self._queues.setdefault(queue_key, _UserQueue())

        if len(queue.items) >= self.max_size:
            raise LimitExceededError("Assignment queue is full. Please try again later.")

        future = asyncio.get_running_loop().create_future()
        queue.items.append(_PendingAssignment(job=job, future=future))

        if queue.worker is None or queue.worker.done():
            queue.worker = asyncio.create_task(self._process(queue_key, queue))

        return await future

    async def _process(self, queue_key: str, queue: _UserQueue) -> None:
        queue.is_processing = True
        try:
            while queue.items:
                pending = queue.items.popleft()
                if pending.future.done():
                    continue

                if time.monotonic() - pending.enqueued_at > self.timeout:
                    pending.future.set_exception(TimeoutError("Assignment request timed out"))
                    continue

                try:
                    result = await pending.job()
                except Exception as e:
                    if not pending.future.done():
                        pending.future.set_exception(e)
                else:
                    if not pending.future.done():
                        pending.future.set_result(result)

                if queue.items:
                    await asyncio.sleep(self.delay)
        finally:
            queue.is_processing = False
            logger.debug(f"Assignment queue {queue_key} drained")

    def get_queue_status(self, user_id: Any, experience_id: Any) -> Dict[str, Any]:
        queue = self._queues.get(self.key(user_id, experience_id))
        if not queue:
            return {"queue_size": 0, "is_processing": False, "oldest_assignment": None}
        oldest = queue.items[0].enqueued_at if queue.items else None
        return {
            "queue_size": len(queue.items),
            "is_processing": queue.is_processing,
            "oldest_assignment": round(time.monotonic() - oldest, 3) if oldest is not None else None,
        }

    def clear_user_queue(self, user_id: Any, experience_id: Any) -> int:
        """Fail every pending job of the key. Returns how many were cleared."""
        queue = self._queues.get(self.key(user_id, experience_id))
        if not queue:
            return 0
        cleared = 0
        while queue.items:
            pending = queue.items.popleft()
            if not pending.future.done():
                pending.future.set_exception(RuntimeError("Queue cleared by system"))
                cleared += 1
        return cleared

    def get_all_queue_stats(self) -> Dict[str, int]:
        return {
            "total_queues": len(self._queues),
            "total_assignments": sum(len(q.items) for q in self._queues.values()),
            "processing_queues": sum(1 for q in self._queues.values() if q.is_processing),
        }

    def cleanup_expired(self) -> int:
        """Fail jobs waiting longer than the timeout and drop idle empty queues."""
        now = time.monotonic()
        expired = 0

        for queue_key, queue in list(self._queues.items()):
            kept: Deque[_PendingAssignment] = deque()
            for pending in queue.items:
                if now - pending.enqueued_at > self.timeout:
                    if not pending.future.done():
                        pending.future.set_exception(TimeoutError("Assignment expired"))
                    expired += 1
                else:
                    kept.append(pending)
            queue.items = kept

            if not queue.items and not queue.is_processing:
                del self._queues[queue_key]

        if expired:
            logger.info(f"Expired {expired} queued assignments")
        return expired


# Process-wide queue
assignment_queue = ResourceAssignmentQueue()
