import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Set

from config import MAX_CONCURRENT_DOWNLOADS

logger = logging.getLogger(__name__)

# Called at promotion time; returns the awaitable that performs the job
Task = Callable[[], Awaitable[None]]
PositionsCallback = Callable[[List[str]], None]


@dataclass
class QueueEntry:
    job_id: str
    task: Task
    added_at: float = field(default_factory=time.time)


class AdmissionQueue:
    """
    FIFO admission with a concurrency ceiling.

    All mutation happens on the event loop thread, so checking the active count
    and popping the head cannot interleave with another promotion.
    """

    def __init__(self, max_concurrent: int = MAX_CONCURRENT_DOWNLOADS,
                 on_positions_changed: Optional[PositionsCallback] = None):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.on_positions_changed = on_positions_changed
        self._entries: List[QueueEntry] = []
        self._running: Set[asyncio.Task] = set()
        self._active = 0

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def pending(self) -> List[str]:
        return [entry.job_id for entry in self._entries]

    def __len__(self) -> int:
        return len(self._entries)

    def position(self, job_id: str) -> Optional[int]:
        for index, entry in enumerate(self._entries):
            if entry.job_id == job_id:
                return index + 1
        return None

    def submit(self, job_id: str, task: Task) -> int:
        """Append a job and try to start it. Returns its 1-based position at insertion."""
        self._entries.append(QueueEntry(job_id, task))
        position = len(self._entries)
        logger.info(f"Job {job_id[:8]} queued (position {position})")
        self.promote()
        return position

    def cancel(self, job_id: str) -> bool:
        for index, entry in enumerate(self._entries):
            if entry.job_id == job_id:
                del self._entries[index]
                self._notify_positions()
                return True
        return False

    def promote(self):
        while self._active < self.max_concurrent and self._entries:
            entry = self._entries.pop(0)
            self._active += 1
            self._notify_positions()
            logger.info(f"Starting job {entry.job_id[:8]} (active: {self._active}/{self.max_concurrent})")

            try:
                task = asyncio.ensure_future(entry.task())
            except Exception as e:
                logger.error(f"Job {entry.job_id[:8]} could not be started: {e}")
                self._active -= 1
                continue
            self._running.add(task)
            task.add_done_callback(lambda t, job_id=entry.job_id: self._on_done(job_id, t))

    def clear(self) -> List[str]:
        """Drop every queued entry and return their job ids, in order."""
        job_ids = self.pending
        self._entries.clear()
        return job_ids

    async def shutdown(self):
        """Drop queued entries and cancel running tasks."""
        self._entries.clear()
        tasks = list(self._running)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _on_done(self, job_id: str, task: asyncio.Task):
        self._running.discard(task)
        self._active -= 1
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Job {job_id[:8]} error: {task.exception()}")
        self.promote()

    def _notify_positions(self):
        if self.on_positions_changed and self._entries:
            self.on_positions_changed(self.pending)
