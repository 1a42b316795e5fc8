import asyncio
import dataclasses
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from schemas.models import JobStatus, ProgressRecord, can_transition
from core.errors import InvalidTransitionError
from core.scheduler import KeyedScheduler
from config import PROGRESS_CLEANUP_S, SUBSCRIBER_QUEUE_SIZE

logger = logging.getLogger(__name__)

# A sink receives full snapshots and raises when its connection is gone
Sink = Callable[[Dict[str, Any]], None]


class Broadcaster:
    """Per-job sets of live sinks. Failing sinks are dropped after each push."""

    def __init__(self):
        self._subscribers: Dict[str, List[Sink]] = {}

    def add(self, job_id: str, sink: Sink):
        self._subscribers.setdefault(job_id, []).append(sink)

    def discard(self, job_id: str, sink: Sink):
        sinks = self._subscribers.get(job_id)
        if not sinks:
            return
        if sink in sinks:
            sinks.remove(sink)
        if not sinks:
            del self._subscribers[job_id]

    def drop(self, job_id: str):
        self._subscribers.pop(job_id, None)

    def clear(self):
        self._subscribers.clear()

    def push(self, job_id: str, snapshot: Dict[str, Any]):
        sinks = self._subscribers.get(job_id)
        if not sinks:
            return
        dead = []
        for sink in list(sinks):
            try:
                sink(snapshot)
            except Exception as e:
                logger.debug(f"Dropping subscriber of {job_id[:8]}: {e!r}")
                dead.append(sink)
        for sink in dead:
            self.discard(job_id, sink)

    def count(self, job_id: Optional[str] = None) -> int:
        if job_id is not None:
            return len(self._subscribers.get(job_id, ()))
        return sum(len(s) for s in self._subscribers.values())


class ProgressStore:
    """
    Latest progress snapshot per job, fanned out to subscribers on every write.

    Updates merge the given fields over the current record and stamp it with the
    current time. Status changes must follow the transition table, and progress
    never moves backwards while the job is still running. Once a job reaches a
    terminal status its record and subscribers are dropped after ``ttl`` seconds.
    """

    def __init__(self, ttl: float = PROGRESS_CLEANUP_S, broadcaster: Optional[Broadcaster] = None):
        self.ttl = ttl
        self.broadcaster = broadcaster or Broadcaster()
        self._records: Dict[str, ProgressRecord] = {}
        self._expiry = KeyedScheduler("progress-expiry")

    def get(self, job_id: str) -> Optional[ProgressRecord]:
        return self._records.get(job_id)

    def snapshot(self, job_id: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(job_id)
        return record.to_dict() if record else None

    def update(self, job_id: str, **fields: Any) -> ProgressRecord:
        if "status" in fields:
            fields["status"] = JobStatus(fields["status"])
        current = self._records.get(job_id)
        if current is None:
            record = ProgressRecord(job_id=job_id, **fields)
        else:
            status = fields.get("status", current.status)
            if current.status.is_terminal or not can_transition(current.status, status):
                raise InvalidTransitionError(job_id, current.status.value, status.value)
            if not status.is_terminal and fields.get("progress", current.progress) < current.progress:
                fields["progress"] = current.progress
            record = dataclasses.replace(current, **fields)

        record.timestamp = time.time()
        self._records[job_id] = record
        self.broadcaster.push(job_id, record.to_dict())

        if record.status.is_terminal:
            self._expiry.schedule(job_id, self.ttl, self._expire, job_id)
        return record

    def subscribe(self, job_id: str, sink: Sink) -> Callable[[], None]:
        """Register ``sink`` and send it the current snapshot, if any. Returns an unsubscribe callable."""
        snapshot = self.snapshot(job_id)
        if snapshot is not None:
            sink(snapshot)
        self.broadcaster.add(job_id, sink)
        return lambda: self.broadcaster.discard(job_id, sink)

    def subscriber_count(self, job_id: Optional[str] = None) -> int:
        return self.broadcaster.count(job_id)

    def remove(self, job_id: str):
        self._expiry.cancel(job_id)
        self._records.pop(job_id, None)
        self.broadcaster.drop(job_id)

    def clear(self):
        self._expiry.cancel_all()
        self._records.clear()
        self.broadcaster.clear()

    def _expire(self, job_id: str):
        self._records.pop(job_id, None)
        self.broadcaster.drop(job_id)
        logger.info(f"Progress for {job_id[:8]} expired from memory")

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._records

    def __len__(self) -> int:
        return len(self._records)


class ProgressSubscription:
    """
    Queue-backed sink for one streaming connection (SSE or WebSocket).

    Snapshots are queued in the order they are pushed. A closed or overflowing
    subscription raises, which makes the broadcaster drop it. After an overflow
    no further snapshots will arrive, so once the queued ones are consumed
    ``lost`` is set and the stream should end.
    """

    def __init__(self, maxsize: int = SUBSCRIBER_QUEUE_SIZE):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.overflowed = False

    def __call__(self, snapshot: Dict[str, Any]):
        if self.closed:
            raise ConnectionError("subscription closed")
        try:
            self._queue.put_nowait(snapshot)
        except asyncio.QueueFull:
            self.overflowed = True
            raise

    @property
    def lost(self) -> bool:
        return self.overflowed and self._queue.empty()

    async def next(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Next snapshot, or None if nothing arrived within ``timeout`` seconds or the subscription is lost."""
        if self.lost:
            return None
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self):
        self.closed = True
