"""
Error types for job orchestration.

All errors inherit from MediaDockError so the orchestrator can convert any of
them into a terminal progress update at a single boundary.
"""

from typing import Optional, Sequence


class MediaDockError(Exception):
    """Base exception for all orchestration failures."""
    pass


class JobValidationError(MediaDockError):
    """Raised when a submission is rejected before it is enqueued."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message)


class WorkerSpawnError(MediaDockError):
    """Raised when the worker executable cannot be started at all."""

    def __init__(self, executable: str, reason: str):
        self.executable = executable
        self.reason = reason
        super().__init__(f"{executable} could not be started ({reason}). Make sure it is installed.")


class WorkerFailedError(MediaDockError):
    """Raised when a worker exits with a non-zero status."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr_tail: Sequence[str] = ()):
        self.returncode = returncode
        self.stderr_tail = list(stderr_tail)
        super().__init__(message)


class JobCancelledError(MediaDockError):
    """Raised inside an execution whose cancellation token has been flipped."""

    def __init__(self, job_id: str, reason: str = "cancelled"):
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Job {job_id[:8]} {reason}")


class MergeLimitExceededError(MediaDockError):
    """Raised when a playlist is too large to be merged into one file."""

    def __init__(self, item_count: int, limit: int):
        self.item_count = item_count
        self.limit = limit
        super().__init__(f"Playlist too large to merge ({item_count} items, max {limit})")


class InvalidTransitionError(MediaDockError):
    """Raised when a progress update would make an illegal status transition."""

    def __init__(self, job_id: str, current_state: str, target_state: str):
        self.job_id = job_id
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(
            f"Invalid status transition for job {job_id[:8]}: "
            f"{current_state} -> {target_state}"
        )
