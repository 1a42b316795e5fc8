import asyncio
import logging
import os
from collections import deque
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import psutil

from core.errors import JobCancelledError, WorkerFailedError, WorkerSpawnError
from config import KILL_GRACE_PERIOD_S

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]

# yt-dlp --dump-json prints one JSON document per line, which can be large
STREAM_LIMIT = 16 * 1024 * 1024
STDERR_TAIL_LINES = 20


class CancellationToken:
    """
    One-shot cancellation flag shared by everything running for a job.

    The token flips at most once; the first caller of cancel() wins and the
    reason it gave is kept.
    """

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> bool:
        if self._cancelled:
            return False
        self._cancelled = True
        self.reason = reason
        return True


class ProcessSupervisor:
    """
    Spawns and kills the worker processes of a single job.

    A job has at most one primary process (yt-dlp) and one secondary process
    (the ffmpeg merge step) alive at a time. Output lines are only handed to the
    callback while the job's token is not cancelled.
    """

    def __init__(self, job_id: str = "", token: Optional[CancellationToken] = None,
                 grace_period: float = KILL_GRACE_PERIOD_S):
        self.job_id = job_id
        self.token = token or CancellationToken()
        self.grace_period = grace_period
        self.primary: Optional[asyncio.subprocess.Process] = None
        self.secondary: Optional[asyncio.subprocess.Process] = None
        self.stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)

    @property
    def processes(self) -> List[asyncio.subprocess.Process]:
        return [p for p in (self.primary, self.secondary) if p is not None]

    async def run(
        self,
        argv: Sequence[str],
        on_line: Optional[LineCallback] = None,
        *,
        secondary: bool = False,
        check: bool = True,
        failure_message: str = "Worker process failed",
    ) -> int:
        """
        Run one worker to completion and return its exit code.

        Raises WorkerSpawnError if the executable cannot be started,
        WorkerFailedError on a non-zero exit when ``check`` is set, and
        JobCancelledError if the token was cancelled while it ran.
        """
        self._raise_if_cancelled()
        executable = Path(argv[0]).name
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
                start_new_session=(os.name == "posix"),
            )
        except FileNotFoundError:
            raise WorkerSpawnError(executable, "executable not found")
        except PermissionError:
            raise WorkerSpawnError(executable, "permission denied")
        except OSError as e:
            raise WorkerSpawnError(executable, str(e))

        if secondary:
            self.secondary = process
        else:
            self.primary = process
        self.stderr_tail.clear()
        logger.debug(f"Job {self.job_id[:8]}: started {executable} (pid {process.pid})")

        stderr_task = None
        try:
            # A kill() issued while the spawn was pending had no handle to act on
            self._raise_if_cancelled()
            stderr_task = asyncio.create_task(self._drain_stderr(process.stderr, executable))
            await self._pump_lines(process.stdout, on_line)
            returncode = await process.wait()
            await stderr_task
        finally:
            if process.returncode is None:
                # The reader was interrupted (task cancellation or a failing callback)
                await self._terminate(process)
            if stderr_task is not None and not stderr_task.done():
                stderr_task.cancel()
            if secondary:
                self.secondary = None
            else:
                self.primary = None

        self._raise_if_cancelled()
        if check and returncode != 0:
            logger.warning(f"Job {self.job_id[:8]}: {executable} exited with code {returncode}")
            raise WorkerFailedError(failure_message, returncode, self.stderr_tail)
        return returncode

    async def kill(self):
        """Terminate every live process of the job, escalating after the grace period."""
        processes = self.processes
        if processes:
            await asyncio.gather(*(self._terminate(p) for p in processes))

    async def _pump_lines(self, stream: asyncio.StreamReader, on_line: Optional[LineCallback]):
        async for raw in stream:
            if self.token.cancelled or on_line is None:
                # Late output after cancellation is drained but never applied
                continue
            on_line(raw.decode("utf-8", errors="replace").rstrip("\r\n"))

    async def _drain_stderr(self, stream: asyncio.StreamReader, executable: str):
        async for raw in stream:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            self.stderr_tail.append(line)
            if "WARNING" not in line:
                logger.debug(f"{executable}: {line[:200]}")

    async def _terminate(self, process: asyncio.subprocess.Process):
        if process.returncode is not None:
            return
        tree = self._process_tree(process.pid)
        for proc in tree:
            try:
                proc.terminate()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass

        try:
            await asyncio.wait_for(process.wait(), timeout=self.grace_period)
        except asyncio.TimeoutError:
            logger.warning(f"Job {self.job_id[:8]}: pid {process.pid} ignored SIGTERM, killing")

        # Children may outlive their parent, so survivors are killed either way
        for proc in tree:
            try:
                if proc.is_running() and proc.pid != process.pid:
                    proc.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

    @staticmethod
    def _process_tree(pid: int) -> List[psutil.Process]:
        try:
            parent = psutil.Process(pid)
            return parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return []

    def _raise_if_cancelled(self):
        if self.token.cancelled:
            raise JobCancelledError(self.job_id, self.token.reason or "cancelled")
