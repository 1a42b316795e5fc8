import asyncio
import logging
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from schemas.models import ActiveExecution, Job, JobKind, JobStatus
from core import media_processor
from core.admission_queue import AdmissionQueue
from core.errors import JobCancelledError, MediaDockError, MergeLimitExceededError
from core.housekeeping import cleanup_old_downloads, cleanup_temp_dir, remove_tree
from core.progress_parser import AudioOutputParser, VideoOutputParser, OutputParser
from core.progress_store import ProgressStore, Sink
from core.scheduler import KeyedScheduler
from core.supervisor import ProcessSupervisor
from core.validation import build_job, is_playlist_url
from config import (
    CLEANUP_INTERVAL_S,
    DOWNLOAD_TIMEOUT_S,
    DOWNLOADS_DIR,
    FILE_MAX_AGE_S,
    KILL_GRACE_PERIOD_S,
    MAX_CONCURRENT_DOWNLOADS,
    MAX_PLAYLIST_MERGE,
    PROGRESS_CLEANUP_S,
    PROGRESS_THROTTLE_S,
    SUBTITLES_DIR,
    TMP_DIR,
)

logger = logging.getLogger(__name__)


def _describe_seconds(seconds: float) -> str:
    if seconds >= 60:
        return f"{seconds / 60:.0f} minutes"
    return f"{seconds:g} seconds"


class JobManager:
    """
    Owns every download job from submission to its terminal status.

    Jobs wait in the admission queue, run one worker process tree each under a
    ProcessSupervisor, and report through the progress store. Whoever flips an
    execution's cancellation token first (user cancel, deadline or shutdown)
    is the one that writes its terminal status.
    """

    def __init__(
        self,
        *,
        downloads_dir: Path = DOWNLOADS_DIR,
        tmp_dir: Path = TMP_DIR,
        subtitles_dir: Path = SUBTITLES_DIR,
        max_concurrent: int = MAX_CONCURRENT_DOWNLOADS,
        job_timeout: float = DOWNLOAD_TIMEOUT_S,
        progress_ttl: float = PROGRESS_CLEANUP_S,
        kill_grace_period: float = KILL_GRACE_PERIOD_S,
        max_playlist_merge: int = MAX_PLAYLIST_MERGE,
        progress_throttle: float = PROGRESS_THROTTLE_S,
        cleanup_interval: Optional[float] = CLEANUP_INTERVAL_S,
        file_max_age: float = FILE_MAX_AGE_S,
        ytdlp_path: Optional[str] = None,
        ffmpeg_path: Optional[str] = None,
    ):
        self.downloads_dir = Path(downloads_dir)
        self.tmp_dir = Path(tmp_dir)
        self.subtitles_dir = Path(subtitles_dir)
        self.job_timeout = job_timeout
        self.kill_grace_period = kill_grace_period
        self.max_playlist_merge = max_playlist_merge
        self.progress_throttle = progress_throttle
        self.cleanup_interval = cleanup_interval
        self.file_max_age = file_max_age
        self.ytdlp = ytdlp_path or media_processor.get_ytdlp_exe()
        self._ffmpeg = ffmpeg_path

        self.store = ProgressStore(ttl=progress_ttl)
        self.queue = AdmissionQueue(max_concurrent, on_positions_changed=self._broadcast_positions)
        self.deadlines = KeyedScheduler("job-deadline")
        self.active: Dict[str, ActiveExecution] = {}
        self.started_at = time.time()

        self._background: Set[asyncio.Task] = set()
        self._housekeeping_task: Optional[asyncio.Task] = None

    # -- Lifecycle --

    async def start(self):
        """Creates the working directories, sweeps leftovers and starts periodic housekeeping."""
        for directory in (self.downloads_dir, self.subtitles_dir, self.tmp_dir):
            directory.mkdir(parents=True, exist_ok=True)
        self.housekeeping()
        if self._housekeeping_task is None and self.cleanup_interval:
            self._housekeeping_task = asyncio.create_task(self._housekeeping_loop())
        logger.info(f"Job manager started (max {self.queue.max_concurrent} concurrent downloads)")

    async def stop(self):
        """Cancels every queued and running job and waits for their processes to die."""
        if self._housekeeping_task:
            self._housekeeping_task.cancel()
            self._housekeeping_task = None

        for job_id in self.queue.clear():
            self._write_terminal(job_id, JobStatus.CANCELLED, "Server shutting down")

        executions = list(self.active.values())
        for execution in executions:
            if execution.token.cancel("shutdown"):
                self.deadlines.cancel(execution.job_id)
                self._write_terminal(execution.job_id, JobStatus.CANCELLED, "Server shutting down")
        if executions:
            logger.info(f"Stopping {len(executions)} active download(s)...")
            await asyncio.gather(*(e.supervisor.kill() for e in executions), return_exceptions=True)

        await self.queue.shutdown()
        for execution in executions:
            remove_tree(execution.scratch_dir, self.tmp_dir)

        self.active.clear()
        self.deadlines.cancel_all()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self.store.clear()

    # -- Submission --

    def submit_job(self, url: Any, type: Any, format: Any, **options: Any) -> str:
        """Validates a submission and enqueues it. Raises JobValidationError without creating a record."""
        job = build_job(url, type, format, **options)
        return self.enqueue(job)

    def enqueue(self, job: Job) -> str:
        position = len(self.queue) + 1
        self.store.update(
            job.id,
            status=JobStatus.QUEUED,
            progress=0,
            message=f"Waiting in queue... (position {position})",
            queue_position=position,
            files=[],
            can_cancel=True,
            kind=job.kind,
            format=job.format,
            submitted_at=job.submitted_at,
        )
        logger.info(f"Download request {job.short_id}: {job.kind.value}/{job.format} - {job.url[:60]}")
        self.queue.submit(job.id, lambda: self._admit(job))
        return job.id

    def _admit(self, job: Job):
        # Registered before the coroutine first runs so a cancel can always find it
        supervisor = ProcessSupervisor(job.id, grace_period=self.kill_grace_period)
        execution = ActiveExecution(job_id=job.id, supervisor=supervisor)
        self.active[job.id] = execution
        return self.execute_job(job, execution)

    # -- Execution --

    async def execute_job(self, job: Job, execution: ActiveExecution):
        token = execution.token
        self.deadlines.schedule(job.id, self.job_timeout, self._on_deadline, job.id)
        started = time.monotonic()
        try:
            self._advance(
                execution,
                status=JobStatus.STARTING,
                progress=0,
                message="Starting download...",
                queue_position=None,
            )
            if job.kind == JobKind.VIDEO:
                await self._download_video(job, execution)
            else:
                await self._download_audio(job, execution)
            logger.info(f"Download {job.short_id} finished in {time.monotonic() - started:.1f}s")
        except JobCancelledError as e:
            logger.info(f"Download {job.short_id} stopped ({e.reason})")
        except MediaDockError as e:
            if token.cancelled:
                logger.info(f"Download {job.short_id} stopped ({token.reason})")
            else:
                logger.error(f"Download {job.short_id} error: {e}")
                self._write_terminal(job.id, JobStatus.ERROR, str(e))
        except Exception as e:
            if token.cancelled:
                logger.info(f"Download {job.short_id} stopped ({token.reason})")
            else:
                logger.exception(f"Unexpected error in download {job.short_id}")
                self._write_terminal(job.id, JobStatus.ERROR, str(e) or "Unknown error")
        finally:
            self.deadlines.cancel(job.id)
            self.active.pop(job.id, None)
            remove_tree(execution.scratch_dir, self.tmp_dir)

    async def _download_video(self, job: Job, execution: ActiveExecution):
        message = "Downloading video (high compatibility)..." if job.high_compatibility else "Downloading video..."
        self._advance(execution, status=JobStatus.DOWNLOADING_VIDEO, progress=0, message=message)

        argv = media_processor.build_video_command(
            self.ytdlp, job, self.downloads_dir, await self._resolve_ffmpeg(), self.subtitles_dir
        )
        # Separate video and audio streams, plus the subtitle file when requested
        streams = 3 if job.download_subtitles else 2
        parser = VideoOutputParser(expected_streams=streams, min_interval=self.progress_throttle)
        await execution.supervisor.run(
            argv, on_line=self._line_handler(execution, parser), failure_message="Video download failed"
        )

        self._advance(execution, status=JobStatus.FINALIZING, progress=98, message="Finalizing file...")
        files = media_processor.collect_recent_files(
            self.downloads_dir, f".{job.format}", limit=5, since=execution.started_at - 1
        )
        self._finish(execution, files, "Download complete!")

    async def _download_audio(self, job: Job, execution: ActiveExecution):
        if job.merge and is_playlist_url(job.url):
            count = await self._count_playlist_items(job, execution)
            if count is not None and count > self.max_playlist_merge:
                raise MergeLimitExceededError(count, self.max_playlist_merge)

        output_dir = self.downloads_dir
        if job.merge:
            execution.scratch_dir = self.tmp_dir / uuid.uuid4().hex
            execution.scratch_dir.mkdir(parents=True)
            output_dir = execution.scratch_dir

        self._advance(execution, status=JobStatus.DOWNLOADING_AUDIO, progress=0, message="Downloading audio...")
        ffmpeg = await self._resolve_ffmpeg()
        argv = media_processor.build_audio_command(self.ytdlp, job, output_dir, ffmpeg)
        parser = AudioOutputParser(job.format, min_interval=self.progress_throttle)
        await execution.supervisor.run(
            argv, on_line=self._line_handler(execution, parser), failure_message="Audio download failed"
        )

        if job.merge:
            self._advance(
                execution, status=JobStatus.MERGING_PLAYLIST, progress=95, message="Merging audio files..."
            )
            merged = await media_processor.merge_audio_files(
                execution.supervisor, ffmpeg, job, execution.scratch_dir, self.downloads_dir
            )
            remove_tree(execution.scratch_dir, self.tmp_dir)
            execution.scratch_dir = None
            self._advance(execution, status=JobStatus.FINALIZING, progress=98, message="Finalizing file...")
            self._finish(execution, [media_processor.describe_file(merged)], "Download and merge complete!")
            return

        self._advance(execution, status=JobStatus.FINALIZING, progress=98, message="Finalizing file...")
        files = media_processor.collect_recent_files(
            self.downloads_dir, f".{job.format}", limit=10, since=execution.started_at - 1
        )
        self._finish(execution, files, "Download complete!")

    async def _count_playlist_items(self, job: Job, execution: ActiveExecution) -> Optional[int]:
        """Number of entries in a playlist, or None if it could not be determined."""
        self._advance(execution, message="Checking playlist size...")
        lines: List[str] = []
        returncode = await execution.supervisor.run(
            media_processor.build_count_command(self.ytdlp, job.url), on_line=lines.append, check=False
        )
        if returncode != 0:
            logger.warning(f"Download {job.short_id}: playlist size unknown (exit {returncode}), continuing")
            return None
        count = sum(1 for line in lines if line.strip())
        logger.info(f"Download {job.short_id}: playlist has {count} items")
        return count

    async def _resolve_ffmpeg(self) -> str:
        if self._ffmpeg is None:
            # May download the static binaries on first use
            self._ffmpeg = await asyncio.to_thread(media_processor.get_ffmpeg_exe)
        return self._ffmpeg

    # -- Progress --

    def _line_handler(self, execution: ActiveExecution, parser: OutputParser) -> Callable[[str], None]:
        def on_line(line: str):
            update = parser.feed(line)
            if update is not None:
                self._advance(execution, **update.as_fields())
        return on_line

    def _advance(self, execution: ActiveExecution, **fields: Any):
        """Non-terminal update from inside an execution; refused once its token is cancelled."""
        if execution.token.cancelled:
            raise JobCancelledError(execution.job_id, execution.token.reason or "cancelled")
        self.store.update(execution.job_id, **fields)

    def _finish(self, execution: ActiveExecution, files: List[Any], message: str):
        self._advance(
            execution,
            status=JobStatus.FINISHED,
            progress=100,
            message=message,
            files=files,
            can_cancel=False,
        )

    def _write_terminal(self, job_id: str, status: JobStatus, message: str):
        record = self.store.get(job_id)
        if record is None or record.status.is_terminal:
            return
        fields = {
            "status": status,
            "progress": 0,
            "message": message,
            "queue_position": None,
            "can_cancel": False,
        }
        if status == JobStatus.ERROR:
            fields["error"] = message
        self.store.update(job_id, **fields)

    def _broadcast_positions(self, job_ids: List[str]):
        for position, job_id in enumerate(job_ids, start=1):
            record = self.store.get(job_id)
            if record is None or record.status.is_terminal:
                continue
            self.store.update(
                job_id,
                queue_position=position,
                message=f"Waiting in queue... (position {position})",
            )

    # -- Cancellation & deadlines --

    async def cancel_job(self, job_id: str) -> bool:
        """Cancels a queued or running job. Returns False if no such job is queued or running."""
        if self.queue.cancel(job_id):
            logger.info(f"Download {job_id[:8]} removed from queue")
            self._write_terminal(job_id, JobStatus.CANCELLED, "Download cancelled")
            return True

        execution = self.active.get(job_id)
        if execution is None:
            return False
        if execution.token.cancel("cancelled"):
            logger.info(f"Cancelling download {job_id[:8]}")
            self.deadlines.cancel(job_id)
            await self._abort(execution, JobStatus.CANCELLED, "Download cancelled")
        return True

    def _on_deadline(self, job_id: str):
        execution = self.active.get(job_id)
        if execution is None or not execution.token.cancel("timeout"):
            return
        message = f"Download timed out (exceeded {_describe_seconds(self.job_timeout)})"
        logger.warning(f"Download {job_id[:8]}: {message}")
        self._spawn(self._abort(execution, JobStatus.ERROR, message))

    async def _abort(self, execution: ActiveExecution, status: JobStatus, message: str):
        # Caller has already flipped the token, so no other path writes a terminal status
        await execution.supervisor.kill()
        remove_tree(execution.scratch_dir, self.tmp_dir)
        self._write_terminal(execution.job_id, status, message)

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # -- Queries --

    def get_progress(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self.store.snapshot(job_id)

    def subscribe(self, job_id: str, sink: Sink) -> Callable[[], None]:
        return self.store.subscribe(job_id, sink)

    def queue_status(self) -> Dict[str, Any]:
        return {
            "active_downloads": self.queue.active_count,
            "max_concurrent": self.queue.max_concurrent,
            "queue_length": len(self.queue),
            "queued_ids": self.queue.pending,
        }

    def status(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "uptime": round(time.time() - self.started_at, 1),
            "active_downloads": self.queue.active_count,
            "queued_downloads": len(self.queue),
            "tracked_jobs": len(self.store),
            "subscribers": self.store.subscriber_count(),
            "ytdlp": self.ytdlp,
        }

    # -- Housekeeping --

    def housekeeping(self):
        """Removes expired downloads and scratch directories no running job owns."""
        cleanup_old_downloads(self.downloads_dir, self.file_max_age)
        keep = {e.scratch_dir for e in self.active.values() if e.scratch_dir is not None}
        cleanup_temp_dir(self.tmp_dir, keep)

    async def _housekeeping_loop(self):
        while True:
            try:
                await asyncio.sleep(self.cleanup_interval)
                self.housekeeping()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error during housekeeping: {e}")
