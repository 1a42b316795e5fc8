"""Integration tests for the job orchestrator, driven by fake yt-dlp/ffmpeg scripts."""

import asyncio
import time

import pytest

from conftest import pid_alive, wait_for, wait_for_status
from core.errors import JobValidationError

VIDEO_URL = "https://www.youtube.com/watch?v=abc123"
PLAYLIST_URL = "https://www.youtube.com/playlist?list=PL123"


class TestSubmission:
    async def test_invalid_submission_creates_no_record(self, make_manager, fake_ytdlp):
        manager = await make_manager(fake_ytdlp())

        with pytest.raises(JobValidationError):
            manager.submit_job("ftp://example.com/file", "video", "mp4")
        with pytest.raises(JobValidationError):
            manager.submit_job(VIDEO_URL, "video", "avi")
        with pytest.raises(JobValidationError):
            manager.submit_job(VIDEO_URL, "video", "mp4", quality="999")

        assert len(manager.store) == 0
        assert manager.queue_status()["active_downloads"] == 0

    async def test_initial_record_is_queued(self, make_manager, fake_ytdlp):
        manager = await make_manager(fake_ytdlp(hold=5), max_concurrent=1)
        manager.submit_job(VIDEO_URL, "video", "mp4")
        job_id = manager.submit_job(VIDEO_URL, "audio", "mp3")

        snapshot = manager.get_progress(job_id)
        assert snapshot["status"] == "queued"
        assert snapshot["queue_position"] == 1
        assert snapshot["kind"] == "audio"
        assert snapshot["format"] == "mp3"
        assert snapshot["can_cancel"] is True


class TestVideoDownload:
    async def test_successful_download_reports_files(self, make_manager, fake_ytdlp, dirs):
        manager = await make_manager(fake_ytdlp())
        job_id = manager.submit_job(VIDEO_URL, "video", "mp4", quality="720")

        record = await wait_for_status(manager, job_id, "finished", "error")

        assert record.status.value == "finished"
        assert record.progress == 100
        assert record.can_cancel is False
        assert len(record.files) == 1
        assert record.files[0].name.endswith(".mp4")
        assert record.files[0].url.startswith("/downloads/")
        assert (dirs["downloads_dir"] / record.files[0].name).exists()
        assert job_id not in manager.active

    async def test_progress_is_monotonic(self, make_manager, fake_ytdlp):
        manager = await make_manager(fake_ytdlp())
        job_id = manager.submit_job(VIDEO_URL, "video", "mp4")
        seen = []
        manager.subscribe(job_id, seen.append)

        await wait_for_status(manager, job_id, "finished", "error")

        values = [s["progress"] for s in seen]
        assert values == sorted(values)
        assert [s["status"] for s in seen][-2:] == ["finalizing", "finished"]
        assert "downloading_video" in {s["status"] for s in seen}
        assert "postprocessing" in {s["status"] for s in seen}

    async def test_custom_name_is_used(self, make_manager, fake_ytdlp):
        manager = await make_manager(fake_ytdlp())
        job_id = manager.submit_job(VIDEO_URL, "video", "webm", custom_name="My: Clip?")

        record = await wait_for_status(manager, job_id, "finished", "error")

        assert record.files[0].name.startswith("My_ Clip_")

    async def test_worker_failure_becomes_error(self, make_manager, fake_ytdlp):
        manager = await make_manager(fake_ytdlp(exit_code=1))
        job_id = manager.submit_job(VIDEO_URL, "video", "mp4")

        record = await wait_for_status(manager, job_id, "finished", "error")

        assert record.status.value == "error"
        assert record.error == "Video download failed"

    async def test_missing_executable_is_reported(self, make_manager, tmp_path):
        manager = await make_manager(str(tmp_path / "missing" / "yt-dlp"))
        job_id = manager.submit_job(VIDEO_URL, "video", "mp4")

        record = await wait_for_status(manager, job_id, "finished", "error")

        assert record.status.value == "error"
        assert "could not be started" in record.error
        assert "executable not found" in record.error


class TestAudioDownload:
    async def test_single_audio_download(self, make_manager, fake_ytdlp):
        manager = await make_manager(fake_ytdlp())
        job_id = manager.submit_job(VIDEO_URL, "audio", "mp3")
        seen = []
        manager.subscribe(job_id, seen.append)

        record = await wait_for_status(manager, job_id, "finished", "error")

        assert record.status.value == "finished"
        assert record.files[0].extension == "mp3"
        assert "converting_audio" in {s["status"] for s in seen}

    async def test_playlist_merge(self, make_manager, fake_ytdlp, dirs):
        manager = await make_manager(fake_ytdlp(playlist_count=3, items=3))
        job_id = manager.submit_job(PLAYLIST_URL, "audio", "mp3", merge=True)
        seen = []
        manager.subscribe(job_id, seen.append)

        record = await wait_for_status(manager, job_id, "finished", "error")

        assert record.status.value == "finished", record.error
        assert len(record.files) == 1
        merged = dirs["downloads_dir"] / record.files[0].name
        assert merged.name.startswith("merged_playlist_")
        assert merged.read_bytes() == b"item1;item2;item3;"
        assert list(dirs["tmp_dir"].iterdir()) == []
        statuses = [s["status"] for s in seen]
        assert "merging_playlist" in statuses
        values = [s["progress"] for s in seen]
        assert values == sorted(values)

    async def test_oversized_playlist_merge_is_rejected(self, make_manager, fake_ytdlp, dirs):
        manager = await make_manager(fake_ytdlp(playlist_count=60))
        job_id = manager.submit_job(PLAYLIST_URL, "audio", "mp3", merge=True)

        record = await wait_for_status(manager, job_id, "finished", "error")

        assert record.status.value == "error"
        assert "60 items" in record.error
        assert list(dirs["tmp_dir"].iterdir()) == []
        assert not list(dirs["downloads_dir"].glob("*.mp3"))

    async def test_failed_playlist_count_does_not_block(self, make_manager, fake_ytdlp):
        manager = await make_manager(fake_ytdlp(count_exit=1, items=2))
        job_id = manager.submit_job(PLAYLIST_URL, "audio", "m4a", merge=True)

        record = await wait_for_status(manager, job_id, "finished", "error")

        assert record.status.value == "finished", record.error


class TestAdmission:
    async def test_three_jobs_with_ceiling_two(self, make_manager, fake_ytdlp):
        manager = await make_manager(fake_ytdlp(hold=30), max_concurrent=2)
        first = manager.submit_job(VIDEO_URL, "video", "mp4")
        second = manager.submit_job(VIDEO_URL, "video", "mp4")
        third = manager.submit_job(VIDEO_URL, "video", "mp4")

        await wait_for_status(manager, first, "downloading_video", "postprocessing")
        await wait_for_status(manager, second, "downloading_video", "postprocessing")
        snapshot = manager.get_progress(third)
        assert snapshot["status"] == "queued"
        assert snapshot["queue_position"] == 1
        assert manager.queue.active_count == 2

        assert await manager.cancel_job(first) is True
        await wait_for_status(manager, first, "cancelled")
        await wait_for_status(manager, third, "starting", "downloading_video", "postprocessing")
        assert manager.queue.active_count == 2
        assert manager.get_progress(third)["queue_position"] is None

    async def test_cancel_queued_job_shifts_positions(self, make_manager, fake_ytdlp):
        manager = await make_manager(fake_ytdlp(hold=30), max_concurrent=1)
        manager.submit_job(VIDEO_URL, "video", "mp4")
        second = manager.submit_job(VIDEO_URL, "video", "mp4")
        third = manager.submit_job(VIDEO_URL, "video", "mp4")
        assert manager.get_progress(third)["queue_position"] == 2

        assert await manager.cancel_job(second) is True

        assert manager.get_progress(second)["status"] == "cancelled"
        assert manager.get_progress(third)["queue_position"] == 1
        assert manager.queue.pending == [third]

    async def test_cancel_unknown_job(self, make_manager, fake_ytdlp):
        manager = await make_manager(fake_ytdlp())
        assert await manager.cancel_job("does-not-exist") is False


class TestCancellation:
    async def test_cancel_active_job_kills_worker(self, make_manager, fake_ytdlp):
        manager = await make_manager(fake_ytdlp(hold=30))
        job_id = manager.submit_job(VIDEO_URL, "video", "mp4")
        await wait_for_status(manager, job_id, "postprocessing")
        await wait_for(lambda: manager.active[job_id].supervisor.primary is not None)
        pid = manager.active[job_id].supervisor.primary.pid

        started = time.monotonic()
        assert await manager.cancel_job(job_id) is True

        assert time.monotonic() - started < 3
        record = manager.store.get(job_id)
        assert record.status.value == "cancelled"
        assert record.error is None
        await wait_for(lambda: not pid_alive(pid))
        await wait_for(lambda: job_id not in manager.active)

    async def test_cancel_while_worker_is_spawning(self, make_manager, fake_ytdlp, monkeypatch):
        spawned = []
        real_spawn = asyncio.create_subprocess_exec

        async def slow_spawn(*args, **kwargs):
            process = await real_spawn(*args, **kwargs)
            spawned.append(process)
            await asyncio.sleep(0.2)
            return process

        monkeypatch.setattr(asyncio, "create_subprocess_exec", slow_spawn)
        manager = await make_manager(fake_ytdlp(hold=30))
        job_id = manager.submit_job(VIDEO_URL, "video", "mp4")
        await wait_for(lambda: spawned)

        assert await manager.cancel_job(job_id) is True

        await wait_for(lambda: job_id not in manager.active, timeout=3)
        await wait_for(lambda: manager.queue.active_count == 0, timeout=3)
        assert not pid_alive(spawned[0].pid)
        assert manager.get_progress(job_id)["status"] == "cancelled"

    async def test_cancel_merge_job_removes_scratch(self, make_manager, fake_ytdlp, dirs):
        manager = await make_manager(fake_ytdlp(items=2, hold=30))
        job_id = manager.submit_job(VIDEO_URL, "audio", "mp3", merge=True)
        await wait_for(lambda: any(dirs["tmp_dir"].iterdir()))
        await wait_for(lambda: manager.active[job_id].supervisor.primary is not None)

        assert await manager.cancel_job(job_id) is True

        assert manager.get_progress(job_id)["status"] == "cancelled"
        await wait_for(lambda: not any(dirs["tmp_dir"].iterdir()))

    async def test_cancelled_job_never_reports_error(self, make_manager, fake_ytdlp):
        manager = await make_manager(fake_ytdlp(hold=30))
        job_id = manager.submit_job(VIDEO_URL, "video", "mp4")
        seen = []
        manager.subscribe(job_id, seen.append)
        await wait_for_status(manager, job_id, "postprocessing")

        await manager.cancel_job(job_id)
        await wait_for(lambda: job_id not in manager.active)
        await asyncio.sleep(0.1)

        assert [s["status"] for s in seen].count("cancelled") == 1
        assert "error" not in [s["status"] for s in seen]

    async def test_deadline_reports_one_timeout(self, make_manager, fake_ytdlp):
        manager = await make_manager(fake_ytdlp(hold=30), job_timeout=0.5)
        job_id = manager.submit_job(VIDEO_URL, "video", "mp4")
        seen = []
        manager.subscribe(job_id, seen.append)

        record = await wait_for_status(manager, job_id, "error", "cancelled", "finished")
        await wait_for(lambda: job_id not in manager.active)
        await asyncio.sleep(0.2)

        assert record.status.value == "error"
        assert "timed out" in record.error
        assert [s["status"] for s in seen].count("error") == 1

    async def test_deadline_does_not_fire_after_completion(self, make_manager, fake_ytdlp):
        manager = await make_manager(fake_ytdlp(), job_timeout=1)
        job_id = manager.submit_job(VIDEO_URL, "video", "mp4")

        await wait_for_status(manager, job_id, "finished")
        await asyncio.sleep(1.2)

        assert manager.get_progress(job_id)["status"] == "finished"
        assert len(manager.deadlines) == 0

    async def test_worker_ignoring_sigterm_is_killed(self, make_manager, fake_ytdlp):
        manager = await make_manager(fake_ytdlp(hold=30, ignore_term=True), kill_grace_period=0.5)
        job_id = manager.submit_job(VIDEO_URL, "video", "mp4")
        await wait_for_status(manager, job_id, "postprocessing")
        await wait_for(lambda: manager.active[job_id].supervisor.primary is not None)
        pid = manager.active[job_id].supervisor.primary.pid

        await manager.cancel_job(job_id)

        await wait_for(lambda: not pid_alive(pid), timeout=5)
        assert manager.get_progress(job_id)["status"] == "cancelled"


class TestSubscriptions:
    async def test_late_subscriber_gets_terminal_snapshot_once(self, make_manager, fake_ytdlp):
        manager = await make_manager(fake_ytdlp())
        job_id = manager.submit_job(VIDEO_URL, "video", "mp4")
        await wait_for_status(manager, job_id, "finished")

        seen = []
        manager.subscribe(job_id, seen.append)
        await asyncio.sleep(0.1)

        assert len(seen) == 1
        assert seen[0]["status"] == "finished"

    async def test_terminal_record_expires(self, make_manager, fake_ytdlp):
        manager = await make_manager(fake_ytdlp(), progress_ttl=0.2)
        job_id = manager.submit_job(VIDEO_URL, "video", "mp4")
        await wait_for_status(manager, job_id, "finished")

        await wait_for(lambda: manager.get_progress(job_id) is None, timeout=2)


class TestLifecycle:
    async def test_stop_cancels_running_and_queued(self, make_manager, fake_ytdlp):
        manager = await make_manager(fake_ytdlp(hold=30), max_concurrent=1)
        running = manager.submit_job(VIDEO_URL, "video", "mp4")
        queued = manager.submit_job(VIDEO_URL, "video", "mp4")
        seen = {running: [], queued: []}
        for job_id, snapshots in seen.items():
            manager.subscribe(job_id, snapshots.append)
        await wait_for_status(manager, running, "postprocessing")
        await wait_for(lambda: manager.active[running].supervisor.primary is not None)
        pid = manager.active[running].supervisor.primary.pid

        await manager.stop()

        assert seen[running][-1]["status"] == "cancelled"
        assert seen[queued][-1]["status"] == "cancelled"
        assert not pid_alive(pid)
        assert len(manager.queue) == 0
        assert manager.active == {}

    async def test_start_sweeps_stale_scratch(self, make_manager, fake_ytdlp, dirs):
        stale = dirs["tmp_dir"] / "leftover"
        stale.mkdir(parents=True)
        (stale / "part.mp3").write_bytes(b"x")

        await make_manager(fake_ytdlp())

        assert not stale.exists()
        assert dirs["downloads_dir"].is_dir()
        assert dirs["subtitles_dir"].is_dir()

    async def test_status_reports_counts(self, make_manager, fake_ytdlp):
        manager = await make_manager(fake_ytdlp(hold=30), max_concurrent=1)
        manager.submit_job(VIDEO_URL, "video", "mp4")
        manager.submit_job(VIDEO_URL, "video", "mp4")

        status = manager.status()
        queue = manager.queue_status()

        assert status["active_downloads"] == 1
        assert status["queued_downloads"] == 1
        assert status["tracked_jobs"] == 2
        assert queue["max_concurrent"] == 1
        assert queue["queue_length"] == 1
