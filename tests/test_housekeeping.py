"""Tests for download/scratch cleanup, keyed timers and rate limiting."""

import asyncio
import os
import time

from core.housekeeping import cleanup_old_downloads, cleanup_temp_dir, list_downloads, remove_tree
from core.rate_limit import RateLimiter
from core.scheduler import KeyedScheduler


def age(path, seconds):
    past = time.time() - seconds
    os.utime(path, (past, past))


class TestCleanup:
    def test_old_downloads_are_deleted(self, tmp_path):
        old = tmp_path / "old.mp3"
        old.write_bytes(b"o")
        age(old, 2 * 86400)
        fresh = tmp_path / "fresh.mp3"
        fresh.write_bytes(b"f")

        assert cleanup_old_downloads(tmp_path, max_age=86400) == 1
        assert not old.exists()
        assert fresh.exists()

    def test_directories_are_left_alone(self, tmp_path):
        sub = tmp_path / "subtitles"
        sub.mkdir()
        age(sub, 2 * 86400)

        assert cleanup_old_downloads(tmp_path, max_age=86400) == 0
        assert sub.exists()

    def test_temp_dir_keeps_active_scratch(self, tmp_path):
        active = tmp_path / "active"
        stale = tmp_path / "stale"
        for directory in (active, stale):
            directory.mkdir()
            (directory / "part").write_bytes(b"x")

        assert cleanup_temp_dir(tmp_path, keep={active}) == 1
        assert active.exists()
        assert not stale.exists()

    def test_remove_tree_refuses_outside_paths(self, tmp_path):
        base = tmp_path / "tmp"
        base.mkdir()
        outside = tmp_path / "keep-me"
        outside.mkdir()

        assert remove_tree(outside, base) is False
        assert remove_tree(base, base) is False
        assert remove_tree(None, base) is False
        assert outside.exists() and base.exists()

    def test_remove_tree_missing_path(self, tmp_path):
        assert remove_tree(tmp_path / "gone", tmp_path) is False

    def test_list_downloads_newest_first(self, tmp_path):
        older = tmp_path / "a.mp3"
        older.write_bytes(b"aa")
        age(older, 100)
        (tmp_path / "b.mp4").write_bytes(b"b")
        (tmp_path / ".hidden").write_bytes(b"h")
        (tmp_path / "subtitles").mkdir()

        files = list_downloads(tmp_path)

        assert [f["name"] for f in files] == ["b.mp4", "a.mp3"]
        assert files[1]["size"] == 2
        assert files[1]["url"] == "/downloads/a.mp3"
        assert "modified" in files[0]


class TestKeyedScheduler:
    async def test_fires_once(self):
        fired = []
        scheduler = KeyedScheduler()
        scheduler.schedule("a", 0.01, fired.append, "a")
        await asyncio.sleep(0.05)

        assert fired == ["a"]
        assert not scheduler.pending("a")

    async def test_reschedule_replaces(self):
        fired = []
        scheduler = KeyedScheduler()
        scheduler.schedule("a", 0.01, fired.append, 1)
        scheduler.schedule("a", 0.03, fired.append, 2)
        await asyncio.sleep(0.08)

        assert fired == [2]

    async def test_cancel_is_idempotent(self):
        fired = []
        scheduler = KeyedScheduler()
        scheduler.schedule("a", 0.01, fired.append, 1)

        assert scheduler.cancel("a") is True
        assert scheduler.cancel("a") is False
        await asyncio.sleep(0.03)
        assert fired == []

    async def test_failing_callback_is_contained(self):
        scheduler = KeyedScheduler()
        scheduler.schedule("a", 0, lambda: 1 / 0)
        await asyncio.sleep(0.01)

        assert len(scheduler) == 0


class TestRateLimiter:
    def test_sliding_window(self):
        now = [0.0]
        limiter = RateLimiter(2, 5.0, clock=lambda: now[0])

        assert limiter.check("1.2.3.4")
        assert limiter.check("1.2.3.4")
        assert not limiter.check("1.2.3.4")
        assert limiter.check("5.6.7.8")
        assert limiter.retry_after("1.2.3.4") == 5.0

        now[0] = 5.1
        assert limiter.check("1.2.3.4")

    def test_cleanup_drops_idle_clients(self):
        now = [0.0]
        limiter = RateLimiter(1, 1.0, clock=lambda: now[0])
        limiter.check("a")
        now[0] = 2.0
        limiter.cleanup()

        assert limiter.retry_after("a") == 0.0
