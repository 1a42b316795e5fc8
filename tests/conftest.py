import asyncio
import os
import stat
import sys
import textwrap
import time
from pathlib import Path

import pytest

from core.job_manager import JobManager

FAKE_YTDLP = """
import json, re, signal, sys, time

PLAYLIST_COUNT = {playlist_count}
COUNT_EXIT = {count_exit}
ITEMS = {items}
STEP = {step}
HOLD = {hold}
EXIT = {exit_code}
IGNORE_TERM = {ignore_term}

args = sys.argv[1:]
if "--flat-playlist" in args:
    for i in range(PLAYLIST_COUNT):
        print(json.dumps({{"id": "v%d" % i, "title": "Item %d" % i}}), flush=True)
    sys.exit(COUNT_EXIT)

if IGNORE_TERM:
    signal.signal(signal.SIGTERM, signal.SIG_IGN)

template = args[args.index("-o") + 1]
if "--audio-format" in args:
    ext = args[args.index("--audio-format") + 1]
else:
    ext = args[args.index("--merge-output-format") + 1]

for item in range(1, ITEMS + 1):
    if ITEMS > 1:
        print("[download] Downloading item %d of %d" % (item, ITEMS), flush=True)
    for pct in (10.0, 50.0, 100.0):
        print("[download]  %.1f%% of 1.00MiB at 1.00MiB/s ETA 00:01" % pct, flush=True)
        time.sleep(STEP)
    name = template.replace("%(playlist_index)03d", "%03d" % item).replace("%(ext)s", ext)
    name = re.sub(r"%\\(\\w+\\)[.\\d]*s", "item%d" % item, name).replace("%%", "%")
    with open(name, "wb") as f:
        f.write(b"item%d;" % item)
    if "--audio-format" in args:
        print("[ExtractAudio] Destination: " + name, flush=True)
    else:
        print("[Merger] Merging formats into " + name, flush=True)

print("ready", flush=True)
time.sleep(HOLD)
sys.exit(EXIT)
"""

FAKE_FFMPEG = """
import sys

args = sys.argv[1:]
manifest = args[args.index("-i") + 1]
output = args[-1]
with open(output, "wb") as out:
    for line in open(manifest, encoding="utf-8"):
        line = line.strip()
        if line.startswith("file '"):
            with open(line[6:-1], "rb") as f:
                out.write(f.read())
"""


def make_script(directory: Path, name: str, body: str) -> str:
    """Writes an executable Python script and returns its path."""
    path = directory / name
    path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body), encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def bin_dir(tmp_path):
    path = tmp_path / "bin"
    path.mkdir()
    return path


@pytest.fixture
def fake_ytdlp(bin_dir):
    """Factory for fake yt-dlp executables with scripted behaviour."""
    counter = iter(range(1000))

    def factory(playlist_count=0, count_exit=0, items=1, step=0.01, hold=0.0,
                exit_code=0, ignore_term=False):
        body = FAKE_YTDLP.format(
            playlist_count=playlist_count,
            count_exit=count_exit,
            items=items,
            step=step,
            hold=hold,
            exit_code=exit_code,
            ignore_term=ignore_term,
        )
        return make_script(bin_dir, f"yt-dlp-{next(counter)}", body)

    return factory


@pytest.fixture
def fake_ffmpeg(bin_dir):
    return make_script(bin_dir, "ffmpeg", FAKE_FFMPEG)


@pytest.fixture
def dirs(tmp_path):
    downloads = tmp_path / "downloads"
    scratch = tmp_path / "tmp"
    return {
        "downloads_dir": downloads,
        "tmp_dir": scratch,
        "subtitles_dir": downloads / "subtitles",
    }


@pytest.fixture
async def make_manager(dirs, fake_ffmpeg):
    """Factory for started JobManagers on temporary directories; all are stopped afterwards."""
    managers = []

    async def factory(ytdlp_path, **options):
        settings = {
            "max_concurrent": 2,
            "job_timeout": 60,
            "progress_ttl": 60,
            "kill_grace_period": 1,
            "progress_throttle": 0,
            "cleanup_interval": None,
            "ffmpeg_path": fake_ffmpeg,
            **dirs,
        }
        settings.update(options)
        manager = JobManager(ytdlp_path=ytdlp_path, **settings)
        await manager.start()
        managers.append(manager)
        return manager

    yield factory

    for manager in managers:
        await manager.stop()


async def wait_for(predicate, timeout: float = 10.0, interval: float = 0.02):
    """Polls ``predicate`` on the event loop until it is truthy."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        await asyncio.sleep(interval)
    raise AssertionError("condition not met in time")


async def wait_for_status(manager, job_id, *statuses, timeout: float = 10.0):
    def reached():
        record = manager.store.get(job_id)
        return record is not None and record.status.value in statuses
    await wait_for(reached, timeout)
    return manager.store.get(job_id)


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True
