import os
import platformdirs
from pathlib import Path

APP_NAME   = "MediaDock"
APP_AUTHOR = "MediaDock"

BASE_DIR      = Path(os.environ.get("MEDIADOCK_BASE_PATH") or platformdirs.user_data_dir(APP_NAME, APP_AUTHOR))
BIN_DIR       = Path(os.environ.get("MEDIADOCK_BIN_PATH") or BASE_DIR / "bin")   # Bundled yt-dlp / ffmpeg
DOWNLOADS_DIR = BASE_DIR / "downloads"   # Shared output, served at /downloads
SUBTITLES_DIR = DOWNLOADS_DIR / "subtitles"
TMP_DIR       = BASE_DIR / "tmp"         # Per-job scratch directories for merges
LOG_FILE      = BASE_DIR / "mediadock.log"

FASTAPI_HOST = "127.0.0.1"
FASTAPI_PORT = int(os.environ.get("PORT", 47822))

# Queue & concurrency
MAX_CONCURRENT_DOWNLOADS = 2

# Timeouts (seconds)
DOWNLOAD_TIMEOUT_S  = 30 * 60    # Counted from the start of execution, not submission
INFO_TIMEOUT_S      = 30
KILL_GRACE_PERIOD_S = 5          # SIGTERM -> SIGKILL

# Limits
MAX_URL_LENGTH          = 500
MAX_PLAYLIST_MERGE      = 50
LONG_DURATION_WARNING_S = 60 * 60
MAX_FILE_SIZE_BYTES     = 5 * 1024 ** 3
MAX_FILENAME_LENGTH     = 150

# Cleanup
FILE_MAX_AGE_S      = 24 * 60 * 60
PROGRESS_CLEANUP_S  = 10 * 60    # Terminal progress records are dropped after this
CLEANUP_INTERVAL_S  = 60 * 60

# Progress streams
HEARTBEAT_INTERVAL_S     = 15
SUBSCRIBER_QUEUE_SIZE    = 256
PROGRESS_THROTTLE_S      = 0.5   # Minimum spacing between percentage updates

# Rate limiting: (max requests, window seconds) per client IP
DOWNLOAD_RATE_LIMIT = (1, 5.0)
INFO_RATE_LIMIT     = (3, 3.0)

VIDEO_FORMATS   = ("mp4", "webm")
AUDIO_FORMATS   = ("mp3", "m4a", "wav", "flac", "opus")
LOSSLESS_FORMATS = ("flac", "wav")
VIDEO_QUALITIES = ("360", "480", "720", "1080", "1440", "2160", "best")
