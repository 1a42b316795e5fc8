"""
Translation of yt-dlp output lines into progress updates.

The worker's output format is treated as a set of opaque markers: a download
percentage line, a playlist item counter and post-processor tags. Each parser
maps them onto disjoint bands of the job's 0-100 progress scale, leaving the
top of the range to the orchestrator's finalizing (98) and finished (100) steps.
"""

import re
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

from schemas.models import JobStatus
from config import PROGRESS_THROTTLE_S

DOWNLOAD_PERCENT_RE = re.compile(r"\[download\]\s+(\d+(?:\.\d+)?)%")
DESTINATION_RE = re.compile(r"\[download\] Destination: ")
PLAYLIST_ITEM_RE =re.compile(r"\[download\] Downloading (?:item|video) (\d+) of (\d+)")

VIDEO_DOWNLOAD_BAND = 85.0
AUDIO_DOWNLOAD_BAND = 80.0


@dataclass
class ProgressUpdate:
    status: JobStatus
    message: str
    progress: Optional[float] = None   # None leaves the current value untouched

    def as_fields(self) -> dict:
        fields = {"status": self.status, "message": self.message}
        if self.progress is not None:
            fields["progress"] = self.progress
        return fields


# (markers, status, checkpoint, message)
Phase = Tuple[Sequence[str], JobStatus, float, str]

VIDEO_PHASES: Sequence[Phase] = (
    (("[Merger]", "Merging formats"), JobStatus.POSTPROCESSING, 88, "Merging video and audio..."),
    (("[VideoConvertor]",), JobStatus.POSTPROCESSING, 90, "Re-encoding video for compatibility..."),
    (("[EmbedThumbnail]",), JobStatus.EMBEDDING_METADATA, 92, "Embedding thumbnail..."),
    (("[SubtitlesConvertor]",), JobStatus.POSTPROCESSING, 93, "Converting subtitles..."),
    (("[Metadata]", "Adding metadata"), JobStatus.EMBEDDING_METADATA, 95, "Adding metadata..."),
)

AUDIO_PHASES: Sequence[Phase] = (
    (("[ExtractAudio]",), JobStatus.CONVERTING_AUDIO, 85, "Converting to {format}..."),
    (("[EmbedThumbnail]",), JobStatus.EMBEDDING_METADATA, 90, "Embedding cover art..."),
    (("[Metadata]",), JobStatus.EMBEDDING_METADATA, 93, "Adding metadata..."),
)


class OutputParser:
    phases: Sequence[Phase] = ()

    def __init__(self, min_interval: float = PROGRESS_THROTTLE_S,
                 clock: Callable[[], float] = time.monotonic):
        self.min_interval = min_interval
        self.clock = clock
        self._last_percent_at: Optional[float] = None

    def feed(self, line: str) -> Optional[ProgressUpdate]:
        update = self._parse_percent(line)
        for markers, status, checkpoint, message in self.phases:
            if any(marker in line for marker in markers):
                update = self._phase_update(status, checkpoint, message)
        return update

    def _parse_percent(self, line: str) -> Optional[ProgressUpdate]:
        match = DOWNLOAD_PERCENT_RE.search(line)
        if not match:
            return None
        now = self.clock()
        if self._last_percent_at is not None and now - self._last_percent_at < self.min_interval:
            return None
        self._last_percent_at = now
        return self._percent_update(float(match.group(1)))

    def _percent_update(self, percent: float) -> ProgressUpdate:
        raise NotImplementedError

    def _phase_update(self, status: JobStatus, checkpoint: float, message: str) -> ProgressUpdate:
        return ProgressUpdate(status, message, checkpoint)


class VideoOutputParser(OutputParser):
    """
    Video output. A merged download fetches its streams one after the other
    (subtitles, video, audio), each reporting its own 0-100%, so the download
    band is split between the streams the job is expected to fetch.
    """
    phases = VIDEO_PHASES

    def __init__(self, expected_streams: int = 1, **kwargs):
        super().__init__(**kwargs)
        self.expected_streams = max(1, expected_streams)
        self.current_stream = 0

    def feed(self, line: str) -> Optional[ProgressUpdate]:
        if DESTINATION_RE.search(line):
            self.current_stream += 1
            return None
        return super().feed(line)

    def _percent_update(self, percent: float) -> ProgressUpdate:
        stream = max(self.current_stream, 1)
        total = max(self.expected_streams, stream)
        overall = ((stream - 1) * 100 + percent) / total
        message = f"Downloading video: {percent:.1f}%"
        if total > 1:
            message += f" (part {stream}/{total})"
        return ProgressUpdate(
            JobStatus.DOWNLOADING_VIDEO,
            message,
            min(overall * VIDEO_DOWNLOAD_BAND / 100, VIDEO_DOWNLOAD_BAND),
        )


class AudioOutputParser(OutputParser):
    """
    Audio output, including multi-item playlists.

    For playlists the download band is shared between items: completed items
    count as whole fractions and the current item adds its own fraction.
    Post-processor markers then fire once per item, so they only update the
    status and message instead of jumping to their checkpoint.
    """
    phases = AUDIO_PHASES

    def __init__(self, audio_format: str = "mp3", **kwargs):
        super().__init__(**kwargs)
        self.audio_format = audio_format
        self.current_item = 0
        self.total_items = 0

    @property
    def is_playlist(self) -> bool:
        return self.total_items > 1

    def feed(self, line: str) -> Optional[ProgressUpdate]:
        match = PLAYLIST_ITEM_RE.search(line)
        if match:
            self.current_item = int(match.group(1))
            self.total_items = int(match.group(2))
            return ProgressUpdate(
                JobStatus.DOWNLOADING_AUDIO,
                f"Downloading {self.current_item}/{self.total_items}...",
            )
        return super().feed(line)

    def _percent_update(self, percent: float) -> ProgressUpdate:
        overall = percent
        if self.is_playlist:
            overall = (self.current_item - 1) / self.total_items * 100 + percent / self.total_items
            message = f"Downloading {self.current_item}/{self.total_items}: {percent:.1f}%"
        else:
            message = f"Downloading audio: {percent:.1f}%"
        return ProgressUpdate(
            JobStatus.DOWNLOADING_AUDIO,
            message,
            min(overall * AUDIO_DOWNLOAD_BAND / 100, AUDIO_DOWNLOAD_BAND),
        )

    def _phase_update(self, status: JobStatus, checkpoint: float, message: str) -> ProgressUpdate:
        message = message.format(format=self.audio_format.upper())
        if self.is_playlist:
            return ProgressUpdate(status, f"{message} ({self.current_item}/{self.total_items})")
        return ProgressUpdate(status, message, checkpoint)
