from enum import Enum
from dataclasses import dataclass, field, asdict
from pathlib import Path
import time
import uuid
from typing import Optional, List, Dict, FrozenSet, Any

class JobKind(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"

class JobStatus(str, Enum):
    QUEUED             = "queued"
    STARTING           = "starting"
    DOWNLOADING_VIDEO  = "downloading_video"
    DOWNLOADING_AUDIO  = "downloading_audio"
    POSTPROCESSING     = "postprocessing"
    CONVERTING_AUDIO   = "converting_audio"
    EMBEDDING_METADATA = "embedding_metadata"
    MERGING_PLAYLIST   = "merging_playlist"
    FINALIZING         = "finalizing"
    FINISHED           = "finished"
    ERROR              = "error"
    CANCELLED          = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[JobStatus] = frozenset({
    JobStatus.FINISHED,
    JobStatus.ERROR,
    JobStatus.CANCELLED,
})

_FAILURE: FrozenSet[JobStatus] = frozenset({JobStatus.ERROR, JobStatus.CANCELLED})

# Phases that imply a live worker process. Playlists bounce between
# downloading and post-processing once per item, so they may follow each other freely.
_RUNNING: FrozenSet[JobStatus] = frozenset({
    JobStatus.DOWNLOADING_VIDEO,
    JobStatus.DOWNLOADING_AUDIO,
    JobStatus.POSTPROCESSING,
    JobStatus.CONVERTING_AUDIO,
    JobStatus.EMBEDDING_METADATA,
    JobStatus.MERGING_PLAYLIST,
})

TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED:     frozenset({JobStatus.STARTING}) | _FAILURE,
    JobStatus.STARTING:   frozenset({JobStatus.DOWNLOADING_VIDEO, JobStatus.DOWNLOADING_AUDIO}) | _FAILURE,
    JobStatus.FINALIZING: frozenset({JobStatus.FINISHED}) | _FAILURE,
    JobStatus.FINISHED:   frozenset(),
    JobStatus.ERROR:      frozenset(),
    JobStatus.CANCELLED:  frozenset(),
    **{status: _RUNNING | {JobStatus.FINALIZING} | _FAILURE for status in _RUNNING},
}

def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Staying in a non-terminal status is always allowed; terminal statuses are final."""
    if current == target:
        return not current.is_terminal
    return target in TRANSITIONS[current]


@dataclass(frozen=True)
class Job:
    url: str
    kind: JobKind
    format: str
    id: str                            = field(default_factory=lambda: str(uuid.uuid4()))
    quality: str                       = "best"
    merge: bool                        = False
    custom_name: Optional[str]         = None   # Already sanitized
    embed_thumbnail: bool              = True
    normalize_audio: bool              = False
    download_subtitles: bool           = False
    subtitle_lang: str                 = "en"
    high_compatibility: bool           = False
    submitted_at: float                = field(default_factory=time.time)

    @property
    def short_id(self) -> str:
        return self.id[:8]

@dataclass
class OutputFile:
    name: str
    size: int
    url: str          # Access path under /downloads
    extension: str = ""

@dataclass
class ProgressRecord:
    job_id: str
    status: JobStatus                  = JobStatus.QUEUED
    progress: float                    = 0.0    # 0 → 100
    message: str                       = ""
    queue_position: Optional[int]      = None
    files: List[OutputFile]            = field(default_factory=list)
    error: Optional[str]               = None
    can_cancel: bool                   = True
    kind: Optional[JobKind]            = None
    format: Optional[str]              = None
    submitted_at: Optional[float]      = None
    timestamp: float                   = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["kind"] = self.kind.value if self.kind else None
        data["progress"] = round(self.progress, 1)
        return data

@dataclass
class ActiveExecution:
    job_id: str
    supervisor: Any                                  # core.supervisor.ProcessSupervisor
    scratch_dir: Optional[Path]        = None        # Only merge jobs get one
    started_at: float                  = field(default_factory=time.time)

    @property
    def token(self):
        return self.supervisor.token
