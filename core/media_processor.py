import asyncio
import json
import logging
import os
import re
import shutil
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote

from schemas.models import Job, OutputFile
from core.errors import MediaDockError, WorkerFailedError
from core.supervisor import ProcessSupervisor
from core.validation import is_playlist_url
from config import (
    BIN_DIR,
    INFO_TIMEOUT_S,
    LONG_DURATION_WARNING_S,
    LOSSLESS_FORMATS,
    MAX_FILE_SIZE_BYTES,
    MAX_PLAYLIST_MERGE,
    SUBTITLES_DIR,
)

logger = logging.getLogger(__name__)

DEFAULT_TITLE_TEMPLATE = "%(title).100s_%(id)s.%(ext)s"
LOUDNORM_FILTER = "loudnorm=I=-16:LRA=11:TP=-1.5"
HIGH_COMPAT_ARGS = "VideoConvertor:-c:v libx264 -preset fast -crf 23 -c:a aac -b:a 192k"

COMMON_ARGS = [
    "--newline",
    "--no-warnings",
    "--add-metadata",
    "--no-mtime",           # mtime must reflect when the file was written
    "--socket-timeout", "30",
    "--retries", "5",
    "--no-check-certificates",
]

MERGE_CODEC_ARGS = {
    "mp3":  ["-c:a", "libmp3lame", "-b:a", "320k"],
    "flac": ["-c:a", "flac"],
    "wav":  ["-c:a", "pcm_s16le"],
    "opus": ["-c:a", "libopus", "-b:a", "192k"],
}


def _local_binary(name: str) -> Optional[str]:
    candidate = BIN_DIR / (f"{name}.exe" if os.name == "nt" else name)
    return str(candidate) if candidate.exists() else None


def get_ytdlp_exe() -> str:
    """Bundled yt-dlp if present, otherwise whatever is on PATH."""
    return _local_binary("yt-dlp") or shutil.which("yt-dlp") or "yt-dlp"


def get_ffmpeg_exe() -> str:
    """Bundled ffmpeg, then PATH, then the static_ffmpeg binaries."""
    found = _local_binary("ffmpeg") or shutil.which("ffmpeg")
    if found:
        return found
    import static_ffmpeg
    # Downloads the static binaries on first use and adds them to PATH
    static_ffmpeg.add_paths()
    return shutil.which("ffmpeg") or "ffmpeg"


def natural_sort_key(name: str) -> List[Any]:
    """'2_b' sorts before '10_a'."""
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", name)]


def output_template(job: Job, prefix_index: bool = False) -> str:
    if job.custom_name:
        # '%' would otherwise be read as a yt-dlp template field
        name = f"{job.custom_name.replace('%', '%%')}_%(id)s.%(ext)s"
    else:
        name = DEFAULT_TITLE_TEMPLATE
    if prefix_index:
        # Keeps playlist order when the items are later sorted by file name
        name = f"%(playlist_index)03d_{name}"
    return name


def build_format_selector(quality: str) -> str:
    """Exact height, then anything at or below it, then the best available."""
    if quality.isdigit() and int(quality) > 0:
        height = int(quality)
        return (
            f"bestvideo[height={height}]+bestaudio"
            f"/bestvideo[height<={height}]+bestaudio"
            f"/best[height<={height}]"
            f"/bestvideo+bestaudio/best"
        )
    return "bestvideo+bestaudio/best"


def build_video_command(ytdlp: str, job: Job, output_dir: Path, ffmpeg: Optional[str] = None,
                        subtitles_dir: Path = SUBTITLES_DIR) -> List[str]:
    args = [
        ytdlp,
        "-f", build_format_selector(job.quality),
        "--merge-output-format", job.format,
        "-o", str(output_dir / output_template(job)),
        "--no-playlist",
        "--fragment-retries", "5",
        *COMMON_ARGS,
    ]
    if ffmpeg:
        args += ["--ffmpeg-location", ffmpeg]
    if job.embed_thumbnail:
        args.append("--embed-thumbnail")
    if job.download_subtitles:
        args += [
            "--write-subs",
            "--sub-lang", job.subtitle_lang,
            "--convert-subs", "srt",
            "-o", f"subtitle:{subtitles_dir / output_template(job)}",
        ]
    if job.high_compatibility:
        args += ["--recode-video", "mp4", "--postprocessor-args", HIGH_COMPAT_ARGS]
    args.append(job.url)
    return args


def build_audio_command(ytdlp: str, job: Job, output_dir: Path, ffmpeg: Optional[str] = None) -> List[str]:
    args = [
        ytdlp,
        "-x",
        "--audio-format", job.format,
        "-o", str(output_dir / output_template(job, prefix_index=job.merge)),
        "--parse-metadata", "uploader:%(artist)s",
        *COMMON_ARGS,
    ]
    if ffmpeg:
        args += ["--ffmpeg-location", ffmpeg]
    if job.format == "mp3":
        args += ["--audio-quality", "0"]
    if job.embed_thumbnail and job.format != "wav":
        args.append("--embed-thumbnail")
    if not job.merge:
        args.append("--no-playlist")
    args.append(job.url)
    return args


def build_count_command(ytdlp: str, url: str) -> List[str]:
    return [ytdlp, "--flat-playlist", "--dump-json", "--no-warnings", url]


def escape_concat_path(path: Path) -> str:
    return (
        str(path)
        .replace("\\", "/")
        .replace("'", "'\\''")
        .replace("\r", "")
        .replace("\n", "")
    )


def write_concat_manifest(files: Sequence[Path], manifest: Path) -> Path:
    content = "\n".join(f"file '{escape_concat_path(f.resolve())}'" for f in files)
    manifest.write_text(content + "\n", encoding="utf-8")
    return manifest


def build_merge_command(ffmpeg: str, manifest: Path, output: Path, audio_format: str, normalize: bool) -> List[str]:
    args = [ffmpeg, "-hide_banner", "-nostdin", "-f", "concat", "-safe", "0", "-i", str(manifest)]
    normalize = normalize and audio_format not in LOSSLESS_FORMATS
    codec = MERGE_CODEC_ARGS.get(audio_format)
    if codec is None:
        # Stream copy cannot be combined with a filter
        codec = ["-c:a", "aac", "-b:a", "256k"] if normalize else ["-c:a", "copy"]
    args += codec
    if normalize:
        args += ["-af", LOUDNORM_FILTER]
    args += ["-y", str(output)]
    return args


def merged_output_name(job: Job) -> str:
    if job.custom_name:
        return f"{job.custom_name}_merged.{job.format}"
    timestamp = time.strftime("%Y-%m-%dT%H-%M-%S")
    return f"merged_playlist_{timestamp}.{job.format}"


async def merge_audio_files(supervisor: ProcessSupervisor, ffmpeg: str, job: Job,
                            input_dir: Path, output_dir: Path) -> Path:
    """
    Concatenate the items downloaded into ``input_dir`` into one file in ``output_dir``.
    Runs ffmpeg as the supervisor's secondary process so it can be killed with the job.
    """
    files = sorted(
        (p for p in input_dir.iterdir() if p.is_file() and p.suffix.lower() == f".{job.format}"),
        key=lambda p: natural_sort_key(p.name),
    )
    if not files:
        raise WorkerFailedError("No audio files to merge")

    if len(files) == 1:
        destination = output_dir / files[0].name
        await asyncio.to_thread(shutil.copyfile, files[0], destination)
        return destination

    manifest = write_concat_manifest(files, input_dir / "concat.txt")
    output = output_dir / merged_output_name(job)
    logger.info(f"Job {job.short_id}: merging {len(files)} files into {output.name}")
    await supervisor.run(
        build_merge_command(ffmpeg, manifest, output, job.format, job.normalize_audio),
        secondary=True,
        failure_message="Failed to merge audio files",
    )
    return output


def describe_file(path: Path) -> OutputFile:
    stat = path.stat()
    return OutputFile(
        name=path.name,
        size=stat.st_size,
        url=f"/downloads/{quote(path.name)}",
        extension=path.suffix[1:].lower(),
    )


def collect_recent_files(directory: Path, extension: str, limit: int, since: Optional[float] = None) -> List[OutputFile]:
    """Newest files in ``directory`` with ``extension``, optionally only those written after ``since``."""
    extension = extension.lower()
    found = []
    try:
        entries = list(directory.iterdir())
    except OSError as e:
        logger.warning(f"Could not list {directory}: {e}")
        return []
    for path in entries:
        if not path.name.lower().endswith(extension):
            continue
        try:
            stat = path.stat()
        except OSError:
            continue
        if not path.is_file() or (since is not None and stat.st_mtime < since):
            continue
        found.append((stat.st_mtime, path))
    found.sort(key=lambda item: item[0], reverse=True)
    return [describe_file(path) for _, path in found[:limit]]


# -- Media info --

def format_duration(seconds: Any) -> str:
    if not isinstance(seconds, (int, float)) or seconds <= 0:
        return "--:--"
    seconds = int(seconds)
    h, rest = divmod(seconds, 3600)
    m, s = divmod(rest, 60)
    if h > 0:
        return f"{h}:{m:02d}:{s:02d}"
    return f"{m}:{s:02d}"


def extract_available_qualities(formats: Any) -> Dict[str, Any]:
    if not isinstance(formats, list):
        return {"resolutions": [], "audio_codecs": [], "has_video_formats": False}
    video = [f for f in formats if f.get("vcodec") and f.get("vcodec") != "none"]
    resolutions = sorted({f["height"] for f in video if f.get("height")}, reverse=True)
    audio_codecs = list(dict.fromkeys(
        f["acodec"] for f in formats if f.get("acodec") and f.get("acodec") != "none"
    ))
    return {"resolutions": resolutions, "audio_codecs": audio_codecs, "has_video_formats": bool(video)}


def summarize_playlist(entries: List[Dict[str, Any]]) -> Dict[str, Any]:
    first = entries[0]
    total_duration = sum(e.get("duration") or 0 for e in entries)
    return {
        "is_playlist": True,
        "video_count": len(entries),
        "title": first.get("playlist_title") or f"Playlist ({len(entries)} videos)",
        "thumbnail": first.get("thumbnail") or (first.get("thumbnails") or [{}])[0].get("url"),
        "duration": format_duration(total_duration),
        "duration_seconds": total_duration,
        "channel": first.get("uploader") or first.get("channel") or "Unknown",
        "estimated_size": None,
        "is_long_duration": total_duration > LONG_DURATION_WARNING_S,
        "can_merge": len(entries) <= MAX_PLAYLIST_MERGE,
        "platform": first.get("extractor") or first.get("extractor_key") or "Unknown",
        "videos": [
            {
                "id": e.get("id"),
                "title": e.get("title"),
                "duration": format_duration(e.get("duration")),
                "thumbnail": e.get("thumbnail"),
            }
            for e in entries[:100]
        ],
    }


def summarize_video(info: Dict[str, Any]) -> Dict[str, Any]:
    estimated_size = info.get("filesize") or info.get("filesize_approx")
    formats = info.get("formats") if isinstance(info.get("formats"), list) else []
    if not estimated_size:
        sizes = [f.get("filesize") or f.get("filesize_approx") or 0 for f in formats]
        estimated_size = max(sizes, default=0) or None
    subtitles = list((info.get("subtitles") or {}).keys())
    qualities = extract_available_qualities(info.get("formats"))
    duration = info.get("duration") or 0
    return {
        "is_playlist": False,
        "video_count": 1,
        "title": info.get("title") or "Unknown",
        "thumbnail": info.get("thumbnail"),
        "duration": format_duration(duration),
        "duration_seconds": info.get("duration"),
        "channel": info.get("uploader") or info.get("channel") or "Unknown",
        "estimated_size": estimated_size,
        "file_size_exceeded": bool(estimated_size and estimated_size > MAX_FILE_SIZE_BYTES),
        "view_count": info.get("view_count"),
        "upload_date": info.get("upload_date"),
        "description": (info.get("description") or "")[:200] or None,
        "is_long_duration": duration > LONG_DURATION_WARNING_S,
        "has_subtitles": bool(subtitles),
        "available_subtitles": subtitles[:20],
        "platform": info.get("extractor") or info.get("extractor_key") or "Unknown",
        "available_resolutions": qualities["resolutions"],
        "available_audio_codecs": qualities["audio_codecs"],
        "has_video_formats": qualities["has_video_formats"],
    }


def _explain_info_failure(stderr: str) -> Optional[str]:
    if "Video unavailable" in stderr:
        return "Video unavailable"
    if "Private video" in stderr:
        return "Private video"
    if "Sign in" in stderr:
        return "Video requires login"
    return None


async def fetch_media_info(url: str, ytdlp: Optional[str] = None, timeout: float = INFO_TIMEOUT_S) -> Dict[str, Any]:
    """Probe ``url`` with yt-dlp and summarize it for the client."""
    playlist = is_playlist_url(url)
    argv = [
        ytdlp or get_ytdlp_exe(),
        "--dump-json",
        "--no-warnings",
        "--socket-timeout", "30",
        "--no-check-certificates",
        "--flat-playlist" if playlist else "--no-playlist",
        url,
    ]
    lines: List[str] = []
    supervisor = ProcessSupervisor(job_id="info")
    try:
        returncode = await asyncio.wait_for(
            supervisor.run(argv, on_line=lines.append, check=False),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        raise TimeoutError("Timed out fetching media info")

    if returncode != 0:
        stderr = "\n".join(supervisor.stderr_tail)
        logger.warning(f"yt-dlp info error: {stderr[:200]}")
        raise WorkerFailedError(_explain_info_failure(stderr) or "Failed to fetch media info",
                                returncode, supervisor.stderr_tail)

    documents = []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            documents.append(json.loads(line))
        except json.JSONDecodeError:
            continue

    if not documents:
        raise MediaDockError("Playlist is empty or could not be found" if playlist else "No media information returned")
    if playlist:
        return summarize_playlist(documents)
    return summarize_video(documents[0])
