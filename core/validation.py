import re
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

from schemas.models import Job, JobKind
from core.errors import JobValidationError
from config import (
    AUDIO_FORMATS,
    MAX_FILENAME_LENGTH,
    MAX_URL_LENGTH,
    VIDEO_FORMATS,
    VIDEO_QUALITIES,
)

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_DOT_RUNS = re.compile(r"\.{2,}")
_SCHEME = re.compile(r"^https?://", re.IGNORECASE)
_SUBTITLE_LANG = re.compile(r"^[A-Za-z]{2,3}(?:[-_][A-Za-z0-9]{2,8})*$")


def normalize_url(url: Any) -> Optional[str]:
    """Returns an absolute http(s) URL, or None if ``url`` cannot be one."""
    if not isinstance(url, str):
        return None
    url = url.strip()
    if not url or len(url) > MAX_URL_LENGTH or any(c.isspace() for c in url):
        return None
    if not _SCHEME.match(url):
        if "://" in url:
            return None
        url = "https://" + url
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if parsed.scheme.lower() not in ("http", "https") or not parsed.hostname:
        return None
    return url


def is_playlist_url(url: str) -> bool:
    return "playlist?list=" in url or "/playlist/" in url


def sanitize_filename(name: Any, max_length: int = MAX_FILENAME_LENGTH) -> str:
    """Make a user-supplied name safe to use as (part of) a file name."""
    if not isinstance(name, str) or not name:
        return "download"
    name = _UNSAFE_CHARS.sub("_", name)
    name = _DOT_RUNS.sub(".", name)
    name = " ".join(name.split()).strip(". ")
    return name[:max_length].rstrip() or "download"


def is_path_safe(path: Path, base_dir: Path) -> bool:
    """True if ``path`` resolves to ``base_dir`` itself or somewhere beneath it."""
    try:
        resolved = Path(path).resolve()
        base = Path(base_dir).resolve()
    except (OSError, RuntimeError):
        return False
    return resolved == base or base in resolved.parents


def resolve_kind(kind: Any) -> JobKind:
    """Accepts 'video'/'audio' or a format name that implies the kind."""
    if kind in AUDIO_FORMATS:
        return JobKind.AUDIO
    if kind in VIDEO_FORMATS:
        return JobKind.VIDEO
    try:
        return JobKind(kind)
    except ValueError:
        raise JobValidationError("type", "Invalid download type")


def build_job(
    url: Any,
    kind: Any,
    format: Any,
    quality: Any = "best",
    merge: bool = False,
    custom_name: Optional[str] = None,
    embed_thumbnail: bool = True,
    normalize_audio: bool = False,
    download_subtitles: bool = False,
    subtitle_lang: Optional[str] = None,
    high_compatibility: bool = False,
) -> Job:
    """Validate a raw submission and build the immutable Job for it."""
    clean_url = normalize_url(url)
    if clean_url is None:
        raise JobValidationError("url", "Invalid URL. Enter a valid http/https address.")

    job_kind = resolve_kind(kind)
    valid_formats = VIDEO_FORMATS if job_kind == JobKind.VIDEO else AUDIO_FORMATS
    if format not in valid_formats:
        raise JobValidationError("format", "Invalid format")

    quality = str(quality) if quality not in (None, "") else "best"
    if job_kind == JobKind.VIDEO and quality not in VIDEO_QUALITIES:
        raise JobValidationError("quality", "Invalid quality")

    subtitle_lang = subtitle_lang or "en"
    if download_subtitles and not _SUBTITLE_LANG.match(subtitle_lang):
        raise JobValidationError("subtitle_lang", "Invalid subtitle language")

    return Job(
        url=clean_url,
        kind=job_kind,
        format=format,
        quality=quality,
        merge=bool(merge) and job_kind == JobKind.AUDIO,
        custom_name=sanitize_filename(custom_name) if custom_name else None,
        embed_thumbnail=bool(embed_thumbnail),
        normalize_audio=bool(normalize_audio),
        download_subtitles=bool(download_subtitles),
        subtitle_lang=subtitle_lang,
        high_compatibility=bool(high_compatibility),
    )
