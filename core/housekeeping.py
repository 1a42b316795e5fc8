import logging
import shutil
import time
from dataclasses import asdict
from pathlib import Path
from typing import Container, List, Optional

from core.media_processor import describe_file
from core.validation import is_path_safe
from config import FILE_MAX_AGE_S

logger = logging.getLogger(__name__)


def remove_tree(path: Optional[Path], base_dir: Path) -> bool:
    """Recursively delete ``path`` if it lives inside ``base_dir``. Missing paths are fine."""
    if path is None or not is_path_safe(path, base_dir) or Path(path).resolve() == Path(base_dir).resolve():
        return False
    try:
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()
        else:
            return False
        return True
    except OSError as e:
        logger.warning(f"Cleanup of {path} failed: {e}")
        return False


def cleanup_temp_dir(tmp_dir: Path, keep: Container[Path] = ()) -> int:
    """Delete everything under the scratch root except the entries in ``keep``."""
    if not tmp_dir.exists():
        return 0
    count = 0
    for item in tmp_dir.iterdir():
        if item in keep:
            continue
        if remove_tree(item, tmp_dir):
            count += 1
    if count:
        logger.info(f"Temp folder cleaned ({count} items)")
    return count


def cleanup_old_downloads(downloads_dir: Path, max_age: float = FILE_MAX_AGE_S, now: Optional[float] = None) -> int:
    """Delete files in the downloads folder older than ``max_age`` seconds."""
    if not downloads_dir.exists():
        return 0
    now = time.time() if now is None else now
    deleted = 0
    for item in downloads_dir.iterdir():
        try:
            if not item.is_file() or now - item.stat().st_mtime <= max_age:
                continue
            if is_path_safe(item, downloads_dir):
                item.unlink()
                deleted += 1
        except OSError as e:
            logger.warning(f"Failed to delete {item.name}: {e}")
    if deleted:
        logger.info(f"{deleted} old files (>{max_age / 3600:.0f}h) deleted")
    return deleted


def list_downloads(downloads_dir: Path) -> List[dict]:
    """Files in the downloads folder, newest first."""
    files = []
    if not downloads_dir.exists():
        return files
    for item in downloads_dir.iterdir():
        if item.name.startswith(".") or not item.is_file():
            continue
        try:
            mtime = item.stat().st_mtime
            files.append((mtime, {**asdict(describe_file(item)), "modified": mtime}))
        except OSError:
            continue
    files.sort(key=lambda pair: pair[0], reverse=True)
    return [entry for _, entry in files]
