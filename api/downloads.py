from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Union
from urllib.parse import unquote
import json
import logging

import core.globals
from core.errors import JobValidationError
from core.housekeeping import list_downloads
from core.progress_store import ProgressSubscription
from core.rate_limit import RateLimiter
from core.validation import is_path_safe
from schemas.models import TERMINAL_STATES
from config import DOWNLOAD_RATE_LIMIT, HEARTBEAT_INTERVAL_S

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["downloads"])

download_limiter = RateLimiter(*DOWNLOAD_RATE_LIMIT)

_TERMINAL_VALUES = {status.value for status in TERMINAL_STATES}


class DownloadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    type: Optional[str] = None
    mode: Optional[str] = None          # Older clients send the kind here
    format: str
    quality: Optional[Union[str, int]] = "best"
    merge: bool = False
    embed_thumbnail: bool = Field(True, alias="embedThumbnail")
    normalize_audio: bool = Field(False, alias="normalizeAudio")
    custom_filename: Optional[str] = Field(None, alias="customFilename")
    download_subtitles: bool = Field(False, alias="downloadSubtitles")
    subtitle_lang: Optional[str] = Field(None, alias="subtitleLang")
    high_compatibility: bool = Field(False, alias="highCompatibility")


def client_id(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def enforce_rate_limit(limiter: RateLimiter, request: Request):
    identifier = client_id(request)
    limiter.cleanup()
    if not limiter.check(identifier):
        retry_after = max(1, round(limiter.retry_after(identifier)))
        raise HTTPException(
            status_code=429,
            detail="Too many requests, please wait a moment",
            headers={"Retry-After": str(retry_after)},
        )


@router.post("/download")
async def start_download(req: DownloadRequest, request: Request):
    """Validates the request and queues the download. Progress is streamed separately."""
    enforce_rate_limit(download_limiter, request)
    try:
        job_id = core.globals.job_manager.submit_job(
            req.url,
            req.type or req.mode or req.format,
            req.format,
            quality=req.quality,
            merge=req.merge,
            custom_name=req.custom_filename,
            embed_thumbnail=req.embed_thumbnail,
            normalize_audio=req.normalize_audio,
            download_subtitles=req.download_subtitles,
            subtitle_lang=req.subtitle_lang,
            high_compatibility=req.high_compatibility,
        )
    except JobValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"download_id": job_id, "message": "Download queued"}


@router.post("/cancel/{job_id}")
async def cancel_download(job_id: str):
    if not await core.globals.job_manager.cancel_job(job_id):
        raise HTTPException(status_code=404, detail="Download not found")
    return {"success": True, "message": "Download cancelled"}


def _sse_frame(snapshot: dict) -> str:
    return f"data: {json.dumps(snapshot)}\n\n"


@router.get("/progress/{job_id}")
async def progress_stream(job_id: str, request: Request):
    """Server-sent events: one full snapshot per update, ending after a terminal one."""
    manager = core.globals.job_manager
    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}

    if manager.get_progress(job_id) is None:
        async def unknown():
            yield _sse_frame({"job_id": job_id, "status": "unknown"})
        return StreamingResponse(unknown(), media_type="text/event-stream", headers=headers)

    subscription = ProgressSubscription()
    unsubscribe = manager.subscribe(job_id, subscription)

    async def events():
        try:
            while True:
                snapshot = await subscription.next(timeout=HEARTBEAT_INTERVAL_S)
                if snapshot is None:
                    if subscription.lost:
                        logger.warning(f"Progress stream for {job_id[:8]} fell behind, closing")
                        break
                    if await request.is_disconnected():
                        break
                    yield ": heartbeat\n\n"
                    continue
                yield _sse_frame(snapshot)
                if snapshot["status"] in _TERMINAL_VALUES:
                    break
        finally:
            subscription.close()
            unsubscribe()

    return StreamingResponse(events(), media_type="text/event-stream", headers=headers)


@router.get("/files")
async def get_files():
    files = list_downloads(core.globals.job_manager.downloads_dir)
    return {"files": files, "count": len(files)}


@router.delete("/files/{filename}")
async def delete_file(filename: str):
    downloads_dir = core.globals.job_manager.downloads_dir
    path = downloads_dir / unquote(filename)
    if not is_path_safe(path, downloads_dir) or path.resolve() == downloads_dir.resolve():
        raise HTTPException(status_code=403, detail="Access denied")
    if not path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    try:
        path.unlink()
    except OSError as e:
        logger.error(f"Delete file error: {e}")
        raise HTTPException(status_code=500, detail="Failed to delete file")
    logger.info(f"File deleted: {path.name}")
    return {"success": True, "message": "File deleted"}


@router.get("/queue")
async def get_queue():
    return core.globals.job_manager.queue_status()


@router.get("/status")
async def get_status():
    return core.globals.job_manager.status()
