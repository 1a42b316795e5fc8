from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel
import logging

import core.globals
from api.downloads import client_id, enforce_rate_limit
from core.errors import MediaDockError, WorkerFailedError, WorkerSpawnError
from core.media_processor import fetch_media_info
from core.rate_limit import RateLimiter
from core.validation import normalize_url
from config import INFO_RATE_LIMIT

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["info"])

info_limiter = RateLimiter(*INFO_RATE_LIMIT)


class InfoRequest(BaseModel):
    url: str


@router.post("/info")
async def get_media_info(req: InfoRequest, request: Request):
    """Probes a URL with yt-dlp without downloading anything."""
    enforce_rate_limit(info_limiter, request)
    url = normalize_url(req.url)
    if url is None:
        raise HTTPException(status_code=400, detail="Invalid URL. Enter a valid http/https address.")

    logger.info(f"Info request from {client_id(request)}: {url[:60]}")
    try:
        return await fetch_media_info(url, ytdlp=core.globals.job_manager.ytdlp)
    except TimeoutError as e:
        raise HTTPException(status_code=504, detail=str(e))
    except WorkerSpawnError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except WorkerFailedError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except MediaDockError as e:
        raise HTTPException(status_code=404, detail=str(e))
