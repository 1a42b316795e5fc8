from fastapi import APIRouter
from api.websocket import router as ws_router
from api.downloads import router as downloads_router
from api.info import router as info_router

api_router = APIRouter()

# Mount the sub-routers
api_router.include_router(ws_router)
api_router.include_router(downloads_router)
api_router.include_router(info_router)
