import os
import logging
from contextlib import asynccontextmanager
from pathlib import Path

import psutil
import uvicorn
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
from rich.logging import RichHandler

from api.router import api_router
import core.globals
from config import APP_NAME, DOWNLOADS_DIR, FASTAPI_HOST, FASTAPI_PORT, LOG_FILE

logger = logging.getLogger(__name__)


def setup_logging(log_file: Path = LOG_FILE):
    """Rich console output plus a plain log file next to the app data."""
    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logging.basicConfig(
        level="INFO", format="%(message)s", datefmt="[%X]", handlers=[RichHandler(), file_handler]
    )


def kill_process_on_port(port: int):
    """Kill any existing process listening on the given port."""
    try:
        for conn in psutil.net_connections(kind="inet"):
            if conn.status != psutil.CONN_LISTEN or not conn.laddr or conn.laddr.port != port:
                continue
            # Don't kill ourselves
            if conn.pid and conn.pid != os.getpid():
                logger.info(f"Killing stale process on port {port} (PID {conn.pid})")
                proc = psutil.Process(conn.pid)
                proc.terminate()
                proc.wait(timeout=3)
    except psutil.TimeoutExpired:
        logger.warning(f"Process on port {port} did not exit in time")
    except (psutil.Error, OSError) as e:
        logger.warning(f"Could not clean port {port}: {e}")


def create_app(**manager_options) -> FastAPI:
    """Builds the API. ``manager_options`` are passed to the JobManager created at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        from api.websocket import ws_manager
        manager = core.globals.init_globals(**manager_options)
        await manager.start()
        try:
            yield
        finally:
            await ws_manager.close_all()
            await manager.stop()

    app = FastAPI(title=f"{APP_NAME} API", lifespan=lifespan)
    app.include_router(api_router)

    # Produced files; the directory is created by the job manager at startup
    downloads_dir = manager_options.get("downloads_dir", DOWNLOADS_DIR)
    app.mount("/downloads", StaticFiles(directory=downloads_dir, check_dir=False), name="downloads")
    return app


app = create_app()


if __name__ == "__main__":
    setup_logging()

    # Kill any stale instance holding the port
    kill_process_on_port(FASTAPI_PORT)

    logger.info(f"{APP_NAME} listening on http://{FASTAPI_HOST}:{FASTAPI_PORT}")
    uvicorn.run(app, host=FASTAPI_HOST, port=FASTAPI_PORT, log_level="warning")
