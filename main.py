import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.drive_file_routes import router as drive_file_router
from api.zip_download_api import router as zip_download_router
from config import get_settings
from drive_client import close_drive_client
from services.temp_sweeper import TempFileSweeper
from services.zip_download_service import get_zip_service

load_dotenv()

logger = logging.getLogger("api")

ENDPOINTS = [
    "/download-zip",
    "/download-info",
    "/download-multi-zip",
    "/download-zip-part",
    "/upload-file",
    "/rename-file",
    "/health",
]


def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - [%(levelname)s] - %(name)s - %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan handler for application lifecycle management.
    Starts the temp-file sweeper on startup, stops it and closes the Drive
    client on shutdown.
    """
    settings = get_settings()

    # ==================== STARTUP ====================
    logger.info("[APP] 🚀 Starting Drive ZIP service...")
    logger.info(f"[APP] Settings: {settings.mask_sensitive_data()}")
    if not settings.has_drive_credentials:
        logger.warning("[APP] ⚠️ CLIENT_ID / CLIENT_SECRET / REFRESH_TOKEN not set")

    service = get_zip_service()
    sweeper = TempFileSweeper(
        temp_dir=settings.TEMP_DIR,
        prefix=settings.TEMP_FILE_PREFIX,
        max_age_minutes=settings.TEMP_MAX_AGE_MINUTES,
        interval_seconds=settings.TEMP_SWEEP_INTERVAL_SECONDS,
        is_active=service.is_active_temp_path,
    )
    sweeper.start()
    app.state.temp_sweeper = sweeper
    logger.info("[APP] ✅ All services ready!")

    yield

    # ==================== SHUTDOWN ====================
    logger.info("[APP] 🛑 Shutting down...")
    await sweeper.stop()
    await close_drive_client()
    logger.info("✅ Drive client closed")


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Drive ZIP Download API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )

    app.include_router(zip_download_router)
    app.include_router(drive_file_router)

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "endpoints": ENDPOINTS,
        }

    return app


setup_logging(get_settings().LOG_LEVEL)
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("main:app", host=settings.HOST, port=settings.PORT)
