import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.campaign import router as campaign_router
from app.api.tracking import router as tracking_router
from app.core.config import get_settings
from app.db.init import get_client, init_db
from app.services.background_tasks import BackgroundTaskManager
from app.services.runtime import get_engine

settings = get_settings()
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("=== APPLICATION STARTUP ===")
    logger.info("Initializing database...")
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise

    background_manager = None
    if settings.SCHEDULER_MODE == "inprocess":
        background_manager = BackgroundTaskManager(get_engine(), interval_seconds=settings.TICK_INTERVAL_SECONDS)
        await background_manager.start()
    else:
        logger.info("Celery worker and beat should be running in separate processes.")
    logger.info("=== APPLICATION STARTUP COMPLETE ===")

    yield

    logger.info("=== APPLICATION SHUTDOWN ===")
    if background_manager is not None:
        await background_manager.stop()
    logger.info("=== APPLICATION SHUTDOWN COMPLETE ===")


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

# For production, restrict this to the frontend's domain.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {"message": f"{settings.APP_NAME} API"}


@app.get("/health")
async def health_check():
    try:
        await get_client().admin.command("ping")
        db_status = "healthy"
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "database": db_status,
        "scheduler_mode": settings.SCHEDULER_MODE,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# Include API routers
app.include_router(campaign_router, prefix="/api", tags=["campaigns"])
app.include_router(tracking_router, prefix="/api", tags=["tracking"])
