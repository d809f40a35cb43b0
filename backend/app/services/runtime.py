"""Builds the engine for a process from Settings (API, worker, or in-process scheduler)."""
import logging
from functools import lru_cache
from typing import Optional

from app.core.clock import Clock
from app.core.config import EngineConfig, Settings, get_settings
from app.db.mongo_store import MongoStore
from app.db.store import ExecutionStore
from app.services.channel_sender import load_sender
from app.services.engine import CampaignEngine
from app.services.timers import AsyncioTimer, CeleryTimer

logger = logging.getLogger(__name__)


def build_engine(
    settings: Optional[Settings] = None,
    store: Optional[ExecutionStore] = None,
    clock: Optional[Clock] = None,
) -> CampaignEngine:
    settings = settings or get_settings()
    engine = CampaignEngine(
        store or MongoStore(),
        load_sender(settings.CHANNEL_SENDER),
        clock=clock,
        config=EngineConfig.from_settings(settings),
    )
    if settings.SCHEDULER_MODE == "celery":
        engine.set_timer(CeleryTimer())
    else:
        engine.set_timer(AsyncioTimer(engine.advance, clock=engine.clock))
    logger.info(f"[ENGINE] Built engine (scheduler={settings.SCHEDULER_MODE}, worker={engine.executor.worker_id})")
    return engine


@lru_cache()
def get_engine() -> CampaignEngine:
    """Process-wide engine for the API (FastAPI dependency)."""
    return build_engine()
