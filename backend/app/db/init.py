import logging
from typing import Optional

from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from app.core.config import get_settings
from app.db.documents import DOCUMENT_MODELS

logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None


async def init_db() -> AsyncIOMotorClient:
    global _client
    settings = get_settings()
    try:
        logger.info("Initializing database connection...")
        client = AsyncIOMotorClient(settings.MONGO_URI, tz_aware=True)

        await client.admin.command("ping")
        logger.info("MongoDB connection test successful.")

        await init_beanie(database=client[settings.DB_NAME], document_models=DOCUMENT_MODELS)
        logger.info(f"Beanie initialized on database '{settings.DB_NAME}'.")
        _client = client
        return client
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise


def get_client() -> AsyncIOMotorClient:
    if _client is None:
        raise RuntimeError("Database is not initialized; call init_db() first")
    return _client
