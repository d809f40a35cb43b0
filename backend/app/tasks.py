import asyncio
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from app.celery_config import celery_app
from app.db.init import init_db
from app.services.runtime import build_engine

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.tick_task", acks_late=True)
def tick_task():
    """
    Periodic tick (Celery beat): advance every enrollment that is runnable now.
    """
    async def tick():
        await init_db()
        engine = build_engine()
        report = await engine.tick()
        return {
            "now": report.now.isoformat(),
            "selected": report.selected,
            "advanced": report.advanced,
            "skipped": report.skipped,
            "errors": report.errors,
        }

    try:
        return asyncio.run(tick())
    except Exception as e:
        logger.error(f"=== TICK_TASK FAILED ===")
        logger.error(f"Error: {e}", exc_info=True)
        raise


@celery_app.task(name="app.tasks.advance_enrollment_task", acks_late=True)
def advance_enrollment_task(enrollment_id: str):
    """
    Timer wake-up for one enrollment (queued with an ETA at its due_at).
    """
    async def advance():
        await init_db()
        logger.info(f"=== ADVANCE_ENROLLMENT_TASK STARTED: {enrollment_id} ===")
        engine = build_engine()
        enrollment = await engine.advance(enrollment_id)
        if enrollment is None:
            logger.info(f"Enrollment {enrollment_id} was not advanced (leased elsewhere or campaign paused)")
            return {"enrollment_id": enrollment_id, "status": None}
        logger.info(f"=== ADVANCE_ENROLLMENT_TASK COMPLETED: {enrollment_id} is {enrollment.status} ===")
        return {"enrollment_id": enrollment_id, "status": enrollment.status}

    try:
        return asyncio.run(advance())
    except Exception as e:
        logger.error(f"=== ADVANCE_ENROLLMENT_TASK FAILED ===")
        logger.error(f"Enrollment ID: {enrollment_id}")
        logger.error(f"Error: {e}", exc_info=True)
        raise


@celery_app.task(name="app.tasks.record_event_task", acks_late=True)
def record_event_task(
    target_id: str,
    event_type: str,
    occurred_at: Optional[str] = None,
    metadata: Optional[dict] = None,
    idempotency_key: Optional[str] = None,
):
    """
    Webhook fan-in: ingest an engagement event off the request path.
    `occurred_at` is an ISO-8601 string (JSON serialization).
    """
    async def record():
        await init_db()
        engine = build_engine()
        result = await engine.record_event(
            target_id,
            event_type,
            occurred_at=datetime.fromisoformat(occurred_at) if occurred_at else None,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return asdict(result)

    try:
        return asyncio.run(record())
    except Exception as e:
        logger.error(f"=== RECORD_EVENT_TASK FAILED ===")
        logger.error(f"Target ID: {target_id}, event: {event_type}")
        logger.error(f"Error: {e}", exc_info=True)
        raise
