import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse, Response
from pydantic import BaseModel, Field

from app.api.errors import to_http_exception
from app.core.exceptions import EngineError
from app.models.campaign import TriggerKind
from app.services.engine import CampaignEngine
from app.services.runtime import get_engine
from app.services.tracking_tokens import (
    CLICK_EVENT,
    OPEN_EVENT,
    InvalidTrackingToken,
    TrackingTokens,
    get_tracking_tokens,
)

logger = logging.getLogger(__name__)
router = APIRouter()

# 1x1 transparent GIF pixel
TRACKING_PIXEL = (
    b'\x47\x49\x46\x38\x39\x61\x01\x00\x01\x00\x80\x00\x00\xff\xff\xff'
    b'\x00\x00\x00\x21\xf9\x04\x01\x00\x00\x00\x00\x2c\x00\x00\x00\x00'
    b'\x01\x00\x01\x00\x00\x02\x02\x44\x01\x00\x3b'
)
NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class EventRequest(BaseModel):
    target_id: str
    event_type: str = Field(..., examples=["email_opened"])
    occurred_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None


class TriggerRequest(BaseModel):
    kind: TriggerKind
    target_id: str
    event_type: Optional[str] = None
    inactive_days: Optional[int] = None


@router.post("/events")
async def record_event(request: EventRequest, engine: CampaignEngine = Depends(get_engine)):
    """
    Ingest an engagement event (open, click, reply, call outcome).
    Duplicates are acknowledged but not stored twice.
    """
    try:
        result = await engine.record_event(
            request.target_id,
            request.event_type,
            occurred_at=request.occurred_at,
            metadata=request.metadata,
            idempotency_key=request.idempotency_key,
        )
    except EngineError as e:
        raise to_http_exception(e)
    return asdict(result)


@router.post("/triggers")
async def fire_trigger(request: TriggerRequest, engine: CampaignEngine = Depends(get_engine)):
    if request.kind == "event" and not request.event_type:
        raise HTTPException(status_code=400, detail="event triggers need an event_type")
    try:
        result = await engine.fire_trigger(
            request.kind,
            request.target_id,
            event_type=request.event_type,
            inactive_days=request.inactive_days,
        )
    except EngineError as e:
        raise to_http_exception(e)
    return asdict(result)


TOKEN_ONLY_KEYS = ("target_id", "url")


async def _record_tracking_hit(engine: CampaignEngine, data: Dict[str, Any], event_type: str, **extra: Any):
    # Every signed key except the routing ones becomes event metadata (content_ref, step_index, ...)
    metadata = {key: value for key, value in data.items() if key not in TOKEN_ONLY_KEYS}
    metadata.update(extra)
    try:
        result = await engine.record_event(data["target_id"], event_type, metadata=metadata)
        logger.info(f"[TRACKING] {event_type} for {data['target_id']}: accepted={result.accepted}")
    except Exception as e:
        logger.error(f"[TRACKING] Failed to record {event_type} for {data['target_id']}: {e}", exc_info=True)


@router.get("/track/open")
async def track_email_open(
    token: str = Query(..., description="Signed tracking token"),
    engine: CampaignEngine = Depends(get_engine),
    tokens: TrackingTokens = Depends(get_tracking_tokens),
):
    """
    Open pixel. Always answers with the GIF; bad or expired tokens are logged and ignored.
    """
    try:
        data = tokens.loads(token)
    except InvalidTrackingToken as e:
        logger.warning(f"[TRACKING] Open pixel with unusable token ({e})")
        return Response(content=TRACKING_PIXEL, media_type="image/gif", headers=NO_CACHE_HEADERS)

    await _record_tracking_hit(engine, data, OPEN_EVENT)
    return Response(content=TRACKING_PIXEL, media_type="image/gif", headers=NO_CACHE_HEADERS)


@router.get("/track/click")
async def track_link_click(
    token: str = Query(..., description="Signed tracking token"),
    engine: CampaignEngine = Depends(get_engine),
    tokens: TrackingTokens = Depends(get_tracking_tokens),
):
    """
    Click redirect. The destination URL travels inside the signed token.
    """
    try:
        data = tokens.loads(token)
    except InvalidTrackingToken as e:
        logger.warning(f"[TRACKING] Click with unusable token ({e})")
        raise HTTPException(status_code=400, detail="Invalid tracking link")

    url = data.get("url")
    if not url:
        raise HTTPException(status_code=400, detail="Tracking link has no destination")

    await _record_tracking_hit(engine, data, CLICK_EVENT, url=url)
    return RedirectResponse(url=url, status_code=302, headers=NO_CACHE_HEADERS)
