import logging
from dataclasses import asdict
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from app.api.errors import to_http_exception
from app.core.exceptions import EngineError
from app.models.action_log import ActionLogEntry
from app.models.campaign import CampaignDefinition
from app.models.enrollment import Enrollment
from app.services.analytics import CampaignSummary
from app.services.contacts import parse_contact_file
from app.services.engine import CampaignEngine
from app.services.runtime import get_engine

logger = logging.getLogger(__name__)
router = APIRouter()


class PublishResponse(BaseModel):
    message: str
    campaign_id: str
    version: int
    status: str


class CampaignStatusResponse(BaseModel):
    campaign_id: str
    status: str
    cancelled_enrollments: int = 0


class EnrollRequest(BaseModel):
    target_id: str


class EnrollResponse(BaseModel):
    campaign_id: str
    target_id: str
    enrollment_id: str


class BulkEnrollRequest(BaseModel):
    # CSV contact file content (column target_id, lead_id or email) and/or explicit ids
    content: Optional[str] = None
    target_ids: List[str] = []


class BulkEnrollResponse(BaseModel):
    campaign_id: str
    enrolled: Dict[str, str]
    rejected: Dict[str, str]


class ResolveTaskRequest(BaseModel):
    next_step: Optional[int] = None


@router.post("/campaigns", response_model=PublishResponse, status_code=201)
async def publish_campaign(
    definition: CampaignDefinition,
    activate: bool = Query(True, description="Start accepting enrollments right away"),
    engine: CampaignEngine = Depends(get_engine),
):
    """
    Publish a campaign definition as a new version.
    """
    logger.info(f"Campaign publish called for {definition.campaign_id} ({len(definition.steps)} steps)")
    try:
        campaign_id, version = await engine.publish_campaign(definition, activate=activate)
        stored = await engine.get_campaign(campaign_id)
    except EngineError as e:
        raise to_http_exception(e)
    return PublishResponse(
        message="Campaign published successfully",
        campaign_id=campaign_id,
        version=version,
        status=stored.status,
    )


@router.get("/campaigns/{campaign_id}", response_model=CampaignDefinition)
async def get_campaign(campaign_id: str, engine: CampaignEngine = Depends(get_engine)):
    try:
        return await engine.get_campaign(campaign_id)
    except EngineError as e:
        raise to_http_exception(e)


@router.post("/campaigns/{campaign_id}/activate", response_model=CampaignStatusResponse)
async def activate_campaign(campaign_id: str, engine: CampaignEngine = Depends(get_engine)):
    try:
        definition = await engine.activate_campaign(campaign_id)
    except EngineError as e:
        raise to_http_exception(e)
    return CampaignStatusResponse(campaign_id=campaign_id, status=definition.status)


@router.post("/campaigns/{campaign_id}/pause", response_model=CampaignStatusResponse)
async def pause_campaign(campaign_id: str, engine: CampaignEngine = Depends(get_engine)):
    try:
        definition = await engine.pause_campaign(campaign_id)
    except EngineError as e:
        raise to_http_exception(e)
    return CampaignStatusResponse(campaign_id=campaign_id, status=definition.status)


@router.post("/campaigns/{campaign_id}/resume", response_model=CampaignStatusResponse)
async def resume_campaign(campaign_id: str, engine: CampaignEngine = Depends(get_engine)):
    try:
        definition = await engine.resume_campaign(campaign_id)
    except EngineError as e:
        raise to_http_exception(e)
    return CampaignStatusResponse(campaign_id=campaign_id, status=definition.status)


@router.post("/campaigns/{campaign_id}/archive", response_model=CampaignStatusResponse)
async def archive_campaign(campaign_id: str, engine: CampaignEngine = Depends(get_engine)):
    """
    Archive a campaign. Every open enrollment is cancelled immediately.
    """
    try:
        cancelled = await engine.archive_campaign(campaign_id)
    except EngineError as e:
        raise to_http_exception(e)
    return CampaignStatusResponse(campaign_id=campaign_id, status="archived", cancelled_enrollments=cancelled)


@router.get("/campaigns/{campaign_id}/summary", response_model=CampaignSummary)
async def get_campaign_summary(campaign_id: str, engine: CampaignEngine = Depends(get_engine)):
    try:
        return await engine.get_campaign_summary(campaign_id)
    except EngineError as e:
        raise to_http_exception(e)


@router.get("/campaigns/{campaign_id}/actions", response_model=List[ActionLogEntry])
async def list_actions(
    campaign_id: str,
    after_sequence: int = Query(0, ge=0),
    engine: CampaignEngine = Depends(get_engine),
):
    try:
        await engine.get_campaign(campaign_id)
        return await engine.list_actions(campaign_id, after_sequence=after_sequence)
    except EngineError as e:
        raise to_http_exception(e)


@router.post("/campaigns/{campaign_id}/enrollments", response_model=EnrollResponse, status_code=201)
async def enroll(campaign_id: str, request: EnrollRequest, engine: CampaignEngine = Depends(get_engine)):
    try:
        enrollment_id = await engine.enroll(campaign_id, request.target_id)
    except EngineError as e:
        raise to_http_exception(e)
    return EnrollResponse(campaign_id=campaign_id, target_id=request.target_id, enrollment_id=enrollment_id)


@router.post("/campaigns/{campaign_id}/enrollments/bulk", response_model=BulkEnrollResponse)
async def bulk_enroll(campaign_id: str, request: BulkEnrollRequest, engine: CampaignEngine = Depends(get_engine)):
    """
    Enroll every target from a CSV contact file and/or an explicit id list.
    """
    try:
        target_ids = list(request.target_ids)
        if request.content:
            target_ids.extend(parse_contact_file(request.content))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not target_ids:
        raise HTTPException(status_code=400, detail="No targets supplied")

    try:
        result = await engine.bulk_enroll(campaign_id, target_ids)
    except EngineError as e:
        raise to_http_exception(e)
    return BulkEnrollResponse(**asdict(result))


@router.get("/campaigns/{campaign_id}/enrollments/{target_id}", response_model=Enrollment)
async def get_enrollment_status(campaign_id: str, target_id: str, engine: CampaignEngine = Depends(get_engine)):
    try:
        return await engine.get_enrollment_status(campaign_id, target_id)
    except EngineError as e:
        raise to_http_exception(e)


@router.post("/enrollments/{enrollment_id}/cancel", response_model=Enrollment)
async def cancel_enrollment(enrollment_id: str, engine: CampaignEngine = Depends(get_engine)):
    try:
        return await engine.cancel_enrollment(enrollment_id)
    except EngineError as e:
        raise to_http_exception(e)


@router.post("/enrollments/{enrollment_id}/resolve-task", response_model=Enrollment)
async def resolve_task(
    enrollment_id: str,
    request: Optional[ResolveTaskRequest] = None,
    engine: CampaignEngine = Depends(get_engine),
):
    next_step = request.next_step if request else None
    try:
        return await engine.resolve_task(enrollment_id, next_step=next_step)
    except EngineError as e:
        raise to_http_exception(e)
