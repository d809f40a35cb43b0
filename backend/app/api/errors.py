import logging

from fastapi import HTTPException

from app.core.exceptions import (
    CampaignNotFound,
    CampaignStateError,
    CampaignValidationError,
    EngineError,
    EnrollmentNotFound,
    EnrollmentRejected,
    InvalidTransition,
    TaskResolutionError,
)

logger = logging.getLogger(__name__)


def to_http_exception(error: EngineError) -> HTTPException:
    """Map engine errors onto HTTP status codes."""
    if isinstance(error, (CampaignNotFound, EnrollmentNotFound)):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, CampaignValidationError):
        return HTTPException(status_code=422, detail={"message": error.message, "errors": error.errors})
    if isinstance(error, EnrollmentRejected):
        return HTTPException(status_code=409, detail={"message": error.message, "reason": error.reason})
    if isinstance(error, (CampaignStateError, InvalidTransition, TaskResolutionError)):
        return HTTPException(status_code=409, detail=error.message)
    logger.error(f"[API] Unmapped engine error: {error}", exc_info=True)
    return HTTPException(status_code=500, detail=error.message)
