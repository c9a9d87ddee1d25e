"""
Pairing job trigger routes.

Submit a job, poll it, and invoke one bounded processing step. The
external scheduler keeps calling /process while needs_next_invocation
is true.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import structlog

from models.pairing_job import (
    InvocationResult,
    PairingJobCreate,
    PairingJobResponse,
)
from services.pairing_job_service import get_pairing_job_service
from exceptions import AppError

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/pairing-jobs", tags=["Pairing Jobs"])


# ===================
# EXCEPTION HANDLER
# ===================

def handle_error(e: Exception) -> JSONResponse:
    """Convert exception to JSON response."""
    if isinstance(e, AppError):
        return JSONResponse(
            status_code=e.status_code,
            content=e.to_dict()
        )
    logger.error("unexpected_error", error=str(e), type=type(e).__name__)
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred"
            }
        }
    )


# ===================
# ROUTES
# ===================

@router.post("", response_model=PairingJobResponse, status_code=201)
async def create_pairing_job(data: PairingJobCreate):
    """
    Submit a pairing job.

    The access token (if any) is stored with the job only until it
    finishes and is never returned.

    Raises:
        422: Validation error (no image keys)
    """
    try:
        service = get_pairing_job_service()
        return service.create_job(data).to_response()
    except Exception as e:
        return handle_error(e)


@router.get("/{job_id}", response_model=PairingJobResponse)
async def get_pairing_job(job_id: str):
    """
    Get job status, progress and (once completed) the result.

    Raises:
        404: Job not found or expired
    """
    try:
        service = get_pairing_job_service()
        return service.get_job(job_id).to_response()
    except Exception as e:
        return handle_error(e)


@router.post("/{job_id}/process", response_model=InvocationResult)
async def process_pairing_job(job_id: str):
    """
    Run one processing step.

    Raises:
        404: Job not found or expired
        503: A chunk failed and the step should be retried
    """
    try:
        service = get_pairing_job_service()
        return await service.process_job(job_id)
    except Exception as e:
        return handle_error(e)
