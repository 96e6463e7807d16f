"""Ad generation API endpoints.

This module implements:
- POST /api/generate/quick-ads - Start a quick-ads job and wait for its outcome
- POST /api/generate/customized-ads - Start a customized (archetype) job and wait for its outcome
- POST /api/generate/callback - Result callback from the automation engine
- GET /api/generate/job-images - Images of a caller-owned job
- POST /api/generate/charge-partial - Re-charge a refunded job whose partial output the user keeps

Errors are raised as GenerationError subclasses and rendered by the
application's exception handler as {error, error_code, job_id?, ...}.
"""

from typing import Any, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from blumpo.api.dependencies import (
    get_current_user_id,
    get_ingestor,
    get_orchestrator,
    get_settings,
    get_uow_factory,
    require_user_id,
    validate_callback_key,
)
from blumpo.core.config import Settings
from blumpo.models.generation_job import JobStatus
from blumpo.services.exceptions import (
    GenerationError,
    InsufficientBalance,
    InsufficientTokens,
    InvalidRequest,
    JobNotFound,
    NoRefundToRevert,
)
from blumpo.services.generation.images import summarize_images
from blumpo.services.generation.ingestor import CallbackIngestor
from blumpo.services.generation.orchestrator import (
    GenerationOrchestrator,
    GenerationOutcome,
    JobKind,
    parse_job_id,
)

logger = structlog.get_logger()
router = APIRouter(prefix="/api/generate", tags=["generation"])


# Request Models


class JobRequest(BaseModel):
    """Body of endpoints acting on one job."""

    model_config = ConfigDict(populate_by_name=True)

    job_id: Optional[str] = Field(
        default=None,
        alias="jobId",
        description="Generation job id (UUID) created by the job-creation flow",
    )


def _to_response(outcome: GenerationOutcome) -> JSONResponse:
    return JSONResponse(status_code=outcome.http_status, content=outcome.body)


# Endpoints


@router.post("/quick-ads")
async def start_quick_ads(
    body: JobRequest,
    user_id: Optional[UUID] = Depends(get_current_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Start a quick-ads job and block until the engine reports its outcome.

    No tokens are reserved; quick ads are billed when displayed.
    """
    outcome = await orchestrator.start_generation(body.job_id, user_id, JobKind.QUICK_ADS)
    return _to_response(outcome)


@router.post("/customized-ads")
async def start_customized_ads(
    body: JobRequest,
    user_id: Optional[UUID] = Depends(get_current_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Start a customized-ads job and block until the engine reports its outcome.

    HTTP Status Codes:
        200: SUCCEEDED (tokens charged), CANCELED or already RUNNING
        400: Missing jobId, wrong job kind or job already finished
        401: No authenticated caller
        402: Insufficient tokens (tokens_required in body)
        403: Job owned by another user
        404: Unknown job or missing archetype
        500: Job FAILED (tokens refunded)
        502: Engine rejected the trigger (tokens refunded)
        503: Generation disabled in test mode
        504: No callback within the maximum wait (tokens refunded)
    """
    outcome = await orchestrator.start_generation(body.job_id, user_id, JobKind.CUSTOMIZED_ADS)
    return _to_response(outcome)


@router.post("/callback", dependencies=[Depends(validate_callback_key)])
async def receive_callback(
    request: Request,
    ingestor: CallbackIngestor = Depends(get_ingestor),
) -> Any:
    """Receive the outcome of a workflow from the automation engine.

    Body: {job_id, status, result} where result may be an object or an
    almost-JSON string.

    HTTP Status Codes:
        200: Ingested (also when the job itself ended FAILED)
        400: Body is not a JSON object or job_id missing
        404: Unknown job
        500: Internal error while ingesting
    """
    try:
        payload = await request.json()
    except ValueError as e:
        logger.error("callback.invalid_json", error=str(e))
        raise InvalidRequest(f"Invalid JSON payload: {e}") from e

    if not isinstance(payload, dict):
        raise InvalidRequest("Callback body must be a JSON object")

    logger.info(
        "callback.received",
        job_id=payload.get("job_id"),
        status=payload.get("status"),
        result_type=type(payload.get("result")).__name__,
    )

    try:
        outcome = await ingestor.ingest(payload)
    except GenerationError:
        raise
    except Exception as e:
        logger.error(
            "callback.failed",
            job_id=payload.get("job_id"),
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "message": str(e)},
        )

    return outcome.to_body()


@router.get("/job-images")
async def get_job_images(
    job_id: Optional[str] = Query(default=None, alias="jobId"),
    user_id: UUID = Depends(require_user_id),
    uow_factory=Depends(get_uow_factory),
) -> list[dict[str, Any]]:
    """List the displayable images of one of the caller's jobs, with archetypes."""
    job_uuid = parse_job_id(job_id)

    async with await uow_factory() as uow:
        job = await uow.generation_jobs.get_by_id(job_uuid)
        if job is None or job.user_id != user_id:
            raise JobNotFound("Job not found", job_id=str(job_uuid))
        images = await uow.ad_images.get_displayable_by_job(job_uuid)
        summaries = await summarize_images(uow, images)

    return [summary.model_dump(mode="json") for summary in summaries]


@router.post("/charge-partial")
async def charge_partial(
    body: JobRequest,
    user_id: UUID = Depends(require_user_id),
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """Charge a failed job again because the user keeps its partial images.

    Reverts the refund made when the job failed, for a fixed amount.

    HTTP Status Codes:
        200: Charged (repeat calls do not charge twice)
        400: Job not FAILED/CANCELED, or it was never refunded
        402: Insufficient tokens
        404: Unknown or foreign job
    """
    job_uuid = parse_job_id(body.job_id)
    amount = settings.partial_charge_tokens

    try:
        async with await uow_factory() as uow:
            job = await uow.generation_jobs.get_by_id(job_uuid)
            if job is None or job.user_id != user_id:
                raise JobNotFound("Job not found", job_id=str(job_uuid))
            if job.status not in (JobStatus.FAILED, JobStatus.CANCELED):
                raise InvalidRequest(
                    "Job must be failed or canceled to revert refund for partial images",
                    job_id=str(job_uuid),
                )
            await uow.token_ledger.revert_refund(user_id, amount, job_uuid)
    except NoRefundToRevert as e:
        raise InvalidRequest(str(e), job_id=str(job_uuid)) from e
    except InsufficientBalance as e:
        raise InsufficientTokens(amount, job_id=str(job_uuid)) from e

    logger.info(
        "ledger.partial_charged",
        job_id=str(job_uuid),
        user_id=str(user_id),
        tokens=amount,
    )
    return {"success": True, "tokens_deducted": amount}
