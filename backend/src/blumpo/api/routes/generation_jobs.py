"""Generation job status endpoints.

- POST /api/generation-jobs/status-check - Published results for a set of jobs,
  read from the rendezvous store without touching the database
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from blumpo.api.dependencies import get_rendezvous, require_user_id
from blumpo.services.exceptions import InvalidRequest
from blumpo.services.rendezvous.base import CallbackRendezvous

router = APIRouter(prefix="/api/generation-jobs", tags=["generation-jobs"])

MAX_STATUS_CHECK_JOBS = 100


class StatusCheckRequest(BaseModel):
    """Request model for a batch status check."""

    model_config = ConfigDict(populate_by_name=True)

    job_ids: list[str] = Field(default_factory=list, alias="jobIds")


@router.post("/status-check", dependencies=[Depends(require_user_id)])
async def check_job_statuses(
    body: StatusCheckRequest,
    rendezvous: CallbackRendezvous = Depends(get_rendezvous),
) -> dict[str, Optional[dict[str, Any]]]:
    """Map each job id to its published callback result, or null if none yet.

    Results stay readable for the rendezvous TTL; reading does not consume them.
    """
    if not body.job_ids:
        raise InvalidRequest("jobIds array required")
    if len(body.job_ids) > MAX_STATUS_CHECK_JOBS:
        raise InvalidRequest(f"At most {MAX_STATUS_CHECK_JOBS} jobIds per request")

    results = await rendezvous.peek(body.job_ids)
    return {
        job_id: (result.model_dump(mode="json") if result is not None else None)
        for job_id, result in results.items()
    }
