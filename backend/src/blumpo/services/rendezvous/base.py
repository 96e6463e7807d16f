"""Callback rendezvous contract and the result shape exchanged through it.

A rendezvous lets the start-generation request suspend until the engine's
callback, delivered to any instance, publishes the job outcome. Results may be
published before anyone waits (store-and-forget) and are visible for a bounded
TTL. Late or duplicate publications after a job id was consumed or timed out
are no-ops.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from blumpo.models.generation_job import JobStatus
from blumpo.services.exceptions import TransientError


class ArchetypeSummary(BaseModel):
    """Archetype attached to a generated image."""

    code: str
    display_name: str
    description: Optional[str] = None


class AdImageSummary(BaseModel):
    """Client-facing view of a generated image."""

    id: UUID
    title: Optional[str] = None
    public_url: Optional[str] = None
    width: int = 0
    height: int = 0
    format: Optional[str] = None
    workflow_id: Optional[UUID] = None
    created_at: Optional[datetime] = None
    archetype: Optional[ArchetypeSummary] = None


class CallbackResult(BaseModel):
    """Normalized job outcome handed from the callback ingestor to the waiting orchestrator."""

    status: JobStatus
    images: list[AdImageSummary] = Field(default_factory=list)
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    migrated_to_job_id: Optional[UUID] = None


class RendezvousTimeout(TransientError):
    """No result was published for the job within the maximum wait."""

    def __init__(self, job_id: str, waited_seconds: float):
        super().__init__(f"No callback for job {job_id} after {waited_seconds:.0f}s")
        self.job_id = job_id
        self.waited_seconds = waited_seconds


class CallbackRendezvous(ABC):
    """Hand-off point between a waiting start request and the engine callback."""

    @abstractmethod
    async def wait(self, job_id: str, max_wait_seconds: float) -> CallbackResult:
        """Suspend until a result for job_id is published.

        Returns immediately if the result was published before the call.

        Raises:
            RendezvousTimeout: No result within max_wait_seconds; the waiter's
                registration is cleaned up so a later resolve is a no-op
        """

    @abstractmethod
    async def resolve(self, job_id: str, result: CallbackResult) -> bool:
        """Publish the outcome of a job.

        Safe without a registered waiter. Publishing for a job id that was already
        resolved, consumed or timed out does nothing.

        Returns:
            True if the result was published, False if it was a no-op
        """

    @abstractmethod
    async def peek(self, job_ids: list[str]) -> dict[str, Optional[CallbackResult]]:
        """Look up published results without consuming them (None when not yet available)."""

    async def reject(
        self, job_id: str, error: Exception, error_code: str = "CALLBACK_ERROR"
    ) -> bool:
        """Publish a failure outcome; same visibility rules as resolve."""
        return await self.resolve(
            job_id,
            CallbackResult(status=JobStatus.FAILED, error_message=str(error), error_code=error_code),
        )

    async def ping(self) -> None:
        """Check the backing store is reachable (used by the health check)."""

    async def close(self) -> None:
        """Release backend resources."""
