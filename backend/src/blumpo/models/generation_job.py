"""GenerationJob entity - one request to produce ad images, with lifecycle status."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from blumpo.core.timezone import UTCDateTime, utc_now


class JobStatus(str, Enum):
    """Generation job lifecycle status."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED})


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid job state transition."""

    pass


class GenerationJob(SQLModel, table=True):
    """GenerationJob tracks one ad generation request through its status state machine.

    Jobs are created QUEUED by the job-creation flow, moved to RUNNING by the
    orchestrator and finished by either the orchestrator (dispatch error, timeout)
    or the callback ingestor. Terminal statuses are never overwritten.
    """

    __tablename__ = "generation_jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(index=True)
    brand_id: Optional[UUID] = Field(default=None, index=True)
    status: JobStatus = Field(default=JobStatus.QUEUED, index=True)

    # Kind: quick ads are auto generated, customized ads are archetype driven
    auto_generated: bool = Field(default=False)
    archetype_code: Optional[str] = Field(default=None, max_length=100)
    formats: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    prompt: str = Field(default="")
    params: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    tokens_cost: int = Field(default=0, ge=0)
    ledger_id: Optional[int] = Field(default=None)
    error_code: Optional[str] = Field(default=None, max_length=100)
    error_message: Optional[str] = Field(default=None)

    created_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(UTCDateTime(), nullable=False)
    )
    started_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime()))
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime()))

    @property
    def is_terminal(self) -> bool:
        """Whether the job reached SUCCEEDED, FAILED or CANCELED."""
        return self.status in TERMINAL_STATUSES

    def mark_running(self) -> None:
        """Transition from queued to running.

        Raises:
            InvalidStateTransition: If current status is not queued
        """
        if self.status != JobStatus.QUEUED:
            raise InvalidStateTransition(
                f"Cannot mark running from {self.status.value}. Job must be in QUEUED state."
            )
        self.status = JobStatus.RUNNING
        self.started_at = utc_now()

    def mark_succeeded(self) -> None:
        """Transition from running to succeeded.

        Raises:
            InvalidStateTransition: If current status is not running
        """
        if self.status != JobStatus.RUNNING:
            raise InvalidStateTransition(
                f"Cannot mark succeeded from {self.status.value}. Job must be in RUNNING state."
            )
        self.status = JobStatus.SUCCEEDED
        self.completed_at = utc_now()

    def mark_failed(self, error_code: str, error_message: Optional[str] = None) -> None:
        """Transition from any non-terminal state to failed.

        Args:
            error_code: Machine-readable failure code (e.g. TIMEOUT, WEBHOOK_ERROR)
            error_message: Human-readable failure reason

        Raises:
            InvalidStateTransition: If current status is already terminal
        """
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot mark failed from terminal state {self.status.value}."
            )
        self.status = JobStatus.FAILED
        self.error_code = error_code
        self.error_message = error_message
        self.completed_at = utc_now()

    def mark_canceled(
        self, error_code: Optional[str] = None, error_message: Optional[str] = None
    ) -> None:
        """Transition from any non-terminal state to canceled (reported by the engine).

        Raises:
            InvalidStateTransition: If current status is already terminal
        """
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot mark canceled from terminal state {self.status.value}."
            )
        self.status = JobStatus.CANCELED
        self.error_code = error_code
        self.error_message = error_message
        self.completed_at = utc_now()

    def finish(
        self,
        status: JobStatus,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Apply a terminal status reported by a callback.

        A job that is still QUEUED (callback raced the start request) is treated as
        running so the forward state machine is preserved.
        """
        if status not in TERMINAL_STATUSES:
            raise InvalidStateTransition(f"{status.value} is not a terminal status.")
        if self.status == JobStatus.QUEUED:
            self.mark_running()
        if status == JobStatus.SUCCEEDED:
            self.mark_succeeded()
        elif status == JobStatus.CANCELED:
            self.mark_canceled(error_code, error_message)
        else:
            self.mark_failed(error_code or "GENERATION_FAILED", error_message)
