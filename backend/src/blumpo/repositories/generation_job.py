"""GenerationJob repository for Blumpo backend.

Provides data access methods for GenerationJob entities, including the
conditional status updates that make start requests idempotent.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from blumpo.core.timezone import utc_now
from blumpo.models.generation_job import GenerationJob, JobStatus


class GenerationJobRepository:
    """Repository for GenerationJob entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, job: GenerationJob) -> GenerationJob:
        """Persist new generation job to database.

        Args:
            job: GenerationJob entity to persist

        Returns:
            Persisted job with generated ID
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID) -> GenerationJob | None:
        """Retrieve generation job by UUID.

        Args:
            job_id: Job's unique identifier

        Returns:
            GenerationJob if found, None otherwise
        """
        result = await self.session.execute(
            select(GenerationJob).where(GenerationJob.id == job_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_for_update(self, job_id: UUID) -> GenerationJob | None:
        """Retrieve generation job with a row lock held until the transaction ends.

        Used before terminal transitions so a concurrent callback and a timing-out
        orchestrator serialize on the same row.
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def claim_for_start(self, job_id: UUID) -> bool:
        """Atomically move a QUEUED job to RUNNING.

        Query:
            UPDATE generation_jobs
            SET status = 'RUNNING', started_at = now()
            WHERE id = :job_id AND status = 'QUEUED'

        Only one of several concurrent start requests sees rowcount == 1; the
        others observe the job as RUNNING and return without side effects.

        Returns:
            True if this call performed the transition
        """
        result = await self.session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .where(GenerationJob.status == JobStatus.QUEUED)  # type: ignore[arg-type]
            .values(status=JobStatus.RUNNING, started_at=utc_now())
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def record_reservation(
        self, job: GenerationJob, tokens_cost: int, ledger_id: int | None
    ) -> None:
        """Store token cost and ledger back-reference on the job."""
        job.tokens_cost = tokens_cost
        job.ledger_id = ledger_id
        self.session.add(job)
        await self.session.flush()

    async def save(self, job: GenerationJob) -> GenerationJob:
        """Flush pending changes of an attached job."""
        self.session.add(job)
        await self.session.flush()
        return job

    async def find_home_job(
        self, user_id: UUID, brand_id: UUID | None, exclude_job_id: UUID
    ) -> GenerationJob | None:
        """Find the most recent succeeded quick-ads job of a user and brand.

        Partial images of failed quick-ads jobs are moved here.
        """
        stmt = (
            select(GenerationJob)
            .where(GenerationJob.user_id == user_id)  # type: ignore[arg-type]
            .where(GenerationJob.auto_generated.is_(True))  # type: ignore[attr-defined]
            .where(GenerationJob.status == JobStatus.SUCCEEDED)  # type: ignore[arg-type]
            .where(GenerationJob.id != exclude_job_id)  # type: ignore[arg-type]
        )
        if brand_id is None:
            stmt = stmt.where(GenerationJob.brand_id.is_(None))  # type: ignore[union-attr]
        else:
            stmt = stmt.where(GenerationJob.brand_id == brand_id)  # type: ignore[arg-type]
        result = await self.session.execute(
            stmt.order_by(GenerationJob.created_at.desc()).limit(1)  # type: ignore[attr-defined]
        )
        return result.scalar_one_or_none()

    async def get_stale_running(
        self, started_before: datetime, limit: int = 50
    ) -> list[GenerationJob]:
        """Retrieve RUNNING jobs started before a cutoff with row-level locking.

        Uses FOR UPDATE SKIP LOCKED so concurrent recovery workers on several
        instances receive non-overlapping sets of jobs.

        Args:
            started_before: Jobs started before this instant are considered abandoned
            limit: Maximum number of jobs to retrieve

        Returns:
            List of jobs locked for this worker, oldest first
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.status == JobStatus.RUNNING)  # type: ignore[arg-type]
            .where(GenerationJob.started_at < started_before)  # type: ignore[arg-type,operator]
            .order_by(GenerationJob.started_at.asc())  # type: ignore[union-attr]
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())
