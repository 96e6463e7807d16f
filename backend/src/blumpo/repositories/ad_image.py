"""AdImage repository for Blumpo backend.

Provides data access methods for AdImage entities: loading a job's output,
soft-deleting images and moving partial output between jobs.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from blumpo.core.timezone import utc_now
from blumpo.models.ad_image import AdImage


class AdImageRepository:
    """Repository for AdImage entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, image: AdImage) -> AdImage:
        """Persist new ad image to database."""
        self.session.add(image)
        await self.session.flush()
        return image

    async def get_by_job(self, job_id: UUID) -> list[AdImage]:
        """Retrieve all images of a job, including deleted and error-flagged ones.

        Args:
            job_id: Generation job identifier

        Returns:
            Images ordered by creation time (oldest first)
        """
        result = await self.session.execute(
            select(AdImage)
            .where(AdImage.job_id == job_id)  # type: ignore[arg-type]
            .order_by(AdImage.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def get_valid_by_job(self, job_id: UUID) -> list[AdImage]:
        """Retrieve images of a job that are usable output (see AdImage.is_valid)."""
        return [image for image in await self.get_by_job(job_id) if image.is_valid]

    async def get_displayable_by_job(self, job_id: UUID) -> list[AdImage]:
        """Retrieve images shown in a job's result view (see AdImage.is_displayable)."""
        return [image for image in await self.get_by_job(job_id) if image.is_displayable]

    async def mark_deleted(self, image_ids: list[UUID], delete_at: datetime | None = None) -> int:
        """Soft-delete images so they no longer show in the user's library.

        Args:
            image_ids: Images to hide
            delete_at: Optional instant of permanent removal

        Returns:
            Number of images updated
        """
        if not image_ids:
            return 0
        result = await self.session.execute(
            update(AdImage)
            .where(AdImage.id.in_(image_ids))  # type: ignore[attr-defined]
            .values(is_deleted=True, delete_at=delete_at or utc_now())
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount  # type: ignore[attr-defined]

    async def move_to_job(self, image_ids: list[UUID], target_job_id: UUID) -> int:
        """Reassign images to another job.

        Returns:
            Number of images moved
        """
        if not image_ids:
            return 0
        result = await self.session.execute(
            update(AdImage)
            .where(AdImage.id.in_(image_ids))  # type: ignore[attr-defined]
            .values(job_id=target_job_id)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount  # type: ignore[attr-defined]

    async def delete_by_job(self, job_id: UUID) -> int:
        """Remove every image still attached to a job.

        Returns:
            Number of rows deleted
        """
        result = await self.session.execute(
            delete(AdImage).where(AdImage.job_id == job_id)  # type: ignore[arg-type]
        )
        return result.rowcount  # type: ignore[attr-defined]
