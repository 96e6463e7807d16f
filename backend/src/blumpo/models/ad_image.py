"""AdImage entity - a generated ad image produced by the automation engine."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column
from sqlmodel import Field, SQLModel

from blumpo.core.timezone import UTCDateTime, utc_now


class AdImage(SQLModel, table=True):
    """AdImage rows are written by the automation engine; this service reads and moves them."""

    __tablename__ = "ad_images"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    job_id: UUID = Field(foreign_key="generation_jobs.id", index=True)
    user_id: UUID = Field(index=True)
    brand_id: Optional[UUID] = Field(default=None, index=True)
    created_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(UTCDateTime(), nullable=False)
    )

    title: Optional[str] = Field(default=None)
    storage_key: str = Field(default="")
    public_url: Optional[str] = Field(default=None)
    bytes_size: int = Field(default=0)
    width: int = Field(default=0)
    height: int = Field(default=0)
    format: str = Field(default="1:1", max_length=20)
    workflow_id: Optional[UUID] = Field(default=None)

    error_flag: bool = Field(default=False)
    ban_flag: bool = Field(default=False)
    is_deleted: bool = Field(default=False)
    delete_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime()))

    @property
    def is_valid(self) -> bool:
        """Usable output: not deleted, not error-flagged and publicly reachable."""
        return not self.is_deleted and not self.error_flag and bool(self.public_url)

    @property
    def is_displayable(self) -> bool:
        """Shown in the job's result view; plan-hidden images still count."""
        return not self.error_flag and bool(self.public_url)
