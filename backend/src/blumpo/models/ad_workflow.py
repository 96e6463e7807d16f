"""AdArchetype and AdWorkflow entities - ad style templates and the workflows rendering them."""

from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel


class AdArchetype(SQLModel, table=True):
    """Named ad-style template selectable for customized generation."""

    __tablename__ = "ad_archetypes"  # type: ignore[assignment]

    code: str = Field(primary_key=True, max_length=100)
    display_name: str = Field(max_length=255)
    description: Optional[str] = Field(default=None)


class AdWorkflow(SQLModel, table=True):
    """Engine workflow that produced an image; links images back to their archetype."""

    __tablename__ = "ad_workflows"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    archetype_code: Optional[str] = Field(
        default=None, foreign_key="ad_archetypes.code", max_length=100
    )
    workflow_uid: Optional[str] = Field(default=None, max_length=255)
