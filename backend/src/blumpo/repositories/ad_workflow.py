"""AdWorkflow repository for Blumpo backend."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from blumpo.models.ad_workflow import AdArchetype, AdWorkflow


class AdWorkflowRepository:
    """Repository for AdWorkflow and AdArchetype lookups."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_archetypes_by_workflow_ids(
        self, workflow_ids: list[UUID]
    ) -> dict[UUID, AdArchetype]:
        """Map workflow ids to the archetype each workflow renders.

        Workflows without an archetype are omitted from the result.
        """
        if not workflow_ids:
            return {}
        result = await self.session.execute(
            select(AdWorkflow.id, AdArchetype)
            .join(AdArchetype, AdArchetype.code == AdWorkflow.archetype_code)  # type: ignore[arg-type]
            .where(AdWorkflow.id.in_(workflow_ids))  # type: ignore[attr-defined]
        )
        return {workflow_id: archetype for workflow_id, archetype in result.all()}
