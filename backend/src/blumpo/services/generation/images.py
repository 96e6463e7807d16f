"""Client-facing summaries of generated images."""

from blumpo.models.ad_image import AdImage
from blumpo.services.rendezvous.base import AdImageSummary, ArchetypeSummary
from blumpo.uow import UnitOfWork


async def summarize_images(uow: UnitOfWork, images: list[AdImage]) -> list[AdImageSummary]:
    """Build summaries with the archetype of the workflow that rendered each image."""
    workflow_ids = [image.workflow_id for image in images if image.workflow_id is not None]
    archetypes = await uow.ad_workflows.get_archetypes_by_workflow_ids(workflow_ids)

    summaries = []
    for image in images:
        archetype = archetypes.get(image.workflow_id) if image.workflow_id else None
        summaries.append(
            AdImageSummary(
                id=image.id,
                title=image.title,
                public_url=image.public_url,
                width=image.width,
                height=image.height,
                format=image.format,
                workflow_id=image.workflow_id,
                created_at=image.created_at,
                archetype=(
                    ArchetypeSummary(
                        code=archetype.code,
                        display_name=archetype.display_name,
                        description=archetype.description,
                    )
                    if archetype
                    else None
                ),
            )
        )
    return summaries
