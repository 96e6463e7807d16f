"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from blumpo.models.ad_image import AdImage
from blumpo.models.ad_workflow import AdArchetype, AdWorkflow
from blumpo.models.generation_job import (
    TERMINAL_STATUSES,
    GenerationJob,
    InvalidStateTransition,
    JobStatus,
)
from blumpo.models.token_account import LedgerReason, TokenAccount, TokenLedgerEntry

__all__ = [
    "AdImage",
    "AdArchetype",
    "AdWorkflow",
    "GenerationJob",
    "JobStatus",
    "TERMINAL_STATUSES",
    "InvalidStateTransition",
    "LedgerReason",
    "TokenAccount",
    "TokenLedgerEntry",
]
