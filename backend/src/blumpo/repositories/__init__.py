"""Repository layer for Blumpo backend.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from blumpo.repositories.ad_image import AdImageRepository
from blumpo.repositories.ad_workflow import AdWorkflowRepository
from blumpo.repositories.generation_job import GenerationJobRepository
from blumpo.repositories.token_ledger import TokenLedgerRepository

__all__ = [
    "AdImageRepository",
    "AdWorkflowRepository",
    "GenerationJobRepository",
    "TokenLedgerRepository",
]
