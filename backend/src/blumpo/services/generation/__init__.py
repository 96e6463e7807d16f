"""Ad generation: start orchestration, engine dispatch and callback ingestion."""

from blumpo.services.generation.dispatcher import WorkflowDispatcher
from blumpo.services.generation.ingestor import CallbackIngestor, IngestOutcome
from blumpo.services.generation.loose_json import (
    LooseJsonResult,
    map_callback_status,
    parse_loose_json,
)
from blumpo.services.generation.orchestrator import (
    GenerationOrchestrator,
    GenerationOutcome,
    JobKind,
)
from blumpo.services.generation.policy import GenerationPolicy, calculate_token_cost

__all__ = [
    "CallbackIngestor",
    "GenerationOrchestrator",
    "GenerationOutcome",
    "GenerationPolicy",
    "IngestOutcome",
    "JobKind",
    "LooseJsonResult",
    "WorkflowDispatcher",
    "calculate_token_cost",
    "map_callback_status",
    "parse_loose_json",
]
