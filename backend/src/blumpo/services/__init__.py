"""Service layer: rendezvous, generation orchestration, callback ingestion."""
