"""Background workers for async processing tasks."""

from blumpo.workers.stale_job_worker import recover_stale_jobs, run_stale_job_worker

__all__ = [
    "recover_stale_jobs",
    "run_stale_job_worker",
]
