"""Recovery worker for generation jobs abandoned in RUNNING.

A start request owns its job until the callback arrives or the maximum wait
elapses. If the instance serving it dies mid-wait nobody settles the job, so
it would stay RUNNING with its tokens reserved forever. This worker fails such
jobs with TIMEOUT once they are older than the maximum wait plus a grace
period and refunds their reservation.

Query:
    SELECT * FROM generation_jobs
    WHERE status = 'RUNNING' AND started_at < now() - (max_wait + grace)
    ORDER BY started_at
    LIMIT :batch_size
    FOR UPDATE SKIP LOCKED
"""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Optional
from uuid import UUID

import structlog

from blumpo.core.config import Settings
from blumpo.core.timezone import utc_now
from blumpo.services.exceptions import CallbackTimeout
from blumpo.uow import create_uow_factory

logger = structlog.get_logger(__name__)

ABANDONED_MESSAGE = "Generation abandoned: no result after maximum wait time"


@dataclass
class StaleJobRecoveryResult:
    """Outcome of one recovery sweep."""

    job_ids: list[UUID] = field(default_factory=list)
    tokens_refunded: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def recovered_count(self) -> int:
        return len(self.job_ids)


async def recover_stale_jobs(
    uow_factory: Callable,
    settings: Settings,
    grace_seconds: Optional[int] = None,
    dry_run: bool = False,
) -> StaleJobRecoveryResult:
    """Fail and refund one batch of abandoned RUNNING jobs.

    Args:
        uow_factory: UnitOfWork factory
        settings: Maximum wait, grace period and batch size
        grace_seconds: Overrides settings.stale_job_grace_seconds
        dry_run: Only report the jobs that would be recovered

    Returns:
        Recovered job ids, tokens refunded and per-job refund errors
    """
    grace = settings.stale_job_grace_seconds if grace_seconds is None else grace_seconds
    cutoff = utc_now() - timedelta(
        seconds=settings.generation_max_wait_seconds + grace
    )
    result = StaleJobRecoveryResult()
    to_refund: list[tuple[UUID, UUID, int]] = []

    async with await uow_factory() as uow:
        jobs = await uow.generation_jobs.get_stale_running(
            started_before=cutoff, limit=settings.stale_job_batch_size
        )
        for job in jobs:
            result.job_ids.append(job.id)
            if dry_run:
                continue
            job.mark_failed(CallbackTimeout.error_code, ABANDONED_MESSAGE)
            await uow.generation_jobs.save(job)
            if job.tokens_cost > 0:
                to_refund.append((job.id, job.user_id, job.tokens_cost))

    if result.job_ids:
        logger.info(
            "stale_jobs.found",
            count=result.recovered_count,
            cutoff=cutoff.isoformat(),
            dry_run=dry_run,
        )

    # Each refund in its own transaction: one failure must not undo the others
    for job_id, user_id, tokens_cost in to_refund:
        try:
            async with await uow_factory() as uow:
                result.tokens_refunded += await uow.token_ledger.refund(user_id, job_id)
        except Exception as e:
            logger.error(
                "ledger.refund_failed",
                job_id=str(job_id),
                user_id=str(user_id),
                tokens=tokens_cost,
                error=str(e),
                error_type=type(e).__name__,
            )
            result.errors.append(f"{job_id}: {e}")

    return result


async def run_stale_job_worker(
    session_factory: Callable,
    settings: Settings,
) -> None:
    """Main worker loop for stale job recovery.

    Sweeps every STALE_JOB_SWEEP_INTERVAL_SECONDS until cancelled.

    Args:
        session_factory: Factory function that creates database sessions
        settings: Application settings (sweep interval, grace period, batch size)
    """
    uow_factory = create_uow_factory(session_factory)

    logger.info(
        "worker.started",
        worker="stale_jobs",
        sweep_interval=settings.stale_job_sweep_interval_seconds,
        grace_seconds=settings.stale_job_grace_seconds,
    )

    try:
        while True:
            try:
                result = await recover_stale_jobs(uow_factory, settings)
                if result.recovered_count:
                    logger.info(
                        "stale_jobs.recovered",
                        count=result.recovered_count,
                        tokens_refunded=result.tokens_refunded,
                        refund_errors=len(result.errors),
                    )

                await asyncio.sleep(settings.stale_job_sweep_interval_seconds)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    worker="stale_jobs",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        logger.info("worker.stopped", worker="stale_jobs")
        raise
