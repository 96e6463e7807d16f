"""Start-generation flow for quick ads and customized ads.

One call claims a QUEUED job, reserves tokens, triggers the engine workflow,
waits for the callback result on the rendezvous and settles tokens:

    QUEUED --claim--> RUNNING --callback SUCCEEDED--> SUCCEEDED (tokens charged)
                              --callback FAILED/CANCELED, timeout,
                                dispatch error--> FAILED|CANCELED (tokens refunded)

Repeating the call on a RUNNING job returns its state without side effects;
on a finished job it raises AlreadyTerminal. Refunds are best-effort: a failing
refund is logged and never masks the error returned to the client.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union
from uuid import UUID

import structlog

from blumpo.core.config import Settings
from blumpo.models.generation_job import GenerationJob, JobStatus
from blumpo.services.exceptions import (
    AlreadyTerminal,
    AuthRequired,
    CallbackTimeout,
    DispatchError,
    DispatchTimeout,
    Forbidden,
    GenerationDisabled,
    GenerationError,
    InsufficientBalance,
    InsufficientTokens,
    InvalidRequest,
    JobNotFound,
    TokenAccountNotFound,
)
from blumpo.services.generation.dispatcher import WorkflowDispatcher
from blumpo.services.generation.images import summarize_images
from blumpo.services.generation.policy import GenerationPolicy
from blumpo.services.rendezvous.base import CallbackRendezvous, CallbackResult, RendezvousTimeout
from blumpo.uow import UnitOfWork

logger = structlog.get_logger()


class JobKind(str, Enum):
    """Start endpoint a job is submitted through."""

    QUICK_ADS = "quick_ads"
    CUSTOMIZED_ADS = "customized_ads"


@dataclass
class GenerationOutcome:
    """HTTP status and JSON body returned to the client."""

    http_status: int
    body: dict[str, Any]


def parse_job_id(job_id: Union[str, UUID, None]) -> UUID:
    """Validate a client-supplied job id.

    Raises:
        InvalidRequest: Missing or not a UUID
    """
    if isinstance(job_id, UUID):
        return job_id
    if not job_id or not isinstance(job_id, str):
        raise InvalidRequest("Missing jobId")
    try:
        return UUID(job_id)
    except ValueError:
        raise InvalidRequest("Invalid jobId", job_id=job_id) from None


def _running_outcome(job_id: UUID) -> GenerationOutcome:
    return GenerationOutcome(
        http_status=200,
        body={
            "job_id": str(job_id),
            "status": JobStatus.RUNNING.value,
            "message": "Generation already in progress",
        },
    )


def _already_terminal(job: GenerationJob) -> AlreadyTerminal:
    return AlreadyTerminal(
        f"Job is already {job.status.value}", job_id=str(job.id), status=job.status.value
    )


class GenerationOrchestrator:
    """Coordinates one start-generation request from claim to token settlement.

    Args:
        uow_factory: Creates a UnitOfWork per transaction
        rendezvous: Hand-off point where callback results are awaited
        dispatcher: Engine trigger client
        settings: Webhook URLs, timeouts and test mode flag
        policy: Billing rules (defaults from settings)
    """

    def __init__(
        self,
        uow_factory: Callable[[], Awaitable[UnitOfWork]],
        rendezvous: CallbackRendezvous,
        dispatcher: WorkflowDispatcher,
        settings: Settings,
        policy: Optional[GenerationPolicy] = None,
    ):
        self.uow_factory = uow_factory
        self.rendezvous = rendezvous
        self.dispatcher = dispatcher
        self.settings = settings
        self.policy = policy or GenerationPolicy(
            free_plan_code=settings.free_plan_code,
            partial_charge_tokens=settings.partial_charge_tokens,
        )

    async def start_generation(
        self,
        job_id: Union[str, UUID, None],
        caller_user_id: Optional[UUID],
        kind: JobKind,
    ) -> GenerationOutcome:
        """Run a job to completion and report its outcome.

        Raises:
            GenerationDisabled: Customized generation requested in test mode
            AuthRequired: No authenticated caller
            InvalidRequest: Missing jobId, or job submitted through the wrong endpoint
            JobNotFound: Unknown job, or customized job without archetype
            Forbidden: Job owned by another user
            AlreadyTerminal: Job already finished
            InsufficientTokens: Balance too low; nothing is reserved
            DispatchError: Engine rejected the trigger; job failed, tokens refunded
            CallbackTimeout: No callback within the maximum wait; job failed, tokens refunded
        """
        if kind == JobKind.CUSTOMIZED_ADS and self.settings.is_test_mode:
            raise GenerationDisabled("Generation disabled in test mode")

        if caller_user_id is None:
            raise AuthRequired("Unauthorized")

        job_uuid = parse_job_id(job_id)

        async with await self.uow_factory() as uow:
            job = await uow.generation_jobs.get_by_id(job_uuid)

        if job is None:
            raise JobNotFound("Job not found", job_id=str(job_uuid))
        if job.user_id != caller_user_id:
            raise Forbidden("Forbidden", job_id=str(job_uuid))
        if job.auto_generated != (kind == JobKind.QUICK_ADS):
            raise InvalidRequest("Job kind does not match this endpoint", job_id=str(job_uuid))

        if job.status == JobStatus.RUNNING:
            logger.info("generation.start.already_running", job_id=str(job_uuid))
            return _running_outcome(job_uuid)
        if job.is_terminal:
            logger.info("generation.start.already_finished", job_id=str(job_uuid))
            raise _already_terminal(job)

        if kind == JobKind.CUSTOMIZED_ADS:
            if not job.archetype_code:
                raise JobNotFound("Archetype code not found", job_id=str(job_uuid))
            webhook_url = self.settings.n8n_webhook_url + job.archetype_code
        else:
            webhook_url = self.settings.n8n_quick_ads_webhook_url

        tokens_cost = self.policy.cost_for(job.auto_generated, job.formats)

        logger.info(
            "generation.start.requested",
            job_id=str(job_uuid),
            user_id=str(caller_user_id),
            kind=kind.value,
            tokens_cost=tokens_cost,
            formats=job.formats,
        )

        claimed = await self._claim_and_reserve(job_uuid, caller_user_id, tokens_cost)
        if claimed is not None:
            return claimed

        try:
            return await self._dispatch_and_wait(
                job_uuid, caller_user_id, kind, webhook_url, tokens_cost
            )
        except GenerationError:
            raise
        except Exception as e:
            logger.error(
                "generation.unexpected_error",
                job_id=str(job_uuid),
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._fail_job(job_uuid, "INTERNAL_ERROR", str(e))
            await self._refund(caller_user_id, job_uuid, tokens_cost)
            raise

    async def _claim_and_reserve(
        self, job_id: UUID, user_id: UUID, tokens_cost: int
    ) -> Optional[GenerationOutcome]:
        """Move the job to RUNNING and reserve its tokens in one transaction.

        Returns:
            None if this call owns the job now, otherwise the outcome for a
            duplicate request that lost the race
        """
        try:
            async with await self.uow_factory() as uow:
                if not await uow.generation_jobs.claim_for_start(job_id):
                    current = await uow.generation_jobs.get_for_update(job_id)
                    if current is None:
                        raise JobNotFound("Job not found", job_id=str(job_id))
                    if current.is_terminal:
                        raise _already_terminal(current)
                    logger.info("generation.start.lost_claim_race", job_id=str(job_id))
                    return _running_outcome(job_id)

                ledger_id = None
                if tokens_cost > 0:
                    entry = await uow.token_ledger.reserve(user_id, tokens_cost, job_id)
                    ledger_id = entry.id

                job = await uow.generation_jobs.get_for_update(job_id)
                if job is None:
                    raise JobNotFound("Job not found", job_id=str(job_id))
                await uow.generation_jobs.record_reservation(job, tokens_cost, ledger_id)
        except (InsufficientBalance, TokenAccountNotFound) as e:
            logger.info(
                "generation.start.insufficient_tokens",
                job_id=str(job_id),
                user_id=str(user_id),
                tokens_required=tokens_cost,
                error=str(e),
            )
            raise InsufficientTokens(tokens_cost, job_id=str(job_id)) from e

        logger.info(
            "generation.start.claimed",
            job_id=str(job_id),
            tokens_reserved=tokens_cost,
            ledger_id=ledger_id,
        )
        return None

    async def _dispatch_and_wait(
        self,
        job_id: UUID,
        user_id: UUID,
        kind: JobKind,
        webhook_url: str,
        tokens_cost: int,
    ) -> GenerationOutcome:
        payload: dict[str, Any] = {
            "job_id": str(job_id),
            "callback_url": self.settings.callback_url,
        }
        if kind == JobKind.QUICK_ADS:
            payload["is_test_mode"] = self.settings.is_test_mode

        try:
            await self.dispatcher.trigger(
                webhook_url, payload, timeout=self.settings.dispatch_timeout_seconds
            )
        except DispatchTimeout:
            # The engine may still have received the trigger; its callback decides.
            logger.warning("generation.dispatch.timeout_tolerated", job_id=str(job_id))
        except DispatchError as e:
            await self._fail_job(job_id, DispatchError.error_code, e.message)
            refunded = await self._refund(user_id, job_id, tokens_cost)
            raise DispatchError(
                "Failed to trigger generation",
                job_id=str(job_id),
                tokens_refunded=refunded,
                upstream_status=e.extra.get("upstream_status"),
            ) from e

        max_wait = self.settings.generation_max_wait_seconds
        wait_start = time.monotonic()
        try:
            result = await self.rendezvous.wait(str(job_id), max_wait)
        except RendezvousTimeout:
            return await self._handle_timeout(job_id, user_id, tokens_cost)

        logger.info(
            "generation.callback_received",
            job_id=str(job_id),
            status=result.status.value,
            images=len(result.images),
            wait_seconds=time.monotonic() - wait_start,
        )

        if result.status == JobStatus.SUCCEEDED:
            return self._success_outcome(job_id, result, tokens_cost)

        if result.status == JobStatus.FAILED:
            # A callback that failed before storing its status leaves the job RUNNING
            try:
                await self._fail_job(
                    job_id, result.error_code or "GENERATION_FAILED", result.error_message
                )
            except Exception as e:
                logger.error(
                    "generation.mark_failed_failed",
                    job_id=str(job_id),
                    error=str(e),
                    error_type=type(e).__name__,
                )

        refunded = await self._refund(user_id, job_id, tokens_cost)
        return self._failure_outcome(job_id, result, refunded)

    async def _handle_timeout(
        self, job_id: UUID, user_id: UUID, tokens_cost: int
    ) -> GenerationOutcome:
        """Settle a job whose callback never reached this waiter.

        The job row is re-read under lock: a callback may have finished it in
        the same window, and a terminal status is never overwritten.
        """
        max_wait = self.settings.generation_max_wait_seconds

        async with await self.uow_factory() as uow:
            job = await uow.generation_jobs.get_for_update(job_id)
            if job is None:
                raise JobNotFound("Job not found", job_id=str(job_id))

            if job.status == JobStatus.SUCCEEDED:
                images = await uow.ad_images.get_displayable_by_job(job_id)
                summaries = await summarize_images(uow, images)
                settled: Optional[CallbackResult] = CallbackResult(
                    status=JobStatus.SUCCEEDED, images=summaries
                )
            elif job.is_terminal:
                settled = CallbackResult(
                    status=job.status,
                    error_code=job.error_code,
                    error_message=job.error_message,
                )
            else:
                job.mark_failed(
                    CallbackTimeout.error_code,
                    f"Generation exceeded maximum wait time of {max_wait:.0f} seconds",
                )
                await uow.generation_jobs.save(job)
                settled = None

        if settled is not None and settled.status == JobStatus.SUCCEEDED:
            logger.info("generation.timeout.already_succeeded", job_id=str(job_id))
            return self._success_outcome(job_id, settled, tokens_cost)

        refunded = await self._refund(user_id, job_id, tokens_cost)

        if settled is not None:
            logger.info(
                "generation.timeout.already_finished",
                job_id=str(job_id),
                status=settled.status.value,
            )
            return self._failure_outcome(job_id, settled, refunded)

        logger.warning(
            "generation.timeout",
            job_id=str(job_id),
            waited_seconds=max_wait,
            tokens_refunded=refunded,
        )
        raise CallbackTimeout(
            "Generation timeout",
            job_id=str(job_id),
            status=JobStatus.FAILED.value,
            tokens_refunded=refunded,
        )

    async def _fail_job(
        self, job_id: UUID, error_code: str, error_message: Optional[str]
    ) -> None:
        """Mark a job FAILED unless it already reached a terminal status."""
        async with await self.uow_factory() as uow:
            job = await uow.generation_jobs.get_for_update(job_id)
            if job is None or job.is_terminal:
                return
            job.mark_failed(error_code, error_message)
            await uow.generation_jobs.save(job)

        logger.info("generation.failed", job_id=str(job_id), error_code=error_code)

    async def _refund(self, user_id: UUID, job_id: UUID, tokens_cost: int) -> int:
        """Refund a job's reservation without ever raising.

        Returns:
            Tokens credited back (0 when nothing was reserved or the refund failed)
        """
        if tokens_cost <= 0:
            return 0
        try:
            async with await self.uow_factory() as uow:
                refunded = await uow.token_ledger.refund(user_id, job_id)
        except Exception as e:
            logger.error(
                "ledger.refund_failed",
                job_id=str(job_id),
                user_id=str(user_id),
                tokens=tokens_cost,
                error=str(e),
                error_type=type(e).__name__,
            )
            return 0

        logger.info("ledger.refunded", job_id=str(job_id), user_id=str(user_id), tokens=refunded)
        return refunded

    @staticmethod
    def _success_outcome(
        job_id: UUID, result: CallbackResult, tokens_cost: int
    ) -> GenerationOutcome:
        return GenerationOutcome(
            http_status=200,
            body={
                "job_id": str(job_id),
                "status": JobStatus.SUCCEEDED.value,
                "images": [image.model_dump(mode="json") for image in result.images],
                "tokens_used": tokens_cost,
            },
        )

    @staticmethod
    def _failure_outcome(
        job_id: UUID, result: CallbackResult, tokens_refunded: int
    ) -> GenerationOutcome:
        body: dict[str, Any] = {
            "job_id": str(job_id),
            "status": result.status.value,
            "images": [image.model_dump(mode="json") for image in result.images],
            "error_message": result.error_message,
            "error_code": result.error_code,
            "tokens_refunded": tokens_refunded,
        }
        if result.migrated_to_job_id is not None:
            body["migrated_to_job_id"] = str(result.migrated_to_job_id)
        return GenerationOutcome(
            http_status=500 if result.status == JobStatus.FAILED else 200,
            body=body,
        )
