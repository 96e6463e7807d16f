"""Callback ingestion: turn an engine callback into a job outcome.

Processing order for one callback:

1. Parse the loosely typed result and map status + ok flag to a terminal status
2. In one transaction: lock the job, filter its valid images, apply the
   zero-valid-images override and store the status (terminal jobs keep theirs)
3. Best-effort, each in its own transaction: hide fresh images for free-plan
   users, then move partial output of failed quick-ads jobs to a home job
4. Publish the result on the rendezvous, exactly once per callback for a
   known job, even when steps 2-3 fail. If step 2 did not complete the
   published result is FAILED with CALLBACK_ERROR, whatever the engine reported
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

import structlog

from blumpo.core.timezone import utc_now
from blumpo.models.generation_job import GenerationJob, JobStatus
from blumpo.services.exceptions import InvalidRequest, JobNotFound
from blumpo.services.generation.images import summarize_images
from blumpo.services.generation.loose_json import map_callback_status, parse_loose_json
from blumpo.services.generation.policy import GenerationPolicy
from blumpo.services.rendezvous.base import CallbackRendezvous, CallbackResult
from blumpo.uow import UnitOfWork

logger = structlog.get_logger()

NO_VALID_IMAGES_CODE = "NO_VALID_IMAGES"
NO_VALID_IMAGES_MESSAGE = "no valid images found"
CALLBACK_ERROR_CODE = "CALLBACK_ERROR"
CALLBACK_ERROR_MESSAGE = "callback processing failed"
MIGRATABLE_STATUSES = frozenset({JobStatus.FAILED, JobStatus.CANCELED})


def normalize_result(raw: Any) -> dict[str, Any]:
    """Coerce the callback's result field into a dict.

    Strings go through parse_loose_json; when no JSON object can be recovered
    the best-effort error fields are returned instead.
    """
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str):
        logger.warning("callback.result_unexpected_type", result_type=type(raw).__name__)
        return {}

    parsed = parse_loose_json(raw)
    if parsed.ok:
        if isinstance(parsed.value, dict):
            return parsed.value
        if isinstance(parsed.value, str):
            return {"error_message": parsed.value}
        return {}

    fields: dict[str, Any] = {}
    if parsed.error_message:
        fields["error_message"] = parsed.error_message
    if parsed.error_code:
        fields["error_code"] = parsed.error_code
    logger.info("callback.result_recovered", strategy=parsed.strategy, fields=list(fields))
    return fields


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return value if isinstance(value, str) else str(value)


@dataclass
class IngestOutcome:
    """Summary returned to the engine."""

    job_id: UUID
    status: JobStatus
    images_count: int

    def to_body(self) -> dict[str, Any]:
        return {
            "success": True,
            "job_id": str(self.job_id),
            "status": self.status.value,
            "images_count": self.images_count,
        }


@dataclass
class _JobSnapshot:
    job_id: UUID
    user_id: UUID
    brand_id: Optional[UUID]
    auto_generated: bool
    formats: list
    prompt: str
    previous_status: JobStatus
    applied: bool
    plan_code: Optional[str]
    valid_image_ids: list[UUID]


class CallbackIngestor:
    """Applies engine callbacks to jobs and wakes the waiting start request.

    Args:
        uow_factory: Creates a UnitOfWork per transaction
        rendezvous: Where results are published for the orchestrator
        policy: Plan visibility rules
    """

    def __init__(
        self,
        uow_factory: Callable[[], Awaitable[UnitOfWork]],
        rendezvous: CallbackRendezvous,
        policy: GenerationPolicy,
    ):
        self.uow_factory = uow_factory
        self.rendezvous = rendezvous
        self.policy = policy

    async def ingest(self, payload: dict[str, Any]) -> IngestOutcome:
        """Process one callback body ``{job_id, status, result}``.

        Raises:
            InvalidRequest: job_id missing
            JobNotFound: job_id unknown (nothing is published)
        """
        raw_job_id = payload.get("job_id")
        if not raw_job_id:
            raise InvalidRequest("Missing job_id")
        try:
            job_id = UUID(str(raw_job_id))
        except ValueError:
            raise JobNotFound("Job not found", job_id=str(raw_job_id)) from None

        reported_status = payload.get("status")
        result_fields = normalize_result(payload.get("result"))
        ok = result_fields.get("ok")
        mapped = map_callback_status(
            reported_status if isinstance(reported_status, str) else None,
            ok if isinstance(ok, bool) else None,
        )
        error_message = _optional_str(result_fields.get("error_message"))
        error_code = _optional_str(result_fields.get("error_code"))

        logger.info(
            "callback.parsed",
            job_id=str(job_id),
            reported_status=reported_status,
            ok=ok,
            mapped_status=mapped.value,
            error_code=error_code,
        )

        # Published if the status could not be stored after the job was found
        result = CallbackResult(
            status=JobStatus.FAILED,
            error_code=CALLBACK_ERROR_CODE,
            error_message=error_message or CALLBACK_ERROR_MESSAGE,
        )
        job_known = False

        try:
            async with await self.uow_factory() as uow:
                job = await uow.generation_jobs.get_for_update(job_id)
                if job is None:
                    logger.warning("callback.job_not_found", job_id=str(job_id))
                    raise JobNotFound("Job not found", job_id=str(job_id))
                job_known = True

                result, snapshot = await self._apply_status(
                    uow, job, mapped, error_code, error_message
                )

            result = await self._apply_side_effects(snapshot, result)
        finally:
            if job_known:
                await self.rendezvous.resolve(str(job_id), result)

        logger.info(
            "callback.ingested",
            job_id=str(job_id),
            status=result.status.value,
            images_count=len(result.images),
            migrated_to_job_id=result.migrated_to_job_id and str(result.migrated_to_job_id),
        )
        return IngestOutcome(job_id=job_id, status=result.status, images_count=len(result.images))

    async def _apply_status(
        self,
        uow: UnitOfWork,
        job: GenerationJob,
        mapped: JobStatus,
        error_code: Optional[str],
        error_message: Optional[str],
    ) -> tuple[CallbackResult, _JobSnapshot]:
        """Store the callback's status on the locked job and build the result."""
        previous_status = job.status
        valid_images = await uow.ad_images.get_valid_by_job(job.id)

        status = mapped
        if not valid_images:
            if mapped == JobStatus.SUCCEEDED:
                error_code, error_message = NO_VALID_IMAGES_CODE, NO_VALID_IMAGES_MESSAGE
            else:
                error_code = error_code or NO_VALID_IMAGES_CODE
                error_message = error_message or NO_VALID_IMAGES_MESSAGE
            if mapped != JobStatus.FAILED:
                logger.warning(
                    "callback.no_valid_images",
                    job_id=str(job.id),
                    reported_status=mapped.value,
                )
            status = JobStatus.FAILED

        applied = not job.is_terminal
        if applied:
            job.finish(status, error_code, error_message)
            await uow.generation_jobs.save(job)
        else:
            logger.warning(
                "callback.terminal_status_kept",
                job_id=str(job.id),
                stored_status=job.status.value,
                callback_status=status.value,
            )

        images = await summarize_images(uow, valid_images)
        if job.status == JobStatus.SUCCEEDED:
            result = CallbackResult(status=JobStatus.SUCCEEDED, images=images)
        else:
            result = CallbackResult(
                status=job.status,
                images=images,
                error_code=job.error_code,
                error_message=job.error_message,
            )

        snapshot = _JobSnapshot(
            job_id=job.id,
            user_id=job.user_id,
            brand_id=job.brand_id,
            auto_generated=job.auto_generated,
            formats=list(job.formats or []),
            prompt=job.prompt,
            previous_status=previous_status,
            applied=applied,
            plan_code=await uow.token_ledger.get_plan_code(job.user_id),
            valid_image_ids=[image.id for image in valid_images],
        )
        return result, snapshot

    async def _apply_side_effects(
        self, snapshot: _JobSnapshot, result: CallbackResult
    ) -> CallbackResult:
        """Plan visibility and partial-output migration; failures are logged, not raised.

        The hide commits on its own so a failed migration cannot undo it.
        """
        if not snapshot.applied or not snapshot.valid_image_ids:
            return result

        if self.policy.should_hide_on_ingest(snapshot.plan_code):
            try:
                async with await self.uow_factory() as uow:
                    hidden = await uow.ad_images.mark_deleted(snapshot.valid_image_ids)
                logger.info(
                    "callback.images_hidden",
                    job_id=str(snapshot.job_id),
                    plan_code=snapshot.plan_code,
                    count=hidden,
                )
            except Exception as e:
                self._log_side_effect_failure("hide", snapshot, e)

        migrate = (
            snapshot.auto_generated
            and result.status in MIGRATABLE_STATUSES
            and snapshot.previous_status != JobStatus.SUCCEEDED
        )
        if migrate:
            try:
                async with await self.uow_factory() as uow:
                    home_job_id = await self._migrate_partial_output(uow, snapshot)
                result = result.model_copy(
                    update={"images": [], "migrated_to_job_id": home_job_id}
                )
            except Exception as e:
                self._log_side_effect_failure("migrate", snapshot, e)
        return result

    @staticmethod
    def _log_side_effect_failure(step: str, snapshot: _JobSnapshot, error: Exception) -> None:
        logger.error(
            "callback.side_effect_failed",
            step=step,
            job_id=str(snapshot.job_id),
            error=str(error),
            error_type=type(error).__name__,
        )

    async def _migrate_partial_output(self, uow: UnitOfWork, snapshot: _JobSnapshot) -> UUID:
        """Move valid images of a failed quick-ads job to the user's home job.

        The home job is the latest succeeded quick-ads job for the same user and
        brand, created if none exists. Anything still attached to the failed job
        afterwards is deleted.
        """
        home = await uow.generation_jobs.find_home_job(
            snapshot.user_id, snapshot.brand_id, exclude_job_id=snapshot.job_id
        )
        if home is None:
            now = utc_now()
            home = await uow.generation_jobs.add(
                GenerationJob(
                    user_id=snapshot.user_id,
                    brand_id=snapshot.brand_id,
                    auto_generated=True,
                    status=JobStatus.SUCCEEDED,
                    formats=snapshot.formats,
                    prompt=snapshot.prompt,
                    started_at=now,
                    completed_at=now,
                )
            )
            logger.info(
                "callback.home_job_created",
                job_id=str(snapshot.job_id),
                home_job_id=str(home.id),
            )

        moved = await uow.ad_images.move_to_job(snapshot.valid_image_ids, home.id)
        removed = await uow.ad_images.delete_by_job(snapshot.job_id)
        logger.info(
            "callback.partial_output_migrated",
            job_id=str(snapshot.job_id),
            home_job_id=str(home.id),
            moved=moved,
            removed=removed,
        )
        return home.id
