"""Redis-backed rendezvous for multi-instance deployments.

Key layout (prefix defaults to "callback:"):
    {prefix}{job_id}         JSON CallbackResult, SET NX with expiry = max wait + buffer
    {prefix}closed:{job_id}  marker written when a waiter consumed the result or gave up

The waiter polls rather than subscribing so a result written before the wait
started, or by another instance, is always found.
"""

import asyncio
from typing import Any, Optional

import structlog
from pydantic import ValidationError
from redis.asyncio import Redis

from blumpo.models.generation_job import JobStatus
from blumpo.services.rendezvous.base import CallbackRendezvous, CallbackResult, RendezvousTimeout

logger = structlog.get_logger()


class RedisRendezvous(CallbackRendezvous):
    """Rendezvous stored in a shared Redis instance.

    Args:
        redis: Async Redis client (decode_responses=True)
        ttl_seconds: Expiry of results and closed markers
        poll_interval_seconds: Delay between reads while waiting
        initial_delay_seconds: First read happens after this delay; the engine
            never finishes faster, so earlier reads would only add load
        key_prefix: Namespace for rendezvous keys
    """

    def __init__(
        self,
        redis: Any,
        ttl_seconds: int,
        poll_interval_seconds: float = 2.0,
        initial_delay_seconds: float = 20.0,
        key_prefix: str = "callback:",
    ):
        self.redis = redis
        self.ttl_seconds = ttl_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisRendezvous":
        """Build a rendezvous with its own connection pool."""
        return cls(Redis.from_url(url, decode_responses=True), **kwargs)

    def result_key(self, job_id: str) -> str:
        return f"{self.key_prefix}{job_id}"

    def closed_key(self, job_id: str) -> str:
        return f"{self.key_prefix}closed:{job_id}"

    def _decode(self, job_id: str, raw: str) -> CallbackResult:
        try:
            return CallbackResult.model_validate_json(raw)
        except ValidationError as e:
            logger.error(
                "rendezvous.corrupt_result",
                job_id=job_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return CallbackResult(
                status=JobStatus.FAILED,
                error_code="MALFORMED_RESULT",
                error_message="Stored callback result could not be decoded",
            )

    async def _close(self, job_id: str) -> None:
        await self.redis.set(self.closed_key(job_id), "1", ex=self.ttl_seconds)

    async def wait(self, job_id: str, max_wait_seconds: float) -> CallbackResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max_wait_seconds
        key = self.result_key(job_id)

        logger.info(
            "rendezvous.waiting",
            job_id=job_id,
            backend="redis",
            max_wait_seconds=max_wait_seconds,
            initial_delay_seconds=self.initial_delay_seconds,
        )

        await asyncio.sleep(min(self.initial_delay_seconds, max_wait_seconds))

        while True:
            raw = await self.redis.get(key)
            if raw is not None:
                await self._close(job_id)
                logger.info("rendezvous.result_found", job_id=job_id, backend="redis")
                return self._decode(job_id, raw)

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.poll_interval_seconds, remaining))

        # Close first, then read once more: a resolve that checked the marker
        # before it was written has also written its result by now or will be discarded.
        await self._close(job_id)
        raw = await self.redis.get(key)
        if raw is not None:
            logger.info("rendezvous.result_found_at_deadline", job_id=job_id)
            return self._decode(job_id, raw)

        logger.warning("rendezvous.timeout", job_id=job_id, waited_seconds=max_wait_seconds)
        raise RendezvousTimeout(job_id, max_wait_seconds)

    async def resolve(self, job_id: str, result: CallbackResult) -> bool:
        if await self.redis.exists(self.closed_key(job_id)):
            logger.warning("rendezvous.resolve_ignored", job_id=job_id, reason="closed")
            return False

        stored = await self.redis.set(
            self.result_key(job_id),
            result.model_dump_json(),
            nx=True,
            ex=self.ttl_seconds,
        )
        if not stored:
            logger.warning("rendezvous.resolve_ignored", job_id=job_id, reason="already_resolved")
            return False

        logger.info(
            "rendezvous.resolved",
            job_id=job_id,
            backend="redis",
            status=result.status.value,
            ttl_seconds=self.ttl_seconds,
        )
        return True

    async def peek(self, job_ids: list[str]) -> dict[str, Optional[CallbackResult]]:
        if not job_ids:
            return {}
        raws = await self.redis.mget([self.result_key(job_id) for job_id in job_ids])
        return {
            job_id: (self._decode(job_id, raw) if raw is not None else None)
            for job_id, raw in zip(job_ids, raws)
        }

    async def ping(self) -> None:
        await self.redis.ping()

    async def close(self) -> None:
        await self.redis.aclose()
