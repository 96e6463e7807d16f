"""Process-local rendezvous for single-instance deployments and local development."""

import asyncio
import time
from typing import Callable, Optional

import structlog

from blumpo.services.rendezvous.base import CallbackRendezvous, CallbackResult, RendezvousTimeout

logger = structlog.get_logger()


class InMemoryRendezvous(CallbackRendezvous):
    """Rendezvous backed by asyncio futures held in this process.

    State per job id:
    - pending: a future waiters are suspended on, with the number of waiters
    - stored: a result published before anyone waited, kept until ttl_seconds
    - published: every accepted result, kept until ttl_seconds for peek()
    - closed: job id consumed or timed out; further resolves are ignored until ttl_seconds

    Only callbacks delivered to the same process can reach a waiter. Use
    RedisRendezvous when several instances serve traffic.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._pending: dict[str, asyncio.Future] = {}
        self._waiters: dict[str, int] = {}
        self._stored: dict[str, tuple[CallbackResult, float]] = {}
        self._published: dict[str, tuple[CallbackResult, float]] = {}
        self._closed: dict[str, float] = {}

    def _purge_expired(self) -> None:
        now = self._clock()
        for store in (self._stored, self._published):
            for job_id in [j for j, (_, expires) in store.items() if expires <= now]:
                del store[job_id]
        for job_id in [j for j, expires in self._closed.items() if expires <= now]:
            del self._closed[job_id]

    def _close(self, job_id: str) -> None:
        self._closed[job_id] = self._clock() + self.ttl_seconds

    async def wait(self, job_id: str, max_wait_seconds: float) -> CallbackResult:
        self._purge_expired()

        stored = self._stored.pop(job_id, None)
        if stored is not None:
            self._close(job_id)
            logger.info("rendezvous.result_already_available", job_id=job_id, backend="memory")
            return stored[0]

        future = self._pending.get(job_id)
        if future is None or future.done():
            future = asyncio.get_running_loop().create_future()
            self._pending[job_id] = future
        else:
            logger.warning("rendezvous.joining_existing_waiter", job_id=job_id)
        self._waiters[job_id] = self._waiters.get(job_id, 0) + 1

        logger.info(
            "rendezvous.waiting",
            job_id=job_id,
            backend="memory",
            max_wait_seconds=max_wait_seconds,
            pending=len(self._pending),
        )

        try:
            # shield: one waiter timing out must not cancel the future others share
            return await asyncio.wait_for(asyncio.shield(future), timeout=max_wait_seconds)
        except asyncio.TimeoutError:
            logger.warning("rendezvous.timeout", job_id=job_id, waited_seconds=max_wait_seconds)
            raise RendezvousTimeout(job_id, max_wait_seconds) from None
        finally:
            remaining = self._waiters.get(job_id, 1) - 1
            if remaining > 0:
                self._waiters[job_id] = remaining
            else:
                self._waiters.pop(job_id, None)
                if self._pending.get(job_id) is future:
                    del self._pending[job_id]
                if not future.done():
                    future.cancel()
                self._close(job_id)

    async def resolve(self, job_id: str, result: CallbackResult) -> bool:
        self._purge_expired()

        if job_id in self._closed:
            logger.warning("rendezvous.resolve_ignored", job_id=job_id, reason="closed")
            return False

        if job_id in self._stored:
            logger.warning("rendezvous.resolve_ignored", job_id=job_id, reason="already_resolved")
            return False

        expires_at = self._clock() + self.ttl_seconds
        self._published[job_id] = (result, expires_at)

        future = self._pending.pop(job_id, None)
        if future is not None and not future.done():
            future.set_result(result)
            self._close(job_id)
            logger.info("rendezvous.resolved", job_id=job_id, status=result.status.value)
            return True

        self._stored[job_id] = (result, expires_at)
        logger.info("rendezvous.stored_for_later", job_id=job_id, status=result.status.value)
        return True

    async def peek(self, job_ids: list[str]) -> dict[str, Optional[CallbackResult]]:
        self._purge_expired()
        return {
            job_id: (self._published[job_id][0] if job_id in self._published else None)
            for job_id in job_ids
        }

    @property
    def pending_count(self) -> int:
        """Number of job ids with at least one suspended waiter."""
        return len(self._pending)
