"""Callback rendezvous: hand-off between start requests and engine callbacks."""

import structlog

from blumpo.core.config import Settings
from blumpo.services.rendezvous.base import (
    AdImageSummary,
    ArchetypeSummary,
    CallbackRendezvous,
    CallbackResult,
    RendezvousTimeout,
)
from blumpo.services.rendezvous.memory import InMemoryRendezvous
from blumpo.services.rendezvous.redis import RedisRendezvous

logger = structlog.get_logger()


def create_rendezvous(settings: Settings) -> CallbackRendezvous:
    """Select the rendezvous backend from configuration.

    A configured REDIS_URL means several instances may serve callbacks, so the
    shared store is used; otherwise results are handed over in-process.
    """
    if settings.redis_url:
        logger.info("rendezvous.backend_selected", backend="redis")
        return RedisRendezvous.from_url(
            settings.redis_url,
            ttl_seconds=settings.rendezvous_ttl_seconds,
            poll_interval_seconds=settings.rendezvous_poll_interval_seconds,
            initial_delay_seconds=settings.rendezvous_initial_delay_seconds,
            key_prefix=settings.rendezvous_key_prefix,
        )

    logger.info("rendezvous.backend_selected", backend="memory")
    return InMemoryRendezvous(ttl_seconds=settings.rendezvous_ttl_seconds)


__all__ = [
    "AdImageSummary",
    "ArchetypeSummary",
    "CallbackRendezvous",
    "CallbackResult",
    "InMemoryRendezvous",
    "RedisRendezvous",
    "RendezvousTimeout",
    "create_rendezvous",
]
