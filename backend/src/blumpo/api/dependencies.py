"""FastAPI dependencies for request validation and common operations.

This module provides reusable FastAPI dependencies for:
- Access to services created in the application lifespan
- Caller identity forwarded by the authenticating proxy
- Engine callback key validation
"""

import hmac
from typing import Annotated, Callable, Optional
from uuid import UUID

import structlog
from fastapi import Depends, Header, HTTPException, Request, status

from blumpo.core.config import Settings
from blumpo.services.exceptions import AuthRequired
from blumpo.services.generation.ingestor import CallbackIngestor
from blumpo.services.generation.orchestrator import GenerationOrchestrator
from blumpo.services.rendezvous.base import CallbackRendezvous
from blumpo.uow import UnitOfWork

logger = structlog.get_logger()


def get_settings(request: Request) -> Settings:
    """Get the settings instance loaded at startup."""
    return request.app.state.settings


def get_uow_factory(request: Request) -> Callable[[], UnitOfWork]:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.post("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.generation_jobs.get_by_id(job_id)
    """
    return request.app.state.uow_factory


def get_rendezvous(request: Request) -> CallbackRendezvous:
    """Get the callback rendezvous backend from app state."""
    return request.app.state.rendezvous


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    """Get the generation orchestrator from app state."""
    return request.app.state.orchestrator


def get_ingestor(request: Request) -> CallbackIngestor:
    """Get the callback ingestor from app state."""
    return request.app.state.ingestor


def get_current_user_id(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> Optional[UUID]:
    """Read the caller id set by the authenticating proxy.

    Authentication itself happens upstream; a missing or malformed header means
    the caller is anonymous.

    Returns:
        Caller's user id, or None if unauthenticated
    """
    raw = request.headers.get(settings.auth_user_header)
    if not raw:
        return None
    try:
        return UUID(raw)
    except ValueError:
        logger.warning("auth.invalid_user_header", header=settings.auth_user_header)
        return None


def require_user_id(
    user_id: Optional[UUID] = Depends(get_current_user_id),
) -> UUID:
    """Like get_current_user_id, but rejects anonymous callers.

    Raises:
        AuthRequired: No authenticated caller (401)
    """
    if user_id is None:
        raise AuthRequired("Unauthorized")
    return user_id


async def validate_callback_key(
    x_agent_key: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> None:
    """Check the shared key on engine callbacks when CALLBACK_SECRET is set.

    Uses constant-time comparison. Without a configured secret every callback
    is accepted.

    Raises:
        HTTPException: 401 Unauthorized if the key is missing or wrong
    """
    if not settings.callback_secret:
        return

    if not x_agent_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing x-agent-key header"
        )

    if not hmac.compare_digest(x_agent_key.encode(), settings.callback_secret.encode()):
        logger.warning("callback.invalid_key")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid callback key")
