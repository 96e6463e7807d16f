"""HTTP trigger for automation engine workflows."""

import time
from typing import Any

import httpx
import structlog

from blumpo.services.exceptions import DispatchError, DispatchTimeout

logger = structlog.get_logger()


class WorkflowDispatcher:
    """Posts trigger requests to the automation engine.

    The call only confirms the engine accepted the job; the outcome arrives
    later on the callback endpoint.

    Args:
        client: Shared async HTTP client (owned by the application lifespan)
        webhook_key: Shared secret sent in the x-agent-key header
    """

    def __init__(self, client: httpx.AsyncClient, webhook_key: str):
        self.client = client
        self.webhook_key = webhook_key

    async def trigger(self, url: str, payload: dict[str, Any], timeout: float) -> int:
        """Send a trigger request and wait for acceptance.

        Args:
            url: Workflow webhook URL
            payload: JSON body (job_id, callback_url and mode-specific fields)
            timeout: Seconds to wait for the engine's acknowledgement

        Returns:
            Upstream HTTP status (2xx)

        Raises:
            DispatchTimeout: Request sent but no response in time; the job may still run
            DispatchError: Non-2xx response, or the request could not be delivered
        """
        job_id = payload.get("job_id")
        start = time.monotonic()

        try:
            response = await self.client.post(
                url,
                json=payload,
                headers={"x-agent-key": self.webhook_key},
                timeout=timeout,
            )
        except httpx.ReadTimeout as e:
            logger.warning(
                "generation.dispatch.timeout",
                job_id=job_id,
                url=url,
                timeout_seconds=timeout,
            )
            raise DispatchTimeout(f"Webhook did not respond within {timeout:.0f}s") from e
        except httpx.HTTPError as e:
            logger.error(
                "generation.dispatch.transport_error",
                job_id=job_id,
                url=url,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise DispatchError(str(e) or type(e).__name__, job_id=job_id) from e

        duration = time.monotonic() - start

        if not response.is_success:
            body = response.text or "Webhook request failed"
            logger.error(
                "generation.dispatch.rejected",
                job_id=job_id,
                url=url,
                upstream_status=response.status_code,
                body=body[:500],
                duration_seconds=duration,
            )
            raise DispatchError(body, job_id=job_id, upstream_status=response.status_code)

        logger.info(
            "generation.dispatch.accepted",
            job_id=job_id,
            upstream_status=response.status_code,
            duration_seconds=duration,
        )
        return response.status_code
