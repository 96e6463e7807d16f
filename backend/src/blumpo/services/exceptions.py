"""Service error hierarchy for generation coordination and token billing.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Errors that may resolve on their own (timeouts, network)
- PermanentError: Errors that will not succeed on retry (validation, auth)
- GenerationError: Errors surfaced to the web client with an HTTP status and error code
"""

from typing import Any, Optional


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed later.

    Examples:
    - Network timeouts
    - Engine slow to confirm a dispatch
    - Callback not yet delivered
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Missing or foreign job
    - Insufficient token balance
    - Engine rejected the trigger request
    """

    pass


# Token ledger errors
class LedgerError(PermanentError):
    """Base exception for token ledger errors."""

    pass


class TokenAccountNotFound(LedgerError):
    """User has no token account."""

    pass


class InsufficientBalance(LedgerError):
    """Debit would take the balance below zero."""

    def __init__(self, required: int, balance: int):
        super().__init__(f"Insufficient token balance: required {required}, available {balance}")
        self.required = required
        self.balance = balance


class NoRefundToRevert(LedgerError):
    """A refund revert was requested for a job that was never refunded."""

    pass


# Generation errors surfaced to clients
class GenerationError(ServiceError):
    """Base exception for errors returned to the web client.

    Attributes:
        http_status: HTTP status code of the error response
        error_code: Machine-readable code included in the response body
    """

    http_status: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        **extra: Any,
    ):
        super().__init__(message)
        self.message = message
        self.job_id = job_id
        self.extra = extra

    def to_body(self) -> dict[str, Any]:
        """Render the JSON body returned to the client."""
        body: dict[str, Any] = {"error": self.message, "error_code": self.error_code}
        if self.job_id is not None:
            body["job_id"] = self.job_id
        body.update({k: v for k, v in self.extra.items() if v is not None})
        return body


class InvalidRequest(GenerationError):
    """Malformed request body (e.g. missing jobId)."""

    http_status = 400
    error_code = "INVALID_REQUEST"


class AuthRequired(GenerationError):
    """No authenticated caller."""

    http_status = 401
    error_code = "AUTH_REQUIRED"


class Forbidden(GenerationError):
    """Caller does not own the job."""

    http_status = 403
    error_code = "FORBIDDEN"


class JobNotFound(GenerationError):
    """Job (or a resource it needs, such as its archetype) does not exist."""

    http_status = 404
    error_code = "NOT_FOUND"


class InsufficientTokens(GenerationError):
    """Token balance too low for the reservation; carries the required amount."""

    http_status = 402
    error_code = "INSUFFICIENT_TOKENS"

    def __init__(self, tokens_required: int, job_id: Optional[str] = None):
        super().__init__("Insufficient tokens", job_id=job_id, tokens_required=tokens_required)
        self.tokens_required = tokens_required


class AlreadyTerminal(GenerationError):
    """Start requested on a job that already finished (replay guard)."""

    http_status = 400
    error_code = "ALREADY_FINISHED"


class GenerationDisabled(GenerationError):
    """Generation switched off (test mode deployments)."""

    http_status = 503
    error_code = "TEST_MODE"


class DispatchError(GenerationError):
    """Engine rejected or errored on the trigger request."""

    http_status = 502
    error_code = "WEBHOOK_ERROR"


class DispatchTimeout(TransientError):
    """Engine did not confirm the trigger in time.

    Tolerated: the trigger and the callback are decoupled, so the job may still run.
    """

    pass


class CallbackTimeout(GenerationError):
    """No callback arrived within the maximum wait."""

    http_status = 504
    error_code = "TIMEOUT"


class MalformedCallbackPayload(TransientError):
    """Callback result could not be parsed as JSON; recovered by best-effort parsing."""

    pass
