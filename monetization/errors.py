"""
Error Taxonomy for the Monetization Engine

Every error carries the HTTP status code the synchronous endpoints return.
Batch tasks catch these per item and surface them in the task report.
"""


class MonetizationError(Exception):
    """Base class for all engine errors."""

    status_code = 500
    kind = "failed"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message, "status": self.kind}


class ValidationError(MonetizationError, ValueError):
    """Malformed or out-of-range input."""

    status_code = 400
    kind = "validation_failed"


class NotFoundError(MonetizationError):
    status_code = 404
    kind = "not_found"


class AuthorizationError(MonetizationError):
    """Ownership or role violation."""

    status_code = 403
    kind = "forbidden"


class StateConflictError(MonetizationError):
    """Illegal state transition or a lost optimistic-concurrency race."""

    status_code = 409
    kind = "conflict"


class GatewayError(MonetizationError):
    """
    External payment failure.

    Retryable by the next scheduled run; never retried in a tight loop.
    """

    status_code = 502
    kind = "gateway_failed"


class RateLimitError(GatewayError):
    """Provider-side rate limit. The only gateway error retried in-process."""

    status_code = 503


class PersistenceError(MonetizationError):
    """Storage failure. Fatal for the single item being processed."""

    status_code = 500
    kind = "persistence_failed"
