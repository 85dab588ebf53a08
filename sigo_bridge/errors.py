"""Pipeline error taxonomy and the JSON error envelope.

Every error that reaches a caller is rendered as
``{"status": "error", "message": ..., **detail}``. Upstream bodies, stack
traces and credentials never go into ``detail``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class FieldError:
    """A single field-level problem with an inbound payload or a document."""

    field: str
    msg: str

    def to_dict(self) -> dict[str, str]:
        return {"msg": self.msg, "field": self.field}


class PipelineError(Exception):
    """Base class for every error the invoicing pipeline classifies."""

    status_code = 500
    default_message = "internal error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def detail(self) -> dict[str, Any]:
        return {}


class AuthenticationError(PipelineError):
    """Inbound webhook signature missing or wrong."""

    status_code = 401
    default_message = "invalid signature"


class ValidationError(PipelineError):
    """Payload rejected, either by us or by the invoicing service."""

    status_code = 400
    default_message = "invalid data"

    def __init__(
        self,
        message: str | None = None,
        errors: list[FieldError] | None = None,
        code: str | None = None,
    ):
        super().__init__(message)
        self.errors = list(errors or [])
        self.code = code  # upstream error code, when the invoicing service sent one

    def detail(self) -> dict[str, Any]:
        return {"errors": [e.to_dict() for e in self.errors]}


class TransformationError(ValidationError):
    """Order data that cannot be mapped to a fiscal invoice."""

    default_message = "order cannot be invoiced"


class TransientError(PipelineError):
    """Network failure, timeout, 429 or 5xx from the invoicing service. Retryable."""

    default_message = "invoicing service unavailable"

    def __init__(self, message: str | None = None, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class CircuitOpenError(TransientError):
    """The invoicing service circuit is open; the call was not attempted."""

    default_message = "invoicing service temporarily unavailable"


class AuthError(PipelineError):
    """Credential or token failure against the invoicing service. Not retried."""

    default_message = "invoicing service authentication failed"


class NotFoundError(PipelineError):
    """The invoicing service has no such invoice."""

    status_code = 404
    default_message = "invoice not found"


class NotificationError(PipelineError):
    """Outbound hub notification failed. Always logged, never surfaced."""

    default_message = "hub notification failed"


def error_body(exc: PipelineError) -> dict[str, Any]:
    """Build the response envelope for a classified error."""
    return {"status": "error", "message": exc.message, **exc.detail()}
