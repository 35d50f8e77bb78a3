"""
Application errors

Every business error derives from ``AppError`` and is rendered by the
handler in ``clubbilling/main.py`` as ``{"code", "message", "data"}``.
Typed subclasses set ``reason`` so callers can branch on a stable name
(``MandateNotReady``, ``InvalidTransition``...) instead of parsing text.
"""
from __future__ import annotations


class AppError(Exception):
    """
    Base business error.

    - code: numeric business code (HTTP status * 1000 + n)
    - message: human readable description
    - status_code: HTTP status used by the API layer
    - reason: stable machine readable name, returned as ``data.reason``
    """

    default_code = 400000
    default_status = 400
    default_reason: str | None = None

    def __init__(
        self,
        message: str | None = None,
        *,
        code: int | None = None,
        status_code: int | None = None,
        reason: str | None = None,
    ) -> None:
        message = message or self.__class__.__name__
        super().__init__(message)
        self.code = code if code is not None else self.default_code
        self.message = message
        self.status_code = status_code if status_code is not None else self.default_status
        self.reason = reason or self.default_reason


class ValidationFailed(AppError):
    """Malformed input (bad tier id, billing day out of range...). Nothing is persisted."""

    default_code = 400100
    default_reason = "ValidationFailed"


class Forbidden(AppError):
    default_code = 403001
    default_status = 403
    default_reason = "Forbidden"


class NotFound(AppError):
    default_code = 404001
    default_status = 404
    default_reason = "NotFound"


class InvalidTransition(AppError):
    """The requested lifecycle transition is not allowed from the current status."""

    default_code = 409001
    default_status = 409
    default_reason = "InvalidTransition"


class MandateNotReady(AppError):
    """No mandate with status ``active`` resolves for the subscription."""

    default_code = 409002
    default_status = 409
    default_reason = "MandateNotReady"


class Conflict(AppError):
    """A uniqueness rule would be broken (duplicate mandate, duplicate subscription)."""

    default_code = 409005
    default_status = 409
    default_reason = "Conflict"


class SubscriptionExists(Conflict):
    default_code = 409003
    default_reason = "SubscriptionExists"


class AlreadyRunning(AppError):
    """A run of the same worker is still open in the execution ledger."""

    default_code = 409004
    default_status = 409
    default_reason = "AlreadyRunning"


class WebhookSignatureInvalid(AppError):
    # GoCardless expects 498 for a rejected signature.
    default_code = 498001
    default_status = 498
    default_reason = "InvalidSignature"


def not_found(entity: str, entity_id: object) -> NotFound:
    return NotFound(f"{entity} {entity_id} not found")
