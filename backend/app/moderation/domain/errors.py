"""Error taxonomy shared by moderation services and the HTTP layer."""

from __future__ import annotations

from datetime import datetime
from typing import Mapping


class ModerationError(Exception):
    """Base class for moderation workflow failures.

    Each subclass carries the HTTP status it maps to and a stable machine
    readable ``error_code`` so handlers never need to inspect messages.
    """

    status_code: int = 400
    error_code: str = "moderation_error"

    def __init__(self, error_code: str | None = None, message: str | None = None) -> None:
        if error_code:
            self.error_code = error_code
        super().__init__(message or self.error_code)

    def to_payload(self) -> dict[str, object]:
        return {"detail": self.error_code}


class ModerationValidationError(ModerationError):
    status_code = 422
    error_code = "validation_error"

    def __init__(self, fields: Mapping[str, str]) -> None:
        self.fields = dict(fields)
        summary = ", ".join(f"{key}: {value}" for key, value in self.fields.items())
        super().__init__(self.error_code, summary or self.error_code)

    def to_payload(self) -> dict[str, object]:
        return {"detail": self.error_code, "fields": self.fields}


class InvalidStateTransition(ModerationError):
    status_code = 409
    error_code = "invalid_state_transition"


class ReportNotFound(ModerationError):
    status_code = 404
    error_code = "report_not_found"


class UserNotFound(ModerationError):
    status_code = 404
    error_code = "user_not_found"


class AuditEntryNotFound(ModerationError):
    status_code = 404
    error_code = "audit_entry_not_found"


class PermissionDenied(ModerationError):
    status_code = 403
    error_code = "forbidden"


class AccountBlocked(ModerationError):
    """Raised by the status gate for banned or suspended accounts."""

    status_code = 403

    def __init__(
        self,
        error_code: str,
        *,
        suspended_until: datetime | None = None,
        reason: str | None = None,
    ) -> None:
        self.suspended_until = suspended_until
        self.reason = reason
        super().__init__(error_code)

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {"detail": self.error_code, "code": self.error_code}
        if self.suspended_until is not None:
            payload["suspended_until"] = self.suspended_until.isoformat()
        if self.reason:
            payload["reason"] = self.reason
        return payload


class RateLimited(ModerationError):
    status_code = 429
    error_code = "report_limit_exceeded"


__all__ = [
    "AccountBlocked",
    "AuditEntryNotFound",
    "InvalidStateTransition",
    "ModerationError",
    "ModerationValidationError",
    "PermissionDenied",
    "RateLimited",
    "ReportNotFound",
    "UserNotFound",
]
