"""Errors raised by the reservation engine.

Every rejection carries a machine-readable ``code``, the field ``path`` the
host should attach the message to, and optional ``details``.
"""

from __future__ import annotations

from typing import Any, Optional


class ReservationError(Exception):
    """Base exception for all reservation engine errors."""

    default_path: Optional[str] = None

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        path: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.path = path or self.default_path
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "path": self.path,
            "details": self.details,
        }


class RecordNotFound(ReservationError):
    """Raised when a referenced resource, service or reservation does not exist."""

    def __init__(self, kind: str, record_id: Any) -> None:
        super().__init__(
            message=f"{kind.capitalize()} not found: {record_id}",
            code="NOT_FOUND",
            details={"kind": kind, "id": record_id},
        )


class ReservationValidationError(ReservationError):
    """Raised when a create or update is rejected before commit."""


class DuplicateIdempotencyKey(ReservationValidationError):
    default_path = "idempotency_key"

    def __init__(self, key: str) -> None:
        super().__init__("Duplicate reservation", details={"idempotency_key": key})


class MissingRequiredEndTime(ReservationValidationError):
    default_path = "end_time"

    def __init__(self, message: str = "An end time is required for flexible-duration services.", path: Optional[str] = None) -> None:
        super().__init__(message, path=path)


class CapacityExceeded(ReservationValidationError):
    default_path = "start_time"

    def __init__(self, reason: Optional[str], *, resource_id: str, current: int, total: int, path: Optional[str] = None) -> None:
        super().__init__(
            reason or "This time conflicts with an existing reservation",
            path=path,
            details={"resource_id": resource_id, "current": current, "total_capacity": total},
        )


class InvalidCreateStatus(ReservationValidationError):
    default_path = "status"

    def __init__(self, reason: str, *, status: str, allowed: list[str]) -> None:
        super().__init__(reason, details={"status": status, "allowed": allowed})


class InvalidTransition(ReservationValidationError):
    default_path = "status"

    def __init__(self, reason: str, *, from_status: str, to_status: str) -> None:
        super().__init__(reason, details={"from": from_status, "to": to_status})


class UnknownStatus(ReservationValidationError):
    default_path = "status"

    def __init__(self, reason: str, *, status: str) -> None:
        super().__init__(reason, details={"status": status})


class CancellationNoticeViolation(ReservationValidationError):
    default_path = "status"

    def __init__(self, reason: str, *, period: int) -> None:
        super().__init__(reason, details={"notice_period": period})
