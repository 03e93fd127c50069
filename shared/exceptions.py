"""
shared/exceptions.py
Domain errors raised by the booking engine services.
main.py converts them into JSON responses with the status_code of each class.
"""

from typing import Any, Dict, Iterable, Optional

from fastapi import status


class DomainError(Exception):
    """Base class for every business-rule failure."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code, "details": self.details}


class InputValidationError(DomainError):
    """Bad input that passed request-schema validation (e.g. non-positive amount)."""

    status_code = status.HTTP_400_BAD_REQUEST


class InvalidTransitionError(DomainError):
    """Action is not legal for the booking's current status."""

    status_code = status.HTTP_409_CONFLICT

    def __init__(self, action: str, current_status: str, allowed: Iterable[str]):
        allowed_statuses = sorted(allowed)
        if allowed_statuses:
            expected = " or ".join(allowed_statuses)
            message = (
                f"Cannot {action} a booking with status {current_status}; "
                f"booking must be {expected}"
            )
        else:
            message = f"Action {action} is not available for bookings"
        super().__init__(
            message,
            code="INVALID_TRANSITION",
            details={
                "action": action,
                "current_status": current_status,
                "allowed_statuses": allowed_statuses,
            },
        )


class PreconditionFailedError(DomainError):
    """The transition is legal but a business precondition has not been met yet."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class NotFoundError(DomainError):
    """Record absent, or the actor is not a party to it."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(DomainError):
    status_code = status.HTTP_409_CONFLICT


class PermissionDeniedError(DomainError):
    status_code = status.HTTP_403_FORBIDDEN
