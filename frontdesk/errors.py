"""Error taxonomy and the result wrapper returned by every store mutation."""
from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FrontDeskError(Exception):
    """Base class for recoverable front-desk failures."""

    code = "front_desk_error"

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.code, "message": str(self)}


class ValidationError(FrontDeskError):
    """Raised when input is missing or malformed; state is left unchanged."""

    code = "validation_error"


class ConfirmationRequiredError(ValidationError):
    """Raised when discarding unsaved work without explicit confirmation."""

    code = "confirmation_required"


class InvalidTransitionError(FrontDeskError):
    """Raised when a record's current status does not allow the operation."""

    code = "invalid_transition"


class PaymentRequiredError(InvalidTransitionError):
    """Raised when completion is attempted without resolving payment."""

    code = "payment_required"


class IncompleteVisitsError(InvalidTransitionError):
    """Raised when a patient still has unresolved in-progress consultations."""

    code = "incomplete_visits"

    def __init__(self, message: str, consultation_ids: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.consultation_ids = list(consultation_ids)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(super().to_dict())
        payload["consultationIds"] = self.consultation_ids
        return payload


class NotFoundError(FrontDeskError):
    """Raised when an identifier no longer resolves to a record."""

    code = "not_found"


class PersistenceError(FrontDeskError):
    """Raised when the backing key-value store cannot be read or written."""

    code = "persistence_error"


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Success/failure signal for a mutation, carrying the new value or the error."""

    ok: bool
    value: Optional[T] = None
    error: Optional[FrontDeskError] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "OperationResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: FrontDeskError) -> "OperationResult[T]":
        return cls(ok=False, error=error)

    def __bool__(self) -> bool:
        return self.ok

    def unwrap(self) -> T:
        if not self.ok:
            if self.error is None:
                raise FrontDeskError("Operation failed without reporting an error")
            raise self.error
        return self.value  # type: ignore[return-value]


def returns_result(method: Callable[..., T]) -> Callable[..., OperationResult[T]]:
    """Convert ``FrontDeskError`` raised by ``method`` into a failed result."""

    @functools.wraps(method)
    def wrapper(*args: Any, **kwargs: Any) -> OperationResult[T]:
        try:
            value = method(*args, **kwargs)
        except FrontDeskError as exc:
            logger.info("%s rejected: %s", method.__qualname__, exc)
            return OperationResult.failure(exc)
        return OperationResult.success(value)

    return wrapper


__all__ = [
    "ConfirmationRequiredError",
    "FrontDeskError",
    "IncompleteVisitsError",
    "InvalidTransitionError",
    "NotFoundError",
    "OperationResult",
    "PaymentRequiredError",
    "PersistenceError",
    "ValidationError",
    "returns_result",
]
