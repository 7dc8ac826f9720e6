"""
Fault taxonomy for kitcache.

Remote collaborators may raise anything. ``classify_error`` maps those
exceptions onto three families that drive the rest of the engine:

- ``ClientFault``: the request itself is wrong (validation, permission,
  not-found). Never retried, always surfaced with a specific message.
- ``TransientFault``: the backend could not answer right now (network,
  unavailable, rate-limited, timeout). Retried, surfaced after retries run out.
- ``ReconciliationFault``: the cache itself could not be restored. Logged and
  escalated to a wide invalidation.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel, Field


class FaultCategory(Enum):
    """Top-level fault families."""

    CLIENT = "client"
    TRANSIENT = "transient"
    RECONCILIATION = "reconciliation"


class FaultDetail(BaseModel):
    """Structured description of a fault, safe to log or show."""

    code: int = Field(description="Numeric fault code, HTTP-like where possible.")
    message: str = Field(description="A human-readable error message.")
    details: Any | None = Field(
        default=None, description="Optional additional details about the fault."
    )


class KitCacheError(Exception):
    """Base class for every error raised by kitcache."""


class RemoteFault(KitCacheError):
    """A classified failure of a remote collaborator call."""

    category: ClassVar[FaultCategory] = FaultCategory.TRANSIENT
    default_code: ClassVar[int] = 500
    default_message: ClassVar[str] = "Remote operation failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: int | None = None,
        details: Any | None = None,
    ) -> None:
        self.detail = FaultDetail(
            code=code if code is not None else self.default_code,
            message=message or self.default_message,
            details=details,
        )
        super().__init__(self.detail.message)

    @property
    def retryable(self) -> bool:
        return self.category is FaultCategory.TRANSIENT

    @property
    def code(self) -> int:
        return self.detail.code


class ClientFault(RemoteFault):
    category = FaultCategory.CLIENT
    default_code = 400
    default_message = "The request was rejected"


class ValidationFault(ClientFault):
    default_code = 400
    default_message = "The submitted data is invalid"


class PermissionFault(ClientFault):
    default_code = 403
    default_message = "Permission denied"


class NotFoundFault(ClientFault):
    default_code = 404
    default_message = "The requested record was not found"


class TransientFault(RemoteFault):
    category = FaultCategory.TRANSIENT
    default_code = 500
    default_message = "The server could not complete the request"


class NetworkFault(TransientFault):
    default_code = 0
    default_message = "Network request failed"


class ServiceUnavailableFault(TransientFault):
    default_code = 503
    default_message = "The service is temporarily unavailable"


class RateLimitedFault(TransientFault):
    default_code = 429
    default_message = "Rate limit exceeded"


class RemoteTimeoutFault(TransientFault):
    default_code = 504
    default_message = "The request timed out"


class ReconciliationFault(KitCacheError):
    """Restoring or invalidating cached state failed."""

    category: ClassVar[FaultCategory] = FaultCategory.RECONCILIATION

    def __init__(self, message: str, *, keys: tuple[Any, ...] = ()) -> None:
        super().__init__(message)
        self.keys = keys


def _fault_for_status(status: int, message: str, details: Any) -> RemoteFault:
    if status == 429:
        return RateLimitedFault(message, details=details)
    if status in (408, 504):
        return RemoteTimeoutFault(message, code=status, details=details)
    if status == 404:
        return NotFoundFault(message, details=details)
    if status in (401, 403):
        return PermissionFault(message, code=status, details=details)
    if 400 <= status < 500:
        return ValidationFault(message, code=status, details=details)
    if status >= 500:
        return ServiceUnavailableFault(message, code=status, details=details)
    return TransientFault(message, code=status, details=details)


def classify_error(error: BaseException) -> RemoteFault:
    """Map an arbitrary collaborator exception onto the fault taxonomy.

    Unknown errors are treated as transient so they get the retry budget.
    """
    if isinstance(error, RemoteFault):
        return error

    message = str(error) or error.__class__.__name__
    status = getattr(error, "status", None)
    if isinstance(status, int) and not isinstance(status, bool):
        fault = _fault_for_status(status, message, getattr(error, "data", None))
    elif isinstance(error, TimeoutError):
        fault = RemoteTimeoutFault(message)
    elif isinstance(error, OSError):
        fault = NetworkFault(message)
    else:
        fault = TransientFault(message, details={"type": error.__class__.__name__})

    fault.__cause__ = error
    return fault


def describe_fault(
    fault: RemoteFault, action: str = "update", entity_label: str = "item"
) -> str:
    """User-facing text for a fault, specific to its family."""
    if isinstance(fault, RateLimitedFault):
        return "Too many requests. Please wait a moment and try again."
    if isinstance(fault, ValidationFault):
        return fault.detail.message
    if isinstance(fault, PermissionFault):
        return f"You do not have permission to {action} this {entity_label}."
    if isinstance(fault, NotFoundFault):
        return f"This {entity_label} no longer exists."
    if isinstance(fault, RemoteTimeoutFault | NetworkFault):
        return (
            f"Could not reach the server to {action} this {entity_label}. "
            "Please try again."
        )
    return f"Failed to {action} {entity_label}. Please try again."
