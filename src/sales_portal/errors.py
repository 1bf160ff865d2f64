"""Error taxonomy and the result envelope returned by public operations.

Components raise the exceptions below internally. Each public operation of the
lifecycle engine and the reporting aggregator catches them at its boundary and
answers with a :class:`ServiceResult`, so callers never see raw exception text
or stack traces.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


class SalesPortalError(Exception):
    """Base class for domain failures that carry a user-safe message."""


class NotFoundError(SalesPortalError):
    """Raised when a user, order, customer, or location cannot be resolved."""


class ValidationFailed(SalesPortalError):
    """Raised when credit, inventory, request, or transition checks fail."""


class UpstreamUnavailable(SalesPortalError):
    """Raised when the ERP cannot be reached or answers with a non-2xx status.

    ``retryable`` separates transient failures (timeouts, connection errors,
    5xx answers) from fatal ones such as 4xx answers.
    """

    def __init__(self, message: str, *, status_code: Optional[int] = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class InconsistentState(SalesPortalError):
    """Raised when external evidence contradicts a requested state change."""


class ConcurrencyConflict(SalesPortalError):
    """Raised when an order was modified after the caller read it."""


@dataclass(frozen=True)
class ServiceResult:
    """Success flag plus a user-facing message and an optional payload."""

    success: bool
    message: str
    data: Any = None

    @classmethod
    def ok(cls, message: str, data: Any = None) -> "ServiceResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, message: str) -> "ServiceResult":
        return cls(success=False, message=message)


__all__ = [
    "SalesPortalError",
    "NotFoundError",
    "ValidationFailed",
    "UpstreamUnavailable",
    "InconsistentState",
    "ConcurrencyConflict",
    "ServiceResult",
]
