"""Error taxonomy and result type for the compliance gateway.

Errors:
- ValidationError       - malformed request, caller must fix, no side effects
- NotFoundError         - application / environment / evaluation / audit id unresolved
- EngineTransportError  - policy engine unreachable, malformed, or contract-violating
- PersistenceError      - a write failed; carries what was actually committed
- NotificationError     - raised by notification adapters, always swallowed by the dispatcher

A policy deny is never an error. It is a successful PolicyDecision with
allowed=False.

The evaluation workflow returns ``Ok`` / ``Err`` rather than raising, so
callers branch on the outcome explicitly. Lower layers raise the typed
errors above and the workflow boundary converts them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, NoReturn, TypeVar

T = TypeVar("T")


class ComplianceGatewayError(Exception):
    """Base class for every error the gateway surfaces to callers.

    Attributes:
        message: Human-readable, caller-safe description.
    """

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ComplianceGatewayError):
    """Raised when request data violates a domain rule."""

    kind = "validation_error"

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(ComplianceGatewayError):
    """Raised when a referenced resource does not exist or cannot be used."""

    kind = "not_found"

    def __init__(self, resource: str, resource_id: str, message: str | None = None) -> None:
        super().__init__(message or f"{resource} '{resource_id}' not found")
        self.resource = resource
        self.resource_id = resource_id


class EngineTransportError(ComplianceGatewayError):
    """Raised when the policy engine cannot produce a usable decision.

    Covers network failures, timeouts, non-2xx responses, unparsable bodies,
    a missing ``result`` key, and deny decisions that carry no violations.
    """

    kind = "engine_transport_error"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PersistenceError(ComplianceGatewayError):
    """Raised when a repository write fails.

    Attributes:
        committed_evaluation_id: Set when the evaluation record was committed
            but a later write (the audit record) was not.
    """

    kind = "persistence_error"

    def __init__(self, message: str, committed_evaluation_id: str | None = None) -> None:
        super().__init__(message)
        self.committed_evaluation_id = committed_evaluation_id


class NotificationError(ComplianceGatewayError):
    """Raised by notification adapters. Never propagated past the dispatcher."""

    kind = "notification_error"


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome carrying a value."""

    value: T

    @property
    def is_ok(self) -> bool:
        return True

    @property
    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    """Failed outcome carrying a taxonomy error."""

    error: ComplianceGatewayError

    @property
    def is_ok(self) -> bool:
        return False

    @property
    def is_err(self) -> bool:
        return True

    def unwrap(self) -> NoReturn:
        raise self.error


Result = Ok[T] | Err
