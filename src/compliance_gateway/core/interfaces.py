"""Abstract interfaces (Protocol classes) for the compliance gateway.

Defines the contracts between the service layer and the adapter layer using
typing.Protocol. Services depend on these protocols, never on concrete
adapter implementations. This enables testing with mock adapters.

Protocols defined:
- IApplicationRepository
- IComplianceEvaluationRepository
- IAuditLogRepository
- IPolicyEngineClient
- INotificationService
- INotificationDispatcher
"""

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from compliance_gateway.core.domain import (
    Application,
    AuditLog,
    AuditStatistics,
    ComplianceEvaluation,
    PolicyViolation,
)


@dataclass(frozen=True)
class EngineDecision:
    """A successfully parsed policy engine response.

    Produced only for well-formed responses. ``allow=False`` here is a normal
    deny decision, never an error.

    Attributes:
        allow: The engine's allow flag.
        violations: Structured violations reported by the engine.
        request_body: The exact body posted to the engine.
        response_body: The response body exactly as received.
        policy_package: Package that was evaluated.
        reason: Optional engine-supplied reason.
        duration_ms: Wall-clock duration of the engine call.
    """

    allow: bool
    violations: tuple[PolicyViolation, ...]
    request_body: dict[str, Any]
    response_body: str
    policy_package: str
    reason: str | None = None
    duration_ms: int = 0

    @property
    def violation_messages(self) -> tuple[str, ...]:
        return tuple(v.message for v in self.violations)


class IApplicationRepository(Protocol):
    """Repository contract for the application registry."""

    async def get_by_id(self, application_id: uuid.UUID) -> Application:
        """Load an application with its environments.

        Raises:
            NotFoundError: If no application exists with the given ID.
        """
        ...

    async def get_by_name(self, name: str) -> Application:
        """Load an application by its unique name.

        Raises:
            NotFoundError: If no application has that name.
        """
        ...

    async def list_all(self, owner: str | None = None, active_only: bool = False) -> list[Application]:
        """List applications ordered by name, optionally filtered by owner and status."""
        ...

    async def add(self, application: Application) -> None:
        """Persist a newly registered application."""
        ...

    async def save(self, application: Application) -> None:
        """Persist changes to an existing application and its environments."""
        ...


class IComplianceEvaluationRepository(Protocol):
    """Repository contract for ComplianceEvaluation persistence (insert and read only)."""

    async def add(self, evaluation: ComplianceEvaluation) -> None:
        """Insert a new evaluation and commit it.

        Raises:
            PersistenceError: If the insert fails.
        """
        ...

    async def get_by_id(self, evaluation_id: uuid.UUID) -> ComplianceEvaluation:
        """Retrieve an evaluation.

        Raises:
            NotFoundError: If it does not exist.
        """
        ...

    async def list_by_application(
        self,
        application_id: uuid.UUID,
        environment: str | None = None,
        since: datetime | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> list[ComplianceEvaluation]:
        """List evaluations for an application, newest first."""
        ...

    async def list_recent(
        self,
        since: datetime | None = None,
        allowed: bool | None = None,
        limit: int | None = None,
    ) -> list[ComplianceEvaluation]:
        """List evaluations across all applications, newest first.

        Args:
            since: Only evaluations at or after this time.
            allowed: Only allowed (True) or only denied (False) evaluations.
            limit: Maximum number of evaluations returned.
        """
        ...


class IAuditLogRepository(Protocol):
    """Repository contract for the append-only audit log.

    There is deliberately no update or delete operation in this contract.
    """

    async def append(self, audit_log: AuditLog) -> AuditLog:
        """Insert an audit record, idempotent on ``evaluation_id``.

        Returns:
            The stored record. When a record for the same evaluation already
            exists, that existing record is returned and nothing is written.

        Raises:
            PersistenceError: If the insert fails.
        """
        ...

    async def get_by_id(self, audit_id: uuid.UUID) -> AuditLog:
        """Raises NotFoundError if absent."""
        ...

    async def get_by_evaluation_id(self, evaluation_id: str) -> AuditLog:
        """Raises NotFoundError if absent."""
        ...

    async def list_by_application(
        self,
        application_id: uuid.UUID,
        environment: str | None = None,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> list[AuditLog]:
        """List audit records for an application, newest first."""
        ...

    async def list_blocked(
        self,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[AuditLog]:
        """List denied decisions, newest first."""
        ...

    async def list_with_critical_vulnerabilities(self, since: datetime | None = None) -> list[AuditLog]:
        """List records with critical_count > 0, most critical first."""
        ...

    async def list_by_risk_tier(
        self,
        risk_tier: str,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> list[AuditLog]:
        """List records for a risk tier, newest first."""
        ...

    async def get_statistics(
        self,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> AuditStatistics:
        """Aggregate statistics over a date window."""
        ...


class IPolicyEngineClient(Protocol):
    """Contract for the external policy engine."""

    async def evaluate(self, input_data: dict[str, Any], policy_package: str) -> EngineDecision:
        """Evaluate ``input_data`` against a policy package.

        Raises:
            EngineTransportError: On any transport or contract failure.
        """
        ...

    async def health_check(self) -> bool:
        """Return True when the engine is healthy. Never raises."""
        ...


class INotificationService(Protocol):
    """Contract for notification delivery."""

    async def send_compliance_notification(
        self,
        application_name: str,
        environment: str,
        passed: bool,
        violations: list[str],
        recipients: list[str],
    ) -> None:
        ...

    async def send_critical_vulnerability_alert(
        self,
        application_name: str,
        environment: str,
        critical_count: int,
        high_count: int,
        recipients: list[str],
    ) -> None:
        ...


NotificationJob = Callable[[], Awaitable[None]]


class INotificationDispatcher(Protocol):
    """Bounded, best-effort background dispatch of notification jobs."""

    def submit(self, job: NotificationJob, description: str = "notification") -> bool:
        """Queue a job without blocking. Returns False when the job was dropped."""
        ...
