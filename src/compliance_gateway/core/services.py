"""Core business logic services for the compliance gateway.

Four service classes:
- EvaluationService: The evaluation workflow. Normalizes scans, asks the
  policy engine for a decision, records the evaluation and its audit
  evidence, then hands notifications to the background dispatcher.
- AuditQueryService: Read-only queries over the append-only audit log.
- EvaluationQueryService: Read-only queries over stored evaluations.
- ApplicationRegistryService: Registration and environment management for
  the application registry consumed by the evaluation workflow.

All services are async-first. They accept injected repositories and adapters
through their constructors and contain no framework code. Side effects are
sequenced explicitly in the workflow; aggregates never trigger them.
"""

import asyncio
import json
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from functools import partial
from typing import Any

from compliance_gateway.core.domain import (
    DEFAULT_SCAN_CLOCK_SKEW,
    Application,
    AuditLog,
    AuditStatistics,
    ComplianceEvaluation,
    DecisionEvidence,
    EnvironmentConfig,
    PolicyDecision,
    PolicyReference,
    RiskTier,
    SecurityTool,
    SeverityCounts,
)
from compliance_gateway.core.interfaces import (
    EngineDecision,
    IApplicationRepository,
    IAuditLogRepository,
    IComplianceEvaluationRepository,
    INotificationDispatcher,
    INotificationService,
    IPolicyEngineClient,
)
from compliance_gateway.core.normalizer import (
    RawScanResult,
    normalize_scan_results,
    raw_scan_results_to_payload,
    scan_results_to_payload,
)
from compliance_gateway.errors import (
    ComplianceGatewayError,
    EngineTransportError,
    Err,
    NotFoundError,
    Ok,
    PersistenceError,
    Result,
    ValidationError,
)
from compliance_gateway.observability import get_logger

logger = get_logger(__name__)

DEFAULT_POLICY_PACKAGE = "compliance.default"

_MAX_PAGE_SIZE = 500


# ---------------------------------------------------------------------------
# Evaluation workflow
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EvaluationRequest:
    """Input to one evaluation.

    Attributes:
        application_id: Registered application to evaluate.
        environment: Environment name, matched trimmed and lower-cased.
        scan_results: Raw per-tool scan payloads. May be empty.
        initiated_by: Caller identity recorded with the evaluation input.
        metadata: Opaque key/values passed through to the policy engine.
    """

    application_id: uuid.UUID
    environment: str
    scan_results: Sequence[RawScanResult]
    initiated_by: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EvaluationSummary:
    """What the caller gets back from a successful evaluation."""

    evaluation: ComplianceEvaluation
    application_name: str
    policy_package: str
    violations: tuple[dict[str, Any], ...]
    audit_id: uuid.UUID

    @property
    def id(self) -> uuid.UUID:
        return self.evaluation.id

    @property
    def passed(self) -> bool:
        return self.evaluation.passed

    @property
    def reason(self) -> str:
        return self.evaluation.decision.reason

    @property
    def counts(self) -> SeverityCounts:
        return self.evaluation.counts


def build_engine_input(
    application: Application,
    environment: EnvironmentConfig,
    scan_results_payload: list[dict[str, Any]],
    metadata: dict[str, Any],
) -> dict[str, Any]:
    """Assemble the policy engine input document."""
    return {
        "application": {
            "name": application.name,
            "environment": environment.name,
            "riskTier": environment.risk_tier.value,
            "owner": application.owner,
        },
        "scanResults": scan_results_payload,
        "metadata": metadata,
    }


def select_policy_package(environment: EnvironmentConfig, default_package: str = DEFAULT_POLICY_PACKAGE) -> str:
    """Only the first configured policy reference is evaluated."""
    if environment.policy_references:
        return environment.policy_references[0].package_name
    return default_package


class EvaluationService:
    """Compliance evaluation workflow.

    Sequences scan normalization, the policy engine call, the evaluation
    write, the audit write, and notification dispatch. ``evaluate`` never
    raises a taxonomy error: it returns ``Ok(EvaluationSummary)`` or
    ``Err(error)``. A policy deny is an ``Ok`` whose summary has
    ``passed=False``.

    Failures before the policy engine answers leave no persisted state. The
    evaluation and audit records are committed in separate transactions;
    the audit insert is idempotent on the evaluation id and is retried up to
    ``audit_write_attempts`` times. If it still fails, the result is a
    PersistenceError naming the committed evaluation id.

    Args:
        application_repo: Application registry lookup.
        evaluation_repo: ComplianceEvaluation persistence.
        audit_repo: Append-only AuditLog persistence.
        policy_engine: Policy engine client.
        notification_service: Notification delivery.
        dispatcher: Bounded background dispatcher for notification jobs.
        default_policy_package: Package used when an environment has none.
        engine_timeout_s: Optional overall deadline for the engine call.
        audit_write_attempts: Attempts for the audit insert.
        scan_clock_skew: Tolerance for scan timestamps in the future.
    """

    def __init__(
        self,
        application_repo: IApplicationRepository,
        evaluation_repo: IComplianceEvaluationRepository,
        audit_repo: IAuditLogRepository,
        policy_engine: IPolicyEngineClient,
        notification_service: INotificationService,
        dispatcher: INotificationDispatcher,
        default_policy_package: str = DEFAULT_POLICY_PACKAGE,
        engine_timeout_s: float | None = None,
        audit_write_attempts: int = 2,
        scan_clock_skew: timedelta = DEFAULT_SCAN_CLOCK_SKEW,
    ) -> None:
        self._application_repo = application_repo
        self._evaluation_repo = evaluation_repo
        self._audit_repo = audit_repo
        self._policy_engine = policy_engine
        self._notification_service = notification_service
        self._dispatcher = dispatcher
        self._default_policy_package = default_policy_package
        self._engine_timeout_s = engine_timeout_s
        self._audit_write_attempts = max(1, audit_write_attempts)
        self._scan_clock_skew = scan_clock_skew

    async def evaluate(self, request: EvaluationRequest) -> Result[EvaluationSummary]:
        """Run one compliance evaluation.

        Args:
            request: The evaluation request.

        Returns:
            Ok with the evaluation summary, or Err with a ValidationError,
            NotFoundError, EngineTransportError or PersistenceError.
        """
        try:
            summary = await self._run(request)
        except ComplianceGatewayError as exc:
            logger.warning(
                "Compliance evaluation failed",
                application_id=str(request.application_id),
                environment=request.environment,
                error_kind=exc.kind,
                error=exc.message,
            )
            return Err(exc)
        return Ok(summary)

    async def _run(self, request: EvaluationRequest) -> EvaluationSummary:
        application = await self._application_repo.get_by_id(request.application_id)
        if not application.is_active:
            raise NotFoundError(
                resource="Application",
                resource_id=str(application.id),
                message=f"Application '{application.name}' is not active",
            )
        environment = application.get_active_environment(request.environment)

        scan_results = normalize_scan_results(request.scan_results, clock_skew=self._scan_clock_skew)

        metadata = dict(request.metadata)
        metadata.setdefault("initiatedBy", request.initiated_by)
        engine_input = build_engine_input(
            application,
            environment,
            scan_results_to_payload(scan_results),
            metadata,
        )
        policy_package = select_policy_package(environment, self._default_policy_package)

        logger.info(
            "Evaluating compliance",
            application_id=str(application.id),
            environment=environment.name,
            risk_tier=environment.risk_tier.value,
            policy_package=policy_package,
            scan_count=len(scan_results),
        )

        engine_decision = await self._call_policy_engine(engine_input, policy_package)
        if not engine_decision.allow and not engine_decision.violations:
            raise EngineTransportError(message="Policy engine returned a deny decision without violations")

        decision = PolicyDecision(
            allowed=engine_decision.allow,
            violations=engine_decision.violation_messages,
            details={
                "policyPackage": policy_package,
                "engineReason": engine_decision.reason,
                "violations": [v.to_dict() for v in engine_decision.violations],
            },
            evaluation_duration_ms=engine_decision.duration_ms,
        )
        evaluation = ComplianceEvaluation.create(
            application_id=application.id,
            environment=environment.name,
            risk_tier=environment.risk_tier,
            scan_results=scan_results,
            decision=decision,
        )

        await self._evaluation_repo.add(evaluation)

        evidence = DecisionEvidence(
            scan_results_json=json.dumps(raw_scan_results_to_payload(request.scan_results), default=str),
            policy_input_json=json.dumps(engine_decision.request_body, default=str),
            policy_output_json=engine_decision.response_body,
        )
        audit_log = AuditLog.create(
            evaluation_id=str(evaluation.id),
            application_id=application.id,
            application_name=application.name,
            environment=environment.name,
            risk_tier=environment.risk_tier.value,
            allowed=decision.allowed,
            reason=decision.reason,
            violations=decision.violations,
            evidence=evidence,
            evaluation_duration_ms=decision.evaluation_duration_ms,
            counts=evaluation.counts,
            evaluated_at=evaluation.evaluated_at,
        )
        stored_audit = await self._append_audit_log(audit_log)

        self._dispatch_notifications(application, evaluation)

        logger.info(
            "Compliance evaluation complete",
            evaluation_id=str(evaluation.id),
            audit_id=str(stored_audit.id),
            allowed=decision.allowed,
            violations_count=len(decision.violations),
            critical_count=evaluation.counts.critical,
        )

        return EvaluationSummary(
            evaluation=evaluation,
            application_name=application.name,
            policy_package=policy_package,
            violations=tuple(v.to_dict() for v in engine_decision.violations),
            audit_id=stored_audit.id,
        )

    async def _call_policy_engine(self, engine_input: dict[str, Any], policy_package: str) -> EngineDecision:
        if self._engine_timeout_s is None:
            return await self._policy_engine.evaluate(engine_input, policy_package)
        try:
            async with asyncio.timeout(self._engine_timeout_s):
                return await self._policy_engine.evaluate(engine_input, policy_package)
        except TimeoutError:
            raise EngineTransportError(
                message=f"Policy engine did not answer within {self._engine_timeout_s}s",
            ) from None

    async def _append_audit_log(self, audit_log: AuditLog) -> AuditLog:
        last_error: PersistenceError | None = None
        for attempt in range(1, self._audit_write_attempts + 1):
            try:
                return await self._audit_repo.append(audit_log)
            except PersistenceError as exc:
                last_error = exc
                logger.warning(
                    "Audit log write failed",
                    evaluation_id=audit_log.evaluation_id,
                    attempt=attempt,
                    max_attempts=self._audit_write_attempts,
                )

        # The evaluation row is committed but has no audit record
        logger.error(
            "Audit log missing for committed evaluation, reconciliation required",
            evaluation_id=audit_log.evaluation_id,
            application_id=str(audit_log.application_id),
        )
        raise PersistenceError(
            message="Evaluation was recorded but its audit log could not be written",
            committed_evaluation_id=audit_log.evaluation_id,
        ) from last_error

    def _dispatch_notifications(self, application: Application, evaluation: ComplianceEvaluation) -> None:
        counts = evaluation.counts
        if not evaluation.is_blocked and not counts.has_high_or_critical:
            return

        recipients = [application.owner]
        if evaluation.is_blocked:
            self._dispatcher.submit(
                partial(
                    self._notification_service.send_compliance_notification,
                    application_name=application.name,
                    environment=evaluation.environment,
                    passed=evaluation.passed,
                    violations=list(evaluation.decision.violations),
                    recipients=recipients,
                ),
                description="compliance_notification",
            )
        if counts.has_high_or_critical:
            self._dispatcher.submit(
                partial(
                    self._notification_service.send_critical_vulnerability_alert,
                    application_name=application.name,
                    environment=evaluation.environment,
                    critical_count=counts.critical,
                    high_count=counts.high,
                    recipients=recipients,
                ),
                description="critical_vulnerability_alert",
            )


# ---------------------------------------------------------------------------
# Audit queries
# ---------------------------------------------------------------------------


def _validate_window(from_date: datetime | None, to_date: datetime | None) -> None:
    if from_date is not None and to_date is not None and from_date > to_date:
        raise ValidationError(message="from_date must not be after to_date", field="from_date")


def _days_ago(days: int) -> datetime:
    if days < 1:
        raise ValidationError(message="days must be at least 1", field="days")
    return datetime.now(UTC) - timedelta(days=days)


class AuditQueryService:
    """Read-only queries over the audit log.

    No method here mutates a record.

    Args:
        audit_repo: Append-only AuditLog repository.
    """

    def __init__(self, audit_repo: IAuditLogRepository) -> None:
        self._audit_repo = audit_repo

    async def get_by_id(self, audit_id: uuid.UUID) -> AuditLog:
        """Raises NotFoundError if absent."""
        return await self._audit_repo.get_by_id(audit_id)

    async def get_by_evaluation_id(self, evaluation_id: str) -> AuditLog:
        """Raises NotFoundError if absent."""
        return await self._audit_repo.get_by_evaluation_id(evaluation_id)

    async def list_by_application(
        self,
        application_id: uuid.UUID,
        environment: str | None = None,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> list[AuditLog]:
        """Page through an application's audit history, newest first.

        Raises:
            ValidationError: On an invalid page, page size or date window.
        """
        if page < 1:
            raise ValidationError(message="page must be at least 1", field="page")
        if not 1 <= page_size <= _MAX_PAGE_SIZE:
            raise ValidationError(message=f"page_size must be between 1 and {_MAX_PAGE_SIZE}", field="page_size")
        _validate_window(from_date, to_date)
        return await self._audit_repo.list_by_application(
            application_id,
            environment=environment,
            from_date=from_date,
            to_date=to_date,
            page=page,
            page_size=page_size,
        )

    async def list_blocked(self, days: int = 7, limit: int | None = None) -> list[AuditLog]:
        """Denied decisions from the last ``days`` days, newest first."""
        if limit is not None and limit < 1:
            raise ValidationError(message="limit must be at least 1", field="limit")
        return await self._audit_repo.list_blocked(since=_days_ago(days), limit=limit)

    async def list_with_critical_vulnerabilities(self, days: int = 30) -> list[AuditLog]:
        return await self._audit_repo.list_with_critical_vulnerabilities(since=_days_ago(days))

    async def list_by_risk_tier(
        self,
        risk_tier: str,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> list[AuditLog]:
        tier = RiskTier.parse(risk_tier)
        _validate_window(from_date, to_date)
        return await self._audit_repo.list_by_risk_tier(tier.value, from_date=from_date, to_date=to_date)

    async def get_statistics(
        self,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> AuditStatistics:
        _validate_window(from_date, to_date)
        return await self._audit_repo.get_statistics(from_date=from_date, to_date=to_date)


# ---------------------------------------------------------------------------
# Evaluation queries
# ---------------------------------------------------------------------------


class EvaluationQueryService:
    """Read-only queries over stored compliance evaluations.

    Args:
        evaluation_repo: ComplianceEvaluation repository.
    """

    def __init__(self, evaluation_repo: IComplianceEvaluationRepository) -> None:
        self._evaluation_repo = evaluation_repo

    async def get_by_id(self, evaluation_id: uuid.UUID) -> ComplianceEvaluation:
        """Raises NotFoundError if absent."""
        return await self._evaluation_repo.get_by_id(evaluation_id)

    async def list_by_application(
        self,
        application_id: uuid.UUID,
        environment: str | None = None,
        days: int = 7,
        page: int = 1,
        page_size: int = 50,
    ) -> list[ComplianceEvaluation]:
        """An application's evaluations from the last ``days`` days, newest first.

        Raises:
            ValidationError: On a non-positive window, page or page size.
        """
        since = _days_ago(days)
        if page < 1:
            raise ValidationError(message="page must be at least 1", field="page")
        if not 1 <= page_size <= _MAX_PAGE_SIZE:
            raise ValidationError(message=f"page_size must be between 1 and {_MAX_PAGE_SIZE}", field="page_size")
        return await self._evaluation_repo.list_by_application(
            application_id,
            environment=environment,
            since=since,
            page=page,
            page_size=page_size,
        )

    async def list_recent(self, days: int = 7) -> list[ComplianceEvaluation]:
        """Evaluations across all applications from the last ``days`` days."""
        return await self._evaluation_repo.list_recent(since=_days_ago(days))

    async def list_blocked(self, days: int | None = None) -> list[ComplianceEvaluation]:
        """Denied evaluations, newest first. Without ``days`` the whole history is searched."""
        since = _days_ago(days) if days is not None else None
        return await self._evaluation_repo.list_recent(since=since, allowed=False)


# ---------------------------------------------------------------------------
# Application registry
# ---------------------------------------------------------------------------


class ApplicationRegistryService:
    """Application and environment configuration management.

    Args:
        application_repo: Application registry repository.
    """

    def __init__(self, application_repo: IApplicationRepository) -> None:
        self._application_repo = application_repo

    async def register(self, name: str, owner: str) -> Application:
        """Register a new application.

        Raises:
            ValidationError: On an invalid name or owner, or a duplicate name.
        """
        application = Application.register(name=name, owner=owner)
        await self._application_repo.add(application)
        return application

    async def get_application(self, application_id: uuid.UUID) -> Application:
        return await self._application_repo.get_by_id(application_id)

    async def get_application_by_name(self, name: str) -> Application:
        """Raises NotFoundError if no application has that name."""
        return await self._application_repo.get_by_name(name)

    async def list_applications(self, owner: str | None = None, active_only: bool = False) -> list[Application]:
        return await self._application_repo.list_all(owner=owner, active_only=active_only)

    async def update_owner(self, application_id: uuid.UUID, owner: str) -> Application:
        """Transfer an application to a new owner.

        Raises:
            NotFoundError: If the application does not exist.
            ValidationError: If the owner is not an email address.
        """
        application = await self._application_repo.get_by_id(application_id)
        application.update_owner(owner)
        await self._application_repo.save(application)
        logger.info("Application owner updated", application_id=str(application.id))
        return application

    async def add_environment(
        self,
        application_id: uuid.UUID,
        name: str,
        risk_tier: str,
        security_tools: Sequence[str],
        policy_references: Sequence[str],
        metadata: dict[str, str] | None = None,
    ) -> EnvironmentConfig:
        """Add an environment configuration to an application.

        Raises:
            NotFoundError: If the application does not exist.
            ValidationError: On invalid configuration or a duplicate environment.
        """
        application = await self._application_repo.get_by_id(application_id)
        config = EnvironmentConfig.create(
            application_id=application.id,
            name=name,
            risk_tier=RiskTier.parse(risk_tier),
            security_tools=[SecurityTool.parse(t) for t in security_tools],
            policy_references=[PolicyReference.parse(p) for p in policy_references],
            metadata=metadata,
        )
        application.add_environment(config)
        await self._application_repo.save(application)
        logger.info(
            "Environment added",
            application_id=str(application.id),
            environment=config.name,
            risk_tier=config.risk_tier.value,
        )
        return config

    async def update_environment(
        self,
        application_id: uuid.UUID,
        name: str,
        risk_tier: str | None = None,
        security_tools: Sequence[str] | None = None,
        policy_references: Sequence[str] | None = None,
    ) -> EnvironmentConfig:
        """Update the given fields of an environment configuration.

        Raises:
            NotFoundError: If the application or environment does not exist.
            ValidationError: On invalid values.
        """
        application = await self._application_repo.get_by_id(application_id)
        config = application.get_environment(name)
        if risk_tier is not None:
            config.update_risk_tier(RiskTier.parse(risk_tier))
        if security_tools is not None:
            config.update_security_tools([SecurityTool.parse(t) for t in security_tools])
        if policy_references is not None:
            config.update_policy_references([PolicyReference.parse(p) for p in policy_references])
        await self._application_repo.save(application)
        logger.info("Environment updated", application_id=str(application.id), environment=config.name)
        return config

    async def deactivate_environment(self, application_id: uuid.UUID, name: str) -> EnvironmentConfig:
        application = await self._application_repo.get_by_id(application_id)
        config = application.get_environment(name)
        config.deactivate()
        await self._application_repo.save(application)
        logger.info("Environment deactivated", application_id=str(application.id), environment=config.name)
        return config

    async def deactivate_application(self, application_id: uuid.UUID) -> Application:
        application = await self._application_repo.get_by_id(application_id)
        application.deactivate()
        await self._application_repo.save(application)
        logger.info("Application deactivated", application_id=str(application.id))
        return application
