"""SQLAlchemy repositories for the compliance gateway primary database.

Each repository implements the corresponding protocol from core/interfaces.py.
Repositories receive an async session factory and open one short transaction
per write, so every aggregate commits on its own.

Repositories:
- ApplicationRepository            - Application + EnvironmentConfig registry
- ComplianceEvaluationRepository   - insert and read of ComplianceEvaluation

NOTE: AuditLogRepository is intentionally in audit_store.py, not here.
It uses the audit session factory and must never share a session with the
primary DB repositories.
"""

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Select, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from compliance_gateway.core.domain import (
    Application,
    ComplianceEvaluation,
    EnvironmentConfig,
    PolicyDecision,
    PolicyReference,
    RiskTier,
    ScanResult,
    SecurityTool,
    Severity,
    Vulnerability,
)
from compliance_gateway.core.models import (
    ApplicationRow,
    ComplianceEvaluationRow,
    EnvironmentConfigRow,
)
from compliance_gateway.core.normalizer import scan_results_to_payload
from compliance_gateway.errors import NotFoundError, PersistenceError, ValidationError
from compliance_gateway.observability import get_logger

logger = get_logger(__name__)


@contextmanager
def translate_database_errors(operation: str) -> Iterator[None]:
    """Re-raise SQLAlchemy failures as PersistenceError.

    The driver message is logged but never placed in the caller-facing error.
    """
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Database operation failed", operation=operation, error=str(exc))
        raise PersistenceError(message=f"Database operation failed: {operation}") from exc


# ---------------------------------------------------------------------------
# Application registry
# ---------------------------------------------------------------------------


def _environment_to_domain(row: EnvironmentConfigRow) -> EnvironmentConfig:
    return EnvironmentConfig(
        id=row.id,
        application_id=row.application_id,
        name=row.name,
        risk_tier=RiskTier(row.risk_tier),
        security_tools=tuple(SecurityTool(t) for t in row.security_tools),
        policy_references=tuple(PolicyReference(package_name=p) for p in row.policy_references),
        is_active=row.is_active,
        metadata=dict(row.metadata_ or {}),
    )


def _application_to_domain(row: ApplicationRow) -> Application:
    return Application(
        id=row.id,
        name=row.name,
        owner=row.owner,
        is_active=row.is_active,
        environments=[_environment_to_domain(e) for e in row.environments],
    )


def _apply_environment(row: EnvironmentConfigRow, config: EnvironmentConfig) -> None:
    row.name = config.name
    row.risk_tier = config.risk_tier.value
    row.security_tools = [t.value for t in config.security_tools]
    row.policy_references = [p.package_name for p in config.policy_references]
    row.is_active = config.is_active
    row.metadata_ = dict(config.metadata)


def _new_environment_row(config: EnvironmentConfig) -> EnvironmentConfigRow:
    row = EnvironmentConfigRow(id=config.id, application_id=config.application_id)
    _apply_environment(row, config)
    return row


class ApplicationRepository:
    """Repository for the application registry on the primary database.

    Args:
        session_factory: Primary DB session factory.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_by_id(self, application_id: uuid.UUID) -> Application:
        """Load an application with its environments.

        Raises:
            NotFoundError: If no application exists with the given ID.
        """
        async with self._session_factory() as session:
            with translate_database_errors("load application"):
                result = await session.execute(select(ApplicationRow).where(ApplicationRow.id == application_id))
                row = result.scalar_one_or_none()
                if row is None:
                    raise NotFoundError(resource="Application", resource_id=str(application_id))
                return _application_to_domain(row)

    async def get_by_name(self, name: str) -> Application:
        """Load an application by name.

        Raises:
            NotFoundError: If no application has that name.
        """
        async with self._session_factory() as session:
            with translate_database_errors("load application by name"):
                result = await session.execute(select(ApplicationRow).where(ApplicationRow.name == name.strip()))
                row = result.scalar_one_or_none()
                if row is None:
                    raise NotFoundError(resource="Application", resource_id=name)
                return _application_to_domain(row)

    async def list_all(self, owner: str | None = None, active_only: bool = False) -> list[Application]:
        """List applications ordered by name.

        Args:
            owner: Only applications owned by this email address.
            active_only: Exclude deactivated applications.
        """
        stmt = select(ApplicationRow)
        if owner:
            stmt = stmt.where(ApplicationRow.owner == owner.strip())
        if active_only:
            stmt = stmt.where(ApplicationRow.is_active.is_(True))
        stmt = stmt.order_by(ApplicationRow.name)

        async with self._session_factory() as session:
            with translate_database_errors("list applications"):
                result = await session.execute(stmt)
                return [_application_to_domain(row) for row in result.scalars().all()]

    async def add(self, application: Application) -> None:
        """Persist a newly registered application and its environments.

        Raises:
            ValidationError: If the application name is already registered.
            PersistenceError: If the insert fails for another reason.
        """
        row = ApplicationRow(
            id=application.id,
            name=application.name,
            owner=application.owner,
            is_active=application.is_active,
            created_at=datetime.now(UTC),
        )
        row.environments = [_new_environment_row(e) for e in application.environments]

        async with self._session_factory() as session:
            try:
                session.add(row)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise ValidationError(
                    message=f"Application '{application.name}' already exists",
                    field="name",
                ) from None
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error("Application insert failed", application_id=str(application.id), error=str(exc))
                raise PersistenceError(message="Failed to register application") from exc

        logger.info("Application registered", application_id=str(application.id), name=application.name)

    async def save(self, application: Application) -> None:
        """Persist changes to an existing application and its environments.

        Environment rows are matched by id: new configs are inserted and
        existing ones are updated in place. Environments are never deleted,
        only deactivated.

        Raises:
            NotFoundError: If the application does not exist.
            PersistenceError: If the update fails.
        """
        async with self._session_factory() as session:
            try:
                row = await session.get(ApplicationRow, application.id)
                if row is None:
                    raise NotFoundError(resource="Application", resource_id=str(application.id))

                row.name = application.name
                row.owner = application.owner
                row.is_active = application.is_active

                existing = {env_row.id: env_row for env_row in row.environments}
                for config in application.environments:
                    env_row = existing.get(config.id)
                    if env_row is None:
                        row.environments.append(_new_environment_row(config))
                    else:
                        _apply_environment(env_row, config)

                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise ValidationError(message="Application or environment name already exists") from None
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error("Application update failed", application_id=str(application.id), error=str(exc))
                raise PersistenceError(message="Failed to update application") from exc

        logger.info("Application updated", application_id=str(application.id))


# ---------------------------------------------------------------------------
# Compliance evaluations
# ---------------------------------------------------------------------------


def _vulnerability_from_payload(payload: dict[str, Any]) -> Vulnerability:
    return Vulnerability(
        id=payload["id"],
        severity=Severity(payload["severity"]),
        cvss_score=float(payload["cvssScore"]),
        package_name=payload["packageName"],
        package_version=payload.get("currentVersion") or "",
        fixed_version=payload.get("fixedVersion"),
        description=payload.get("description"),
    )


def _scan_result_from_payload(payload: dict[str, Any]) -> ScanResult:
    return ScanResult(
        tool_name=payload["toolName"],
        scanned_at=datetime.fromisoformat(payload["scannedAt"]),
        vulnerabilities=tuple(_vulnerability_from_payload(v) for v in payload.get("vulnerabilities", [])),
        raw_output=payload.get("rawOutput", ""),
    )


def _evaluation_to_row(evaluation: ComplianceEvaluation) -> ComplianceEvaluationRow:
    scan_payload = scan_results_to_payload(evaluation.scan_results)
    for entry, result in zip(scan_payload, evaluation.scan_results, strict=True):
        entry["rawOutput"] = result.raw_output

    return ComplianceEvaluationRow(
        id=evaluation.id,
        application_id=evaluation.application_id,
        environment=evaluation.environment,
        risk_tier=evaluation.risk_tier.value,
        scan_results=scan_payload,
        allowed=evaluation.decision.allowed,
        violations=list(evaluation.decision.violations),
        decision_details=evaluation.decision.details,
        evaluation_duration_ms=evaluation.decision.evaluation_duration_ms,
        evaluated_at=evaluation.evaluated_at,
    )


def _evaluation_to_domain(row: ComplianceEvaluationRow) -> ComplianceEvaluation:
    return ComplianceEvaluation(
        id=row.id,
        application_id=row.application_id,
        environment=row.environment,
        risk_tier=RiskTier(row.risk_tier),
        scan_results=tuple(_scan_result_from_payload(p) for p in row.scan_results),
        decision=PolicyDecision(
            allowed=row.allowed,
            violations=tuple(row.violations),
            details=dict(row.decision_details or {}),
            evaluation_duration_ms=row.evaluation_duration_ms,
        ),
        evaluated_at=row.evaluated_at,
    )


class ComplianceEvaluationRepository:
    """Insert-and-read repository for ComplianceEvaluation.

    Evaluations are immutable facts: there is no update or delete method.

    Args:
        session_factory: Primary DB session factory.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add(self, evaluation: ComplianceEvaluation) -> None:
        """Insert a new evaluation in its own transaction.

        Args:
            evaluation: The evaluation aggregate to persist.

        Raises:
            PersistenceError: If the insert or commit fails.
        """
        row = _evaluation_to_row(evaluation)
        async with self._session_factory() as session:
            try:
                session.add(row)
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error(
                    "Compliance evaluation insert failed",
                    evaluation_id=str(evaluation.id),
                    error=str(exc),
                )
                raise PersistenceError(message="Failed to persist compliance evaluation") from exc

        logger.info(
            "Compliance evaluation persisted",
            evaluation_id=str(evaluation.id),
            application_id=str(evaluation.application_id),
            environment=evaluation.environment,
            allowed=evaluation.decision.allowed,
        )

    async def get_by_id(self, evaluation_id: uuid.UUID) -> ComplianceEvaluation:
        """Retrieve an evaluation by ID.

        Raises:
            NotFoundError: If not found.
        """
        async with self._session_factory() as session:
            with translate_database_errors("load compliance evaluation"):
                row = await session.get(ComplianceEvaluationRow, evaluation_id)
                if row is None:
                    raise NotFoundError(resource="ComplianceEvaluation", resource_id=str(evaluation_id))
                return _evaluation_to_domain(row)

    async def list_by_application(
        self,
        application_id: uuid.UUID,
        environment: str | None = None,
        since: datetime | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> list[ComplianceEvaluation]:
        """List evaluations for an application ordered by evaluated_at descending."""
        stmt = select(ComplianceEvaluationRow).where(ComplianceEvaluationRow.application_id == application_id)
        if environment:
            stmt = stmt.where(ComplianceEvaluationRow.environment == environment.strip().lower())
        if since is not None:
            stmt = stmt.where(ComplianceEvaluationRow.evaluated_at >= since)
        stmt = stmt.order_by(ComplianceEvaluationRow.evaluated_at.desc())
        stmt = stmt.offset((page - 1) * page_size).limit(page_size)
        return await self._fetch(stmt, "list compliance evaluations")

    async def list_recent(
        self,
        since: datetime | None = None,
        allowed: bool | None = None,
        limit: int | None = None,
    ) -> list[ComplianceEvaluation]:
        """List evaluations across all applications ordered by evaluated_at descending.

        Args:
            since: Only evaluations at or after this time.
            allowed: Only allowed (True) or only denied (False) evaluations.
            limit: Maximum number of evaluations returned.
        """
        stmt = select(ComplianceEvaluationRow)
        if since is not None:
            stmt = stmt.where(ComplianceEvaluationRow.evaluated_at >= since)
        if allowed is not None:
            stmt = stmt.where(ComplianceEvaluationRow.allowed.is_(allowed))
        stmt = stmt.order_by(ComplianceEvaluationRow.evaluated_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return await self._fetch(stmt, "list recent compliance evaluations")

    async def _fetch(self, stmt: Select, operation: str) -> list[ComplianceEvaluation]:
        async with self._session_factory() as session:
            with translate_database_errors(operation):
                result = await session.execute(stmt)
                return [_evaluation_to_domain(row) for row in result.scalars().all()]
