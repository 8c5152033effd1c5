"""Append-only store for the compliance audit log.

This module is the ONLY place that writes to the audit database. All other
repositories use the primary session factory from database.py.

The audit log is append-only. No UPDATE or DELETE operation exists at the
application level, and in production the role behind
COMPLIANCE_GATEWAY_AUDIT_DB_URL should hold only INSERT and SELECT grants on
compliance_audit_logs.

Key exports:
- AuditLogRepository - append-only write plus read and statistics queries
"""

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import Select, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from compliance_gateway.adapters.repositories import translate_database_errors
from compliance_gateway.core.domain import AuditLog, AuditStatistics, DecisionEvidence, SeverityCounts
from compliance_gateway.core.models import AuditLogRow
from compliance_gateway.errors import NotFoundError, PersistenceError
from compliance_gateway.observability import get_logger

logger = get_logger(__name__)


def _to_row(audit_log: AuditLog) -> AuditLogRow:
    return AuditLogRow(
        id=audit_log.id,
        evaluation_id=audit_log.evaluation_id,
        application_id=audit_log.application_id,
        application_name=audit_log.application_name,
        environment=audit_log.environment,
        risk_tier=audit_log.risk_tier,
        allowed=audit_log.allowed,
        reason=audit_log.reason,
        violations=list(audit_log.violations),
        scan_results_json=audit_log.evidence.scan_results_json,
        policy_input_json=audit_log.evidence.policy_input_json,
        policy_output_json=audit_log.evidence.policy_output_json,
        evidence_captured_at=audit_log.evidence.captured_at,
        evaluation_duration_ms=audit_log.evaluation_duration_ms,
        critical_count=audit_log.counts.critical,
        high_count=audit_log.counts.high,
        medium_count=audit_log.counts.medium,
        low_count=audit_log.counts.low,
        total_vulnerability_count=audit_log.counts.total,
        evaluated_at=audit_log.evaluated_at,
    )


def _to_domain(row: AuditLogRow) -> AuditLog:
    return AuditLog(
        id=row.id,
        evaluation_id=row.evaluation_id,
        application_id=row.application_id,
        application_name=row.application_name,
        environment=row.environment,
        risk_tier=row.risk_tier,
        allowed=row.allowed,
        reason=row.reason,
        violations=tuple(row.violations or ()),
        evidence=DecisionEvidence(
            scan_results_json=row.scan_results_json,
            policy_input_json=row.policy_input_json,
            policy_output_json=row.policy_output_json,
            captured_at=row.evidence_captured_at,
        ),
        evaluation_duration_ms=row.evaluation_duration_ms,
        counts=SeverityCounts(
            critical=row.critical_count,
            high=row.high_count,
            medium=row.medium_count,
            low=row.low_count,
        ),
        evaluated_at=row.evaluated_at,
    )


@contextmanager
def _audit_write_errors(evaluation_id: str) -> Iterator[None]:
    """Re-raise SQLAlchemy failures during an append as PersistenceError.

    The evaluation row is already committed when the audit append runs, so
    the error always names it.
    """
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Audit log insert failed", evaluation_id=evaluation_id, error=str(exc))
        raise PersistenceError(
            message="Failed to persist audit log",
            committed_evaluation_id=evaluation_id,
        ) from exc


def _within(stmt: Select, from_date: datetime | None, to_date: datetime | None) -> Select:
    if from_date is not None:
        stmt = stmt.where(AuditLogRow.evaluated_at >= from_date)
    if to_date is not None:
        stmt = stmt.where(AuditLogRow.evaluated_at <= to_date)
    return stmt


class AuditLogRepository:
    """Append-only repository for AuditLog on the audit database.

    This class has no update() or delete() methods because the audit log is
    immutable. ``append`` is idempotent on ``evaluation_id`` so a retried
    audit write after a partial failure never produces a duplicate.

    Args:
        session_factory: Audit DB session factory.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(self, audit_log: AuditLog) -> AuditLog:
        """Append an immutable audit record.

        This is the ONLY write operation on the audit log.

        Args:
            audit_log: The audit aggregate to store.

        Returns:
            The stored record. If a record for the same evaluation already
            exists, that record is returned unchanged.

        Raises:
            PersistenceError: If the insert fails.
        """
        async with self._session_factory() as session:
            try:
                existing = await self._find_by_evaluation_id(session, audit_log.evaluation_id)
                if existing is not None:
                    logger.info(
                        "Audit log already recorded for evaluation",
                        audit_id=str(existing.id),
                        evaluation_id=audit_log.evaluation_id,
                    )
                    return _to_domain(existing)

                session.add(_to_row(audit_log))
                await session.commit()
            except IntegrityError:
                # A concurrent append for the same evaluation won the insert
                with _audit_write_errors(audit_log.evaluation_id):
                    await session.rollback()
                    existing = await self._find_by_evaluation_id(session, audit_log.evaluation_id)
                if existing is None:
                    raise PersistenceError(
                        message="Failed to persist audit log",
                        committed_evaluation_id=audit_log.evaluation_id,
                    ) from None
                return _to_domain(existing)
            except SQLAlchemyError as exc:
                with _audit_write_errors(audit_log.evaluation_id):
                    await session.rollback()
                    raise exc

        logger.info(
            "Audit log written",
            audit_id=str(audit_log.id),
            evaluation_id=audit_log.evaluation_id,
            application_id=str(audit_log.application_id),
            environment=audit_log.environment,
            allowed=audit_log.allowed,
        )
        return audit_log

    @staticmethod
    async def _find_by_evaluation_id(session: AsyncSession, evaluation_id: str) -> AuditLogRow | None:
        result = await session.execute(select(AuditLogRow).where(AuditLogRow.evaluation_id == evaluation_id))
        return result.scalar_one_or_none()

    async def get_by_id(self, audit_id: uuid.UUID) -> AuditLog:
        """Retrieve a single audit record by ID.

        Raises:
            NotFoundError: If not found.
        """
        async with self._session_factory() as session:
            with translate_database_errors("load audit log"):
                row = await session.get(AuditLogRow, audit_id)
                if row is None:
                    raise NotFoundError(resource="AuditLog", resource_id=str(audit_id))
                return _to_domain(row)

    async def get_by_evaluation_id(self, evaluation_id: str) -> AuditLog:
        """Retrieve the audit record correlated with an evaluation.

        Raises:
            NotFoundError: If not found.
        """
        async with self._session_factory() as session:
            with translate_database_errors("load audit log by evaluation"):
                row = await self._find_by_evaluation_id(session, evaluation_id)
                if row is None:
                    raise NotFoundError(resource="AuditLog", resource_id=evaluation_id)
                return _to_domain(row)

    async def list_by_application(
        self,
        application_id: uuid.UUID,
        environment: str | None = None,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> list[AuditLog]:
        """Query the audit log for one application.

        Args:
            application_id: Application UUID.
            environment: Optional environment name filter (normalized).
            from_date: Optional inclusive start of the window.
            to_date: Optional inclusive end of the window.
            page: Page number (1-indexed).
            page_size: Records per page.

        Returns:
            AuditLog records ordered by evaluated_at descending.
        """
        stmt = select(AuditLogRow).where(AuditLogRow.application_id == application_id)
        if environment:
            stmt = stmt.where(AuditLogRow.environment == environment.strip().lower())
        stmt = _within(stmt, from_date, to_date)
        stmt = stmt.order_by(AuditLogRow.evaluated_at.desc())
        stmt = stmt.offset((page - 1) * page_size).limit(page_size)
        return await self._fetch(stmt, "list audit logs by application")

    async def list_blocked(
        self,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[AuditLog]:
        """Denied decisions only, newest first."""
        stmt = select(AuditLogRow).where(AuditLogRow.allowed.is_(False))
        stmt = _within(stmt, since, None)
        stmt = stmt.order_by(AuditLogRow.evaluated_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return await self._fetch(stmt, "list blocked audit logs")

    async def list_with_critical_vulnerabilities(self, since: datetime | None = None) -> list[AuditLog]:
        """Records with at least one critical vulnerability, most critical first."""
        stmt = select(AuditLogRow).where(AuditLogRow.critical_count > 0)
        stmt = _within(stmt, since, None)
        stmt = stmt.order_by(AuditLogRow.critical_count.desc(), AuditLogRow.evaluated_at.desc())
        return await self._fetch(stmt, "list critical audit logs")

    async def list_by_risk_tier(
        self,
        risk_tier: str,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> list[AuditLog]:
        stmt = select(AuditLogRow).where(AuditLogRow.risk_tier == risk_tier.strip().lower())
        stmt = _within(stmt, from_date, to_date)
        stmt = stmt.order_by(AuditLogRow.evaluated_at.desc())
        return await self._fetch(stmt, "list audit logs by risk tier")

    async def get_statistics(
        self,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> AuditStatistics:
        """Aggregate statistics over the records in a date window."""
        stmt = _within(select(AuditLogRow), from_date, to_date)
        logs = await self._fetch(stmt, "compute audit statistics")
        return AuditStatistics.from_logs(logs)

    async def _fetch(self, stmt: Select, operation: str) -> list[AuditLog]:
        async with self._session_factory() as session:
            with translate_database_errors(operation):
                result = await session.execute(stmt)
                return [_to_domain(row) for row in result.scalars().all()]
