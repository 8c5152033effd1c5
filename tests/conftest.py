"""Test fixtures for compliance-gateway.

Provides:
- application: A registered "pay-api" application with a critical production environment
- mock_application_repo: A mock IApplicationRepository returning the application
- mock_evaluation_repo: A mock IComplianceEvaluationRepository that captures add() calls
- mock_audit_repo: A mock IAuditLogRepository whose append() echoes its argument
- mock_policy_engine: A mock IPolicyEngineClient returning an allow decision
- mock_notification_service: A mock INotificationService
- mock_dispatcher: A mock INotificationDispatcher that captures submitted jobs
- sqlite_databases: File-backed SQLite primary and audit databases with tables created

Plain factory helpers (make_*) are importable from tests.conftest.
"""

import json
import uuid
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from compliance_gateway import database
from compliance_gateway.core.domain import (
    Application,
    AuditLog,
    DecisionEvidence,
    EnvironmentConfig,
    PolicyReference,
    PolicyViolation,
    RiskTier,
    SecurityTool,
    SeverityCounts,
)
from compliance_gateway.core.interfaces import EngineDecision
from compliance_gateway.core.normalizer import RawScanResult, RawVulnerability

# ---------------------------------------------------------------------------
# Factory helpers
# ---------------------------------------------------------------------------


def make_application(
    name: str = "pay-api",
    owner: str = "payments-team@example.com",
    environment: str = "production",
    risk_tier: RiskTier = RiskTier.CRITICAL,
    policy_references: tuple[str, ...] = ("compliance.production",),
) -> Application:
    """Create an active application with one active environment."""
    application = Application.register(name=name, owner=owner)
    application.add_environment(
        EnvironmentConfig.create(
            application_id=application.id,
            name=environment,
            risk_tier=risk_tier,
            security_tools=[SecurityTool.SNYK, SecurityTool.PRISMA_CLOUD],
            policy_references=[PolicyReference.parse(p) for p in policy_references],
        )
    )
    return application


def make_raw_vulnerability(
    vuln_id: str = "CVE-2024-0001",
    severity: str = "critical",
    cvss_score: Any = 9.8,
    package_name: str = "openssl",
    fixed_version: str | None = "3.0.13",
) -> RawVulnerability:
    return RawVulnerability(
        id=vuln_id,
        severity=severity,
        cvss_score=cvss_score,
        package_name=package_name,
        current_version="3.0.1",
        fixed_version=fixed_version,
        description="Test vulnerability",
    )


def make_raw_scan(
    tool_name: str = "snyk",
    vulnerabilities: list[RawVulnerability] | None = None,
    scanned_at: datetime | None = None,
) -> RawScanResult:
    return RawScanResult(
        tool_name=tool_name,
        scanned_at=scanned_at or datetime.now(UTC) - timedelta(minutes=10),
        vulnerabilities=tuple(vulnerabilities or ()),
        raw_output='{"ok": true}',
    )


def make_engine_decision(
    allow: bool = True,
    violations: list[PolicyViolation] | None = None,
    policy_package: str = "compliance.production",
    reason: str | None = None,
) -> EngineDecision:
    """Create an EngineDecision as the OPA client would return it."""
    violation_tuple = tuple(violations or ())
    result: dict[str, Any] = {"allow": allow, "violations": [v.to_dict() for v in violation_tuple]}
    if reason is not None:
        result["reason"] = reason
    return EngineDecision(
        allow=allow,
        violations=violation_tuple,
        request_body={"input": {"application": {"name": "pay-api"}}},
        response_body=json.dumps({"result": result}),
        policy_package=policy_package,
        reason=reason,
        duration_ms=12,
    )


def make_audit_log(
    allowed: bool = True,
    environment: str = "production",
    risk_tier: str = "critical",
    counts: SeverityCounts | None = None,
    evaluated_at: datetime | None = None,
    application_id: uuid.UUID | None = None,
) -> AuditLog:
    """Create an AuditLog with complete evidence."""
    violations = () if allowed else ("Critical vulnerabilities are not allowed in production",)
    return AuditLog.create(
        evaluation_id=str(uuid.uuid4()),
        application_id=application_id or uuid.uuid4(),
        application_name="pay-api",
        environment=environment,
        risk_tier=risk_tier,
        allowed=allowed,
        reason="All compliance checks passed" if allowed else violations[0],
        violations=violations,
        evidence=DecisionEvidence(
            scan_results_json="[]",
            policy_input_json='{"input": {}}',
            policy_output_json='{"result": {"allow": true, "violations": []}}',
        ),
        evaluation_duration_ms=15,
        counts=counts or SeverityCounts(),
        evaluated_at=evaluated_at or datetime.now(UTC),
    )


def make_session_factory(session: MagicMock) -> MagicMock:
    """Wrap a mock session so ``async with factory() as s`` yields it."""
    factory = MagicMock()
    factory.return_value.__aenter__.return_value = session
    factory.return_value.__aexit__.return_value = False
    return factory


def make_mock_session(scalar: Any = None, scalars: list[Any] | None = None) -> MagicMock:
    """Create a mock AsyncSession whose execute() returns the given rows."""
    session = MagicMock()
    result = MagicMock()
    result.scalar_one_or_none.return_value = scalar
    result.scalars.return_value.all.return_value = scalars or []
    session.execute = AsyncMock(return_value=result)
    session.get = AsyncMock(return_value=scalar)
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    return session


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def application() -> Application:
    return make_application()


@pytest.fixture()
def mock_application_repo(application: Application) -> AsyncMock:
    repo = AsyncMock()
    repo.get_by_id.return_value = application
    return repo


@pytest.fixture()
def mock_evaluation_repo() -> AsyncMock:
    return AsyncMock()


@pytest.fixture()
def mock_audit_repo() -> AsyncMock:
    """Mock audit repository. append() returns the record it was given."""
    repo = AsyncMock()
    repo.append.side_effect = lambda audit_log: audit_log
    return repo


@pytest.fixture()
def mock_policy_engine() -> AsyncMock:
    client = AsyncMock()
    client.evaluate.return_value = make_engine_decision(allow=True)
    client.health_check.return_value = True
    return client


@pytest.fixture()
def mock_notification_service() -> AsyncMock:
    return AsyncMock()


@pytest.fixture()
def mock_dispatcher() -> MagicMock:
    dispatcher = MagicMock()
    dispatcher.submit.return_value = True
    return dispatcher


@pytest_asyncio.fixture()
async def sqlite_databases(tmp_path: Path) -> AsyncIterator[None]:
    """Initialize file-backed SQLite primary and audit databases for one test."""
    database.init_databases(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'primary.db'}",
        audit_db_url=f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}",
    )
    await database.create_all()
    yield
    await database.close_databases()
