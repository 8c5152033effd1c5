"""Pydantic request and response schemas for the compliance gateway API.

All API inputs and outputs use Pydantic models, never raw dicts. Field names
are snake_case in Python and camelCase on the wire.

Resources:
- Evaluation   - compliance evaluation request, summary and stored records
- AuditLog     - audit record queries and statistics
- Application  - application registry management
- Health       - policy engine health
"""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from compliance_gateway.core.domain import (
    Application,
    AuditLog,
    AuditStatistics,
    ComplianceEvaluation,
    EnvironmentConfig,
    ScanResult,
    SeverityCounts,
)
from compliance_gateway.core.normalizer import RawScanResult, RawVulnerability
from compliance_gateway.core.services import EvaluationRequest, EvaluationSummary


class CamelModel(BaseModel):
    """Base model serializing to camelCase while accepting either casing."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Evaluation schemas
# ---------------------------------------------------------------------------


class VulnerabilityInput(CamelModel):
    """One vulnerability as reported by a scanner."""

    id: str = Field(description="CVE identifier or tool-specific id")
    severity: str = Field(description="critical | high | medium | low")
    cvss_score: float = Field(description="CVSS score, 0 to 10")
    package_name: str = Field(description="Affected package")
    current_version: str = Field(default="", description="Installed package version")
    fixed_version: str | None = Field(default=None, description="First version carrying a fix")
    description: str | None = Field(default=None, description="Human-readable summary")


class ScanResultInput(CamelModel):
    """One tool's scan output."""

    tool_name: str = Field(description="Security tool name, e.g. snyk")
    scanned_at: datetime = Field(description="When the scan ran (UTC)")
    vulnerabilities: list[VulnerabilityInput] = Field(default_factory=list)
    raw_output: str = Field(default="", description="Opaque raw tool output")


class EvaluateRequest(CamelModel):
    """Request body for a compliance evaluation."""

    application_id: uuid.UUID = Field(description="Registered application UUID")
    environment: str = Field(min_length=1, max_length=50, description="Environment name")
    scan_results: list[ScanResultInput] = Field(default_factory=list)
    initiated_by: str = Field(min_length=1, max_length=255, description="Caller identity")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Passed through to the policy engine")

    def to_domain(self) -> EvaluationRequest:
        return EvaluationRequest(
            application_id=self.application_id,
            environment=self.environment,
            scan_results=[
                RawScanResult(
                    tool_name=scan.tool_name,
                    scanned_at=scan.scanned_at,
                    vulnerabilities=tuple(
                        RawVulnerability(
                            id=v.id,
                            severity=v.severity,
                            cvss_score=v.cvss_score,
                            package_name=v.package_name,
                            current_version=v.current_version,
                            fixed_version=v.fixed_version,
                            description=v.description,
                        )
                        for v in scan.vulnerabilities
                    ),
                    raw_output=scan.raw_output,
                )
                for scan in self.scan_results
            ],
            initiated_by=self.initiated_by,
            metadata=self.metadata,
        )


class SeverityCountsResponse(CamelModel):
    critical: int
    high: int
    medium: int
    low: int
    total: int

    @classmethod
    def from_counts(cls, counts: SeverityCounts) -> "SeverityCountsResponse":
        return cls(**counts.to_dict())


class VulnerabilityResponse(CamelModel):
    id: str
    severity: str
    cvss_score: float
    package_name: str
    current_version: str
    fixed_version: str | None
    description: str | None
    is_fixable: bool


class ScanResultResponse(CamelModel):
    tool_name: str
    scanned_at: datetime
    vulnerabilities: list[VulnerabilityResponse]
    counts: SeverityCountsResponse

    @classmethod
    def from_domain(cls, result: ScanResult) -> "ScanResultResponse":
        return cls(
            tool_name=result.tool_name,
            scanned_at=result.scanned_at,
            vulnerabilities=[
                VulnerabilityResponse(
                    id=v.id,
                    severity=v.severity.value,
                    cvss_score=v.cvss_score,
                    package_name=v.package_name,
                    current_version=v.package_version,
                    fixed_version=v.fixed_version,
                    description=v.description,
                    is_fixable=v.is_fixable,
                )
                for v in result.vulnerabilities
            ],
            counts=SeverityCountsResponse.from_counts(result.counts),
        )


class PolicyViolationResponse(CamelModel):
    rule: str
    message: str
    severity: str
    details: dict[str, Any] | None = None


class PolicyDecisionResponse(CamelModel):
    allow: bool = Field(description="Whether the policy engine allowed the release")
    violations: list[PolicyViolationResponse]
    policy_package: str = Field(description="Policy package that was evaluated")
    reason: str


class EvaluationResponse(CamelModel):
    """Summary of a completed evaluation. A deny is a normal response with passed=false."""

    id: uuid.UUID
    audit_id: uuid.UUID
    application_id: uuid.UUID
    application_name: str
    environment: str
    risk_tier: str
    evaluated_at: datetime
    passed: bool
    scan_results: list[ScanResultResponse]
    policy_decision: PolicyDecisionResponse
    aggregated_counts: SeverityCountsResponse

    @classmethod
    def from_summary(cls, summary: EvaluationSummary) -> "EvaluationResponse":
        evaluation = summary.evaluation
        return cls(
            id=evaluation.id,
            audit_id=summary.audit_id,
            application_id=evaluation.application_id,
            application_name=summary.application_name,
            environment=evaluation.environment,
            risk_tier=evaluation.risk_tier.value,
            evaluated_at=evaluation.evaluated_at,
            passed=evaluation.passed,
            scan_results=[ScanResultResponse.from_domain(r) for r in evaluation.scan_results],
            policy_decision=PolicyDecisionResponse(
                allow=evaluation.decision.allowed,
                violations=[PolicyViolationResponse(**v) for v in summary.violations],
                policy_package=summary.policy_package,
                reason=summary.reason,
            ),
            aggregated_counts=SeverityCountsResponse.from_counts(summary.counts),
        )


class EvaluationRecordResponse(CamelModel):
    """A stored evaluation as read back from the database."""

    id: uuid.UUID
    application_id: uuid.UUID
    environment: str
    risk_tier: str
    evaluated_at: datetime
    passed: bool
    reason: str
    violations: list[str]
    policy_package: str | None = Field(default=None, description="Policy package that was evaluated")
    scan_results: list[ScanResultResponse]
    aggregated_counts: SeverityCountsResponse

    @classmethod
    def from_domain(cls, evaluation: ComplianceEvaluation) -> "EvaluationRecordResponse":
        return cls(
            id=evaluation.id,
            application_id=evaluation.application_id,
            environment=evaluation.environment,
            risk_tier=evaluation.risk_tier.value,
            evaluated_at=evaluation.evaluated_at,
            passed=evaluation.passed,
            reason=evaluation.decision.reason,
            violations=list(evaluation.decision.violations),
            policy_package=evaluation.decision.details.get("policyPackage"),
            scan_results=[ScanResultResponse.from_domain(r) for r in evaluation.scan_results],
            aggregated_counts=SeverityCountsResponse.from_counts(evaluation.counts),
        )


class EvaluationListResponse(CamelModel):
    items: list[EvaluationRecordResponse]
    count: int

    @classmethod
    def from_evaluations(cls, evaluations: list[ComplianceEvaluation]) -> "EvaluationListResponse":
        return cls(items=[EvaluationRecordResponse.from_domain(e) for e in evaluations], count=len(evaluations))


# ---------------------------------------------------------------------------
# Audit schemas
# ---------------------------------------------------------------------------


class DecisionEvidenceResponse(CamelModel):
    """Serialized evidence payloads, byte-for-byte as stored."""

    scan_results: str
    policy_input: str
    policy_output: str
    captured_at: datetime


class AuditLogResponse(CamelModel):
    """Response schema for one audit record."""

    id: uuid.UUID
    evaluation_id: str
    application_id: uuid.UUID
    application_name: str
    environment: str
    risk_tier: str
    timestamp: datetime = Field(description="When the evaluation ran (UTC)")
    allowed: bool
    reason: str
    violations: list[str]
    severity_counts: SeverityCountsResponse
    evaluation_duration_ms: int
    evidence: DecisionEvidenceResponse

    @classmethod
    def from_domain(cls, audit_log: AuditLog) -> "AuditLogResponse":
        return cls(
            id=audit_log.id,
            evaluation_id=audit_log.evaluation_id,
            application_id=audit_log.application_id,
            application_name=audit_log.application_name,
            environment=audit_log.environment,
            risk_tier=audit_log.risk_tier,
            timestamp=audit_log.evaluated_at,
            allowed=audit_log.allowed,
            reason=audit_log.reason,
            violations=list(audit_log.violations),
            severity_counts=SeverityCountsResponse.from_counts(audit_log.counts),
            evaluation_duration_ms=audit_log.evaluation_duration_ms,
            evidence=DecisionEvidenceResponse(
                scan_results=audit_log.evidence.scan_results_json,
                policy_input=audit_log.evidence.policy_input_json,
                policy_output=audit_log.evidence.policy_output_json,
                captured_at=audit_log.evidence.captured_at,
            ),
        )


class AuditLogListResponse(CamelModel):
    """A page of audit records."""

    items: list[AuditLogResponse]
    count: int = Field(description="Number of records in this page")
    page: int = 1
    page_size: int | None = None

    @classmethod
    def from_logs(
        cls,
        logs: list[AuditLog],
        page: int = 1,
        page_size: int | None = None,
    ) -> "AuditLogListResponse":
        return cls(
            items=[AuditLogResponse.from_domain(log) for log in logs],
            count=len(logs),
            page=page,
            page_size=page_size,
        )


class AuditStatisticsResponse(CamelModel):
    total_evaluations: int
    allowed_count: int
    blocked_count: int
    blocked_percentage: float
    total_critical_vulnerabilities: int
    total_high_vulnerabilities: int
    evaluations_by_environment: dict[str, int]
    evaluations_by_risk_tier: dict[str, int]

    @classmethod
    def from_domain(cls, statistics: AuditStatistics) -> "AuditStatisticsResponse":
        return cls(
            total_evaluations=statistics.total_evaluations,
            allowed_count=statistics.allowed_count,
            blocked_count=statistics.blocked_count,
            blocked_percentage=round(statistics.blocked_percentage, 2),
            total_critical_vulnerabilities=statistics.total_critical_vulnerabilities,
            total_high_vulnerabilities=statistics.total_high_vulnerabilities,
            evaluations_by_environment=statistics.evaluations_by_environment,
            evaluations_by_risk_tier=statistics.evaluations_by_risk_tier,
        )


# ---------------------------------------------------------------------------
# Application registry schemas
# ---------------------------------------------------------------------------


class ApplicationRegisterRequest(CamelModel):
    name: str = Field(description="Application name, 3 to 100 characters")
    owner: str = Field(description="Owner email address, receives notifications")


class ApplicationOwnerUpdateRequest(CamelModel):
    owner: str = Field(description="New owner email address")


class EnvironmentCreateRequest(CamelModel):
    name: str = Field(description="Environment name, normalized to lower case")
    risk_tier: str = Field(description="critical | high | medium | low")
    security_tools: list[str] = Field(description="snyk | prismacloud")
    policy_references: list[str] = Field(description="Ordered policy packages; the first one is evaluated")
    metadata: dict[str, str] = Field(default_factory=dict)


class EnvironmentUpdateRequest(CamelModel):
    """Only the fields that are set are updated."""

    risk_tier: str | None = None
    security_tools: list[str] | None = None
    policy_references: list[str] | None = None


class EnvironmentResponse(CamelModel):
    id: uuid.UUID
    name: str
    risk_tier: str
    security_tools: list[str]
    policy_references: list[str]
    is_active: bool
    metadata: dict[str, str]

    @classmethod
    def from_domain(cls, config: EnvironmentConfig) -> "EnvironmentResponse":
        return cls(
            id=config.id,
            name=config.name,
            risk_tier=config.risk_tier.value,
            security_tools=[t.value for t in config.security_tools],
            policy_references=[p.package_name for p in config.policy_references],
            is_active=config.is_active,
            metadata=config.metadata,
        )


class ApplicationResponse(CamelModel):
    id: uuid.UUID
    name: str
    owner: str
    is_active: bool
    environments: list[EnvironmentResponse]

    @classmethod
    def from_domain(cls, application: Application) -> "ApplicationResponse":
        return cls(
            id=application.id,
            name=application.name,
            owner=application.owner,
            is_active=application.is_active,
            environments=[EnvironmentResponse.from_domain(e) for e in application.environments],
        )


class ApplicationListResponse(CamelModel):
    items: list[ApplicationResponse]
    count: int

    @classmethod
    def from_applications(cls, applications: list[Application]) -> "ApplicationListResponse":
        return cls(items=[ApplicationResponse.from_domain(a) for a in applications], count=len(applications))


# ---------------------------------------------------------------------------
# Health and errors
# ---------------------------------------------------------------------------


class PolicyEngineHealthResponse(CamelModel):
    healthy: bool


class ErrorResponse(CamelModel):
    error: str = Field(description="Error kind, e.g. not_found")
    message: str = Field(description="Caller-safe description")
