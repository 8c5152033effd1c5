"""Domain model for the compliance gateway.

Closed enumerations:
- Severity        - vulnerability severity (critical | high | medium | low)
- RiskTier        - environment risk classification (critical | high | medium | low)
- SecurityTool    - scanners an environment may be configured with

Value objects (immutable, value-equal):
- Vulnerability, ScanResult, SeverityCounts
- PolicyViolation, PolicyDecision
- DecisionEvidence
- PolicyReference

Aggregate roots:
- ComplianceEvaluation - immutable record of one evaluation
- AuditLog             - append-only evidentiary record of one evaluation
- Application          - registry aggregate owning EnvironmentConfig entities

Aggregates never publish events or trigger side effects from their
constructors. The evaluation workflow in core/services.py sequences
persistence, audit creation and notification explicitly.

Errors raised here follow one rule: bad caller input raises ValidationError,
a broken internal invariant raises ValueError.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from compliance_gateway.errors import NotFoundError, ValidationError

_MIN_CVSS = 0.0
_MAX_CVSS = 10.0

_APPLICATION_NAME_MIN = 3
_APPLICATION_NAME_MAX = 100
_POLICY_REFERENCE_MIN = 3
_POLICY_REFERENCE_MAX = 200

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

DEFAULT_SCAN_CLOCK_SKEW = timedelta(minutes=5)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Severity(StrEnum):
    """Vulnerability severity. Unknown values are rejected, never coerced."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def parse(cls, value: str) -> Severity:
        """Parse a severity string case-insensitively.

        Raises:
            ValidationError: If the value is not one of the four severities.
        """
        normalized = (value or "").strip().lower()
        try:
            return cls(normalized)
        except ValueError:
            raise ValidationError(
                message=f"Invalid severity '{value}'. Must be critical, high, medium, or low",
                field="severity",
            ) from None


class RiskTier(StrEnum):
    """Risk classification driving policy stringency for an environment."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def parse(cls, value: str) -> RiskTier:
        """Parse a risk tier string case-insensitively.

        Raises:
            ValidationError: If the value is not a known tier.
        """
        normalized = (value or "").strip().lower()
        try:
            return cls(normalized)
        except ValueError:
            raise ValidationError(
                message=f"Invalid risk tier '{value}'. Must be critical, high, medium, or low",
                field="risk_tier",
            ) from None


class SecurityTool(StrEnum):
    """Security scanners an environment can be configured with."""

    SNYK = "snyk"
    PRISMA_CLOUD = "prismacloud"

    @classmethod
    def parse(cls, value: str) -> SecurityTool:
        """Parse a tool name, accepting the ``prisma`` shorthand.

        Raises:
            ValidationError: If the tool is not supported.
        """
        normalized = (value or "").strip().lower()
        if normalized == "prisma":
            return cls.PRISMA_CLOUD
        try:
            return cls(normalized)
        except ValueError:
            raise ValidationError(
                message=f"Unsupported security tool '{value}'",
                field="security_tools",
            ) from None


# ---------------------------------------------------------------------------
# Scan value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Vulnerability:
    """A single finding reported by a security tool.

    Attributes:
        id: CVE identifier or tool-specific id.
        severity: Closed severity classification.
        cvss_score: CVSS score within [0, 10].
        package_name: Affected package.
        package_version: Installed version of the affected package.
        fixed_version: First version carrying a fix, if known.
        description: Optional human-readable summary.
    """

    id: str
    severity: Severity
    cvss_score: float
    package_name: str
    package_version: str
    fixed_version: str | None = None
    description: str | None = None

    def __post_init__(self) -> None:
        if not self.id or not self.id.strip():
            raise ValidationError(message="Vulnerability id cannot be empty", field="id")
        if not isinstance(self.severity, Severity):
            raise ValueError("Vulnerability severity must be a Severity member")
        if not _MIN_CVSS <= self.cvss_score <= _MAX_CVSS:
            raise ValidationError(
                message=f"CVSS score {self.cvss_score} for {self.id} must be between 0 and 10",
                field="cvss_score",
            )
        if not self.package_name or not self.package_name.strip():
            raise ValidationError(
                message=f"Package name cannot be empty for {self.id}",
                field="package_name",
            )

    @property
    def is_fixable(self) -> bool:
        return bool(self.fixed_version)


@dataclass(frozen=True)
class SeverityCounts:
    """Per-severity vulnerability counts. ``total`` is always the sum."""

    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0

    def __post_init__(self) -> None:
        if min(self.critical, self.high, self.medium, self.low) < 0:
            raise ValueError("Vulnerability counts cannot be negative")

    @property
    def total(self) -> int:
        return self.critical + self.high + self.medium + self.low

    @property
    def has_high_or_critical(self) -> bool:
        return self.critical > 0 or self.high > 0

    def __add__(self, other: SeverityCounts) -> SeverityCounts:
        return SeverityCounts(
            critical=self.critical + other.critical,
            high=self.high + other.high,
            medium=self.medium + other.medium,
            low=self.low + other.low,
        )

    @classmethod
    def from_vulnerabilities(cls, vulnerabilities: Iterable[Vulnerability]) -> SeverityCounts:
        severities = [v.severity for v in vulnerabilities]
        return cls(
            critical=severities.count(Severity.CRITICAL),
            high=severities.count(Severity.HIGH),
            medium=severities.count(Severity.MEDIUM),
            low=severities.count(Severity.LOW),
        )

    @classmethod
    def sum(cls, counts: Iterable[SeverityCounts]) -> SeverityCounts:
        total = cls()
        for item in counts:
            total = total + item
        return total

    def to_dict(self) -> dict[str, int]:
        return {
            "critical": self.critical,
            "high": self.high,
            "medium": self.medium,
            "low": self.low,
            "total": self.total,
        }


@dataclass(frozen=True)
class ScanResult:
    """One security tool's report for a single scan.

    Counts are derived from ``vulnerabilities`` on access and never stored
    alongside it.
    """

    tool_name: str
    scanned_at: datetime
    vulnerabilities: tuple[Vulnerability, ...] = ()
    raw_output: str = ""

    @classmethod
    def create(
        cls,
        tool_name: str,
        scanned_at: datetime,
        vulnerabilities: Sequence[Vulnerability],
        raw_output: str = "",
        now: datetime | None = None,
        clock_skew: timedelta = DEFAULT_SCAN_CLOCK_SKEW,
    ) -> ScanResult:
        """Build a ScanResult, normalizing the tool name.

        Args:
            tool_name: Tool that produced the scan (normalized to lower case).
            scanned_at: When the scan ran. Naive values are treated as UTC.
            vulnerabilities: Findings reported by the tool.
            raw_output: Opaque raw tool output.
            now: Reference time, defaults to the current UTC time.
            clock_skew: How far in the future ``scanned_at`` may be.

        Raises:
            ValidationError: On an empty tool name or a future timestamp.
        """
        normalized_tool = (tool_name or "").strip().lower()
        if not normalized_tool:
            raise ValidationError(message="Tool name cannot be empty", field="tool_name")

        scanned_at_utc = _as_utc(scanned_at)
        reference = now or _utcnow()
        if scanned_at_utc > reference + clock_skew:
            raise ValidationError(
                message=f"Scan timestamp for '{normalized_tool}' cannot be in the future",
                field="scanned_at",
            )

        return cls(
            tool_name=normalized_tool,
            scanned_at=scanned_at_utc,
            vulnerabilities=tuple(vulnerabilities),
            raw_output=raw_output or "",
        )

    @property
    def counts(self) -> SeverityCounts:
        return SeverityCounts.from_vulnerabilities(self.vulnerabilities)

    @property
    def critical_count(self) -> int:
        return sum(1 for v in self.vulnerabilities if v.severity is Severity.CRITICAL)

    @property
    def high_count(self) -> int:
        return sum(1 for v in self.vulnerabilities if v.severity is Severity.HIGH)

    @property
    def medium_count(self) -> int:
        return sum(1 for v in self.vulnerabilities if v.severity is Severity.MEDIUM)

    @property
    def low_count(self) -> int:
        return sum(1 for v in self.vulnerabilities if v.severity is Severity.LOW)

    @property
    def total_count(self) -> int:
        return len(self.vulnerabilities)


# ---------------------------------------------------------------------------
# Policy decision value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PolicyViolation:
    """A violation as reported by the policy engine."""

    rule: str
    message: str
    severity: str = "medium"
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "rule": self.rule,
            "message": self.message,
            "severity": self.severity,
        }
        if self.details is not None:
            payload["details"] = self.details
        return payload


@dataclass(frozen=True)
class PolicyDecision:
    """The allow/deny outcome of a policy evaluation.

    Invariant: a deny always carries at least one violation message.

    Attributes:
        allowed: Whether the policy engine allowed the release.
        violations: Human-readable violation messages.
        details: Opaque engine details (engine reason, structured violations).
        evaluation_duration_ms: Wall-clock time spent in the policy engine call.
    """

    allowed: bool
    violations: tuple[str, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)
    evaluation_duration_ms: int = 0

    def __post_init__(self) -> None:
        if not self.allowed and not self.violations:
            raise ValueError("Denied decisions must have at least one violation")
        if self.evaluation_duration_ms < 0:
            raise ValueError("Evaluation duration cannot be negative")

    @property
    def reason(self) -> str:
        if self.allowed:
            return "All compliance checks passed"
        if len(self.violations) == 1:
            return self.violations[0]
        return f"{len(self.violations)} policy violations found"


# ---------------------------------------------------------------------------
# Evaluation aggregate
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ComplianceEvaluation:
    """Immutable record combining normalized scan results with a policy decision.

    No mutators exist. A new evaluation is always a new instance, built once
    per evaluate call through ``create``.
    """

    id: uuid.UUID
    application_id: uuid.UUID
    environment: str
    risk_tier: RiskTier
    scan_results: tuple[ScanResult, ...]
    decision: PolicyDecision
    evaluated_at: datetime

    @classmethod
    def create(
        cls,
        application_id: uuid.UUID,
        environment: str,
        risk_tier: RiskTier,
        scan_results: Sequence[ScanResult],
        decision: PolicyDecision,
        evaluated_at: datetime | None = None,
    ) -> ComplianceEvaluation:
        normalized_environment = (environment or "").strip().lower()
        if not normalized_environment:
            raise ValueError("Environment cannot be empty")
        return cls(
            id=uuid.uuid4(),
            application_id=application_id,
            environment=normalized_environment,
            risk_tier=risk_tier,
            scan_results=tuple(scan_results),
            decision=decision,
            evaluated_at=evaluated_at or _utcnow(),
        )

    @property
    def counts(self) -> SeverityCounts:
        """Aggregated counts: the sum of per-ScanResult counts across all tools."""
        return SeverityCounts.sum(sr.counts for sr in self.scan_results)

    @property
    def passed(self) -> bool:
        return self.decision.allowed

    @property
    def is_blocked(self) -> bool:
        return not self.decision.allowed


# ---------------------------------------------------------------------------
# Audit aggregate
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DecisionEvidence:
    """Frozen snapshot of the payloads behind a decision, kept for replay.

    Attributes:
        scan_results_json: Scan results exactly as submitted.
        policy_input_json: Request body sent to the policy engine.
        policy_output_json: Response body received from the policy engine.
        captured_at: When the evidence was captured.
    """

    scan_results_json: str
    policy_input_json: str
    policy_output_json: str
    captured_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if not self.scan_results_json or not self.scan_results_json.strip():
            raise ValueError("Scan results JSON cannot be empty")
        if not self.policy_input_json or not self.policy_input_json.strip():
            raise ValueError("Policy input JSON cannot be empty")
        if not self.policy_output_json or not self.policy_output_json.strip():
            raise ValueError("Policy output JSON cannot be empty")


@dataclass(frozen=True)
class AuditLog:
    """Append-only evidentiary record of one evaluation.

    The application name, environment and risk tier are copied at evaluation
    time so the record stays historically accurate after renames or
    deactivation. No update or delete operation exists anywhere.
    """

    id: uuid.UUID
    evaluation_id: str
    application_id: uuid.UUID
    application_name: str
    environment: str
    risk_tier: str
    allowed: bool
    reason: str
    violations: tuple[str, ...]
    evidence: DecisionEvidence
    evaluation_duration_ms: int
    counts: SeverityCounts
    evaluated_at: datetime

    @classmethod
    def create(
        cls,
        evaluation_id: str,
        application_id: uuid.UUID,
        application_name: str,
        environment: str,
        risk_tier: str,
        allowed: bool,
        reason: str,
        violations: Sequence[str],
        evidence: DecisionEvidence,
        evaluation_duration_ms: int,
        counts: SeverityCounts,
        evaluated_at: datetime,
    ) -> AuditLog:
        """Build a new AuditLog with a fresh id.

        Raises:
            ValueError: If a required field is blank or the duration is negative.
        """
        required = {
            "Evaluation ID": evaluation_id,
            "Application name": application_name,
            "Environment": environment,
            "Risk tier": risk_tier,
            "Reason": reason,
        }
        for label, value in required.items():
            if not value or not value.strip():
                raise ValueError(f"{label} cannot be empty")
        if evaluation_duration_ms < 0:
            raise ValueError("Evaluation duration cannot be negative")

        return cls(
            id=uuid.uuid4(),
            evaluation_id=evaluation_id.strip(),
            application_id=application_id,
            application_name=application_name.strip(),
            environment=environment.strip().lower(),
            risk_tier=risk_tier.strip().lower(),
            allowed=allowed,
            reason=reason.strip(),
            violations=tuple(violations),
            evidence=evidence,
            evaluation_duration_ms=evaluation_duration_ms,
            counts=counts,
            evaluated_at=evaluated_at,
        )

    @property
    def critical_count(self) -> int:
        return self.counts.critical

    @property
    def high_count(self) -> int:
        return self.counts.high

    @property
    def medium_count(self) -> int:
        return self.counts.medium

    @property
    def low_count(self) -> int:
        return self.counts.low

    @property
    def total_vulnerability_count(self) -> int:
        return self.counts.total

    @property
    def is_blocked(self) -> bool:
        return not self.allowed

    @property
    def has_critical_vulnerabilities(self) -> bool:
        return self.counts.critical > 0


@dataclass(frozen=True)
class AuditStatistics:
    """Aggregate view over audit records in a date window."""

    total_evaluations: int
    allowed_count: int
    blocked_count: int
    blocked_percentage: float
    total_critical_vulnerabilities: int
    total_high_vulnerabilities: int
    evaluations_by_environment: dict[str, int]
    evaluations_by_risk_tier: dict[str, int]

    @classmethod
    def from_logs(cls, logs: Iterable[AuditLog]) -> AuditStatistics:
        records = list(logs)
        total = len(records)
        allowed = sum(1 for r in records if r.allowed)
        blocked = total - allowed
        by_environment: dict[str, int] = {}
        by_risk_tier: dict[str, int] = {}
        for record in records:
            by_environment[record.environment] = by_environment.get(record.environment, 0) + 1
            by_risk_tier[record.risk_tier] = by_risk_tier.get(record.risk_tier, 0) + 1
        return cls(
            total_evaluations=total,
            allowed_count=allowed,
            blocked_count=blocked,
            blocked_percentage=(blocked / total * 100) if total else 0.0,
            total_critical_vulnerabilities=sum(r.critical_count for r in records),
            total_high_vulnerabilities=sum(r.high_count for r in records),
            evaluations_by_environment=by_environment,
            evaluations_by_risk_tier=by_risk_tier,
        )


# ---------------------------------------------------------------------------
# Application registry aggregate
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PolicyReference:
    """Reference to a policy package, e.g. ``compliance.production``."""

    package_name: str

    @classmethod
    def parse(cls, value: str) -> PolicyReference:
        """Validate and build a policy reference.

        Raises:
            ValidationError: If the reference has no package separator or a bad length.
        """
        trimmed = (value or "").strip()
        if not trimmed:
            raise ValidationError(message="Policy package name cannot be empty", field="policy_references")
        if "." not in trimmed and "/" not in trimmed:
            raise ValidationError(
                message="Policy reference must contain a package separator (/ or .)",
                field="policy_references",
            )
        if not _POLICY_REFERENCE_MIN <= len(trimmed) <= _POLICY_REFERENCE_MAX:
            raise ValidationError(
                message="Policy reference must be between 3 and 200 characters",
                field="policy_references",
            )
        return cls(package_name=trimmed)

    def __str__(self) -> str:
        return self.package_name


def normalize_environment_name(name: str) -> str:
    """Environment names are matched trimmed and lower-cased."""
    return (name or "").strip().lower()


@dataclass
class EnvironmentConfig:
    """Per-environment compliance configuration for an application.

    Invariant: at least one security tool and one policy reference at all times.
    """

    id: uuid.UUID
    application_id: uuid.UUID
    name: str
    risk_tier: RiskTier
    security_tools: tuple[SecurityTool, ...]
    policy_references: tuple[PolicyReference, ...]
    is_active: bool = True
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        application_id: uuid.UUID,
        name: str,
        risk_tier: RiskTier,
        security_tools: Sequence[SecurityTool],
        policy_references: Sequence[PolicyReference],
        metadata: dict[str, str] | None = None,
    ) -> EnvironmentConfig:
        normalized = normalize_environment_name(name)
        if not normalized:
            raise ValidationError(message="Environment name cannot be empty", field="environment")
        config = cls(
            id=uuid.uuid4(),
            application_id=application_id,
            name=normalized,
            risk_tier=risk_tier,
            security_tools=(),
            policy_references=(),
            metadata=dict(metadata or {}),
        )
        config.update_security_tools(security_tools)
        config.update_policy_references(policy_references)
        return config

    def update_risk_tier(self, risk_tier: RiskTier) -> None:
        self.risk_tier = risk_tier

    def update_security_tools(self, tools: Sequence[SecurityTool]) -> None:
        if not tools:
            raise ValidationError(
                message="At least one security tool must be configured",
                field="security_tools",
            )
        self.security_tools = tuple(dict.fromkeys(tools))

    def update_policy_references(self, references: Sequence[PolicyReference]) -> None:
        if not references:
            raise ValidationError(
                message="At least one policy must be assigned",
                field="policy_references",
            )
        self.policy_references = tuple(references)

    def deactivate(self) -> None:
        self.is_active = False


@dataclass
class Application:
    """Registered application and its environment configurations."""

    id: uuid.UUID
    name: str
    owner: str
    is_active: bool = True
    environments: list[EnvironmentConfig] = field(default_factory=list)

    @classmethod
    def register(cls, name: str, owner: str) -> Application:
        """Register a new active application.

        Raises:
            ValidationError: On a bad name length or a non-email owner.
        """
        trimmed_name = (name or "").strip()
        if not _APPLICATION_NAME_MIN <= len(trimmed_name) <= _APPLICATION_NAME_MAX:
            raise ValidationError(
                message="Application name must be between 3 and 100 characters",
                field="name",
            )
        return cls(id=uuid.uuid4(), name=trimmed_name, owner=_validate_owner(owner))

    def add_environment(self, config: EnvironmentConfig) -> None:
        if config.application_id != self.id:
            raise ValueError("Environment config application ID does not match this application")
        if any(e.name == config.name for e in self.environments):
            raise ValidationError(
                message=f"Environment '{config.name}' already exists",
                field="environment",
            )
        self.environments.append(config)

    def find_environment(self, name: str) -> EnvironmentConfig | None:
        normalized = normalize_environment_name(name)
        return next((e for e in self.environments if e.name == normalized), None)

    def get_environment(self, name: str) -> EnvironmentConfig:
        """Return an environment by (normalized) name.

        Raises:
            NotFoundError: If no environment with that name exists.
        """
        environment = self.find_environment(name)
        if environment is None:
            raise NotFoundError(resource="Environment", resource_id=name)
        return environment

    def get_active_environment(self, name: str) -> EnvironmentConfig:
        """Return an environment that may be evaluated.

        Raises:
            NotFoundError: If the environment is absent or inactive.
        """
        environment = self.get_environment(name)
        if not environment.is_active:
            raise NotFoundError(
                resource="Environment",
                resource_id=name,
                message=f"Environment '{environment.name}' is not active",
            )
        return environment

    def update_owner(self, owner: str) -> None:
        self.owner = _validate_owner(owner)

    def deactivate(self) -> None:
        self.is_active = False


def _validate_owner(owner: str) -> str:
    trimmed = (owner or "").strip()
    if not _EMAIL_PATTERN.match(trimmed):
        raise ValidationError(message="Owner must be a valid email address", field="owner")
    return trimmed
