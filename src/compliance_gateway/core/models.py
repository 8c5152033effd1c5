"""SQLAlchemy ORM rows for the compliance gateway.

All tables use the ``compliance_`` prefix.

Rows:
- ApplicationRow            - registered application (external registry data)
- EnvironmentConfigRow      - per-environment configuration of an application
- ComplianceEvaluationRow   - immutable evaluation record (primary DB)
- AuditLogRow               - append-only audit record (audit DB)

IMPORTANT: AuditLogRow is written ONLY via AuditLogRepository, which uses the
audit session factory. Rows are never updated or deleted.

Mapping between rows and domain objects lives in the repositories.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from compliance_gateway.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class ApplicationRow(Base):
    """Registered application."""

    __tablename__ = "compliance_applications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True, index=True)
    owner: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    environments: Mapped[list["EnvironmentConfigRow"]] = relationship(
        back_populates="application",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="EnvironmentConfigRow.name",
    )


class EnvironmentConfigRow(Base):
    """Per-environment compliance configuration. Unique by (application_id, name)."""

    __tablename__ = "compliance_environment_configs"
    __table_args__ = (UniqueConstraint("application_id", "name", name="uq_environment_per_application"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    application_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("compliance_applications.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Normalized (trimmed, lower-cased) environment name",
    )
    risk_tier: Mapped[str] = mapped_column(String(20), nullable=False)
    security_tools: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    policy_references: Mapped[list[str]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Ordered policy package references; the first one is evaluated",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)

    application: Mapped[ApplicationRow] = relationship(back_populates="environments")


class ComplianceEvaluationRow(Base):
    """Immutable compliance evaluation record.

    Scan results and the policy decision are stored as JSON documents so the
    record reproduces exactly what was evaluated.
    """

    __tablename__ = "compliance_evaluations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    application_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    environment: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    risk_tier: Mapped[str] = mapped_column(String(20), nullable=False)
    scan_results: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False)
    allowed: Mapped[bool] = mapped_column(Boolean, nullable=False, index=True)
    violations: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    decision_details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    evaluation_duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    evaluated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class AuditLogRow(Base):
    """Append-only audit record for one evaluation.

    ``evaluation_id`` is unique: it is the correlation key with the evaluation
    record and makes a retried audit insert idempotent.
    """

    __tablename__ = "compliance_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    evaluation_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    application_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    application_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Application name frozen at evaluation time",
    )
    environment: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    risk_tier: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    allowed: Mapped[bool] = mapped_column(Boolean, nullable=False, index=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    violations: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    scan_results_json: Mapped[str] = mapped_column(Text, nullable=False)
    policy_input_json: Mapped[str] = mapped_column(Text, nullable=False)
    policy_output_json: Mapped[str] = mapped_column(Text, nullable=False)
    evidence_captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    evaluation_duration_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    critical_count: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    high_count: Mapped[int] = mapped_column(Integer, nullable=False)
    medium_count: Mapped[int] = mapped_column(Integer, nullable=False)
    low_count: Mapped[int] = mapped_column(Integer, nullable=False)
    total_vulnerability_count: Mapped[int] = mapped_column(Integer, nullable=False)
    evaluated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
