"""SQLAlchemy ORM models for the compliance orchestrator.

Each table stores the full pydantic record as a JSON ``payload`` next to the
columns that are queried, indexed or updated atomically. Columns are the
source of truth for the fields they carry; the payload holds the rest.

Orchestrator state:
- WorkflowDefinitionRow     append-only, versioned workflow definitions
- WorkflowExecutionRow      execution records written by compare-and-save
- MonitoringRuleRow         monitoring rules (only is_active mutates)
- ComplianceAlertRow        alerts with lifecycle status
- AutomationRuleRow         automation rules with mutable counters
- AutomationExecutionRow    automation run audit records
- RiskAssessmentRow         integrated risk assessment history

GRC metric store:
- FrameworkRow, ControlRow, TestResultRow, EvidenceRow, OracleAssessmentRow,
  RiskRow, ThreatSignalRow, RiskControlMappingRow
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONPayload = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for every orchestrator table."""


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------


class WorkflowDefinitionRow(Base):
    """One immutable version of a workflow definition.

    Attributes:
        definition_id: Stable identifier shared by all versions.
        version: Monotonically increasing version within definition_id.
        name: Human-readable workflow name.
        category: assessment | remediation | monitoring | certification | audit_prep.
        created_at: Registration time.
        payload: Full WorkflowDefinition.
    """

    __tablename__ = "workflow_definitions"

    definition_id: Mapped[str] = mapped_column(
        String(100),
        primary_key=True,
        comment="Stable identifier shared by all versions of the definition",
    )
    version: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        comment="Version number assigned at registration, starting at 1",
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, comment="Human-readable workflow name")
    category: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        index=True,
        comment="assessment | remediation | monitoring | certification | audit_prep",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="When this version was registered (UTC)",
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONPayload,
        nullable=False,
        comment="Full workflow definition: steps, trigger and approval policy",
    )


class WorkflowExecutionRow(Base):
    """One run of a workflow definition.

    Status transitions are written with ``UPDATE ... WHERE status = expected``
    so a concurrent writer (such as a cancelling supervisor) is never
    overwritten.
    """

    __tablename__ = "workflow_executions"

    execution_id: Mapped[str] = mapped_column(String(36), primary_key=True, comment="Execution UUID")
    definition_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
        comment="Definition this execution runs",
    )
    definition_version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Definition version pinned at launch",
    )
    status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        index=True,
        comment="pending | running | waiting_approval | completed | failed | cancelled",
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONPayload,
        nullable=False,
        comment="Full execution record including per-step results and decisions",
    )


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


class MonitoringRuleRow(Base):
    __tablename__ = "monitoring_rules"

    rule_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    rule_type: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        comment="threshold | anomaly | compliance_drift | certification_expiry | control_failure",
    )
    framework_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="The only field of a rule that changes after creation",
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONPayload,
        nullable=False,
        comment="Full monitoring rule including its typed condition",
    )


class ComplianceAlertRow(Base):
    __tablename__ = "monitoring_alerts"

    alert_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    rule_id: Mapped[str] = mapped_column(
        String(36),
        nullable=False,
        index=True,
        comment="Monitoring or automation rule that raised the alert",
    )
    severity: Mapped[str] = mapped_column(String(20), nullable=False, comment="low | medium | high | critical")
    status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        index=True,
        comment="open | acknowledged | investigating | resolved | false_positive",
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONPayload,
        nullable=False,
        comment="Full alert including trigger data and suggested actions",
    )


# ---------------------------------------------------------------------------
# Automation
# ---------------------------------------------------------------------------


class AutomationRuleRow(Base):
    """Automation rule with counters updated in place by the runner."""

    __tablename__ = "automation_rules"

    rule_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    control_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    rule_type: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        comment="testing | evidence_collection | monitoring | reporting | remediation",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_executed: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_execution: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
        comment="Next cron fire time; NULL for unscheduled rules",
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONPayload,
        nullable=False,
        comment="Rule definition including the parsed automation config",
    )


class AutomationExecutionRow(Base):
    __tablename__ = "automation_executions"

    execution_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    rule_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, comment="running | completed | failed")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONPayload, nullable=False)


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------


class RiskAssessmentRow(Base):
    """Append-only integrated risk assessment history."""

    __tablename__ = "risk_assessments"

    assessment_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    risk_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    integrated_risk_score: Mapped[float] = mapped_column(Float, nullable=False)
    risk_level: Mapped[str] = mapped_column(String(20), nullable=False)
    assessed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONPayload, nullable=False)


# ---------------------------------------------------------------------------
# GRC metric store
# ---------------------------------------------------------------------------


class FrameworkRow(Base):
    __tablename__ = "grc_frameworks"

    framework_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONPayload, nullable=False)


class ControlRow(Base):
    __tablename__ = "grc_controls"

    control_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    framework_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONPayload, nullable=False)


class TestResultRow(Base):
    __test__ = False

    __tablename__ = "grc_test_results"

    result_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    control_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONPayload, nullable=False)


class EvidenceRow(Base):
    __tablename__ = "grc_evidence"

    evidence_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    control_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    collected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONPayload,
        nullable=False,
        comment="Evidence record including location and SHA-256 checksum",
    )


class OracleAssessmentRow(Base):
    __tablename__ = "grc_oracle_assessments"

    assessment_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    control_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    assessed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONPayload, nullable=False)


class RiskRow(Base):
    __tablename__ = "grc_risks"

    risk_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONPayload, nullable=False)


class ThreatSignalRow(Base):
    __tablename__ = "grc_threat_signals"

    signal_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONPayload,
        nullable=False,
        comment="Threat signal including the ids of the risks it relates to",
    )


class RiskControlMappingRow(Base):
    __tablename__ = "grc_risk_control_mappings"

    risk_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    control_id: Mapped[str] = mapped_column(String(100), primary_key=True, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONPayload, nullable=False)
