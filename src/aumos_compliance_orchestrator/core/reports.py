"""Aggregated views produced by the GRC orchestrator."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from aumos_compliance_orchestrator.core.domain import ExecutionResult
from aumos_compliance_orchestrator.core.rules import MonitoringMetrics

Trend = Literal["increasing", "decreasing", "stable"]


class RiskMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_risks: int
    assessed_risks: int
    critical_risks: int
    high_risks: int
    average_risk_score: float
    risk_trend: Trend = "stable"


class ComplianceMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_frameworks: int
    total_controls: int
    implemented_controls: int
    compliance_percentage: float


class ThreatMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    active_threat_feeds: int
    threat_indicators: int
    high_severity_threats: int


class IntegrationMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    mapped_risk_controls: int
    oracle_generated_mappings: int
    mapping_coverage: float = Field(description="Percentage of risks with at least one mapped control")
    oracle_assessments: int
    active_automation_rules: int


class GRCDashboard(BaseModel):
    """Cross-module dashboard: risk, compliance, threat, integration and monitoring."""

    model_config = ConfigDict(frozen=True)

    generated_at: datetime
    risk: RiskMetrics
    compliance: ComplianceMetrics
    threat: ThreatMetrics
    integration: IntegrationMetrics
    monitoring: MonitoringMetrics


class ComplianceReport(BaseModel):
    """Readiness summary for one framework."""

    model_config = ConfigDict(frozen=True)

    framework_id: str
    generated_at: datetime
    period_days: int
    total_controls: int
    implemented_controls: int
    readiness_percentage: float
    status_breakdown: dict[str, int]
    tests_run: int
    test_pass_rate: float
    evidence_collected: int
    controls_assessed: int
    average_assessed_progress: float | None = None
    controls_needing_attention: tuple[str, ...] = ()


class ThreatControlAlignment(BaseModel):
    """How well one control answers one threat signal."""

    model_config = ConfigDict(frozen=True)

    signal_id: str
    control_id: str
    alignment_score: float = Field(ge=0.0, le=100.0)
    mitigation_effectiveness: float
    threat_category: str
    control_category: str
    recommendation: str


class TriggerDispatch(BaseModel):
    """What an inbound trigger was routed to."""

    model_config = ConfigDict(frozen=True)

    target_type: Literal["workflow", "automation_rule", "monitoring_rule"]
    target_id: str
    execution_id: str | None = None
    result: ExecutionResult | None = None
    alert_ids: tuple[str, ...] = ()


class TickSummary(BaseModel):
    """Work launched by one scheduler tick."""

    model_config = ConfigDict(frozen=True)

    ran_at: datetime
    workflow_executions: dict[str, str] = Field(
        default_factory=dict,
        description="Execution id per scheduled definition id",
    )
    automation_results: dict[str, ExecutionResult] = Field(default_factory=dict)
    monitoring_alerts: dict[str, int] = Field(
        default_factory=dict,
        description="Alerts raised per evaluated monitoring rule id",
    )