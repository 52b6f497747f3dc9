"""Monitoring rules and compliance alerts.

A monitoring rule's condition is a tagged union on ``rule_type``. Each
condition carries its own thresholds; the defaults match the settings
defaults and are operational tuning values.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from aumos_compliance_orchestrator.core.domain import Severity, new_id, utc_now

AlertStatus = Literal["open", "acknowledged", "investigating", "resolved", "false_positive"]
MonitoringRuleType = Literal[
    "threshold",
    "anomaly",
    "compliance_drift",
    "certification_expiry",
    "control_failure",
]


class ThresholdCondition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    rule_type: Literal["threshold"] = "threshold"
    min_implementation_progress: float = Field(default=70.0, gt=0.0)
    max_test_failures: int = Field(default=5, gt=0)
    lookback_days: int = Field(default=7, gt=0)


class AnomalyCondition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    rule_type: Literal["anomaly"] = "anomaly"
    anomaly_threshold: float = Field(default=0.2, gt=0.0)
    history_days: int = Field(default=30, gt=0)
    min_history_days: int = Field(default=7, gt=0)
    trailing_window_days: int = Field(default=7, gt=0)


class ComplianceDriftCondition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    rule_type: Literal["compliance_drift"] = "compliance_drift"
    max_drift: float = Field(default=15.0, gt=0.0)
    high_severity_drift: float = Field(default=25.0, gt=0.0)
    min_record_age_days: int = Field(default=7, ge=0)


class CertificationReadinessCondition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    rule_type: Literal["certification_expiry"] = "certification_expiry"
    required_readiness: float = Field(default=95.0, gt=0.0, le=100.0)
    critical_below: float = Field(default=80.0, ge=0.0, le=100.0)


class ControlFailureCondition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    rule_type: Literal["control_failure"] = "control_failure"
    max_consecutive_failures: int = Field(default=3, gt=0)
    window_days: int = Field(default=7, gt=0)


MonitoringCondition = Annotated[
    ThresholdCondition
    | AnomalyCondition
    | ComplianceDriftCondition
    | CertificationReadinessCondition
    | ControlFailureCondition,
    Field(discriminator="rule_type"),
]


class MonitoringRule(BaseModel):
    """Standing condition evaluated on a cadence against stored metrics.

    Immutable after creation apart from ``is_active``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    rule_id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1)
    description: str = ""
    framework_id: str | None = None
    control_ids: tuple[str, ...] = Field(default=(), description="Empty monitors every control in scope")
    condition: MonitoringCondition
    check_frequency_seconds: int = Field(default=3600, gt=0)
    is_active: bool = True
    created_by: str = "system"
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def rule_type(self) -> str:
        return self.condition.rule_type


class AlertCandidate(BaseModel):
    """Alert produced by the rule evaluator, before it is persisted."""

    model_config = ConfigDict(frozen=True)

    rule_id: str
    alert_type: str
    severity: Severity
    title: str
    description: str
    trigger_data: dict[str, Any] = Field(default_factory=dict, description="Exact values behind the decision")
    affected_controls: tuple[str, ...] = ()
    risk_assessment: dict[str, Any] = Field(default_factory=dict)
    suggested_actions: tuple[str, ...] = ()


class ComplianceAlert(AlertCandidate):
    """Persisted alert with a lifecycle managed by the alert manager."""

    alert_id: str = Field(default_factory=new_id)
    status: AlertStatus = "open"
    created_at: datetime = Field(default_factory=utc_now)
    acknowledged_at: datetime | None = None
    resolved_at: datetime | None = None
    status_changed_by: str | None = None


class MonitoringMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_rules: int = 0
    active_rules: int = 0
    open_alerts: int = 0
    alerts_last_24h: int = 0
    critical_alerts_last_24h: int = 0
    alerts_by_severity: dict[str, int] = Field(default_factory=dict)
    average_resolution_minutes: float = 0.0
    monitoring_coverage: float = 0.0
