"""Abstract interfaces (Protocol classes) for the compliance orchestrator.

Defines the contracts between the core services and the adapter layer using
typing.Protocol. Services depend on these protocols, never on concrete
adapters, so the same engine runs against the in-memory adapters in tests
and the SQLAlchemy adapters in production.

Protocols defined:
- IMetricStore                       GRC records read by the core; append path for automation output
- IAssessmentOracle                  external assessment capability
- INotificationChannel               fire-and-forget notification delivery
- IWorkflowDefinitionRepository      workflow_definitions
- IWorkflowExecutionRepository       workflow_executions (compare-and-save writes)
- IMonitoringRuleRepository          monitoring_rules
- IAlertRepository                   monitoring_alerts
- IAutomationRuleRepository          automation_rules and automation_executions
- IRiskAssessmentRepository          integrated risk assessment history
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from aumos_compliance_orchestrator.core.domain import (
    AutomationExecution,
    AutomationRule,
    WorkflowDefinition,
    WorkflowExecution,
)
from aumos_compliance_orchestrator.core.records import (
    AssessmentRequest,
    AssessmentResponse,
    ControlRecord,
    EvidenceRecord,
    Framework,
    IntegratedRiskAssessment,
    MetricSnapshot,
    OracleAssessment,
    RiskControlMapping,
    RiskRecord,
    TestResult,
    ThreatSignal,
)
from aumos_compliance_orchestrator.core.rules import ComplianceAlert, MonitoringRule


class IMetricStore(Protocol):
    """Contract for the GRC metric store.

    Reads cover controls, tests, evidence, risks, threats and mappings. The
    only writes are appends of records produced by automation.
    """

    async def get_control(self, control_id: str) -> ControlRecord:
        """Return a control.

        Raises:
            NotFoundError: If the control does not exist.
        """
        ...

    async def list_controls(
        self,
        framework_id: str | None = None,
        control_ids: tuple[str, ...] | None = None,
    ) -> list[ControlRecord]:
        """List controls, optionally restricted to a framework and/or id set."""
        ...

    async def list_frameworks(self) -> list[Framework]:
        """List compliance frameworks."""
        ...

    async def list_test_results(
        self,
        control_ids: tuple[str, ...] | None = None,
        since: datetime | None = None,
    ) -> list[TestResult]:
        """List test results, newest first."""
        ...

    async def list_evidence(self, control_id: str | None = None) -> list[EvidenceRecord]:
        """List evidence records, newest first."""
        ...

    async def latest_assessments(self, control_ids: tuple[str, ...]) -> dict[str, OracleAssessment]:
        """Return the newest oracle assessment per control id."""
        ...

    async def snapshot(
        self,
        as_of: datetime,
        framework_id: str | None = None,
        control_ids: tuple[str, ...] | None = None,
        lookback_days: int = 30,
    ) -> MetricSnapshot:
        """Build a point-in-time snapshot for the rule evaluator.

        Args:
            as_of: Reference time of the snapshot.
            framework_id: Optional framework scope.
            control_ids: Optional control scope. Empty or None means all in scope.
            lookback_days: How far back test results are included.

        Returns:
            An immutable MetricSnapshot.
        """
        ...

    async def get_risk(self, risk_id: str) -> RiskRecord:
        """Return a risk.

        Raises:
            NotFoundError: If the risk does not exist.
        """
        ...

    async def list_risks(self) -> list[RiskRecord]:
        """List all risks."""
        ...

    async def list_threat_signals(self, risk_id: str | None = None) -> list[ThreatSignal]:
        """List active threat signals, optionally those linked to one risk."""
        ...

    async def list_mappings(
        self,
        risk_id: str | None = None,
        control_id: str | None = None,
    ) -> list[RiskControlMapping]:
        """List risk/control mappings."""
        ...

    async def append_test_result(self, result: TestResult) -> None:
        """Append a test result produced by automation, replacing one with the same result_id."""
        ...

    async def append_evidence(self, evidence: EvidenceRecord) -> None:
        """Append an evidence record produced by automation."""
        ...

    async def append_assessment(self, assessment: OracleAssessment) -> None:
        """Append an oracle assessment produced by automation."""
        ...

    async def append_mapping(self, mapping: RiskControlMapping) -> None:
        """Store a risk/control mapping, replacing any earlier one for the same pair."""
        ...


class IAssessmentOracle(Protocol):
    """Contract for the external assessment capability."""

    async def assess(self, request: AssessmentRequest) -> AssessmentResponse:
        """Assess a control, risk or mapping.

        Args:
            request: Subject identity, assessment type and context.

        Returns:
            A confidence-scored AssessmentResponse.

        Raises:
            OracleUnavailableError: If the oracle fails or times out.
        """
        ...


class INotificationChannel(Protocol):
    """Contract for notification delivery."""

    async def send(self, recipients: tuple[str, ...], subject: str, body: str) -> None:
        """Deliver a notification. Raises on delivery failure."""
        ...


class IWorkflowDefinitionRepository(Protocol):
    """Repository contract for workflow definitions (append-only)."""

    async def add(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Persist a new definition version.

        Raises:
            VersionConflictError: If that version is already stored.
        """
        ...

    async def get(self, definition_id: str, version: int | None = None) -> WorkflowDefinition:
        """Return a definition version, the latest when version is None.

        Raises:
            NotFoundError: If no matching definition exists.
        """
        ...

    async def latest_version(self, definition_id: str) -> int:
        """Return the highest stored version, 0 when none exists."""
        ...

    async def list_latest(self, category: str | None = None) -> list[WorkflowDefinition]:
        """List the latest version of every definition."""
        ...

    async def list_versions(self, definition_id: str) -> list[WorkflowDefinition]:
        """List every version of one definition, oldest first."""
        ...


class IWorkflowExecutionRepository(Protocol):
    """Repository contract for workflow executions."""

    async def create(self, execution: WorkflowExecution) -> WorkflowExecution:
        """Persist a new execution record."""
        ...

    async def get(self, execution_id: str) -> WorkflowExecution:
        """Return an execution.

        Raises:
            NotFoundError: If the execution does not exist.
        """
        ...

    async def compare_and_save(self, execution: WorkflowExecution, expected_status: str) -> bool:
        """Atomically replace an execution if its stored status still matches.

        Args:
            execution: The new full execution record.
            expected_status: Status the stored record must have.

        Returns:
            True when the write was applied, False when another writer won.
        """
        ...

    async def list_executions(
        self,
        definition_id: str | None = None,
        status: str | None = None,
    ) -> list[WorkflowExecution]:
        """List executions, newest first."""
        ...


class IMonitoringRuleRepository(Protocol):
    """Repository contract for monitoring rules."""

    async def add(self, rule: MonitoringRule) -> MonitoringRule:
        """Persist a new rule."""
        ...

    async def get(self, rule_id: str) -> MonitoringRule:
        """Return a rule.

        Raises:
            NotFoundError: If the rule does not exist.
        """
        ...

    async def list_rules(self, active_only: bool = False) -> list[MonitoringRule]:
        """List rules in creation order."""
        ...

    async def set_active(self, rule_id: str, is_active: bool) -> MonitoringRule:
        """Toggle the activation flag, the only mutable field of a rule."""
        ...


class IAlertRepository(Protocol):
    """Repository contract for compliance alerts."""

    async def add(self, alert: ComplianceAlert) -> ComplianceAlert:
        """Persist a new alert."""
        ...

    async def get(self, alert_id: str) -> ComplianceAlert:
        """Return an alert.

        Raises:
            NotFoundError: If the alert does not exist.
        """
        ...

    async def compare_and_save(self, alert: ComplianceAlert, expected_status: str) -> bool:
        """Atomically replace an alert if its stored status still matches."""
        ...

    async def list_recent(self, limit: int = 20, status: str | None = None) -> list[ComplianceAlert]:
        """List alerts ordered by created_at descending."""
        ...

    async def list_since(self, since: datetime) -> list[ComplianceAlert]:
        """List alerts created at or after ``since``."""
        ...

    async def list_resolved_since(self, since: datetime) -> list[ComplianceAlert]:
        """List alerts in status resolved whose resolved_at is at or after ``since``."""
        ...

    async def count(self, status: str | None = None) -> int:
        """Count alerts, optionally in one status."""
        ...


class IAutomationRuleRepository(Protocol):
    """Repository contract for automation rules and their run records."""

    async def add(self, rule: AutomationRule) -> AutomationRule:
        """Persist a new automation rule."""
        ...

    async def get(self, rule_id: str) -> AutomationRule:
        """Return a rule.

        Raises:
            NotFoundError: If the rule does not exist.
        """
        ...

    async def list_rules(self, active_only: bool = False) -> list[AutomationRule]:
        """List rules in creation order."""
        ...

    async def set_active(self, rule_id: str, is_active: bool) -> AutomationRule:
        """Toggle the activation flag."""
        ...

    async def record_outcome(
        self,
        rule_id: str,
        success: bool,
        executed_at: datetime,
        next_execution: datetime | None,
    ) -> AutomationRule:
        """Atomically bump the success or failure counter and the run timestamps."""
        ...

    async def save_execution(self, execution: AutomationExecution) -> AutomationExecution:
        """Insert or replace an automation run record."""
        ...

    async def list_executions(self, rule_id: str, limit: int = 50) -> list[AutomationExecution]:
        """List run records for a rule, newest first."""
        ...


class IRiskAssessmentRepository(Protocol):
    """Repository contract for integrated risk assessment history."""

    async def append(self, assessment: IntegratedRiskAssessment) -> IntegratedRiskAssessment:
        """Append an assessment. Earlier assessments are never overwritten."""
        ...

    async def history(self, risk_id: str) -> list[IntegratedRiskAssessment]:
        """Return every assessment of a risk, oldest first."""
        ...

    async def latest_per_risk(self) -> list[IntegratedRiskAssessment]:
        """Return the newest assessment of every assessed risk."""
        ...
