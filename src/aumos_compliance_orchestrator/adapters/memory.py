"""In-memory adapters for the compliance orchestrator.

Implements every repository protocol plus the metric store with plain
dicts and lists. Each store guards its writes with an asyncio.Lock so a
compare-and-save is a single atomic step and readers never observe a
half-applied update.

Suitable for tests and embedded use. Production deployments use the
SQLAlchemy repositories in adapters/repositories.py with the same
interfaces.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

from aumos_compliance_orchestrator.core.domain import (
    AutomationExecution,
    AutomationRule,
    WorkflowDefinition,
    WorkflowExecution,
)
from aumos_compliance_orchestrator.core.records import (
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
from aumos_compliance_orchestrator.errors import NotFoundError, VersionConflictError


class InMemoryMetricStore:
    """Metric store backed by in-process collections.

    Seed it with ``add_*`` helpers; the core only uses the protocol methods.
    """

    def __init__(self) -> None:
        """Initialize an empty metric store."""
        self._lock = asyncio.Lock()
        self._frameworks: dict[str, Framework] = {}
        self._controls: dict[str, ControlRecord] = {}
        self._tests: list[TestResult] = []
        self._evidence: list[EvidenceRecord] = []
        self._assessments: list[OracleAssessment] = []
        self._risks: dict[str, RiskRecord] = {}
        self._threats: list[ThreatSignal] = []
        self._mappings: list[RiskControlMapping] = []

    # -- seeding ------------------------------------------------------------

    def add_framework(self, framework: Framework) -> None:
        self._frameworks[framework.framework_id] = framework

    def add_control(self, control: ControlRecord) -> None:
        self._controls[control.control_id] = control

    def add_risk(self, risk: RiskRecord) -> None:
        self._risks[risk.risk_id] = risk

    def add_threat_signal(self, signal: ThreatSignal) -> None:
        self._threats.append(signal)

    def add_test_result(self, result: TestResult) -> None:
        self._tests.append(result)

    def add_assessment(self, assessment: OracleAssessment) -> None:
        self._assessments.append(assessment)

    def add_evidence(self, evidence: EvidenceRecord) -> None:
        self._evidence.append(evidence)

    def add_mapping(self, mapping: RiskControlMapping) -> None:
        self._mappings.append(mapping)

    # -- reads --------------------------------------------------------------

    async def get_control(self, control_id: str) -> ControlRecord:
        control = self._controls.get(control_id)
        if control is None:
            raise NotFoundError(resource="Control", resource_id=control_id)
        return control

    async def list_controls(
        self,
        framework_id: str | None = None,
        control_ids: tuple[str, ...] | None = None,
    ) -> list[ControlRecord]:
        controls = list(self._controls.values())
        if framework_id is not None:
            controls = [c for c in controls if c.framework_id == framework_id]
        if control_ids:
            wanted = set(control_ids)
            controls = [c for c in controls if c.control_id in wanted]
        return controls

    async def list_frameworks(self) -> list[Framework]:
        return list(self._frameworks.values())

    async def list_test_results(
        self,
        control_ids: tuple[str, ...] | None = None,
        since: datetime | None = None,
    ) -> list[TestResult]:
        results = list(self._tests)
        if control_ids:
            wanted = set(control_ids)
            results = [r for r in results if r.control_id in wanted]
        if since is not None:
            results = [r for r in results if r.executed_at >= since]
        results.sort(key=lambda r: r.executed_at, reverse=True)
        return results

    async def list_evidence(self, control_id: str | None = None) -> list[EvidenceRecord]:
        records = [e for e in self._evidence if control_id is None or e.control_id == control_id]
        records.sort(key=lambda e: e.collected_at, reverse=True)
        return records

    async def latest_assessments(self, control_ids: tuple[str, ...]) -> dict[str, OracleAssessment]:
        wanted = set(control_ids)
        latest: dict[str, OracleAssessment] = {}
        for assessment in self._assessments:
            if assessment.control_id not in wanted:
                continue
            current = latest.get(assessment.control_id)
            if current is None or assessment.assessed_at >= current.assessed_at:
                latest[assessment.control_id] = assessment
        return latest

    async def snapshot(
        self,
        as_of: datetime,
        framework_id: str | None = None,
        control_ids: tuple[str, ...] | None = None,
        lookback_days: int = 30,
    ) -> MetricSnapshot:
        async with self._lock:
            controls = await self.list_controls(framework_id, control_ids)
            scope = tuple(c.control_id for c in controls)
            tests = [
                t
                for t in await self.list_test_results(scope, since=as_of - timedelta(days=lookback_days))
                if t.executed_at <= as_of
            ]
            assessments = await self.latest_assessments(scope)
        return MetricSnapshot(
            as_of=as_of,
            controls=tuple(controls),
            test_results=tuple(tests),
            assessments=assessments,
        )

    async def get_risk(self, risk_id: str) -> RiskRecord:
        risk = self._risks.get(risk_id)
        if risk is None:
            raise NotFoundError(resource="Risk", resource_id=risk_id)
        return risk

    async def list_risks(self) -> list[RiskRecord]:
        return list(self._risks.values())

    async def list_threat_signals(self, risk_id: str | None = None) -> list[ThreatSignal]:
        return [
            s
            for s in self._threats
            if s.status == "active" and (risk_id is None or risk_id in s.risk_ids)
        ]

    async def list_mappings(
        self,
        risk_id: str | None = None,
        control_id: str | None = None,
    ) -> list[RiskControlMapping]:
        return [
            m
            for m in self._mappings
            if (risk_id is None or m.risk_id == risk_id) and (control_id is None or m.control_id == control_id)
        ]

    # -- appends ------------------------------------------------------------

    async def append_test_result(self, result: TestResult) -> None:
        async with self._lock:
            self._tests = [r for r in self._tests if r.result_id != result.result_id]
            self._tests.append(result)

    async def append_evidence(self, evidence: EvidenceRecord) -> None:
        async with self._lock:
            self._evidence.append(evidence)

    async def append_assessment(self, assessment: OracleAssessment) -> None:
        async with self._lock:
            self._assessments.append(assessment)

    async def append_mapping(self, mapping: RiskControlMapping) -> None:
        async with self._lock:
            self._mappings = [
                m for m in self._mappings if (m.risk_id, m.control_id) != (mapping.risk_id, mapping.control_id)
            ]
            self._mappings.append(mapping)


class InMemoryWorkflowDefinitionRepository:
    """Append-only definition store keyed by (definition_id, version)."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        # { definition_id: [v1, v2, ...] }
        self._versions: dict[str, list[WorkflowDefinition]] = {}

    async def add(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        async with self._lock:
            versions = self._versions.setdefault(definition.definition_id, [])
            if versions and versions[-1].version >= definition.version:
                raise VersionConflictError(
                    f"definition {definition.definition_id} already has version {versions[-1].version}",
                    details={"definition_id": definition.definition_id, "version": definition.version},
                )
            versions.append(definition)
        return definition

    async def get(self, definition_id: str, version: int | None = None) -> WorkflowDefinition:
        versions = self._versions.get(definition_id, [])
        if version is None and versions:
            return versions[-1]
        for definition in versions:
            if definition.version == version:
                return definition
        raise NotFoundError(resource="WorkflowDefinition", resource_id=definition_id)

    async def latest_version(self, definition_id: str) -> int:
        versions = self._versions.get(definition_id)
        return versions[-1].version if versions else 0

    async def list_latest(self, category: str | None = None) -> list[WorkflowDefinition]:
        latest = [versions[-1] for versions in self._versions.values() if versions]
        if category is not None:
            latest = [d for d in latest if d.category == category]
        return latest

    async def list_versions(self, definition_id: str) -> list[WorkflowDefinition]:
        return list(self._versions.get(definition_id, []))


class InMemoryWorkflowExecutionRepository:
    """Execution store with compare-and-save writes."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._executions: dict[str, WorkflowExecution] = {}

    async def create(self, execution: WorkflowExecution) -> WorkflowExecution:
        async with self._lock:
            self._executions[execution.execution_id] = execution
        return execution

    async def get(self, execution_id: str) -> WorkflowExecution:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise NotFoundError(resource="WorkflowExecution", resource_id=execution_id)
        return execution

    async def compare_and_save(self, execution: WorkflowExecution, expected_status: str) -> bool:
        async with self._lock:
            current = self._executions.get(execution.execution_id)
            if current is None or current.status != expected_status:
                return False
            self._executions[execution.execution_id] = execution
            return True

    async def list_executions(
        self,
        definition_id: str | None = None,
        status: str | None = None,
    ) -> list[WorkflowExecution]:
        executions = [
            e
            for e in self._executions.values()
            if (definition_id is None or e.definition_id == definition_id) and (status is None or e.status == status)
        ]
        executions.sort(key=lambda e: e.created_at, reverse=True)
        return executions


class InMemoryMonitoringRuleRepository:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._rules: dict[str, MonitoringRule] = {}

    async def add(self, rule: MonitoringRule) -> MonitoringRule:
        async with self._lock:
            self._rules[rule.rule_id] = rule
        return rule

    async def get(self, rule_id: str) -> MonitoringRule:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise NotFoundError(resource="MonitoringRule", resource_id=rule_id)
        return rule

    async def list_rules(self, active_only: bool = False) -> list[MonitoringRule]:
        return [r for r in self._rules.values() if r.is_active or not active_only]

    async def set_active(self, rule_id: str, is_active: bool) -> MonitoringRule:
        async with self._lock:
            rule = await self.get(rule_id)
            updated = rule.model_copy(update={"is_active": is_active})
            self._rules[rule_id] = updated
        return updated


class InMemoryAlertRepository:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._alerts: dict[str, ComplianceAlert] = {}

    async def add(self, alert: ComplianceAlert) -> ComplianceAlert:
        async with self._lock:
            self._alerts[alert.alert_id] = alert
        return alert

    async def get(self, alert_id: str) -> ComplianceAlert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise NotFoundError(resource="ComplianceAlert", resource_id=alert_id)
        return alert

    async def compare_and_save(self, alert: ComplianceAlert, expected_status: str) -> bool:
        async with self._lock:
            current = self._alerts.get(alert.alert_id)
            if current is None or current.status != expected_status:
                return False
            self._alerts[alert.alert_id] = alert
            return True

    async def list_recent(self, limit: int = 20, status: str | None = None) -> list[ComplianceAlert]:
        alerts = [a for a in self._alerts.values() if status is None or a.status == status]
        alerts.sort(key=lambda a: a.created_at, reverse=True)
        return alerts[:limit]

    async def list_since(self, since: datetime) -> list[ComplianceAlert]:
        return [a for a in self._alerts.values() if a.created_at >= since]

    async def list_resolved_since(self, since: datetime) -> list[ComplianceAlert]:
        return [
            a
            for a in self._alerts.values()
            if a.status == "resolved" and a.resolved_at is not None and a.resolved_at >= since
        ]

    async def count(self, status: str | None = None) -> int:
        return sum(1 for a in self._alerts.values() if status is None or a.status == status)


class InMemoryAutomationRuleRepository:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._rules: dict[str, AutomationRule] = {}
        self._executions: dict[str, AutomationExecution] = {}

    async def add(self, rule: AutomationRule) -> AutomationRule:
        async with self._lock:
            self._rules[rule.rule_id] = rule
        return rule

    async def get(self, rule_id: str) -> AutomationRule:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise NotFoundError(resource="AutomationRule", resource_id=rule_id)
        return rule

    async def list_rules(self, active_only: bool = False) -> list[AutomationRule]:
        return [r for r in self._rules.values() if r.is_active or not active_only]

    async def set_active(self, rule_id: str, is_active: bool) -> AutomationRule:
        async with self._lock:
            rule = await self.get(rule_id)
            updated = rule.model_copy(update={"is_active": is_active})
            self._rules[rule_id] = updated
        return updated

    async def record_outcome(
        self,
        rule_id: str,
        success: bool,
        executed_at: datetime,
        next_execution: datetime | None,
    ) -> AutomationRule:
        async with self._lock:
            rule = await self.get(rule_id)
            counter = "success_count" if success else "failure_count"
            updated = rule.model_copy(
                update={
                    counter: getattr(rule, counter) + 1,
                    "last_executed": executed_at,
                    "next_execution": next_execution,
                }
            )
            self._rules[rule_id] = updated
        return updated

    async def save_execution(self, execution: AutomationExecution) -> AutomationExecution:
        async with self._lock:
            self._executions[execution.execution_id] = execution
        return execution

    async def list_executions(self, rule_id: str, limit: int = 50) -> list[AutomationExecution]:
        runs = [e for e in self._executions.values() if e.rule_id == rule_id]
        runs.sort(key=lambda e: e.started_at, reverse=True)
        return runs[:limit]


class InMemoryRiskAssessmentRepository:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        # { risk_id: [oldest, ..., newest] }
        self._history: dict[str, list[IntegratedRiskAssessment]] = {}

    async def append(self, assessment: IntegratedRiskAssessment) -> IntegratedRiskAssessment:
        async with self._lock:
            self._history.setdefault(assessment.risk_id, []).append(assessment)
        return assessment

    async def history(self, risk_id: str) -> list[IntegratedRiskAssessment]:
        return list(self._history.get(risk_id, []))

    async def latest_per_risk(self) -> list[IntegratedRiskAssessment]:
        return [entries[-1] for entries in self._history.values() if entries]

