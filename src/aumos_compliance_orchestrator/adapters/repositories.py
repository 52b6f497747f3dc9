"""SQLAlchemy repositories for the compliance orchestrator.

Each repository implements the corresponding protocol from core/interfaces.py
on top of the tables in core/models.py. A repository call opens its own
session and commits before returning, so every state transition is a single
atomic write. Compare-and-save writes are ``UPDATE ... WHERE status = :expected``
and report whether a row matched.

Repositories:
- SqlWorkflowDefinitionRepository    workflow_definitions
- SqlWorkflowExecutionRepository     workflow_executions
- SqlMonitoringRuleRepository        monitoring_rules
- SqlAlertRepository                 monitoring_alerts
- SqlAutomationRuleRepository        automation_rules, automation_executions
- SqlRiskAssessmentRepository        risk_assessments
- SqlMetricStore                     grc_* tables
"""

from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel
from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aumos_compliance_orchestrator.core.domain import (
    AutomationExecution,
    AutomationRule,
    WorkflowDefinition,
    WorkflowExecution,
)
from aumos_compliance_orchestrator.core.models import (
    AutomationExecutionRow,
    AutomationRuleRow,
    ComplianceAlertRow,
    ControlRow,
    EvidenceRow,
    FrameworkRow,
    MonitoringRuleRow,
    OracleAssessmentRow,
    RiskAssessmentRow,
    RiskControlMappingRow,
    RiskRow,
    TestResultRow,
    ThreatSignalRow,
    WorkflowDefinitionRow,
    WorkflowExecutionRow,
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
from aumos_compliance_orchestrator.observability import get_logger

logger = get_logger(__name__)


def _dump(record: BaseModel) -> dict[str, Any]:
    return record.model_dump(mode="json")


def _aware(value: datetime | None) -> datetime | None:
    """Re-attach UTC to datetimes read back from backends that drop the offset (SQLite)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class _SqlRepository:
    """Holds the session factory shared by every repository."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        """Initialize the repository.

        Args:
            sessions: Session factory from Database.sessions.
        """
        self._sessions = sessions


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------


class SqlWorkflowDefinitionRepository(_SqlRepository):
    """Append-only storage of workflow definition versions."""

    async def add(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        row = WorkflowDefinitionRow(
            definition_id=definition.definition_id,
            version=definition.version,
            name=definition.name,
            category=definition.category,
            created_at=definition.created_at,
            payload=_dump(definition),
        )
        try:
            async with self._sessions.begin() as session:
                session.add(row)
        except IntegrityError as exc:
            raise VersionConflictError(
                f"definition {definition.definition_id} version {definition.version} already exists",
                details={"definition_id": definition.definition_id, "version": definition.version},
            ) from exc
        return definition

    async def get(self, definition_id: str, version: int | None = None) -> WorkflowDefinition:
        stmt = select(WorkflowDefinitionRow).where(WorkflowDefinitionRow.definition_id == definition_id)
        if version is not None:
            stmt = stmt.where(WorkflowDefinitionRow.version == version)
        stmt = stmt.order_by(WorkflowDefinitionRow.version.desc()).limit(1)
        async with self._sessions() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise NotFoundError(
                resource="WorkflowDefinition",
                resource_id=definition_id if version is None else f"{definition_id}@v{version}",
            )
        return WorkflowDefinition.model_validate(row.payload)

    async def latest_version(self, definition_id: str) -> int:
        stmt = select(func.max(WorkflowDefinitionRow.version)).where(
            WorkflowDefinitionRow.definition_id == definition_id
        )
        async with self._sessions() as session:
            return (await session.execute(stmt)).scalar() or 0

    async def list_latest(self, category: str | None = None) -> list[WorkflowDefinition]:
        latest = (
            select(
                WorkflowDefinitionRow.definition_id,
                func.max(WorkflowDefinitionRow.version).label("version"),
            )
            .group_by(WorkflowDefinitionRow.definition_id)
            .subquery()
        )
        stmt = select(WorkflowDefinitionRow).join(
            latest,
            and_(
                WorkflowDefinitionRow.definition_id == latest.c.definition_id,
                WorkflowDefinitionRow.version == latest.c.version,
            ),
        )
        if category:
            stmt = stmt.where(WorkflowDefinitionRow.category == category)
        stmt = stmt.order_by(WorkflowDefinitionRow.created_at)
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [WorkflowDefinition.model_validate(row.payload) for row in rows]

    async def list_versions(self, definition_id: str) -> list[WorkflowDefinition]:
        stmt = (
            select(WorkflowDefinitionRow)
            .where(WorkflowDefinitionRow.definition_id == definition_id)
            .order_by(WorkflowDefinitionRow.version)
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [WorkflowDefinition.model_validate(row.payload) for row in rows]


class SqlWorkflowExecutionRepository(_SqlRepository):
    """Execution records with compare-and-save status transitions."""

    async def create(self, execution: WorkflowExecution) -> WorkflowExecution:
        async with self._sessions.begin() as session:
            session.add(
                WorkflowExecutionRow(
                    execution_id=execution.execution_id,
                    definition_id=execution.definition_id,
                    definition_version=execution.definition_version,
                    status=execution.status,
                    created_at=execution.created_at,
                    updated_at=execution.updated_at,
                    payload=_dump(execution),
                )
            )
        return execution

    async def get(self, execution_id: str) -> WorkflowExecution:
        async with self._sessions() as session:
            row = await session.get(WorkflowExecutionRow, execution_id)
        if row is None:
            raise NotFoundError(resource="WorkflowExecution", resource_id=execution_id)
        return WorkflowExecution.model_validate(row.payload)

    async def compare_and_save(self, execution: WorkflowExecution, expected_status: str) -> bool:
        stmt = (
            update(WorkflowExecutionRow)
            .where(
                WorkflowExecutionRow.execution_id == execution.execution_id,
                WorkflowExecutionRow.status == expected_status,
            )
            .values(status=execution.status, updated_at=execution.updated_at, payload=_dump(execution))
        )
        async with self._sessions.begin() as session:
            result = await session.execute(stmt)
        applied = result.rowcount == 1
        if not applied:
            logger.debug(
                "Execution write rejected",
                execution_id=execution.execution_id,
                expected_status=expected_status,
            )
        return applied

    async def list_executions(
        self,
        definition_id: str | None = None,
        status: str | None = None,
    ) -> list[WorkflowExecution]:
        stmt = select(WorkflowExecutionRow)
        if definition_id:
            stmt = stmt.where(WorkflowExecutionRow.definition_id == definition_id)
        if status:
            stmt = stmt.where(WorkflowExecutionRow.status == status)
        stmt = stmt.order_by(WorkflowExecutionRow.created_at.desc())
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [WorkflowExecution.model_validate(row.payload) for row in rows]


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


def _monitoring_rule(row: MonitoringRuleRow) -> MonitoringRule:
    return MonitoringRule.model_validate({**row.payload, "is_active": row.is_active})


class SqlMonitoringRuleRepository(_SqlRepository):
    async def add(self, rule: MonitoringRule) -> MonitoringRule:
        async with self._sessions.begin() as session:
            session.add(
                MonitoringRuleRow(
                    rule_id=rule.rule_id,
                    rule_type=rule.rule_type,
                    framework_id=rule.framework_id,
                    is_active=rule.is_active,
                    created_at=rule.created_at,
                    payload=_dump(rule),
                )
            )
        return rule

    async def get(self, rule_id: str) -> MonitoringRule:
        async with self._sessions() as session:
            row = await session.get(MonitoringRuleRow, rule_id)
        if row is None:
            raise NotFoundError(resource="MonitoringRule", resource_id=rule_id)
        return _monitoring_rule(row)

    async def list_rules(self, active_only: bool = False) -> list[MonitoringRule]:
        stmt = select(MonitoringRuleRow).order_by(MonitoringRuleRow.created_at)
        if active_only:
            stmt = stmt.where(MonitoringRuleRow.is_active.is_(True))
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_monitoring_rule(row) for row in rows]

    async def set_active(self, rule_id: str, is_active: bool) -> MonitoringRule:
        async with self._sessions.begin() as session:
            result = await session.execute(
                update(MonitoringRuleRow).where(MonitoringRuleRow.rule_id == rule_id).values(is_active=is_active)
            )
        if result.rowcount == 0:
            raise NotFoundError(resource="MonitoringRule", resource_id=rule_id)
        return await self.get(rule_id)


class SqlAlertRepository(_SqlRepository):
    async def add(self, alert: ComplianceAlert) -> ComplianceAlert:
        async with self._sessions.begin() as session:
            session.add(
                ComplianceAlertRow(
                    alert_id=alert.alert_id,
                    rule_id=alert.rule_id,
                    severity=alert.severity,
                    status=alert.status,
                    created_at=alert.created_at,
                    resolved_at=alert.resolved_at,
                    payload=_dump(alert),
                )
            )
        return alert

    async def get(self, alert_id: str) -> ComplianceAlert:
        async with self._sessions() as session:
            row = await session.get(ComplianceAlertRow, alert_id)
        if row is None:
            raise NotFoundError(resource="ComplianceAlert", resource_id=alert_id)
        return ComplianceAlert.model_validate(row.payload)

    async def compare_and_save(self, alert: ComplianceAlert, expected_status: str) -> bool:
        stmt = (
            update(ComplianceAlertRow)
            .where(ComplianceAlertRow.alert_id == alert.alert_id, ComplianceAlertRow.status == expected_status)
            .values(status=alert.status, resolved_at=alert.resolved_at, payload=_dump(alert))
        )
        async with self._sessions.begin() as session:
            result = await session.execute(stmt)
        return result.rowcount == 1

    async def list_recent(self, limit: int = 20, status: str | None = None) -> list[ComplianceAlert]:
        stmt = select(ComplianceAlertRow)
        if status:
            stmt = stmt.where(ComplianceAlertRow.status == status)
        stmt = stmt.order_by(ComplianceAlertRow.created_at.desc()).limit(limit)
        return await self._fetch(stmt)

    async def list_since(self, since: datetime) -> list[ComplianceAlert]:
        return await self._fetch(select(ComplianceAlertRow).where(ComplianceAlertRow.created_at >= since))

    async def list_resolved_since(self, since: datetime) -> list[ComplianceAlert]:
        stmt = select(ComplianceAlertRow).where(
            ComplianceAlertRow.status == "resolved",
            ComplianceAlertRow.resolved_at >= since,
        )
        return await self._fetch(stmt)

    async def count(self, status: str | None = None) -> int:
        stmt = select(func.count()).select_from(ComplianceAlertRow)
        if status:
            stmt = stmt.where(ComplianceAlertRow.status == status)
        async with self._sessions() as session:
            return (await session.execute(stmt)).scalar_one()

    async def _fetch(self, stmt: Any) -> list[ComplianceAlert]:
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [ComplianceAlert.model_validate(row.payload) for row in rows]


# ---------------------------------------------------------------------------
# Automation
# ---------------------------------------------------------------------------


def _automation_rule(row: AutomationRuleRow) -> AutomationRule:
    return AutomationRule.model_validate(
        {
            **row.payload,
            "is_active": row.is_active,
            "success_count": row.success_count,
            "failure_count": row.failure_count,
            "last_executed": _aware(row.last_executed),
            "next_execution": _aware(row.next_execution),
        }
    )


class SqlAutomationRuleRepository(_SqlRepository):
    """Automation rules and their run records.

    Counters and run timestamps live in columns and are bumped in a single
    UPDATE, so concurrent runners never lose an increment.
    """

    async def add(self, rule: AutomationRule) -> AutomationRule:
        async with self._sessions.begin() as session:
            session.add(
                AutomationRuleRow(
                    rule_id=rule.rule_id,
                    control_id=rule.control_id,
                    rule_type=rule.rule_type,
                    is_active=rule.is_active,
                    success_count=rule.success_count,
                    failure_count=rule.failure_count,
                    last_executed=rule.last_executed,
                    next_execution=rule.next_execution,
                    created_at=rule.created_at,
                    payload=_dump(rule),
                )
            )
        return rule

    async def get(self, rule_id: str) -> AutomationRule:
        async with self._sessions() as session:
            row = await session.get(AutomationRuleRow, rule_id)
        if row is None:
            raise NotFoundError(resource="AutomationRule", resource_id=rule_id)
        return _automation_rule(row)

    async def list_rules(self, active_only: bool = False) -> list[AutomationRule]:
        stmt = select(AutomationRuleRow).order_by(AutomationRuleRow.created_at)
        if active_only:
            stmt = stmt.where(AutomationRuleRow.is_active.is_(True))
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_automation_rule(row) for row in rows]

    async def set_active(self, rule_id: str, is_active: bool) -> AutomationRule:
        return await self._update(rule_id, is_active=is_active)

    async def record_outcome(
        self,
        rule_id: str,
        success: bool,
        executed_at: datetime,
        next_execution: datetime | None,
    ) -> AutomationRule:
        counter = AutomationRuleRow.success_count if success else AutomationRuleRow.failure_count
        return await self._update(
            rule_id,
            **{counter.key: counter + 1, "last_executed": executed_at, "next_execution": next_execution},
        )

    async def _update(self, rule_id: str, **values: Any) -> AutomationRule:
        async with self._sessions.begin() as session:
            result = await session.execute(
                update(AutomationRuleRow).where(AutomationRuleRow.rule_id == rule_id).values(**values)
            )
        if result.rowcount == 0:
            raise NotFoundError(resource="AutomationRule", resource_id=rule_id)
        return await self.get(rule_id)

    async def save_execution(self, execution: AutomationExecution) -> AutomationExecution:
        async with self._sessions.begin() as session:
            await session.merge(
                AutomationExecutionRow(
                    execution_id=execution.execution_id,
                    rule_id=execution.rule_id,
                    status=execution.status,
                    started_at=execution.started_at,
                    payload=_dump(execution),
                )
            )
        return execution

    async def list_executions(self, rule_id: str, limit: int = 50) -> list[AutomationExecution]:
        stmt = (
            select(AutomationExecutionRow)
            .where(AutomationExecutionRow.rule_id == rule_id)
            .order_by(AutomationExecutionRow.started_at.desc())
            .limit(limit)
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [AutomationExecution.model_validate(row.payload) for row in rows]


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------


class SqlRiskAssessmentRepository(_SqlRepository):
    async def append(self, assessment: IntegratedRiskAssessment) -> IntegratedRiskAssessment:
        async with self._sessions.begin() as session:
            session.add(
                RiskAssessmentRow(
                    assessment_id=assessment.assessment_id,
                    risk_id=assessment.risk_id,
                    integrated_risk_score=assessment.integrated_risk_score,
                    risk_level=assessment.risk_level,
                    assessed_at=assessment.assessed_at,
                    payload=_dump(assessment),
                )
            )
        return assessment

    async def history(self, risk_id: str) -> list[IntegratedRiskAssessment]:
        stmt = (
            select(RiskAssessmentRow)
            .where(RiskAssessmentRow.risk_id == risk_id)
            .order_by(RiskAssessmentRow.assessed_at)
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [IntegratedRiskAssessment.model_validate(row.payload) for row in rows]

    async def latest_per_risk(self) -> list[IntegratedRiskAssessment]:
        latest = (
            select(RiskAssessmentRow.risk_id, func.max(RiskAssessmentRow.assessed_at).label("assessed_at"))
            .group_by(RiskAssessmentRow.risk_id)
            .subquery()
        )
        stmt = select(RiskAssessmentRow).join(
            latest,
            and_(
                RiskAssessmentRow.risk_id == latest.c.risk_id,
                RiskAssessmentRow.assessed_at == latest.c.assessed_at,
            ),
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        newest: dict[str, IntegratedRiskAssessment] = {}
        for row in rows:
            newest[row.risk_id] = IntegratedRiskAssessment.model_validate(row.payload)
        return list(newest.values())


# ---------------------------------------------------------------------------
# GRC metric store
# ---------------------------------------------------------------------------


class SqlMetricStore(_SqlRepository):
    """Metric store over the grc_* tables.

    Besides the IMetricStore protocol it offers ``upsert_*`` intake methods
    used by the GRC application to publish frameworks, controls, risks and
    threat signals into the orchestrator.
    """

    # -- intake -------------------------------------------------------------

    async def upsert_framework(self, framework: Framework) -> Framework:
        async with self._sessions.begin() as session:
            await session.merge(FrameworkRow(framework_id=framework.framework_id, payload=_dump(framework)))
        return framework

    async def upsert_control(self, control: ControlRecord) -> ControlRecord:
        async with self._sessions.begin() as session:
            await session.merge(
                ControlRow(control_id=control.control_id, framework_id=control.framework_id, payload=_dump(control))
            )
        return control

    async def upsert_risk(self, risk: RiskRecord) -> RiskRecord:
        async with self._sessions.begin() as session:
            await session.merge(RiskRow(risk_id=risk.risk_id, payload=_dump(risk)))
        return risk

    async def upsert_threat_signal(self, signal: ThreatSignal) -> ThreatSignal:
        async with self._sessions.begin() as session:
            await session.merge(ThreatSignalRow(signal_id=signal.signal_id, status=signal.status, payload=_dump(signal)))
        return signal

    # -- reads --------------------------------------------------------------

    async def get_control(self, control_id: str) -> ControlRecord:
        async with self._sessions() as session:
            row = await session.get(ControlRow, control_id)
        if row is None:
            raise NotFoundError(resource="Control", resource_id=control_id)
        return ControlRecord.model_validate(row.payload)

    async def list_controls(
        self,
        framework_id: str | None = None,
        control_ids: tuple[str, ...] | None = None,
    ) -> list[ControlRecord]:
        stmt = select(ControlRow).order_by(ControlRow.control_id)
        if framework_id is not None:
            stmt = stmt.where(ControlRow.framework_id == framework_id)
        if control_ids:
            stmt = stmt.where(ControlRow.control_id.in_(control_ids))
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [ControlRecord.model_validate(row.payload) for row in rows]

    async def list_frameworks(self) -> list[Framework]:
        async with self._sessions() as session:
            rows = (await session.execute(select(FrameworkRow).order_by(FrameworkRow.framework_id))).scalars().all()
        return [Framework.model_validate(row.payload) for row in rows]

    async def list_test_results(
        self,
        control_ids: tuple[str, ...] | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[TestResult]:
        stmt = select(TestResultRow)
        if control_ids:
            stmt = stmt.where(TestResultRow.control_id.in_(control_ids))
        if since is not None:
            stmt = stmt.where(TestResultRow.executed_at >= since)
        if until is not None:
            stmt = stmt.where(TestResultRow.executed_at <= until)
        stmt = stmt.order_by(TestResultRow.executed_at.desc())
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [TestResult.model_validate(row.payload) for row in rows]

    async def list_evidence(self, control_id: str | None = None) -> list[EvidenceRecord]:
        stmt = select(EvidenceRow)
        if control_id is not None:
            stmt = stmt.where(EvidenceRow.control_id == control_id)
        stmt = stmt.order_by(EvidenceRow.collected_at.desc())
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [EvidenceRecord.model_validate(row.payload) for row in rows]

    async def latest_assessments(self, control_ids: tuple[str, ...]) -> dict[str, OracleAssessment]:
        if not control_ids:
            return {}
        stmt = (
            select(OracleAssessmentRow)
            .where(OracleAssessmentRow.control_id.in_(control_ids))
            .order_by(OracleAssessmentRow.assessed_at)
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        # Ascending order: later rows overwrite earlier ones
        return {row.control_id: OracleAssessment.model_validate(row.payload) for row in rows}

    async def snapshot(
        self,
        as_of: datetime,
        framework_id: str | None = None,
        control_ids: tuple[str, ...] | None = None,
        lookback_days: int = 30,
    ) -> MetricSnapshot:
        controls = await self.list_controls(framework_id, control_ids)
        scope = tuple(c.control_id for c in controls)
        tests: list[TestResult] = []
        if scope:
            tests = await self.list_test_results(scope, since=as_of - timedelta(days=lookback_days), until=as_of)
        return MetricSnapshot(
            as_of=as_of,
            controls=tuple(controls),
            test_results=tuple(tests),
            assessments=await self.latest_assessments(scope),
        )

    async def get_risk(self, risk_id: str) -> RiskRecord:
        async with self._sessions() as session:
            row = await session.get(RiskRow, risk_id)
        if row is None:
            raise NotFoundError(resource="Risk", resource_id=risk_id)
        return RiskRecord.model_validate(row.payload)

    async def list_risks(self) -> list[RiskRecord]:
        async with self._sessions() as session:
            rows = (await session.execute(select(RiskRow).order_by(RiskRow.risk_id))).scalars().all()
        return [RiskRecord.model_validate(row.payload) for row in rows]

    async def list_threat_signals(self, risk_id: str | None = None) -> list[ThreatSignal]:
        stmt = select(ThreatSignalRow).where(ThreatSignalRow.status == "active")
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        signals = [ThreatSignal.model_validate(row.payload) for row in rows]
        if risk_id is not None:
            signals = [s for s in signals if risk_id in s.risk_ids]
        return signals

    async def list_mappings(
        self,
        risk_id: str | None = None,
        control_id: str | None = None,
    ) -> list[RiskControlMapping]:
        stmt = select(RiskControlMappingRow)
        if risk_id is not None:
            stmt = stmt.where(RiskControlMappingRow.risk_id == risk_id)
        if control_id is not None:
            stmt = stmt.where(RiskControlMappingRow.control_id == control_id)
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [RiskControlMapping.model_validate(row.payload) for row in rows]

    # -- appends ------------------------------------------------------------

    async def append_test_result(self, result: TestResult) -> None:
        async with self._sessions.begin() as session:
            await session.merge(
                TestResultRow(
                    result_id=result.result_id,
                    control_id=result.control_id,
                    executed_at=result.executed_at,
                    payload=_dump(result),
                )
            )

    async def append_evidence(self, evidence: EvidenceRecord) -> None:
        async with self._sessions.begin() as session:
            session.add(
                EvidenceRow(
                    evidence_id=evidence.evidence_id,
                    control_id=evidence.control_id,
                    collected_at=evidence.collected_at,
                    payload=_dump(evidence),
                )
            )

    async def append_assessment(self, assessment: OracleAssessment) -> None:
        async with self._sessions.begin() as session:
            session.add(
                OracleAssessmentRow(
                    assessment_id=assessment.assessment_id,
                    control_id=assessment.control_id,
                    assessed_at=assessment.assessed_at,
                    payload=_dump(assessment),
                )
            )

    async def append_mapping(self, mapping: RiskControlMapping) -> None:
        """Store a mapping, replacing an earlier one for the same risk/control pair."""
        async with self._sessions.begin() as session:
            await session.merge(
                RiskControlMappingRow(risk_id=mapping.risk_id, control_id=mapping.control_id, payload=_dump(mapping))
            )
