"""GRC orchestrator, the facade that composes the compliance services.

Responsibilities:
- Integrated risk assessment: scoring plus append-only history
- Risk/control mapping, by hand or suggested by the assessment oracle
- Threat/control alignment analysis
- Dashboard and per-framework compliance report aggregation
- Trigger intake: ``on_trigger`` is the single entry point for scheduled
  and event-driven invocation, ``on_event`` fans an event out to the
  subscribed workflows, ``tick`` runs everything that is due
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

import pydantic

from aumos_compliance_orchestrator.automation.runner import AutomationRuleRunner
from aumos_compliance_orchestrator.automation.schedule import is_due
from aumos_compliance_orchestrator.core.domain import TriggerSource, utc_now
from aumos_compliance_orchestrator.core.interfaces import (
    IAssessmentOracle,
    IMetricStore,
    IRiskAssessmentRepository,
)
from aumos_compliance_orchestrator.core.records import (
    AssessmentRequest,
    ControlRecord,
    IntegratedRiskAssessment,
    RiskControlMapping,
    RiskRecord,
    ThreatSignal,
)
from aumos_compliance_orchestrator.core.reports import (
    ComplianceMetrics,
    ComplianceReport,
    GRCDashboard,
    IntegrationMetrics,
    RiskMetrics,
    ThreatControlAlignment,
    ThreatMetrics,
    TickSummary,
    TriggerDispatch,
    Trend,
)
from aumos_compliance_orchestrator.errors import NotFoundError, ValidationError
from aumos_compliance_orchestrator.monitoring.alerts import AlertManager
from aumos_compliance_orchestrator.monitoring.engine import MonitoringEngine
from aumos_compliance_orchestrator.observability import get_logger
from aumos_compliance_orchestrator.scoring.risk_scorer import score_risk
from aumos_compliance_orchestrator.workflow.executor import WorkflowExecutor
from aumos_compliance_orchestrator.workflow.registry import WorkflowRegistry

logger = get_logger(__name__)

# Oracle relevance above which a suggested mapping is stored
MAPPING_RELEVANCE_THRESHOLD = 0.7

# Alignment score above which a threat/control pair is reported
ALIGNMENT_THRESHOLD = 50.0

# Mean change of integrated score between the last two assessments that counts as a trend
_TREND_TOLERANCE = 1.0

_REPORT_PERIOD_DAYS = 30


def alignment_score(signal: ThreatSignal, control: ControlRecord) -> float:
    """Score how well a control answers a threat signal, 0..100.

    Category match adds 30, a preventive control against a high or critical
    signal adds 25, a detective control against an indicator adds 20, an
    implemented control adds 20 and a passing test status adds 15.
    """
    score = 0.0
    if signal.category and signal.category == control.category:
        score += 30
    if control.control_type == "preventive" and signal.severity in ("high", "critical"):
        score += 25
    if control.control_type == "detective" and signal.signal_type == "indicator":
        score += 20
    if control.is_implemented:
        score += 20
    if control.test_status == "passed":
        score += 15
    return min(100.0, score)


class GRCOrchestrator:
    """Composes registry, executor, monitoring, automation and risk scoring.

    Args:
        registry: Workflow definitions.
        executor: Workflow executions.
        monitoring: Continuous monitoring engine.
        alerts: Alert manager shared with monitoring and automation.
        automation: Automation rule runner.
        metric_store: GRC records.
        oracle: Assessment oracle used for mapping suggestions.
        risk_assessments: Integrated risk assessment history.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        registry: WorkflowRegistry,
        executor: WorkflowExecutor,
        monitoring: MonitoringEngine,
        alerts: AlertManager,
        automation: AutomationRuleRunner,
        metric_store: IMetricStore,
        oracle: IAssessmentOracle,
        risk_assessments: IRiskAssessmentRepository,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.registry = registry
        self.executor = executor
        self.monitoring = monitoring
        self.alerts = alerts
        self.automation = automation
        self._metric_store = metric_store
        self._oracle = oracle
        self._risk_assessments = risk_assessments
        self._clock = clock
        self._last_scheduled: dict[str, datetime] = {}

    # ------------------------------------------------------------------
    # Risk
    # ------------------------------------------------------------------

    async def assess_risk(self, risk_id: str) -> IntegratedRiskAssessment:
        """Score a risk and append the result to its history.

        Raises:
            NotFoundError: If the risk does not exist.
        """
        risk = await self._metric_store.get_risk(risk_id)
        signals = await self._metric_store.list_threat_signals(risk_id)
        mappings = await self._metric_store.list_mappings(risk_id=risk_id)
        controls = await self._metric_store.list_controls(control_ids=tuple(m.control_id for m in mappings))
        state = {c.control_id: c.implementation_status for c in controls}

        assessment = score_risk(risk, signals, mappings, state, assessed_at=self._clock())
        await self._risk_assessments.append(assessment)
        logger.info(
            "Integrated risk assessed",
            risk_id=risk_id,
            integrated_risk_score=assessment.integrated_risk_score,
            risk_level=assessment.risk_level,
            priority_score=assessment.priority_score,
        )
        return assessment

    async def risk_history(self, risk_id: str) -> list[IntegratedRiskAssessment]:
        return await self._risk_assessments.history(risk_id)

    async def record_mapping(self, mapping: RiskControlMapping | Mapping[str, Any]) -> RiskControlMapping:
        """Store a human-curated risk/control mapping.

        Raises:
            ValidationError: If the mapping is malformed.
            NotFoundError: If the risk or control does not exist.
        """
        if not isinstance(mapping, RiskControlMapping):
            try:
                mapping = RiskControlMapping.model_validate(dict(mapping))
            except pydantic.ValidationError as exc:
                raise ValidationError(
                    f"Invalid risk/control mapping: {exc.error_count()} validation error(s)",
                    details={"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]},
                ) from exc
        await self._metric_store.get_risk(mapping.risk_id)
        await self._metric_store.get_control(mapping.control_id)
        mapping = mapping.model_copy(update={"created_at": self._clock()})
        await self._metric_store.append_mapping(mapping)
        logger.info(
            "Risk/control mapping recorded",
            risk_id=mapping.risk_id,
            control_id=mapping.control_id,
            mapping_type=mapping.mapping_type,
            oracle_generated=mapping.oracle_generated,
        )
        return mapping

    async def analyze_risk_control_mappings(self, framework_id: str | None = None) -> list[RiskControlMapping]:
        """Ask the oracle which controls address which risks and store the relevant pairs.

        Every unmapped risk/control pair is assessed; a pair whose relevance
        exceeds 0.7 becomes an oracle-generated mapping. A failing oracle call
        skips that pair only.

        Args:
            framework_id: Restrict candidate controls to one framework.

        Returns:
            The mappings created by this run.
        """
        risks = await self._metric_store.list_risks()
        controls = await self._metric_store.list_controls(framework_id=framework_id)
        existing = {(m.risk_id, m.control_id) for m in await self._metric_store.list_mappings()}

        batches = await asyncio.gather(
            *(
                self._suggest_mappings(risk, [c for c in controls if (risk.risk_id, c.control_id) not in existing])
                for risk in risks
            )
        )
        created = [mapping for batch in batches for mapping in batch]
        logger.info(
            "Risk/control mapping analysis complete",
            framework_id=framework_id,
            risks=len(risks),
            controls=len(controls),
            mappings_created=len(created),
        )
        return created

    async def _suggest_mappings(self, risk: RiskRecord, controls: list[ControlRecord]) -> list[RiskControlMapping]:
        created: list[RiskControlMapping] = []
        for control in controls:
            request = AssessmentRequest(
                subject_type="mapping",
                subject_id=f"{risk.risk_id}:{control.control_id}",
                assessment_type="risk_control_mapping",
                context={
                    "risk": risk.model_dump(mode="json"),
                    "control": control.model_dump(mode="json", exclude={"attributes"}),
                },
            )
            try:
                response = await self._oracle.assess(request)
                relevance = response.relevance or 0.0
                if relevance <= MAPPING_RELEVANCE_THRESHOLD:
                    continue
                attributes = response.attributes
                mapping = RiskControlMapping(
                    risk_id=risk.risk_id,
                    control_id=control.control_id,
                    mapping_type=attributes.get("mapping_type", "mitigates"),
                    effectiveness_rating=attributes.get("effectiveness_rating", 3),
                    coverage_percentage=attributes.get("coverage_percentage", 0.0),
                    residual_risk_reduction=attributes.get("residual_risk_reduction", 0.0),
                    confidence=relevance,
                    oracle_generated=True,
                    notes=attributes.get("reasoning", ""),
                    created_at=self._clock(),
                )
            except Exception as exc:
                logger.warning(
                    "Mapping suggestion skipped",
                    risk_id=risk.risk_id,
                    control_id=control.control_id,
                    error=str(exc),
                )
                continue
            await self._metric_store.append_mapping(mapping)
            created.append(mapping)
        return created

    async def analyze_threat_control_alignment(self) -> list[ThreatControlAlignment]:
        """Score every active threat signal against every control.

        Pairs scoring above 50 are returned, best first. Mitigation
        effectiveness is 90% of the alignment score.
        """
        signals = await self._metric_store.list_threat_signals()
        controls = await self._metric_store.list_controls()
        alignments: list[ThreatControlAlignment] = []
        for signal in signals:
            for control in controls:
                score = alignment_score(signal, control)
                if score <= ALIGNMENT_THRESHOLD:
                    continue
                alignments.append(
                    ThreatControlAlignment(
                        signal_id=signal.signal_id,
                        control_id=control.control_id,
                        alignment_score=score,
                        mitigation_effectiveness=round(score * 0.9, 2),
                        threat_category=signal.category or "unknown",
                        control_category=control.category or "unknown",
                        recommendation=f"Control {control.control_id} provides {score:.0f}% alignment against "
                        f"threat {signal.signal_id}",
                    )
                )
        alignments.sort(key=lambda a: a.alignment_score, reverse=True)
        return alignments

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    async def dashboard(self) -> GRCDashboard:
        """Aggregate risk, compliance, threat, integration and monitoring metrics."""
        now = self._clock()
        risks = await self._metric_store.list_risks()
        latest = await self._risk_assessments.latest_per_risk()
        controls = await self._metric_store.list_controls()
        frameworks = await self._metric_store.list_frameworks()
        signals = await self._metric_store.list_threat_signals()
        mappings = await self._metric_store.list_mappings()
        assessments = await self._metric_store.latest_assessments(tuple(c.control_id for c in controls))
        automation_rules = await self.automation.list_rules(active_only=True)

        implemented = sum(1 for c in controls if c.is_implemented)
        mapped_risks = {m.risk_id for m in mappings}
        return GRCDashboard(
            generated_at=now,
            risk=RiskMetrics(
                total_risks=len(risks),
                assessed_risks=len(latest),
                critical_risks=sum(1 for a in latest if a.risk_level == "critical"),
                high_risks=sum(1 for a in latest if a.risk_level == "high"),
                average_risk_score=(
                    round(sum(a.integrated_risk_score for a in latest) / len(latest), 2) if latest else 0.0
                ),
                risk_trend=await self._risk_trend(latest),
            ),
            compliance=ComplianceMetrics(
                total_frameworks=sum(1 for f in frameworks if f.status == "active"),
                total_controls=len(controls),
                implemented_controls=implemented,
                compliance_percentage=round(implemented / len(controls) * 100, 2) if controls else 0.0,
            ),
            threat=ThreatMetrics(
                active_threat_feeds=len({s.source for s in signals}),
                threat_indicators=len(signals),
                high_severity_threats=sum(1 for s in signals if s.severity in ("high", "critical")),
            ),
            integration=IntegrationMetrics(
                mapped_risk_controls=len(mappings),
                oracle_generated_mappings=sum(1 for m in mappings if m.oracle_generated),
                mapping_coverage=(
                    round(len(mapped_risks & {r.risk_id for r in risks}) / len(risks) * 100, 2) if risks else 0.0
                ),
                oracle_assessments=len(assessments),
                active_automation_rules=len(automation_rules),
            ),
            monitoring=await self.monitoring.metrics(now),
        )

    async def _risk_trend(self, latest: list[IntegratedRiskAssessment]) -> Trend:
        deltas: list[float] = []
        for assessment in latest:
            history = await self._risk_assessments.history(assessment.risk_id)
            if len(history) >= 2:
                deltas.append(history[-1].integrated_risk_score - history[-2].integrated_risk_score)
        if not deltas:
            return "stable"
        mean_delta = sum(deltas) / len(deltas)
        if mean_delta > _TREND_TOLERANCE:
            return "increasing"
        if mean_delta < -_TREND_TOLERANCE:
            return "decreasing"
        return "stable"

    async def compliance_report(self, framework_id: str) -> ComplianceReport:
        """Summarize the readiness of one framework over the last 30 days.

        Raises:
            NotFoundError: If the framework does not exist.
        """
        if framework_id not in {f.framework_id for f in await self._metric_store.list_frameworks()}:
            raise NotFoundError(resource="framework", resource_id=framework_id)

        now = self._clock()
        controls = await self._metric_store.list_controls(framework_id=framework_id)
        control_ids = tuple(c.control_id for c in controls)
        tests = []
        if control_ids:
            tests = await self._metric_store.list_test_results(
                control_ids,
                since=now - timedelta(days=_REPORT_PERIOD_DAYS),
            )
        evidence_count = 0
        for control_id in control_ids:
            evidence_count += len(await self._metric_store.list_evidence(control_id))
        assessments = await self._metric_store.latest_assessments(control_ids)
        assessed = [a.assessed_progress for a in assessments.values() if a.assessed_progress is not None]

        failing = {t.control_id for t in tests if not t.passed}
        attention = sorted(c.control_id for c in controls if not c.is_implemented or c.control_id in failing)
        implemented = sum(1 for c in controls if c.is_implemented)
        passed = sum(1 for t in tests if t.passed)

        return ComplianceReport(
            framework_id=framework_id,
            generated_at=now,
            period_days=_REPORT_PERIOD_DAYS,
            total_controls=len(controls),
            implemented_controls=implemented,
            readiness_percentage=round(implemented / len(controls) * 100, 2) if controls else 0.0,
            status_breakdown=dict(Counter(c.implementation_status for c in controls)),
            tests_run=len(tests),
            test_pass_rate=round(passed / len(tests) * 100, 2) if tests else 0.0,
            evidence_collected=evidence_count,
            controls_assessed=len(assessments),
            average_assessed_progress=round(sum(assessed) / len(assessed), 2) if assessed else None,
            controls_needing_attention=tuple(attention),
        )

    # ------------------------------------------------------------------
    # Trigger intake
    # ------------------------------------------------------------------

    async def on_trigger(
        self,
        target_id: str,
        payload: Mapping[str, Any] | None = None,
        source: TriggerSource = "event",
    ) -> TriggerDispatch:
        """Route a scheduler or event trigger to the workflow or rule it names.

        The id is looked up as a workflow definition, then an automation rule,
        then a monitoring rule.

        Args:
            target_id: Workflow definition id or automation/monitoring rule id.
            payload: Trigger data.
            source: schedule or event.

        Returns:
            Where the trigger went and what it produced.

        Raises:
            NotFoundError: If no workflow or rule carries the id.
        """
        payload = dict(payload or {})
        try:
            await self.registry.get(target_id)
        except NotFoundError:
            pass
        else:
            execution_id = await self.executor.execute(
                target_id,
                trigger_payload=payload,
                context=_scope_from(payload),
                triggered_by=source,
            )
            return TriggerDispatch(target_type="workflow", target_id=target_id, execution_id=execution_id)

        try:
            await self.automation.get_rule(target_id)
        except NotFoundError:
            pass
        else:
            result = await self.automation.execute(target_id, triggered_by=source, payload=payload)
            return TriggerDispatch(target_type="automation_rule", target_id=target_id, result=result)

        try:
            rule = await self.monitoring.get_rule(target_id)
        except NotFoundError:
            raise NotFoundError(
                f"No workflow or rule with id {target_id}",
                resource="trigger_target",
                resource_id=target_id,
            ) from None
        alerts = await self.monitoring.evaluate_rule(rule)
        return TriggerDispatch(
            target_type="monitoring_rule",
            target_id=target_id,
            alert_ids=tuple(a.alert_id for a in alerts),
        )

    async def on_event(self, event_name: str, payload: Mapping[str, Any] | None = None) -> list[str]:
        """Launch every workflow subscribed to an event.

        Returns:
            The ids of the launched executions.
        """
        definitions = await self.registry.find_by_event(event_name)
        execution_ids: list[str] = []
        for definition in definitions:
            dispatch = await self.on_trigger(
                definition.definition_id,
                {**(payload or {}), "event": event_name},
                source="event",
            )
            if dispatch.execution_id is not None:
                execution_ids.append(dispatch.execution_id)
        logger.info("Event dispatched", event_name=event_name, executions=len(execution_ids))
        return execution_ids

    async def tick(self, now: datetime | None = None) -> TickSummary:
        """Run everything due: cron workflows, automation rules and monitoring rules.

        A workflow's first scheduled run is the first cron fire time after
        the definition was registered.
        """
        now = now or self._clock()
        launched: dict[str, str] = {}
        for definition in await self.registry.scheduled():
            last = self._last_scheduled.get(definition.definition_id, definition.created_at)
            if not is_due(definition.trigger.cron, last, now):
                continue
            self._last_scheduled[definition.definition_id] = now
            dispatch = await self.on_trigger(
                definition.definition_id,
                {"scheduled_at": now.isoformat()},
                source="schedule",
            )
            if dispatch.execution_id is not None:
                launched[definition.definition_id] = dispatch.execution_id

        # Monitoring never waits on automation runs.
        automation_results, monitoring_alerts = await asyncio.gather(
            self.automation.run_due(now),
            self.monitoring.run_due(now),
        )
        summary = TickSummary(
            ran_at=now,
            workflow_executions=launched,
            automation_results=automation_results,
            monitoring_alerts={rule_id: len(alerts) for rule_id, alerts in monitoring_alerts.items()},
        )
        logger.info(
            "Scheduler tick complete",
            workflows_launched=len(launched),
            automation_rules_run=len(automation_results),
            monitoring_rules_run=len(monitoring_alerts),
        )
        return summary


def _scope_from(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {key: payload[key] for key in ("control_id", "framework_id") if payload.get(key)}
