"""Tests for the GRC orchestrator facade."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from aumos_compliance_orchestrator.adapters.memory import InMemoryAutomationRuleRepository, InMemoryMetricStore
from aumos_compliance_orchestrator.automation.runner import AutomationRuleRunner
from aumos_compliance_orchestrator.core.records import AssessmentRequest, ThreatSignal
from aumos_compliance_orchestrator.core.rules import ThresholdCondition
from aumos_compliance_orchestrator.errors import NotFoundError, OracleUnavailableError, ValidationError
from aumos_compliance_orchestrator.monitoring.alerts import AlertManager
from aumos_compliance_orchestrator.monitoring.engine import MonitoringEngine
from aumos_compliance_orchestrator.orchestrator import GRCOrchestrator, alignment_score
from aumos_compliance_orchestrator.workflow.handlers import StepInvoker, StepOutcome
from tests.conftest import FRAMEWORK_ID, make_fake_control, make_fake_definition, make_oracle_response

_SCAN_STEP = {"step_id": "scan", "kind": "automated_test", "test_type": "compliance_check"}


# ---------------------------------------------------------------------------
# Risk assessment and mappings
# ---------------------------------------------------------------------------


class TestRiskAssessment:
    @pytest.mark.asyncio()
    async def test_assess_risk_appends_history(self, orchestrator: GRCOrchestrator, now: datetime) -> None:
        assessment = await orchestrator.assess_risk("R-1")

        assert assessment.integrated_risk_score == 49.8
        assert assessment.risk_level == "medium"
        assert assessment.priority_score == 35
        assert assessment.assessed_at == now
        assert await orchestrator.risk_history("R-1") == [assessment]

    @pytest.mark.asyncio()
    async def test_unknown_risk_raises_not_found(self, orchestrator: GRCOrchestrator) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.assess_risk("R-404")

    @pytest.mark.asyncio()
    async def test_recorded_mapping_lowers_integrated_score(self, orchestrator: GRCOrchestrator) -> None:
        await orchestrator.record_mapping({"risk_id": "R-1", "control_id": "CC6.1", "effectiveness_rating": 5})

        assessment = await orchestrator.assess_risk("R-1")

        assert assessment.control_effectiveness_score == 100.0
        assert assessment.compliance_score == 100.0
        assert assessment.integrated_risk_score == 4.8
        assert assessment.risk_level == "low"

    @pytest.mark.asyncio()
    async def test_mapping_to_unknown_control_is_rejected(self, orchestrator: GRCOrchestrator) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.record_mapping({"risk_id": "R-1", "control_id": "ZZ-9"})

    @pytest.mark.asyncio()
    async def test_malformed_mapping_is_rejected(self, orchestrator: GRCOrchestrator) -> None:
        with pytest.raises(ValidationError):
            await orchestrator.record_mapping({"risk_id": "R-1", "control_id": "CC6.1", "effectiveness_rating": 9})


class TestMappingAnalysis:
    @pytest.mark.asyncio()
    async def test_only_relevant_pairs_become_mappings(
        self,
        orchestrator: GRCOrchestrator,
        mock_oracle: AsyncMock,
        metric_store: InMemoryMetricStore,
    ) -> None:
        """Relevance must exceed 0.7, and a failing oracle call skips only its pair."""

        def answer(request: AssessmentRequest):
            control_id = request.subject_id.split(":")[1]
            if control_id == "CC8.1":
                raise OracleUnavailableError("oracle timed out")
            relevance = 0.9 if control_id == "CC6.1" else 0.7
            return make_oracle_response(
                relevance=relevance,
                attributes={"mapping_type": "prevents", "effectiveness_rating": 4, "reasoning": "MFA covers access"},
            )

        mock_oracle.assess.side_effect = answer

        created = await orchestrator.analyze_risk_control_mappings(FRAMEWORK_ID)

        [mapping] = created
        assert (mapping.risk_id, mapping.control_id) == ("R-1", "CC6.1")
        assert mapping.mapping_type == "prevents"
        assert mapping.effectiveness_rating == 4
        assert mapping.confidence == 0.9
        assert mapping.oracle_generated
        assert await metric_store.list_mappings(risk_id="R-1") == [mapping]

    @pytest.mark.asyncio()
    async def test_existing_pairs_are_not_reassessed(
        self,
        orchestrator: GRCOrchestrator,
        mock_oracle: AsyncMock,
    ) -> None:
        await orchestrator.record_mapping({"risk_id": "R-1", "control_id": "CC6.1"})
        mock_oracle.assess.return_value = make_oracle_response(relevance=0.2)

        assert await orchestrator.analyze_risk_control_mappings() == []

        assessed = {call.args[0].subject_id for call in mock_oracle.assess.await_args_list}
        assert assessed == {"R-1:CC7.2", "R-1:CC8.1"}


class TestThreatAlignment:
    @pytest.mark.asyncio()
    async def test_only_pairs_above_fifty_are_reported(
        self,
        orchestrator: GRCOrchestrator,
        metric_store: InMemoryMetricStore,
    ) -> None:
        signal = ThreatSignal(signal_id="T-1", source="feed-a", category="access_control", severity="high")
        metric_store.add_threat_signal(signal)

        [alignment] = await orchestrator.analyze_threat_control_alignment()

        assert alignment.control_id == "CC6.1"
        assert alignment.alignment_score == 75.0
        assert alignment.mitigation_effectiveness == 67.5

    def test_alignment_score_components(self) -> None:
        signal = ThreatSignal(source="feed-a", category="monitoring", severity="low", signal_type="indicator")
        control = make_fake_control(
            "CC7.2", category="monitoring", control_type="detective", test_status="passed"
        )

        assert alignment_score(signal, control) == 85.0


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


class TestDashboard:
    @pytest.mark.asyncio()
    async def test_dashboard_aggregates_every_area(
        self,
        orchestrator: GRCOrchestrator,
        metric_store: InMemoryMetricStore,
        monitoring_engine: MonitoringEngine,
    ) -> None:
        metric_store.add_threat_signal(ThreatSignal(source="feed-a", severity="critical", risk_ids=("R-1",)))
        metric_store.add_threat_signal(ThreatSignal(source="feed-b", severity="low"))
        await orchestrator.record_mapping({"risk_id": "R-1", "control_id": "CC6.1"})
        await orchestrator.assess_risk("R-1")
        await monitoring_engine.setup_default_rules(FRAMEWORK_ID)

        dashboard = await orchestrator.dashboard()

        assert dashboard.risk.total_risks == 1
        assert dashboard.risk.assessed_risks == 1
        assert dashboard.risk.risk_trend == "stable"
        assert dashboard.compliance.total_frameworks == 1
        assert dashboard.compliance.implemented_controls == 1
        assert dashboard.compliance.compliance_percentage == 33.33
        assert dashboard.threat.active_threat_feeds == 2
        assert dashboard.threat.high_severity_threats == 1
        assert dashboard.integration.mapped_risk_controls == 1
        assert dashboard.integration.mapping_coverage == 100.0
        assert dashboard.monitoring.active_rules == 3
        assert dashboard.monitoring.monitoring_coverage == 100.0

    @pytest.mark.asyncio()
    async def test_rising_scores_report_increasing_trend(
        self,
        orchestrator: GRCOrchestrator,
        metric_store: InMemoryMetricStore,
    ) -> None:
        await orchestrator.assess_risk("R-1")
        for _ in range(10):
            metric_store.add_threat_signal(ThreatSignal(source="feed-a", severity="critical", risk_ids=("R-1",)))
        await orchestrator.assess_risk("R-1")

        dashboard = await orchestrator.dashboard()

        assert dashboard.risk.risk_trend == "increasing"
        assert dashboard.risk.average_risk_score == 74.8


class TestComplianceReport:
    @pytest.mark.asyncio()
    async def test_report_summarizes_framework(self, orchestrator: GRCOrchestrator) -> None:
        report = await orchestrator.compliance_report(FRAMEWORK_ID)

        assert report.total_controls == 3
        assert report.implemented_controls == 1
        assert report.readiness_percentage == 33.33
        assert report.status_breakdown == {"implemented": 1, "in_progress": 1, "not_started": 1}
        assert report.tests_run == 1
        assert report.test_pass_rate == 100.0
        assert report.controls_needing_attention == ("CC7.2", "CC8.1")
        assert report.average_assessed_progress is None

    @pytest.mark.asyncio()
    async def test_unknown_framework_raises_not_found(self, orchestrator: GRCOrchestrator) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.compliance_report("iso27001")


# ---------------------------------------------------------------------------
# Trigger intake
# ---------------------------------------------------------------------------


class TestTriggers:
    @pytest.mark.asyncio()
    async def test_trigger_launches_workflow_with_scope(self, orchestrator: GRCOrchestrator) -> None:
        await orchestrator.registry.register(make_fake_definition([_SCAN_STEP]))

        dispatch = await orchestrator.on_trigger("wf-test", {"control_id": "CC6.1"}, source="event")
        execution = await orchestrator.executor.wait(dispatch.execution_id)

        assert dispatch.target_type == "workflow"
        assert execution.status == "completed"
        assert execution.context["control_id"] == "CC6.1"
        assert execution.triggered_by == "event"

    @pytest.mark.asyncio()
    async def test_trigger_runs_automation_rule(
        self,
        orchestrator: GRCOrchestrator,
        automation_runner: AutomationRuleRunner,
    ) -> None:
        rule = await automation_runner.create_rule(
            {"control_id": "CC6.1", "name": "Check", "rule_type": "testing", "config": {"test_type": "compliance_check"}}
        )

        dispatch = await orchestrator.on_trigger(rule.rule_id, source="schedule")

        assert dispatch.target_type == "automation_rule"
        assert dispatch.result is not None and dispatch.result.success

    @pytest.mark.asyncio()
    async def test_trigger_evaluates_monitoring_rule(
        self,
        orchestrator: GRCOrchestrator,
        monitoring_engine: MonitoringEngine,
    ) -> None:
        rule = await monitoring_engine.create_rule(
            {"name": "Floor", "framework_id": FRAMEWORK_ID, "condition": ThresholdCondition().model_dump()}
        )

        dispatch = await orchestrator.on_trigger(rule.rule_id)

        assert dispatch.target_type == "monitoring_rule"
        assert len(dispatch.alert_ids) == 2

    @pytest.mark.asyncio()
    async def test_unknown_target_raises_not_found(self, orchestrator: GRCOrchestrator) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.on_trigger("nothing-here")

    @pytest.mark.asyncio()
    async def test_event_launches_subscribed_workflows_only(self, orchestrator: GRCOrchestrator) -> None:
        await orchestrator.registry.register(
            make_fake_definition([_SCAN_STEP], trigger={"events": ["control_change"]})
        )
        await orchestrator.registry.register(make_fake_definition([_SCAN_STEP], definition_id="wf-other"))

        [execution_id] = await orchestrator.on_event("control_change", {"control_id": "CC6.1"})
        execution = await orchestrator.executor.wait(execution_id)

        assert execution.definition_id == "wf-test"
        assert execution.trigger_payload == {"control_id": "CC6.1", "event": "control_change"}
        assert execution.status == "completed"

    @pytest.mark.asyncio()
    async def test_tick_launches_due_cron_workflows_once(self, orchestrator: GRCOrchestrator) -> None:
        await orchestrator.registry.register(
            make_fake_definition([_SCAN_STEP], framework_id=FRAMEWORK_ID, trigger={"cron": "0 * * * *"})
        )
        later = datetime.now(UTC) + timedelta(hours=2)

        first = await orchestrator.tick(later)
        second = await orchestrator.tick(later)

        assert list(first.workflow_executions) == ["wf-test"]
        assert second.workflow_executions == {}
        execution = await orchestrator.executor.wait(first.workflow_executions["wf-test"])
        assert execution.triggered_by == "schedule"

    @pytest.mark.asyncio()
    async def test_tick_monitoring_does_not_wait_for_automation(
        self,
        orchestrator: GRCOrchestrator,
        monitoring_engine: MonitoringEngine,
        alert_manager: AlertManager,
        metric_store: InMemoryMetricStore,
        no_sleep: AsyncMock,
    ) -> None:
        release = asyncio.Event()

        class _SlowTestHandler:
            async def handle(self, step: object, ctx: object) -> StepOutcome:
                await release.wait()
                return StepOutcome(status="success")

        orchestrator.automation = AutomationRuleRunner(
            InMemoryAutomationRuleRepository(),
            StepInvoker({"automated_test": _SlowTestHandler()}, sleep=no_sleep),
            alert_manager,
            metric_store,
        )
        slow = await orchestrator.automation.create_rule(
            {
                "control_id": "CC6.1",
                "name": "Slow check",
                "rule_type": "testing",
                "config": {"test_type": "compliance_check"},
                "schedule_expression": "0 * * * *",
            }
        )
        await monitoring_engine.create_rule(
            {"name": "Floor", "framework_id": FRAMEWORK_ID, "condition": {"rule_type": "threshold"}}
        )
        later = datetime.now(UTC) + timedelta(hours=2)

        tick = asyncio.create_task(orchestrator.tick(later))
        for _ in range(200):
            if await alert_manager.list_recent():
                break
            await asyncio.sleep(0)

        assert len(await alert_manager.list_recent()) == 2
        assert not tick.done()

        release.set()
        summary = await tick

        assert summary.automation_results[slow.rule_id].success
        assert list(summary.monitoring_alerts.values()) == [2]
