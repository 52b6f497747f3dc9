"""Automation rule runner for single-purpose automations outside full workflows.

Each automation rule runs as a one-step, dependency-free workflow through the
same StepInvoker and handlers the workflow executor uses:

    testing              → automated_test
    evidence_collection  → evidence_collection
    monitoring           → ai_assessment (continuous_monitoring)
    remediation          → ai_assessment (remediation_planning)
    reporting            → notification carrying a generated report

Every run yields an ExecutionResult with ``compliance_score =
passed / (passed + failed) * 100`` and ``success = compliance_score >=
pass threshold``. The rule's counters and run timestamps are updated in one
atomic repository write, and findings are forwarded to the alert manager.

Runs of the same rule are serialized by a per-rule lock; different rules
run in parallel.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

import pydantic

from aumos_compliance_orchestrator.automation.schedule import next_run
from aumos_compliance_orchestrator.core.domain import (
    AIAssessmentStep,
    AutomatedTestStep,
    AutomationExecution,
    AutomationRule,
    EvidenceCollectionStep,
    ExecutionResult,
    Finding,
    NotificationStep,
    TriggerSource,
    WorkflowStep,
    utc_now,
)
from aumos_compliance_orchestrator.core.interfaces import IAutomationRuleRepository, IMetricStore
from aumos_compliance_orchestrator.errors import ValidationError
from aumos_compliance_orchestrator.monitoring.alerts import AlertManager
from aumos_compliance_orchestrator.observability import get_logger
from aumos_compliance_orchestrator.workflow.handlers import StepContext, StepInvoker, StepOutcome

logger = get_logger(__name__)

_DEFAULT_ASSESSMENT_TYPES = {
    "monitoring": "continuous_monitoring",
    "remediation": "remediation_planning",
}

# Window covered by generated reports
_REPORT_PERIOD_DAYS = 30


def validate_automation_config(rule: AutomationRule) -> None:
    """Check that a rule's config carries what its type needs.

    Raises:
        ValidationError: If a required config field is missing.
    """
    config = rule.config
    if rule.rule_type == "testing" and config.test_type is None:
        raise ValidationError("Testing automation requires config.test_type", details={"rule_type": rule.rule_type})
    if rule.rule_type == "testing" and config.test_type == "api_check" and not config.endpoints:
        raise ValidationError("api_check automation requires config.endpoints", details={"rule_type": rule.rule_type})
    if rule.rule_type == "evidence_collection" and not config.evidence_types:
        raise ValidationError(
            "Evidence collection automation requires config.evidence_types",
            details={"rule_type": rule.rule_type},
        )
    if rule.rule_type == "reporting" and not config.report_templates:
        raise ValidationError(
            "Reporting automation requires config.report_templates",
            details={"rule_type": rule.rule_type},
        )


def build_step(rule: AutomationRule, pass_threshold: float) -> WorkflowStep:
    """Translate an automation rule into the single step it runs."""
    config = rule.config
    common: dict[str, Any] = {
        "step_id": f"automation-{rule.rule_id}",
        "name": rule.name,
        "retry_policy": config.retry_policy,
        "timeout_seconds": config.timeout_seconds,
    }
    if rule.rule_type == "testing":
        return AutomatedTestStep(
            **common,
            control_id=rule.control_id,
            test_type=config.test_type or "compliance_check",
            endpoints=config.endpoints,
            validation_rules=config.validation_rules,
            pass_threshold=pass_threshold,
        )
    if rule.rule_type == "evidence_collection":
        return EvidenceCollectionStep(
            **common,
            control_id=rule.control_id,
            method=config.collection_method,
            evidence_types=config.evidence_types,
        )
    if rule.rule_type == "reporting":
        return NotificationStep(
            **common,
            channel=config.notification_channel,
            recipients=config.notify_recipients,
            subject=f"{', '.join(config.report_templates)} report for control {rule.control_id}",
        )
    return AIAssessmentStep(
        **common,
        control_id=rule.control_id,
        assessment_type=config.assessment_type or _DEFAULT_ASSESSMENT_TYPES[rule.rule_type],
    )


def compliance_score(passed: int, failed: int) -> float:
    """Return ``passed / (passed + failed) * 100``, or 0 when nothing was checked."""
    total = passed + failed
    return round(passed / total * 100, 2) if total else 0.0


class AutomationRuleRunner:
    """Creates, schedules and executes automation rules.

    Args:
        rules: Automation rule persistence.
        invoker: Shared step dispatch with timeout and retry handling.
        alerts: Alert manager receiving findings.
        metric_store: Source of data for generated reports.
        pass_threshold: Compliance score at which a run counts as a success.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        rules: IAutomationRuleRepository,
        invoker: StepInvoker,
        alerts: AlertManager,
        metric_store: IMetricStore,
        pass_threshold: float = 80.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._rules = rules
        self._invoker = invoker
        self._alerts = alerts
        self._metric_store = metric_store
        self._pass_threshold = pass_threshold
        self._clock = clock
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    # Rule management
    # ------------------------------------------------------------------

    async def create_rule(self, rule: AutomationRule | Mapping[str, Any]) -> AutomationRule:
        """Parse, validate and store an automation rule.

        Raises:
            ValidationError: If the rule or its config is malformed.
        """
        if not isinstance(rule, AutomationRule):
            try:
                rule = AutomationRule.model_validate(dict(rule))
            except pydantic.ValidationError as exc:
                raise ValidationError(
                    f"Invalid automation rule: {exc.error_count()} validation error(s)",
                    details={"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]},
                ) from exc
        validate_automation_config(rule)

        scheduled = rule.model_copy(update={"next_execution": next_run(rule.schedule_expression, self._clock())})
        stored = await self._rules.add(scheduled)
        logger.info(
            "Automation rule created",
            rule_id=stored.rule_id,
            rule_type=stored.rule_type,
            control_id=stored.control_id,
            next_execution=stored.next_execution.isoformat() if stored.next_execution else None,
        )
        return stored

    async def get_rule(self, rule_id: str) -> AutomationRule:
        return await self._rules.get(rule_id)

    async def list_rules(self, active_only: bool = False) -> list[AutomationRule]:
        return await self._rules.list_rules(active_only)

    async def set_rule_active(self, rule_id: str, is_active: bool) -> AutomationRule:
        rule = await self._rules.set_active(rule_id, is_active)
        logger.info("Automation rule activation changed", rule_id=rule_id, is_active=is_active)
        return rule

    async def list_executions(self, rule_id: str, limit: int = 50) -> list[AutomationExecution]:
        return await self._rules.list_executions(rule_id, limit)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        rule_id: str,
        triggered_by: TriggerSource = "manual",
        payload: Mapping[str, Any] | None = None,
    ) -> ExecutionResult:
        """Run an automation rule once and record its outcome.

        Args:
            rule_id: The rule to run.
            triggered_by: manual, schedule or event.
            payload: Trigger data made available to the step.

        Returns:
            The run's ExecutionResult.

        Raises:
            NotFoundError: If the rule does not exist.
            ValidationError: If the rule is inactive.
        """
        async with self._locks[rule_id]:
            rule = await self._rules.get(rule_id)
            if not rule.is_active:
                raise ValidationError(f"Automation rule {rule_id} is not active", details={"rule_id": rule_id})
            return await self._run(rule, triggered_by, dict(payload or {}))

    async def run_due(self, now: datetime | None = None) -> dict[str, ExecutionResult]:
        """Run every active rule whose next execution time has passed.

        Rules already running are skipped for this cycle. A failing rule is
        logged and does not affect the others.

        Returns:
            Results keyed by rule id for the rules that ran.
        """
        now = now or self._clock()
        due = [
            rule
            for rule in await self._rules.list_rules(active_only=True)
            if rule.next_execution is not None and rule.next_execution <= now and not self._locks[rule.rule_id].locked()
        ]
        outcomes = await asyncio.gather(
            *(self.execute(rule.rule_id, triggered_by="schedule") for rule in due),
            return_exceptions=True,
        )
        results: dict[str, ExecutionResult] = {}
        for rule, outcome in zip(due, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Scheduled automation run failed", rule_id=rule.rule_id, error=str(outcome))
                continue
            results[rule.rule_id] = outcome
        return results

    async def _run(self, rule: AutomationRule, triggered_by: TriggerSource, payload: dict[str, Any]) -> ExecutionResult:
        context: dict[str, Any] = {"control_id": rule.control_id}
        if rule.rule_type == "reporting":
            context["message"] = await self._compose_report(rule)

        run = AutomationExecution(rule_id=rule.rule_id, triggered_by=triggered_by, started_at=self._clock())
        await self._rules.save_execution(run)

        step = build_step(rule, self._pass_threshold)
        ctx = StepContext(
            execution_id=run.execution_id,
            trigger_payload=payload,
            context=context,
            source="automation",
        )
        outcome, attempts = await self._invoker.invoke(step, ctx)
        result = self._summarize(rule, outcome)

        executed_at = self._clock()
        await self._rules.record_outcome(
            rule.rule_id,
            success=result.success,
            executed_at=executed_at,
            next_execution=next_run(rule.schedule_expression, executed_at),
        )
        run = run.model_copy(
            update={
                "status": "completed" if result.success else "failed",
                "ended_at": executed_at,
                "result": result,
                "error": outcome.error,
                "retry_count": max(attempts - 1, 0),
            }
        )
        await self._rules.save_execution(run)

        if result.findings:
            await self._alerts.ingest_findings(
                rule.rule_id,
                result.findings,
                context={"automation_execution_id": run.execution_id, "control_id": rule.control_id},
            )

        logger.info(
            "Automation rule executed",
            rule_id=rule.rule_id,
            rule_type=rule.rule_type,
            execution_id=run.execution_id,
            success=result.success,
            compliance_score=result.compliance_score,
            findings=len(result.findings),
            attempts=attempts,
        )
        return result

    def _summarize(self, rule: AutomationRule, outcome: StepOutcome) -> ExecutionResult:
        data = outcome.data
        findings: list[Finding] = []
        recommendations: list[str] = []
        evidence: tuple[str, ...] = ()

        if rule.rule_type == "testing" and "tests_passed" in data:
            passed, failed = int(data["tests_passed"]), int(data["tests_failed"])
            findings = [Finding.model_validate(f) for f in data.get("findings", [])]
            recommendations = [f.remediation for f in findings if f.remediation]
        elif rule.rule_type == "evidence_collection" and "evidence_collected" in data:
            evidence = tuple(data["evidence_collected"])
            passed, failed = len(evidence), len(data.get("unsupported_types", []))
        elif outcome.status == "success":
            passed, failed = 1, 0
            findings = [
                Finding(
                    severity=gap.get("severity", "medium"),
                    title=gap.get("title", "Compliance gap"),
                    description=gap.get("description", ""),
                    control_id=rule.control_id,
                )
                for gap in data.get("gaps", [])
            ]
            recommendations = list(data.get("recommendations", []))
        else:
            passed, failed = 0, 1

        if outcome.status == "failed" and outcome.error and not findings:
            findings = [
                Finding(
                    severity="high",
                    title=f"Automation '{rule.name}' failed",
                    description=outcome.error,
                    remediation="Inspect the automation configuration and the target control",
                    control_id=rule.control_id,
                )
            ]

        score = compliance_score(passed, failed)
        return ExecutionResult(
            success=score >= self._pass_threshold,
            tests_passed=passed,
            tests_failed=failed,
            evidence_collected=evidence,
            compliance_score=score,
            findings=tuple(findings),
            recommendations=tuple(recommendations),
            data=data,
        )

    async def _compose_report(self, rule: AutomationRule) -> str:
        now = self._clock()
        since = now - timedelta(days=_REPORT_PERIOD_DAYS)
        control = await self._metric_store.get_control(rule.control_id)
        tests = await self._metric_store.list_test_results((rule.control_id,), since=since)
        evidence = [e for e in await self._metric_store.list_evidence(rule.control_id) if e.collected_at >= since]
        passed = sum(1 for t in tests if t.passed)
        lines = [
            f"Report templates: {', '.join(rule.config.report_templates)}",
            f"Report period: {since.date().isoformat()} to {now.date().isoformat()}",
            "",
            "Executive summary",
            f"Control {control.control_id} {control.title}".rstrip(),
            f"Implementation: {control.implementation_status} ({control.implementation_progress:.0f}%)",
            f"Tests: {len(tests)} run, {passed} passed, {len(tests) - passed} failed "
            f"({compliance_score(passed, len(tests) - passed):.1f}% pass rate)",
            f"Evidence items collected: {len(evidence)}",
        ]
        return "\n".join(lines)
