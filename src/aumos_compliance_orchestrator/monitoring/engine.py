"""Continuous monitoring engine.

Owns the monitoring rule set and runs each rule on its own cadence: take a
metric snapshot scoped to the rule, evaluate it, hand the candidates to the
alert manager. The engine only reads metrics and never touches workflow
state.

Rules are isolated from each other. A rule that raises RuleEvaluationError,
or fails in any other way, is logged and skipped for this cycle while every
other rule still runs.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

import pydantic

from aumos_compliance_orchestrator.core.domain import utc_now
from aumos_compliance_orchestrator.core.interfaces import IMetricStore, IMonitoringRuleRepository
from aumos_compliance_orchestrator.core.rules import (
    AnomalyCondition,
    ComplianceAlert,
    ComplianceDriftCondition,
    MonitoringMetrics,
    MonitoringRule,
    ThresholdCondition,
)
from aumos_compliance_orchestrator.errors import RuleEvaluationError, ValidationError
from aumos_compliance_orchestrator.monitoring.alerts import AlertManager
from aumos_compliance_orchestrator.monitoring.evaluator import evaluate
from aumos_compliance_orchestrator.observability import get_logger
from aumos_compliance_orchestrator.settings import Settings

logger = get_logger(__name__)

# Snapshot lookback when a rule type carries no window of its own
_DEFAULT_LOOKBACK_DAYS = 30


def _lookback_days(rule: MonitoringRule) -> int:
    condition = rule.condition
    for attribute in ("history_days", "lookback_days", "window_days"):
        if hasattr(condition, attribute):
            return int(getattr(condition, attribute))
    return _DEFAULT_LOOKBACK_DAYS


class MonitoringEngine:
    """Evaluates monitoring rules against the metric store.

    Args:
        rules: Monitoring rule persistence.
        metric_store: Source of metric snapshots.
        alerts: Alert manager receiving the candidates.
        settings: Source of default thresholds.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        rules: IMonitoringRuleRepository,
        metric_store: IMetricStore,
        alerts: AlertManager,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._rules = rules
        self._metric_store = metric_store
        self._alerts = alerts
        self._settings = settings or Settings()
        self._clock = clock
        self._last_checked: dict[str, datetime] = {}

    # ------------------------------------------------------------------
    # Rule management
    # ------------------------------------------------------------------

    async def create_rule(self, rule: MonitoringRule | Mapping[str, Any]) -> MonitoringRule:
        """Parse and store a monitoring rule.

        Raises:
            ValidationError: If the rule or its condition is malformed.
        """
        if not isinstance(rule, MonitoringRule):
            payload = dict(rule)
            payload.setdefault("check_frequency_seconds", self._settings.default_check_frequency_seconds)
            condition = payload.get("condition")
            if isinstance(condition, Mapping):
                defaults = self._condition_defaults().get(str(condition.get("rule_type")), {})
                payload["condition"] = {**defaults, **condition}
            try:
                rule = MonitoringRule.model_validate(payload)
            except pydantic.ValidationError as exc:
                raise ValidationError(
                    f"Invalid monitoring rule: {exc.error_count()} validation error(s)",
                    details={"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]},
                ) from exc
        stored = await self._rules.add(rule)
        logger.info(
            "Monitoring rule created",
            rule_id=stored.rule_id,
            rule_type=stored.rule_type,
            framework_id=stored.framework_id,
            check_frequency_seconds=stored.check_frequency_seconds,
        )
        return stored

    def _condition_defaults(self) -> dict[str, dict[str, Any]]:
        s = self._settings
        return {
            "threshold": {
                "min_implementation_progress": s.min_implementation_progress,
                "max_test_failures": s.max_test_failures,
            },
            "anomaly": {"anomaly_threshold": s.anomaly_threshold},
            "compliance_drift": {"max_drift": s.max_drift},
            "certification_expiry": {"required_readiness": s.required_readiness},
            "control_failure": {"max_consecutive_failures": s.max_consecutive_failures},
        }

    async def get_rule(self, rule_id: str) -> MonitoringRule:
        return await self._rules.get(rule_id)

    async def list_rules(self, active_only: bool = False) -> list[MonitoringRule]:
        return await self._rules.list_rules(active_only)

    async def set_rule_active(self, rule_id: str, is_active: bool) -> MonitoringRule:
        rule = await self._rules.set_active(rule_id, is_active)
        logger.info("Monitoring rule activation changed", rule_id=rule_id, is_active=is_active)
        return rule

    async def setup_default_rules(
        self,
        framework_id: str,
        control_ids: tuple[str, ...] = (),
    ) -> list[MonitoringRule]:
        """Create the standard rule set for a framework.

        Creates an implementation threshold rule checked daily, an anomaly
        rule checked twice a day and a drift rule checked weekly, with
        thresholds taken from settings.
        """
        s = self._settings
        defaults = [
            MonitoringRule(
                name="Implementation progress monitor",
                description="Alerts on controls below the implementation floor or with excessive test failures",
                framework_id=framework_id,
                control_ids=control_ids,
                condition=ThresholdCondition(
                    min_implementation_progress=s.min_implementation_progress,
                    max_test_failures=s.max_test_failures,
                ),
                check_frequency_seconds=86_400,
            ),
            MonitoringRule(
                name="Compliance performance anomaly detection",
                description="Alerts on unusual changes of the daily test pass rate",
                framework_id=framework_id,
                control_ids=control_ids,
                condition=AnomalyCondition(anomaly_threshold=s.anomaly_threshold),
                check_frequency_seconds=43_200,
            ),
            MonitoringRule(
                name="Compliance drift detection",
                description="Alerts when recorded and assessed implementation progress disagree",
                framework_id=framework_id,
                control_ids=control_ids,
                condition=ComplianceDriftCondition(max_drift=s.max_drift),
                check_frequency_seconds=604_800,
            ),
        ]
        return [await self.create_rule(rule) for rule in defaults]

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate_rule(self, rule: MonitoringRule, now: datetime | None = None) -> list[ComplianceAlert]:
        """Evaluate one rule and persist the resulting alerts.

        Raises:
            RuleEvaluationError: If the snapshot cannot be evaluated.
        """
        now = now or self._clock()
        snapshot = await self._metric_store.snapshot(
            as_of=now,
            framework_id=rule.framework_id,
            control_ids=rule.control_ids or None,
            lookback_days=_lookback_days(rule),
        )
        candidates = evaluate(rule, snapshot)
        self._last_checked[rule.rule_id] = now
        alerts = await self._alerts.create_many(candidates)
        logger.debug("Monitoring rule evaluated", rule_id=rule.rule_id, alert_count=len(alerts))
        return alerts

    async def run_checks(self, now: datetime | None = None) -> dict[str, list[ComplianceAlert]]:
        """Evaluate every active rule, isolating failures per rule.

        Returns:
            Alerts raised per rule id. Rules that failed are absent.
        """
        rules = await self._rules.list_rules(active_only=True)
        return await self._run(rules, now or self._clock())

    async def run_due(self, now: datetime | None = None) -> dict[str, list[ComplianceAlert]]:
        """Evaluate the active rules whose check frequency has elapsed."""
        now = now or self._clock()
        due = [
            rule
            for rule in await self._rules.list_rules(active_only=True)
            if rule.rule_id not in self._last_checked
            or now - self._last_checked[rule.rule_id] >= timedelta(seconds=rule.check_frequency_seconds)
        ]
        return await self._run(due, now)

    async def _run(self, rules: list[MonitoringRule], now: datetime) -> dict[str, list[ComplianceAlert]]:
        outcomes = await asyncio.gather(*(self._guarded(rule, now) for rule in rules))
        results = {rule.rule_id: alerts for rule, alerts in zip(rules, outcomes) if alerts is not None}
        logger.info(
            "Monitoring cycle complete",
            rules_checked=len(rules),
            rules_failed=len(rules) - len(results),
            alerts_created=sum(len(a) for a in results.values()),
        )
        return results

    async def _guarded(self, rule: MonitoringRule, now: datetime) -> list[ComplianceAlert] | None:
        try:
            return await self.evaluate_rule(rule, now)
        except RuleEvaluationError as exc:
            logger.warning("Monitoring rule skipped", rule_id=rule.rule_id, error=exc.message, details=exc.details)
        except Exception:
            logger.exception("Monitoring rule crashed", rule_id=rule.rule_id)
        return None

    async def metrics(self, now: datetime | None = None) -> MonitoringMetrics:
        """Return alert metrics enriched with rule counts and control coverage."""
        rules = await self._rules.list_rules()
        active = [r for r in rules if r.is_active]

        controls = await self._metric_store.list_controls()
        monitored: set[str] = set()
        for rule in active:
            if rule.control_ids:
                monitored.update(rule.control_ids)
            else:
                monitored.update(
                    c.control_id for c in controls if rule.framework_id is None or c.framework_id == rule.framework_id
                )
        coverage = len(monitored & {c.control_id for c in controls}) / len(controls) * 100 if controls else 0.0

        return await self._alerts.metrics(
            now=now,
            total_rules=len(rules),
            active_rules=len(active),
            monitoring_coverage=coverage,
        )
