"""Tests for the continuous monitoring engine."""

from datetime import datetime, timedelta

import pytest

from aumos_compliance_orchestrator.adapters.memory import InMemoryMetricStore, InMemoryMonitoringRuleRepository
from aumos_compliance_orchestrator.core.records import ControlRecord
from aumos_compliance_orchestrator.core.rules import MonitoringRule, ThresholdCondition
from aumos_compliance_orchestrator.errors import ValidationError
from aumos_compliance_orchestrator.monitoring.alerts import AlertManager
from aumos_compliance_orchestrator.monitoring.engine import MonitoringEngine
from aumos_compliance_orchestrator.settings import Settings
from tests.conftest import FRAMEWORK_ID


def _threshold_rule(**overrides: object) -> MonitoringRule:
    fields: dict = {
        "name": "Implementation floor",
        "framework_id": FRAMEWORK_ID,
        "condition": ThresholdCondition(min_implementation_progress=70.0),
    }
    fields.update(overrides)
    return MonitoringRule(**fields)


# ---------------------------------------------------------------------------
# Rule management
# ---------------------------------------------------------------------------


class TestRuleManagement:
    @pytest.mark.asyncio()
    async def test_create_rule_from_mapping_uses_default_frequency(self, monitoring_engine: MonitoringEngine) -> None:
        rule = await monitoring_engine.create_rule(
            {
                "name": "Failure watch",
                "framework_id": FRAMEWORK_ID,
                "condition": {"rule_type": "control_failure", "max_consecutive_failures": 2},
            }
        )

        assert rule.rule_type == "control_failure"
        assert rule.check_frequency_seconds == 3600
        assert (await monitoring_engine.get_rule(rule.rule_id)) == rule

    @pytest.mark.asyncio()
    async def test_malformed_rule_raises_validation_error(self, monitoring_engine: MonitoringEngine) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await monitoring_engine.create_rule({"name": "Broken", "condition": {"rule_type": "weather"}})
        assert exc_info.value.details["errors"]

    @pytest.mark.asyncio()
    async def test_mapping_conditions_take_missing_thresholds_from_settings(
        self,
        metric_store: InMemoryMetricStore,
        alert_manager: AlertManager,
    ) -> None:
        engine = MonitoringEngine(
            InMemoryMonitoringRuleRepository(),
            metric_store,
            alert_manager,
            settings=Settings(max_consecutive_failures=5, required_readiness=10.0, max_test_failures=2),
        )

        failures = await engine.create_rule({"name": "Failures", "condition": {"rule_type": "control_failure"}})
        readiness = await engine.create_rule(
            {"name": "Readiness", "condition": {"rule_type": "certification_expiry", "critical_below": 5.0}}
        )
        explicit = await engine.create_rule(
            {"name": "Floor", "condition": {"rule_type": "threshold", "max_test_failures": 9}}
        )

        assert failures.condition.max_consecutive_failures == 5
        assert readiness.condition.required_readiness == 10.0
        assert readiness.condition.critical_below == 5.0
        assert explicit.condition.max_test_failures == 9

    @pytest.mark.asyncio()
    async def test_setup_default_rules_creates_three_cadenced_rules(self, monitoring_engine: MonitoringEngine) -> None:
        rules = await monitoring_engine.setup_default_rules(FRAMEWORK_ID)

        assert [(r.rule_type, r.check_frequency_seconds) for r in rules] == [
            ("threshold", 86_400),
            ("anomaly", 43_200),
            ("compliance_drift", 604_800),
        ]
        assert all(r.framework_id == FRAMEWORK_ID for r in rules)
        assert len(await monitoring_engine.list_rules()) == 3

    @pytest.mark.asyncio()
    async def test_deactivated_rule_is_listed_but_not_active(self, monitoring_engine: MonitoringEngine) -> None:
        rule = await monitoring_engine.create_rule(_threshold_rule())

        await monitoring_engine.set_rule_active(rule.rule_id, False)

        assert await monitoring_engine.list_rules(active_only=True) == []
        assert not (await monitoring_engine.get_rule(rule.rule_id)).is_active


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


class TestEvaluation:
    @pytest.mark.asyncio()
    async def test_threshold_rule_alerts_on_lagging_controls(
        self,
        monitoring_engine: MonitoringEngine,
        alert_manager: AlertManager,
        now: datetime,
    ) -> None:
        rule = await monitoring_engine.create_rule(_threshold_rule())

        alerts = await monitoring_engine.evaluate_rule(rule, now)

        by_control = {a.affected_controls[0]: a.severity for a in alerts}
        assert by_control == {"CC7.2": "medium", "CC8.1": "critical"}
        assert len(await alert_manager.list_recent()) == 2

    @pytest.mark.asyncio()
    async def test_rule_scoped_to_controls_only_sees_them(
        self,
        monitoring_engine: MonitoringEngine,
        now: datetime,
    ) -> None:
        rule = await monitoring_engine.create_rule(_threshold_rule(control_ids=("CC7.2",)))

        alerts = await monitoring_engine.evaluate_rule(rule, now)

        assert [a.affected_controls for a in alerts] == [("CC7.2",)]

    @pytest.mark.asyncio()
    async def test_failing_rule_does_not_stop_the_others(
        self,
        monitoring_engine: MonitoringEngine,
        metric_store: InMemoryMetricStore,
        now: datetime,
    ) -> None:
        """A rule over unusable metrics is skipped while other rules still raise alerts."""
        metric_store.add_control(
            ControlRecord.model_construct(control_id="X-1", framework_id="broken", implementation_progress=float("nan"))
        )
        healthy = await monitoring_engine.create_rule(_threshold_rule())
        broken = await monitoring_engine.create_rule(_threshold_rule(framework_id="broken"))

        results = await monitoring_engine.run_checks(now)

        assert healthy.rule_id in results
        assert broken.rule_id not in results
        assert len(results[healthy.rule_id]) == 2

    @pytest.mark.asyncio()
    async def test_unexpected_store_error_is_isolated(
        self,
        monitoring_engine: MonitoringEngine,
        metric_store: InMemoryMetricStore,
        now: datetime,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        original = metric_store.snapshot

        async def flaky_snapshot(**kwargs: object):
            if kwargs["framework_id"] == "offline":
                raise ConnectionError("metric store unavailable")
            return await original(**kwargs)

        monkeypatch.setattr(metric_store, "snapshot", flaky_snapshot)
        healthy = await monitoring_engine.create_rule(_threshold_rule())
        await monitoring_engine.create_rule(_threshold_rule(framework_id="offline"))

        results = await monitoring_engine.run_checks(now)

        assert list(results) == [healthy.rule_id]

    @pytest.mark.asyncio()
    async def test_inactive_rules_are_not_checked(self, monitoring_engine: MonitoringEngine, now: datetime) -> None:
        rule = await monitoring_engine.create_rule(_threshold_rule(is_active=False))

        assert rule.rule_id not in await monitoring_engine.run_checks(now)

    @pytest.mark.asyncio()
    async def test_run_due_honours_check_frequency(self, monitoring_engine: MonitoringEngine, now: datetime) -> None:
        daily = await monitoring_engine.create_rule(_threshold_rule(check_frequency_seconds=86_400))
        hourly = await monitoring_engine.create_rule(_threshold_rule(check_frequency_seconds=3_600))

        first = await monitoring_engine.run_due(now)
        second = await monitoring_engine.run_due(now + timedelta(hours=1))
        third = await monitoring_engine.run_due(now + timedelta(hours=1, minutes=30))

        assert set(first) == {daily.rule_id, hourly.rule_id}
        assert set(second) == {hourly.rule_id}
        assert third == {}


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class TestMetrics:
    @pytest.mark.asyncio()
    async def test_coverage_counts_controls_under_active_rules(
        self,
        monitoring_engine: MonitoringEngine,
        now: datetime,
    ) -> None:
        await monitoring_engine.create_rule(_threshold_rule(control_ids=("CC6.1",)))
        inactive = await monitoring_engine.create_rule(_threshold_rule())
        await monitoring_engine.set_rule_active(inactive.rule_id, False)

        metrics = await monitoring_engine.metrics(now)

        assert (metrics.total_rules, metrics.active_rules) == (2, 1)
        assert metrics.monitoring_coverage == 33.33

    @pytest.mark.asyncio()
    async def test_framework_rule_covers_every_control(self, monitoring_engine: MonitoringEngine, now: datetime) -> None:
        await monitoring_engine.setup_default_rules(FRAMEWORK_ID)
        await monitoring_engine.run_checks(now)

        metrics = await monitoring_engine.metrics(now)

        assert metrics.monitoring_coverage == 100.0
        assert metrics.open_alerts == 2
