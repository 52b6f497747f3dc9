"""Rule evaluator: turns a metric snapshot into alert candidates.

``evaluate(rule, snapshot)`` is a pure function. It reads nothing but its
arguments, uses ``snapshot.as_of`` as "now", and renders every trigger value
with fixed rounding. Evaluating the same rule against an unchanged snapshot
therefore yields equal candidates, which lets callers deduplicate.

Rule types:
- threshold               implementation progress below a floor, test failures above a ceiling
- anomaly                 most recent daily pass rate far from the trailing average
- compliance_drift        recorded progress disagrees with the latest oracle assessment
- certification_expiry    framework readiness (implemented / total) below the requirement
- control_failure         repeated test failures of one control inside a window
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Callable
from datetime import date, timedelta
from typing import Any

from aumos_compliance_orchestrator.core.domain import Severity
from aumos_compliance_orchestrator.core.records import ControlRecord, MetricSnapshot, TestResult
from aumos_compliance_orchestrator.core.rules import (
    AlertCandidate,
    AnomalyCondition,
    CertificationReadinessCondition,
    ComplianceDriftCondition,
    ControlFailureCondition,
    MonitoringRule,
    ThresholdCondition,
)
from aumos_compliance_orchestrator.errors import RuleEvaluationError

# Relative deviation bounds for threshold severities, checked in order
_DEVIATION_SEVERITIES: tuple[tuple[float, Severity], ...] = (
    (0.5, "critical"),
    (0.3, "high"),
    (0.15, "medium"),
)

_PRECISION = 4


def severity_for_deviation(current: float, threshold: float) -> tuple[Severity, float]:
    """Map the relative deviation of a value from its bound to a severity.

    Args:
        current: Observed value.
        threshold: Configured bound. Must be positive.

    Returns:
        The severity and the rounded deviation ``|current - threshold| / threshold``.

    Raises:
        RuleEvaluationError: If the threshold is not positive.
    """
    if threshold <= 0:
        raise RuleEvaluationError(f"Threshold must be positive, got {threshold}")
    deviation = abs(current - threshold) / threshold
    for bound, severity in _DEVIATION_SEVERITIES:
        if deviation >= bound:
            return severity, round(deviation, _PRECISION)
    return "low", round(deviation, _PRECISION)


def _finite(value: float, field: str, control_id: str | None = None) -> float:
    if value is None or not math.isfinite(value):
        raise RuleEvaluationError(
            f"Metric '{field}' is not a finite number",
            details={"field": field, "control_id": control_id, "value": repr(value)},
        )
    return float(value)


def _label(control: ControlRecord) -> str:
    return control.control_id if not control.title else f"{control.control_id} ({control.title})"


def _failures_since(
    results: tuple[TestResult, ...],
    control_id: str,
    snapshot: MetricSnapshot,
    days: int,
) -> list[TestResult]:
    since = snapshot.as_of - timedelta(days=days)
    return [
        r
        for r in results
        if r.control_id == control_id and not r.passed and since < r.executed_at <= snapshot.as_of
    ]


# ---------------------------------------------------------------------------
# Per-type evaluation
# ---------------------------------------------------------------------------


def _evaluate_threshold(
    rule: MonitoringRule,
    condition: ThresholdCondition,
    snapshot: MetricSnapshot,
) -> list[AlertCandidate]:
    alerts: list[AlertCandidate] = []
    floor = condition.min_implementation_progress
    ceiling = condition.max_test_failures

    for control in snapshot.controls:
        progress = _finite(control.implementation_progress, "implementation_progress", control.control_id)
        if progress < floor:
            severity, deviation = severity_for_deviation(progress, floor)
            alerts.append(
                AlertCandidate(
                    rule_id=rule.rule_id,
                    alert_type="implementation_below_threshold",
                    severity=severity,
                    title="Implementation progress below threshold",
                    description=f"Control {_label(control)} implementation at {progress:.1f}%, "
                    f"below threshold of {floor:.1f}%",
                    trigger_data={
                        "control_id": control.control_id,
                        "metric": "implementation_progress",
                        "current_value": round(progress, _PRECISION),
                        "threshold": floor,
                        "deviation": deviation,
                    },
                    affected_controls=(control.control_id,),
                    risk_assessment={"risk_level": control.risk_level, "impact": "medium", "likelihood": "high"},
                    suggested_actions=(
                        "Review implementation plan",
                        "Allocate additional resources",
                        "Identify blocking issues",
                    ),
                )
            )

        failures = len(_failures_since(snapshot.test_results, control.control_id, snapshot, condition.lookback_days))
        if failures > ceiling:
            severity, deviation = severity_for_deviation(failures, ceiling)
            alerts.append(
                AlertCandidate(
                    rule_id=rule.rule_id,
                    alert_type="test_failures_threshold",
                    severity=severity,
                    title="Excessive test failures detected",
                    description=f"Control {_label(control)} has {failures} test failures in the last "
                    f"{condition.lookback_days} days, exceeding threshold of {ceiling}",
                    trigger_data={
                        "control_id": control.control_id,
                        "metric": "recent_test_failures",
                        "current_value": failures,
                        "threshold": ceiling,
                        "deviation": deviation,
                        "lookback_days": condition.lookback_days,
                    },
                    affected_controls=(control.control_id,),
                    risk_assessment={"risk_level": "high", "impact": "high", "likelihood": "high"},
                    suggested_actions=(
                        "Investigate root cause of failures",
                        "Review control implementation",
                        "Update test procedures if necessary",
                    ),
                )
            )
    return alerts


def daily_pass_rates(snapshot: MetricSnapshot, history_days: int) -> list[tuple[date, float]]:
    """Return (day, pass rate) for each day with test results, most recent first."""
    since = snapshot.as_of - timedelta(days=history_days)
    buckets: dict[date, list[bool]] = defaultdict(list)
    for result in snapshot.test_results:
        if since < result.executed_at <= snapshot.as_of:
            buckets[result.executed_at.date()].append(result.passed)
    return [
        (day, sum(outcomes) / len(outcomes))
        for day, outcomes in sorted(buckets.items(), key=lambda item: item[0], reverse=True)
    ]


def _evaluate_anomaly(
    rule: MonitoringRule,
    condition: AnomalyCondition,
    snapshot: MetricSnapshot,
) -> list[AlertCandidate]:
    rates = daily_pass_rates(snapshot, condition.history_days)
    if len(rates) < condition.min_history_days:
        return []

    recent_day, recent = rates[0]
    trailing = [rate for _, rate in rates[1 : condition.trailing_window_days + 1]]
    if not trailing:
        return []
    average = sum(trailing) / len(trailing)
    deviation = abs(recent - average)
    if deviation <= condition.anomaly_threshold:
        return []

    degraded = recent < average
    severity: Severity = "high" if degraded else "medium"
    return [
        AlertCandidate(
            rule_id=rule.rule_id,
            alert_type="compliance_anomaly",
            severity=severity,
            title="Compliance performance anomaly detected",
            description=f"Unusual change in compliance test performance. Current pass rate: "
            f"{recent * 100:.1f}%, trailing average: {average * 100:.1f}%",
            trigger_data={
                "day": recent_day.isoformat(),
                "current_pass_rate": round(recent, _PRECISION),
                "trailing_average": round(average, _PRECISION),
                "deviation": round(deviation, _PRECISION),
                "anomaly_threshold": condition.anomaly_threshold,
                "days_of_history": len(rates),
                "direction": "degraded" if degraded else "improved",
            },
            affected_controls=tuple(c.control_id for c in snapshot.controls),
            risk_assessment={"risk_level": severity, "impact": "medium", "likelihood": "medium"},
            suggested_actions=(
                "Investigate recent changes to systems or processes",
                "Review test execution logs",
                "Validate test configuration and parameters",
            ),
        )
    ]


def _evaluate_drift(
    rule: MonitoringRule,
    condition: ComplianceDriftCondition,
    snapshot: MetricSnapshot,
) -> list[AlertCandidate]:
    alerts: list[AlertCandidate] = []
    stale_before = snapshot.as_of - timedelta(days=condition.min_record_age_days)
    for control in snapshot.controls:
        if control.updated_at >= stale_before:
            continue
        assessment = snapshot.assessments.get(control.control_id)
        if assessment is None or assessment.assessed_progress is None:
            continue
        recorded = _finite(control.implementation_progress, "implementation_progress", control.control_id)
        assessed = _finite(assessment.assessed_progress, "assessed_progress", control.control_id)
        drift = abs(recorded - assessed)
        if drift <= condition.max_drift:
            continue
        alerts.append(
            AlertCandidate(
                rule_id=rule.rule_id,
                alert_type="compliance_drift",
                severity="high" if drift > condition.high_severity_drift else "medium",
                title="Compliance drift detected",
                description=f"Control {_label(control)} shows {drift:.1f} points of drift between "
                f"recorded and assessed implementation progress",
                trigger_data={
                    "control_id": control.control_id,
                    "recorded_progress": round(recorded, _PRECISION),
                    "assessed_progress": round(assessed, _PRECISION),
                    "drift": round(drift, _PRECISION),
                    "max_drift": condition.max_drift,
                    "assessment_id": assessment.assessment_id,
                },
                affected_controls=(control.control_id,),
                risk_assessment={"risk_level": "medium", "impact": "medium", "likelihood": "high"},
                suggested_actions=(
                    "Update implementation progress records",
                    "Re-assess control implementation",
                    "Review control maintenance procedures",
                ),
            )
        )
    return alerts


def _evaluate_certification(
    rule: MonitoringRule,
    condition: CertificationReadinessCondition,
    snapshot: MetricSnapshot,
) -> list[AlertCandidate]:
    controls = [c for c in snapshot.controls if rule.framework_id is None or c.framework_id == rule.framework_id]
    if not controls:
        return []
    implemented = sum(1 for c in controls if c.is_implemented)
    readiness = implemented / len(controls) * 100
    if readiness >= condition.required_readiness:
        return []

    severity: Severity = "critical" if readiness < condition.critical_below else "high"
    return [
        AlertCandidate(
            rule_id=rule.rule_id,
            alert_type="certification_readiness",
            severity=severity,
            title="Certification readiness alert",
            description=f"Framework {rule.framework_id or 'in scope'} at {readiness:.1f}% implementation, "
            f"below required {condition.required_readiness:.1f}% for certification",
            trigger_data={
                "framework_id": rule.framework_id,
                "readiness": round(readiness, _PRECISION),
                "required_readiness": condition.required_readiness,
                "implemented_controls": implemented,
                "total_controls": len(controls),
            },
            affected_controls=tuple(c.control_id for c in controls if not c.is_implemented),
            risk_assessment={"risk_level": "high", "impact": "high", "likelihood": "medium"},
            suggested_actions=(
                "Prioritize incomplete control implementations",
                "Schedule certification readiness review",
                "Engage with certification body",
            ),
        )
    ]


def _evaluate_control_failure(
    rule: MonitoringRule,
    condition: ControlFailureCondition,
    snapshot: MetricSnapshot,
) -> list[AlertCandidate]:
    alerts: list[AlertCandidate] = []
    for control in snapshot.controls:
        failures = _failures_since(snapshot.test_results, control.control_id, snapshot, condition.window_days)
        if len(failures) < condition.max_consecutive_failures:
            continue
        last_failure = max(r.executed_at for r in failures)
        alerts.append(
            AlertCandidate(
                rule_id=rule.rule_id,
                alert_type="control_failure",
                severity="critical" if control.risk_level == "critical" else "high",
                title="Repeated control test failures",
                description=f"Control {_label(control)} has failed {len(failures)} times in the last "
                f"{condition.window_days} days",
                trigger_data={
                    "control_id": control.control_id,
                    "failure_count": len(failures),
                    "threshold": condition.max_consecutive_failures,
                    "window_days": condition.window_days,
                    "last_failure": last_failure.isoformat(),
                    "risk_level": control.risk_level,
                },
                affected_controls=(control.control_id,),
                risk_assessment={"risk_level": control.risk_level, "impact": "high", "likelihood": "high"},
                suggested_actions=(
                    "Immediate investigation required",
                    "Review control implementation",
                    "Consider control redesign or replacement",
                ),
            )
        )
    return alerts


_EVALUATORS: dict[str, Callable[[MonitoringRule, Any, MetricSnapshot], list[AlertCandidate]]] = {
    "threshold": _evaluate_threshold,
    "anomaly": _evaluate_anomaly,
    "compliance_drift": _evaluate_drift,
    "certification_expiry": _evaluate_certification,
    "control_failure": _evaluate_control_failure,
}


def evaluate(rule: MonitoringRule, snapshot: MetricSnapshot) -> list[AlertCandidate]:
    """Evaluate one monitoring rule against a metric snapshot.

    Args:
        rule: The monitoring rule.
        snapshot: Metrics scoped to the rule's framework and controls.

    Returns:
        Zero or more alert candidates, each carrying its exact trigger values.

    Raises:
        RuleEvaluationError: If the snapshot holds values the rule cannot use.
    """
    evaluator = _EVALUATORS.get(rule.rule_type)
    if evaluator is None:
        raise RuleEvaluationError(f"Unsupported monitoring rule type '{rule.rule_type}'")
    return evaluator(rule, rule.condition, snapshot)
