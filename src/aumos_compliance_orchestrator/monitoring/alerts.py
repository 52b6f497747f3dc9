"""Alert manager: persistence and lifecycle of compliance alerts.

Alerts enter through two paths: candidates produced by the rule evaluator
and findings reported by automation runs. Both become ComplianceAlert
records in the ``open`` state. Every run may re-raise an alert; callers that
want deduplication compare ``trigger_data``.

Lifecycle:
    open → acknowledged | investigating | resolved | false_positive
    acknowledged → investigating | resolved | false_positive
    investigating → resolved | false_positive
    resolved, false_positive → (terminal)
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timedelta
from typing import Any

from aumos_compliance_orchestrator.core.domain import Finding, utc_now
from aumos_compliance_orchestrator.core.interfaces import IAlertRepository
from aumos_compliance_orchestrator.core.rules import (
    AlertCandidate,
    AlertStatus,
    ComplianceAlert,
    MonitoringMetrics,
)
from aumos_compliance_orchestrator.errors import InvalidTransitionError
from aumos_compliance_orchestrator.observability import get_logger

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "open": frozenset({"acknowledged", "investigating", "resolved", "false_positive"}),
    "acknowledged": frozenset({"investigating", "resolved", "false_positive"}),
    "investigating": frozenset({"resolved", "false_positive"}),
    "resolved": frozenset(),
    "false_positive": frozenset(),
}

_CLOSED_STATUSES = frozenset({"resolved", "false_positive"})

# Alerts returned by list_recent when no limit is given
_DEFAULT_RECENT_LIMIT = 20


class AlertManager:
    """Creates alerts, applies lifecycle transitions and aggregates metrics.

    Args:
        repository: Alert persistence with compare-and-save writes.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        repository: IAlertRepository,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._clock = clock

    async def create(self, candidate: AlertCandidate) -> ComplianceAlert:
        """Persist an evaluator candidate as an open alert."""
        alert = ComplianceAlert(**candidate.model_dump(), created_at=self._clock())
        await self._repository.add(alert)
        logger.info(
            "Compliance alert raised",
            alert_id=alert.alert_id,
            rule_id=alert.rule_id,
            alert_type=alert.alert_type,
            severity=alert.severity,
        )
        return alert

    async def create_many(self, candidates: Iterable[AlertCandidate]) -> list[ComplianceAlert]:
        return [await self.create(candidate) for candidate in candidates]

    async def get(self, alert_id: str) -> ComplianceAlert:
        return await self._repository.get(alert_id)

    async def transition(self, alert_id: str, status: AlertStatus, actor: str | None = None) -> ComplianceAlert:
        """Move an alert to a new lifecycle state.

        Args:
            alert_id: The alert.
            status: Target status.
            actor: Who made the change.

        Returns:
            The updated alert.

        Raises:
            NotFoundError: If the alert does not exist.
            InvalidTransitionError: If the lifecycle does not allow the move,
                or another writer changed the alert first.
        """
        alert = await self._repository.get(alert_id)
        if status not in ALLOWED_TRANSITIONS[alert.status]:
            raise InvalidTransitionError(
                f"Alert {alert_id} cannot move from {alert.status} to {status}",
                details={"alert_id": alert_id, "from": alert.status, "to": status},
            )

        now = self._clock()
        update: dict[str, Any] = {"status": status, "status_changed_by": actor}
        if status == "acknowledged" or (alert.acknowledged_at is None and status == "investigating"):
            update["acknowledged_at"] = now
        if status in _CLOSED_STATUSES:
            update["resolved_at"] = now

        updated = alert.model_copy(update=update)
        if not await self._repository.compare_and_save(updated, alert.status):
            raise InvalidTransitionError(
                f"Alert {alert_id} changed concurrently",
                details={"alert_id": alert_id, "expected_status": alert.status},
            )
        logger.info("Alert status changed", alert_id=alert_id, from_status=alert.status, to_status=status, actor=actor)
        return updated

    async def list_recent(self, limit: int = _DEFAULT_RECENT_LIMIT, status: str | None = None) -> list[ComplianceAlert]:
        """Return alerts ordered by recency, newest first."""
        return await self._repository.list_recent(limit, status)

    async def ingest_findings(
        self,
        source_id: str,
        findings: Sequence[Finding],
        context: dict[str, Any] | None = None,
    ) -> list[ComplianceAlert]:
        """Raise one alert per automation finding.

        Args:
            source_id: Id of the automation rule that reported the findings.
            findings: Structured findings from the run.
            context: Extra trigger data such as the automation execution id.

        Returns:
            The created alerts.
        """
        alerts: list[ComplianceAlert] = []
        for finding in findings:
            candidate = AlertCandidate(
                rule_id=source_id,
                alert_type="automation_finding",
                severity=finding.severity,
                title=finding.title,
                description=finding.description,
                trigger_data={**(context or {}), "finding": finding.model_dump(mode="json")},
                affected_controls=(finding.control_id,) if finding.control_id else (),
                risk_assessment={"risk_level": finding.severity},
                suggested_actions=(finding.remediation,) if finding.remediation else (),
            )
            alerts.append(await self.create(candidate))
        return alerts

    async def metrics(
        self,
        now: datetime | None = None,
        total_rules: int = 0,
        active_rules: int = 0,
        monitoring_coverage: float = 0.0,
    ) -> MonitoringMetrics:
        """Aggregate alert metrics.

        Mean resolution latency is ``resolved_at - created_at`` averaged over
        alerts resolved within the last 30 days.

        Args:
            now: Reference time; current time when None.
            total_rules: Number of monitoring rules, passed through.
            active_rules: Number of active monitoring rules, passed through.
            monitoring_coverage: Percentage of controls under monitoring, passed through.

        Returns:
            MonitoringMetrics for the dashboard.
        """
        now = now or self._clock()
        window_start = now - timedelta(days=30)
        recent = await self._repository.list_since(window_start)
        last_day = [a for a in recent if a.created_at >= now - timedelta(hours=24)]
        resolved = await self._repository.list_resolved_since(window_start)
        resolution_minutes = [
            (a.resolved_at - a.created_at).total_seconds() / 60 for a in resolved if a.resolved_at is not None
        ]
        mean_resolution = sum(resolution_minutes) / len(resolution_minutes) if resolution_minutes else 0.0
        return MonitoringMetrics(
            total_rules=total_rules,
            active_rules=active_rules,
            open_alerts=await self._repository.count("open"),
            alerts_last_24h=len(last_day),
            critical_alerts_last_24h=sum(1 for a in last_day if a.severity == "critical"),
            alerts_by_severity=dict(Counter(a.severity for a in recent)),
            average_resolution_minutes=round(mean_resolution, 2),
            monitoring_coverage=round(monitoring_coverage, 2),
        )
