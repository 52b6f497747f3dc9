"""Integrated risk scoring.

Blends four sub-scores into one 0-100 integrated risk score:

    base                   impact × likelihood (raw, 1..25)
    threat                 mean signal severity × min(1, signals / 10)
    control effectiveness  min(100, mean(rating × implementation multiplier) × 20)
    compliance             implemented mapped controls / mapped controls × 100

    integrated = 0.30·base + 0.25·threat
               + 0.25·(100 − control effectiveness) + 0.20·(100 − compliance)

Higher control effectiveness and compliance reduce the integrated score.
Everything here is deterministic and side-effect free; persisting the
assessment is the caller's job.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime

from aumos_compliance_orchestrator.core.records import (
    IMPLEMENTED_STATUSES,
    IntegratedRiskAssessment,
    RiskControlMapping,
    RiskLevel,
    RiskRecord,
    ThreatSignal,
)

SEVERITY_SCORES: dict[str, float] = {"critical": 100.0, "high": 75.0, "medium": 50.0, "low": 25.0}

IMPLEMENTATION_MULTIPLIERS: dict[str, float] = {
    "verified": 1.2,
    "tested": 1.1,
    "implemented": 1.0,
    "in_progress": 0.5,
}

# Signal count at which threat volume stops adding weight
_THREAT_VOLUME_SATURATION = 10

_WEIGHT_BASE = 0.30
_WEIGHT_THREAT = 0.25
_WEIGHT_CONTROLS = 0.25
_WEIGHT_COMPLIANCE = 0.20


def base_risk_score(risk: RiskRecord) -> float:
    return float(risk.impact * risk.likelihood)


def threat_intelligence_score(signals: Sequence[ThreatSignal]) -> float:
    if not signals:
        return 0.0
    mean_severity = sum(SEVERITY_SCORES.get(s.severity, 0.0) for s in signals) / len(signals)
    return mean_severity * min(1.0, len(signals) / _THREAT_VOLUME_SATURATION)


def control_effectiveness_score(
    mappings: Sequence[RiskControlMapping],
    compliance_state: Mapping[str, str],
) -> float:
    """Return the maturity-weighted effectiveness of the mapped controls, 0 when unmapped."""
    if not mappings:
        return 0.0
    weighted = [
        m.effectiveness_rating * IMPLEMENTATION_MULTIPLIERS.get(compliance_state.get(m.control_id, ""), 0.0)
        for m in mappings
    ]
    return min(100.0, sum(weighted) / len(weighted) * 20)


def compliance_score(mappings: Sequence[RiskControlMapping], compliance_state: Mapping[str, str]) -> float:
    if not mappings:
        return 0.0
    implemented = sum(1 for m in mappings if compliance_state.get(m.control_id) in IMPLEMENTED_STATUSES)
    return implemented / len(mappings) * 100


def risk_level_for(score: float) -> RiskLevel:
    if score >= 80:
        return "critical"
    if score >= 60:
        return "high"
    if score >= 30:
        return "medium"
    return "low"


def _recommendations(
    integrated: float,
    signals: Sequence[ThreatSignal],
    mappings: Sequence[RiskControlMapping],
    compliance_state: Mapping[str, str],
) -> tuple[str, ...]:
    actions: list[str] = []
    if integrated > 70:
        actions.append("Immediate risk mitigation required due to high integrated risk score")
    pending = sum(1 for m in mappings if compliance_state.get(m.control_id) not in IMPLEMENTED_STATUSES)
    if pending:
        actions.append(f"Implement {pending} pending controls to reduce risk")
    if len(signals) > 3:
        actions.append("High threat activity detected - enhance monitoring and detection controls")
    return tuple(actions)


def score_risk(
    risk: RiskRecord,
    threat_signals: Sequence[ThreatSignal],
    control_mappings: Sequence[RiskControlMapping],
    compliance_state: Mapping[str, str],
    *,
    assessed_at: datetime,
) -> IntegratedRiskAssessment:
    """Compute the integrated risk assessment of one risk.

    Args:
        risk: The risk being scored.
        threat_signals: Active threat signals linked to the risk.
        control_mappings: Mappings from the risk to its controls.
        compliance_state: Implementation status per mapped control id.
        assessed_at: Timestamp stamped on the assessment.

    Returns:
        The IntegratedRiskAssessment. Sub-scores are rounded to two decimals,
        the integrated score is clamped to 0..100.
    """
    base = base_risk_score(risk)
    threat = threat_intelligence_score(threat_signals)
    effectiveness = control_effectiveness_score(control_mappings, compliance_state)
    compliance = compliance_score(control_mappings, compliance_state)

    integrated = (
        _WEIGHT_BASE * base
        + _WEIGHT_THREAT * threat
        + _WEIGHT_CONTROLS * (100 - effectiveness)
        + _WEIGHT_COMPLIANCE * (100 - compliance)
    )
    integrated = round(max(0.0, min(100.0, integrated)), 2)

    return IntegratedRiskAssessment(
        risk_id=risk.risk_id,
        base_risk_score=round(base, 2),
        threat_intelligence_score=round(threat, 2),
        control_effectiveness_score=round(effectiveness, 2),
        compliance_score=round(compliance, 2),
        integrated_risk_score=integrated,
        risk_level=risk_level_for(integrated),
        priority_score=round(0.7 * integrated + 0.3 * threat),
        recommended_actions=_recommendations(integrated, threat_signals, control_mappings, compliance_state),
        assessed_at=assessed_at,
    )
