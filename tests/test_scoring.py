"""Tests for integrated risk scoring."""

from datetime import UTC, datetime

import pytest

from aumos_compliance_orchestrator.core.records import RiskControlMapping, RiskRecord, ThreatSignal
from aumos_compliance_orchestrator.scoring.risk_scorer import (
    control_effectiveness_score,
    risk_level_for,
    score_risk,
    threat_intelligence_score,
)

ASSESSED_AT = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


def _risk(impact: int, likelihood: int) -> RiskRecord:
    return RiskRecord(risk_id="R-1", title="Unauthorized access", impact=impact, likelihood=likelihood)


def _signals(count: int, severity: str) -> list[ThreatSignal]:
    return [ThreatSignal(source="feed-a", severity=severity, risk_ids=("R-1",)) for _ in range(count)]


def _mapping(control_id: str, rating: int) -> RiskControlMapping:
    return RiskControlMapping(risk_id="R-1", control_id=control_id, effectiveness_rating=rating)


class TestScoreRisk:
    def test_unmapped_risk_without_signals(self) -> None:
        """4x4 risk: 0.30*16 + 0.25*0 + 0.25*100 + 0.20*100 = 49.8."""
        assessment = score_risk(_risk(4, 4), [], [], {}, assessed_at=ASSESSED_AT)

        assert assessment.base_risk_score == 16.0
        assert assessment.threat_intelligence_score == 0.0
        assert assessment.control_effectiveness_score == 0.0
        assert assessment.compliance_score == 0.0
        assert assessment.integrated_risk_score == 49.8
        assert assessment.risk_level == "medium"
        assert assessment.priority_score == 35
        assert assessment.assessed_at == ASSESSED_AT
        assert assessment.recommended_actions == ()

    def test_fully_mitigated_risk_under_heavy_threat(self) -> None:
        assessment = score_risk(
            _risk(5, 5),
            _signals(10, "critical"),
            [_mapping("CC6.1", 5)],
            {"CC6.1": "verified"},
            assessed_at=ASSESSED_AT,
        )

        assert assessment.threat_intelligence_score == 100.0
        assert assessment.control_effectiveness_score == 100.0
        assert assessment.compliance_score == 100.0
        assert assessment.integrated_risk_score == 32.5
        assert assessment.priority_score == 53
        assert assessment.recommended_actions == (
            "High threat activity detected - enhance monitoring and detection controls",
        )

    def test_partial_implementation_lowers_effectiveness(self) -> None:
        assessment = score_risk(
            _risk(3, 3),
            _signals(2, "high"),
            [_mapping("CC6.1", 4), _mapping("CC7.2", 2)],
            {"CC6.1": "implemented", "CC7.2": "in_progress"},
            assessed_at=ASSESSED_AT,
        )

        assert assessment.threat_intelligence_score == 15.0
        assert assessment.control_effectiveness_score == 50.0
        assert assessment.compliance_score == 50.0
        assert assessment.integrated_risk_score == 28.95
        assert assessment.risk_level == "low"
        assert assessment.recommended_actions == ("Implement 1 pending controls to reduce risk",)

    def test_unmitigated_risk_under_heavy_threat_is_high(self) -> None:
        assessment = score_risk(_risk(5, 5), _signals(10, "critical"), [], {}, assessed_at=ASSESSED_AT)

        assert assessment.integrated_risk_score == 77.5
        assert assessment.risk_level == "high"
        assert assessment.priority_score == 84
        assert assessment.recommended_actions[0] == (
            "Immediate risk mitigation required due to high integrated risk score"
        )

    def test_scoring_is_deterministic(self) -> None:
        args = (_risk(4, 3), _signals(4, "medium"), [_mapping("CC6.1", 3)], {"CC6.1": "tested"})

        first = score_risk(*args, assessed_at=ASSESSED_AT)
        second = score_risk(*args, assessed_at=ASSESSED_AT)

        assert first.model_dump(exclude={"assessment_id"}) == second.model_dump(exclude={"assessment_id"})

    def test_assessment_time_must_be_supplied(self) -> None:
        with pytest.raises(TypeError):
            score_risk(_risk(4, 4), [], [], {})  # type: ignore[call-arg]


class TestSubScores:
    def test_threat_volume_saturates_at_ten_signals(self) -> None:
        assert threat_intelligence_score(_signals(5, "high")) == 37.5
        assert threat_intelligence_score(_signals(20, "high")) == 75.0
        assert threat_intelligence_score([]) == 0.0

    def test_unimplemented_controls_contribute_nothing(self) -> None:
        assert control_effectiveness_score([_mapping("CC8.1", 5)], {"CC8.1": "not_started"}) == 0.0

    @pytest.mark.parametrize(
        ("score", "level"),
        [(80.0, "critical"), (79.99, "high"), (60.0, "high"), (30.0, "medium"), (29.99, "low"), (0.0, "low")],
    )
    def test_risk_level_boundaries(self, score: float, level: str) -> None:
        assert risk_level_for(score) == level
