"""Records owned by the GRC metric store and the assessment oracle contract.

The orchestrator reads controls, tests, evidence, risks and threat signals
from the metric store and appends the test results, evidence and oracle
assessments that automation produces. Risk scoring types live here as well
because they are computed purely from these records.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from aumos_compliance_orchestrator.core.domain import Severity, new_id, utc_now

ImplementationStatus = Literal["not_started", "in_progress", "implemented", "tested", "verified"]
MappingType = Literal["mitigates", "monitors", "detects", "prevents", "responds_to"]
RiskLevel = Literal["low", "medium", "high", "critical"]

IMPLEMENTED_STATUSES: frozenset[str] = frozenset({"implemented", "tested", "verified"})


class Framework(BaseModel):
    model_config = ConfigDict(frozen=True)

    framework_id: str
    name: str
    status: str = "active"


class ControlRecord(BaseModel):
    """A compliance control as recorded in the GRC application."""

    model_config = ConfigDict(frozen=True)

    control_id: str
    framework_id: str | None = None
    title: str = ""
    category: str = ""
    control_type: str = Field(default="preventive", description="preventive | detective | corrective")
    implementation_status: ImplementationStatus = "not_started"
    implementation_progress: float = Field(default=0.0, ge=0.0, le=100.0)
    risk_level: Severity = "medium"
    test_status: Literal["not_tested", "passed", "failed"] = "not_tested"
    updated_at: datetime = Field(default_factory=utc_now)
    attributes: dict[str, Any] = Field(default_factory=dict, description="Free-form control attributes")

    @property
    def is_implemented(self) -> bool:
        return self.implementation_status in IMPLEMENTED_STATUSES


class TestResult(BaseModel):
    """Outcome of one control test, appended by automation."""

    __test__ = False

    model_config = ConfigDict(frozen=True)

    result_id: str = Field(default_factory=new_id)
    control_id: str
    passed: bool
    score: float | None = None
    source: str = "automation"
    executed_at: datetime = Field(default_factory=utc_now)
    details: dict[str, Any] = Field(default_factory=dict)


class EvidenceRecord(BaseModel):
    """Evidence artefact collected for a control."""

    model_config = ConfigDict(frozen=True)

    evidence_id: str = Field(default_factory=new_id)
    control_id: str
    evidence_type: str
    title: str
    location: str
    checksum: str = Field(description="SHA-256 of the canonical evidence payload")
    collection_method: str = "automated"
    collected_at: datetime = Field(default_factory=utc_now)
    metadata: dict[str, Any] = Field(default_factory=dict)


class AssessmentGap(BaseModel):
    model_config = ConfigDict(frozen=True)

    gap_id: str = Field(default_factory=new_id)
    title: str
    description: str = ""
    severity: Severity = "medium"


class EffortEstimate(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_hours: float = 0.0
    timeline_weeks: float = 0.0


class AssessmentRequest(BaseModel):
    """Context handed to the assessment oracle."""

    model_config = ConfigDict(frozen=True)

    subject_type: Literal["control", "risk", "framework", "mapping"]
    subject_id: str
    assessment_type: str
    context: dict[str, Any] = Field(default_factory=dict)


class AssessmentResponse(BaseModel):
    """Structured, confidence-scored answer from the assessment oracle."""

    model_config = ConfigDict(frozen=True)

    confidence_score: float = Field(ge=0.0, le=1.0)
    gaps: tuple[AssessmentGap, ...] = ()
    recommendations: tuple[str, ...] = ()
    estimated_effort: EffortEstimate | None = None
    assessed_progress: float | None = Field(default=None, ge=0.0, le=100.0)
    relevance: float | None = Field(default=None, ge=0.0, le=1.0)
    attributes: dict[str, Any] = Field(default_factory=dict)


class OracleAssessment(BaseModel):
    """Stored oracle assessment, used later by the compliance drift rule."""

    model_config = ConfigDict(frozen=True)

    assessment_id: str = Field(default_factory=new_id)
    control_id: str
    assessment_type: str
    confidence_score: float
    assessed_progress: float | None = None
    gap_count: int = 0
    assessed_at: datetime = Field(default_factory=utc_now)


class MetricSnapshot(BaseModel):
    """Point-in-time view of the metric store handed to the rule evaluator."""

    model_config = ConfigDict(frozen=True)

    as_of: datetime
    controls: tuple[ControlRecord, ...] = ()
    test_results: tuple[TestResult, ...] = ()
    assessments: dict[str, OracleAssessment] = Field(
        default_factory=dict,
        description="Most recent oracle assessment per control id",
    )


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------


class RiskRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    risk_id: str
    title: str
    category: str = ""
    impact: int = Field(ge=1, le=5)
    likelihood: int = Field(ge=1, le=5)
    status: str = "open"
    owner: str | None = None


class ThreatSignal(BaseModel):
    """External threat intelligence indicator linked to zero or more risks."""

    model_config = ConfigDict(frozen=True)

    signal_id: str = Field(default_factory=new_id)
    source: str
    category: str = ""
    signal_type: str = "indicator"
    severity: Severity
    status: str = "active"
    risk_ids: tuple[str, ...] = ()
    observed_at: datetime = Field(default_factory=utc_now)


class RiskControlMapping(BaseModel):
    """Many-to-many link between a risk and a control."""

    model_config = ConfigDict(frozen=True)

    risk_id: str
    control_id: str
    mapping_type: MappingType = "mitigates"
    effectiveness_rating: int = Field(default=3, ge=1, le=5)
    coverage_percentage: float = Field(default=0.0, ge=0.0, le=100.0)
    residual_risk_reduction: float = Field(default=0.0, ge=0.0, le=100.0)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    oracle_generated: bool = False
    notes: str = ""
    created_at: datetime = Field(default_factory=utc_now)


class IntegratedRiskAssessment(BaseModel):
    """Blended risk score for one risk at one point in time."""

    model_config = ConfigDict(frozen=True)

    assessment_id: str = Field(default_factory=new_id)
    risk_id: str
    base_risk_score: float
    threat_intelligence_score: float
    control_effectiveness_score: float
    compliance_score: float
    integrated_risk_score: float
    risk_level: RiskLevel
    priority_score: int
    recommended_actions: tuple[str, ...] = ()
    assessed_at: datetime = Field(default_factory=utc_now)
