"""Domain types for workflow definitions, executions and automation rules.

Every record is an immutable pydantic model. A state change never mutates a
record in place; the owning component derives a new record with
``model_copy(update=...)`` and writes it back in one repository call.

Workflow steps form a closed tagged union discriminated on ``kind``. Each
variant forbids unknown fields, so a parameter that does not belong to the
step kind is rejected when the definition is parsed.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, field_validator

StepKind = Literal[
    "automated_test",
    "evidence_collection",
    "ai_assessment",
    "human_review",
    "approval",
    "notification",
]
WorkflowCategory = Literal["assessment", "remediation", "monitoring", "certification", "audit_prep"]
AutomationLevel = Literal["manual", "semi_automated", "fully_automated"]
ExecutionStatus = Literal["pending", "running", "waiting_approval", "completed", "failed", "cancelled"]
StepStatus = Literal["success", "failed", "skipped", "pending_approval"]
TriggerSource = Literal["manual", "schedule", "event"]
Severity = Literal["low", "medium", "high", "critical"]
TestType = Literal[
    "compliance_check",
    "api_check",
    "file_validation",
    "configuration_review",
    "access_verification",
    "log_analysis",
]
AutomationRuleType = Literal["testing", "evidence_collection", "monitoring", "reporting", "remediation"]

TERMINAL_EXECUTION_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})


def utc_now() -> datetime:
    """Return the current UTC time as an aware datetime."""
    return datetime.now(UTC)


def new_id() -> str:
    """Return a new UUID v4 string identifier."""
    return str(uuid.uuid4())


def validate_cron(expression: str | None) -> str | None:
    """Reject cron expressions croniter cannot parse.

    Args:
        expression: Cron expression or None.

    Returns:
        The unchanged expression.

    Raises:
        ValueError: If the expression is not a valid cron expression.
    """
    if expression is not None and not croniter.is_valid(expression):
        raise ValueError(f"invalid cron expression: {expression!r}")
    return expression


# ---------------------------------------------------------------------------
# Step building blocks
# ---------------------------------------------------------------------------


class RetryPolicy(BaseModel):
    """Retry policy applied when a step handler fails or times out.

    ``max_retries`` counts re-invocations, so a policy with ``max_retries=2``
    invokes the handler at most three times.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_retries: int = Field(default=0, ge=0, le=20, description="Re-invocations after the first failure")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Growth factor between delays")
    base_delay_seconds: float = Field(default=1.0, ge=0.0, description="Delay before the first retry")
    max_delay_seconds: float | None = Field(
        default=None,
        gt=0.0,
        description="Per-policy delay cap. None falls back to the service-wide cap.",
    )

    def delay_for(self, attempt: int, default_cap: float) -> float:
        """Compute the backoff delay after a failed attempt.

        Args:
            attempt: Zero-based index of the attempt that just failed.
            default_cap: Service-wide cap used when the policy sets none.

        Returns:
            Delay in seconds, ``base * multiplier ** attempt`` bounded by the cap.
        """
        cap = self.max_delay_seconds if self.max_delay_seconds is not None else default_cap
        return min(self.base_delay_seconds * self.backoff_multiplier**attempt, cap)


class ValidationRule(BaseModel):
    """Single attribute check an automated test applies to a control."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    rule_id: str = Field(description="Identifier reported in findings")
    field: str = Field(description="Control attribute to inspect, e.g. implementation_status")
    operator: Literal["eq", "ne", "gte", "lte", "in"] = "eq"
    expected: Any = Field(description="Value the attribute is compared against")
    severity: Severity = "medium"
    message: str = ""


class _StepBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    step_id: str = Field(min_length=1, description="Unique within the owning definition")
    name: str = ""
    depends_on: tuple[str, ...] = Field(default=(), description="Steps that must succeed first")
    timeout_seconds: float | None = Field(default=None, gt=0.0)
    retry_policy: RetryPolicy | None = None
    ai_enabled: bool = Field(default=False, description="Outcome carries an oracle confidence score")
    confidence_threshold: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Overrides the definition-wide approval threshold for this step",
    )


class AutomatedTestStep(_StepBase):
    kind: Literal["automated_test"] = "automated_test"
    control_id: str | None = None
    test_type: TestType = "compliance_check"
    endpoints: tuple[str, ...] = ()
    validation_rules: tuple[ValidationRule, ...] = ()
    pass_threshold: float = Field(default=80.0, ge=0.0, le=100.0)


class EvidenceCollectionStep(_StepBase):
    kind: Literal["evidence_collection"] = "evidence_collection"
    control_id: str | None = None
    method: str = "automated"
    evidence_types: tuple[str, ...] = Field(default=("configuration_backup",), min_length=1)


class AIAssessmentStep(_StepBase):
    kind: Literal["ai_assessment"] = "ai_assessment"
    control_id: str | None = None
    assessment_type: str = "gap_analysis"
    ai_enabled: bool = True


class HumanReviewStep(_StepBase):
    kind: Literal["human_review"] = "human_review"
    assigned_to: tuple[str, ...] = ()
    instructions: str = ""


class ApprovalStep(_StepBase):
    kind: Literal["approval"] = "approval"
    approvers: tuple[str, ...] = ()


class NotificationStep(_StepBase):
    kind: Literal["notification"] = "notification"
    channel: str = "email"
    recipients: tuple[str, ...] = ()
    subject: str | None = None


WorkflowStep = Annotated[
    AutomatedTestStep
    | EvidenceCollectionStep
    | AIAssessmentStep
    | HumanReviewStep
    | ApprovalStep
    | NotificationStep,
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Workflow definition
# ---------------------------------------------------------------------------


class TriggerSpec(BaseModel):
    """How a workflow may be started: cron schedule, named events, or manually."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    cron: str | None = Field(default=None, description="Cron expression for scheduled runs")
    events: tuple[str, ...] = Field(default=(), description="Event names that launch the workflow")
    manual: bool = True

    @field_validator("cron")
    @classmethod
    def _check_cron(cls, value: str | None) -> str | None:
        return validate_cron(value)


class ApprovalPolicy(BaseModel):
    """Who may resume a suspended execution and when suspension happens."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    required: bool = Field(default=False, description="Whether the workflow contains human gates")
    roles: tuple[str, ...] = Field(default=(), description="Roles allowed to decide. Empty allows any.")
    confidence_threshold: float = Field(default=0.8, ge=0.0, le=1.0)


class WorkflowDefinition(BaseModel):
    """Immutable, versioned workflow template.

    A new version is created by registering a definition with an existing
    ``definition_id``. The registry assigns the version number.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    definition_id: str = Field(default_factory=new_id)
    version: int = Field(default=1, ge=1)
    name: str = Field(min_length=1)
    description: str = ""
    category: WorkflowCategory
    automation_level: AutomationLevel = "semi_automated"
    framework_id: str | None = None
    steps: tuple[WorkflowStep, ...] = Field(min_length=1)
    trigger: TriggerSpec = Field(default_factory=TriggerSpec)
    approval: ApprovalPolicy = Field(default_factory=ApprovalPolicy)
    created_by: str = "system"
    created_at: datetime = Field(default_factory=utc_now)

    def get_step(self, step_id: str) -> WorkflowStep:
        """Return the step with the given id.

        Raises:
            KeyError: If no step carries that id.
        """
        for step in self.steps:
            if step.step_id == step_id:
                return step
        raise KeyError(step_id)


# ---------------------------------------------------------------------------
# Workflow execution
# ---------------------------------------------------------------------------


class StepResult(BaseModel):
    """Outcome of one step inside one execution."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    kind: StepKind
    status: StepStatus
    data: dict[str, Any] = Field(default_factory=dict)
    confidence: float | None = None
    attempts: int = 0
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class ApprovalDecision(BaseModel):
    """Human decision that resumes a suspended execution."""

    model_config = ConfigDict(frozen=True)

    approved: bool
    approver: str = Field(min_length=1)
    role: str | None = None
    comment: str = ""
    decided_at: datetime = Field(default_factory=utc_now)


class WorkflowExecution(BaseModel):
    """One run of a workflow definition.

    Owned by the executor. ``results`` is keyed by step id and only ever
    grows while the execution is live.
    """

    model_config = ConfigDict(frozen=True)

    execution_id: str = Field(default_factory=new_id)
    definition_id: str
    definition_version: int
    status: ExecutionStatus = "pending"
    current_step_index: int = 0
    results: dict[str, StepResult] = Field(default_factory=dict)
    trigger_payload: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    triggered_by: TriggerSource = "manual"
    pending_step_id: str | None = None
    decisions: tuple[ApprovalDecision, ...] = ()
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utc_now)
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES


# ---------------------------------------------------------------------------
# Automation rules
# ---------------------------------------------------------------------------


class AutomationConfig(BaseModel):
    """Per-rule automation parameters, parsed once when the rule is created."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    test_type: TestType | None = None
    endpoints: tuple[str, ...] = ()
    validation_rules: tuple[ValidationRule, ...] = ()
    evidence_types: tuple[str, ...] = ()
    collection_method: str = "automated"
    assessment_type: str | None = None
    report_templates: tuple[str, ...] = ()
    notify_recipients: tuple[str, ...] = ()
    notification_channel: str = "email"
    retry_policy: RetryPolicy | None = None
    timeout_seconds: float | None = Field(default=None, gt=0.0)


class AutomationRule(BaseModel):
    """Single-purpose automation bound to one control."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    rule_id: str = Field(default_factory=new_id)
    control_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = ""
    rule_type: AutomationRuleType
    config: AutomationConfig = Field(default_factory=AutomationConfig)
    schedule_expression: str | None = None
    is_active: bool = True
    success_count: int = 0
    failure_count: int = 0
    last_executed: datetime | None = None
    next_execution: datetime | None = None
    created_by: str = "system"
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("schedule_expression")
    @classmethod
    def _check_schedule(cls, value: str | None) -> str | None:
        return validate_cron(value)


class Finding(BaseModel):
    """Structured problem reported by an automation run."""

    model_config = ConfigDict(frozen=True)

    severity: Severity
    title: str
    description: str
    remediation: str = ""
    control_id: str | None = None


class ExecutionResult(BaseModel):
    """Summary of one automation rule run."""

    model_config = ConfigDict(frozen=True)

    success: bool
    tests_passed: int = 0
    tests_failed: int = 0
    evidence_collected: tuple[str, ...] = ()
    compliance_score: float = 0.0
    findings: tuple[Finding, ...] = ()
    recommendations: tuple[str, ...] = ()
    data: dict[str, Any] = Field(default_factory=dict)


class AutomationExecution(BaseModel):
    """Audit record of one automation rule run."""

    model_config = ConfigDict(frozen=True)

    execution_id: str = Field(default_factory=new_id)
    rule_id: str
    status: Literal["running", "completed", "failed"] = "running"
    triggered_by: TriggerSource = "manual"
    started_at: datetime = Field(default_factory=utc_now)
    ended_at: datetime | None = None
    result: ExecutionResult | None = None
    error: str | None = None
    retry_count: int = 0
