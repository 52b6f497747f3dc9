"""Pydantic request and response schemas for the compliance orchestrator API.

Domain records (definitions, executions, rules, alerts, assessments) are
returned as-is; the schemas here cover request bodies and the few responses
that have no domain counterpart.

Resources:
- Workflows: definitions, templates, executions, approval decisions
- Monitoring: rules, alerts, alert transitions
- Automation: rules, activation, manual runs
- Risk: mappings and assessments
- Triggers: scheduler and event intake
"""

from typing import Any

from pydantic import BaseModel, Field

from aumos_compliance_orchestrator.core.domain import ExecutionStatus, TriggerSource
from aumos_compliance_orchestrator.core.rules import AlertStatus


# ---------------------------------------------------------------------------
# Workflow schemas
# ---------------------------------------------------------------------------


class TemplateSummary(BaseModel):
    template_id: str = Field(description="Template identifier, e.g. continuous_monitoring")
    name: str
    category: str
    step_count: int


class TemplateInstantiateRequest(BaseModel):
    """Request body for registering a workflow from a bundled template."""

    framework_id: str = Field(min_length=1, description="Framework the workflow operates on")
    overrides: dict[str, Any] = Field(
        default_factory=dict,
        description="Top-level definition fields replacing the template's values",
    )


class ExecuteWorkflowRequest(BaseModel):
    """Request body for launching a workflow execution."""

    trigger_payload: dict[str, Any] = Field(default_factory=dict, description="Data delivered by the trigger")
    context: dict[str, Any] = Field(
        default_factory=dict,
        description="Scope such as control_id or framework_id",
    )
    version: int | None = Field(default=None, ge=1, description="Definition version; latest when omitted")


class ExecutionHandle(BaseModel):
    """Returned when an execution is launched or resumed; the run continues in the background."""

    execution_id: str
    status: ExecutionStatus


class ApprovalDecisionRequest(BaseModel):
    approved: bool = Field(description="True approves the pending step, False rejects it")
    approver: str = Field(min_length=1, description="Who made the decision")
    role: str | None = Field(default=None, description="Approver role checked against the approval policy")
    comment: str = ""


class CancelExecutionRequest(BaseModel):
    reason: str = Field(default="cancelled by supervisor", min_length=1)


# ---------------------------------------------------------------------------
# Monitoring and automation schemas
# ---------------------------------------------------------------------------


class RuleActivationRequest(BaseModel):
    is_active: bool


class DefaultRulesRequest(BaseModel):
    framework_id: str = Field(min_length=1)
    control_ids: list[str] = Field(default_factory=list, description="Monitored controls; all when empty")


class AlertTransitionRequest(BaseModel):
    status: AlertStatus = Field(description="Target lifecycle status")
    actor: str | None = Field(default=None, description="Who made the change")


class MonitoringRunResponse(BaseModel):
    rules_evaluated: int
    alerts_created: int
    alert_ids: list[str]


class AutomationRunRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Trigger schemas
# ---------------------------------------------------------------------------


class TriggerRequest(BaseModel):
    """Inbound trigger from a scheduler or event source."""

    payload: dict[str, Any] = Field(default_factory=dict)
    source: TriggerSource = Field(default="event", description="schedule | event")


class EventRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class EventDispatchResponse(BaseModel):
    event_name: str
    execution_ids: list[str]
