"""API router for aumos-compliance-orchestrator.

All endpoints are registered here and included in main.py under the /api/v1
prefix. Routes are thin; all business logic lives in the orchestrator and
the services it composes.

Endpoints:
- POST/GET    /workflows/definitions                     register / list definitions
- GET         /workflows/definitions/{id}                get a definition (optionally a version)
- GET         /workflows/templates                       list bundled templates
- POST        /workflows/templates/{id}/instantiate      register a definition from a template
- POST        /workflows/definitions/{id}/executions     launch an execution
- GET         /workflows/executions                      list executions
- GET         /workflows/executions/{id}                 execution status
- POST        /workflows/executions/{id}/decision        approve or reject a suspended execution
- POST        /workflows/executions/{id}/cancel          cancel an execution
- POST/GET    /monitoring/rules                          create / list monitoring rules
- PATCH       /monitoring/rules/{id}                     toggle activation
- POST        /monitoring/rules/defaults                 create the default rule set for a framework
- POST        /monitoring/run                            evaluate every active rule now
- GET         /monitoring/alerts                         recent alerts
- POST        /monitoring/alerts/{id}/transition         alert lifecycle transition
- GET         /monitoring/metrics                        monitoring metrics
- POST/GET    /automation/rules                          create / list automation rules
- PATCH       /automation/rules/{id}                     toggle activation
- POST        /automation/rules/{id}/execute             run a rule now
- GET         /automation/rules/{id}/executions          run history
- POST        /risks/{id}/assessments                    compute an integrated risk assessment
- GET         /risks/{id}/assessments                    assessment history
- POST        /risks/mappings                            record a risk/control mapping
- POST        /risks/mappings/analyze                    oracle-suggested mappings
- GET         /threats/alignment                         threat/control alignment
- GET         /dashboard                                 cross-module dashboard
- GET         /frameworks/{id}/report                    framework compliance report
- POST        /triggers/{target_id}                      scheduler/event trigger intake
- POST        /events/{event_name}                       launch workflows subscribed to an event
- POST        /scheduler/tick                            run everything that is due
"""

from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from aumos_compliance_orchestrator.api.schemas import (
    AlertTransitionRequest,
    ApprovalDecisionRequest,
    AutomationRunRequest,
    CancelExecutionRequest,
    DefaultRulesRequest,
    EventDispatchResponse,
    EventRequest,
    ExecuteWorkflowRequest,
    ExecutionHandle,
    MonitoringRunResponse,
    RuleActivationRequest,
    TemplateInstantiateRequest,
    TemplateSummary,
    TriggerRequest,
)
from aumos_compliance_orchestrator.core.domain import (
    ApprovalDecision,
    AutomationExecution,
    AutomationRule,
    ExecutionResult,
    WorkflowDefinition,
    WorkflowExecution,
)
from aumos_compliance_orchestrator.core.records import IntegratedRiskAssessment, RiskControlMapping
from aumos_compliance_orchestrator.core.reports import (
    ComplianceReport,
    GRCDashboard,
    ThreatControlAlignment,
    TickSummary,
    TriggerDispatch,
)
from aumos_compliance_orchestrator.core.rules import ComplianceAlert, MonitoringMetrics, MonitoringRule
from aumos_compliance_orchestrator.errors import (
    DefinitionError,
    InvalidTransitionError,
    NotFoundError,
    OrchestratorError,
    ValidationError,
    VersionConflictError,
)
from aumos_compliance_orchestrator.observability import get_logger
from aumos_compliance_orchestrator.orchestrator import GRCOrchestrator
from aumos_compliance_orchestrator.workflow.templates import WorkflowTemplateCatalog

logger = get_logger(__name__)

router = APIRouter(tags=["compliance-orchestrator"])


# ---------------------------------------------------------------------------
# Dependency factories (shared services live on app.state)
# ---------------------------------------------------------------------------


def get_orchestrator(request: Request) -> GRCOrchestrator:
    """Return the orchestrator created by the application lifespan."""
    return request.app.state.orchestrator


def get_template_catalog(request: Request) -> WorkflowTemplateCatalog:
    """Return the workflow template catalog created by the application lifespan."""
    return request.app.state.template_catalog


Orchestrator = Annotated[GRCOrchestrator, Depends(get_orchestrator)]


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR: tuple[tuple[type[OrchestratorError], int], ...] = (
    (NotFoundError, 404),
    (InvalidTransitionError, 409),
    (VersionConflictError, 409),
    (DefinitionError, 422),
    (ValidationError, 422),
)


async def _orchestrator_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, OrchestratorError)
    status_code = next((code for error_type, code in _STATUS_BY_ERROR if isinstance(exc, error_type)), 400)
    logger.info(
        "Request rejected",
        path=request.url.path,
        status_code=status_code,
        error_type=type(exc).__name__,
        error=exc.message,
    )
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "message": exc.message, "details": exc.details},
    )


def register_error_handlers(app: FastAPI) -> None:
    """Map the orchestrator error taxonomy onto HTTP status codes."""
    app.add_exception_handler(OrchestratorError, _orchestrator_error_handler)


# ---------------------------------------------------------------------------
# Workflow endpoints
# ---------------------------------------------------------------------------


@router.post("/workflows/definitions", response_model=WorkflowDefinition, status_code=201)
async def register_definition(
    orchestrator: Orchestrator,
    definition: Annotated[dict[str, Any], Body(description="Workflow definition document")],
) -> WorkflowDefinition:
    """Register a workflow definition, or a new version of an existing one.

    Structural errors (unknown step kinds, dangling dependencies, cycles)
    are rejected with 422 and nothing is stored.
    """
    return await orchestrator.registry.register(definition)


@router.get("/workflows/definitions", response_model=list[WorkflowDefinition])
async def list_definitions(
    orchestrator: Orchestrator,
    category: str | None = Query(default=None, description="Filter by workflow category"),
) -> list[WorkflowDefinition]:
    return await orchestrator.registry.list_definitions(category)


@router.get("/workflows/definitions/{definition_id}", response_model=WorkflowDefinition)
async def get_definition(
    definition_id: str,
    orchestrator: Orchestrator,
    version: int | None = Query(default=None, ge=1),
) -> WorkflowDefinition:
    return await orchestrator.registry.get(definition_id, version)


@router.get("/workflows/templates", response_model=list[TemplateSummary])
async def list_templates(
    catalog: Annotated[WorkflowTemplateCatalog, Depends(get_template_catalog)],
) -> list[TemplateSummary]:
    return [TemplateSummary(**summary) for summary in catalog.list_templates()]


@router.post("/workflows/templates/{template_id}/instantiate", response_model=WorkflowDefinition, status_code=201)
async def instantiate_template(
    template_id: str,
    request: TemplateInstantiateRequest,
    orchestrator: Orchestrator,
    catalog: Annotated[WorkflowTemplateCatalog, Depends(get_template_catalog)],
) -> WorkflowDefinition:
    """Bind a bundled template to a framework and register the result."""
    raw = catalog.instantiate(template_id, request.framework_id, **request.overrides)
    return await orchestrator.registry.register(raw)


@router.post(
    "/workflows/definitions/{definition_id}/executions",
    response_model=ExecutionHandle,
    status_code=202,
)
async def execute_workflow(
    definition_id: str,
    request: ExecuteWorkflowRequest,
    orchestrator: Orchestrator,
) -> ExecutionHandle:
    """Launch an execution. The run continues in the background."""
    execution_id = await orchestrator.executor.execute(
        definition_id,
        trigger_payload=request.trigger_payload,
        context=request.context,
        version=request.version,
    )
    logger.info("POST /workflows/executions", definition_id=definition_id, execution_id=execution_id)
    return ExecutionHandle(execution_id=execution_id, status="pending")


@router.get("/workflows/executions", response_model=list[WorkflowExecution])
async def list_executions(
    orchestrator: Orchestrator,
    definition_id: str | None = Query(default=None),
    status: str | None = Query(default=None, description="Filter by execution status"),
) -> list[WorkflowExecution]:
    return await orchestrator.executor.list_executions(definition_id, status)


@router.get("/workflows/executions/{execution_id}", response_model=WorkflowExecution)
async def get_execution(execution_id: str, orchestrator: Orchestrator) -> WorkflowExecution:
    return await orchestrator.executor.get_status(execution_id)


@router.post("/workflows/executions/{execution_id}/decision", response_model=ExecutionHandle)
async def decide_execution(
    execution_id: str,
    request: ApprovalDecisionRequest,
    orchestrator: Orchestrator,
) -> ExecutionHandle:
    """Apply a human approval decision to a suspended execution.

    Returns 409 when the execution is not waiting for approval.
    """
    decision = ApprovalDecision(
        approved=request.approved,
        approver=request.approver,
        role=request.role,
        comment=request.comment,
    )
    await orchestrator.executor.resume(execution_id, decision)
    execution = await orchestrator.executor.get_status(execution_id)
    return ExecutionHandle(execution_id=execution_id, status=execution.status)


@router.post("/workflows/executions/{execution_id}/cancel", response_model=WorkflowExecution)
async def cancel_execution(
    execution_id: str,
    request: CancelExecutionRequest,
    orchestrator: Orchestrator,
) -> WorkflowExecution:
    return await orchestrator.executor.cancel(execution_id, request.reason)


# ---------------------------------------------------------------------------
# Monitoring endpoints
# ---------------------------------------------------------------------------


@router.post("/monitoring/rules", response_model=MonitoringRule, status_code=201)
async def create_monitoring_rule(
    orchestrator: Orchestrator,
    rule: Annotated[dict[str, Any], Body(description="Monitoring rule with a typed condition")],
) -> MonitoringRule:
    return await orchestrator.monitoring.create_rule(rule)


@router.get("/monitoring/rules", response_model=list[MonitoringRule])
async def list_monitoring_rules(
    orchestrator: Orchestrator,
    active_only: bool = Query(default=False),
) -> list[MonitoringRule]:
    return await orchestrator.monitoring.list_rules(active_only)


@router.post("/monitoring/rules/defaults", response_model=list[MonitoringRule], status_code=201)
async def create_default_monitoring_rules(
    request: DefaultRulesRequest,
    orchestrator: Orchestrator,
) -> list[MonitoringRule]:
    return await orchestrator.monitoring.setup_default_rules(request.framework_id, tuple(request.control_ids))


@router.patch("/monitoring/rules/{rule_id}", response_model=MonitoringRule)
async def set_monitoring_rule_active(
    rule_id: str,
    request: RuleActivationRequest,
    orchestrator: Orchestrator,
) -> MonitoringRule:
    return await orchestrator.monitoring.set_rule_active(rule_id, request.is_active)


@router.post("/monitoring/run", response_model=MonitoringRunResponse)
async def run_monitoring(orchestrator: Orchestrator) -> MonitoringRunResponse:
    """Evaluate every active monitoring rule immediately."""
    results = await orchestrator.monitoring.run_checks()
    alert_ids = [alert.alert_id for alerts in results.values() for alert in alerts]
    return MonitoringRunResponse(rules_evaluated=len(results), alerts_created=len(alert_ids), alert_ids=alert_ids)


@router.get("/monitoring/alerts", response_model=list[ComplianceAlert])
async def list_alerts(
    orchestrator: Orchestrator,
    limit: int = Query(default=20, ge=1, le=500),
    status: str | None = Query(default=None, description="Filter by alert status"),
) -> list[ComplianceAlert]:
    return await orchestrator.alerts.list_recent(limit, status)


@router.post("/monitoring/alerts/{alert_id}/transition", response_model=ComplianceAlert)
async def transition_alert(
    alert_id: str,
    request: AlertTransitionRequest,
    orchestrator: Orchestrator,
) -> ComplianceAlert:
    """Move an alert through its lifecycle. Disallowed moves return 409."""
    return await orchestrator.alerts.transition(alert_id, request.status, request.actor)


@router.get("/monitoring/metrics", response_model=MonitoringMetrics)
async def monitoring_metrics(orchestrator: Orchestrator) -> MonitoringMetrics:
    return await orchestrator.monitoring.metrics()


# ---------------------------------------------------------------------------
# Automation endpoints
# ---------------------------------------------------------------------------


@router.post("/automation/rules", response_model=AutomationRule, status_code=201)
async def create_automation_rule(
    orchestrator: Orchestrator,
    rule: Annotated[dict[str, Any], Body(description="Automation rule with its config")],
) -> AutomationRule:
    return await orchestrator.automation.create_rule(rule)


@router.get("/automation/rules", response_model=list[AutomationRule])
async def list_automation_rules(
    orchestrator: Orchestrator,
    active_only: bool = Query(default=False),
) -> list[AutomationRule]:
    return await orchestrator.automation.list_rules(active_only)


@router.patch("/automation/rules/{rule_id}", response_model=AutomationRule)
async def set_automation_rule_active(
    rule_id: str,
    request: RuleActivationRequest,
    orchestrator: Orchestrator,
) -> AutomationRule:
    return await orchestrator.automation.set_rule_active(rule_id, request.is_active)


@router.post("/automation/rules/{rule_id}/execute", response_model=ExecutionResult)
async def execute_automation_rule(
    rule_id: str,
    request: AutomationRunRequest,
    orchestrator: Orchestrator,
) -> ExecutionResult:
    """Run an automation rule now and return its result."""
    return await orchestrator.automation.execute(rule_id, triggered_by="manual", payload=request.payload)


@router.get("/automation/rules/{rule_id}/executions", response_model=list[AutomationExecution])
async def list_automation_executions(
    rule_id: str,
    orchestrator: Orchestrator,
    limit: int = Query(default=50, ge=1, le=500),
) -> list[AutomationExecution]:
    return await orchestrator.automation.list_executions(rule_id, limit)


# ---------------------------------------------------------------------------
# Risk and threat endpoints
# ---------------------------------------------------------------------------


@router.post("/risks/{risk_id}/assessments", response_model=IntegratedRiskAssessment, status_code=201)
async def assess_risk(risk_id: str, orchestrator: Orchestrator) -> IntegratedRiskAssessment:
    return await orchestrator.assess_risk(risk_id)


@router.get("/risks/{risk_id}/assessments", response_model=list[IntegratedRiskAssessment])
async def risk_history(risk_id: str, orchestrator: Orchestrator) -> list[IntegratedRiskAssessment]:
    return await orchestrator.risk_history(risk_id)


@router.post("/risks/mappings", response_model=RiskControlMapping, status_code=201)
async def record_mapping(
    orchestrator: Orchestrator,
    mapping: Annotated[dict[str, Any], Body(description="Risk/control mapping")],
) -> RiskControlMapping:
    return await orchestrator.record_mapping(mapping)


@router.post("/risks/mappings/analyze", response_model=list[RiskControlMapping])
async def analyze_mappings(
    orchestrator: Orchestrator,
    framework_id: str | None = Query(default=None, description="Restrict candidate controls to a framework"),
) -> list[RiskControlMapping]:
    return await orchestrator.analyze_risk_control_mappings(framework_id)


@router.get("/threats/alignment", response_model=list[ThreatControlAlignment])
async def threat_alignment(orchestrator: Orchestrator) -> list[ThreatControlAlignment]:
    return await orchestrator.analyze_threat_control_alignment()


# ---------------------------------------------------------------------------
# Aggregation endpoints
# ---------------------------------------------------------------------------


@router.get("/dashboard", response_model=GRCDashboard)
async def dashboard(orchestrator: Orchestrator) -> GRCDashboard:
    return await orchestrator.dashboard()


@router.get("/frameworks/{framework_id}/report", response_model=ComplianceReport)
async def compliance_report(framework_id: str, orchestrator: Orchestrator) -> ComplianceReport:
    return await orchestrator.compliance_report(framework_id)


# ---------------------------------------------------------------------------
# Trigger intake
# ---------------------------------------------------------------------------


@router.post("/triggers/{target_id}", response_model=TriggerDispatch)
async def trigger(target_id: str, request: TriggerRequest, orchestrator: Orchestrator) -> TriggerDispatch:
    """Route a scheduler or event trigger to the workflow or rule it names."""
    logger.info("POST /triggers", target_id=target_id, source=request.source)
    return await orchestrator.on_trigger(target_id, request.payload, source=request.source)


@router.post("/events/{event_name}", response_model=EventDispatchResponse)
async def dispatch_event(event_name: str, request: EventRequest, orchestrator: Orchestrator) -> EventDispatchResponse:
    execution_ids = await orchestrator.on_event(event_name, request.payload)
    return EventDispatchResponse(event_name=event_name, execution_ids=execution_ids)


@router.post("/scheduler/tick", response_model=TickSummary)
async def scheduler_tick(orchestrator: Orchestrator) -> TickSummary:
    """Run cron workflows, due automation rules and due monitoring rules."""
    return await orchestrator.tick()
