"""Test fixtures for aumos-compliance-orchestrator.

Provides:
- now: A fixed reference time for deterministic assertions
- metric_store: An InMemoryMetricStore seeded with one framework, three controls and one risk
- mock_oracle: A mock assessment oracle returning a confident answer
- mock_channel: A mock notification channel that captures send() calls
- no_sleep: An AsyncMock replacing asyncio.sleep in retry backoff
- invoker, registry, executor, alert_manager, monitoring_engine,
  automation_runner, orchestrator: services wired over in-memory adapters
"""

from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest

from aumos_compliance_orchestrator.adapters.memory import (
    InMemoryAlertRepository,
    InMemoryAutomationRuleRepository,
    InMemoryMetricStore,
    InMemoryMonitoringRuleRepository,
    InMemoryRiskAssessmentRepository,
    InMemoryWorkflowDefinitionRepository,
    InMemoryWorkflowExecutionRepository,
)
from aumos_compliance_orchestrator.automation.runner import AutomationRuleRunner
from aumos_compliance_orchestrator.core.records import (
    AssessmentGap,
    AssessmentResponse,
    ControlRecord,
    Framework,
    RiskRecord,
    TestResult,
)
from aumos_compliance_orchestrator.monitoring.alerts import AlertManager
from aumos_compliance_orchestrator.monitoring.engine import MonitoringEngine
from aumos_compliance_orchestrator.orchestrator import GRCOrchestrator
from aumos_compliance_orchestrator.settings import Settings
from aumos_compliance_orchestrator.workflow.executor import WorkflowExecutor
from aumos_compliance_orchestrator.workflow.handlers import StepInvoker, build_default_handlers
from aumos_compliance_orchestrator.workflow.registry import WorkflowRegistry

FRAMEWORK_ID = "soc2"


def make_fake_control(control_id: str = "CC6.1", **overrides: Any) -> ControlRecord:
    """Create a ControlRecord with sensible defaults.

    Args:
        control_id: Control identifier.
        **overrides: Field values replacing the defaults.

    Returns:
        A ControlRecord in the default framework.
    """
    fields: dict[str, Any] = {
        "control_id": control_id,
        "framework_id": FRAMEWORK_ID,
        "title": "Logical access controls",
        "category": "access_control",
        "control_type": "preventive",
        "implementation_status": "implemented",
        "implementation_progress": 100.0,
        "risk_level": "high",
        "updated_at": datetime(2026, 1, 1, tzinfo=UTC),
    }
    fields.update(overrides)
    return ControlRecord(**fields)


def make_fake_test_result(control_id: str, passed: bool, executed_at: datetime) -> TestResult:
    """Create a TestResult for a control at a given time."""
    return TestResult(control_id=control_id, passed=passed, executed_at=executed_at, source="seed")


def make_fake_definition(steps: list[dict[str, Any]], **overrides: Any) -> dict[str, Any]:
    """Create a raw workflow definition mapping around the given steps."""
    definition: dict[str, Any] = {
        "definition_id": "wf-test",
        "name": "Test workflow",
        "category": "assessment",
        "framework_id": FRAMEWORK_ID,
        "steps": steps,
    }
    definition.update(overrides)
    return definition


def make_oracle_response(confidence: float = 0.95, **overrides: Any) -> AssessmentResponse:
    """Create an AssessmentResponse with one medium gap."""
    fields: dict[str, Any] = {
        "confidence_score": confidence,
        "gaps": (AssessmentGap(title="Missing MFA for admins", severity="medium"),),
        "recommendations": ("Enforce MFA for privileged accounts",),
        "assessed_progress": 80.0,
    }
    fields.update(overrides)
    return AssessmentResponse(**fields)


@pytest.fixture()
def now() -> datetime:
    """Return a fixed reference time.

    Returns:
        2026-03-15 12:00 UTC.
    """
    return datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


@pytest.fixture()
def settings() -> Settings:
    """Return default settings without reading the environment file."""
    return Settings()


@pytest.fixture()
def metric_store(now: datetime) -> InMemoryMetricStore:
    """Create a metric store seeded with a small SOC 2 scope.

    Controls:
    - CC6.1 implemented, 100% progress
    - CC7.2 in progress, 50% progress
    - CC8.1 not started, critical risk

    Returns:
        The seeded InMemoryMetricStore.
    """
    store = InMemoryMetricStore()
    store.add_framework(Framework(framework_id=FRAMEWORK_ID, name="SOC 2 Type II"))
    store.add_control(make_fake_control("CC6.1"))
    store.add_control(
        make_fake_control(
            "CC7.2",
            title="System monitoring",
            category="monitoring",
            control_type="detective",
            implementation_status="in_progress",
            implementation_progress=50.0,
            risk_level="medium",
        )
    )
    store.add_control(
        make_fake_control(
            "CC8.1",
            title="Change management",
            category="change_management",
            implementation_status="not_started",
            implementation_progress=0.0,
            risk_level="critical",
        )
    )
    store.add_risk(RiskRecord(risk_id="R-1", title="Unauthorized access", category="access_control", impact=4, likelihood=4))
    store.add_test_result(make_fake_test_result("CC6.1", True, now - timedelta(days=1)))
    return store


@pytest.fixture()
def mock_oracle() -> AsyncMock:
    """Create a mock assessment oracle that answers with 0.95 confidence.

    Returns:
        AsyncMock whose assess() returns a fixed AssessmentResponse.
    """
    oracle = AsyncMock()
    oracle.assess.return_value = make_oracle_response()
    oracle.health_check.return_value = True
    return oracle


@pytest.fixture()
def mock_channel() -> AsyncMock:
    """Create a mock notification channel that captures every send() call."""
    channel = AsyncMock()
    channel.send.return_value = None
    return channel


@pytest.fixture()
def no_sleep() -> AsyncMock:
    """Replace retry backoff sleeps so tests never wait."""
    return AsyncMock(return_value=None)


@pytest.fixture()
def invoker(
    metric_store: InMemoryMetricStore,
    mock_oracle: AsyncMock,
    mock_channel: AsyncMock,
    no_sleep: AsyncMock,
) -> StepInvoker:
    """Create a StepInvoker over the default handlers."""
    handlers = build_default_handlers(metric_store, mock_oracle, mock_channel)
    return StepInvoker(handlers, max_delay_seconds=300.0, sleep=no_sleep)


@pytest.fixture()
def registry() -> WorkflowRegistry:
    return WorkflowRegistry(InMemoryWorkflowDefinitionRepository())


@pytest.fixture()
def executions() -> InMemoryWorkflowExecutionRepository:
    return InMemoryWorkflowExecutionRepository()


@pytest.fixture()
def executor(
    registry: WorkflowRegistry,
    executions: InMemoryWorkflowExecutionRepository,
    invoker: StepInvoker,
) -> WorkflowExecutor:
    return WorkflowExecutor(registry, executions, invoker)


@pytest.fixture()
def alert_manager() -> AlertManager:
    return AlertManager(InMemoryAlertRepository())


@pytest.fixture()
def monitoring_engine(
    metric_store: InMemoryMetricStore,
    alert_manager: AlertManager,
    settings: Settings,
) -> MonitoringEngine:
    return MonitoringEngine(InMemoryMonitoringRuleRepository(), metric_store, alert_manager, settings=settings)


@pytest.fixture()
def automation_runner(
    metric_store: InMemoryMetricStore,
    invoker: StepInvoker,
    alert_manager: AlertManager,
) -> AutomationRuleRunner:
    return AutomationRuleRunner(InMemoryAutomationRuleRepository(), invoker, alert_manager, metric_store)


@pytest.fixture()
def orchestrator(
    registry: WorkflowRegistry,
    executor: WorkflowExecutor,
    monitoring_engine: MonitoringEngine,
    alert_manager: AlertManager,
    automation_runner: AutomationRuleRunner,
    metric_store: InMemoryMetricStore,
    mock_oracle: AsyncMock,
    now: datetime,
) -> GRCOrchestrator:
    """Create a GRCOrchestrator over in-memory adapters with a fixed clock."""
    return GRCOrchestrator(
        registry=registry,
        executor=executor,
        monitoring=monitoring_engine,
        alerts=alert_manager,
        automation=automation_runner,
        metric_store=metric_store,
        oracle=mock_oracle,
        risk_assessments=InMemoryRiskAssessmentRepository(),
        clock=lambda: now,
    )
