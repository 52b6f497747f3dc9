"""AumOS compliance orchestrator service entry point.

Initializes the FastAPI application with:
- Primary database for definitions, executions, rules, alerts and GRC records
- Assessment oracle client
- Notification channel (webhook, or the structured log when none is configured)
- Workflow executor, continuous monitoring engine and automation rule runner,
  composed behind the GRC orchestrator
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from aumos_compliance_orchestrator import __version__
from aumos_compliance_orchestrator.adapters.database import Database
from aumos_compliance_orchestrator.adapters.notifications import (
    LoggingNotificationChannel,
    WebhookNotificationChannel,
)
from aumos_compliance_orchestrator.adapters.oracle_client import HttpAssessmentOracle
from aumos_compliance_orchestrator.adapters.repositories import (
    SqlAlertRepository,
    SqlAutomationRuleRepository,
    SqlMetricStore,
    SqlMonitoringRuleRepository,
    SqlRiskAssessmentRepository,
    SqlWorkflowDefinitionRepository,
    SqlWorkflowExecutionRepository,
)
from aumos_compliance_orchestrator.api.router import register_error_handlers, router
from aumos_compliance_orchestrator.automation.runner import AutomationRuleRunner
from aumos_compliance_orchestrator.core.interfaces import INotificationChannel
from aumos_compliance_orchestrator.monitoring.alerts import AlertManager
from aumos_compliance_orchestrator.monitoring.engine import MonitoringEngine
from aumos_compliance_orchestrator.observability import configure_logging, get_logger
from aumos_compliance_orchestrator.orchestrator import GRCOrchestrator
from aumos_compliance_orchestrator.settings import Settings
from aumos_compliance_orchestrator.workflow.executor import WorkflowExecutor
from aumos_compliance_orchestrator.workflow.handlers import StepInvoker, build_default_handlers
from aumos_compliance_orchestrator.workflow.registry import WorkflowRegistry
from aumos_compliance_orchestrator.workflow.templates import WorkflowTemplateCatalog

logger = get_logger(__name__)

settings = Settings()


def build_orchestrator(database: Database, oracle: HttpAssessmentOracle, app_settings: Settings) -> GRCOrchestrator:
    """Wire repositories, handlers and services into a GRC orchestrator.

    Args:
        database: Database whose session factory backs every repository.
        oracle: Assessment oracle client.
        app_settings: Service settings.

    Returns:
        A ready GRCOrchestrator.
    """
    sessions = database.sessions
    metric_store = SqlMetricStore(sessions)

    channel: INotificationChannel
    if app_settings.notification_webhook_url:
        channel = WebhookNotificationChannel(app_settings.notification_webhook_url)
    else:
        channel = LoggingNotificationChannel()

    handlers = build_default_handlers(
        metric_store,
        oracle,
        channel,
        probe_timeout_seconds=app_settings.probe_timeout_seconds,
    )
    invoker = StepInvoker(handlers, max_delay_seconds=app_settings.retry_max_delay_seconds)

    registry = WorkflowRegistry(
        SqlWorkflowDefinitionRepository(sessions),
        default_confidence_threshold=app_settings.approval_confidence_threshold,
    )
    executor = WorkflowExecutor(registry, SqlWorkflowExecutionRepository(sessions), invoker)
    alerts = AlertManager(SqlAlertRepository(sessions))
    monitoring = MonitoringEngine(
        SqlMonitoringRuleRepository(sessions),
        metric_store,
        alerts,
        settings=app_settings,
    )
    automation = AutomationRuleRunner(
        SqlAutomationRuleRepository(sessions),
        invoker,
        alerts,
        metric_store,
        pass_threshold=app_settings.automation_pass_threshold,
    )
    return GRCOrchestrator(
        registry=registry,
        executor=executor,
        monitoring=monitoring,
        alerts=alerts,
        automation=automation,
        metric_store=metric_store,
        oracle=oracle,
        risk_assessments=SqlRiskAssessmentRepository(sessions),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle.

    Creates the database schema, verifies oracle connectivity, wires the
    orchestrator and resumes executions interrupted by a previous shutdown.
    Cancels in-flight executions and closes the engine on shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None
    """
    configure_logging(settings.log_level, settings.log_json)

    # Startup: primary database
    logger.info("Initializing primary database", service=settings.service_name)
    database = Database(
        settings.database_url,
        pool_size=settings.database_pool_size,
        echo=settings.database_echo,
    )
    await database.create_schema()

    # Startup: assessment oracle (verify connectivity)
    oracle = HttpAssessmentOracle(settings.oracle_url, timeout_seconds=settings.oracle_timeout_seconds)
    is_oracle_healthy = await oracle.health_check()
    if not is_oracle_healthy:
        logger.warning(
            "Oracle is not reachable at startup, AI-driven steps will fail until it is available",
            oracle_url=settings.oracle_url,
        )

    orchestrator = build_orchestrator(database, oracle, settings)
    recovered = await orchestrator.executor.recover()

    # Store shared services on app state for dependency injection
    app.state.orchestrator = orchestrator
    app.state.template_catalog = WorkflowTemplateCatalog()
    app.state.settings = settings

    logger.info(
        "Compliance orchestrator startup complete",
        oracle_url=settings.oracle_url,
        recovered_executions=len(recovered),
    )

    yield

    # Shutdown
    logger.info("Shutting down compliance orchestrator")
    await orchestrator.executor.shutdown()
    await database.dispose()
    logger.info("Compliance orchestrator shutdown complete")


app = FastAPI(
    title="aumos-compliance-orchestrator",
    version=__version__,
    lifespan=lifespan,
)
register_error_handlers(app)

app.include_router(router, prefix="/api/v1")
