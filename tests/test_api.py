"""Tests for API endpoints (router layer).

Drives the FastAPI routes through httpx.ASGITransport against an orchestrator
wired over in-memory adapters. Service logic is covered by the module tests;
these check routing, request validation, status codes and the error body.
"""

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from aumos_compliance_orchestrator.api.router import register_error_handlers, router
from aumos_compliance_orchestrator.errors import OracleUnavailableError, VersionConflictError
from aumos_compliance_orchestrator.orchestrator import GRCOrchestrator
from aumos_compliance_orchestrator.settings import Settings
from aumos_compliance_orchestrator.workflow.templates import WorkflowTemplateCatalog
from tests.conftest import FRAMEWORK_ID, make_fake_definition


@pytest.fixture()
def test_app(orchestrator: GRCOrchestrator, settings: Settings) -> FastAPI:
    """Create a FastAPI test app with services placed on app.state.

    The lifespan is not run, so no database or oracle is contacted.

    Args:
        orchestrator: The in-memory orchestrator fixture.
        settings: Default settings.

    Returns:
        FastAPI app with the router mounted under /api/v1.
    """
    app = FastAPI()
    register_error_handlers(app)
    app.include_router(router, prefix="/api/v1")
    app.state.orchestrator = orchestrator
    app.state.template_catalog = WorkflowTemplateCatalog()
    app.state.settings = settings
    return app


def _client(app: FastAPI) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


class TestWorkflowEndpoints:
    """Tests for /workflows endpoints."""

    @pytest.mark.asyncio()
    async def test_register_definition_returns_201(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            response = await client.post(
                "/api/v1/workflows/definitions",
                json=make_fake_definition([{"step_id": "review", "kind": "human_review"}]),
            )

        assert response.status_code == 201
        body = response.json()
        assert body["definition_id"] == "wf-test"
        assert body["version"] == 1
        assert body["steps"][0]["kind"] == "human_review"

    @pytest.mark.asyncio()
    async def test_dangling_dependency_returns_422(self, test_app: FastAPI) -> None:
        """Structural errors come back in the orchestrator error body."""
        async with _client(test_app) as client:
            response = await client.post(
                "/api/v1/workflows/definitions",
                json=make_fake_definition([{"step_id": "a", "kind": "human_review", "depends_on": ["ghost"]}]),
            )

        assert response.status_code == 422
        assert response.json()["error"] == "DefinitionError"

    @pytest.mark.asyncio()
    async def test_unknown_definition_returns_404(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            response = await client.get("/api/v1/workflows/definitions/wf-missing")

        assert response.status_code == 404
        body = response.json()
        assert body["error"] == "NotFoundError"
        assert set(body) == {"error", "message", "details"}

    @pytest.mark.asyncio()
    async def test_templates_are_listed_and_instantiated(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            listed = await client.get("/api/v1/workflows/templates")
            created = await client.post(
                "/api/v1/workflows/templates/continuous_monitoring/instantiate",
                json={"framework_id": FRAMEWORK_ID},
            )

        assert listed.status_code == 200
        assert {t["template_id"] for t in listed.json()} == {"continuous_monitoring", "remediation"}
        assert created.status_code == 201
        assert created.json()["definition_id"] == "continuous_monitoring-soc2"

    @pytest.mark.asyncio()
    async def test_approval_flow(self, test_app: FastAPI, orchestrator: GRCOrchestrator) -> None:
        """Launch returns 202, an approval resumes the run, a second decision is a 409."""
        definition = make_fake_definition(
            [
                {"step_id": "gate", "kind": "approval"},
                {
                    "step_id": "notify",
                    "kind": "notification",
                    "recipients": ["grc-team@example.com"],
                    "depends_on": ["gate"],
                },
            ]
        )

        async with _client(test_app) as client:
            await client.post("/api/v1/workflows/definitions", json=definition)
            launched = await client.post("/api/v1/workflows/definitions/wf-test/executions", json={})
            execution_id = launched.json()["execution_id"]
            suspended = await orchestrator.executor.wait(execution_id)

            decided = await client.post(
                f"/api/v1/workflows/executions/{execution_id}/decision",
                json={"approved": True, "approver": "ciso"},
            )
            finished = await orchestrator.executor.wait(execution_id)
            repeated = await client.post(
                f"/api/v1/workflows/executions/{execution_id}/decision",
                json={"approved": True, "approver": "ciso"},
            )
            fetched = await client.get(f"/api/v1/workflows/executions/{execution_id}")

        assert launched.status_code == 202
        assert suspended.status == "waiting_approval"
        assert decided.status_code == 200
        assert finished.status == "completed"
        assert repeated.status_code == 409
        assert repeated.json()["details"]["status"] == "completed"
        assert fetched.json()["status"] == "completed"

    @pytest.mark.asyncio()
    async def test_rejection_fails_execution(self, test_app: FastAPI, orchestrator: GRCOrchestrator) -> None:
        async with _client(test_app) as client:
            await client.post(
                "/api/v1/workflows/definitions",
                json=make_fake_definition([{"step_id": "gate", "kind": "approval"}]),
            )
            launched = await client.post("/api/v1/workflows/definitions/wf-test/executions", json={})
            execution_id = launched.json()["execution_id"]
            await orchestrator.executor.wait(execution_id)

            decided = await client.post(
                f"/api/v1/workflows/executions/{execution_id}/decision",
                json={"approved": False, "approver": "ciso", "comment": "evidence missing"},
            )

        assert decided.status_code == 200
        assert decided.json()["status"] == "failed"

    @pytest.mark.asyncio()
    async def test_decision_without_approver_returns_422(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            response = await client.post("/api/v1/workflows/executions/any/decision", json={"approved": True})

        assert response.status_code == 422


class TestMonitoringEndpoints:
    """Tests for /monitoring endpoints."""

    @pytest.mark.asyncio()
    async def test_rule_run_and_alert_lifecycle(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            created = await client.post(
                "/api/v1/monitoring/rules",
                json={"name": "Progress floor", "framework_id": FRAMEWORK_ID, "condition": {"rule_type": "threshold"}},
            )
            run = await client.post("/api/v1/monitoring/run")
            alerts = await client.get("/api/v1/monitoring/alerts", params={"status": "open"})
            alert_id = run.json()["alert_ids"][0]
            resolved = await client.post(
                f"/api/v1/monitoring/alerts/{alert_id}/transition",
                json={"status": "resolved", "actor": "analyst"},
            )
            reopened = await client.post(
                f"/api/v1/monitoring/alerts/{alert_id}/transition",
                json={"status": "investigating"},
            )
            metrics = await client.get("/api/v1/monitoring/metrics")

        assert created.status_code == 201
        assert created.json()["check_frequency_seconds"] == 3600
        assert run.json()["rules_evaluated"] == 1
        assert run.json()["alerts_created"] == 2
        assert len(alerts.json()) == 2
        assert resolved.json()["status"] == "resolved"
        assert reopened.status_code == 409
        assert metrics.json()["open_alerts"] == 1

    @pytest.mark.asyncio()
    async def test_unknown_condition_type_returns_422(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            response = await client.post(
                "/api/v1/monitoring/rules",
                json={"name": "Mystery", "condition": {"rule_type": "sentiment"}},
            )

        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"

    @pytest.mark.asyncio()
    async def test_default_rules_and_deactivation(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            defaults = await client.post("/api/v1/monitoring/rules/defaults", json={"framework_id": FRAMEWORK_ID})
            rule_id = defaults.json()[0]["rule_id"]
            patched = await client.patch(f"/api/v1/monitoring/rules/{rule_id}", json={"is_active": False})
            active = await client.get("/api/v1/monitoring/rules", params={"active_only": True})

        assert defaults.status_code == 201
        assert len(defaults.json()) == 3
        assert patched.json()["is_active"] is False
        assert len(active.json()) == 2


class TestAutomationEndpoints:
    """Tests for /automation endpoints."""

    @pytest.mark.asyncio()
    async def test_create_execute_and_list_runs(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            created = await client.post(
                "/api/v1/automation/rules",
                json={
                    "control_id": "CC6.1",
                    "name": "Access check",
                    "rule_type": "testing",
                    "config": {"test_type": "compliance_check"},
                },
            )
            rule_id = created.json()["rule_id"]
            executed = await client.post(f"/api/v1/automation/rules/{rule_id}/execute", json={})
            runs = await client.get(f"/api/v1/automation/rules/{rule_id}/executions")

        assert created.status_code == 201
        assert executed.status_code == 200
        assert executed.json()["success"] is True
        assert [run["status"] for run in runs.json()] == ["completed"]

    @pytest.mark.asyncio()
    async def test_incomplete_config_returns_422(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            response = await client.post(
                "/api/v1/automation/rules",
                json={"control_id": "CC6.1", "name": "Evidence", "rule_type": "evidence_collection"},
            )

        assert response.status_code == 422


class TestRiskAndReportEndpoints:
    """Tests for /risks, /dashboard and /frameworks endpoints."""

    @pytest.mark.asyncio()
    async def test_assessment_history(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            assessed = await client.post("/api/v1/risks/R-1/assessments")
            history = await client.get("/api/v1/risks/R-1/assessments")

        assert assessed.status_code == 201
        assert assessed.json()["integrated_risk_score"] == 49.8
        assert [a["assessment_id"] for a in history.json()] == [assessed.json()["assessment_id"]]

    @pytest.mark.asyncio()
    async def test_record_mapping(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            recorded = await client.post(
                "/api/v1/risks/mappings",
                json={"risk_id": "R-1", "control_id": "CC6.1", "effectiveness_rating": 4},
            )
            missing = await client.post("/api/v1/risks/mappings", json={"risk_id": "R-1", "control_id": "ZZ-9"})

        assert recorded.status_code == 201
        assert recorded.json()["effectiveness_rating"] == 4
        assert missing.status_code == 404

    @pytest.mark.asyncio()
    async def test_dashboard_and_report(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            dashboard = await client.get("/api/v1/dashboard")
            report = await client.get(f"/api/v1/frameworks/{FRAMEWORK_ID}/report")
            missing = await client.get("/api/v1/frameworks/iso27001/report")

        assert dashboard.status_code == 200
        assert dashboard.json()["compliance"]["total_controls"] == 3
        assert report.json()["readiness_percentage"] == 33.33
        assert missing.status_code == 404


class TestTriggerEndpoints:
    """Tests for trigger, event and scheduler intake."""

    @pytest.mark.asyncio()
    async def test_unknown_trigger_target_returns_404(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            response = await client.post("/api/v1/triggers/nothing-here", json={"source": "schedule"})

        assert response.status_code == 404

    @pytest.mark.asyncio()
    async def test_event_without_subscribers(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            response = await client.post("/api/v1/events/control_change", json={"payload": {"control_id": "CC6.1"}})

        assert response.json() == {"event_name": "control_change", "execution_ids": []}

    @pytest.mark.asyncio()
    async def test_scheduler_tick_with_nothing_due(self, test_app: FastAPI) -> None:
        async with _client(test_app) as client:
            response = await client.post("/api/v1/scheduler/tick")

        assert response.status_code == 200
        assert response.json()["workflow_executions"] == {}


class TestErrorMapping:
    @pytest.mark.asyncio()
    async def test_other_orchestrator_errors_return_400(self, test_app: FastAPI) -> None:
        @test_app.get("/boom")
        async def boom() -> None:
            raise OracleUnavailableError("oracle timed out", details={"status_code": 504})

        async with _client(test_app) as client:
            response = await client.get("/boom")

        assert response.status_code == 400
        assert response.json() == {
            "error": "OracleUnavailableError",
            "message": "oracle timed out",
            "details": {"status_code": 504},
        }

    @pytest.mark.asyncio()
    async def test_version_conflict_returns_409(self, test_app: FastAPI) -> None:
        @test_app.get("/conflict")
        async def conflict() -> None:
            raise VersionConflictError(
                "definition wf-test version 2 already exists",
                details={"definition_id": "wf-test", "version": 2},
            )

        async with _client(test_app) as client:
            response = await client.get("/conflict")

        assert response.status_code == 409
        assert response.json()["error"] == "VersionConflictError"
