"""Tests for the bundled workflow template catalog."""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from aumos_compliance_orchestrator.adapters.memory import InMemoryMetricStore
from aumos_compliance_orchestrator.errors import NotFoundError
from aumos_compliance_orchestrator.workflow.executor import WorkflowExecutor
from aumos_compliance_orchestrator.workflow.registry import WorkflowRegistry
from aumos_compliance_orchestrator.workflow.templates import WorkflowTemplateCatalog
from tests.conftest import FRAMEWORK_ID


@pytest.fixture()
def catalog() -> WorkflowTemplateCatalog:
    return WorkflowTemplateCatalog()


class TestCatalog:
    def test_bundled_templates_are_listed(self, catalog: WorkflowTemplateCatalog) -> None:
        summaries = {t["template_id"]: t for t in catalog.list_templates()}

        assert set(summaries) == {"continuous_monitoring", "remediation"}
        assert summaries["continuous_monitoring"]["step_count"] == 4
        assert summaries["remediation"]["category"] == "remediation"

    def test_instantiate_binds_framework(self, catalog: WorkflowTemplateCatalog) -> None:
        definition = catalog.instantiate("continuous_monitoring", FRAMEWORK_ID, created_by="grc-admin")

        assert definition["definition_id"] == "continuous_monitoring-soc2"
        assert definition["framework_id"] == FRAMEWORK_ID
        assert definition["name"] == "Continuous Compliance Monitoring (soc2)"
        assert definition["created_by"] == "grc-admin"

    def test_instances_do_not_share_state(self, catalog: WorkflowTemplateCatalog) -> None:
        first = catalog.instantiate("remediation", FRAMEWORK_ID)
        first["steps"].clear()

        assert len(catalog.instantiate("remediation", FRAMEWORK_ID)["steps"]) == 4

    def test_unknown_template_raises_not_found(self, catalog: WorkflowTemplateCatalog) -> None:
        with pytest.raises(NotFoundError):
            catalog.instantiate("quarterly_audit", FRAMEWORK_ID)

    def test_custom_directory_is_loaded(self, tmp_path: Path) -> None:
        (tmp_path / "access_review.yaml").write_text(
            "name: Access review\ncategory: audit_prep\nsteps:\n  - step_id: review\n    kind: human_review\n",
            encoding="utf-8",
        )

        catalog = WorkflowTemplateCatalog(tmp_path)

        assert [t["template_id"] for t in catalog.list_templates()] == ["access_review"]

    def test_missing_directory_yields_empty_catalog(self, tmp_path: Path) -> None:
        assert WorkflowTemplateCatalog(tmp_path / "absent").list_templates() == []


class TestTemplateExecution:
    @pytest.mark.asyncio()
    async def test_every_bundled_template_registers(
        self,
        catalog: WorkflowTemplateCatalog,
        registry: WorkflowRegistry,
    ) -> None:
        for summary in catalog.list_templates():
            definition = await registry.register(catalog.instantiate(summary["template_id"], FRAMEWORK_ID))
            assert definition.version == 1

    @pytest.mark.asyncio()
    async def test_continuous_monitoring_runs_end_to_end(
        self,
        catalog: WorkflowTemplateCatalog,
        registry: WorkflowRegistry,
        executor: WorkflowExecutor,
        metric_store: InMemoryMetricStore,
        mock_channel: AsyncMock,
    ) -> None:
        await registry.register(catalog.instantiate("continuous_monitoring", FRAMEWORK_ID))

        execution_id = await executor.execute("continuous_monitoring-soc2")
        execution = await executor.wait(execution_id)

        assert execution.status == "completed"
        assert execution.results["initial_scan"].data["tests_passed"] == 1
        assert len(execution.results["evidence_collection"].data["evidence_collected"]) == 6
        assert execution.results["ai_assessment"].confidence == 0.95
        assert len(await metric_store.list_evidence()) == 6
        mock_channel.send.assert_awaited_once()
