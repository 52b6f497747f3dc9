"""Tests for workflow definition parsing, validation and versioning."""

import pytest

from aumos_compliance_orchestrator.adapters.memory import InMemoryWorkflowDefinitionRepository
from aumos_compliance_orchestrator.errors import DefinitionError, NotFoundError, VersionConflictError
from aumos_compliance_orchestrator.workflow.registry import WorkflowRegistry, execution_order, parse_definition
from tests.conftest import make_fake_definition


def _step(step_id: str, kind: str = "human_review", depends_on: list[str] | None = None, **params: object) -> dict:
    return {"step_id": step_id, "kind": kind, "depends_on": depends_on or [], **params}


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParseDefinition:
    def test_steps_parse_into_their_kind(self) -> None:
        definition = parse_definition(
            make_fake_definition(
                [
                    _step("scan", "automated_test", test_type="compliance_check"),
                    _step("collect", "evidence_collection", ["scan"], evidence_types=["access_logs"]),
                    _step("notify", "notification", ["collect"], recipients=["team"]),
                ]
            )
        )

        assert [type(s).__name__ for s in definition.steps] == [
            "AutomatedTestStep",
            "EvidenceCollectionStep",
            "NotificationStep",
        ]

    def test_unknown_step_kind_raises_definition_error(self) -> None:
        with pytest.raises(DefinitionError) as exc_info:
            parse_definition(make_fake_definition([_step("a", "teleport")]))
        assert exc_info.value.details["errors"]

    def test_parameter_foreign_to_kind_is_rejected(self) -> None:
        """An approval step cannot carry evidence collection parameters."""
        with pytest.raises(DefinitionError):
            parse_definition(make_fake_definition([_step("a", "approval", evidence_types=["access_logs"])]))

    def test_invalid_cron_is_rejected(self) -> None:
        with pytest.raises(DefinitionError):
            parse_definition(make_fake_definition([_step("a")], trigger={"cron": "every tuesday"}))


# ---------------------------------------------------------------------------
# Structural validation
# ---------------------------------------------------------------------------


class TestExecutionOrder:
    def test_declaration_order_kept_when_already_ordered(self) -> None:
        definition = parse_definition(make_fake_definition([_step("a"), _step("b", depends_on=["a"]), _step("c")]))

        assert [s.step_id for s in execution_order(definition)] == ["a", "b", "c"]

    def test_dependencies_run_before_dependents(self) -> None:
        definition = parse_definition(
            make_fake_definition([_step("report", depends_on=["scan", "collect"]), _step("scan"), _step("collect")])
        )

        order = [s.step_id for s in execution_order(definition)]

        assert order.index("scan") < order.index("report")
        assert order.index("collect") < order.index("report")

    def test_cycle_raises_definition_error(self) -> None:
        definition = parse_definition(
            make_fake_definition([_step("a", depends_on=["c"]), _step("b", depends_on=["a"]), _step("c", depends_on=["b"])])
        )

        with pytest.raises(DefinitionError) as exc_info:
            execution_order(definition)
        assert exc_info.value.details["steps"] == ["a", "b", "c"]

    def test_unknown_dependency_raises_definition_error(self) -> None:
        definition = parse_definition(make_fake_definition([_step("a", depends_on=["ghost"])]))

        with pytest.raises(DefinitionError):
            execution_order(definition)

    def test_duplicate_step_id_raises_definition_error(self) -> None:
        definition = parse_definition(make_fake_definition([_step("a"), _step("a")]))

        with pytest.raises(DefinitionError):
            execution_order(definition)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestWorkflowRegistry:
    @pytest.mark.asyncio()
    async def test_register_assigns_incrementing_versions(self, registry: WorkflowRegistry) -> None:
        first = await registry.register(make_fake_definition([_step("a")]))
        second = await registry.register(make_fake_definition([_step("a"), _step("b")], description="v2"))

        assert (first.version, second.version) == (1, 2)
        assert (await registry.get("wf-test")).version == 2
        assert (await registry.get("wf-test", version=1)).steps == first.steps
        assert [d.version for d in await registry.list_versions("wf-test")] == [1, 2]

    @pytest.mark.asyncio()
    async def test_cyclic_definition_is_not_stored(self, registry: WorkflowRegistry) -> None:
        with pytest.raises(DefinitionError):
            await registry.register(make_fake_definition([_step("a", depends_on=["b"]), _step("b", depends_on=["a"])]))

        with pytest.raises(NotFoundError):
            await registry.get("wf-test")

    @pytest.mark.asyncio()
    async def test_default_confidence_threshold_applies_when_unset(self) -> None:
        registry = WorkflowRegistry(InMemoryWorkflowDefinitionRepository(), default_confidence_threshold=0.6)

        implicit = await registry.register(make_fake_definition([_step("a")]))
        explicit = await registry.register(
            make_fake_definition([_step("a")], definition_id="wf-explicit", approval={"confidence_threshold": 0.9})
        )

        assert implicit.approval.confidence_threshold == 0.6
        assert explicit.approval.confidence_threshold == 0.9

    @pytest.mark.asyncio()
    async def test_find_by_event_and_scheduled(self, registry: WorkflowRegistry) -> None:
        await registry.register(make_fake_definition([_step("a")], trigger={"events": ["control_change"]}))
        await registry.register(
            make_fake_definition([_step("a")], definition_id="wf-nightly", trigger={"cron": "0 2 * * *"})
        )

        assert [d.definition_id for d in await registry.find_by_event("control_change")] == ["wf-test"]
        assert await registry.find_by_event("unknown") == []
        assert [d.definition_id for d in await registry.scheduled()] == ["wf-nightly"]

    @pytest.mark.asyncio()
    async def test_list_definitions_filters_by_category(self, registry: WorkflowRegistry) -> None:
        await registry.register(make_fake_definition([_step("a")]))
        await registry.register(make_fake_definition([_step("a")], definition_id="wf-fix", category="remediation"))

        assert [d.definition_id for d in await registry.list_definitions("remediation")] == ["wf-fix"]
        assert len(await registry.list_definitions()) == 2


class _StaleVersionRepository(InMemoryWorkflowDefinitionRepository):
    """Reports version 0 as the latest for a fixed number of reads."""

    def __init__(self) -> None:
        super().__init__()
        self.stale_reads = 0

    async def latest_version(self, definition_id: str) -> int:
        if self.stale_reads:
            self.stale_reads -= 1
            return 0
        return await super().latest_version(definition_id)


class TestConcurrentRegistration:
    @pytest.mark.asyncio()
    async def test_taken_version_is_retried_with_the_next_one(self) -> None:
        repository = _StaleVersionRepository()
        registry = WorkflowRegistry(repository)
        await registry.register(make_fake_definition([_step("a")]))

        repository.stale_reads = 1
        second = await registry.register(make_fake_definition([_step("a")]))

        assert second.version == 2
        assert [d.version for d in await registry.list_versions("wf-test")] == [1, 2]

    @pytest.mark.asyncio()
    async def test_persistent_conflict_raises_version_conflict(self) -> None:
        repository = _StaleVersionRepository()
        registry = WorkflowRegistry(repository)
        await registry.register(make_fake_definition([_step("a")]))

        repository.stale_reads = 10
        with pytest.raises(VersionConflictError) as exc_info:
            await registry.register(make_fake_definition([_step("a")]))

        assert exc_info.value.details == {"definition_id": "wf-test", "version": 1}
        assert repository.stale_reads == 7
