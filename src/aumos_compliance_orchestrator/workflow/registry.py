"""Workflow registry: validation and versioned storage of definitions.

Definitions are parsed once at the boundary (raw dicts from the API, YAML
templates or callers) into the tagged step union, then checked for
structural soundness before anything is persisted:

- step ids are unique within the definition
- every dependency names a step of the same definition
- the dependency graph is acyclic

A definition that fails any check raises DefinitionError and leaves no
record behind. Registering a definition whose ``definition_id`` already
exists stores it as the next version; earlier versions stay untouched.
"""

from __future__ import annotations

import heapq
from collections import defaultdict
from collections.abc import Mapping
from typing import Any

import pydantic

from aumos_compliance_orchestrator.core.domain import WorkflowDefinition, WorkflowStep, utc_now
from aumos_compliance_orchestrator.core.interfaces import IWorkflowDefinitionRepository
from aumos_compliance_orchestrator.errors import DefinitionError, VersionConflictError
from aumos_compliance_orchestrator.observability import get_logger

logger = get_logger(__name__)

# Registration attempts when a concurrent registration claims the same version
_MAX_VERSION_ATTEMPTS = 3


def parse_definition(raw: WorkflowDefinition | Mapping[str, Any]) -> WorkflowDefinition:
    """Parse a raw definition into the typed model.

    Args:
        raw: A WorkflowDefinition or a plain mapping.

    Returns:
        The parsed WorkflowDefinition.

    Raises:
        DefinitionError: If the mapping does not describe a valid definition,
            including unknown step kinds and parameters foreign to a kind.
    """
    if isinstance(raw, WorkflowDefinition):
        return raw
    try:
        return WorkflowDefinition.model_validate(dict(raw))
    except pydantic.ValidationError as exc:
        errors = [
            {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"], "type": err["type"]}
            for err in exc.errors()
        ]
        raise DefinitionError(
            f"Invalid workflow definition: {exc.error_count()} validation error(s)",
            details={"errors": errors},
        ) from exc


def execution_order(definition: WorkflowDefinition) -> tuple[WorkflowStep, ...]:
    """Return the steps in dependency order.

    Uses Kahn's algorithm with a min-heap keyed by definition position, so
    when several steps are ready the one declared first runs first. A
    definition whose steps are already declared in dependency order runs
    exactly in declaration order.

    Args:
        definition: The workflow definition.

    Returns:
        Steps ordered so that every step follows all of its dependencies.

    Raises:
        DefinitionError: On duplicate ids, unknown dependencies or cycles.
    """
    steps = definition.steps
    position: dict[str, int] = {}
    for index, step in enumerate(steps):
        if step.step_id in position:
            raise DefinitionError(
                f"Duplicate step id '{step.step_id}'",
                details={"definition_id": definition.definition_id, "step_id": step.step_id},
            )
        position[step.step_id] = index

    dependents: dict[str, list[str]] = defaultdict(list)
    indegree: dict[str, int] = {}
    for step in steps:
        deps = set(step.depends_on)
        for dep in deps:
            if dep not in position:
                raise DefinitionError(
                    f"Step '{step.step_id}' depends on unknown step '{dep}'",
                    details={"definition_id": definition.definition_id, "step_id": step.step_id, "dependency": dep},
                )
            dependents[dep].append(step.step_id)
        indegree[step.step_id] = len(deps)

    ready = [position[sid] for sid, degree in indegree.items() if degree == 0]
    heapq.heapify(ready)
    ordered: list[WorkflowStep] = []
    while ready:
        step = steps[heapq.heappop(ready)]
        ordered.append(step)
        for dependent in dependents[step.step_id]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, position[dependent])

    if len(ordered) != len(steps):
        cyclic = sorted(sid for sid, degree in indegree.items() if degree > 0)
        raise DefinitionError(
            "Workflow step dependencies form a cycle",
            details={"definition_id": definition.definition_id, "steps": cyclic},
        )
    return tuple(ordered)


class WorkflowRegistry:
    """Stores immutable, versioned workflow definitions.

    Args:
        repository: Definition persistence.
        default_confidence_threshold: Approval confidence threshold applied to
            definitions whose approval policy does not set one.
    """

    def __init__(
        self,
        repository: IWorkflowDefinitionRepository,
        default_confidence_threshold: float = 0.8,
    ) -> None:
        self._repository = repository
        self._default_confidence_threshold = default_confidence_threshold

    async def register(
        self,
        definition: WorkflowDefinition | Mapping[str, Any],
        created_by: str | None = None,
    ) -> WorkflowDefinition:
        """Validate and store a definition as the next version of its id.

        Args:
            definition: Typed definition or raw mapping.
            created_by: Optional author override.

        Returns:
            The stored definition with its assigned version.

        Raises:
            DefinitionError: If the definition is malformed. Nothing is stored.
            VersionConflictError: If concurrent registrations keep claiming
                the next version.
        """
        parsed = parse_definition(definition)
        order = execution_order(parsed)

        update: dict[str, Any] = {}
        if created_by is not None:
            update["created_by"] = created_by
        if "confidence_threshold" not in parsed.approval.model_fields_set:
            update["approval"] = parsed.approval.model_copy(
                update={"confidence_threshold": self._default_confidence_threshold}
            )
        for attempt in range(1, _MAX_VERSION_ATTEMPTS + 1):
            version = await self._repository.latest_version(parsed.definition_id) + 1
            candidate = parsed.model_copy(update={**update, "version": version, "created_at": utc_now()})
            try:
                stored = await self._repository.add(candidate)
                break
            except VersionConflictError:
                if attempt == _MAX_VERSION_ATTEMPTS:
                    raise
                logger.warning(
                    "Definition version taken, retrying",
                    definition_id=parsed.definition_id,
                    version=version,
                    attempt=attempt,
                )

        logger.info(
            "Workflow definition registered",
            definition_id=stored.definition_id,
            version=stored.version,
            category=stored.category,
            step_order=[step.step_id for step in order],
        )
        return stored

    async def get(self, definition_id: str, version: int | None = None) -> WorkflowDefinition:
        """Return a definition version, the latest when ``version`` is None.

        Raises:
            NotFoundError: If the definition or version does not exist.
        """
        return await self._repository.get(definition_id, version)

    async def list_definitions(self, category: str | None = None) -> list[WorkflowDefinition]:
        return await self._repository.list_latest(category)

    async def list_versions(self, definition_id: str) -> list[WorkflowDefinition]:
        return await self._repository.list_versions(definition_id)

    async def find_by_event(self, event_name: str) -> list[WorkflowDefinition]:
        """Return the latest definitions subscribed to an event name."""
        return [d for d in await self._repository.list_latest() if event_name in d.trigger.events]

    async def scheduled(self) -> list[WorkflowDefinition]:
        """Return the latest definitions that carry a cron trigger."""
        return [d for d in await self._repository.list_latest() if d.trigger.cron]
