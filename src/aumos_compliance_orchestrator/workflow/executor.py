"""Workflow executor: the state machine behind one workflow execution.

``execute`` persists a ``pending`` record, schedules the run on the event
loop and returns the execution id immediately. The background run walks the
definition's steps in dependency order:

- a step whose dependencies have not all succeeded is recorded ``skipped``
- a failed step (after the invoker's retries) fails the execution; no
  further steps run
- a human gate, or an AI-driven step whose confidence falls below the
  approval threshold, suspends the execution in ``waiting_approval``
- when every step has a result the execution is ``completed``

Every transition is one compare-and-save against the status last written by
this executor. If an external supervisor cancelled the execution in the
meantime the write is rejected and the run stops, so ``cancelled`` is never
overwritten.

A suspended execution does not poll. ``resume`` records the human decision
on the pending step and restarts the run, which continues from the first
step that has no result yet.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import Any

from aumos_compliance_orchestrator.core.domain import (
    ApprovalDecision,
    StepResult,
    TriggerSource,
    WorkflowDefinition,
    WorkflowExecution,
    utc_now,
)
from aumos_compliance_orchestrator.core.interfaces import IWorkflowExecutionRepository
from aumos_compliance_orchestrator.errors import InvalidTransitionError, ValidationError
from aumos_compliance_orchestrator.observability import get_logger
from aumos_compliance_orchestrator.workflow.handlers import StepContext, StepInvoker
from aumos_compliance_orchestrator.workflow.registry import WorkflowRegistry, execution_order

logger = get_logger(__name__)


class WorkflowExecutor:
    """Runs workflow executions as independent asyncio tasks.

    Args:
        registry: Source of workflow definitions.
        executions: Execution persistence with compare-and-save writes.
        invoker: Step dispatch with timeout and retry handling.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        registry: WorkflowRegistry,
        executions: IWorkflowExecutionRepository,
        invoker: StepInvoker,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._registry = registry
        self._executions = executions
        self._invoker = invoker
        self._clock = clock
        self._tasks: dict[str, asyncio.Task[None]] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(
        self,
        definition_id: str,
        trigger_payload: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
        triggered_by: TriggerSource = "manual",
        version: int | None = None,
    ) -> str:
        """Launch an execution and return its id without waiting for it.

        Args:
            definition_id: Workflow definition to run.
            trigger_payload: Data delivered by the trigger.
            context: Caller context such as control_id or framework_id.
            triggered_by: manual, schedule or event.
            version: Definition version; latest when None.

        Returns:
            The new execution id.

        Raises:
            NotFoundError: If the definition does not exist.
        """
        definition = await self._registry.get(definition_id, version)
        now = self._clock()
        execution = WorkflowExecution(
            definition_id=definition.definition_id,
            definition_version=definition.version,
            trigger_payload=dict(trigger_payload or {}),
            context=dict(context or {}),
            triggered_by=triggered_by,
            created_at=now,
            updated_at=now,
        )
        await self._executions.create(execution)
        logger.info(
            "Workflow execution launched",
            execution_id=execution.execution_id,
            definition_id=definition.definition_id,
            version=definition.version,
            triggered_by=triggered_by,
        )
        self._spawn(execution.execution_id)
        return execution.execution_id

    async def get_status(self, execution_id: str) -> WorkflowExecution:
        """Return the current execution record.

        Raises:
            NotFoundError: If the execution does not exist.
        """
        return await self._executions.get(execution_id)

    async def list_executions(
        self,
        definition_id: str | None = None,
        status: str | None = None,
    ) -> list[WorkflowExecution]:
        return await self._executions.list_executions(definition_id, status)

    async def wait(self, execution_id: str) -> WorkflowExecution:
        """Wait until the background run of an execution stops, then return it."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await task
        return await self._executions.get(execution_id)

    async def resume(self, execution_id: str, decision: ApprovalDecision) -> str:
        """Apply a human decision to a suspended execution.

        Approval marks the pending step successful and restarts the run from
        the first step without a result. Rejection fails the pending step and
        the execution.

        Args:
            execution_id: The suspended execution.
            decision: The approval decision.

        Returns:
            The execution id.

        Raises:
            InvalidTransitionError: If the execution is not waiting for approval.
            ValidationError: If the decision's role is not allowed by the approval policy.
        """
        execution = await self._executions.get(execution_id)
        if execution.status != "waiting_approval" or execution.pending_step_id is None:
            raise InvalidTransitionError(
                f"Execution {execution_id} is {execution.status}, not waiting_approval",
                details={"execution_id": execution_id, "status": execution.status},
            )

        definition = await self._registry.get(execution.definition_id, execution.definition_version)
        allowed_roles = definition.approval.roles
        if allowed_roles and decision.role not in allowed_roles:
            raise ValidationError(
                f"Role '{decision.role}' may not decide on this workflow",
                details={"execution_id": execution_id, "allowed_roles": list(allowed_roles)},
            )

        step_id = execution.pending_step_id
        step = definition.get_step(step_id)
        now = self._clock()
        pending = execution.results.get(step_id) or StepResult(
            step_id=step_id, kind=step.kind, status="pending_approval", started_at=now
        )
        decision_data = decision.model_dump(mode="json")
        update: dict[str, Any] = {
            "pending_step_id": None,
            "decisions": (*execution.decisions, decision),
            "updated_at": now,
        }
        if decision.approved:
            result = pending.model_copy(
                update={"status": "success", "data": {**pending.data, "decision": decision_data}, "finished_at": now}
            )
            update.update(status="running", results={**execution.results, step_id: result})
        else:
            result = pending.model_copy(
                update={
                    "status": "failed",
                    "data": {**pending.data, "decision": decision_data},
                    "error": f"rejected by {decision.approver}",
                    "finished_at": now,
                }
            )
            update.update(
                status="failed",
                results={**execution.results, step_id: result},
                error=f"Step '{step_id}' rejected by {decision.approver}",
                completed_at=now,
            )

        updated = execution.model_copy(update=update)
        if not await self._executions.compare_and_save(updated, "waiting_approval"):
            raise InvalidTransitionError(
                f"Execution {execution_id} changed while the decision was applied",
                details={"execution_id": execution_id},
            )

        logger.info(
            "Approval decision applied",
            execution_id=execution_id,
            step_id=step_id,
            approved=decision.approved,
            approver=decision.approver,
        )
        if decision.approved:
            self._spawn(execution_id)
        return execution_id

    async def cancel(self, execution_id: str, reason: str = "cancelled by supervisor") -> WorkflowExecution:
        """Mark an execution cancelled. The run stops before its next step.

        Raises:
            InvalidTransitionError: If the execution already reached a terminal state.
        """
        while True:
            execution = await self._executions.get(execution_id)
            if execution.is_terminal:
                raise InvalidTransitionError(
                    f"Execution {execution_id} is already {execution.status}",
                    details={"execution_id": execution_id, "status": execution.status},
                )
            now = self._clock()
            cancelled = execution.model_copy(
                update={"status": "cancelled", "error": reason, "completed_at": now, "updated_at": now}
            )
            if await self._executions.compare_and_save(cancelled, execution.status):
                logger.info("Workflow execution cancelled", execution_id=execution_id, reason=reason)
                return cancelled

    async def recover(self) -> list[str]:
        """Restart executions left pending or running, e.g. after a process restart.

        Returns:
            Ids of the executions that were restarted.
        """
        restarted: list[str] = []
        for status in ("pending", "running"):
            for execution in await self._executions.list_executions(status=status):
                if execution.execution_id not in self._tasks:
                    self._spawn(execution.execution_id)
                    restarted.append(execution.execution_id)
        if restarted:
            logger.info("Recovered interrupted workflow executions", count=len(restarted))
        return restarted

    async def shutdown(self) -> None:
        """Cancel background runs. Their records stay resumable via ``recover``."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    # ------------------------------------------------------------------
    # Background run
    # ------------------------------------------------------------------

    def _spawn(self, execution_id: str) -> None:
        task = asyncio.create_task(self._run(execution_id), name=f"workflow-execution-{execution_id}")
        self._tasks[execution_id] = task

        def _forget(done: asyncio.Task[None]) -> None:
            if self._tasks.get(execution_id) is done:
                del self._tasks[execution_id]

        task.add_done_callback(_forget)

    async def _run(self, execution_id: str) -> None:
        execution = await self._executions.get(execution_id)
        if execution.status == "pending":
            now = self._clock()
            started = await self._write(execution, {"status": "running", "started_at": now})
            if started is None:
                return
            execution = started
        elif execution.status != "running":
            return

        try:
            definition = await self._registry.get(execution.definition_id, execution.definition_version)
            await self._run_steps(definition, execution)
        except Exception as exc:
            logger.exception("Workflow execution crashed", execution_id=execution_id)
            latest = await self._executions.get(execution_id)
            if latest.status == "running":
                await self._write(
                    latest,
                    {"status": "failed", "error": f"internal error: {exc}", "completed_at": self._clock()},
                )

    async def _run_steps(self, definition: WorkflowDefinition, execution: WorkflowExecution) -> None:
        ordered = execution_order(definition)
        for index, step in enumerate(ordered):
            if step.step_id in execution.results:
                continue

            unmet = [
                dep
                for dep in step.depends_on
                if dep not in execution.results or execution.results[dep].status != "success"
            ]
            now = self._clock()
            if unmet:
                skipped = StepResult(
                    step_id=step.step_id,
                    kind=step.kind,
                    status="skipped",
                    data={"unmet_dependencies": unmet},
                    started_at=now,
                    finished_at=now,
                )
                logger.info(
                    "Step skipped, dependencies not satisfied",
                    execution_id=execution.execution_id,
                    step_id=step.step_id,
                    unmet_dependencies=unmet,
                )
                advanced = await self._write(
                    execution,
                    {"current_step_index": index, "results": {**execution.results, step.step_id: skipped}},
                )
                if advanced is None:
                    return
                execution = advanced
                continue

            marked = await self._write(execution, {"current_step_index": index})
            if marked is None:
                return
            execution = marked

            ctx = StepContext(
                execution_id=execution.execution_id,
                definition_id=definition.definition_id,
                framework_id=definition.framework_id,
                trigger_payload=execution.trigger_payload,
                context=execution.context,
                results=execution.results,
                decisions=execution.decisions,
            )
            outcome, attempts = await self._invoker.invoke(step, ctx)
            finished = self._clock()
            result = StepResult(
                step_id=step.step_id,
                kind=step.kind,
                status=outcome.status,
                data=outcome.data,
                confidence=outcome.confidence,
                attempts=attempts,
                error=outcome.error,
                started_at=now,
                finished_at=finished,
            )
            results = {**execution.results, step.step_id: result}

            if outcome.status == "failed":
                await self._write(
                    execution,
                    {
                        "status": "failed",
                        "results": results,
                        "error": f"Step '{step.step_id}' failed after {attempts} attempt(s): {outcome.error}",
                        "completed_at": finished,
                    },
                )
                logger.warning(
                    "Workflow execution failed",
                    execution_id=execution.execution_id,
                    step_id=step.step_id,
                    attempts=attempts,
                    error=outcome.error,
                )
                return

            if outcome.status == "pending_approval":
                await self._suspend(execution, step.step_id, results)
                return

            threshold = (
                step.confidence_threshold
                if step.confidence_threshold is not None
                else definition.approval.confidence_threshold
            )
            if step.ai_enabled and outcome.confidence is not None and outcome.confidence < threshold:
                gated = result.model_copy(
                    update={"status": "pending_approval", "data": {**result.data, "confidence_threshold": threshold}}
                )
                logger.info(
                    "Step confidence below approval threshold",
                    execution_id=execution.execution_id,
                    step_id=step.step_id,
                    confidence=outcome.confidence,
                    threshold=threshold,
                )
                await self._suspend(execution, step.step_id, {**results, step.step_id: gated})
                return

            advanced = await self._write(execution, {"results": results})
            if advanced is None:
                return
            execution = advanced

        completed = await self._write(
            execution,
            {"status": "completed", "current_step_index": len(ordered), "completed_at": self._clock()},
        )
        if completed is not None:
            logger.info(
                "Workflow execution completed",
                execution_id=execution.execution_id,
                definition_id=definition.definition_id,
                steps=len(ordered),
            )

    async def _suspend(
        self,
        execution: WorkflowExecution,
        step_id: str,
        results: dict[str, StepResult],
    ) -> None:
        suspended = await self._write(
            execution,
            {"status": "waiting_approval", "pending_step_id": step_id, "results": results},
        )
        if suspended is not None:
            logger.info("Workflow execution awaiting approval", execution_id=execution.execution_id, step_id=step_id)

    async def _write(self, execution: WorkflowExecution, update: dict[str, Any]) -> WorkflowExecution | None:
        """Apply ``update`` atomically; return None when another writer changed the record."""
        updated = execution.model_copy(update={**update, "updated_at": self._clock()})
        if await self._executions.compare_and_save(updated, execution.status):
            return updated
        latest = await self._executions.get(execution.execution_id)
        logger.info(
            "Execution changed concurrently, stopping run",
            execution_id=execution.execution_id,
            status=latest.status,
        )
        return None
