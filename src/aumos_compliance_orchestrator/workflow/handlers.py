"""Step handlers shared by the workflow executor and the automation runner.

A handler performs the real work of one step kind and reports a StepOutcome.
Handlers never decide about retries, timeouts or approval gating; the
StepInvoker owns timeouts and retry/backoff, and the executor owns gating.

Handlers:
- AutomatedTestHandler        control checks, validation rules, api_check probes
- EvidenceCollectionHandler   checksummed evidence records appended to the metric store
- AIAssessmentHandler         oracle call; the result feeds drift monitoring
- GateHandler                 human review and approval steps (always suspend)
- NotificationHandler         fire-and-forget delivery through a notification channel
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

import httpx

from aumos_compliance_orchestrator.core.domain import (
    AIAssessmentStep,
    ApprovalDecision,
    AutomatedTestStep,
    EvidenceCollectionStep,
    NotificationStep,
    RetryPolicy,
    StepResult,
    ValidationRule,
    WorkflowStep,
    new_id,
    utc_now,
)
from aumos_compliance_orchestrator.core.interfaces import (
    IAssessmentOracle,
    IMetricStore,
    INotificationChannel,
)
from aumos_compliance_orchestrator.core.records import (
    AssessmentRequest,
    AssessmentResponse,
    ControlRecord,
    EvidenceRecord,
    OracleAssessment,
    TestResult,
)
from aumos_compliance_orchestrator.errors import (
    NotFoundError,
    OracleUnavailableError,
    OrchestratorError,
    StepExecutionError,
)
from aumos_compliance_orchestrator.observability import get_logger

logger = get_logger(__name__)

# Known evidence types: (title, storage location template)
_EVIDENCE_TYPES: dict[str, tuple[str, str]] = {
    "configuration_backup": ("Configuration backup", "evidence/configurations/{evidence_id}.json"),
    "access_logs": ("Access logs", "evidence/logs/{evidence_id}.log"),
    "security_report": ("Security report", "evidence/reports/{evidence_id}.pdf"),
    "policy_document": ("Policy document", "evidence/policies/{evidence_id}.pdf"),
}


@dataclass(frozen=True)
class StepOutcome:
    """What a handler reports back for one invocation.

    Attributes:
        status: success, failed, or pending_approval for human gates.
        data: Step output kept on the execution record.
        confidence: Oracle confidence for AI-driven steps.
        error: Failure description when status is failed.
    """

    status: Literal["success", "failed", "pending_approval"]
    data: dict[str, Any] = field(default_factory=dict)
    confidence: float | None = None
    error: str | None = None


@dataclass(frozen=True)
class StepContext:
    """Read-only view of the execution a step runs in."""

    execution_id: str
    definition_id: str | None = None
    framework_id: str | None = None
    trigger_payload: Mapping[str, Any] = field(default_factory=dict)
    context: Mapping[str, Any] = field(default_factory=dict)
    results: Mapping[str, StepResult] = field(default_factory=dict)
    decisions: tuple[ApprovalDecision, ...] = ()
    source: str = "workflow"

    def lookup(self, key: str) -> Any:
        """Return a value from the execution context, falling back to the trigger payload."""
        if key in self.context:
            return self.context[key]
        return self.trigger_payload.get(key)

    def control_id_for(self, step: WorkflowStep) -> str | None:
        return getattr(step, "control_id", None) or self.lookup("control_id")

    def scope_framework(self) -> str | None:
        return self.lookup("framework_id") or self.framework_id


class StepHandler(Protocol):
    """Performs one step kind."""

    async def handle(self, step: WorkflowStep, ctx: StepContext) -> StepOutcome:
        """Run the step and report its outcome.

        Raises:
            StepExecutionError: If the step could not be carried out.
        """
        ...


def compute_checksum(payload: Mapping[str, Any]) -> str:
    """Return the SHA-256 hex digest of a canonical JSON rendering of ``payload``."""
    canonical = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


async def _resolve_controls(
    metric_store: IMetricStore,
    step: WorkflowStep,
    ctx: StepContext,
) -> list[ControlRecord]:
    """Return the controls a step operates on.

    A step bound to one control (by parameter, context or trigger payload)
    operates on that control. Otherwise it covers every control of the
    execution's framework.

    Raises:
        StepExecutionError: If neither a control nor a framework is in scope,
            or the referenced control does not exist.
    """
    control_id = ctx.control_id_for(step)
    if control_id:
        try:
            return [await metric_store.get_control(control_id)]
        except NotFoundError as exc:
            raise StepExecutionError(f"Control '{control_id}' not found", details={"control_id": control_id}) from exc

    framework_id = ctx.scope_framework()
    if framework_id:
        controls = await metric_store.list_controls(framework_id=framework_id)
        if not controls:
            raise StepExecutionError(
                f"Framework '{framework_id}' has no controls",
                details={"framework_id": framework_id},
            )
        return controls

    raise StepExecutionError(
        f"Step '{step.step_id}' needs a control_id or framework_id in scope",
        details={"step_id": step.step_id},
    )


# ---------------------------------------------------------------------------
# Automated tests
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Check:
    name: str
    passed: bool
    severity: str = "medium"
    description: str = ""
    remediation: str = ""
    control_id: str | None = None


def _attribute_value(control: ControlRecord, attribute: str) -> Any:
    if attribute in ControlRecord.model_fields:
        return getattr(control, attribute)
    return control.attributes.get(attribute)


def _apply_rule(rule: ValidationRule, control: ControlRecord) -> _Check:
    actual = _attribute_value(control, rule.field)
    try:
        if rule.operator == "eq":
            passed = actual == rule.expected
        elif rule.operator == "ne":
            passed = actual != rule.expected
        elif rule.operator == "gte":
            passed = actual is not None and actual >= rule.expected
        elif rule.operator == "lte":
            passed = actual is not None and actual <= rule.expected
        else:
            passed = actual in rule.expected
    except TypeError:
        passed = False
    return _Check(
        name=rule.rule_id,
        passed=passed,
        severity=rule.severity,
        description=rule.message
        or f"{rule.field} is {actual!r}, expected {rule.operator} {rule.expected!r}",
        remediation=f"Bring {rule.field} of control {control.control_id} in line with rule {rule.rule_id}",
        control_id=control.control_id,
    )


def _result_id(execution_id: str, step_id: str, control_id: str) -> str:
    """Stable id so a retried attempt replaces its own earlier test result."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{execution_id}/{step_id}/{control_id}"))


def _implementation_check(control: ControlRecord) -> _Check:
    return _Check(
        name=f"{control.control_id}:implemented",
        passed=control.is_implemented,
        severity="critical" if control.risk_level == "critical" else "high",
        description=f"Control {control.control_id} is {control.implementation_status} "
        f"({control.implementation_progress:.0f}% progress)",
        remediation=f"Complete implementation of control {control.control_id}",
        control_id=control.control_id,
    )


class AutomatedTestHandler:
    """Runs compliance checks against one control or a whole framework.

    Checks come from the step's validation rules and, for ``api_check``
    tests, endpoint probes. A control without explicit checks is tested for
    being implemented. The compliance score is ``passed / total * 100`` and
    the step succeeds when it reaches ``pass_threshold``.

    Args:
        metric_store: Source of control records and sink for test results.
        oracle: Optional oracle consulted for a confidence score when the
            step is ai_enabled.
        probe_timeout_seconds: Timeout for each endpoint probe.
        transport: Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        metric_store: IMetricStore,
        oracle: IAssessmentOracle | None = None,
        probe_timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._metric_store = metric_store
        self._oracle = oracle
        self._probe_timeout = probe_timeout_seconds
        self._transport = transport

    async def handle(self, step: AutomatedTestStep, ctx: StepContext) -> StepOutcome:
        controls = await _resolve_controls(self._metric_store, step, ctx)

        checks: list[_Check] = []
        if step.test_type == "api_check":
            checks.extend(await self._probe(step.endpoints, controls[0].control_id if len(controls) == 1 else None))
        for control in controls:
            if step.validation_rules:
                checks.extend(_apply_rule(rule, control) for rule in step.validation_rules)
            elif step.test_type != "api_check":
                checks.append(_implementation_check(control))
        if not checks:
            raise StepExecutionError(
                f"Step '{step.step_id}' has nothing to test",
                details={"step_id": step.step_id, "test_type": step.test_type},
            )

        passed = sum(1 for check in checks if check.passed)
        failed = len(checks) - passed
        score = round(passed / len(checks) * 100, 2)
        success = score >= step.pass_threshold
        findings = [
            {
                "severity": check.severity,
                "title": f"Check failed: {check.name}",
                "description": check.description,
                "remediation": check.remediation,
                "control_id": check.control_id,
            }
            for check in checks
            if not check.passed
        ]

        # No test result is written until the oracle has answered.
        confidence = None
        if step.ai_enabled and self._oracle is not None:
            response = await _call_oracle(
                self._oracle,
                AssessmentRequest(
                    subject_type="control" if len(controls) == 1 else "framework",
                    subject_id=controls[0].control_id if len(controls) == 1 else str(ctx.scope_framework()),
                    assessment_type="test_review",
                    context={"score": score, "findings": findings},
                ),
            )
            confidence = response.confidence_score

        for control in controls:
            control_checks = [c for c in checks if c.control_id in (control.control_id, None)]
            control_passed = all(c.passed for c in control_checks)
            await self._metric_store.append_test_result(
                TestResult(
                    result_id=_result_id(ctx.execution_id, step.step_id, control.control_id),
                    control_id=control.control_id,
                    passed=control_passed,
                    score=score,
                    source=ctx.source,
                    details={
                        "execution_id": ctx.execution_id,
                        "step_id": step.step_id,
                        "test_type": step.test_type,
                    },
                )
            )

        logger.info(
            "Automated test completed",
            execution_id=ctx.execution_id,
            step_id=step.step_id,
            test_type=step.test_type,
            tests_passed=passed,
            tests_failed=failed,
            compliance_score=score,
        )
        return StepOutcome(
            status="success" if success else "failed",
            data={
                "tests_passed": passed,
                "tests_failed": failed,
                "compliance_score": score,
                "findings": findings,
                "controls": [c.control_id for c in controls],
            },
            confidence=confidence,
            error=None if success else f"compliance score {score} below {step.pass_threshold}",
        )

    async def _probe(self, endpoints: tuple[str, ...], control_id: str | None) -> list[_Check]:
        """Probe each endpoint; non-2xx is a medium finding, a transport error a high one."""
        checks: list[_Check] = []
        async with httpx.AsyncClient(timeout=self._probe_timeout, transport=self._transport) as client:
            for endpoint in endpoints:
                try:
                    response = await client.get(endpoint)
                except httpx.HTTPError as exc:
                    checks.append(
                        _Check(
                            name=f"api_check:{endpoint}",
                            passed=False,
                            severity="high",
                            description=f"Endpoint {endpoint} unreachable: {exc}",
                            remediation=f"Restore availability of {endpoint}",
                            control_id=control_id,
                        )
                    )
                    continue
                checks.append(
                    _Check(
                        name=f"api_check:{endpoint}",
                        passed=response.is_success,
                        severity="medium",
                        description=f"Endpoint {endpoint} returned HTTP {response.status_code}",
                        remediation=f"Investigate the response of {endpoint}",
                        control_id=control_id,
                    )
                )
        return checks


# ---------------------------------------------------------------------------
# Evidence collection
# ---------------------------------------------------------------------------


class EvidenceCollectionHandler:
    """Produces checksummed evidence records for each requested evidence type.

    Args:
        metric_store: Source of control records and sink for evidence.
    """

    def __init__(self, metric_store: IMetricStore) -> None:
        self._metric_store = metric_store

    async def handle(self, step: EvidenceCollectionStep, ctx: StepContext) -> StepOutcome:
        controls = await _resolve_controls(self._metric_store, step, ctx)
        unsupported = sorted(t for t in step.evidence_types if t not in _EVIDENCE_TYPES)

        collected: list[str] = []
        for control in controls:
            for evidence_type in step.evidence_types:
                if evidence_type not in _EVIDENCE_TYPES:
                    continue
                title, location = _EVIDENCE_TYPES[evidence_type]
                evidence_id = new_id()
                collected_at = utc_now()
                payload = {
                    "evidence_id": evidence_id,
                    "control_id": control.control_id,
                    "evidence_type": evidence_type,
                    "collected_at": collected_at.isoformat(),
                    "execution_id": ctx.execution_id,
                }
                await self._metric_store.append_evidence(
                    EvidenceRecord(
                        evidence_id=evidence_id,
                        control_id=control.control_id,
                        evidence_type=evidence_type,
                        title=f"{title} for {control.control_id}",
                        location=location.format(evidence_id=evidence_id),
                        checksum=compute_checksum(payload),
                        collection_method=step.method,
                        collected_at=collected_at,
                        metadata={"execution_id": ctx.execution_id, "step_id": step.step_id},
                    )
                )
                collected.append(evidence_id)

        logger.info(
            "Evidence collected",
            execution_id=ctx.execution_id,
            step_id=step.step_id,
            evidence_count=len(collected),
            unsupported_types=unsupported,
        )
        if not collected:
            return StepOutcome(
                status="failed",
                data={"evidence_collected": [], "unsupported_types": unsupported},
                error=f"no supported evidence types among {list(step.evidence_types)}",
            )
        return StepOutcome(
            status="success",
            data={"evidence_collected": collected, "unsupported_types": unsupported},
        )


# ---------------------------------------------------------------------------
# AI assessment
# ---------------------------------------------------------------------------


async def _call_oracle(oracle: IAssessmentOracle, request: AssessmentRequest) -> AssessmentResponse:
    try:
        return await oracle.assess(request)
    except OracleUnavailableError:
        raise
    except Exception as exc:
        raise OracleUnavailableError(
            f"Assessment oracle failed: {exc}",
            details={"subject_id": request.subject_id, "assessment_type": request.assessment_type},
        ) from exc


class AIAssessmentHandler:
    """Asks the assessment oracle to evaluate a control or framework.

    Oracle failures surface as OracleUnavailableError, a StepExecutionError,
    so the invoker retries them like any other step failure.

    Args:
        metric_store: Sink for the stored assessment record.
        oracle: The assessment oracle.
    """

    def __init__(self, metric_store: IMetricStore, oracle: IAssessmentOracle) -> None:
        self._metric_store = metric_store
        self._oracle = oracle

    async def handle(self, step: AIAssessmentStep, ctx: StepContext) -> StepOutcome:
        control_id = ctx.control_id_for(step)
        framework_id = ctx.scope_framework()
        if control_id:
            subject_type, subject_id = "control", control_id
        elif framework_id:
            subject_type, subject_id = "framework", framework_id
        else:
            raise StepExecutionError(
                f"Step '{step.step_id}' needs a control_id or framework_id in scope",
                details={"step_id": step.step_id},
            )

        request = AssessmentRequest(
            subject_type=subject_type,
            subject_id=subject_id,
            assessment_type=step.assessment_type,
            context={
                "trigger": dict(ctx.trigger_payload),
                "previous_results": {
                    step_id: result.data for step_id, result in ctx.results.items() if result.status == "success"
                },
            },
        )
        response = await _call_oracle(self._oracle, request)

        if control_id:
            await self._metric_store.append_assessment(
                OracleAssessment(
                    control_id=control_id,
                    assessment_type=step.assessment_type,
                    confidence_score=response.confidence_score,
                    assessed_progress=response.assessed_progress,
                    gap_count=len(response.gaps),
                )
            )

        logger.info(
            "Oracle assessment completed",
            execution_id=ctx.execution_id,
            step_id=step.step_id,
            subject_id=subject_id,
            confidence=response.confidence_score,
            gap_count=len(response.gaps),
        )
        return StepOutcome(
            status="success",
            data={
                "subject_type": subject_type,
                "subject_id": subject_id,
                "assessment_type": step.assessment_type,
                "gaps": [gap.model_dump(mode="json") for gap in response.gaps],
                "recommendations": list(response.recommendations),
                "estimated_effort": (
                    response.estimated_effort.model_dump(mode="json") if response.estimated_effort else None
                ),
                "assessed_progress": response.assessed_progress,
            },
            confidence=response.confidence_score,
        )


# ---------------------------------------------------------------------------
# Human gates and notifications
# ---------------------------------------------------------------------------


class GateHandler:
    """Human review and approval steps: always suspend for a human decision."""

    async def handle(self, step: WorkflowStep, ctx: StepContext) -> StepOutcome:
        assignees = getattr(step, "assigned_to", None) or getattr(step, "approvers", ())
        logger.info(
            "Step awaiting human decision",
            execution_id=ctx.execution_id,
            step_id=step.step_id,
            kind=step.kind,
            assignees=list(assignees),
        )
        return StepOutcome(status="pending_approval", data={"assignees": list(assignees)})


class NotificationHandler:
    """Delivers a notification; delivery failures are logged and never retried.

    The message body is ``message`` from the execution context when present,
    otherwise a summary of the step results so far.

    Args:
        channel: The notification channel.
    """

    def __init__(self, channel: INotificationChannel) -> None:
        self._channel = channel

    async def handle(self, step: NotificationStep, ctx: StepContext) -> StepOutcome:
        subject = step.subject or f"Compliance workflow update: {ctx.definition_id or ctx.execution_id}"
        body = ctx.lookup("message") or self._summarize(ctx)

        delivered = True
        try:
            await self._channel.send(step.recipients, subject, body)
        except Exception as exc:
            delivered = False
            logger.warning(
                "Notification delivery failed",
                execution_id=ctx.execution_id,
                step_id=step.step_id,
                channel=step.channel,
                error=str(exc),
            )
        return StepOutcome(
            status="success",
            data={
                "delivered": delivered,
                "channel": step.channel,
                "recipients": list(step.recipients),
                "subject": subject,
            },
        )

    @staticmethod
    def _summarize(ctx: StepContext) -> str:
        lines = [f"Execution {ctx.execution_id}"]
        lines.extend(f"- {step_id}: {result.status}" for step_id, result in ctx.results.items())
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Invocation: timeouts and retries
# ---------------------------------------------------------------------------


class StepInvoker:
    """Dispatches a step to its handler with timeout and retry policy.

    A handler exception, a timeout and a ``failed`` outcome all count as a
    failed attempt. After a failed attempt ``n`` (zero-based) the invoker
    waits ``base * multiplier ** n`` seconds, capped, and tries again until
    the policy's retries are exhausted. Suspensions are never retried.

    Args:
        handlers: Handler per step kind.
        max_delay_seconds: Service-wide backoff cap.
        sleep: Awaitable sleep, injectable so tests do not wait.
    """

    def __init__(
        self,
        handlers: Mapping[str, StepHandler],
        max_delay_seconds: float = 300.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._handlers = dict(handlers)
        self._max_delay = max_delay_seconds
        self._sleep = sleep

    async def invoke(self, step: WorkflowStep, ctx: StepContext) -> tuple[StepOutcome, int]:
        """Run a step to a final outcome.

        Returns:
            The last outcome and the number of invocations made.
        """
        handler = self._handlers.get(step.kind)
        if handler is None:
            return StepOutcome(status="failed", error=f"no handler registered for step kind '{step.kind}'"), 0

        policy = step.retry_policy or RetryPolicy()
        attempts = 0
        while True:
            attempts += 1
            outcome = await self._attempt(handler, step, ctx)
            if outcome.status != "failed" or attempts > policy.max_retries:
                return outcome, attempts

            delay = policy.delay_for(attempts - 1, self._max_delay)
            logger.warning(
                "Step attempt failed, retrying",
                execution_id=ctx.execution_id,
                step_id=step.step_id,
                attempt=attempts,
                retry_in_seconds=delay,
                error=outcome.error,
            )
            await self._sleep(delay)

    async def _attempt(self, handler: StepHandler, step: WorkflowStep, ctx: StepContext) -> StepOutcome:
        try:
            if step.timeout_seconds is not None:
                return await asyncio.wait_for(handler.handle(step, ctx), timeout=step.timeout_seconds)
            return await handler.handle(step, ctx)
        except TimeoutError:
            return StepOutcome(status="failed", error=f"step timed out after {step.timeout_seconds}s")
        except OrchestratorError as exc:
            return StepOutcome(status="failed", error=exc.message, data={"error_type": type(exc).__name__})
        except Exception as exc:
            logger.exception("Step handler raised", execution_id=ctx.execution_id, step_id=step.step_id)
            return StepOutcome(status="failed", error=str(exc) or type(exc).__name__, data={"error_type": type(exc).__name__})


def build_default_handlers(
    metric_store: IMetricStore,
    oracle: IAssessmentOracle,
    channel: INotificationChannel,
    probe_timeout_seconds: float = 10.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, StepHandler]:
    """Wire the standard handler for each of the six step kinds."""
    gate = GateHandler()
    return {
        "automated_test": AutomatedTestHandler(metric_store, oracle, probe_timeout_seconds, transport),
        "evidence_collection": EvidenceCollectionHandler(metric_store),
        "ai_assessment": AIAssessmentHandler(metric_store, oracle),
        "human_review": gate,
        "approval": gate,
        "notification": NotificationHandler(channel),
    }
