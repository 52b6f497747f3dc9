"""Error taxonomy for the compliance orchestrator.

Every error raised by the core derives from OrchestratorError so callers can
catch the whole family at a service boundary. Structural problems with a
workflow definition are DefinitionError and are raised only at registration
time. Failures inside a running step are StepExecutionError and are eligible
for retry under the step's retry policy.

Two outcomes are deliberately NOT exceptions:
- an unmet step dependency (the step is recorded as ``skipped``)
- a low-confidence or human-gated step (the execution suspends in
  ``waiting_approval``)
"""

from typing import Any


class OrchestratorError(Exception):
    """Base error for every failure raised by the orchestrator core.

    Attributes:
        message: Human-readable error description.
        details: Structured context that helps diagnose the failure.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize OrchestratorError.

        Args:
            message: Error description.
            details: Optional structured diagnostic context.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(OrchestratorError):
    """Raised when a referenced record does not exist."""

    def __init__(
        self,
        message: str | None = None,
        resource: str | None = None,
        resource_id: str | None = None,
    ) -> None:
        """Initialize NotFoundError.

        Args:
            message: Optional explicit message.
            resource: Name of the missing resource type.
            resource_id: Identifier that was looked up.
        """
        super().__init__(
            message or f"{resource or 'Resource'} '{resource_id}' not found",
            details={"resource": resource, "resource_id": resource_id},
        )
        self.resource = resource
        self.resource_id = resource_id


class ValidationError(OrchestratorError):
    """Raised when caller input violates a business rule."""


class DefinitionError(OrchestratorError):
    """Raised when a workflow definition is structurally invalid.

    Covers unknown step kinds, duplicate step ids, dangling dependencies,
    dependency cycles and malformed trigger expressions.
    """


class StepExecutionError(OrchestratorError):
    """Raised by a step handler when the step could not be carried out."""


class OracleUnavailableError(StepExecutionError):
    """Raised when the assessment oracle fails, times out, or returns garbage."""


class RuleEvaluationError(OrchestratorError):
    """Raised when a monitoring rule cannot be evaluated against the metric snapshot."""


class InvalidTransitionError(OrchestratorError):
    """Raised when a lifecycle transition is not permitted from the current state."""


class VersionConflictError(OrchestratorError):
    """Raised when a workflow definition version is already stored."""
