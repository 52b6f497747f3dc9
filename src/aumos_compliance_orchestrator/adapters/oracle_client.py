"""Assessment oracle REST client.

Sends assessment requests as JSON to an oracle service and parses the
structured, confidence-scored answer. The client enforces a hard timeout;
timeouts, transport errors, non-200 responses and malformed bodies all raise
OracleUnavailableError so the calling step fails and becomes eligible for
retry rather than silently succeeding.

Endpoint contract:
    POST {oracle_url}/v1/assessments
    body:     {"subject_type", "subject_id", "assessment_type", "context"}
    response: {"confidence_score", "gaps", "recommendations", "estimated_effort",
               "assessed_progress", "relevance", "attributes"}
"""

import httpx
import pydantic

from aumos_compliance_orchestrator.core.records import AssessmentRequest, AssessmentResponse
from aumos_compliance_orchestrator.errors import OracleUnavailableError
from aumos_compliance_orchestrator.observability import get_logger

logger = get_logger(__name__)

_DEFAULT_ORACLE_URL = "http://localhost:8300"

_DEFAULT_TIMEOUT_SECONDS = 30.0


class HttpAssessmentOracle:
    """Async client for a JSON-over-HTTP assessment oracle.

    Args:
        oracle_url: Oracle base URL.
        timeout_seconds: Hard timeout for a single assessment call.
        transport: Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        oracle_url: str = _DEFAULT_ORACLE_URL,
        timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize HttpAssessmentOracle.

        Args:
            oracle_url: Oracle base URL (e.g., http://localhost:8300).
            timeout_seconds: Hard timeout in seconds.
            transport: Optional httpx transport override.
        """
        self._oracle_url = oracle_url.rstrip("/")
        self._timeout = timeout_seconds
        self._transport = transport

    async def assess(self, request: AssessmentRequest) -> AssessmentResponse:
        """Request an assessment from the oracle.

        Args:
            request: Subject identity, assessment type and context.

        Returns:
            The parsed AssessmentResponse.

        Raises:
            OracleUnavailableError: If the oracle times out, is unreachable,
                answers with a non-200 status or returns an invalid body.
        """
        url = f"{self._oracle_url}/v1/assessments"
        details = {"subject_id": request.subject_id, "assessment_type": request.assessment_type}

        logger.debug("Requesting oracle assessment", url=url, **details)
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(url, json=request.model_dump(mode="json"))
        except httpx.TimeoutException as exc:
            logger.warning("Oracle assessment timed out", timeout_seconds=self._timeout, **details)
            raise OracleUnavailableError(
                f"Oracle assessment timed out after {self._timeout}s",
                details=details,
            ) from exc
        except httpx.RequestError as exc:
            logger.error("Oracle request failed", error=str(exc), **details)
            raise OracleUnavailableError(f"Oracle request error: {exc}", details=details) from exc

        if response.status_code != 200:
            logger.error(
                "Oracle returned unexpected status",
                status_code=response.status_code,
                body=response.text[:500],
                **details,
            )
            raise OracleUnavailableError(
                f"Oracle assessment failed with status {response.status_code}: {response.text[:200]}",
                details={**details, "status_code": response.status_code},
            )

        try:
            return AssessmentResponse.model_validate_json(response.content)
        except pydantic.ValidationError as exc:
            raise OracleUnavailableError(
                f"Oracle returned a malformed assessment: {exc.error_count()} validation error(s)",
                details=details,
            ) from exc

    async def health_check(self) -> bool:
        """Return True when the oracle answers GET /health with 200."""
        url = f"{self._oracle_url}/health"
        try:
            async with httpx.AsyncClient(timeout=3.0, transport=self._transport) as client:
                response = await client.get(url)
        except httpx.RequestError:
            logger.warning("Oracle health check failed, oracle not reachable", oracle_url=url)
            return False
        return response.status_code == 200
