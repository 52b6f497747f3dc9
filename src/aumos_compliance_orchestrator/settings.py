"""Service settings for aumos-compliance-orchestrator.

All settings use the AUMOS_ORCHESTRATOR_ prefix and cover:
- Primary database connection
- Assessment oracle endpoint
- Notification webhook
- Workflow retry and approval defaults
- Continuous monitoring thresholds
- Logging
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for aumos-compliance-orchestrator.

    The monitoring and retry defaults below are operational tuning knobs,
    not invariants of the algorithms that consume them.

    Environment variable prefix: AUMOS_ORCHESTRATOR_
    """

    service_name: str = "aumos-compliance-orchestrator"

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    database_url: str = Field(
        default="sqlite+aiosqlite:///./orchestrator.db",
        description="SQLAlchemy async URL for workflow, monitoring and automation state.",
    )
    database_pool_size: int = Field(
        default=10,
        description="Connection pool size (ignored for SQLite).",
    )
    database_echo: bool = Field(
        default=False,
        description="Echo SQL statements to the log.",
    )

    # -------------------------------------------------------------------------
    # Collaborators
    # -------------------------------------------------------------------------

    oracle_url: str = Field(
        default="http://localhost:8300",
        description="Base URL of the assessment oracle service.",
    )
    oracle_timeout_seconds: float = Field(
        default=30.0,
        description="Hard timeout for a single oracle assessment call.",
    )
    notification_webhook_url: str = Field(
        default="",
        description="Webhook receiving notification payloads. Empty logs notifications instead.",
    )
    probe_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for api_check endpoint probes run by automated tests.",
    )

    # -------------------------------------------------------------------------
    # Workflow execution
    # -------------------------------------------------------------------------

    retry_max_delay_seconds: float = Field(
        default=300.0,
        description="Upper bound on a single retry backoff delay.",
    )
    approval_confidence_threshold: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Default confidence below which an AI-driven step suspends for approval.",
    )
    automation_pass_threshold: float = Field(
        default=80.0,
        description="Compliance score at or above which an automation run counts as a success.",
    )

    # -------------------------------------------------------------------------
    # Continuous monitoring defaults
    # -------------------------------------------------------------------------

    min_implementation_progress: float = Field(
        default=70.0,
        description="Threshold rule default: minimum acceptable implementation progress.",
    )
    max_test_failures: int = Field(
        default=5,
        description="Threshold rule default: maximum failed tests inside the lookback window.",
    )
    anomaly_threshold: float = Field(
        default=0.2,
        description="Anomaly rule default: allowed deviation of daily pass rate from trailing average.",
    )
    max_drift: float = Field(
        default=15.0,
        description="Drift rule default: allowed gap between recorded and assessed progress.",
    )
    required_readiness: float = Field(
        default=95.0,
        description="Certification rule default: required implemented-controls percentage.",
    )
    max_consecutive_failures: int = Field(
        default=3,
        description="Control failure rule default: failures in the window that raise an alert.",
    )
    default_check_frequency_seconds: int = Field(
        default=3600,
        description="Cadence for monitoring rules created without an explicit frequency.",
    )

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------

    log_level: str = Field(default="info", description="Root log level.")
    log_json: bool = Field(default=True, description="Render logs as JSON lines.")

    model_config = SettingsConfigDict(env_prefix="AUMOS_ORCHESTRATOR_")
