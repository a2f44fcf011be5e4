"""
Configuration Data Models.

Defines the configuration schema for the engine client, the processing
pipeline, the ETA estimator, the run identity store and logging.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator


class LogLevel(str, Enum):
    """Supported log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class IdentityBackend(str, Enum):
    """Where run identities are persisted between sessions."""

    MEMORY = "memory"
    FILE = "file"


class EngineConfig(BaseModel):
    """Connection settings for the remote rewrite engine.

    Attributes:
        base_url: Base URL of the engine service
        rpc_path: Path of the single RPC endpoint
        timeout_seconds: Hard timeout applied to every call
        max_retries: Attempts for idempotent read actions
        access_token: Bearer token of the authenticated session
    """

    base_url: str = Field(
        default="http://localhost:54321/functions/v1",
        description="Engine base URL",
    )
    rpc_path: str = Field(
        default="rewrite-engine",
        description="RPC endpoint path",
    )
    timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        le=600,
        description="Per-call timeout in seconds",
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for idempotent reads",
    )
    access_token: SecretStr | None = Field(
        default=None,
        description="Bearer token (REWRITEFLOW_ACCESS_TOKEN)",
    )

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the base URL."""
        return v.rstrip("/")


class PipelineConfig(BaseModel):
    """Processing loop and expansion settings.

    Attributes:
        job_delay_seconds: Pause between successfully claimed jobs
        empty_delay_seconds: Pause after an empty claim
        max_empty_polls: Consecutive empty claims that end the loop
        refresh_every: Processed jobs between full status refreshes
        max_expansions: Scope expansions allowed per run
        stuck_minutes: Age after which a running job counts as stuck
        activity_limit: Entries kept in the activity log
        max_consecutive_errors: Transient errors tolerated in a row
        auto_assemble: Assemble automatically when every unit is done
    """

    job_delay_seconds: float = Field(default=0.2, ge=0, description="Delay between jobs")
    empty_delay_seconds: float = Field(default=0.5, ge=0, description="Delay after empty claim")
    max_empty_polls: int = Field(default=2, ge=1, description="Empty claims before stopping")
    refresh_every: int = Field(default=5, ge=1, description="Jobs between status refreshes")
    max_expansions: int = Field(default=3, ge=0, le=10, description="Scope expansions per run")
    stuck_minutes: int = Field(default=10, ge=1, description="Stuck job threshold")
    activity_limit: int = Field(default=200, ge=1, description="Activity log bound")
    max_consecutive_errors: int = Field(
        default=5,
        ge=1,
        description="Consecutive transient errors before the loop gives up",
    )
    auto_assemble: bool = Field(default=True, description="Assemble when all units are done")


class EtaConfig(BaseModel):
    """ETA estimation and progress smoothing settings.

    Attributes:
        window: Number of recent durations averaged
        tick_interval_seconds: Smoothing tick period (0 disables ticking)
        idle_threshold_seconds: Time without progress before smoothing kicks in
        smoothing_step: Percentage points added per tick
        smoothing_lead: How far smoothed progress may run ahead of actual
        smoothing_cap: Upper bound for smoothed progress before completion
    """

    window: int = Field(default=5, ge=1, le=100)
    tick_interval_seconds: float = Field(default=1.0, ge=0)
    idle_threshold_seconds: float = Field(default=2.5, ge=0)
    smoothing_step: float = Field(default=0.3, gt=0)
    smoothing_lead: float = Field(default=2.0, ge=0)
    smoothing_cap: float = Field(default=99.0, gt=0, lt=100)


class IdentityConfig(BaseModel):
    """Run identity store settings."""

    backend: IdentityBackend = Field(default=IdentityBackend.FILE)
    path: str = Field(
        default=".rewriteflow/runs.json",
        description="JSON file used by the file backend",
    )


class LoggingConfig(BaseModel):
    """Logging settings.

    Attributes:
        level: Root log level for the rewriteflow loggers
        file: Optional log file path
        json_format: Emit JSON lines instead of rich console output
    """

    level: LogLevel = Field(default=LogLevel.INFO)
    file: str | None = Field(default=None)
    json_format: bool = Field(default=False)


class RewriteflowConfig(BaseModel):
    """Root configuration.

    Attributes:
        engine: Engine connection settings
        pipeline: Processing loop settings
        eta: ETA estimator settings
        identity: Run identity store settings
        logging: Logging settings
        debug: Enable debug mode
    """

    engine: EngineConfig = Field(default_factory=EngineConfig, description="Engine connection")
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig, description="Pipeline")
    eta: EtaConfig = Field(default_factory=EtaConfig, description="ETA estimation")
    identity: IdentityConfig = Field(default_factory=IdentityConfig, description="Identity store")
    logging: LoggingConfig = Field(default_factory=LoggingConfig, description="Logging")
    debug: bool = Field(default=False, description="Enable debug mode")

    def to_yaml_dict(self) -> dict[str, Any]:
        """Convert to YAML-friendly dictionary, without secrets.

        Returns:
            Dict suitable for YAML serialization
        """
        data = self.model_dump(mode="json", exclude_none=True)
        data.get("engine", {}).pop("access_token", None)
        return data
