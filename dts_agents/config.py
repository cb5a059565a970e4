"""Settings for agent platforms.

Loaded from environment variables and a local `.env` file (if present).
Keyword arguments passed to ``AgentPlatform`` take precedence.
"""

from datetime import timedelta

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentSettings(BaseSettings):
    """Settings for connecting agents to the Durable Task Scheduler and the backend.

    Environment variables:
    - DTS_HOST, DTS_TASKHUB, DTS_SECURE_CHANNEL
    - SERVER_URL, API_KEY, KNOWLEDGE_CACHE_TTL_SECONDS
    - LOG_LEVEL, LOG_FORMAT
    """

    dts_host: str = Field(
        default="localhost:8080",
        validation_alias="DTS_HOST",
        description="Durable Task Scheduler gRPC address (the emulator listens on 8080)",
    )
    taskhub: str = Field(
        default="default",
        validation_alias="DTS_TASKHUB",
        description="Task hub shared by every agent of the deployment",
    )
    secure_channel: bool = Field(default=False, validation_alias="DTS_SECURE_CHANNEL")

    server_url: str = Field(
        default="http://localhost:5000",
        validation_alias="SERVER_URL",
        description="Backend API used for documents, knowledge and messages",
    )
    api_key: str = Field(default="", validation_alias="API_KEY")
    http_timeout_seconds: float = Field(default=30.0, validation_alias="HTTP_TIMEOUT_SECONDS")
    http_retries: int = Field(default=3, ge=0, validation_alias="HTTP_RETRIES")
    knowledge_cache_ttl_seconds: float = Field(
        default=600.0,
        ge=0,
        validation_alias="KNOWLEDGE_CACHE_TTL_SECONDS",
        description="How long fetched knowledge is reused; 0 disables the cache",
    )

    rpc_timeout_seconds: float = Field(default=30.0, gt=0, validation_alias="RPC_TIMEOUT_SECONDS")
    rpc_poll_interval_seconds: float = Field(
        default=0.5, gt=0, validation_alias="RPC_POLL_INTERVAL_SECONDS"
    )

    activity_max_attempts: int = Field(default=3, ge=1, validation_alias="ACTIVITY_MAX_ATTEMPTS")
    activity_first_retry_seconds: float = Field(
        default=1.0, gt=0, validation_alias="ACTIVITY_FIRST_RETRY_SECONDS"
    )
    activity_max_retry_seconds: float = Field(
        default=10.0, gt=0, validation_alias="ACTIVITY_MAX_RETRY_SECONDS"
    )
    activity_backoff_coefficient: float = Field(
        default=2.0, ge=1.0, validation_alias="ACTIVITY_BACKOFF_COEFFICIENT"
    )

    max_events_per_run: int = Field(
        default=1000,
        ge=1,
        validation_alias="MAX_EVENTS_PER_RUN",
        description="Inbox events a built-in workflow processes before continuing as new",
    )
    max_tracked_responses: int = Field(
        default=50,
        ge=1,
        validation_alias="MAX_TRACKED_RESPONSES",
        description="Update responses kept in a workflow's published status",
    )

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="LOG_FORMAT")

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")
        return value

    @property
    def rpc_timeout(self) -> timedelta:
        return timedelta(seconds=self.rpc_timeout_seconds)
