"""Pydantic v2 models for relay.yaml configuration."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from relay.constants import DEFAULT_CLI_BINARY, DEFAULT_MODEL


class CLIConfig(BaseModel):
    """How the wrapped CLI tool is spawned and supervised."""

    model_config = ConfigDict(extra="forbid")

    binary: str = Field(
        default=DEFAULT_CLI_BINARY,
        description="Executable name or path of the wrapped CLI tool",
    )
    allowed_tools: str | None = Field(
        default=None,
        description="Comma-separated tool allow-list passed via --allowedTools",
    )
    model: str | None = Field(
        default=None,
        description="Model override passed via --model when a request names none",
    )
    max_budget_usd: float | None = Field(
        default=None,
        gt=0,
        description="Spending ceiling passed via --max-budget-usd",
    )
    idle_timeout: float = Field(
        default=600.0,
        gt=0,
        description="Seconds without output (and without live children) before termination",
    )
    hard_timeout: float = Field(
        default=86_400.0,
        gt=0,
        description="Absolute wall-clock ceiling per invocation in seconds",
    )
    liveness_interval: float = Field(
        default=30.0,
        gt=0,
        description="Seconds between checks for live child processes",
    )
    kill_grace: float = Field(
        default=3.0,
        ge=0,
        description="Seconds between SIGTERM and SIGKILL",
    )
    settle_interval: float = Field(
        default=0.1,
        ge=0,
        description="Seconds to wait for late output after end of stream",
    )
    stripped_env_keys: list[str] = Field(
        default_factory=list,
        description="Extra environment variables removed before spawning",
    )

    @model_validator(mode="after")
    def _validate_deadlines(self) -> CLIConfig:
        if self.hard_timeout < self.idle_timeout:
            msg = (
                f"hard_timeout ({self.hard_timeout}) must not be shorter "
                f"than idle_timeout ({self.idle_timeout})"
            )
            raise ValueError(msg)
        return self


class SessionsConfig(BaseModel):
    """Session continuity settings."""

    model_config = ConfigDict(extra="forbid")

    ttl_hours: float = Field(
        default=24.0,
        gt=0,
        description="Idle time after which a session mapping is discarded",
    )
    sweep_interval: float = Field(
        default=3600.0,
        gt=0,
        description="Seconds between proactive expiry sweeps",
    )
    save_interval: float = Field(
        default=300.0,
        gt=0,
        description="Seconds between periodic saves to the session file",
    )
    file: str = Field(
        default=".sessions.json",
        description="Session file path, relative to the config directory",
    )


class RetryConfig(BaseModel):
    """Retry policy for transient invocation failures."""

    model_config = ConfigDict(extra="forbid")

    max_retries: int = Field(
        default=2,
        ge=0,
        description="Retries after the first attempt (resume fallback not counted)",
    )
    backoff_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Base backoff, multiplied by the retry number",
    )


class PingConfig(BaseModel):
    """Canned answer for connectivity checks."""

    model_config = ConfigDict(extra="forbid")

    max_chars: int = Field(
        default=0,
        ge=0,
        description="Prompts this short get a canned 'OK' (0 disables)",
    )


class RelayConfig(BaseModel):
    """Top-level relay.yaml configuration."""

    model_config = ConfigDict(extra="forbid")

    default_model: str = Field(
        default=DEFAULT_MODEL,
        description="Model name reported when a request names none",
    )
    cli: CLIConfig = Field(default_factory=CLIConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    ping: PingConfig = Field(default_factory=PingConfig)
