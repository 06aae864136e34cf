"""Application configuration models with Pydantic validation."""

from pydantic import BaseModel, Field


class TmuxConfig(BaseModel):
    """tmux integration and monitoring settings."""

    monitor_interval: float = Field(
        default=2.0,
        gt=0,
        le=60,
        description="Seconds between state detection polls for each session",
    )
    command_timeout: float = Field(
        default=2.0,
        gt=0,
        le=30,
        description="Timeout in seconds for tmux and ps calls",
    )
    state_file: str = Field(
        default="data/sessions.yaml",
        description="Path of the persisted session state file",
    )
    auto_cleanup: bool = Field(
        default=False,
        description="Remove stale session entries on startup",
    )
    cleanup_age_hours: int = Field(
        default=24,
        ge=1,
        le=24 * 90,
        description="Hours without access before an entry is considered stale",
    )


class AppConfig(BaseModel):
    """Root application configuration.

    Loaded from config.yaml and validated with Pydantic.
    """

    tmux: TmuxConfig = Field(
        default_factory=TmuxConfig,
        description="tmux and monitor settings",
    )
    port: int = Field(
        default=5050,
        ge=1024,
        le=65535,
        description="Port for the Flask server",
    )
    debug: bool = Field(
        default=False,
        description="Enable Flask debug mode",
    )
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Root logging level",
    )
