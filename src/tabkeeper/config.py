"""Configuration management with pydantic-settings."""

from pathlib import Path
from typing import Any, Self

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TabkeeperSettings(BaseSettings):
    """tabkeeper application settings loaded from environment variables.

    All settings use the TABKEEPER_ prefix for environment variables.
    """

    config_dir: Path = Field(
        default=Path.home() / ".config" / "tabkeeper",
        description="Configuration directory for tabkeeper data",
    )
    socket_path: Path | None = Field(
        default=None,
        description="Unix socket shared by the host, companion and CLI",
    )

    # Logging configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="Log format: console or json")

    # Browser (DevTools protocol) configuration
    cdp_host: str = Field(default="127.0.0.1", description="Chrome remote debugging host")
    cdp_port: int = Field(default=9222, description="Chrome remote debugging port")
    dispatch_timeout: float | None = Field(
        default=30.0,
        description="Seconds allowed per tab dispatch (None disables the limit)",
    )

    # Companion heartbeat
    heartbeat_interval: float = Field(
        default=10.0,
        description="Seconds between companion heartbeats",
    )
    reconnect_delay: float = Field(
        default=1.0,
        description="Seconds the companion waits before reopening a dropped channel",
    )

    # Watchdog
    health_check_interval: float = Field(
        default=5.0,
        description="Seconds between watchdog health checks",
    )
    warn_threshold: float = Field(
        default=25.0,
        description="Heartbeat age in seconds that triggers the cheap recovery path",
    )
    critical_threshold: float = Field(
        default=45.0,
        description="Heartbeat age in seconds that forces companion recreation",
    )
    idle_suspend_window: float = Field(
        default=60.0,
        description="Idle time after which the environment may suspend the host",
    )
    companion_retry_delay: float = Field(
        default=5.0,
        description="Seconds before retrying a failed companion start",
    )

    # Executor
    marker_clear_delay: float = Field(
        default=3.0,
        description="Seconds the activity marker stays visible",
    )

    # Client
    request_timeout: float = Field(
        default=60.0,
        description="Seconds the CLI waits for a daemon reply",
    )

    model_config = SettingsConfigDict(
        env_prefix="TABKEEPER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def __init__(self, **kwargs: Any) -> None:
        """Initialize settings and create config directory."""
        super().__init__(**kwargs)
        self.config_dir.mkdir(parents=True, exist_ok=True)

    @model_validator(mode="after")
    def _check_timing(self) -> Self:
        """Keep the heartbeat timing inside the idle-suspend window."""
        if self.warn_threshold >= self.critical_threshold:
            raise ValueError("warn_threshold must be smaller than critical_threshold")
        if self.critical_threshold >= self.idle_suspend_window:
            raise ValueError("critical_threshold must be smaller than idle_suspend_window")
        if self.heartbeat_interval >= self.idle_suspend_window:
            raise ValueError("heartbeat_interval must be smaller than idle_suspend_window")
        if self.health_check_interval >= self.warn_threshold:
            raise ValueError("health_check_interval must be smaller than warn_threshold")
        return self

    @property
    def resolved_socket_path(self) -> Path:
        """Socket path, defaulting to one inside the config directory."""
        return self.socket_path or self.config_dir / "tabkeeper.sock"

    @property
    def policy_path(self) -> Path:
        """Get the persisted policy file."""
        return self.config_dir / "policy.json"

    @property
    def pid_path(self) -> Path:
        """Get the daemon PID file."""
        return self.config_dir / "tabkeeper.pid"

    @property
    def state_path(self) -> Path:
        """Get the daemon state file."""
        return self.config_dir / "tabkeeper.state.json"


# Global settings instance
_settings: TabkeeperSettings | None = None


def get_settings() -> TabkeeperSettings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = TabkeeperSettings()
    return _settings


def reset_settings() -> None:
    """Reset the global settings instance (useful for testing)."""
    global _settings
    _settings = None
