"""
Configuration management for the Tracker Request Orchestrator.

This module handles environment variables, settings validation, and configuration
management using Pydantic Settings for type safety and validation.
"""

from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitConfig(BaseModel):
    """Client-side request manager limits."""

    max_requests_per_minute: int = Field(
        default=20, gt=0, description="Requests allowed per rolling minute"
    )
    max_concurrent_requests: int = Field(
        default=3, gt=0, description="Requests allowed in flight at once"
    )
    min_delay_between_requests: float = Field(
        default=3.0, ge=0, description="Minimum spacing between dispatches (s)"
    )
    backoff_multiplier: float = Field(
        default=2.0, ge=1.0, description="Backoff growth factor per failure"
    )
    base_backoff_delay: float = Field(
        default=1.0, gt=0, description="Initial backoff delay (s)"
    )
    max_backoff_delay: float = Field(
        default=60.0, gt=0, description="Backoff ceiling (s)"
    )
    failure_threshold: int = Field(
        default=5, gt=0, description="Consecutive failures before the circuit opens"
    )
    pause_duration: float = Field(
        default=300.0, gt=0, description="Manual pause duration (s)"
    )
    default_retries: int = Field(default=2, ge=0, description="Default retry budget")
    max_jitter: float = Field(
        default=1.0, ge=0, description="Upper bound of post-dispatch jitter (s)"
    )
    front_retry_limit: int = Field(
        default=2,
        ge=0,
        description="Retries re-queued at the front before moving to the back",
    )
    health_log_interval: float = Field(
        default=30.0, gt=0, description="Health log period (s)"
    )
    queue_kick_interval: float = Field(
        default=5.0, gt=0, description="Idle queue kicker period (s)"
    )

    @model_validator(mode="after")
    def check_backoff_bounds(self) -> "RateLimitConfig":
        """Ensure the backoff floor does not exceed its ceiling."""
        if self.base_backoff_delay > self.max_backoff_delay:
            raise ValueError("base_backoff_delay must not exceed max_backoff_delay")
        return self


class SmartPollingConfig(BaseModel):
    """Adaptive polling configuration."""

    base_interval: float = Field(default=30.0, gt=0, description="Base interval (s)")
    min_interval: float = Field(default=15.0, gt=0, description="Interval floor (s)")
    max_interval: float = Field(default=300.0, gt=0, description="Interval cap (s)")
    max_devices_per_batch: int = Field(
        default=50, gt=0, description="Upper bound on devices per batch"
    )
    adaptive_intervals: bool = Field(
        default=True, description="Adapt the interval to observed data"
    )
    intelligent_filtering: bool = Field(
        default=True, description="Group devices into activity tiers"
    )

    @model_validator(mode="after")
    def check_interval_bounds(self) -> "SmartPollingConfig":
        """Ensure min <= base <= max."""
        if not self.min_interval <= self.base_interval <= self.max_interval:
            raise ValueError("expected min_interval <= base_interval <= max_interval")
        return self


class SessionConfig(BaseModel):
    """Polling session facade configuration."""

    realtime_interval: float = Field(
        default=10.0, gt=0, description="Interval for real-time viewers (s)"
    )
    device_refresh_interval: float = Field(
        default=300.0, gt=0, description="Device list refresh period (s)"
    )
    username: str = Field(default="", description="Account used for device lists")


class CoordinatorConfig(BaseModel):
    """Server-side coordinator configuration."""

    minimum_request_spacing: float = Field(
        default=5.0, ge=0, description="Global spacing between vendor calls (s)"
    )
    cache_ttl: float = Field(default=60.0, gt=0, description="Response cache TTL (s)")
    emergency_cooldown: float = Field(
        default=1800.0, gt=0, description="Lockout after a vendor 8902 (s)"
    )
    rate_limiter_url: str = Field(
        default="", description="Remote rate limiter URL (empty for in-process)"
    )
    control_store: str = Field(default="memory", description="Control store backend")
    redis_url: str = Field(
        default="redis://localhost:6379/0", description="Redis URL for the store"
    )


class VendorConfig(BaseModel):
    """Vendor API configuration."""

    base_url: str = Field(..., description="Vendor API base URL")
    token: str = Field(default="", description="Vendor API token")
    timeout: float = Field(default=30.0, gt=0, description="HTTP timeout (s)")


class ServerConfig(BaseModel):
    """Web server configuration settings."""

    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    debug: bool = Field(default=False, description="Enable debug mode")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Logging configuration
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="json", description="Log format")

    # Vendor configuration
    vendor_base_url: str = Field(
        default="https://api.example.com/openapi", description="Vendor API base URL"
    )
    vendor_token: str = Field(default="", description="Vendor API token")
    vendor_timeout: float = Field(default=30.0, description="Vendor HTTP timeout")

    # Request manager
    max_requests_per_minute: int = Field(default=20)
    max_concurrent_requests: int = Field(default=3)
    min_delay_between_requests: float = Field(default=3.0)
    backoff_multiplier: float = Field(default=2.0)
    base_backoff_delay: float = Field(default=1.0)
    max_backoff_delay: float = Field(default=60.0)
    failure_threshold: int = Field(default=5)
    pause_duration: float = Field(default=300.0)
    default_retries: int = Field(default=2)
    max_jitter: float = Field(default=1.0)
    front_retry_limit: int = Field(default=2)
    health_log_interval: float = Field(default=30.0)
    queue_kick_interval: float = Field(default=5.0)

    # Smart polling
    polling_base_interval: float = Field(default=30.0)
    polling_min_interval: float = Field(default=15.0)
    polling_max_interval: float = Field(default=300.0)
    polling_max_devices_per_batch: int = Field(default=50)
    polling_adaptive_intervals: bool = Field(default=True)
    polling_intelligent_filtering: bool = Field(default=True)

    # Sessions
    realtime_interval: float = Field(default=10.0)
    device_refresh_interval: float = Field(default=300.0)
    vendor_username: str = Field(default="", description="Account for device lists")

    # Coordinator
    coordinator_url: str = Field(
        default="http://localhost:8000/coordinator",
        description="Coordinator endpoint used by clients",
    )
    coordinator_auto_retry_wait: float = Field(
        default=10.0, description="Auto-retry when asked to wait less than this (s)"
    )
    minimum_request_spacing: float = Field(default=5.0)
    cache_ttl: float = Field(default=60.0)
    emergency_cooldown: float = Field(default=1800.0)
    rate_limiter_url: str = Field(default="")
    control_store: str = Field(default="memory")
    redis_url: str = Field(default="redis://localhost:6379/0")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        if v.lower() not in {"json", "console"}:
            raise ValueError(f"Invalid log format: {v}")
        return v.lower()

    @field_validator("control_store")
    @classmethod
    def validate_control_store(cls, v: str) -> str:
        """Validate control store backend."""
        if v.lower() not in {"memory", "redis"}:
            raise ValueError(f"Invalid control store: {v}")
        return v.lower()

    @property
    def server_config(self) -> ServerConfig:
        """Get server configuration."""
        return ServerConfig(host=self.host, port=self.port, debug=self.debug)

    @property
    def vendor_config(self) -> VendorConfig:
        """Get vendor API configuration."""
        return VendorConfig(
            base_url=self.vendor_base_url,
            token=self.vendor_token,
            timeout=self.vendor_timeout,
        )

    @property
    def request_manager_config(self) -> RateLimitConfig:
        """Get request manager configuration."""
        return RateLimitConfig(
            max_requests_per_minute=self.max_requests_per_minute,
            max_concurrent_requests=self.max_concurrent_requests,
            min_delay_between_requests=self.min_delay_between_requests,
            backoff_multiplier=self.backoff_multiplier,
            base_backoff_delay=self.base_backoff_delay,
            max_backoff_delay=self.max_backoff_delay,
            failure_threshold=self.failure_threshold,
            pause_duration=self.pause_duration,
            default_retries=self.default_retries,
            max_jitter=self.max_jitter,
            front_retry_limit=self.front_retry_limit,
            health_log_interval=self.health_log_interval,
            queue_kick_interval=self.queue_kick_interval,
        )

    @property
    def smart_polling_config(self) -> SmartPollingConfig:
        """Get smart polling configuration."""
        return SmartPollingConfig(
            base_interval=self.polling_base_interval,
            min_interval=self.polling_min_interval,
            max_interval=self.polling_max_interval,
            max_devices_per_batch=self.polling_max_devices_per_batch,
            adaptive_intervals=self.polling_adaptive_intervals,
            intelligent_filtering=self.polling_intelligent_filtering,
        )

    @property
    def session_config(self) -> SessionConfig:
        """Get session facade configuration."""
        return SessionConfig(
            realtime_interval=self.realtime_interval,
            device_refresh_interval=self.device_refresh_interval,
            username=self.vendor_username,
        )

    @property
    def coordinator_config(self) -> CoordinatorConfig:
        """Get coordinator configuration."""
        return CoordinatorConfig(
            minimum_request_spacing=self.minimum_request_spacing,
            cache_ttl=self.cache_ttl,
            emergency_cooldown=self.emergency_cooldown,
            rate_limiter_url=self.rate_limiter_url,
            control_store=self.control_store,
            redis_url=self.redis_url,
        )


# Global settings instance - initialized lazily to avoid import-time errors
_settings_instance = None


def get_settings() -> Settings:
    """Get the global settings instance, creating it if necessary."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance


def __getattr__(name: str) -> Any:
    """Allow module-level access to settings attributes."""
    if name == "settings":
        return get_settings()
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
