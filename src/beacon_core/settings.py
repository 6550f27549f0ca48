from __future__ import annotations

from typing import Literal

from pydantic import ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from beacon_core.circuit_breaker import BreakerScope, CircuitBreakerConfig
from beacon_core.connection import ReconnectPolicy
from beacon_core.retry import RetryOptions

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class ClientSettings(BaseSettings):
    """Settings for one resilient API client, read from ``BEACON_*``."""

    model_config = prefixed_settings_config("BEACON_")

    base_url: str = ""
    client_name: str = "beacon-client"
    timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retry_jitter: float = 0.3
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    breaker_scope: BreakerScope = BreakerScope.CLIENT
    enable_cache: bool = True
    cache_max_entries: int = 50
    cache_default_ttl: float = 300.0
    health_check_path: str = "/api/health"
    reconnect_base_delay: float = 2.0
    reconnect_max_delay: float = 60.0
    max_reconnect_attempts: int = 5
    log_level: LogLevel = "INFO"

    @field_validator("log_level", "breaker_scope", mode="before")
    @classmethod
    def _normalize_case(cls, value: object, info: ValidationInfo) -> object:
        if not isinstance(value, str):
            return value
        normalized = value.strip()
        if info.field_name == "log_level":
            return normalized.upper()
        return normalized.lower()

    @field_validator("base_url", mode="before")
    @classmethod
    def _strip_base_url(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().rstrip("/")
        return value

    @field_validator("health_check_path", "client_name", mode="before")
    @classmethod
    def _validate_required_string(
        cls, value: object, info: ValidationInfo
    ) -> object:
        if not isinstance(value, str):
            return value
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be non-empty")
        return normalized

    @model_validator(mode="after")
    def _validate_client_settings(self) -> ClientSettings:
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.retry_base_delay < 0:
            raise ValueError("retry_base_delay must be >= 0")
        if self.retry_max_delay < self.retry_base_delay:
            raise ValueError("retry_max_delay must be >= retry_base_delay")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if self.retry_jitter < 0:
            raise ValueError("retry_jitter must be >= 0")
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.reset_timeout < 0:
            raise ValueError("reset_timeout must be >= 0")
        if self.cache_max_entries < 1:
            raise ValueError("cache_max_entries must be >= 1")
        if self.cache_default_ttl < 0:
            raise ValueError("cache_default_ttl must be >= 0")
        if self.reconnect_max_delay < self.reconnect_base_delay:
            raise ValueError("reconnect_max_delay must be >= reconnect_base_delay")
        if self.max_reconnect_attempts < 0:
            raise ValueError("max_reconnect_attempts must be >= 0")
        return self

    def retry_options(self) -> RetryOptions:
        """Build retry options for outward calls."""
        return RetryOptions(
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            backoff_multiplier=self.backoff_multiplier,
            jitter=self.retry_jitter,
        )

    def breaker_config(self) -> CircuitBreakerConfig:
        """Build the shared circuit breaker configuration."""
        return CircuitBreakerConfig(
            failure_threshold=self.failure_threshold,
            reset_timeout=self.reset_timeout,
        )

    def reconnect_policy(self) -> ReconnectPolicy:
        """Build the reconnection probe policy."""
        return ReconnectPolicy(
            base_delay=self.reconnect_base_delay,
            max_delay=self.reconnect_max_delay,
            max_attempts=self.max_reconnect_attempts,
        )

    def default_headers(self) -> dict[str, str]:
        """Build headers sent with every request."""
        return {
            "Content-Type": "application/json",
            "X-Client": self.client_name,
        }

    def health_check_url(self) -> str:
        """Return the absolute health-check URL."""
        if self.health_check_path.startswith(("http://", "https://")):
            return self.health_check_path
        path = self.health_check_path
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self.base_url}{path}"
