"""Service configuration using pydantic-settings."""

from functools import lru_cache
from typing import Optional, Tuple

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables and an optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Upstream. Permissions required: users:read, users:read.email, usergroups:read
    slack_bot_token: str = ""
    slack_api_url: str = "https://slack.com/api"
    page_size: int = Field(default=200, ge=1, le=1000)
    requests_per_minute: float = Field(default=10, ge=0)
    page_jitter_seconds: float = Field(default=1.0, ge=0)
    expected_pages: int = Field(default=100, ge=1, description="Sizes the default refresh timeout")
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    max_page_retries: int = Field(default=3, ge=0)
    include_bots: bool = False
    include_deleted: bool = False
    fetch_user_groups: bool = True

    # Refresh cycle
    refresh_interval_seconds: float = Field(default=300.0, gt=0)
    # Unset means derived from the page pacing; see effective_refresh_timeout
    refresh_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    backoff_base_seconds: float = Field(default=5.0, gt=0)
    backoff_max_seconds: float = Field(default=300.0, gt=0)

    # Server
    listen_address: str = "0.0.0.0:3000"
    log_level: str = "INFO"

    @field_validator('listen_address')
    @classmethod
    def validate_listen_address(cls, v):
        """Require host:port."""
        host, sep, port = v.rpartition(':')
        if not sep or not host or not port.isdigit():
            raise ValueError(f"listen_address must be host:port, got: {v}")
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @model_validator(mode="after")
    def check_refresh_timeout(self) -> "Settings":
        """An explicit refresh timeout must leave room for a paced pull of expected_pages."""
        if self.refresh_timeout_seconds is not None and self.refresh_timeout_seconds < self.paced_pull_seconds:
            raise ValueError(
                f"refresh_timeout_seconds={self.refresh_timeout_seconds:g} cannot fit {self.expected_pages} "
                f"pages at {self.requests_per_minute:g} requests/minute "
                f"(needs at least {self.paced_pull_seconds:g}s); raise it or lower expected_pages"
            )
        return self

    @property
    def paced_pull_seconds(self) -> float:
        """Time spent pacing a full pull: expected_pages user pages plus the user group request."""
        requests = self.expected_pages + (1 if self.fetch_user_groups else 0)
        if not self.page_interval_seconds:
            return 0.0
        return (requests - 1) * (self.page_interval_seconds + self.page_jitter_seconds)

    @property
    def effective_refresh_timeout(self) -> float:
        """Configured refresh timeout, or the paced pull time plus one request timeout."""
        if self.refresh_timeout_seconds is not None:
            return self.refresh_timeout_seconds
        return self.paced_pull_seconds + self.request_timeout_seconds

    @property
    def listen_host_port(self) -> Tuple[str, int]:
        host, _, port = self.listen_address.rpartition(':')
        return host.strip("[]"), int(port)

    @property
    def page_interval_seconds(self) -> float:
        """Minimum spacing between upstream page requests."""
        if not self.requests_per_minute:
            return 0.0
        return 60.0 / self.requests_per_minute


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
