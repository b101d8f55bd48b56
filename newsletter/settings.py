import os
from dataclasses import replace
from datetime import timedelta

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from newsletter.middleware.rate_limit import RateLimitRule, RateLimitRules
from newsletter.services.client import default_client_retry_config
from newsletter.services.rate_limiter import RateLimiterConfig
from newsletter.services.retry import RetryConfig

load_dotenv()


class Settings(BaseModel):
    # Application
    app_name: str = Field(default="newsletter-backend", alias="APP_NAME")
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=5000, alias="PORT")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: str | None = Field(default=None, alias="LOG_DIR")

    # Cache Configuration
    cache_default_ttl_seconds: int = Field(default=300, alias="CACHE_DEFAULT_TTL")
    cache_sweep_interval_seconds: int = Field(
        default=60, alias="CACHE_SWEEP_INTERVAL"
    )
    cache_single_flight: bool = Field(default=False, alias="CACHE_SINGLE_FLIGHT")

    # Mailchimp Configuration
    mailchimp_api_key: str = Field(default="", alias="MAILCHIMP_API_KEY")
    mailchimp_server_prefix: str | None = Field(
        default=None, alias="MAILCHIMP_SERVER_PREFIX"
    )
    mailchimp_max_requests: int = Field(default=10, alias="MAILCHIMP_MAX_REQUESTS")
    mailchimp_interval_ms: int = Field(default=1000, alias="MAILCHIMP_INTERVAL_MS")
    mailchimp_concurrency: int = Field(default=3, alias="MAILCHIMP_CONCURRENCY")

    # API Rate Limiting
    api_rate_limit_max: int = Field(default=100, alias="API_RATE_LIMIT_MAX")
    api_rate_limit_window_seconds: int = Field(
        default=900, alias="API_RATE_LIMIT_WINDOW"
    )
    api_rate_limit_enabled: bool = Field(default=True, alias="API_RATE_LIMIT_ENABLED")

    # Retry Configuration
    retry_max_attempts: int = Field(default=3, alias="RETRY_MAX_ATTEMPTS")
    retry_delay_ms: int = Field(default=1000, alias="RETRY_DELAY_MS")
    retry_backoff_factor: float = Field(default=2.0, alias="RETRY_BACKOFF_FACTOR")
    request_timeout_seconds: float = Field(default=30.0, alias="REQUEST_TIMEOUT")

    model_config = {"populate_by_name": True}

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (after .env loading)."""
        return cls.model_validate(dict(os.environ))

    @property
    def cache_default_ttl(self) -> timedelta:
        return timedelta(seconds=self.cache_default_ttl_seconds)

    @property
    def cache_sweep_interval(self) -> timedelta:
        return timedelta(seconds=self.cache_sweep_interval_seconds)

    @property
    def mailchimp_rate_limit(self) -> RateLimiterConfig:
        return RateLimiterConfig(
            max_requests=self.mailchimp_max_requests,
            interval=timedelta(milliseconds=self.mailchimp_interval_ms),
            concurrency=self.mailchimp_concurrency,
        )

    @property
    def api_rate_limit(self) -> RateLimitRule:
        return replace(
            RateLimitRules.api,
            max_requests=self.api_rate_limit_max,
            window=timedelta(seconds=self.api_rate_limit_window_seconds),
        )

    @property
    def retry_config(self) -> RetryConfig:
        defaults = default_client_retry_config()
        return RetryConfig(
            max_attempts=self.retry_max_attempts,
            delay=timedelta(milliseconds=self.retry_delay_ms),
            backoff_factor=self.retry_backoff_factor,
            retry_on=defaults.retry_on,
        )


global_settings = Settings.from_env()
