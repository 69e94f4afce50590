"""Pydantic Settings for the orchestration engine.

All environment variables use the ORCHESTRATOR_ prefix.
Example: ORCHESTRATOR_MAX_WORKERS=10, ORCHESTRATOR_DATABASE_URL=sqlite:///jobs.db
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

_DEFAULT_POLICIES_PATH = str(Path(__file__).with_name("domain_policies.yaml"))

_DEFAULT_CAPTCHA_MARKERS = [
    "g-recaptcha",
    "h-captcha",
    "cf-turnstile",
    "captcha-delivery.com",
    "/cdn-cgi/challenge-platform",
    "verify you are human",
]


class OrchestratorSettings(BaseSettings):
    """Engine configuration validated from environment variables."""

    # Service
    port: int = 8001
    log_level: str = "INFO"

    # Persistence (None = in-memory store)
    database_url: str | None = None
    persistence_retry_seconds: float = Field(default=1.0, gt=0)

    # Submission
    max_batch_size: int = Field(default=100, ge=1, le=1000)
    default_priority: int = Field(default=3, ge=1, le=5)
    max_queue_depth: int = Field(default=10000, ge=1)

    # Workers
    max_workers: int = Field(default=5, ge=1, le=100)
    idle_poll_min_seconds: float = Field(default=0.05, gt=0)
    idle_poll_max_seconds: float = Field(default=2.0, gt=0)
    graceful_shutdown_seconds: int = Field(default=30, ge=0)

    # Fetch executor
    attempt_timeout_seconds: float = Field(default=10.0, ge=1, le=60)
    max_body_bytes: int = Field(default=5_000_000, ge=1024)
    user_agent: str = "Mozilla/5.0 (compatible; scrape-engine/1.0)"

    # Retry / backoff
    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_base_seconds: float = Field(default=1.0, ge=0.1, le=10)
    backoff_max_seconds: float = Field(default=60.0, ge=0.1)
    backoff_jitter: float = Field(default=0.2, ge=0, lt=1)
    retryable_status_codes: list[int] = [408, 429]
    capacity_retry_base_seconds: float = Field(default=1.0, gt=0)

    # CAPTCHA
    captcha_max_attempts: int = Field(default=2, ge=1, le=10)
    captcha_timeout_seconds: float = Field(default=120.0, ge=1)
    captcha_status_codes: list[int] = []
    captcha_markers: list[str] = _DEFAULT_CAPTCHA_MARKERS
    captcha_token_header: str = "X-Captcha-Token"

    # Domain rate limiting defaults
    domain_max_concurrency: int = Field(default=2, ge=1)
    domain_min_spacing_ms: int = Field(default=1000, ge=0)
    domain_requeue_delay_ms: int = Field(default=250, ge=1)
    max_tracked_domains: int = Field(default=10000, ge=1)
    domain_policies_path: str = _DEFAULT_POLICIES_PATH

    # Proxy pool
    proxy_endpoints: list[str] = []
    proxy_file: str | None = None
    proxy_refresh_interval_seconds: int = Field(default=300, ge=0)  # 0 disables
    proxy_degraded_threshold: int = Field(default=1, ge=1)
    proxy_quarantine_threshold: int = Field(default=3, ge=1)
    proxy_cooldown_seconds: float = Field(default=60.0, ge=0)

    # Crash recovery
    stale_after_seconds: float = Field(default=300.0, gt=0)
    recovery_sweep_interval_seconds: float = Field(default=60.0, gt=0)

    # Completion webhooks
    webhook_secret: str | None = None  # HMAC-SHA256 signing key; unsigned when unset
    default_webhook_url: str | None = None  # Used for jobs submitted without a callback_url
    webhook_timeout_seconds: float = Field(default=10.0, gt=0)
    webhook_max_retries: int = Field(default=3, ge=1, le=10)
    webhook_backoff_base_seconds: float = Field(default=2.0, ge=0)

    model_config = {"env_prefix": "ORCHESTRATOR_"}

    @model_validator(mode="after")
    def _check_consistency(self) -> OrchestratorSettings:
        if self.idle_poll_min_seconds > self.idle_poll_max_seconds:
            raise ValueError("idle_poll_min_seconds must not exceed idle_poll_max_seconds")
        if self.backoff_base_seconds > self.backoff_max_seconds:
            raise ValueError("backoff_base_seconds must not exceed backoff_max_seconds")
        if self.proxy_degraded_threshold > self.proxy_quarantine_threshold:
            raise ValueError(
                "proxy_degraded_threshold must not exceed proxy_quarantine_threshold"
            )
        # A live attempt must never look stale to the recovery sweep
        busy_ceiling = self.attempt_timeout_seconds + self.captcha_timeout_seconds
        if self.stale_after_seconds <= busy_ceiling:
            raise ValueError(
                f"stale_after_seconds must exceed {busy_ceiling:.0f}s "
                "(attempt timeout + captcha timeout)"
            )
        return self
