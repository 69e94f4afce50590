"""Resilience components: per-domain dispatch limits and retry policy."""

from scrape_engine.resilience.rate_limiter import DomainRateLimiter, DomainWindow
from scrape_engine.resilience.retry import RetryController, RetryDecision

__all__ = [
    "DomainRateLimiter",
    "DomainWindow",
    "RetryController",
    "RetryDecision",
]
