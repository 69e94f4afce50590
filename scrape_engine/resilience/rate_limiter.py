"""Per-domain concurrency and spacing limiter.

Enforces, for every target domain, a maximum number of attempts in flight and
a minimum spacing between two dispatches. Each domain gets its own window,
created lazily on first sight and configured from per-domain policy overrides
loaded from YAML (falling back to the engine defaults).

Key behaviors:
- try_acquire() never blocks: it grants a slot or answers False
- a granted slot increments in-flight and stamps the dispatch time
- release() decrements in-flight once per finished attempt
- windows are held in an LRU capped at ``max_domains``; a window is only
  evicted once it is idle and its spacing has elapsed, so eviction never
  lets a dispatch through early
- limiting one domain does not affect other domains
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass

from scrape_engine.config.domain_policies import DomainPolicy, load_domain_policies

logger = logging.getLogger(__name__)


@dataclass
class DomainWindow:
    """Dispatch window state for a single domain."""

    domain: str
    max_concurrency: int
    min_spacing_ms: int
    in_flight: int = 0
    last_dispatch: float | None = None  # time.monotonic()


class DomainRateLimiter:
    """Per-domain concurrency cap plus minimum inter-dispatch spacing.

    Args:
        default_max_concurrency: Attempts allowed in flight per domain.
        default_min_spacing_ms: Minimum milliseconds between dispatches per domain.
        max_domains: LRU cap on tracked domain windows.
    """

    def __init__(
        self,
        default_max_concurrency: int = 2,
        default_min_spacing_ms: int = 1000,
        max_domains: int = 10000,
    ) -> None:
        self._default_max_concurrency = default_max_concurrency
        self._default_min_spacing_ms = default_min_spacing_ms
        self._max_domains = max_domains
        self._windows: OrderedDict[str, DomainWindow] = OrderedDict()
        self._policies: dict[str, DomainPolicy] = {}

    def _get_or_create_window(self, domain: str) -> DomainWindow:
        """Get the window for a domain, creating it from policy/defaults if needed."""
        window = self._windows.get(domain)
        if window is not None:
            self._windows.move_to_end(domain)
            return window

        max_concurrency, min_spacing_ms = self._effective_limits(domain)
        window = DomainWindow(
            domain=domain,
            max_concurrency=max_concurrency,
            min_spacing_ms=min_spacing_ms,
        )
        self._windows[domain] = window
        self._evict_idle()
        return window

    def _effective_limits(self, domain: str) -> tuple[int, int]:
        """Resolve (max_concurrency, min_spacing_ms) from policy or defaults."""
        max_concurrency = self._default_max_concurrency
        min_spacing_ms = self._default_min_spacing_ms

        policy = self._policies.get(domain)
        if policy is not None:
            if policy.max_concurrency is not None:
                max_concurrency = policy.max_concurrency
            if policy.min_spacing_ms is not None:
                min_spacing_ms = policy.min_spacing_ms

        return max_concurrency, min_spacing_ms

    @staticmethod
    def _is_spent(window: DomainWindow, now: float) -> bool:
        """True when dropping the window cannot loosen the limits."""
        if window.in_flight:
            return False
        if window.last_dispatch is None:
            return True
        return (now - window.last_dispatch) * 1000 >= window.min_spacing_ms

    def _evict_idle(self) -> None:
        """Drop least-recently-used spent windows beyond the cap."""
        if len(self._windows) <= self._max_domains:
            return
        now = time.monotonic()
        # The newest entry is the window being handed out
        for domain in list(self._windows.keys())[:-1]:
            if len(self._windows) <= self._max_domains:
                break
            if self._is_spent(self._windows[domain], now):
                del self._windows[domain]

    def try_acquire(self, domain: str) -> bool:
        """Try to take a dispatch slot for *domain* without blocking.

        Succeeds only if the domain is below its concurrency cap AND at least
        ``min_spacing_ms`` elapsed since its last successful acquire.
        """
        window = self._get_or_create_window(domain)
        now = time.monotonic()

        if window.in_flight >= window.max_concurrency:
            return False

        if window.last_dispatch is not None:
            elapsed_ms = (now - window.last_dispatch) * 1000
            if elapsed_ms < window.min_spacing_ms:
                return False

        window.in_flight += 1
        window.last_dispatch = now
        return True

    def release(self, domain: str) -> None:
        """Return a slot taken by ``try_acquire`` once the attempt finished."""
        window = self._windows.get(domain)
        if window is None or window.in_flight == 0:
            logger.warning("Release without matching acquire for domain %s", domain)
            return
        window.in_flight -= 1

    def get_stats(self, domain: str) -> dict:
        """Get current limiter stats for a domain.

        Returns:
            Dict with in_flight, max_concurrency, min_spacing_ms.
            Returns default stats for unknown domains.
        """
        window = self._windows.get(domain)
        if window is None:
            max_concurrency, min_spacing_ms = self._effective_limits(domain)
            return {
                "in_flight": 0,
                "max_concurrency": max_concurrency,
                "min_spacing_ms": min_spacing_ms,
            }

        return {
            "in_flight": window.in_flight,
            "max_concurrency": window.max_concurrency,
            "min_spacing_ms": window.min_spacing_ms,
        }

    @property
    def tracked_domains(self) -> int:
        return len(self._windows)

    def load_policies(self, yaml_path: str) -> None:
        """Load per-domain overrides from a YAML file.

        The ``default`` entry, when it sets fields, replaces the constructor
        defaults. Existing windows take the new limits in place and keep
        their in-flight count and last dispatch time.

        Args:
            yaml_path: Path to the domain_policies.yaml file.
        """
        policies = load_domain_policies(yaml_path)

        default = policies.pop("default", None)
        if default is not None:
            if default.max_concurrency is not None:
                self._default_max_concurrency = default.max_concurrency
            if default.min_spacing_ms is not None:
                self._default_min_spacing_ms = default.min_spacing_ms

        self._policies = policies

        for domain, window in self._windows.items():
            window.max_concurrency, window.min_spacing_ms = self._effective_limits(domain)

        logger.info(
            "Loaded dispatch policies for %d domains from %s",
            len(self._policies),
            yaml_path,
        )
