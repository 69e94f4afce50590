"""Proxy pool manager with round-robin selection, health tracking and quarantine.

Proxies are loaded from a list of URL strings (e.g. ["http://proxy1:8080",
"socks5://proxy2:1080"]). Selection uses round-robin rotation over every proxy
that is not quarantined. Health is driven only by attempt outcomes reported
through ``report_outcome``:

- a failure increments the consecutive-failure counter and marks the proxy
  degraded; reaching the quarantine threshold quarantines it for a cool-down
- any success resets the counter and restores healthy
- once the cool-down elapses, a quarantined proxy is handed out exactly once
  as a probe; the probe's outcome decides between healthy and a fresh
  quarantine

When every proxy is quarantined (or probing), ``acquire`` returns None and the
dispatcher treats it as a temporary capacity shortage.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Callable
from pathlib import Path
from urllib.parse import urlparse

from scrape_engine.proxy.types import ProxyEndpoint, ProxyHealth

logger = logging.getLogger(__name__)


def load_proxy_file(path: str) -> list[str]:
    """Read proxy URLs from a file, one per line. Blank lines and # comments are skipped."""
    lines = Path(path).read_text(encoding="utf-8").splitlines()
    return [line.strip() for line in lines if line.strip() and not line.strip().startswith("#")]


class ProxyPoolManager:
    """Manages a pool of proxy endpoints with round-robin rotation and quarantine.

    Args:
        quarantine_threshold: Consecutive failures that quarantine a proxy.
        degraded_threshold: Consecutive failures that mark a proxy degraded.
        cooldown_seconds: Quarantine duration before a probe is allowed.
    """

    def __init__(
        self,
        quarantine_threshold: int = 3,
        degraded_threshold: int = 1,
        cooldown_seconds: float = 60.0,
    ) -> None:
        self._proxies: list[ProxyEndpoint] = []
        self._by_id: dict[str, ProxyEndpoint] = {}
        self._index: int = 0
        self._quarantine_threshold = quarantine_threshold
        self._degraded_threshold = degraded_threshold
        self._cooldown_seconds = cooldown_seconds

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def initialize(self, endpoints: list[str]) -> None:
        """Parse proxy URL strings and create fresh ProxyEndpoint objects.

        Each URL's scheme is used as the protocol (http, https, socks5).
        Duplicate URLs are ignored.
        """
        self._proxies = []
        self._by_id = {}
        self._index = 0

        for raw_url in endpoints:
            if raw_url in self._by_id:
                continue
            proxy = self._parse(raw_url)
            self._proxies.append(proxy)
            self._by_id[proxy.id] = proxy

        logger.info("Proxy pool initialized with %d endpoints", len(self._proxies))

    def refresh(self, endpoints: list[str]) -> None:
        """Replace the inventory, keeping health state for proxies still listed.

        Proxies dropped from the inventory while an attempt is running through
        them are simply forgotten; their late outcome reports are ignored.
        """
        refreshed: list[ProxyEndpoint] = []
        by_id: dict[str, ProxyEndpoint] = {}

        for raw_url in endpoints:
            if raw_url in by_id:
                continue
            proxy = self._by_id.get(raw_url) or self._parse(raw_url)
            refreshed.append(proxy)
            by_id[proxy.id] = proxy

        added = len(set(by_id) - set(self._by_id))
        removed = len(set(self._by_id) - set(by_id))
        self._proxies = refreshed
        self._by_id = by_id
        if self._proxies:
            self._index %= len(self._proxies)
        else:
            self._index = 0

        if added or removed:
            logger.info(
                "Proxy inventory refreshed: %d total (%d added, %d removed)",
                len(self._proxies),
                added,
                removed,
            )

    @staticmethod
    def _parse(raw_url: str) -> ProxyEndpoint:
        parsed = urlparse(raw_url)
        protocol = parsed.scheme.lower() if parsed.scheme else "http"
        return ProxyEndpoint(url=raw_url, protocol=protocol)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def acquire(self) -> ProxyEndpoint | None:
        """Select the next usable proxy in round-robin order.

        Quarantined proxies are skipped unless their cool-down has elapsed and
        no probe is outstanding, in which case they are handed out as a probe.
        Returns None if no proxy is usable after a full rotation.
        """
        if not self._proxies:
            return None

        pool_size = len(self._proxies)
        now = time.monotonic()

        for _ in range(pool_size):
            proxy = self._proxies[self._index % pool_size]
            self._index = (self._index + 1) % pool_size

            if not self._is_usable(proxy, now):
                continue
            if proxy.health == ProxyHealth.QUARANTINED:
                proxy.probing = True
                logger.info("Proxy cool-down elapsed, probing: %s", proxy.url)

            proxy.last_used = now
            proxy.in_flight += 1
            return proxy

        return None

    @staticmethod
    def _is_usable(proxy: ProxyEndpoint, now: float) -> bool:
        """Not quarantined, or quarantined with the cool-down over and no probe out."""
        if proxy.health != ProxyHealth.QUARANTINED:
            return True
        if proxy.probing:
            return False
        return proxy.quarantined_until is None or now >= proxy.quarantined_until

    # ------------------------------------------------------------------
    # Health tracking
    # ------------------------------------------------------------------

    def report_outcome(self, proxy_id: str, success: bool | None) -> None:
        """Release a proxy after an attempt and record its health verdict.

        ``success=None`` releases the proxy without judging it (e.g. the
        request never left the process). Called exactly once per acquire.
        """
        proxy = self._by_id.get(proxy_id)
        if proxy is None:
            logger.debug("Outcome reported for unknown proxy: %s", proxy_id)
            return

        proxy.in_flight = max(0, proxy.in_flight - 1)

        if success is None:
            # A probe without a verdict returns the proxy to its waiting state
            proxy.probing = False
            return

        if success:
            self._record_success(proxy)
        else:
            self._record_failure(proxy)

    def _record_success(self, proxy: ProxyEndpoint) -> None:
        previous = proxy.health
        proxy.success_count += 1
        proxy.consecutive_failures = 0
        proxy.health = ProxyHealth.HEALTHY
        proxy.quarantined_until = None
        proxy.probing = False
        if previous != ProxyHealth.HEALTHY:
            logger.info("Proxy restored to healthy: %s (was %s)", proxy.url, previous.value)

    def _record_failure(self, proxy: ProxyEndpoint) -> None:
        now = time.monotonic()
        proxy.failure_count += 1
        proxy.consecutive_failures += 1
        proxy.last_failure = now

        if proxy.probing or proxy.consecutive_failures >= self._quarantine_threshold:
            proxy.health = ProxyHealth.QUARANTINED
            proxy.quarantined_until = now + self._cooldown_seconds
            proxy.probing = False
            logger.warning(
                "Proxy quarantined: %s (consecutive failures: %d, cool-down %.0fs)",
                proxy.url,
                proxy.consecutive_failures,
                self._cooldown_seconds,
            )
        elif proxy.consecutive_failures >= self._degraded_threshold:
            proxy.health = ProxyHealth.DEGRADED
            logger.warning(
                "Proxy degraded: %s (consecutive failures: %d)",
                proxy.url,
                proxy.consecutive_failures,
            )

    # ------------------------------------------------------------------
    # Inventory refresh
    # ------------------------------------------------------------------

    async def refresh_loop(
        self, source: Callable[[], list[str]], interval_seconds: float
    ) -> None:
        """Periodically re-read the proxy inventory from *source*."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.refresh(source())
            except Exception:  # noqa: BLE001
                logger.exception("Proxy inventory refresh failed — keeping current pool")

    # ------------------------------------------------------------------
    # Stats / metrics
    # ------------------------------------------------------------------

    def health_distribution(self) -> dict[str, int]:
        """Count proxies per health state (every state always present)."""
        counts = Counter(p.health.value for p in self._proxies)
        return {health.value: counts.get(health.value, 0) for health in ProxyHealth}

    def get_stats(self) -> dict:
        """Return proxy pool statistics for the health endpoint."""
        distribution = self.health_distribution()
        now = time.monotonic()

        per_proxy = [
            {
                "url": p.url,
                "protocol": p.protocol,
                "health": p.health.value,
                "consecutive_failures": p.consecutive_failures,
                "in_flight": p.in_flight,
                "success_count": p.success_count,
                "failure_count": p.failure_count,
            }
            for p in self._proxies
        ]

        return {
            "total": len(self._proxies),
            "usable": sum(1 for p in self._proxies if self._is_usable(p, now)),
            **distribution,
            "proxies": per_proxy,
        }
