"""Proxy data models for the proxy pool manager."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ProxyHealth(str, Enum):
    """Health state of a proxy endpoint."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    QUARANTINED = "quarantined"


@dataclass
class ProxyEndpoint:
    """A single egress proxy with health and usage tracking.

    The URL doubles as the proxy identifier. Monotonic timestamps
    (``time.monotonic()``) are used for all timing fields.
    """

    url: str
    protocol: str  # http, https, socks5
    health: ProxyHealth = ProxyHealth.HEALTHY
    consecutive_failures: int = 0
    last_used: float | None = None
    last_failure: float | None = None
    quarantined_until: float | None = None
    probing: bool = False  # Handed out as post-quarantine probe, outcome pending
    in_flight: int = 0
    success_count: int = 0
    failure_count: int = 0

    @property
    def id(self) -> str:
        return self.url
