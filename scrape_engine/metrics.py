"""Prometheus metrics for the orchestration engine.

All metrics are module-level singletons registered on the default
``REGISTRY``. They are exposed in text format by the ``/metrics`` endpoint of
the API adapter; the engine itself only increments and sets them.

Metrics defined here:

  scrape_attempts_total{outcome}
      Counter — executed attempts by classified outcome
      (success, retryable, captcha, fatal).

  scrape_jobs_finished_total{state}
      Counter — jobs reaching a terminal state (succeeded, failed).

  scrape_failures_total{kind}
      Counter — failed jobs by last error kind.

  scrape_deferrals_total{reason}
      Counter — capacity requeues (domain, proxy); not attempts.

  captcha_solves_total{result}
      Counter — CAPTCHA solve calls by result (resolved, unresolved).

  scrape_queue_depth{state}
      Gauge — non-terminal jobs per state.

  proxy_pool_proxies{health}
      Gauge — proxies per health state (healthy, degraded, quarantined).
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

scrape_attempts_total: Counter = Counter(
    "scrape_attempts_total",
    "Executed fetch attempts by classified outcome.",
    labelnames=["outcome"],
)

scrape_jobs_finished_total: Counter = Counter(
    "scrape_jobs_finished_total",
    "Jobs reaching a terminal state.",
    labelnames=["state"],
)

scrape_failures_total: Counter = Counter(
    "scrape_failures_total",
    "Failed jobs by last error kind.",
    labelnames=["kind"],
)

scrape_deferrals_total: Counter = Counter(
    "scrape_deferrals_total",
    "Jobs requeued for lack of a domain slot or proxy.",
    labelnames=["reason"],
)

captcha_solves_total: Counter = Counter(
    "captcha_solves_total",
    "CAPTCHA solve calls by result.",
    labelnames=["result"],
)

scrape_queue_depth: Gauge = Gauge(
    "scrape_queue_depth",
    "Non-terminal jobs per state.",
    labelnames=["state"],
)

proxy_pool_proxies: Gauge = Gauge(
    "proxy_pool_proxies",
    "Proxies per health state.",
    labelnames=["health"],
)


def observe_queue(depth_by_state: dict[str, int]) -> None:
    for state, count in depth_by_state.items():
        scrape_queue_depth.labels(state=state).set(count)


def observe_proxy_pool(distribution: dict[str, int]) -> None:
    for health, count in distribution.items():
        proxy_pool_proxies.labels(health=health).set(count)
