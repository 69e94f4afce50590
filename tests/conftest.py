"""Shared test fixtures and hypothesis strategies for the engine test suite."""

from __future__ import annotations

import asyncio
import dataclasses
import random
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass

import pytest
from hypothesis import strategies as st

from scrape_engine.captcha.gate import CaptchaGate
from scrape_engine.captcha.solver import ChallengeDescriptor
from scrape_engine.config.settings import OrchestratorSettings
from scrape_engine.models.jobs import AttemptOutcome, JobState, TransportError
from scrape_engine.proxy.manager import ProxyPoolManager
from scrape_engine.proxy.types import ProxyEndpoint
from scrape_engine.resilience.rate_limiter import DomainRateLimiter
from scrape_engine.resilience.retry import RetryController
from scrape_engine.services.dispatcher import Dispatcher
from scrape_engine.services.job_queue import JobQueue
from scrape_engine.services.job_store import InMemoryJobStore, JobStore
from scrape_engine.validators.url_validator import extract_domain

CAPTCHA_PAGE = '<html><div class="g-recaptcha" data-sitekey="site-key-123"></div></html>'


# ---------------------------------------------------------------------------
# Outcome builders
# ---------------------------------------------------------------------------


def response(status: int = 200, body: str | None = "<html>ok</html>") -> AttemptOutcome:
    return AttemptOutcome(
        status_code=status,
        body=body,
        headers={"content-type": "text/html"},
        final_url="https://example.com/",
    )


def transport_failure(kind: TransportError = TransportError.CONNECTION) -> AttemptOutcome:
    return AttemptOutcome(transport_error=kind, error_message=f"simulated {kind.value}")


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class ScriptedExecutor:
    """Fetch executor replaying scripted outcomes.

    Outcomes are consumed in order; once the script runs out, ``default`` is
    returned forever. A ``responder`` callable, when given, decides instead.
    Tracks peak concurrency overall and per domain.
    """

    def __init__(
        self,
        outcomes: list[AttemptOutcome] | None = None,
        *,
        default: AttemptOutcome | None = None,
        responder: Callable[[str, str | None], AttemptOutcome] | None = None,
        delay: float = 0.0,
    ) -> None:
        self._outcomes = list(outcomes or [])
        self._default = default or response()
        self._responder = responder
        self._delay = delay
        self.calls: list[tuple[str, str, str | None]] = []
        self._in_flight: Counter[str] = Counter()
        self.peak_by_domain: Counter[str] = Counter()
        self._total = 0
        self.peak_total = 0

    async def execute(
        self, url: str, proxy: ProxyEndpoint, token: str | None = None
    ) -> AttemptOutcome:
        domain = extract_domain(url)
        self.calls.append((url, proxy.id, token))
        self._in_flight[domain] += 1
        self._total += 1
        self.peak_by_domain[domain] = max(self.peak_by_domain[domain], self._in_flight[domain])
        self.peak_total = max(self.peak_total, self._total)
        try:
            if self._delay:
                await asyncio.sleep(self._delay)
            if self._responder is not None:
                return self._responder(url, token)
            if self._outcomes:
                return self._outcomes.pop(0)
            return dataclasses.replace(self._default)
        finally:
            self._in_flight[domain] -= 1
            self._total -= 1


class FakeSolver:
    """CAPTCHA solver returning a fixed token (None = cannot solve)."""

    def __init__(
        self,
        token: str | None = "solved-token",
        *,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self._token = token
        self._delay = delay
        self._error = error
        self.challenges: list[ChallengeDescriptor] = []

    async def solve(self, challenge: ChallengeDescriptor) -> str | None:
        self.challenges.append(challenge)
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return self._token


# ---------------------------------------------------------------------------
# Engine assembly
# ---------------------------------------------------------------------------


@dataclass
class Engine:
    store: JobStore
    queue: JobQueue
    limiter: DomainRateLimiter
    proxy_pool: ProxyPoolManager
    retry: RetryController
    gate: CaptchaGate
    executor: ScriptedExecutor
    dispatcher: Dispatcher

    async def run_until_settled(self, job_ids: list[str], max_steps: int = 500) -> None:
        """Drive single-worker steps until every job is terminal."""
        for _ in range(max_steps):
            states = [(await self.queue.get_status(j)).state for j in job_ids]
            if all(state.is_terminal for state in states):
                return
            step = await self.dispatcher.run_once()
            if step is None:
                await asyncio.sleep(0.002)
        raise AssertionError(f"Jobs did not settle within {max_steps} steps")


def build_engine(
    executor: ScriptedExecutor | None = None,
    *,
    solver: FakeSolver | None = None,
    store: JobStore | None = None,
    proxies: tuple[str, ...] = ("http://proxy1:8080", "http://proxy2:8080"),
    max_attempts: int = 3,
    captcha_max_attempts: int = 2,
    domain_max_concurrency: int = 2,
    domain_min_spacing_ms: int = 0,
    max_workers: int = 2,
    quarantine_threshold: int = 3,
    cooldown_seconds: float = 60.0,
    stale_after_seconds: float = 300.0,
    attempt_timeout_seconds: float = 10.0,
    max_queue_depth: int = 10000,
) -> Engine:
    """Wire a full engine with near-zero delays for fast tests."""
    store = store or InMemoryJobStore()
    executor = executor or ScriptedExecutor()
    queue = JobQueue(
        store=store,
        max_queue_depth=max_queue_depth,
        stale_after_seconds=stale_after_seconds,
    )
    limiter = DomainRateLimiter(
        default_max_concurrency=domain_max_concurrency,
        default_min_spacing_ms=domain_min_spacing_ms,
    )
    proxy_pool = ProxyPoolManager(
        quarantine_threshold=quarantine_threshold,
        cooldown_seconds=cooldown_seconds,
    )
    proxy_pool.initialize(list(proxies))
    retry = RetryController(
        max_attempts=max_attempts,
        base_delay_seconds=0.001,
        max_delay_seconds=0.01,
        jitter=0.0,
        captcha_max_attempts=captcha_max_attempts,
        captcha_markers=["g-recaptcha", "h-captcha", "cf-turnstile"],
        rng=random.Random(0),
    )
    gate = CaptchaGate(solver=solver, retry_controller=retry, timeout_seconds=1.0)
    dispatcher = Dispatcher(
        queue=queue,
        rate_limiter=limiter,
        proxy_pool=proxy_pool,
        retry_controller=retry,
        captcha_gate=gate,
        executor=executor,
        max_workers=max_workers,
        attempt_timeout_seconds=attempt_timeout_seconds,
        domain_requeue_delay_ms=1,
        capacity_retry_base_seconds=0.001,
        idle_poll_min_seconds=0.001,
        idle_poll_max_seconds=0.01,
        persistence_retry_seconds=0.01,
        recovery_sweep_interval_seconds=0.05,
    )
    return Engine(store, queue, limiter, proxy_pool, retry, gate, executor, dispatcher)


@pytest.fixture
def engine_factory() -> Callable[..., Engine]:
    return build_engine


# ---------------------------------------------------------------------------
# Settings fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> OrchestratorSettings:
    """Test settings with no waiting between dispatches."""
    return OrchestratorSettings(
        max_workers=2,
        domain_min_spacing_ms=0,
        domain_requeue_delay_ms=1,
        backoff_base_seconds=0.1,
        backoff_max_seconds=0.2,
        backoff_jitter=0.0,
        idle_poll_min_seconds=0.01,
        idle_poll_max_seconds=0.05,
        proxy_endpoints=["http://proxy1:8080", "http://proxy2:8080"],
        max_queue_depth=50,
        graceful_shutdown_seconds=2,
    )


TERMINAL_STATES = (JobState.SUCCEEDED, JobState.FAILED)


# ---------------------------------------------------------------------------
# Hypothesis strategies
# ---------------------------------------------------------------------------

priorities = st.integers(min_value=1, max_value=5)

domains = st.sampled_from(["example.com", "shop.test", "news.example.org", "api.sample.net"])

well_formed_urls = st.builds(
    lambda scheme, domain, path: f"{scheme}://{domain}/{path}",
    st.sampled_from(["http", "https"]),
    domains,
    st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789-", min_size=0, max_size=12),
)

status_codes = st.integers(min_value=100, max_value=599)
