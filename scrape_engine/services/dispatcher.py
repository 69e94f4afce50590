"""Dispatcher — the worker pool driving jobs from the queue to an outcome.

Each worker repeats one step:

1. claim the next admissible job from the queue
2. take a dispatch slot for the job's domain, else requeue it shortly
3. take a proxy, else release the slot and requeue with capacity backoff
4. run one attempt through the fetch executor under a hard timeout
5. release the domain slot and report the proxy verdict (always, even when
   the attempt blew up or the worker is being cancelled)
6. classify the outcome; on a CAPTCHA challenge consult the gate
7. apply the retry decision: succeeded, failed, or retry-scheduled

Capacity requeues are deferrals, not attempts, and never consume the retry
budget. A background sweep returns in-flight jobs whose worker died to the
queue.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from scrape_engine import metrics
from scrape_engine.captcha.gate import CaptchaGate, ResolvedToken
from scrape_engine.errors import ErrorKind, PersistenceFailure
from scrape_engine.models.jobs import (
    Attempt,
    AttemptOutcome,
    Job,
    JobError,
    OutcomeKind,
    TransportError,
    utcnow,
)
from scrape_engine.proxy.manager import ProxyPoolManager
from scrape_engine.proxy.types import ProxyEndpoint
from scrape_engine.resilience.rate_limiter import DomainRateLimiter
from scrape_engine.resilience.retry import RetryController
from scrape_engine.services.fetch_executor import FetchExecutor
from scrape_engine.services.job_queue import JobQueue

if TYPE_CHECKING:
    from scrape_engine.config.settings import OrchestratorSettings

logger = logging.getLogger(__name__)

# Extra time the outer guard gives an executor before abandoning the attempt
_GUARD_GRACE_SECONDS = 1.0

# Deferral backoff stops growing after this many doublings
_MAX_DEFERRAL_EXPONENT = 6


@dataclass
class StepResult:
    """What one dispatcher step did to one job."""

    job: Job  # Snapshot after the transition
    outcome: OutcomeKind | None = None  # None when the job was deferred
    deferred: str | None = None  # "domain" or "proxy"


class Dispatcher:
    """Runs a fixed pool of asyncio workers over a ``JobQueue``.

    Parameters
    ----------
    queue:
        Source of jobs and owner of all job state transitions.
    rate_limiter:
        Per-domain dispatch windows.
    proxy_pool:
        Proxy selection and health tracking.
    retry_controller:
        Outcome classification and retry decisions.
    captcha_gate:
        Challenge solving.
    executor:
        Performs one network attempt.
    max_workers:
        Number of concurrent workers.
    attempt_timeout_seconds:
        Hard wall-clock limit per attempt; the outer guard adds a small grace.
    """

    def __init__(
        self,
        *,
        queue: JobQueue,
        rate_limiter: DomainRateLimiter,
        proxy_pool: ProxyPoolManager,
        retry_controller: RetryController,
        captcha_gate: CaptchaGate,
        executor: FetchExecutor,
        max_workers: int = 5,
        attempt_timeout_seconds: float = 10.0,
        domain_requeue_delay_ms: int = 250,
        capacity_retry_base_seconds: float = 1.0,
        idle_poll_min_seconds: float = 0.05,
        idle_poll_max_seconds: float = 2.0,
        persistence_retry_seconds: float = 1.0,
        recovery_sweep_interval_seconds: float = 60.0,
    ) -> None:
        self._queue = queue
        self._limiter = rate_limiter
        self._proxies = proxy_pool
        self._retry = retry_controller
        self._gate = captcha_gate
        self._executor = executor

        self._max_workers = max_workers
        self._attempt_timeout = attempt_timeout_seconds
        self._domain_requeue_delay = domain_requeue_delay_ms / 1000
        self._capacity_base = capacity_retry_base_seconds
        self._idle_min = idle_poll_min_seconds
        self._idle_max = idle_poll_max_seconds
        self._persistence_retry = persistence_retry_seconds
        self._sweep_interval = recovery_sweep_interval_seconds

        self._workers: list[asyncio.Task[None]] = []
        self._sweeper: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._active_workers = 0
        self._attempts_run = 0

    @classmethod
    def from_settings(
        cls,
        settings: OrchestratorSettings,
        *,
        queue: JobQueue,
        rate_limiter: DomainRateLimiter,
        proxy_pool: ProxyPoolManager,
        retry_controller: RetryController,
        captcha_gate: CaptchaGate,
        executor: FetchExecutor,
    ) -> Dispatcher:
        return cls(
            queue=queue,
            rate_limiter=rate_limiter,
            proxy_pool=proxy_pool,
            retry_controller=retry_controller,
            captcha_gate=captcha_gate,
            executor=executor,
            max_workers=settings.max_workers,
            attempt_timeout_seconds=settings.attempt_timeout_seconds,
            domain_requeue_delay_ms=settings.domain_requeue_delay_ms,
            capacity_retry_base_seconds=settings.capacity_retry_base_seconds,
            idle_poll_min_seconds=settings.idle_poll_min_seconds,
            idle_poll_max_seconds=settings.idle_poll_max_seconds,
            persistence_retry_seconds=settings.persistence_retry_seconds,
            recovery_sweep_interval_seconds=settings.recovery_sweep_interval_seconds,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, stop_event: asyncio.Event | None = None) -> None:
        """Start the worker pool and the crash-recovery sweep.

        Setting *stop_event* (or calling ``drain``) makes workers finish their
        current attempt and exit.
        """
        if self._workers:
            logger.warning("Dispatcher already started — skipping")
            return

        if stop_event is not None:
            self._stopping = stop_event
        else:
            self._stopping.clear()
        for i in range(self._max_workers):
            worker = asyncio.create_task(self._worker_loop(i), name=f"dispatcher-worker-{i}")
            self._workers.append(worker)
        self._sweeper = asyncio.create_task(self._sweep_loop(), name="dispatcher-recovery-sweep")

        logger.info("Started %d dispatcher workers", self._max_workers)

    async def drain(self, timeout: float = 30.0) -> int:
        """Stop claiming, let running attempts finish, then requeue leftovers.

        Workers still busy after *timeout* are cancelled; their jobs go back
        to pending. Returns the number of jobs requeued.
        """
        logger.info("Draining dispatcher (timeout=%.1fs)…", timeout)
        self._stopping.set()
        self._queue.notify()

        tasks = list(self._workers)
        if self._sweeper is not None:
            tasks.append(self._sweeper)

        if tasks:
            _done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        self._workers.clear()
        self._sweeper = None

        requeued = await self._queue.requeue_in_flight()
        if requeued:
            logger.warning("Returned %d interrupted jobs to the queue", requeued)
        logger.info("Dispatcher drained")
        return requeued

    def get_stats(self) -> dict:
        return {
            "workers": len(self._workers),
            "active_workers": self._active_workers,
            "attempts_run": self._attempts_run,
            "tracked_domains": self._limiter.tracked_domains,
            "queue": self._queue.get_stats(),
        }

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    async def _worker_loop(self, worker_id: int) -> None:
        """Worker coroutine — runs steps until stopped, backing off when idle."""
        logger.debug("Worker %d started", worker_id)
        idle_wait = self._idle_min

        while not self._stopping.is_set():
            try:
                step = await self.run_once(worker_id)
            except PersistenceFailure as exc:
                # The job stays in flight; the recovery sweep will return it
                logger.error(
                    "Worker %d: job store failure: %s", worker_id, exc.message,
                    extra={"worker_id": worker_id, "error_reason": exc.message},
                )
                await asyncio.sleep(self._persistence_retry)
                continue
            except Exception:
                logger.exception("Worker %d: unexpected error", worker_id)
                await asyncio.sleep(self._persistence_retry)
                continue

            if step is not None:
                idle_wait = self._idle_min
                continue

            wait = idle_wait
            due_in = self._queue.seconds_until_next_due()
            if due_in is not None:
                wait = min(wait, max(due_in, self._idle_min))
            await self._queue.wait_for_job(wait)
            idle_wait = min(idle_wait * 2, self._idle_max)

        logger.debug("Worker %d stopped", worker_id)

    async def _sweep_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._sweep_interval)
            except asyncio.TimeoutError:
                pass
            else:
                break

            try:
                await self._queue.recover_stale()
            except PersistenceFailure as exc:
                logger.error("Recovery sweep failed: %s", exc.message)
            metrics.observe_proxy_pool(self._proxies.health_distribution())

    # ------------------------------------------------------------------
    # One step
    # ------------------------------------------------------------------

    async def run_once(self, worker_id: int = 0) -> StepResult | None:
        """Claim one job and drive it through one attempt.

        Returns None when nothing is admissible right now.
        """
        job = await self._queue.claim()
        if job is None:
            return None

        self._active_workers += 1
        try:
            return await self._process(job, worker_id)
        finally:
            self._active_workers -= 1

    async def _process(self, job: Job, worker_id: int) -> StepResult:
        if job.attempt_count >= self._retry.max_attempts:
            # Recovered after its last attempt was already counted
            kind = job.last_error.kind if job.last_error else ErrorKind.TRANSIENT_NETWORK
            final = await self._queue.mark_terminal(
                job.id,
                error=JobError(kind, f"Retry ceiling reached after {job.attempt_count} attempts"),
            )
            return StepResult(job=final, outcome=OutcomeKind.FATAL)

        if not self._limiter.try_acquire(job.domain):
            return await self._defer(job, "domain", self._domain_requeue_delay)

        proxy = self._proxies.acquire()
        if proxy is None:
            self._limiter.release(job.domain)
            exponent = min(job.proxy_deferrals, _MAX_DEFERRAL_EXPONENT)
            return await self._defer(job, "proxy", self._capacity_base * 2**exponent)

        attempt = Attempt(job_id=job.id, proxy_id=proxy.id, started_at=utcnow())
        outcome = await self._attempt(job, proxy)
        kind = self._retry.classify(outcome)

        attempt.ended_at = utcnow()
        attempt.outcome = kind
        attempt.status_code = outcome.status_code
        attempt.captcha_detected = kind == OutcomeKind.CAPTCHA
        self._attempts_run += 1
        metrics.scrape_attempts_total.labels(outcome=kind.value).inc()
        self._log_attempt(job, proxy, attempt, outcome, worker_id)

        return await self._apply(job, proxy, kind, outcome)

    async def _attempt(self, job: Job, proxy: ProxyEndpoint) -> AttemptOutcome:
        """Run the executor; the domain slot and proxy are always released."""
        verdict: bool | None = None
        try:
            crashed = False
            try:
                outcome = await asyncio.wait_for(
                    self._executor.execute(job.url, proxy, job.captcha_token),
                    timeout=self._attempt_timeout + _GUARD_GRACE_SECONDS,
                )
            except asyncio.TimeoutError:
                outcome = AttemptOutcome(
                    transport_error=TransportError.TIMEOUT,
                    error_message=f"Attempt abandoned after {self._attempt_timeout}s",
                )
            except Exception as exc:
                logger.exception("Fetch executor crashed for job %s", job.id)
                crashed = True
                outcome = AttemptOutcome(
                    transport_error=TransportError.CONNECTION,
                    error_message=f"Executor error: {exc}",
                )
            verdict = None if crashed else self._proxy_verdict(outcome)
            return outcome
        finally:
            self._limiter.release(job.domain)
            self._proxies.report_outcome(proxy.id, verdict)
            metrics.observe_proxy_pool(self._proxies.health_distribution())

    @staticmethod
    def _proxy_verdict(outcome: AttemptOutcome) -> bool | None:
        """Judge the proxy: any HTTP response clears it, transport failures count against it."""
        if outcome.transport_error in (TransportError.TIMEOUT, TransportError.CONNECTION):
            return False
        if outcome.transport_error == TransportError.INVALID_URL:
            return None
        return True

    async def _apply(
        self,
        job: Job,
        proxy: ProxyEndpoint,
        kind: OutcomeKind,
        outcome: AttemptOutcome,
    ) -> StepResult:
        updates: dict = {"last_proxy": proxy.id}
        resolved: ResolvedToken | None = None

        if kind == OutcomeKind.CAPTCHA:
            captcha_attempts = job.captcha_attempts + 1
            updates["captcha_attempts"] = captcha_attempts
            if not self._retry.captcha_budget_exhausted(captcha_attempts):
                await self._queue.touch(job.id)
                answer = await self._gate.handle_challenge(job, outcome)
                if isinstance(answer, ResolvedToken):
                    resolved = answer
            decision = self._retry.decide(
                kind,
                attempt_count=job.attempt_count,
                captcha_attempts=captcha_attempts,
                captcha_resolved=resolved is not None,
            )
        else:
            attempt_count = job.attempt_count + 1
            updates["attempt_count"] = attempt_count
            decision = self._retry.decide(kind, attempt_count=attempt_count)

        if decision.kind == OutcomeKind.SUCCESS:
            final = await self._queue.mark_terminal(
                job.id, result=self._build_result(outcome, proxy), **updates
            )
        elif decision.retry:
            not_before = utcnow() + timedelta(seconds=decision.delay_seconds)
            final = await self._queue.schedule_retry(
                job.id,
                not_before,
                error=JobError(self._error_kind(kind, outcome), outcome.describe()),
                captcha_token=resolved.token if resolved else None,
                **updates,
            )
        else:
            message = outcome.describe()
            if decision.ceiling_reached:
                message = f"Retry ceiling reached: {message}"
            final = await self._queue.mark_terminal(
                job.id,
                error=JobError(self._error_kind(kind, outcome), message),
                **updates,
            )

        return StepResult(job=final, outcome=kind)

    async def _defer(self, job: Job, reason: str, delay_seconds: float) -> StepResult:
        """Requeue without counting an attempt.

        Only proxy deferrals feed the proxy backoff exponent; domain
        deferrals are short fixed waits.
        """
        counters = {"deferrals": job.deferrals + 1}
        if reason == "proxy":
            counters["proxy_deferrals"] = job.proxy_deferrals + 1
        metrics.scrape_deferrals_total.labels(reason=reason).inc()
        logger.debug(
            "Deferring job %s (%s unavailable) for %.2fs",
            job.id,
            reason,
            delay_seconds,
            extra={"job_id": job.id, "target_domain": job.domain},
        )
        final = await self._queue.schedule_retry(
            job.id,
            utcnow() + timedelta(seconds=delay_seconds),
            captcha_token=job.captcha_token,
            **counters,
        )
        return StepResult(job=final, deferred=reason)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _error_kind(kind: OutcomeKind, outcome: AttemptOutcome) -> ErrorKind:
        if kind == OutcomeKind.CAPTCHA:
            return ErrorKind.CAPTCHA
        if outcome.transport_error == TransportError.INVALID_URL:
            return ErrorKind.CONFIGURATION
        if kind == OutcomeKind.FATAL:
            return ErrorKind.TARGET_REJECTION
        return ErrorKind.TRANSIENT_NETWORK

    @staticmethod
    def _build_result(outcome: AttemptOutcome, proxy: ProxyEndpoint) -> dict:
        return {
            "status_code": outcome.status_code,
            "final_url": outcome.final_url,
            "content_type": outcome.headers.get("content-type"),
            "body": outcome.body,
            "elapsed_ms": round(outcome.elapsed_ms, 2),
            "proxy": proxy.id,
        }

    @staticmethod
    def _log_attempt(
        job: Job,
        proxy: ProxyEndpoint,
        attempt: Attempt,
        outcome: AttemptOutcome,
        worker_id: int,
    ) -> None:
        extra = {
            "job_id": job.id,
            "worker_id": worker_id,
            "target_url": job.url,
            "target_domain": job.domain,
            "proxy_used": proxy.id,
            "attempt": job.attempt_count + 1,
            "outcome": attempt.outcome.value if attempt.outcome else None,
            "status_code": attempt.status_code,
            "duration_ms": round(attempt.duration_ms, 2),
        }
        if attempt.outcome == OutcomeKind.SUCCESS:
            logger.info("Attempt succeeded for job %s", job.id, extra=extra)
        else:
            extra["error_reason"] = outcome.describe()
            logger.warning(
                "Attempt for job %s ended %s", job.id, extra["outcome"], extra=extra
            )
