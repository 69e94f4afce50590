"""Scenario tests for the dispatcher driving the full engine."""

from __future__ import annotations

import asyncio

import pytest
from prometheus_client import REGISTRY

from scrape_engine.errors import ErrorKind, PersistenceFailure
from scrape_engine.models.jobs import Job, JobState, OutcomeKind, TransportError, utcnow
from scrape_engine.services.job_store import InMemoryJobStore

from conftest import (
    CAPTCHA_PAGE,
    FakeSolver,
    ScriptedExecutor,
    build_engine,
    response,
    transport_failure,
)


async def _wait_terminal(engine, job_ids: list[str], timeout: float = 5.0) -> list[Job]:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        jobs = [await engine.queue.get_status(j) for j in job_ids]
        if all(job.state.is_terminal for job in jobs):
            return jobs
        await asyncio.sleep(0.01)
    raise AssertionError("jobs did not reach a terminal state")


class TestOrdering:
    @pytest.mark.asyncio
    async def test_priorities_dispatch_in_order(self) -> None:
        engine = build_engine()
        low = await engine.queue.enqueue("https://a.com/low", 5)
        high = await engine.queue.enqueue("https://a.com/high", 1)
        mid = await engine.queue.enqueue("https://a.com/mid", 3)

        await engine.run_until_settled([low, high, mid])

        assert [url for url, _, _ in engine.executor.calls] == [
            "https://a.com/high",
            "https://a.com/mid",
            "https://a.com/low",
        ]

    @pytest.mark.asyncio
    async def test_idle_returns_none(self) -> None:
        engine = build_engine()
        assert await engine.dispatcher.run_once() is None


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_failures_then_success(self) -> None:
        executor = ScriptedExecutor([response(503), response(503), response(503)])
        engine = build_engine(executor, max_attempts=5)
        job_id = await engine.queue.enqueue("https://a.com/", 3)

        await engine.run_until_settled([job_id])

        job = await engine.queue.get_status(job_id)
        assert job.state == JobState.SUCCEEDED
        assert job.attempt_count == 4
        assert job.result["status_code"] == 200

    @pytest.mark.asyncio
    async def test_always_retryable_fails_at_ceiling(self) -> None:
        executor = ScriptedExecutor(default=response(503, body="busy"))
        engine = build_engine(executor, max_attempts=3)
        job_id = await engine.queue.enqueue("https://a.com/", 3)

        await engine.run_until_settled([job_id])

        job = await engine.queue.get_status(job_id)
        assert job.state == JobState.FAILED
        assert job.attempt_count == 3
        assert len(executor.calls) == 3
        assert job.last_error.kind == ErrorKind.TRANSIENT_NETWORK
        assert job.last_error.message.startswith("Retry ceiling reached")

    @pytest.mark.asyncio
    async def test_fatal_status_fails_immediately(self) -> None:
        engine = build_engine(ScriptedExecutor(default=response(404, body="nope")))
        job_id = await engine.queue.enqueue("https://a.com/", 3)

        step = await engine.dispatcher.run_once()

        assert step.outcome == OutcomeKind.FATAL
        assert step.job.state == JobState.FAILED
        assert step.job.attempt_count == 1
        assert step.job.last_error.kind == ErrorKind.TARGET_REJECTION
        assert (await engine.queue.get_status(job_id)).state == JobState.FAILED

    @pytest.mark.asyncio
    async def test_invalid_url_is_configuration_failure(self) -> None:
        engine = build_engine(
            ScriptedExecutor(default=transport_failure(TransportError.INVALID_URL))
        )
        await engine.queue.enqueue("https://a.com/", 3)

        step = await engine.dispatcher.run_once()

        assert step.job.state == JobState.FAILED
        assert step.job.last_error.kind == ErrorKind.CONFIGURATION
        proxy = engine.proxy_pool.get_stats()["proxies"][0]
        assert proxy["consecutive_failures"] == 0
        assert proxy["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_recovered_job_at_ceiling_fails_without_attempt(self) -> None:
        store = InMemoryJobStore()
        await store.insert_many(
            [Job(id="done-trying", url="https://a.com/", domain="a.com", priority=3, attempt_count=3)]
        )
        engine = build_engine(store=store, max_attempts=3)
        await engine.queue.load()

        step = await engine.dispatcher.run_once()

        assert step.job.state == JobState.FAILED
        assert engine.executor.calls == []


class TestCaptcha:
    @pytest.mark.asyncio
    async def test_unsolvable_captcha_fails_after_budget(self) -> None:
        solver = FakeSolver(None)
        executor = ScriptedExecutor(default=response(200, body=CAPTCHA_PAGE))
        engine = build_engine(executor, solver=solver, captcha_max_attempts=2)
        job_id = await engine.queue.enqueue("https://shop.test/item", 3)

        await engine.run_until_settled([job_id])

        job = await engine.queue.get_status(job_id)
        assert job.state == JobState.FAILED
        assert job.captcha_attempts == 2
        assert job.attempt_count == 0
        assert len(solver.challenges) == 2
        assert job.last_error.kind == ErrorKind.CAPTCHA

    @pytest.mark.asyncio
    async def test_solved_token_is_presented_on_next_attempt(self) -> None:
        def responder(url: str, token: str | None):
            if token == "solved-token":
                return response(200, body="<html>product</html>")
            return response(403, body=CAPTCHA_PAGE)

        solver = FakeSolver("solved-token")
        executor = ScriptedExecutor(responder=responder)
        engine = build_engine(executor, solver=solver)
        job_id = await engine.queue.enqueue("https://shop.test/item", 3)

        await engine.run_until_settled([job_id])

        job = await engine.queue.get_status(job_id)
        assert job.state == JobState.SUCCEEDED
        assert job.captcha_attempts == 1
        assert job.attempt_count == 1
        assert [token for _, _, token in executor.calls] == [None, "solved-token"]
        assert solver.challenges[0].site_key == "site-key-123"
        assert job.captcha_token is None

    @pytest.mark.asyncio
    async def test_no_solver_configured(self) -> None:
        executor = ScriptedExecutor(default=response(200, body=CAPTCHA_PAGE))
        engine = build_engine(executor, solver=None, captcha_max_attempts=1)
        job_id = await engine.queue.enqueue("https://shop.test/item", 3)

        await engine.run_until_settled([job_id])

        job = await engine.queue.get_status(job_id)
        assert job.state == JobState.FAILED
        assert job.last_error.kind == ErrorKind.CAPTCHA


class TestCapacity:
    @pytest.mark.asyncio
    async def test_no_proxy_defers_without_counting_attempt(self) -> None:
        executor = ScriptedExecutor(default=transport_failure(TransportError.CONNECTION))
        engine = build_engine(
            executor, proxies=("http://only:8080",), quarantine_threshold=2, max_attempts=5
        )
        job_id = await engine.queue.enqueue("https://a.com/", 3)

        await engine.dispatcher.run_once()
        await asyncio.sleep(0.01)
        await engine.dispatcher.run_once()
        assert engine.proxy_pool.health_distribution()["quarantined"] == 1

        await asyncio.sleep(0.01)
        step = await engine.dispatcher.run_once()

        assert step.deferred == "proxy"
        job = await engine.queue.get_status(job_id)
        assert job.state == JobState.RETRY_SCHEDULED
        assert job.attempt_count == 2
        assert job.deferrals == 1
        assert engine.limiter.get_stats("a.com")["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_domain_deferrals_do_not_stretch_proxy_backoff(self) -> None:
        store = InMemoryJobStore()
        await store.insert_many(
            [Job(id="busy-domain", url="https://a.com/", domain="a.com", priority=3, deferrals=6)]
        )
        engine = build_engine(store=store, proxies=())
        await engine.queue.load()

        before = utcnow()
        step = await engine.dispatcher.run_once()

        assert step.deferred == "proxy"
        assert step.job.deferrals == 7
        assert step.job.proxy_deferrals == 1
        # First proxy deferral waits the base delay (1ms here), not base * 2**6
        assert (step.job.not_before - before).total_seconds() < 0.03

    @pytest.mark.asyncio
    async def test_domain_busy_defers(self) -> None:
        engine = build_engine(domain_max_concurrency=1)
        job_id = await engine.queue.enqueue("https://a.com/", 3)
        assert engine.limiter.try_acquire("a.com") is True

        step = await engine.dispatcher.run_once()

        assert step.deferred == "domain"
        assert step.job.attempt_count == 0
        assert step.job.deferrals == 1
        assert engine.executor.calls == []
        engine.limiter.release("a.com")

        await engine.run_until_settled([job_id])
        assert (await engine.queue.get_status(job_id)).state == JobState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_domain_cap_holds_under_concurrency(self) -> None:
        executor = ScriptedExecutor(delay=0.02)
        engine = build_engine(executor, domain_max_concurrency=2, max_workers=6)
        job_ids = await engine.queue.enqueue_batch(
            [f"https://busy.com/{i}" for i in range(10)]
            + [f"https://other.com/{i}" for i in range(4)],
            3,
        )

        await engine.dispatcher.start()
        try:
            jobs = await _wait_terminal(engine, job_ids)
        finally:
            await engine.dispatcher.drain(timeout=1.0)

        assert all(job.state == JobState.SUCCEEDED for job in jobs)
        assert executor.peak_by_domain["busy.com"] <= 2
        assert executor.peak_by_domain["other.com"] <= 2
        assert all(job.attempt_count == 1 for job in jobs)


class TestResourceRelease:
    @pytest.mark.asyncio
    async def test_executor_crash_releases_slot_and_proxy(self) -> None:
        def responder(url: str, token: str | None):
            raise RuntimeError("driver exploded")

        engine = build_engine(ScriptedExecutor(responder=responder), proxies=("http://p1:8080",))
        await engine.queue.enqueue("https://a.com/", 3)

        step = await engine.dispatcher.run_once()

        assert step.outcome == OutcomeKind.RETRYABLE
        assert step.job.state == JobState.RETRY_SCHEDULED
        assert engine.limiter.get_stats("a.com")["in_flight"] == 0
        proxy = engine.proxy_pool.get_stats()["proxies"][0]
        assert proxy["in_flight"] == 0
        assert proxy["health"] == "healthy"

    @pytest.mark.asyncio
    async def test_hung_executor_is_abandoned(self) -> None:
        engine = build_engine(
            ScriptedExecutor(delay=5.0),
            proxies=("http://p1:8080",),
            attempt_timeout_seconds=0.05,
        )
        await engine.queue.enqueue("https://a.com/", 3)

        step = await engine.dispatcher.run_once()

        assert step.outcome == OutcomeKind.RETRYABLE
        assert "timeout" in step.job.last_error.message
        assert engine.limiter.get_stats("a.com")["in_flight"] == 0
        proxy = engine.proxy_pool.get_stats()["proxies"][0]
        assert proxy["consecutive_failures"] == 1
        assert proxy["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_connection_failures_degrade_proxy(self) -> None:
        engine = build_engine(
            ScriptedExecutor(default=transport_failure()), proxies=("http://p1:8080",)
        )
        await engine.queue.enqueue("https://a.com/", 3)
        await engine.dispatcher.run_once()
        assert engine.proxy_pool.health_distribution()["degraded"] == 1

    @pytest.mark.asyncio
    async def test_http_error_status_keeps_proxy_healthy(self) -> None:
        engine = build_engine(
            ScriptedExecutor(default=response(503)), proxies=("http://p1:8080",)
        )
        await engine.queue.enqueue("https://a.com/", 3)
        await engine.dispatcher.run_once()
        assert engine.proxy_pool.health_distribution()["healthy"] == 1


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_during_attempt_stops_retries(self) -> None:
        engine = build_engine(ScriptedExecutor(default=response(503), delay=0.1))
        job_id = await engine.queue.enqueue("https://a.com/", 3)

        step_task = asyncio.create_task(engine.dispatcher.run_once())
        await asyncio.sleep(0.03)
        await engine.queue.cancel(job_id)
        step = await step_task

        assert step.job.state == JobState.FAILED
        assert step.job.last_error.kind == ErrorKind.CANCELLED
        assert step.job.attempt_count == 1


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_drain_requeues_interrupted_jobs(self) -> None:
        engine = build_engine(ScriptedExecutor(delay=5.0), proxies=("http://p1:8080",))
        job_id = await engine.queue.enqueue("https://a.com/", 3)

        await engine.dispatcher.start()
        for _ in range(100):
            if (await engine.queue.get_status(job_id)).state == JobState.IN_FLIGHT:
                break
            await asyncio.sleep(0.01)

        requeued = await engine.dispatcher.drain(timeout=0.05)

        assert requeued == 1
        job = await engine.queue.get_status(job_id)
        assert job.state == JobState.PENDING
        assert job.attempt_count == 0
        assert engine.limiter.get_stats("a.com")["in_flight"] == 0
        assert engine.proxy_pool.get_stats()["proxies"][0]["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_stop_event_ends_workers(self) -> None:
        engine = build_engine()
        stop = asyncio.Event()
        await engine.dispatcher.start(stop)
        job_id = await engine.queue.enqueue("https://a.com/", 3)
        await _wait_terminal(engine, [job_id])

        stop.set()
        await engine.dispatcher.drain(timeout=1.0)
        assert engine.dispatcher.get_stats()["workers"] == 0

    @pytest.mark.asyncio
    async def test_sweep_recovers_abandoned_job(self) -> None:
        engine = build_engine(stale_after_seconds=0.05)
        job_id = await engine.queue.enqueue("https://a.com/", 3)
        # A worker that claimed the job and died
        await engine.queue.claim()

        await engine.dispatcher.start()
        try:
            [job] = await _wait_terminal(engine, [job_id])
        finally:
            await engine.dispatcher.drain(timeout=1.0)

        assert job.state == JobState.SUCCEEDED
        assert job.attempt_count == 1

    @pytest.mark.asyncio
    async def test_worker_survives_store_outage(self) -> None:
        class FlakyStore(InMemoryJobStore):
            failures = 2

            async def save(self, job: Job) -> None:
                if job.state.is_terminal and self.failures:
                    self.failures -= 1
                    raise PersistenceFailure("disk full")
                await super().save(job)

        engine = build_engine(store=FlakyStore(), stale_after_seconds=0.05, max_workers=1)
        job_id = await engine.queue.enqueue("https://a.com/", 3)

        await engine.dispatcher.start()
        try:
            [job] = await _wait_terminal(engine, [job_id])
        finally:
            await engine.dispatcher.drain(timeout=1.0)

        assert job.state == JobState.SUCCEEDED
        assert job.attempt_count == 1


class TestMetrics:
    @pytest.mark.asyncio
    async def test_attempt_and_finish_counters(self) -> None:
        def sample(name: str, labels: dict) -> float:
            return REGISTRY.get_sample_value(name, labels) or 0.0

        attempts_before = sample("scrape_attempts_total", {"outcome": "success"})
        finished_before = sample("scrape_jobs_finished_total", {"state": "succeeded"})

        engine = build_engine()
        await engine.queue.enqueue("https://a.com/", 3)
        await engine.dispatcher.run_once()

        assert sample("scrape_attempts_total", {"outcome": "success"}) == attempts_before + 1
        assert sample("scrape_jobs_finished_total", {"state": "succeeded"}) == finished_before + 1
