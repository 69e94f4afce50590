"""FastAPI application entry point with lifespan management.

Startup: configure logging, open the job store and the webhook notifier,
load the proxy pool and domain policies, rebuild the queue from the store,
sweep stale in-flight jobs, start the dispatcher workers.
Shutdown: drain the dispatcher (running attempts finish, leftovers return to
pending), stop the proxy refresh loop, flush pending webhooks, close the
store.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from scrape_engine.api.error_handler import register_error_handlers
from scrape_engine.api.routers.health import create_health_router
from scrape_engine.api.routers.jobs import create_jobs_router
from scrape_engine.captcha.gate import CaptchaGate
from scrape_engine.captcha.solver import CaptchaSolver
from scrape_engine.config.settings import OrchestratorSettings
from scrape_engine.integration.webhook import WebhookNotifier
from scrape_engine.logging_config import configure_logging
from scrape_engine.proxy.manager import ProxyPoolManager, load_proxy_file
from scrape_engine.resilience.rate_limiter import DomainRateLimiter
from scrape_engine.resilience.retry import RetryController
from scrape_engine.services.dispatcher import Dispatcher
from scrape_engine.services.fetch_executor import FetchExecutor, HttpFetchExecutor
from scrape_engine.services.job_queue import JobQueue
from scrape_engine.services.job_store import create_job_store

logger = logging.getLogger(__name__)


def _proxy_source(settings: OrchestratorSettings):
    if settings.proxy_file:
        path = settings.proxy_file
        return lambda: load_proxy_file(path)
    return lambda: list(settings.proxy_endpoints)


def create_app(
    settings: OrchestratorSettings | None = None,
    *,
    executor: FetchExecutor | None = None,
    solver: CaptchaSolver | None = None,
    webhook: WebhookNotifier | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    The keyword arguments override the collaborators normally built from
    settings; tests use them to run without a network.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or OrchestratorSettings()

        configure_logging(cfg.log_level)
        logger.info("Starting scrape engine on port %d", cfg.port)

        store = create_job_store(cfg.database_url)
        await store.initialize()

        notifier = webhook or WebhookNotifier.from_settings(cfg)

        proxy_pool = ProxyPoolManager(
            quarantine_threshold=cfg.proxy_quarantine_threshold,
            degraded_threshold=cfg.proxy_degraded_threshold,
            cooldown_seconds=cfg.proxy_cooldown_seconds,
        )
        source = _proxy_source(cfg)
        proxy_pool.initialize(source())

        refresh_task: asyncio.Task | None = None
        if cfg.proxy_file and cfg.proxy_refresh_interval_seconds > 0:
            refresh_task = asyncio.create_task(
                proxy_pool.refresh_loop(source, cfg.proxy_refresh_interval_seconds)
            )

        rate_limiter = DomainRateLimiter(
            default_max_concurrency=cfg.domain_max_concurrency,
            default_min_spacing_ms=cfg.domain_min_spacing_ms,
            max_domains=cfg.max_tracked_domains,
        )
        rate_limiter.load_policies(cfg.domain_policies_path)

        retry_controller = RetryController.from_settings(cfg)
        captcha_gate = CaptchaGate(
            solver=solver,
            retry_controller=retry_controller,
            timeout_seconds=cfg.captcha_timeout_seconds,
        )
        if solver is None:
            logger.warning("No CAPTCHA solver configured — challenged jobs will fail")

        fetch_executor = executor or HttpFetchExecutor(
            timeout_seconds=cfg.attempt_timeout_seconds,
            user_agent=cfg.user_agent,
            captcha_token_header=cfg.captcha_token_header,
            max_body_bytes=cfg.max_body_bytes,
        )

        job_queue = JobQueue(
            store=store,
            max_queue_depth=cfg.max_queue_depth,
            stale_after_seconds=cfg.stale_after_seconds,
            on_job_terminal=notifier.notify,
        )
        await job_queue.load()
        await job_queue.recover_stale()

        dispatcher = Dispatcher.from_settings(
            cfg,
            queue=job_queue,
            rate_limiter=rate_limiter,
            proxy_pool=proxy_pool,
            retry_controller=retry_controller,
            captcha_gate=captcha_gate,
            executor=fetch_executor,
        )
        await dispatcher.start()

        app.include_router(
            create_health_router(
                job_queue=job_queue,
                dispatcher=dispatcher,
                proxy_pool=proxy_pool,
            )
        )
        app.include_router(
            create_jobs_router(job_queue=job_queue, max_batch_size=cfg.max_batch_size)
        )

        app.state.settings = cfg
        app.state.job_queue = job_queue
        app.state.dispatcher = dispatcher
        app.state.proxy_pool = proxy_pool

        logger.info("Scrape engine started")

        yield

        # --- Shutdown ---
        logger.info("Shutting down scrape engine…")

        await dispatcher.drain(timeout=cfg.graceful_shutdown_seconds)

        if refresh_task is not None:
            refresh_task.cancel()
            try:
                await refresh_task
            except asyncio.CancelledError:
                pass

        await notifier.aclose()
        await store.close()
        logger.info("Scrape engine shut down")

    app = FastAPI(
        title="Scrape Engine",
        version="1.0.0",
        lifespan=lifespan,
    )
    register_error_handlers(app)
    return app


app = create_app()


def run() -> None:
    """Serve ``app`` with uvicorn (console script entry point)."""
    cfg = OrchestratorSettings()
    uvicorn.run(app, host="0.0.0.0", port=cfg.port, log_config=None)


if __name__ == "__main__":
    run()
