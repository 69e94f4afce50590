"""HMAC-SHA256 signed completion callbacks.

When a job reaches a terminal state its final snapshot is POSTed to the
job's ``callback_url`` (or the configured default URL). Delivery runs as a
background task, retries with exponential backoff, and never raises into
the engine: a callback that cannot be delivered is logged and dropped.

SECURITY: ``X-Webhook-Signature`` is HMAC-SHA256(secret, JSON body), hex
encoded. Without a secret the header is omitted.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging

import httpx

from scrape_engine.models.jobs import Job
from scrape_engine.models.responses import job_to_dict

logger = logging.getLogger(__name__)


class WebhookNotifier:
    """Delivers signed terminal-job callbacks with retry logic.

    Parameters
    ----------
    webhook_secret:
        Shared secret for the signature header. ``None`` sends unsigned.
    default_url:
        Callback URL for jobs submitted without one. ``None`` means only
        jobs with their own ``callback_url`` are notified.
    timeout_seconds:
        HTTP timeout per delivery attempt.
    max_retries:
        Delivery attempts before giving up.
    backoff_base:
        Base backoff in seconds. Schedule: base, 2*base, 4*base, ...
    transport:
        Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        webhook_secret: str | None = None,
        default_url: str | None = None,
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        backoff_base: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._webhook_secret = webhook_secret
        self._default_url = default_url
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)
        self._pending: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings, **kwargs) -> WebhookNotifier:
        return cls(
            webhook_secret=settings.webhook_secret,
            default_url=settings.default_webhook_url,
            timeout_seconds=settings.webhook_timeout_seconds,
            max_retries=settings.webhook_max_retries,
            backoff_base=settings.webhook_backoff_base_seconds,
            **kwargs,
        )

    def compute_signature(self, payload_bytes: bytes) -> str:
        """Compute the HMAC-SHA256 hex digest for a payload."""
        return hmac.new(
            (self._webhook_secret or "").encode("utf-8"),
            payload_bytes,
            hashlib.sha256,
        ).hexdigest()

    def build_payload(self, job: Job) -> dict:
        return {"event": f"job.{job.state.value}", "job": job_to_dict(job)}

    def notify(self, job: Job) -> None:
        """Schedule delivery for a terminal job. Safe to call from any hook.

        A no-op when neither the job nor the notifier has a callback URL.
        """
        url = job.callback_url or self._default_url
        if not url:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No event loop available for webhook delivery (job %s)", job.id)
            return
        task = loop.create_task(self._deliver_logged(url, job))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def deliver(self, url: str, job: Job) -> bool:
        """POST the signed payload, retrying on 4xx/5xx and transport errors.

        Returns True once a response below 400 arrives, False when every
        attempt failed.
        """
        payload = self.build_payload(job)
        payload_bytes = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self._webhook_secret:
            headers["X-Webhook-Signature"] = self.compute_signature(payload_bytes)

        last_error: str | None = None
        for attempt in range(self._max_retries):
            try:
                response = await self._client.post(url, content=payload_bytes, headers=headers)
                if response.status_code < 400:
                    logger.info(
                        "Webhook delivered for job %s to %s (status %d)",
                        job.id,
                        url,
                        response.status_code,
                    )
                    return True
                last_error = f"HTTP {response.status_code}"
            except httpx.HTTPError as exc:
                last_error = f"{type(exc).__name__}: {exc}"

            if attempt < self._max_retries - 1:
                backoff = self._backoff_base * (2**attempt)
                logger.warning(
                    "Webhook delivery failed for job %s (attempt %d/%d), retrying in %.1fs",
                    job.id,
                    attempt + 1,
                    self._max_retries,
                    backoff,
                )
                await asyncio.sleep(backoff)

        logger.error(
            "Webhook delivery failed for job %s after %d attempts: %s",
            job.id,
            self._max_retries,
            last_error,
        )
        return False

    async def _deliver_logged(self, url: str, job: Job) -> None:
        try:
            await self.deliver(url, job)
        except Exception:
            logger.exception("Failed to deliver webhook for job %s to %s", job.id, url)

    async def aclose(self, timeout: float = 5.0) -> None:
        """Give in-flight deliveries *timeout* seconds, cancel the rest, close the client."""
        if self._pending:
            _done, still_running = await asyncio.wait(set(self._pending), timeout=timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
        await self._client.aclose()
