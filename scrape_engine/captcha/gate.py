"""CAPTCHA gate — recognises challenge responses and obtains solution tokens.

The gate describes a detected challenge (provider guess and site key taken
from the page), hands it to the external solver under its own timeout, and
returns either a ``ResolvedToken`` to be presented on the job's next attempt
or ``Unresolved``. Solver errors never escape the gate.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass

from scrape_engine import metrics
from scrape_engine.captcha.solver import CaptchaSolver, ChallengeDescriptor
from scrape_engine.models.jobs import AttemptOutcome, Job
from scrape_engine.resilience.retry import RetryController

logger = logging.getLogger(__name__)

_SITE_KEY = re.compile(r"""data-sitekey\s*=\s*["']([^"']+)["']""", re.IGNORECASE)

# Checked in order; first match wins
_PROVIDER_MARKERS = (
    ("hcaptcha", ("h-captcha", "hcaptcha.com")),
    ("turnstile", ("cf-turnstile", "challenges.cloudflare.com")),
    ("recaptcha", ("g-recaptcha", "google.com/recaptcha", "recaptcha/api")),
)


@dataclass(frozen=True)
class ResolvedToken:
    token: str
    provider: str


@dataclass(frozen=True)
class Unresolved:
    reason: str


class CaptchaGate:
    """Delegates detected challenges to a solver and reports the result.

    Args:
        solver: External solving collaborator; None disables solving.
        retry_controller: Source of the CAPTCHA detection heuristics.
        timeout_seconds: Upper bound on one solve call.
    """

    def __init__(
        self,
        *,
        solver: CaptchaSolver | None,
        retry_controller: RetryController,
        timeout_seconds: float = 120.0,
    ) -> None:
        self._solver = solver
        self._retry = retry_controller
        self._timeout = timeout_seconds

    def detect(self, outcome: AttemptOutcome) -> bool:
        return self._retry.is_captcha(outcome)

    def describe(self, job: Job, outcome: AttemptOutcome) -> ChallengeDescriptor:
        body = (outcome.body or "").lower()
        provider = "generic"
        for name, markers in _PROVIDER_MARKERS:
            if any(marker in body for marker in markers):
                provider = name
                break

        match = _SITE_KEY.search(outcome.body or "")
        return ChallengeDescriptor(
            job_id=job.id,
            page_url=outcome.final_url or job.url,
            status_code=outcome.status_code,
            provider=provider,
            site_key=match.group(1) if match else None,
        )

    async def handle_challenge(
        self, job: Job, outcome: AttemptOutcome
    ) -> ResolvedToken | Unresolved:
        """Try to solve the challenge carried by *outcome* for *job*."""
        if self._solver is None:
            metrics.captcha_solves_total.labels(result="unresolved").inc()
            return Unresolved("No CAPTCHA solver configured")

        challenge = self.describe(job, outcome)

        try:
            token = await asyncio.wait_for(
                self._solver.solve(challenge), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            reason = f"CAPTCHA solver timed out after {self._timeout}s"
            token = None
        except Exception as exc:
            reason = f"CAPTCHA solver error: {exc}"
            token = None
        else:
            reason = "CAPTCHA solver returned no token"

        if not token:
            metrics.captcha_solves_total.labels(result="unresolved").inc()
            logger.warning(
                "CAPTCHA unresolved for job %s (%s): %s",
                job.id,
                challenge.provider,
                reason,
                extra={"job_id": job.id, "target_url": job.url, "error_reason": reason},
            )
            return Unresolved(reason)

        metrics.captcha_solves_total.labels(result="resolved").inc()
        logger.info(
            "CAPTCHA resolved for job %s (%s)",
            job.id,
            challenge.provider,
            extra={"job_id": job.id, "target_url": job.url},
        )
        return ResolvedToken(token=token, provider=challenge.provider)
