"""Outcome classification and retry/backoff decisions.

Classification order for a raw attempt outcome:

1. transport timeout / connection failure → retryable; invalid URL → fatal
2. CAPTCHA status code or a known challenge marker in the body → captcha
3. 5xx or a configured transient status (408, 429 by default) → retryable
4. any other 4xx, 1xx or 3xx → fatal
5. 2xx with a body → success; 2xx without one → retryable

Backoff grows as ``base * 2**(n-1)`` with multiplicative jitter and is capped.
Network retries and CAPTCHA retries have separate ceilings: a CAPTCHA
challenge is counted against ``captcha_max_attempts`` only, so solving cost
stays bounded without eating the regular attempt budget.
"""

from __future__ import annotations

import random
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from scrape_engine.models.jobs import AttemptOutcome, OutcomeKind, TransportError

if TYPE_CHECKING:
    from scrape_engine.config.settings import OrchestratorSettings


@dataclass(frozen=True)
class RetryDecision:
    """What to do with a job after a classified attempt."""

    kind: OutcomeKind  # Effective kind once ceilings are applied
    retry: bool
    delay_seconds: float = 0.0
    ceiling_reached: bool = False


class RetryController:
    """Classifies attempt outcomes and schedules retries.

    Args:
        max_attempts: Executed (non-CAPTCHA) attempts allowed per job.
        base_delay_seconds: Delay before the first retry.
        max_delay_seconds: Upper bound on any retry delay.
        jitter: Multiplicative jitter ratio, delay × uniform(1-j, 1+j).
        captcha_max_attempts: CAPTCHA challenges tolerated per job.
        retryable_status_codes: Non-5xx statuses treated as transient.
        captcha_status_codes: Statuses always treated as a CAPTCHA challenge.
        captcha_markers: Case-insensitive body markers of a challenge page.
        rng: Random source for jitter (injectable for tests).
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 60.0,
        jitter: float = 0.2,
        captcha_max_attempts: int = 2,
        retryable_status_codes: Iterable[int] = (408, 429),
        captcha_status_codes: Iterable[int] = (),
        captcha_markers: Iterable[str] = (),
        rng: random.Random | None = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.captcha_max_attempts = captcha_max_attempts
        self._base_delay = base_delay_seconds
        self._max_delay = max_delay_seconds
        self._jitter = jitter
        self._retryable_status_codes = frozenset(retryable_status_codes)
        self._captcha_status_codes = frozenset(captcha_status_codes)
        self._captcha_markers = tuple(m.lower() for m in captcha_markers if m)
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(
        cls, settings: OrchestratorSettings, rng: random.Random | None = None
    ) -> RetryController:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay_seconds=settings.backoff_base_seconds,
            max_delay_seconds=settings.backoff_max_seconds,
            jitter=settings.backoff_jitter,
            captcha_max_attempts=settings.captcha_max_attempts,
            retryable_status_codes=settings.retryable_status_codes,
            captcha_status_codes=settings.captcha_status_codes,
            captcha_markers=settings.captcha_markers,
            rng=rng,
        )

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def is_captcha(self, outcome: AttemptOutcome) -> bool:
        """Match the CAPTCHA heuristics: reserved status codes or challenge markers."""
        if outcome.transport_error is not None or outcome.status_code is None:
            return False
        if outcome.status_code in self._captcha_status_codes:
            return True
        if outcome.body and self._captcha_markers:
            body = outcome.body.lower()
            return any(marker in body for marker in self._captcha_markers)
        return False

    def classify(self, outcome: AttemptOutcome) -> OutcomeKind:
        """Map a raw attempt outcome onto an OutcomeKind."""
        if outcome.transport_error == TransportError.INVALID_URL:
            return OutcomeKind.FATAL
        if outcome.transport_error is not None or outcome.status_code is None:
            return OutcomeKind.RETRYABLE

        if self.is_captcha(outcome):
            return OutcomeKind.CAPTCHA

        status = outcome.status_code
        if status >= 500 or status in self._retryable_status_codes:
            return OutcomeKind.RETRYABLE
        if 200 <= status < 300:
            return OutcomeKind.SUCCESS if outcome.body is not None else OutcomeKind.RETRYABLE
        return OutcomeKind.FATAL

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------

    def next_delay(self, attempt_count: int) -> float:
        """Seconds to wait before the next try after *attempt_count* tries."""
        exponent = max(attempt_count, 1) - 1
        # Cap the exponent before exponentiation so huge counts cannot overflow
        delay = min(self._max_delay, self._base_delay * (2 ** min(exponent, 32)))
        if self._jitter:
            delay *= self._rng.uniform(1 - self._jitter, 1 + self._jitter)
        return min(delay, self._max_delay)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def captcha_budget_exhausted(self, captcha_attempts: int) -> bool:
        """True once a job has been challenged more often than it may pay to solve."""
        return captcha_attempts > self.captcha_max_attempts

    def decide(
        self,
        kind: OutcomeKind,
        *,
        attempt_count: int,
        captcha_attempts: int = 0,
        captcha_resolved: bool = False,
    ) -> RetryDecision:
        """Decide whether a job retries, given counters that include this attempt."""
        if attempt_count > self.max_attempts:
            return RetryDecision(OutcomeKind.FATAL, retry=False, ceiling_reached=True)

        if kind == OutcomeKind.SUCCESS:
            return RetryDecision(OutcomeKind.SUCCESS, retry=False)

        if kind == OutcomeKind.FATAL:
            return RetryDecision(OutcomeKind.FATAL, retry=False)

        if kind == OutcomeKind.CAPTCHA:
            if captcha_resolved and not self.captcha_budget_exhausted(captcha_attempts):
                # Replay promptly so the solved token does not expire
                return RetryDecision(OutcomeKind.CAPTCHA, retry=True)
            if captcha_attempts >= self.captcha_max_attempts:
                return RetryDecision(OutcomeKind.FATAL, retry=False, ceiling_reached=True)
            return RetryDecision(
                OutcomeKind.CAPTCHA,
                retry=True,
                delay_seconds=self.next_delay(captcha_attempts),
            )

        # Retryable
        if attempt_count >= self.max_attempts:
            return RetryDecision(OutcomeKind.FATAL, retry=False, ceiling_reached=True)
        return RetryDecision(
            OutcomeKind.RETRYABLE,
            retry=True,
            delay_seconds=self.next_delay(attempt_count),
        )
