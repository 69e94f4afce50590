"""CAPTCHA solving collaborator interface.

The concrete vendor call lives outside this package. Anything with an async
``solve`` method returning a token (or None on failure) can be plugged in.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class ChallengeDescriptor:
    """What a solver needs to know about a detected challenge."""

    job_id: str
    page_url: str
    status_code: int | None
    provider: str  # recaptcha, hcaptcha, turnstile, generic
    site_key: str | None = None


class CaptchaSolver(Protocol):
    """Slow, occasionally unavailable remote solving service."""

    async def solve(self, challenge: ChallengeDescriptor) -> str | None:
        """Return a solution token, or None if the challenge could not be solved."""
        ...
