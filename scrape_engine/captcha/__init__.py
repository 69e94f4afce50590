"""CAPTCHA detection and solving gate."""

from scrape_engine.captcha.gate import CaptchaGate, ResolvedToken, Unresolved
from scrape_engine.captcha.solver import CaptchaSolver, ChallengeDescriptor

__all__ = [
    "CaptchaGate",
    "CaptchaSolver",
    "ChallengeDescriptor",
    "ResolvedToken",
    "Unresolved",
]
