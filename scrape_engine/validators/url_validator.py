"""URL well-formedness checks and domain extraction for job targets."""

from __future__ import annotations

from urllib.parse import urlparse

_ALLOWED_SCHEMES = {"http", "https"}


def is_well_formed_url(url: str) -> bool:
    """Return True if *url* is an absolute http/https URL with a host."""
    if not isinstance(url, str) or not url or any(ch.isspace() for ch in url):
        return False
    try:
        parsed = urlparse(url)
        # Accessing .port validates the port component
        parsed.port
    except ValueError:
        return False
    return parsed.scheme.lower() in _ALLOWED_SCHEMES and bool(parsed.hostname)


def extract_domain(url: str) -> str:
    """Extract the lower-cased host of a URL (the rate-limiting unit)."""
    parsed = urlparse(url)
    return (parsed.hostname or parsed.path.split("/")[0]).lower()
