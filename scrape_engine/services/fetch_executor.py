"""Fetch executor — performs one network attempt through a proxy.

Pure transport step: one GET through the chosen proxy, optionally presenting
a CAPTCHA token, under a hard wall-clock timeout. Transport failures are
returned as outcomes rather than raised; all retry policy lives above.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Protocol

import httpx

from scrape_engine.models.jobs import AttemptOutcome, TransportError
from scrape_engine.proxy.types import ProxyEndpoint

logger = logging.getLogger(__name__)


class FetchExecutor(Protocol):
    """Anything able to run one attempt and report its raw outcome."""

    async def execute(
        self, url: str, proxy: ProxyEndpoint, token: str | None = None
    ) -> AttemptOutcome: ...


class HttpFetchExecutor:
    """httpx-based executor. Stateless between calls.

    Parameters
    ----------
    timeout_seconds:
        Hard limit for the whole attempt (connect, headers and body).
    user_agent:
        User-Agent header sent with every request.
    captcha_token_header:
        Header carrying a solved CAPTCHA token on the replayed attempt.
    max_body_bytes:
        Bodies longer than this are truncated.
    transport:
        Optional httpx transport; when given it replaces proxy routing
        (used by tests with ``httpx.MockTransport``).
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 10.0,
        user_agent: str = "Mozilla/5.0 (compatible; scrape-engine/1.0)",
        captcha_token_header: str = "X-Captcha-Token",
        max_body_bytes: int = 5_000_000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout_seconds
        self._user_agent = user_agent
        self._token_header = captcha_token_header
        self._max_body_bytes = max_body_bytes
        self._transport = transport

    def _build_client(self, proxy: ProxyEndpoint) -> httpx.AsyncClient:
        kwargs: dict = {
            "timeout": httpx.Timeout(self._timeout),
            "follow_redirects": True,
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        else:
            kwargs["proxy"] = proxy.url
        return httpx.AsyncClient(**kwargs)

    async def execute(
        self, url: str, proxy: ProxyEndpoint, token: str | None = None
    ) -> AttemptOutcome:
        headers = {"User-Agent": self._user_agent}
        if token:
            headers[self._token_header] = token

        start = time.monotonic()
        try:
            outcome = await asyncio.wait_for(
                self._fetch(url, proxy, headers), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            outcome = AttemptOutcome(
                transport_error=TransportError.TIMEOUT,
                error_message=f"Attempt exceeded {self._timeout}s",
            )
        except httpx.TimeoutException as exc:
            outcome = AttemptOutcome(
                transport_error=TransportError.TIMEOUT,
                error_message=str(exc) or exc.__class__.__name__,
            )
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
            outcome = AttemptOutcome(
                transport_error=TransportError.INVALID_URL,
                error_message=str(exc) or exc.__class__.__name__,
            )
        except httpx.HTTPError as exc:
            # ConnectError, ReadError, RemoteProtocolError, ProxyError, ...
            outcome = AttemptOutcome(
                transport_error=TransportError.CONNECTION,
                error_message=str(exc) or exc.__class__.__name__,
            )

        outcome.elapsed_ms = (time.monotonic() - start) * 1000
        return outcome

    async def _fetch(
        self, url: str, proxy: ProxyEndpoint, headers: dict[str, str]
    ) -> AttemptOutcome:
        async with self._build_client(proxy) as client:
            async with client.stream("GET", url, headers=headers) as response:
                chunks: list[bytes] = []
                received = 0
                async for chunk in response.aiter_bytes():
                    chunks.append(chunk)
                    received += len(chunk)
                    if received >= self._max_body_bytes:
                        logger.debug("Body truncated at %d bytes for %s", received, url)
                        break
                raw = b"".join(chunks)[: self._max_body_bytes]
                encoding = response.encoding or "utf-8"
                try:
                    body = raw.decode(encoding, errors="replace")
                except LookupError:
                    body = raw.decode("utf-8", errors="replace")

                return AttemptOutcome(
                    status_code=response.status_code,
                    body=body,
                    headers=dict(response.headers),
                    final_url=str(response.url),
                )
