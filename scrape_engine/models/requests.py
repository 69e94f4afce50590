"""Pydantic request models for the submission API."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from scrape_engine.validators.url_validator import is_well_formed_url


class SubmitJobsRequest(BaseModel):
    """Request model for a batch of URLs to fetch.

    The batch size cap comes from ``max_batch_size`` and is enforced by the
    router, so it can be raised through configuration.
    """

    urls: list[str] = Field(..., min_length=1)
    priority: int = Field(default=3, ge=1, le=5)
    callback_url: str | None = None  # Receives each job's final snapshot

    @field_validator("urls")
    @classmethod
    def _urls_well_formed(cls, urls: list[str]) -> list[str]:
        invalid = [url for url in urls if not is_well_formed_url(url)]
        if invalid:
            raise ValueError(f"Malformed URLs: {', '.join(invalid[:5])}")
        return urls

    @field_validator("callback_url")
    @classmethod
    def _callback_well_formed(cls, url: str | None) -> str | None:
        if url is not None and not is_well_formed_url(url):
            raise ValueError(f"Malformed callback URL: {url}")
        return url
