"""Generic API response envelope model.

All API responses are wrapped in this envelope for consistency:
{ success: bool, data: T | None, error: str | None, meta: dict | None }
"""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel

from scrape_engine.models.jobs import Job

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """JSON envelope for all API responses."""

    success: bool
    data: T | None = None
    error: str | None = None
    meta: dict | None = None


def job_to_dict(job: Job) -> dict:
    """Public view of a job record, shared by the API and webhook payloads."""
    return {
        "job_id": job.id,
        "url": job.url,
        "domain": job.domain,
        "priority": job.priority,
        "state": job.state.value,
        "attempt_count": job.attempt_count,
        "captcha_attempts": job.captcha_attempts,
        "deferrals": job.deferrals,
        "last_error": (
            {"kind": job.last_error.kind.value, "message": job.last_error.message}
            if job.last_error
            else None
        ),
        "last_proxy": job.last_proxy,
        "result": job.result,
        "not_before": job.not_before.isoformat() if job.not_before else None,
        "cancel_requested": job.cancel_requested,
        "callback_url": job.callback_url,
        "submitted_at": job.submitted_at.isoformat(),
        "updated_at": job.updated_at.isoformat(),
    }
