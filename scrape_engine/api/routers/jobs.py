"""Job submission and status endpoints.

- POST /api/v1/jobs — submit a batch of URLs (up to ``max_batch_size``) at one priority
- GET  /api/v1/jobs/{job_id} — current state, counters, last error, result
- POST /api/v1/jobs/{job_id}/cancel — cancel a queued job or stop its retries
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter

from scrape_engine.errors import ConfigurationError
from scrape_engine.models.requests import SubmitJobsRequest
from scrape_engine.models.responses import ApiResponse, job_to_dict

logger = logging.getLogger(__name__)


def create_jobs_router(*, job_queue: Any = None, max_batch_size: int = 100) -> APIRouter:
    """Factory that creates the jobs router with injected dependencies."""

    jobs_router = APIRouter(prefix="/api/v1", tags=["jobs"])

    @jobs_router.post("/jobs", status_code=202)
    async def submit_jobs(body: SubmitJobsRequest) -> dict:
        """Enqueue every URL as its own job. Returns the new job ids."""
        if len(body.urls) > max_batch_size:
            raise ConfigurationError(
                f"Batch of {len(body.urls)} URLs exceeds the limit of {max_batch_size}"
            )

        job_ids = await job_queue.enqueue_batch(
            body.urls, body.priority, callback_url=body.callback_url
        )
        logger.info("Accepted %d jobs at priority %d", len(job_ids), body.priority)

        return ApiResponse(
            success=True,
            data={"job_ids": job_ids, "count": len(job_ids), "priority": body.priority},
        ).model_dump()

    @jobs_router.get("/jobs/{job_id}")
    async def get_job(job_id: str) -> dict:
        job = await job_queue.get_status(job_id)
        return ApiResponse(success=True, data=job_to_dict(job)).model_dump()

    @jobs_router.post("/jobs/{job_id}/cancel")
    async def cancel_job(job_id: str) -> dict:
        """Cancel a job. An attempt already running completes, but no retry follows."""
        job = await job_queue.cancel(job_id)
        return ApiResponse(success=True, data=job_to_dict(job)).model_dump()

    return jobs_router
