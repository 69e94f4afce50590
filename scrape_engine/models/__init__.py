"""Public models for the orchestration engine."""

from scrape_engine.models.jobs import (
    ADMISSIBLE_STATES,
    Attempt,
    AttemptOutcome,
    Job,
    JobError,
    JobState,
    OutcomeKind,
    TransportError,
)
from scrape_engine.models.requests import SubmitJobsRequest
from scrape_engine.models.responses import ApiResponse

__all__ = [
    "ADMISSIBLE_STATES",
    "ApiResponse",
    "Attempt",
    "AttemptOutcome",
    "Job",
    "JobError",
    "JobState",
    "OutcomeKind",
    "SubmitJobsRequest",
    "TransportError",
]
