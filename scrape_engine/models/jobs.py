"""In-memory state models for jobs and attempts."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from scrape_engine.errors import ErrorKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    """Lifecycle state of a job."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    RETRY_SCHEDULED = "retry_scheduled"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED)


# States a worker may claim from
ADMISSIBLE_STATES = (JobState.PENDING, JobState.RETRY_SCHEDULED)


class OutcomeKind(str, Enum):
    """Classification of one attempt outcome."""

    SUCCESS = "success"
    RETRYABLE = "retryable"
    CAPTCHA = "captcha"
    FATAL = "fatal"


class TransportError(str, Enum):
    """Transport-level failure raised before any HTTP response was read."""

    TIMEOUT = "timeout"
    CONNECTION = "connection"
    INVALID_URL = "invalid_url"


@dataclass
class JobError:
    """Last error recorded on a job."""

    kind: ErrorKind
    message: str


@dataclass
class Job:
    """One URL fetch request tracked from submission to terminal outcome."""

    id: str  # UUID
    url: str
    domain: str
    priority: int  # 1 = highest, 5 = lowest
    state: JobState = JobState.PENDING
    attempt_count: int = 0
    captcha_attempts: int = 0
    deferrals: int = 0  # Capacity requeues, not counted as attempts
    proxy_deferrals: int = 0  # Requeues for lack of a proxy, drives their backoff
    last_error: JobError | None = None
    last_proxy: str | None = None
    result: dict | None = None
    not_before: datetime | None = None
    captcha_token: str | None = None
    cancel_requested: bool = False
    callback_url: str | None = None  # Notified once the job is terminal
    submitted_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def snapshot(self) -> Job:
        """Return a detached copy safe to hand to callers."""
        return copy.deepcopy(self)


@dataclass
class AttemptOutcome:
    """Raw result of one fetch attempt, before classification."""

    status_code: int | None = None
    body: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    elapsed_ms: float = 0.0
    final_url: str | None = None
    transport_error: TransportError | None = None
    error_message: str | None = None

    def describe(self) -> str:
        """Short human-readable summary used in job errors and logs."""
        if self.transport_error is not None:
            return f"{self.transport_error.value}: {self.error_message or 'no detail'}"
        return f"HTTP {self.status_code}"


@dataclass
class Attempt:
    """Ephemeral record of one execution, logged and then discarded."""

    job_id: str
    proxy_id: str
    started_at: datetime
    ended_at: datetime | None = None
    outcome: OutcomeKind | None = None
    status_code: int | None = None
    captcha_detected: bool = False

    @property
    def duration_ms(self) -> float:
        if self.ended_at is None:
            return 0.0
        return (self.ended_at - self.started_at).total_seconds() * 1000
