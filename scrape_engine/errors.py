"""Error hierarchy for the orchestration engine.

All engine errors extend OrchestratorError. Each carries an ``ErrorKind``
(recorded on failed jobs as the last error kind) and an HTTP status code
used by the API adapter when the error reaches a caller.

Only configuration-time, capacity, persistence and lookup errors are raised
to callers. Failures local to one attempt (network, CAPTCHA, target
rejection) never become exceptions: the dispatcher records them on the job
as an ``ErrorKind``.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Failure kinds recorded on jobs and used as metric labels."""

    CONFIGURATION = "configuration"
    TRANSIENT_NETWORK = "transient_network"
    CAPTCHA = "captcha"
    TARGET_REJECTION = "target_rejection"
    CAPACITY_EXHAUSTION = "capacity_exhaustion"
    PERSISTENCE = "persistence"
    CANCELLED = "cancelled"


class OrchestratorError(Exception):
    """Base error for all engine-specific errors."""

    status_code: int = 500
    message: str = "Internal orchestrator error"
    kind: ErrorKind | None = None

    def __init__(self, message: str | None = None, **kwargs: object) -> None:
        self.message = message or self.__class__.message
        self.details = kwargs
        super().__init__(self.message)


class ConfigurationError(OrchestratorError):
    """Invalid job or pool parameters, rejected at admission and never retried."""

    status_code = 422
    message = "Invalid configuration"
    kind = ErrorKind.CONFIGURATION


class QueueFullError(OrchestratorError):
    """Job queue is at max_queue_depth."""

    status_code = 503
    message = "Job queue is full"
    kind = ErrorKind.CAPACITY_EXHAUSTION


class PersistenceFailure(OrchestratorError):
    """Job store unreachable or a write failed."""

    status_code = 503
    message = "Job store unavailable"
    kind = ErrorKind.PERSISTENCE


class JobNotFoundError(OrchestratorError):
    """Job not found."""

    status_code = 404
    message = "Job not found"
