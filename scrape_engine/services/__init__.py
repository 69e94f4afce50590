"""Queue, persistence, execution and dispatch services."""

from scrape_engine.services.dispatcher import Dispatcher, StepResult
from scrape_engine.services.fetch_executor import FetchExecutor, HttpFetchExecutor
from scrape_engine.services.job_queue import JobQueue
from scrape_engine.services.job_store import (
    InMemoryJobStore,
    JobStore,
    SqlJobStore,
    create_job_store,
)

__all__ = [
    "Dispatcher",
    "FetchExecutor",
    "HttpFetchExecutor",
    "InMemoryJobStore",
    "JobQueue",
    "JobStore",
    "SqlJobStore",
    "StepResult",
    "create_job_store",
]
