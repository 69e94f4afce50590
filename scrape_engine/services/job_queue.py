"""Priority-aware, write-through job queue.

Holds every non-terminal job in memory, indexed for dispatch, and mirrors each
state transition to a ``JobStore`` *before* making it visible. Ready jobs are
ordered by ascending priority value (1 = highest), then submission time, then
submission order. A job rescheduled for later is invisible until its
``not_before`` has passed, and it keeps its original submission time so it
re-enters its tier in FIFO position.

``claim`` (peek + mark in-flight under one lock, backed by the store's
conditional claim) is the single point that hands a job to a worker, so no two
workers can ever hold the same job. Terminal jobs leave the in-memory index;
their records stay in the store, which then answers ``get_status``.
"""

from __future__ import annotations

import asyncio
import dataclasses
import heapq
import itertools
import logging
from collections import Counter
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from uuid import uuid4

from scrape_engine import metrics
from scrape_engine.errors import (
    ConfigurationError,
    ErrorKind,
    JobNotFoundError,
    QueueFullError,
)
from scrape_engine.models.jobs import ADMISSIBLE_STATES, Job, JobError, JobState, utcnow
from scrape_engine.services.job_store import JobStore
from scrape_engine.validators.url_validator import extract_domain, is_well_formed_url

logger = logging.getLogger(__name__)


class _PriorityEntry:
    """Heap entry for a dispatchable job.

    Priority key: ``(priority, submitted_ts, ordinal)``. ``ticket`` identifies
    the scheduling that produced the entry; entries whose ticket is no longer
    current are stale and skipped lazily.
    """

    __slots__ = ("priority", "submitted_ts", "ordinal", "ticket", "job_id")

    def __init__(self, job: Job, ordinal: int, ticket: int) -> None:
        self.priority = job.priority
        self.submitted_ts = job.submitted_at.timestamp()
        self.ordinal = ordinal
        self.ticket = ticket
        self.job_id = job.id

    def __lt__(self, other: _PriorityEntry) -> bool:
        if self.priority != other.priority:
            return self.priority < other.priority
        if self.submitted_ts != other.submitted_ts:
            return self.submitted_ts < other.submitted_ts
        return self.ordinal < other.ordinal


class JobQueue:
    """Ordered store of pending, in-flight and retry-scheduled jobs.

    Parameters
    ----------
    store:
        Durable job store; every transition is written here first.
    max_queue_depth:
        Maximum number of non-terminal jobs. ``enqueue`` raises
        ``QueueFullError`` beyond it.
    stale_after_seconds:
        In-flight jobs not updated for this long are returned to pending by
        ``recover_stale``.
    on_job_terminal:
        Optional callback invoked with the final snapshot once a job is
        durably succeeded or failed (cancellations included).
    """

    def __init__(
        self,
        *,
        store: JobStore,
        max_queue_depth: int = 10000,
        stale_after_seconds: float = 300.0,
        on_job_terminal: Callable[[Job], None] | None = None,
    ) -> None:
        self._store = store
        self._on_job_terminal = on_job_terminal
        self._max_queue_depth = max_queue_depth
        self._stale_after = timedelta(seconds=stale_after_seconds)

        self._jobs: dict[str, Job] = {}
        self._ordinals: dict[str, int] = {}
        self._tickets: dict[str, int] = {}
        self._ready: list[_PriorityEntry] = []
        # (not_before, ticket, job_id)
        self._delayed: list[tuple[datetime, int, str]] = []

        self._ordinal_counter = itertools.count()
        self._ticket_counter = itertools.count()
        self._lock = asyncio.Lock()
        self._job_available = asyncio.Event()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def enqueue(
        self, url: str, priority: int, *, callback_url: str | None = None
    ) -> str:
        """Validate and enqueue one URL. Returns the new job id.

        Raises
        ------
        ConfigurationError
            If the URL or callback URL is malformed, or the priority is
            outside 1–5.
        QueueFullError
            If the queue has reached ``max_queue_depth``.
        PersistenceFailure
            If the job could not be recorded.
        """
        job_ids = await self.enqueue_batch([url], priority, callback_url=callback_url)
        return job_ids[0]

    async def enqueue_batch(
        self,
        urls: Sequence[str],
        priority: int,
        *,
        callback_url: str | None = None,
    ) -> list[str]:
        """Enqueue several URLs at one priority, all or nothing.

        Every job in the batch shares *callback_url*, which receives the
        job's final snapshot when it finishes.
        """
        if isinstance(priority, bool) or not isinstance(priority, int) or not 1 <= priority <= 5:
            raise ConfigurationError(
                f"Priority must be an integer between 1 and 5, got {priority!r}"
            )
        if not urls:
            raise ConfigurationError("At least one URL is required")
        invalid = [url for url in urls if not is_well_formed_url(url)]
        if invalid:
            raise ConfigurationError("Malformed URLs", urls=invalid)
        if callback_url is not None and not is_well_formed_url(callback_url):
            raise ConfigurationError("Malformed callback URL", callback_url=callback_url)

        async with self._lock:
            if len(self._jobs) + len(urls) > self._max_queue_depth:
                raise QueueFullError(
                    f"Job queue cannot accept {len(urls)} jobs "
                    f"(current depth {len(self._jobs)}, max {self._max_queue_depth})"
                )

            now = utcnow()
            jobs = [
                Job(
                    id=str(uuid4()),
                    url=url,
                    domain=extract_domain(url),
                    priority=priority,
                    callback_url=callback_url,
                    submitted_at=now,
                    created_at=now,
                    updated_at=now,
                )
                for url in urls
            ]
            await self._store.insert_many(jobs)

            for job in jobs:
                self._jobs[job.id] = job
                self._ordinals[job.id] = next(self._ordinal_counter)
                self._schedule_locked(job)
            self._observe()

        self._job_available.set()
        logger.debug(
            "Enqueued %d jobs (priority=%d, queue_depth=%d)",
            len(jobs),
            priority,
            len(self._jobs),
        )
        return [job.id for job in jobs]

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def peek_admissible(self, now: datetime | None = None) -> Job | None:
        """Return a snapshot of the next admissible job without claiming it."""
        async with self._lock:
            job = self._peek_locked(now or utcnow())
            return job.snapshot() if job is not None else None

    async def mark_in_flight(self, job_id: str) -> bool:
        """Move a pending or retry-scheduled job to in-flight.

        A no-op returning False for terminal, already in-flight or unknown
        jobs, so duplicate signals are harmless.
        """
        async with self._lock:
            return await self._mark_in_flight_locked(job_id, utcnow())

    async def claim(self, now: datetime | None = None) -> Job | None:
        """Atomically take the next admissible job and mark it in-flight."""
        now = now or utcnow()
        async with self._lock:
            while True:
                job = self._peek_locked(now)
                if job is None:
                    return None
                if await self._mark_in_flight_locked(job.id, now):
                    return self._jobs[job.id].snapshot()

    async def touch(self, job_id: str) -> None:
        """Refresh the heartbeat of an in-flight job."""
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.IN_FLIGHT:
                return
            await self._commit_locked(dataclasses.replace(job, updated_at=utcnow()))

    async def schedule_retry(
        self,
        job_id: str,
        not_before: datetime,
        *,
        error: JobError | None = None,
        captcha_token: str | None = None,
        **updates: object,
    ) -> Job:
        """Return an in-flight job to the queue, due at *not_before*.

        If cancellation was requested during the attempt, the job is
        finalised as failed instead.
        """
        async with self._lock:
            job = self._require_active_locked(job_id)
            if job.cancel_requested:
                return await self._finalize_locked(
                    job,
                    error=JobError(ErrorKind.CANCELLED, "Cancelled"),
                    **updates,
                )

            rescheduled = dataclasses.replace(
                job,
                state=JobState.RETRY_SCHEDULED,
                not_before=not_before,
                last_error=error or job.last_error,
                captcha_token=captcha_token,
                updated_at=utcnow(),
                **updates,
            )
            await self._commit_locked(rescheduled)
            self._schedule_locked(rescheduled)
            self._observe()
            return rescheduled.snapshot()

    async def mark_terminal(
        self,
        job_id: str,
        *,
        result: dict | None = None,
        error: JobError | None = None,
        **updates: object,
    ) -> Job:
        """Finalise a job: succeeded with *result*, or failed with *error*.

        Finalising an already terminal job is a no-op.
        """
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                stored = await self._store.get(job_id)
                if stored is None:
                    raise JobNotFoundError(f"Job not found: {job_id}")
                return stored
            return await self._finalize_locked(job, result=result, error=error, **updates)

    async def cancel(self, job_id: str) -> Job:
        """Cancel a job.

        Pending and retry-scheduled jobs are finalised as failed (cancelled)
        immediately. An in-flight job is flagged so that its current attempt
        runs to completion but no retry follows. Terminal jobs are unchanged.
        """
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                stored = await self._store.get(job_id)
                if stored is None:
                    raise JobNotFoundError(f"Job not found: {job_id}")
                return stored

            if job.state == JobState.IN_FLIGHT:
                flagged = dataclasses.replace(job, cancel_requested=True, updated_at=utcnow())
                await self._commit_locked(flagged)
                logger.info("Cancellation requested for in-flight job %s", job_id)
                return flagged.snapshot()

            logger.info("Cancelled queued job %s", job_id)
            return await self._finalize_locked(
                job, error=JobError(ErrorKind.CANCELLED, "Cancelled")
            )

    async def get_status(self, job_id: str) -> Job:
        """Return a snapshot of the job.

        Raises
        ------
        JobNotFoundError
            If the job id is unknown.
        PersistenceFailure
            If the store could not be read.
        """
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                return job.snapshot()
        stored = await self._store.get(job_id)
        if stored is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return stored

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def load(self) -> int:
        """Rebuild the in-memory index from the store's non-terminal jobs."""
        active = await self._store.load_active()
        async with self._lock:
            for job in sorted(active, key=lambda j: (j.submitted_at, j.id)):
                if job.id in self._jobs:
                    continue
                self._jobs[job.id] = job
                self._ordinals[job.id] = next(self._ordinal_counter)
                if job.state in ADMISSIBLE_STATES:
                    self._schedule_locked(job)
            self._observe()
        if active:
            self._job_available.set()
            logger.info("Loaded %d active jobs from the job store", len(active))
        return len(active)

    async def recover_stale(self, now: datetime | None = None) -> int:
        """Return in-flight jobs whose heartbeat is older than the threshold to pending."""
        now = now or utcnow()
        cutoff = now - self._stale_after
        recovered = 0
        async with self._lock:
            for job in list(self._jobs.values()):
                if job.state == JobState.IN_FLIGHT and job.updated_at < cutoff:
                    await self._requeue_locked(job)
                    recovered += 1
            if recovered:
                self._observe()
        if recovered:
            self._job_available.set()
            logger.warning("Recovered %d stale in-flight jobs", recovered)
        return recovered

    async def requeue_in_flight(self) -> int:
        """Return every in-flight job to pending (used when draining)."""
        requeued = 0
        async with self._lock:
            for job in list(self._jobs.values()):
                if job.state == JobState.IN_FLIGHT:
                    await self._requeue_locked(job)
                    requeued += 1
            if requeued:
                self._observe()
        return requeued

    # ------------------------------------------------------------------
    # Idle waiting / stats
    # ------------------------------------------------------------------

    async def wait_for_job(self, timeout: float) -> None:
        """Sleep until a job is enqueued or requeued, or *timeout* elapses."""
        try:
            await asyncio.wait_for(self._job_available.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        self._job_available.clear()

    def notify(self) -> None:
        """Wake every idle waiter (used on shutdown)."""
        self._job_available.set()

    def seconds_until_next_due(self, now: datetime | None = None) -> float | None:
        """Seconds until the earliest scheduled retry, 0 if one is ready, None if idle."""
        now = now or utcnow()
        if any(self._tickets.get(e.job_id) == e.ticket for e in self._ready):
            return 0.0
        due = [
            not_before
            for not_before, ticket, job_id in self._delayed
            if self._tickets.get(job_id) == ticket
        ]
        if not due:
            return None
        return max(0.0, (min(due) - now).total_seconds())

    def depth_by_state(self) -> dict[str, int]:
        counts = Counter(job.state.value for job in self._jobs.values())
        return {
            state.value: counts.get(state.value, 0)
            for state in (JobState.PENDING, JobState.RETRY_SCHEDULED, JobState.IN_FLIGHT)
        }

    def get_stats(self) -> dict:
        """Return current queue statistics."""
        by_state = self.depth_by_state()
        return {
            "queue_depth": len(self._jobs),
            "max_queue_depth": self._max_queue_depth,
            **by_state,
        }

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _schedule_locked(self, job: Job) -> None:
        ticket = next(self._ticket_counter)
        self._tickets[job.id] = ticket
        if job.not_before is not None:
            heapq.heappush(self._delayed, (job.not_before, ticket, job.id))
        else:
            entry = _PriorityEntry(job, self._ordinals[job.id], ticket)
            heapq.heappush(self._ready, entry)
        self._job_available.set()

    def _promote_due_locked(self, now: datetime) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            _, ticket, job_id = heapq.heappop(self._delayed)
            if self._tickets.get(job_id) != ticket:
                continue
            job = self._jobs[job_id]
            heapq.heappush(self._ready, _PriorityEntry(job, self._ordinals[job_id], ticket))

    def _peek_locked(self, now: datetime) -> Job | None:
        self._promote_due_locked(now)
        while self._ready:
            entry = self._ready[0]
            if self._tickets.get(entry.job_id) != entry.ticket:
                heapq.heappop(self._ready)
                continue
            return self._jobs[entry.job_id]
        return None

    async def _mark_in_flight_locked(self, job_id: str, now: datetime) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.state not in ADMISSIBLE_STATES:
            return False

        claimed = dataclasses.replace(
            job, state=JobState.IN_FLIGHT, not_before=None, updated_at=now
        )
        if not await self._store.claim(claimed, ADMISSIBLE_STATES):
            # The stored record moved on without us; stop tracking our copy
            logger.warning("Job %s was claimed elsewhere — dropping local copy", job_id)
            self._forget_locked(job_id)
            return False

        self._jobs[job_id] = claimed
        self._tickets.pop(job_id, None)
        self._observe()
        return True

    async def _requeue_locked(self, job: Job) -> None:
        pending = dataclasses.replace(
            job, state=JobState.PENDING, not_before=None, updated_at=utcnow()
        )
        await self._commit_locked(pending)
        self._schedule_locked(pending)

    async def _finalize_locked(
        self,
        job: Job,
        *,
        result: dict | None = None,
        error: JobError | None = None,
        **updates: object,
    ) -> Job:
        state = JobState.FAILED if error is not None else JobState.SUCCEEDED
        final = dataclasses.replace(
            job,
            state=state,
            result=result if state == JobState.SUCCEEDED else None,
            last_error=error or job.last_error,
            not_before=None,
            captcha_token=None,
            updated_at=utcnow(),
            **updates,
        )
        await self._commit_locked(final)
        self._forget_locked(job.id)
        self._observe()

        metrics.scrape_jobs_finished_total.labels(state=state.value).inc()
        if error is not None:
            metrics.scrape_failures_total.labels(kind=error.kind.value).inc()

        snapshot = final.snapshot()
        if self._on_job_terminal is not None:
            try:
                self._on_job_terminal(snapshot)
            except Exception:
                logger.exception("on_job_terminal callback error for job %s", job.id)
        return snapshot

    async def _commit_locked(self, job: Job) -> None:
        """Write through to the store, then publish in memory."""
        await self._store.save(job)
        self._jobs[job.id] = job

    def _require_active_locked(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not active: {job_id}")
        return job

    def _forget_locked(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)
        self._ordinals.pop(job_id, None)
        self._tickets.pop(job_id, None)

    def _observe(self) -> None:
        metrics.observe_queue(self.depth_by_state())
